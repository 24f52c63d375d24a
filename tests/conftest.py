# SPDX-License-Identifier: GPL-3.0-or-later
"""
Shared fakes for the test suite.

The real input backend and screen grabber need a desktop session, so every
test runs against these stand-ins instead.
"""
import time

import numpy as np
import pytest

from errors import SimulationRejected
from models import Rect


class FakeHook:
    def __init__(self) -> None:
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class FakeBackend:
    """Records synthesized events as tuples: ('move', x, y), ('button', name, pressed), ..."""
    def __init__(self, listen_error=None, reject=()) -> None:
        self.listen_error = listen_error
        self.reject = set(reject)
        self.events = []
        self.times = []
        self.callbacks = None
        self.hook = None
        self.hotkey_bindings = None
        self.on_event = None

    # ---- capture ----
    def listen(self, **callbacks):
        if self.listen_error is not None:
            raise self.listen_error
        self.callbacks = callbacks
        self.hook = FakeHook()
        return self.hook

    def hotkeys(self, bindings):
        self.hotkey_bindings = bindings
        return FakeHook()

    # ---- simulation ----
    def _record(self, *event) -> None:
        if event[0] in self.reject:
            raise SimulationRejected(f"{event[0]} rejected")
        self.events.append(event)
        self.times.append(time.monotonic())
        if self.on_event is not None:
            self.on_event(event)

    def move(self, x, y):
        self._record("move", x, y)

    def button(self, button, pressed):
        self._record("button", button, pressed)

    def key(self, key, pressed):
        self._record("key", key, pressed)

    def scroll(self, dx, dy):
        self._record("scroll", dx, dy)


class FakeScreen:
    """Serves crops of a fixed RGB frame; every grab is a fresh copy."""
    def __init__(self, frame: np.ndarray) -> None:
        self.frame = frame
        self.grabs = []

    def size(self):
        return (self.frame.shape[1], self.frame.shape[0])

    def grab(self, region=None):
        self.grabs.append(region)
        if region is None:
            return self.frame.copy()
        return self.frame[region.y:region.y + region.height,
                          region.x:region.x + region.width].copy()


class FakeClock:
    """Stand-in for RecClock; tests move `t` by hand."""
    def __init__(self) -> None:
        self.t = 0.0

    def start(self) -> None:
        pass

    def now_rel(self) -> float:
        return self.t


def textured(height: int, width: int, seed: int = 0, channels: int = 3) -> np.ndarray:
    rng = np.random.default_rng(seed)
    shape = (height, width) if channels == 0 else (height, width, channels)
    return rng.integers(0, 256, size=shape, dtype=np.uint8)


def crop(frame: np.ndarray, r: Rect) -> np.ndarray:
    return frame[r.y:r.y + r.height, r.x:r.x + r.width].copy()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def screen_frame():
    return textured(240, 320, seed=7)


@pytest.fixture
def screen(screen_frame):
    return FakeScreen(screen_frame)


@pytest.fixture
def clock():
    return FakeClock()
