# SPDX-License-Identifier: GPL-3.0-or-later
import enum
import logging
import random
import threading
import time
from typing import Callable, Dict, Optional, Set, Tuple

from errors import InvalidInput, InvalidTimeline, SimulationRejected, TargetNotFound
from locator import Match, SubImageLocator
from models import (ImageTarget, KeyEvent, Keyframe, KeyStrokes, Loop, MouseButton,
                    MouseMove, Scroll, Timeline, Wait)
from utils import precise_sleep

logger = logging.getLogger(__name__)


class PlaybackState(enum.Enum):
    IDLE = "idle"
    ARMED = "armed"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"

    @property
    def finished(self) -> bool:
        return self in (PlaybackState.COMPLETED, PlaybackState.ABORTED, PlaybackState.FAILED)


StatusCallback = Callable[[PlaybackState, str], None]


class _Aborted(Exception):
    pass


class Player:
    """
    Plays back a Timeline with its recorded timing.

    Delays are waited with Event.wait(timeout) so a cancel request wakes the
    wait without spinning CPU. Cancellation is only honoured between keyframes
    and only while no button or key pressed by the player is waiting for its
    recorded release, so a down/up pair is never split. A press that has no
    release later in the timeline does not block cancellation. Whatever is
    still held when playback ends is released.
    """
    def __init__(self, backend, locator: Optional[SubImageLocator] = None,
                 speed: float = 1.0, repeats: int = 1, jitter_px: int = 0,
                 offset: Tuple[int, int] = (0, 0),
                 locate_timeout: float = 0.0, locate_retry_interval: float = 0.1,
                 on_status: StatusCallback = lambda _state, _msg: None) -> None:
        self.backend = backend
        self.locator = locator
        self.speed = speed
        self.repeats = repeats
        self.jitter_px = jitter_px
        self.offset = offset
        self.locate_timeout = locate_timeout
        self.locate_retry_interval = locate_retry_interval
        self.on_status = on_status

        self._stop_evt = threading.Event()
        self._state = PlaybackState.IDLE
        self._timeline: Optional[Timeline] = None
        self._cursor = 0
        # (kind, name) -> True while the recorded release is still ahead
        self._held: Dict[Tuple[str, str], bool] = {}
        self._paired: Set[int] = set()
        self._thread: Optional[threading.Thread] = None
        self.message = ""
        self.error: Optional[BaseException] = None

        self._handlers = {
            MouseMove: self._do_move,
            MouseButton: self._do_button,
            KeyEvent: self._do_key,
            Scroll: self._do_scroll,
            Wait: self._do_wait,
            KeyStrokes: self._do_keystrokes,
            ImageTarget: self._do_image,
        }

    @classmethod
    def from_settings(cls, backend, settings, screen=None,
                      on_status: StatusCallback = lambda _state, _msg: None) -> "Player":
        locator = SubImageLocator(screen, settings.hint_padding) if screen is not None else None
        return cls(backend, locator,
                   speed=settings.speed, repeats=settings.repeats,
                   jitter_px=settings.jitter_px,
                   offset=(settings.offset_x, settings.offset_y),
                   locate_timeout=settings.locate_timeout,
                   locate_retry_interval=settings.locate_retry_interval,
                   on_status=on_status)

    # ---- state ----
    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def playing(self) -> bool:
        return self._state in (PlaybackState.ARMED, PlaybackState.RUNNING)

    @property
    def cursor(self) -> int:
        """Index of the keyframe being played (len(timeline) once completed)."""
        return self._cursor

    def _set_state(self, state: PlaybackState, message: str = "") -> None:
        self._state = state
        self.message = message
        logger.info("Playback %s%s", state.value, f": {message}" if message else "")
        try:
            self.on_status(state, message)
        except Exception:
            logger.exception("Status callback failed")

    # ---- control ----
    def arm(self, timeline: Timeline) -> None:
        if self.playing:
            raise RuntimeError("playback already in progress")
        timeline.validate()
        if self.locator is None and any(isinstance(kf.action, ImageTarget) for kf in timeline):
            raise InvalidTimeline("timeline has image targets but no screen locator is configured")
        self._timeline = timeline
        self._paired = _paired_presses(timeline)
        self._cursor = 0
        self._held.clear()
        self._stop_evt.clear()
        self.error = None
        self._set_state(PlaybackState.ARMED, f"{len(timeline)} keyframes")

    def cancel(self) -> None:
        self._stop_evt.set()

    def play(self, timeline: Timeline) -> threading.Thread:
        """Arm and run on a daemon thread; returns the thread."""
        self.arm(timeline)

        def run():
            try:
                self.run()
            except Exception:
                logger.exception("Playback thread crashed")

        self._thread = threading.Thread(target=run, name="playback", daemon=True)
        self._thread.start()
        return self._thread

    def wait(self, timeout: Optional[float] = None) -> PlaybackState:
        if self._thread is not None:
            self._thread.join(timeout)
        return self._state

    # ---- main loop ----
    def run(self) -> PlaybackState:
        if self._state is not PlaybackState.ARMED or self._timeline is None:
            raise RuntimeError("arm() a timeline before run()")
        timeline = self._timeline
        self._set_state(PlaybackState.RUNNING, "Playing...")
        try:
            for loop in range(max(1, self.repeats)):
                self._play_once(timeline.keyframes)
                if loop + 1 < self.repeats:
                    logger.debug("Repeat %d/%d done", loop + 1, self.repeats)
        except _Aborted:
            self._finish(PlaybackState.ABORTED, f"Stopped before keyframe {self._cursor}")
            return self._state
        except TargetNotFound as e:
            self._finish(PlaybackState.FAILED, f"Keyframe {self._cursor}: {e}", e)
            return self._state
        except (SimulationRejected, InvalidInput) as e:
            self._finish(PlaybackState.FAILED, f"Keyframe {self._cursor} could not be played: {e}", e)
            return self._state
        except Exception as e:
            self._finish(PlaybackState.FAILED, f"Playback error: {e}", e)
            raise
        self._cursor = len(timeline)
        self._finish(PlaybackState.COMPLETED, "Playback finished.")
        return self._state

    def _play_once(self, keyframes) -> None:
        passes: Dict[int, int] = {}
        i = 0
        while i < len(keyframes):
            kf = keyframes[i]
            self._cursor = i
            self._wait(kf.delay / max(1e-6, self.speed))
            if kf.enabled and isinstance(kf.action, Loop):
                done = passes.get(i, 1)
                if done < kf.action.repeats:
                    passes[i] = done + 1
                    i -= kf.action.span
                    continue
                # finished: an enclosing loop starts this one over
                passes.pop(i, None)
            elif kf.enabled:
                self._execute(kf)
            i += 1

    def _finish(self, state: PlaybackState, message: str,
                error: Optional[BaseException] = None) -> None:
        self.error = error
        self._release_held()
        self._set_state(state, message)

    def _release_held(self) -> None:
        for kind, name in sorted(self._held):
            try:
                if kind == "button":
                    self.backend.button(name, False)
                else:
                    self.backend.key(name, False)
                logger.info("Released %s %s left down by the timeline", kind, name)
            except SimulationRejected as e:
                logger.error("Could not release %s %s: %s", kind, name, e)
        self._held.clear()

    # ---- timing / cancellation ----
    def _pair_open(self) -> bool:
        return any(self._held.values())

    def _check_cancel(self) -> None:
        if self._stop_evt.is_set() and not self._pair_open():
            raise _Aborted()

    def _wait(self, seconds: float) -> None:
        """Wait at a safe point; raises _Aborted if cancelled."""
        self._check_cancel()
        if seconds <= 0:
            return
        if self._pair_open():
            # a recorded release is still ahead: not a safe point, run the delay out
            precise_sleep(seconds)
            return
        if self._stop_evt.wait(timeout=seconds):
            raise _Aborted()

    # ---- dispatch ----
    def _execute(self, kf: Keyframe) -> None:
        handler = self._handlers.get(type(kf.action))
        if handler is None:
            raise SimulationRejected(f"no player for keyframe kind {kf.kind!r}")
        handler(kf.action)

    def _pointer(self, x: int, y: int) -> Tuple[int, int]:
        x += self.offset[0]
        y += self.offset[1]
        if self.jitter_px > 0:
            x += random.randint(-self.jitter_px, self.jitter_px)
            y += random.randint(-self.jitter_px, self.jitter_px)
        return x, y

    def _press(self, kind: str, name: str, pressed: bool, release_ahead: bool = True) -> None:
        if kind == "button":
            self.backend.button(name, pressed)
        else:
            self.backend.key(name, pressed)
        if pressed:
            self._held[(kind, name)] = release_ahead
        else:
            self._held.pop((kind, name), None)

    def _do_move(self, a: MouseMove) -> None:
        self.backend.move(*self._pointer(a.x, a.y))

    def _do_button(self, a: MouseButton) -> None:
        self._press("button", a.button, a.pressed, self._cursor in self._paired)

    def _do_key(self, a: KeyEvent) -> None:
        self._press("key", a.key, a.pressed, self._cursor in self._paired)

    def _do_scroll(self, a: Scroll) -> None:
        self.backend.scroll(a.dx, a.dy)

    def _do_wait(self, a: Wait) -> None:
        self._wait(a.duration / max(1e-6, self.speed))

    def _do_keystrokes(self, a: KeyStrokes) -> None:
        for key in a.keys:
            self._press("key", key, True)
            self._press("key", key, False)

    def _do_image(self, a: ImageTarget) -> None:
        found = self._find(a)
        a.last_known_region = found.region
        x, y = found.region.center
        logger.info("Target matched at (%d, %d) confidence %.3f%s",
                    x, y, found.confidence, "" if found.hinted else " (full screen)")
        self.backend.move(x + self.offset[0], y + self.offset[1])
        if a.button:
            self._press("button", a.button, True)
            self._press("button", a.button, False)

    def _find(self, a: ImageTarget) -> Match:
        deadline = time.monotonic() + max(0.0, self.locate_timeout)
        while True:
            try:
                return self.locator.find(a)
            except TargetNotFound:
                if time.monotonic() >= deadline:
                    raise
            self._wait(min(self.locate_retry_interval, max(0.0, deadline - time.monotonic())))


def _paired_presses(timeline: Timeline) -> Set[int]:
    """Indices of enabled presses whose release comes later in the timeline."""
    paired: Set[int] = set()
    open_presses: Dict[Tuple[str, str], int] = {}
    for i, kf in enumerate(timeline.keyframes):
        a = kf.action
        if not kf.enabled or not isinstance(a, (MouseButton, KeyEvent)):
            continue
        held = ("button", a.button) if isinstance(a, MouseButton) else ("key", a.key)
        if a.pressed:
            open_presses[held] = i
        elif held in open_presses:
            paired.add(open_presses.pop(held))
    return paired
