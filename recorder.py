# SPDX-License-Identifier: GPL-3.0-or-later
import logging
import queue
import threading
from typing import Iterable, Optional, Tuple

from errors import HookUnavailable
from models import (ImageTarget, KeyEvent, Keyframe, MouseButton, MouseMove,
                    Rect, ReferenceImage, Scroll, Timeline)
from utils import RecClock, distance

logger = logging.getLogger(__name__)

# The OS input hook is process-wide: at most one recording session at a time.
_HOOK_LOCK = threading.Lock()


def hotkey_to_key_str(name: str) -> str:
    """'F8' -> 'key:f8', 'esc' -> 'key:esc', 'q' -> 'char:q'."""
    name = name.strip()
    if len(name) == 1:
        return f"char:{name}"
    return f"key:{name.lower()}"


class Recorder:
    """
    Records global mouse/keyboard events into a Timeline.

    Listener callbacks run on the backend's capture thread(s) and only build
    keyframes and put them on a queue. drain(), called from the control
    thread, is the single writer of `timeline`.
    """
    def __init__(self, backend, screen=None,
                 move_min_interval: float = 0.01,
                 move_min_distance: int = 3,
                 ignore_keys: Iterable[str] = (),
                 name: str = "untitled") -> None:
        self.backend = backend
        self.screen = screen
        self.clock = RecClock()
        self.move_min_interval = move_min_interval  # seconds
        self.move_min_distance = move_min_distance  # pixels
        self.ignore_keys = set(ignore_keys)
        self.name = name
        self.timeline = Timeline(name=name)

        self._queue: "queue.Queue[Keyframe]" = queue.Queue()
        self._lock = threading.Lock()  # mouse and keyboard listeners are separate threads
        self._hook = None
        self._holds_hook = False
        self._recording = False
        self._last_t = 0.0
        self._last_move_t = 0.0
        self._last_pos: Optional[Tuple[int, int]] = None
        self._pending_move: Optional[Tuple[float, int, int]] = None

    @classmethod
    def from_settings(cls, backend, settings, screen=None, name: str = "untitled") -> "Recorder":
        return cls(
            backend, screen=screen,
            move_min_interval=settings.move_min_interval,
            move_min_distance=settings.move_min_distance,
            ignore_keys={hotkey_to_key_str(settings.record_hotkey),
                         hotkey_to_key_str(settings.stop_hotkey)},
            name=name,
        )

    # ---- lifecycle ----
    def start(self) -> None:
        if self._holds_hook:
            return
        if not _HOOK_LOCK.acquire(blocking=False):
            raise HookUnavailable("another recording session holds the input hook")
        self._holds_hook = True
        try:
            self._reset()
            self.clock.start()
            self._recording = True
            self._hook = self.backend.listen(
                on_move=self._on_move, on_click=self._on_click, on_scroll=self._on_scroll,
                on_press=self._on_key_press, on_release=self._on_key_release,
            )
        except Exception as e:
            self._recording = False
            self._hook = None
            self._holds_hook = False
            _HOOK_LOCK.release()
            if isinstance(e, HookUnavailable):
                raise
            raise HookUnavailable(f"cannot start input hook: {e}") from e
        logger.info("Recording started")

    def stop(self) -> Timeline:
        if not self._holds_hook:
            return self.timeline
        self._recording = False
        hook, self._hook = self._hook, None
        try:
            if hook is not None:
                hook.stop()
        finally:
            self._holds_hook = False
            _HOOK_LOCK.release()
            with self._lock:
                self._flush_pending_move()
            self.drain()
            self._drop_unreleased_tail()
        logger.info("Recording stopped: %d keyframes, %.2fs",
                    len(self.timeline), self.timeline.total_duration())
        return self.timeline

    def __enter__(self) -> "Recorder":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()

    @property
    def recording(self) -> bool:
        return self._recording

    def _reset(self) -> None:
        self.timeline = Timeline(name=self.name)
        self._queue = queue.Queue()
        self._last_t = 0.0
        self._last_move_t = 0.0
        self._last_pos = None
        self._pending_move = None

    # ---- hand-off (control thread) ----
    def drain(self) -> int:
        """Move queued keyframes into the timeline. Returns how many were moved."""
        moved = 0
        while True:
            try:
                kf = self._queue.get_nowait()
            except queue.Empty:
                return moved
            self.timeline.append(kf)
            moved += 1

    def _drop_unreleased_tail(self) -> None:
        # presses still down when recording stopped (e.g. the Ctrl of Ctrl-C)
        dropped = 0
        kfs = self.timeline.keyframes
        while kfs and isinstance(kfs[-1].action, (KeyEvent, MouseButton)) and kfs[-1].action.pressed:
            kfs.pop()
            dropped += 1
        if dropped:
            logger.info("Dropped %d trailing unreleased presses", dropped)

    # ---- keyframe construction (capture thread, under self._lock) ----
    def _emit(self, t: float, action) -> Keyframe:
        kf = Keyframe(action=action, delay=max(0.0, t - self._last_t))
        self._last_t = max(self._last_t, t)
        self._queue.put(kf)
        return kf

    def _emit_move(self, t: float, x: int, y: int) -> None:
        self._last_move_t = t
        self._last_pos = (x, y)
        self._emit(t, MouseMove(x=x, y=y))

    def _flush_pending_move(self) -> None:
        if self._pending_move is not None:
            t, x, y = self._pending_move
            self._pending_move = None
            self._emit_move(t, x, y)

    def _sync_pointer(self, t: float, x: int, y: int) -> None:
        # button/scroll events must happen where the pointer really was
        self._flush_pending_move()
        if self._last_pos != (x, y):
            self._emit_move(t, x, y)

    # ---- handlers ----
    def _on_move(self, x: int, y: int) -> None:
        if not self._recording:
            return
        with self._lock:
            t = self.clock.now_rel()
            pos = (int(x), int(y))
            if pos == self._last_pos:
                self._pending_move = None
                return
            if (self._last_pos is None
                    or distance(pos, self._last_pos) > self.move_min_distance
                    or (t - self._last_move_t) >= self.move_min_interval):
                self._pending_move = None
                self._emit_move(t, *pos)
            else:
                self._pending_move = (t, pos[0], pos[1])

    def _on_click(self, x: int, y: int, button: str, pressed: bool) -> None:
        if not self._recording:
            return
        with self._lock:
            t = self.clock.now_rel()
            self._sync_pointer(t, int(x), int(y))
            self._emit(t, MouseButton(button=button, pressed=bool(pressed)))

    def _on_scroll(self, x: int, y: int, dx: int, dy: int) -> None:
        if not self._recording or (dx == 0 and dy == 0):
            return
        with self._lock:
            t = self.clock.now_rel()
            self._sync_pointer(t, int(x), int(y))
            self._emit(t, Scroll(dx=int(dx), dy=int(dy)))

    def _on_key(self, key: str, pressed: bool) -> None:
        if not self._recording or key in self.ignore_keys:
            return
        with self._lock:
            t = self.clock.now_rel()
            self._flush_pending_move()
            self._emit(t, KeyEvent(key=key, pressed=pressed))

    def _on_key_press(self, key: str) -> None:
        self._on_key(key, True)

    def _on_key_release(self, key: str) -> None:
        self._on_key(key, False)

    # ---- image targets ----
    def grab_target(self, region: Rect, tolerance: float = 0.9,
                    button: Optional[str] = "left") -> ImageTarget:
        """Grab `region` from the screen as an image target."""
        if self.screen is None:
            raise RuntimeError("no screen source configured")
        pixels = self.screen.grab(region)
        return ImageTarget(reference=ReferenceImage(pixels, source=region),
                           tolerance=tolerance, button=button)

    def capture_target(self, region: Rect, tolerance: float = 0.9,
                       button: Optional[str] = "left") -> Keyframe:
        """Grab `region` and record it as the next keyframe."""
        if not self._recording:
            raise RuntimeError("not recording")
        action = self.grab_target(region, tolerance, button)
        with self._lock:
            t = self.clock.now_rel()
            self._flush_pending_move()
            return self._emit(t, action)
