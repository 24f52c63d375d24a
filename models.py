# SPDX-License-Identifier: GPL-3.0-or-later
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import ClassVar, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np

from errors import InvalidTimeline, OutOfRange

# ---- Geometry ------------------------------------------------------------

@dataclass(frozen=True)
class Rect:
    x: int
    y: int
    width: int
    height: int

    @property
    def center(self) -> Tuple[int, int]:
        return (self.x + self.width // 2, self.y + self.height // 2)

    @property
    def empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    def pad(self, px: int) -> "Rect":
        return Rect(self.x - px, self.y - px, self.width + 2 * px, self.height + 2 * px)

    def clamp(self, width: int, height: int) -> "Rect":
        """Intersect with the (0, 0, width, height) screen area."""
        x0 = min(max(self.x, 0), width)
        y0 = min(max(self.y, 0), height)
        x1 = min(max(self.x + self.width, 0), width)
        y1 = min(max(self.y + self.height, 0), height)
        return Rect(x0, y0, x1 - x0, y1 - y0)

    def offset(self, dx: int, dy: int) -> "Rect":
        return Rect(self.x + dx, self.y + dy, self.width, self.height)


# ---- Reference images ----------------------------------------------------

@dataclass(eq=False)
class ReferenceImage:
    """
    Pixel buffer owned by a single ImageTarget keyframe.

    `pixels` is a uint8 array shaped (h, w), (h, w, 3) RGB or (h, w, 4) RGBA.
    `source` is the screen rectangle the image was grabbed from, used only as
    the first place to look during playback.
    """
    pixels: np.ndarray
    source: Optional[Rect] = None

    def __post_init__(self) -> None:
        # always our own copy; buffers are never shared between keyframes
        self.pixels = np.array(self.pixels, dtype=np.uint8, copy=True)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1]) if self.pixels.ndim >= 2 else 0

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0]) if self.pixels.ndim >= 2 else 0

    @property
    def empty(self) -> bool:
        return self.pixels.size == 0

    def copy(self) -> "ReferenceImage":
        return ReferenceImage(self.pixels, self.source)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ReferenceImage):
            return NotImplemented
        return self.source == other.source and np.array_equal(self.pixels, other.pixels)


# ---- Actions (keyframe payloads) -----------------------------------------

@dataclass
class MouseMove:
    KIND: ClassVar[str] = "move"
    x: int
    y: int


@dataclass
class MouseButton:
    KIND: ClassVar[str] = "button"
    button: str              # 'left', 'right', 'middle'
    pressed: bool


@dataclass
class KeyEvent:
    KIND: ClassVar[str] = "key"
    key: str                 # 'char:a', 'key:space', ...
    pressed: bool


@dataclass
class Scroll:
    KIND: ClassVar[str] = "scroll"
    dx: int
    dy: int


@dataclass
class Wait:
    KIND: ClassVar[str] = "wait"
    duration: float

    def __post_init__(self) -> None:
        if not self.duration >= 0:
            raise ValueError(f"wait duration must be >= 0, got {self.duration!r}")
        self.duration = float(self.duration)


@dataclass
class KeyStrokes:
    KIND: ClassVar[str] = "keystrokes"
    keys: List[str]


@dataclass
class Loop:
    KIND: ClassVar[str] = "loop"
    span: int                # how many keyframes before this one are replayed
    repeats: int             # total passes over those keyframes

    def __post_init__(self) -> None:
        if self.span < 1:
            raise ValueError(f"loop span must be >= 1, got {self.span!r}")
        if self.repeats < 1:
            raise ValueError(f"loop repeats must be >= 1, got {self.repeats!r}")


@dataclass
class ImageTarget:
    KIND: ClassVar[str] = "image"
    reference: ReferenceImage
    tolerance: float = 0.9
    last_known_region: Optional[Rect] = None
    button: Optional[str] = "left"  # None: move the pointer onto the match only

    def copy(self) -> "ImageTarget":
        return replace(self, reference=self.reference.copy())


Action = Union[MouseMove, MouseButton, KeyEvent, Scroll, Wait, KeyStrokes, Loop, ImageTarget]
ACTION_TYPES = (MouseMove, MouseButton, KeyEvent, Scroll, Wait, KeyStrokes, Loop, ImageTarget)


def copy_action(action: Action) -> Action:
    if isinstance(action, ImageTarget):
        return action.copy()
    if isinstance(action, KeyStrokes):
        return KeyStrokes(keys=list(action.keys))
    return replace(action)


# ---- Keyframes & timelines -----------------------------------------------

def new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Keyframe:
    action: Action
    delay: float = 0.0       # seconds after the previous keyframe finished
    enabled: bool = True
    id: str = field(default_factory=new_id)

    def __post_init__(self) -> None:
        if not isinstance(self.action, ACTION_TYPES):
            raise TypeError(f"unsupported keyframe action: {type(self.action).__name__}")
        if not self.delay >= 0:
            raise ValueError(f"keyframe delay must be >= 0, got {self.delay!r}")
        self.delay = float(self.delay)

    @property
    def kind(self) -> str:
        return self.action.KIND

    def copy(self) -> "Keyframe":
        return Keyframe(action=copy_action(self.action), delay=self.delay,
                        enabled=self.enabled, id=self.id)


def _utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class Timeline:
    name: str = "untitled"
    created: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    keyframes: List[Keyframe] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.created = _utc(self.created)

    def __len__(self) -> int:
        return len(self.keyframes)

    def __iter__(self) -> Iterator[Keyframe]:
        return iter(self.keyframes)

    def __getitem__(self, index: int) -> Keyframe:
        self._check(index, len(self.keyframes))
        return self.keyframes[index]

    # ---- editing ----
    def _check(self, index: int, upper: int) -> None:
        if not isinstance(index, int) or index < 0 or index >= upper:
            raise OutOfRange(f"index {index!r} outside [0, {upper})")

    def _check_new_id(self, keyframe: Keyframe) -> None:
        if any(kf.id == keyframe.id for kf in self.keyframes):
            raise InvalidTimeline(f"keyframe id {keyframe.id} is already in the timeline")

    def append(self, keyframe: Keyframe) -> None:
        self._check_new_id(keyframe)
        self.keyframes.append(keyframe)

    def insert(self, index: int, keyframe: Keyframe) -> None:
        # inserting at len() is the same as append
        self._check(index, len(self.keyframes) + 1)
        self._check_new_id(keyframe)
        self.keyframes.insert(index, keyframe)

    def remove(self, index: int) -> Keyframe:
        self._check(index, len(self.keyframes))
        return self.keyframes.pop(index)

    def reorder(self, src: int, dst: int) -> None:
        n = len(self.keyframes)
        self._check(src, n)
        self._check(dst, n)
        self.keyframes.insert(dst, self.keyframes.pop(src))

    def index_of(self, keyframe_id: str) -> int:
        for i, kf in enumerate(self.keyframes):
            if kf.id == keyframe_id:
                return i
        raise KeyError(keyframe_id)

    def total_duration(self) -> float:
        return sum(kf.delay for kf in self.keyframes)

    def copy(self) -> "Timeline":
        return Timeline(name=self.name, created=self.created,
                        keyframes=[kf.copy() for kf in self.keyframes])

    def validate(self) -> None:
        """Raise InvalidTimeline unless the timeline can be saved and played."""
        seen = set()
        for i, kf in enumerate(self.keyframes):
            if kf.id in seen:
                raise InvalidTimeline(f"keyframe {i} reuses id {kf.id}")
            seen.add(kf.id)
            if isinstance(kf.action, Loop) and kf.action.span > i:
                raise InvalidTimeline(
                    f"keyframe {i} ({kf.id}) loops over {kf.action.span} keyframes but only {i} precede it")
            if not isinstance(kf.action, ImageTarget):
                continue
            ref = kf.action.reference
            if ref is None or ref.empty:
                raise InvalidTimeline(f"keyframe {i} ({kf.id}) has no reference image")
            tol = kf.action.tolerance
            if not 0.0 < tol <= 1.0:
                raise InvalidTimeline(f"keyframe {i} ({kf.id}) tolerance {tol!r} outside (0, 1]")

    # ---- bulk edits ----
    def cull_redundant_moves(self) -> int:
        """
        Drop every mouse move that is immediately followed by another move.
        Removed delays are carried into the next kept keyframe, so the
        total duration does not change. Returns the number removed.
        """
        kept: List[Keyframe] = []
        carry = 0.0
        kfs = self.keyframes
        for i, kf in enumerate(kfs):
            nxt = kfs[i + 1] if i + 1 < len(kfs) else None
            if isinstance(kf.action, MouseMove) and nxt is not None and isinstance(nxt.action, MouseMove):
                carry += kf.delay
                continue
            if carry:
                kf.delay += carry
                carry = 0.0
            kept.append(kf)
        removed = len(kfs) - len(kept)
        self.keyframes = kept
        return removed

    def combine_keystrokes(self, indices: Sequence[int]) -> Keyframe:
        """
        Replace the selected key events with one KeyStrokes keyframe placed at
        the first selected position. Releases in the selection are dropped and
        the delays of every selected keyframe add up in the new one.
        """
        n = len(self.keyframes)
        selected = sorted(set(indices))
        if not selected:
            raise ValueError("no keyframes selected")
        for i in selected:
            self._check(i, n)
            if not isinstance(self.keyframes[i].action, KeyEvent):
                raise ValueError(f"keyframe {i} is not a key event")
        keys = [self.keyframes[i].action.key for i in selected if self.keyframes[i].action.pressed]
        if not keys:
            raise ValueError("selection contains no key presses")

        first = selected[0]
        chosen = set(selected)
        out: List[Keyframe] = []
        combined = Keyframe(KeyStrokes(keys=keys),
                            delay=sum(self.keyframes[i].delay for i in selected))
        for i, kf in enumerate(self.keyframes):
            if i == first:
                out.append(combined)
            elif i not in chosen:
                out.append(kf)
        self.keyframes = out
        return combined
