# SPDX-License-Identifier: GPL-3.0-or-later
"""
Timeline archives (.atm): one zip file holding

- ``timeline.bin``           little-endian struct-packed keyframe metadata
- ``images/<keyframe>.png``  one lossless PNG per image-target keyframe

The layout only has to round-trip with this module; the leading magic and
version let load() reject foreign or newer files.
"""
import io
import logging
import os
import struct
import tempfile
import zipfile
import zlib
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

import numpy as np
from PIL import Image

from errors import CorruptArchive, InvalidTimeline
from models import (ImageTarget, KeyEvent, Keyframe, KeyStrokes, Loop, MouseButton,
                    MouseMove, Rect, ReferenceImage, Scroll, Timeline, Wait)

logger = logging.getLogger(__name__)

MAGIC = b"ATML"
VERSION = 1
METADATA = "timeline.bin"
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

KIND_TAGS: Dict[type, int] = {
    MouseMove: 1,
    MouseButton: 2,
    KeyEvent: 3,
    Scroll: 4,
    Wait: 5,
    KeyStrokes: 6,
    ImageTarget: 7,
    Loop: 8,
}
TAG_KINDS = {tag: cls for cls, tag in KIND_TAGS.items()}


def image_entry(keyframe_id: str) -> str:
    return f"images/{keyframe_id}.png"

# ---- Low level writer / reader -------------------------------------

class _Writer:
    def __init__(self) -> None:
        self._buf = io.BytesIO()

    def pack(self, fmt: str, *values) -> None:
        self._buf.write(struct.pack("<" + fmt, *values))

    def text(self, s: str) -> None:
        raw = s.encode("utf-8")
        self.pack("I", len(raw))
        self._buf.write(raw)

    def rect(self, r: Optional[Rect]) -> None:
        if r is None:
            self.pack("?", False)
        else:
            self.pack("?iiii", True, r.x, r.y, r.width, r.height)

    def getvalue(self) -> bytes:
        return self._buf.getvalue()


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def unpack(self, fmt: str) -> Tuple:
        fmt = "<" + fmt
        try:
            values = struct.unpack_from(fmt, self._data, self._pos)
        except struct.error as e:
            raise CorruptArchive(f"truncated metadata at byte {self._pos}") from e
        self._pos += struct.calcsize(fmt)
        return values

    def one(self, fmt: str):
        return self.unpack(fmt)[0]

    def text(self) -> str:
        n = self.one("I")
        raw = self._data[self._pos:self._pos + n]
        if len(raw) != n:
            raise CorruptArchive(f"truncated string at byte {self._pos}")
        self._pos += n
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CorruptArchive(f"invalid text at byte {self._pos - n}") from e

    def rect(self) -> Optional[Rect]:
        if not self.one("?"):
            return None
        return Rect(*self.unpack("iiii"))

    def done(self) -> bool:
        return self._pos == len(self._data)

# ---- Encoding ------------------------------------------------------

def _encode_action(w: _Writer, action) -> None:
    if isinstance(action, MouseMove):
        w.pack("ii", action.x, action.y)
    elif isinstance(action, MouseButton):
        w.text(action.button)
        w.pack("?", action.pressed)
    elif isinstance(action, KeyEvent):
        w.text(action.key)
        w.pack("?", action.pressed)
    elif isinstance(action, Scroll):
        w.pack("ii", action.dx, action.dy)
    elif isinstance(action, Wait):
        w.pack("d", action.duration)
    elif isinstance(action, KeyStrokes):
        w.pack("I", len(action.keys))
        for key in action.keys:
            w.text(key)
    elif isinstance(action, Loop):
        w.pack("II", action.span, action.repeats)
    elif isinstance(action, ImageTarget):
        ref = action.reference
        channels = 0 if ref.pixels.ndim == 2 else int(ref.pixels.shape[2])
        w.pack("d", action.tolerance)
        w.text(action.button or "")
        w.rect(action.last_known_region)
        w.rect(ref.source)
        w.pack("IIB", ref.width, ref.height, channels)
    else:
        raise TypeError(f"cannot encode keyframe action {type(action).__name__}")


def _encode_png(ref: ReferenceImage) -> bytes:
    pixels = ref.pixels
    if pixels.ndim == 3 and pixels.shape[2] == 1:
        pixels = pixels[:, :, 0]
    buf = io.BytesIO()
    Image.fromarray(np.ascontiguousarray(pixels)).save(buf, format="PNG")
    return buf.getvalue()


def dumps_metadata(timeline: Timeline) -> bytes:
    w = _Writer()
    w.pack("4sH", MAGIC, VERSION)
    w.text(timeline.name)
    created = timeline.created - EPOCH
    w.pack("q", created // timedelta(microseconds=1))
    w.pack("I", len(timeline.keyframes))
    for kf in timeline.keyframes:
        w.text(kf.id)
        w.pack("Bd?", KIND_TAGS[type(kf.action)], kf.delay, kf.enabled)
        _encode_action(w, kf.action)
    return w.getvalue()


def save(timeline: Timeline, path: str) -> None:
    """Write `timeline` and its reference images to `path` atomically."""
    # image entries are keyed by keyframe id, so ids must be unique
    timeline.validate()

    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp = tempfile.mkstemp(prefix=".atm-", dir=directory)
    try:
        with os.fdopen(fd, "wb") as f, zipfile.ZipFile(f, "w") as zf:
            zf.writestr(METADATA, dumps_metadata(timeline), compress_type=zipfile.ZIP_DEFLATED)
            for kf in timeline.keyframes:
                if isinstance(kf.action, ImageTarget):
                    zf.writestr(image_entry(kf.id), _encode_png(kf.action.reference),
                                compress_type=zipfile.ZIP_STORED)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise
    logger.info("Saved timeline '%s' (%d keyframes) to %s", timeline.name, len(timeline), path)

# ---- Decoding ------------------------------------------------------

def _decode_png(data: bytes, width: int, height: int, channels: int) -> np.ndarray:
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            pixels = np.array(img)
    except (OSError, ValueError) as e:
        raise CorruptArchive(f"unreadable image entry: {e}") from e
    if channels == 1 and pixels.ndim == 2:
        pixels = pixels[:, :, np.newaxis]
    expected = (height, width) if channels == 0 else (height, width, channels)
    if pixels.shape != expected or pixels.dtype != np.uint8:
        raise CorruptArchive(f"image entry is {pixels.shape} {pixels.dtype}, expected {expected} uint8")
    return pixels


def _decode_action(r: _Reader, cls, kf_id: str, zf: zipfile.ZipFile):
    if cls is MouseMove:
        return MouseMove(*r.unpack("ii"))
    if cls is MouseButton:
        return MouseButton(button=r.text(), pressed=r.one("?"))
    if cls is KeyEvent:
        return KeyEvent(key=r.text(), pressed=r.one("?"))
    if cls is Scroll:
        return Scroll(*r.unpack("ii"))
    if cls is Wait:
        return Wait(duration=r.one("d"))
    if cls is KeyStrokes:
        return KeyStrokes(keys=[r.text() for _ in range(r.one("I"))])
    if cls is Loop:
        return Loop(*r.unpack("II"))
    if cls is ImageTarget:
        tolerance = r.one("d")
        button = r.text() or None
        last = r.rect()
        source = r.rect()
        width, height, channels = r.unpack("IIB")
        try:
            data = zf.read(image_entry(kf_id))
        except KeyError:
            raise CorruptArchive(f"missing image entry for keyframe {kf_id}")
        pixels = _decode_png(data, width, height, channels)
        return ImageTarget(reference=ReferenceImage(pixels, source=source),
                           tolerance=tolerance, last_known_region=last, button=button)
    raise CorruptArchive(f"no decoder for {cls.__name__}")


def load(path: str) -> Timeline:
    """Read a timeline written by save(). Raises CorruptArchive on any damage."""
    try:
        with zipfile.ZipFile(path, "r") as zf:
            try:
                data = zf.read(METADATA)
            except KeyError:
                raise CorruptArchive(f"{path}: no {METADATA} entry")
            timeline = _parse(data, zf)
    except zipfile.BadZipFile as e:
        raise CorruptArchive(f"{path}: not a timeline archive ({e})") from e
    except (zipfile.LargeZipFile, zlib.error, EOFError) as e:
        raise CorruptArchive(f"{path}: {e}") from e
    logger.info("Loaded timeline '%s' (%d keyframes) from %s", timeline.name, len(timeline), path)
    return timeline


def _parse(data: bytes, zf: zipfile.ZipFile) -> Timeline:
    r = _Reader(data)
    magic, version = r.unpack("4sH")
    if magic != MAGIC:
        raise CorruptArchive("bad metadata magic")
    if version != VERSION:
        raise CorruptArchive(f"unsupported archive version {version}")
    name = r.text()
    try:
        created = EPOCH + timedelta(microseconds=r.one("q"))
    except OverflowError as e:
        raise CorruptArchive("creation time out of range") from e
    keyframes = []
    seen = set()
    for _ in range(r.one("I")):
        kf_id = r.text()
        if kf_id in seen:
            raise CorruptArchive(f"duplicate keyframe id {kf_id}")
        seen.add(kf_id)
        tag, delay, enabled = r.unpack("Bd?")
        cls = TAG_KINDS.get(tag)
        if cls is None:
            raise CorruptArchive(f"unknown keyframe kind tag {tag}")
        try:
            action = _decode_action(r, cls, kf_id, zf)
            keyframes.append(Keyframe(action=action, delay=delay, enabled=enabled, id=kf_id))
        except (ValueError, OverflowError) as e:
            raise CorruptArchive(f"invalid keyframe {kf_id}: {e}") from e
    if not r.done():
        raise CorruptArchive("trailing bytes after metadata")
    timeline = Timeline(name=name, created=created, keyframes=keyframes)
    try:
        timeline.validate()
    except InvalidTimeline as e:
        raise CorruptArchive(str(e)) from e
    return timeline
