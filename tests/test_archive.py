# SPDX-License-Identifier: GPL-3.0-or-later
import os
import struct
import zipfile
from datetime import datetime, timezone

import numpy as np
import pytest

import archive
from conftest import FakeBackend, textured
from errors import CorruptArchive, InvalidTimeline
from models import (ImageTarget, KeyEvent, Keyframe, KeyStrokes, Loop, MouseButton,
                    MouseMove, Rect, ReferenceImage, Scroll, Timeline, Wait)
from player import PlaybackState, Player
from recorder import Recorder


def full_timeline():
    return Timeline(
        name="everything é",
        created=datetime(2024, 3, 9, 17, 45, 12, 345678, tzinfo=timezone.utc),
        keyframes=[
            Keyframe(MouseMove(-5, 1440), delay=0.0),
            Keyframe(MouseButton("right", True), delay=0.125),
            Keyframe(MouseButton("right", False), delay=0.0625, enabled=False),
            Keyframe(KeyEvent("key:shift", True), delay=1.5),
            Keyframe(KeyEvent("char:ü", False)),
            Keyframe(Scroll(-1, 3), delay=0.01),
            Keyframe(Wait(2.25)),
            Keyframe(KeyStrokes(["char:o", "char:k", "key:enter"]), delay=0.3),
            Keyframe(Loop(span=3, repeats=4), delay=0.02),
            Keyframe(ImageTarget(ReferenceImage(textured(12, 20, seed=1), source=Rect(4, 5, 20, 12)),
                                 tolerance=0.85, last_known_region=Rect(40, 50, 20, 12))),
            Keyframe(ImageTarget(ReferenceImage(textured(7, 9, seed=2, channels=4)), button=None)),
            Keyframe(ImageTarget(ReferenceImage(textured(6, 6, seed=3, channels=0)),
                                 button="middle"), delay=0.5),
            Keyframe(ImageTarget(ReferenceImage(textured(5, 8, seed=4, channels=1)))),
        ],
    )


def write_zip(path, entries):
    with zipfile.ZipFile(path, "w") as zf:
        for name, data in entries.items():
            zf.writestr(name, data)


def text(s):
    raw = s.encode("utf-8")
    return struct.pack("<I", len(raw)) + raw


def test_round_trip_keeps_everything(tmp_path):
    tl = full_timeline()
    path = str(tmp_path / "all.atm")
    archive.save(tl, path)
    loaded = archive.load(path)
    assert loaded == tl
    assert [kf.id for kf in loaded] == [kf.id for kf in tl]
    assert loaded.keyframes[12].action.reference.pixels.shape == (5, 8, 1)
    assert loaded.keyframes[11].action.reference.pixels.shape == (6, 6)


def test_archive_layout(tmp_path):
    tl = full_timeline()
    path = str(tmp_path / "all.atm")
    archive.save(tl, path)
    with zipfile.ZipFile(path) as zf:
        names = set(zf.namelist())
        assert zf.read(archive.METADATA)[:4] == archive.MAGIC
    images = {archive.image_entry(kf.id) for kf in tl if kf.kind == "image"}
    assert names == {archive.METADATA} | images


def test_save_leaves_no_temp_files(tmp_path):
    path = tmp_path / "t.atm"
    archive.save(full_timeline(), str(path))
    archive.save(Timeline(name="again"), str(path))
    assert os.listdir(tmp_path) == ["t.atm"]
    assert archive.load(str(path)).name == "again"


def test_failed_save_keeps_old_file(tmp_path, monkeypatch):
    path = str(tmp_path / "t.atm")
    archive.save(Timeline(name="old"), path)

    def broken(ref):
        raise OSError("disk full")

    monkeypatch.setattr(archive, "_encode_png", broken)
    with pytest.raises(OSError):
        archive.save(full_timeline(), path)
    assert os.listdir(tmp_path) == ["t.atm"]
    assert archive.load(path).name == "old"


def test_empty_reference_refused(tmp_path):
    tl = Timeline(keyframes=[Keyframe(ImageTarget(ReferenceImage(np.zeros((0, 0, 3), dtype=np.uint8))))])
    with pytest.raises(InvalidTimeline):
        archive.save(tl, str(tmp_path / "t.atm"))
    assert os.listdir(tmp_path) == []


# ---- damaged archives ----

def test_missing_file_is_an_os_error(tmp_path):
    with pytest.raises(OSError):
        archive.load(str(tmp_path / "nope.atm"))


def test_not_a_zip(tmp_path):
    path = tmp_path / "junk.atm"
    path.write_bytes(b"definitely not a zip file")
    with pytest.raises(CorruptArchive):
        archive.load(str(path))


def test_truncated_file(tmp_path):
    path = tmp_path / "t.atm"
    archive.save(full_timeline(), str(path))
    data = path.read_bytes()
    path.write_bytes(data[:len(data) // 2])
    with pytest.raises(CorruptArchive):
        archive.load(str(path))


def test_missing_metadata(tmp_path):
    path = str(tmp_path / "t.atm")
    write_zip(path, {"readme.txt": b"hi"})
    with pytest.raises(CorruptArchive):
        archive.load(path)


def test_missing_image_entry(tmp_path):
    tl = full_timeline()
    path = str(tmp_path / "t.atm")
    write_zip(path, {archive.METADATA: archive.dumps_metadata(tl)})
    with pytest.raises(CorruptArchive):
        archive.load(path)


def test_image_of_wrong_size(tmp_path):
    ref = ReferenceImage(textured(10, 10))
    tl = Timeline(keyframes=[Keyframe(ImageTarget(ref))])
    other = ReferenceImage(textured(4, 4))
    path = str(tmp_path / "t.atm")
    write_zip(path, {
        archive.METADATA: archive.dumps_metadata(tl),
        archive.image_entry(tl.keyframes[0].id): archive._encode_png(other),
    })
    with pytest.raises(CorruptArchive):
        archive.load(path)


def test_bad_magic(tmp_path):
    path = str(tmp_path / "t.atm")
    write_zip(path, {archive.METADATA: b"NOPE" + archive.dumps_metadata(Timeline())[4:]})
    with pytest.raises(CorruptArchive):
        archive.load(path)


def test_newer_version(tmp_path):
    path = str(tmp_path / "t.atm")
    data = archive.dumps_metadata(Timeline())
    write_zip(path, {archive.METADATA: data[:4] + struct.pack("<H", archive.VERSION + 1) + data[6:]})
    with pytest.raises(CorruptArchive):
        archive.load(path)


def test_truncated_metadata(tmp_path):
    path = str(tmp_path / "t.atm")
    data = archive.dumps_metadata(Timeline(keyframes=[Keyframe(MouseMove(1, 2))]))
    write_zip(path, {archive.METADATA: data[:-3]})
    with pytest.raises(CorruptArchive):
        archive.load(path)


def test_trailing_bytes(tmp_path):
    path = str(tmp_path / "t.atm")
    write_zip(path, {archive.METADATA: archive.dumps_metadata(Timeline()) + b"\0"})
    with pytest.raises(CorruptArchive):
        archive.load(path)


def test_unknown_kind_tag(tmp_path):
    data = (struct.pack("<4sH", archive.MAGIC, archive.VERSION) + text("t")
            + struct.pack("<qI", 0, 1) + text("abc") + struct.pack("<Bd?", 99, 0.0, True))
    path = str(tmp_path / "t.atm")
    write_zip(path, {archive.METADATA: data})
    with pytest.raises(CorruptArchive):
        archive.load(path)


def test_negative_delay_in_metadata(tmp_path):
    data = (struct.pack("<4sH", archive.MAGIC, archive.VERSION) + text("t")
            + struct.pack("<qI", 0, 1) + text("abc")
            + struct.pack("<Bd?", archive.KIND_TAGS[MouseMove], -1.0, True)
            + struct.pack("<ii", 0, 0))
    path = str(tmp_path / "t.atm")
    write_zip(path, {archive.METADATA: data})
    with pytest.raises(CorruptArchive):
        archive.load(path)


# ---- record, save, load, replay ----

def test_recorded_click_survives_archive_and_replays(tmp_path, clock):
    rec_backend = FakeBackend()
    recorder = Recorder(rec_backend)
    recorder.clock = clock
    with recorder:
        rec_backend.callbacks["on_move"](100, 100)
        clock.t = 0.05
        rec_backend.callbacks["on_click"](100, 100, "left", True)
        clock.t = 0.06
        rec_backend.callbacks["on_click"](100, 100, "left", False)

    path = str(tmp_path / "click.atm")
    archive.save(recorder.timeline, path)
    loaded = archive.load(path)

    play_backend = FakeBackend()
    player = Player(play_backend)
    player.arm(loaded)
    assert player.run() is PlaybackState.COMPLETED
    assert play_backend.events == [
        ("move", 100, 100), ("button", "left", True), ("button", "left", False)]
    gaps = [b - a for a, b in zip(play_backend.times, play_backend.times[1:])]
    assert 0.045 <= gaps[0] < 0.25
    assert 0.008 <= gaps[1] < 0.2


# ---- keyframe ids ----

def test_duplicate_ids_are_refused_on_save(tmp_path):
    first = Keyframe(ImageTarget(ReferenceImage(textured(6, 6, seed=1))))
    second = first.copy()
    second.action.reference.pixels[:] = 0
    tl = Timeline(keyframes=[first, second])
    with pytest.raises(InvalidTimeline):
        archive.save(tl, str(tmp_path / "dup.atm"))
    assert os.listdir(tmp_path) == []


def test_duplicate_ids_in_metadata_are_corrupt(tmp_path):
    move = (struct.pack("<Bd?", archive.KIND_TAGS[MouseMove], 0.0, True) + struct.pack("<ii", 1, 1))
    data = (struct.pack("<4sH", archive.MAGIC, archive.VERSION) + text("t")
            + struct.pack("<qI", 0, 2) + text("same") + move + text("same") + move)
    path = str(tmp_path / "t.atm")
    write_zip(path, {archive.METADATA: data})
    with pytest.raises(CorruptArchive):
        archive.load(path)


def test_loop_past_the_start_is_corrupt(tmp_path):
    data = (struct.pack("<4sH", archive.MAGIC, archive.VERSION) + text("t")
            + struct.pack("<qI", 0, 1) + text("loop")
            + struct.pack("<Bd?", archive.KIND_TAGS[Loop], 0.0, True) + struct.pack("<II", 2, 2))
    path = str(tmp_path / "t.atm")
    write_zip(path, {archive.METADATA: data})
    with pytest.raises(CorruptArchive):
        archive.load(path)
