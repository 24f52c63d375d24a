# SPDX-License-Identifier: GPL-3.0-or-later
import numpy as np
import pytest

from conftest import FakeScreen, crop, textured
from errors import InvalidInput, TargetNotFound
from locator import SubImageLocator, locate, match
from models import ImageTarget, Rect, ReferenceImage


def test_exact_crop_is_found(screen_frame):
    region = Rect(137, 61, 24, 18)
    rect, confidence = match(crop(screen_frame, region), screen_frame)
    assert rect == region
    assert confidence == pytest.approx(1.0, abs=1e-3)


def test_reference_image_accepted(screen_frame):
    region = Rect(5, 200, 30, 20)
    found = locate(ReferenceImage(crop(screen_frame, region), source=region), screen_frame, 0.95)
    assert found is not None
    assert found[0] == region


def test_uniform_brightness_change_keeps_position(screen_frame):
    region = Rect(40, 90, 32, 24)
    ref = crop(screen_frame, region)
    rect, confidence = match(ref, screen_frame)

    dimmed = np.clip(screen_frame.astype(np.float32) * 0.7 + 10, 0, 255).astype(np.uint8)
    dim_rect, dim_confidence = match(ref, dimmed)
    assert dim_rect == rect == region
    assert abs(dim_confidence - confidence) < 0.02


def test_rgba_search_and_reference():
    frame = textured(60, 80, seed=3, channels=4)
    region = Rect(20, 10, 16, 16)
    rect, confidence = match(crop(frame, region), frame)
    assert rect == region
    assert confidence > 0.99


def test_grayscale_search_and_reference():
    frame = textured(60, 80, seed=4, channels=0)
    region = Rect(50, 30, 12, 20)
    rect, confidence = match(crop(frame, region), frame)
    assert rect == region
    assert confidence > 0.99


def test_reference_larger_than_search_rejected():
    with pytest.raises(InvalidInput):
        match(textured(20, 20), textured(10, 30))


def test_empty_images_rejected(screen_frame):
    with pytest.raises(InvalidInput):
        match(np.zeros((0, 0, 3), dtype=np.uint8), screen_frame)
    with pytest.raises(InvalidInput):
        match(textured(4, 4), np.zeros((0, 5, 3), dtype=np.uint8))


def test_flat_reference_never_matches(screen_frame):
    flat = np.full((10, 10, 3), 128, dtype=np.uint8)
    _, confidence = match(flat, screen_frame)
    assert confidence == 0.0
    assert locate(flat, screen_frame, 0.5) is None


def test_flat_screen_areas_are_ignored():
    frame = np.full((50, 50, 3), 200, dtype=np.uint8)
    frame[30:40, 30:40] = textured(10, 10, seed=9)
    ref = crop(frame, Rect(28, 28, 14, 14))
    rect, confidence = match(ref, frame)
    assert rect == Rect(28, 28, 14, 14)
    assert 0.0 <= confidence <= 1.0


def test_unrelated_reference_is_not_located(screen_frame):
    assert locate(textured(16, 16, seed=99), screen_frame, 0.8) is None


# ---- SubImageLocator ----

def target_at(frame, region, **kw):
    return ImageTarget(ReferenceImage(crop(frame, region), source=region), **kw)


def test_hint_window_hit_needs_one_grab(screen, screen_frame):
    region = Rect(100, 100, 20, 20)
    found = SubImageLocator(screen, hint_padding=16).find(target_at(screen_frame, region))
    assert found.region == region
    assert found.hinted
    assert screen.grabs == [Rect(84, 84, 52, 52)]


def test_last_known_region_takes_priority(screen, screen_frame):
    region = Rect(200, 150, 20, 20)
    target = ImageTarget(ReferenceImage(crop(screen_frame, region), source=Rect(0, 0, 20, 20)),
                         last_known_region=region)
    found = SubImageLocator(screen, hint_padding=8).find(target)
    assert found.region == region
    assert found.hinted
    assert len(screen.grabs) == 1


def test_moved_target_falls_back_to_full_screen(screen, screen_frame):
    actual = Rect(250, 180, 20, 20)
    target = ImageTarget(ReferenceImage(crop(screen_frame, actual), source=Rect(10, 10, 20, 20)))
    found = SubImageLocator(screen, hint_padding=8).find(target)
    assert found.region == actual
    assert not found.hinted
    assert screen.grabs == [Rect(2, 2, 36, 36), None]


def test_hint_clamped_at_screen_edge(screen, screen_frame):
    region = Rect(300, 220, 20, 20)
    found = SubImageLocator(screen, hint_padding=64).find(target_at(screen_frame, region))
    assert found.region == region
    assert screen.grabs == [Rect(236, 156, 84, 84)]


def test_missing_target_raises_with_best_confidence(screen):
    target = ImageTarget(ReferenceImage(textured(16, 16, seed=99), source=Rect(0, 0, 16, 16)),
                         tolerance=0.9)
    with pytest.raises(TargetNotFound) as info:
        SubImageLocator(screen).find(target)
    assert 0.0 <= info.value.confidence < 0.9


def test_target_without_source_searches_full_screen(screen_frame):
    screen = FakeScreen(screen_frame)
    region = Rect(60, 70, 18, 18)
    target = ImageTarget(ReferenceImage(crop(screen_frame, region)))
    found = SubImageLocator(screen).find(target)
    assert found.region == region
    assert screen.grabs == [None]
