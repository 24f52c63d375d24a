# SPDX-License-Identifier: GPL-3.0-or-later
"""
Sub-image search: find where a reference bitmap sits on the current screen.

Matching is OpenCV's normalized correlation coefficient (TM_CCOEFF_NORMED)
on float32 grayscale, so each window is compared after removing its mean and
dividing by its deviation. A uniform brightness or contrast change of the
screen therefore leaves the score unchanged.
"""
import logging
import time
from dataclasses import dataclass
from typing import Optional, Tuple, Union

import cv2
import numpy as np

from errors import InvalidInput, TargetNotFound
from models import ImageTarget, Rect, ReferenceImage

logger = logging.getLogger(__name__)

# windows (or references) with less variance than this are treated as flat;
# the normalized score is meaningless there
_FLAT_VARIANCE = 1e-2

ImageLike = Union[ReferenceImage, np.ndarray]


def _to_gray(pixels: ImageLike, what: str) -> np.ndarray:
    if isinstance(pixels, ReferenceImage):
        pixels = pixels.pixels
    a = np.asarray(pixels)
    if a.size == 0:
        raise InvalidInput(f"{what} image is empty")
    a = np.ascontiguousarray(a, dtype=np.float32)
    if a.ndim == 2:
        return a
    if a.ndim == 3 and a.shape[2] == 1:
        return a[:, :, 0]
    if a.ndim == 3 and a.shape[2] == 3:
        return cv2.cvtColor(a, cv2.COLOR_RGB2GRAY)
    if a.ndim == 3 and a.shape[2] == 4:
        return cv2.cvtColor(a, cv2.COLOR_RGBA2GRAY)
    raise InvalidInput(f"{what} image has unsupported shape {a.shape}")


def _flat_windows(search: np.ndarray, th: int, tw: int) -> np.ndarray:
    """Boolean map (same shape as the match surface) of near-constant windows."""
    s, sq = cv2.integral2(search, sdepth=cv2.CV_64F, sqdepth=cv2.CV_64F)
    n = float(th * tw)

    def window_sum(t: np.ndarray) -> np.ndarray:
        return t[th:, tw:] - t[:-th, tw:] - t[th:, :-tw] + t[:-th, :-tw]

    mean = window_sum(s) / n
    var = window_sum(sq) / n - mean * mean
    return var < _FLAT_VARIANCE


def match(reference: ImageLike, search_image: ImageLike) -> Tuple[Rect, float]:
    """
    Best match of `reference` inside `search_image`, whatever its score.
    The rectangle is relative to the search image; confidence is in [0, 1].
    """
    tmpl = _to_gray(reference, "reference")
    scr = _to_gray(search_image, "search")
    th, tw = tmpl.shape
    sh, sw = scr.shape
    if th > sh or tw > sw:
        raise InvalidInput(f"reference {tw}x{th} is larger than search image {sw}x{sh}")

    if float(tmpl.var()) < _FLAT_VARIANCE:
        # solid colour reference: no correlation is defined
        return Rect(0, 0, tw, th), 0.0

    surface = cv2.matchTemplate(scr, tmpl, cv2.TM_CCOEFF_NORMED)
    surface = np.nan_to_num(surface, nan=0.0, posinf=0.0, neginf=0.0)
    surface[_flat_windows(scr, th, tw)] = 0.0
    _, max_val, _, max_loc = cv2.minMaxLoc(surface)
    confidence = float(min(max(max_val, 0.0), 1.0))
    return Rect(int(max_loc[0]), int(max_loc[1]), tw, th), confidence


def locate(reference: ImageLike, search_image: ImageLike,
           tolerance: float) -> Optional[Tuple[Rect, float]]:
    """Return (rect, confidence), or None when the best peak is below tolerance."""
    rect, confidence = match(reference, search_image)
    if confidence < tolerance:
        return None
    return rect, confidence


@dataclass
class Match:
    region: Rect          # screen coordinates
    confidence: float
    hinted: bool          # found inside the hint window


class SubImageLocator:
    """
    Resolves ImageTarget keyframes against a live screen.

    The padded hint window (last match, else the capture rectangle) is
    searched first; the whole screen only if that peak misses the tolerance.
    """
    def __init__(self, screen, hint_padding: int = 64) -> None:
        self.screen = screen
        self.hint_padding = hint_padding

    def _hint_window(self, target: ImageTarget) -> Optional[Rect]:
        hint = target.last_known_region or target.reference.source
        if hint is None:
            return None
        width, height = self.screen.size()
        window = hint.pad(self.hint_padding).clamp(width, height)
        ref = target.reference
        if window.width < ref.width or window.height < ref.height:
            return None
        return window

    def find(self, target: ImageTarget) -> Match:
        t0 = time.perf_counter()
        ref = target.reference
        best = 0.0

        window = self._hint_window(target)
        if window is not None:
            rect, confidence = match(ref, self.screen.grab(window))
            best = confidence
            if confidence >= target.tolerance:
                logger.debug("Target found near hint in %.1f ms (%.3f)",
                             (time.perf_counter() - t0) * 1000, confidence)
                return Match(rect.offset(window.x, window.y), confidence, True)

        rect, confidence = match(ref, self.screen.grab(None))
        best = max(best, confidence)
        if confidence >= target.tolerance:
            logger.debug("Target found on full screen in %.1f ms (%.3f)",
                         (time.perf_counter() - t0) * 1000, confidence)
            return Match(rect, confidence, False)

        raise TargetNotFound(
            f"could not find target (best confidence {best:.3f} < {target.tolerance:.3f})",
            confidence=best,
        )
