# SPDX-License-Identifier: GPL-3.0-or-later
"""
Screen source: ``size()`` and ``grab(region)`` in pointer coordinates.

On HiDPI displays (Retina macOS) Pillow's ImageGrab takes its bbox in
logical points but returns physical pixels, while pynput reports and moves
the pointer in points. Every grab is scaled back to points here so the
locator's rectangles can be clicked as they are.
"""
import logging
from typing import Callable, Optional, Tuple

import numpy as np
from PIL import Image, ImageGrab

from models import Rect

logger = logging.getLogger(__name__)

# side of the square grabbed once to measure pixels per point
_SCALE_SAMPLE = 64


class ScreenCapture:
    """Grabs the screen with Pillow; every call returns a fresh RGB array."""
    def __init__(self, all_screens: bool = False,
                 grabber: Callable[..., Image.Image] = ImageGrab.grab) -> None:
        self._all_screens = all_screens
        self._grabber = grabber
        self._scale: Optional[float] = None
        self._size: Optional[Tuple[int, int]] = None

    def _grab(self, bbox=None) -> Image.Image:
        if self._all_screens:
            return self._grabber(bbox=bbox, all_screens=True)
        return self._grabber(bbox=bbox)

    @property
    def scale(self) -> float:
        """Physical pixels per logical point (2.0 on Retina, 1.0 elsewhere)."""
        if self._scale is None:
            img = self._grab((0, 0, _SCALE_SAMPLE, _SCALE_SAMPLE))
            self._scale = img.size[0] / float(_SCALE_SAMPLE)
            if self._scale != 1.0:
                logger.info("Screen grabs are %.2fx the pointer grid; scaling down", self._scale)
        return self._scale

    def size(self) -> Tuple[int, int]:
        if self._size is None:
            width, height = self._grab().size
            self._size = (int(round(width / self.scale)), int(round(height / self.scale)))
        return self._size

    def grab(self, region: Optional[Rect] = None) -> np.ndarray:
        if region is None:
            img = self._grab()
            wanted = self.size()
        else:
            img = self._grab((region.x, region.y, region.x + region.width, region.y + region.height))
            wanted = (region.width, region.height)
        if img.size != wanted:
            img = img.resize(wanted, Image.Resampling.BOX)
        return np.array(img.convert("RGB"))
