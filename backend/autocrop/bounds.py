# backend/autocrop/bounds.py
"""Manual whitespace bounds detection.

This is the fallback used when the codec trim makes no decision: every pixel
is classified as background (near-white) or foreground and the inclusive
rectangle around all foreground pixels is returned.
"""
from dataclasses import dataclass
from typing import Optional

import numpy as np

DEFAULT_THRESHOLD = 250


@dataclass(frozen=True)
class PixelBuffer:
    """Decoded raw pixels, row-major, channels interleaved (RGB or RGBA)."""
    width: int
    height: int
    channels: int
    data: bytes

    def __post_init__(self):
        if self.channels not in (3, 4):
            raise ValueError(f"unsupported channel count: {self.channels}")
        if self.width < 1 or self.height < 1:
            raise ValueError(f"invalid dimensions: {self.width}x{self.height}")
        expected = self.width * self.height * self.channels
        if len(self.data) != expected:
            raise ValueError(f"buffer holds {len(self.data)} bytes, expected {expected}")

    def as_array(self) -> np.ndarray:
        return np.frombuffer(self.data, dtype=np.uint8).reshape(self.height, self.width, self.channels)


@dataclass(frozen=True)
class Bounds:
    left: int
    top: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.left + self.width

    @property
    def bottom(self) -> int:
        return self.top + self.height

    def box(self):
        """(left, upper, right, lower) as Pillow's crop() expects."""
        return (self.left, self.top, self.right, self.bottom)

    def covers(self, width: int, height: int) -> bool:
        return self.left == 0 and self.top == 0 and self.width == width and self.height == height

    def to_dict(self):
        return {"left": self.left, "top": self.top, "width": self.width, "height": self.height}


def detect_bounds(buffer: PixelBuffer, threshold: int = DEFAULT_THRESHOLD) -> Optional[Bounds]:
    """Return the smallest rectangle enclosing all non-background pixels.

    A pixel is background when each of its first three channels is >= threshold;
    alpha is ignored. Returns None when the whole image is background.
    """
    rgb = buffer.as_array()[..., :3]
    foreground = (rgb < threshold).any(axis=2)

    rows = np.flatnonzero(foreground.any(axis=1))
    if rows.size == 0:
        return None
    cols = np.flatnonzero(foreground.any(axis=0))

    min_y, max_y = int(rows[0]), int(rows[-1])
    min_x, max_x = int(cols[0]), int(cols[-1])
    return Bounds(
        left=min_x,
        top=min_y,
        width=max_x - min_x + 1,
        height=max_y - min_y + 1,
    )
