"""Geometric operations on raw RGBA pixel buffers.

Buffers are straight-alpha, row-major, 4 bytes per pixel. Every operation
returns a new buffer; callers never observe aliasing between input and output.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

import numpy as np
from PIL import Image

from .errors import ConstraintViolation


logger = logging.getLogger(__name__)

CHANNELS = 4


@dataclass(frozen=True, slots=True)
class Rect:
    x: int
    y: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height


@dataclass(slots=True)
class PixelBuffer:
    """Interleaved RGBA bytes with explicit dimensions."""

    width: int
    height: int
    data: bytearray

    def __post_init__(self) -> None:
        if self.width < 1 or self.height < 1:
            raise ConstraintViolation(
                f"Pixel buffer dimensions must be positive, got {self.width}x{self.height}"
            )
        expected = self.width * self.height * CHANNELS
        if len(self.data) != expected:
            raise ConstraintViolation(
                f"Pixel buffer of {self.width}x{self.height} needs {expected} bytes, got {len(self.data)}"
            )

    @property
    def size(self) -> tuple[int, int]:
        return self.width, self.height

    @classmethod
    def blank(cls, width: int, height: int) -> "PixelBuffer":
        """Return a fully transparent buffer."""

        if width < 1 or height < 1:
            raise ConstraintViolation(f"Invalid buffer dimensions {width}x{height}")
        return cls(width, height, bytearray(width * height * CHANNELS))

    @classmethod
    def from_array(cls, array: np.ndarray) -> "PixelBuffer":
        if array.ndim != 3 or array.shape[2] != CHANNELS:
            raise ConstraintViolation(f"Expected an (h, w, 4) array, got shape {array.shape}")
        height, width = int(array.shape[0]), int(array.shape[1])
        contiguous = np.ascontiguousarray(array, dtype=np.uint8)
        return cls(width, height, bytearray(contiguous.tobytes()))

    @classmethod
    def from_image(cls, image: Image.Image) -> "PixelBuffer":
        rgba = image if image.mode == "RGBA" else image.convert("RGBA")
        width, height = rgba.size
        return cls(width, height, bytearray(rgba.tobytes()))

    def to_image(self) -> Image.Image:
        return Image.frombytes("RGBA", self.size, bytes(self.data))

    def pixels(self) -> np.ndarray:
        """Return a writable ``(height, width, 4)`` view over ``data``."""

        return np.frombuffer(self.data, dtype=np.uint8).reshape(
            (self.height, self.width, CHANNELS)
        )

    def copy(self) -> "PixelBuffer":
        return PixelBuffer(self.width, self.height, bytearray(self.data))

    def full_rect(self) -> Rect:
        return Rect(0, 0, self.width, self.height)


def _check_rect_within(rect: Rect, width: int, height: int) -> None:
    if rect.width < 1 or rect.height < 1:
        raise ConstraintViolation(f"Rectangle {rect} has no area")
    if rect.x < 0 or rect.y < 0 or rect.right > width or rect.bottom > height:
        raise ConstraintViolation(
            f"Rectangle {rect} exceeds buffer extent {width}x{height}"
        )


def has_content(buf: PixelBuffer) -> bool:
    """True when at least one pixel has a nonzero alpha byte."""

    return bool(buf.pixels()[:, :, 3].any())


def content_bounds(buf: PixelBuffer) -> Rect:
    """Return the tight rectangle around every pixel with alpha > 0.

    A fully transparent buffer yields its full extent.
    """

    alpha = buf.pixels()[:, :, 3]
    rows = np.flatnonzero(alpha.any(axis=1))
    if rows.size == 0:
        logger.debug("bounds empty size=%sx%s", buf.width, buf.height)
        return buf.full_rect()
    cols = np.flatnonzero(alpha.any(axis=0))
    top, bottom = int(rows[0]), int(rows[-1])
    left, right = int(cols[0]), int(cols[-1])
    return Rect(left, top, right - left + 1, bottom - top + 1)


def union_rect(first: Rect, second: Rect) -> Rect:
    left = min(first.x, second.x)
    top = min(first.y, second.y)
    right = max(first.right, second.right)
    bottom = max(first.bottom, second.bottom)
    return Rect(left, top, right - left, bottom - top)


def union_all(rects: Iterable[Rect]) -> Rect | None:
    result: Rect | None = None
    for rect in rects:
        result = rect if result is None else union_rect(result, rect)
    return result


def crop(buf: PixelBuffer, rect: Rect) -> PixelBuffer:
    _check_rect_within(rect, buf.width, buf.height)
    region = buf.pixels()[rect.y : rect.bottom, rect.x : rect.right]
    return PixelBuffer.from_array(region)


def resize(buf: PixelBuffer, new_width: int, new_height: int) -> PixelBuffer:
    """Nearest-neighbor resize.

    Destination ``(x, y)`` samples source
    ``(x * src_w // new_width, y * src_h // new_height)`` so hard pixel edges
    survive any ratio.
    """

    if new_width < 1 or new_height < 1:
        raise ConstraintViolation(
            f"Target dimensions must be at least 1x1, got {new_width}x{new_height}"
        )
    xs = (np.arange(new_width, dtype=np.int64) * buf.width) // new_width
    ys = (np.arange(new_height, dtype=np.int64) * buf.height) // new_height
    sampled = buf.pixels()[np.ix_(ys, xs)]
    return PixelBuffer.from_array(sampled)


def scale(buf: PixelBuffer, factor: int) -> PixelBuffer:
    """Integer upscale; ``factor == 1`` returns a copy."""

    if isinstance(factor, bool) or int(factor) != factor or factor < 1:
        raise ConstraintViolation(f"Scale factor must be a positive integer, got {factor!r}")
    factor = int(factor)
    if factor == 1:
        return buf.copy()
    return resize(buf, buf.width * factor, buf.height * factor)


def composite(dst: PixelBuffer, offset_x: int, offset_y: int, src: PixelBuffer) -> PixelBuffer:
    """Return ``dst`` with ``src`` written verbatim at the offset (no blending)."""

    _check_rect_within(Rect(offset_x, offset_y, src.width, src.height), dst.width, dst.height)
    out = dst.pixels().copy()
    out[offset_y : offset_y + src.height, offset_x : offset_x + src.width] = src.pixels()
    return PixelBuffer.from_array(out)
