"""Exception hierarchy shared by the palette, matching and container modules."""
from __future__ import annotations


class PiskelToolsError(RuntimeError):
    """Base class for every error raised by piskel_tools."""


class UnsupportedFormatError(PiskelToolsError):
    """Raised when a palette or image source has an unrecognized format."""


class ParseError(PiskelToolsError):
    """Raised when a recognized format contains malformed or truncated data."""


class EmptyPaletteError(PiskelToolsError):
    """Raised when color matching is attempted against zero colors."""


class ConstraintViolation(PiskelToolsError, ValueError):
    """Raised for rectangles outside a buffer or non-positive dimensions."""


class FrameIndexOutOfRange(PiskelToolsError, IndexError):
    """Raised when a frame selector falls outside ``[0, frame_count)``."""

    def __init__(self, index: int, frame_count: int) -> None:
        self.index = index
        self.frame_count = frame_count
        if frame_count > 0:
            message = f"Frame {index} out of range (0-{frame_count - 1})"
        else:
            message = f"Frame {index} out of range (sprite has no frames)"
        super().__init__(message)
