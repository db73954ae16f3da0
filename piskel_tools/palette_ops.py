"""Palette file loading.

Five source kinds are recognized (GIMP ``.gpl``, text ``.txt``, RIFF and raw
``.pal``, and any raster image used as a swatch). Every loader yields a
deduplicated color list in first-seen order.
"""
from __future__ import annotations

import enum
import logging
import re
import struct
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Iterable, Iterator, List, Tuple

import numpy as np
from PIL import Image, UnidentifiedImageError

from .errors import ParseError, UnsupportedFormatError


logger = logging.getLogger(__name__)

ColorTuple = Tuple[int, int, int]

SWATCH_EXTENSIONS = frozenset({".png", ".jpg", ".jpeg", ".bmp", ".gif", ".webp", ".tga"})

_RIFF_COUNT_OFFSET = 22
_RIFF_DATA_OFFSET = 24
_RIFF_ENTRY_SIZE = 4

_GPL_SKIP_PREFIXES = ("#", "GIMP", "Name:", "Columns:")
_GPL_LINE = re.compile(r"^(\d+)\s+(\d+)\s+(\d+)")
_TXT_HEX_LINE = re.compile(r"^#?([0-9a-fA-F]{6})$")
_TXT_DEC_LINE = re.compile(r"^(\d+)[,\s]+(\d+)[,\s]+(\d+)")


class PaletteSource(enum.Enum):
    GPL = "gpl"
    TXT = "txt"
    PAL_RIFF = "pal-riff"
    PAL_RAW = "pal-raw"
    IMAGE_SWATCH = "image"


@dataclass(frozen=True, slots=True)
class Palette:
    """Immutable, ordered set of RGB colors."""

    colors: Tuple[ColorTuple, ...]
    source: PaletteSource | None = None
    path: Path | None = None

    def __len__(self) -> int:
        return len(self.colors)

    def __iter__(self) -> Iterator[ColorTuple]:
        return iter(self.colors)

    def __getitem__(self, index: int) -> ColorTuple:
        return self.colors[index]

    @classmethod
    def from_colors(cls, colors: Iterable[ColorTuple], **kwargs) -> "Palette":
        return cls(colors=tuple(unique_colors(colors)), **kwargs)


def unique_colors(colors: Iterable[ColorTuple]) -> List[ColorTuple]:
    seen: set[ColorTuple] = set()
    ordered: List[ColorTuple] = []
    for color in colors:
        if color in seen:
            continue
        seen.add(color)
        ordered.append(color)
    return ordered


def classify_palette_source(path: Path, head: bytes = b"") -> PaletteSource:
    """Pick the palette variant from the file extension and leading bytes."""

    ext = path.suffix.lower()
    if ext == ".gpl":
        return PaletteSource.GPL
    if ext == ".txt":
        return PaletteSource.TXT
    if ext == ".pal":
        return PaletteSource.PAL_RIFF if head[:4] == b"RIFF" else PaletteSource.PAL_RAW
    if ext == ".act":
        return PaletteSource.PAL_RAW
    if ext in SWATCH_EXTENSIONS:
        return PaletteSource.IMAGE_SWATCH
    raise UnsupportedFormatError(f"Unsupported palette format: {ext or '<none>'} ({path})")


def _component(value: str, line_no: int) -> int:
    number = int(value)
    if number > 255:
        raise ParseError(f"line {line_no}: color component {number} exceeds 255")
    return number


def parse_gpl(text: str) -> List[ColorTuple]:
    colors: List[ColorTuple] = []
    for line_no, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith(_GPL_SKIP_PREFIXES):
            continue
        match = _GPL_LINE.match(stripped)
        if not match:
            continue
        colors.append(tuple(_component(v, line_no) for v in match.groups()))  # type: ignore[arg-type]
    return unique_colors(colors)


def parse_txt(text: str) -> List[ColorTuple]:
    colors: List[ColorTuple] = []
    for line_no, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith(";"):
            continue
        hex_match = _TXT_HEX_LINE.match(stripped)
        if hex_match:
            value = int(hex_match.group(1), 16)
            colors.append(((value >> 16) & 0xFF, (value >> 8) & 0xFF, value & 0xFF))
            continue
        dec_match = _TXT_DEC_LINE.match(stripped)
        if dec_match:
            colors.append(tuple(_component(v, line_no) for v in dec_match.groups()))  # type: ignore[arg-type]
    return unique_colors(colors)


def parse_riff_pal(data: bytes) -> List[ColorTuple]:
    """Microsoft RIFF ``PAL `` palette: LE16 count at 22, RGBx entries from 24."""

    if len(data) < _RIFF_DATA_OFFSET:
        raise ParseError(f"RIFF palette truncated: {len(data)} bytes, header needs {_RIFF_DATA_OFFSET}")
    (count,) = struct.unpack_from("<H", data, _RIFF_COUNT_OFFSET)
    end = _RIFF_DATA_OFFSET + count * _RIFF_ENTRY_SIZE
    if len(data) < end:
        raise ParseError(
            f"RIFF palette declares {count} colors but holds only "
            f"{(len(data) - _RIFF_DATA_OFFSET) // _RIFF_ENTRY_SIZE}"
        )
    colors: List[ColorTuple] = []
    for offset in range(_RIFF_DATA_OFFSET, end, _RIFF_ENTRY_SIZE):
        colors.append((data[offset], data[offset + 1], data[offset + 2]))
    return unique_colors(colors)


def parse_raw_pal(data: bytes) -> List[ColorTuple]:
    """Flat RGB triplets (also Adobe ACT); a trailing partial triplet is dropped."""

    usable = len(data) - len(data) % 3
    colors: List[ColorTuple] = []
    for i in range(0, usable, 3):
        colors.append((data[i], data[i + 1], data[i + 2]))
    return unique_colors(colors)


def parse_image_swatch(data: bytes) -> List[ColorTuple]:
    try:
        with Image.open(BytesIO(data)) as img:
            pixels = np.asarray(img.convert("RGBA"), dtype=np.uint8).reshape(-1, 4)
    except (UnidentifiedImageError, OSError) as exc:
        raise ParseError(f"Cannot decode swatch image: {exc}") from exc
    visible = pixels[pixels[:, 3] > 0, :3]
    return unique_colors(map(tuple, visible.tolist()))


def _decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ParseError(f"Palette text is not valid UTF-8: {exc}") from exc


def parse_palette_bytes(source: PaletteSource, data: bytes) -> List[ColorTuple]:
    if source is PaletteSource.GPL:
        return parse_gpl(_decode_text(data))
    if source is PaletteSource.TXT:
        return parse_txt(_decode_text(data))
    if source is PaletteSource.PAL_RIFF:
        return parse_riff_pal(data)
    if source is PaletteSource.PAL_RAW:
        return parse_raw_pal(data)
    if source is PaletteSource.IMAGE_SWATCH:
        return parse_image_swatch(data)
    raise UnsupportedFormatError(f"Unhandled palette source {source!r}")


def load_palette(path: Path) -> Palette:
    """Load ``path`` into an immutable :class:`Palette`.

    An empty palette is returned as-is; matching code rejects it later.
    """

    path = Path(path)
    data = path.read_bytes()
    source = classify_palette_source(path, data[:4])
    try:
        colors = parse_palette_bytes(source, data)
    except ParseError as exc:
        raise ParseError(f"{path}: {exc}") from exc
    logger.debug("palette.load path=%s source=%s colors=%s", path, source.value, len(colors))
    return Palette(colors=tuple(colors), source=source, path=path)
