"""Nearest-color matching against a fixed palette using the redmean metric."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List

import numpy as np

from .errors import EmptyPaletteError
from .palette_ops import ColorTuple
from .pixel_ops import PixelBuffer


logger = logging.getLogger(__name__)

# Caps sources x palette cells in the per-batch distance matrix.
_MAX_CELLS = 1 << 20


def redmean_distance(first: ColorTuple, second: ColorTuple) -> int:
    """Squared redmean distance; only ever compared, so no square root."""

    r1, g1, b1 = first
    r2, g2, b2 = second
    r_mean = (r1 + r2) // 2
    dr = r1 - r2
    dg = g1 - g2
    db = b1 - b2
    return ((512 + r_mean) * dr * dr) // 256 + 4 * dg * dg + ((767 - r_mean) * db * db) // 256


@dataclass(slots=True)
class MatchStats:
    pixels_changed: int = 0
    unique_colors: int = 0

    def merge(self, other: "MatchStats") -> None:
        self.pixels_changed += other.pixels_changed
        self.unique_colors += other.unique_colors


class ColorMatcher:
    """Maps colors to their nearest palette entry.

    The instance owns a cache keyed by exact source RGB, so one matcher should
    be reused for every buffer of a pass over the same palette. Ties go to the
    earliest palette entry.
    """

    def __init__(self, palette: Iterable[ColorTuple]) -> None:
        colors = tuple(tuple(int(c) for c in color) for color in palette)
        if not colors:
            raise EmptyPaletteError("Cannot match colors against an empty palette")
        self.colors: tuple[ColorTuple, ...] = colors  # type: ignore[assignment]
        self._palette = np.array(colors, dtype=np.int32)
        self._cache: Dict[ColorTuple, ColorTuple] = {}

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def reset(self) -> None:
        self._cache.clear()

    def nearest(self, color: ColorTuple) -> ColorTuple:
        cached = self._cache.get(color)
        if cached is not None:
            return cached
        index = int(self._nearest_indices(np.array([color], dtype=np.int32))[0])
        result = self.colors[index]
        self._cache[color] = result
        return result

    def _nearest_indices(self, sources: np.ndarray) -> np.ndarray:
        pal = self._palette[None, :, :]
        rows = max(1, _MAX_CELLS // len(self._palette))
        sources = sources.astype(np.int32, copy=False)
        out: List[np.ndarray] = []
        for start in range(0, len(sources), rows):
            src = sources[start : start + rows, None, :]
            diff = src - pal
            r_mean = (src[:, :, 0] + pal[:, :, 0]) // 2
            dist = (
                ((512 + r_mean) * diff[:, :, 0] ** 2) // 256
                + 4 * diff[:, :, 1] ** 2
                + ((767 - r_mean) * diff[:, :, 2] ** 2) // 256
            )
            # argmin returns the first minimum, matching load-order tie-breaks.
            out.append(np.argmin(dist, axis=1))
        return np.concatenate(out) if out else np.empty(0, dtype=np.int64)

    def match(self, buffer: PixelBuffer) -> MatchStats:
        """Replace RGB of every non-transparent pixel in place; alpha is kept."""

        px = buffer.pixels()
        opaque = px[:, :, 3] != 0
        if not opaque.any():
            return MatchStats()
        rgb = px[opaque][:, :3].astype(np.int64)
        keys = (rgb[:, 0] << 16) | (rgb[:, 1] << 8) | rgb[:, 2]
        unique_keys, inverse = np.unique(keys, return_inverse=True)
        unique_rgb = np.stack(
            [(unique_keys >> 16) & 0xFF, (unique_keys >> 8) & 0xFF, unique_keys & 0xFF], axis=1
        )

        replacements = np.empty((len(unique_keys), 3), dtype=np.uint8)
        missing: List[int] = []
        for i, source in enumerate(map(tuple, unique_rgb.tolist())):
            cached = self._cache.get(source)
            if cached is None:
                missing.append(i)
            else:
                replacements[i] = cached
        if missing:
            chosen = self._nearest_indices(unique_rgb[missing])
            for i, palette_index in zip(missing, chosen.tolist()):
                color = self.colors[palette_index]
                replacements[i] = color
                self._cache[tuple(unique_rgb[i].tolist())] = color

        new_rgb = replacements[inverse.reshape(-1)]
        changed = int(np.count_nonzero(np.any(new_rgb != rgb, axis=1)))
        px[opaque, :3] = new_rgb
        logger.debug(
            "match size=%sx%s opaque=%s unique=%s resolved=%s changed=%s",
            buffer.width,
            buffer.height,
            len(rgb),
            len(unique_keys),
            len(missing),
            changed,
        )
        return MatchStats(pixels_changed=changed, unique_colors=len(unique_keys))


def match_to_palette(buffer: PixelBuffer, palette: Iterable[ColorTuple]) -> MatchStats:
    """One-shot form of :meth:`ColorMatcher.match` with a fresh cache."""

    return ColorMatcher(palette).match(buffer)
