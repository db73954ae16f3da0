"""Directory scanning helpers for batch sprite processing."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, List, Sequence

PISKEL_EXTENSIONS = frozenset({".piskel"})
IMAGE_EXTENSIONS = frozenset({".png"})


def _normalize_exts(exts: Iterable[str]) -> set[str]:
    return {ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in exts}


@dataclass(slots=True)
class ScanOptions:
    roots: Sequence[Path]
    allowed_exts: Iterable[str]
    recursive: bool = False


def iter_files(options: ScanOptions) -> Iterator[Path]:
    """Yield files matching extensions under the given roots, sorted per root."""

    allowed = _normalize_exts(options.allowed_exts)
    for root in options.roots:
        root = root.expanduser()
        candidates = root.rglob("*") if options.recursive else root.glob("*")
        for path in sorted(candidates):
            if path.is_file() and path.suffix.lower() in allowed:
                yield path


def expand_inputs(inputs: Iterable[Path], allowed_exts: Iterable[str], recursive: bool) -> List[Path]:
    """Explicit files pass through untouched; folders are scanned.

    Raises ``FileNotFoundError`` for a path that is neither.
    """

    files: List[Path] = []
    for path in inputs:
        if path.is_file():
            files.append(path)
        elif path.is_dir():
            files.extend(iter_files(ScanOptions(roots=[path], allowed_exts=allowed_exts, recursive=recursive)))
        else:
            raise FileNotFoundError(path)
    return files
