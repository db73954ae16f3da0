"""Per-file sprite operations used by the batch CLI."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Tuple

from PIL import Image, UnidentifiedImageError

from .errors import UnsupportedFormatError
from .matching import ColorMatcher, MatchStats
from .piskel_codec import (
    DEFAULT_FPS,
    SpriteContainer,
    TransformOptions,
    container_from_buffer,
    extract_frame,
    load_piskel,
    render_spritesheet,
    save_piskel,
    transform_container,
)
from .pixel_ops import PixelBuffer, content_bounds, crop, resize


logger = logging.getLogger(__name__)

PISKEL_SUFFIX = ".piskel"
PNG_SUFFIX = ".png"


def parse_size(value: str) -> Tuple[int, int]:
    """Parse ``WxH`` into a positive ``(width, height)`` pair."""

    text = value.strip().lower()
    parts = text.split("x")
    if len(parts) != 2:
        raise ValueError(f"Expected size in the form WxH, got {value!r}")
    try:
        width, height = int(parts[0]), int(parts[1])
    except ValueError as exc:
        raise ValueError(f"Expected size in the form WxH, got {value!r}") from exc
    if width < 1 or height < 1:
        raise ValueError(f"Size must be at least 1x1, got {value!r}")
    return width, height


def resolve_output_path(input_path: Path, output_dir: Path | None, suffix: str, extension: str) -> Path:
    """``<output_dir or input dir>/<stem><suffix><extension>``."""

    directory = output_dir if output_dir is not None else input_path.parent
    return directory / f"{input_path.stem}{suffix}{extension}"


def _prepare_output(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def load_image_buffer(path: Path) -> PixelBuffer:
    try:
        with Image.open(path) as img:
            return PixelBuffer.from_image(img)
    except UnidentifiedImageError as exc:
        raise UnsupportedFormatError(f"Unrecognized image format: {path}") from exc


def save_image_buffer(buffer: PixelBuffer, path: Path) -> None:
    buffer.to_image().save(path, format="PNG")


@dataclass(slots=True)
class MatchOptions:
    input_path: Path
    output_dir: Path | None = None
    suffix: str = ""


@dataclass(slots=True)
class MatchResult:
    input_path: Path
    output_path: Path
    layers: int
    unique_colors: int
    pixels_changed: int


def match_sprite(container: SpriteContainer, matcher: ColorMatcher) -> MatchStats:
    """Match every stored spritesheet of every layer; layouts are untouched."""

    stats = MatchStats()
    for layer in container.layers:
        for chunk in layer.chunks:
            if chunk.sheet is not None:
                stats.merge(matcher.match(chunk.sheet))
    return stats


def match_piskel(options: MatchOptions, matcher: ColorMatcher) -> MatchResult:
    container = load_piskel(options.input_path)
    matcher.reset()
    stats = match_sprite(container, matcher)
    output_path = _prepare_output(
        resolve_output_path(options.input_path, options.output_dir, options.suffix, PISKEL_SUFFIX)
    )
    save_piskel(container, output_path)
    logger.debug(
        "match.file path=%s layers=%s colors=%s changed=%s",
        options.input_path,
        len(container.layers),
        matcher.cache_size,
        stats.pixels_changed,
    )
    return MatchResult(
        input_path=options.input_path,
        output_path=output_path,
        layers=len(container.layers),
        unique_colors=matcher.cache_size,
        pixels_changed=stats.pixels_changed,
    )


@dataclass(slots=True)
class TransformFileOptions:
    input_path: Path
    transform: TransformOptions = field(default_factory=TransformOptions)
    output_dir: Path | None = None
    suffix: str = ""


@dataclass(slots=True)
class TransformFileResult:
    input_path: Path
    output_path: Path
    width: int
    height: int


def transform_piskel(options: TransformFileOptions) -> TransformFileResult:
    container = load_piskel(options.input_path)
    result = transform_container(container, options.transform)
    output_path = _prepare_output(
        resolve_output_path(options.input_path, options.output_dir, options.suffix, PISKEL_SUFFIX)
    )
    save_piskel(container, output_path)
    return TransformFileResult(
        input_path=options.input_path,
        output_path=output_path,
        width=result.width,
        height=result.height,
    )


@dataclass(slots=True)
class ExportOptions:
    input_path: Path
    output_dir: Path | None = None
    scale: int = 1
    frame: int | None = None
    columns: int | None = None
    layer: int = 0


@dataclass(slots=True)
class ExportResult:
    input_path: Path
    output_path: Path
    width: int
    height: int
    frames: int


def export_piskel(options: ExportOptions) -> ExportResult:
    container = load_piskel(options.input_path)
    if options.frame is not None:
        image = extract_frame(container, options.frame, factor=options.scale, layer_index=options.layer)
        suffix = f"-frame{options.frame}"
    else:
        image = render_spritesheet(
            container, columns=options.columns, factor=options.scale, layer_index=options.layer
        )
        suffix = ""
    output_path = _prepare_output(
        resolve_output_path(options.input_path, options.output_dir, suffix, PNG_SUFFIX)
    )
    save_image_buffer(image, output_path)
    return ExportResult(
        input_path=options.input_path,
        output_path=output_path,
        width=image.width,
        height=image.height,
        frames=container.frame_count,
    )


@dataclass(slots=True)
class ImportOptions:
    input_path: Path
    output_dir: Path | None = None
    name: str | None = None
    fps: int = DEFAULT_FPS


@dataclass(slots=True)
class ImportResult:
    input_path: Path
    output_path: Path
    width: int
    height: int


def import_image(options: ImportOptions, matcher: ColorMatcher | None = None) -> ImportResult:
    buffer = load_image_buffer(options.input_path)
    if matcher is not None:
        matcher.match(buffer)
    container = container_from_buffer(
        buffer, options.name or options.input_path.stem, fps=options.fps
    )
    output_path = _prepare_output(
        resolve_output_path(options.input_path, options.output_dir, "", PISKEL_SUFFIX)
    )
    save_piskel(container, output_path)
    return ImportResult(
        input_path=options.input_path,
        output_path=output_path,
        width=buffer.width,
        height=buffer.height,
    )


@dataclass(slots=True)
class PipelineOptions:
    input_path: Path
    output_dir: Path | None = None
    size: Tuple[int, int] | None = None
    crop: bool = False


@dataclass(slots=True)
class PipelineResult:
    input_path: Path
    output_path: Path
    original_size: Tuple[int, int]
    final_size: Tuple[int, int]


def run_pipeline(options: PipelineOptions, matcher: ColorMatcher | None = None) -> PipelineResult:
    buffer = load_image_buffer(options.input_path)
    original_size = buffer.size
    if matcher is not None:
        matcher.match(buffer)
    if options.crop:
        buffer = crop(buffer, content_bounds(buffer))
    if options.size is not None and buffer.size != options.size:
        buffer = resize(buffer, *options.size)
    container = container_from_buffer(buffer, options.input_path.stem)
    output_path = _prepare_output(
        resolve_output_path(options.input_path, options.output_dir, "", PISKEL_SUFFIX)
    )
    save_piskel(container, output_path)
    logger.debug(
        "pipeline.file path=%s original=%s final=%s", options.input_path, original_size, buffer.size
    )
    return PipelineResult(
        input_path=options.input_path,
        output_path=output_path,
        original_size=original_size,
        final_size=buffer.size,
    )
