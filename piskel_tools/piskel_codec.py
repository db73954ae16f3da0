"""Piskel container model, persistence and frame-level transforms.

A ``.piskel`` file is JSON whose layers are themselves JSON strings. Each layer
stores one or more chunks: a PNG spritesheet (as a base64 data URL) plus a
layout naming which stored frame every tile slot shows.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
import math
import re
from dataclasses import dataclass, field
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple

from PIL import Image, UnidentifiedImageError

from .errors import ConstraintViolation, FrameIndexOutOfRange, ParseError
from .pixel_ops import (
    PixelBuffer,
    Rect,
    composite,
    content_bounds,
    crop,
    has_content,
    resize,
    scale,
    union_all,
)


logger = logging.getLogger(__name__)

MODEL_VERSION = 2
DEFAULT_FPS = 12
DEFAULT_LAYER_NAME = "Layer 1"
PNG_DATA_URL_PREFIX = "data:image/png;base64,"
_DATA_URL_PREFIX = re.compile(r"^data:[^,]*;base64,")


@dataclass(slots=True)
class Chunk:
    """One spritesheet image plus its slot-to-frame layout."""

    layout: List[int]
    sheet: PixelBuffer | None = None


@dataclass(slots=True)
class Layer:
    name: str
    opacity: float = 1.0
    frame_count: int = 0
    chunks: List[Chunk] = field(default_factory=list)


@dataclass(slots=True)
class SpriteContainer:
    name: str
    width: int
    height: int
    layers: List[Layer] = field(default_factory=list)
    description: str = ""
    fps: int = DEFAULT_FPS
    hidden_frames: List[int] = field(default_factory=list)
    model_version: int = MODEL_VERSION

    @property
    def frame_count(self) -> int:
        return max((layer.frame_count for layer in self.layers), default=0)


@dataclass(slots=True)
class TransformOptions:
    crop: bool = False
    resize: Tuple[int, int] | None = None
    scale: float | None = None

    @property
    def is_noop(self) -> bool:
        return not self.crop and self.resize is None and self.scale is None


@dataclass(slots=True)
class TransformResult:
    width: int
    height: int
    crop_rect: Rect | None
    frames: int


def decode_png_data_url(value: str) -> PixelBuffer:
    payload = _DATA_URL_PREFIX.sub("", value.strip(), count=1)
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ParseError(f"Invalid base64 image payload: {exc}") from exc
    try:
        with Image.open(BytesIO(raw)) as img:
            return PixelBuffer.from_image(img)
    except (UnidentifiedImageError, OSError) as exc:
        raise ParseError(f"Cannot decode embedded PNG: {exc}") from exc


def encode_png_data_url(buffer: PixelBuffer) -> str:
    stream = BytesIO()
    buffer.to_image().save(stream, format="PNG")
    return PNG_DATA_URL_PREFIX + base64.b64encode(stream.getvalue()).decode("ascii")


def _parse_layout(raw: Any, where: str) -> List[int]:
    if not isinstance(raw, list):
        raise ParseError(f"{where}: layout must be a list")
    layout: List[int] = []
    for slot, entry in enumerate(raw):
        value = entry[0] if isinstance(entry, list) and entry else entry
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ParseError(f"{where}: invalid frame index {entry!r} at slot {slot}")
        layout.append(value)
    return layout


def _parse_chunk(raw: Any, where: str, default_layout: List[int]) -> Chunk:
    if not isinstance(raw, dict):
        raise ParseError(f"{where}: chunk must be an object")
    layout = _parse_layout(raw["layout"], where) if "layout" in raw else list(default_layout)
    payload = raw.get("base64PNG")
    if not payload:
        return Chunk(layout=layout, sheet=None)
    try:
        sheet = decode_png_data_url(str(payload))
    except ParseError as exc:
        raise ParseError(f"{where}: {exc}") from exc
    return Chunk(layout=layout, sheet=sheet)


def parse_layer(raw: Any, where: str = "layer") -> Layer:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ParseError(f"{where}: invalid layer JSON ({exc})") from exc
    if not isinstance(raw, dict):
        raise ParseError(f"{where}: layer must be an object")
    try:
        frame_count = int(raw.get("frameCount", 0))
        opacity = float(raw.get("opacity", 1.0))
    except (TypeError, ValueError) as exc:
        raise ParseError(f"{where}: invalid frameCount/opacity ({exc})") from exc
    identity = list(range(frame_count))
    chunks: List[Chunk] = []
    if "chunks" in raw:
        raw_chunks = raw["chunks"]
        if not isinstance(raw_chunks, list):
            raise ParseError(f"{where}: chunks must be a list")
        for index, raw_chunk in enumerate(raw_chunks):
            chunks.append(_parse_chunk(raw_chunk, f"{where} chunk {index}", identity))
    elif raw.get("base64PNG"):
        # Older files keep a single sheet directly on the layer.
        chunks.append(_parse_chunk({"base64PNG": raw["base64PNG"]}, f"{where} sheet", identity))
    return Layer(
        name=str(raw.get("name", DEFAULT_LAYER_NAME)),
        opacity=opacity,
        frame_count=frame_count,
        chunks=chunks,
    )


def parse_piskel(text: str, source: str = "<memory>") -> SpriteContainer:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ParseError(f"{source}: invalid JSON ({exc})") from exc
    if not isinstance(payload, dict) or not isinstance(payload.get("piskel"), dict):
        raise ParseError(f"{source}: missing 'piskel' object")
    body = payload["piskel"]
    try:
        width = int(body["width"])
        height = int(body["height"])
        fps = int(body.get("fps", DEFAULT_FPS))
        model_version = int(payload.get("modelVersion", MODEL_VERSION))
    except (KeyError, TypeError, ValueError) as exc:
        raise ParseError(f"{source}: invalid sprite header ({exc})") from exc
    if width < 1 or height < 1:
        raise ParseError(f"{source}: sprite dimensions must be positive, got {width}x{height}")
    raw_layers = body.get("layers", [])
    if not isinstance(raw_layers, list):
        raise ParseError(f"{source}: layers must be a list")
    layers = [parse_layer(raw, f"{source} layer {i}") for i, raw in enumerate(raw_layers)]
    hidden = body.get("hiddenFrames", [])
    return SpriteContainer(
        name=str(body.get("name", "")),
        description=str(body.get("description", "")),
        fps=fps,
        width=width,
        height=height,
        layers=layers,
        hidden_frames=list(hidden) if isinstance(hidden, list) else [],
        model_version=model_version,
    )


def _chunk_to_dict(chunk: Chunk) -> Dict[str, Any]:
    data: Dict[str, Any] = {"layout": [[index] for index in chunk.layout]}
    if chunk.sheet is not None:
        data["base64PNG"] = encode_png_data_url(chunk.sheet)
    return data


def layer_to_dict(layer: Layer) -> Dict[str, Any]:
    return {
        "name": layer.name,
        "opacity": layer.opacity,
        "frameCount": layer.frame_count,
        "chunks": [_chunk_to_dict(chunk) for chunk in layer.chunks],
    }


def to_dict(container: SpriteContainer) -> Dict[str, Any]:
    return {
        "modelVersion": container.model_version,
        "piskel": {
            "name": container.name,
            "description": container.description,
            "fps": container.fps,
            "height": container.height,
            "width": container.width,
            "layers": [json.dumps(layer_to_dict(layer)) for layer in container.layers],
            "hiddenFrames": list(container.hidden_frames),
        },
    }


def dumps_piskel(container: SpriteContainer) -> str:
    return json.dumps(to_dict(container), indent=2)


def load_piskel(path: Path) -> SpriteContainer:
    path = Path(path)
    container = parse_piskel(path.read_text(encoding="utf-8"), source=str(path))
    logger.debug(
        "piskel.load path=%s size=%sx%s layers=%s frames=%s",
        path,
        container.width,
        container.height,
        len(container.layers),
        container.frame_count,
    )
    return container


def save_piskel(container: SpriteContainer, path: Path) -> None:
    Path(path).write_text(dumps_piskel(container), encoding="utf-8")


def decode_chunk(chunk: Chunk, frame_width: int, frame_height: int) -> List[Tuple[int, PixelBuffer]]:
    """Return ``(stored_frame_index, tile)`` for every layout slot of ``chunk``."""

    sheet = chunk.sheet
    if sheet is None:
        return []
    if sheet.width % frame_width:
        logger.warning(
            "Spritesheet width %s is not a multiple of frame width %s", sheet.width, frame_width
        )
    tiles_per_row = max(1, sheet.width // frame_width)
    tiles: List[Tuple[int, PixelBuffer]] = []
    for slot, frame_index in enumerate(chunk.layout):
        rect = Rect(
            (slot % tiles_per_row) * frame_width,
            (slot // tiles_per_row) * frame_height,
            frame_width,
            frame_height,
        )
        try:
            tile = crop(sheet, rect)
        except ConstraintViolation as exc:
            raise ParseError(
                f"Tile slot {slot} (frame {frame_index}) lies outside the "
                f"{sheet.width}x{sheet.height} spritesheet"
            ) from exc
        tiles.append((frame_index, tile))
    return tiles


def decode_layer(layer: Layer, frame_width: int, frame_height: int) -> List[PixelBuffer]:
    """Return the layer's frames ordered by stored-frame index.

    When several slots name the same frame, the last one wins. Frames named
    by ``frame_count`` but missing from every chunk come back transparent.
    A layer with no image payload yields no frames.
    """

    frames: Dict[int, PixelBuffer] = {}
    for chunk_index, chunk in enumerate(layer.chunks):
        for slot, (frame_index, tile) in enumerate(decode_chunk(chunk, frame_width, frame_height)):
            if frame_index in frames:
                logger.warning(
                    "Layer %r chunk %s slot %s repeats frame %s; the later tile wins",
                    layer.name,
                    chunk_index,
                    slot,
                    frame_index,
                )
            frames[frame_index] = tile
    if not frames:
        return []
    count = max(layer.frame_count, max(frames) + 1)
    return [
        frames[index] if index in frames else PixelBuffer.blank(frame_width, frame_height)
        for index in range(count)
    ]


def decode_container(container: SpriteContainer) -> List[List[PixelBuffer]]:
    return [decode_layer(layer, container.width, container.height) for layer in container.layers]


def encode_frames(frames: Sequence[PixelBuffer]) -> Chunk:
    """Tile ``frames`` into a single-row spritesheet with an identity layout."""

    if not frames:
        raise ConstraintViolation("Cannot encode an empty frame list")
    frame_width, frame_height = frames[0].size
    for index, frame in enumerate(frames):
        if frame.size != (frame_width, frame_height):
            raise ConstraintViolation(
                f"Frame {index} is {frame.width}x{frame.height}, expected {frame_width}x{frame_height}"
            )
    sheet = PixelBuffer.blank(frame_width * len(frames), frame_height)
    for index, frame in enumerate(frames):
        sheet = composite(sheet, index * frame_width, 0, frame)
    return Chunk(layout=list(range(len(frames))), sheet=sheet)


def encode_layer(layer: Layer, frames: Sequence[PixelBuffer]) -> None:
    """Replace the layer's chunks with one identity-layout chunk.

    Layers without frames keep their (payload-less) chunks.
    """

    if not frames:
        return
    layer.chunks = [encode_frames(frames)]
    layer.frame_count = len(frames)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def resolve_target_size(width: int, height: int, options: TransformOptions) -> Tuple[int, int]:
    """Explicit resize wins over scale; otherwise dimensions are unchanged."""

    if options.resize is not None:
        target_w, target_h = options.resize
        if target_w < 1 or target_h < 1:
            raise ConstraintViolation(f"Resize target must be at least 1x1, got {target_w}x{target_h}")
        return int(target_w), int(target_h)
    if options.scale is not None:
        if options.scale <= 0:
            raise ConstraintViolation(f"Scale factor must be positive, got {options.scale}")
        return (
            max(1, _round_half_up(width * options.scale)),
            max(1, _round_half_up(height * options.scale)),
        )
    return width, height


def global_content_rect(layer_frames: Sequence[Sequence[PixelBuffer]]) -> Rect | None:
    """Union of the content bounds of every non-transparent frame."""

    return union_all(
        content_bounds(frame)
        for frames in layer_frames
        for frame in frames
        if has_content(frame)
    )


def transform_container(container: SpriteContainer, options: TransformOptions) -> TransformResult:
    """Crop and/or resize every frame of every layer identically, in place.

    Cropping uses one rectangle shared by all frames so the animation stays
    aligned; crop always happens before resize.
    """

    layer_frames = decode_container(container)
    crop_rect: Rect | None = None
    if options.crop:
        crop_rect = global_content_rect(layer_frames)
        if crop_rect is None:
            logger.debug("transform.crop skipped: every frame is transparent")
    current_w, current_h = (
        (crop_rect.width, crop_rect.height) if crop_rect else (container.width, container.height)
    )
    target_w, target_h = resolve_target_size(current_w, current_h, options)
    logger.debug(
        "transform size=%sx%s crop=%s target=%sx%s",
        container.width,
        container.height,
        crop_rect,
        target_w,
        target_h,
    )

    total = 0
    for layer, frames in zip(container.layers, layer_frames):
        transformed: List[PixelBuffer] = []
        for frame in frames:
            if crop_rect is not None:
                frame = crop(frame, crop_rect)
            if frame.size != (target_w, target_h):
                frame = resize(frame, target_w, target_h)
            transformed.append(frame)
        encode_layer(layer, transformed)
        total += len(transformed)

    container.width = target_w
    container.height = target_h
    return TransformResult(width=target_w, height=target_h, crop_rect=crop_rect, frames=total)


def container_from_buffer(
    buffer: PixelBuffer,
    name: str,
    *,
    fps: int = DEFAULT_FPS,
    description: str = "",
) -> SpriteContainer:
    """Wrap one image as a one-frame, one-layer sprite."""

    layer = Layer(name=DEFAULT_LAYER_NAME, opacity=1.0)
    encode_layer(layer, [buffer])
    return SpriteContainer(
        name=name,
        description=description,
        fps=fps,
        width=buffer.width,
        height=buffer.height,
        layers=[layer],
    )


def layer_frames(container: SpriteContainer, layer_index: int = 0) -> List[PixelBuffer]:
    if not 0 <= layer_index < len(container.layers):
        raise ConstraintViolation(
            f"Layer {layer_index} out of range (sprite has {len(container.layers)} layer(s))"
        )
    return decode_layer(container.layers[layer_index], container.width, container.height)


def extract_frame(
    container: SpriteContainer,
    index: int,
    *,
    factor: int = 1,
    layer_index: int = 0,
) -> PixelBuffer:
    frames = layer_frames(container, layer_index)
    if not 0 <= index < len(frames):
        raise FrameIndexOutOfRange(index, len(frames))
    return scale(frames[index], factor)


def assemble_spritesheet(frames: Sequence[PixelBuffer], columns: int | None = None) -> PixelBuffer:
    """Lay ``frames`` out row-major; the default is a single row."""

    if not frames:
        raise ConstraintViolation("No frames to assemble")
    cols = len(frames) if columns is None else columns
    if cols < 1:
        raise ConstraintViolation(f"Column count must be at least 1, got {cols}")
    frame_width, frame_height = frames[0].size
    rows = math.ceil(len(frames) / cols)
    sheet = PixelBuffer.blank(frame_width * cols, frame_height * rows)
    for index, frame in enumerate(frames):
        sheet = composite(sheet, (index % cols) * frame_width, (index // cols) * frame_height, frame)
    return sheet


def render_spritesheet(
    container: SpriteContainer,
    *,
    columns: int | None = None,
    factor: int = 1,
    layer_index: int = 0,
) -> PixelBuffer:
    frames = [scale(frame, factor) for frame in layer_frames(container, layer_index)]
    return assemble_spritesheet(frames, columns)
