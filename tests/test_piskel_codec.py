import json
import logging

import numpy as np
import pytest

from piskel_tools.errors import ConstraintViolation, FrameIndexOutOfRange, ParseError
from piskel_tools.piskel_codec import (
    Chunk,
    Layer,
    SpriteContainer,
    TransformOptions,
    assemble_spritesheet,
    container_from_buffer,
    decode_container,
    decode_layer,
    dumps_piskel,
    encode_frames,
    encode_png_data_url,
    extract_frame,
    load_piskel,
    parse_piskel,
    render_spritesheet,
    resolve_target_size,
    save_piskel,
    transform_container,
)
from piskel_tools.pixel_ops import PixelBuffer, Rect


def _frame(width, height, rect=None, color=(255, 0, 0, 255)):
    buf = PixelBuffer.blank(width, height)
    if rect is not None:
        x, y, w, h = rect
        buf.pixels()[y : y + h, x : x + w] = color
    return buf


def _numbered_frames(count, width=3, height=2):
    frames = []
    for index in range(count):
        arr = np.zeros((height, width, 4), dtype=np.uint8)
        arr[:, :] = (index * 20, 255 - index * 20, index, 255)
        arr[0, 0] = (1, 2, 3, 0)
        frames.append(PixelBuffer.from_array(arr))
    return frames


def _container(frames, width, height, layers=1):
    built = []
    for index in range(layers):
        layer = Layer(name=f"Layer {index + 1}")
        chunk = encode_frames(frames)
        layer.chunks = [chunk]
        layer.frame_count = len(frames)
        built.append(layer)
    return SpriteContainer(name="sprite", width=width, height=height, layers=built)


def test_encode_tiles_frames_in_one_row():
    frames = _numbered_frames(3)
    chunk = encode_frames(frames)
    assert chunk.layout == [0, 1, 2]
    assert chunk.sheet.size == (9, 2)
    assert np.array_equal(chunk.sheet.pixels()[:, 3:6], frames[1].pixels())


def test_encode_rejects_mixed_dimensions():
    with pytest.raises(ConstraintViolation):
        encode_frames([PixelBuffer.blank(2, 2), PixelBuffer.blank(3, 2)])


def test_decode_follows_layout_and_tile_grid():
    frames = _numbered_frames(4)
    # 2x2 grid sheet, slots store frames in order 2, 0, 3, 1
    order = [2, 0, 3, 1]
    sheet = assemble_spritesheet([frames[i] for i in order], columns=2)
    layer = Layer(name="L", frame_count=4, chunks=[Chunk(layout=order, sheet=sheet)])
    decoded = decode_layer(layer, 3, 2)
    assert [f.data for f in decoded] == [f.data for f in frames]


def test_repeated_layout_index_keeps_last_tile(caplog):
    tiles = _numbered_frames(3)
    sheet = assemble_spritesheet(tiles)
    layer = Layer(name="L", frame_count=3, chunks=[Chunk(layout=[0, 0, 1], sheet=sheet)])
    with caplog.at_level(logging.WARNING, logger="piskel_tools.piskel_codec"):
        decoded = decode_layer(layer, 3, 2)
    assert decoded[0].data == tiles[1].data
    assert decoded[1].data == tiles[2].data
    assert not any(decoded[2].data)
    assert "slot 1 repeats frame 0" in caplog.text


def test_decode_then_encode_preserves_frames_with_identity_layout():
    frames = _numbered_frames(3)
    sheet = assemble_spritesheet([frames[2], frames[0], frames[1]])
    layer = Layer(name="L", frame_count=3, chunks=[Chunk(layout=[2, 0, 1], sheet=sheet)])
    container = SpriteContainer(name="s", width=3, height=2, layers=[layer])

    before = decode_container(container)
    transform_container(container, TransformOptions())
    assert container.layers[0].chunks[0].layout == [0, 1, 2]
    after = decode_container(container)
    assert [f.data for f in after[0]] == [f.data for f in before[0]]


def test_chunk_without_payload_contributes_no_frames():
    layer = Layer(name="empty", frame_count=2, chunks=[Chunk(layout=[0, 1], sheet=None)])
    assert decode_layer(layer, 4, 4) == []


def test_missing_frames_are_filled_transparent():
    frames = _numbered_frames(1)
    layer = Layer(name="L", frame_count=3, chunks=[Chunk(layout=[1], sheet=frames[0])])
    decoded = decode_layer(layer, 3, 2)
    assert len(decoded) == 3
    assert decoded[1].data == frames[0].data
    assert not any(decoded[0].data)


def test_tile_outside_sheet_is_parse_error():
    layer = Layer(name="L", frame_count=2, chunks=[Chunk(layout=[0, 1], sheet=PixelBuffer.blank(3, 2))])
    with pytest.raises(ParseError, match="slot 1"):
        decode_layer(layer, 3, 2)


def test_crop_uses_union_of_frame_bounds():
    f0 = _frame(6, 6, (0, 0, 2, 2))
    f1 = _frame(6, 6, (1, 1, 3, 3), color=(0, 0, 255, 255))
    container = _container([f0, f1], 6, 6)
    result = transform_container(container, TransformOptions(crop=True))
    assert result.crop_rect == Rect(0, 0, 4, 4)
    assert (container.width, container.height) == (4, 4)
    frames = decode_container(container)[0]
    assert [f.size for f in frames] == [(4, 4), (4, 4)]
    # frame 1 content still sits at (1, 1) relative to the shared crop
    assert tuple(frames[1].pixels()[1, 1]) == (0, 0, 255, 255)
    assert frames[1].pixels()[0, 0, 3] == 0


def test_crop_union_spans_layers():
    layer_a = Layer(name="a", frame_count=1, chunks=[encode_frames([_frame(8, 8, (1, 1, 1, 1))])])
    layer_b = Layer(name="b", frame_count=1, chunks=[encode_frames([_frame(8, 8, (5, 6, 2, 1))])])
    container = SpriteContainer(name="s", width=8, height=8, layers=[layer_a, layer_b])
    result = transform_container(container, TransformOptions(crop=True))
    assert result.crop_rect == Rect(1, 1, 6, 6)


def test_crop_skipped_when_everything_transparent():
    container = _container([_frame(5, 5), _frame(5, 5)], 5, 5)
    result = transform_container(container, TransformOptions(crop=True))
    assert result.crop_rect is None
    assert (container.width, container.height) == (5, 5)


def test_resize_overrides_scale():
    container = _container(_numbered_frames(2, 4, 4), 4, 4)
    result = transform_container(container, TransformOptions(resize=(3, 5), scale=4))
    assert (result.width, result.height) == (3, 5)
    assert all(f.size == (3, 5) for f in decode_container(container)[0])


def test_scale_applies_after_crop():
    container = _container([_frame(10, 10, (2, 2, 3, 2))], 10, 10)
    result = transform_container(container, TransformOptions(crop=True, scale=2))
    assert (result.width, result.height) == (6, 4)


def test_resolve_target_size_rounds_half_up():
    assert resolve_target_size(5, 3, TransformOptions(scale=0.5)) == (3, 2)
    assert resolve_target_size(1, 1, TransformOptions(scale=0.1)) == (1, 1)
    assert resolve_target_size(7, 9, TransformOptions()) == (7, 9)


def test_json_round_trip(tmp_path):
    frames = _numbered_frames(2)
    container = _container(frames, 3, 2, layers=2)
    container.hidden_frames = [1]
    path = tmp_path / "sprite.piskel"
    save_piskel(container, path)

    raw = json.loads(path.read_text(encoding="utf-8"))
    assert raw["modelVersion"] == 2
    layer_json = json.loads(raw["piskel"]["layers"][0])
    assert layer_json["chunks"][0]["layout"] == [[0], [1]]
    assert layer_json["chunks"][0]["base64PNG"].startswith("data:image/png;base64,")

    loaded = load_piskel(path)
    assert (loaded.width, loaded.height, loaded.hidden_frames) == (3, 2, [1])
    assert [layer.name for layer in loaded.layers] == ["Layer 1", "Layer 2"]
    assert [f.data for f in decode_layer(loaded.layers[1], 3, 2)] == [f.data for f in frames]


def test_legacy_layer_sheet_is_read():
    frames = _numbered_frames(2)
    sheet = assemble_spritesheet(frames)
    layer = {"name": "old", "opacity": 1, "frameCount": 2, "base64PNG": encode_png_data_url(sheet)}
    doc = {"modelVersion": 1, "piskel": {"name": "x", "width": 3, "height": 2, "layers": [json.dumps(layer)]}}
    container = parse_piskel(json.dumps(doc))
    assert [f.data for f in decode_layer(container.layers[0], 3, 2)] == [f.data for f in frames]


@pytest.mark.parametrize(
    "text",
    [
        "not json",
        json.dumps({"piskel": {"width": 2}}),
        json.dumps({"piskel": {"width": 2, "height": 2, "layers": ["{broken"]}}),
        json.dumps(
            {
                "piskel": {
                    "width": 2,
                    "height": 2,
                    "layers": [json.dumps({"frameCount": 1, "chunks": [{"layout": [[0]], "base64PNG": "data:image/png;base64,@@@"}]})],
                }
            }
        ),
    ],
)
def test_malformed_documents_raise_parse_error(text):
    with pytest.raises(ParseError):
        parse_piskel(text, source="bad.piskel")


def test_container_from_buffer_is_single_frame():
    buf = _numbered_frames(1, 5, 4)[0]
    container = container_from_buffer(buf, "hero", fps=8)
    assert (container.width, container.height, container.fps) == (5, 4, 8)
    assert len(container.layers) == 1
    assert container.layers[0].frame_count == 1
    doc = json.loads(dumps_piskel(container))
    assert doc["piskel"]["name"] == "hero"
    assert json.loads(doc["piskel"]["layers"][0])["chunks"][0]["layout"] == [[0]]


def test_extract_frame_bounds_and_scale():
    frames = _numbered_frames(3)
    container = _container(frames, 3, 2)
    out = extract_frame(container, 2, factor=2)
    assert out.size == (6, 4)
    assert tuple(out.pixels()[3, 5]) == tuple(frames[2].pixels()[1, 2])
    with pytest.raises(FrameIndexOutOfRange):
        extract_frame(container, 3)
    with pytest.raises(FrameIndexOutOfRange):
        extract_frame(container, -1)


def test_render_spritesheet_columns():
    frames = _numbered_frames(5)
    container = _container(frames, 3, 2)
    row = render_spritesheet(container)
    assert row.size == (15, 2)
    grid = render_spritesheet(container, columns=2, factor=2)
    assert grid.size == (12, 12)
    # frame 3 sits at column 1, row 1 in scaled units
    assert tuple(grid.pixels()[4 + 1, 6 + 1]) == tuple(frames[3].pixels()[0, 0])
    with pytest.raises(ConstraintViolation):
        render_spritesheet(container, columns=0)
