import json
import logging

import pytest
from PIL import Image

from piskel_tools.cli import DEBUG_ENV, main, setup_logging
from piskel_tools.piskel_codec import container_from_buffer, save_piskel
from piskel_tools.pixel_ops import PixelBuffer


def _sprite(path, color=(200, 10, 10, 255), size=(4, 4)):
    buf = PixelBuffer.blank(*size)
    buf.pixels()[1, 1] = color
    save_piskel(container_from_buffer(buf, path.stem), path)


def _palette(path):
    path.write_text("GIMP Palette\n# two colors\n255 0 0\n0 255 0\n", encoding="utf-8")
    return path


def test_match_batch_continues_after_failure(tmp_path, capsys):
    good = tmp_path / "good.piskel"
    bad = tmp_path / "bad.piskel"
    _sprite(good)
    bad.write_text("{ nope", encoding="utf-8")
    out = tmp_path / "out"

    code = main(["match", "-p", str(_palette(tmp_path / "p.gpl")), "-o", str(out), str(bad), str(good)])

    captured = capsys.readouterr().out
    assert code == 1
    assert "[FAIL]" in captured and "bad.piskel" in captured
    assert "[OK] good.piskel" in captured
    assert "Completed 1 file(s), 1 failure(s)." in captured
    assert (out / "good.piskel").exists()
    assert not (out / "bad.piskel").exists()


def test_transform_folder_input(tmp_path, capsys):
    folder = tmp_path / "sprites"
    folder.mkdir()
    _sprite(folder / "a.piskel")
    _sprite(folder / "b.piskel")
    (folder / "ignored.txt").write_text("x", encoding="utf-8")

    code = main(["transform", "--resize", "8x2", "-s", "-wide", str(folder)])

    assert code == 0
    for name in ("a-wide.piskel", "b-wide.piskel"):
        doc = json.loads((folder / name).read_text(encoding="utf-8"))
        assert (doc["piskel"]["width"], doc["piskel"]["height"]) == (8, 2)
    assert "Completed 2 file(s), 0 failure(s)." in capsys.readouterr().out


def test_transform_requires_an_operation(tmp_path):
    sprite = tmp_path / "a.piskel"
    _sprite(sprite)
    with pytest.raises(SystemExit) as excinfo:
        main(["transform", str(sprite)])
    assert excinfo.value.code == 2


def test_missing_input_is_fatal(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        main(["export", str(tmp_path / "missing.piskel")])
    assert excinfo.value.code == 2


def test_empty_palette_is_fatal(tmp_path):
    sprite = tmp_path / "a.piskel"
    _sprite(sprite)
    empty = tmp_path / "empty.gpl"
    empty.write_text("GIMP Palette\n", encoding="utf-8")
    with pytest.raises(SystemExit) as excinfo:
        main(["match", "-p", str(empty), str(sprite)])
    assert excinfo.value.code == 2


def test_unsupported_palette_is_fatal(tmp_path):
    sprite = tmp_path / "a.piskel"
    _sprite(sprite)
    palette = tmp_path / "colors.aco"
    palette.write_bytes(b"\x00\x01")
    with pytest.raises(SystemExit):
        main(["match", "-p", str(palette), str(sprite)])


def test_export_frame_out_of_range_counts_as_failure(tmp_path, capsys):
    sprite = tmp_path / "a.piskel"
    _sprite(sprite)
    code = main(["export", "--frame", "3", str(sprite)])
    assert code == 1
    assert "out of range" in capsys.readouterr().out


def test_import_and_pipeline(tmp_path):
    src = tmp_path / "hero.png"
    img = Image.new("RGBA", (6, 6), (0, 0, 0, 0))
    img.putpixel((2, 3), (250, 5, 5, 255))
    img.save(src)
    palette = str(_palette(tmp_path / "p.gpl"))

    assert main(["import", "-p", palette, "-n", "Hero", "-o", str(tmp_path / "imported"), str(src)]) == 0
    doc = json.loads((tmp_path / "imported" / "hero.piskel").read_text(encoding="utf-8"))
    assert doc["piskel"]["name"] == "Hero"

    assert main(["pipeline", "-p", palette, "--crop", "--size", "3x3", str(src)]) == 0
    doc = json.loads((tmp_path / "hero.piskel").read_text(encoding="utf-8"))
    assert (doc["piskel"]["width"], doc["piskel"]["height"]) == (3, 3)


def test_repeated_verbose_setup_adds_one_console_handler(monkeypatch):
    monkeypatch.delenv(DEBUG_ENV, raising=False)
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        setup_logging(verbose=True)
        setup_logging(verbose=True)
        consoles = [h for h in root.handlers if type(h) is logging.StreamHandler]
        assert len(consoles) == 1
        assert root.level == logging.DEBUG
    finally:
        root.handlers = saved_handlers
        root.setLevel(saved_level)
