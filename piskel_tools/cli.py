"""Command-line interface for piskel_tools batch operations."""
from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Callable, Iterable, List, Tuple

from .errors import EmptyPaletteError, PiskelToolsError
from .file_scanner import IMAGE_EXTENSIONS, PISKEL_EXTENSIONS, expand_inputs
from .matching import ColorMatcher
from .palette_ops import load_palette
from .piskel_codec import DEFAULT_FPS, TransformOptions
from .processing import (
    ExportOptions,
    ImportOptions,
    MatchOptions,
    PipelineOptions,
    TransformFileOptions,
    export_piskel,
    import_image,
    match_piskel,
    parse_size,
    run_pipeline,
    transform_piskel,
)


logger = logging.getLogger("piskel_tools")
logger.addHandler(logging.NullHandler())

DEBUG_ENV = "PISKEL_TOOLS_DEBUG"
DEBUG_LOG_ENV = "PISKEL_TOOLS_DEBUG_LOG"
_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(verbose: bool = False) -> Path | None:
    """Console logging for ``--verbose``; file logging when the debug env var is set.

    Returns the debug log path when file logging was enabled.
    """

    root_logger = logging.getLogger()
    has_console = any(type(h) is logging.StreamHandler for h in root_logger.handlers)
    if verbose and not has_console:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(logging.Formatter("%(levelname)s [%(name)s] %(message)s"))
        root_logger.addHandler(console)
    if verbose:
        root_logger.setLevel(logging.DEBUG)
    if not os.environ.get(DEBUG_ENV):
        return None
    log_path = Path(os.environ.get(DEBUG_LOG_ENV, "piskel_tools_debug.log"))
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    # remove existing file handlers to avoid duplicates
    root_logger.handlers = [h for h in root_logger.handlers if not isinstance(h, logging.FileHandler)]
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG)
    root_logger.info("piskel_tools debug logging enabled at %s", log_path)
    return log_path


def _size_arg(value: str) -> Tuple[int, int]:
    try:
        return parse_size(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Expected an integer, got {value!r}") from exc
    if number < 1:
        raise argparse.ArgumentTypeError(f"Expected a positive integer, got {number}")
    return number


def _positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Expected a number, got {value!r}") from exc
    if number <= 0:
        raise argparse.ArgumentTypeError(f"Expected a positive number, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="piskel-tools",
        description="Batch Piskel sprite utilities: palette matching, transforms, import/export",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Print debug logging to stderr")
    sub = parser.add_subparsers(dest="command", required=True)

    def add_common(cmd: argparse.ArgumentParser, *, suffix: bool) -> None:
        cmd.add_argument("inputs", nargs="+", type=Path, help="Input files or folders")
        cmd.add_argument(
            "-o",
            "--output",
            type=Path,
            default=None,
            help="Destination folder (defaults to beside each input)",
        )
        cmd.add_argument("--recursive", action="store_true", help="Descend into subfolders")
        if suffix:
            cmd.add_argument(
                "-s",
                "--suffix",
                default="",
                help="Append to output file names (e.g. -matched); without -o or -s inputs are overwritten",
            )

    match = sub.add_parser("match", help="Snap .piskel colors to a palette")
    match.add_argument(
        "-p",
        "--palette",
        type=Path,
        required=True,
        help="Palette file (.gpl, .pal, .act, .txt, or an image swatch)",
    )
    add_common(match, suffix=True)

    transform = sub.add_parser("transform", help="Crop/resize/scale every frame of .piskel files")
    transform.add_argument("--resize", type=_size_arg, default=None, metavar="WxH", help="Exact frame size")
    transform.add_argument("--scale", type=_positive_float, default=None, help="Scale factor (e.g. 2 or 0.5)")
    transform.add_argument("--crop", action="store_true", help="Crop to the content shared by all frames")
    add_common(transform, suffix=True)

    export = sub.add_parser("export", help="Export .piskel files to PNG")
    export.add_argument("--scale", type=_positive_int, default=1, help="Integer upscale factor")
    export.add_argument("--frame", type=int, default=None, help="Export a single frame by index")
    export.add_argument(
        "--columns", type=_positive_int, default=None, help="Spritesheet columns (default: one row)"
    )
    export.add_argument("--layer", type=int, default=0, help="Layer index to export")
    add_common(export, suffix=False)

    importer = sub.add_parser("import", help="Convert PNG images to .piskel files")
    importer.add_argument("-n", "--name", default=None, help="Sprite name (defaults to file name)")
    importer.add_argument("-p", "--palette", type=Path, default=None, help="Match colors during import")
    importer.add_argument("-f", "--fps", type=_positive_int, default=DEFAULT_FPS, help="Frames per second")
    add_common(importer, suffix=False)

    pipeline = sub.add_parser("pipeline", help="PNG -> palette -> crop -> resize -> .piskel")
    pipeline.add_argument("-p", "--palette", type=Path, default=None, help="Palette file")
    pipeline.add_argument("--size", type=_size_arg, default=None, metavar="WxH", help="Final size")
    pipeline.add_argument("--crop", action="store_true", help="Crop to content before resizing")
    add_common(pipeline, suffix=False)
    return parser


def _load_matcher(parser: argparse.ArgumentParser, palette_path: Path | None) -> ColorMatcher | None:
    if palette_path is None:
        return None
    try:
        palette = load_palette(palette_path)
        matcher = ColorMatcher(palette)
    except EmptyPaletteError:
        parser.error(f"Palette {palette_path} contains no colors")
    except (OSError, PiskelToolsError) as exc:
        parser.error(f"Failed to read palette: {exc}")
    print(f"Loaded palette {palette_path} ({len(palette)} colors)")
    return matcher


def _run_batch(files: Iterable[Path], handler: Callable[[Path], str]) -> int:
    successes = 0
    failures = 0
    for file_path in files:
        try:
            summary = handler(file_path)
        except (PiskelToolsError, OSError) as exc:
            failures += 1
            logger.error("Failed to process %s: %s", file_path, exc, exc_info=logger.isEnabledFor(logging.DEBUG))
            print(f"[FAIL] {file_path}: {exc}")
            continue
        successes += 1
        print(f"[OK] {file_path.name} -> {summary}")

    print(f"Completed {successes} file(s), {failures} failure(s).")
    return 0 if failures == 0 else 1


def main(argv: List[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    if args.command == "transform" and not (args.resize or args.scale or args.crop):
        parser.error("At least one transform option required (--resize, --scale, or --crop)")

    allowed = PISKEL_EXTENSIONS if args.command in {"match", "transform", "export"} else IMAGE_EXTENSIONS
    try:
        input_files = expand_inputs(args.inputs, allowed, args.recursive)
    except FileNotFoundError as exc:
        parser.error(f"Input path not found: {exc}")

    if not input_files:
        parser.error("No input files found")

    matcher = _load_matcher(parser, getattr(args, "palette", None))
    out_dir: Path | None = args.output

    if args.command == "match":

        def handle(path: Path) -> str:
            result = match_piskel(MatchOptions(path, out_dir, args.suffix), matcher)
            return f"{result.output_path} ({result.layers} layers, {result.unique_colors} unique colors)"

    elif args.command == "transform":
        transform = TransformOptions(crop=args.crop, resize=args.resize, scale=args.scale)

        def handle(path: Path) -> str:
            result = transform_piskel(TransformFileOptions(path, transform, out_dir, args.suffix))
            return f"{result.output_path} ({result.width}x{result.height})"

    elif args.command == "export":

        def handle(path: Path) -> str:
            options = ExportOptions(
                input_path=path,
                output_dir=out_dir,
                scale=args.scale,
                frame=args.frame,
                columns=args.columns,
                layer=args.layer,
            )
            result = export_piskel(options)
            return f"{result.output_path} ({result.width}x{result.height}, {result.frames} frames)"

    elif args.command == "import":

        def handle(path: Path) -> str:
            options = ImportOptions(path, out_dir, name=args.name, fps=args.fps)
            result = import_image(options, matcher)
            return f"{result.output_path} ({result.width}x{result.height})"

    else:

        def handle(path: Path) -> str:
            options = PipelineOptions(path, out_dir, size=args.size, crop=args.crop)
            result = run_pipeline(options, matcher)
            original = "x".join(map(str, result.original_size))
            final = "x".join(map(str, result.final_size))
            return f"{result.output_path} ({original} -> {final})"

    return _run_batch(input_files, handle)


if __name__ == "__main__":
    raise SystemExit(main())
