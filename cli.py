"""CLI: argument parsing, output naming, and runtime validation."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Optional, Sequence

from media_probe import DEFAULT_ASSUMED_FPS
from stages import (
    DEFAULT_ENCODE_MARKER,
    DEFAULT_EXPORT_MARKER,
    DEFAULT_UPSCALE_MARKER,
    DEFAULT_X265_PARAMS,
    SUPPORTED_CODECS,
)
from work_queue import DEFAULT_PROBE_WORKERS

# ── Constants ──────────────────────────────────────────────────────────────────

SUPPORTED_SCALES = (2, 3, 4)
SUPPORTED_FORMATS = ("mp4", "mkv", "avi")
DEFAULT_MODEL = "realesr-animevideov3"
SUPPORTED_PRESETS = (
    "ultrafast",
    "superfast",
    "veryfast",
    "faster",
    "fast",
    "medium",
    "slow",
    "slower",
    "veryslow",
    "placebo",
)


# ── Functions ──────────────────────────────────────────────────────────────────


def resolve_model_name(model: str, scale: int) -> str:
    """Append the scale suffix the animevideov3 model family is published with."""
    if model == DEFAULT_MODEL:
        return f"{model}-x{scale}"
    return model


def resolve_output_path(
    input_video: Path,
    output_arg: Optional[str],
    codec: str,
    container: str,
) -> Path:
    """Explicit output, or `<stem>.<codec>.<format>` beside the input."""
    if output_arg:
        return Path(output_arg).expanduser().resolve()
    return (input_video.parent / f"{input_video.stem}.{codec}.{container}").resolve()


def is_generated_output(path: Path) -> bool:
    """True for files this tool wrote next to their source in directory mode."""
    parts = path.name.split(".")
    if len(parts) >= 4 and parts[-2] == "partial":
        parts = parts[:-2] + parts[-1:]
    return len(parts) >= 3 and parts[-2] in SUPPORTED_CODECS


def validate_runtime_args(args: argparse.Namespace) -> None:
    if args.crf < 0 or args.crf > 51:
        raise ValueError("CRF must be between 0 and 51.")
    if args.segment_size <= 0:
        raise ValueError("Segment size must be > 0.")
    if args.resolution <= 0:
        raise ValueError("Resolution ceiling must be > 0.")
    if args.tile_size < 0:
        raise ValueError("Tile size must be >= 0.")
    if args.probe_workers <= 0:
        raise ValueError("Probe workers must be > 0.")
    if args.assumed_fps <= 0:
        raise ValueError("Assumed fps must be > 0.")
    input_path = Path(args.input_path).expanduser()
    if input_path.is_dir() and args.output:
        raise ValueError("--output cannot be used when the input is a directory.")
    if args.db_path:
        db_target = Path(args.db_path).expanduser()
        if db_target.exists() and db_target.is_dir():
            raise ValueError("Database path must be a file, not a directory.")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Upscale a video, or every video under a directory, in resumable "
            "segments using Real-ESRGAN and ffmpeg"
        ),
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument("input_path", type=str, help="Input video file or directory")
    parser.add_argument(
        "-o",
        "--output",
        type=str,
        default=None,
        help="Output video path (default: <input>.<codec>.<format>)",
    )
    parser.add_argument(
        "-s",
        "--scale",
        type=int,
        default=2,
        choices=SUPPORTED_SCALES,
        help="Upscaling factor",
    )
    parser.add_argument(
        "-P",
        "--segment-size",
        type=int,
        default=1000,
        help="Frames per segment",
    )
    parser.add_argument("-c", "--crf", type=int, default=15, help="Encoder CRF (0-51)")
    parser.add_argument(
        "-p",
        "--preset",
        type=str,
        default="slow",
        choices=SUPPORTED_PRESETS,
        help="Encoder preset (libx265/libx264)",
    )
    parser.add_argument(
        "-e",
        "--codec",
        type=str,
        default="libx265",
        choices=SUPPORTED_CODECS,
        help="Video encoder for segment parts",
    )
    parser.add_argument(
        "-x",
        "--x265-params",
        type=str,
        default=DEFAULT_X265_PARAMS,
        help="Extra libx265 parameters",
    )
    parser.add_argument(
        "-f",
        "--format",
        dest="container",
        type=str,
        default="mp4",
        choices=SUPPORTED_FORMATS,
        help="Output container format",
    )
    parser.add_argument(
        "-r",
        "--resolution",
        type=int,
        default=480,
        help="Directory mode: only process videos with height <= this value",
    )
    parser.add_argument(
        "-n",
        "--model",
        type=str,
        default=DEFAULT_MODEL,
        help="Real-ESRGAN model name",
    )
    parser.add_argument(
        "-g",
        "--gpu",
        type=str,
        default=None,
        help="GPU device ID(s) passed to Real-ESRGAN (default: auto)",
    )
    parser.add_argument(
        "-t",
        "--tile-size",
        type=int,
        default=0,
        help="Tile size (0 = auto)",
    )
    parser.add_argument(
        "-j",
        "--jobs",
        type=str,
        default=None,
        help="Real-ESRGAN thread tuple (load:proc:save), for example 2:2:2",
    )
    parser.add_argument(
        "--realesrgan-path",
        type=str,
        default=None,
        help="Custom path to realesrgan-ncnn-vulkan binary",
    )
    parser.add_argument(
        "--model-path",
        type=str,
        default=None,
        help="Custom model directory path",
    )
    parser.add_argument(
        "--work-dir",
        type=str,
        default=None,
        help="Work directory for frames, parts and resume state",
    )
    parser.add_argument(
        "--ramdisk",
        action="store_true",
        help="Keep the default work directory in /dev/shm (Linux)",
    )
    parser.add_argument(
        "--db-path",
        type=str,
        default=None,
        help="SQLite work queue for directory mode",
    )
    parser.add_argument(
        "--probe-workers",
        type=int,
        default=DEFAULT_PROBE_WORKERS,
        help="Parallel ffprobe calls during directory discovery",
    )
    parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Disable progress bars",
    )
    parser.add_argument(
        "--otlp-endpoint",
        type=str,
        default=None,
        help="Export tracing spans to this OTLP/HTTP endpoint",
    )
    parser.add_argument(
        "--assumed-fps",
        type=float,
        default=DEFAULT_ASSUMED_FPS,
        help=argparse.SUPPRESS,  # Frame-count estimate when only duration is known
    )
    parser.add_argument(
        "--export-marker",
        type=str,
        default=DEFAULT_EXPORT_MARKER,
        help=argparse.SUPPRESS,
    )
    parser.add_argument(
        "--upscale-marker",
        type=str,
        default=DEFAULT_UPSCALE_MARKER,
        help=argparse.SUPPRESS,
    )
    parser.add_argument(
        "--encode-marker",
        type=str,
        default=DEFAULT_ENCODE_MARKER,
        help=argparse.SUPPRESS,
    )

    return parser.parse_args(argv)
