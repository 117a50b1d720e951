"""The three external per-segment stages: frame export, upscale, and encode."""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from job_errors import EncodeError, ExportError, UpscaleError
from job_state import JobContext
from segments import Segment, segment_start_seconds
from toolchain import progress_write, stream_subprocess

FRAME_PATTERN = "frame%08d.png"
FRAME_GLOB = "frame*.png"

DEFAULT_EXPORT_MARKER = "AVIOContext"
DEFAULT_UPSCALE_MARKER = "done"
DEFAULT_ENCODE_MARKER = "AVIOContext"

DEFAULT_X265_PARAMS = "psy-rd=2:aq-strength=1:deblock=0,0:bframes=8"
SUPPORTED_CODECS = ("libx265", "libsvt_hevc", "libsvtav1", "libx264")

ProgressCallback = Callable[[], None]


@dataclass(frozen=True)
class CodecParams:
    codec: str = "libx265"
    crf: int = 15
    preset: str = "slow"
    x265_params: str = DEFAULT_X265_PARAMS

    def to_dict(self) -> dict[str, object]:
        return {
            "codec": self.codec,
            "crf": self.crf,
            "preset": self.preset,
            "x265_params": self.x265_params,
        }


def get_codec_flags(params: CodecParams) -> list[str]:
    """Return ffmpeg codec flags for the requested encoder."""
    crf = str(params.crf)
    if params.codec == "libx265":
        flags = ["-c:v", "libx265", "-pix_fmt", "yuv420p10le", "-crf", crf, "-preset", params.preset]
        if params.x265_params:
            flags.extend(["-x265-params", params.x265_params])
        return flags
    if params.codec == "libsvt_hevc":
        # SVT-HEVC takes a fixed QP in constant-rate mode instead of CRF
        return ["-c:v", "libsvt_hevc", "-pix_fmt", "yuv420p10le", "-rc", "0", "-qp", crf, "-tune", "0"]
    if params.codec == "libsvtav1":
        return ["-c:v", "libsvtav1", "-pix_fmt", "yuv420p10le", "-crf", crf]
    if params.codec == "libx264":
        return ["-c:v", "libx264", "-pix_fmt", "yuv420p", "-crf", crf, "-preset", params.preset]
    raise ValueError(f"Unsupported codec: {params.codec}")


def count_frame_files(directory: Path) -> int:
    if not directory.is_dir():
        return 0
    return len(list(directory.glob(FRAME_GLOB)))


def reset_directory(directory: Path) -> None:
    if directory.exists():
        shutil.rmtree(directory, ignore_errors=True)
    directory.mkdir(parents=True, exist_ok=True)


def skip_first_event(on_event: ProgressCallback) -> ProgressCallback:
    """ffmpeg opens the input through AVIOContext before writing any frame."""
    seen = False

    def wrapper() -> None:
        nonlocal seen
        if not seen:
            seen = True
            return
        on_event()

    return wrapper


class FrameExporter:
    def __init__(
        self,
        ffmpeg_bin: str,
        input_path: Path,
        context: JobContext,
        *,
        segment_size: int,
        frame_rate: float,
        marker: Optional[str] = DEFAULT_EXPORT_MARKER,
    ) -> None:
        self.ffmpeg_bin = ffmpeg_bin
        self.input_path = input_path
        self.context = context
        self.segment_size = segment_size
        self.frame_rate = frame_rate
        self.marker = marker

    def build_command(self, segment: Segment) -> list[str]:
        start = segment_start_seconds(segment, self.segment_size, self.frame_rate)
        return [
            self.ffmpeg_bin,
            "-v",
            "verbose",
            "-ss",
            f"{start:.6f}",
            "-i",
            str(self.input_path),
            "-qscale:v",
            "1",
            "-qmin",
            "1",
            "-qmax",
            "1",
            "-fps_mode",
            "passthrough",
            "-frames:v",
            str(segment.size),
            str(self.context.frames_dir(segment.index) / FRAME_PATTERN),
            "-y",
        ]

    def run(self, segment: Segment, on_event: ProgressCallback) -> int:
        frames_dir = self.context.frames_dir(segment.index)
        reset_directory(frames_dir)

        try:
            returncode, stderr_tail = stream_subprocess(
                self.build_command(segment),
                marker=self.marker,
                on_event=skip_first_event(on_event),
            )
        except OSError as exc:
            raise ExportError(segment.index, f"could not run ffmpeg: {exc}") from exc
        if returncode != 0:
            raise ExportError(segment.index, stderr_tail or f"ffmpeg exited with {returncode}")

        exported = count_frame_files(frames_dir)
        if exported == 0:
            raise ExportError(segment.index, "no frames were written")
        if exported != segment.size:
            progress_write(
                f"Warning: segment {segment.index} exported {exported} of "
                f"{segment.size} planned frames."
            )
        return exported


def build_realesrgan_command(
    realesrgan_binary: Path,
    input_path: Path,
    output_path: Path,
    *,
    scale_factor: int,
    model_name: str,
    gpu_id: Optional[str],
    tile_size: int,
    model_path: Optional[Path],
    jobs: Optional[str],
) -> list[str]:
    cmd = [
        str(realesrgan_binary),
        "-i",
        str(input_path),
        "-o",
        str(output_path),
        "-n",
        model_name,
        "-s",
        str(scale_factor),
        "-f",
        "png",
        "-t",
        str(tile_size),
        "-v",
    ]

    if gpu_id:
        cmd.extend(["-g", gpu_id])

    if model_path is not None:
        cmd.extend(["-m", str(model_path)])

    if jobs:
        cmd.extend(["-j", jobs])

    return cmd


class FrameUpscaler:
    def __init__(
        self,
        realesrgan_binary: Path,
        context: JobContext,
        *,
        scale_factor: int,
        model_name: str,
        gpu_id: Optional[str] = None,
        tile_size: int = 0,
        model_path: Optional[Path] = None,
        jobs: Optional[str] = None,
        marker: Optional[str] = DEFAULT_UPSCALE_MARKER,
    ) -> None:
        self.realesrgan_binary = realesrgan_binary
        self.context = context
        self.scale_factor = scale_factor
        self.model_name = model_name
        self.gpu_id = gpu_id
        self.tile_size = tile_size
        self.model_path = model_path
        self.jobs = jobs
        self.marker = marker

    def run(self, segment: Segment, on_event: ProgressCallback) -> int:
        input_dir = self.context.frames_dir(segment.index)
        output_dir = self.context.upscaled_dir(segment.index)
        reset_directory(output_dir)

        expected = count_frame_files(input_dir)
        cmd = build_realesrgan_command(
            self.realesrgan_binary,
            input_dir,
            output_dir,
            scale_factor=self.scale_factor,
            model_name=self.model_name,
            gpu_id=self.gpu_id,
            tile_size=self.tile_size,
            model_path=self.model_path,
            jobs=self.jobs,
        )
        try:
            returncode, stderr_tail = stream_subprocess(cmd, marker=self.marker, on_event=on_event)
        except OSError as exc:
            raise UpscaleError(segment.index, f"could not run the upscaler: {exc}") from exc
        if returncode != 0:
            raise UpscaleError(segment.index, stderr_tail or f"upscaler exited with {returncode}")

        produced = count_frame_files(output_dir)
        if produced != expected:
            raise UpscaleError(
                segment.index,
                f"upscaled {produced} of {expected} exported frames",
            )
        return produced


class SegmentEncoder:
    """Encode upscaled frames into the segment's video part.

    ffmpeg writes to a partial file first; the rename onto the final part
    path is the commit point the resume scan relies on.
    """

    def __init__(
        self,
        ffmpeg_bin: str,
        context: JobContext,
        *,
        frame_rate_expr: str,
        codec_params: CodecParams,
        marker: Optional[str] = DEFAULT_ENCODE_MARKER,
    ) -> None:
        self.ffmpeg_bin = ffmpeg_bin
        self.context = context
        self.frame_rate_expr = frame_rate_expr
        self.codec_params = codec_params
        self.marker = marker

    def build_command(self, segment: Segment, output_path: Path) -> list[str]:
        cmd = [
            self.ffmpeg_bin,
            "-v",
            "verbose",
            "-f",
            "image2",
            "-framerate",
            self.frame_rate_expr,
            "-i",
            str(self.context.upscaled_dir(segment.index) / FRAME_PATTERN),
        ]
        cmd.extend(get_codec_flags(self.codec_params))
        cmd.extend([str(output_path), "-y"])
        return cmd

    def run(self, segment: Segment, on_event: ProgressCallback) -> Path:
        partial_path = self.context.partial_part_path(segment.index)
        final_path = self.context.part_path(segment.index)
        partial_path.parent.mkdir(parents=True, exist_ok=True)
        partial_path.unlink(missing_ok=True)

        try:
            returncode, stderr_tail = stream_subprocess(
                self.build_command(segment, partial_path),
                marker=self.marker,
                on_event=on_event,
            )
        except OSError as exc:
            partial_path.unlink(missing_ok=True)
            raise EncodeError(segment.index, f"could not run ffmpeg: {exc}") from exc
        if returncode != 0:
            partial_path.unlink(missing_ok=True)
            raise EncodeError(segment.index, stderr_tail or f"ffmpeg exited with {returncode}")
        if not partial_path.is_file() or partial_path.stat().st_size == 0:
            partial_path.unlink(missing_ok=True)
            raise EncodeError(segment.index, "encoder produced an empty part")

        os.replace(partial_path, final_path)
        return final_path
