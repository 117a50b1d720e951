"""Join the encoded parts, restore the original non-video streams, clean up."""

from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Callable, Optional, Sequence

from job_errors import FinalizeError
from job_state import JobContext
from segments import Segment
from toolchain import progress_write, run_subprocess

DEFAULT_CONCAT_ATTEMPTS = 5
DEFAULT_RETRY_DELAY = 1.0


def escape_concat_path(path: Path) -> str:
    return str(path).replace("'", r"'\''")


def has_content(path: Path) -> bool:
    return path.is_file() and path.stat().st_size > 0


def partial_output_path(output_path: Path) -> Path:
    return output_path.with_name(f"{output_path.stem}.partial{output_path.suffix}")


class Finalizer:
    def __init__(
        self,
        ffmpeg_bin: str,
        context: JobContext,
        *,
        attempts: int = DEFAULT_CONCAT_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.ffmpeg_bin = ffmpeg_bin
        self.context = context
        self.attempts = attempts
        self.retry_delay = retry_delay
        self.sleep = sleep

    def write_playlist(self, segments: Sequence[Segment]) -> Path:
        """Write the concat demuxer list in ascending segment index order."""
        ordered = sorted(segments, key=lambda segment: segment.index)
        missing = [segment.index for segment in ordered if not has_content(self.context.part_path(segment.index))]
        if missing:
            raise FinalizeError(f"Missing encoded segment(s): {missing}. Try running again.")

        lines = [
            f"file '{escape_concat_path(self.context.part_path(segment.index))}'"
            for segment in ordered
        ]
        playlist = self.context.playlist_path
        playlist.write_text("\n".join(lines) + "\n")
        return playlist

    def build_concat_command(self, display_aspect_ratio: Optional[str]) -> list[str]:
        cmd = [
            self.ffmpeg_bin,
            "-f",
            "concat",
            "-safe",
            "0",
            "-i",
            str(self.context.playlist_path),
            "-c",
            "copy",
        ]
        if display_aspect_ratio:
            cmd.extend(["-aspect", display_aspect_ratio])
        cmd.extend([
            str(self.context.concat_path),
            "-y",
            "-hide_banner",
            "-loglevel",
            "warning",
        ])
        return cmd

    def concatenate(
        self,
        segments: Sequence[Segment],
        display_aspect_ratio: Optional[str] = None,
    ) -> Path:
        """Concatenate parts, retrying while the output is missing or empty.

        The concat demuxer has been seen to leave an empty file when parts were
        flushed moments earlier, so a fixed delay separates the attempts.
        """
        self.write_playlist(segments)
        target = self.context.concat_path
        cmd = self.build_concat_command(display_aspect_ratio)

        last_error = "no output"
        for attempt in range(1, self.attempts + 1):
            target.unlink(missing_ok=True)
            result = run_subprocess(cmd, check=False, capture_output=True)
            if result.returncode == 0 and has_content(target):
                return target

            if result.stderr and result.stderr.strip():
                last_error = result.stderr.strip()
            if attempt < self.attempts:
                progress_write(
                    f"Warning: merge attempt {attempt}/{self.attempts} failed, retrying..."
                )
                self.sleep(self.retry_delay)

        raise FinalizeError(f"could not merge segments: {last_error}")

    def build_remux_command(
        self,
        video_path: Path,
        original_path: Path,
        output_path: Path,
        *,
        exclude_data_streams: bool,
    ) -> list[str]:
        cmd = [
            self.ffmpeg_bin,
            "-i",
            str(video_path),
            "-i",
            str(original_path),
            "-map",
            "0:v",
            "-map",
            "1",
            "-map",
            "-1:v",
        ]
        if exclude_data_streams:
            # Data streams (timecode, binary attachments) often refuse to mux.
            cmd.extend(["-map", "-1:d"])
        cmd.extend([
            "-map_chapters",
            "1",
            "-c",
            "copy",
            str(output_path),
            "-y",
            "-hide_banner",
            "-loglevel",
            "warning",
        ])
        return cmd

    def remux(
        self,
        video_path: Path,
        original_path: Path,
        output_path: Path,
        *,
        exclude_data_streams: bool,
    ) -> Path:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        cmd = self.build_remux_command(
            video_path,
            original_path,
            output_path,
            exclude_data_streams=exclude_data_streams,
        )
        result = run_subprocess(cmd, check=False, capture_output=True)
        if result.returncode != 0:
            output_path.unlink(missing_ok=True)
            stderr = result.stderr.strip() if result.stderr else "no stderr"
            raise FinalizeError(f"remux failed: {stderr}. Try running again.")
        return output_path

    def validate(self, output_path: Path) -> None:
        if not has_content(output_path):
            raise FinalizeError("final file validation error: try running again")

    def cleanup(self) -> None:
        self.context.remove()

    def finalize(
        self,
        segments: Sequence[Segment],
        input_path: Path,
        output_path: Path,
        *,
        display_aspect_ratio: Optional[str],
        has_binary_data_stream: bool,
    ) -> Path:
        """Join, remux and commit the final file, then drop the work directory.

        The remux lands in a partial file beside the output and is renamed into
        place only once it validates, so `output_path` never holds a truncated
        result that a later batch run would take for finished work.
        """
        video_path = self.concatenate(segments, display_aspect_ratio)
        partial_path = partial_output_path(output_path)
        try:
            self.remux(
                video_path,
                input_path,
                partial_path,
                exclude_data_streams=has_binary_data_stream,
            )
            self.validate(partial_path)
            os.replace(partial_path, output_path)
        except Exception:
            partial_path.unlink(missing_ok=True)
            raise
        self.cleanup()
        return output_path
