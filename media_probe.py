"""ffprobe wrapper: stream metadata, frame counts, and data-stream detection."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from job_errors import ProbeError
from toolchain import run_subprocess

DEFAULT_ASSUMED_FPS = 25.0
FRAME_COUNT_TAGS = ("NUMBER_OF_FRAMES-eng", "NUMBER_OF_FRAMES")
UNSET_ASPECT_RATIOS = ("", "0", "0:1", "N/A")


@dataclass(frozen=True)
class MediaInfo:
    filepath: Path
    frame_count: int
    frame_rate: float
    frame_rate_expr: str
    display_aspect_ratio: Optional[str]
    sample_aspect_ratio: Optional[str]
    has_binary_data_stream: bool
    width: int
    height: int
    codec: str
    pixel_format: str
    bitrate: int
    duration: float
    container_format: str
    size: int
    extradata_hash: Optional[str]


def parse_framerate(value: str) -> float:
    """Parse ffprobe framerate strings like 30000/1001."""
    if not value:
        raise ProbeError("ffprobe reported no frame rate.")

    try:
        if "/" in value:
            num, den = value.split("/", maxsplit=1)
            denominator = float(den)
            if denominator == 0:
                raise ProbeError(f"Invalid frame rate: {value}")
            framerate = float(num) / denominator
        else:
            framerate = float(value)
    except (TypeError, ValueError) as exc:
        raise ProbeError(f"Invalid frame rate: {value}") from exc

    if framerate <= 0 or framerate > 1000:
        raise ProbeError(f"Invalid frame rate: {value}")
    return framerate


def _as_int(value: object) -> Optional[int]:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return parsed


def _as_float(value: object) -> Optional[float]:
    try:
        parsed = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    return parsed


def metadata_frame_count(stream: dict) -> int:
    """Frame count declared by the container: nb_frames, then the frame-count tag.

    Returns 0 when neither is present.
    """
    nb_frames = _as_int(stream.get("nb_frames"))
    if nb_frames and nb_frames > 0:
        return nb_frames

    tags = stream.get("tags") or {}
    for tag in FRAME_COUNT_TAGS:
        tagged = _as_int(tags.get(tag))
        if tagged and tagged > 0:
            return tagged
    return 0


def resolve_frame_count(
    stream: dict,
    fmt: dict,
    assumed_fps: float = DEFAULT_ASSUMED_FPS,
) -> int:
    """Return a frame count estimate using the container metadata, then duration.

    The duration fallback multiplies by `assumed_fps` and is only an estimate:
    containers such as Matroska often carry neither metadata field. It feeds
    batch progress totals, never a segment plan. Returns 0 when nothing usable
    is present.
    """
    declared = metadata_frame_count(stream)
    if declared:
        return declared

    duration = _as_float(fmt.get("duration"))
    if duration is None:
        duration = _as_float(stream.get("duration"))
    if duration and duration > 0:
        return int(duration * assumed_fps)
    return 0


def normalize_aspect_ratio(value: Optional[str]) -> Optional[str]:
    if value is None or value.strip() in UNSET_ASPECT_RATIOS:
        return None
    return value.strip()


class MediaProbe:
    """Query ffprobe for the metadata the segmented pipeline needs."""

    def __init__(self, ffprobe_bin: str, assumed_fps: float = DEFAULT_ASSUMED_FPS) -> None:
        self.ffprobe_bin = ffprobe_bin
        self.assumed_fps = assumed_fps

    def _run_json(self, path: Path, extra_args: list[str]) -> dict:
        cmd = [
            self.ffprobe_bin,
            "-v",
            "error",
            *extra_args,
            "-of",
            "json",
            str(path),
        ]
        try:
            result = run_subprocess(cmd, check=False, capture_output=True)
        except OSError as exc:
            raise ProbeError(f"Could not run ffprobe: {exc}") from exc

        if result.returncode != 0:
            stderr = result.stderr.strip() if result.stderr else "no stderr"
            raise ProbeError(f"ffprobe failed for {path}: {stderr}")

        try:
            payload = json.loads(result.stdout or "")
        except json.JSONDecodeError as exc:
            raise ProbeError(f"Failed to parse ffprobe output for {path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise ProbeError(f"Unexpected ffprobe output for {path}")
        return payload

    def probe(self, path: Path, exact_frame_count: bool = True) -> MediaInfo:
        """Probe every stream of `path` in a single ffprobe call.

        The frame count sizes the segment plan, so it must be exact: when the
        container declares none, video packets are counted. Discovery passes
        `exact_frame_count=False` to skip that full read and gets 0 instead.
        """
        payload = self._run_json(
            path,
            ["-show_streams", "-show_format", "-show_data_hash", "sha256"],
        )
        streams = payload.get("streams", [])
        fmt = payload.get("format", {})

        video_stream = None
        has_data_stream = False
        for stream in streams:
            stream_type = stream.get("codec_type")
            if stream_type == "video" and video_stream is None:
                video_stream = stream
            elif stream_type == "data":
                has_data_stream = True

        if video_stream is None:
            raise ProbeError(f"No video stream found in {path}")

        frame_rate_expr = (
            video_stream.get("avg_frame_rate")
            if video_stream.get("avg_frame_rate") not in (None, "", "0/0")
            else video_stream.get("r_frame_rate", "")
        )
        frame_rate = parse_framerate(frame_rate_expr)

        frame_count = metadata_frame_count(video_stream)
        if not frame_count and exact_frame_count:
            frame_count = self._count_packets(path)

        return MediaInfo(
            filepath=path,
            frame_count=frame_count,
            frame_rate=frame_rate,
            frame_rate_expr=frame_rate_expr,
            display_aspect_ratio=normalize_aspect_ratio(video_stream.get("display_aspect_ratio")),
            sample_aspect_ratio=normalize_aspect_ratio(video_stream.get("sample_aspect_ratio")),
            has_binary_data_stream=has_data_stream,
            width=_as_int(video_stream.get("width")) or 0,
            height=_as_int(video_stream.get("height")) or 0,
            codec=video_stream.get("codec_name", "unknown"),
            pixel_format=video_stream.get("pix_fmt", "unknown"),
            bitrate=_as_int(fmt.get("bit_rate")) or 0,
            duration=_as_float(fmt.get("duration")) or 0.0,
            container_format=fmt.get("format_name", "unknown"),
            size=_as_int(fmt.get("size")) or 0,
            extradata_hash=video_stream.get("extradata_hash"),
        )

    def frame_count(self, path: Path) -> int:
        """Frame count of the first video stream; raises when no strategy works."""
        payload = self._run_json(
            path,
            ["-select_streams", "v:0", "-show_streams", "-show_format"],
        )
        streams = payload.get("streams", [])
        if not streams:
            raise ProbeError(f"No video stream found in {path}")
        count = resolve_frame_count(streams[0], payload.get("format", {}), self.assumed_fps)
        if count <= 0:
            raise ProbeError(f"Could not determine frame count for {path}")
        return count

    def count_frames(self, path: Path) -> int:
        """Frame count of an encoded segment artifact.

        Segment files usually carry nb_frames. When the container omits it,
        video packets are counted instead (one packet per frame).
        """
        payload = self._run_json(
            path,
            ["-select_streams", "v:0", "-show_streams"],
        )
        streams = payload.get("streams", [])
        if not streams:
            raise ProbeError(f"No video stream found in {path}")

        declared = metadata_frame_count(streams[0])
        if declared:
            return declared
        return self._count_packets(path)

    def _count_packets(self, path: Path) -> int:
        counted = self._run_json(
            path,
            [
                "-select_streams",
                "v:0",
                "-count_packets",
                "-show_entries",
                "stream=nb_read_packets",
            ],
        )
        counted_streams = counted.get("streams", [])
        if not counted_streams:
            raise ProbeError(f"No video stream found in {path}")
        packets = _as_int(counted_streams[0].get("nb_read_packets"))
        if not packets or packets <= 0:
            raise ProbeError(f"Could not count frames of {path}")
        return packets
