"""Segment planning and the resume scan over previously encoded parts."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Sequence

from job_errors import ProbeError, SegmentValidationError
from toolchain import progress_write

if TYPE_CHECKING:
    from pathlib import Path

    from job_state import JobContext


@dataclass(frozen=True)
class Segment:
    index: int
    size: int

    def to_dict(self) -> dict[str, int]:
        return {"index": self.index, "size": self.size}

    @classmethod
    def from_dict(cls, payload: dict) -> "Segment":
        return cls(index=int(payload["index"]), size=int(payload["size"]))


def last_segment_size(frame_count: int, segment_size: int) -> int:
    remainder = frame_count % segment_size
    return remainder if remainder else segment_size


def plan_segments(frame_count: int, segment_size: int) -> list[Segment]:
    """Split `frame_count` frames into ordered segments of `segment_size`.

    Every segment is full except possibly the last, which holds the remainder.
    An exact multiple produces a full final segment, never an empty one.
    """
    if segment_size <= 0:
        raise ValueError("Segment size must be > 0.")
    if frame_count <= 0:
        raise ProbeError("Frame count could not be determined; refusing to plan zero segments.")

    segment_count = math.ceil(frame_count / segment_size)
    segments = [Segment(index, segment_size) for index in range(segment_count - 1)]
    segments.append(Segment(segment_count - 1, last_segment_size(frame_count, segment_size)))
    return segments


def segment_start_seconds(segment: Segment, segment_size: int, frame_rate: float) -> float:
    return segment.index * segment_size / frame_rate


def remove_partial_parts(context: "JobContext") -> int:
    """Delete encoder outputs that never reached their commit rename."""
    removed = 0
    if not context.parts_dir.is_dir():
        return 0
    for leftover in sorted(context.parts_dir.glob("*.partial.*")):
        leftover.unlink(missing_ok=True)
        removed += 1
    return removed


def validate_segment_artifact(
    segment: Segment,
    artifact: "Path",
    count_frames: Callable[["Path"], int],
) -> None:
    try:
        actual = count_frames(artifact)
    except ProbeError:
        actual = 0
    if actual != segment.size:
        raise SegmentValidationError(segment.index, segment.size, actual)


def find_unprocessed_segments(
    segments: Sequence[Segment],
    context: "JobContext",
    count_frames: Callable[["Path"], int],
) -> list[Segment]:
    """Return the planned segments that still need export, upscale and encode.

    A part whose frame count differs from its plan is deleted and queued
    again. The result keeps ascending index order; an empty list means every
    part is already encoded.
    """
    remove_partial_parts(context)

    unprocessed: list[Segment] = []
    for segment in segments:
        artifact = context.part_path(segment.index)
        if not artifact.is_file():
            unprocessed.append(segment)
            continue
        try:
            validate_segment_artifact(segment, artifact, count_frames)
        except SegmentValidationError as exc:
            artifact.unlink(missing_ok=True)
            progress_write(str(exc))
            unprocessed.append(segment)
    return unprocessed
