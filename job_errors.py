"""Errors raised by the segmented upscale job."""

from __future__ import annotations


class UpscaleJobError(RuntimeError):
    """Base class for all job failures."""


class ProbeError(UpscaleJobError):
    """ffprobe could not determine metadata required to plan the job."""


class SegmentValidationError(UpscaleJobError):
    """An on-disk segment artifact disagrees with its planned frame count.

    Raised and handled inside the resume scan; the artifact is deleted and the
    segment is queued again.
    """

    def __init__(self, index: int, expected: int, actual: int) -> None:
        super().__init__(
            f"removed invalid segment file [{index}] with {actual} frame size "
            f"(expected {expected})"
        )
        self.index = index
        self.expected = expected
        self.actual = actual


class StageError(UpscaleJobError):
    """An external stage process failed for a segment."""

    stage = "stage"

    def __init__(self, index: int, detail: str) -> None:
        super().__init__(f"{self.stage} failed for segment {index}: {detail}")
        self.index = index
        self.detail = detail


class ExportError(StageError):
    stage = "export"


class UpscaleError(StageError):
    stage = "upscale"


class EncodeError(StageError):
    stage = "encode"


class FinalizeError(UpscaleJobError):
    """Concatenation, remux, or final validation failed."""


class ConfigMismatchError(UpscaleJobError):
    """Persisted job state belongs to a different input or different settings."""
