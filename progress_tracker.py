"""Progress counters fed by stage marker events, displayed with tqdm."""

from __future__ import annotations

import threading
from typing import Optional

from tqdm import tqdm

from segments import Segment

STAGE_ORDER = ("export", "upscale", "encode")
# upscale is the pacing stage; its events move the job frame position
POSITION_STAGE = "upscale"


class StageProgress:
    """Per-segment counter for one stage, capped at the segment size."""

    def __init__(
        self,
        aggregator: "ProgressAggregator",
        stage: str,
        segment: Segment,
        bar: Optional[tqdm],
    ) -> None:
        self.aggregator = aggregator
        self.stage = stage
        self.segment = segment
        self.bar = bar
        self.count = 0

    def on_progress_event(self, units: int = 1) -> None:
        self.aggregator._record(self, units)

    def __call__(self) -> None:
        self.on_progress_event(1)

    def close(self) -> None:
        if self.bar is not None:
            self.bar.close()
            self.bar = None


class ProgressAggregator:
    """Convert stage events into segment-level and job-level frame positions.

    Counters are the source of truth; the tqdm bars only mirror them, so the
    numbers stay correct with display disabled. Events arrive from the worker
    threads and the main thread, hence the lock.
    """

    def __init__(
        self,
        total_frames: int,
        segment_count: int,
        *,
        initial_position: int = 0,
        completed_segments: int = 0,
        disable: bool = False,
        description: str = "Frames",
    ) -> None:
        self.total_frames = total_frames
        self.segment_count = segment_count
        self.position = initial_position
        self.completed_segments = completed_segments
        self.disable = disable
        self._lock = threading.Lock()
        self._job_bar = tqdm(
            total=total_frames,
            initial=initial_position,
            desc=description,
            unit="frame",
            position=0,
            disable=disable,
        )
        self._segment_bar = tqdm(
            total=segment_count,
            initial=completed_segments,
            desc="Segments",
            unit="seg",
            position=1,
            disable=disable,
        )

    def stage(self, stage: str, segment: Segment) -> StageProgress:
        bar = None
        if not self.disable:
            bar = tqdm(
                total=segment.size,
                desc=f"  {stage} [{segment.index}]",
                unit="frame",
                position=2 + STAGE_ORDER.index(stage),
                leave=False,
            )
        return StageProgress(self, stage, segment, bar)

    def _record(self, progress: StageProgress, units: int) -> None:
        with self._lock:
            allowed = max(0, min(units, progress.segment.size - progress.count))
            if allowed == 0:
                return
            progress.count += allowed
            if progress.bar is not None:
                progress.bar.update(allowed)
            if progress.stage == POSITION_STAGE:
                self.position += allowed
                self._job_bar.update(allowed)

    def segment_completed(self, segment: Segment) -> None:
        with self._lock:
            self.completed_segments += 1
            self._segment_bar.update(1)

    def close(self) -> None:
        self._job_bar.close()
        self._segment_bar.close()


def skipped_frame_total(planned: list[Segment], unprocessed: list[Segment]) -> int:
    """Frames already covered by valid parts left from an earlier run."""
    pending = {segment.index for segment in unprocessed}
    return sum(segment.size for segment in planned if segment.index not in pending)
