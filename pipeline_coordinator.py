"""Overlapped export -> upscale -> encode scheduling over a job's segments."""

from __future__ import annotations

import shutil
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional, Protocol, Sequence

from job_state import JobContext
from progress_tracker import ProgressAggregator
from segments import Segment


class SegmentStage(Protocol):
    def run(self, segment: Segment, on_event: Callable[[], None]) -> object:
        ...


class PipelineCoordinator:
    """Run every segment through the three stages with pipeline depth 2.

    Export of segment i+1 overlaps the upscale of segment i, and the encode of
    segment i overlaps export/upscale of the segments after it. Each stage has
    a single worker, so at most one export, one upscale and one encode run at
    any time. Upscale runs on the calling thread and paces the pipeline.
    Encodes are submitted only after the previous encode has been joined, so
    parts are committed in ascending index order.
    """

    def __init__(
        self,
        exporter: SegmentStage,
        upscaler: SegmentStage,
        encoder: SegmentStage,
        progress: ProgressAggregator,
        context: Optional[JobContext] = None,
        *,
        on_segment_done: Optional[Callable[[list[Segment]], None]] = None,
    ) -> None:
        self.exporter = exporter
        self.upscaler = upscaler
        self.encoder = encoder
        self.progress = progress
        self.context = context
        self.on_segment_done = on_segment_done
        self.committed: list[int] = []

    def _run_stage(self, name: str, stage: SegmentStage, segment: Segment) -> object:
        stage_progress = self.progress.stage(name, segment)
        try:
            return stage.run(segment, stage_progress)
        finally:
            stage_progress.close()

    def _export(self, segment: Segment) -> None:
        self._run_stage("export", self.exporter, segment)

    def _upscale(self, segment: Segment) -> None:
        self._run_stage("upscale", self.upscaler, segment)
        if self.context is not None:
            shutil.rmtree(self.context.frames_dir(segment.index), ignore_errors=True)

    def _encode(self, segment: Segment) -> None:
        self._run_stage("encode", self.encoder, segment)
        self.committed.append(segment.index)
        if self.context is not None:
            shutil.rmtree(self.context.upscaled_dir(segment.index), ignore_errors=True)
        self.progress.segment_completed(segment)

    def run(self, segments: Sequence[Segment]) -> list[int]:
        """Process `segments` in order and return the committed indices."""
        queue = deque(segments)
        if not queue:
            return []

        export_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="SegmentExport")
        encode_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="SegmentEncode")
        current_export: Optional[Future] = None
        previous_encode: Optional[Future] = None
        try:
            # Nothing to overlap the first export with.
            self._export(queue[0])

            while queue:
                segment = queue[0]

                next_export: Optional[Future] = None
                if len(queue) > 1:
                    next_export = export_pool.submit(self._export, queue[1])

                if current_export is not None:
                    current_export.result()
                current_export = next_export

                self._upscale(segment)

                if previous_encode is not None:
                    previous_encode.result()
                previous_encode = encode_pool.submit(self._encode, segment)

                queue.popleft()
                if self.on_segment_done is not None:
                    self.on_segment_done(list(queue))

            if previous_encode is not None:
                previous_encode.result()
        finally:
            export_pool.shutdown(wait=True, cancel_futures=True)
            encode_pool.shutdown(wait=True, cancel_futures=True)

        return list(self.committed)
