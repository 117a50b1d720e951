#!/usr/bin/env python3
"""
Segmented, resumable video upscaler (Real-ESRGAN + ffmpeg).

A video is split into fixed-size frame segments. Each segment is exported,
upscaled and encoded into its own part, overlapping the three stages, and the
parts are finally joined and remuxed with the original audio, subtitle and
chapter streams. Interrupted runs resume from the parts already on disk. A
directory input processes every matching video through a persisted queue.
"""

from __future__ import annotations

import argparse
import functools
import shutil
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from cli import (
    is_generated_output,
    parse_args,
    resolve_model_name,
    resolve_output_path,
    validate_runtime_args,
)
from finalizer import Finalizer, has_content
from job_errors import ConfigMismatchError, ProbeError, UpscaleJobError
from job_state import (
    JobContext,
    PipelineState,
    build_input_identity,
    build_job_fingerprint,
    load_state,
    read_state_input_path,
    save_state,
)
from media_probe import MediaInfo, MediaProbe
from pipeline_coordinator import PipelineCoordinator
from progress_tracker import ProgressAggregator, skipped_frame_total
from segments import Segment, find_unprocessed_segments, plan_segments
from stages import CodecParams, FrameExporter, FrameUpscaler, SegmentEncoder
from toolchain import (
    Toolchain,
    ffmpeg_supports_encoder,
    get_default_db_path,
    get_default_work_root,
    progress_write,
    resolve_toolchain,
)
from work_queue import SqliteWorkItemStore, WorkItem, WorkQueue

tracer = None


def init_tracing(endpoint: Optional[str]) -> None:
    """Configure an OpenTelemetry tracer exporting spans to `endpoint`."""
    global tracer
    if not endpoint or tracer is not None:
        return

    resource = Resource.create({"service.name": "segment-upscale"})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    tracer = trace.get_tracer(__name__)


def _traced(func):
    """Decorator that wraps a function call in a tracing span if tracing is enabled."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        if tracer is not None:
            with tracer.start_as_current_span(func.__name__):
                return func(*args, **kwargs)
        return func(*args, **kwargs)

    return wrapper


# Pixels kept on disk per frame while two segments are in flight.
PNG_BYTES_PER_PIXEL = 3.0


@dataclass(frozen=True)
class VideoJob:
    input_path: Path
    output_path: Path
    frame_count: int
    frame_rate: float
    frame_rate_expr: str
    segment_size: int
    upscale_ratio: int
    codec_params: CodecParams
    container: str
    model_name: str
    display_aspect_ratio: Optional[str]
    has_binary_data_stream: bool

    @property
    def segments(self) -> list[Segment]:
        return plan_segments(self.frame_count, self.segment_size)

    def settings(self) -> dict[str, object]:
        """Settings that change segment artifacts; part of the resume fingerprint."""
        return {
            "segment_size": self.segment_size,
            "scale": self.upscale_ratio,
            "model": self.model_name,
            "format": self.container,
            "codec": self.codec_params.to_dict(),
        }


def build_job(
    args: argparse.Namespace,
    info: MediaInfo,
    input_path: Path,
    output_path: Path,
) -> VideoJob:
    return VideoJob(
        input_path=input_path,
        output_path=output_path,
        frame_count=info.frame_count,
        frame_rate=info.frame_rate,
        frame_rate_expr=info.frame_rate_expr,
        segment_size=args.segment_size,
        upscale_ratio=args.scale,
        codec_params=CodecParams(
            codec=args.codec,
            crf=args.crf,
            preset=args.preset,
            x265_params=args.x265_params,
        ),
        container=args.container,
        model_name=resolve_model_name(args.model, args.scale),
        display_aspect_ratio=info.display_aspect_ratio,
        has_binary_data_stream=info.has_binary_data_stream,
    )


def format_time(seconds: float) -> str:
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = seconds % 60
    if hours:
        return f"{hours}h {minutes}m {secs:.1f}s"
    if minutes:
        return f"{minutes}m {secs:.1f}s"
    return f"{secs:.1f}s"


def check_disk_space(work_root: Path, info: MediaInfo, scale: int, segment_size: int) -> None:
    """Warn or fail if two segments of frames would not fit in the work root."""
    per_frame = info.width * info.height * PNG_BYTES_PER_PIXEL * (1 + scale * scale)
    projected_bytes = per_frame * segment_size * 2

    available = shutil.disk_usage(work_root).free
    projected_gb = projected_bytes / (1024**3)
    available_gb = available / (1024**3)
    if projected_bytes > available * 0.9:
        raise RuntimeError(
            f"Projected work directory usage ({projected_gb:.1f} GB) exceeds 90% of "
            f"available space ({available_gb:.1f} GB). Use --work-dir to point to a "
            "larger volume, or reduce --segment-size."
        )
    if projected_bytes > available * 0.5:
        progress_write(
            f"Warning: Projected work directory usage ({projected_gb:.1f} GB) is over "
            f"50% of available space ({available_gb:.1f} GB)."
        )


def prepare_job_state(
    job: VideoJob, context: JobContext
) -> tuple[dict[str, object], Optional[PipelineState]]:
    """Reconcile the work directory with any interrupted run.

    Returns the fingerprint and the state of the interrupted run, if any. The
    same job keeps its encoded parts but drops in-flight frames. A different
    input or changed settings wipes the work directory.
    """
    context.ensure_dirs()
    fingerprint = build_job_fingerprint(build_input_identity(job.input_path), job.settings())
    try:
        previous = load_state(context.state_path, fingerprint)
    except ConfigMismatchError as exc:
        print(f"{exc} Clearing stale work directory.")
        context.clear_all()
        return fingerprint, None

    if previous is None:
        context.clear_all()
    else:
        context.clear_frames()
    return fingerprint, previous


def summarize_resume(queued: Sequence[Segment], unprocessed: Sequence[Segment]) -> str:
    """Compare the queue saved by the interrupted run with the fresh scan."""
    queued_indices = {segment.index for segment in queued}
    redo = sorted(segment.index for segment in unprocessed if segment.index not in queued_indices)
    message = (
        f"Resuming interrupted job: {len(queued)} segment(s) were queued, "
        f"{len(unprocessed)} left to process."
    )
    if redo:
        message += f" Re-encoding segment(s) {redo} that failed validation."
    return message


def build_coordinator(
    job: VideoJob,
    toolchain: Toolchain,
    context: JobContext,
    progress: ProgressAggregator,
    args: argparse.Namespace,
    on_segment_done,
) -> PipelineCoordinator:
    exporter = FrameExporter(
        toolchain.ffmpeg,
        job.input_path,
        context,
        segment_size=job.segment_size,
        frame_rate=job.frame_rate,
        marker=args.export_marker,
    )
    upscaler = FrameUpscaler(
        toolchain.realesrgan_binary,
        context,
        scale_factor=job.upscale_ratio,
        model_name=job.model_name,
        gpu_id=args.gpu,
        tile_size=args.tile_size,
        model_path=toolchain.model_path,
        jobs=args.jobs,
        marker=args.upscale_marker,
    )
    encoder = SegmentEncoder(
        toolchain.ffmpeg,
        context,
        frame_rate_expr=job.frame_rate_expr,
        codec_params=job.codec_params,
        marker=args.encode_marker,
    )
    return PipelineCoordinator(
        exporter,
        upscaler,
        encoder,
        progress,
        context,
        on_segment_done=on_segment_done,
    )


@_traced
def run_job(
    job: VideoJob,
    toolchain: Toolchain,
    probe: MediaProbe,
    context: JobContext,
    args: argparse.Namespace,
    *,
    frame_offset: int = 0,
    total_frames: Optional[int] = None,
) -> Path:
    """Plan, resume, process and finalize one video."""
    planned = job.segments
    fingerprint, previous = prepare_job_state(job, context)

    print("Checking existing segments...")
    unprocessed = find_unprocessed_segments(planned, context, probe.count_frames)
    if previous is not None:
        print(f"  {summarize_resume(previous.segments, unprocessed)}")
    print(f"  Segments: {len(planned)} planned, {len(planned) - len(unprocessed)} already encoded\n")

    state = PipelineState(
        config=fingerprint,
        frame_count=job.frame_count,
        frame_rate=job.frame_rate,
        frame_rate_expr=job.frame_rate_expr,
        segments=list(unprocessed),
    )
    save_state(context.state_path, state)

    def persist_remaining(remaining: list[Segment]) -> None:
        state.segments = remaining
        save_state(context.state_path, state)

    if unprocessed:
        print("Processing segments...")
        step_start = time.time()
        progress = ProgressAggregator(
            total_frames if total_frames is not None else job.frame_count,
            len(planned),
            initial_position=frame_offset + skipped_frame_total(planned, unprocessed),
            completed_segments=len(planned) - len(unprocessed),
            disable=args.no_progress,
        )
        try:
            coordinator = build_coordinator(job, toolchain, context, progress, args, persist_remaining)
            coordinator.run(unprocessed)
        finally:
            progress.close()
        print(f"  Time: {format_time(time.time() - step_start)}\n")

    print("Merging segments...")
    step_start = time.time()
    finalizer = Finalizer(toolchain.ffmpeg, context)
    finalizer.finalize(
        planned,
        job.input_path,
        job.output_path,
        display_aspect_ratio=job.display_aspect_ratio,
        has_binary_data_stream=job.has_binary_data_stream,
    )
    print(f"  Time: {format_time(time.time() - step_start)}\n")
    return job.output_path


def print_job_header(job: VideoJob, info: MediaInfo, context: JobContext) -> None:
    print("\n" + "=" * 60)
    print("Segmented Video Upscaler - Real-ESRGAN")
    print("=" * 60)
    print(f"Input:      {job.input_path}")
    print(f"Output:     {job.output_path}")
    print(f"Resolution: {info.width}x{info.height} -> "
          f"{info.width * job.upscale_ratio}x{info.height * job.upscale_ratio}")
    print(f"Framerate:  {job.frame_rate:.3f} fps")
    print(f"Frames:     {job.frame_count} ({len(job.segments)} segment(s) of {job.segment_size})")
    print(f"Model:      {job.model_name}")
    print(f"Encoder:    {job.codec_params.codec} crf={job.codec_params.crf} "
          f"preset={job.codec_params.preset}")
    print(f"Workspace:  {context.root}")
    print("=" * 60 + "\n")


def resolve_work_root(args: argparse.Namespace) -> Path:
    if args.work_dir:
        root = Path(args.work_dir).expanduser().resolve()
    else:
        root = get_default_work_root(args.ramdisk)
    root.mkdir(parents=True, exist_ok=True)
    return root


def ensure_encoder(toolchain: Toolchain, codec: str) -> None:
    if not ffmpeg_supports_encoder(toolchain.ffmpeg, codec):
        raise RuntimeError(f"This ffmpeg build does not provide the {codec} encoder.")


def run_single(args: argparse.Namespace, toolchain: Toolchain) -> int:
    input_video = Path(args.input_path).expanduser().resolve()
    if not input_video.is_file():
        raise FileNotFoundError(f"Input video not found: {input_video}")

    output_video = resolve_output_path(input_video, args.output, args.codec, args.container)
    if output_video == input_video:
        raise ValueError("Output video path must be different from input video path.")

    probe = MediaProbe(toolchain.ffprobe, assumed_fps=args.assumed_fps)
    context = JobContext(resolve_work_root(args), args.container)

    total_start = time.time()
    info = probe.probe(input_video)
    job = build_job(args, info, input_video, output_video)
    print_job_header(job, info, context)
    check_disk_space(context.root, info, job.upscale_ratio, job.segment_size)

    run_job(job, toolchain, probe, context, args)

    print("=" * 60)
    print("Complete!")
    print(f"Total time: {format_time(time.time() - total_start)}")
    print(f"Output: {output_video}")
    output_size_mb = output_video.stat().st_size / (1024 * 1024)
    print(f"Output size: {output_size_mb:.1f} MB")
    print("=" * 60 + "\n")
    return 0


def run_batch(args: argparse.Namespace, toolchain: Toolchain) -> int:
    """Process every pending video under a directory, resuming a crashed run first."""
    root = Path(args.input_path).expanduser().resolve()
    db_path = Path(args.db_path).expanduser().resolve() if args.db_path else get_default_db_path()
    probe = MediaProbe(toolchain.ffprobe, assumed_fps=args.assumed_fps)
    queue = WorkQueue(
        SqliteWorkItemStore(db_path),
        probe,
        resolution_limit=args.resolution,
        probe_workers=args.probe_workers,
    )
    context = JobContext(resolve_work_root(args), args.container)

    print("Discovering videos...")
    step_start = time.time()
    discovered = queue.discover(root, exclude=is_generated_output)
    print(
        f"  Added {discovered.added}, skipped {discovered.skipped} over {args.resolution}p, "
        f"{discovered.known} already known, {discovered.failed} unreadable"
    )
    print(f"  Time: {format_time(time.time() - step_start)}\n")

    resuming_path = read_state_input_path(context.state_path)
    resuming_filename = resuming_path.name if resuming_path else None
    recovered = queue.recover_stale(resuming_filename)
    if recovered:
        print(f"Re-queued {len(recovered)} file(s) left in processing by an earlier run.")

    items = queue.work_list(resuming_filename)
    if not items:
        print("Nothing to process.")
        return 0

    print(f"Counting frames for {len(items)} file(s)...")
    frame_counts = queue.frame_counts(items)
    total_frames = sum(frame_counts.values())
    print(f"  Total frames: {total_frames}\n")

    failures: list[WorkItem] = []
    frame_offset = 0
    for position, item in enumerate(items, start=1):
        input_video = Path(item.filepath)
        output_video = resolve_output_path(input_video, None, args.codec, args.container)
        print(f"[{position}/{len(items)}] {item.filename}")

        if not input_video.is_file():
            progress_write(f"Warning: {input_video} no longer exists, skipping.")
            queue.mark_skipped(item)
        elif has_content(output_video) and item.filename != resuming_filename:
            print(f"  {output_video.name} already exists, skipping")
            queue.mark_done(item)
        else:
            try:
                info = probe.probe(input_video)
            except ProbeError as exc:
                print(f"Error: {item.filename}: {exc}", file=sys.stderr)
                queue.mark_skipped(item)
                frame_offset += frame_counts.get(item.filename, 0)
                continue

            queue.mark_processing(item)
            try:
                job = build_job(args, info, input_video, output_video)
                print_job_header(job, info, context)
                run_job(
                    job,
                    toolchain,
                    probe,
                    context,
                    args,
                    frame_offset=frame_offset,
                    total_frames=total_frames,
                )
            except UpscaleJobError as exc:
                # Row stays in processing; the next run re-queues it.
                print(f"Error: {item.filename}: {exc}", file=sys.stderr)
                failures.append(item)
            else:
                queue.mark_done(item)
                print(f"  Done: {output_video}\n")
        frame_offset += frame_counts.get(item.filename, 0)

    print("=" * 60)
    print(f"Processed {len(items) - len(failures)} of {len(items)} file(s).")
    for item in failures:
        print(f"  Failed: {item.filepath}")
    print("=" * 60 + "\n")
    return 1 if failures else 0


@_traced
def run_pipeline(args: argparse.Namespace) -> int:
    validate_runtime_args(args)
    toolchain = resolve_toolchain(args)
    ensure_encoder(toolchain, args.codec)
    if Path(args.input_path).expanduser().is_dir():
        return run_batch(args, toolchain)
    return run_single(args, toolchain)


def main(argv: Optional[Sequence[str]] = None) -> int:
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    args = parse_args(raw_argv)
    init_tracing(args.otlp_endpoint)
    try:
        return run_pipeline(args)
    except KeyboardInterrupt:
        print("Interrupted by user. Run again to resume.", file=sys.stderr)
        return 130
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
