"""Work directory layout and the persisted pipeline snapshot used for resume."""

from __future__ import annotations

import json
import os
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from job_errors import ConfigMismatchError
from segments import Segment
from toolchain import progress_write

STATE_FILENAME = "job_state.json"


@dataclass(frozen=True)
class JobContext:
    """All paths used by one job, rooted at a single work directory.

    Every per-segment path is keyed by segment index so concurrent stages
    never write to the same location.
    """

    root: Path
    container: str = "mp4"

    @property
    def frames_root(self) -> Path:
        return self.root / "tmp_frames"

    @property
    def upscaled_root(self) -> Path:
        return self.root / "out_frames"

    @property
    def parts_dir(self) -> Path:
        return self.root / "video_parts"

    @property
    def playlist_path(self) -> Path:
        return self.root / "parts.txt"

    @property
    def concat_path(self) -> Path:
        return self.root / f"temp.{self.container}"

    @property
    def state_path(self) -> Path:
        return self.root / STATE_FILENAME

    def frames_dir(self, index: int) -> Path:
        return self.frames_root / str(index)

    def upscaled_dir(self, index: int) -> Path:
        return self.upscaled_root / str(index)

    def part_path(self, index: int) -> Path:
        return self.parts_dir / f"{index}.{self.container}"

    def partial_part_path(self, index: int) -> Path:
        return self.parts_dir / f"{index}.partial.{self.container}"

    def ensure_dirs(self) -> None:
        for target in (self.frames_root, self.upscaled_root, self.parts_dir):
            target.mkdir(parents=True, exist_ok=True)

    def clear_frames(self) -> None:
        """Drop exported and upscaled frames; encoded parts are kept."""
        for target in (self.frames_root, self.upscaled_root):
            if target.exists():
                shutil.rmtree(target, ignore_errors=True)
            target.mkdir(parents=True, exist_ok=True)

    def clear_all(self) -> None:
        for target in (self.frames_root, self.upscaled_root, self.parts_dir):
            if target.exists():
                shutil.rmtree(target, ignore_errors=True)
        for stale in (self.playlist_path, self.concat_path, self.state_path):
            stale.unlink(missing_ok=True)
        self.ensure_dirs()

    def remove(self) -> None:
        for target in (self.frames_root, self.upscaled_root, self.parts_dir):
            if target.exists():
                shutil.rmtree(target, ignore_errors=True)
        for stale in (self.playlist_path, self.concat_path, self.state_path):
            stale.unlink(missing_ok=True)


def build_input_identity(input_video: Path) -> dict[str, object]:
    """Build stable identity data for input resume checks."""
    stat_info = input_video.stat()
    return {
        "path": str(input_video),
        "size": stat_info.st_size,
        "mtime_ns": stat_info.st_mtime_ns,
    }


def build_job_fingerprint(
    input_identity: dict[str, object],
    settings: dict[str, object],
) -> dict[str, object]:
    return {"input": input_identity, "settings": settings}


@dataclass
class PipelineState:
    """Snapshot of a job in progress, rewritten after every committed segment.

    `segments` is the queue still outstanding at the last save. On restart the
    parts on disk are scanned again and the scan decides what is redone; the
    saved queue is only compared against it to report parts that were
    committed but no longer validate.
    """

    config: dict[str, object]
    frame_count: int
    frame_rate: float
    frame_rate_expr: str
    segments: list[Segment] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "config": self.config,
            "frame_count": self.frame_count,
            "frame_rate": self.frame_rate,
            "frame_rate_expr": self.frame_rate_expr,
            "segments": [segment.to_dict() for segment in self.segments],
            "written_at": int(time.time()),
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "PipelineState":
        return cls(
            config=payload["config"],
            frame_count=int(payload["frame_count"]),
            frame_rate=float(payload["frame_rate"]),
            frame_rate_expr=str(payload["frame_rate_expr"]),
            segments=[Segment.from_dict(item) for item in payload.get("segments", [])],
        )


def read_state_payload(state_path: Path) -> dict[str, object]:
    if not state_path.exists():
        return {}
    try:
        payload = json.loads(state_path.read_text())
    except (OSError, json.JSONDecodeError):
        return {}
    if not isinstance(payload, dict):
        return {}
    return payload


def read_state_input_path(state_path: Path) -> Optional[Path]:
    """Return the input path recorded by an interrupted job, if any."""
    payload = read_state_payload(state_path)
    config = payload.get("config")
    if not isinstance(config, dict):
        return None
    identity = config.get("input")
    if not isinstance(identity, dict) or not identity.get("path"):
        return None
    return Path(str(identity["path"]))


def save_state(state_path: Path, state: PipelineState) -> None:
    """Write the snapshot via a temporary file so a crash never leaves half a file."""
    state_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = state_path.with_suffix(".tmp")
    temp_path.write_text(json.dumps(state.to_dict(), indent=2, sort_keys=True))
    os.replace(temp_path, state_path)


def load_state(
    state_path: Path,
    expected_config: dict[str, object],
) -> Optional[PipelineState]:
    """Load the snapshot of an interrupted run of the same job.

    Returns None when no usable snapshot exists. Raises ConfigMismatchError
    when the snapshot belongs to a different input or different settings.
    """
    payload = read_state_payload(state_path)
    if not payload:
        if state_path.exists():
            progress_write(f"Warning: ignoring unreadable job state at {state_path}")
        return None

    cached = payload.get("config")
    if not isinstance(cached, dict):
        return None
    if cached.get("input") != expected_config.get("input"):
        raise ConfigMismatchError("Work directory holds state for a different input.")
    if cached.get("settings") != expected_config.get("settings"):
        raise ConfigMismatchError("Job settings changed since the interrupted run.")

    try:
        return PipelineState.from_dict(payload)
    except (KeyError, TypeError, ValueError):
        progress_write(f"Warning: ignoring malformed job state at {state_path}")
        return None
