"""Persisted batch work queue over a directory tree of videos."""

from __future__ import annotations

import sqlite3
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional

from job_errors import ProbeError
from media_probe import MediaInfo, MediaProbe
from toolchain import progress_write

VIDEO_EXTENSIONS = (
    ".mkv",
    ".avi",
    ".mp4",
    ".divx",
    ".flv",
    ".m4v",
    ".mov",
    ".ogv",
    ".ts",
    ".webm",
    ".wmv",
)
DEFAULT_PROBE_WORKERS = 4


class WorkStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SKIPPED = "skipped"
    DONE = "done"


@dataclass
class WorkItem:
    filename: str
    filepath: str
    width: int
    height: int
    duration: float
    pixel_format: str
    display_aspect_ratio: Optional[str]
    sample_aspect_ratio: Optional[str]
    container: str
    size: int
    folder_size: int
    bitrate: int
    codec: str
    resolution_limit: int
    status: WorkStatus
    content_hash: Optional[str]

    @classmethod
    def from_media_info(
        cls,
        info: MediaInfo,
        *,
        folder_size: int,
        resolution_limit: int,
    ) -> "WorkItem":
        status = WorkStatus.PENDING if info.height <= resolution_limit else WorkStatus.SKIPPED
        return cls(
            filename=info.filepath.name,
            filepath=str(info.filepath),
            width=info.width,
            height=info.height,
            duration=info.duration,
            pixel_format=info.pixel_format,
            display_aspect_ratio=info.display_aspect_ratio,
            sample_aspect_ratio=info.sample_aspect_ratio,
            container=info.container_format,
            size=info.size,
            folder_size=folder_size,
            bitrate=info.bitrate,
            codec=info.codec,
            resolution_limit=resolution_limit,
            status=status,
            content_hash=info.extradata_hash,
        )

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "WorkItem":
        values = {field.name: row[field.name] for field in fields(cls)}
        values["status"] = WorkStatus(values["status"])
        return cls(**values)


class WorkItemStore(ABC):
    """Storage for batch work items; rows are only ever inserted or re-statused."""

    @abstractmethod
    def get(self, filename: str) -> Optional[WorkItem]:
        pass

    @abstractmethod
    def upsert_work_item(self, item: WorkItem) -> bool:
        """Insert `item` unless its filename is known. Returns True when inserted."""
        pass

    @abstractmethod
    def list_by_status(self, status: WorkStatus) -> list[WorkItem]:
        """Items with `status` in discovery order."""
        pass

    @abstractmethod
    def set_status(self, filename: str, status: WorkStatus) -> None:
        pass


SCHEMA = """
CREATE TABLE IF NOT EXISTS video_info (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    filename TEXT UNIQUE NOT NULL,
    filepath TEXT NOT NULL,
    width INTEGER NOT NULL,
    height INTEGER NOT NULL,
    duration REAL NOT NULL,
    pixel_format TEXT NOT NULL,
    display_aspect_ratio TEXT,
    sample_aspect_ratio TEXT,
    container TEXT NOT NULL,
    size INTEGER NOT NULL,
    folder_size INTEGER NOT NULL,
    bitrate INTEGER NOT NULL,
    codec TEXT NOT NULL,
    resolution_limit INTEGER NOT NULL,
    status TEXT NOT NULL,
    content_hash TEXT
);
"""

COLUMNS = tuple(field.name for field in fields(WorkItem))


class SqliteWorkItemStore(WorkItemStore):
    """SQLite-backed store.

    sqlite3 connections must not be shared across threads, so every operation
    opens its own short-lived connection under one lock. Discovery probes in
    parallel but all writes go through here one at a time.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._lock = threading.Lock()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            conn = self._open()
            try:
                conn.executescript(SCHEMA)
                conn.commit()
            finally:
                conn.close()

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    def get(self, filename: str) -> Optional[WorkItem]:
        with self._lock:
            conn = self._open()
            try:
                row = conn.execute(
                    "SELECT * FROM video_info WHERE filename=?", (filename,)
                ).fetchone()
            finally:
                conn.close()
        return WorkItem.from_row(row) if row else None

    def upsert_work_item(self, item: WorkItem) -> bool:
        values = []
        for column in COLUMNS:
            value = getattr(item, column)
            values.append(value.value if isinstance(value, WorkStatus) else value)
        placeholders = ", ".join("?" for _ in COLUMNS)
        with self._lock:
            conn = self._open()
            try:
                cursor = conn.execute(
                    f"INSERT INTO video_info ({', '.join(COLUMNS)}) VALUES ({placeholders}) "
                    "ON CONFLICT(filename) DO NOTHING",
                    values,
                )
                conn.commit()
                return cursor.rowcount == 1
            finally:
                conn.close()

    def list_by_status(self, status: WorkStatus) -> list[WorkItem]:
        with self._lock:
            conn = self._open()
            try:
                rows = conn.execute(
                    "SELECT * FROM video_info WHERE status=? ORDER BY id", (status.value,)
                ).fetchall()
            finally:
                conn.close()
        return [WorkItem.from_row(row) for row in rows]

    def set_status(self, filename: str, status: WorkStatus) -> None:
        with self._lock:
            conn = self._open()
            try:
                conn.execute(
                    "UPDATE video_info SET status=? WHERE filename=?", (status.value, filename)
                )
                conn.commit()
            finally:
                conn.close()


def discover_video_files(root: Path) -> list[Path]:
    """Recursively list files with a known video container extension."""
    return sorted(
        path
        for path in root.rglob("*")
        if path.is_file() and path.suffix.lower() in VIDEO_EXTENSIONS
    )


def folder_size(directory: Path) -> int:
    """Total size of the files under `directory`; files that vanish mid-walk count as 0."""
    total = 0
    for path in directory.rglob("*"):
        try:
            if path.is_file():
                total += path.stat().st_size
        except OSError:
            continue
    return total


@dataclass(frozen=True)
class DiscoveryResult:
    added: int
    skipped: int
    known: int
    failed: int


class WorkQueue:
    """Status-tracked list of input files for directory mode."""

    def __init__(
        self,
        store: WorkItemStore,
        probe: MediaProbe,
        *,
        resolution_limit: int,
        probe_workers: int = DEFAULT_PROBE_WORKERS,
    ) -> None:
        self.store = store
        self.probe = probe
        self.resolution_limit = resolution_limit
        self.probe_workers = probe_workers

    def _probe_item(self, path: Path, directory_size: int) -> WorkItem:
        info = self.probe.probe(path, exact_frame_count=False)
        return WorkItem.from_media_info(
            info,
            folder_size=directory_size,
            resolution_limit=self.resolution_limit,
        )

    def discover(
        self,
        root: Path,
        exclude: Optional[Callable[[Path], bool]] = None,
    ) -> DiscoveryResult:
        """Probe files not yet in the store and insert them as pending or skipped.

        Files over the resolution ceiling are recorded as skipped. Files that
        fail to probe are reported and left out so the next run tries again.
        """
        candidates = discover_video_files(root)
        if exclude is not None:
            candidates = [path for path in candidates if not exclude(path)]
        new_paths = [path for path in candidates if self.store.get(path.name) is None]
        known = len(candidates) - len(new_paths)
        directory_sizes = {
            parent: folder_size(parent) for parent in {path.parent for path in new_paths}
        }

        probed: dict[Path, WorkItem] = {}
        failed = 0
        with ThreadPoolExecutor(
            max_workers=max(1, self.probe_workers),
            thread_name_prefix="Discovery",
        ) as executor:
            futures = {
                executor.submit(self._probe_item, path, directory_sizes[path.parent]): path
                for path in new_paths
            }
            for future in as_completed(futures):
                path = futures[future]
                try:
                    probed[path] = future.result()
                except ProbeError as exc:
                    failed += 1
                    progress_write(f"Warning: could not probe {path}: {exc}")

        added = 0
        skipped = 0
        # Insert in walk order so discovery order does not depend on probe timing.
        for path in new_paths:
            item = probed.get(path)
            if item is None:
                continue
            if not self.store.upsert_work_item(item):
                known += 1
                continue
            if item.status is WorkStatus.SKIPPED:
                skipped += 1
            else:
                added += 1
        return DiscoveryResult(added=added, skipped=skipped, known=known, failed=failed)

    def recover_stale(self, current_filename: Optional[str] = None) -> list[str]:
        """Demote rows left in processing by a crashed run back to pending."""
        recovered = []
        for item in self.store.list_by_status(WorkStatus.PROCESSING):
            if item.filename == current_filename:
                continue
            self.store.set_status(item.filename, WorkStatus.PENDING)
            recovered.append(item.filename)
        return recovered

    def work_list(self, resuming_filename: Optional[str] = None) -> list[WorkItem]:
        """Pending items in discovery order, preceded by the item being resumed."""
        items = []
        if resuming_filename:
            resumed = self.store.get(resuming_filename)
            if resumed is not None and resumed.status is WorkStatus.PROCESSING:
                items.append(resumed)
        items.extend(self.store.list_by_status(WorkStatus.PENDING))
        return items

    def mark_processing(self, item: WorkItem) -> None:
        self.store.set_status(item.filename, WorkStatus.PROCESSING)

    def mark_done(self, item: WorkItem) -> None:
        self.store.set_status(item.filename, WorkStatus.DONE)

    def mark_skipped(self, item: WorkItem) -> None:
        self.store.set_status(item.filename, WorkStatus.SKIPPED)

    def frame_counts(self, items: Iterable[WorkItem]) -> dict[str, int]:
        """Frame counts for batch progress; unprobeable files count as zero."""
        counts: dict[str, int] = {}
        for item in items:
            try:
                counts[item.filename] = self.probe.frame_count(Path(item.filepath))
            except ProbeError as exc:
                progress_write(f"Warning: no frame count for {item.filename}: {exc}")
                counts[item.filename] = 0
        return counts
