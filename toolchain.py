"""Toolchain: binary resolution, subprocess wrappers, and state locations."""

from __future__ import annotations

import argparse
import os
import platform
import shutil
import subprocess
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence

from tqdm import tqdm

APP_NAME = "segment-upscale"
RAMDISK_ROOT = Path("/dev/shm")


def get_default_state_dir() -> Path:
    base = Path.home() / ".cache" / APP_NAME
    base.mkdir(parents=True, exist_ok=True)
    return base


def get_default_work_root(ramdisk: bool = False) -> Path:
    """Return the directory holding per-job frames and segment parts.

    With `ramdisk` the work root lives in /dev/shm when the platform has one,
    which keeps the frame churn off the physical disk.
    """
    if ramdisk and platform.system().lower() == "linux" and RAMDISK_ROOT.is_dir():
        return RAMDISK_ROOT / APP_NAME
    return get_default_state_dir() / "work"


def get_default_db_path() -> Path:
    return get_default_state_dir() / "upscale_queue.db"


@dataclass(frozen=True)
class Toolchain:
    ffmpeg: str
    ffprobe: str
    realesrgan_binary: Path
    model_path: Optional[Path]


def progress_write(message: str) -> None:
    """Write a message without breaking active progress bars."""
    tqdm.write(message)


def run_subprocess(
    cmd: Sequence[str],
    *,
    check: bool = True,
    capture_output: bool = False,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [str(part) for part in cmd],
        check=check,
        capture_output=capture_output,
        text=True,
        timeout=timeout,
    )


def stream_subprocess(
    cmd: Sequence[str],
    *,
    marker: Optional[str],
    on_event: Callable[[], None],
    tail_lines: int = 50,
) -> tuple[int, str]:
    """Run a command and report each stderr line containing `marker`.

    External tools here expose no structured progress, so one matching line
    is treated as one unit of work. Returns the exit code and the last
    `tail_lines` lines of stderr for error reporting.
    """
    tail: deque[str] = deque(maxlen=tail_lines)
    process = subprocess.Popen(
        [str(part) for part in cmd],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.PIPE,
        text=True,
        errors="replace",
        bufsize=1,
    )
    try:
        assert process.stderr is not None
        for line in process.stderr:
            tail.append(line.rstrip())
            if marker and marker in line:
                on_event()
        returncode = process.wait()
    finally:
        if process.poll() is None:
            process.kill()
            process.wait()
    return returncode, "\n".join(tail)


def get_realesrgan_binary_name() -> str:
    """Return the expected Real-ESRGAN binary name for the current OS."""
    if platform.system().lower() == "windows":
        return "realesrgan-ncnn-vulkan.exe"
    return "realesrgan-ncnn-vulkan"


def find_bundled_realesrgan_binary(search_root: Path, binary_name: str) -> Optional[Path]:
    """Search `search_root` for an unpacked Real-ESRGAN release."""
    vendor_candidates = [
        search_root / "Real-ESRGAN-ncnn-vulkan",
        search_root / "realesrgan",
    ]

    for vendor_root in vendor_candidates:
        if not vendor_root.exists():
            continue

        candidates = sorted(vendor_root.rglob(binary_name))
        for candidate in candidates:
            if not candidate.is_file():
                continue
            if platform.system().lower() == "windows":
                return candidate
            if os.access(candidate, os.X_OK):
                return candidate

    return None


def resolve_realesrgan_binary(
    custom_path: Optional[str],
    search_root: Optional[Path] = None,
) -> Path:
    """Resolve Real-ESRGAN binary from custom path, PATH, or vendored location."""
    if search_root is None:
        search_root = Path.cwd()

    if custom_path:
        candidate = Path(custom_path).expanduser().resolve()
        if not candidate.is_file():
            raise FileNotFoundError(f"Real-ESRGAN binary not found at: {candidate}")
        return candidate

    binary_name = get_realesrgan_binary_name()

    system_binary = shutil.which(binary_name)
    if system_binary:
        return Path(system_binary).resolve()

    bundled_binary = find_bundled_realesrgan_binary(search_root, binary_name)
    if bundled_binary:
        return bundled_binary.resolve()

    raise FileNotFoundError(
        "Unable to locate Real-ESRGAN binary. Install it in PATH or pass "
        "--realesrgan-path explicitly."
    )


def resolve_model_path(
    custom_model_path: Optional[str],
    realesrgan_binary: Path,
) -> Optional[Path]:
    """Resolve model directory from explicit value or binary-adjacent models folder."""
    if custom_model_path:
        model_dir = Path(custom_model_path).expanduser().resolve()
        if not model_dir.is_dir():
            raise FileNotFoundError(f"Model directory not found: {model_dir}")
        return model_dir

    sibling_models = realesrgan_binary.parent / "models"
    if sibling_models.is_dir():
        return sibling_models.resolve()
    return None


def ffmpeg_supports_encoder(ffmpeg_bin: str, encoder: str) -> bool:
    """Check whether the ffmpeg build lists `encoder`."""
    result = run_subprocess(
        [ffmpeg_bin, "-hide_banner", "-encoders"],
        check=False,
        capture_output=True,
    )
    if result.returncode != 0:
        return False
    for line in result.stdout.splitlines():
        fields = line.split()
        if len(fields) >= 2 and fields[1] == encoder:
            return True
    return False


def resolve_toolchain(args: argparse.Namespace) -> Toolchain:
    """Resolve runtime binaries and raise clear dependency errors."""
    ffmpeg_bin = shutil.which("ffmpeg")
    ffprobe_bin = shutil.which("ffprobe")
    if not ffmpeg_bin or not ffprobe_bin:
        missing = []
        if not ffmpeg_bin:
            missing.append("ffmpeg")
        if not ffprobe_bin:
            missing.append("ffprobe")
        raise FileNotFoundError(
            f"Missing required dependency: {', '.join(missing)}. "
            "Install it with your system package manager."
        )

    realesrgan_binary = resolve_realesrgan_binary(args.realesrgan_path, Path.cwd())
    model_path = resolve_model_path(args.model_path, realesrgan_binary)

    return Toolchain(
        ffmpeg=ffmpeg_bin,
        ffprobe=ffprobe_bin,
        realesrgan_binary=realesrgan_binary,
        model_path=model_path,
    )
