"""Toolchain: ffmpeg/ffprobe resolution, subprocess wrapper, and console output."""

from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from tqdm import tqdm

from errors import SubprocessError


def get_default_cache_dir() -> Path:
    base = Path.home() / ".cache" / "onnx-restore"
    base.mkdir(parents=True, exist_ok=True)
    return base


@dataclass(frozen=True)
class Toolchain:
    ffmpeg: str
    ffprobe: str


def progress_write(message: str) -> None:
    """Write a message without breaking an active tqdm progress bar."""
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


def run_tool(cmd: Sequence[str], failure_message: str) -> subprocess.CompletedProcess[str]:
    """Run an external tool and raise SubprocessError with its stderr on failure."""
    try:
        result = run_subprocess(cmd, check=False, capture_output=True)
    except OSError as exc:
        raise SubprocessError(failure_message, str(exc)) from exc
    if result.returncode != 0:
        stderr = result.stderr.strip() if result.stderr else f"exit code {result.returncode}"
        raise SubprocessError(failure_message, stderr)
    return result


def resolve_binary(name: str, custom_path: Optional[str] = None) -> str:
    """Resolve a tool from an explicit path or PATH."""
    if custom_path:
        candidate = Path(custom_path).expanduser().resolve()
        if not candidate.is_file():
            raise SubprocessError(f"{name} binary not found at: {candidate}")
        return str(candidate)

    system_binary = shutil.which(name)
    if not system_binary:
        raise SubprocessError(
            f"Missing required dependency: {name}. "
            "Install with Homebrew (macOS) or your system package manager."
        )
    return system_binary


def resolve_toolchain(
    ffmpeg_path: Optional[str] = None,
    ffprobe_path: Optional[str] = None,
) -> Toolchain:
    """Resolve runtime binaries and raise clear dependency errors."""
    return Toolchain(
        ffmpeg=resolve_binary("ffmpeg", ffmpeg_path),
        ffprobe=resolve_binary("ffprobe", ffprobe_path),
    )


def parse_encoder_list(output: str) -> frozenset[str]:
    """Parse the encoder names out of ``ffmpeg -encoders`` output."""
    names: set[str] = set()
    in_table = False
    for line in output.splitlines():
        stripped = line.strip()
        if not in_table:
            if stripped.startswith("---"):
                in_table = True
            continue
        parts = stripped.split()
        if len(parts) >= 2 and len(parts[0]) == 6:
            names.add(parts[1])
    return frozenset(names)


def list_available_encoders(ffmpeg_bin: str) -> frozenset[str]:
    result = run_tool([ffmpeg_bin, "-hide_banner", "-encoders"], "Failed to list ffmpeg encoders")
    return parse_encoder_list(result.stdout)
