"""Model artifact cache: resolve a profile's ONNX file, downloading it if missing."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import requests

from errors import PipelineIOError
from profiles import ModelProfile
from toolchain import get_default_cache_dir

DOWNLOAD_TIMEOUT_SECONDS = 600
DOWNLOAD_CHUNK_SIZE = 1024 * 1024
USER_AGENT = "onnx-restore/0.1"


def get_default_models_dir() -> Path:
    return get_default_cache_dir() / "models"


def is_remote_location(location: str) -> bool:
    return location.startswith(("http://", "https://"))


def download_model(url: str, target: Path) -> Path:
    """Download ``url`` to ``target`` through a ``.part`` file that is renamed on success."""
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise PipelineIOError(f"Cannot create model directory {target.parent}: {exc}") from exc

    tmp_path = target.with_name(target.name + ".part")
    print(f"Downloading model from: {url}")
    try:
        with requests.get(
            url,
            stream=True,
            timeout=DOWNLOAD_TIMEOUT_SECONDS,
            headers={"User-Agent": USER_AGENT},
        ) as resp:
            resp.raise_for_status()
            with open(tmp_path, "wb") as fh:
                for chunk in resp.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if chunk:
                        fh.write(chunk)
        tmp_path.replace(target)
    except (requests.RequestException, OSError) as exc:
        tmp_path.unlink(missing_ok=True)
        raise PipelineIOError(f"Failed to download model {url}: {exc}") from exc

    print(f"Model saved to: {target}")
    return target


def ensure_model_artifact(profile: ModelProfile, models_dir: Optional[Path] = None) -> Path:
    """Return a local path to the profile's model file, downloading it once."""
    location = profile.artifact_location
    if not is_remote_location(location):
        local = Path(location).expanduser().resolve()
        if not local.is_file():
            raise PipelineIOError(f"Model file not found: {local}")
        return local

    if models_dir is None:
        models_dir = get_default_models_dir()
    target = Path(models_dir).expanduser().resolve() / f"{profile.name}.onnx"
    if target.is_file() and target.stat().st_size > 0:
        return target
    return download_model(location, target)
