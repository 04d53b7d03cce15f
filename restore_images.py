"""
Image restoration pipeline.

Each image goes through Loaded -> Resized -> Padded -> Encoded -> Inferred ->
Decoded -> Cropped -> Saved. A failure at any stage is reported with the stage
name; batches collect failures next to results instead of aborting.
"""

from __future__ import annotations

import contextlib
import enum
import os
import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor, as_completed, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence

import numpy as np
from PIL import Image
from tqdm import tqdm

from errors import PipelineIOError, PipelineStageError
from imaging import (
    DEFAULT_WORKING_CAP,
    crop_to_size,
    from_tensor,
    pad_to_multiple,
    resize_image,
    resolve_target_size,
    to_tensor,
)
from inference import InferenceInvoker
from model_store import ensure_model_artifact
from profiles import ModelProfile
from toolchain import progress_write
from tracing import traced

# ── Constants ──────────────────────────────────────────────────────────────────

SUPPORTED_IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".bmp", ".webp", ".tif", ".tiff")
MIN_VIDEO_WORKERS = 2
MAX_VIDEO_WORKERS = 8


class Stage(str, enum.Enum):
    LOADED = "Loaded"
    RESIZED = "Resized"
    PADDED = "Padded"
    ENCODED = "Encoded"
    INFERRED = "Inferred"
    DECODED = "Decoded"
    CROPPED = "Cropped"
    SAVED = "Saved"


@dataclass(frozen=True)
class WorkItem:
    path: Path
    width: int
    height: int


@dataclass(frozen=True)
class ProcessResult:
    source_path: Path
    output_path: Path
    input_size: tuple[int, int]
    output_size: tuple[int, int]
    elapsed_seconds: float


@dataclass(frozen=True)
class PipelineFailure:
    source_path: Path
    stage: Stage
    message: str
    cause: Optional[BaseException] = field(default=None, compare=False, repr=False)

    @classmethod
    def from_error(cls, error: PipelineStageError) -> "PipelineFailure":
        return cls(
            source_path=Path(error.path),
            stage=Stage(error.stage),
            message=str(error.cause),
            cause=error.cause,
        )

    def describe(self) -> str:
        return f"{self.source_path}: failed at {self.stage.value}: {self.message}"


# ── Functions ──────────────────────────────────────────────────────────────────


def default_worker_count(cpu_count: Optional[int] = None) -> int:
    """Worker pool size for video mode: hardware threads clamped to [2, 8]."""
    if cpu_count is None:
        cpu_count = os.cpu_count() or MIN_VIDEO_WORKERS
    return max(MIN_VIDEO_WORKERS, min(MAX_VIDEO_WORKERS, cpu_count))


def output_path_for(source: Path, profile: ModelProfile, output_dir: Path) -> Path:
    return output_dir / f"{source.stem}{profile.output_suffix()}.png"


def collect_image_paths(inputs: Sequence[str | Path]) -> list[Path]:
    """Expand folders into supported image files, keeping each resolved path once."""
    paths: list[Path] = []
    for raw in inputs:
        path = Path(raw).expanduser().resolve()
        if path.is_dir():
            paths.extend(
                sorted(
                    child
                    for child in path.iterdir()
                    if child.is_file() and child.suffix.lower() in SUPPORTED_IMAGE_EXTENSIONS
                )
            )
        else:
            paths.append(path)
    return list(dict.fromkeys(paths))


@contextlib.contextmanager
def _stage(stage: Stage, path: Path) -> Iterator[None]:
    try:
        yield
    except PipelineStageError:
        raise
    except Exception as exc:
        raise PipelineStageError(stage.value, path, exc) from exc


class ImageRestorationPipeline:
    """Restores single images with one inference invoker."""

    def __init__(self, invoker: InferenceInvoker, working_cap: int = DEFAULT_WORKING_CAP):
        self.invoker = invoker
        self.working_cap = working_cap

    def __enter__(self) -> "ImageRestorationPipeline":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.invoker.close()

    def load(self, path: Path) -> tuple[WorkItem, Image.Image]:
        with _stage(Stage.LOADED, path):
            with Image.open(path) as opened:
                image = opened.convert("RGB")
            return WorkItem(path=path, width=image.width, height=image.height), image

    def process(self, path: str | Path, profile: ModelProfile, output_dir: str | Path) -> ProcessResult:
        start = time.perf_counter()
        path = Path(path).resolve()
        output_dir = Path(output_dir)

        item, image = self.load(path)

        with _stage(Stage.RESIZED, path):
            target = resolve_target_size(
                item.width,
                item.height,
                profile.minimum_dimension,
                self.working_cap,
            )
            image = resize_image(image, target)
            working = np.asarray(image, dtype=np.uint8)
            work_height, work_width = working.shape[:2]

        with _stage(Stage.PADDED, path):
            padded, padding = pad_to_multiple(working, profile.window_multiple)

        with _stage(Stage.ENCODED, path):
            tensor = to_tensor(padded, profile.tensor_layout, profile.input_range)

        with _stage(Stage.INFERRED, path):
            output = self.invoker.run(tensor)

        with _stage(Stage.DECODED, path):
            restored = from_tensor(output, profile.output_range, profile.tensor_layout)

        with _stage(Stage.CROPPED, path):
            if padding.is_padded:
                # Crop base is the pre-padding working size, not the padded size.
                restored = crop_to_size(
                    restored,
                    work_width * profile.scale_factor,
                    work_height * profile.scale_factor,
                )

        output_path = output_path_for(path, profile, output_dir)
        with _stage(Stage.SAVED, path):
            try:
                output_dir.mkdir(parents=True, exist_ok=True)
                Image.fromarray(np.ascontiguousarray(restored)).save(output_path, format="PNG")
            except OSError as exc:
                raise PipelineIOError(f"Failed to write {output_path}: {exc}") from exc

        out_height, out_width = restored.shape[:2]
        return ProcessResult(
            source_path=path,
            output_path=output_path,
            input_size=(item.width, item.height),
            output_size=(int(out_width), int(out_height)),
            elapsed_seconds=time.perf_counter() - start,
        )


PipelineFactory = Callable[[], ImageRestorationPipeline]


class BatchScheduler:
    """
    Runs the image pipeline over many files.

    ``parallelism == 1`` processes files in input order on the calling thread.
    Larger values submit every file to a worker pool: the caller's ``executor``
    when given (it is never shut down here), otherwise a pool scoped to the
    call. Each worker thread builds its own pipeline from ``pipeline_factory``
    so inference sessions are never shared between threads.
    """

    def __init__(self, pipeline_factory: PipelineFactory, executor: Optional[Executor] = None):
        self.pipeline_factory = pipeline_factory
        self.executor = executor

    @traced
    def run_all(
        self,
        paths: Sequence[str | Path],
        profile: ModelProfile,
        output_dir: str | Path,
        parallelism: int = 1,
        *,
        desc: str = "Restoring",
    ) -> tuple[list[ProcessResult], list[PipelineFailure]]:
        if parallelism < 1:
            raise ValueError(f"parallelism must be >= 1 (got {parallelism})")

        results: list[ProcessResult] = []
        failures: list[PipelineFailure] = []
        if not paths:
            return results, failures

        if parallelism == 1:
            with self.pipeline_factory() as pipeline:
                for path in tqdm(paths, desc=desc, unit="img"):
                    try:
                        results.append(pipeline.process(path, profile, output_dir))
                    except PipelineStageError as exc:
                        failure = PipelineFailure.from_error(exc)
                        progress_write(f"Warning: {failure.describe()}")
                        failures.append(failure)
            return results, failures

        local = threading.local()
        created: list[ImageRestorationPipeline] = []
        created_lock = threading.Lock()

        def worker(path: str | Path) -> ProcessResult:
            pipeline = getattr(local, "pipeline", None)
            if pipeline is None:
                pipeline = self.pipeline_factory()
                local.pipeline = pipeline
                with created_lock:
                    created.append(pipeline)
            return pipeline.process(path, profile, output_dir)

        owns_executor = self.executor is None
        executor = self.executor or ThreadPoolExecutor(
            max_workers=parallelism,
            thread_name_prefix="restore-worker",
        )
        futures: list[Future] = []
        try:
            futures.extend(executor.submit(worker, path) for path in paths)
            for future in tqdm(as_completed(futures), total=len(futures), desc=desc, unit="img"):
                try:
                    results.append(future.result())
                except PipelineStageError as exc:
                    failure = PipelineFailure.from_error(exc)
                    progress_write(f"Warning: {failure.describe()}")
                    failures.append(failure)
        finally:
            # On interruption, drop queued items and let running ones finish
            # before their sessions are released.
            for future in futures:
                future.cancel()
            wait(futures)
            if owns_executor:
                executor.shutdown(wait=True)
            for pipeline in created:
                pipeline.close()

        return results, failures


def make_pipeline_factory(
    model_path: Path,
    *,
    providers: Optional[Sequence[str]] = None,
    working_cap: int = DEFAULT_WORKING_CAP,
) -> PipelineFactory:
    def factory() -> ImageRestorationPipeline:
        return ImageRestorationPipeline(
            InferenceInvoker(model_path, providers=providers),
            working_cap=working_cap,
        )

    return factory


@traced
def process_batch(
    paths: Sequence[str | Path],
    profile: ModelProfile,
    output_dir: str | Path,
    *,
    parallelism: int = 1,
    models_dir: Optional[Path] = None,
    providers: Optional[Sequence[str]] = None,
    working_cap: int = DEFAULT_WORKING_CAP,
    executor: Optional[Executor] = None,
) -> tuple[list[ProcessResult], list[PipelineFailure]]:
    """Restore a set of images; per-file failures are returned, not raised."""
    model_path = ensure_model_artifact(profile, models_dir)
    scheduler = BatchScheduler(
        make_pipeline_factory(model_path, providers=providers, working_cap=working_cap),
        executor=executor,
    )
    return scheduler.run_all(paths, profile, output_dir, parallelism)
