"""Error taxonomy shared by the image and video pipelines."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from restore_images import PipelineFailure, ProcessResult


class RestoreError(Exception):
    """Base class for every error raised by the restoration pipeline."""


class SizePolicyError(RestoreError, ValueError):
    """Invalid or zero source dimensions."""


class ShapeError(RestoreError, ValueError):
    """Tensor rank, batch or channel count does not match the model contract."""


class InferenceError(RestoreError, RuntimeError):
    """The inference engine failed to load a model or run a tensor."""


class SubprocessError(RestoreError, RuntimeError):
    """An external tool is missing, exited non-zero, or offers no usable codec."""

    def __init__(self, message: str, diagnostic: Optional[str] = None):
        self.diagnostic = diagnostic.strip() if diagnostic else ""
        if self.diagnostic:
            message = f"{message}: {self.diagnostic}"
        super().__init__(message)


class PipelineIOError(RestoreError, OSError):
    """Reading, writing or moving a file failed."""


class PipelineStageError(RestoreError):
    """A single item failed at a named pipeline stage."""

    def __init__(self, stage: str, path: Path, cause: BaseException):
        self.stage = stage
        self.path = path
        self.cause = cause
        super().__init__(f"{path}: failed at {stage}: {cause}")


class PartialBatchFailure(RestoreError):
    """Some items of a batch failed; successes are still available."""

    def __init__(
        self,
        results: Sequence["ProcessResult"],
        failures: Sequence["PipelineFailure"],
    ):
        self.results = list(results)
        self.failures = list(failures)
        first = self.failures[0].describe() if self.failures else "unknown failure"
        super().__init__(
            f"{len(self.failures)} of {len(self.results) + len(self.failures)} "
            f"item(s) failed (first: {first})"
        )
