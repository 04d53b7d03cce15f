"""ONNX Runtime inference: one lazily created session bound to one model file."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Optional, Sequence

import numpy as np
import onnxruntime as ort

from errors import InferenceError

PROVIDER_PREFERENCE = (
    "CUDAExecutionProvider",
    "DmlExecutionProvider",
    "CoreMLExecutionProvider",
    "CPUExecutionProvider",
)

SessionFactory = Callable[[str, Sequence[str]], Any]


def choose_providers(available: Sequence[str]) -> list[str]:
    """Order execution providers by preference, keeping only those installed."""
    if "CUDAExecutionProvider" in available:
        preferred = ["CUDAExecutionProvider"]
    else:
        preferred = [p for p in PROVIDER_PREFERENCE[1:] if p in available]
    if preferred and "CPUExecutionProvider" in available and "CPUExecutionProvider" not in preferred:
        preferred.append("CPUExecutionProvider")
    return preferred or list(available)


def create_onnx_session(model_path: str, providers: Sequence[str]) -> ort.InferenceSession:
    session_options = ort.SessionOptions()
    session_options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
    return ort.InferenceSession(model_path, sess_options=session_options, providers=list(providers))


class InferenceInvoker:
    """
    Runs tensors through one ONNX model.

    The session is created on the first call to :meth:`run` and released by
    :meth:`close` (or leaving the ``with`` block). One invoker must not be
    shared between threads; create one per worker instead.

    Parameters
    ----------
    model_path:
        Local ONNX file. Exactly one primary input and output are used.
    providers:
        Execution providers; defaults to :func:`choose_providers` over what
        onnxruntime reports as available.
    session_factory:
        Callable ``(model_path, providers) -> session``; tests inject fakes here.
    """

    def __init__(
        self,
        model_path: str | Path,
        providers: Optional[Sequence[str]] = None,
        session_factory: Optional[SessionFactory] = None,
    ):
        self.model_path = str(model_path)
        self.providers = list(providers) if providers else None
        self._session_factory = session_factory or create_onnx_session
        self._session: Any = None
        self._input_name: Optional[str] = None
        self._output_name: Optional[str] = None
        self._input_dtype = np.float32

    def __enter__(self) -> "InferenceInvoker":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._session is not None

    def _open(self) -> None:
        providers = self.providers or choose_providers(ort.get_available_providers())
        try:
            session = self._session_factory(self.model_path, providers)
            input_meta = session.get_inputs()[0]
            output_meta = session.get_outputs()[0]
        except Exception as exc:
            raise InferenceError(f"Failed to load model {self.model_path}: {exc}") from exc

        input_type = str(getattr(input_meta, "type", ""))
        self._input_dtype = np.float16 if "float16" in input_type else np.float32
        self._input_name = input_meta.name
        self._output_name = output_meta.name
        self._session = session

    def run(self, tensor: np.ndarray) -> np.ndarray:
        if self._session is None:
            self._open()

        feed = {self._input_name: tensor.astype(self._input_dtype, copy=False)}
        try:
            outputs = self._session.run([self._output_name], feed)
        except Exception as exc:
            raise InferenceError(
                f"Inference failed for input shape {tuple(tensor.shape)}: {exc}"
            ) from exc

        return np.asarray(outputs[0]).astype(np.float32, copy=False)

    def close(self) -> None:
        self._session = None
        self._input_name = None
        self._output_name = None
