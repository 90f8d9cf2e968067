"""
Thin helpers around onnxruntime sessions.

All tensor execution goes through `run_session` so runtime errors and
non-finite outputs surface as InferenceFailure.
"""

import logging
from pathlib import Path
from typing import Any

import numpy as np
import onnxruntime as ort

from transcribe.config import ORT_INTRA_THREADS, ORT_PROVIDERS
from transcribe.core.errors import InferenceFailure, ModelFilesMissing

logger = logging.getLogger(__name__)


def create_session(
    model_path: str | Path,
    intra_threads: int = ORT_INTRA_THREADS,
    providers: list[str] | None = None,
) -> ort.InferenceSession:
    """
    Open an ONNX model with full graph optimization.

    Raises:
        ModelFilesMissing: `model_path` is not an existing file
    """
    if not Path(model_path).is_file():
        raise ModelFilesMissing([model_path])

    options = ort.SessionOptions()
    options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
    if intra_threads > 0:
        options.intra_op_num_threads = intra_threads

    logger.debug(f"Opening ONNX session: {model_path}")
    return ort.InferenceSession(
        str(model_path),
        sess_options=options,
        providers=providers or ORT_PROVIDERS,
    )


def input_names(session: ort.InferenceSession) -> list[str]:
    return [i.name for i in session.get_inputs()]


def input_shape(session: ort.InferenceSession, name: str) -> list[Any]:
    for node in session.get_inputs():
        if node.name == name:
            return list(node.shape)
    raise KeyError(name)


def run_session(
    session: ort.InferenceSession,
    feeds: dict[str, np.ndarray],
    output_names: list[str] | None = None,
    what: str = "session",
) -> dict[str, np.ndarray]:
    """
    Run a session and return its outputs by name.

    Raises:
        InferenceFailure: the runtime raised, or a float output contains NaN/Inf
    """
    names = output_names or [o.name for o in session.get_outputs()]
    try:
        values = session.run(names, feeds)
    except Exception as e:
        raise InferenceFailure(f"{what}: {e}") from e

    outputs = dict(zip(names, values))
    for name, value in outputs.items():
        ensure_finite(value, f"{what}:{name}")
    return outputs


def ensure_finite(value: np.ndarray, what: str) -> None:
    arr = np.asarray(value)
    if np.issubdtype(arr.dtype, np.floating) and not np.all(np.isfinite(arr)):
        raise InferenceFailure(f"{what} produced non-finite values")
