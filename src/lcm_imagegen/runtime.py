"""
onnxruntime session helpers shared by the text encoder, UNet and VAE adapters.

- create_session(): builds SessionOptions / provider list from SessionConfig
- find_model_file(): locates a component's .onnx file in a model directory
- resolve_input_name(): maps candidate tensor names onto a model's inputs
- OnnxComponent: base class owning one session and its run lock
"""

import logging
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np
import onnxruntime as ort

from lcm_imagegen.config import SessionConfig
from lcm_imagegen.errors import (
    InferenceExecutionError,
    ModelFileNotFoundError,
    UnresolvedTensorNameError,
)

logger = logging.getLogger(__name__)

_GRAPH_OPTIMIZATION = {
    "disabled": ort.GraphOptimizationLevel.ORT_DISABLE_ALL,
    "basic": ort.GraphOptimizationLevel.ORT_ENABLE_BASIC,
    "extended": ort.GraphOptimizationLevel.ORT_ENABLE_EXTENDED,
    "all": ort.GraphOptimizationLevel.ORT_ENABLE_ALL,
}

# ONNX element type string -> numpy dtype
_ONNX_TO_NUMPY = {
    "tensor(float)": np.float32,
    "tensor(float16)": np.float16,
    "tensor(double)": np.float64,
    "tensor(int64)": np.int64,
    "tensor(int32)": np.int32,
}


def numpy_dtype(onnx_type: str, default=np.float32):
    """Map an ONNX type string (NodeArg.type) to a numpy dtype."""
    return _ONNX_TO_NUMPY.get(onnx_type, default)


def build_session_options(config: SessionConfig) -> ort.SessionOptions:
    """Translate SessionConfig into onnxruntime SessionOptions."""
    options = ort.SessionOptions()
    options.log_severity_level = config.log_severity_level
    options.graph_optimization_level = _GRAPH_OPTIMIZATION[config.graph_optimization]
    if config.intra_op_num_threads > 0:
        options.intra_op_num_threads = config.intra_op_num_threads
    if config.inter_op_num_threads > 0:
        options.inter_op_num_threads = config.inter_op_num_threads
    if config.provider == "directml":
        # DirectML does not support memory patterns or parallel execution
        options.enable_mem_pattern = False
        options.execution_mode = ort.ExecutionMode.ORT_SEQUENTIAL
    return options


def create_session(
    model_path: str | Path,
    config: Optional[SessionConfig] = None,
) -> ort.InferenceSession:
    """
    Create an InferenceSession for model_path.

    Args:
        model_path: Path to the .onnx file
        config: Session configuration (default: SessionConfig())

    Returns:
        Loaded onnxruntime.InferenceSession
    """
    config = config or SessionConfig()
    providers = config.get_providers(ort.get_available_providers())
    provider_options = [
        {"device_id": config.device_id}
        if p in ("CUDAExecutionProvider", "DmlExecutionProvider")
        else {}
        for p in providers
    ]

    logger.info(f"Loading ONNX model: {model_path} (providers: {providers})")
    return ort.InferenceSession(
        str(model_path),
        sess_options=build_session_options(config),
        providers=providers,
        provider_options=provider_options,
    )


def find_model_file(
    model_dir: str | Path,
    component: str,
    candidates: Sequence[str],
    patterns: Sequence[str] = (),
) -> Path:
    """
    Locate a component file inside a model directory.

    Conventional relative paths are tried first, then each glob pattern is
    searched recursively (first sorted match wins).

    Raises:
        ModelFileNotFoundError: If nothing matches
    """
    model_dir = Path(model_dir)
    for relative in candidates:
        path = model_dir / relative
        if path.is_file():
            return path

    for pattern in patterns:
        matches = sorted(p for p in model_dir.rglob(pattern) if p.is_file())
        if matches:
            logger.debug(f"Found {component} by pattern {pattern!r}: {matches[0]}")
            return matches[0]

    raise ModelFileNotFoundError(component, str(model_dir), [*candidates, *patterns])


def resolve_input_name(
    input_names: Iterable[str],
    candidates: Sequence[str],
    role: str,
    required: bool = True,
    substring: bool = True,
) -> Optional[str]:
    """
    Resolve a model input name from an ordered candidate list.

    Case-insensitive exact matches are tried for every candidate before
    falling back to substring matches.

    Args:
        input_names: Names declared by the model
        candidates: Ordered candidate names
        role: Human-readable role for error messages (e.g. "sample")
        required: Raise if nothing matches (otherwise return None)
        substring: Also try substring matches after the exact pass

    Raises:
        UnresolvedTensorNameError: If required and no candidate matches
    """
    names = list(input_names)
    lowered = {name.lower(): name for name in names}

    for candidate in candidates:
        match = lowered.get(candidate.lower())
        if match is not None:
            return match

    if substring:
        for candidate in candidates:
            for name in names:
                if candidate.lower() in name.lower():
                    return name

    if required:
        raise UnresolvedTensorNameError(role, candidates, names)
    return None


class OnnxComponent:
    """
    One ONNX session plus the lock that serializes its run() calls.

    Subclasses resolve their tensor names in __init__ so that a model with
    unexpected inputs fails at load time rather than mid-generation.
    """

    component_name = "model"

    def __init__(self, session: Any, serialize_runs: bool = True):
        self.session = session
        self._lock: Optional[threading.Lock] = threading.Lock() if serialize_runs else None
        self._inputs = {node.name: node for node in session.get_inputs()}
        self._outputs = [node.name for node in session.get_outputs()]

    @property
    def input_names(self) -> List[str]:
        return list(self._inputs)

    @property
    def output_names(self) -> List[str]:
        return list(self._outputs)

    def input_shape(self, name: str) -> list:
        return list(self._inputs[name].shape)

    def input_dtype(self, name: str, default=np.float32):
        return numpy_dtype(self._inputs[name].type, default)

    def run(self, feeds: Dict[str, np.ndarray]) -> List[np.ndarray]:
        """
        Run the session, serialized through the component lock.

        Raises:
            InferenceExecutionError: If the engine raises
        """
        try:
            if self._lock is None:
                return self.session.run(None, feeds)
            with self._lock:
                return self.session.run(None, feeds)
        except Exception as e:
            raise InferenceExecutionError(self.component_name, e) from e

    def close(self) -> None:
        """Drop the session reference so onnxruntime can release it."""
        self.session = None
