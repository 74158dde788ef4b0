"""
Exception types raised by lcm-imagegen.

Load-time errors (missing files, unresolvable tensor names) are raised while
the pipeline is being constructed and are never retried. Per-call errors
(cancellation, engine failures) abort only the call that raised them; the
loaded sessions stay usable for the next call.
"""

from typing import Iterable


class LcmImageGenError(Exception):
    """Base class for all lcm-imagegen errors."""


class ModelFileNotFoundError(LcmImageGenError, FileNotFoundError):
    """A required ONNX/tokenizer file is missing from the model directory."""

    def __init__(self, component: str, model_dir: str, tried: Iterable[str] = ()):
        self.component = component
        self.model_dir = str(model_dir)
        self.tried = list(tried)
        message = f"Could not find {component} in: {self.model_dir}"
        if self.tried:
            message += f" (tried: {', '.join(self.tried)})"
        super().__init__(message)


class UnresolvedTensorNameError(LcmImageGenError, LookupError):
    """None of the candidate names match an input declared by the model."""

    def __init__(self, role: str, candidates: Iterable[str], available: Iterable[str]):
        self.role = role
        self.candidates = list(candidates)
        self.available = list(available)
        super().__init__(
            f"Could not resolve {role} input. "
            f"Tried: {', '.join(self.candidates)}. "
            f"Model inputs: {', '.join(self.available) or '<none>'}"
        )


class GenerationCancelledError(LcmImageGenError):
    """Cancellation was observed between two denoising steps."""

    def __init__(self, step: int, total_steps: int):
        self.step = step
        self.total_steps = total_steps
        super().__init__(f"Generation cancelled before step {step}/{total_steps}")


class InferenceExecutionError(LcmImageGenError, RuntimeError):
    """The inference engine failed while running a forward pass."""

    def __init__(self, component: str, cause: BaseException):
        self.component = component
        super().__init__(f"{component} forward pass failed: {cause}")
