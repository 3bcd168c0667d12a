"""Error taxonomy for capability routing, model lifecycle and pipeline execution."""

from enum import Enum


class ErrorKind(str, Enum):
    duplicate_capability = "duplicate_capability"
    model_unavailable = "model_unavailable"
    model_load_failed = "model_load_failed"
    invalid_input = "invalid_input"
    inference_error = "inference_error"
    timeout = "timeout"


class VisionError(Exception):
    """Base for all errors surfaced by the routing/dispatch layer."""

    kind: ErrorKind = ErrorKind.inference_error


class DuplicateCapability(VisionError):
    kind = ErrorKind.duplicate_capability

    def __init__(self, capability_id: str) -> None:
        super().__init__(f"Capability already registered: {capability_id}")
        self.capability_id = capability_id


class ModelUnavailable(VisionError):
    kind = ErrorKind.model_unavailable

    def __init__(self, task: str, detail: str | None = None) -> None:
        message = f"No registered capability serves task '{task}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.task = task


class ModelLoadFailed(VisionError):
    kind = ErrorKind.model_load_failed

    def __init__(self, capability_id: str, cause: BaseException | None = None) -> None:
        reason = f": {cause}" if cause is not None else ""
        super().__init__(f"Failed to load model '{capability_id}'{reason}")
        self.capability_id = capability_id


class InvalidInput(VisionError):
    kind = ErrorKind.invalid_input


class InferenceError(VisionError):
    """Model call raised during execution. Carries pipeline kind and model id for diagnostics."""

    kind = ErrorKind.inference_error

    def __init__(self, pipeline: str, model_id: str, cause: BaseException) -> None:
        super().__init__(f"{pipeline} inference failed on model '{model_id}': {cause}")
        self.pipeline = pipeline
        self.model_id = model_id


class PipelineTimeout(VisionError):
    kind = ErrorKind.timeout

    def __init__(self, what: str, seconds: float) -> None:
        super().__init__(f"{what} exceeded deadline of {seconds:g}s")
        self.seconds = seconds
