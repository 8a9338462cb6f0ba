"""
Error taxonomy for the generation pipeline.

Only RequestValidationError, PreGenGateBlocked, GenerationBackendError and
PersistenceError ever leave the pipeline. ContextProviderError and
EvaluatorError are recovered inside their stages.

Every error exposes a stable `public_message` and a `status_code` for the HTTP
layer. Internal details stay in `str(error)` and the logs.
"""

from enum import Enum
from typing import List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from ..models import QualityGateResult


class PipelineError(Exception):
    """Base class for all pipeline errors."""
    status_code = 500
    public_message = "The image could not be generated. Please try again later."

    def __init__(self, message: str = "", stages_completed: Optional[List[str]] = None):
        super().__init__(message or self.public_message)
        self.stages_completed = list(stages_completed or [])


class RequestValidationError(PipelineError):
    """Malformed request. Raised before any stage runs."""
    status_code = 400
    public_message = "The generation request is invalid."

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors))
        self.errors = list(errors)


class PreGenGateBlocked(PipelineError):
    """The quality gate refused the request. Not a system failure."""
    status_code = 422
    public_message = "Please refine your request before generating."

    def __init__(self, gate_result: "QualityGateResult", stages_completed: Optional[List[str]] = None):
        super().__init__(
            f"Pre-generation quality gate blocked request (score: {gate_result.blended_score}/100)",
            stages_completed,
        )
        self.gate_result = gate_result

    @property
    def suggestions(self) -> List[str]:
        return self.gate_result.suggestions


class ContextProviderError(PipelineError):
    """A context provider failed or timed out. Always recovered locally."""

    def __init__(self, stage_name: str, message: str):
        super().__init__(f"{stage_name}: {message}")
        self.stage_name = stage_name


class EvaluatorError(PipelineError):
    """The Tier-2 model evaluator failed. Always recovered locally."""


class BackendErrorKind(str, Enum):
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    CONTENT_POLICY = "content_policy"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


_BACKEND_STATUS = {
    BackendErrorKind.AUTH: 502,
    BackendErrorKind.RATE_LIMIT: 429,
    BackendErrorKind.CONTENT_POLICY: 422,
    BackendErrorKind.TIMEOUT: 504,
    BackendErrorKind.UNKNOWN: 502,
}

_BACKEND_MESSAGES = {
    BackendErrorKind.AUTH: "The image service is temporarily unavailable.",
    BackendErrorKind.RATE_LIMIT: "The image service is busy. Please try again shortly.",
    BackendErrorKind.CONTENT_POLICY: "The request was declined by the content policy. Please adjust your instruction.",
    BackendErrorKind.TIMEOUT: "The image service took too long to respond. Please try again.",
    BackendErrorKind.UNKNOWN: "The image could not be generated. Please try again later.",
}


class GenerationBackendError(PipelineError):
    """Classified failure of the external generation backend."""

    def __init__(self, kind: BackendErrorKind, message: str, stages_completed: Optional[List[str]] = None):
        self.kind = kind
        super().__init__(message, stages_completed)

    @property
    def status_code(self) -> int:
        return _BACKEND_STATUS[self.kind]

    @property
    def public_message(self) -> str:
        return _BACKEND_MESSAGES[self.kind]

    @property
    def is_retryable(self) -> bool:
        return self.kind in (BackendErrorKind.RATE_LIMIT, BackendErrorKind.TIMEOUT)


class PersistenceError(PipelineError):
    """The artifact exists and cost was incurred, but the record was not saved."""
    status_code = 500
    public_message = "The image was generated but could not be saved. Please contact support."
