"""
Error taxonomy for the batch pipeline and the tagged results used at the
dispatcher boundary.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Optional, Union

logger = logging.getLogger(__name__)


class ErrorKind(Enum):
    """Classification of a failed external call"""
    VALIDATION = "validation"
    UPLOAD = "upload"
    INFERENCE = "inference"
    RATE_LIMITED = "rate_limited"
    CREDITS_EXHAUSTED = "credits_exhausted"
    ARCHIVE_FETCH = "archive_fetch"


class PipelineError(Exception):
    """Base class for pipeline errors"""
    kind = ErrorKind.INFERENCE
    retryable = False


class ValidationError(PipelineError):
    """Unsupported file type or invalid selection; never dispatched"""
    kind = ErrorKind.VALIDATION


class UploadError(PipelineError):
    kind = ErrorKind.UPLOAD


class InferenceError(PipelineError):
    """Inference call failed for one item"""
    kind = ErrorKind.INFERENCE

    def __init__(self, message: str, status: Optional[int] = None, retryable: bool = False):
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class RateLimitedError(InferenceError):
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str = "Rate limited - will retry with slower pace"):
        super().__init__(message, status=429, retryable=True)


class CreditsExhaustedError(InferenceError):
    kind = ErrorKind.CREDITS_EXHAUSTED

    def __init__(self, message: str = "AI credits exhausted."):
        super().__init__(message, status=402, retryable=False)


class ArchiveFetchError(PipelineError):
    kind = ErrorKind.ARCHIVE_FETCH


class QueueLockedError(PipelineError):
    """Mutating command issued while a dispatch run is active"""


class InvalidTransitionError(PipelineError):
    """Illegal item status transition"""


class InsufficientCreditsError(PipelineError):
    """Credit gate rejected the batch"""

    def __init__(self, message: str, shortfall: int = 0):
        super().__init__(message)
        self.shortfall = shortfall


@dataclass(frozen=True)
class Ok:
    value: Any

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str
    retryable: bool = False
    status: Optional[int] = None

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok, Err]


def to_err(exc: BaseException, default_kind: ErrorKind = ErrorKind.INFERENCE) -> Err:
    """Convert an exception into a tagged error"""
    if isinstance(exc, PipelineError):
        return Err(
            kind=exc.kind,
            message=str(exc) or exc.__class__.__name__,
            retryable=bool(getattr(exc, 'retryable', False)),
            status=getattr(exc, 'status', None),
        )
    return Err(kind=default_kind, message=str(exc) or exc.__class__.__name__)


async def capture(awaitable: Awaitable, default_kind: ErrorKind = ErrorKind.INFERENCE) -> Result:
    """Await an external call and return Ok/Err instead of raising"""
    try:
        return Ok(await awaitable)
    except Exception as e:
        logger.debug("Captured %s: %r", default_kind.value, e)
        return to_err(e, default_kind)
