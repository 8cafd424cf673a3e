"""Error taxonomy for the transcoding engine.

Every failure that ends a job maps to one ErrorKind. Exceptions carry enough
detail (stage name, underlying cause) for a caller to decide whether to
resubmit with different options.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class ErrorKind(str, Enum):
    """Kinds of terminal job failures."""
    UNSUPPORTED_CONTAINER = "unsupported_container"
    CORRUPT_HEADER = "corrupt_header"
    NO_DECODABLE_STREAMS = "no_decodable_streams"
    INCOMPATIBLE_FORMAT = "incompatible_format"
    STAGE_FAILURE = "stage_failure"
    WORKER_LOST = "worker_lost"
    TIMEOUT = "timeout"


class ErrorDetail(BaseModel):
    """Failure record attached to a Failed job."""
    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str
    stage: Optional[str] = None
    cause: Optional[str] = None


def describe_cause(cause: BaseException) -> str:
    """Render an exception as 'ClassName: message'."""
    message = str(cause)
    name = type(cause).__name__
    return f"{name}: {message}" if message else name


class TranscodeError(Exception):
    """Base class for failures that terminate a job."""

    kind: ErrorKind = ErrorKind.STAGE_FAILURE

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def to_detail(self) -> ErrorDetail:
        return ErrorDetail(kind=self.kind, message=self.detail)


class UnsupportedContainer(TranscodeError):
    kind = ErrorKind.UNSUPPORTED_CONTAINER


class CorruptHeader(TranscodeError):
    kind = ErrorKind.CORRUPT_HEADER


class NoDecodableStreams(TranscodeError):
    kind = ErrorKind.NO_DECODABLE_STREAMS


class IncompatibleFormat(TranscodeError):
    kind = ErrorKind.INCOMPATIBLE_FORMAT


class StageFailure(TranscodeError):
    """A pipeline stage failed; carries the stage name and the cause."""

    kind = ErrorKind.STAGE_FAILURE

    def __init__(self, stage: str, cause: "BaseException | str"):
        self.stage = stage
        self.cause = cause if isinstance(cause, str) else describe_cause(cause)
        super().__init__(f"{stage} stage failed: {self.cause}")

    def to_detail(self) -> ErrorDetail:
        return ErrorDetail(
            kind=self.kind,
            message=self.detail,
            stage=self.stage,
            cause=self.cause,
        )


class WorkerLost(TranscodeError):
    kind = ErrorKind.WORKER_LOST


class JobTimeout(TranscodeError):
    kind = ErrorKind.TIMEOUT


class JobCancelled(Exception):
    """Raised inside a worker to unwind the pipeline after cancellation."""


class JobNotFound(LookupError):
    """No job with the given identifier exists in the store."""

    def __init__(self, job_id):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidTransition(ValueError):
    """A state change that the job state machine does not allow."""
