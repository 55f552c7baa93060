"""
Standardised error handling for AutoDub.
"""

from autodub.core.constants import ErrorCode, RETRYABLE_ERRORS


class JobError(Exception):
    """Raised when a job encounters a known error condition."""

    def __init__(self, code: str, message: str, retryable: bool | None = None):
        self.code = code
        self.message = message
        # auto-detect retryable from code if not explicitly set
        self.retryable = retryable if retryable is not None else (code in RETRYABLE_ERRORS)
        super().__init__(f"[{code}] {message}")


class ValidationError(JobError):
    """Bad input at the API boundary. No state is created."""

    def __init__(self, message: str):
        super().__init__(ErrorCode.VALIDATION, message, retryable=False)


class NotFoundError(JobError):
    """Unknown job id."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(ErrorCode.NOT_FOUND, f"Job {job_id} not found", retryable=False)


class InvalidStateError(JobError):
    """Operation not legal in the job's current status."""

    def __init__(self, message: str, status: str | None = None):
        self.status = status
        super().__init__(ErrorCode.INVALID_STATE, message, retryable=False)


class ChunkOperationError(JobError):
    """Wraps one chunk's external-call failure. Never aborts sibling chunks."""

    def __init__(self, index: int, message: str, cause: BaseException | None = None):
        self.index = index
        self.cause = cause
        super().__init__(ErrorCode.CHUNK_FAILED, f"Chunk {index}: {message}")


class PipelineFatalError(JobError):
    """Download/chunk/merge/finalize failure. Always moves the job to failed."""

    def __init__(self, stage: str, message: str, code: str = ErrorCode.PIPELINE_FAILED,
                 failed_chunks: list[int] | None = None):
        self.stage = stage
        self.failed_chunks = failed_chunks or []
        super().__init__(code, message, retryable=bool(self.failed_chunks))


def is_retryable(code: str) -> bool:
    return code in RETRYABLE_ERRORS
