"""
Exceptions raised by the donor import pipeline.
"""
from typing import Optional


class IngestionError(Exception):
    """Base exception for files that cannot be read. No job is created."""
    pass


class FormatError(IngestionError):
    """Raised when a file is neither delimited text nor a supported workbook."""
    pass


class SizeLimitError(IngestionError):
    """Raised when a file exceeds the configured upload limit."""

    def __init__(self, file_size: int, max_bytes: int, message: str = None):
        self.file_size = file_size
        self.max_bytes = max_bytes
        self.message = message or (
            f"File is too large ({file_size} bytes). "
            f"Maximum allowed upload size is {max_bytes // (1024 * 1024)}MB."
        )
        super().__init__(self.message)


class EmptyFileError(IngestionError):
    """Raised when a file has a header but zero data rows."""
    pass


class RecordStoreError(Exception):
    """Raised when the donor record store cannot be read or a batch cannot be committed."""
    pass


class JobNotFound(Exception):
    """Raised when a job does not exist or is not visible to the caller."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Import job '{job_id}' not found")


class JobAlreadyFinished(Exception):
    """Raised when a cancellation targets a job in a terminal state."""

    def __init__(self, job_id: str, status: str):
        self.job_id = job_id
        self.status = status
        super().__init__(
            f"Cannot cancel import job '{job_id}': it is already {status}"
        )


class InvalidTransition(Exception):
    """Raised when a job status change is not allowed by the job state machine."""

    def __init__(self, job_id: str, current: Optional[str], requested: str):
        self.job_id = job_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Import job '{job_id}' cannot move from {current or 'unknown'} to {requested}"
        )


class MappingRequestError(ValueError):
    """Raised when a field mapping or import option supplied by a caller is malformed."""
    pass


class CheckpointError(RecordStoreError):
    """Raised when a donor batch committed but the job's progress checkpoint was not written."""

    def __init__(self, message: str, checkpoint: dict, summary: dict):
        self.checkpoint = checkpoint
        self.summary = summary
        super().__init__(message)
