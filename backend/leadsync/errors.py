"""
Error taxonomy for the sync engine.

Connectors translate every transport / HTTP failure into either a
RetryableError or a FatalError, so nothing upstream ever sees a raw
httpx exception.
"""
from typing import List, Optional


class LeadSyncError(Exception):
    """Root of every engine error."""

    retryable = False


class RetryableError(LeadSyncError):
    """Transient failure: timeouts, 5xx, 429, dropped connections."""

    retryable = True

    def __init__(self, message: str, status_code: Optional[int] = None,
                 retry_after: Optional[float] = None):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class RateLimitTimeout(RetryableError):
    """Could not obtain rate-limit slots before the deadline."""


class FatalError(LeadSyncError):
    """Non-recoverable for this platform: auth, payment, bad schema."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DataIntegrityError(LeadSyncError):
    """Failure that makes continuing the job unsafe."""


class StoreUnavailable(DataIntegrityError):
    """A backing store (users, watermarks, jobs) could not be reached."""

    retryable = True


class DedupStoreUnavailable(StoreUnavailable):
    """Dedup ledger unreachable; retried per batch, then aborts the job."""


class CheckpointError(DataIntegrityError):
    """Checkpoint could not be persisted or went backwards."""


class SyncValidationError(LeadSyncError):
    """Invalid sync request; carries every problem found."""

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors))
        self.errors = list(errors)


class AlreadyExists(LeadSyncError):
    """Event key already recorded."""

    def __init__(self, key: str):
        super().__init__(f"Event already recorded: {key}")
        self.key = key


class JobNotFound(LeadSyncError):
    def __init__(self, job_id: str):
        super().__init__(f"Sync job not found: {job_id}")
        self.job_id = job_id


class InvalidJobTransition(LeadSyncError):
    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(f"Job {job_id}: cannot move from {current} to {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class NamespaceError(LeadSyncError):
    """Invalid namespace name, duplicate registration or unknown namespace."""


def is_retryable(exc: BaseException) -> bool:
    """Default classifier used by the retry policy."""
    return bool(getattr(exc, "retryable", False))
