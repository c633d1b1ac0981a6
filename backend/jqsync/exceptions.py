"""
Error taxonomy for synchronization jobs.

Lease contention is deliberately absent: a lock that is not granted is
reported through LockResult, not raised.
"""
from typing import List, Optional


class SyncError(Exception):
    """Base class for failures raised while synchronizing a dataset"""


class SourceError(SyncError):
    """Failure talking to the upstream data source"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RetryableSourceError(SourceError):
    """Rate limiting, server-side errors, timeouts and dropped connections"""


class NonRetryableSourceError(SourceError):
    """Authorization, validation and other client-side errors"""


class BatchWriteError(SyncError):
    """A single upsert chunk failed"""

    def __init__(self, message: str, batch_index: int, batch_total: int):
        super().__init__(f"Batch {batch_index}/{batch_total} failed: {message}")
        self.batch_index = batch_index
        self.batch_total = batch_total


class PartialWriteError(SyncError):
    """Chunk failures collected in continue-on-error mode"""

    def __init__(self, errors: List[Exception], written: int):
        first = str(errors[0]) if errors else "unknown error"
        super().__init__(
            f"{len(errors)} batch(es) failed ({written} row(s) written): {first}"
        )
        self.errors = errors
        self.written = written


class ScdCloseError(SyncError):
    """Closing current versions failed; no successor versions were inserted"""


class DuplicateRunError(SyncError):
    """A successful run is already recorded for this job and target date"""
