from __future__ import annotations


class ReconfigurationError(RuntimeError):
    """Base class for conditions that terminate the controller process.

    Anything raised from this hierarchy means the "at most one, always valid
    worker" guarantee can no longer be kept in-process; the reconciler logs it
    and shuts down so that process supervision can retry.
    """


class ValidationError(ReconfigurationError):
    """Raised when the merged settings and secrets do not form a valid configuration."""


class WorkerStartError(ReconfigurationError):
    """Raised when a worker cannot be constructed or initialized for a snapshot."""


class WorkerStopTimeout(ReconfigurationError):
    """Raised when the previous worker does not acknowledge cancellation in time."""


class StaleSnapshotError(ReconfigurationError):
    """Raised when a snapshot older than the running one reaches the lifecycle manager."""


class CacheSyncTimeout(ReconfigurationError):
    """Raised when the resource watchers do not finish their initial listing in time."""
