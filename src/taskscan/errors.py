from __future__ import annotations


class TaskScanError(RuntimeError):
    """Base class for completion-detection failures."""

    def __init__(
        self,
        message: str,
        *,
        agent: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(message)
        self.agent = agent
        self.phase = phase


class NotFoundError(TaskScanError):
    """Raised when an agent, phase or task has no record."""


class IOFailure(TaskScanError):
    """Raised when the workspace or the ledger cannot be read or written."""


class WorkspaceUnreadableError(IOFailure):
    """Raised when the workspace root cannot be walked."""


class LedgerIOError(IOFailure):
    """Raised when a phase record cannot be read or written."""


class LedgerLockTimeoutError(IOFailure):
    """Raised when a phase write lock cannot be acquired in time."""


class MalformedRecordError(TaskScanError):
    """Raised when persisted phase data violates the record invariants."""


class ConfigError(TaskScanError):
    """Raised when configuration values are invalid."""
