"""
Error taxonomy for module recovery.

Internal layers raise these exceptions; the public recovery entry points
catch them and fold them into typed results.
"""

from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    """Where in a recovery run an error surfaced."""
    ASSESSMENT = "assessment"
    PHASE = "phase"
    ORCHESTRATION = "orchestration"
    BATCH = "batch"


class RecoveryError(Exception):
    """Base class for recovery errors."""

    category: ErrorCategory = ErrorCategory.ORCHESTRATION

    def __init__(self, message: str, module_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.module_id = module_id


class AssessmentError(RecoveryError):
    """The analyzer could not produce a module state."""

    category = ErrorCategory.ASSESSMENT


class PhaseExecutionError(RecoveryError):
    """A recovery phase could not complete."""

    category = ErrorCategory.PHASE

    def __init__(self, message: str, phase: str, module_id: Optional[str] = None):
        super().__init__(message, module_id)
        self.phase = phase


class CommandExecutionError(RecoveryError):
    """An external command exited with a non-zero status."""

    category = ErrorCategory.PHASE

    def __init__(self, command: list[str], returncode: int, output: str):
        super().__init__(
            f"Command failed with code {returncode}: {' '.join(command)}\n{output}".rstrip()
        )
        self.command = command
        self.returncode = returncode
        self.output = output


class CommandTimeoutError(RecoveryError):
    """An external command exceeded its timeout and was killed."""

    category = ErrorCategory.PHASE

    def __init__(self, command: list[str], timeout: float, output: str = ""):
        super().__init__(f"Command timed out after {timeout}s: {' '.join(command)}")
        self.command = command
        self.timeout = timeout
        self.output = output


class InvalidTransitionError(RecoveryError):
    """A lifecycle transition is not allowed from the current state."""


class DependencyNotSatisfiedError(RecoveryError):
    """A phase or task was started before its dependencies completed."""


class BackupError(RecoveryError):
    """A backup could not be created or verified."""


class RollbackError(RecoveryError):
    """A rollback could not be performed."""


class RecoveryInProgressError(RecoveryError):
    """Another recovery or rollback already holds the module."""


def classify_error(
    error: BaseException, default: ErrorCategory = ErrorCategory.ORCHESTRATION
) -> ErrorCategory:
    """Map an exception to the error category used in results; unknown errors get ``default``."""
    if isinstance(error, RecoveryError):
        return error.category
    if isinstance(error, (FileNotFoundError, PermissionError)):
        return ErrorCategory.PHASE
    return default
