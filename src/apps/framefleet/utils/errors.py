"""Utility types for consistent CLI error handling."""

from __future__ import annotations

from enum import IntEnum

from libraries.render.base import (
    BlobStoreError,
    DuplicateJobError,
    FleetError,
    JobNotFoundError,
    LeaseUnavailableError,
    RenderDispatchError,
    RenderOrchestrationError,
    RenderValidationError,
    StoreUnavailableError,
)


class ExitCode(IntEnum):
    """Standardised exit codes for the FrameFleet CLI."""

    SUCCESS = 0
    VALIDATION = 1
    IO = 2
    CONFIG = 3
    EXTERNAL = 4
    RUNTIME = 5


class FrameFleetError(Exception):
    """Base for predictable CLI errors that surface to users."""

    exit_code: ExitCode = ExitCode.RUNTIME
    label = "Error"

    def __init__(
        self, message: str, *, exit_code: ExitCode | int | None = None
    ) -> None:
        super().__init__(message)
        self.message = message
        if exit_code is None:
            exit_code = type(self).exit_code
        self.exit_code = ExitCode(exit_code)

    def __str__(self) -> str:
        return self.message

    @property
    def heading(self) -> str:
        """Return a short label describing the error class."""

        return type(self).label


class FrameFleetValidationError(FrameFleetError):
    """Raised when user input fails validation checks."""

    exit_code = ExitCode.VALIDATION
    label = "Validation error"


class FrameFleetIOError(FrameFleetError):
    """Raised when filesystem or network I/O fails."""

    exit_code = ExitCode.IO
    label = "I/O error"


class FrameFleetConfigError(FrameFleetError):
    """Raised when configuration or environment is invalid."""

    exit_code = ExitCode.CONFIG
    label = "Configuration error"


class FrameFleetExternalServiceError(FrameFleetError):
    """Raised when an external dependency fails to respond correctly."""

    exit_code = ExitCode.EXTERNAL
    label = "External service error"


class FrameFleetRuntimeError(FrameFleetError):
    """Raised for unexpected runtime failures."""

    exit_code = ExitCode.RUNTIME
    label = "Runtime error"


_EXTERNAL_ERRORS = (
    BlobStoreError,
    FleetError,
    LeaseUnavailableError,
    RenderDispatchError,
    StoreUnavailableError,
)


def from_orchestration_error(exc: RenderOrchestrationError) -> FrameFleetError:
    """Translate a library error into the matching CLI error."""

    message = exc.message
    if exc.hint:
        message = f"{message} ({exc.hint})"
    if isinstance(exc, (RenderValidationError, JobNotFoundError, DuplicateJobError)):
        return FrameFleetValidationError(message)
    if isinstance(exc, _EXTERNAL_ERRORS):
        return FrameFleetExternalServiceError(message)
    return FrameFleetRuntimeError(message)
