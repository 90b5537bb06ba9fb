"""Error kinds raised by pipeline collaborators and the orchestrator."""

from typing import Optional

from .session import InvalidTransition, Stage

__all__ = [
    "PipelineError",
    "PermissionDenied",
    "DeviceError",
    "ConversionError",
    "ConversionCancelled",
    "TranscriptionError",
    "PersistenceError",
    "InvalidTransition",
    "wrap_error",
]


class PipelineError(Exception):
    """Base class for failures that end a session.

    Args:
        message: Human-readable description of the failure.
        stage: Stage in which the failure occurred, if known. The orchestrator
            fills this in when wrapping collaborator errors.
    """

    kind = "PipelineError"

    def __init__(self, message: str, stage: Optional[Stage] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def __str__(self) -> str:
        if self.stage is not None:
            return f"{self.kind} during {self.stage.value}: {self.message}"
        return f"{self.kind}: {self.message}"


class PermissionDenied(PipelineError):
    """Microphone access was refused."""

    kind = "PermissionDenied"


class DeviceError(PipelineError):
    """Capture could not be started or stopped."""

    kind = "DeviceError"


class ConversionError(PipelineError):
    """The format converter failed."""

    kind = "ConversionError"


class ConversionCancelled(PipelineError):
    """The format converter was interrupted before finishing."""

    kind = "ConversionCancelled"


class TranscriptionError(PipelineError):
    """The inference engine failed or is not ready."""

    kind = "TranscriptionError"


class PersistenceError(PipelineError):
    """Writing an artifact to its destination failed."""

    kind = "PersistenceError"


# Stage -> error type used to wrap unexpected collaborator exceptions
STAGE_ERRORS = {
    Stage.REQUESTING_PERMISSION: DeviceError,
    Stage.CAPTURING: DeviceError,
    Stage.CONVERTING: ConversionError,
    Stage.TRANSCRIBING: TranscriptionError,
    Stage.PERSISTING: PersistenceError,
}


def wrap_error(exc: BaseException, stage: Stage) -> PipelineError:
    """Attach ``stage`` to ``exc``, wrapping foreign exceptions by stage."""
    if isinstance(exc, PipelineError):
        if exc.stage is None:
            exc.stage = stage
        return exc

    error_cls = STAGE_ERRORS.get(stage, PipelineError)
    wrapped = error_cls(str(exc) or type(exc).__name__, stage=stage)
    wrapped.__cause__ = exc
    return wrapped
