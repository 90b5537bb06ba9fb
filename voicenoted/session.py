"""Session state for the voicenoted pipeline."""

import uuid
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .errors import PipelineError


class Stage(str, Enum):
    """Lifecycle stages of a session."""

    IDLE = "Idle"
    REQUESTING_PERMISSION = "RequestingPermission"
    CAPTURING = "Capturing"
    CONVERTING = "Converting"
    TRANSCRIBING = "Transcribing"
    PERSISTING = "Persisting"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STAGES


TERMINAL_STAGES = frozenset(
    {Stage.IDLE, Stage.COMPLETED, Stage.FAILED, Stage.CANCELLED}
)

# Happy-path order; a session may only step to the next entry or end early.
STAGE_ORDER = (
    Stage.IDLE,
    Stage.REQUESTING_PERMISSION,
    Stage.CAPTURING,
    Stage.CONVERTING,
    Stage.TRANSCRIBING,
    Stage.PERSISTING,
    Stage.COMPLETED,
)


class InvalidTransition(RuntimeError):
    """Raised when a session is moved backwards or to a repeated stage."""


class Session:
    """One capture-to-persistence attempt.

    Only the orchestrator mutates a session, through :meth:`advance`,
    :meth:`fail` and :meth:`cancel`.
    """

    def __init__(self, now: float, started_at: Optional[datetime] = None):
        """Create a session in the ``Idle`` stage.

        Args:
            now: Monotonic timestamp used as the base for stage timing.
            started_at: Wall-clock start time, used for artifact naming.
        """
        self.id: str = uuid.uuid4().hex
        self.stage: Stage = Stage.IDLE
        self.started_at: datetime = started_at or datetime.now()
        self.started_monotonic: float = now
        self.stage_started_at: float = now
        self.last_error: Optional["PipelineError"] = None
        self.cancel_requested = False

    @property
    def is_active(self) -> bool:
        return not self.stage.is_terminal

    def elapsed_in_stage(self, now: float) -> float:
        """Seconds spent in the current stage, never negative."""
        return max(0.0, now - self.stage_started_at)

    def advance(self, new_stage: Stage, now: float) -> None:
        """Move to the next stage of the happy path.

        Raises:
            InvalidTransition: If ``new_stage`` is not the stage directly
                after the current one.
        """
        if (
            new_stage not in STAGE_ORDER
            or self.stage not in STAGE_ORDER
            or STAGE_ORDER.index(new_stage) != STAGE_ORDER.index(self.stage) + 1
        ):
            raise InvalidTransition(
                f"Cannot advance session {self.id} from {self.stage.value} "
                f"to {new_stage.value}"
            )

        self.stage = new_stage
        self.stage_started_at = now

    def fail(self, error: "PipelineError", now: float) -> None:
        """End the session with ``error``."""
        self._finish(Stage.FAILED, now)
        self.last_error = error

    def cancel(self, now: float) -> None:
        """End the session as cancelled."""
        self._finish(Stage.CANCELLED, now)

    def _finish(self, terminal: Stage, now: float) -> None:
        if not self.is_active:
            raise InvalidTransition(
                f"Session {self.id} already finished as {self.stage.value}"
            )
        self.stage = terminal
        self.stage_started_at = now

    def __repr__(self) -> str:
        return f"Session(id={self.id!r}, stage={self.stage.value})"
