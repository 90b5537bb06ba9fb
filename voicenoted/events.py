"""Events emitted by the pipeline orchestrator."""

import math
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from .session import Stage


class ProgressReport(BaseModel):
    """Emitted on every observable change of a session.

    ``fraction`` is ``None`` while progress is indeterminate (waiting on the
    device, or a stage that reports no percentage).
    """

    event_type: Literal["progress"] = "progress"
    session_id: str
    stage: Stage
    fraction: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    eta_seconds: Optional[float] = Field(default=None, ge=0.0)
    message: str = ""

    @field_validator("eta_seconds")
    @classmethod
    def check_eta_finite(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and not math.isfinite(v):
            raise ValueError("ETA must be a finite number")
        return v

    @property
    def indeterminate(self) -> bool:
        return self.fraction is None


class OutputArtifacts(BaseModel):
    """Durable result of a successful session."""

    audio_path: str
    transcript_path: Optional[str] = None


class SessionResult(BaseModel):
    """Terminal report for a session."""

    event_type: Literal["result"] = "result"
    session_id: str
    stage: Literal[Stage.COMPLETED, Stage.FAILED, Stage.CANCELLED]
    artifacts: Optional[OutputArtifacts] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    message: str = ""


PipelineEvent = Annotated[
    Union[ProgressReport, SessionResult],
    Field(discriminator="event_type"),
]
