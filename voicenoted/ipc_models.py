"""IPC command and response models for voicenoted daemon."""

import json
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, RootModel

from .events import ProgressReport, SessionResult


class StartCommand(BaseModel):
    """Command to start recording a new note."""

    command: Literal["start"] = "start"


class StopCommand(BaseModel):
    """Command to stop recording and process the note."""

    command: Literal["stop"] = "stop"


class CancelCommand(BaseModel):
    """Command to abandon the active session."""

    command: Literal["cancel"] = "cancel"


class StatusCommand(BaseModel):
    """Command to get daemon status."""

    command: Literal["status"] = "status"


class ShutdownCommand(BaseModel):
    """Command to shut down the daemon."""

    command: Literal["shutdown"] = "shutdown"


class ToggleCommand(BaseModel):
    """Command to start recording, or stop it if already recording."""

    command: Literal["toggle"] = "toggle"


class SubscribeCommand(BaseModel):
    """Command to subscribe to session events."""

    command: Literal["subscribe"] = "subscribe"


DaemonCommand = Annotated[
    Union[
        StartCommand,
        StopCommand,
        CancelCommand,
        StatusCommand,
        ShutdownCommand,
        ToggleCommand,
        SubscribeCommand,
    ],
    Field(discriminator="command"),
]


class CommandWrapper(RootModel[DaemonCommand]):
    """Wrapper model for parsing incoming commands."""

    root: DaemonCommand

    def __getattr__(self, name: str):
        """Delegate attribute access to the root command."""
        try:
            return super().__getattr__(name)
        except AttributeError:
            return getattr(self.root, name)


class DaemonStatusModel(BaseModel):
    """Model representing the orchestrator's state."""

    stage: str
    session_id: Optional[str] = None
    last_error: Optional[str] = None


class AckResponse(BaseModel):
    """Simple acknowledgment response."""

    response_type: Literal["ack"] = "ack"
    session_id: Optional[str] = None


class StatusResponse(BaseModel):
    """Response containing daemon status."""

    response_type: Literal["status"] = "status"
    status: DaemonStatusModel


class ErrorResponse(BaseModel):
    """Response indicating an error."""

    response_type: Literal["error"] = "error"
    message: str


class ProgressNotification(BaseModel):
    """Progress report pushed to subscribers."""

    response_type: Literal["progress"] = "progress"
    report: ProgressReport


class ResultNotification(BaseModel):
    """Terminal session result pushed to subscribers."""

    response_type: Literal["result"] = "result"
    result: SessionResult


DaemonResponse = Annotated[
    Union[
        AckResponse,
        StatusResponse,
        ErrorResponse,
        ProgressNotification,
        ResultNotification,
    ],
    Field(discriminator="response_type"),
]

RESPONSE_TYPES = {
    "ack": AckResponse,
    "status": StatusResponse,
    "error": ErrorResponse,
    "progress": ProgressNotification,
    "result": ResultNotification,
}


class ResponseWrapper(RootModel[DaemonResponse]):
    """Wrapper model for serializing outgoing responses."""

    root: DaemonResponse

    def __getattr__(self, name: str):
        """Delegate attribute access to the root response."""
        try:
            return super().__getattr__(name)
        except AttributeError:
            return getattr(self.root, name)

    def model_dump_json(self, **kwargs) -> str:
        """Override to unwrap the response for serialization."""
        return self.root.model_dump_json(**kwargs)

    @classmethod
    def model_validate_json(cls, json_data: str, **kwargs):
        """Override to wrap the parsed response data."""
        try:
            data = json.loads(json_data)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON: {e}") from e

        response_type = data.get("response_type")
        if not response_type:
            raise ValueError("Missing response_type field")
        if response_type not in RESPONSE_TYPES:
            raise ValueError(f"Invalid response_type: {response_type}")

        response = RESPONSE_TYPES[response_type].model_validate(data)
        return cls(root=response)
