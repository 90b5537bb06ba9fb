"""IPC server implementation using Unix domain sockets."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional, Set

from pydantic import ValidationError

from .events import PipelineEvent, ProgressReport
from .ipc_models import (
    AckResponse,
    CancelCommand,
    CommandWrapper,
    DaemonStatusModel,
    ErrorResponse,
    ProgressNotification,
    ResponseWrapper,
    ResultNotification,
    ShutdownCommand,
    StartCommand,
    StatusCommand,
    StatusResponse,
    StopCommand,
    SubscribeCommand,
    ToggleCommand,
)
from .orchestrator import PipelineOrchestrator
from .session import Stage

logger = logging.getLogger(__name__)

# Size limit for incoming messages (64KB should be plenty for commands)
MAX_MESSAGE_SIZE = 64 * 1024
MESSAGE_TERMINATOR = b"\n"


class IPCServer:
    """Handles IPC communication over Unix domain socket."""

    def __init__(
        self,
        socket_path: Path,
        shutdown_event: asyncio.Event,
        orchestrator: PipelineOrchestrator,
    ):
        """Initialize the IPC server.

        Args:
            socket_path: Path to the Unix domain socket
            shutdown_event: Event to signal daemon shutdown
            orchestrator: The pipeline orchestrator instance.
        """
        self.socket_path = socket_path
        self.shutdown_event = shutdown_event
        self.orchestrator = orchestrator

        self._server: Optional[asyncio.Server] = None
        self._client_tasks: Set[asyncio.Task] = set()
        self._subscribers: Set[asyncio.StreamWriter] = set()

        self.orchestrator.add_observer(self._on_event)

    def _on_event(self, event: PipelineEvent) -> None:
        """Forward orchestrator events to subscribers."""
        if not self._subscribers:
            return

        if isinstance(event, ProgressReport):
            notification = ResponseWrapper(root=ProgressNotification(report=event))
        else:
            notification = ResponseWrapper(root=ResultNotification(result=event))
        asyncio.create_task(self._broadcast_notification(notification))

    async def _broadcast_notification(self, notification: ResponseWrapper) -> None:
        """Broadcast a notification to all subscribers."""
        if not self._subscribers:
            return

        data = notification.model_dump_json().encode("utf-8") + MESSAGE_TERMINATOR

        # Copy set to avoid modification during iteration
        for writer in list(self._subscribers):
            if writer.is_closing():
                self._subscribers.discard(writer)
                continue

            try:
                writer.write(data)
                await writer.drain()
            except Exception as e:
                logger.warning(f"Error broadcasting to subscriber: {e}")
                self._subscribers.discard(writer)

    async def _send_response(
        self, writer: asyncio.StreamWriter, response: ResponseWrapper
    ) -> None:
        """Send a response to a client."""
        try:
            response_json = response.model_dump_json()
            writer.write(response_json.encode("utf-8") + MESSAGE_TERMINATOR)
            await writer.drain()
            logger.debug(f"Sent response: {response_json}")
        except Exception as e:
            logger.error(f"Error sending response: {e}")

    async def _send_error(self, writer: asyncio.StreamWriter, message: str) -> None:
        await self._send_response(
            writer, ResponseWrapper(root=ErrorResponse(message=message))
        )

    async def _handle_start_command(self, writer: asyncio.StreamWriter) -> None:
        """Handle Start command."""
        logger.info("Handling Start command")

        try:
            session = await self.orchestrator.start_session()
        except Exception as e:
            error_msg = f"Failed to start session: {e}"
            logger.exception(error_msg)
            await self._send_error(writer, error_msg)
            return

        if session.stage == Stage.FAILED:
            await self._send_error(writer, f"Failed to start session: {session.last_error}")
        else:
            await self._send_response(
                writer, ResponseWrapper(root=AckResponse(session_id=session.id))
            )

    async def _handle_stop_command(self, writer: asyncio.StreamWriter) -> None:
        """Handle Stop command."""
        logger.info("Handling Stop command")

        session = self.orchestrator.current_session
        if session is None or session.stage != Stage.CAPTURING:
            await self._send_error(writer, "Not recording")
            return

        try:
            await self.orchestrator.stop_session()
            await self._send_response(
                writer, ResponseWrapper(root=AckResponse(session_id=session.id))
            )
        except Exception as e:
            error_msg = f"Error stopping session: {e}"
            logger.exception(error_msg)
            await self._send_error(writer, error_msg)

    async def _handle_cancel_command(self, writer: asyncio.StreamWriter) -> None:
        """Handle Cancel command."""
        logger.info("Handling Cancel command")

        if not self.orchestrator.is_busy:
            await self._send_error(writer, "No active session")
            return

        session = self.orchestrator.current_session
        try:
            await self.orchestrator.cancel_session()
            await self._send_response(
                writer, ResponseWrapper(root=AckResponse(session_id=session.id))
            )
        except Exception as e:
            error_msg = f"Error cancelling session: {e}"
            logger.exception(error_msg)
            await self._send_error(writer, error_msg)

    def _status_model(self) -> DaemonStatusModel:
        stage, session_id, error = self.orchestrator.get_status()
        return DaemonStatusModel(stage=stage, session_id=session_id, last_error=error)

    async def _handle_status_command(self, writer: asyncio.StreamWriter) -> None:
        """Handle Status command."""
        logger.debug("Handling Status command")
        response = ResponseWrapper(root=StatusResponse(status=self._status_model()))
        await self._send_response(writer, response)

    async def _handle_shutdown_command(self, writer: asyncio.StreamWriter) -> None:
        """Handle Shutdown command."""
        logger.info("Handling Shutdown command")

        await self.orchestrator.close()

        await self._send_response(writer, ResponseWrapper(root=AckResponse()))
        await writer.drain()

        self.shutdown_event.set()

    async def _handle_toggle_command(self, writer: asyncio.StreamWriter) -> None:
        """Handle Toggle command."""
        session = self.orchestrator.current_session
        logger.info(
            f"Handling Toggle command (stage: {session.stage.value if session else 'none'})"
        )

        if session is not None and session.stage == Stage.CAPTURING:
            await self._handle_stop_command(writer)
        else:
            await self._handle_start_command(writer)

    async def _handle_subscribe_command(self, writer: asyncio.StreamWriter) -> bool:
        """Handle Subscribe command.

        Returns:
            True indicating the client is now subscribed
        """
        logger.info("Handling Subscribe command")
        self._subscribers.add(writer)

        # Send initial status immediately
        response = ResponseWrapper(root=StatusResponse(status=self._status_model()))
        await self._send_response(writer, response)
        return True

    async def _handle_command(self, writer: asyncio.StreamWriter, message: str) -> bool:
        """Parse and handle a command message.

        Returns:
            True if connection should be kept alive, False to close it
        """
        try:
            command = CommandWrapper.model_validate_json(message)
            logger.debug(f"Parsed command: {command.model_dump_json()}")

            if isinstance(command.root, StartCommand):
                await self._handle_start_command(writer)
            elif isinstance(command.root, StopCommand):
                await self._handle_stop_command(writer)
            elif isinstance(command.root, CancelCommand):
                await self._handle_cancel_command(writer)
            elif isinstance(command.root, StatusCommand):
                await self._handle_status_command(writer)
            elif isinstance(command.root, ShutdownCommand):
                await self._handle_shutdown_command(writer)
                return False
            elif isinstance(command.root, ToggleCommand):
                await self._handle_toggle_command(writer)
            elif isinstance(command.root, SubscribeCommand):
                await self._handle_subscribe_command(writer)
            else:
                logger.error(f"Unhandled command type: {type(command.root)}")
                await self._send_error(writer, "Internal server error")
            return True

        except ValidationError as e:
            logger.error(f"Invalid command format: {e}")
            await self._send_error(writer, f"Invalid command format: {e}")
            return True

        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON: {e}")
            await self._send_error(writer, f"Invalid JSON format: {e}")
            return True

        except Exception as e:
            logger.exception("Error handling command")
            await self._send_error(writer, f"Internal error: {e}")
            return True

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Handle a client connection."""
        peer = writer.get_extra_info("peername") or "Unknown"
        logger.info(f"Client connected: {peer}")

        task = asyncio.current_task()
        assert task is not None  # for type checking
        self._client_tasks.add(task)

        try:
            while True:
                try:
                    # Subscribers stay connected indefinitely
                    timeout = None if writer in self._subscribers else 5.0

                    data = await asyncio.wait_for(
                        reader.readuntil(MESSAGE_TERMINATOR), timeout=timeout
                    )
                    if not data:  # EOF
                        logger.info(f"Client disconnected (EOF): {peer}")
                        break
                    if len(data) > MAX_MESSAGE_SIZE:
                        await self._send_error(writer, "Message too large")
                        break

                    message = data.rstrip(MESSAGE_TERMINATOR).decode("utf-8")
                    logger.debug(f"Received from {peer}: {message}")

                    keep_alive = await self._handle_command(writer, message)
                    if not keep_alive:
                        break

                except asyncio.TimeoutError:
                    logger.warning(f"Timeout reading from client {peer}")
                    break
                except asyncio.IncompleteReadError:
                    logger.info(f"Client disconnected (incomplete read): {peer}")
                    break
                except asyncio.LimitOverrunError:
                    await self._send_error(writer, "Message too large")
                    break
                except ConnectionError as e:
                    logger.warning(f"Connection error with {peer}: {e}")
                    break
                except asyncio.CancelledError:
                    logger.info(f"Client connection cancelled: {peer}")
                    break
                except Exception as e:
                    logger.exception(f"Error handling client {peer}: {e}")
                    break

        finally:
            logger.info(f"Closing connection with {peer}")
            self._subscribers.discard(writer)
            if not writer.is_closing():
                writer.close()
                try:
                    await asyncio.wait_for(writer.wait_closed(), timeout=1.0)
                except (asyncio.TimeoutError, Exception) as e:
                    logger.warning(f"Error during connection cleanup: {e}")

            self._client_tasks.discard(task)
            logger.debug(f"Connection closed: {peer}")

    async def start(self) -> None:
        """Start the IPC server."""
        if self._server:
            logger.warning("Server already started")
            return

        if self.socket_path.exists():
            if self.socket_path.is_socket():
                logger.info(f"Removing existing socket file: {self.socket_path}")
                try:
                    self.socket_path.unlink()
                except OSError as e:
                    logger.error(f"Failed to remove existing socket: {e}")
                    raise
            else:
                logger.error(f"Path exists but is not a socket: {self.socket_path}")
                raise OSError(f"Path exists but is not a socket: {self.socket_path}")

        try:
            self.socket_path.parent.mkdir(parents=True, exist_ok=True)
            self._server = await asyncio.start_unix_server(
                self._handle_client,
                path=str(self.socket_path),
                limit=MAX_MESSAGE_SIZE,
            )
            logger.info(f"IPC server listening on {self.socket_path}")

        except Exception as e:
            logger.error(f"Failed to start IPC server: {e}")
            if self.socket_path.exists():
                self.socket_path.unlink(missing_ok=True)
            raise

    async def stop(self) -> None:
        """Stop the IPC server."""
        if not self._server:
            logger.warning("Server not running")
            return

        logger.info("Stopping IPC server...")

        # Close subscriber connections first to unblock their read loops
        if self._subscribers:
            logger.info(f"Closing {len(self._subscribers)} subscriber connections...")
            for writer in self._subscribers:
                if not writer.is_closing():
                    writer.close()
            self._subscribers.clear()

        await self.orchestrator.close()

        self._server.close()

        # Open connections keep wait_closed() from returning
        if self._client_tasks:
            logger.info(f"Cancelling {len(self._client_tasks)} client tasks...")
            for task in list(self._client_tasks):
                if not task.done():
                    task.cancel()
            await asyncio.gather(*self._client_tasks, return_exceptions=True)
            self._client_tasks.clear()

        await self._server.wait_closed()
        self._server = None

        logger.debug(f"Removing socket file: {self.socket_path}")
        try:
            self.socket_path.unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"Error removing socket file: {e}")

        logger.info("IPC server stopped")
