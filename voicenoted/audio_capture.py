"""Audio capture module."""

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import numpy as np

from .config import AppConfig
from .errors import DeviceError

logger = logging.getLogger(__name__)

RECORDER_BINARY = "pw-record"
AUDIO_FORMAT = "s16"  # Signed 16-bit
RAW_SAMPLE_FORMAT = "s16le"
BYTES_PER_SAMPLE = 2

# Define a buffer size for reading from stdout
BUFFER_SIZE = 4096


@dataclass
class RawAudioRef:
    """Headerless PCM recording left in the working directory."""

    path: Path
    sample_rate: int
    channels: int
    sample_format: str = RAW_SAMPLE_FORMAT

    @property
    def duration_s(self) -> float:
        try:
            size = self.path.stat().st_size
        except OSError:
            return 0.0
        return size / (BYTES_PER_SAMPLE * self.channels * self.sample_rate)


@dataclass
class CaptureHandle:
    """An open recording."""

    session_id: str
    process: asyncio.subprocess.Process
    reader_task: Optional[asyncio.Task] = None
    buffer: List[bytes] = field(default_factory=list)


class PWRecordCapture:
    """Captures audio using a pw-record subprocess."""

    def __init__(self, config: AppConfig, working_dir: Path):
        """Initialize audio capture.

        Args:
            config: The application configuration.
            working_dir: Private directory that receives raw recordings.
        """
        self.audio_config = config.audio
        self.working_dir = working_dir
        self._handle: Optional[CaptureHandle] = None

    @property
    def open_handle(self) -> Optional[CaptureHandle]:
        """The currently open recording, if any."""
        return self._handle

    async def request_permission(self) -> bool:
        """Check that the recorder can be used.

        Returns:
            True if the recorder binary is available and the working
            directory is writable.
        """
        if shutil.which(RECORDER_BINARY) is None:
            logger.error(
                f"'{RECORDER_BINARY}' command not found. "
                "Please ensure PipeWire is installed."
            )
            return False

        try:
            self.working_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Cannot create working directory {self.working_dir}: {e}")
            return False

        if not os.access(self.working_dir, os.W_OK | os.X_OK):
            logger.error(f"Working directory is not writable: {self.working_dir}")
            return False

        return True

    def _build_command(self) -> List[str]:
        command = [RECORDER_BINARY]
        if self.audio_config.target != "auto":
            command.append(f"--target={self.audio_config.target}")
        command += [
            f"--rate={self.audio_config.capture_rate}",
            f"--format={AUDIO_FORMAT}",
            f"--channels={self.audio_config.capture_channels}",
            "-",
        ]
        return command

    async def _read_audio_stream(self, handle: CaptureHandle) -> None:
        """Reads audio data from the subprocess stdout."""
        stdout = handle.process.stdout
        if stdout is None:
            logger.error("Audio process stdout not available for reading.")
            return

        logger.debug("Audio reader task started.")
        try:
            while True:
                data = await stdout.read(BUFFER_SIZE)
                if not data:
                    logger.info(f"{RECORDER_BINARY} stdout stream ended.")
                    break
                handle.buffer.append(data)
        except asyncio.CancelledError:
            logger.debug("Audio reader task cancelled.")
        except Exception as e:
            logger.exception(f"Error in audio reader task: {e}")
        finally:
            logger.debug("Audio reader task finished.")

    async def start(self, session_id: str) -> CaptureHandle:
        """Start recording.

        Args:
            session_id: Session the recording belongs to.

        Returns:
            Handle of the open recording.

        Raises:
            DeviceError: If a recording is already open or the recorder
                could not be started.
        """
        if self._handle is not None:
            raise DeviceError("A recording is already open")

        command = self._build_command()
        logger.info(f"Starting audio capture: {' '.join(command)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError as e:
            raise DeviceError(f"'{RECORDER_BINARY}' command not found") from e
        except OSError as e:
            raise DeviceError(f"Failed to start {RECORDER_BINARY}: {e}") from e

        logger.info(f"Started {RECORDER_BINARY} process with PID: {process.pid}")
        handle = CaptureHandle(session_id=session_id, process=process)
        handle.reader_task = asyncio.create_task(self._read_audio_stream(handle))
        self._handle = handle
        return handle

    async def _terminate(self, handle: CaptureHandle) -> None:
        """Stop the recorder process and its reader task."""
        process = handle.process
        if process.returncode is None:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=2.0)
                logger.info(f"{RECORDER_BINARY} process terminated.")
            except asyncio.TimeoutError:
                logger.warning(
                    f"Timeout waiting for {RECORDER_BINARY} to terminate, killing."
                )
                process.kill()
            except ProcessLookupError:
                pass

        # Let the reader drain what the recorder flushed before exiting
        if handle.reader_task and not handle.reader_task.done():
            try:
                await asyncio.wait_for(handle.reader_task, timeout=1.0)
            except asyncio.TimeoutError:
                handle.reader_task.cancel()
                try:
                    await handle.reader_task
                except asyncio.CancelledError:
                    logger.debug("Audio reader task successfully cancelled.")

        if self._handle is handle:
            self._handle = None

    async def stop(self, handle: CaptureHandle) -> RawAudioRef:
        """Stop recording and write the captured PCM to the working directory.

        Raises:
            DeviceError: If the handle is not open, nothing was recorded or
                the recording could not be written.
        """
        if handle is not self._handle:
            raise DeviceError("Recording handle is not open")

        logger.info("Stopping audio capture.")
        await self._terminate(handle)

        full_audio_bytes = b"".join(handle.buffer)
        handle.buffer.clear()

        frame_size = BYTES_PER_SAMPLE * self.audio_config.capture_channels
        usable = len(full_audio_bytes) - len(full_audio_bytes) % frame_size
        if usable == 0:
            raise DeviceError("No audio was recorded")

        samples = np.frombuffer(full_audio_bytes[:usable], dtype="<i2")
        raw_path = self.working_dir / f"{handle.session_id}.raw"
        try:
            self.working_dir.mkdir(parents=True, exist_ok=True)
            samples.tofile(raw_path)
        except OSError as e:
            raise DeviceError(f"Failed to write recording: {e}") from e

        raw = RawAudioRef(
            path=raw_path,
            sample_rate=self.audio_config.capture_rate,
            channels=self.audio_config.capture_channels,
        )
        logger.info(f"Recorded {raw.duration_s:.1f}s of audio to {raw_path}")
        return raw

    async def release(self, handle: CaptureHandle) -> None:
        """Stop recording and discard the captured audio."""
        if handle is not self._handle:
            return
        logger.info("Releasing audio capture without keeping audio.")
        await self._terminate(handle)
        handle.buffer.clear()
