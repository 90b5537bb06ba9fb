"""Conversion of raw recordings to 16 kHz mono PCM using ffmpeg."""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional

from .audio_capture import RawAudioRef

logger = logging.getLogger(__name__)

FFMPEG_BINARY = "ffmpeg"

# Settings required by Whisper model
SAMPLE_RATE = 16000
NUM_CHANNELS = 1
OUTPUT_CODEC = "pcm_s16le"


@dataclass(frozen=True)
class ConversionOptions:
    """Target format of the conversion."""

    sample_rate: int = SAMPLE_RATE
    channels: int = NUM_CHANNELS
    noise_reduction: bool = False
    noise_floor_db: float = -25.0


@dataclass(frozen=True)
class NormalizedAudioRef:
    """A WAV file in the normalized format."""

    path: Path
    sample_rate: int = SAMPLE_RATE
    channels: int = NUM_CHANNELS


class ConversionOutcome(str, Enum):
    SUCCESS = "Success"
    CANCELLED = "Cancelled"
    ERROR = "Error"


@dataclass
class ConversionResult:
    """Terminal outcome of a conversion."""

    outcome: ConversionOutcome
    audio: Optional[NormalizedAudioRef] = None
    error: Optional[str] = None


def build_ffmpeg_args(
    raw: RawAudioRef, output_path: Path, options: ConversionOptions
) -> List[str]:
    """Build the ffmpeg argument vector for a conversion.

    Paths and numbers are passed as separate arguments; nothing is
    interpreted by a shell.
    """
    args = [
        FFMPEG_BINARY,
        "-hide_banner",
        "-nostdin",
        "-loglevel",
        "error",
        "-y",
        "-f",
        raw.sample_format,
        "-ar",
        str(raw.sample_rate),
        "-ac",
        str(raw.channels),
        "-i",
        str(raw.path),
        "-ar",
        str(options.sample_rate),
        "-ac",
        str(options.channels),
    ]
    if options.noise_reduction:
        args += ["-af", f"afftdn=nf={options.noise_floor_db:g}"]
    args += ["-c:a", OUTPUT_CODEC, str(output_path)]
    return args


class FFmpegConverter:
    """Runs ffmpeg as a subprocess; one conversion at a time."""

    def __init__(self, timeout: Optional[float] = None):
        """Initialize the converter.

        Args:
            timeout: Optional limit for a single conversion in seconds.
        """
        self.timeout = timeout
        self._process: Optional[asyncio.subprocess.Process] = None
        self._cancelled = False

    async def convert(
        self, raw: RawAudioRef, output_path: Path, options: ConversionOptions
    ) -> ConversionResult:
        """Convert ``raw`` into a normalized WAV at ``output_path``.

        Never raises for conversion failures; the outcome is reported in
        the returned result.
        """
        self._cancelled = False
        args = build_ffmpeg_args(raw, output_path, options)
        logger.debug(f"Running converter: {args}")

        try:
            self._process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            msg = f"Command not found: {FFMPEG_BINARY}"
            logger.error(msg)
            return ConversionResult(ConversionOutcome.ERROR, error=msg)
        except OSError as e:
            msg = f"Error starting {FFMPEG_BINARY}: {e}"
            logger.error(msg)
            return ConversionResult(ConversionOutcome.ERROR, error=msg)

        process = self._process
        try:
            _, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"Converter timed out after {self.timeout}s")
            await self._kill(process)
            return ConversionResult(
                ConversionOutcome.ERROR,
                error=f"Conversion timed out after {self.timeout}s",
            )
        except asyncio.CancelledError:
            await self._kill(process)
            raise
        finally:
            self._process = None

        if self._cancelled:
            logger.info("Conversion cancelled")
            return ConversionResult(ConversionOutcome.CANCELLED)

        if process.returncode != 0:
            detail = (stderr or b"").decode("utf-8", errors="replace").strip()
            msg = f"{FFMPEG_BINARY} failed with code {process.returncode}"
            if detail:
                msg += f": {detail}"
            logger.error(msg)
            return ConversionResult(ConversionOutcome.ERROR, error=msg)

        logger.info(f"Converted file saved to {output_path}")
        return ConversionResult(
            ConversionOutcome.SUCCESS,
            audio=NormalizedAudioRef(
                path=output_path,
                sample_rate=options.sample_rate,
                channels=options.channels,
            ),
        )

    def cancel(self) -> bool:
        """Interrupt the running conversion.

        Returns:
            True if a conversion was running and has been signalled.
        """
        process = self._process
        if process is None or process.returncode is not None:
            return False
        self._cancelled = True
        try:
            process.terminate()
        except ProcessLookupError:
            pass
        return True

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
            await process.wait()
        except ProcessLookupError:
            pass
