"""Audio transcription module using faster-whisper."""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, List, Optional, Union

from faster_whisper import WhisperModel

from .config import AppConfig
from .converter import NormalizedAudioRef
from .errors import TranscriptionError

logger = logging.getLogger(__name__)

AUTO_LANGUAGE = "auto"
ENGLISH_ONLY_SUFFIX = ".en"


@dataclass(frozen=True)
class TranscriptionOptions:
    """Language settings passed to the model."""

    language: str = AUTO_LANGUAGE
    translate: bool = False


@dataclass
class TranscriptionProgress:
    """Fractional completion reported while transcribing."""

    percent: float


@dataclass
class TranscriptSegment:
    start: float
    end: float
    text: str


@dataclass
class Transcript:
    """Final result of a transcription."""

    text: str
    segments: List[TranscriptSegment] = field(default_factory=list)
    language: Optional[str] = None
    duration: Optional[float] = None

    def __str__(self) -> str:
        return self.text


TranscriptionEvent = Union[TranscriptionProgress, Transcript]


def is_english_only_model(model_name: str) -> bool:
    """Whether ``model_name`` names an English-only variant (e.g. small.en)."""
    return model_name.lower().endswith(ENGLISH_ONLY_SUFFIX)


def resolve_transcription_options(
    model_name: str, language: str, translate: bool
) -> TranscriptionOptions:
    """Apply the model's constraints to the requested language settings.

    English-only models always transcribe English. Translation is only
    possible when the language is detected and the model is multilingual.
    """
    english_only = is_english_only_model(model_name)
    language = (language or AUTO_LANGUAGE).lower()
    if english_only:
        language = "en"
    translate = translate and language == AUTO_LANGUAGE and not english_only
    return TranscriptionOptions(language=language, translate=translate)


class _Done:
    """Marks the end of the worker's event stream."""


class Transcriber:
    """Handles audio transcription using faster-whisper."""

    def __init__(self, config: AppConfig):
        """Initialize the transcriber.

        Args:
            config: Application configuration.
        """
        self.whisper_config = config.whisper
        self._model: Optional[WhisperModel] = None
        self._cancel_event = threading.Event()

    @property
    def model_name(self) -> str:
        return self.whisper_config.model

    @property
    def is_ready(self) -> bool:
        return self._model is not None

    def load_model(self) -> bool:
        """Load the Whisper model.

        Returns:
            True if model loaded successfully, False otherwise.
        """
        if self._model:
            logger.warning("Model already loaded")
            return True

        try:
            logger.info(
                f"Loading Whisper model '{self.whisper_config.model}' "
                f"(Device: {self.whisper_config.device}, "
                f"Compute: {self.whisper_config.compute_type}, "
                f"CPU threads: {self.whisper_config.cpu_threads})"
            )
            self._model = WhisperModel(
                self.whisper_config.model,
                device=self.whisper_config.device,
                compute_type=self.whisper_config.compute_type,
                download_root=None,  # Use default location
                cpu_threads=self.whisper_config.cpu_threads,
            )
            logger.info("Whisper model loaded successfully")
            return True

        except Exception as e:
            logger.exception(f"Failed to load Whisper model: {e}")
            self._model = None
            return False

    def _run_transcription(
        self,
        audio: NormalizedAudioRef,
        options: TranscriptionOptions,
        emit: Callable[[TranscriptionEvent], None],
    ) -> Optional[Transcript]:
        """Run transcription in a worker thread.

        Returns:
            The transcript, or None if cancelled before finishing.
        """
        if not self._model:
            raise TranscriptionError("Model not loaded")

        segments_generator, info = self._model.transcribe(
            str(audio.path),
            language=None if options.language == AUTO_LANGUAGE else options.language,
            task="translate" if options.translate else "transcribe",
            beam_size=self.whisper_config.beam_size,
            vad_filter=False,
        )

        duration = info.duration or 0.0
        last_percent = 0.0
        segments: List[TranscriptSegment] = []
        for seg in segments_generator:
            if self._cancel_event.is_set():
                logger.info("Transcription cancelled")
                return None

            segments.append(TranscriptSegment(start=seg.start, end=seg.end, text=seg.text))
            logger.debug(f"Segment [{seg.start:.2f}-{seg.end:.2f}]: {seg.text.strip()}")

            if duration > 0:
                last_percent = min(100.0, seg.end / duration * 100)
                emit(TranscriptionProgress(percent=last_percent))

        if last_percent < 100.0:
            emit(TranscriptionProgress(percent=100.0))
        return Transcript(
            text=" ".join(s.text.strip() for s in segments).strip(),
            segments=segments,
            language=info.language,
            duration=info.duration,
        )

    async def transcribe(
        self, audio: NormalizedAudioRef, options: TranscriptionOptions
    ) -> AsyncIterator[TranscriptionEvent]:
        """Transcribe ``audio``.

        Yields TranscriptionProgress events followed by a single Transcript.
        The stream ends without a Transcript if :meth:`cancel` was called.

        Raises:
            TranscriptionError: If the model is not loaded or inference fails.
        """
        if not self._model:
            raise TranscriptionError("Model not loaded")

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        self._cancel_event.clear()

        def emit(item) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, item)

        def worker() -> None:
            try:
                emit(self._run_transcription(audio, options, emit))
            except Exception as e:
                emit(e)
            finally:
                emit(_Done())

        logger.info(
            f"Transcribing {audio.path} (language: {options.language}, "
            f"translate: {options.translate})"
        )
        worker_task = asyncio.create_task(asyncio.to_thread(worker))
        try:
            while True:
                item = await queue.get()
                if isinstance(item, _Done):
                    break
                if isinstance(item, TranscriptionError):
                    raise item
                if isinstance(item, Exception):
                    logger.error(f"Transcription error: {item}")
                    raise TranscriptionError(str(item)) from item
                if item is None:
                    continue
                yield item
        finally:
            if not worker_task.done():
                # Consumer went away early; let the thread wind down
                self._cancel_event.set()
            await worker_task

    def cancel(self) -> None:
        """Ask a running transcription to stop after the current segment."""
        self._cancel_event.set()
