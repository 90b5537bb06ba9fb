"""Drives a voice note from capture to stored audio and transcript."""

import asyncio
import logging
import math
import time
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple

from .artifact_store import (
    ArtifactStore,
    Destination,
    ExternalScopedDestination,
    PrivateDestination,
)
from .audio_capture import CaptureHandle, PWRecordCapture, RawAudioRef
from .config import AppConfig
from .converter import (
    ConversionOptions,
    ConversionOutcome,
    FFmpegConverter,
    NormalizedAudioRef,
)
from .errors import (
    ConversionCancelled,
    ConversionError,
    PermissionDenied,
    PersistenceError,
    PipelineError,
    TranscriptionError,
    wrap_error,
)
from .events import OutputArtifacts, PipelineEvent, ProgressReport, SessionResult
from .session import Session, Stage
from .timer import ElapsedTimer, format_elapsed
from .transcriber import (
    Transcriber,
    Transcript,
    TranscriptionProgress,
    resolve_transcription_options,
)

logger = logging.getLogger(__name__)

BASE_NAME_FORMAT = "%Y-%m-%d_%H-%M-%S"
SCRATCH_DIR_NAME = "tmp"


def estimate_remaining_seconds(percent: float, elapsed: float) -> Optional[float]:
    """Estimate the time left in a stage from its progress so far.

    Args:
        percent: Completion in percent, 0-100.
        elapsed: Seconds spent in the stage.

    Returns:
        Seconds remaining, or None while no progress has been made or the
        estimate is not a finite number.
    """
    if not math.isfinite(percent) or not math.isfinite(elapsed) or percent <= 0:
        return None
    percent = min(percent, 100.0)
    remaining = max(elapsed, 0.0) * (100.0 - percent) / percent
    # Tiny percentages overflow to inf
    if not math.isfinite(remaining):
        return None
    return remaining


def get_scratch_dir(config: AppConfig) -> Path:
    """Directory for recordings and conversions that are not yet stored."""
    return config.storage.computed_working_dir / SCRATCH_DIR_NAME


class _CancelRequested(Exception):
    """A cancel request reached an observable boundary."""


class PipelineOrchestrator:
    """Owns the single active session and sequences its stages.

    Callers use :meth:`start_session`, :meth:`stop_session` and
    :meth:`cancel_session`; progress is delivered to observers as
    :class:`ProgressReport` and a final :class:`SessionResult`.
    """

    def __init__(
        self,
        config: AppConfig,
        capture: PWRecordCapture,
        converter: FFmpegConverter,
        transcriber: Transcriber,
        store: ArtifactStore,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.capture = capture
        self.converter = converter
        self.transcriber = transcriber
        self.store = store
        self.clock = clock

        self.working_dir: Path = config.storage.computed_working_dir
        self.scratch_dir: Path = get_scratch_dir(config)

        self._session: Optional[Session] = None
        self._handle: Optional[CaptureHandle] = None
        self._pipeline_task: Optional[asyncio.Task] = None
        self._done: Optional[asyncio.Future] = None
        self._start_lock = asyncio.Lock()
        self._timer = ElapsedTimer(
            config.daemon.tick_interval_s, self._on_tick, clock=clock
        )

        self._observers: List[Callable[[PipelineEvent], Any]] = []
        self.last_result: Optional[SessionResult] = None

    # Subscription

    def add_observer(self, observer: Callable[[PipelineEvent], Any]) -> None:
        """Add a callback receiving every ProgressReport and SessionResult."""
        self._observers.append(observer)

    def _publish(self, event: PipelineEvent) -> None:
        for observer in self._observers:
            try:
                observer(event)
            except Exception:
                logger.exception("Error in pipeline observer")

    def _report(
        self,
        session: Session,
        message: str,
        fraction: Optional[float] = None,
        eta_seconds: Optional[float] = None,
    ) -> None:
        logger.info(f"[{session.stage.value}] {message}")
        self._publish(
            ProgressReport(
                session_id=session.id,
                stage=session.stage,
                fraction=fraction,
                eta_seconds=eta_seconds,
                message=message,
            )
        )

    # Status

    @property
    def current_session(self) -> Optional[Session]:
        return self._session

    @property
    def is_busy(self) -> bool:
        return self._session is not None and self._session.is_active

    @property
    def destination(self) -> Destination:
        external_dir = self.config.storage.external_dir
        if external_dir is not None:
            return ExternalScopedDestination(external_dir)
        return PrivateDestination(self.working_dir)

    def get_status(self) -> Tuple[str, Optional[str], Optional[str]]:
        """Get the current stage, session id and last error message."""
        session = self._session
        if session is None:
            return Stage.IDLE.value, None, None
        error = str(session.last_error) if session.last_error else None
        return session.stage.value, session.id, error

    async def wait_for_result(self) -> Optional[SessionResult]:
        """Wait until the current session has finished and return its result."""
        if self._done is None:
            return self.last_result
        return await asyncio.shield(self._done)

    # Commands

    async def start_session(self) -> Session:
        """Start a new session and begin recording.

        A session that is still recording is stopped first, and a session
        that is still processing is awaited, so at most one session is
        ever active.

        Returns:
            The new session. It may already be terminal if permission was
            denied or recording could not start.
        """
        async with self._start_lock:
            await self._finish_previous()

            session = Session(now=self.clock())
            self._session = session
            self._done = asyncio.get_running_loop().create_future()
            self._advance(session, Stage.REQUESTING_PERMISSION, "Requesting permission...")

            try:
                if not self.transcriber.is_ready:
                    raise TranscriptionError("Model not loaded")
                if not await self.capture.request_permission():
                    raise PermissionDenied("Microphone access was denied")
                self._check_cancelled(session)

                stale = self.capture.open_handle
                if stale is not None:
                    self._report(session, "Stopping previous recording...")
                    await self.capture.release(stale)

                self._report(session, "Starting recording...")
                handle = await self.capture.start(session.id)
                if session.cancel_requested:
                    await self.capture.release(handle)
                    raise _CancelRequested()
            except _CancelRequested:
                self._cancel(session)
                return session
            except Exception as e:
                self._fail(session, wrap_error(e, Stage.REQUESTING_PERMISSION))
                return session

            self._handle = handle
            self._advance(session, Stage.CAPTURING, "Recording...")
            self._timer.start()
            return session

    async def _finish_previous(self) -> None:
        previous = self._session
        if previous is None or not previous.is_active:
            return

        if previous.stage == Stage.CAPTURING:
            logger.info(f"Stopping recording of session {previous.id} before starting a new one")
            await self.stop_session()

        logger.info(f"Waiting for session {previous.id} to finish")
        await self.wait_for_result()

    async def stop_session(self) -> None:
        """Stop recording and process the recorded audio in the background."""
        session = self._session
        if session is None or session.stage != Stage.CAPTURING or self._handle is None:
            stage = session.stage.value if session else Stage.IDLE.value
            logger.warning(f"Stop requested while not recording (stage: {stage}); ignoring")
            return

        handle, self._handle = self._handle, None
        self._timer.stop()
        self._report(session, "Stopping recording...")

        try:
            raw = await self.capture.stop(handle)
        except Exception as e:
            logger.error(f"Failed to stop recording: {e}")
            if session.cancel_requested:
                self._cancel(session)
            else:
                self._fail(session, wrap_error(e, Stage.CAPTURING))
            return

        if session.cancel_requested:
            await self._discard(raw.path)
            self._cancel(session)
            return

        self._advance(session, Stage.CONVERTING, "Converting file...")
        self._pipeline_task = asyncio.create_task(self._run_pipeline(session, raw))

    async def cancel_session(self) -> None:
        """Cancel the active session.

        Recording is released at once and a running conversion or
        transcription is interrupted. Otherwise the session ends as
        Cancelled when the collaborator call in flight returns.
        """
        session = self._session
        if session is None or not session.is_active:
            logger.warning("Cancel requested with no active session; ignoring")
            return
        if session.cancel_requested:
            return

        logger.info(f"Cancelling session {session.id} in stage {session.stage.value}")
        session.cancel_requested = True

        if session.stage == Stage.CAPTURING and self._handle is not None:
            handle, self._handle = self._handle, None
            self._timer.stop()
            try:
                await self.capture.release(handle)
            except Exception:
                logger.exception("Error releasing recording during cancel")
            if session.is_active:
                self._cancel(session)
        elif session.stage == Stage.CONVERTING:
            self.converter.cancel()
        elif session.stage == Stage.TRANSCRIBING:
            self.transcriber.cancel()

    async def close(self) -> None:
        """Cancel any active session and wait for it to wind down."""
        if self.is_busy:
            await self.cancel_session()
        if self._pipeline_task and not self._pipeline_task.done():
            await asyncio.gather(self._pipeline_task, return_exceptions=True)
        self._timer.stop()

    # Pipeline

    async def _run_pipeline(self, session: Session, raw: RawAudioRef) -> None:
        audio: Optional[NormalizedAudioRef] = None
        try:
            audio = await self._convert(session, raw)
            self._check_cancelled(session)

            self._advance(session, Stage.TRANSCRIBING, "Transcribing...", fraction=0.0)
            transcript = await self._transcribe(session, audio)
            self._check_cancelled(session)

            self._advance(session, Stage.PERSISTING, "Saving to file...")
            artifacts = await self._persist(session, audio, transcript)
            self._complete(session, artifacts)

        except (_CancelRequested, ConversionCancelled) as e:
            if audio is not None:
                await self._discard(audio.path)
            self._cancel(session, e if isinstance(e, PipelineError) else None)
        except PipelineError as e:
            if session.cancel_requested:
                self._cancel(session)
            else:
                self._fail(session, wrap_error(e, session.stage))
        except asyncio.CancelledError:
            if session.is_active:
                self._cancel(session)
            raise
        except Exception as e:
            logger.exception(f"Unexpected error in stage {session.stage.value}")
            self._fail(session, wrap_error(e, session.stage))

    async def _convert(self, session: Session, raw: RawAudioRef) -> NormalizedAudioRef:
        audio_config = self.config.audio
        options = ConversionOptions(
            noise_reduction=audio_config.noise_reduction,
            noise_floor_db=audio_config.noise_floor_db,
        )
        output_path = self.scratch_dir / f"{session.id}.wav"

        try:
            result = await self.converter.convert(raw, output_path, options)
        finally:
            await self._discard(raw.path)

        if result.outcome == ConversionOutcome.SUCCESS and result.audio is not None:
            return result.audio

        await self._discard(output_path)
        if result.outcome == ConversionOutcome.CANCELLED:
            raise ConversionCancelled("Conversion was cancelled")
        raise ConversionError(result.error or "Conversion failed")

    async def _transcribe(self, session: Session, audio: NormalizedAudioRef) -> Transcript:
        whisper_config = self.config.whisper
        options = resolve_transcription_options(
            self.transcriber.model_name,
            whisper_config.language,
            whisper_config.translate,
        )

        transcript: Optional[Transcript] = None
        async for event in self.transcriber.transcribe(audio, options):
            if isinstance(event, TranscriptionProgress):
                self._on_transcription_progress(session, event.percent)
            else:
                transcript = event

        self._check_cancelled(session)
        if transcript is None:
            raise TranscriptionError("Transcription ended without a result")

        elapsed_ms = session.elapsed_in_stage(self.clock()) * 1000
        self._report(
            session, f"Transcription finished in {elapsed_ms:.0f}ms!", fraction=1.0
        )
        return transcript

    def _on_transcription_progress(self, session: Session, percent: float) -> None:
        elapsed = session.elapsed_in_stage(self.clock())
        eta = estimate_remaining_seconds(percent, elapsed)
        fraction = min(max(percent / 100.0, 0.0), 1.0) if math.isfinite(percent) else None

        message = "Transcribing..."
        if eta is not None:
            message += f"\nEstimated time remaining: {eta:.0f}s"
        self._report(session, message, fraction=fraction, eta_seconds=eta)

    async def _persist(
        self, session: Session, audio: NormalizedAudioRef, transcript: Transcript
    ) -> OutputArtifacts:
        storage = self.config.storage
        destination = self.destination

        try:
            base_name = await self.store.free_base_name(
                destination,
                session.started_at.strftime(BASE_NAME_FORMAT),
                (storage.audio_extension, storage.transcript_extension),
            )
            data = await self.store.read_bytes(audio.path)
            audio_path = await self.store.write_audio(
                data, destination, base_name + storage.audio_extension
            )
        except PersistenceError:
            logger.warning(f"Keeping intermediate audio at {audio.path}")
            raise

        # The destination copy is confirmed; the intermediate is no longer needed
        if audio_path != audio.path:
            await self._discard(audio.path)
        self._check_cancelled(session)

        # Sibling files share the stem the audio was actually written under
        transcript_path = await self.store.write_text(
            transcript.text.strip(),
            destination,
            audio_path.stem + storage.transcript_extension,
        )
        return OutputArtifacts(
            audio_path=str(audio_path), transcript_path=str(transcript_path)
        )

    # Transitions

    def _advance(
        self,
        session: Session,
        stage: Stage,
        message: str,
        fraction: Optional[float] = None,
    ) -> None:
        session.advance(stage, self.clock())
        self._report(session, message, fraction=fraction)

    def _check_cancelled(self, session: Session) -> None:
        if session.cancel_requested:
            raise _CancelRequested()

    def _complete(self, session: Session, artifacts: OutputArtifacts) -> None:
        session.advance(Stage.COMPLETED, self.clock())
        name = Path(artifacts.audio_path).stem
        self._finish(
            session,
            SessionResult(
                session_id=session.id,
                stage=Stage.COMPLETED,
                artifacts=artifacts,
                message=f"Finished saving to file '{name}'!",
            ),
        )

    def _fail(self, session: Session, error: PipelineError) -> None:
        self._timer.stop()
        session.fail(error, self.clock())
        logger.error(f"Session {session.id} failed: {error}")
        self._finish(
            session,
            SessionResult(
                session_id=session.id,
                stage=Stage.FAILED,
                error=str(error),
                error_kind=error.kind,
                message=f"Error: {error.message}",
            ),
        )

    def _cancel(self, session: Session, error: Optional[PipelineError] = None) -> None:
        self._timer.stop()
        session.cancel(self.clock())
        self._finish(
            session,
            SessionResult(
                session_id=session.id,
                stage=Stage.CANCELLED,
                error=str(error) if error else None,
                error_kind=error.kind if error else None,
                message="Cancelled",
            ),
        )

    def _finish(self, session: Session, result: SessionResult) -> None:
        logger.info(f"Session {session.id} finished: {result.stage.value} ({result.message})")
        self.last_result = result
        self._publish(result)
        if self._done is not None and not self._done.done():
            self._done.set_result(result)

    async def _discard(self, path: Path) -> None:
        try:
            await self.store.delete(path)
        except PersistenceError as e:
            logger.warning(f"Could not remove intermediate file: {e}")

    def _on_tick(self, elapsed: float) -> None:
        session = self._session
        if session is None or session.stage != Stage.CAPTURING:
            return
        self._report(session, f"Recording... {format_elapsed(elapsed)}")
