"""Tests for the pipeline orchestrator."""

import asyncio
import math
from datetime import datetime
from pathlib import Path
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from voicenoted.artifact_store import ArtifactStore
from voicenoted.audio_capture import CaptureHandle, RawAudioRef
from voicenoted.config import AppConfig, DaemonConfig, StorageConfig, WhisperConfig
from voicenoted.converter import (
    ConversionOutcome,
    ConversionResult,
    NormalizedAudioRef,
)
from voicenoted.errors import DeviceError, PersistenceError, TranscriptionError
from voicenoted.events import ProgressReport, SessionResult
from voicenoted.orchestrator import PipelineOrchestrator, estimate_remaining_seconds
from voicenoted.session import Stage
from voicenoted.transcriber import (
    Transcript,
    TranscriptionOptions,
    TranscriptionProgress,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCapture:
    """Records into a file without a real device."""

    def __init__(self, scratch_dir: Path, permission: bool = True):
        self.scratch_dir = scratch_dir
        self.permission = permission
        self.start_error: Optional[Exception] = None
        self.permission_gate: Optional[asyncio.Event] = None
        self.start_gate: Optional[asyncio.Event] = None
        self._handle: Optional[CaptureHandle] = None
        self.started: List[str] = []
        self.stopped: List[str] = []
        self.released: List[str] = []

    @property
    def open_handle(self):
        return self._handle

    async def request_permission(self) -> bool:
        if self.permission_gate is not None:
            await self.permission_gate.wait()
        return self.permission

    async def start(self, session_id: str) -> CaptureHandle:
        if self.start_gate is not None:
            await self.start_gate.wait()
        if self.start_error:
            raise self.start_error
        if self._handle is not None:
            raise DeviceError("A recording is already open")
        self._handle = CaptureHandle(session_id=session_id, process=MagicMock())
        self.started.append(session_id)
        return self._handle

    async def stop(self, handle: CaptureHandle) -> RawAudioRef:
        self._handle = None
        self.stopped.append(handle.session_id)
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        path = self.scratch_dir / f"{handle.session_id}.raw"
        path.write_bytes(b"\x00\x01" * 480)
        return RawAudioRef(path=path, sample_rate=48000, channels=1)

    async def release(self, handle: CaptureHandle) -> None:
        self._handle = None
        self.released.append(handle.session_id)


class FakeConverter:
    def __init__(self, outcome: ConversionOutcome = ConversionOutcome.SUCCESS):
        self.outcome = outcome
        self.calls = []
        self.gate: Optional[asyncio.Event] = None
        self.cancel_called = False

    async def convert(self, raw, output_path, options) -> ConversionResult:
        self.calls.append((raw, output_path, options))
        if self.gate is not None:
            await self.gate.wait()
        if self.cancel_called:
            return ConversionResult(ConversionOutcome.CANCELLED)
        if self.outcome == ConversionOutcome.SUCCESS:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            output_path.write_bytes(b"RIFF....WAVEfmt ")
            return ConversionResult(
                ConversionOutcome.SUCCESS, audio=NormalizedAudioRef(path=output_path)
            )
        return ConversionResult(self.outcome, error="ffmpeg failed with code 1")

    def cancel(self) -> bool:
        self.cancel_called = True
        if self.gate is not None:
            self.gate.set()
        return True


class FakeTranscriber:
    """Replays a script of events; callables in the script run as side effects."""

    def __init__(self, script=None, model_name: str = "small", ready: bool = True):
        self.script = script if script is not None else [
            TranscriptionProgress(percent=100.0),
            Transcript(text="  Hello world  "),
        ]
        self.model_name = model_name
        self.is_ready = ready
        self.calls = []
        self.cancel_called = False
        self.gate: Optional[asyncio.Event] = None

    async def transcribe(self, audio, options):
        self.calls.append((audio, options))
        for item in self.script:
            if self.gate is not None:
                await self.gate.wait()
            if self.cancel_called:
                return
            if isinstance(item, Exception):
                raise item
            if callable(item):
                item()
                continue
            yield item

    def cancel(self) -> None:
        self.cancel_called = True
        if self.gate is not None:
            self.gate.set()


class GatedStore(ArtifactStore):
    """Holds audio writes until the gate opens."""

    def __init__(self):
        self.gate = asyncio.Event()
        self.audio_writes = 0

    async def write_audio(self, data, destination, filename):
        self.audio_writes += 1
        await self.gate.wait()
        return await super().write_audio(data, destination, filename)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    return AppConfig(
        storage=StorageConfig(working_dir=tmp_path / "work"),
        daemon=DaemonConfig(tick_interval_s=0.01),
    )


@pytest.fixture
def capture(tmp_path):
    return FakeCapture(tmp_path / "work" / "tmp")


@pytest.fixture
def converter():
    return FakeConverter()


@pytest.fixture
def transcriber():
    return FakeTranscriber()


@pytest.fixture
def events():
    return []


@pytest_asyncio.fixture
async def orchestrator(config, capture, converter, transcriber, clock, events):
    orch = PipelineOrchestrator(
        config, capture, converter, transcriber, ArtifactStore(), clock=clock
    )
    orch.add_observer(events.append)
    yield orch
    await orch.close()


def stages_of(events, session_id):
    return [e.stage for e in events if e.session_id == session_id]


def distinct(stages):
    result = []
    for stage in stages:
        if not result or result[-1] != stage:
            result.append(stage)
    return result


async def wait_for_stage(session, stage, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while session.stage != stage:
        assert loop.time() < deadline, f"session stuck in {session.stage.value}"
        await asyncio.sleep(0.001)


async def record_and_finish(orchestrator) -> SessionResult:
    session = await orchestrator.start_session()
    assert session.stage == Stage.CAPTURING
    await orchestrator.stop_session()
    return await orchestrator.wait_for_result()


def test_eta_half_done():
    assert estimate_remaining_seconds(50, 10) == pytest.approx(10)


def test_eta_zero_percent_is_indeterminate():
    assert estimate_remaining_seconds(0, 10) is None
    assert estimate_remaining_seconds(0, 0) is None


@pytest.mark.parametrize("percent", [0.001, 0.5, 1, 33.3, 50, 99.99, 100])
@pytest.mark.parametrize("elapsed", [0, 0.25, 10, 3600])
def test_eta_is_finite_and_non_negative(percent, elapsed):
    eta = estimate_remaining_seconds(percent, elapsed)
    assert eta is not None
    assert math.isfinite(eta)
    assert eta >= 0


@pytest.mark.parametrize("percent", [5e-324, 1e-310])
@pytest.mark.parametrize("elapsed", [10, 3600])
def test_eta_for_tiny_progress_is_never_infinite(percent, elapsed):
    eta = estimate_remaining_seconds(percent, elapsed)
    assert eta is None or (math.isfinite(eta) and eta >= 0)


def test_eta_rejects_non_finite_input():
    assert estimate_remaining_seconds(float("nan"), 1) is None
    assert estimate_remaining_seconds(50, float("inf")) is None


def test_eta_done_is_zero():
    assert estimate_remaining_seconds(100, 42) == 0


@pytest.mark.asyncio
async def test_happy_path_completes(orchestrator, events, tmp_path, capture):
    result = await record_and_finish(orchestrator)

    assert result.stage == Stage.COMPLETED
    assert result.error is None
    audio_path = Path(result.artifacts.audio_path)
    transcript_path = Path(result.artifacts.transcript_path)
    assert audio_path.parent == tmp_path / "work"
    assert audio_path.suffix == ".wav"
    assert transcript_path.suffix == ".md"
    assert audio_path.stem == transcript_path.stem
    assert transcript_path.read_text() == "Hello world"
    assert audio_path.read_bytes().startswith(b"RIFF")

    # Raw recording and intermediate conversion are gone
    assert list((tmp_path / "work" / "tmp").iterdir()) == []
    assert not orchestrator.is_busy


@pytest.mark.asyncio
async def test_stages_are_monotonic(orchestrator, events):
    result = await record_and_finish(orchestrator)

    assert distinct(stages_of(events, result.session_id)) == [
        Stage.REQUESTING_PERMISSION,
        Stage.CAPTURING,
        Stage.CONVERTING,
        Stage.TRANSCRIBING,
        Stage.PERSISTING,
        Stage.COMPLETED,
    ]
    assert isinstance(events[-1], SessionResult)


@pytest.mark.asyncio
async def test_start_reports_indeterminate_permission_request(orchestrator, events):
    session = await orchestrator.start_session()

    first = events[0]
    assert isinstance(first, ProgressReport)
    assert first.session_id == session.id
    assert first.stage == Stage.REQUESTING_PERMISSION
    assert first.indeterminate


@pytest.mark.asyncio
async def test_conversion_progress_is_indeterminate(orchestrator, events):
    result = await record_and_finish(orchestrator)

    converting = [
        e for e in events
        if isinstance(e, ProgressReport) and e.stage == Stage.CONVERTING
    ]
    assert converting
    assert all(e.indeterminate for e in converting)
    assert result.stage == Stage.COMPLETED


@pytest.mark.asyncio
async def test_transcription_eta(orchestrator, transcriber, clock, events):
    transcriber.script = [
        lambda: clock.advance(10),
        TranscriptionProgress(percent=50),
        Transcript(text="note"),
    ]

    await record_and_finish(orchestrator)

    report = next(
        e for e in events
        if isinstance(e, ProgressReport) and e.stage == Stage.TRANSCRIBING and e.eta_seconds is not None
    )
    assert report.fraction == pytest.approx(0.5)
    assert report.eta_seconds == pytest.approx(10)
    assert "Estimated time remaining: 10s" in report.message


@pytest.mark.asyncio
async def test_transcription_zero_percent_has_no_eta(orchestrator, transcriber, clock, events):
    transcriber.script = [
        lambda: clock.advance(3),
        TranscriptionProgress(percent=0),
        Transcript(text="note"),
    ]

    result = await record_and_finish(orchestrator)

    transcribing = [
        e for e in events
        if isinstance(e, ProgressReport) and e.stage == Stage.TRANSCRIBING
    ]
    zero = transcribing[1]
    assert zero.fraction == 0.0
    assert zero.eta_seconds is None
    assert result.stage == Stage.COMPLETED


@pytest.mark.asyncio
async def test_eta_only_during_transcription(orchestrator, transcriber, clock, events):
    transcriber.script = [
        lambda: clock.advance(2),
        TranscriptionProgress(percent=25),
        Transcript(text="note"),
    ]

    await record_and_finish(orchestrator)

    for event in events:
        if isinstance(event, ProgressReport) and event.stage != Stage.TRANSCRIBING:
            assert event.eta_seconds is None


@pytest.mark.asyncio
async def test_tiny_transcription_progress_completes(orchestrator, transcriber, clock, events):
    transcriber.script = [
        lambda: clock.advance(10),
        TranscriptionProgress(percent=1e-310),
        TranscriptionProgress(percent=100.0),
        Transcript(text="Hello"),
    ]

    result = await record_and_finish(orchestrator)

    assert result.stage == Stage.COMPLETED
    reports = [
        e for e in events
        if isinstance(e, ProgressReport) and e.stage == Stage.TRANSCRIBING
    ]
    assert all(r.eta_seconds is None or math.isfinite(r.eta_seconds) for r in reports)


@pytest.mark.asyncio
async def test_permission_denied(orchestrator, capture, events):
    capture.permission = False

    session = await orchestrator.start_session()

    assert session.stage == Stage.FAILED
    assert capture.started == []
    result = orchestrator.last_result
    assert result.stage == Stage.FAILED
    assert result.error_kind == "PermissionDenied"
    assert session.last_error is not None
    assert not orchestrator.is_busy


@pytest.mark.asyncio
async def test_model_not_loaded_fails_fast(orchestrator, transcriber, capture):
    transcriber.is_ready = False

    session = await orchestrator.start_session()

    assert session.stage == Stage.FAILED
    assert orchestrator.last_result.error_kind == "TranscriptionError"
    assert capture.started == []


@pytest.mark.asyncio
async def test_capture_start_failure(orchestrator, capture):
    capture.start_error = OSError("device busy")

    session = await orchestrator.start_session()

    assert session.stage == Stage.FAILED
    assert orchestrator.last_result.error_kind == "DeviceError"
    assert "device busy" in orchestrator.last_result.error


@pytest.mark.asyncio
async def test_capture_stop_failure(orchestrator, capture):
    capture.stop = AsyncMock(side_effect=DeviceError("No audio was recorded"))

    await orchestrator.start_session()
    await orchestrator.stop_session()
    result = await orchestrator.wait_for_result()

    assert result.stage == Stage.FAILED
    assert result.error_kind == "DeviceError"
    assert "Capturing" in result.error


@pytest.mark.asyncio
async def test_capture_stop_failure_after_cancel_is_cancelled(orchestrator, capture):
    gate = asyncio.Event()

    async def failing_stop(handle):
        await gate.wait()
        raise DeviceError("No audio was recorded")

    capture.stop = failing_stop

    session = await orchestrator.start_session()
    stop_task = asyncio.create_task(orchestrator.stop_session())
    await asyncio.sleep(0.01)
    await orchestrator.cancel_session()
    gate.set()
    await stop_task
    result = await orchestrator.wait_for_result()

    assert result.stage == Stage.CANCELLED
    assert session.stage == Stage.CANCELLED


@pytest.mark.asyncio
async def test_converter_cancelled_skips_transcription(orchestrator, converter, transcriber):
    converter.outcome = ConversionOutcome.CANCELLED

    result = await record_and_finish(orchestrator)

    assert result.stage == Stage.CANCELLED
    assert result.error_kind == "ConversionCancelled"
    assert transcriber.calls == []


@pytest.mark.asyncio
async def test_converter_error_fails(orchestrator, converter, transcriber, events):
    converter.outcome = ConversionOutcome.ERROR

    result = await record_and_finish(orchestrator)

    assert result.stage == Stage.FAILED
    assert result.error_kind == "ConversionError"
    assert "ffmpeg failed" in result.error
    assert transcriber.calls == []
    assert Stage.TRANSCRIBING not in stages_of(events, result.session_id)


@pytest.mark.asyncio
async def test_conversion_options_follow_config(orchestrator, converter, config):
    config.audio.noise_reduction = True

    await record_and_finish(orchestrator)

    _, output_path, options = converter.calls[0]
    assert options.sample_rate == 16000
    assert options.channels == 1
    assert options.noise_reduction is True
    assert output_path.parent == orchestrator.scratch_dir


@pytest.mark.asyncio
async def test_transcription_error_fails(orchestrator, transcriber):
    transcriber.script = [
        TranscriptionProgress(percent=10),
        TranscriptionError("inference failed"),
    ]

    result = await record_and_finish(orchestrator)

    assert result.stage == Stage.FAILED
    assert result.error_kind == "TranscriptionError"
    assert result.artifacts is None


@pytest.mark.asyncio
async def test_unexpected_transcription_exception_is_wrapped(orchestrator, transcriber):
    transcriber.script = [RuntimeError("CUDA out of memory")]

    result = await record_and_finish(orchestrator)

    assert result.stage == Stage.FAILED
    assert result.error_kind == "TranscriptionError"
    assert "CUDA out of memory" in result.error


@pytest.mark.asyncio
async def test_english_model_overrides_language(config, capture, converter, clock):
    config.whisper = WhisperConfig(model="small.en", language="de", translate=True)
    transcriber = FakeTranscriber(model_name="small.en")
    orch = PipelineOrchestrator(
        config, capture, converter, transcriber, ArtifactStore(), clock=clock
    )

    await record_and_finish(orch)

    _, options = transcriber.calls[0]
    assert options == TranscriptionOptions(language="en", translate=False)


@pytest.mark.asyncio
async def test_translate_kept_for_multilingual_auto(config, capture, converter, clock):
    config.whisper = WhisperConfig(model="medium", language="auto", translate=True)
    transcriber = FakeTranscriber(model_name="medium")
    orch = PipelineOrchestrator(
        config, capture, converter, transcriber, ArtifactStore(), clock=clock
    )

    await record_and_finish(orch)

    _, options = transcriber.calls[0]
    assert options == TranscriptionOptions(language="auto", translate=True)


@pytest.mark.asyncio
async def test_external_write_deletes_intermediate(
    config, capture, converter, transcriber, clock, tmp_path
):
    config.storage.external_dir = tmp_path / "journal"
    orch = PipelineOrchestrator(
        config, capture, converter, transcriber, ArtifactStore(), clock=clock
    )

    result = await record_and_finish(orch)

    assert result.stage == Stage.COMPLETED
    assert Path(result.artifacts.audio_path).parent == tmp_path / "journal"
    assert Path(result.artifacts.transcript_path).parent == tmp_path / "journal"
    intermediate = converter.calls[0][1]
    assert not intermediate.exists()


@pytest.mark.asyncio
async def test_external_write_failure_keeps_intermediate(
    config, capture, converter, transcriber, clock, tmp_path
):
    config.storage.external_dir = tmp_path / "journal"
    store = ArtifactStore()
    store.write_audio = AsyncMock(side_effect=PersistenceError("disk full"))
    store.write_text = AsyncMock()
    orch = PipelineOrchestrator(config, capture, converter, transcriber, store, clock=clock)

    result = await record_and_finish(orch)

    assert result.stage == Stage.FAILED
    assert result.error_kind == "PersistenceError"
    assert "Persisting" in result.error
    intermediate = converter.calls[0][1]
    assert intermediate.exists()
    store.write_text.assert_not_called()


@pytest.mark.asyncio
async def test_transcript_write_failure_keeps_audio(
    config, capture, converter, transcriber, clock
):
    store = ArtifactStore()
    store.write_text = AsyncMock(side_effect=PersistenceError("read-only"))
    orch = PipelineOrchestrator(config, capture, converter, transcriber, store, clock=clock)

    result = await record_and_finish(orch)

    assert result.stage == Stage.FAILED
    assert result.error_kind == "PersistenceError"
    written = list(orch.working_dir.glob("*.wav"))
    assert len(written) == 1


async def record_at(orchestrator, started_at: datetime) -> SessionResult:
    session = await orchestrator.start_session()
    session.started_at = started_at
    await orchestrator.stop_session()
    return await orchestrator.wait_for_result()


@pytest.mark.asyncio
async def test_sessions_in_same_second_keep_both_notes(orchestrator, transcriber, tmp_path):
    started_at = datetime(2026, 10, 18, 20, 18, 22)

    transcriber.script = [Transcript(text="first")]
    first = await record_at(orchestrator, started_at)
    transcriber.script = [Transcript(text="second")]
    second = await record_at(orchestrator, started_at)

    assert first.stage == second.stage == Stage.COMPLETED
    first_md = Path(first.artifacts.transcript_path)
    second_md = Path(second.artifacts.transcript_path)
    assert first_md.name == "2026-10-18_20-18-22.md"
    assert second_md.name == "2026-10-18_20-18-22 (1).md"
    assert first_md.read_text() == "first"
    assert second_md.read_text() == "second"
    assert Path(second.artifacts.audio_path).stem == second_md.stem


@pytest.mark.asyncio
async def test_external_siblings_share_stem_after_partial_note(
    config, capture, converter, transcriber, clock, tmp_path
):
    journal = tmp_path / "journal"
    journal.mkdir()
    # Audio left behind by an earlier failed transcript write
    (journal / "2026-10-18_20-18-31.wav").write_bytes(b"old")
    config.storage.external_dir = journal
    orch = PipelineOrchestrator(
        config, capture, converter, transcriber, ArtifactStore(), clock=clock
    )

    result = await record_at(orch, datetime(2026, 10, 18, 20, 18, 31))

    assert result.stage == Stage.COMPLETED
    assert Path(result.artifacts.audio_path).name == "2026-10-18_20-18-31 (1).wav"
    assert Path(result.artifacts.transcript_path).name == "2026-10-18_20-18-31 (1).md"
    assert (journal / "2026-10-18_20-18-31.wav").read_bytes() == b"old"


@pytest.mark.asyncio
async def test_second_start_stops_active_recording(orchestrator, capture, events):
    first = await orchestrator.start_session()
    second = await orchestrator.start_session()

    assert capture.stopped == [first.id]
    assert first.stage == Stage.COMPLETED
    assert second.stage == Stage.CAPTURING

    first_done = next(
        i for i, e in enumerate(events)
        if isinstance(e, SessionResult) and e.session_id == first.id
    )
    second_capturing = next(
        i for i, e in enumerate(events)
        if e.session_id == second.id and e.stage == Stage.CAPTURING
    )
    assert first_done < second_capturing


@pytest.mark.asyncio
async def test_at_most_one_active_session(orchestrator, events):
    active = set()
    peak = []

    def track(event):
        if isinstance(event, SessionResult):
            active.discard(event.session_id)
        else:
            active.add(event.session_id)
        peak.append(len(active))

    orchestrator.add_observer(track)

    await asyncio.gather(
        orchestrator.start_session(),
        orchestrator.start_session(),
        orchestrator.start_session(),
    )

    assert max(peak) == 1
    assert orchestrator.current_session.stage == Stage.CAPTURING


@pytest.mark.asyncio
async def test_start_waits_for_processing_session(orchestrator, transcriber):
    transcriber.gate = asyncio.Event()

    first = await orchestrator.start_session()
    await orchestrator.stop_session()
    await wait_for_stage(first, Stage.TRANSCRIBING)

    start_task = asyncio.create_task(orchestrator.start_session())
    await asyncio.sleep(0.01)
    assert not start_task.done()

    transcriber.gate.set()
    second = await asyncio.wait_for(start_task, timeout=1.0)

    assert first.stage == Stage.COMPLETED
    assert second.stage == Stage.CAPTURING


@pytest.mark.asyncio
async def test_stale_handle_released_before_start(orchestrator, capture, events):
    stale = await capture.start("leftover")

    session = await orchestrator.start_session()

    assert capture.released == [stale.session_id]
    assert session.stage == Stage.CAPTURING
    messages = [e.message for e in events if isinstance(e, ProgressReport)]
    assert "Stopping previous recording..." in messages


@pytest.mark.asyncio
async def test_stop_outside_capturing_is_noop(orchestrator, capture, events):
    await orchestrator.stop_session()

    assert capture.stopped == []
    assert events == []


@pytest.mark.asyncio
async def test_cancel_without_session_is_noop(orchestrator, events):
    await orchestrator.cancel_session()

    assert events == []
    assert orchestrator.last_result is None


@pytest.mark.asyncio
async def test_cancel_while_capturing(orchestrator, capture, converter):
    session = await orchestrator.start_session()

    await orchestrator.cancel_session()

    assert session.stage == Stage.CANCELLED
    assert capture.released == [session.id]
    assert capture.stopped == []
    assert converter.calls == []
    assert not orchestrator._timer.running
    assert orchestrator.last_result.stage == Stage.CANCELLED


@pytest.mark.asyncio
async def test_cancel_while_requesting_permission(orchestrator, capture, converter):
    capture.permission_gate = asyncio.Event()

    start_task = asyncio.create_task(orchestrator.start_session())
    await asyncio.sleep(0.01)
    session = orchestrator.current_session
    assert session.stage == Stage.REQUESTING_PERMISSION

    await orchestrator.cancel_session()
    capture.permission_gate.set()
    await asyncio.wait_for(start_task, timeout=1.0)

    assert session.stage == Stage.CANCELLED
    assert capture.started == []
    assert converter.calls == []
    assert orchestrator.last_result.stage == Stage.CANCELLED


@pytest.mark.asyncio
async def test_cancel_while_recorder_starting_releases_it(orchestrator, capture):
    capture.start_gate = asyncio.Event()

    start_task = asyncio.create_task(orchestrator.start_session())
    await asyncio.sleep(0.01)
    session = orchestrator.current_session

    await orchestrator.cancel_session()
    capture.start_gate.set()
    await asyncio.wait_for(start_task, timeout=1.0)

    assert session.stage == Stage.CANCELLED
    assert capture.started == [session.id]
    assert capture.released == [session.id]
    assert capture.open_handle is None


@pytest.mark.asyncio
async def test_cancel_while_converting(orchestrator, converter, transcriber):
    converter.gate = asyncio.Event()

    session = await orchestrator.start_session()
    await orchestrator.stop_session()
    await wait_for_stage(session, Stage.CONVERTING)

    await orchestrator.cancel_session()
    result = await orchestrator.wait_for_result()

    assert converter.cancel_called
    assert result.stage == Stage.CANCELLED
    assert transcriber.calls == []


@pytest.mark.asyncio
async def test_cancel_while_transcribing(orchestrator, transcriber, tmp_path):
    transcriber.gate = asyncio.Event()

    session = await orchestrator.start_session()
    await orchestrator.stop_session()
    await wait_for_stage(session, Stage.TRANSCRIBING)

    await orchestrator.cancel_session()
    result = await orchestrator.wait_for_result()

    assert transcriber.cancel_called
    assert result.stage == Stage.CANCELLED
    assert result.artifacts is None
    assert list((tmp_path / "work").glob("*.md")) == []
    assert list((tmp_path / "work" / "tmp").iterdir()) == []


@pytest.mark.asyncio
async def test_cancel_while_persisting_keeps_audio(
    config, capture, converter, transcriber, clock
):
    store = GatedStore()
    orch = PipelineOrchestrator(config, capture, converter, transcriber, store, clock=clock)

    session = await orch.start_session()
    await orch.stop_session()
    await wait_for_stage(session, Stage.PERSISTING)
    while store.audio_writes == 0:
        await asyncio.sleep(0.001)

    await orch.cancel_session()
    store.gate.set()
    result = await orch.wait_for_result()

    assert result.stage == Stage.CANCELLED
    assert result.artifacts is None
    assert len(list(orch.working_dir.glob("*.wav"))) == 1
    assert list(orch.working_dir.glob("*.md")) == []
    assert list(orch.scratch_dir.iterdir()) == []
    await orch.close()


@pytest.mark.asyncio
async def test_timer_ticks_only_while_capturing(orchestrator, events):
    session = await orchestrator.start_session()
    await asyncio.sleep(0.05)

    ticks = [
        e for e in events
        if isinstance(e, ProgressReport) and e.message.startswith("Recording... ")
    ]
    assert ticks
    assert all(e.stage == Stage.CAPTURING for e in ticks)

    await orchestrator.stop_session()
    assert not orchestrator._timer.running
    await orchestrator.wait_for_result()

    tick_count = len(
        [e for e in events if isinstance(e, ProgressReport) and e.message.startswith("Recording... ")]
    )
    await asyncio.sleep(0.05)
    after = len(
        [e for e in events if isinstance(e, ProgressReport) and e.message.startswith("Recording... ")]
    )
    assert after == tick_count
    assert session.stage == Stage.COMPLETED


@pytest.mark.asyncio
async def test_observer_errors_do_not_break_pipeline(orchestrator):
    orchestrator.add_observer(MagicMock(side_effect=RuntimeError("ui gone")))

    result = await record_and_finish(orchestrator)

    assert result.stage == Stage.COMPLETED


@pytest.mark.asyncio
async def test_status_reflects_session(orchestrator, capture):
    assert orchestrator.get_status() == ("Idle", None, None)

    session = await orchestrator.start_session()
    assert orchestrator.get_status() == ("Capturing", session.id, None)

    await orchestrator.cancel_session()
    capture.permission = False
    failed = await orchestrator.start_session()
    stage, session_id, error = orchestrator.get_status()
    assert stage == "Failed"
    assert session_id == failed.id
    assert "PermissionDenied" in error
