"""Main entry point for voicenoted daemon."""

import asyncio
import logging
import signal
import sys
from typing import NoReturn

from .artifact_store import ArtifactStore
from .audio_capture import PWRecordCapture
from .config import load_config
from .converter import FFmpegConverter
from .ipc_server import IPCServer
from .logging_setup import setup_logging
from .orchestrator import PipelineOrchestrator, get_scratch_dir
from .transcriber import Transcriber

logger = logging.getLogger(__name__)

__all__ = ["run"]


async def main() -> int:
    """Main daemon function.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    try:
        config = load_config()
    except Exception as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        return 1

    setup_logging(config.daemon.log_level, config.daemon.computed_log_file)
    logger.info("Starting voicenoted daemon...")

    shutdown_event = asyncio.Event()

    transcriber = Transcriber(config)
    orchestrator = PipelineOrchestrator(
        config,
        capture=PWRecordCapture(config, get_scratch_dir(config)),
        converter=FFmpegConverter(),
        transcriber=transcriber,
        store=ArtifactStore(),
    )
    ipc_server = IPCServer(
        config.daemon.computed_socket_path, shutdown_event, orchestrator
    )

    try:
        # Load the Whisper model (can take a while)
        if not await asyncio.to_thread(transcriber.load_model):
            logger.error("Failed to load Whisper model")
            return 1

        def handle_signal(sig: int) -> None:
            sig_name = signal.Signals(sig).name
            logger.info(f"Received signal {sig_name}, initiating shutdown...")
            shutdown_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))

        await ipc_server.start()
        logger.info("Daemon started successfully, ready to record")

        await shutdown_event.wait()
        logger.info("Starting graceful shutdown...")

    except Exception:
        logger.exception("Fatal error in daemon startup:")
        return 1

    finally:
        if ipc_server._server:
            await ipc_server.stop()
        else:
            await orchestrator.close()
        logger.info("Daemon shutdown complete")

    return 0


def run() -> NoReturn:
    """Entry point for the daemon."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(0)
    except Exception as e:
        # Fallback logger in case of early failure
        logging.basicConfig()
        logger.exception(f"Daemon failed with unhandled exception: {e}")
        sys.exit(1)
