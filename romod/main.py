"""Main entry point for romod daemon."""

import asyncio
import logging
import signal
import sys
from typing import NoReturn, Optional

from .config import load_config
from .ipc_server import IPCServer
from .logging_setup import setup_logging
from .service import EngineService

logger = logging.getLogger(__name__)

__all__ = ["run"]  # Export the run function


async def main() -> int:
    """Main daemon function.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    # Load configuration first
    try:
        config = load_config()
    except Exception as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        return 1

    setup_logging(config.daemon.log_level, config.daemon.computed_log_file)
    logger.info("Starting romod daemon...")

    shutdown_event = asyncio.Event()
    service = EngineService(config)
    ipc_server: Optional[IPCServer] = None
    init_task: Optional[asyncio.Task] = None

    try:
        ipc_server = IPCServer(
            config.daemon.computed_socket_path,
            service,
            shutdown_event,
        )

        def handle_signal(sig: int) -> None:
            sig_name = signal.Signals(sig).name
            logger.info(f"Received signal {sig_name}, initiating shutdown...")
            shutdown_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))

        await ipc_server.start()

        # Engines start in the background (the server can take a minute to
        # load its model); clients can still initialize on demand
        if config.daemon.initialize_on_start:
            init_task = asyncio.create_task(service.initialize_all())

        logger.info("Daemon started successfully")

        await shutdown_event.wait()

        logger.info("Starting graceful shutdown...")

    except Exception:
        logger.exception("Fatal error in daemon startup:")
        return 1

    finally:
        if init_task is not None and not init_task.done():
            init_task.cancel()
            await asyncio.gather(init_task, return_exceptions=True)
        if ipc_server is not None and ipc_server._server:
            await ipc_server.stop()
        await service.shutdown_all()

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
