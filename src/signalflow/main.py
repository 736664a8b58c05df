"""Main entry point for SignalFlow."""

import asyncio
import contextlib
import signal

from signalflow.config import get_settings
from signalflow.logging import get_logger, setup_logging
from signalflow.service import SignalFlowService


async def main() -> None:
    """Main application entry point."""
    setup_logging()
    log = get_logger("signalflow.main")

    settings = get_settings()
    log.info(
        "starting_signalflow",
        environment=settings.environment,
        oracle_url=settings.oracle_url,
        executor_url=settings.executor_url,
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Windows event loops cannot install signal handlers
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    service = SignalFlowService(settings)
    await service.start()
    try:
        await stop.wait()
        log.info("shutdown_requested")
    finally:
        await service.shutdown()
        log.info("shutdown_complete")


def run() -> None:
    """Run the application."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
