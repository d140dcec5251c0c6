"""Entry point for the Omnipair indexer.

Builds the indexer from settings and either serves the status API with the
indexer running inside uvicorn's event loop (API_ENABLED=true, the default)
or runs the indexer alone until SIGINT/SIGTERM.
"""

import asyncio
import signal
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from omnipair_indexer.api import create_app
from omnipair_indexer.config import AppSettings
from omnipair_indexer.indexer import OmnipairIndexer
from omnipair_indexer.logging import get_logger, setup_logging


def _setup_signal_handlers(stop_event: asyncio.Event) -> None:
    """SIGINT/SIGTERM request a graceful stop.

    Must be called after the asyncio event loop is running.
    """
    logger = get_logger("omnipair_indexer.main")
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the indexer with the API server and stop it on shutdown."""
    logger = get_logger("omnipair_indexer.main")
    indexer: OmnipairIndexer = app.state.indexer

    await indexer.start()
    logger.info("lifespan_started")

    yield

    for task in list(app.state.sync_tasks):
        task.cancel()
    await indexer.stop()
    logger.info("omnipair_indexer_stopped")


async def run() -> None:
    settings = AppSettings()

    setup_logging(settings.log_level)
    logger = get_logger("omnipair_indexer.main")

    indexer = OmnipairIndexer(settings)

    if settings.api.enabled:
        app = create_app(indexer, lifespan=lifespan)

        logger.info(
            "starting_with_api",
            host=settings.api.host,
            port=settings.api.port,
            rpc_url=settings.rpc.http_url,
        )

        config = uvicorn.Config(
            app,
            host=settings.api.host,
            port=settings.api.port,
            log_level="warning",
        )
        server = uvicorn.Server(config)
        await server.serve()
    else:
        stop_event = asyncio.Event()
        _setup_signal_handlers(stop_event)

        logger.info("starting_without_api", rpc_url=settings.rpc.http_url)

        try:
            await indexer.start()
            await stop_event.wait()
        finally:
            await indexer.stop()
            logger.info("omnipair_indexer_stopped")


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
