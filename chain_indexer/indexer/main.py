"""
Main entry point for the indexer service.

Run with:
    python -m chain_indexer.indexer.main
"""

import asyncio
import signal
from typing import List, Optional

import structlog

from chain_indexer.core.config import settings
from chain_indexer.core.database import init_database, close_database, DatabaseManager
from chain_indexer.core.logging import setup_logging
from chain_indexer.services.chain_reader import ChainReader, Web3ChainReader
from chain_indexer.services.cursor_store import CursorStore
from chain_indexer.services.event_store import EventStore

from .core.supervisor import IndexerSupervisor
from .handlers.escrow_handler import EscrowEventHandler


logger = structlog.get_logger(__name__)


class IndexerMain:
    """
    Indexer service coordinator.

    Wires the database, chain reader and escrow handler into a supervisor,
    starts one poller per configured source and runs the periodic health
    log and (optionally) the periodic retry sweep until stopped.
    """

    def __init__(self, chain_reader: Optional[ChainReader] = None):
        self.supervisor: Optional[IndexerSupervisor] = None
        self.chain_reader = chain_reader
        self.handler: Optional[EscrowEventHandler] = None
        self.running = False
        self.tasks: List[asyncio.Task] = []
        self._stop_requested = asyncio.Event()

    async def initialize(self):
        """Initialize database, chain access and the supervisor."""
        try:
            logger.info("Initializing indexer service", environment=settings.environment)

            session_factory = await init_database()
            if settings.is_development:
                await DatabaseManager.create_tables()

            self.chain_reader = self.chain_reader or Web3ChainReader()
            self.handler = EscrowEventHandler(session_factory)
            self.supervisor = IndexerSupervisor(
                chain_reader=self.chain_reader,
                handler=self.handler,
                cursor_store=CursorStore(session_factory),
                event_store=EventStore(session_factory)
            )

            logger.info("Indexer service initialized", sources=len(settings.indexer_sources))

        except Exception as e:
            logger.error("Failed to initialize indexer", error=str(e))
            raise

    async def start(self):
        """Start polling and block until a stop is requested."""
        logger.info("Starting indexer service")
        self.running = True

        await self.supervisor.start(settings.indexer_sources)

        self.tasks.append(asyncio.create_task(self._periodic_health_check()))
        if settings.indexer_retry_sweep_interval > 0:
            self.tasks.append(asyncio.create_task(self._periodic_retry_sweep()))

        logger.info("Indexer service started")
        await self._stop_requested.wait()

    def request_stop(self):
        self._stop_requested.set()

    async def stop(self):
        """Stop the indexer service."""
        logger.info("Stopping indexer service")
        self.running = False
        self._stop_requested.set()

        for task in self.tasks:
            if not task.done():
                task.cancel()
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks = []

        if self.supervisor:
            await self.supervisor.stop()
        if self.handler:
            await self.handler.close()
        if self.chain_reader:
            await self.chain_reader.close()
        await close_database()

        logger.info("Indexer service stopped")

    async def _periodic_health_check(self):
        """Log supervisor health on a fixed interval."""
        while self.running:
            try:
                await asyncio.sleep(settings.indexer_health_log_interval)
                if not self.running:
                    break

                report = await self.supervisor.health()
                if report.healthy:
                    logger.info("Indexer health check", sources=len(report.sources))
                else:
                    logger.warning(
                        "Indexer unhealthy",
                        is_running=report.is_running,
                        unhealthy_sources=[
                            {"source": s.source, "issues": s.issues}
                            for s in report.unhealthy_sources
                        ],
                        events_needing_intervention=report.events_needing_intervention,
                        events_stuck_pending=report.events_stuck_pending
                    )

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Health check error", error=str(e))

    async def _periodic_retry_sweep(self):
        """Re-apply failed events on a fixed interval."""
        while self.running:
            try:
                await asyncio.sleep(settings.indexer_retry_sweep_interval)
                if not self.running:
                    break
                await self.supervisor.retry_failed_events(settings.indexer_retry_batch_size)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Retry sweep error", error=str(e))


async def main():
    """Main function to run the indexer service."""
    setup_logging(settings.log_file)

    indexer = IndexerMain()

    def signal_handler(signum):
        logger.info("Received signal, shutting down", signal=signum)
        indexer.request_stop()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, signal_handler, signum)

    try:
        await indexer.initialize()
        await indexer.start()
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down")
    except Exception as e:
        logger.error("Indexer service failed", error=str(e))
        raise
    finally:
        await indexer.stop()


if __name__ == "__main__":
    asyncio.run(main())
