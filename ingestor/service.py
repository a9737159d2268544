"""Wires the reader, batch, ingestion and delivery loops together."""

import asyncio
import logging

import aiohttp

from ingestor.batch import PendingBatch
from ingestor.collector import CollectorClient
from ingestor.config import Config, NodeCredentials
from ingestor.delivery import DeliveryLoop
from ingestor.ingestion import IngestionLoop
from ingestor.reader import LogFileCursor

logger = logging.getLogger(__name__)


class IngestorService:
    """Runs the ingestion and delivery loops as two tasks on the current
    event loop. They share one PendingBatch and nothing else."""

    def __init__(
        self,
        config: Config,
        credentials: NodeCredentials,
        session: aiohttp.ClientSession,
    ):
        self._config = config
        self.batch = PendingBatch(max_size=config.max_pending)
        self.cursor = LogFileCursor(config.log_file, max_size=config.max_log_size)
        self.client = CollectorClient(
            session,
            config.log_ingestor_url,
            influxdb_addr=config.influxdb_addr,
            influxdb_database=config.influxdb_database,
            submit_timeout=config.submit_timeout,
        )
        self.ingestion = IngestionLoop(
            self.cursor,
            self.batch,
            testing_cid=config.testing_cid,
            interval=config.parse_interval,
            floor_interval=config.parse_floor_interval,
            interval_step=config.interval_step,
        )
        self.delivery = DeliveryLoop(
            self.batch,
            self.client,
            credentials,
            interval=config.submit_interval,
            floor_interval=config.submit_floor_interval,
            interval_step=config.interval_step,
        )
        self._tasks: list[asyncio.Task] = []

    async def start(self):
        """Open the log if present and start both loops."""
        if await self.ingestion.start():
            self._tasks.append(asyncio.create_task(self.ingestion.run(), name="ingestion"))
        self._tasks.append(asyncio.create_task(self.delivery.run(), name="delivery"))

    async def stop(self):
        """Cancel both loops. Records still pending are lost."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        await self.delivery.wait_for_points()
        await self.cursor.close()
        if self.batch:
            logger.warning("Exiting with %d undelivered retrievals", len(self.batch))
