"""Delivery loop: drains the pending batch into the collector."""

import asyncio
import logging

import aiohttp

from ingestor.batch import PendingBatch
from ingestor.collector import CollectorClient
from ingestor.config import NodeCredentials
from ingestor.errors import DeliveryError
from ingestor.intervals import next_delay
from ingestor.models import RetrievalRecord, record_to_payload, record_to_point_fields

logger = logging.getLogger(__name__)


class DeliveryLoop:
    """Periodically submits every pending record in one request.

    The batch is swapped out before the request is awaited, so records the
    ingestion loop appends during the network wait land in the fresh batch.
    On failure the in-flight records go back in front of them.
    """

    def __init__(
        self,
        batch: PendingBatch,
        client: CollectorClient,
        credentials: NodeCredentials,
        interval: float = 60.0,
        floor_interval: float = 10.0,
        interval_step: float = 0.001,
    ):
        self._batch = batch
        self._client = client
        self._credentials = credentials
        self._interval = interval
        self._floor_interval = floor_interval
        self._interval_step = interval_step
        self._point_tasks: set[asyncio.Task] = set()
        self.delivered = 0
        self.failed_attempts = 0

    def build_body(self, records: list[RetrievalRecord]) -> dict:
        return {
            "nodeId": self._credentials.node_id,
            "filAddress": self._credentials.wallet_address,
            "bandwidthLogs": [record_to_payload(r) for r in records],
        }

    async def submit_once(self) -> int:
        """Run one delivery attempt. Returns the number of records delivered."""
        in_flight = self._batch.drain()
        if not in_flight:
            return 0

        if self._client.points_enabled:
            self._spawn_point_writes(in_flight)

        delivered = False
        try:
            await self._client.submit_retrievals(
                self.build_body(in_flight), self._credentials.token
            )
            delivered = True
        except DeliveryError as exc:
            self.failed_attempts += 1
            logger.warning(
                "Failed to submit %d pending retrievals, will retry: %s",
                len(in_flight), exc,
            )
        finally:
            if not delivered:
                self._batch.restore(in_flight)

        if not delivered:
            return 0
        self.delivered += len(in_flight)
        logger.info(
            "Submitted pending %d retrievals to wallet %s",
            len(in_flight), self._credentials.wallet_address,
        )
        return len(in_flight)

    def _spawn_point_writes(self, records: list[RetrievalRecord]):
        task = asyncio.create_task(self._write_points(records))
        self._point_tasks.add(task)
        task.add_done_callback(self._point_tasks.discard)

    async def _write_points(self, records: list[RetrievalRecord]):
        """Best-effort time-series writes, one point per record."""
        tags = {"spdy": self._credentials.node_id, "method": "GET", "type": 1}
        results = await asyncio.gather(
            *(self._client.write_point(record_to_point_fields(r), tags) for r in records),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, Exception)]
        for err in errors:
            if not isinstance(err, (DeliveryError, aiohttp.ClientError, asyncio.TimeoutError)):
                logger.error("Unexpected error writing point", exc_info=err)
        if errors:
            logger.warning(
                "Failed to write %d of %d points: %s", len(errors), len(records), errors[0]
            )
        else:
            logger.debug("Wrote %d points", len(records))

    async def run(self):
        """Deliver forever on the adaptive interval."""
        while True:
            handled = 0
            try:
                handled = await self.submit_once()
            except Exception:
                logger.exception("Delivery tick failed")
            await asyncio.sleep(
                next_delay(self._interval, self._floor_interval, handled, self._interval_step)
            )

    async def wait_for_points(self):
        """Wait for outstanding time-series writes (used by tests and shutdown)."""
        if self._point_tasks:
            await asyncio.gather(*self._point_tasks, return_exceptions=True)
