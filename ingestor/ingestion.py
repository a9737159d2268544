"""Ingestion loop: tails the access log into the pending batch."""

import asyncio
import logging
from enum import Enum

from ingestor.batch import PendingBatch
from ingestor.errors import SourceFileError
from ingestor.intervals import next_delay
from ingestor.parser import parse_lines
from ingestor.reader import LogFileCursor

logger = logging.getLogger(__name__)


class IngestionState(Enum):
    IDLE = "idle"
    TAILING = "tailing"


class IngestionLoop:
    """Reads, parses and batches new access-log lines on each tick.

    - IDLE: the log did not exist at startup; nothing is ever read.
    - TAILING: the handle is open and polled every tick. There is no way
      back to IDLE; if the file goes missing the ticks fail and are logged.
    """

    def __init__(
        self,
        cursor: LogFileCursor,
        batch: PendingBatch,
        testing_cid: str = "",
        interval: float = 10.0,
        floor_interval: float = 1.0,
        interval_step: float = 0.001,
    ):
        self._cursor = cursor
        self._batch = batch
        self._testing_cid = testing_cid
        self._interval = interval
        self._floor_interval = floor_interval
        self._interval_step = interval_step
        self.state = IngestionState.IDLE
        self.total_parsed = 0

    async def start(self) -> bool:
        """Open the log if it is present. Returns True when tailing."""
        try:
            opened = await self._cursor.ensure_open()
        except SourceFileError as exc:
            logger.warning("Not tailing: %s", exc)
            return False
        if opened:
            logger.info("Reading nginx log file %s", self._cursor.path)
            self.state = IngestionState.TAILING
        else:
            logger.warning("Log file %s not found, ingestion disabled", self._cursor.path)
        return opened

    async def tick(self) -> int:
        """Process everything appended since the last tick.

        Returns the number of records added to the batch.
        """
        data = await self._cursor.read_available()
        if not data:
            await self._cursor.reclaim_if_idle()
            return 0

        lines = self._cursor.split_lines(data)
        records = parse_lines(lines, self._testing_cid)
        self._batch.append(records)
        self.total_parsed += len(records)

        if records:
            hits = sum(1 for r in records if r.cache_hit)
            logger.debug(
                "Parsed %d valid retrievals with hit rate of %.0f%%",
                len(records), hits / len(records) * 100,
            )
        return len(records)

    async def run(self):
        """Tick forever on the adaptive interval. Returns at once when IDLE."""
        if self.state is not IngestionState.TAILING:
            return
        while True:
            parsed = 0
            try:
                parsed = await self.tick()
            except SourceFileError as exc:
                logger.warning("Ingestion tick failed: %s", exc)
            except Exception:
                logger.exception("Unexpected error in ingestion tick")
            await asyncio.sleep(
                next_delay(self._interval, self._floor_interval, parsed, self._interval_step)
            )
