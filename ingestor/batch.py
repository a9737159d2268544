"""Pending batch: records parsed but not yet confirmed delivered."""

import logging
from typing import Iterable

from ingestor.models import RetrievalRecord

logger = logging.getLogger(__name__)


class PendingBatch:
    """Ordered buffer shared by the ingestion (producer) and delivery
    (consumer) loops.

    Both loops run on one event loop, so none of these methods may await:
    a drain or restore always completes before the other loop can run.
    """

    def __init__(self, max_size: int = 0):
        self._max_size = max_size
        self._records: list[RetrievalRecord] = []
        self._dropped = 0

    def append(self, records: Iterable[RetrievalRecord]) -> int:
        """Append records in file order. Returns the number added."""
        before = len(self._records)
        self._records.extend(records)
        added = len(self._records) - before
        self._enforce_limit()
        return added

    def drain(self) -> list[RetrievalRecord]:
        """Swap the whole batch out and leave an empty one in its place."""
        in_flight, self._records = self._records, []
        return in_flight

    def restore(self, in_flight: list[RetrievalRecord]):
        """Put a failed in-flight batch back ahead of newer arrivals."""
        if not in_flight:
            return
        self._records = in_flight + self._records
        self._enforce_limit()

    def _enforce_limit(self):
        if not self._max_size or len(self._records) <= self._max_size:
            return
        overflow = len(self._records) - self._max_size
        del self._records[:overflow]
        self._dropped += overflow
        logger.warning(
            "Pending batch over limit of %d, dropped %d oldest record(s)",
            self._max_size, overflow,
        )

    @property
    def dropped(self) -> int:
        """Records discarded by the size limit since startup."""
        return self._dropped

    def snapshot(self) -> list[RetrievalRecord]:
        return list(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __bool__(self) -> bool:
        return bool(self._records)
