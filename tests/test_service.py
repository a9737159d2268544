"""Tests for service wiring and host stats."""

import asyncio

import pytest

from ingestor.config import Config, NodeCredentials
from ingestor.models import RetrievalRecord
from ingestor.service import IngestorService
from ingestor.system import collect_stats

GOOD_LINE = "addr=1.2.3.4&&b=100&&r=/ipfs/bafyABC/foo.txt&&s=200&&ucs=HIT"


class FakeCollector:
    points_enabled = False

    def __init__(self):
        self.submissions = []

    async def submit_retrievals(self, body, token):
        self.submissions.append(body)


def _service(tmp_path, log_name="access.log", **overrides) -> IngestorService:
    config = Config(
        log_file=str(tmp_path / log_name),
        log_ingestor_url="http://collector.invalid/submit",
        fil_wallet_address="f1wallet",
        parse_interval=0.02,
        parse_floor_interval=0.01,
        submit_interval=0.05,
        submit_floor_interval=0.01,
        **overrides,
    )
    credentials = NodeCredentials(node_id="node-1", wallet_address="f1wallet")
    service = IngestorService(config, credentials, session=None)
    service.client = FakeCollector()
    service.delivery._client = service.client
    return service


class TestIngestorService:
    @pytest.mark.asyncio
    async def test_end_to_end(self, tmp_path):
        (tmp_path / "access.log").write_text(GOOD_LINE + "\n")
        service = _service(tmp_path)
        await service.start()

        for _ in range(100):
            if service.client.submissions:
                break
            await asyncio.sleep(0.02)
        await service.stop()

        [body] = service.client.submissions
        assert [log["cid"] for log in body["bandwidthLogs"]] == ["bafyABC"]
        assert len(service.batch) == 0

    @pytest.mark.asyncio
    async def test_absent_log_only_runs_delivery(self, tmp_path):
        service = _service(tmp_path, log_name="missing.log")
        await service.start()

        names = {task.get_name() for task in service._tasks}
        assert names == {"delivery"}
        await service.stop()

    @pytest.mark.asyncio
    async def test_max_pending_applied(self, tmp_path):
        service = _service(tmp_path, max_pending=5)
        service.batch.append(RetrievalRecord(content_id=f"cid{i}", file_path="") for i in range(7))
        assert len(service.batch) == 5
        assert service.batch.dropped == 2


class TestSystemStats:
    def test_collect_stats_shape(self):
        stats = collect_stats()
        assert set(stats) == {"memoryStats", "diskStats", "cpuStats", "nicStats"}
        assert stats["memoryStats"]["totalMemoryKB"] > 0
        assert stats["cpuStats"]["numCPUs"] >= 1
