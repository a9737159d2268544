"""Tests for the ingestion loop and adaptive intervals."""

import asyncio
import os

import pytest

from ingestor.batch import PendingBatch
from ingestor.errors import SourceFileError
from ingestor.ingestion import IngestionLoop, IngestionState
from ingestor.intervals import next_delay
from ingestor.reader import LogFileCursor

SENTINEL = "bafyTEST"
GOOD_LINE = "addr=1.2.3.4&&b=100&&r=/ipfs/bafyABC/foo.txt&&s=200&&ucs=HIT&&args=clientId=xyz"
TEST_LINE = "addr=1.2.3.4&&b=100&&r=/ipfs/bafyTEST/foo.txt&&s=200&&ucs=HIT"


def _make_loop(path, batch=None, **kwargs) -> tuple[IngestionLoop, PendingBatch, LogFileCursor]:
    batch = batch if batch is not None else PendingBatch()
    cursor = LogFileCursor(str(path))
    loop = IngestionLoop(cursor, batch, testing_cid=SENTINEL, **kwargs)
    return loop, batch, cursor


class TestNextDelay:
    def test_idle_uses_base(self):
        assert next_delay(10.0, 1.0, 0) == 10.0

    def test_busy_shortens(self):
        assert next_delay(10.0, 1.0, 2000) == pytest.approx(8.0)

    def test_never_below_floor(self):
        assert next_delay(10.0, 1.0, 1_000_000) == 1.0

    def test_custom_step(self):
        assert next_delay(60.0, 10.0, 5, step=1.0) == 55.0


class TestStart:
    @pytest.mark.asyncio
    async def test_absent_file_stays_idle(self, tmp_path):
        loop, batch, cursor = _make_loop(tmp_path / "missing.log")
        assert await loop.start() is False
        assert loop.state is IngestionState.IDLE
        # run() returns immediately instead of polling
        await asyncio.wait_for(loop.run(), timeout=1.0)
        assert len(batch) == 0

    @pytest.mark.asyncio
    async def test_present_file_starts_tailing(self, tmp_path):
        f = tmp_path / "access.log"
        f.write_text("")
        loop, _, cursor = _make_loop(f)
        assert await loop.start() is True
        assert loop.state is IngestionState.TAILING
        await cursor.close()


class TestTick:
    @pytest.mark.asyncio
    async def test_sentinel_line_adds_nothing(self, tmp_path):
        f = tmp_path / "access.log"
        f.write_text(TEST_LINE + "\n")
        loop, batch, cursor = _make_loop(f)
        await loop.start()

        assert await loop.tick() == 0
        assert len(batch) == 0
        await cursor.close()

    @pytest.mark.asyncio
    async def test_retrieval_line_adds_record(self, tmp_path):
        f = tmp_path / "access.log"
        f.write_text(GOOD_LINE + "\n")
        loop, batch, cursor = _make_loop(f)
        await loop.start()

        assert await loop.tick() == 1
        [record] = batch.snapshot()
        assert record.content_id == "bafyABC"
        assert record.file_path == "foo.txt"
        assert record.cache_hit is True
        assert record.client_id == "xyz"
        await cursor.close()

    @pytest.mark.asyncio
    async def test_mixed_lines_in_file_order(self, tmp_path):
        f = tmp_path / "access.log"
        f.write_text(
            "r=/ipfs/first/a&&s=200\n"
            "r=/ipfs/skip/b&&s=404\n"
            "r=/health&&s=200\n"
            + TEST_LINE + "\n"
            "r=/ipfs/second/c&&s=200\n"
        )
        loop, batch, cursor = _make_loop(f)
        await loop.start()

        assert await loop.tick() == 2
        assert [r.content_id for r in batch.snapshot()] == ["first", "second"]
        assert loop.total_parsed == 2
        await cursor.close()

    @pytest.mark.asyncio
    async def test_empty_reads_truncate_once(self, tmp_path):
        f = tmp_path / "access.log"
        f.write_text(GOOD_LINE + "\n")
        loop, batch, cursor = _make_loop(f)
        await loop.start()

        assert await loop.tick() == 1
        first_handle = cursor._file

        # First empty read follows a non-empty one: truncate + reopen
        assert await loop.tick() == 0
        assert os.path.getsize(f) == 0
        assert cursor._file is not first_handle
        fresh_handle = cursor._file

        # Second empty read: nothing to reclaim
        assert await loop.tick() == 0
        assert cursor._file is fresh_handle
        assert len(batch) == 1
        await cursor.close()

    @pytest.mark.asyncio
    async def test_empty_read_on_untouched_file_never_truncates(self, tmp_path):
        f = tmp_path / "access.log"
        f.write_text("")
        loop, batch, cursor = _make_loop(f)
        await loop.start()

        assert await loop.tick() == 0
        assert len(batch) == 0
        assert not cursor.has_read
        await cursor.close()

    @pytest.mark.asyncio
    async def test_new_lines_after_truncation(self, tmp_path):
        f = tmp_path / "access.log"
        f.write_text("r=/ipfs/one/x&&s=200\n")
        loop, batch, cursor = _make_loop(f)
        await loop.start()

        await loop.tick()
        await loop.tick()  # truncates
        with open(f, "a", encoding="utf-8") as fh:
            fh.write("r=/ipfs/two/y&&s=200\n")

        assert await loop.tick() == 1
        assert [r.content_id for r in batch.snapshot()] == ["one", "two"]
        await cursor.close()

    @pytest.mark.asyncio
    async def test_vanished_file_raises_source_error(self, tmp_path):
        f = tmp_path / "access.log"
        f.write_text("r=/ipfs/one/x&&s=200\n")
        loop, _, cursor = _make_loop(f)
        await loop.start()
        await loop.tick()

        os.remove(f)
        await loop.tick()  # truncate + reopen finds no file
        with pytest.raises(SourceFileError):
            await loop.tick()
        await cursor.close()


class TestRun:
    @pytest.mark.asyncio
    async def test_run_polls_until_cancelled(self, tmp_path):
        f = tmp_path / "access.log"
        f.write_text("")
        loop, batch, cursor = _make_loop(f, interval=0.02, floor_interval=0.01)
        await loop.start()

        task = asyncio.create_task(loop.run())
        await asyncio.sleep(0.05)
        with open(f, "a", encoding="utf-8") as fh:
            fh.write(GOOD_LINE + "\n")
        for _ in range(100):
            if len(batch):
                break
            await asyncio.sleep(0.02)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(batch) == 1
        await cursor.close()

    @pytest.mark.asyncio
    async def test_run_survives_io_errors(self, tmp_path):
        f = tmp_path / "access.log"
        f.write_text("")
        loop, _, cursor = _make_loop(f, interval=0.01, floor_interval=0.01)
        await loop.start()

        calls = 0

        async def failing_tick():
            nonlocal calls
            calls += 1
            raise SourceFileError("disk on fire")

        loop.tick = failing_tick
        task = asyncio.create_task(loop.run())
        await asyncio.sleep(0.1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert calls > 1
        await cursor.close()

    @pytest.mark.asyncio
    async def test_run_survives_unexpected_errors(self, tmp_path):
        f = tmp_path / "access.log"
        f.write_text("")
        loop, _, cursor = _make_loop(f, interval=0.01, floor_interval=0.01)
        await loop.start()

        calls = 0

        async def broken_tick():
            nonlocal calls
            calls += 1
            raise KeyError("surprise")

        loop.tick = broken_tick
        task = asyncio.create_task(loop.run())
        await asyncio.sleep(0.1)
        assert not task.done()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert calls > 1
        await cursor.close()
