"""Tests for the scheduler worker loop."""

from unittest.mock import AsyncMock, patch

import pytest

from api.scheduled_publisher import PublishStats
from worker.scheduler import SchedulerWorker


@pytest.fixture
def worker():
    w = SchedulerWorker(publish_interval=60, cleanup_interval=3600)
    w.run_publish = AsyncMock()
    w.run_cleanup = AsyncMock()
    return w


class TestTick:
    """Tests for interval bookkeeping."""

    @pytest.mark.asyncio
    async def test_first_tick_runs_both(self, worker):
        await worker.tick(now=1000.0)

        worker.run_publish.assert_awaited_once()
        worker.run_cleanup.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_jobs_follow_their_own_intervals(self, worker):
        await worker.tick(now=1000.0)
        await worker.tick(now=1030.0)
        await worker.tick(now=1060.0)
        await worker.tick(now=1120.0)

        assert worker.run_publish.await_count == 3
        assert worker.run_cleanup.await_count == 1

        await worker.tick(now=4600.0)
        assert worker.run_cleanup.await_count == 2

    @pytest.mark.asyncio
    async def test_failing_job_does_not_stop_the_other(self, worker):
        worker.run_publish.side_effect = RuntimeError("database is down")

        await worker.tick(now=1000.0)

        worker.run_cleanup.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_job_waits_for_next_interval(self, worker):
        worker.run_publish.side_effect = RuntimeError("database is down")

        await worker.tick(now=1000.0)
        await worker.tick(now=1010.0)

        assert worker.run_publish.await_count == 1

    def test_due(self, worker):
        assert worker._due(None, 60, 0.0) is True
        assert worker._due(100.0, 60, 159.9) is False
        assert worker._due(100.0, 60, 160.0) is True


class TestJobs:
    @pytest.mark.asyncio
    async def test_run_publish_calls_publisher(self):
        stats = PublishStats(publishedVideos=2)
        with patch("worker.scheduler.run_scheduled_publishing", AsyncMock(return_value=stats)) as mock_publish:
            await SchedulerWorker().run_publish()

        mock_publish.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_run_cleanup_calls_cleanup(self):
        result = {"message": "削除対象の視聴履歴はありません", "deletedCount": 0}
        with patch("worker.scheduler.run_scheduled_cleanup", AsyncMock(return_value=result)) as mock_cleanup:
            await SchedulerWorker().run_cleanup()

        mock_cleanup.assert_awaited_once()


class TestShutdown:
    def test_handle_shutdown_stops_loop(self):
        worker = SchedulerWorker()
        worker.running = True

        worker._handle_shutdown()

        assert worker.running is False

    def test_default_intervals_from_config(self):
        from config import SCHEDULER_CLEANUP_INTERVAL, SCHEDULER_PUBLISH_INTERVAL

        worker = SchedulerWorker()

        assert worker.publish_interval == SCHEDULER_PUBLISH_INTERVAL
        assert worker.cleanup_interval == SCHEDULER_CLEANUP_INTERVAL
