"""Tests for view history retention cleanup."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
import sqlalchemy as sa

from api.database import view_history
from api.settings_service import get_settings_service
from api.view_history_cleanup import (
    ADMIN_PROFILE,
    CleanupDisabledError,
    CleanupProfile,
    cleanup_view_history,
    compute_cutoff,
    count_expired,
    get_cleanup_settings,
    get_cleanup_status,
    preview_cleanup,
    run_admin_cleanup,
    run_scheduled_cleanup,
)

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def add_history(test_database):
    async def add(user_id: int, video_pk: int, days_ago: float):
        watched = NOW - timedelta(days=days_ago)
        await test_database.execute(
            view_history.insert().values(
                user_id=user_id,
                video_id=video_pk,
                watch_duration=60,
                completion_rate=50,
                last_watched_at=watched,
                created_at=watched,
            )
        )

    return add


async def _remaining_ids(database):
    rows = await database.fetch_all(sa.select(view_history.c.id))
    return len(rows)


class TestCleanupSettings:
    @pytest.mark.asyncio
    async def test_defaults(self, test_database):
        settings = await get_cleanup_settings()

        assert settings.enabled is True
        assert settings.retention_days == 1825
        assert settings.batch_size == 1000

    @pytest.mark.asyncio
    async def test_only_explicit_false_disables(self, test_database):
        await get_settings_service().set("view_history_cleanup_enabled", False)

        assert (await get_cleanup_settings()).enabled is False

    def test_compute_cutoff(self):
        assert compute_cutoff(30, NOW) == NOW - timedelta(days=30)


class TestCleanupBatches:
    """Tests for the batch delete loop."""

    @pytest.mark.asyncio
    async def test_deletes_only_rows_before_cutoff(self, test_database, sample_video, make_user, add_history):
        for i in range(5):
            user = make_user()
            await add_history(user["id"], sample_video["id"], 40 + i)
        keeper = make_user()
        await add_history(keeper["id"], sample_video["id"], 5)

        no_pause = CleanupProfile(max_deletes=None, max_batches=None, sleep_every=0, sleep_seconds=0)
        result = await cleanup_view_history(compute_cutoff(30, NOW), batch_size=2, profile=no_pause)

        assert result.deleted_count == 5
        assert result.total_batches == 3
        assert result.remaining_count == 0
        assert await _remaining_ids(test_database) == 1

    @pytest.mark.asyncio
    async def test_max_deletes_cap(self, test_database, sample_video, make_user, add_history):
        for i in range(5):
            await add_history(make_user()["id"], sample_video["id"], 100 + i)

        capped = CleanupProfile(max_deletes=3, max_batches=None, sleep_every=0, sleep_seconds=0)
        result = await cleanup_view_history(compute_cutoff(30, NOW), batch_size=2, profile=capped)

        assert result.deleted_count == 3
        assert result.remaining_count == 2

    @pytest.mark.asyncio
    async def test_max_batches_cap(self, test_database, sample_video, make_user, add_history):
        for i in range(5):
            await add_history(make_user()["id"], sample_video["id"], 100 + i)

        capped = CleanupProfile(max_deletes=None, max_batches=1, sleep_every=0, sleep_seconds=0)
        result = await cleanup_view_history(compute_cutoff(30, NOW), batch_size=2, profile=capped)

        assert result.total_batches == 1
        assert result.deleted_count == 2

    @pytest.mark.asyncio
    async def test_oldest_deleted_first(self, test_database, sample_video, make_user, add_history):
        newer = make_user()
        older = make_user()
        await add_history(newer["id"], sample_video["id"], 50)
        await add_history(older["id"], sample_video["id"], 90)

        capped = CleanupProfile(max_deletes=1, max_batches=None, sleep_every=0, sleep_seconds=0)
        await cleanup_view_history(compute_cutoff(30, NOW), batch_size=10, profile=capped)

        rows = await test_database.fetch_all(sa.select(view_history.c.user_id))
        assert [row["user_id"] for row in rows] == [newer["id"]]

    @pytest.mark.asyncio
    async def test_pauses_between_batches(self, test_database, sample_video, make_user, add_history):
        for i in range(4):
            await add_history(make_user()["id"], sample_video["id"], 100 + i)

        pacing = CleanupProfile(max_deletes=None, max_batches=None, sleep_every=2, sleep_seconds=0.5)
        with patch("api.view_history_cleanup.asyncio.sleep") as mock_sleep:
            await cleanup_view_history(compute_cutoff(30, NOW), batch_size=1, profile=pacing)

        assert mock_sleep.await_count == 2
        mock_sleep.assert_awaited_with(0.5)


class TestEntryPoints:
    """Tests for cron, admin, status and preview."""

    @pytest.mark.asyncio
    async def test_scheduled_cleanup_skipped_when_disabled(self, test_database):
        await get_settings_service().set("view_history_cleanup_enabled", False)

        result = await run_scheduled_cleanup(NOW)

        assert result["skipped"] is True
        assert result["deletedCount"] == 0

    @pytest.mark.asyncio
    async def test_scheduled_cleanup_nothing_pending(self, test_database):
        result = await run_scheduled_cleanup(NOW)

        assert result["skipped"] is False
        assert result["message"] == "削除対象の視聴履歴はありません"
        assert result["retentionDays"] == 1825

    @pytest.mark.asyncio
    async def test_scheduled_cleanup_deletes(self, test_database, sample_video, viewer_user, add_history):
        await get_settings_service().set("view_history_retention_days", 30)
        await add_history(viewer_user["id"], sample_video["id"], 45)

        result = await run_scheduled_cleanup(NOW)

        assert result["deletedCount"] == 1
        assert result["remainingCount"] == 0
        assert result["cutoffDate"].startswith("2026-05-02")

    @pytest.mark.asyncio
    async def test_admin_cleanup_disabled_raises(self, test_database):
        await get_settings_service().set("view_history_cleanup_enabled", False)

        with pytest.raises(CleanupDisabledError):
            await run_admin_cleanup(NOW)

    @pytest.mark.asyncio
    async def test_admin_cleanup_uses_uncapped_profile(self, test_database, sample_video, viewer_user, add_history):
        await get_settings_service().set("view_history_retention_days", 30)
        await add_history(viewer_user["id"], sample_video["id"], 45)

        with patch("api.view_history_cleanup.cleanup_view_history", wraps=cleanup_view_history) as spy:
            result = await run_admin_cleanup(NOW)

        assert spy.call_args.args[2] is ADMIN_PROFILE
        assert result["deletedCount"] == 1
        assert result["message"] == "視聴履歴のクリーンアップが完了しました"

    @pytest.mark.asyncio
    async def test_status_counts_pending(self, test_database, sample_video, make_user, add_history):
        await get_settings_service().set("view_history_retention_days", 30)
        await add_history(make_user()["id"], sample_video["id"], 45)
        await add_history(make_user()["id"], sample_video["id"], 10)

        status = await get_cleanup_status(NOW)

        assert status["cleanupEnabled"] is True
        assert status["pendingCleanupCount"] == 1
        assert await count_expired(compute_cutoff(30, NOW)) == 1

    @pytest.mark.asyncio
    async def test_preview_groups_by_user(self, test_database, make_video, curator_user, viewer_user, add_history):
        await get_settings_service().set("view_history_retention_days", 30)
        first = make_video(curator_user)
        second = make_video(curator_user)
        await add_history(viewer_user["id"], first["id"], 60)
        await add_history(viewer_user["id"], second["id"], 40)
        await add_history(curator_user["id"], first["id"], 5)

        preview = await preview_cleanup(NOW)

        assert preview["targetCount"] == 2
        assert preview["userStats"] == [
            {"username": "viewer", "displayName": "Viewer", "deleteCount": 2}
        ]
        assert preview["oldestRecordDate"].startswith("2026-04-02")
        assert preview["newestTargetDate"].startswith("2026-04-22")

    @pytest.mark.asyncio
    async def test_preview_empty(self, test_database):
        preview = await preview_cleanup(NOW)

        assert preview["targetCount"] == 0
        assert preview["oldestRecordDate"] is None
        assert preview["userStats"] == []
