"""Tests for view counting, session deduplication and watch history."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
import sqlalchemy as sa

from api.database import daily_view_history, videos, view_history, view_logs
from api.settings_service import get_settings_service
from api.view_tracking import (
    InvalidProgressError,
    ViewThresholds,
    apply_session_report,
    build_session_fingerprint,
    count_view_once,
    get_or_create_view_log,
    get_view_thresholds,
    lock_view_session,
    parse_progress_payload,
    record_view_progress,
    should_count_view,
    update_daily_view_history,
    update_view_history,
)

HEADERS = {"user-agent": "Mozilla/5.0 TestBrowser", "x-forwarded-for": "10.1.2.3"}


class TestParseProgressPayload:
    """Tests for request body validation."""

    def test_valid_numbers(self):
        assert parse_progress_payload({"watchDuration": 42, "completionRate": 12.5}) == (42.0, 12.5)

    def test_missing_field(self):
        with pytest.raises(InvalidProgressError):
            parse_progress_payload({"watchDuration": 42})

    def test_strings_rejected(self):
        with pytest.raises(InvalidProgressError):
            parse_progress_payload({"watchDuration": "42", "completionRate": 10})

    def test_booleans_rejected(self):
        with pytest.raises(InvalidProgressError):
            parse_progress_payload({"watchDuration": True, "completionRate": 10})

    def test_non_object_body(self):
        with pytest.raises(InvalidProgressError):
            parse_progress_payload([1, 2])


class TestSessionFingerprint:
    """Tests for build_session_fingerprint."""

    def test_same_client_same_fingerprint(self):
        assert build_session_fingerprint(HEADERS) == build_session_fingerprint(dict(HEADERS))

    def test_different_user_agent(self):
        other = {**HEADERS, "user-agent": "curl/8.0"}
        assert build_session_fingerprint(HEADERS) != build_session_fingerprint(other)

    def test_truncated_to_64(self):
        long_headers = {"user-agent": "x" * 500}
        assert len(build_session_fingerprint(long_headers)) == 64

    def test_real_ip_fallback(self):
        a = build_session_fingerprint({"x-real-ip": "10.0.0.1", "user-agent": "ua"})
        b = build_session_fingerprint({"user-agent": "ua"})
        assert a != b


class TestShouldCountView:
    thresholds = ViewThresholds(percent=30.0, seconds=600.0, duplicate_hours=24)

    def test_percent_threshold(self):
        assert should_count_view(10, 30.0, self.thresholds) is True
        assert should_count_view(10, 29.9, self.thresholds) is False

    def test_seconds_threshold(self):
        assert should_count_view(600, 1, self.thresholds) is True
        assert should_count_view(599, 1, self.thresholds) is False


class TestViewThresholds:
    @pytest.mark.asyncio
    async def test_defaults(self, test_database):
        thresholds = await get_view_thresholds()

        assert thresholds.percent == 30.0
        assert thresholds.seconds == 600.0
        assert thresholds.duplicate_hours == 24

    @pytest.mark.asyncio
    async def test_from_settings(self, test_database):
        await get_settings_service().set("view_count_threshold_percent", 50.0)

        thresholds = await get_view_thresholds()

        assert thresholds.percent == 50.0
        assert thresholds.as_dict() == {"percent": 50.0, "seconds": 600.0, "duplicateHours": 24}


class TestViewLogs:
    """Tests for session deduplication."""

    @pytest.mark.asyncio
    async def test_reuses_log_inside_window(self, test_database, sample_video):
        now = datetime.now(timezone.utc)
        first = await get_or_create_view_log(sample_video["id"], "session-a", 24, now=now)
        second = await get_or_create_view_log(sample_video["id"], "session-a", 24, now=now + timedelta(hours=2))

        assert first["id"] == second["id"]

    @pytest.mark.asyncio
    async def test_new_log_after_window(self, test_database, sample_video):
        now = datetime.now(timezone.utc)
        first = await get_or_create_view_log(sample_video["id"], "session-a", 24, now=now)
        later = await get_or_create_view_log(sample_video["id"], "session-a", 24, now=now + timedelta(hours=25))

        assert first["id"] != later["id"]

    @pytest.mark.asyncio
    async def test_different_sessions(self, test_database, sample_video):
        a = await get_or_create_view_log(sample_video["id"], "session-a", 24)
        b = await get_or_create_view_log(sample_video["id"], "session-b", 24)

        assert a["id"] != b["id"]

    @pytest.mark.asyncio
    async def test_count_view_once(self, test_database, sample_video):
        log = await get_or_create_view_log(sample_video["id"], "session-a", 24)

        assert await count_view_once(log["id"], sample_video["id"]) is True
        assert await count_view_once(log["id"], sample_video["id"]) is False

        count = await test_database.fetch_val(
            sa.select(videos.c.view_count).where(videos.c.id == sample_video["id"])
        )
        assert count == 1


class TestHistory:
    """Tests for lifetime and daily history upserts."""

    @pytest.mark.asyncio
    async def test_view_history_keeps_maximum(self, test_database, sample_video, viewer_user):
        await update_view_history(viewer_user["id"], sample_video["id"], 120, 40)
        await update_view_history(viewer_user["id"], sample_video["id"], 60, 80)

        rows = await test_database.fetch_all(
            sa.select(view_history).where(view_history.c.user_id == viewer_user["id"])
        )
        assert len(rows) == 1
        assert rows[0]["watch_duration"] == 120
        assert rows[0]["completion_rate"] == 80

    @pytest.mark.asyncio
    async def test_daily_history_one_row_per_day(self, test_database, sample_video, viewer_user):
        day_one = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
        await update_daily_view_history(viewer_user["id"], sample_video["id"], 30, 10, day_one)
        await update_daily_view_history(viewer_user["id"], sample_video["id"], 90, 20, day_one + timedelta(hours=3))
        await update_daily_view_history(viewer_user["id"], sample_video["id"], 15, 5, day_one + timedelta(days=1))

        rows = await test_database.fetch_all(
            sa.select(daily_view_history).order_by(daily_view_history.c.view_date)
        )
        assert len(rows) == 2
        assert rows[0]["session_count"] == 2
        assert rows[0]["watch_duration"] == 90
        assert rows[0]["completion_rate"] == 20
        assert rows[1]["session_count"] == 1


class TestRecordViewProgress:
    """Tests for the full progress report flow."""

    @pytest.mark.asyncio
    async def test_unknown_video(self, test_database):
        assert await record_view_progress("missing", 10, 10, HEADERS) is None

    @pytest.mark.asyncio
    async def test_below_threshold_not_counted(self, test_database, sample_video):
        result = await record_view_progress(sample_video["video_id"], 30, 10, HEADERS)

        assert result["viewCountUpdated"] is False
        assert result["currentViewCount"] == 0
        assert result["thresholds"]["percent"] == 30.0

    @pytest.mark.asyncio
    async def test_counted_once_per_session(self, test_database, sample_video):
        first = await record_view_progress(sample_video["video_id"], 30, 35, HEADERS)
        second = await record_view_progress(sample_video["video_id"], 60, 70, HEADERS)

        assert first["viewCountUpdated"] is True
        assert first["currentViewCount"] == 1
        assert second["viewCountUpdated"] is False
        assert second["currentViewCount"] == 1

        logs = await test_database.fetch_all(sa.select(view_logs))
        assert len(logs) == 1
        # Latest report wins on the log
        assert logs[0]["completion_rate"] == 70

    @pytest.mark.asyncio
    async def test_other_session_counts_again(self, test_database, sample_video):
        await record_view_progress(sample_video["video_id"], 30, 35, HEADERS)
        result = await record_view_progress(
            sample_video["video_id"], 30, 35, {**HEADERS, "user-agent": "OtherBrowser"}
        )

        assert result["viewCountUpdated"] is True
        assert result["currentViewCount"] == 2

    @pytest.mark.asyncio
    async def test_signed_in_user_gets_history(self, test_database, sample_video, viewer_user):
        await record_view_progress(sample_video["video_id"], 45, 15, HEADERS, user_id=viewer_user["id"])

        history = await test_database.fetch_all(sa.select(view_history))
        daily = await test_database.fetch_all(sa.select(daily_view_history))
        assert len(history) == 1
        assert len(daily) == 1
        assert history[0]["watch_duration"] == 45

    @pytest.mark.asyncio
    async def test_anonymous_has_no_history(self, test_database, sample_video):
        await record_view_progress(sample_video["video_id"], 45, 15, HEADERS)

        assert await test_database.fetch_all(sa.select(view_history)) == []

    @pytest.mark.asyncio
    async def test_concurrent_first_reports_count_once(self, test_database, sample_video):
        results = await asyncio.gather(
            *[record_view_progress(sample_video["video_id"], 700, 50, HEADERS) for _ in range(5)]
        )

        assert [r["viewCountUpdated"] for r in results].count(True) == 1
        logs = await test_database.fetch_all(sa.select(view_logs))
        assert len(logs) == 1
        count = await test_database.fetch_val(
            sa.select(videos.c.view_count).where(videos.c.id == sample_video["id"])
        )
        assert count == 1

    @pytest.mark.asyncio
    async def test_concurrent_sessions_each_count(self, test_database, sample_video):
        await asyncio.gather(
            *[
                record_view_progress(sample_video["video_id"], 700, 50, {**HEADERS, "user-agent": f"Browser/{i}"})
                for i in range(3)
            ]
        )

        count = await test_database.fetch_val(
            sa.select(videos.c.view_count).where(videos.c.id == sample_video["id"])
        )
        assert count == 3


class TestSessionSerialization:
    """Tests for the transactional find-or-create and count step."""

    @pytest.mark.asyncio
    async def test_apply_session_report_counts_once(self, test_database, sample_video):
        thresholds = ViewThresholds(percent=30, seconds=600, duplicate_hours=24)

        first_id, first_counted = await apply_session_report(sample_video["id"], "session-a", 10, 40, thresholds)
        second_id, second_counted = await apply_session_report(sample_video["id"], "session-a", 20, 80, thresholds)

        assert first_id == second_id
        assert first_counted is True
        assert second_counted is False

    @pytest.mark.asyncio
    async def test_locked_database_is_retried(self, test_database, sample_video):
        thresholds = ViewThresholds(percent=30, seconds=600, duplicate_hours=24)
        real_lock = lock_view_session
        calls = []

        async def flaky_lock(video_pk, session_id):
            calls.append(session_id)
            if len(calls) == 1:
                raise RuntimeError("database is locked")
            await real_lock(video_pk, session_id)

        with patch("api.view_tracking.lock_view_session", flaky_lock), patch("api.db_retry.asyncio.sleep", AsyncMock()):
            _, counted = await apply_session_report(sample_video["id"], "session-a", 10, 40, thresholds)

        assert len(calls) == 2
        assert counted is True
        assert len(await test_database.fetch_all(sa.select(view_logs))) == 1

    @pytest.mark.asyncio
    async def test_postgres_takes_advisory_lock(self):
        with patch("api.view_tracking.is_postgres", return_value=True), patch(
            "api.view_tracking.database"
        ) as mock_database:
            mock_database.fetch_val = AsyncMock(return_value=None)
            await lock_view_session(7, "session-a")

        query = mock_database.fetch_val.call_args.args[0]
        assert "pg_advisory_xact_lock" in str(query)
        assert "hashtext" in str(query)

    @pytest.mark.asyncio
    async def test_sqlite_takes_no_lock(self):
        with patch("api.view_tracking.database") as mock_database:
            mock_database.fetch_val = AsyncMock()
            await lock_view_session(7, "session-a")

        mock_database.fetch_val.assert_not_called()
