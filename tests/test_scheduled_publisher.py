"""Tests for scheduled publish/unpublish."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
import sqlalchemy as sa

from api import scheduled_publisher
from api.database import posts, videos
from api.enums import PostType, Visibility
from api.scheduled_publisher import (
    PUBLISH_POST,
    PUBLISH_VIDEO,
    PublishStats,
    ScheduledItem,
    ScheduleValidationError,
    get_due_items,
    publish_video,
    run_scheduled_publishing,
    validate_schedule,
)

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


async def _video_visibility(database, video_pk):
    return await database.fetch_val(sa.select(videos.c.visibility).where(videos.c.id == video_pk))


async def _post_visibility(database, post_pk):
    return await database.fetch_val(sa.select(posts.c.visibility).where(posts.c.id == post_pk))


def _draft(publish_at):
    return {
        "visibility": Visibility.DRAFT.value,
        "is_scheduled": True,
        "scheduled_publish_at": publish_at,
        "published_at": None,
    }


class TestValidateSchedule:
    """Tests for schedule validation messages."""

    def test_future_times_pass(self):
        validate_schedule(NOW + timedelta(hours=1), NOW + timedelta(hours=2), now=NOW)
        validate_schedule(None, None, now=NOW)

    def test_publish_in_past(self):
        with pytest.raises(ScheduleValidationError, match="予約投稿時刻は現在時刻より後"):
            validate_schedule(NOW - timedelta(minutes=1), None, now=NOW)

    def test_unpublish_in_past(self):
        with pytest.raises(ScheduleValidationError, match="予約非公開時刻は現在時刻より後"):
            validate_schedule(None, NOW, now=NOW)

    def test_unpublish_before_publish(self):
        with pytest.raises(ScheduleValidationError, match="予約投稿時刻より後"):
            validate_schedule(NOW + timedelta(hours=2), NOW + timedelta(hours=1), now=NOW)

    def test_naive_times_are_utc(self):
        naive_future = (NOW + timedelta(hours=1)).replace(tzinfo=None)
        validate_schedule(naive_future, None, now=NOW)


class TestPublishStats:
    def test_processed_and_dict(self):
        stats = PublishStats(publishedVideos=2, unpublishedPosts=1, errorCount=3)

        assert stats.processed == 3
        assert stats.as_dict() == {
            "publishedVideos": 2,
            "publishedPosts": 0,
            "unpublishedVideos": 0,
            "unpublishedPosts": 1,
            "errorCount": 3,
        }


class TestDueItems:
    @pytest.mark.asyncio
    async def test_only_due_items_in_time_order(self, test_database, make_video, curator_user):
        later = make_video(curator_user, **_draft(NOW - timedelta(minutes=5)))
        earlier = make_video(curator_user, **_draft(NOW - timedelta(hours=1)))
        make_video(curator_user, **_draft(NOW + timedelta(hours=1)))

        items = await get_due_items(NOW)

        video_items = [item for item in items if item.kind == PUBLISH_VIDEO]
        assert [item.id for item in video_items] == [earlier["id"], later["id"]]
        assert {item.kind for item in items} == {PUBLISH_VIDEO, PUBLISH_POST}

    @pytest.mark.asyncio
    async def test_unscheduled_draft_is_ignored(self, test_database, make_video, curator_user):
        make_video(
            curator_user,
            visibility=Visibility.DRAFT.value,
            is_scheduled=False,
            scheduled_publish_at=NOW - timedelta(hours=1),
        )

        assert await get_due_items(NOW) == []


class TestRunScheduledPublishing:
    """Tests for the full publishing pass."""

    @pytest.mark.asyncio
    async def test_publishes_due_video_and_post(self, test_database, make_video, curator_user):
        video = make_video(curator_user, **_draft(NOW - timedelta(minutes=1)))

        stats = await run_scheduled_publishing(NOW, item_delay=0)

        assert stats.publishedVideos == 1
        assert stats.publishedPosts == 1
        assert stats.errorCount == 0
        row = await test_database.fetch_one(sa.select(videos).where(videos.c.id == video["id"]))
        assert row["visibility"] == Visibility.PUBLIC.value
        assert row["is_scheduled"] is False
        assert row["scheduled_publish_at"] is None
        assert row["published_at"] is not None

    @pytest.mark.asyncio
    async def test_future_schedule_untouched(self, test_database, make_video, curator_user):
        video = make_video(curator_user, **_draft(NOW + timedelta(days=1)))

        stats = await run_scheduled_publishing(NOW, item_delay=0)

        assert stats.processed == 0
        assert await _video_visibility(test_database, video["id"]) == Visibility.DRAFT.value

    @pytest.mark.asyncio
    async def test_post_publish_cascades_to_video(self, test_database, make_video, curator_user):
        # Only the post carries the schedule; the video is a plain draft
        video = make_video(
            curator_user,
            visibility=Visibility.DRAFT.value,
            published_at=None,
            post_overrides={"is_scheduled": True, "scheduled_publish_at": NOW - timedelta(minutes=1)},
        )

        stats = await run_scheduled_publishing(NOW, item_delay=0)

        assert stats.publishedPosts == 1
        assert stats.publishedVideos == 0
        assert await _post_visibility(test_database, video["post_pk"]) == Visibility.PUBLIC.value
        assert await _video_visibility(test_database, video["id"]) == Visibility.PUBLIC.value

    @pytest.mark.asyncio
    async def test_unpublish_due_video(self, test_database, make_video, curator_user):
        video = make_video(
            curator_user,
            scheduled_unpublish_at=NOW - timedelta(minutes=1),
            post_overrides={"scheduled_unpublish_at": None},
        )

        stats = await run_scheduled_publishing(NOW, item_delay=0)

        assert stats.unpublishedVideos == 1
        assert await _video_visibility(test_database, video["id"]) == Visibility.PRIVATE.value
        # The post had no schedule of its own
        assert await _post_visibility(test_database, video["post_pk"]) == Visibility.PUBLIC.value

    @pytest.mark.asyncio
    async def test_post_unpublish_cascades(self, test_database, make_video, curator_user):
        video = make_video(
            curator_user,
            post_overrides={"scheduled_unpublish_at": NOW - timedelta(minutes=1)},
        )

        stats = await run_scheduled_publishing(NOW, item_delay=0)

        assert stats.unpublishedPosts == 1
        assert await _post_visibility(test_database, video["post_pk"]) == Visibility.PRIVATE.value
        assert await _video_visibility(test_database, video["id"]) == Visibility.PRIVATE.value

    @pytest.mark.asyncio
    async def test_post_without_linked_video(self, test_database, db_engine, curator_user):
        with db_engine.begin() as conn:
            conn.execute(
                posts.insert().values(
                    post_id="playlistpost01",
                    title="Announcement",
                    post_type=PostType.PLAYLIST.value,
                    creator_id=curator_user["id"],
                    visibility=Visibility.DRAFT.value,
                    is_scheduled=True,
                    scheduled_publish_at=NOW - timedelta(minutes=1),
                    created_at=NOW,
                    updated_at=NOW,
                )
            )

        stats = await run_scheduled_publishing(NOW, item_delay=0)

        assert stats.publishedPosts == 1
        assert stats.errorCount == 0

    @pytest.mark.asyncio
    async def test_video_published_by_earlier_post_cascade_is_not_counted_twice(
        self, test_database, make_video, curator_user
    ):
        video = make_video(
            curator_user,
            **_draft(NOW - timedelta(minutes=1)),
            post_overrides={"scheduled_publish_at": NOW - timedelta(minutes=5)},
        )

        stats = await run_scheduled_publishing(NOW, item_delay=0)

        assert stats.publishedPosts == 1
        assert stats.publishedVideos == 0
        assert stats.errorCount == 0
        assert await _video_visibility(test_database, video["id"]) == Visibility.PUBLIC.value

    @pytest.mark.asyncio
    async def test_item_changed_after_loading_is_skipped(self, test_database, make_video, curator_user):
        video = make_video(curator_user)
        stale = ScheduledItem(video["id"], PUBLISH_VIDEO, video["title"], NOW - timedelta(minutes=1))

        with patch("api.scheduled_publisher.get_due_items", return_value=[stale]):
            stats = await run_scheduled_publishing(NOW, item_delay=0)

        assert stats.processed == 0
        assert stats.errorCount == 0

    @pytest.mark.asyncio
    async def test_publish_reports_whether_row_changed(self, test_database, make_video, curator_user):
        video = make_video(curator_user, **_draft(NOW - timedelta(minutes=1)))

        assert await publish_video(video["id"], NOW) is True
        assert await publish_video(video["id"], NOW) is False

    @pytest.mark.asyncio
    async def test_item_failure_is_counted_and_run_continues(self, test_database, make_video, curator_user):
        first = make_video(curator_user, **_draft(NOW - timedelta(hours=2)))
        second = make_video(curator_user, **_draft(NOW - timedelta(hours=1)))

        real_publish = scheduled_publisher.publish_video

        async def flaky_publish(video_pk, now=None):
            if video_pk == first["id"]:
                raise RuntimeError("database went away")
            return await real_publish(video_pk, now)

        with patch("api.scheduled_publisher.publish_video", side_effect=flaky_publish):
            stats = await run_scheduled_publishing(NOW, item_delay=0)

        assert stats.errorCount == 1
        assert stats.publishedVideos == 1
        assert await _video_visibility(test_database, second["id"]) == Visibility.PUBLIC.value

    @pytest.mark.asyncio
    async def test_load_failure_counts_one_error(self, test_database):
        with patch("api.scheduled_publisher.get_due_items", side_effect=RuntimeError("boom")):
            stats = await run_scheduled_publishing(NOW, item_delay=0)

        assert stats.errorCount == 1
        assert stats.processed == 0

    @pytest.mark.asyncio
    async def test_item_delay_between_items(self, test_database, make_video, curator_user):
        make_video(
            curator_user,
            scheduled_unpublish_at=NOW - timedelta(minutes=1),
            post_overrides={"scheduled_unpublish_at": None},
        )

        with patch("api.scheduled_publisher.asyncio.sleep") as mock_sleep:
            stats = await run_scheduled_publishing(NOW, item_delay=0.25)

        assert stats.unpublishedVideos == 1
        mock_sleep.assert_awaited_once_with(0.25)
