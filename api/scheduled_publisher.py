"""
Scheduled publish/unpublish.

Videos and posts can be created as DRAFT with a scheduled_publish_at time, and
PUBLIC content can carry a scheduled_unpublish_at time. run_scheduled_publishing()
flips everything that is due:

    DRAFT  + is_scheduled + scheduled_publish_at <= now  -> PUBLIC
    PUBLIC + scheduled_unpublish_at <= now               -> PRIVATE

Posts cascade to their linked video. Each item is an independent conditional
UPDATE; an error on one item is counted and the run moves on.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import List, NamedTuple, Optional

import sqlalchemy as sa

from api.common import ensure_utc
from api.database import database, posts, videos
from api.enums import Visibility
from config import SCHEDULER_ITEM_DELAY

logger = logging.getLogger(__name__)

PUBLISH_VIDEO = "video"
PUBLISH_POST = "post"
UNPUBLISH_VIDEO = "video-unpublish"
UNPUBLISH_POST = "post-unpublish"


class ScheduleValidationError(ValueError):
    """Schedule times that are in the past or out of order."""


def validate_schedule(
    publish_at: Optional[datetime],
    unpublish_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> None:
    """
    Publish time must be in the future; unpublish time must be in the future
    and after the publish time when both are given.

    Raises:
        ScheduleValidationError: With the message shown to the user
    """
    now = now or datetime.now(timezone.utc)
    publish_at = ensure_utc(publish_at)
    unpublish_at = ensure_utc(unpublish_at)
    if publish_at is not None and publish_at <= now:
        raise ScheduleValidationError("予約投稿時刻は現在時刻より後である必要があります")
    if unpublish_at is not None:
        if unpublish_at <= now:
            raise ScheduleValidationError("予約非公開時刻は現在時刻より後である必要があります")
        if publish_at is not None and unpublish_at <= publish_at:
            raise ScheduleValidationError("予約非公開時刻は予約投稿時刻より後である必要があります")


class ScheduledItem(NamedTuple):
    id: int
    kind: str
    title: str
    due_at: datetime
    linked_video_id: Optional[int] = None


@dataclass
class PublishStats:
    publishedVideos: int = 0
    publishedPosts: int = 0
    unpublishedVideos: int = 0
    unpublishedPosts: int = 0
    errorCount: int = 0

    @property
    def processed(self) -> int:
        return self.publishedVideos + self.publishedPosts + self.unpublishedVideos + self.unpublishedPosts

    def as_dict(self) -> dict:
        return asdict(self)


# ============ Item actions ============


async def _changed(statement) -> bool:
    """Run a conditional UPDATE; True when it matched a row."""
    return await database.fetch_val(statement.returning(statement.table.c.id)) is not None


async def publish_video(video_pk: int, now: Optional[datetime] = None) -> bool:
    now = now or datetime.now(timezone.utc)
    return await _changed(
        videos.update()
        .where(videos.c.id == video_pk, videos.c.visibility == Visibility.DRAFT.value)
        .values(
            visibility=Visibility.PUBLIC.value,
            is_scheduled=False,
            scheduled_publish_at=None,
            published_at=now,
            updated_at=now,
        )
    )


async def publish_post(post_pk: int, now: Optional[datetime] = None) -> bool:
    now = now or datetime.now(timezone.utc)
    return await _changed(
        posts.update()
        .where(posts.c.id == post_pk, posts.c.visibility == Visibility.DRAFT.value)
        .values(
            visibility=Visibility.PUBLIC.value,
            is_scheduled=False,
            scheduled_publish_at=None,
            published_at=now,
            updated_at=now,
        )
    )


async def unpublish_video(video_pk: int, now: Optional[datetime] = None) -> bool:
    now = now or datetime.now(timezone.utc)
    return await _changed(
        videos.update()
        .where(videos.c.id == video_pk, videos.c.visibility == Visibility.PUBLIC.value)
        .values(visibility=Visibility.PRIVATE.value, scheduled_unpublish_at=None, updated_at=now)
    )


async def unpublish_post(post_pk: int, now: Optional[datetime] = None) -> bool:
    now = now or datetime.now(timezone.utc)
    return await _changed(
        posts.update()
        .where(posts.c.id == post_pk, posts.c.visibility == Visibility.PUBLIC.value)
        .values(visibility=Visibility.PRIVATE.value, scheduled_unpublish_at=None, updated_at=now)
    )


async def _cascade_to_video(post_pk: int, publish: bool, now: datetime) -> None:
    """Apply a post's transition to its linked video. Failures are logged only."""
    try:
        row = await database.fetch_one(
            sa.select(videos.c.id, videos.c.visibility)
            .select_from(posts.join(videos, posts.c.video_id == videos.c.id))
            .where(posts.c.id == post_pk)
        )
        if row is None:
            return
        if publish and row["visibility"] == Visibility.DRAFT.value:
            await publish_video(row["id"], now)
        elif not publish and row["visibility"] == Visibility.PUBLIC.value:
            await unpublish_video(row["id"], now)
    except Exception as e:
        logger.error(f"Failed to cascade {'publish' if publish else 'unpublish'} from post {post_pk}: {e}")


# ============ Due items ============


async def get_due_items(now: datetime) -> List[ScheduledItem]:
    """Everything due at now, ordered by its scheduled time."""
    items: List[ScheduledItem] = []

    rows = await database.fetch_all(
        sa.select(videos.c.id, videos.c.title, videos.c.scheduled_publish_at).where(
            videos.c.visibility == Visibility.DRAFT.value,
            videos.c.is_scheduled == sa.true(),
            videos.c.scheduled_publish_at <= now,
        )
    )
    items.extend(ScheduledItem(r["id"], PUBLISH_VIDEO, r["title"], r["scheduled_publish_at"]) for r in rows)

    rows = await database.fetch_all(
        sa.select(posts.c.id, posts.c.title, posts.c.scheduled_publish_at, posts.c.video_id).where(
            posts.c.visibility == Visibility.DRAFT.value,
            posts.c.is_scheduled == sa.true(),
            posts.c.scheduled_publish_at <= now,
        )
    )
    items.extend(
        ScheduledItem(r["id"], PUBLISH_POST, r["title"], r["scheduled_publish_at"], r["video_id"]) for r in rows
    )

    rows = await database.fetch_all(
        sa.select(videos.c.id, videos.c.title, videos.c.scheduled_unpublish_at).where(
            videos.c.visibility == Visibility.PUBLIC.value,
            videos.c.scheduled_unpublish_at <= now,
        )
    )
    items.extend(ScheduledItem(r["id"], UNPUBLISH_VIDEO, r["title"], r["scheduled_unpublish_at"]) for r in rows)

    rows = await database.fetch_all(
        sa.select(posts.c.id, posts.c.title, posts.c.scheduled_unpublish_at, posts.c.video_id).where(
            posts.c.visibility == Visibility.PUBLIC.value,
            posts.c.scheduled_unpublish_at <= now,
        )
    )
    items.extend(
        ScheduledItem(r["id"], UNPUBLISH_POST, r["title"], r["scheduled_unpublish_at"], r["video_id"])
        for r in rows
    )

    items.sort(key=lambda item: ensure_utc(item.due_at))
    return items


async def process_item(item: ScheduledItem, stats: PublishStats, now: datetime) -> bool:
    """
    Apply one due item. Returns False when its row had already moved on
    (published by a post cascade earlier in the run, or edited since loading),
    in which case nothing is counted.
    """
    if item.kind == PUBLISH_VIDEO:
        if not await publish_video(item.id, now):
            return False
        stats.publishedVideos += 1
    elif item.kind == PUBLISH_POST:
        if not await publish_post(item.id, now):
            return False
        stats.publishedPosts += 1
        await _cascade_to_video(item.id, publish=True, now=now)
    elif item.kind == UNPUBLISH_VIDEO:
        if not await unpublish_video(item.id, now):
            return False
        stats.unpublishedVideos += 1
    elif item.kind == UNPUBLISH_POST:
        if not await unpublish_post(item.id, now):
            return False
        stats.unpublishedPosts += 1
        await _cascade_to_video(item.id, publish=False, now=now)
    else:
        raise ValueError(f"Unknown scheduled item kind: {item.kind}")
    return True


async def run_scheduled_publishing(
    now: Optional[datetime] = None,
    item_delay: float = SCHEDULER_ITEM_DELAY,
) -> PublishStats:
    """
    Publish and unpublish everything that is due.

    Never raises for per-item failures; they are logged and counted in
    errorCount. A failure to load the due items counts as one error.
    """
    now = ensure_utc(now) if now else datetime.now(timezone.utc)
    stats = PublishStats()
    logger.info(f"Scheduled publishing check started at {now.isoformat()}")

    try:
        items = await get_due_items(now)
    except Exception as e:
        logger.error(f"Failed to load scheduled items: {e}")
        stats.errorCount += 1
        return stats

    if not items:
        logger.info("No scheduled items are due")
        return stats

    for item in items:
        action = "unpublish" if item.kind.endswith("unpublish") else "publish"
        try:
            if await process_item(item, stats, now):
                logger.info(f"Scheduled {action} done: {item.kind} {item.id} \"{item.title}\"")
            else:
                logger.info(f"Scheduled {action} skipped, already changed: {item.kind} {item.id} \"{item.title}\"")
        except Exception as e:
            stats.errorCount += 1
            logger.error(f"Scheduled {action} failed: {item.kind} {item.id} \"{item.title}\": {e}")
            continue
        if item_delay:
            await asyncio.sleep(item_delay)

    logger.info(f"Scheduled publishing finished: {stats.as_dict()}")
    return stats
