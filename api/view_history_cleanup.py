"""
Retention cleanup for view history.

ViewHistory rows whose last_watched_at is older than the retention period are
deleted in id batches, oldest first, so a large backlog never turns into one
long-running DELETE. Three entry points share the batch loop:

- the cron endpoint and scheduler (capped per run, pauses every 5 batches)
- the admin console (uncapped, pauses every 10 batches)
- the CLI (cron profile)
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import sqlalchemy as sa

from api.common import isoformat
from api.database import database, users, view_history
from api.settings_service import get_settings_service
from config import (
    CRON_CLEANUP_MAX_BATCHES,
    CRON_CLEANUP_MAX_DELETES,
    VIEW_HISTORY_CLEANUP_BATCH_SIZE,
    VIEW_HISTORY_RETENTION_DAYS,
)

logger = logging.getLogger(__name__)

USER_STATS_LIMIT = 20


class CleanupDisabledError(Exception):
    """Cleanup was requested while view_history_cleanup_enabled is false."""


@dataclass(frozen=True)
class CleanupProfile:
    """Pacing and caps for one kind of cleanup run. None means uncapped."""

    max_deletes: Optional[int]
    max_batches: Optional[int]
    sleep_every: int
    sleep_seconds: float


CRON_PROFILE = CleanupProfile(
    max_deletes=CRON_CLEANUP_MAX_DELETES,
    max_batches=CRON_CLEANUP_MAX_BATCHES,
    sleep_every=5,
    sleep_seconds=0.2,
)
ADMIN_PROFILE = CleanupProfile(max_deletes=None, max_batches=None, sleep_every=10, sleep_seconds=0.1)


@dataclass(frozen=True)
class CleanupSettings:
    retention_days: int
    enabled: bool
    batch_size: int


@dataclass
class CleanupResult:
    deleted_count: int
    total_batches: int
    remaining_count: int


async def get_cleanup_settings() -> CleanupSettings:
    values = await get_settings_service().get_many(
        ["view_history_retention_days", "view_history_cleanup_enabled", "view_history_cleanup_batch_size"]
    )
    retention = values.get("view_history_retention_days")
    enabled = values.get("view_history_cleanup_enabled")
    batch_size = values.get("view_history_cleanup_batch_size")
    return CleanupSettings(
        retention_days=int(retention) if retention else VIEW_HISTORY_RETENTION_DAYS,
        # Only an explicit false disables cleanup
        enabled=enabled is not False,
        batch_size=int(batch_size) if batch_size else VIEW_HISTORY_CLEANUP_BATCH_SIZE,
    )


def compute_cutoff(retention_days: int, now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now - timedelta(days=retention_days)


def _expired(cutoff: datetime):
    return view_history.c.last_watched_at < cutoff


async def count_expired(cutoff: datetime) -> int:
    count = await database.fetch_val(
        sa.select(sa.func.count()).select_from(view_history).where(_expired(cutoff))
    )
    return int(count or 0)


async def cleanup_view_history(
    cutoff: datetime,
    batch_size: int,
    profile: CleanupProfile = CRON_PROFILE,
) -> CleanupResult:
    """
    Delete rows last watched before cutoff, batch by batch.

    Each batch selects the oldest ids first and deletes exactly those ids, so
    rows at or after the cutoff are never touched. Stops when nothing is left
    or a cap in profile is reached.
    """
    deleted = 0
    batches = 0

    while True:
        limit = batch_size
        if profile.max_deletes is not None:
            limit = min(limit, profile.max_deletes - deleted)
            if limit <= 0:
                break
        if profile.max_batches is not None and batches >= profile.max_batches:
            logger.info(f"View history cleanup stopped after {batches} batches (per-run limit)")
            break

        rows = await database.fetch_all(
            sa.select(view_history.c.id)
            .where(_expired(cutoff))
            .order_by(view_history.c.last_watched_at.asc(), view_history.c.id.asc())
            .limit(limit)
        )
        if not rows:
            break

        ids = [row["id"] for row in rows]
        await database.execute(view_history.delete().where(view_history.c.id.in_(ids)))
        batches += 1
        deleted += len(ids)
        logger.info(f"View history cleanup batch {batches}: deleted {len(ids)} (total {deleted})")

        if profile.sleep_every and batches % profile.sleep_every == 0:
            await asyncio.sleep(profile.sleep_seconds)

    remaining = await count_expired(cutoff)
    return CleanupResult(deleted_count=deleted, total_batches=batches, remaining_count=remaining)


async def run_scheduled_cleanup(now: Optional[datetime] = None) -> dict:
    """
    Cron-profile cleanup used by the cron endpoint, the scheduler and the CLI.

    A disabled cleanup is not an error: the result says it was skipped.
    """
    settings = await get_cleanup_settings()
    if not settings.enabled:
        logger.info("View history cleanup is disabled, skipping")
        return {"skipped": True, "message": "視聴履歴自動クリーンアップは無効化されています", "deletedCount": 0}

    cutoff = compute_cutoff(settings.retention_days, now)
    logger.info(f"View history cleanup started: deleting history last watched before {cutoff.isoformat()}")

    pending = await count_expired(cutoff)
    if pending == 0:
        return {
            "skipped": False,
            "message": "削除対象の視聴履歴はありません",
            "deletedCount": 0,
            "remainingCount": 0,
            "totalBatches": 0,
            "retentionDays": settings.retention_days,
            "cutoffDate": isoformat(cutoff),
            "executionTime": isoformat(datetime.now(timezone.utc)),
        }

    result = await cleanup_view_history(cutoff, settings.batch_size, CRON_PROFILE)
    logger.info(
        f"View history cleanup finished: deleted {result.deleted_count}, {result.remaining_count} remaining"
    )
    return {
        "skipped": False,
        "message": "視聴履歴の自動クリーンアップが完了しました",
        "deletedCount": result.deleted_count,
        "remainingCount": result.remaining_count,
        "totalBatches": result.total_batches,
        "retentionDays": settings.retention_days,
        "cutoffDate": isoformat(cutoff),
        "executionTime": isoformat(datetime.now(timezone.utc)),
    }


async def run_admin_cleanup(now: Optional[datetime] = None) -> dict:
    """
    Uncapped cleanup triggered from the admin console.

    Raises:
        CleanupDisabledError: When cleanup is disabled in settings
    """
    settings = await get_cleanup_settings()
    if not settings.enabled:
        raise CleanupDisabledError("視聴履歴の自動クリーンアップが無効化されています")

    cutoff = compute_cutoff(settings.retention_days, now)
    result = await cleanup_view_history(cutoff, settings.batch_size, ADMIN_PROFILE)
    message = (
        "視聴履歴のクリーンアップが完了しました" if result.deleted_count else "削除対象の視聴履歴はありません"
    )
    return {
        "message": message,
        "deletedCount": result.deleted_count,
        "totalBatches": result.total_batches,
        "retentionDays": settings.retention_days,
        "cutoffDate": isoformat(cutoff),
        "batchSize": settings.batch_size,
    }


async def get_cleanup_status(now: Optional[datetime] = None) -> dict:
    settings = await get_cleanup_settings()
    cutoff = compute_cutoff(settings.retention_days, now)
    return {
        "cleanupEnabled": settings.enabled,
        "retentionDays": settings.retention_days,
        "cutoffDate": isoformat(cutoff),
        "pendingCleanupCount": await count_expired(cutoff),
        "lastCheck": isoformat(datetime.now(timezone.utc)),
    }


async def preview_cleanup(now: Optional[datetime] = None) -> dict:
    """What an admin cleanup would delete: counts, date range and the top users affected."""
    settings = await get_cleanup_settings()
    cutoff = compute_cutoff(settings.retention_days, now)

    oldest = await database.fetch_val(
        sa.select(sa.func.min(view_history.c.last_watched_at)).where(_expired(cutoff))
    )
    newest = await database.fetch_val(
        sa.select(sa.func.max(view_history.c.last_watched_at)).where(_expired(cutoff))
    )

    delete_count = sa.func.count(view_history.c.id).label("delete_count")
    stats_rows = await database.fetch_all(
        sa.select(users.c.username, users.c.display_name, delete_count)
        .select_from(view_history.join(users, view_history.c.user_id == users.c.id))
        .where(_expired(cutoff))
        .group_by(users.c.id, users.c.username, users.c.display_name)
        .order_by(delete_count.desc())
        .limit(USER_STATS_LIMIT)
    )

    return {
        "retentionDays": settings.retention_days,
        "cutoffDate": isoformat(cutoff),
        "targetCount": await count_expired(cutoff),
        "oldestRecordDate": _as_iso(oldest),
        "newestTargetDate": _as_iso(newest),
        "userStats": [
            {
                "username": row["username"],
                "displayName": row["display_name"],
                "deleteCount": int(row["delete_count"]),
            }
            for row in stats_rows
        ],
    }


def _as_iso(value) -> Optional[str]:
    # Aggregates over SQLite DATETIME columns come back as strings
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    return isoformat(value)
