"""
View counting and watch history.

The player reports progress (seconds watched, percent completed) while a video
plays. Each report is attached to a view log for the client's session
fingerprint; a log that crosses either threshold bumps the video's public
view count exactly once. Signed-in users additionally get a lifetime
ViewHistory row per video and a DailyViewHistory row per video per day.

Deduplication:
    A session is (video, fingerprint) within the last view_duplicate_hours.
    Reports inside that window reuse the newest log, so replaying a video in
    the same browser does not inflate the counter. The fingerprint is only
    IP + user-agent, so viewers behind one NAT with the same browser share a
    session, and a viewer switching networks gets a new one.

Concurrency:
    Find-or-create of the session log and the counted increment run as one
    transaction. PostgreSQL serializes it per (video, session) with a
    transaction-scoped advisory lock; SQLite serializes writers itself and the
    losing transaction fails with "database is locked", which is retried.
"""

import base64
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, NamedTuple, Optional, Tuple

import sqlalchemy as sa

from api.database import daily_view_history, database, is_postgres, view_history, view_logs, videos
from api.db_retry import execute_with_retry, fetch_one_with_retry, fetch_val_with_retry, with_db_retry
from api.errors import is_unique_violation
from api.settings_service import get_settings_service
from config import VIEW_COUNT_THRESHOLD_PERCENT, VIEW_COUNT_THRESHOLD_SECONDS, VIEW_DUPLICATE_HOURS

logger = logging.getLogger(__name__)

SESSION_ID_MAX_LENGTH = 64


class InvalidProgressError(ValueError):
    """Progress report body is missing numeric watchDuration/completionRate."""


class ViewThresholds(NamedTuple):
    percent: float
    seconds: float
    duplicate_hours: int

    def as_dict(self) -> dict:
        return {"percent": self.percent, "seconds": self.seconds, "duplicateHours": self.duplicate_hours}


async def get_view_thresholds() -> ViewThresholds:
    values = await get_settings_service().get_many(
        ["view_count_threshold_percent", "view_count_threshold_seconds", "view_duplicate_hours"]
    )
    percent = values.get("view_count_threshold_percent")
    seconds = values.get("view_count_threshold_seconds")
    hours = values.get("view_duplicate_hours")
    return ViewThresholds(
        percent=float(percent if percent is not None else VIEW_COUNT_THRESHOLD_PERCENT),
        seconds=float(seconds if seconds is not None else VIEW_COUNT_THRESHOLD_SECONDS),
        duplicate_hours=int(hours if hours is not None else VIEW_DUPLICATE_HOURS),
    )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_progress_payload(body: Any) -> Tuple[float, float]:
    """
    Extract (watch_duration, completion_rate) from a request body.

    Raises:
        InvalidProgressError: Unless both are JSON numbers
    """
    if not isinstance(body, Mapping):
        raise InvalidProgressError("Invalid parameters")
    watch_duration = body.get("watchDuration")
    completion_rate = body.get("completionRate")
    if not _is_number(watch_duration) or not _is_number(completion_rate):
        raise InvalidProgressError("Invalid parameters")
    return float(watch_duration), float(completion_rate)


def build_session_fingerprint(headers: Mapping[str, str]) -> str:
    """
    Session key for view deduplication.

    base64 of "{forwarded-for or real-ip or 'unknown'}-{user-agent}", cut to 64
    characters. Raw proxy headers are used as-is.
    """
    user_agent = headers.get("user-agent") or ""
    client = headers.get("x-forwarded-for") or headers.get("x-real-ip") or "unknown"
    raw = f"{client}-{user_agent}".encode("utf-8")
    return base64.b64encode(raw).decode("ascii")[:SESSION_ID_MAX_LENGTH]


def should_count_view(watch_duration: float, completion_rate: float, thresholds: ViewThresholds) -> bool:
    return completion_rate >= thresholds.percent or watch_duration >= thresholds.seconds


async def get_or_create_view_log(
    video_pk: int,
    session_id: str,
    window_hours: int,
    user_id: Optional[int] = None,
    user_agent: Optional[str] = None,
    referrer: Optional[str] = None,
    now: Optional[datetime] = None,
):
    """Newest log for (video, session) inside the window, creating one if there is none."""
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(hours=window_hours)

    query = (
        sa.select(view_logs)
        .where(
            view_logs.c.video_id == video_pk,
            view_logs.c.session_id == session_id,
            view_logs.c.viewed_at >= since,
        )
        .order_by(view_logs.c.viewed_at.desc(), view_logs.c.id.desc())
        .limit(1)
    )
    existing = await database.fetch_one(query)
    if existing:
        return existing

    log_id = await database.execute(
        view_logs.insert().values(
            video_id=video_pk,
            user_id=user_id,
            session_id=session_id,
            user_agent=user_agent or None,
            referrer=referrer or None,
            watch_duration=0,
            completion_rate=0,
            view_count_updated=False,
            viewed_at=now,
        )
    )
    logger.debug(f"Created view log {log_id} for video {video_pk}")
    return await database.fetch_one(sa.select(view_logs).where(view_logs.c.id == log_id))


async def update_view_history(
    user_id: int,
    video_pk: int,
    watch_duration: float,
    completion_rate: float,
    now: Optional[datetime] = None,
) -> None:
    """Lifetime summary: keep the larger duration and completion seen so far."""
    now = now or datetime.now(timezone.utc)
    where = sa.and_(view_history.c.user_id == user_id, view_history.c.video_id == video_pk)

    existing = await database.fetch_one(sa.select(view_history).where(where))
    if existing is None:
        try:
            await database.execute(
                view_history.insert().values(
                    user_id=user_id,
                    video_id=video_pk,
                    watch_duration=watch_duration,
                    completion_rate=completion_rate,
                    last_watched_at=now,
                    created_at=now,
                )
            )
            return
        except Exception as e:
            if not is_unique_violation(e):
                raise
            # A concurrent report created the row first
            existing = await database.fetch_one(sa.select(view_history).where(where))

    await database.execute(
        view_history.update()
        .where(view_history.c.id == existing["id"])
        .values(
            watch_duration=max(existing["watch_duration"] or 0, watch_duration),
            completion_rate=max(existing["completion_rate"] or 0, completion_rate),
            last_watched_at=now,
        )
    )


async def update_daily_view_history(
    user_id: int,
    video_pk: int,
    watch_duration: float,
    completion_rate: float,
    now: Optional[datetime] = None,
) -> None:
    """Per-day record for today's date: max duration/completion, one more session."""
    now = now or datetime.now(timezone.utc)
    today = now.date()
    where = sa.and_(
        daily_view_history.c.user_id == user_id,
        daily_view_history.c.video_id == video_pk,
        daily_view_history.c.view_date == today,
    )

    existing = await database.fetch_one(sa.select(daily_view_history).where(where))
    if existing is None:
        try:
            await database.execute(
                daily_view_history.insert().values(
                    user_id=user_id,
                    video_id=video_pk,
                    view_date=today,
                    watch_duration=watch_duration,
                    completion_rate=completion_rate,
                    session_count=1,
                    view_time=now,
                    created_at=now,
                    updated_at=now,
                )
            )
            return
        except Exception as e:
            if not is_unique_violation(e):
                raise
            existing = await database.fetch_one(sa.select(daily_view_history).where(where))

    await database.execute(
        daily_view_history.update()
        .where(daily_view_history.c.id == existing["id"])
        .values(
            watch_duration=max(existing["watch_duration"] or 0, watch_duration),
            completion_rate=max(existing["completion_rate"] or 0, completion_rate),
            session_count=daily_view_history.c.session_count + 1,
            view_time=now,
            updated_at=now,
        )
    )


async def count_view_once(view_log_id: int, video_pk: int) -> bool:
    """
    Mark a view log as counted and increment the video's view_count.

    Both writes happen in one transaction after re-reading the flag (row-locked
    on PostgreSQL), so concurrent reports for the same session increment at
    most once. Returns True when this call did the increment.
    """
    async with database.transaction():
        query = sa.select(view_logs.c.view_count_updated).where(view_logs.c.id == view_log_id)
        if is_postgres():
            query = query.with_for_update()
        already_counted = await database.fetch_val(query)
        if already_counted is None or already_counted:
            return False

        await database.execute(
            view_logs.update().where(view_logs.c.id == view_log_id).values(view_count_updated=True)
        )
        await database.execute(
            videos.update().where(videos.c.id == video_pk).values(view_count=videos.c.view_count + 1)
        )
    return True


async def lock_view_session(video_pk: int, session_id: str) -> None:
    """Hold a transaction-scoped lock on (video, session). PostgreSQL only; call inside a transaction."""
    if not is_postgres():
        return
    key = f"view:{video_pk}:{session_id}"
    await database.fetch_val(sa.select(sa.func.pg_advisory_xact_lock(sa.func.hashtext(key))))


@with_db_retry()
async def apply_session_report(
    video_pk: int,
    session_id: str,
    watch_duration: float,
    completion_rate: float,
    thresholds: ViewThresholds,
    user_id: Optional[int] = None,
    user_agent: Optional[str] = None,
    referrer: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[int, bool]:
    """
    Attach a report to its session log and count the view if it qualifies.

    Returns (view_log_id, counted). counted is True only for the one report
    that incremented the video's view_count for this session.
    """
    async with database.transaction():
        await lock_view_session(video_pk, session_id)
        view_log = await get_or_create_view_log(
            video_pk,
            session_id,
            thresholds.duplicate_hours,
            user_id=user_id,
            user_agent=user_agent,
            referrer=referrer,
            now=now,
        )

        # Latest report wins
        await database.execute(
            view_logs.update()
            .where(view_logs.c.id == view_log["id"])
            .values(watch_duration=watch_duration, completion_rate=completion_rate)
        )

        counted = False
        if should_count_view(watch_duration, completion_rate, thresholds) and not view_log["view_count_updated"]:
            counted = await count_view_once(view_log["id"], video_pk)
    return view_log["id"], counted


async def record_view_progress(
    video_public_id: str,
    watch_duration: float,
    completion_rate: float,
    headers: Mapping[str, str],
    user_id: Optional[int] = None,
) -> Optional[dict]:
    """
    Apply one progress report.

    Returns the response payload, or None when the video does not exist.
    """
    video = await fetch_one_with_retry(
        sa.select(videos.c.id, videos.c.view_count).where(videos.c.video_id == video_public_id)
    )
    if video is None:
        return None

    thresholds = await get_view_thresholds()
    session_id = build_session_fingerprint(headers)
    now = datetime.now(timezone.utc)

    _, view_count_updated = await apply_session_report(
        video["id"],
        session_id,
        watch_duration,
        completion_rate,
        thresholds,
        user_id=user_id,
        user_agent=headers.get("user-agent"),
        referrer=headers.get("referer"),
        now=now,
    )
    if view_count_updated:
        logger.info(
            f"View counted for video {video['id']} (session {session_id[:12]}..., "
            f"{completion_rate:.1f}% / {watch_duration:.0f}s, "
            f"thresholds {thresholds.percent}% / {thresholds.seconds}s)"
        )

    if user_id is not None:
        try:
            await execute_with_retry(update_view_history, user_id, video["id"], watch_duration, completion_rate, now)
        except Exception as e:
            logger.warning(f"Failed to update view history for user {user_id}, video {video['id']}: {e}")
        try:
            await execute_with_retry(
                update_daily_view_history, user_id, video["id"], watch_duration, completion_rate, now
            )
        except Exception as e:
            logger.warning(f"Failed to update daily view history for user {user_id}, video {video['id']}: {e}")

    current_count = await fetch_val_with_retry(sa.select(videos.c.view_count).where(videos.c.id == video["id"]))

    return {
        "viewCountUpdated": view_count_updated,
        "currentViewCount": current_count or 0,
        "watchDuration": watch_duration,
        "completionRate": completion_rate,
        "thresholds": thresholds.as_dict(),
    }
