"""Per-user watch history, daily history, watch statistics and favorites queries."""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional

import sqlalchemy as sa

from api.common import isoformat
from api.content import load_video_taxonomy
from api.database import (
    daily_view_history,
    database,
    favorites,
    users,
    video_categories,
    videos,
    view_history,
)
from api.enums import DailyHistorySortBy, HistorySortBy, SortOrder
from api.pagination import build_pagination, offset_for

logger = logging.getLogger(__name__)

RECENT_ACTIVITY_DAYS = 7
TOP_VIDEOS_LIMIT = 5

_HISTORY_SORT_COLUMNS = {
    HistorySortBy.LAST_WATCHED_AT.value: view_history.c.last_watched_at,
    HistorySortBy.COMPLETION_RATE.value: view_history.c.completion_rate,
    HistorySortBy.WATCH_DURATION.value: view_history.c.watch_duration,
}

_DAILY_SORT_COLUMNS = {
    DailyHistorySortBy.VIEW_TIME.value: daily_view_history.c.view_time,
    DailyHistorySortBy.VIEW_DATE.value: daily_view_history.c.view_date,
    DailyHistorySortBy.WATCH_DURATION.value: daily_view_history.c.watch_duration,
    DailyHistorySortBy.COMPLETION_RATE.value: daily_view_history.c.completion_rate,
    DailyHistorySortBy.SESSION_COUNT.value: daily_view_history.c.session_count,
}

_FAVORITE_SORT_COLUMNS = {
    "createdAt": favorites.c.created_at,
    "title": videos.c.title,
    "videoCreatedAt": videos.c.created_at,
    "duration": videos.c.duration,
    "viewCount": videos.c.view_count,
}


def normalize_order(order: Optional[str]) -> str:
    return SortOrder.ASC.value if (order or "").lower() == SortOrder.ASC.value else SortOrder.DESC.value


def _ordered(column, order: str):
    return column.asc() if order == SortOrder.ASC.value else column.desc()


def _video_columns():
    return (
        videos.c.id.label("v_id"),
        videos.c.video_id.label("v_video_id"),
        videos.c.title.label("v_title"),
        videos.c.description.label("v_description"),
        videos.c.duration.label("v_duration"),
        videos.c.thumbnail_url.label("v_thumbnail_url"),
        videos.c.view_count.label("v_view_count"),
        videos.c.created_at.label("v_created_at"),
        users.c.id.label("u_id"),
        users.c.username.label("u_username"),
        users.c.display_name.label("u_display_name"),
    )


def _video_summary(row, taxonomy: dict) -> dict:
    return {
        "id": row["v_id"],
        "videoId": row["v_video_id"],
        "title": row["v_title"],
        "description": row["v_description"],
        "duration": row["v_duration"],
        "thumbnailUrl": row["v_thumbnail_url"],
        "viewCount": row["v_view_count"] or 0,
        "createdAt": isoformat(row["v_created_at"]),
        "creator": {"id": row["u_id"], "username": row["u_username"], "displayName": row["u_display_name"]},
        "categories": taxonomy.get(row["v_id"], {}).get("categories", []),
    }


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    return date.fromisoformat(value[:10])


# ============ Lifetime history ============


async def list_view_history(
    user_id: int,
    page: int,
    limit: int,
    sort_by: Optional[str] = None,
    order: Optional[str] = None,
    min_completion_rate: Optional[float] = None,
) -> dict:
    sort_field = sort_by if sort_by in _HISTORY_SORT_COLUMNS else HistorySortBy.LAST_WATCHED_AT.value
    order = normalize_order(order)

    conditions = [view_history.c.user_id == user_id]
    if min_completion_rate is not None:
        conditions.append(view_history.c.completion_rate >= min_completion_rate)

    source = view_history.join(videos, view_history.c.video_id == videos.c.id).join(
        users, videos.c.uploader_id == users.c.id
    )
    rows = await database.fetch_all(
        sa.select(view_history, *_video_columns())
        .select_from(source)
        .where(*conditions)
        .order_by(_ordered(_HISTORY_SORT_COLUMNS[sort_field], order), view_history.c.id.desc())
        .limit(limit)
        .offset(offset_for(page, limit))
    )
    total = await database.fetch_val(sa.select(sa.func.count()).select_from(view_history).where(*conditions))
    taxonomy = await load_video_taxonomy([row["v_id"] for row in rows])

    return {
        "viewHistory": [
            {
                "id": row["id"],
                "watchDuration": row["watch_duration"] or 0,
                "completionRate": row["completion_rate"] or 0,
                "lastWatchedAt": isoformat(row["last_watched_at"]),
                "video": _video_summary(row, taxonomy),
            }
            for row in rows
        ],
        "pagination": build_pagination(page, limit, total),
        "filters": {"sortBy": sort_field, "sortOrder": order, "minCompletionRate": min_completion_rate},
    }


# ============ Daily history ============


async def list_daily_view_history(
    user_id: int,
    page: int,
    limit: int,
    sort_by: Optional[str] = None,
    order: Optional[str] = None,
    from_date: Optional[str] = None,
    to_date: Optional[str] = None,
    min_completion_rate: Optional[float] = None,
    group_by_date: bool = False,
) -> dict:
    """
    Per-day history rows, or per-day totals when group_by_date is set.

    Raises:
        ValueError: When from_date/to_date are not YYYY-MM-DD dates
    """
    sort_field = sort_by if sort_by in _DAILY_SORT_COLUMNS else DailyHistorySortBy.VIEW_TIME.value
    order = normalize_order(order)
    start = _parse_date(from_date)
    end = _parse_date(to_date)

    conditions = [daily_view_history.c.user_id == user_id]
    if start:
        conditions.append(daily_view_history.c.view_date >= start)
    if end:
        conditions.append(daily_view_history.c.view_date <= end)
    if min_completion_rate is not None:
        conditions.append(daily_view_history.c.completion_rate >= min_completion_rate)

    filters = {
        "sortBy": sort_field,
        "sortOrder": order,
        "fromDate": from_date,
        "toDate": to_date,
        "minCompletionRate": min_completion_rate,
        "groupByDate": group_by_date,
    }
    source = daily_view_history.join(videos, daily_view_history.c.video_id == videos.c.id).join(
        users, videos.c.uploader_id == users.c.id
    )

    if group_by_date:
        groups = await database.fetch_all(
            sa.select(
                daily_view_history.c.view_date,
                sa.func.count(daily_view_history.c.id).label("total_videos"),
                sa.func.coalesce(sa.func.sum(daily_view_history.c.watch_duration), 0).label("total_watch_time"),
                sa.func.coalesce(sa.func.sum(daily_view_history.c.session_count), 0).label("total_sessions"),
                sa.func.avg(daily_view_history.c.completion_rate).label("avg_completion_rate"),
            )
            .where(*conditions)
            .group_by(daily_view_history.c.view_date)
            .order_by(_ordered(daily_view_history.c.view_date, order))
            .limit(limit)
            .offset(offset_for(page, limit))
        )
        total = await database.fetch_val(
            sa.select(sa.func.count(sa.distinct(daily_view_history.c.view_date))).where(*conditions)
        )

        days = []
        for group in groups:
            rows = await database.fetch_all(
                sa.select(daily_view_history, *_video_columns())
                .select_from(source)
                .where(*conditions, daily_view_history.c.view_date == group["view_date"])
                .order_by(daily_view_history.c.view_time.desc())
            )
            taxonomy = await load_video_taxonomy([row["v_id"] for row in rows])
            days.append(
                {
                    "date": str(group["view_date"]),
                    "totalVideos": int(group["total_videos"]),
                    "totalWatchTime": float(group["total_watch_time"] or 0),
                    "totalSessions": int(group["total_sessions"] or 0),
                    "avgCompletionRate": round(float(group["avg_completion_rate"] or 0), 2),
                    "videos": [_daily_item(row, taxonomy) for row in rows],
                }
            )
        return {"dailyHistory": days, "pagination": build_pagination(page, limit, total), "filters": filters}

    rows = await database.fetch_all(
        sa.select(daily_view_history, *_video_columns())
        .select_from(source)
        .where(*conditions)
        .order_by(_ordered(_DAILY_SORT_COLUMNS[sort_field], order), daily_view_history.c.id.desc())
        .limit(limit)
        .offset(offset_for(page, limit))
    )
    total = await database.fetch_val(
        sa.select(sa.func.count()).select_from(daily_view_history).where(*conditions)
    )
    taxonomy = await load_video_taxonomy([row["v_id"] for row in rows])
    return {
        "dailyHistory": [_daily_item(row, taxonomy) for row in rows],
        "pagination": build_pagination(page, limit, total),
        "filters": filters,
    }


def _daily_item(row, taxonomy: dict) -> dict:
    return {
        "id": row["id"],
        "viewDate": str(row["view_date"]),
        "viewTime": isoformat(row["view_time"]),
        "watchDuration": row["watch_duration"] or 0,
        "completionRate": row["completion_rate"] or 0,
        "sessionCount": row["session_count"] or 0,
        "video": _video_summary(row, taxonomy),
    }


# ============ Statistics ============


def completion_bucket(rate: float) -> str:
    if rate >= 90:
        return "completed"
    if rate >= 50:
        return "partial"
    if rate >= 10:
        return "started"
    return "minimal"


async def get_view_history_stats(user_id: int, now: Optional[datetime] = None) -> dict:
    now = now or datetime.now(timezone.utc)
    mine = view_history.c.user_id == user_id

    totals = await database.fetch_one(
        sa.select(
            sa.func.count(view_history.c.id).label("total_videos"),
            sa.func.coalesce(sa.func.sum(view_history.c.watch_duration), 0).label("total_watch_time"),
            sa.func.avg(view_history.c.completion_rate).label("avg_completion_rate"),
        ).where(mine)
    )
    recent = await database.fetch_val(
        sa.select(sa.func.count())
        .select_from(view_history)
        .where(mine, view_history.c.last_watched_at >= now - timedelta(days=RECENT_ACTIVITY_DAYS))
    )
    favorites_count = await database.fetch_val(
        sa.select(sa.func.count()).select_from(favorites).where(favorites.c.user_id == user_id)
    )

    # Bucketing in Python keeps the query portable between SQLite and PostgreSQL
    rates = await database.fetch_all(sa.select(view_history.c.completion_rate).where(mine))
    distribution = {}
    for row in rates:
        bucket = completion_bucket(row["completion_rate"] or 0)
        distribution[bucket] = distribution.get(bucket, 0) + 1

    top_rows = await database.fetch_all(
        sa.select(view_history, *_video_columns())
        .select_from(
            view_history.join(videos, view_history.c.video_id == videos.c.id).join(
                users, videos.c.uploader_id == users.c.id
            )
        )
        .where(mine)
        .order_by(view_history.c.watch_duration.desc())
        .limit(TOP_VIDEOS_LIMIT)
    )

    total_watch_time = float(totals["total_watch_time"] or 0)
    return {
        "viewHistoryCount": int(totals["total_videos"] or 0),
        "favoritesCount": int(favorites_count or 0),
        "overview": {
            "totalVideosWatched": int(totals["total_videos"] or 0),
            "totalWatchTimeSeconds": total_watch_time,
            "totalWatchTimeHours": round(total_watch_time / 3600, 1),
            "averageCompletionRate": round(float(totals["avg_completion_rate"] or 0), 2),
            "recentActivityCount": int(recent or 0),
        },
        "completionDistribution": [
            {"category": category, "count": count}
            for category, count in sorted(distribution.items(), key=lambda item: item[1], reverse=True)
        ],
        "topWatchedVideos": [
            {
                "videoId": row["v_video_id"],
                "title": row["v_title"],
                "duration": row["v_duration"],
                "thumbnailUrl": row["v_thumbnail_url"],
                "creatorName": row["u_display_name"],
                "watchDuration": row["watch_duration"] or 0,
                "completionRate": round(float(row["completion_rate"] or 0), 2),
                "lastWatchedAt": isoformat(row["last_watched_at"]),
            }
            for row in top_rows
        ],
    }


# ============ Favorites ============


async def list_favorites(
    user_id: int,
    page: int,
    limit: int,
    sort_by: Optional[str] = None,
    order: Optional[str] = None,
    category_id: Optional[int] = None,
    search: Optional[str] = None,
) -> dict:
    sort_field = sort_by if sort_by in _FAVORITE_SORT_COLUMNS else "createdAt"
    order = normalize_order(order)

    conditions: List = [favorites.c.user_id == user_id]
    if category_id is not None:
        conditions.append(
            videos.c.id.in_(
                sa.select(video_categories.c.video_id).where(video_categories.c.category_id == category_id)
            )
        )
    if search:
        pattern = f"%{search}%"
        conditions.append(sa.or_(videos.c.title.ilike(pattern), videos.c.description.ilike(pattern)))

    source = favorites.join(videos, favorites.c.video_id == videos.c.id).join(
        users, videos.c.uploader_id == users.c.id
    )
    rows = await database.fetch_all(
        sa.select(favorites, *_video_columns())
        .select_from(source)
        .where(*conditions)
        .order_by(_ordered(_FAVORITE_SORT_COLUMNS[sort_field], order), favorites.c.id.desc())
        .limit(limit)
        .offset(offset_for(page, limit))
    )
    total = await database.fetch_val(sa.select(sa.func.count()).select_from(source).where(*conditions))
    taxonomy = await load_video_taxonomy([row["v_id"] for row in rows])
    return {
        "favorites": [
            {"id": row["id"], "createdAt": isoformat(row["created_at"]), "video": _video_summary(row, taxonomy)}
            for row in rows
        ],
        "pagination": build_pagination(page, limit, total),
    }
