"""
Video, post and playlist helpers shared by the public and admin APIs.

Covers public id generation, visibility checks, row serialization and the
multi-table writes (tag linking, playlist totals, cascading deletes).
"""

import logging
import secrets
import string
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence

import sqlalchemy as sa

from api.auth import AuthUser
from api.common import isoformat
from api.database import (
    categories,
    daily_view_history,
    database,
    favorites,
    playlist_videos,
    playlists,
    posts,
    tags,
    transcode_jobs,
    users,
    video_categories,
    video_tags,
    videos,
    view_history,
    view_logs,
)
from api.enums import Visibility

logger = logging.getLogger(__name__)

PUBLIC_ID_LENGTH = 11
PUBLIC_ID_ALPHABET = string.ascii_letters + string.digits + "-_"


def generate_public_id(length: int = PUBLIC_ID_LENGTH) -> str:
    """Random URL-safe id used for videos, posts and playlists."""
    return "".join(secrets.choice(PUBLIC_ID_ALPHABET) for _ in range(length))


async def generate_unique_id(table: sa.Table, column: sa.Column, attempts: int = 5) -> str:
    """A public id not yet used in column. Collisions are astronomically rare; retry a few times anyway."""
    for _ in range(attempts):
        candidate = generate_public_id()
        exists = await database.fetch_val(sa.select(sa.func.count()).select_from(table).where(column == candidate))
        if not exists:
            return candidate
    raise RuntimeError(f"Could not generate a unique id for {table.name}")


# ============ Visibility ============


def visible_visibilities(internal_access: bool) -> List[str]:
    """Visibilities shown in listings for a viewer."""
    if internal_access:
        return [Visibility.PUBLIC.value, Visibility.PRIVATE.value]
    return [Visibility.PUBLIC.value]


def can_view(visibility: str, owner_id: Optional[int], user: Optional[AuthUser], internal_access: bool) -> bool:
    """Whether a single video/post/playlist with this visibility may be shown."""
    if visibility == Visibility.PUBLIC.value:
        return True
    if visibility == Visibility.PRIVATE.value:
        return internal_access
    # DRAFT
    return user is not None and (user.is_admin or user.id == owner_id)


def normalize_visibility(value: Optional[str], default: Optional[str] = None) -> Optional[str]:
    """Upper-cased visibility, or None when value is not one of PUBLIC/PRIVATE/DRAFT."""
    if value is None or value == "":
        return default
    candidate = str(value).upper()
    if candidate in {v.value for v in Visibility}:
        return candidate
    return None


# ============ Serialization ============


async def load_video_taxonomy(video_pks: Sequence[int]) -> Dict[int, dict]:
    """Categories and tags for a set of videos, keyed by video pk."""
    result: Dict[int, dict] = {pk: {"categories": [], "tags": []} for pk in video_pks}
    if not video_pks:
        return result

    cat_rows = await database.fetch_all(
        sa.select(
            video_categories.c.video_id,
            categories.c.id,
            categories.c.name,
            categories.c.slug,
            categories.c.color,
        )
        .select_from(video_categories.join(categories, video_categories.c.category_id == categories.c.id))
        .where(video_categories.c.video_id.in_(list(video_pks)))
        .order_by(categories.c.sort_order, categories.c.name)
    )
    for row in cat_rows:
        result[row["video_id"]]["categories"].append(
            {"id": row["id"], "name": row["name"], "slug": row["slug"], "color": row["color"]}
        )

    tag_rows = await database.fetch_all(
        sa.select(video_tags.c.video_id, tags.c.id, tags.c.name)
        .select_from(video_tags.join(tags, video_tags.c.tag_id == tags.c.id))
        .where(video_tags.c.video_id.in_(list(video_pks)))
        .order_by(tags.c.name)
    )
    for row in tag_rows:
        result[row["video_id"]]["tags"].append({"id": row["id"], "name": row["name"]})

    return result


def video_select() -> sa.Select:
    """Videos joined to their uploader, with the columns serialize_video() expects."""
    return sa.select(
        videos,
        users.c.username.label("uploader_username"),
        users.c.display_name.label("uploader_display_name"),
    ).select_from(videos.join(users, videos.c.uploader_id == users.c.id))


def serialize_video(row, taxonomy: Optional[dict] = None) -> dict:
    taxonomy = taxonomy or {"categories": [], "tags": []}
    return {
        "id": row["id"],
        "videoId": row["video_id"],
        "title": row["title"],
        "description": row["description"],
        "thumbnailUrl": row["thumbnail_url"],
        "duration": row["duration"],
        "viewCount": row["view_count"] or 0,
        "visibility": row["visibility"],
        "status": row["status"],
        "filePath": row["file_path"],
        "convertedFilePath": row["converted_file_path"],
        "originalFilename": row["original_filename"],
        "fileSize": row["file_size"],
        "mimeType": row["mime_type"],
        "isScheduled": bool(row["is_scheduled"]),
        "scheduledPublishAt": isoformat(row["scheduled_publish_at"]),
        "scheduledUnpublishAt": isoformat(row["scheduled_unpublish_at"]),
        "publishedAt": isoformat(row["published_at"]),
        "createdAt": isoformat(row["created_at"]),
        "updatedAt": isoformat(row["updated_at"]),
        "uploader": {
            "id": row["uploader_id"],
            "username": row["uploader_username"],
            "displayName": row["uploader_display_name"],
        },
        "categories": taxonomy["categories"],
        "tags": taxonomy["tags"],
    }


async def serialize_videos(rows) -> List[dict]:
    taxonomy = await load_video_taxonomy([row["id"] for row in rows])
    return [serialize_video(row, taxonomy.get(row["id"])) for row in rows]


def serialize_playlist(row, items: Optional[list] = None) -> dict:
    data = {
        "id": row["id"],
        "playlistId": row["playlist_id"],
        "title": row["title"],
        "description": row["description"],
        "thumbnailUrl": row["thumbnail_url"],
        "videoCount": row["video_count"] or 0,
        "totalDuration": row["total_duration"] or 0,
        "creatorId": row["creator_id"],
        "createdAt": isoformat(row["created_at"]),
        "updatedAt": isoformat(row["updated_at"]),
    }
    if items is not None:
        data["videos"] = items
    return data


def serialize_post(row) -> dict:
    return {
        "id": row["id"],
        "postId": row["post_id"],
        "title": row["title"],
        "description": row["description"],
        "postType": row["post_type"],
        "visibility": row["visibility"],
        "creatorId": row["creator_id"],
        "isScheduled": bool(row["is_scheduled"]),
        "scheduledPublishAt": isoformat(row["scheduled_publish_at"]),
        "scheduledUnpublishAt": isoformat(row["scheduled_unpublish_at"]),
        "publishedAt": isoformat(row["published_at"]),
        "createdAt": isoformat(row["created_at"]),
    }


# ============ Writes ============


async def get_or_create_tag(name: str) -> int:
    existing = await database.fetch_val(sa.select(tags.c.id).where(tags.c.name == name))
    if existing:
        return existing
    now = datetime.now(timezone.utc)
    return await database.execute(tags.insert().values(name=name, created_at=now, updated_at=now))


def clean_tag_names(names: Iterable[str]) -> List[str]:
    """Trimmed, non-empty, de-duplicated tag names in their original order."""
    seen = set()
    cleaned = []
    for name in names or []:
        name = str(name).strip()
        if name and name not in seen:
            seen.add(name)
            cleaned.append(name[:50])
    return cleaned


async def set_video_tags(video_pk: int, names: Iterable[str]) -> None:
    """Replace a video's tags, creating tags that do not exist yet."""
    await database.execute(video_tags.delete().where(video_tags.c.video_id == video_pk))
    for name in clean_tag_names(names):
        tag_id = await get_or_create_tag(name)
        await database.execute(video_tags.insert().values(video_id=video_pk, tag_id=tag_id))


async def set_video_categories(video_pk: int, category_ids: Iterable[int]) -> None:
    await database.execute(video_categories.delete().where(video_categories.c.video_id == video_pk))
    for category_id in dict.fromkeys(category_ids or []):
        await database.execute(video_categories.insert().values(video_id=video_pk, category_id=category_id))


async def refresh_playlist_totals(playlist_pk: int) -> None:
    """Recompute video_count and total_duration from the playlist's videos."""
    row = await database.fetch_one(
        sa.select(
            sa.func.count(playlist_videos.c.id).label("video_count"),
            sa.func.coalesce(sa.func.sum(videos.c.duration), 0).label("total_duration"),
        )
        .select_from(playlist_videos.join(videos, playlist_videos.c.video_id == videos.c.id))
        .where(playlist_videos.c.playlist_id == playlist_pk)
    )
    await database.execute(
        playlists.update()
        .where(playlists.c.id == playlist_pk)
        .values(
            video_count=int(row["video_count"] or 0),
            total_duration=float(row["total_duration"] or 0),
            updated_at=datetime.now(timezone.utc),
        )
    )


async def delete_video_and_related(video_pk: int) -> None:
    """
    Delete a video and every row that references it.

    Related rows are removed explicitly: SQLite only enforces ON DELETE CASCADE
    on connections where the foreign_keys pragma is on, and pooled connections
    are not guaranteed to have it.
    """
    affected_playlists = [
        row["playlist_id"]
        for row in await database.fetch_all(
            sa.select(playlist_videos.c.playlist_id).where(playlist_videos.c.video_id == video_pk)
        )
    ]
    async with database.transaction():
        for table in (transcode_jobs, view_logs, view_history, daily_view_history, favorites):
            await database.execute(table.delete().where(table.c.video_id == video_pk))
        await database.execute(video_tags.delete().where(video_tags.c.video_id == video_pk))
        await database.execute(video_categories.delete().where(video_categories.c.video_id == video_pk))
        await database.execute(playlist_videos.delete().where(playlist_videos.c.video_id == video_pk))
        await database.execute(posts.delete().where(posts.c.video_id == video_pk))
        await database.execute(videos.delete().where(videos.c.id == video_pk))
    for playlist_pk in affected_playlists:
        await refresh_playlist_totals(playlist_pk)


async def delete_playlist_and_related(playlist_pk: int) -> None:
    async with database.transaction():
        await database.execute(playlist_videos.delete().where(playlist_videos.c.playlist_id == playlist_pk))
        await database.execute(posts.delete().where(posts.c.playlist_id == playlist_pk))
        await database.execute(playlists.delete().where(playlists.c.id == playlist_pk))
