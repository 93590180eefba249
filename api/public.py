"""
Public API - the user-facing application.
Runs on port 9000.

Serves authentication, browsing (videos, posts, playlists, categories, tags),
view progress reporting, upload and transcode status, the signed-in user's
history/favorites/profile, and the cron endpoints for housekeeping.
"""

import hmac
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import sqlalchemy as sa
from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter

from api.audit import AuditAction, audit_request
from api.auth import (
    STAFF_ROLES,
    AuthUser,
    authenticate,
    can_modify,
    clear_auth_cookie,
    ensure_owner_or_admin,
    get_optional_user,
    hash_password,
    login_user,
    require_staff,
    require_user,
    serialize_user,
    set_auth_cookie,
    verify_password,
)
from api.common import (
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    check_health,
    get_real_ip,
    parse_datetime,
    register_exception_handlers,
    success_response,
)
from api.content import (
    can_view,
    delete_playlist_and_related,
    generate_unique_id,
    normalize_visibility,
    refresh_playlist_totals,
    serialize_playlist,
    serialize_post,
    serialize_videos,
    set_video_tags,
    video_select,
    visible_visibilities,
)
from api.database import (
    categories,
    configure_database,
    database,
    favorites,
    playlist_videos,
    playlists,
    posts,
    tags,
    users,
    video_categories,
    video_tags,
    videos,
)
from api.db_retry import DatabaseLockedError, db_execute_with_retry, fetch_one_with_retry
from api.enums import PostType, Role, VideoSort, VideoStatus, Visibility
from api.errors import ERROR_MESSAGES, is_unique_violation, not_found_message
from api.gpu_transcoder import GPUTranscoderError, close_gpu_client, get_gpu_client
from api.ip_access import has_internal_access
from api.pagination import DEFAULT_PAGE_SIZE, build_pagination, clamp_limit, clamp_page, offset_for
from api.rate_limiter import RateLimitMiddleware
from api.scheduled_publisher import ScheduleValidationError, validate_schedule
from api.schemas import FavoriteCreate, LoginRequest, PlaylistCreate, PlaylistUpdate, ProfileUpdate, TagCreate, TagUpdate
from api.settings_service import PUBLIC_SETTING_KEYS, get_settings_service
from api.transcoding import cancel_job, get_job_with_owner, refresh_job, serialize_job, submit_transcode
from api.user_history import (
    get_view_history_stats,
    list_daily_view_history,
    list_favorites,
    list_view_history,
)
from api.view_history_cleanup import get_cleanup_status, run_scheduled_cleanup
from api.view_tracking import InvalidProgressError, get_view_thresholds, parse_progress_payload, record_view_progress
from config import (
    CORS_ALLOWED_ORIGINS,
    CRON_SECRET_TOKEN,
    MAX_UPLOAD_SIZE,
    PUBLIC_PORT,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_LOGIN,
    RATE_LIMIT_STORAGE_URL,
    RATE_LIMIT_UPLOAD,
    SUPPORTED_VIDEO_EXTENSIONS,
    SUPPORTED_VIDEO_EXTENSIONS_STR,
    UPLOADS_DIR,
)

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_SIZE = 1024 * 1024  # 1 MB
FAVORITES_DEFAULT_PAGE_SIZE = 12
FAVORITES_MAX_PAGE_SIZE = 50

INVALID_VISIBILITY_MESSAGE = "無効な公開設定です。有効な値: PUBLIC, PRIVATE, DRAFT"
PRIVATE_CONTENT_MESSAGE = "この動画はログインユーザーのみアクセス可能です"

_VIDEO_SORTS = {
    VideoSort.LATEST.value: (videos.c.created_at.desc(),),
    VideoSort.POPULAR.value: (videos.c.view_count.desc(), videos.c.created_at.desc()),
    VideoSort.OLDEST.value: (videos.c.created_at.asc(),),
    VideoSort.DURATION.value: (videos.c.duration.desc(), videos.c.created_at.desc()),
    VideoSort.TITLE.value: (videos.c.title.asc(),),
}


# Initialize rate limiter
# Uses in-memory storage by default, can be configured to use Redis
limiter = Limiter(
    key_func=get_real_ip,
    storage_uri=RATE_LIMIT_STORAGE_URL if RATE_LIMIT_ENABLED else None,
    enabled=RATE_LIMIT_ENABLED,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown."""
    # Warn about in-memory rate limiting limitations
    if RATE_LIMIT_ENABLED and RATE_LIMIT_STORAGE_URL == "memory://":
        logger.warning(
            "Rate limiting is using in-memory storage. "
            "For production deployments with multiple instances, configure Redis: "
            "ORGVIDEO_RATE_LIMIT_STORAGE_URL=redis://localhost:6379"
        )
    await database.connect()
    await configure_database()

    yield

    await close_gpu_client()
    await database.disconnect()


app = FastAPI(title="orgvideo", description="Organizational video sharing", lifespan=lifespan)

# Register rate limiter with the app
app.state.limiter = limiter
register_exception_handlers(app)

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(RateLimitMiddleware)

# If CORS_ALLOWED_ORIGINS is empty, allow same-origin only (no CORS headers)
# Note: allow_credentials=True requires specific origins, not wildcards
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS if CORS_ALLOWED_ORIGINS else [],
    allow_credentials=bool(CORS_ALLOWED_ORIGINS),
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
    expose_headers=[
        "X-Request-ID",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "Retry-After",
    ],
)


@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.

    Returns 503 if the database or upload storage is unavailable.
    """
    result = await check_health()
    return JSONResponse(
        status_code=result["status_code"],
        content={"status": "healthy" if result["healthy"] else "unhealthy", "checks": result["checks"]},
    )


# ============ Authentication ============


@app.post("/api/auth/login")
@limiter.limit(RATE_LIMIT_LOGIN)
async def login(request: Request, response: Response, data: LoginRequest):
    """Sign in with a username or email address. Sets the auth cookie."""
    if not data.username or not data.password:
        raise HTTPException(status_code=400, detail="ユーザー名とパスワードが必要です")

    try:
        user, token = await login_user(request, data.username, data.password)
    except HTTPException as e:
        action = AuditAction.LOGIN_LOCKED if e.status_code == 423 else AuditAction.LOGIN_FAILED
        audit_request(request, action, resource_type="user", resource_name=data.username, success=False)
        raise

    set_auth_cookie(response, token)
    audit_request(
        request,
        AuditAction.LOGIN_SUCCESS,
        user=AuthUser(id=user["id"], username=user["username"], role=user["role"], email=user["email"]),
        resource_type="user",
        resource_id=user["id"],
    )
    return success_response(
        {
            "user": serialize_user(user),
            "redirectTo": "/account" if user["role"] == Role.VIEWER.value else "/admin",
        },
        message="ログインしました",
    )


@app.post("/api/auth/logout")
async def logout(request: Request, response: Response):
    user = get_optional_user(request)
    clear_auth_cookie(response)
    if user is not None:
        audit_request(request, AuditAction.LOGOUT, user=user, resource_type="user", resource_id=user.id)
    return success_response(None, message="ログアウトしました")


@app.get("/api/auth/me")
async def get_me(user: AuthUser = Depends(require_user)):
    row = await fetch_one_with_retry(
        sa.select(users).where(users.c.id == user.id, users.c.is_active == sa.true())
    )
    if row is None:
        raise HTTPException(status_code=404, detail=not_found_message("ユーザー"))
    return success_response(serialize_user(row))


# ============ Videos ============


def _category_filter(category: str):
    """Condition matching videos in a category given by numeric id or slug."""
    if category.isdigit():
        matches = video_categories.c.category_id == int(category)
    else:
        matches = video_categories.c.category_id.in_(
            sa.select(categories.c.id).where(categories.c.slug == category)
        )
    return videos.c.id.in_(sa.select(video_categories.c.video_id).where(matches))


@app.get("/api/videos")
async def list_videos(
    request: Request,
    page: Optional[str] = None,
    limit: Optional[str] = None,
    sort: Optional[str] = None,
    category: Optional[str] = None,
    tag: Optional[str] = None,
    tags_param: Optional[str] = Query(default=None, alias="tags"),
    search: Optional[str] = None,
    q: Optional[str] = None,
    uploader: Optional[str] = None,
    includePrivate: bool = False,
    myVideosOnly: bool = False,
):
    """
    List videos visible to the caller.

    Anonymous callers see PUBLIC videos; signed-in users and allowed networks
    also see PRIVATE ones. includePrivate / myVideosOnly are console options
    for ADMIN and CURATOR: CURATORs only ever see their own videos there.
    """
    page_num = clamp_page(page or 1)
    page_size = clamp_limit(limit, default=DEFAULT_PAGE_SIZE)
    user = get_optional_user(request)

    conditions = []
    if includePrivate or myVideosOnly:
        user = authenticate(request, STAFF_ROLES)
        if myVideosOnly or user.role == Role.CURATOR.value:
            conditions.append(videos.c.uploader_id == user.id)
        if not includePrivate:
            conditions.append(videos.c.visibility.in_(visible_visibilities(True)))
    else:
        internal = await has_internal_access(request, user)
        conditions.append(videos.c.visibility.in_(visible_visibilities(internal)))
        conditions.append(videos.c.status.in_([VideoStatus.PROCESSING.value, VideoStatus.COMPLETED.value]))

    if category:
        conditions.append(_category_filter(category))

    tag_names = [name.strip() for name in (tag or tags_param or "").split(",") if name.strip()]
    if tag_names:
        conditions.append(
            videos.c.id.in_(
                sa.select(video_tags.c.video_id)
                .select_from(video_tags.join(tags, video_tags.c.tag_id == tags.c.id))
                .where(tags.c.name.in_(tag_names))
            )
        )

    term = (search or q or "").strip()
    if term:
        pattern = f"%{term}%"
        conditions.append(sa.or_(videos.c.title.ilike(pattern), videos.c.description.ilike(pattern)))

    if uploader:
        conditions.append(users.c.username == uploader)

    order_by = _VIDEO_SORTS.get(sort or VideoSort.LATEST.value, _VIDEO_SORTS[VideoSort.LATEST.value])
    rows = await database.fetch_all(
        video_select()
        .where(*conditions)
        .order_by(*order_by, videos.c.id.desc())
        .limit(page_size)
        .offset(offset_for(page_num, page_size))
    )
    total = await database.fetch_val(
        sa.select(sa.func.count())
        .select_from(videos.join(users, videos.c.uploader_id == users.c.id))
        .where(*conditions)
    )

    return success_response(await serialize_videos(rows), pagination=build_pagination(page_num, page_size, total))


@app.get("/api/videos/{video_id}")
async def get_video(request: Request, video_id: str):
    row = await database.fetch_one(video_select().where(videos.c.video_id == video_id))
    if row is None:
        raise HTTPException(status_code=404, detail=not_found_message("動画"))

    user = get_optional_user(request)
    internal = await has_internal_access(request, user)
    if not can_view(row["visibility"], row["uploader_id"], user, internal):
        if row["visibility"] == Visibility.PRIVATE.value:
            raise HTTPException(status_code=403, detail=PRIVATE_CONTENT_MESSAGE)
        raise HTTPException(status_code=404, detail=not_found_message("動画"))

    data = (await serialize_videos([row]))[0]
    post = await database.fetch_one(
        sa.select(posts.c.post_id, posts.c.visibility).where(posts.c.video_id == row["id"]).limit(1)
    )
    data["postId"] = post["post_id"] if post else None
    if user is not None:
        data["isFavorite"] = bool(
            await database.fetch_val(
                sa.select(sa.func.count())
                .select_from(favorites)
                .where(favorites.c.user_id == user.id, favorites.c.video_id == row["id"])
            )
        )
    return success_response(data)


@app.post("/api/videos/{video_id}/view-progress")
async def report_view_progress(request: Request, video_id: str):
    """
    Record playback progress for a video.

    Counts a view once per session fingerprint when either threshold is
    crossed. Signed-in users also get their history updated.
    """
    try:
        body = await request.json()
        watch_duration, completion_rate = parse_progress_payload(body)
    except (InvalidProgressError, json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Invalid parameters")

    user = get_optional_user(request)
    try:
        result = await record_view_progress(
            video_id,
            watch_duration,
            completion_rate,
            request.headers,
            user_id=user.id if user else None,
        )
    except DatabaseLockedError:
        raise
    except Exception as e:
        logger.exception(f"Failed to record view progress for video {video_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")

    if result is None:
        raise HTTPException(status_code=404, detail="Video not found")
    return success_response(result)


# ============ Categories and tags ============


@app.get("/api/categories")
async def list_categories(request: Request):
    """All categories in display order, with the number of videos the caller can see."""
    user = get_optional_user(request)
    internal = await has_internal_access(request, user)
    video_count = (
        sa.select(sa.func.count(video_categories.c.video_id))
        .select_from(video_categories.join(videos, video_categories.c.video_id == videos.c.id))
        .where(
            video_categories.c.category_id == categories.c.id,
            videos.c.visibility.in_(visible_visibilities(internal)),
        )
        .scalar_subquery()
    )
    rows = await database.fetch_all(
        sa.select(categories, video_count.label("video_count")).order_by(
            categories.c.sort_order, categories.c.name
        )
    )
    return success_response(
        [
            {
                "id": row["id"],
                "name": row["name"],
                "slug": row["slug"],
                "description": row["description"],
                "color": row["color"],
                "sortOrder": row["sort_order"],
                "videoCount": int(row["video_count"] or 0),
            }
            for row in rows
        ]
    )


def _tag_video_count():
    return (
        sa.select(sa.func.count(video_tags.c.video_id))
        .where(video_tags.c.tag_id == tags.c.id)
        .scalar_subquery()
        .label("video_count")
    )


def _serialize_tag(row) -> dict:
    return {"id": row["id"], "name": row["name"], "videoCount": int(row["video_count"] or 0)}


@app.get("/api/tags")
async def list_tags():
    rows = await database.fetch_all(sa.select(tags.c.id, tags.c.name, _tag_video_count()).order_by(tags.c.name))
    return success_response([_serialize_tag(row) for row in rows])


@app.post("/api/tags")
async def create_tag(request: Request, data: TagCreate, user: AuthUser = Depends(require_staff)):
    if not data.name:
        raise HTTPException(status_code=400, detail="名前は必須です")

    existing = await database.fetch_val(sa.select(tags.c.id).where(tags.c.name == data.name))
    if existing:
        raise HTTPException(status_code=400, detail="この名前のタグは既に存在します")

    now = datetime.now(timezone.utc)
    try:
        tag_id = await db_execute_with_retry(tags.insert().values(name=data.name, created_at=now, updated_at=now))
    except Exception as e:
        if is_unique_violation(e):
            raise HTTPException(status_code=400, detail="この名前のタグは既に存在します")
        raise

    audit_request(request, AuditAction.TAG_CREATE, user=user, resource_type="tag", resource_id=tag_id,
                  resource_name=data.name)
    return success_response({"id": tag_id, "name": data.name, "videoCount": 0}, message="タグを作成しました")


@app.put("/api/tags/{tag_id}")
async def update_tag(request: Request, tag_id: int, data: TagUpdate, user: AuthUser = Depends(require_staff)):
    if not data.name:
        raise HTTPException(status_code=400, detail="名前は必須です")

    existing = await database.fetch_one(sa.select(tags).where(tags.c.id == tag_id))
    if existing is None:
        raise HTTPException(status_code=404, detail=not_found_message("タグ"))

    duplicate = await database.fetch_val(sa.select(tags.c.id).where(tags.c.name == data.name, tags.c.id != tag_id))
    if duplicate:
        raise HTTPException(status_code=400, detail="この名前のタグは既に存在します")

    await db_execute_with_retry(
        tags.update().where(tags.c.id == tag_id).values(name=data.name, updated_at=datetime.now(timezone.utc))
    )
    audit_request(request, AuditAction.TAG_UPDATE, user=user, resource_type="tag", resource_id=tag_id,
                  resource_name=data.name, details={"previous_name": existing["name"]})
    row = await database.fetch_one(sa.select(tags.c.id, tags.c.name, _tag_video_count()).where(tags.c.id == tag_id))
    return success_response(_serialize_tag(row), message="タグを更新しました")


@app.delete("/api/tags/{tag_id}")
async def delete_tag(request: Request, tag_id: int, user: AuthUser = Depends(require_staff)):
    existing = await database.fetch_one(sa.select(tags).where(tags.c.id == tag_id))
    if existing is None:
        raise HTTPException(status_code=404, detail=not_found_message("タグ"))

    in_use = await database.fetch_val(
        sa.select(sa.func.count()).select_from(video_tags).where(video_tags.c.tag_id == tag_id)
    )
    if in_use:
        raise HTTPException(status_code=400, detail="このタグは動画で使用されているため削除できません")

    await db_execute_with_retry(tags.delete().where(tags.c.id == tag_id))
    audit_request(request, AuditAction.TAG_DELETE, user=user, resource_type="tag", resource_id=tag_id,
                  resource_name=existing["name"])
    return success_response(None, message="タグを削除しました")


# ============ Posts ============


async def _playlist_items(playlist_pk: int, allowed_visibilities: List[str]) -> List[dict]:
    rows = await database.fetch_all(
        video_select()
        .join(playlist_videos, playlist_videos.c.video_id == videos.c.id)
        .where(playlist_videos.c.playlist_id == playlist_pk, videos.c.visibility.in_(allowed_visibilities))
        .order_by(playlist_videos.c.sort_order, playlist_videos.c.id)
    )
    return await serialize_videos(rows)


@app.get("/api/posts/{post_id}")
async def get_post(request: Request, post_id: str):
    post = await database.fetch_one(sa.select(posts).where(posts.c.post_id == post_id))
    if post is None:
        raise HTTPException(status_code=404, detail=not_found_message("投稿"))

    user = get_optional_user(request)
    internal = await has_internal_access(request, user)
    if not can_view(post["visibility"], post["creator_id"], user, internal):
        if post["visibility"] == Visibility.DRAFT.value:
            raise HTTPException(status_code=403, detail="この投稿は非公開に設定されています")
        raise HTTPException(status_code=403, detail=PRIVATE_CONTENT_MESSAGE)

    data = serialize_post(post)
    creator = await database.fetch_one(
        sa.select(users.c.id, users.c.username, users.c.display_name, users.c.department).where(
            users.c.id == post["creator_id"]
        )
    )
    if creator is not None:
        data["creator"] = {
            "id": creator["id"],
            "username": creator["username"],
            "displayName": creator["display_name"],
            "department": creator["department"],
        }

    if post["post_type"] == PostType.VIDEO.value and post["video_id"] is not None:
        row = await database.fetch_one(video_select().where(videos.c.id == post["video_id"]))
        data["video"] = (await serialize_videos([row]))[0] if row else None
    elif post["post_type"] == PostType.PLAYLIST.value and post["playlist_id"] is not None:
        playlist = await database.fetch_one(sa.select(playlists).where(playlists.c.id == post["playlist_id"]))
        if playlist is not None:
            items = await _playlist_items(playlist["id"], visible_visibilities(internal))
            data["playlist"] = serialize_playlist(playlist, items)
    return success_response(data)


# ============ Playlists ============


def _playlist_post_join():
    return playlists.join(
        posts,
        sa.and_(posts.c.playlist_id == playlists.c.id, posts.c.post_type == PostType.PLAYLIST.value),
    )


async def _get_playlist_with_post(playlist_id: str):
    return await database.fetch_one(
        sa.select(
            playlists,
            posts.c.post_id,
            posts.c.visibility,
            posts.c.published_at,
        )
        .select_from(_playlist_post_join())
        .where(playlists.c.playlist_id == playlist_id)
    )


def _serialize_playlist_row(row, items: Optional[list] = None) -> dict:
    data = serialize_playlist(row, items)
    data["postId"] = row["post_id"]
    data["visibility"] = row["visibility"]
    return data


async def _resolve_playlist_videos(video_ids: List[str]) -> list:
    """Videos for a playlist in the requested order; all must exist and not be DRAFT."""
    unique_ids = list(dict.fromkeys(video_ids))
    rows = await database.fetch_all(
        sa.select(videos.c.id, videos.c.video_id, videos.c.thumbnail_url).where(
            videos.c.video_id.in_(unique_ids),
            videos.c.visibility.in_(visible_visibilities(True)),
        )
    )
    if len(rows) != len(unique_ids):
        raise HTTPException(status_code=400, detail="選択された動画の一部が見つからないか、非公開です")
    by_public_id = {row["video_id"]: row for row in rows}
    return [by_public_id[public_id] for public_id in unique_ids]


async def _replace_playlist_videos(playlist_pk: int, video_rows: list) -> None:
    await database.execute(playlist_videos.delete().where(playlist_videos.c.playlist_id == playlist_pk))
    for position, row in enumerate(video_rows, start=1):
        await database.execute(
            playlist_videos.insert().values(playlist_id=playlist_pk, video_id=row["id"], sort_order=position)
        )


@app.get("/api/playlists")
async def list_playlists(
    request: Request,
    page: Optional[str] = None,
    limit: Optional[str] = None,
    creatorId: Optional[int] = None,
    search: Optional[str] = None,
    visibility: Optional[str] = None,
):
    page_num = clamp_page(page or 1)
    page_size = clamp_limit(limit)
    user = get_optional_user(request)
    allowed = visible_visibilities(await has_internal_access(request, user))

    conditions = [posts.c.visibility.in_(allowed)]
    requested = normalize_visibility(visibility)
    if requested:
        conditions.append(posts.c.visibility == requested)
    if creatorId is not None:
        conditions.append(playlists.c.creator_id == creatorId)
    if search:
        pattern = f"%{search}%"
        conditions.append(sa.or_(playlists.c.title.ilike(pattern), playlists.c.description.ilike(pattern)))

    rows = await database.fetch_all(
        sa.select(playlists, posts.c.post_id, posts.c.visibility, posts.c.published_at)
        .select_from(_playlist_post_join())
        .where(*conditions)
        .order_by(playlists.c.created_at.desc(), playlists.c.id.desc())
        .limit(page_size)
        .offset(offset_for(page_num, page_size))
    )
    total = await database.fetch_val(
        sa.select(sa.func.count()).select_from(_playlist_post_join()).where(*conditions)
    )
    return success_response(
        [_serialize_playlist_row(row) for row in rows],
        pagination=build_pagination(page_num, page_size, total),
    )


@app.get("/api/playlists/{playlist_id}")
async def get_playlist(request: Request, playlist_id: str):
    row = await _get_playlist_with_post(playlist_id)
    if row is None:
        raise HTTPException(status_code=404, detail=not_found_message("プレイリスト"))

    user = get_optional_user(request)
    internal = await has_internal_access(request, user)
    if not can_view(row["visibility"], row["creator_id"], user, internal):
        if row["visibility"] == Visibility.PRIVATE.value:
            raise HTTPException(status_code=403, detail=PRIVATE_CONTENT_MESSAGE)
        raise HTTPException(status_code=404, detail=not_found_message("プレイリスト"))

    allowed = visible_visibilities(internal)
    if user is not None and can_modify(user, row["creator_id"]):
        allowed = [v.value for v in Visibility]
    items = await _playlist_items(row["id"], allowed)
    return success_response(_serialize_playlist_row(row, items))


@app.post("/api/playlists")
async def create_playlist(request: Request, data: PlaylistCreate, user: AuthUser = Depends(require_staff)):
    if not data.title:
        raise HTTPException(status_code=400, detail="タイトルは必須です")
    if not data.video_ids:
        raise HTTPException(status_code=400, detail="少なくとも1つの動画を選択してください")
    visibility = normalize_visibility(data.visibility, default=Visibility.PUBLIC.value)
    if visibility is None:
        raise HTTPException(status_code=400, detail=INVALID_VISIBILITY_MESSAGE)

    video_rows = await _resolve_playlist_videos(data.video_ids)
    playlist_public_id = await generate_unique_id(playlists, playlists.c.playlist_id)
    post_public_id = await generate_unique_id(posts, posts.c.post_id)
    now = datetime.now(timezone.utc)

    async with database.transaction():
        playlist_pk = await database.execute(
            playlists.insert().values(
                playlist_id=playlist_public_id,
                title=data.title,
                description=(data.description or "").strip() or None,
                thumbnail_url=video_rows[0]["thumbnail_url"],
                creator_id=user.id,
                created_at=now,
                updated_at=now,
            )
        )
        await _replace_playlist_videos(playlist_pk, video_rows)
        await database.execute(
            posts.insert().values(
                post_id=post_public_id,
                title=data.title,
                description=(data.description or "").strip() or None,
                post_type=PostType.PLAYLIST.value,
                playlist_id=playlist_pk,
                creator_id=user.id,
                visibility=visibility,
                published_at=now if visibility != Visibility.DRAFT.value else None,
                created_at=now,
                updated_at=now,
            )
        )
    await refresh_playlist_totals(playlist_pk)

    audit_request(request, AuditAction.PLAYLIST_CREATE, user=user, resource_type="playlist",
                  resource_id=playlist_public_id, resource_name=data.title)
    row = await _get_playlist_with_post(playlist_public_id)
    return success_response(_serialize_playlist_row(row), message="プレイリストを作成しました")


@app.put("/api/playlists/{playlist_id}")
async def update_playlist(
    request: Request,
    playlist_id: str,
    data: PlaylistUpdate,
    user: AuthUser = Depends(require_staff),
):
    row = await _get_playlist_with_post(playlist_id)
    if row is None:
        raise HTTPException(status_code=404, detail=not_found_message("プレイリスト"))
    ensure_owner_or_admin(user, row["creator_id"], "自分が作成したプレイリストのみ編集できます")

    if data.title is not None and not data.title:
        raise HTTPException(status_code=400, detail="タイトルは必須です")
    if data.video_ids is not None and not data.video_ids:
        raise HTTPException(status_code=400, detail="少なくとも1つの動画を選択してください")
    visibility = None
    if data.visibility is not None:
        visibility = normalize_visibility(data.visibility)
        if visibility is None:
            raise HTTPException(status_code=400, detail=INVALID_VISIBILITY_MESSAGE)

    video_rows = await _resolve_playlist_videos(data.video_ids) if data.video_ids else None
    now = datetime.now(timezone.utc)

    playlist_values = {"updated_at": now}
    post_values = {"updated_at": now}
    if data.title is not None:
        playlist_values["title"] = post_values["title"] = data.title
    if data.description is not None:
        playlist_values["description"] = post_values["description"] = data.description.strip() or None
    if visibility is not None:
        post_values["visibility"] = visibility
        if visibility != Visibility.DRAFT.value and row["published_at"] is None:
            post_values["published_at"] = now
    if video_rows:
        playlist_values["thumbnail_url"] = video_rows[0]["thumbnail_url"]

    async with database.transaction():
        await database.execute(playlists.update().where(playlists.c.id == row["id"]).values(**playlist_values))
        await database.execute(
            posts.update()
            .where(posts.c.playlist_id == row["id"], posts.c.post_type == PostType.PLAYLIST.value)
            .values(**post_values)
        )
        if video_rows:
            await _replace_playlist_videos(row["id"], video_rows)
    await refresh_playlist_totals(row["id"])

    audit_request(request, AuditAction.PLAYLIST_UPDATE, user=user, resource_type="playlist",
                  resource_id=playlist_id, resource_name=data.title or row["title"])
    updated = await _get_playlist_with_post(playlist_id)
    return success_response(_serialize_playlist_row(updated), message="プレイリストを更新しました")


@app.delete("/api/playlists/{playlist_id}")
async def delete_playlist(request: Request, playlist_id: str, user: AuthUser = Depends(require_staff)):
    row = await database.fetch_one(sa.select(playlists).where(playlists.c.playlist_id == playlist_id))
    if row is None:
        raise HTTPException(status_code=404, detail=not_found_message("プレイリスト"))
    ensure_owner_or_admin(user, row["creator_id"], "自分が作成したプレイリストのみ削除できます")

    await delete_playlist_and_related(row["id"])
    audit_request(request, AuditAction.PLAYLIST_DELETE, user=user, resource_type="playlist",
                  resource_id=playlist_id, resource_name=row["title"])
    return success_response(None, message="プレイリストを削除しました")


# ============ Upload and transcode ============


async def save_upload_with_size_limit(file: UploadFile, upload_path: Path, max_size: int = MAX_UPLOAD_SIZE) -> int:
    """
    Stream upload to disk with size validation.
    Returns the total bytes written.
    Raises HTTPException if file exceeds max_size.
    """
    total_size = 0
    try:
        with open(upload_path, "wb") as f:
            while True:
                chunk = await file.read(UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                total_size += len(chunk)
                if total_size > max_size:
                    f.close()
                    upload_path.unlink(missing_ok=True)
                    max_size_gb = max_size / (1024 * 1024 * 1024)
                    raise HTTPException(
                        status_code=413,
                        detail=f"ファイルサイズが大きすぎます。最大{max_size_gb:.0f}GBまでアップロードできます",
                    )
                f.write(chunk)
    except HTTPException:
        raise
    except OSError as e:
        upload_path.unlink(missing_ok=True)
        logger.warning(f"Storage error during upload to {upload_path}: {e}")
        raise HTTPException(
            status_code=503,
            detail="ストレージが一時的に利用できません。しばらくしてから再試行してください",
            headers={"Retry-After": "30"},
        )

    return total_size


def _parse_tag_field(raw: Optional[str]) -> List[str]:
    """Tags arrive as a JSON array or a comma-separated string."""
    if not raw:
        return []
    raw = raw.strip()
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            return [str(item) for item in parsed]
    return [part for part in raw.split(",")]


def _parse_form_datetime(value: Optional[str]) -> Optional[datetime]:
    try:
        return parse_datetime(value)
    except ValueError:
        raise HTTPException(status_code=400, detail="日時の形式が正しくありません")


@app.post("/api/upload")
@limiter.limit(RATE_LIMIT_UPLOAD)
async def upload_video(
    request: Request,
    file: Optional[UploadFile] = File(default=None),
    title: Optional[str] = Form(default=None),
    description: Optional[str] = Form(default=None),
    category: Optional[str] = Form(default=None),
    tag_field: Optional[str] = Form(default=None, alias="tags"),
    visibility: Optional[str] = Form(default=None),
    scheduleType: Optional[str] = Form(default=None),
    scheduledPublishAt: Optional[str] = Form(default=None),
    scheduledUnpublishAt: Optional[str] = Form(default=None),
    preset: Optional[str] = Form(default=None),
):
    """
    Upload a video file and hand it to the GPU transcoder.

    Creates the video and its post (sharing the public id), links the
    category and tags, then submits the file. A scheduled upload stays DRAFT
    until the scheduled publisher releases it.
    """
    user = authenticate(request, STAFF_ROLES)

    title = (title or "").strip()
    description = (description or "").strip()
    category = (category or "").strip()
    if not title or not description or not category:
        raise HTTPException(status_code=400, detail="タイトル、説明、カテゴリは必須です")

    visibility_value = normalize_visibility(visibility, default=Visibility.PUBLIC.value)
    if visibility_value is None:
        raise HTTPException(status_code=400, detail=INVALID_VISIBILITY_MESSAGE)

    now = datetime.now(timezone.utc)
    is_scheduled = scheduleType == "scheduled"
    publish_at = _parse_form_datetime(scheduledPublishAt) if is_scheduled else None
    unpublish_at = _parse_form_datetime(scheduledUnpublishAt)
    if is_scheduled and publish_at is None:
        raise HTTPException(status_code=400, detail="予約投稿時刻が必要です")
    try:
        validate_schedule(publish_at, unpublish_at, now)
    except ScheduleValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if is_scheduled:
        visibility_value = Visibility.DRAFT.value

    category_row = await database.fetch_one(sa.select(categories.c.id).where(categories.c.slug == category))
    if category_row is None:
        raise HTTPException(
            status_code=400,
            detail=f"カテゴリ「{category}」が見つかりません。有効なカテゴリを選択してください。",
        )

    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="動画ファイルが必要です")
    extension = Path(file.filename).suffix.lower()
    if extension not in SUPPORTED_VIDEO_EXTENSIONS:
        raise HTTPException(
            status_code=400,
            detail=f"対応していないファイル形式です。対応形式: {SUPPORTED_VIDEO_EXTENSIONS_STR}",
        )

    public_id = await generate_unique_id(videos, videos.c.video_id)
    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    upload_path = UPLOADS_DIR / f"{public_id}{extension}"
    file_size = await save_upload_with_size_limit(file, upload_path)

    published_at = now if (visibility_value == Visibility.PUBLIC.value and not is_scheduled) else None
    try:
        async with database.transaction():
            video_pk = await database.execute(
                videos.insert().values(
                    video_id=public_id,
                    title=title,
                    description=description,
                    uploader_id=user.id,
                    original_filename=file.filename,
                    file_path=upload_path.name,
                    file_size=file_size,
                    mime_type=file.content_type,
                    visibility=visibility_value,
                    status=VideoStatus.UPLOADING.value,
                    is_scheduled=is_scheduled,
                    scheduled_publish_at=publish_at,
                    scheduled_unpublish_at=unpublish_at,
                    published_at=published_at,
                    created_at=now,
                    updated_at=now,
                )
            )
            await database.execute(
                posts.insert().values(
                    post_id=public_id,
                    title=title,
                    description=description,
                    post_type=PostType.VIDEO.value,
                    video_id=video_pk,
                    creator_id=user.id,
                    visibility=visibility_value,
                    is_scheduled=is_scheduled,
                    scheduled_publish_at=publish_at,
                    scheduled_unpublish_at=unpublish_at,
                    published_at=published_at,
                    created_at=now,
                    updated_at=now,
                )
            )
    except Exception:
        upload_path.unlink(missing_ok=True)
        raise

    try:
        await database.execute(
            video_categories.insert().values(video_id=video_pk, category_id=category_row["id"])
        )
    except Exception as e:
        logger.warning(f"Failed to link category {category} to video {public_id}: {e}")
    try:
        await set_video_tags(video_pk, _parse_tag_field(tag_field))
    except Exception as e:
        logger.warning(f"Failed to link tags to video {public_id}: {e}")

    job = await submit_transcode(
        video_pk, public_id, title, upload_path, file.filename, file.content_type, preset
    )

    audit_request(request, AuditAction.VIDEO_UPLOAD, user=user, resource_type="video", resource_id=public_id,
                  resource_name=title, details={"file_size": file_size, "transcode_job": job["jobId"]})

    status = await database.fetch_val(sa.select(videos.c.status).where(videos.c.id == video_pk))
    return success_response(
        {
            "videoId": public_id,
            "video": {"id": video_pk, "videoId": public_id, "title": title, "status": status},
            "transcodeJob": job,
        },
        message="動画をアップロードしました",
    )


async def _get_job_for_user(job_id: str, user: AuthUser, forbidden_message: str):
    job = await get_job_with_owner(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="変換ジョブが見つかりません")
    ensure_owner_or_admin(user, job["uploader_id"], forbidden_message)
    return job


@app.get("/api/transcode/job/{job_id}")
async def get_transcode_job(job_id: str, user: AuthUser = Depends(require_user)):
    """
    Current state of a transcode job, refreshed from the GPU server.

    When the server cannot be reached the stored state is returned as-is.
    """
    job = await _get_job_for_user(job_id, user, "アクセス権限がありません")
    try:
        result = await refresh_job(job)
    except GPUTranscoderError as e:
        logger.warning(f"Could not refresh transcode job {job_id}: {e.message}")
        return success_response({"job": serialize_job(job), "gpuStatus": None, "gpuAvailable": False})
    return success_response({**result, "gpuAvailable": True})


@app.post("/api/transcode/job/{job_id}/cancel")
async def cancel_transcode_job(request: Request, job_id: str, user: AuthUser = Depends(require_user)):
    job = await _get_job_for_user(job_id, user, "キャンセル権限がありません")
    try:
        data = await cancel_job(job)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    audit_request(request, AuditAction.TRANSCODE_CANCEL, user=user, resource_type="transcode_job",
                  resource_id=job_id)
    return success_response(data, message="変換ジョブがキャンセルされました")


@app.get("/api/transcode/status")
async def get_transcode_status(user: AuthUser = Depends(require_staff)):
    client = get_gpu_client()
    try:
        status = await client.get_system_status()
        queue = await client.get_queue_stats()
    except GPUTranscoderError as e:
        logger.error(f"GPU server status check failed: {e.message}")
        raise HTTPException(status_code=500, detail=ERROR_MESSAGES["transcoder_communication"])
    return success_response({"system": status, "queue": queue})


# ============ Signed-in user ============


def _optional_float(value: Optional[str]) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid parameters")


@app.get("/api/user/view-history")
async def get_view_history(
    page: Optional[str] = None,
    limit: Optional[str] = None,
    sortBy: Optional[str] = None,
    sortOrder: Optional[str] = None,
    minCompletionRate: Optional[str] = None,
    user: AuthUser = Depends(require_user),
):
    data = await list_view_history(
        user.id,
        clamp_page(page or 1),
        clamp_limit(limit),
        sort_by=sortBy,
        order=sortOrder,
        min_completion_rate=_optional_float(minCompletionRate),
    )
    return success_response(data)


@app.get("/api/user/daily-view-history")
async def get_daily_view_history(
    page: Optional[str] = None,
    limit: Optional[str] = None,
    sortBy: Optional[str] = None,
    sortOrder: Optional[str] = None,
    fromDate: Optional[str] = None,
    toDate: Optional[str] = None,
    minCompletionRate: Optional[str] = None,
    groupByDate: bool = False,
    user: AuthUser = Depends(require_user),
):
    try:
        data = await list_daily_view_history(
            user.id,
            clamp_page(page or 1),
            clamp_limit(limit),
            sort_by=sortBy,
            order=sortOrder,
            from_date=fromDate,
            to_date=toDate,
            min_completion_rate=_optional_float(minCompletionRate),
            group_by_date=groupByDate,
        )
    except ValueError:
        raise HTTPException(status_code=400, detail="日付の形式が正しくありません (YYYY-MM-DD)")
    return success_response(data)


@app.get("/api/user/view-history/stats")
async def get_view_history_statistics(user: AuthUser = Depends(require_user)):
    return success_response(await get_view_history_stats(user.id))


async def _get_video_pk(video_id: str) -> int:
    video_pk = await database.fetch_val(sa.select(videos.c.id).where(videos.c.video_id == video_id))
    if video_pk is None:
        raise HTTPException(status_code=404, detail=not_found_message("動画"))
    return video_pk


@app.get("/api/user/favorites")
async def get_favorites(
    page: Optional[str] = None,
    limit: Optional[str] = None,
    sortBy: Optional[str] = None,
    sortOrder: Optional[str] = None,
    categoryId: Optional[int] = None,
    search: Optional[str] = None,
    user: AuthUser = Depends(require_user),
):
    data = await list_favorites(
        user.id,
        clamp_page(page or 1),
        clamp_limit(limit, default=FAVORITES_DEFAULT_PAGE_SIZE, maximum=FAVORITES_MAX_PAGE_SIZE),
        sort_by=sortBy,
        order=sortOrder,
        category_id=categoryId,
        search=search,
    )
    return success_response(data)


@app.post("/api/user/favorites")
async def add_favorite(data: FavoriteCreate, user: AuthUser = Depends(require_user)):
    if not data.video_id:
        raise HTTPException(status_code=400, detail="動画IDが必要です")
    video_pk = await _get_video_pk(data.video_id)

    exists = await database.fetch_val(
        sa.select(favorites.c.id).where(favorites.c.user_id == user.id, favorites.c.video_id == video_pk)
    )
    if exists:
        raise HTTPException(status_code=409, detail="既にお気に入りに追加されています")

    try:
        favorite_id = await db_execute_with_retry(
            favorites.insert().values(user_id=user.id, video_id=video_pk, created_at=datetime.now(timezone.utc))
        )
    except Exception as e:
        if is_unique_violation(e):
            raise HTTPException(status_code=409, detail="既にお気に入りに追加されています")
        raise
    return success_response({"id": favorite_id, "videoId": data.video_id}, message="お気に入りに追加しました")


@app.get("/api/user/favorites/check")
async def check_favorites(
    videoId: Optional[str] = None,
    videoIds: Optional[str] = None,
    user: AuthUser = Depends(require_user),
):
    """Favorite state for one video (?videoId=) or several (?videoIds=a,b,c)."""
    requested = [v.strip() for v in (videoIds or "").split(",") if v.strip()]
    if videoId:
        requested.insert(0, videoId)
    if not requested:
        raise HTTPException(status_code=400, detail="動画IDが必要です")

    rows = await database.fetch_all(
        sa.select(videos.c.video_id)
        .select_from(favorites.join(videos, favorites.c.video_id == videos.c.id))
        .where(favorites.c.user_id == user.id, videos.c.video_id.in_(requested))
    )
    favorited = {row["video_id"] for row in rows}
    if videoId and not videoIds:
        return success_response({"videoId": videoId, "isFavorite": videoId in favorited})
    return success_response({"favorites": {public_id: public_id in favorited for public_id in requested}})


@app.delete("/api/user/favorites/{video_id}")
async def remove_favorite(video_id: str, user: AuthUser = Depends(require_user)):
    video_pk = await _get_video_pk(video_id)
    favorite_id = await database.fetch_val(
        sa.select(favorites.c.id).where(favorites.c.user_id == user.id, favorites.c.video_id == video_pk)
    )
    if favorite_id is None:
        raise HTTPException(status_code=404, detail=not_found_message("お気に入り"))
    await db_execute_with_retry(favorites.delete().where(favorites.c.id == favorite_id))
    return success_response(None, message="お気に入りから削除しました")


@app.get("/api/user/profile")
async def get_profile(user: AuthUser = Depends(require_user)):
    row = await fetch_one_with_retry(sa.select(users).where(users.c.id == user.id))
    if row is None:
        raise HTTPException(status_code=404, detail=not_found_message("ユーザー"))
    return success_response(serialize_user(row))


@app.put("/api/user/profile")
async def update_profile(request: Request, data: ProfileUpdate, user: AuthUser = Depends(require_user)):
    if not data.display_name or not data.email:
        raise HTTPException(status_code=400, detail="表示名とメールアドレスは必須です")

    row = await fetch_one_with_retry(sa.select(users).where(users.c.id == user.id))
    if row is None:
        raise HTTPException(status_code=404, detail=not_found_message("ユーザー"))

    email_taken = await database.fetch_val(
        sa.select(users.c.id).where(users.c.email == data.email, users.c.id != user.id)
    )
    if email_taken:
        raise HTTPException(status_code=400, detail="このメールアドレスは既に使用されています")

    values = {
        "display_name": data.display_name,
        "email": data.email,
        "department": data.department or None,
        "updated_at": datetime.now(timezone.utc),
    }
    if data.new_password:
        if not data.current_password:
            raise HTTPException(status_code=400, detail="現在のパスワードを入力してください")
        if not row["password_hash"]:
            raise HTTPException(status_code=400, detail="パスワードが設定されていません")
        if not verify_password(data.current_password, row["password_hash"]):
            raise HTTPException(status_code=400, detail="現在のパスワードが正しくありません")
        values["password_hash"] = hash_password(data.new_password)

    await db_execute_with_retry(users.update().where(users.c.id == user.id).values(**values))
    audit_request(request, AuditAction.USER_UPDATE, user=user, resource_type="user", resource_id=user.id,
                  details={"fields": sorted(k for k in values if k != "updated_at"), "self": True})
    updated = await fetch_one_with_retry(sa.select(users).where(users.c.id == user.id))
    return success_response(serialize_user(updated), message="プロフィールを更新しました")


# ============ Settings ============


@app.get("/api/settings")
async def get_public_settings():
    values = await get_settings_service().get_many(list(PUBLIC_SETTING_KEYS))
    return success_response(values)


@app.get("/api/settings/view-thresholds")
async def get_view_count_thresholds():
    thresholds = await get_view_thresholds()
    return success_response({"percent": thresholds.percent, "seconds": thresholds.seconds})


# ============ Cron ============


def verify_cron_token(request: Request) -> None:
    """Require Authorization: Bearer <CRON_SECRET_TOKEN>. An unset secret rejects everything."""
    authorization = request.headers.get("authorization", "")
    scheme, _, token = authorization.partition(" ")
    if not CRON_SECRET_TOKEN or scheme.lower() != "bearer" or not hmac.compare_digest(
        token.strip().encode(), CRON_SECRET_TOKEN.encode()
    ):
        logger.warning(f"Rejected cron request from {get_real_ip(request)} on {request.url.path}")
        raise HTTPException(status_code=401, detail="Unauthorized")


@app.post("/api/cron/view-history-cleanup")
async def cron_view_history_cleanup(request: Request):
    verify_cron_token(request)
    try:
        result = await run_scheduled_cleanup()
    except Exception as e:
        logger.exception(f"Scheduled view history cleanup failed: {e}")
        raise HTTPException(status_code=500, detail="視聴履歴の自動クリーンアップに失敗しました")
    return success_response(result, message=result.get("message"))


@app.get("/api/cron/view-history-cleanup")
async def cron_view_history_cleanup_status():
    """Read-only health check for the cleanup job; needs no cron token."""
    try:
        status = await get_cleanup_status()
    except Exception as e:
        logger.exception(f"View history cleanup status check failed: {e}")
        raise HTTPException(status_code=500, detail="Status check failed")
    return success_response(status)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=PUBLIC_PORT)
