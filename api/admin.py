"""
Admin API - the management console.
Runs on port 9001. Should not be exposed to the internet.

Every /api/* route requires an ADMIN or CURATOR token (AdminAuthMiddleware);
most routes narrow that to ADMIN. CURATORs may only touch content they
uploaded.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

import sqlalchemy as sa
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slugify import slugify

from api.audit import AuditAction, audit_request
from api.auth import (
    ALL_ROLES,
    STAFF_ROLES,
    AuthUser,
    decode_access_token,
    ensure_owner_or_admin,
    get_optional_user,
    get_token_from_request,
    hash_password,
    require_admin,
    require_staff,
    serialize_user,
)
from api.common import (
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    check_health,
    ensure_utc,
    get_real_ip,
    isoformat,
    register_exception_handlers,
    success_response,
)
from api.content import (
    delete_video_and_related,
    load_video_taxonomy,
    normalize_visibility,
    serialize_videos,
    set_video_categories,
    set_video_tags,
    video_select,
)
from api.database import (
    categories,
    configure_database,
    daily_view_history,
    database,
    favorites,
    playlists,
    posts,
    tags,
    users,
    video_categories,
    video_tags,
    videos,
    view_history,
    view_logs,
)
from api.db_retry import db_execute_with_retry, fetch_all_with_retry, fetch_one_with_retry
from api.enums import Role, ScheduleStatus, ScheduleType, VideoStatus, Visibility
from api.errors import ERROR_MESSAGES, is_unique_violation, not_found_message
from api.gpu_transcoder import close_gpu_client
from api.pagination import build_pagination, clamp_limit, clamp_page, offset_for
from api.scheduled_publisher import ScheduleValidationError, validate_schedule
from api.schemas import (
    CategoryCreate,
    CategoryReorder,
    CategoryUpdate,
    PostVisibilityUpdate,
    ScheduleBatch,
    ScheduleUpdate,
    SettingsBulkUpdate,
    SettingUpdate,
    UserCreate,
    UserTransfer,
    UserUpdate,
    VideoUpdate,
)
from api.settings_service import DEFAULT_SETTINGS, SettingsValidationError, get_settings_service
from api.transcoding import CONVERTED_URL_PREFIX, THUMBNAIL_URL_PREFIX
from api.view_history_cleanup import CleanupDisabledError, preview_cleanup, run_admin_cleanup
from config import (
    ADMIN_CORS_ALLOWED_ORIGINS,
    ADMIN_PORT,
    CONVERTED_DIR,
    RATE_LIMIT_ADMIN_DEFAULT,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_STORAGE_URL,
    THUMBNAILS_DIR,
    UPLOADS_DIR,
)

logger = logging.getLogger(__name__)

# Security event logger for admin authentication
security_logger = logging.getLogger("security.admin")

STATS_DEFAULT_LIMIT = 10
STATS_MAX_LIMIT = 50
RECENT_VIEWS_DAYS = 7
DAILY_VIEWS_DAYS = 30

VISIBILITY_LABELS = {
    Visibility.PUBLIC.value: "パブリック",
    Visibility.PRIVATE.value: "プライベート",
    Visibility.DRAFT.value: "非公開",
}

# Initialize rate limiter for admin API
limiter = Limiter(
    key_func=get_real_ip,
    storage_uri=RATE_LIMIT_STORAGE_URL if RATE_LIMIT_ENABLED else None,
    enabled=RATE_LIMIT_ENABLED,
)


class AdminAuthMiddleware:
    """
    Middleware to protect Admin API endpoints with authentication.

    Accepts the same JWT as the public app, from the auth cookie (browser UI)
    or an Authorization: Bearer header (CLI and API clients). The token's role
    must be ADMIN or CURATOR; route dependencies narrow further.

    Paths that are always allowed (no auth required):
    - /health (monitoring)
    - /api/auth/* (session check)
    - OPTIONS requests (CORS preflight)
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        method = scope.get("method", "")

        # Skip auth for non-API paths
        if not path.startswith("/api"):
            await self.app(scope, receive, send)
            return

        # Skip auth for OPTIONS (CORS preflight) requests
        if method == "OPTIONS":
            await self.app(scope, receive, send)
            return

        # Skip auth for auth endpoints
        if path.startswith("/api/auth/"):
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        client_ip = get_real_ip(request)
        token = get_token_from_request(request)

        if not token:
            security_logger.warning(
                "Admin API auth failed: no credentials",
                extra={"event": "auth_failure", "reason": "no_credentials", "path": path, "client_ip": client_ip},
            )
            response = JSONResponse(
                status_code=401,
                content={"success": False, "error": ERROR_MESSAGES["auth_required"]},
            )
            await response(scope, receive, send)
            return

        user = decode_access_token(token)
        if user is None:
            security_logger.warning(
                "Admin API auth failed: invalid token",
                extra={"event": "auth_failure", "reason": "invalid_token", "path": path, "client_ip": client_ip},
            )
            response = JSONResponse(
                status_code=401,
                content={"success": False, "error": ERROR_MESSAGES["invalid_token"]},
            )
            await response(scope, receive, send)
            return

        if user.role not in STAFF_ROLES:
            security_logger.warning(
                "Admin API auth failed: role not permitted",
                extra={
                    "event": "auth_failure",
                    "reason": "insufficient_role",
                    "path": path,
                    "client_ip": client_ip,
                    "user_id": user.id,
                },
            )
            response = JSONResponse(
                status_code=403,
                content={"success": False, "error": ERROR_MESSAGES["staff_required"]},
            )
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown."""
    await database.connect()
    await configure_database()
    yield
    await close_gpu_client()
    await database.disconnect()


app = FastAPI(title="orgvideo Admin", description="Video management API", lifespan=lifespan)

# Register rate limiter with the app
app.state.limiter = limiter
register_exception_handlers(app)

# Added first so it runs inside the header middlewares and rejections still get them
app.add_middleware(AdminAuthMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestIDMiddleware)

# Internal console: every origin is allowed unless ORGVIDEO_ADMIN_CORS_ORIGINS narrows it
app.add_middleware(
    CORSMiddleware,
    allow_origins=ADMIN_CORS_ALLOWED_ORIGINS if ADMIN_CORS_ALLOWED_ORIGINS else [],
    allow_credentials=bool(ADMIN_CORS_ALLOWED_ORIGINS),
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
    expose_headers=["X-Request-ID"],
)


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    result = await check_health()
    return JSONResponse(
        status_code=result["status_code"],
        content={"status": "healthy" if result["healthy"] else "unhealthy", "checks": result["checks"]},
    )


# ============ Authentication ============


@app.get("/api/auth/check")
async def auth_check(request: Request):
    """Whether the caller holds a token that the admin console accepts."""
    user = get_optional_user(request)
    if user is None or user.role not in STAFF_ROLES:
        return success_response({"authenticated": False})
    return success_response(
        {
            "authenticated": True,
            "user": {"id": user.id, "username": user.username, "role": user.role, "email": user.email},
        }
    )


# ============ Users ============


def _normalize_role(role: Optional[str]) -> Optional[str]:
    candidate = (role or "").upper()
    return candidate if candidate in ALL_ROLES else None


async def _content_counts(user_id: int) -> dict:
    async def count(table, column):
        return await database.fetch_val(sa.select(sa.func.count()).select_from(table).where(column == user_id))

    return {
        "videos": await count(videos, videos.c.uploader_id),
        "posts": await count(posts, posts.c.creator_id),
        "playlists": await count(playlists, playlists.c.creator_id),
    }


async def _delete_user_rows(user_id: int) -> None:
    """Remove a user's personal rows and the user. Callers run this inside a transaction."""
    await database.execute(view_logs.update().where(view_logs.c.user_id == user_id).values(user_id=None))
    for table in (view_history, daily_view_history, favorites):
        await database.execute(table.delete().where(table.c.user_id == user_id))
    await database.execute(users.delete().where(users.c.id == user_id))


@app.get("/api/users")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def list_users(
    request: Request,
    page: Optional[str] = None,
    limit: Optional[str] = None,
    search: Optional[str] = None,
    role: Optional[str] = None,
    onlyUploaders: bool = False,
    user: AuthUser = Depends(require_staff),
):
    """
    List users.

    With onlyUploaders the result is an unpaginated list of users that have
    uploaded at least one video, for the video filter dropdown.
    """
    conditions = []
    if search:
        pattern = f"%{search.strip()}%"
        conditions.append(
            sa.or_(users.c.username.ilike(pattern), users.c.display_name.ilike(pattern), users.c.email.ilike(pattern))
        )
    if role and role.lower() != "all":
        conditions.append(users.c.role == role.upper())

    video_count = (
        sa.select(sa.func.count(videos.c.id)).where(videos.c.uploader_id == users.c.id).scalar_subquery()
    )

    if onlyUploaders:
        rows = await fetch_all_with_retry(
            sa.select(users.c.id, users.c.username, users.c.display_name, video_count.label("video_count"))
            .where(*conditions, video_count > 0)
            .order_by(users.c.display_name)
        )
        return success_response(
            [
                {
                    "id": row["id"],
                    "username": row["username"],
                    "displayName": row["display_name"],
                    "videoCount": row["video_count"],
                }
                for row in rows
            ]
        )

    page_num = clamp_page(page or 1)
    page_size = clamp_limit(limit)
    post_count = sa.select(sa.func.count(posts.c.id)).where(posts.c.creator_id == users.c.id).scalar_subquery()
    rows = await fetch_all_with_retry(
        sa.select(users, video_count.label("video_count"), post_count.label("post_count"))
        .where(*conditions)
        .order_by(users.c.created_at.desc(), users.c.id.desc())
        .limit(page_size)
        .offset(offset_for(page_num, page_size))
    )
    total = await database.fetch_val(sa.select(sa.func.count()).select_from(users).where(*conditions))

    items = []
    for row in rows:
        data = serialize_user(row)
        data["failedLoginCount"] = row["failed_login_count"]
        data["lastFailedLoginAt"] = isoformat(row["last_failed_login_at"])
        data["videoCount"] = row["video_count"]
        data["postCount"] = row["post_count"]
        items.append(data)
    return success_response(items, pagination=build_pagination(page_num, page_size, total))


@app.post("/api/users")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def create_user(request: Request, data: UserCreate, user: AuthUser = Depends(require_admin)):
    if not data.username or not data.display_name or not data.email or not data.password or not data.role:
        raise HTTPException(status_code=400, detail="ユーザー名、表示名、メールアドレス、パスワード、役割は必須です")
    role = _normalize_role(data.role)
    if role is None:
        raise HTTPException(status_code=400, detail="無効な役割です")

    existing = await database.fetch_val(
        sa.select(users.c.id).where(sa.or_(users.c.username == data.username, users.c.email == data.email))
    )
    if existing:
        raise HTTPException(status_code=400, detail="このユーザー名またはメールアドレスは既に使用されています")

    now = datetime.now(timezone.utc)
    try:
        user_id = await db_execute_with_retry(
            users.insert().values(
                username=data.username,
                display_name=data.display_name,
                email=data.email,
                password_hash=hash_password(data.password),
                role=role,
                department=data.department or None,
                is_active=True,
                failed_login_count=0,
                created_at=now,
                updated_at=now,
            )
        )
    except Exception as e:
        if is_unique_violation(e):
            raise HTTPException(status_code=400, detail="このユーザー名またはメールアドレスは既に使用されています")
        raise

    audit_request(request, AuditAction.USER_CREATE, user=user, resource_type="user", resource_id=user_id,
                  resource_name=data.username, details={"role": role})
    row = await fetch_one_with_retry(sa.select(users).where(users.c.id == user_id))
    return success_response(serialize_user(row), message="ユーザーを作成しました")


@app.put("/api/users/{user_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def update_user(request: Request, user_id: int, data: UserUpdate, user: AuthUser = Depends(require_admin)):
    existing = await fetch_one_with_retry(sa.select(users).where(users.c.id == user_id))
    if existing is None:
        raise HTTPException(status_code=404, detail=not_found_message("ユーザー"))

    values = {}
    if data.display_name is not None:
        if not data.display_name:
            raise HTTPException(status_code=400, detail="表示名は必須です")
        values["display_name"] = data.display_name
    if data.email is not None:
        if not data.email:
            raise HTTPException(status_code=400, detail="メールアドレスは必須です")
        taken = await database.fetch_val(
            sa.select(users.c.id).where(users.c.email == data.email, users.c.id != user_id)
        )
        if taken:
            raise HTTPException(status_code=400, detail="このユーザー名またはメールアドレスは既に使用されています")
        values["email"] = data.email
    if data.role is not None:
        role = _normalize_role(data.role)
        if role is None:
            raise HTTPException(status_code=400, detail="無効な役割です")
        if user_id == user.id and role != Role.ADMIN.value:
            raise HTTPException(status_code=400, detail="自分自身の管理者権限は解除できません")
        values["role"] = role
    if data.department is not None:
        values["department"] = data.department or None
    if data.is_active is not None:
        if user_id == user.id and not data.is_active:
            raise HTTPException(status_code=400, detail="自分自身を無効化することはできません")
        values["is_active"] = data.is_active
    if data.password and data.password.strip():
        values["password_hash"] = hash_password(data.password)
        values["failed_login_count"] = 0
        values["last_failed_login_at"] = None

    if values:
        values["updated_at"] = datetime.now(timezone.utc)
        await db_execute_with_retry(users.update().where(users.c.id == user_id).values(**values))

    audit_request(
        request,
        AuditAction.USER_UPDATE,
        user=user,
        resource_type="user",
        resource_id=user_id,
        resource_name=existing["username"],
        details={"fields": sorted(k for k in values if k not in ("updated_at", "password_hash"))
                 + (["password"] if "password_hash" in values else [])},
    )
    row = await fetch_one_with_retry(sa.select(users).where(users.c.id == user_id))
    return success_response(serialize_user(row), message="ユーザーを更新しました")


@app.delete("/api/users/{user_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def delete_user(request: Request, user_id: int, user: AuthUser = Depends(require_admin)):
    if user_id == user.id:
        raise HTTPException(status_code=400, detail="自分自身を削除することはできません")

    existing = await fetch_one_with_retry(sa.select(users).where(users.c.id == user_id))
    if existing is None:
        raise HTTPException(status_code=404, detail=not_found_message("ユーザー"))

    counts = await _content_counts(user_id)
    if counts["videos"] or counts["posts"] or counts["playlists"]:
        raise HTTPException(status_code=400, detail="このユーザーはコンテンツを投稿しているため削除できません")

    async with database.transaction():
        await _delete_user_rows(user_id)

    audit_request(request, AuditAction.USER_DELETE, user=user, resource_type="user", resource_id=user_id,
                  resource_name=existing["username"])
    return success_response(None, message="ユーザーを削除しました")


@app.post("/api/users/{user_id}/transfer")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def transfer_user_content(
    request: Request,
    user_id: int,
    data: UserTransfer,
    user: AuthUser = Depends(require_admin),
):
    """Move every video, post and playlist of a user to another user, optionally deleting the source user."""
    if not data.target_user_id:
        raise HTTPException(status_code=400, detail="移譲先ユーザーIDが必要です")

    source = await fetch_one_with_retry(sa.select(users).where(users.c.id == user_id))
    if source is None:
        raise HTTPException(status_code=404, detail="移譲元ユーザーが見つかりません")
    target = await fetch_one_with_retry(sa.select(users).where(users.c.id == data.target_user_id))
    if target is None:
        raise HTTPException(status_code=404, detail="移譲先ユーザーが見つかりません")
    if not target["is_active"]:
        raise HTTPException(status_code=400, detail="移譲先ユーザーが無効になっています")
    if source["id"] == target["id"]:
        raise HTTPException(status_code=400, detail="自分自身に移譲することはできません")
    if data.delete_after_transfer and source["id"] == user.id:
        raise HTTPException(status_code=400, detail="現在ログイン中のユーザーは削除できません")

    now = datetime.now(timezone.utc)
    async with database.transaction():
        counts = await _content_counts(source["id"])
        await database.execute(
            videos.update().where(videos.c.uploader_id == source["id"]).values(uploader_id=target["id"], updated_at=now)
        )
        await database.execute(
            posts.update().where(posts.c.creator_id == source["id"]).values(creator_id=target["id"], updated_at=now)
        )
        await database.execute(
            playlists.update()
            .where(playlists.c.creator_id == source["id"])
            .values(creator_id=target["id"], updated_at=now)
        )
        if data.delete_after_transfer:
            await _delete_user_rows(source["id"])

    audit_request(
        request,
        AuditAction.USER_CONTENT_TRANSFER,
        user=user,
        resource_type="user",
        resource_id=source["id"],
        resource_name=source["username"],
        details={"target_user_id": target["id"], "transferred": counts, "user_deleted": data.delete_after_transfer},
    )

    suffix = "。ユーザーも削除されました。" if data.delete_after_transfer else "。"
    return success_response(
        {
            "sourceUser": {"id": source["id"], "username": source["username"], "displayName": source["display_name"]},
            "targetUser": {"id": target["id"], "username": target["username"], "displayName": target["display_name"]},
            "transferredContent": counts,
            "userDeleted": data.delete_after_transfer,
        },
        message=f"{source['display_name']}のコンテンツを{target['display_name']}に移譲しました{suffix}",
    )


# ============ Dashboard stats ============


def _group_counts(rows, key: str) -> dict:
    return {str(row[key]).lower(): row["count"] for row in rows if row[key] is not None}


@app.get("/api/stats")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def get_stats(
    request: Request,
    tagsLimit: Optional[str] = None,
    videosLimit: Optional[str] = None,
    categoriesLimit: Optional[str] = None,
    user: AuthUser = Depends(require_staff),
):
    """Dashboard numbers: content and user totals, top categories/tags/videos and viewing activity."""
    tags_limit = clamp_limit(tagsLimit, default=STATS_DEFAULT_LIMIT, maximum=STATS_MAX_LIMIT)
    videos_limit = clamp_limit(videosLimit, default=STATS_DEFAULT_LIMIT, maximum=STATS_MAX_LIMIT)
    categories_limit = clamp_limit(categoriesLimit, default=STATS_DEFAULT_LIMIT, maximum=STATS_MAX_LIMIT)

    now = datetime.now(timezone.utc)
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    completed = videos.c.status == VideoStatus.COMPLETED.value

    total_videos = await database.fetch_val(sa.select(sa.func.count()).select_from(videos).where(completed))
    total_users = await database.fetch_val(
        sa.select(sa.func.count()).select_from(users).where(users.c.is_active == sa.true())
    )
    total_views = await database.fetch_val(
        sa.select(sa.func.coalesce(sa.func.sum(videos.c.view_count), 0)).where(completed)
    )
    recent_uploads = await database.fetch_val(
        sa.select(sa.func.count()).select_from(videos).where(completed, videos.c.created_at >= month_start)
    )

    by_status = await database.fetch_all(
        sa.select(videos.c.status, sa.func.count().label("count")).group_by(videos.c.status)
    )
    by_visibility = await database.fetch_all(
        sa.select(videos.c.visibility, sa.func.count().label("count")).where(completed).group_by(videos.c.visibility)
    )
    by_role = await database.fetch_all(
        sa.select(users.c.role, sa.func.count().label("count"))
        .where(users.c.is_active == sa.true())
        .group_by(users.c.role)
    )

    category_count = sa.func.count(video_categories.c.video_id).label("video_count")
    top_categories = await database.fetch_all(
        sa.select(categories.c.id, categories.c.name, category_count)
        .select_from(categories.join(video_categories, video_categories.c.category_id == categories.c.id))
        .group_by(categories.c.id, categories.c.name)
        .order_by(category_count.desc())
        .limit(categories_limit)
    )
    tag_count = sa.func.count(video_tags.c.video_id).label("video_count")
    top_tags = await database.fetch_all(
        sa.select(tags.c.id, tags.c.name, tag_count)
        .select_from(tags.join(video_tags, video_tags.c.tag_id == tags.c.id))
        .group_by(tags.c.id, tags.c.name)
        .order_by(tag_count.desc())
        .limit(tags_limit)
    )
    top_videos = await database.fetch_all(
        video_select().where(completed).order_by(videos.c.view_count.desc()).limit(videos_limit)
    )

    recent_views = await database.fetch_val(
        sa.select(sa.func.count())
        .select_from(view_logs)
        .where(view_logs.c.viewed_at >= now - timedelta(days=RECENT_VIEWS_DAYS))
    )
    view_day = sa.func.date(view_logs.c.viewed_at).label("day")
    daily_views = await database.fetch_all(
        sa.select(view_day, sa.func.count().label("count"))
        .where(view_logs.c.viewed_at >= now - timedelta(days=DAILY_VIEWS_DAYS))
        .group_by(view_day)
        .order_by(view_day.desc())
    )
    watch = await database.fetch_one(
        sa.select(
            sa.func.avg(view_logs.c.watch_duration).label("avg_duration"),
            sa.func.avg(view_logs.c.completion_rate).label("avg_completion"),
            sa.func.sum(view_logs.c.watch_duration).label("total_duration"),
        )
    )
    viewers = await database.fetch_one(
        sa.select(
            sa.func.count(sa.distinct(view_history.c.user_id)).label("users"),
            sa.func.count(view_history.c.id).label("videos"),
            sa.func.sum(view_history.c.watch_duration).label("watch_time"),
            sa.func.avg(view_history.c.completion_rate).label("completion"),
        )
    )

    return success_response(
        {
            "totalVideos": total_videos,
            "totalUsers": total_users,
            "totalViews": int(total_views or 0),
            "recentUploads": recent_uploads,
            "videosByStatus": _group_counts(by_status, "status"),
            "videosByVisibility": _group_counts(by_visibility, "visibility"),
            "usersByRole": _group_counts(by_role, "role"),
            "authenticatedUserViewStats": {
                "totalAuthenticatedUsers": viewers["users"] or 0,
                "totalVideosWatchedByAuthUsers": viewers["videos"] or 0,
                "totalWatchTimeByAuthUsers": round(float(viewers["watch_time"] or 0)),
                "averageCompletionRateByAuthUsers": round(float(viewers["completion"] or 0), 2),
            },
            "topCategories": [
                {"id": row["id"], "name": row["name"], "videoCount": row["video_count"]} for row in top_categories
            ],
            "topTags": [{"id": row["id"], "name": row["name"], "videoCount": row["video_count"]} for row in top_tags],
            "recentViews": recent_views,
            "dailyViews": {str(row["day"]): row["count"] for row in daily_views},
            "watchTimeAnalytics": {
                "averageWatchDuration": round(float(watch["avg_duration"] or 0)),
                "averageCompletionRate": round(float(watch["avg_completion"] or 0), 2),
                "totalWatchTime": round(float(watch["total_duration"] or 0)),
            },
            "topVideos": [
                {
                    "id": row["video_id"],
                    "title": row["title"],
                    "viewCount": row["view_count"],
                    "uploader": row["uploader_display_name"],
                }
                for row in top_videos
            ],
            "lastUpdated": isoformat(now),
        }
    )


# ============ Categories ============


def _serialize_category(row) -> dict:
    return {
        "id": row["id"],
        "name": row["name"],
        "slug": row["slug"],
        "description": row["description"],
        "color": row["color"],
        "sortOrder": row["sort_order"],
        "videoCount": row["video_count"],
        "createdAt": isoformat(row["created_at"]),
    }


def _category_select():
    video_count = (
        sa.select(sa.func.count(video_categories.c.video_id))
        .where(video_categories.c.category_id == categories.c.id)
        .scalar_subquery()
        .label("video_count")
    )
    return sa.select(categories, video_count)


@app.get("/api/categories")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def list_categories(request: Request, user: AuthUser = Depends(require_staff)):
    rows = await fetch_all_with_retry(_category_select().order_by(categories.c.sort_order, categories.c.name))
    return success_response([_serialize_category(row) for row in rows])


@app.post("/api/categories")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def create_category(request: Request, data: CategoryCreate, user: AuthUser = Depends(require_admin)):
    """Create a category. The slug is normalized with slugify; it defaults to the slugified name."""
    slug = slugify(data.slug or data.name or "")
    if not data.name or not slug:
        raise HTTPException(status_code=400, detail="名前とスラッグは必須です")

    existing = await fetch_one_with_retry(sa.select(categories.c.id).where(categories.c.slug == slug))
    if existing:
        raise HTTPException(status_code=400, detail="このスラッグは既に使用されています")

    next_order = await database.fetch_val(sa.select(sa.func.coalesce(sa.func.max(categories.c.sort_order), -1) + 1))
    try:
        category_id = await db_execute_with_retry(
            categories.insert().values(
                name=data.name,
                slug=slug,
                description=data.description or None,
                color=data.color or None,
                sort_order=next_order,
                created_at=datetime.now(timezone.utc),
            )
        )
    except Exception as e:
        if is_unique_violation(e):
            raise HTTPException(status_code=400, detail="このスラッグは既に使用されています")
        raise

    audit_request(request, AuditAction.CATEGORY_CREATE, user=user, resource_type="category",
                  resource_id=category_id, resource_name=slug, details={"name": data.name})
    row = await fetch_one_with_retry(_category_select().where(categories.c.id == category_id))
    return success_response(_serialize_category(row), message="カテゴリを作成しました")


@app.post("/api/categories/reorder")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def reorder_categories(request: Request, data: CategoryReorder, user: AuthUser = Depends(require_admin)):
    """Set sort_order to each category's position in categoryIds."""
    if not data.category_ids:
        raise HTTPException(status_code=400, detail="カテゴリIDの配列が必要です")

    async with database.transaction():
        for position, category_id in enumerate(data.category_ids):
            await database.execute(
                categories.update().where(categories.c.id == category_id).values(sort_order=position)
            )

    audit_request(request, AuditAction.CATEGORY_UPDATE, user=user, resource_type="category",
                  details={"reorder": data.category_ids})
    return success_response(None, message="カテゴリの並び順を更新しました")


@app.put("/api/categories/{category_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def update_category(
    request: Request,
    category_id: int,
    data: CategoryUpdate,
    user: AuthUser = Depends(require_admin),
):
    slug = slugify(data.slug or "")
    if not data.name or not slug:
        raise HTTPException(status_code=400, detail="名前とスラッグは必須です")

    existing = await fetch_one_with_retry(sa.select(categories).where(categories.c.id == category_id))
    if existing is None:
        raise HTTPException(status_code=404, detail=not_found_message("カテゴリ"))

    duplicate = await database.fetch_val(
        sa.select(categories.c.id).where(categories.c.slug == slug, categories.c.id != category_id)
    )
    if duplicate:
        raise HTTPException(status_code=400, detail="このスラッグは既に使用されています")

    await db_execute_with_retry(
        categories.update()
        .where(categories.c.id == category_id)
        .values(name=data.name, slug=slug, description=data.description or None, color=data.color or None)
    )
    audit_request(request, AuditAction.CATEGORY_UPDATE, user=user, resource_type="category",
                  resource_id=category_id, resource_name=slug,
                  details={"previous_slug": existing["slug"], "name": data.name})
    row = await fetch_one_with_retry(_category_select().where(categories.c.id == category_id))
    return success_response(_serialize_category(row), message="カテゴリを更新しました")


@app.delete("/api/categories/{category_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def delete_category(
    request: Request,
    category_id: int,
    force: bool = False,
    user: AuthUser = Depends(require_admin),
):
    """Delete a category. A category still linked to videos needs force=true, which unlinks them first."""
    existing = await fetch_one_with_retry(sa.select(categories).where(categories.c.id == category_id))
    if existing is None:
        raise HTTPException(status_code=404, detail=not_found_message("カテゴリ"))

    usage = await database.fetch_val(
        sa.select(sa.func.count()).select_from(video_categories).where(video_categories.c.category_id == category_id)
    )
    if usage and not force:
        raise HTTPException(status_code=400, detail="このカテゴリは動画で使用されているため削除できません")

    async with database.transaction():
        await database.execute(video_categories.delete().where(video_categories.c.category_id == category_id))
        await database.execute(categories.delete().where(categories.c.id == category_id))

    audit_request(request, AuditAction.CATEGORY_DELETE, user=user, resource_type="category",
                  resource_id=category_id, resource_name=existing["slug"],
                  details={"name": existing["name"], "forced": bool(usage), "usage_count": usage})
    if usage:
        return success_response({"usageCount": usage}, message=f"カテゴリを強制削除しました（{usage}個の動画から削除）")
    return success_response({"usageCount": 0}, message="カテゴリを削除しました")


# ============ Tags ============


@app.get("/api/tags")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def list_tags(request: Request, user: AuthUser = Depends(require_staff)):
    video_count = sa.func.count(video_tags.c.video_id).label("video_count")
    rows = await fetch_all_with_retry(
        sa.select(tags.c.id, tags.c.name, tags.c.created_at, video_count)
        .select_from(tags.outerjoin(video_tags, video_tags.c.tag_id == tags.c.id))
        .group_by(tags.c.id, tags.c.name, tags.c.created_at)
        .order_by(video_count.desc(), tags.c.name)
    )
    return success_response(
        [
            {"id": row["id"], "name": row["name"], "videoCount": row["video_count"],
             "createdAt": isoformat(row["created_at"])}
            for row in rows
        ]
    )


@app.delete("/api/tags/{tag_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def delete_tag(request: Request, tag_id: int, force: bool = False, user: AuthUser = Depends(require_admin)):
    existing = await fetch_one_with_retry(sa.select(tags).where(tags.c.id == tag_id))
    if existing is None:
        raise HTTPException(status_code=404, detail=not_found_message("タグ"))

    usage = await database.fetch_val(
        sa.select(sa.func.count()).select_from(video_tags).where(video_tags.c.tag_id == tag_id)
    )
    if usage and not force:
        raise HTTPException(status_code=400, detail="このタグは動画で使用されているため削除できません")

    async with database.transaction():
        await database.execute(video_tags.delete().where(video_tags.c.tag_id == tag_id))
        await database.execute(tags.delete().where(tags.c.id == tag_id))

    audit_request(request, AuditAction.TAG_DELETE, user=user, resource_type="tag", resource_id=tag_id,
                  resource_name=existing["name"], details={"usage_count": usage})
    return success_response({"usageCount": usage}, message="タグを削除しました")


# ============ Videos ============


async def _get_video_row(video_id: str):
    row = await fetch_one_with_retry(video_select().where(videos.c.video_id == video_id))
    if row is None:
        raise HTTPException(status_code=404, detail=not_found_message("動画"))
    return row


def _stored_file(url_or_name: Optional[str], url_prefix: Optional[str], directory: Path) -> Optional[Path]:
    """Map a stored file reference back to a path under directory, refusing anything outside it."""
    if not url_or_name:
        return None
    name = url_or_name
    if url_prefix and name.startswith(url_prefix + "/"):
        name = name[len(url_prefix) + 1:]
    if "/" in name or "\\" in name or name in ("", ".", ".."):
        return None
    return directory / name


def delete_video_files(row) -> List[str]:
    """
    Remove the original upload, converted file and thumbnail of a video.

    Missing files are skipped and OS errors are logged; returns the names
    that were deleted.
    """
    candidates = [
        _stored_file(row["file_path"], None, UPLOADS_DIR),
        _stored_file(row["converted_file_path"], CONVERTED_URL_PREFIX, CONVERTED_DIR),
        _stored_file(row["thumbnail_url"], THUMBNAIL_URL_PREFIX, THUMBNAILS_DIR),
    ]
    deleted = []
    for path in candidates:
        if path is None:
            continue
        try:
            if path.exists():
                path.unlink()
                deleted.append(path.name)
        except OSError as e:
            logger.warning(f"Failed to delete {path} for video {row['video_id']}: {e}")
    return deleted


@app.get("/api/videos")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def list_videos(
    request: Request,
    page: Optional[str] = None,
    limit: Optional[str] = None,
    search: Optional[str] = None,
    status: Optional[str] = None,
    visibility: Optional[str] = None,
    uploaderId: Optional[int] = None,
    user: AuthUser = Depends(require_staff),
):
    """All videos regardless of visibility. CURATORs see only their own."""
    page_num = clamp_page(page or 1)
    page_size = clamp_limit(limit)

    conditions = []
    if user.role == Role.CURATOR.value:
        conditions.append(videos.c.uploader_id == user.id)
    elif uploaderId is not None:
        conditions.append(videos.c.uploader_id == uploaderId)
    if search:
        pattern = f"%{search.strip()}%"
        conditions.append(sa.or_(videos.c.title.ilike(pattern), videos.c.description.ilike(pattern)))
    if status and status.upper() in {s.value for s in VideoStatus}:
        conditions.append(videos.c.status == status.upper())
    requested = normalize_visibility(visibility)
    if requested:
        conditions.append(videos.c.visibility == requested)

    rows = await fetch_all_with_retry(
        video_select()
        .where(*conditions)
        .order_by(videos.c.created_at.desc(), videos.c.id.desc())
        .limit(page_size)
        .offset(offset_for(page_num, page_size))
    )
    total = await database.fetch_val(sa.select(sa.func.count()).select_from(videos).where(*conditions))
    return success_response(await serialize_videos(rows), pagination=build_pagination(page_num, page_size, total))


@app.get("/api/videos/{video_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def get_video(request: Request, video_id: str, user: AuthUser = Depends(require_staff)):
    row = await _get_video_row(video_id)
    ensure_owner_or_admin(user, row["uploader_id"], "自分がアップロードした動画のみアクセスできます")
    return success_response((await serialize_videos([row]))[0])


@app.put("/api/videos/{video_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def update_video(request: Request, video_id: str, data: VideoUpdate, user: AuthUser = Depends(require_staff)):
    """Edit a video's metadata; title and visibility changes are mirrored to its post."""
    row = await _get_video_row(video_id)
    ensure_owner_or_admin(user, row["uploader_id"], "自分がアップロードした動画のみ編集できます")

    if data.title is not None and not data.title:
        raise HTTPException(status_code=400, detail="タイトルは必須です")
    visibility = None
    if data.visibility is not None:
        visibility = normalize_visibility(data.visibility)
        if visibility is None:
            raise HTTPException(status_code=400, detail="有効な公開設定を指定してください")

    now = datetime.now(timezone.utc)
    video_values = {"updated_at": now}
    post_values = {"updated_at": now}
    if data.title is not None:
        video_values["title"] = post_values["title"] = data.title
    if data.description is not None:
        video_values["description"] = post_values["description"] = data.description
    if data.thumbnail_url is not None:
        video_values["thumbnail_url"] = data.thumbnail_url or None
    if visibility is not None:
        video_values["visibility"] = post_values["visibility"] = visibility
        if visibility == Visibility.PUBLIC.value and row["published_at"] is None:
            video_values["published_at"] = post_values["published_at"] = now

    async with database.transaction():
        await database.execute(videos.update().where(videos.c.id == row["id"]).values(**video_values))
        await database.execute(posts.update().where(posts.c.video_id == row["id"]).values(**post_values))
        if data.category_ids is not None:
            await set_video_categories(row["id"], data.category_ids)
        if data.tags is not None:
            await set_video_tags(row["id"], data.tags)

    audit_request(
        request,
        AuditAction.VIDEO_UPDATE,
        user=user,
        resource_type="video",
        resource_id=video_id,
        resource_name=data.title or row["title"],
        details={"fields": sorted(data.model_fields_set)},
    )
    updated = await _get_video_row(video_id)
    return success_response((await serialize_videos([updated]))[0], message="動画を更新しました")


@app.delete("/api/videos/{video_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def delete_video(request: Request, video_id: str, user: AuthUser = Depends(require_staff)):
    """Delete a video with its files and every row that references it."""
    row = await _get_video_row(video_id)
    ensure_owner_or_admin(user, row["uploader_id"], "自分がアップロードした動画のみ削除できます")

    deleted_files = delete_video_files(row)
    await delete_video_and_related(row["id"])

    audit_request(request, AuditAction.VIDEO_DELETE, user=user, resource_type="video", resource_id=video_id,
                  resource_name=row["title"], details={"deleted_files": deleted_files})
    return success_response({"videoId": video_id, "deletedFiles": deleted_files}, message="動画を削除しました")


# ============ Scheduled items ============


def _schedule_table(item_type: str):
    if item_type == "video":
        return videos, videos.c.uploader_id
    if item_type == "post":
        return posts, posts.c.creator_id
    raise HTTPException(status_code=400, detail="不正なリクエストです")


def _schedule_conditions(table, schedule_type: str, schedule_status: str, now: datetime):
    publish = sa.and_(table.c.is_scheduled == sa.true(), table.c.scheduled_publish_at.isnot(None))
    unpublish = table.c.scheduled_unpublish_at.isnot(None)

    if schedule_status == ScheduleStatus.PENDING.value:
        publish = sa.and_(publish, table.c.scheduled_publish_at > now)
        unpublish = sa.and_(unpublish, table.c.scheduled_unpublish_at > now)
    elif schedule_status == ScheduleStatus.COMPLETED.value:
        publish = sa.and_(publish, table.c.scheduled_publish_at <= now)
        unpublish = sa.and_(unpublish, table.c.scheduled_unpublish_at <= now)

    if schedule_type == ScheduleType.PUBLISH.value:
        return publish
    if schedule_type == ScheduleType.UNPUBLISH.value:
        return unpublish
    return sa.or_(publish, unpublish)


def _serialize_scheduled(row, item_type: str, taxonomy: Optional[dict] = None) -> dict:
    data = {
        "id": row["id"],
        "type": item_type,
        "itemId": row["video_id"] if item_type == "video" else row["post_id"],
        "title": row["title"],
        "description": row["description"],
        "visibility": row["visibility"],
        "isScheduled": bool(row["is_scheduled"]),
        "scheduledPublishAt": isoformat(row["scheduled_publish_at"]),
        "scheduledUnpublishAt": isoformat(row["scheduled_unpublish_at"]),
        "createdAt": isoformat(row["created_at"]),
        "user": {"id": row["owner_id"], "username": row["owner_username"], "displayName": row["owner_display_name"]},
    }
    if item_type == "video":
        data["thumbnailUrl"] = row["thumbnail_url"]
        data["duration"] = row["duration"]
        data["categories"] = (taxonomy or {}).get("categories", [])
    else:
        data["thumbnailUrl"] = row["video_thumbnail_url"]
        data["duration"] = None
        data["postType"] = row["post_type"]
        data["categories"] = []
    return data


def _scheduled_video_select():
    return sa.select(
        videos,
        videos.c.uploader_id.label("owner_id"),
        users.c.username.label("owner_username"),
        users.c.display_name.label("owner_display_name"),
    ).select_from(videos.join(users, videos.c.uploader_id == users.c.id))


def _scheduled_post_select():
    linked = videos.alias("linked_video")
    return sa.select(
        posts,
        posts.c.creator_id.label("owner_id"),
        users.c.username.label("owner_username"),
        users.c.display_name.label("owner_display_name"),
        linked.c.thumbnail_url.label("video_thumbnail_url"),
    ).select_from(
        posts.join(users, posts.c.creator_id == users.c.id).outerjoin(linked, posts.c.video_id == linked.c.id)
    )


def _due_time(item: dict) -> str:
    return item["scheduledPublishAt"] or item["scheduledUnpublishAt"] or item["createdAt"] or ""


@app.get("/api/scheduled-videos")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def list_scheduled_items(
    request: Request,
    page: Optional[str] = None,
    limit: Optional[str] = None,
    type: str = ScheduleType.ALL.value,
    status: str = ScheduleStatus.ALL.value,
    user: AuthUser = Depends(require_staff),
):
    """
    Videos and posts with a pending or past schedule, merged and ordered by
    their scheduled time. CURATORs see only their own items.
    """
    schedule_type = type if type in {t.value for t in ScheduleType} else ScheduleType.ALL.value
    schedule_status = status if status in {s.value for s in ScheduleStatus} else ScheduleStatus.ALL.value
    page_num = clamp_page(page or 1)
    page_size = clamp_limit(limit)
    now = datetime.now(timezone.utc)

    video_conditions = [_schedule_conditions(videos, schedule_type, schedule_status, now)]
    post_conditions = [_schedule_conditions(posts, schedule_type, schedule_status, now)]
    if user.role == Role.CURATOR.value:
        video_conditions.append(videos.c.uploader_id == user.id)
        post_conditions.append(posts.c.creator_id == user.id)

    video_rows = await fetch_all_with_retry(_scheduled_video_select().where(*video_conditions))
    post_rows = await fetch_all_with_retry(_scheduled_post_select().where(*post_conditions))

    taxonomy = {}
    if video_rows:
        taxonomy = await load_video_taxonomy([row["id"] for row in video_rows])
    items = [_serialize_scheduled(row, "video", taxonomy.get(row["id"])) for row in video_rows]
    items += [_serialize_scheduled(row, "post") for row in post_rows]
    items.sort(key=_due_time)

    total = len(items)
    start = offset_for(page_num, page_size)
    return success_response(
        {
            "items": items[start:start + page_size],
            "stats": {"totalVideos": len(video_rows), "totalPosts": len(post_rows), "totalItems": total},
        },
        pagination=build_pagination(page_num, page_size, total),
    )


async def _get_scheduled_row(item_id: int, item_type: str):
    select = _scheduled_video_select() if item_type == "video" else _scheduled_post_select()
    table, _ = _schedule_table(item_type)
    row = await fetch_one_with_retry(select.where(table.c.id == item_id))
    if row is None:
        raise HTTPException(status_code=404, detail="予約投稿が見つかりません")
    return row


@app.get("/api/scheduled-videos/{item_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def get_scheduled_item(
    request: Request,
    item_id: int,
    type: str = "video",
    user: AuthUser = Depends(require_staff),
):
    _schedule_table(type)
    row = await _get_scheduled_row(item_id, type)
    ensure_owner_or_admin(user, row["owner_id"], ERROR_MESSAGES["forbidden"])
    return success_response(_serialize_scheduled(row, type))


@app.put("/api/scheduled-videos/{item_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def update_scheduled_item(
    request: Request,
    item_id: int,
    data: ScheduleUpdate,
    type: str = "video",
    user: AuthUser = Depends(require_staff),
):
    """
    Change the schedule of a video or post.

    Times left out of the body are unchanged; an explicit null clears them.
    Setting a publish time also sets is_scheduled.
    """
    table, _ = _schedule_table(type)
    row = await _get_scheduled_row(item_id, type)
    ensure_owner_or_admin(user, row["owner_id"], ERROR_MESSAGES["forbidden"])

    fields = data.model_fields_set
    try:
        validate_schedule(
            data.scheduled_publish_at if "scheduled_publish_at" in fields else None,
            data.scheduled_unpublish_at if "scheduled_unpublish_at" in fields else None,
        )
    except ScheduleValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    values = {"updated_at": datetime.now(timezone.utc)}
    if "scheduled_publish_at" in fields:
        values["scheduled_publish_at"] = data.scheduled_publish_at
        values["is_scheduled"] = data.scheduled_publish_at is not None
    if "scheduled_unpublish_at" in fields:
        values["scheduled_unpublish_at"] = data.scheduled_unpublish_at
    if data.visibility is not None:
        visibility = normalize_visibility(data.visibility)
        if visibility is None:
            raise HTTPException(status_code=400, detail="有効な公開設定を指定してください")
        values["visibility"] = visibility
    if data.title:
        values["title"] = data.title
    if data.description is not None:
        values["description"] = data.description

    await db_execute_with_retry(table.update().where(table.c.id == item_id).values(**values))
    audit_request(request, AuditAction.SCHEDULE_UPDATE, user=user, resource_type=type, resource_id=item_id,
                  resource_name=row["title"], details={"fields": sorted(fields)})

    updated = await _get_scheduled_row(item_id, type)
    return success_response(_serialize_scheduled(updated, type), message="予約投稿を更新しました")


def _cancel_values(action: str, now: datetime) -> dict:
    if action == "cancel_scheduled":
        return {"is_scheduled": False, "scheduled_publish_at": None, "updated_at": now}
    if action == "cancel_unpublish":
        return {"scheduled_unpublish_at": None, "updated_at": now}
    raise HTTPException(status_code=400, detail="不正なアクションです")


@app.delete("/api/scheduled-videos/{item_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def cancel_scheduled_item(
    request: Request,
    item_id: int,
    type: str = "video",
    action: str = "cancel_scheduled",
    user: AuthUser = Depends(require_admin),
):
    table, _ = _schedule_table(type)
    values = _cancel_values(action, datetime.now(timezone.utc))
    row = await _get_scheduled_row(item_id, type)

    await db_execute_with_retry(table.update().where(table.c.id == item_id).values(**values))
    audit_request(request, AuditAction.SCHEDULE_CANCEL, user=user, resource_type=type, resource_id=item_id,
                  resource_name=row["title"], details={"action": action})

    updated = await _get_scheduled_row(item_id, type)
    data = _serialize_scheduled(updated, type)
    data["action"] = action
    return success_response(data, message="予約をキャンセルしました")


@app.post("/api/scheduled-videos")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def batch_scheduled_items(request: Request, data: ScheduleBatch, user: AuthUser = Depends(require_admin)):
    """
    Apply one action to many items.

    Actions: cancel_scheduled, cancel_unpublish, execute_now (publish
    immediately). Each item succeeds or fails on its own.
    """
    if not data.action or not data.items:
        raise HTTPException(status_code=400, detail="不正なリクエストです")
    if data.action not in ("cancel_scheduled", "cancel_unpublish", "execute_now"):
        raise HTTPException(status_code=400, detail="不正なアクションです")

    now = datetime.now(timezone.utc)
    results = []
    for item in data.items:
        try:
            table, _ = _schedule_table(item.type)
            if data.action == "execute_now":
                values = {
                    "visibility": Visibility.PUBLIC.value,
                    "is_scheduled": False,
                    "scheduled_publish_at": None,
                    "published_at": now,
                    "updated_at": now,
                }
            else:
                values = _cancel_values(data.action, now)
            exists = await database.fetch_val(sa.select(table.c.id).where(table.c.id == item.id))
            if not exists:
                raise LookupError("予約投稿が見つかりません")
            await db_execute_with_retry(table.update().where(table.c.id == item.id).values(**values))
            results.append({"id": item.id, "type": item.type, "success": True})
        except HTTPException as e:
            results.append({"id": item.id, "type": item.type, "success": False, "error": e.detail})
        except Exception as e:
            logger.warning(f"Batch {data.action} failed for {item.type} {item.id}: {e}")
            results.append({"id": item.id, "type": item.type, "success": False, "error": str(e)})

    success_count = sum(1 for r in results if r["success"])
    action = AuditAction.SCHEDULE_PUBLISH_NOW if data.action == "execute_now" else AuditAction.SCHEDULE_CANCEL
    audit_request(request, action, user=user, resource_type="schedule",
                  details={"action": data.action, "items": len(results), "succeeded": success_count})
    return success_response(
        {
            "action": data.action,
            "results": results,
            "successCount": success_count,
            "errorCount": len(results) - success_count,
        }
    )


# ============ Posts ============


@app.put("/api/posts/{post_id}/visibility")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def update_post_visibility(
    request: Request,
    post_id: str,
    data: PostVisibilityUpdate,
    user: AuthUser = Depends(require_staff),
):
    visibility = normalize_visibility(data.visibility)
    if not data.visibility or visibility is None:
        raise HTTPException(status_code=400, detail="有効な公開設定を指定してください")

    fields = data.model_fields_set
    try:
        validate_schedule(data.scheduled_publish_at, data.scheduled_unpublish_at)
    except ScheduleValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    post = await fetch_one_with_retry(sa.select(posts).where(posts.c.post_id == post_id))
    if post is None:
        raise HTTPException(status_code=404, detail=not_found_message("投稿"))
    ensure_owner_or_admin(user, post["creator_id"], ERROR_MESSAGES["forbidden"])

    now = datetime.now(timezone.utc)
    values = {"visibility": visibility, "updated_at": now}
    if "scheduled_publish_at" in fields:
        values["scheduled_publish_at"] = data.scheduled_publish_at
        values["is_scheduled"] = data.scheduled_publish_at is not None
    if "scheduled_unpublish_at" in fields:
        values["scheduled_unpublish_at"] = data.scheduled_unpublish_at
    if visibility == Visibility.PUBLIC.value and post["published_at"] is None:
        values["published_at"] = now

    await db_execute_with_retry(posts.update().where(posts.c.id == post["id"]).values(**values))
    audit_request(
        request,
        AuditAction.POST_VISIBILITY_CHANGE,
        user=user,
        resource_type="post",
        resource_id=post_id,
        resource_name=post["title"],
        details={"from": post["visibility"], "to": visibility},
    )

    message = f"投稿を{VISIBILITY_LABELS[visibility]}に設定しました"
    if data.scheduled_publish_at:
        message += f"。予約投稿: {ensure_utc(data.scheduled_publish_at).strftime('%Y/%m/%d %H:%M')} (UTC)"
    if data.scheduled_unpublish_at:
        message += f"。予約非公開: {ensure_utc(data.scheduled_unpublish_at).strftime('%Y/%m/%d %H:%M')} (UTC)"

    updated = await fetch_one_with_retry(sa.select(posts).where(posts.c.id == post["id"]))
    return success_response(
        {
            "postId": updated["post_id"],
            "title": updated["title"],
            "visibility": updated["visibility"],
            "isScheduled": bool(updated["is_scheduled"]),
            "scheduledPublishAt": isoformat(updated["scheduled_publish_at"]),
            "scheduledUnpublishAt": isoformat(updated["scheduled_unpublish_at"]),
            "updatedAt": isoformat(updated["updated_at"]),
        },
        message=message,
    )


# =============================================================================
# Runtime Settings API (Database-backed configuration)
# =============================================================================


def _serialize_setting(setting: dict) -> dict:
    return {
        "key": setting["key"],
        "value": setting["value"],
        "category": setting["category"],
        "valueType": setting["value_type"],
        "description": setting["description"],
        "constraints": setting.get("constraints"),
        "updatedAt": isoformat(setting.get("updated_at")),
        "updatedBy": setting.get("updated_by"),
    }


async def _get_setting_payload(key: str) -> Optional[dict]:
    """A stored setting, or the registered default for a known key that is not stored yet."""
    setting = await get_settings_service().get_single(key)
    if setting is not None:
        return _serialize_setting(setting)
    definition = DEFAULT_SETTINGS.get(key)
    if definition is None:
        return None
    return _serialize_setting(
        {
            "key": key,
            "value": await get_settings_service().get(key, definition.default),
            "category": definition.category,
            "value_type": definition.value_type,
            "description": definition.description,
            "constraints": definition.constraints,
        }
    )


@app.get("/api/settings")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def list_settings(request: Request, user: AuthUser = Depends(require_admin)):
    """
    List all settings grouped by category.

    Registered settings that were never stored are included with their
    effective value.
    """
    grouped = {}
    for category, settings_list in (await get_settings_service().get_all()).items():
        grouped[category] = [_serialize_setting(s) for s in settings_list]

    stored = {s["key"] for settings_list in grouped.values() for s in settings_list}
    for key, definition in DEFAULT_SETTINGS.items():
        if key not in stored:
            grouped.setdefault(definition.category, []).append(await _get_setting_payload(key))
    return success_response({"categories": grouped})


@app.get("/api/settings/key/{key:path}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def get_setting(request: Request, key: str, user: AuthUser = Depends(require_admin)):
    setting = await _get_setting_payload(key)
    if setting is None:
        raise HTTPException(status_code=404, detail=f"設定が見つかりません: {key}")
    return success_response(setting)


async def _apply_setting(request: Request, user: AuthUser, key: str, value) -> dict:
    previous = await _get_setting_payload(key)
    if previous is None:
        raise HTTPException(status_code=404, detail=f"設定が見つかりません: {key}")
    try:
        await get_settings_service().set(key, value, updated_by=user.username)
    except SettingsValidationError as e:
        raise HTTPException(status_code=400, detail=f"{key}: {e}")
    except KeyError:
        raise HTTPException(status_code=404, detail=f"設定が見つかりません: {key}")

    audit_request(request, AuditAction.SETTINGS_CHANGE, user=user, resource_type="setting", resource_name=key,
                  details={"action": "update", "new_value": value, "old_value": previous["value"]})
    return await _get_setting_payload(key)


@app.put("/api/settings/key/{key:path}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def update_setting(request: Request, key: str, data: SettingUpdate, user: AuthUser = Depends(require_admin)):
    """Validate against the setting's type and constraints, then save. The cache is updated immediately."""
    return success_response(await _apply_setting(request, user, key, data.value), message="設定を更新しました")


@app.put("/api/settings")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def update_settings(request: Request, data: SettingsBulkUpdate, user: AuthUser = Depends(require_admin)):
    """Update several settings. Stops at the first invalid value; earlier keys stay applied."""
    if not data.settings:
        raise HTTPException(status_code=400, detail="更新する設定がありません")
    updated = [await _apply_setting(request, user, key, value) for key, value in data.settings.items()]
    return success_response(updated, message="設定を更新しました")


@app.post("/api/settings/key/{key:path}/reset")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def reset_setting(request: Request, key: str, user: AuthUser = Depends(require_admin)):
    try:
        value = await get_settings_service().reset(key, updated_by=user.username)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"設定が見つかりません: {key}")

    audit_request(request, AuditAction.SETTINGS_CHANGE, user=user, resource_type="setting", resource_name=key,
                  details={"action": "reset", "new_value": value})
    return success_response(await _get_setting_payload(key), message="設定を初期値に戻しました")


@app.post("/api/settings/seed")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def seed_settings(request: Request, user: AuthUser = Depends(require_admin)):
    """Store every registered setting that is not in the database yet."""
    created = await get_settings_service().seed_defaults(updated_by=user.username)
    if created:
        audit_request(request, AuditAction.SETTINGS_CHANGE, user=user, resource_type="setting",
                      details={"action": "seed", "keys": created})
    return success_response({"created": created}, message=f"{len(created)}件の設定を初期化しました")


@app.post("/api/settings/invalidate-cache")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def invalidate_settings_cache(request: Request, user: AuthUser = Depends(require_admin)):
    """Force the next settings read to fetch fresh data from the database."""
    service = get_settings_service()
    service.invalidate_cache()
    return success_response(service.get_cache_stats(), message="設定キャッシュを無効化しました")


# ============ View history cleanup ============


@app.get("/api/view-history-cleanup")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def get_view_history_cleanup_preview(request: Request, user: AuthUser = Depends(require_admin)):
    return success_response(await preview_cleanup())


@app.post("/api/view-history-cleanup")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def run_view_history_cleanup(request: Request, user: AuthUser = Depends(require_admin)):
    """Delete all history older than the retention period, without the per-run caps of the cron job."""
    try:
        result = await run_admin_cleanup()
    except CleanupDisabledError as e:
        raise HTTPException(status_code=400, detail=str(e))

    audit_request(request, AuditAction.VIEW_HISTORY_CLEANUP, user=user, resource_type="view_history",
                  details={"deleted": result["deletedCount"], "cutoff": result["cutoffDate"]})
    return success_response(result, message=result["message"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=ADMIN_PORT)
