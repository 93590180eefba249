from datetime import datetime, timezone

import sqlalchemy as sa
from databases import Database

from config import DATABASE_URL

# Create database instance - works with PostgreSQL or SQLite
# PostgreSQL is the default and recommended database
database = Database(DATABASE_URL)
metadata = sa.MetaData()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def configure_database():
    """
    Configure database-specific settings after connection.
    SQLite needs foreign keys switched on per connection; PostgreSQL always enforces them.
    """
    if str(database.url).startswith("sqlite"):
        await database.execute("PRAGMA foreign_keys = ON")


def is_postgres() -> bool:
    """True when the configured backend supports row locks (SELECT ... FOR UPDATE)."""
    return str(database.url).startswith("postgresql")


# Accounts
#
# FIELD SEMANTICS:
# ----------------
# - role: ADMIN manages everything, CURATOR uploads and manages own content,
#   VIEWER only watches
# - failed_login_count / last_failed_login_at: lockout bookkeeping, reset on
#   successful login
users = sa.Table(
    "users",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("username", sa.String(100), unique=True, nullable=False),
    sa.Column("email", sa.String(255), unique=True, nullable=False),
    sa.Column("password_hash", sa.String(255), nullable=True),
    sa.Column("display_name", sa.String(100), nullable=False),
    sa.Column("department", sa.String(100), nullable=True),
    sa.Column(
        "role",
        sa.String(20),
        sa.CheckConstraint("role IN ('ADMIN', 'CURATOR', 'VIEWER')", name="ck_users_role"),
        nullable=False,
        server_default="VIEWER",
    ),
    sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
    sa.Column("failed_login_count", sa.Integer, nullable=False, server_default="0"),
    sa.Column("last_failed_login_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Index("ix_users_role", "role"),
)

categories = sa.Table(
    "categories",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("name", sa.String(100), nullable=False),
    sa.Column("slug", sa.String(100), unique=True, nullable=False),
    sa.Column("description", sa.Text, nullable=True),
    sa.Column("color", sa.String(20), nullable=True),
    sa.Column("sort_order", sa.Integer, nullable=False, server_default="0"),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
)

tags = sa.Table(
    "tags",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("name", sa.String(50), unique=True, nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=_utcnow),
)

# Uploaded videos
#
# FIELD SEMANTICS:
# ----------------
# - video_id: public 11-character identifier used in URLs (numeric id stays internal)
# - file_path: original upload, relative to UPLOADS_DIR
# - converted_file_path: output written by the GPU transcoder (NULL until complete)
# - view_count: deduplicated public view counter, only changed by view tracking
# - visibility: PUBLIC (everyone), PRIVATE (signed-in users and allowed IP ranges),
#   DRAFT (uploader and admins only)
# - is_scheduled + scheduled_publish_at: DRAFT waiting for the scheduled publisher
# - scheduled_unpublish_at: PUBLIC content that flips to PRIVATE at this time
videos = sa.Table(
    "videos",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("video_id", sa.String(32), unique=True, nullable=False),
    sa.Column("title", sa.String(255), nullable=False),
    sa.Column("description", sa.Text, nullable=True),
    sa.Column("uploader_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
    sa.Column("original_filename", sa.String(255), nullable=True),
    sa.Column("file_path", sa.String(500), nullable=True),
    sa.Column("converted_file_path", sa.String(500), nullable=True),
    sa.Column("file_size", sa.BigInteger, nullable=True),
    sa.Column("mime_type", sa.String(100), nullable=True),
    sa.Column("thumbnail_url", sa.String(500), nullable=True),
    sa.Column("duration", sa.Float, nullable=True),  # seconds
    sa.Column("view_count", sa.Integer, nullable=False, server_default="0"),
    sa.Column(
        "visibility",
        sa.String(20),
        sa.CheckConstraint(
            "visibility IN ('PUBLIC', 'PRIVATE', 'DRAFT')",
            name="ck_videos_visibility"
        ),
        nullable=False,
        server_default="DRAFT",
    ),
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('UPLOADING', 'PROCESSING', 'COMPLETED', 'FAILED')",
            name="ck_videos_status"
        ),
        nullable=False,
        server_default="UPLOADING",
    ),
    sa.Column("is_scheduled", sa.Boolean, nullable=False, server_default=sa.false()),
    sa.Column("scheduled_publish_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("scheduled_unpublish_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Index("ix_videos_uploader_id", "uploader_id"),
    sa.Index("ix_videos_visibility", "visibility"),
    sa.Index("ix_videos_created_at", "created_at"),
    sa.Index("ix_videos_scheduled_publish_at", "scheduled_publish_at"),
    sa.Index("ix_videos_scheduled_unpublish_at", "scheduled_unpublish_at"),
)

video_categories = sa.Table(
    "video_categories",
    metadata,
    sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
    sa.Column("category_id", sa.Integer, sa.ForeignKey("categories.id", ondelete="CASCADE"), nullable=False),
    sa.PrimaryKeyConstraint("video_id", "category_id"),
    sa.Index("ix_video_categories_category_id", "category_id"),
)

video_tags = sa.Table(
    "video_tags",
    metadata,
    sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
    sa.Column("tag_id", sa.Integer, sa.ForeignKey("tags.id", ondelete="CASCADE"), nullable=False),
    sa.PrimaryKeyConstraint("video_id", "tag_id"),
    sa.Index("ix_video_tags_tag_id", "tag_id"),
)

playlists = sa.Table(
    "playlists",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("playlist_id", sa.String(32), unique=True, nullable=False),
    sa.Column("title", sa.String(255), nullable=False),
    sa.Column("description", sa.Text, nullable=True),
    sa.Column("thumbnail_url", sa.String(500), nullable=True),
    sa.Column("video_count", sa.Integer, nullable=False, server_default="0"),
    sa.Column("total_duration", sa.Float, nullable=False, server_default="0"),
    sa.Column("creator_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Index("ix_playlists_creator_id", "creator_id"),
)

playlist_videos = sa.Table(
    "playlist_videos",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("playlist_id", sa.Integer, sa.ForeignKey("playlists.id", ondelete="CASCADE"), nullable=False),
    sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
    sa.Column("sort_order", sa.Integer, nullable=False, server_default="0"),
    sa.UniqueConstraint("playlist_id", "video_id", name="uq_playlist_videos_playlist_video"),
    sa.Index("ix_playlist_videos_playlist_id", "playlist_id"),
)

# Posts are the publishable unit: exactly one of video_id / playlist_id is set
# depending on post_type. Video posts reuse the video's public id as post_id.
posts = sa.Table(
    "posts",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("post_id", sa.String(32), unique=True, nullable=False),
    sa.Column("title", sa.String(255), nullable=False),
    sa.Column("description", sa.Text, nullable=True),
    sa.Column(
        "post_type",
        sa.String(20),
        sa.CheckConstraint("post_type IN ('VIDEO', 'PLAYLIST')", name="ck_posts_post_type"),
        nullable=False,
        server_default="VIDEO",
    ),
    sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=True),
    sa.Column("playlist_id", sa.Integer, sa.ForeignKey("playlists.id", ondelete="CASCADE"), nullable=True),
    sa.Column("creator_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
    sa.Column(
        "visibility",
        sa.String(20),
        sa.CheckConstraint(
            "visibility IN ('PUBLIC', 'PRIVATE', 'DRAFT')",
            name="ck_posts_visibility"
        ),
        nullable=False,
        server_default="DRAFT",
    ),
    sa.Column("is_scheduled", sa.Boolean, nullable=False, server_default=sa.false()),
    sa.Column("scheduled_publish_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("scheduled_unpublish_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Index("ix_posts_video_id", "video_id"),
    sa.Index("ix_posts_playlist_id", "playlist_id"),
    sa.Index("ix_posts_visibility", "visibility"),
)

# Raw playback sessions used for view deduplication
#
# FIELD SEMANTICS:
# ----------------
# - session_id: fingerprint of client IP + user-agent (base64, max 64 chars)
# - watch_duration / completion_rate: latest values reported by the player
# - view_count_updated: set exactly once, in the same transaction that
#   increments videos.view_count
view_logs = sa.Table(
    "view_logs",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
    sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
    sa.Column("session_id", sa.String(64), nullable=False),
    sa.Column("user_agent", sa.Text, nullable=True),
    sa.Column("referrer", sa.Text, nullable=True),
    sa.Column("watch_duration", sa.Float, nullable=False, server_default="0"),
    sa.Column("completion_rate", sa.Float, nullable=False, server_default="0"),
    sa.Column("view_count_updated", sa.Boolean, nullable=False, server_default=sa.false()),
    sa.Column("viewed_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Index("ix_view_logs_video_session", "video_id", "session_id", "viewed_at"),
)

# Lifetime watch summary per (user, video); values only ever grow
view_history = sa.Table(
    "view_history",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
    sa.Column("watch_duration", sa.Float, nullable=False, server_default="0"),
    sa.Column("completion_rate", sa.Float, nullable=False, server_default="0"),
    sa.Column("last_watched_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.UniqueConstraint("user_id", "video_id", name="uq_view_history_user_video"),
    sa.Index("ix_view_history_last_watched_at", "last_watched_at"),
)

# Per-day watch record per (user, video, date)
daily_view_history = sa.Table(
    "daily_view_history",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
    sa.Column("view_date", sa.Date, nullable=False),
    sa.Column("watch_duration", sa.Float, nullable=False, server_default="0"),
    sa.Column("completion_rate", sa.Float, nullable=False, server_default="0"),
    sa.Column("session_count", sa.Integer, nullable=False, server_default="1"),
    sa.Column("view_time", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.UniqueConstraint("user_id", "video_id", "view_date", name="uq_daily_view_history_user_video_date"),
    sa.Index("ix_daily_view_history_user_date", "user_id", "view_date"),
)

favorites = sa.Table(
    "favorites",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.UniqueConstraint("user_id", "video_id", name="uq_favorites_user_video"),
)

# Runtime-configurable settings, managed through api/settings_service.py
#
# Categories used by the application:
# - view_tracking: view count thresholds, dedup window
# - retention: view history cleanup
# - access: private video IP ranges
# - display: public UI settings
settings = sa.Table(
    "settings",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("key", sa.String(255), unique=True, nullable=False),
    sa.Column("value", sa.Text, nullable=False),  # JSON-encoded
    sa.Column("category", sa.String(100), nullable=False),
    sa.Column("description", sa.Text, nullable=True),
    sa.Column(
        "value_type",
        sa.String(50),
        sa.CheckConstraint(
            "value_type IN ('string', 'integer', 'float', 'boolean', 'enum', 'json')",
            name="ck_settings_value_type"
        ),
        default="string"
    ),
    sa.Column("constraints", sa.Text, nullable=True),  # JSON-encoded
    sa.Column("updated_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("updated_by", sa.String(255), nullable=True),
    sa.Index("ix_settings_category", "category"),
)

# Jobs submitted to the GPU transcoding server
#
# STATE TRANSITIONS:
# -----------------
# PENDING -> PROCESSING (server reports active) -> COMPLETED | FAILED
# any non-terminal state -> CANCELLED (user cancel)
# FAILED is also recorded directly when the server was unreachable at upload time
transcode_jobs = sa.Table(
    "transcode_jobs",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("job_id", sa.String(100), unique=True, nullable=False),
    sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
    sa.Column("input_file", sa.String(500), nullable=True),
    sa.Column("output_file", sa.String(500), nullable=True),
    sa.Column("preset", sa.String(50), nullable=True),
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED', 'CANCELLED')",
            name="ck_transcode_jobs_status"
        ),
        nullable=False,
        server_default="PENDING",
    ),
    sa.Column("progress", sa.Integer, nullable=False, server_default="0"),
    sa.Column("error_message", sa.Text, nullable=True),
    sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Index("ix_transcode_jobs_video_id", "video_id"),
    sa.Index("ix_transcode_jobs_status", "status"),
)


def create_tables():
    """
    Create database tables directly using SQLAlchemy metadata.
    This creates all tables if they don't exist.
    """
    engine = sa.create_engine(DATABASE_URL)
    metadata.create_all(engine)
    engine.dispose()


if __name__ == "__main__":
    create_tables()
    print("Database tables created successfully!")
