"""initial_schema

Revision ID: 001
Revises:
Create Date: 2026-10-17

Initial orgvideo schema. For databases created with create_tables(), use
'alembic stamp 001' to mark them as current.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables for the orgvideo database."""
    # Users table
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("username", sa.String(100), unique=True, nullable=False),
        sa.Column("email", sa.String(255), unique=True, nullable=False),
        sa.Column("password_hash", sa.String(255), nullable=True),
        sa.Column("display_name", sa.String(100), nullable=False),
        sa.Column("department", sa.String(100), nullable=True),
        sa.Column("role", sa.String(20), nullable=False, server_default="VIEWER"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("failed_login_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_failed_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint("role IN ('ADMIN', 'CURATOR', 'VIEWER')", name="ck_users_role"),
    )
    op.create_index("ix_users_role", "users", ["role"])

    # Taxonomy
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("slug", sa.String(100), unique=True, nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("color", sa.String(20), nullable=True),
        sa.Column("sort_order", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_table(
        "tags",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(50), unique=True, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
    )

    # Videos table
    op.create_table(
        "videos",
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
        sa.Column("duration", sa.Float, nullable=True),
        sa.Column("view_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("visibility", sa.String(20), nullable=False, server_default="DRAFT"),
        sa.Column("status", sa.String(20), nullable=False, server_default="UPLOADING"),
        sa.Column("is_scheduled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("scheduled_publish_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scheduled_unpublish_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint("visibility IN ('PUBLIC', 'PRIVATE', 'DRAFT')", name="ck_videos_visibility"),
        sa.CheckConstraint(
            "status IN ('UPLOADING', 'PROCESSING', 'COMPLETED', 'FAILED')", name="ck_videos_status"
        ),
    )
    op.create_index("ix_videos_uploader_id", "videos", ["uploader_id"])
    op.create_index("ix_videos_visibility", "videos", ["visibility"])
    op.create_index("ix_videos_created_at", "videos", ["created_at"])
    op.create_index("ix_videos_scheduled_publish_at", "videos", ["scheduled_publish_at"])
    op.create_index("ix_videos_scheduled_unpublish_at", "videos", ["scheduled_unpublish_at"])

    op.create_table(
        "video_categories",
        sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
        sa.Column("category_id", sa.Integer, sa.ForeignKey("categories.id", ondelete="CASCADE"), nullable=False),
        sa.PrimaryKeyConstraint("video_id", "category_id"),
    )
    op.create_index("ix_video_categories_category_id", "video_categories", ["category_id"])

    op.create_table(
        "video_tags",
        sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
        sa.Column("tag_id", sa.Integer, sa.ForeignKey("tags.id", ondelete="CASCADE"), nullable=False),
        sa.PrimaryKeyConstraint("video_id", "tag_id"),
    )
    op.create_index("ix_video_tags_tag_id", "video_tags", ["tag_id"])

    # Playlists
    op.create_table(
        "playlists",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("playlist_id", sa.String(32), unique=True, nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("thumbnail_url", sa.String(500), nullable=True),
        sa.Column("video_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_duration", sa.Float, nullable=False, server_default="0"),
        sa.Column("creator_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_playlists_creator_id", "playlists", ["creator_id"])

    op.create_table(
        "playlist_videos",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("playlist_id", sa.Integer, sa.ForeignKey("playlists.id", ondelete="CASCADE"), nullable=False),
        sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
        sa.Column("sort_order", sa.Integer, nullable=False, server_default="0"),
        sa.UniqueConstraint("playlist_id", "video_id", name="uq_playlist_videos_playlist_video"),
    )
    op.create_index("ix_playlist_videos_playlist_id", "playlist_videos", ["playlist_id"])

    # Posts
    op.create_table(
        "posts",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("post_id", sa.String(32), unique=True, nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("post_type", sa.String(20), nullable=False, server_default="VIDEO"),
        sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=True),
        sa.Column("playlist_id", sa.Integer, sa.ForeignKey("playlists.id", ondelete="CASCADE"), nullable=True),
        sa.Column("creator_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("visibility", sa.String(20), nullable=False, server_default="DRAFT"),
        sa.Column("is_scheduled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("scheduled_publish_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scheduled_unpublish_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint("post_type IN ('VIDEO', 'PLAYLIST')", name="ck_posts_post_type"),
        sa.CheckConstraint("visibility IN ('PUBLIC', 'PRIVATE', 'DRAFT')", name="ck_posts_visibility"),
    )
    op.create_index("ix_posts_video_id", "posts", ["video_id"])
    op.create_index("ix_posts_playlist_id", "posts", ["playlist_id"])
    op.create_index("ix_posts_visibility", "posts", ["visibility"])

    # View tracking
    op.create_table(
        "view_logs",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("session_id", sa.String(64), nullable=False),
        sa.Column("user_agent", sa.Text, nullable=True),
        sa.Column("referrer", sa.Text, nullable=True),
        sa.Column("watch_duration", sa.Float, nullable=False, server_default="0"),
        sa.Column("completion_rate", sa.Float, nullable=False, server_default="0"),
        sa.Column("view_count_updated", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("viewed_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_view_logs_video_session", "view_logs", ["video_id", "session_id", "viewed_at"])

    op.create_table(
        "view_history",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
        sa.Column("watch_duration", sa.Float, nullable=False, server_default="0"),
        sa.Column("completion_rate", sa.Float, nullable=False, server_default="0"),
        sa.Column("last_watched_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("user_id", "video_id", name="uq_view_history_user_video"),
    )
    op.create_index("ix_view_history_last_watched_at", "view_history", ["last_watched_at"])

    op.create_table(
        "daily_view_history",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
        sa.Column("view_date", sa.Date, nullable=False),
        sa.Column("watch_duration", sa.Float, nullable=False, server_default="0"),
        sa.Column("completion_rate", sa.Float, nullable=False, server_default="0"),
        sa.Column("session_count", sa.Integer, nullable=False, server_default="1"),
        sa.Column("view_time", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("user_id", "video_id", "view_date", name="uq_daily_view_history_user_video_date"),
    )
    op.create_index("ix_daily_view_history_user_date", "daily_view_history", ["user_id", "view_date"])

    op.create_table(
        "favorites",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("user_id", "video_id", name="uq_favorites_user_video"),
    )

    # Runtime settings
    op.create_table(
        "settings",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("key", sa.String(255), unique=True, nullable=False),
        sa.Column("value", sa.Text, nullable=False),
        sa.Column("category", sa.String(100), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("value_type", sa.String(50), server_default="string"),
        sa.Column("constraints", sa.Text, nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.Column("updated_by", sa.String(255), nullable=True),
        sa.CheckConstraint(
            "value_type IN ('string', 'integer', 'float', 'boolean', 'enum', 'json')",
            name="ck_settings_value_type",
        ),
    )
    op.create_index("ix_settings_category", "settings", ["category"])

    # GPU transcode jobs
    op.create_table(
        "transcode_jobs",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("job_id", sa.String(100), unique=True, nullable=False),
        sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
        sa.Column("input_file", sa.String(500), nullable=True),
        sa.Column("output_file", sa.String(500), nullable=True),
        sa.Column("preset", sa.String(50), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("progress", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED', 'CANCELLED')",
            name="ck_transcode_jobs_status",
        ),
    )
    op.create_index("ix_transcode_jobs_video_id", "transcode_jobs", ["video_id"])
    op.create_index("ix_transcode_jobs_status", "transcode_jobs", ["status"])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table("transcode_jobs")
    op.drop_table("settings")
    op.drop_table("favorites")
    op.drop_table("daily_view_history")
    op.drop_table("view_history")
    op.drop_table("view_logs")
    op.drop_table("posts")
    op.drop_table("playlist_videos")
    op.drop_table("playlists")
    op.drop_table("video_tags")
    op.drop_table("video_categories")
    op.drop_table("videos")
    op.drop_table("tags")
    op.drop_table("categories")
    op.drop_table("users")
