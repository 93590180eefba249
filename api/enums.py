"""
Centralized enums for status values used throughout the application.
Using str-based enums for database compatibility (values match CHECK constraints).
"""

from enum import Enum


class Role(str, Enum):
    """User roles, from most to least privileged."""

    ADMIN = "ADMIN"
    CURATOR = "CURATOR"
    VIEWER = "VIEWER"


class Visibility(str, Enum):
    """Who can see a video, post or playlist."""

    PUBLIC = "PUBLIC"  # Everyone
    PRIVATE = "PRIVATE"  # Signed-in users and allowed IP ranges
    DRAFT = "DRAFT"  # Owner and admins only


class VideoStatus(str, Enum):
    """Status values for video processing."""

    UPLOADING = "UPLOADING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class TranscodeJobStatus(str, Enum):
    """Status values for GPU transcode jobs."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class PostType(str, Enum):
    """What a post publishes."""

    VIDEO = "VIDEO"
    PLAYLIST = "PLAYLIST"


class VideoSort(str, Enum):
    """Sort options for video listing."""

    LATEST = "latest"
    POPULAR = "popular"
    OLDEST = "oldest"
    DURATION = "duration"
    TITLE = "title"


class SortOrder(str, Enum):
    """Sort order direction."""

    ASC = "asc"
    DESC = "desc"


class HistorySortBy(str, Enum):
    """Sort options for the lifetime view history."""

    LAST_WATCHED_AT = "lastWatchedAt"
    COMPLETION_RATE = "completionRate"
    WATCH_DURATION = "watchDuration"


class DailyHistorySortBy(str, Enum):
    """Sort options for the daily view history."""

    VIEW_TIME = "viewTime"
    VIEW_DATE = "viewDate"
    WATCH_DURATION = "watchDuration"
    COMPLETION_RATE = "completionRate"
    SESSION_COUNT = "sessionCount"


class ScheduleType(str, Enum):
    """Filter for the scheduled-items listing."""

    PUBLISH = "publish"
    UNPUBLISH = "unpublish"
    ALL = "all"


class ScheduleStatus(str, Enum):
    """Pending items have a scheduled time in the future; completed ones are at or past it."""

    PENDING = "pending"
    COMPLETED = "completed"
    ALL = "all"
