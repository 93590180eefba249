"""
Audit logging for logins and administrative changes.

Entries are JSON lines written to a rotating file (logger "orgvideo.audit"),
falling back to the console when the file cannot be opened.
"""

import json
import logging
import os
from datetime import datetime, timezone
from enum import Enum
from logging.handlers import RotatingFileHandler
from typing import Any, Optional

from fastapi import Request

from api.errors import truncate_error
from config import (
    AUDIT_LOG_BACKUP_COUNT,
    AUDIT_LOG_ENABLED,
    AUDIT_LOG_LEVEL,
    AUDIT_LOG_MAX_BYTES,
    AUDIT_LOG_PATH,
    ERROR_DETAIL_MAX_LENGTH,
)

# Ensure log directory exists (skip in test mode)
if not os.environ.get("ORGVIDEO_TEST_MODE") and AUDIT_LOG_ENABLED:
    try:
        AUDIT_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
    except PermissionError:
        pass  # Will fall back to console logging


class AuditAction(str, Enum):
    """Audit action types for categorization."""

    # Authentication
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    LOGIN_LOCKED = "login_locked"
    LOGOUT = "logout"

    # Users
    USER_CREATE = "user_create"
    USER_UPDATE = "user_update"
    USER_DELETE = "user_delete"
    USER_CONTENT_TRANSFER = "user_content_transfer"

    # Videos and posts
    VIDEO_UPLOAD = "video_upload"
    VIDEO_UPDATE = "video_update"
    VIDEO_DELETE = "video_delete"
    POST_VISIBILITY_CHANGE = "post_visibility_change"
    SCHEDULE_UPDATE = "schedule_update"
    SCHEDULE_CANCEL = "schedule_cancel"
    SCHEDULE_PUBLISH_NOW = "schedule_publish_now"

    # Transcoding
    TRANSCODE_SUBMIT = "transcode_submit"
    TRANSCODE_CANCEL = "transcode_cancel"

    # Taxonomy
    CATEGORY_CREATE = "category_create"
    CATEGORY_UPDATE = "category_update"
    CATEGORY_DELETE = "category_delete"
    TAG_CREATE = "tag_create"
    TAG_UPDATE = "tag_update"
    TAG_DELETE = "tag_delete"

    # Playlists
    PLAYLIST_CREATE = "playlist_create"
    PLAYLIST_UPDATE = "playlist_update"
    PLAYLIST_DELETE = "playlist_delete"

    # Settings and housekeeping
    SETTINGS_CHANGE = "settings_change"
    VIEW_HISTORY_CLEANUP = "view_history_cleanup"


class AuditLogger:
    """
    Structured audit logger.

    Logs events in JSON format for easy parsing and analysis.
    Falls back to console logging if file logging is unavailable.
    """

    def __init__(self):
        self.logger = logging.getLogger("orgvideo.audit")
        self.logger.setLevel(getattr(logging, AUDIT_LOG_LEVEL, logging.INFO))
        self.logger.propagate = False

        if not self.logger.handlers:
            self._setup_handlers()

    def _setup_handlers(self):
        formatter = logging.Formatter("%(message)s")  # Raw JSON output

        if AUDIT_LOG_ENABLED:
            try:
                file_handler = RotatingFileHandler(
                    AUDIT_LOG_PATH,
                    maxBytes=AUDIT_LOG_MAX_BYTES,
                    backupCount=AUDIT_LOG_BACKUP_COUNT,
                    encoding="utf-8",
                )
                file_handler.setFormatter(formatter)
                self.logger.addHandler(file_handler)
            except (PermissionError, OSError):
                console_handler = logging.StreamHandler()
                console_handler.setFormatter(formatter)
                self.logger.addHandler(console_handler)
        else:
            self.logger.addHandler(logging.NullHandler())

    def log(
        self,
        action: AuditAction,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        actor_id: Optional[int] = None,
        actor_name: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[Any] = None,
        resource_name: Optional[str] = None,
        details: Optional[dict] = None,
        success: bool = True,
        error: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        """
        Log an audit event.

        Args:
            action: The type of action being performed
            client_ip: IP address of the client making the request
            user_agent: User-Agent header from the request
            actor_id: ID of the signed-in user performing the action
            actor_name: Username of that user
            resource_type: Type of resource (video, playlist, user, etc.)
            resource_id: ID of the affected resource
            resource_name: Human-readable name of the resource (title, slug, etc.)
            details: Additional action-specific details
            success: Whether the action succeeded
            error: Error message if action failed
            request_id: Request ID for tracing
        """
        if not AUDIT_LOG_ENABLED:
            return

        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "action": action.value,
            "success": success,
        }

        if request_id:
            entry["request_id"] = request_id
        if client_ip:
            entry["client_ip"] = client_ip
        if user_agent:
            entry["user_agent"] = truncate_error(user_agent, ERROR_DETAIL_MAX_LENGTH)
        if actor_id is not None:
            entry["actor_id"] = actor_id
        if actor_name:
            entry["actor_name"] = actor_name
        if resource_type:
            entry["resource_type"] = resource_type
        if resource_id is not None:
            entry["resource_id"] = resource_id
        if resource_name:
            entry["resource_name"] = resource_name
        if details:
            entry["details"] = details
        if error:
            entry["error"] = truncate_error(error, ERROR_DETAIL_MAX_LENGTH)

        try:
            self.logger.info(json.dumps(entry, default=str, ensure_ascii=False))
        except (TypeError, ValueError) as e:
            logging.getLogger(__name__).warning(f"Failed to write audit entry for {action.value}: {e}")


# Singleton instance for use across the application
audit_logger = AuditLogger()


def log_audit(
    action: AuditAction,
    client_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    actor_id: Optional[int] = None,
    actor_name: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[Any] = None,
    resource_name: Optional[str] = None,
    details: Optional[dict] = None,
    success: bool = True,
    error: Optional[str] = None,
    request_id: Optional[str] = None,
):
    """
    Convenience function for logging audit events.

    Example usage:
        log_audit(
            AuditAction.TAG_CREATE,
            client_ip=get_real_ip(request),
            actor_id=user.id,
            resource_type="tag",
            resource_id=tag_id,
            resource_name=name,
        )
    """
    audit_logger.log(
        action=action,
        client_ip=client_ip,
        user_agent=user_agent,
        actor_id=actor_id,
        actor_name=actor_name,
        resource_type=resource_type,
        resource_id=resource_id,
        resource_name=resource_name,
        details=details,
        success=success,
        error=error,
        request_id=request_id,
    )


def audit_request(request: Request, action: AuditAction, user=None, **kwargs):
    """log_audit with client, actor and request ID taken from the request."""
    from api.common import get_real_ip, get_request_id

    log_audit(
        action,
        client_ip=get_real_ip(request),
        user_agent=request.headers.get("user-agent"),
        actor_id=user.id if user is not None else None,
        actor_name=user.username if user is not None else None,
        request_id=get_request_id(request),
        **kwargs,
    )
