"""
Error handling utilities for sanitizing error messages.

Prevents internal implementation details (paths, SQL, driver names) from being
exposed to API clients while still logging detailed errors for debugging.
User-facing messages are Japanese.
"""
import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)

# Patterns that indicate internal details
INTERNAL_PATTERNS = [
    r'/home/\w+/',           # Home directory paths
    r'/mnt/\w+/',            # Mount paths
    r'/tmp/\w+',             # Temp paths
    r'/var/\w+/',            # Var paths
    r'line \d+',             # Line numbers in stack traces
    r'File "[^"]+\.py"',     # Python file paths
    r'Permission denied',
    r'No such file or directory',
    r'UNIQUE constraint failed',
    r'duplicate key value',
    r'sqlite3?\.',
    r'asyncpg\.',
    r'Error: .+\.py:\d+',
]

# Generic user-friendly messages for common error types
ERROR_MESSAGES = {
    "auth_required": "認証が必要です",
    "invalid_token": "無効な認証トークンです",
    "forbidden": "権限がありません",
    "admin_required": "管理者権限が必要です",
    "staff_required": "管理者またはキュレーター権限が必要です",
    "invalid_credentials": "ユーザー名またはパスワードが間違っています",
    "account_locked": "アカウントがロックされています。しばらくしてから再試行してください",
    "rate_limited": "レート制限に達しました。しばらく待ってから再試行してください。",
    "transcode_failed": "動画の変換に失敗しました",
    "transcoder_unavailable": "GPU変換サーバーに接続できません",
    "transcoder_communication": "GPU変換サーバーとの通信に失敗しました",
    "timeout": "処理がタイムアウトしました",
    "database": "データベースエラーが発生しました",
    "permission": "ファイルへのアクセスに失敗しました",
    "general": "リクエストの処理中にエラーが発生しました",
}


def not_found_message(resource: str) -> str:
    """Standard 404 message, e.g. not_found_message("動画") -> "動画が見つかりません"."""
    return f"{resource}が見つかりません"


def truncate_error(message: Optional[str], max_length: int) -> str:
    """Truncate an error message for display or storage, marking the cut."""
    if not message:
        return ""
    if len(message) <= max_length:
        return message
    return message[: max(0, max_length - 3)] + "..."


def is_unique_violation(exc: BaseException, column: Optional[str] = None) -> bool:
    """
    Check if an exception is a unique constraint violation.

    Works for SQLite ("UNIQUE constraint failed: tags.name") and PostgreSQL
    ("duplicate key value violates unique constraint"). When column is given,
    the column name must appear in the error text as well.
    """
    error_str = str(exc).lower()
    if "unique constraint" not in error_str and "duplicate key" not in error_str:
        if exc.__cause__ is not None:
            return is_unique_violation(exc.__cause__, column)
        return False
    if column is None:
        return True
    return column.lower() in error_str


def sanitize_error_message(
    error: Optional[str],
    log_original: bool = True,
    context: str = ""
) -> Optional[str]:
    """
    Sanitize an error message for safe display to API clients.

    Args:
        error: The original error message (may contain internal details)
        log_original: Whether to log the original message before sanitizing
        context: Additional context for logging (e.g., "job_id=abc")

    Returns:
        A sanitized, user-friendly error message, or None if input was None
    """
    if error is None:
        return None

    if log_original and error:
        log_msg = "Original error"
        if context:
            log_msg += f" ({context})"
        log_msg += f": {error}"
        logger.warning(log_msg)

    error_lower = error.lower()

    if "timeout" in error_lower or "timed out" in error_lower:
        return ERROR_MESSAGES["timeout"]

    if "transcode" in error_lower or "ffmpeg" in error_lower:
        return ERROR_MESSAGES["transcode_failed"]

    if "connection" in error_lower and ("refused" in error_lower or "error" in error_lower):
        return ERROR_MESSAGES["transcoder_unavailable"]

    if "sqlite" in error_lower or "database" in error_lower or "constraint" in error_lower:
        return ERROR_MESSAGES["database"]

    if "permission" in error_lower:
        return ERROR_MESSAGES["permission"]

    for pattern in INTERNAL_PATTERNS:
        if re.search(pattern, error, re.IGNORECASE):
            return ERROR_MESSAGES["general"]

    # Short messages without path-like segments are passed through
    if len(error) < 100 and "/" not in error and "\\" not in error:
        return error

    return ERROR_MESSAGES["general"]
