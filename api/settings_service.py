"""
Database-backed system settings with caching and environment variable fallback.

Runtime-tunable values (view count thresholds, retention, allowed IP ranges,
display options) live in the settings table so admins can change them without
a restart.

Lookup order for a key:
1. In-memory cache of the settings table (TTL 60s)
2. Environment variable ORGVIDEO_<KEY>
3. The registered default in DEFAULT_SETTINGS (or the caller's default)
"""

import json
import logging
import os
import re
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, NamedTuple, Optional

import sqlalchemy as sa

from api.db_retry import (
    db_execute_with_retry,
    fetch_all_with_retry,
    fetch_one_with_retry,
)
from config import (
    VIEW_COUNT_THRESHOLD_PERCENT,
    VIEW_COUNT_THRESHOLD_SECONDS,
    VIEW_DUPLICATE_HOURS,
    VIEW_HISTORY_CLEANUP_BATCH_SIZE,
    VIEW_HISTORY_RETENTION_DAYS,
)

logger = logging.getLogger(__name__)


class SettingsValidationError(Exception):
    """Raised when a setting value fails validation."""

    pass


class SettingDefinition(NamedTuple):
    category: str
    value_type: str
    default: Any
    description: str
    constraints: Optional[Dict[str, Any]] = None


# Settings the application reads. Seeded by `orgvideo settings seed`.
DEFAULT_SETTINGS: Dict[str, SettingDefinition] = {
    "view_count_threshold_percent": SettingDefinition(
        "view_tracking", "float", VIEW_COUNT_THRESHOLD_PERCENT,
        "再生回数としてカウントする視聴完了率（%）", {"min": 0, "max": 100},
    ),
    "view_count_threshold_seconds": SettingDefinition(
        "view_tracking", "float", VIEW_COUNT_THRESHOLD_SECONDS,
        "再生回数としてカウントする視聴秒数", {"min": 0},
    ),
    "view_duplicate_hours": SettingDefinition(
        "view_tracking", "integer", VIEW_DUPLICATE_HOURS,
        "同一セッションの重複カウントを防ぐ時間（時間）", {"min": 1, "max": 720},
    ),
    "view_history_retention_days": SettingDefinition(
        "retention", "integer", VIEW_HISTORY_RETENTION_DAYS,
        "視聴履歴の保持期間（日）", {"min": 1},
    ),
    "view_history_cleanup_enabled": SettingDefinition(
        "retention", "boolean", True, "視聴履歴の自動削除を有効にする",
    ),
    "view_history_cleanup_batch_size": SettingDefinition(
        "retention", "integer", VIEW_HISTORY_CLEANUP_BATCH_SIZE,
        "視聴履歴削除のバッチサイズ", {"min": 1, "max": 10000},
    ),
    "private_video_allowed_ips": SettingDefinition(
        "access", "json", [], "学内限定動画にアクセスできるIPレンジ（CIDR）",
    ),
    "new_badge_display_days": SettingDefinition(
        "display", "integer", 7, "NEWバッジを表示する日数", {"min": 0, "max": 365},
    ),
    "videos_per_page": SettingDefinition(
        "display", "integer", 20, "1ページあたりの動画数", {"min": 1, "max": 100},
    ),
    "recent_videos_days": SettingDefinition(
        "display", "integer", 30, "新着動画として扱う日数", {"min": 1, "max": 365},
    ),
}

# Keys served unauthenticated by GET /api/settings
PUBLIC_SETTING_KEYS = ("new_badge_display_days", "videos_per_page", "recent_videos_days")


def _loads(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        # Legacy rows stored bare strings
        return raw


class SettingsService:
    """
    Settings table access with a TTL cache.

    Usage:
        percent = await settings_service.get("view_count_threshold_percent")
        await settings_service.set("view_duplicate_hours", 12, updated_by="admin")
        settings_service.invalidate_cache()
    """

    DEFAULT_CACHE_TTL = 60  # seconds

    def __init__(self, cache_ttl: int = DEFAULT_CACHE_TTL):
        self._cache: Dict[str, Any] = {}
        self._cache_metadata: Dict[str, Dict[str, Any]] = {}
        self._cache_ttl = cache_ttl
        self._cache_updated: float = 0
        self._cache_loaded: bool = False

    def _is_cache_valid(self) -> bool:
        if not self._cache_loaded:
            return False
        return (time.time() - self._cache_updated) < self._cache_ttl

    async def _refresh_cache(self) -> None:
        """Reload every row of the settings table into the cache."""
        from api.database import settings as settings_table

        try:
            rows = await fetch_all_with_retry(settings_table.select())
        except Exception as e:
            # Keep serving the stale cache (or defaults) when the database is unavailable
            logger.warning(f"Failed to refresh settings cache: {e}")
            return

        new_cache: Dict[str, Any] = {}
        new_metadata: Dict[str, Dict[str, Any]] = {}
        for row in rows:
            key = row["key"]
            value_type = row["value_type"]
            try:
                new_cache[key] = self._coerce_value(_loads(row["value"]), value_type)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring setting '{key}' with value that is not a valid {value_type}")
                continue
            new_metadata[key] = {
                "value_type": value_type,
                "category": row["category"],
                "constraints": _loads(row["constraints"]),
            }

        self._cache = new_cache
        self._cache_metadata = new_metadata
        self._cache_updated = time.time()
        self._cache_loaded = True
        logger.debug(f"Settings cache refreshed: {len(new_cache)} settings loaded")

    async def _refresh_cache_if_needed(self) -> None:
        if not self._is_cache_valid():
            await self._refresh_cache()

    def _coerce_value(self, value: Any, value_type: str) -> Any:
        """
        Coerce a stored value to its declared type.

        Raises:
            ValueError / TypeError: If the value cannot be converted
        """
        if value is None:
            return None

        if value_type in ("string", "enum"):
            return str(value)
        elif value_type == "integer":
            return int(value)
        elif value_type == "float":
            return float(value)
        elif value_type == "boolean":
            if isinstance(value, bool):
                return value
            if isinstance(value, str):
                # Only an explicit "false"-like string disables a flag
                return value.strip().lower() not in ("false", "0", "no", "off")
            return bool(value)
        return value

    def _parse_env_value(self, env_value: str, value_type: str) -> Any:
        """Parse an environment variable for a setting; None when unparseable."""
        try:
            if value_type == "json":
                return json.loads(env_value)
            return self._coerce_value(env_value, value_type)
        except (TypeError, ValueError):
            return None

    def _get_env_key(self, key: str) -> str:
        """e.g. "view_duplicate_hours" -> "ORGVIDEO_VIEW_DUPLICATE_HOURS"."""
        return f"ORGVIDEO_{key.upper()}"

    async def get(self, key: str, default: Any = None) -> Any:
        """
        Get a setting value with caching and env var fallback.

        When default is None the registered default from DEFAULT_SETTINGS is used.
        """
        await self._refresh_cache_if_needed()

        if key in self._cache and self._cache[key] is not None:
            return self._cache[key]

        definition = DEFAULT_SETTINGS.get(key)
        value_type = definition.value_type if definition else "string"

        env_value = os.getenv(self._get_env_key(key))
        if env_value is not None:
            parsed = self._parse_env_value(env_value, value_type)
            if parsed is not None:
                return parsed

        if default is None and definition is not None:
            return definition.default
        return default

    async def get_many(self, keys: List[str]) -> Dict[str, Any]:
        return {key: await self.get(key) for key in keys}

    async def set(
        self,
        key: str,
        value: Any,
        updated_by: Optional[str] = None,
    ) -> Any:
        """
        Update a setting value, creating the row for a registered key if missing.

        Returns:
            The stored (coerced) value

        Raises:
            SettingsValidationError: If validation fails
            KeyError: If the setting doesn't exist and has no registered default
        """
        from api.database import settings as settings_table

        existing = await fetch_one_with_retry(
            settings_table.select().where(settings_table.c.key == key)
        )
        if existing is None:
            definition = DEFAULT_SETTINGS.get(key)
            if definition is None:
                raise KeyError(f"Setting not found: {key}")
            await self.create(
                key,
                value,
                category=definition.category,
                value_type=definition.value_type,
                description=definition.description,
                constraints=definition.constraints,
                updated_by=updated_by,
            )
            return value

        value_type = existing["value_type"]
        self._validate_value(value, value_type, _loads(existing["constraints"]))

        await db_execute_with_retry(
            settings_table.update()
            .where(settings_table.c.key == key)
            .values(
                value=json.dumps(value),
                updated_at=datetime.now(timezone.utc),
                updated_by=updated_by,
            )
        )

        self._cache[key] = value
        logger.info(f"Setting updated: {key} (by {updated_by or 'unknown'})")
        return value

    async def create(
        self,
        key: str,
        value: Any,
        category: str,
        value_type: str = "string",
        description: Optional[str] = None,
        constraints: Optional[Dict[str, Any]] = None,
        updated_by: Optional[str] = None,
    ) -> None:
        """Insert a new setting row after validating the value."""
        from api.database import settings as settings_table

        self._validate_value(value, value_type, constraints)

        await db_execute_with_retry(
            settings_table.insert().values(
                key=key,
                value=json.dumps(value),
                category=category,
                value_type=value_type,
                description=description,
                constraints=json.dumps(constraints) if constraints else None,
                updated_at=datetime.now(timezone.utc),
                updated_by=updated_by,
            )
        )

        self._cache[key] = value
        self._cache_metadata[key] = {
            "value_type": value_type,
            "category": category,
            "constraints": constraints,
        }
        logger.info(f"Setting created: {key} in category {category}")

    async def delete(self, key: str) -> None:
        """Delete a setting; subsequent reads fall back to env var / default."""
        from api.database import settings as settings_table

        await db_execute_with_retry(settings_table.delete().where(settings_table.c.key == key))
        self._cache.pop(key, None)
        self._cache_metadata.pop(key, None)
        logger.info(f"Setting deleted: {key}")

    async def reset(self, key: str, updated_by: Optional[str] = None) -> Any:
        """
        Restore a registered setting to its default value.

        Raises:
            KeyError: If the key has no registered default
        """
        definition = DEFAULT_SETTINGS.get(key)
        if definition is None:
            raise KeyError(f"Setting not found: {key}")
        return await self.set(key, definition.default, updated_by=updated_by)

    async def seed_defaults(self, updated_by: Optional[str] = "system") -> List[str]:
        """
        Insert every registered setting that is not in the table yet.

        Returns:
            The keys that were created
        """
        from api.database import settings as settings_table

        rows = await fetch_all_with_retry(sa.select(settings_table.c.key))
        existing = {row["key"] for row in rows}

        created = []
        for key, definition in DEFAULT_SETTINGS.items():
            if key in existing:
                continue
            await self.create(
                key,
                definition.default,
                category=definition.category,
                value_type=definition.value_type,
                description=definition.description,
                constraints=definition.constraints,
                updated_by=updated_by,
            )
            created.append(key)
        return created

    def _row_to_dict(self, row) -> Dict[str, Any]:
        return {
            "key": row["key"],
            "value": _loads(row["value"]),
            "category": row["category"],
            "value_type": row["value_type"],
            "description": row["description"],
            "constraints": _loads(row["constraints"]),
            "updated_at": row["updated_at"],
            "updated_by": row["updated_by"],
        }

    async def get_category(self, category: str) -> List[Dict[str, Any]]:
        """All settings in a category, with metadata, for the admin console."""
        from api.database import settings as settings_table

        rows = await fetch_all_with_retry(
            settings_table.select()
            .where(settings_table.c.category == category)
            .order_by(settings_table.c.key)
        )
        return [self._row_to_dict(row) for row in rows]

    async def get_all(self) -> Dict[str, List[Dict[str, Any]]]:
        """All settings grouped by category."""
        from api.database import settings as settings_table

        rows = await fetch_all_with_retry(
            settings_table.select().order_by(settings_table.c.category, settings_table.c.key)
        )
        result: Dict[str, List[Dict[str, Any]]] = {}
        for row in rows:
            result.setdefault(row["category"], []).append(self._row_to_dict(row))
        return result

    async def get_single(self, key: str) -> Optional[Dict[str, Any]]:
        """A single setting with full metadata, or None."""
        from api.database import settings as settings_table

        row = await fetch_one_with_retry(settings_table.select().where(settings_table.c.key == key))
        return self._row_to_dict(row) if row is not None else None

    def _validate_value(
        self,
        value: Any,
        value_type: str,
        constraints: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Validate a value against type and constraints.

        Raises:
            SettingsValidationError: If validation fails
        """
        if value is None:
            return

        if value_type == "integer":
            if not isinstance(value, int) or isinstance(value, bool):
                raise SettingsValidationError(f"Expected integer, got {type(value).__name__}")
        elif value_type == "float":
            if not isinstance(value, (int, float)) or isinstance(value, bool):
                raise SettingsValidationError(f"Expected float, got {type(value).__name__}")
        elif value_type == "boolean":
            if not isinstance(value, bool):
                raise SettingsValidationError(f"Expected boolean, got {type(value).__name__}")
        elif value_type in ("string", "enum"):
            if not isinstance(value, str):
                raise SettingsValidationError(f"Expected string, got {type(value).__name__}")

        if not constraints:
            return

        if "min" in constraints and value < constraints["min"]:
            raise SettingsValidationError(f"Value {value} is below minimum {constraints['min']}")
        if "max" in constraints and value > constraints["max"]:
            raise SettingsValidationError(f"Value {value} is above maximum {constraints['max']}")
        if "enum_values" in constraints and value not in constraints["enum_values"]:
            raise SettingsValidationError(f"Value '{value}' not in allowed values: {constraints['enum_values']}")
        if "pattern" in constraints and not re.match(constraints["pattern"], str(value)):
            raise SettingsValidationError(f"Value '{value}' does not match pattern: {constraints['pattern']}")
        if "max_length" in constraints and len(str(value)) > constraints["max_length"]:
            raise SettingsValidationError(
                f"Value length {len(str(value))} is above maximum {constraints['max_length']}"
            )

    def invalidate_cache(self) -> None:
        """Force cache refresh on next access."""
        self._cache_updated = 0
        self._cache_loaded = False

    def get_cache_stats(self) -> Dict[str, Any]:
        return {
            "loaded": self._cache_loaded,
            "entry_count": len(self._cache),
            "ttl_seconds": self._cache_ttl,
            "age_seconds": time.time() - self._cache_updated if self._cache_loaded else None,
            "is_valid": self._is_cache_valid(),
        }


# Global singleton instance
_settings_service: Optional[SettingsService] = None


def get_settings_service() -> SettingsService:
    """Get the global settings service instance."""
    global _settings_service
    if _settings_service is None:
        _settings_service = SettingsService()
    return _settings_service


async def get_setting(key: str, default: Any = None) -> Any:
    """Get a setting value (convenience wrapper)."""
    return await get_settings_service().get(key, default)


async def set_setting(key: str, value: Any, updated_by: Optional[str] = None) -> Any:
    """Set a setting value (convenience wrapper)."""
    return await get_settings_service().set(key, value, updated_by)
