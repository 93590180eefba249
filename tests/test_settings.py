"""Tests for the database-backed settings service."""

import pytest

from api.settings_service import (
    DEFAULT_SETTINGS,
    SettingsService,
    SettingsValidationError,
)


class TestSettingsLookup:
    """Tests for get() precedence: database, environment, registered default."""

    @pytest.mark.asyncio
    async def test_registered_default_when_table_empty(self, test_database):
        service = SettingsService()

        assert await service.get("videos_per_page") == DEFAULT_SETTINGS["videos_per_page"].default

    @pytest.mark.asyncio
    async def test_caller_default_for_unknown_key(self, test_database):
        service = SettingsService()

        assert await service.get("no_such_setting", "fallback") == "fallback"

    @pytest.mark.asyncio
    async def test_environment_overrides_default(self, test_database, monkeypatch):
        monkeypatch.setenv("ORGVIDEO_VIEW_DUPLICATE_HOURS", "6")
        service = SettingsService()

        assert await service.get("view_duplicate_hours") == 6

    @pytest.mark.asyncio
    async def test_unparseable_environment_value_ignored(self, test_database, monkeypatch):
        monkeypatch.setenv("ORGVIDEO_VIEW_DUPLICATE_HOURS", "soon")
        service = SettingsService()

        assert await service.get("view_duplicate_hours") == DEFAULT_SETTINGS["view_duplicate_hours"].default

    @pytest.mark.asyncio
    async def test_database_value_wins_over_environment(self, test_database, monkeypatch):
        monkeypatch.setenv("ORGVIDEO_VIEW_DUPLICATE_HOURS", "6")
        service = SettingsService()
        await service.set("view_duplicate_hours", 12, updated_by="admin")
        service.invalidate_cache()

        assert await service.get("view_duplicate_hours") == 12


class TestSettingsWrites:
    """Tests for set/create/reset/seed."""

    @pytest.mark.asyncio
    async def test_set_creates_row_for_registered_key(self, test_database):
        service = SettingsService()

        await service.set("recent_videos_days", 14, updated_by="admin")

        single = await service.get_single("recent_videos_days")
        assert single["value"] == 14
        assert single["category"] == "display"
        assert single["updated_by"] == "admin"

    @pytest.mark.asyncio
    async def test_set_unknown_key_raises(self, test_database):
        with pytest.raises(KeyError):
            await SettingsService().set("no_such_setting", 1)

    @pytest.mark.asyncio
    async def test_type_validation(self, test_database):
        service = SettingsService()
        await service.seed_defaults()

        with pytest.raises(SettingsValidationError):
            await service.set("videos_per_page", "twenty")
        with pytest.raises(SettingsValidationError):
            await service.set("view_history_cleanup_enabled", 1)

    @pytest.mark.asyncio
    async def test_constraint_validation(self, test_database):
        service = SettingsService()
        await service.seed_defaults()

        with pytest.raises(SettingsValidationError, match="above maximum"):
            await service.set("videos_per_page", 500)
        with pytest.raises(SettingsValidationError, match="below minimum"):
            await service.set("view_duplicate_hours", 0)

    @pytest.mark.asyncio
    async def test_float_setting_accepts_int(self, test_database):
        service = SettingsService()
        await service.seed_defaults()

        assert await service.set("view_count_threshold_percent", 50) == 50

    @pytest.mark.asyncio
    async def test_reset_restores_default(self, test_database):
        service = SettingsService()
        await service.set("videos_per_page", 50)

        await service.reset("videos_per_page")
        service.invalidate_cache()

        assert await service.get("videos_per_page") == DEFAULT_SETTINGS["videos_per_page"].default

    @pytest.mark.asyncio
    async def test_seed_is_idempotent(self, test_database):
        service = SettingsService()

        created = await service.seed_defaults()
        again = await service.seed_defaults()

        assert set(created) == set(DEFAULT_SETTINGS)
        assert again == []

    @pytest.mark.asyncio
    async def test_get_all_groups_by_category(self, test_database):
        service = SettingsService()
        await service.seed_defaults()

        grouped = await service.get_all()

        assert set(grouped) == {"view_tracking", "retention", "access", "display"}
        keys = [s["key"] for s in grouped["retention"]]
        assert "view_history_retention_days" in keys

    @pytest.mark.asyncio
    async def test_delete_falls_back_to_default(self, test_database):
        service = SettingsService()
        await service.set("videos_per_page", 40)

        await service.delete("videos_per_page")

        assert await service.get("videos_per_page") == DEFAULT_SETTINGS["videos_per_page"].default


class TestSettingsCache:
    """Tests for the TTL cache."""

    @pytest.mark.asyncio
    async def test_cache_stats(self, test_database):
        service = SettingsService(cache_ttl=60)
        await service.seed_defaults()
        await service.get("videos_per_page")

        stats = service.get_cache_stats()

        assert stats["loaded"] is True
        assert stats["is_valid"] is True
        assert stats["entry_count"] == len(DEFAULT_SETTINGS)

    @pytest.mark.asyncio
    async def test_invalidate(self, test_database):
        service = SettingsService()
        await service.get("videos_per_page")

        service.invalidate_cache()

        assert service.get_cache_stats()["is_valid"] is False
