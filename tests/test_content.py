"""Tests for shared content helpers: ids, visibility, tags, playlists and deletes."""

import pytest
import sqlalchemy as sa

from api.auth import AuthUser
from api.content import (
    PUBLIC_ID_ALPHABET,
    PUBLIC_ID_LENGTH,
    can_view,
    clean_tag_names,
    delete_video_and_related,
    generate_public_id,
    generate_unique_id,
    load_video_taxonomy,
    normalize_visibility,
    refresh_playlist_totals,
    serialize_videos,
    set_video_categories,
    set_video_tags,
    video_select,
    visible_visibilities,
)
from api.database import (
    favorites,
    playlist_videos,
    playlists,
    posts,
    tags,
    video_tags,
    videos,
    view_history,
)
from api.enums import Visibility
from api.errors import is_unique_violation, not_found_message, sanitize_error_message, truncate_error

ADMIN = AuthUser(1, "admin", "ADMIN", "")
OWNER = AuthUser(2, "curator", "CURATOR", "")
OTHER = AuthUser(3, "other", "CURATOR", "")


class TestPublicIds:
    def test_shape(self):
        public_id = generate_public_id()

        assert len(public_id) == PUBLIC_ID_LENGTH
        assert set(public_id) <= set(PUBLIC_ID_ALPHABET)

    def test_ids_differ(self):
        assert len({generate_public_id() for _ in range(50)}) == 50

    @pytest.mark.asyncio
    async def test_unique_id_avoids_existing(self, test_database, sample_video):
        public_id = await generate_unique_id(videos, videos.c.video_id)

        assert public_id != sample_video["video_id"]


class TestVisibility:
    """Tests for visibility rules."""

    def test_public_always_visible(self):
        assert can_view(Visibility.PUBLIC.value, 2, None, internal_access=False) is True

    def test_private_needs_internal_access(self):
        assert can_view(Visibility.PRIVATE.value, 2, None, internal_access=False) is False
        assert can_view(Visibility.PRIVATE.value, 2, None, internal_access=True) is True

    def test_draft_owner_or_admin_only(self):
        assert can_view(Visibility.DRAFT.value, 2, OWNER, internal_access=True) is True
        assert can_view(Visibility.DRAFT.value, 2, ADMIN, internal_access=True) is True
        assert can_view(Visibility.DRAFT.value, 2, OTHER, internal_access=True) is False
        assert can_view(Visibility.DRAFT.value, 2, None, internal_access=True) is False

    def test_listing_visibilities(self):
        assert visible_visibilities(False) == ["PUBLIC"]
        assert visible_visibilities(True) == ["PUBLIC", "PRIVATE"]

    def test_normalize_visibility(self):
        assert normalize_visibility("private") == "PRIVATE"
        assert normalize_visibility("", default="DRAFT") == "DRAFT"
        assert normalize_visibility(None) is None
        assert normalize_visibility("secret") is None


class TestTags:
    """Tests for tag cleanup and linking."""

    def test_clean_tag_names(self):
        assert clean_tag_names(["  math ", "", "math", "physics", "x" * 80]) == ["math", "physics", "x" * 50]
        assert clean_tag_names(None) == []

    @pytest.mark.asyncio
    async def test_set_video_tags_replaces_and_creates(self, test_database, sample_video):
        await set_video_tags(sample_video["id"], ["math", "algebra"])
        await set_video_tags(sample_video["id"], ["math", "geometry"])

        taxonomy = await load_video_taxonomy([sample_video["id"]])
        names = [tag["name"] for tag in taxonomy[sample_video["id"]]["tags"]]
        assert names == ["geometry", "math"]
        # algebra stays in the tag table for reuse
        all_tags = await test_database.fetch_all(sa.select(tags.c.name))
        assert {row["name"] for row in all_tags} == {"math", "algebra", "geometry"}

    @pytest.mark.asyncio
    async def test_set_video_categories_deduplicates(self, test_database, sample_video, make_category):
        second = make_category("Seminars")

        await set_video_categories(sample_video["id"], [second["id"], second["id"]])

        taxonomy = await load_video_taxonomy([sample_video["id"]])
        assert [c["name"] for c in taxonomy[sample_video["id"]]["categories"]] == ["Seminars"]


class TestSerialization:
    @pytest.mark.asyncio
    async def test_serialize_videos_includes_uploader_and_taxonomy(self, test_database, sample_video):
        rows = await test_database.fetch_all(video_select().where(videos.c.id == sample_video["id"]))

        data = await serialize_videos(rows)

        assert data[0]["videoId"] == sample_video["video_id"]
        assert data[0]["uploader"]["username"] == "curator"
        assert data[0]["categories"][0]["slug"] == "lectures"
        assert data[0]["isScheduled"] is False

    @pytest.mark.asyncio
    async def test_taxonomy_empty_input(self, test_database):
        assert await load_video_taxonomy([]) == {}


class TestPlaylistsAndDeletes:
    """Tests for playlist totals and cascading video deletes."""

    @pytest.fixture
    def playlist(self, db_engine, curator_user):
        with db_engine.begin() as conn:
            result = conn.execute(
                playlists.insert().values(playlist_id="pl000000001", title="Course", creator_id=curator_user["id"])
            )
        return result.inserted_primary_key[0]

    async def _add(self, database, playlist_pk, video_pk, order):
        await database.execute(
            playlist_videos.insert().values(playlist_id=playlist_pk, video_id=video_pk, sort_order=order)
        )

    @pytest.mark.asyncio
    async def test_refresh_totals(self, test_database, make_video, curator_user, playlist):
        first = make_video(curator_user, duration=100.0)
        second = make_video(curator_user, duration=50.5)
        await self._add(test_database, playlist, first["id"], 0)
        await self._add(test_database, playlist, second["id"], 1)

        await refresh_playlist_totals(playlist)

        row = await test_database.fetch_one(sa.select(playlists).where(playlists.c.id == playlist))
        assert row["video_count"] == 2
        assert row["total_duration"] == 150.5

    @pytest.mark.asyncio
    async def test_delete_video_removes_related_rows(
        self, test_database, make_video, curator_user, viewer_user, playlist
    ):
        keep = make_video(curator_user, duration=30.0)
        doomed = make_video(curator_user, duration=100.0)
        await self._add(test_database, playlist, keep["id"], 0)
        await self._add(test_database, playlist, doomed["id"], 1)
        await set_video_tags(doomed["id"], ["temp"])
        await test_database.execute(favorites.insert().values(user_id=viewer_user["id"], video_id=doomed["id"]))
        await test_database.execute(
            view_history.insert().values(
                user_id=viewer_user["id"], video_id=doomed["id"], watch_duration=10, completion_rate=5
            )
        )

        await delete_video_and_related(doomed["id"])

        assert await test_database.fetch_one(sa.select(videos).where(videos.c.id == doomed["id"])) is None
        assert await test_database.fetch_one(sa.select(posts).where(posts.c.video_id == doomed["id"])) is None
        assert await test_database.fetch_all(sa.select(favorites)) == []
        assert await test_database.fetch_all(sa.select(view_history)) == []
        assert await test_database.fetch_all(sa.select(video_tags)) == []
        row = await test_database.fetch_one(sa.select(playlists).where(playlists.c.id == playlist))
        assert row["video_count"] == 1
        assert row["total_duration"] == 30.0


class TestErrorHelpers:
    """Tests for user-facing error message helpers."""

    def test_not_found_message(self):
        assert not_found_message("動画") == "動画が見つかりません"

    def test_truncate_error(self):
        assert truncate_error("short", 10) == "short"
        assert truncate_error("a" * 20, 10) == "aaaaaaa..."
        assert truncate_error(None, 10) == ""

    def test_unique_violation_detection(self):
        assert is_unique_violation(Exception("UNIQUE constraint failed: tags.name")) is True
        assert is_unique_violation(Exception("UNIQUE constraint failed: tags.name"), "tags.name") is True
        assert is_unique_violation(Exception("UNIQUE constraint failed: tags.name"), "users.email") is False
        assert is_unique_violation(Exception("duplicate key value violates unique constraint")) is True
        assert is_unique_violation(Exception("connection reset")) is False

    def test_unique_violation_through_cause(self):
        wrapper = RuntimeError("insert failed")
        wrapper.__cause__ = Exception("UNIQUE constraint failed: users.username")
        assert is_unique_violation(wrapper) is True

    def test_sanitize_hides_internal_details(self):
        assert sanitize_error_message("codec error", log_original=False) == "codec error"
        assert sanitize_error_message("ffmpeg exited with 1", log_original=False) == "動画の変換に失敗しました"
        assert sanitize_error_message("No such file or directory: /srv/x", log_original=False) == (
            "リクエストの処理中にエラーが発生しました"
        )
        assert sanitize_error_message(None) is None
