"""
Pytest fixtures for orgvideo tests.
Provides the test database, test clients, users, tokens and sample content.

Uses a SQLite file database so the suite runs without a PostgreSQL server.
The database URL is fixed before any application module is imported because
api.database binds its Database instance at import time.
"""

import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncGenerator, Callable

import pytest
import sqlalchemy as sa

# Set up test paths BEFORE importing config
_test_temp_dir = tempfile.mkdtemp(prefix="orgvideo-test-")
TEST_DB_PATH = Path(_test_temp_dir) / "orgvideo_test.db"
TEST_STORAGE_DIR = Path(_test_temp_dir) / "storage"

os.environ["ORGVIDEO_TEST_MODE"] = "1"
os.environ["ORGVIDEO_DATABASE_URL"] = f"sqlite:///{TEST_DB_PATH}"
os.environ["ORGVIDEO_STORAGE_PATH"] = str(TEST_STORAGE_DIR)
os.environ["ORGVIDEO_API_RATE_LIMIT_ENABLED"] = "false"
os.environ["ORGVIDEO_RATE_LIMIT_ENABLED"] = "false"
os.environ["ORGVIDEO_SECURE_COOKIES"] = "false"
os.environ["ORGVIDEO_AUDIT_LOG_ENABLED"] = "false"
os.environ["ORGVIDEO_CRON_SECRET_TOKEN"] = "test-cron-secret"
os.environ["ORGVIDEO_JWT_SECRET"] = "test-jwt-secret-with-enough-length-for-hs256"
os.environ["ORGVIDEO_SCHEDULER_ITEM_DELAY"] = "0"

import api.gpu_transcoder as gpu_transcoder  # noqa: E402
import api.settings_service as settings_service  # noqa: E402
from api.auth import hash_password  # noqa: E402
from api.database import (  # noqa: E402
    categories,
    configure_database,
    database,
    metadata,
    posts,
    users,
    video_categories,
    videos,
)
from api.enums import PostType, Role, VideoStatus, Visibility  # noqa: E402
from api.rate_limiter import api_rate_limiter  # noqa: E402
from tests.helpers import auth_headers_for  # noqa: E402

TEST_PASSWORD = "password123"


def _create_tables(db_url: str) -> sa.engine.Engine:
    """Create all tables in the test database."""
    engine = sa.create_engine(db_url)
    metadata.drop_all(engine)
    metadata.create_all(engine)
    return engine


@pytest.fixture(autouse=True)
def db_engine() -> sa.engine.Engine:
    """Fresh tables and empty in-process caches for every test."""
    engine = _create_tables(os.environ["ORGVIDEO_DATABASE_URL"])
    settings_service._settings_service = None
    gpu_transcoder._client = None
    api_rate_limiter.reset()

    yield engine

    metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def test_storage() -> Path:
    """Create the upload/converted/thumbnail directories under the test storage path."""
    from config import CONVERTED_DIR, THUMBNAILS_DIR, UPLOADS_DIR

    for directory in (UPLOADS_DIR, CONVERTED_DIR, THUMBNAILS_DIR):
        directory.mkdir(parents=True, exist_ok=True)
    return TEST_STORAGE_DIR


@pytest.fixture
async def test_database(db_engine) -> AsyncGenerator:
    """The application's Database instance, connected to the test database."""
    await database.connect()
    await configure_database()

    yield database

    await database.disconnect()


# ============ Row factories ============


def _insert(engine: sa.engine.Engine, table: sa.Table, values: dict) -> int:
    with engine.begin() as conn:
        result = conn.execute(table.insert().values(**values))
        return result.inserted_primary_key[0]


@pytest.fixture
def make_user(db_engine) -> Callable[..., dict]:
    """Factory inserting a user; returns the row values plus its id and plain password."""
    counter = {"n": 0}

    def factory(username: str = None, role: str = Role.VIEWER.value, password: str = TEST_PASSWORD, **overrides):
        counter["n"] += 1
        username = username or f"user{counter['n']}"
        now = datetime.now(timezone.utc)
        values = {
            "username": username,
            "email": f"{username}@example.com",
            "display_name": username.title(),
            "password_hash": hash_password(password),
            "role": role,
            "department": None,
            "is_active": True,
            "failed_login_count": 0,
            "created_at": now,
            "updated_at": now,
        }
        values.update(overrides)
        values["id"] = _insert(db_engine, users, values)
        values["password"] = password
        return values

    return factory


@pytest.fixture
def make_category(db_engine) -> Callable[..., dict]:
    counter = {"n": 0}

    def factory(name: str = None, slug: str = None, sort_order: int = None, **overrides):
        counter["n"] += 1
        name = name or f"Category {counter['n']}"
        values = {
            "name": name,
            "slug": slug or f"category-{counter['n']}",
            "description": None,
            "color": "#3366cc",
            "sort_order": counter["n"] if sort_order is None else sort_order,
            "created_at": datetime.now(timezone.utc),
        }
        values.update(overrides)
        values["id"] = _insert(db_engine, categories, values)
        return values

    return factory


@pytest.fixture
def make_video(db_engine) -> Callable[..., dict]:
    """
    Factory inserting a video and its VIDEO post (sharing the public id).

    Post fields follow the video unless post_overrides says otherwise.
    """
    counter = {"n": 0}

    def factory(uploader: dict, category: dict = None, post_overrides: dict = None, **overrides):
        counter["n"] += 1
        now = datetime.now(timezone.utc)
        public_id = overrides.pop("video_id", None) or f"vid{counter['n']:08d}"
        values = {
            "video_id": public_id,
            "title": f"Video {counter['n']}",
            "description": "A test video description",
            "uploader_id": uploader["id"],
            "original_filename": f"{public_id}.mp4",
            "file_path": f"{public_id}.mp4",
            "duration": 120.0,
            "view_count": 0,
            "visibility": Visibility.PUBLIC.value,
            "status": VideoStatus.COMPLETED.value,
            "is_scheduled": False,
            "published_at": now,
            "created_at": now,
            "updated_at": now,
        }
        values.update(overrides)
        values["id"] = _insert(db_engine, videos, values)

        post_values = {
            "post_id": public_id,
            "title": values["title"],
            "description": values["description"],
            "post_type": PostType.VIDEO.value,
            "video_id": values["id"],
            "creator_id": uploader["id"],
            "visibility": values["visibility"],
            "is_scheduled": values["is_scheduled"],
            "scheduled_publish_at": values.get("scheduled_publish_at"),
            "scheduled_unpublish_at": values.get("scheduled_unpublish_at"),
            "published_at": values.get("published_at"),
            "created_at": now,
            "updated_at": now,
        }
        post_values.update(post_overrides or {})
        values["post_pk"] = _insert(db_engine, posts, post_values)

        if category is not None:
            _insert(db_engine, video_categories, {"video_id": values["id"], "category_id": category["id"]})
        return values

    return factory


# ============ Users and tokens ============


@pytest.fixture
def admin_user(make_user) -> dict:
    return make_user("admin", Role.ADMIN.value)


@pytest.fixture
def curator_user(make_user) -> dict:
    return make_user("curator", Role.CURATOR.value)


@pytest.fixture
def viewer_user(make_user) -> dict:
    return make_user("viewer", Role.VIEWER.value)


@pytest.fixture
def auth_headers() -> Callable[[dict], dict]:
    """Bearer header for a user dict from make_user."""
    return auth_headers_for


@pytest.fixture
def sample_category(make_category) -> dict:
    return make_category("Lectures", "lectures")


@pytest.fixture
def sample_video(make_video, curator_user, sample_category) -> dict:
    """A PUBLIC, COMPLETED video uploaded by the curator."""
    return make_video(curator_user, sample_category, title="Orientation", duration=300.0)


# ============ Clients ============


@pytest.fixture
def public_client(db_engine):
    """TestClient for the public API (lifespan connects the database)."""
    from fastapi.testclient import TestClient

    from api.public import app

    with TestClient(app) as client:
        yield client


@pytest.fixture
def admin_client(db_engine):
    """TestClient for the admin API."""
    from fastapi.testclient import TestClient

    from api.admin import app

    with TestClient(app) as client:
        yield client
