"""
Pytest fixtures for vstream tests.

Provides a SQLite test database, signed access tokens, a local content tree
standing in for a media server, and an API test client wired to a local
shell executor instead of SSH.
"""

import os
import shutil
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest
import sqlalchemy as sa

# Set up test environment BEFORE importing config
_test_temp_dir = Path(tempfile.mkdtemp(prefix="vstream-test-"))
TEST_CONTENT_ROOT = _test_temp_dir / "content"
TEST_CACHE_DIR = _test_temp_dir / "cache"
TEST_DB_URL = f"sqlite:///{_test_temp_dir / 'vstream_test.db'}"
TEST_JWT_SECRET = "test-jwt-secret-for-vstream-tests-0123456789"

os.environ["VSTREAM_TEST_MODE"] = "1"
os.environ["VSTREAM_DATABASE_URL"] = TEST_DB_URL
os.environ["VSTREAM_JWT_SECRET"] = TEST_JWT_SECRET
os.environ["VSTREAM_CONTENT_ROOT"] = str(TEST_CONTENT_ROOT)
os.environ["VSTREAM_CACHE_DIR"] = str(TEST_CACHE_DIR)
os.environ["VSTREAM_RATE_LIMIT_ENABLED"] = "false"
os.environ["VSTREAM_ADMIN_API_SECRET"] = ""
os.environ["VSTREAM_DEFAULT_SERVER_ID"] = ""
os.environ["VSTREAM_EXTERNAL_MEDIA_BASE_URL"] = ""

from jose import jwt  # noqa: E402

from api.database import database, media_servers, metadata, stream_folders, videos  # noqa: E402
from fakes import LocalShellExecutor  # noqa: E402
from streaming.cache import LocalCacheManager  # noqa: E402
from streaming.media_links import ExternalMediaLinks  # noqa: E402

TEST_OWNER_ID = 1
TEST_OWNER_EMAIL = "alice@example.com"
TEST_OWNER_LOGIN = "alice"
TEST_FOLDER = "movies"
TEST_SERVER_ID = 1
TEST_MEDIA_BASE_URL = "http://media.example.com:1935/vod"


def make_token(user_id: int = TEST_OWNER_ID, email: str = TEST_OWNER_EMAIL, expires_in: int = 3600, **claims) -> str:
    payload = {"userId": user_id, "email": email, "exp": int(time.time()) + expires_in, **claims}
    return jwt.encode(payload, TEST_JWT_SECRET, algorithm="HS256")


def video_bytes(size: int) -> bytes:
    """Deterministic content where every offset is distinguishable."""
    return bytes(i % 251 for i in range(size))


@pytest.fixture(scope="function")
def content_root() -> Path:
    """Empty content tree for each test."""
    shutil.rmtree(TEST_CONTENT_ROOT, ignore_errors=True)
    TEST_CONTENT_ROOT.mkdir(parents=True)
    yield TEST_CONTENT_ROOT
    shutil.rmtree(TEST_CONTENT_ROOT, ignore_errors=True)


@pytest.fixture(scope="function")
def make_video(content_root: Path):
    """Factory writing a file into the content tree and returning its remote path."""

    def _make(name: str = "clip.mp4", data: bytes = None, owner: str = TEST_OWNER_LOGIN, folder: str = TEST_FOLDER):
        directory = content_root / owner / folder
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / name
        path.write_bytes(video_bytes(1000) if data is None else data)
        return str(path)

    return _make


@pytest.fixture(scope="function")
def test_db_url():
    """Fresh schema for each test."""
    engine = sa.create_engine(TEST_DB_URL)
    metadata.drop_all(engine)
    metadata.create_all(engine)
    engine.dispose()
    yield TEST_DB_URL


@pytest.fixture(scope="function")
def seeded_db(test_db_url: str) -> dict:
    """One active media server and one folder for the test owner on it."""
    now = datetime.now(timezone.utc)
    engine = sa.create_engine(test_db_url)
    with engine.begin() as conn:
        conn.execute(
            media_servers.insert().values(
                id=TEST_SERVER_ID,
                name="media-1",
                host="media-1.internal",
                ssh_port=22,
                status="active",
                created_at=now,
            )
        )
        folder_id = conn.execute(
            stream_folders.insert().values(
                owner_id=TEST_OWNER_ID,
                name=TEST_FOLDER,
                quota_mb=1000,
                used_mb=0,
                server_id=TEST_SERVER_ID,
                created_at=now,
            )
        ).inserted_primary_key[0]
    engine.dispose()
    return {"server_id": TEST_SERVER_ID, "folder_id": folder_id, "folder": TEST_FOLDER}


@pytest.fixture(scope="function")
def db_engine(test_db_url: str):
    """Synchronous engine for seeding and inspecting rows from tests."""
    engine = sa.create_engine(test_db_url)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
async def test_database(seeded_db: dict):
    """The application's database connection, opened for direct async use."""
    await database.connect()
    yield database
    await database.disconnect()


def video_rows(engine) -> list:
    with engine.connect() as conn:
        return [dict(row._mapping) for row in conn.execute(videos.select().order_by(videos.c.id))]


@pytest.fixture(scope="function")
def executor() -> LocalShellExecutor:
    return LocalShellExecutor()


@pytest.fixture(scope="function")
def cache_dir(tmp_path: Path) -> Path:
    return tmp_path / "cache"


@pytest.fixture(scope="function")
def cache_manager(executor: LocalShellExecutor, cache_dir: Path) -> LocalCacheManager:
    return LocalCacheManager(
        executor,
        cache_dir=cache_dir,
        max_size=10 * 1024 * 1024,
        max_file_size=1024 * 1024,
        max_age=3600,
        enabled=True,
    )


@pytest.fixture(scope="function")
def auth_headers() -> dict:
    return {"Authorization": f"Bearer {make_token()}"}


def _api_client(executor, cache, media_links):
    from fastapi.testclient import TestClient

    from api.app import app

    app.state.executor = executor
    app.state.cache = cache
    app.state.media_links = media_links
    try:
        # Lifespan keeps the services placed on app.state
        with TestClient(app, raise_server_exceptions=False) as client:
            yield client
    finally:
        app.state.executor = None
        app.state.cache = None
        app.state.media_links = None


@pytest.fixture(scope="function")
def api_client(seeded_db, content_root, executor, cache_manager):
    """API test client without an external media engine."""
    yield from _api_client(executor, cache_manager, ExternalMediaLinks(base_url=""))


@pytest.fixture(scope="function")
def api_client_with_media_engine(seeded_db, content_root, executor, cache_manager):
    """API test client with an external media engine configured."""
    media_links = ExternalMediaLinks(base_url=TEST_MEDIA_BASE_URL, content_root=str(TEST_CONTENT_ROOT))
    yield from _api_client(executor, cache_manager, media_links)
