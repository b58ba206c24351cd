"""
Tests for folder reconciliation and usage accounting.
"""

from datetime import datetime, timezone

import pytest

from api import folders
from api.database import playlists, stream_folders, videos
from api.errors import NoServerConfigured, NotFound
from api.sync import SyncReconciler, folder_records, folder_usage, linked_file_name, record_url, retarget_url
from conftest import TEST_FOLDER, TEST_OWNER_ID, TEST_OWNER_LOGIN, TEST_SERVER_ID, video_rows
from streaming import identity
from streaming.identity import RemoteVideoPath
from streaming.inspector import RemoteVideoInspector


async def _insert_record(
    database, name: str, folder: str = TEST_FOLDER, size: int = 1000, owner=TEST_OWNER_LOGIN, url: str = None
):
    now = datetime.now(timezone.utc)
    return await database.execute(
        videos.insert().values(
            name=name,
            description="",
            url=url or record_url(owner, folder, name),
            duration=0,
            size_bytes=size,
            created_at=now,
            updated_at=now,
        )
    )


@pytest.fixture
def reconciler(executor):
    return SyncReconciler(RemoteVideoInspector(executor))


class TestReconcile:
    """Test that records follow the remote folder listing."""

    @pytest.mark.asyncio
    async def test_creates_records_for_new_files(self, test_database, reconciler, make_video, db_engine):
        make_video("a.mp4", b"x" * 100)
        make_video("b.mkv", b"x" * 200)

        result = await reconciler.reconcile(TEST_SERVER_ID, TEST_OWNER_LOGIN, TEST_FOLDER, TEST_OWNER_ID)

        assert result.to_dict() == {"created": 2, "skipped": 0, "orphans_removed": 0, "failed": 0}
        rows = video_rows(db_engine)
        assert [(r["name"], r["size_bytes"]) for r in rows] == [("a.mp4", 100), ("b.mkv", 200)]
        assert rows[0]["url"] == "/content/alice/movies/a.mp4"
        assert rows[0]["playlist_id"] == rows[1]["playlist_id"]

    @pytest.mark.asyncio
    async def test_second_run_changes_nothing(self, test_database, reconciler, make_video, db_engine):
        make_video("a.mp4")
        await reconciler.reconcile(TEST_SERVER_ID, TEST_OWNER_LOGIN, TEST_FOLDER, TEST_OWNER_ID)
        before = video_rows(db_engine)

        result = await reconciler.reconcile(TEST_SERVER_ID, TEST_OWNER_LOGIN, TEST_FOLDER, TEST_OWNER_ID)

        assert result.to_dict() == {"created": 0, "skipped": 1, "orphans_removed": 0, "failed": 0}
        assert video_rows(db_engine) == before

    @pytest.mark.asyncio
    async def test_removes_orphaned_records(self, test_database, reconciler, make_video, db_engine):
        make_video("kept.mp4")
        await _insert_record(test_database, "kept.mp4")
        await _insert_record(test_database, "gone.mp4")
        # Same name in another folder is not touched
        await _insert_record(test_database, "gone.mp4", folder="other")

        result = await reconciler.reconcile(TEST_SERVER_ID, TEST_OWNER_LOGIN, TEST_FOLDER, TEST_OWNER_ID)

        assert result.orphans_removed == 1
        assert result.skipped == 1
        urls = sorted(r["url"] for r in video_rows(db_engine))
        assert urls == ["/content/alice/movies/kept.mp4", "/content/alice/other/gone.mp4"]

    @pytest.mark.asyncio
    async def test_reuses_folder_playlist(self, test_database, reconciler, make_video, db_engine):
        make_video("a.mp4")
        await reconciler.reconcile(TEST_SERVER_ID, TEST_OWNER_LOGIN, TEST_FOLDER, TEST_OWNER_ID)
        make_video("b.mp4")
        await reconciler.reconcile(TEST_SERVER_ID, TEST_OWNER_LOGIN, TEST_FOLDER, TEST_OWNER_ID)

        with db_engine.connect() as conn:
            names = [row.name for row in conn.execute(playlists.select())]
        assert names == ["Remote - movies"]

    @pytest.mark.asyncio
    async def test_failure_on_one_file_does_not_stop_others(
        self, test_database, reconciler, make_video, db_engine, monkeypatch
    ):
        make_video("a.mp4")
        make_video("bad.mp4")
        make_video("c.mp4")

        import api.sync

        original = api.sync.db_execute_with_retry

        async def flaky_execute(query, values=None):
            if query.compile().params.get("name") == "bad.mp4":
                raise RuntimeError("insert failed")
            return await original(query, values)

        monkeypatch.setattr(api.sync, "db_execute_with_retry", flaky_execute)

        result = await reconciler.reconcile(TEST_SERVER_ID, TEST_OWNER_LOGIN, TEST_FOLDER, TEST_OWNER_ID)

        assert result.created == 2
        assert result.failed == 1
        assert sorted(r["name"] for r in video_rows(db_engine)) == ["a.mp4", "c.mp4"]

    @pytest.mark.asyncio
    async def test_folder_records_only_direct_children(self, test_database):
        await _insert_record(test_database, "a.mp4")
        await _insert_record(test_database, "b.mp4", folder="movies/nested")
        await _insert_record(test_database, "c.mp4", owner="bob")

        rows = await folder_records(TEST_OWNER_LOGIN, TEST_FOLDER)
        assert [(name, row["name"]) for name, row in rows] == [("a.mp4", "a.mp4")]

    @pytest.mark.asyncio
    async def test_proxy_url_record_is_not_duplicated(self, test_database, reconciler, make_video, db_engine):
        """A record pointing at the file through /stream/<id> counts as that file's record."""
        path = make_video("a.mp4")
        await _insert_record(test_database, "Holiday clip", url=f"/api/stream/{identity.encode(path)}")

        result = await reconciler.reconcile(TEST_SERVER_ID, TEST_OWNER_LOGIN, TEST_FOLDER, TEST_OWNER_ID)

        assert result.to_dict() == {"created": 0, "skipped": 1, "orphans_removed": 0, "failed": 0}
        assert [r["name"] for r in video_rows(db_engine)] == ["Holiday clip"]

    @pytest.mark.asyncio
    async def test_proxy_url_orphan_removed(self, test_database, reconciler, content_root, db_engine):
        gone = f"{content_root}/alice/movies/gone.mp4"
        await _insert_record(test_database, "Gone", url=f"/stream/{identity.encode(gone)}")
        (content_root / "alice" / "movies").mkdir(parents=True, exist_ok=True)

        result = await reconciler.reconcile(TEST_SERVER_ID, TEST_OWNER_LOGIN, TEST_FOLDER, TEST_OWNER_ID)

        assert result.orphans_removed == 1
        assert video_rows(db_engine) == []


class TestRecordUrls:
    """Test how record URLs are tied to folder files."""

    def test_content_url(self):
        assert linked_file_name("/content/alice/movies/a.mp4", "alice", "movies") == "a.mp4"
        assert linked_file_name("http://media:1935/vod/alice/movies/a.mp4", "alice", "movies") == "a.mp4"
        assert linked_file_name("/content/alice/movies/sub/a.mp4", "alice", "movies") is None
        assert linked_file_name("/content/bob/movies/a.mp4", "alice", "movies") is None

    def test_proxy_url(self, content_root):
        video_id = identity.encode(f"{content_root}/alice/movies/a.mp4")
        assert linked_file_name(f"/stream/{video_id}", "alice", "movies") == "a.mp4"
        assert linked_file_name(f"/stream/direct/{video_id}?token=x", "alice", "movies") == "a.mp4"
        assert linked_file_name(f"/stream/{video_id}", "alice", "series") is None
        assert linked_file_name("/stream/not*an*id", "alice", "movies") is None

    def test_retarget_keeps_url_form(self, content_root):
        target = RemoteVideoPath.parse(f"{content_root}/alice/movies/b.mp4")
        old_id = identity.encode(f"{content_root}/alice/movies/a.mp4")

        assert retarget_url(f"/api/stream/{old_id}", target) == f"/api/stream/{identity.encode(target.format())}"
        assert retarget_url("/content/alice/movies/a.mp4", target) == "/content/alice/movies/b.mp4"

    @pytest.mark.asyncio
    async def test_like_wildcards_in_folder_name_are_literal(self, test_database):
        await _insert_record(test_database, "a.mp4", folder="mo_ies")
        await _insert_record(test_database, "b.mp4", folder="movies")

        rows = await folder_records(TEST_OWNER_LOGIN, "mo_ies")
        assert [name for name, _ in rows] == ["a.mp4"]

    @pytest.mark.asyncio
    async def test_ensure_folder_directory(self, reconciler, executor, content_root):
        directory = await reconciler.ensure_folder_directory(TEST_SERVER_ID, TEST_OWNER_LOGIN, "new folder")
        assert directory == f"{content_root}/alice/new folder"
        assert (content_root / "alice" / "new folder").is_dir()


class TestFolderUsage:
    """Test usage reporting and drift correction."""

    @pytest.mark.asyncio
    async def test_corrects_drift_beyond_tolerance(self, test_database, seeded_db, db_engine):
        await _insert_record(test_database, "a.mp4", size=20 * 1024 * 1024)
        await _insert_record(test_database, "b.mp4", size=1)
        folder = await folders.get_folder(TEST_OWNER_ID, folder_id=seeded_db["folder_id"])

        usage = await folder_usage(folder, TEST_OWNER_LOGIN)

        assert usage["real_used"] == 21
        assert usage["database_used"] == 0
        assert usage["used"] == 21
        assert usage["total"] == 1000
        assert usage["available"] == 979
        assert usage["percentage"] == 2
        with db_engine.connect() as conn:
            stored = conn.execute(stream_folders.select()).first()
        assert stored.used_mb == 21

    @pytest.mark.asyncio
    async def test_small_drift_left_alone(self, test_database, seeded_db, db_engine):
        await _insert_record(test_database, "a.mp4", size=2 * 1024 * 1024)
        folder = await folders.get_folder(TEST_OWNER_ID, name=TEST_FOLDER)

        usage = await folder_usage(folder, TEST_OWNER_LOGIN)

        assert usage["used"] == 2
        with db_engine.connect() as conn:
            assert conn.execute(stream_folders.select()).first().used_mb == 0


class TestFolderLookups:
    """Test folder and server resolution."""

    @pytest.mark.asyncio
    async def test_unknown_folder(self, test_database):
        with pytest.raises(NotFound):
            await folders.get_folder(TEST_OWNER_ID, name="nope")

    @pytest.mark.asyncio
    async def test_other_owners_folder_not_visible(self, test_database, seeded_db):
        with pytest.raises(NotFound):
            await folders.get_folder(99, folder_id=seeded_db["folder_id"])

    @pytest.mark.asyncio
    async def test_server_for_user(self, test_database):
        assert await folders.require_server_for_user(TEST_OWNER_ID) == TEST_SERVER_ID

    @pytest.mark.asyncio
    async def test_server_for_path_follows_folder(self, test_database, db_engine, content_root):
        from api.database import media_servers

        now = datetime.now(timezone.utc)
        with db_engine.begin() as conn:
            conn.execute(
                media_servers.insert().values(
                    id=2, name="media-2", host="media-2.internal", ssh_port=22, status="active", created_at=now
                )
            )
            conn.execute(
                stream_folders.insert().values(
                    owner_id=TEST_OWNER_ID, name="series", quota_mb=100, used_mb=0, server_id=2, created_at=now
                )
            )

        assert await folders.server_for_path(TEST_OWNER_ID, f"{content_root}/alice/series/ep1.mp4") == 2
        assert await folders.server_for_path(TEST_OWNER_ID, f"{content_root}/alice/movies/a.mp4") == TEST_SERVER_ID
        # Unknown folder falls back to the first mapped folder
        assert await folders.server_for_path(TEST_OWNER_ID, f"{content_root}/alice/misc/a.mp4") == TEST_SERVER_ID

    @pytest.mark.asyncio
    async def test_no_mapping_without_default(self, test_database):
        with pytest.raises(NoServerConfigured) as exc_info:
            await folders.require_server_for_user(42)
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_default_server_used_when_configured(self, test_database, monkeypatch):
        monkeypatch.setattr(folders, "DEFAULT_SERVER_ID", 7)
        assert await folders.require_server_for_user(42) == 7

    @pytest.mark.asyncio
    async def test_server_address(self, test_database):
        address = await folders.get_server_address(TEST_SERVER_ID)
        assert address.host == "media-1.internal"
        assert address.port == 22

    @pytest.mark.asyncio
    async def test_disabled_server_unavailable(self, test_database, db_engine):
        from api.database import media_servers

        with db_engine.begin() as conn:
            conn.execute(media_servers.update().values(status="disabled"))
        with pytest.raises(NoServerConfigured):
            await folders.get_server_address(TEST_SERVER_ID)
