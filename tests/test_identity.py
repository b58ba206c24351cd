"""
Tests for opaque video identifiers and remote path structure.
"""

import base64

import pytest

from api.errors import AccessDenied, InvalidIdentifier, ValidationFailed
from streaming import identity
from streaming.identity import RemoteVideoPath, folder_directory, relative_to_root, validate_file_stem

ROOT = "/srv/content"


class TestOpaqueIdentifiers:
    """Test encoding and decoding of video ids."""

    def test_round_trip(self):
        path = "/srv/content/alice/movies/Férias 2024 (final).mp4"
        assert identity.decode(identity.encode(path)) == path

    def test_encoded_id_is_url_safe(self):
        # Bytes chosen so standard base64 would produce '+' and '/'
        path = "/srv/content/alice/movies/ûÿþ?.mp4"
        token = identity.encode(path)
        assert "+" not in token
        assert "/" not in token
        assert "=" not in token

    def test_accepts_legacy_standard_base64(self):
        path = "/srv/content/alice/movies/a.mp4"
        legacy = base64.b64encode(path.encode()).decode()
        assert legacy.endswith("=")
        assert identity.decode(legacy) == path

    @pytest.mark.parametrize(
        "token",
        [
            "",
            "not base64!",
            "%%%",
            "a" * 5000,
        ],
    )
    def test_rejects_malformed_tokens(self, token):
        with pytest.raises(InvalidIdentifier):
            identity.decode(token)

    def test_rejects_non_utf8(self):
        token = base64.urlsafe_b64encode(b"/\xff\xfe/x.mp4").decode().rstrip("=")
        with pytest.raises(InvalidIdentifier):
            identity.decode(token)

    @pytest.mark.parametrize(
        "path",
        [
            "relative/alice/movies/a.mp4",
            "/srv/content/alice/../bob/movies/a.mp4",
            "/srv/content/alice/./movies/a.mp4",
            "/srv/content/alice/movies/",
            "/srv/content/alice/movies/a\x00.mp4",
            "/srv/content/alice/movies/a\n.mp4",
        ],
    )
    def test_rejects_unsafe_paths(self, path):
        with pytest.raises(InvalidIdentifier):
            identity.decode(identity.encode(path))


class TestOwnership:
    """Test path-based ownership checks."""

    def test_owner_segment_grants_access(self):
        identity.authorize("/srv/content/alice/movies/a.mp4", "alice")

    def test_other_owner_is_denied(self):
        with pytest.raises(AccessDenied) as exc_info:
            identity.authorize("/srv/content/bob/movies/a.mp4", "alice")
        assert exc_info.value.status_code == 403
        assert exc_info.value.message == "Access denied to this video"

    def test_login_must_match_a_whole_segment(self):
        assert not identity.owns_path("/srv/content/alice2/movies/a.mp4", "alice")
        assert not identity.owns_path("/srv/content/malice/movies/a.mp4", "alice")

    def test_empty_or_nested_login_never_owns(self):
        assert not identity.owns_path("/srv/content/alice/movies/a.mp4", "")
        assert not identity.owns_path("/srv/content/alice/movies/a.mp4", "alice/movies")


class TestRemoteVideoPath:
    """Test parsing and formatting of structured remote paths."""

    def test_parse_and_format(self):
        video = RemoteVideoPath.parse("/srv/content/alice/movies/trip.mkv", root=ROOT)
        assert video.owner == "alice"
        assert video.folder == "movies"
        assert video.filename == "trip.mkv"
        assert video.extension == ".mkv"
        assert video.stem == "trip"
        assert video.relative == "/alice/movies/trip.mkv"
        assert video.format() == "/srv/content/alice/movies/trip.mkv"

    def test_root_with_trailing_slash(self):
        video = RemoteVideoPath.parse("/srv/content/alice/movies/trip.mkv", root=ROOT + "/")
        assert video.format() == "/srv/content/alice/movies/trip.mkv"

    @pytest.mark.parametrize(
        "path",
        [
            "/elsewhere/alice/movies/trip.mkv",
            "/srv/content/alice/trip.mkv",
            "/srv/content/alice/movies/extra/trip.mkv",
        ],
    )
    def test_parse_rejects_other_layouts(self, path):
        with pytest.raises(InvalidIdentifier):
            RemoteVideoPath.parse(path, root=ROOT)

    def test_with_stem_keeps_extension_and_location(self):
        video = RemoteVideoPath.parse("/srv/content/alice/movies/trip.mkv", root=ROOT)
        renamed = video.with_stem("holiday")
        assert renamed.format() == "/srv/content/alice/movies/holiday.mkv"

    @pytest.mark.parametrize("stem", ["", "   ", "a/b", "a\\b", ".hidden", "a\x00b"])
    def test_invalid_stems(self, stem):
        with pytest.raises(ValidationFailed):
            validate_file_stem(stem)


class TestFolderPaths:
    """Test folder directory and root-relative helpers."""

    def test_folder_directory(self):
        assert folder_directory("alice", "movies", root=ROOT) == "/srv/content/alice/movies"

    @pytest.mark.parametrize("folder", ["", "..", "a/b"])
    def test_folder_directory_rejects_bad_names(self, folder):
        with pytest.raises(ValidationFailed):
            folder_directory("alice", folder, root=ROOT)

    def test_relative_to_root(self):
        assert relative_to_root("/srv/content/alice/movies/a.mp4", root=ROOT) == "/alice/movies/a.mp4"

    def test_relative_to_root_outside(self):
        assert relative_to_root("/other/alice/a.mp4", root=ROOT) == "/other/alice/a.mp4"
