"""Tests for config.py environment variable parsing helpers."""

import logging
import os
from unittest import mock

from config import get_bool_env, get_float_env, get_int_env, get_optional_int_env


class TestGetIntEnv:
    """Tests for get_int_env helper function."""

    def test_returns_default_when_env_not_set(self):
        """Should return default value when environment variable is not set."""
        with mock.patch.dict(os.environ, {}, clear=True):
            assert get_int_env("NONEXISTENT_VAR", 42) == 42

    def test_parses_valid_integer(self):
        with mock.patch.dict(os.environ, {"TEST_INT": "123"}):
            assert get_int_env("TEST_INT", 0) == 123

    def test_returns_default_on_invalid_value(self, caplog):
        """Should return default and log warning when value is not a valid integer."""
        with mock.patch.dict(os.environ, {"TEST_INT": "abc"}):
            with caplog.at_level(logging.WARNING):
                assert get_int_env("TEST_INT", 42) == 42
                assert "Invalid TEST_INT='abc'" in caplog.text

    def test_range_validation(self, caplog):
        """Out-of-range values fall back to the default."""
        with mock.patch.dict(os.environ, {"TEST_INT": "70000"}):
            with caplog.at_level(logging.WARNING):
                assert get_int_env("TEST_INT", 22, min_val=1, max_val=65535) == 22
                assert "above maximum" in caplog.text
        with mock.patch.dict(os.environ, {"TEST_INT": "0"}):
            assert get_int_env("TEST_INT", 8, min_val=1) == 8
        with mock.patch.dict(os.environ, {"TEST_INT": "2222"}):
            assert get_int_env("TEST_INT", 22, min_val=1, max_val=65535) == 2222


class TestGetFloatEnv:
    """Tests for get_float_env helper function."""

    def test_parses_valid_float(self):
        with mock.patch.dict(os.environ, {"TEST_FLOAT": "2.5"}):
            assert get_float_env("TEST_FLOAT", 1.0) == 2.5

    def test_rejects_special_values(self, caplog):
        """inf and nan are never accepted as timeouts."""
        for value in ("inf", "nan", "-inf"):
            with mock.patch.dict(os.environ, {"TEST_FLOAT": value}):
                with caplog.at_level(logging.WARNING):
                    assert get_float_env("TEST_FLOAT", 30.0) == 30.0
        assert "special float" in caplog.text

    def test_min_validation_enforced(self):
        with mock.patch.dict(os.environ, {"TEST_FLOAT": "0.1"}):
            assert get_float_env("TEST_FLOAT", 10.0, min_val=0.5) == 10.0


class TestGetBoolEnv:
    """Tests for get_bool_env helper function."""

    def test_truthy_values(self):
        for value in ("true", "TRUE", "1", "yes", " yes "):
            with mock.patch.dict(os.environ, {"TEST_BOOL": value}):
                assert get_bool_env("TEST_BOOL", False) is True

    def test_other_values_are_false(self):
        for value in ("false", "0", "no", "maybe", ""):
            with mock.patch.dict(os.environ, {"TEST_BOOL": value}):
                assert get_bool_env("TEST_BOOL", True) is False

    def test_default_when_unset(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            assert get_bool_env("TEST_BOOL", True) is True


class TestGetOptionalIntEnv:
    """Tests for get_optional_int_env (e.g. VSTREAM_DEFAULT_SERVER_ID)."""

    def test_unset_and_empty_are_none(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            assert get_optional_int_env("TEST_ID") is None
        with mock.patch.dict(os.environ, {"TEST_ID": "  "}):
            assert get_optional_int_env("TEST_ID") is None

    def test_positive_value(self):
        with mock.patch.dict(os.environ, {"TEST_ID": "3"}):
            assert get_optional_int_env("TEST_ID") == 3

    def test_invalid_values_ignored(self, caplog):
        with caplog.at_level(logging.WARNING):
            for value in ("abc", "0", "-2"):
                with mock.patch.dict(os.environ, {"TEST_ID": value}):
                    assert get_optional_int_env("TEST_ID") is None
        assert "ignoring" in caplog.text


class TestSettings:
    """Settings derived from the test environment."""

    def test_content_root_has_no_trailing_slash(self):
        import config

        assert not config.CONTENT_ROOT.endswith("/")

    def test_supported_extensions_match_mime_types(self):
        import config

        assert config.SUPPORTED_VIDEO_EXTENSIONS == frozenset(config.VIDEO_MIME_TYPES)
        assert all(ext.startswith(".") and ext == ext.lower() for ext in config.SUPPORTED_VIDEO_EXTENSIONS)
