"""Tests for database retry functionality."""

import sqlite3
from unittest.mock import AsyncMock, patch

import pytest

from api.db_retry import DatabaseRetryableError, execute_with_retry, is_retryable_database_error


class TestIsRetryableDatabaseError:
    """Tests for is_retryable_database_error function."""

    def test_sqlite_locked(self):
        assert is_retryable_database_error(sqlite3.OperationalError("database is locked")) is True
        assert is_retryable_database_error(Exception("Error: SQLITE_BUSY")) is True

    def test_postgres_deadlock(self):
        assert is_retryable_database_error(Exception("deadlock detected")) is True

    def test_sqlstate_code(self):
        exc = Exception("serialization")
        exc.sqlstate = "40001"
        assert is_retryable_database_error(exc) is True

    def test_wrapped_cause(self):
        """Driver errors wrapped by the databases library are still detected."""
        try:
            try:
                raise sqlite3.OperationalError("database is locked")
            except sqlite3.OperationalError as inner:
                raise RuntimeError("query failed") from inner
        except RuntimeError as outer:
            assert is_retryable_database_error(outer) is True

    def test_other_errors(self):
        assert is_retryable_database_error(sqlite3.OperationalError("no such table: videos")) is False
        assert is_retryable_database_error(ValueError("bad value")) is False


class TestExecuteWithRetry:
    """Tests for execute_with_retry function."""

    @pytest.mark.asyncio
    async def test_success_on_first_try(self):
        mock_func = AsyncMock(return_value="success")

        assert await execute_with_retry(mock_func) == "success"
        assert mock_func.call_count == 1

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        """Should retry on a locked database and return the eventual result."""
        mock_func = AsyncMock(
            side_effect=[
                sqlite3.OperationalError("database is locked"),
                sqlite3.OperationalError("database is locked"),
                "success",
            ]
        )

        with patch("api.db_retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            result = await execute_with_retry(mock_func, max_retries=3)

        assert result == "success"
        assert mock_func.call_count == 3
        assert sleep.call_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        mock_func = AsyncMock(side_effect=sqlite3.OperationalError("database is locked"))

        with patch("api.db_retry.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(DatabaseRetryableError):
                await execute_with_retry(mock_func, max_retries=2)

        assert mock_func.call_count == 3

    @pytest.mark.asyncio
    async def test_non_retryable_error_raised_immediately(self):
        mock_func = AsyncMock(side_effect=ValueError("not a lock"))

        with pytest.raises(ValueError):
            await execute_with_retry(mock_func)

        assert mock_func.call_count == 1

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self):
        mock_func = AsyncMock(side_effect=[Exception("deadlock detected")] * 4 + ["ok"])

        with patch("api.db_retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await execute_with_retry(mock_func, max_retries=4, base_delay=1.0, max_delay=1.5)

        delays = [call.args[0] for call in sleep.call_args_list]
        assert all(delay <= 1.5 * 1.25 for delay in delays)
