"""Tests for database retry decorators and the retrying SQL unit of work.

Tests cover:
- Transient error classification
- Retry behavior on OperationalError
- No retry on non-database exceptions
- Custom retry configuration
- Logging and counting of retry attempts
- Whole-transaction retry in SqlUnitOfWork
"""

from unittest.mock import MagicMock, patch

import pytest
from prometheus_client import REGISTRY
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from tenacity import RetryCallState

from tenantkit.core.config import settings
from tenantkit.db.retry import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_WAIT,
    DEFAULT_MIN_WAIT,
    DEFAULT_WAIT_MULTIPLIER,
    _log_retry_attempt,
    create_db_retry,
    is_transient_db_error,
)
from tenantkit.db.unit_of_work import SqlUnitOfWork

_DB_CONNECTION_ERROR = "connection failed"
_DB_FAIL_ERROR = "fail"


def _create_operational_error(msg: str = _DB_FAIL_ERROR) -> OperationalError:
    """Create an OperationalError for testing."""
    return OperationalError(msg, None, None)


no_wait_retry = create_db_retry(max_attempts=3, min_wait=0, max_wait=0)


class _PgError(Exception):
    def __init__(self, sqlstate: str) -> None:
        super().__init__(sqlstate)
        self.sqlstate = sqlstate


class TestIsTransientDbError:
    """Tests for is_transient_db_error."""

    def test_operational_error(self) -> None:
        assert is_transient_db_error(_create_operational_error())

    @pytest.mark.parametrize("sqlstate", ["40001", "40P01"])
    def test_serialization_failure_and_deadlock(self, sqlstate: str) -> None:
        """Serialization failures and deadlocks are retried."""
        assert is_transient_db_error(DBAPIError("UPDATE", None, _PgError(sqlstate)))

    def test_invalidated_connection(self) -> None:
        """Errors that invalidated the connection are retried."""
        assert is_transient_db_error(DBAPIError("SELECT 1", None, Exception("gone"), connection_invalidated=True))

    def test_integrity_error_is_not_transient(self) -> None:
        """Unique violations fail on the first attempt."""
        assert not is_transient_db_error(IntegrityError("INSERT", None, _PgError("23505")))

    def test_non_database_error(self) -> None:
        assert not is_transient_db_error(ValueError("boom"))


class TestDbRetryDecorator:
    """Tests for decorators built by create_db_retry."""

    @pytest.mark.asyncio
    async def test_success_on_first_attempt_no_retry(self) -> None:
        """Function succeeds on first try, no retry needed."""
        call_count = 0

        @no_wait_retry
        async def succeeds_immediately() -> str:
            nonlocal call_count
            call_count += 1
            return "success"

        assert await succeeds_immediately() == "success"
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_retries_on_operational_error(self) -> None:
        """Function retries when OperationalError raised."""
        call_count = 0

        @no_wait_retry
        async def fails_then_succeeds() -> str:
            nonlocal call_count
            call_count += 1
            if call_count < 2:
                raise _create_operational_error(_DB_CONNECTION_ERROR)
            return "success"

        assert await fails_then_succeeds() == "success"
        assert call_count == 2

    @pytest.mark.asyncio
    async def test_raises_after_max_attempts(self) -> None:
        """Raises OperationalError after max attempts exhausted."""
        call_count = 0

        @no_wait_retry
        async def always_fails() -> str:
            nonlocal call_count
            call_count += 1
            raise _create_operational_error(_DB_CONNECTION_ERROR)

        with pytest.raises(OperationalError):
            await always_fails()

        assert call_count == 3

    @pytest.mark.asyncio
    async def test_does_not_retry_on_other_exceptions(self) -> None:
        """Non-OperationalError exceptions are not retried."""
        call_count = 0

        @no_wait_retry
        async def raises_value_error() -> str:
            nonlocal call_count
            call_count += 1
            msg = "not a db error"
            raise ValueError(msg)

        with pytest.raises(ValueError, match="not a db error"):
            await raises_value_error()

        assert call_count == 1

    def test_default_values(self) -> None:
        """Default constants are unchanged."""
        assert DEFAULT_MAX_ATTEMPTS == 3
        assert DEFAULT_WAIT_MULTIPLIER == 1
        assert DEFAULT_MIN_WAIT == 1
        assert DEFAULT_MAX_WAIT == 10


class TestLogRetryAttempt:
    """Tests for the _log_retry_attempt logging function."""

    def _retry_state(self, sleep: float | None = 2.0, outcome: bool = True) -> MagicMock:
        state = MagicMock(spec=RetryCallState)
        state.attempt_number = 2
        if sleep is None:
            state.next_action = None
        else:
            state.next_action = MagicMock()
            state.next_action.sleep = sleep
        if outcome:
            state.outcome = MagicMock()
            state.outcome.exception.return_value = _create_operational_error()
        else:
            state.outcome = None
        return state

    def test_logs_warning_with_context(self) -> None:
        """Retry attempts are logged with the logging context."""
        with (
            patch("tenantkit.db.retry.LOGGER") as mock_logger,
            patch("tenantkit.db.retry.get_logging_context") as mock_context,
        ):
            mock_context.return_value = {"request_id": "test-123"}

            _log_retry_attempt(self._retry_state())

            mock_logger.warning.assert_called_once()
            call_args = mock_logger.warning.call_args
            assert call_args[0][0] == "db_transaction_retry"
            extra = call_args[1]["extra"]
            assert extra["attempt"] == 2
            assert extra["wait_seconds"] == 2.0
            assert extra["exception_type"] == "OperationalError"
            assert extra["request_id"] == "test-123"

    def test_handles_no_next_action(self) -> None:
        """Missing next_action logs a zero wait."""
        with patch("tenantkit.db.retry.LOGGER") as mock_logger:
            _log_retry_attempt(self._retry_state(sleep=None))

            assert mock_logger.warning.call_args[1]["extra"]["wait_seconds"] == 0

    def test_handles_no_outcome(self) -> None:
        """Missing outcome logs an unknown exception type."""
        with patch("tenantkit.db.retry.LOGGER") as mock_logger:
            _log_retry_attempt(self._retry_state(outcome=False))

            assert mock_logger.warning.call_args[1]["extra"]["exception_type"] == "unknown"

    def test_counts_retry(self) -> None:
        """Each retry increments db_transaction_retries_total."""
        labels = {"exception_type": "OperationalError"}
        before = REGISTRY.get_sample_value("db_transaction_retries_total", labels) or 0.0

        with patch.object(settings, "enable_metrics", True), patch("tenantkit.db.retry.LOGGER"):
            _log_retry_attempt(self._retry_state())

        assert REGISTRY.get_sample_value("db_transaction_retries_total", labels) == before + 1



class _FakeTransaction:
    def __init__(self, session: "_FakeSession") -> None:
        self.session = session

    async def __aenter__(self) -> "_FakeTransaction":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            self.session.commits += 1
        else:
            self.session.rollbacks += 1
        return False


class _FakeSession:
    def __init__(self) -> None:
        self.commits = 0
        self.rollbacks = 0

    async def __aenter__(self) -> "_FakeSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False

    def begin(self) -> _FakeTransaction:
        return _FakeTransaction(self)


class TestSqlUnitOfWork:
    """Whole-transaction retry with a stand-in session factory."""

    @pytest.mark.asyncio
    async def test_commits_on_success(self) -> None:
        """Work gets repositories bound to the session and commits."""
        session = _FakeSession()
        uow = SqlUnitOfWork(lambda: session, max_attempts=3, min_wait=0, max_wait=0)

        async def work(repos):
            return repos.users._session is session

        assert await uow.transaction(work) is True
        assert session.commits == 1

    @pytest.mark.asyncio
    async def test_reruns_whole_unit_on_operational_error(self) -> None:
        """A transient error reruns the unit on a fresh session."""
        sessions: list[_FakeSession] = []

        def session_maker() -> _FakeSession:
            sessions.append(_FakeSession())
            return sessions[-1]

        uow = SqlUnitOfWork(session_maker, max_attempts=3, min_wait=0, max_wait=0)
        attempts = 0

        async def work(repos) -> str:
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise _create_operational_error()
            return "done"

        assert await uow.transaction(work) == "done"
        assert attempts == 2
        assert [s.rollbacks for s in sessions] == [1, 0]
        assert [s.commits for s in sessions] == [0, 1]

    @pytest.mark.asyncio
    async def test_other_errors_roll_back_once(self) -> None:
        """Other errors roll back and propagate without retry."""
        session = _FakeSession()
        uow = SqlUnitOfWork(lambda: session, max_attempts=3, min_wait=0, max_wait=0)

        async def work(repos):
            msg = "constraint violated"
            raise ValueError(msg)

        with patch("tenantkit.db.unit_of_work.LOGGER") as mock_logger, pytest.raises(ValueError):
            await uow.transaction(work)

        assert session.rollbacks == 1
        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args[0][0] == "session_rollback"
