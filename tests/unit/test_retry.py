"""Unit tests for the bounded read retries."""
import pytest
from sqlalchemy.exc import OperationalError

from hallbook.config import get_settings
from hallbook.errors import Timeout
from hallbook.retry import lookup_with_backoff, retry_reads


def locked():
    return OperationalError("SELECT 1", {}, Exception("database is locked"))


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(get_settings(), "read_retry_backoff_seconds", 0)


class TestLookupWithBackoff:
    def test_returns_once_the_row_appears(self):
        answers = iter([None, None, {"id": 1}])
        retried = []

        result = lookup_with_backoff(lambda: next(answers), attempts=3, backoff=0, on_retry=lambda: retried.append(1))

        assert result == {"id": 1}
        assert len(retried) == 2

    def test_exhausted_lookup_returns_none(self):
        calls = []

        def fetch():
            calls.append(1)
            return None

        assert lookup_with_backoff(fetch, attempts=2, backoff=0) is None
        assert len(calls) == 2

    def test_store_timeouts_become_timeout(self):
        def fetch():
            raise locked()

        with pytest.raises(Timeout):
            lookup_with_backoff(fetch, attempts=2, backoff=0)


class TestRetryReads:
    def test_transient_error_is_retried_then_reported(self):
        calls = []

        @retry_reads
        def count_rows(db):
            calls.append(db)
            raise locked()

        with pytest.raises(Timeout) as exc_info:
            count_rows("db")

        assert len(calls) == get_settings().read_retry_attempts
        assert exc_info.value.details == {"operation": "count_rows"}

    def test_recovers_after_one_failure(self):
        outcomes = [locked(), None]

        @retry_reads
        def read(db):
            outcome = outcomes.pop(0)
            if outcome is not None:
                raise outcome
            return "rows"

        assert read("db") == "rows"

    def test_other_store_errors_pass_through(self):
        calls = []

        @retry_reads
        def read(db):
            calls.append(db)
            raise OperationalError("SELECT 1", {}, Exception("no such table: halls"))

        with pytest.raises(OperationalError):
            read("db")
        assert len(calls) == 1
