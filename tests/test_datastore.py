"""Tests for the sqlite datastore handle."""

import sqlite3
import time

import pytest

from veilpix_service.datastore import DatastoreHandle
from veilpix_service.errors import DatastoreError
from veilpix_service.models import UsageLogEntry


class FlakyConnection:
    """Wraps a real connection and raises scripted errors before delegating.

    A ``None`` entry lets that call through.
    """

    def __init__(self, conn, errors):
        self._conn = conn
        self._errors = list(errors)

    def execute(self, *args):
        error = self._errors.pop(0) if self._errors else None
        if error is not None:
            raise error
        return self._conn.execute(*args)

    def __enter__(self):
        return self._conn.__enter__()

    def __exit__(self, *exc_info):
        return self._conn.__exit__(*exc_info)

    def __getattr__(self, name):
        return getattr(self._conn, name)


class TestUsers:
    def test_new_user_gets_starting_grant_once(self, datastore):
        user, created = datastore.get_or_create_user("u1", "u1@example.com")
        assert created is True
        assert user["credits_remaining"] == 30
        _, created_again = datastore.get_or_create_user("u1")
        assert created_again is False

    def test_unknown_user_has_no_credits(self, datastore):
        assert datastore.get_user_credits("ghost") == 0

    def test_deduct_never_goes_negative(self, tmp_path):
        handle = DatastoreHandle(tmp_path / "db.sqlite3", starting_credits=1)
        handle.get_or_create_user("u1")
        assert handle.deduct_user_credit("u1") is True
        assert handle.deduct_user_credit("u1") is False
        assert handle.get_user_credits("u1") == 0
        handle.close()

    def test_add_credits_tracks_purchases(self, datastore):
        datastore.get_or_create_user("u1")
        assert datastore.add_user_credits("u1", 10) is True
        user, _ = datastore.get_or_create_user("u1")
        assert user["credits_remaining"] == 40
        assert user["total_credits_purchased"] == 10
        assert user["last_credit_purchase_at"] is not None
        assert datastore.add_user_credits("ghost", 10) is False


class TestAnonymousUsage:
    def test_increment_returns_running_count(self, datastore):
        assert datastore.increment_anonymous_usage("s1", "1.1.1.1") == 1
        assert datastore.increment_anonymous_usage("s1", "1.1.1.1") == 2
        assert datastore.increment_anonymous_usage("s1", "2.2.2.2") == 1

    def test_increment_is_rolled_back_when_read_back_fails(self, datastore):
        datastore.increment_anonymous_usage("s1", "ip")
        real_conn = datastore._conn
        datastore._conn = FlakyConnection(real_conn, [None, sqlite3.OperationalError("disk I/O error")])
        with pytest.raises(DatastoreError):
            datastore.increment_anonymous_usage("s1", "ip")
        datastore._conn = real_conn
        assert datastore.get_anonymous_usage("s1", "ip")["request_count"] == 1

    def test_missing_ip_is_stored_as_empty(self, datastore):
        datastore.increment_anonymous_usage("s1", None)
        assert datastore.get_anonymous_usage("s1", None)["request_count"] == 1

    def test_read_retries_when_locked(self, datastore):
        sleeps = []
        datastore._sleep = sleeps.append
        datastore.increment_anonymous_usage("s1", "ip")
        datastore._conn = FlakyConnection(datastore._conn, [sqlite3.OperationalError("database is locked")])
        assert datastore.get_anonymous_usage("s1", "ip")["request_count"] == 1
        assert sleeps == [2.0]

    def test_non_retryable_read_error_is_raised(self, datastore):
        datastore._conn = FlakyConnection(datastore._conn, [sqlite3.OperationalError("no such table")])
        with pytest.raises(DatastoreError):
            datastore.get_anonymous_usage("s1", "ip")

    def test_delete_old_sessions(self, datastore):
        datastore.increment_anonymous_usage("s1", "ip")
        assert datastore.delete_anonymous_sessions_older_than(time.time() - 3600) == 0
        assert datastore.delete_anonymous_sessions_older_than(time.time() + 1) == 1


class TestUsageLog:
    def test_count_only_successful_entries_since(self, datastore):
        since = time.time() - 1
        for success in (True, True, False):
            datastore.log_usage(
                UsageLogEntry(
                    provider_id="gemini",
                    request_type="retouch",
                    processing_time_ms=10,
                    success=success,
                    user_id="u1",
                )
            )
        assert datastore.count_user_usage("u1", since) == 2
        assert datastore.count_user_usage("u1", time.time() + 60) == 0
        assert len(datastore.list_usage_logs()) == 3

    def test_ping(self, datastore):
        assert datastore.ping() is True
