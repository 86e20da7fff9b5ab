"""Tests for post-flight credit accounting."""

from unittest.mock import patch

from veilpix_service.errors import DatastoreError, LedgerError
from veilpix_service.ledger import CreditLedger
from veilpix_service.models import GateDecision, GenerationIntent, GenerationKind, RequestContext


def make_context(caller, provider_id, source_image, decision=None):
    intent = GenerationIntent(kind=GenerationKind.EDIT, images=(source_image,), instruction="remove the lamp")
    context = RequestContext(caller=caller, provider_id=provider_id, intent=intent)
    if decision is not None:
        context = context.with_decision(decision)
    return context


class TestCommitAuthenticated:
    def test_deducts_provider_cost(self, settings, datastore, user_caller, source_image):
        datastore.get_or_create_user(user_caller.user_id, user_caller.email)
        ledger = CreditLedger(datastore)
        outcome = ledger.commit(
            make_context(user_caller, "nanobananapro", source_image),
            settings.provider("nanobananapro"),
            1200,
        )
        assert outcome.committed is True
        assert outcome.credits_deducted == 2
        assert outcome.remaining == 28
        assert datastore.get_user_credits(user_caller.user_id) == 28

    def test_usage_log_written_before_deduction(self, settings, datastore, user_caller, source_image):
        datastore.get_or_create_user(user_caller.user_id, user_caller.email)
        ledger = CreditLedger(datastore)
        order = []
        original_log = datastore.log_usage
        original_deduct = datastore.deduct_user_credit

        def log_usage(entry):
            order.append("log")
            return original_log(entry)

        def deduct(user_id):
            order.append("deduct")
            return original_deduct(user_id)

        with patch.object(datastore, "log_usage", side_effect=log_usage), patch.object(
            datastore, "deduct_user_credit", side_effect=deduct
        ):
            ledger.commit(make_context(user_caller, "seedream", source_image), settings.provider("seedream"), 10)

        assert order == ["log", "deduct"]
        logs = datastore.list_usage_logs()
        assert logs[0]["success"] == 1
        assert logs[0]["provider"] == "seedream"
        assert logs[0]["request_type"] == "retouch"

    def test_partial_deduction_leaves_caller_under_charged(self, settings, datastore, user_caller, source_image):
        datastore.get_or_create_user(user_caller.user_id, user_caller.email)
        while datastore.get_user_credits(user_caller.user_id) > 2:
            datastore.deduct_user_credit(user_caller.user_id)
        ledger = CreditLedger(datastore)
        original_deduct = datastore.deduct_user_credit
        calls = {"count": 0}

        def flaky_deduct(user_id):
            calls["count"] += 1
            if calls["count"] == 2:
                raise DatastoreError("deduct_user_credit")
            return original_deduct(user_id)

        with patch.object(datastore, "deduct_user_credit", side_effect=flaky_deduct):
            outcome = ledger.commit(
                make_context(user_caller, "nanobananapro", source_image),
                settings.provider("nanobananapro"),
                900,
            )

        assert outcome.committed is False
        assert outcome.credits_deducted == 1
        assert isinstance(outcome.error, LedgerError)
        assert outcome.remaining == 1
        assert datastore.get_user_credits(user_caller.user_id) == 1

    def test_refused_deduction_is_reported(self, settings, datastore, user_caller, source_image):
        datastore.get_or_create_user(user_caller.user_id, user_caller.email)
        while datastore.get_user_credits(user_caller.user_id) > 1:
            datastore.deduct_user_credit(user_caller.user_id)
        ledger = CreditLedger(datastore)
        outcome = ledger.commit(
            make_context(user_caller, "nanobananapro", source_image),
            settings.provider("nanobananapro"),
            900,
        )
        assert outcome.committed is False
        assert outcome.credits_deducted == 1
        assert datastore.get_user_credits(user_caller.user_id) == 0

    def test_deduct_stops_at_zero(self, datastore, user_caller):
        datastore.get_or_create_user(user_caller.user_id, user_caller.email)
        ledger = CreditLedger(datastore)
        deducted, error = ledger.deduct(user_caller.user_id, 40)
        assert deducted == 30
        assert error is None
        assert datastore.get_user_credits(user_caller.user_id) == 0


class TestCommitAnonymous:
    def test_increments_counter_once(self, settings, datastore, anonymous_caller, source_image):
        ledger = CreditLedger(datastore)
        decision = GateDecision(allowed=True, remaining=20, used=0, limit=20)
        outcome = ledger.commit(
            make_context(anonymous_caller, "gemini", source_image, decision),
            settings.provider("gemini"),
            500,
        )
        row = datastore.get_anonymous_usage(anonymous_caller.session_id, anonymous_caller.ip_address)
        assert row["request_count"] == 1
        assert outcome.committed is True
        assert outcome.remaining == 19

    def test_count_comes_from_the_increment_itself(self, settings, datastore, anonymous_caller, source_image):
        ledger = CreditLedger(datastore)
        decision = GateDecision(allowed=True, remaining=20, used=0, limit=20)
        with patch.object(datastore, "get_anonymous_usage", side_effect=DatastoreError("get_anonymous_usage")):
            outcome = ledger.commit(
                make_context(anonymous_caller, "gemini", source_image, decision),
                settings.provider("gemini"),
                500,
            )
        assert outcome.committed is True
        assert outcome.remaining == 19
        row = datastore.get_anonymous_usage(anonymous_caller.session_id, anonymous_caller.ip_address)
        assert row["request_count"] == 1

    def test_increment_failure_is_reported_not_raised(self, settings, datastore, anonymous_caller, source_image):
        ledger = CreditLedger(datastore)
        with patch.object(datastore, "increment_anonymous_usage", side_effect=DatastoreError("increment")):
            outcome = ledger.commit(
                make_context(anonymous_caller, "gemini", source_image),
                settings.provider("gemini"),
                500,
            )
        assert outcome.committed is False
        assert isinstance(outcome.error, LedgerError)


class TestRecordFailure:
    def test_failure_is_logged_without_mutation(self, datastore, user_caller, source_image):
        datastore.get_or_create_user(user_caller.user_id, user_caller.email)
        ledger = CreditLedger(datastore)
        ledger.record_failure(
            make_context(user_caller, "seedream", source_image),
            "execute",
            RuntimeError("provider said no"),
            2500,
        )
        logs = datastore.list_usage_logs()
        assert logs[0]["success"] == 0
        assert logs[0]["stage"] == "execute"
        assert "provider said no" in logs[0]["error_message"]
        assert datastore.get_user_credits(user_caller.user_id) == 30

    def test_log_errors_are_swallowed(self, datastore, anonymous_caller, source_image):
        ledger = CreditLedger(datastore)
        with patch.object(datastore, "log_usage", side_effect=DatastoreError("log_usage")):
            ledger.record_failure(make_context(anonymous_caller, "gemini", source_image), "execute", RuntimeError("x"), 1)
