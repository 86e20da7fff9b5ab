"""Post-flight usage accounting.

Nothing is charged until a generation has succeeded, so there is no refund
path. A multi-credit cost is taken as that many single-credit deductions; if
one of them fails the caller ends up under-charged and the shortfall is
logged.
"""

from __future__ import annotations

import logging

from .datastore import DatastoreHandle
from .errors import DatastoreError, LedgerError
from .models import LedgerOutcome, RequestContext, UsageLogEntry
from .settings import ProviderSettings

logger = logging.getLogger("veilpix-service.ledger")


class CreditLedger:
    def __init__(self, datastore: DatastoreHandle):
        self.datastore = datastore

    def _entry(
        self,
        context: RequestContext,
        processing_ms: int,
        success: bool,
        stage: str | None = None,
        error_message: str | None = None,
    ) -> UsageLogEntry:
        return UsageLogEntry(
            provider_id=context.provider_id,
            request_type=context.intent.kind.request_type,
            processing_time_ms=processing_ms,
            success=success,
            user_id=context.caller.user_id,
            session_id=None if context.caller.is_authenticated else context.caller.session_id,
            image_size=context.image_size_label,
            stage=stage,
            error_message=error_message,
        )

    def deduct(self, user_id: str, amount: int) -> tuple[int, DatastoreError | None]:
        """Take ``amount`` credits one at a time.

        Stops at the first refused or failed deduction and returns how many
        credits were taken along with the datastore error, if any.
        """
        deducted = 0
        try:
            for _ in range(amount):
                if not self.datastore.deduct_user_credit(user_id):
                    break
                deducted += 1
        except DatastoreError as exc:
            return deducted, exc
        return deducted, None

    def commit(self, context: RequestContext, provider: ProviderSettings, processing_ms: int) -> LedgerOutcome:
        caller = context.caller
        try:
            self.datastore.log_usage(self._entry(context, processing_ms, success=True))
        except DatastoreError as exc:
            logger.error("Failed to write usage log for %s: %s", caller.owner_tag, exc)

        if caller.is_authenticated:
            return self._commit_credits(context, provider)
        return self._commit_anonymous(context)

    def _commit_credits(self, context: RequestContext, provider: ProviderSettings) -> LedgerOutcome:
        user_id = context.caller.user_id
        cost = provider.credit_cost
        deducted, failure = self.deduct(user_id, cost)
        error: LedgerError | None = None
        if failure is not None:
            error = LedgerError(f"Credit deduction {deducted + 1}/{cost} for {user_id} failed: {failure}")

        remaining = self._remaining_credits(user_id)
        if error is None and deducted < cost:
            error = LedgerError(f"Only {deducted} of {cost} credit(s) deducted for {user_id}")

        if error is not None:
            logger.error(
                "Ledger inconsistency for %s on %s: %s (remaining=%s)",
                user_id,
                provider.provider_id,
                error,
                remaining,
            )
            return LedgerOutcome(committed=False, credits_deducted=deducted, remaining=remaining, error=error)

        logger.info("Deducted %s credit(s) from %s, %s remaining", deducted, user_id, remaining)
        return LedgerOutcome(committed=True, credits_deducted=deducted, remaining=remaining)

    def _commit_anonymous(self, context: RequestContext) -> LedgerOutcome:
        caller = context.caller
        limit = context.decision.limit if context.decision else None
        try:
            count = self.datastore.increment_anonymous_usage(caller.session_id, caller.ip_address)
        except DatastoreError as exc:
            error = LedgerError(f"Anonymous usage increment for session {caller.session_id} failed: {exc}")
            logger.error("Ledger inconsistency for session %s: %s", caller.session_id, error)
            return LedgerOutcome(committed=False, credits_deducted=0, remaining=None, error=error)
        remaining = max(0, limit - count) if limit is not None else None
        return LedgerOutcome(committed=True, credits_deducted=0, remaining=remaining)

    def _remaining_credits(self, user_id: str) -> int | None:
        try:
            return self.datastore.get_user_credits(user_id)
        except DatastoreError as exc:
            logger.warning("Could not read balance for %s after deduction: %s", user_id, exc)
            return None

    def record_failure(self, context: RequestContext, stage: str, error: Exception, processing_ms: int) -> None:
        try:
            self.datastore.log_usage(
                self._entry(context, processing_ms, success=False, stage=stage, error_message=str(error)[:500])
            )
        except DatastoreError as exc:
            logger.warning("Failed to record failed generation for %s: %s", context.caller.owner_tag, exc)
