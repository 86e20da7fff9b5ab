"""Pre-flight usage check.

Anonymous callers are counted against a fixed free quota keyed by session and
IP; authenticated callers need a credit balance covering the provider's cost.
The check never writes usage state. When the datastore cannot be read the
gate lets the request through and logs a warning.
"""

from __future__ import annotations

import logging
from typing import Any

from .datastore import DatastoreHandle
from .errors import (
    AuthenticationRequired,
    DatastoreError,
    InsufficientCredits,
    QuotaExceeded,
    SessionRequired,
)
from .models import Caller, GateDecision
from .settings import ProviderSettings

logger = logging.getLogger("veilpix-service.usage_gate")


class UsageGate:
    def __init__(self, datastore: DatastoreHandle, anonymous_quota: int):
        self.datastore = datastore
        self.anonymous_quota = anonymous_quota

    def check(self, caller: Caller, provider: ProviderSettings) -> GateDecision:
        if caller.is_authenticated:
            return self._check_credits(caller, provider)
        if not provider.allow_anonymous:
            return GateDecision(allowed=False, remaining=0, denial=AuthenticationRequired(provider.label))
        if not caller.session_id:
            return GateDecision(allowed=False, remaining=0, denial=SessionRequired())
        return self._check_quota(caller)

    def _read_credits(self, caller: Caller) -> int:
        try:
            self.datastore.get_or_create_user(caller.user_id, caller.email)
            return self.datastore.get_user_credits(caller.user_id)
        except DatastoreError as exc:
            logger.warning("Credit check for %s failed, allowing request: %s", caller.user_id, exc)
            return self.datastore.starting_credits

    def _read_anonymous_count(self, caller: Caller) -> int:
        try:
            row = self.datastore.get_anonymous_usage(caller.session_id, caller.ip_address)
        except DatastoreError as exc:
            logger.warning("Anonymous usage check for session %s failed, allowing request: %s", caller.session_id, exc)
            return 0
        return int(row["request_count"]) if row else 0

    def _check_credits(self, caller: Caller, provider: ProviderSettings) -> GateDecision:
        balance = self._read_credits(caller)
        if balance < provider.credit_cost:
            return GateDecision(
                allowed=False,
                remaining=balance,
                denial=InsufficientCredits(provider.label, balance, provider.credit_cost),
            )
        return GateDecision(allowed=True, remaining=balance)

    def _check_quota(self, caller: Caller) -> GateDecision:
        used = self._read_anonymous_count(caller)
        limit = self.anonymous_quota
        if used >= limit:
            return GateDecision(
                allowed=False,
                remaining=0,
                used=used,
                limit=limit,
                denial=QuotaExceeded(limit, used),
            )
        return GateDecision(allowed=True, remaining=limit - used, used=used, limit=limit)

    def describe(self, caller: Caller) -> dict[str, Any]:
        """Usage summary for the usage endpoints."""
        if caller.is_authenticated:
            user, _ = self.datastore.get_or_create_user(caller.user_id, caller.email)
            return {
                "isAuthenticated": True,
                "creditsRemaining": int(user["credits_remaining"] or 0),
                "totalCreditsPurchased": int(user["total_credits_purchased"] or 0),
                "lastCreditPurchaseAt": user["last_credit_purchase_at"],
            }

        used = 0
        if caller.session_id:
            row = self.datastore.get_anonymous_usage(caller.session_id, caller.ip_address)
            used = int(row["request_count"]) if row else 0
        return {
            "isAuthenticated": False,
            "totalUsage": used,
            "remainingFreeUsage": max(0, self.anonymous_quota - used),
            "limit": self.anonymous_quota,
        }
