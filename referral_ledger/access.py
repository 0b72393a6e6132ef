"""
Access gate for privileged actions (e.g. creating a note).

An account may proceed when it has an active subscription or at least one
credit. Subscribers are never debited; everyone else pays one credit per
action through the ledger's conditional debit.
"""
import logging
from typing import Iterable, Protocol

from .errors import SubscriptionCheckError
from .models import AccessStatus, LedgerErrorCode, SpendResult
from .service import ReferralLedger

logger = logging.getLogger(__name__)

CREDITS_PER_ACTION = 1


class SubscriptionChecker(Protocol):
    async def is_subscribed(self, account_id: str) -> bool:
        ...


class StaticSubscriptionChecker:
    def __init__(self, subscribed_ids: Iterable[str] = ()):
        self.subscribed_ids = frozenset(subscribed_ids)

    async def is_subscribed(self, account_id: str) -> bool:
        return account_id in self.subscribed_ids


class AccessGate:
    def __init__(self, ledger: ReferralLedger, subscriptions: SubscriptionChecker):
        self.ledger = ledger
        self.subscriptions = subscriptions

    async def check_access(self, account_id: str) -> AccessStatus:
        try:
            if await self.subscriptions.is_subscribed(account_id):
                return AccessStatus(can_create=True, has_subscription=True)
        except SubscriptionCheckError as e:
            logger.warning("Subscription check failed for %s: %s", account_id, e, extra={"account_id": account_id})
            return AccessStatus(can_create=False, has_subscription=False, reason="Error checking access")

        credits = await self.ledger.get_credits(account_id)
        if credits > 0:
            return AccessStatus(can_create=True, has_subscription=False, credits=credits)

        return AccessStatus(
            can_create=False,
            has_subscription=False,
            credits=0,
            reason="No active subscription or credits available",
        )

    async def can_create(self, account_id: str) -> bool:
        status = await self.check_access(account_id)
        return status.can_create

    async def consume(self, account_id: str, used_for: str = "note") -> SpendResult:
        """Call after the privileged action succeeded."""
        try:
            subscribed = await self.subscriptions.is_subscribed(account_id)
        except SubscriptionCheckError as e:
            logger.warning("Subscription check failed for %s: %s", account_id, e, extra={"account_id": account_id})
            return SpendResult.failure(LedgerErrorCode.SUBSCRIPTION_CHECK_FAILED)

        if subscribed:
            return SpendResult(success=True)

        result = await self.ledger.use_credits(account_id, CREDITS_PER_ACTION, used_for=used_for)
        if result.success:
            logger.info(
                "%d credit consumed by %s, %d remaining",
                CREDITS_PER_ACTION,
                account_id,
                result.remaining_credits,
                extra={"account_id": account_id},
            )
        return result

    async def current_credits(self, account_id: str) -> int:
        return await self.ledger.get_credits(account_id)
