"""
Referral Ledger

This package provides:
- Referral codes in NNNLLL format, unique per account
- One-time redemption with a welcome credit for the referee
- Reward cycles: every 3 redemptions of a code earn its owner 5 credits, up to 5 cycles
- Concurrency-safe credit spending with an audit trail
- An access gate combining subscriptions with credit balances
"""

from .access import AccessGate, StaticSubscriptionChecker, SubscriptionChecker
from .codes import generate_referral_code, is_valid_code, normalize_code
from .database import LedgerStore
from .directory import CodeDirectory, HttpCodeDirectory, InMemoryDirectory
from .errors import (
    CodeGenerationExhaustedError,
    DirectoryUnavailableError,
    IdentityUnavailableError,
    LedgerRejection,
    LedgerServiceError,
    SubscriptionCheckError,
)
from .identity import IdentityProvider, StaticIdentityProvider
from .models import (
    AccessStatus,
    Account,
    CreditEntry,
    EntryType,
    LedgerErrorCode,
    RedeemResult,
    ReferralStats,
    ReferralStatus,
    ReferredAccount,
    SpendResult,
)
from .service import MAX_CYCLES, ReferralLedger
from .sync import SyncScheduler

__all__ = [
    "AccessGate",
    "StaticSubscriptionChecker",
    "SubscriptionChecker",
    "generate_referral_code",
    "is_valid_code",
    "normalize_code",
    "LedgerStore",
    "CodeDirectory",
    "HttpCodeDirectory",
    "InMemoryDirectory",
    "CodeGenerationExhaustedError",
    "DirectoryUnavailableError",
    "IdentityUnavailableError",
    "LedgerRejection",
    "LedgerServiceError",
    "SubscriptionCheckError",
    "IdentityProvider",
    "StaticIdentityProvider",
    "AccessStatus",
    "Account",
    "CreditEntry",
    "EntryType",
    "LedgerErrorCode",
    "RedeemResult",
    "ReferralStats",
    "ReferralStatus",
    "ReferredAccount",
    "SpendResult",
    "MAX_CYCLES",
    "ReferralLedger",
    "SyncScheduler",
]
