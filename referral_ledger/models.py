from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .codes import normalize_code


class ReferralStatus(str, Enum):
    COMPLETED = "completed"
    REWARDED = "rewarded"
    MAX_REACHED = "max_reached"


class EntryType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class LedgerErrorCode(str, Enum):
    ALREADY_USED = "ALREADY_USED"
    INVALID_FORMAT = "INVALID_FORMAT"
    CODE_NOT_FOUND = "CODE_NOT_FOUND"
    SELF_REFERRAL = "SELF_REFERRAL"
    REFEREE_NOT_FOUND = "REFEREE_NOT_FOUND"
    ALREADY_REDEEMED = "ALREADY_REDEEMED"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    SUBSCRIPTION_CHECK_FAILED = "SUBSCRIPTION_CHECK_FAILED"
    TRANSACTION_FAILED = "TRANSACTION_FAILED"


ERROR_MESSAGES: dict[LedgerErrorCode, str] = {
    LedgerErrorCode.ALREADY_USED: "You have already used a referral code",
    LedgerErrorCode.INVALID_FORMAT: "Invalid referral code format",
    LedgerErrorCode.CODE_NOT_FOUND: "Invalid referral code",
    LedgerErrorCode.SELF_REFERRAL: "You cannot use your own referral code",
    LedgerErrorCode.REFEREE_NOT_FOUND: "User not found",
    LedgerErrorCode.ALREADY_REDEEMED: "Referral code already used",
    LedgerErrorCode.INSUFFICIENT_CREDITS: "Insufficient credits",
    LedgerErrorCode.ACCOUNT_NOT_FOUND: "User not found",
    LedgerErrorCode.INVALID_AMOUNT: "Amount must be positive",
    LedgerErrorCode.SUBSCRIPTION_CHECK_FAILED: "Could not verify subscription",
    LedgerErrorCode.TRANSACTION_FAILED: "Transaction failed",
}


class Account(BaseModel):
    id: str
    referral_code: str
    credits: int = 0
    used_referral_code: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CreditEntry(BaseModel):
    id: int
    account_id: str
    entry_type: EntryType
    amount: int
    balance_after: int
    reason: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RedeemResult(BaseModel):
    success: bool
    error: Optional[LedgerErrorCode] = None
    message: Optional[str] = None
    credit_awarded: Optional[int] = None
    referrer_bonus: int = 0

    @classmethod
    def failure(cls, error: LedgerErrorCode, message: Optional[str] = None) -> "RedeemResult":
        return cls(success=False, error=error, message=message or ERROR_MESSAGES[error])


class SpendResult(BaseModel):
    success: bool
    error: Optional[LedgerErrorCode] = None
    message: Optional[str] = None
    remaining_credits: Optional[int] = None

    @classmethod
    def failure(cls, error: LedgerErrorCode, message: Optional[str] = None) -> "SpendResult":
        return cls(success=False, error=error, message=message or ERROR_MESSAGES[error])


class ReferralStats(BaseModel):
    current_progress: int = 0
    total_credits: int = 0
    total_referrals: int = 0
    completed_cycles: int = 0
    max_cycles: int


class ReferredAccount(BaseModel):
    id: str
    code: str
    redeemed_at: datetime


class CreditHistoryResponse(BaseModel):
    account_id: str
    entries: list[CreditEntry]
    total_count: int
    current_balance: int


class AccessStatus(BaseModel):
    can_create: bool
    has_subscription: bool
    credits: int = 0
    reason: Optional[str] = None


class DirectoryAccountData(BaseModel):
    referral_code: str
    credits: int = 0
    created_at: Optional[datetime] = None


class DirectoryEntry(BaseModel):
    id: str
    data: DirectoryAccountData


class DirectoryRecord(BaseModel):
    """Account snapshot pushed to the remote directory."""
    id: str
    referral_code: str
    credits: int
    created_at: datetime
    used_referral_code: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class RedeemRequest(BaseModel):
    code: str = Field(..., description="Referral code to redeem (case-insensitive)")

    model_config = ConfigDict(json_schema_extra={
        "example": {"code": "123ABC"}
    })

    @field_validator("code")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return normalize_code(value)


class SpendRequest(BaseModel):
    amount: int = Field(..., description="Credits to debit")
    used_for: str = Field(default="unknown", max_length=80)


class ConsumeRequest(BaseModel):
    used_for: str = Field(default="note", max_length=80)


class CreditsResponse(BaseModel):
    account_id: str
    credits: int
