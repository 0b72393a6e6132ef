"""
ORM tables for the ledger store.

accounts        one row per identity, owns a unique referral code and a credit balance
referrals       one row per successful redemption, status advances completed -> rewarded | max_reached
credit_entries  append-only audit trail of every balance change
"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from referral_ledger.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountRecord(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    referral_code: Mapped[str] = mapped_column(String(6), unique=True, nullable=False)
    credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    # Set once on redemption, never rewritten
    used_referral_code: Mapped[Optional[str]] = mapped_column(
        String(6), ForeignKey("accounts.referral_code")
    )


class ReferralRecord(Base):
    __tablename__ = "referrals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    referrer_code: Mapped[str] = mapped_column(
        String(6), ForeignKey("accounts.referral_code"), nullable=False
    )
    referee_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("accounts.id"), nullable=False, unique=True
    )
    referee_code: Mapped[str] = mapped_column(String(6), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="completed"
    )  # completed, rewarded, max_reached

    __table_args__ = (
        Index("ix_referrals_referrer_code", "referrer_code"),
        Index("ix_referrals_status", "status"),
    )


class CreditEntryRecord(Base):
    __tablename__ = "credit_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("accounts.id"), nullable=False
    )
    entry_type: Mapped[str] = mapped_column(String(10), nullable=False)  # CREDIT, DEBIT
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_credit_entries_account_id", "account_id"),
    )
