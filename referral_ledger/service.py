import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .codes import generate_referral_code, is_valid_code
from .database import LedgerStore
from .directory import CodeDirectory
from .errors import (
    CodeGenerationExhaustedError,
    DirectoryUnavailableError,
    IdentityUnavailableError,
    LedgerRejection,
)
from .identity import IdentityProvider
from .models import (
    Account,
    CreditEntry,
    CreditHistoryResponse,
    EntryType,
    LedgerErrorCode,
    RedeemResult,
    ReferralStats,
    ReferralStatus,
    ReferredAccount,
    SpendResult,
)
from .sync import SyncScheduler
from .tables import AccountRecord, CreditEntryRecord, ReferralRecord

logger = logging.getLogger(__name__)

REFERRALS_PER_CYCLE = 3
CYCLE_REWARD_CREDITS = 5
MAX_CYCLES = 5
WELCOME_CREDITS = 1
DEFAULT_CODE_ATTEMPTS = 10


class ReferralLedger:
    def __init__(
        self,
        store: LedgerStore,
        directory: Optional[CodeDirectory] = None,
        identity: Optional[IdentityProvider] = None,
        sync: Optional[SyncScheduler] = None,
        code_attempts: int = DEFAULT_CODE_ATTEMPTS,
        code_factory: Callable[[], str] = generate_referral_code,
    ):
        if code_attempts < 1:
            raise ValueError("code_attempts must be at least 1")
        self.store = store
        self.directory = directory
        self.identity = identity
        self.sync = sync
        self.code_attempts = code_attempts
        self.code_factory = code_factory

    async def create_or_get_account(self, account_id: Optional[str] = None) -> Account:
        if account_id is None:
            account_id = await self._current_account_id()

        existing = await self._get_account_record(account_id)
        if existing is not None:
            self._schedule_sync(account_id)
            return Account.model_validate(existing)

        for attempt in range(1, self.code_attempts + 1):
            code = self.code_factory()
            try:
                created = await self._insert_account(account_id, code)
            except IntegrityError:
                created = None
                existing = await self._get_account_record(account_id)
                if existing is not None:
                    # A concurrent call created this account first
                    self._schedule_sync(account_id)
                    return Account.model_validate(existing)

            if created is not None:
                logger.info(
                    "Referral code generated for %s",
                    account_id,
                    extra={
                        "event": "referral_code_generated",
                        "account_id": account_id,
                        "referral_code": code,
                    },
                )
                self._schedule_sync(account_id)
                return Account.model_validate(created)

            logger.debug("Referral code collision on attempt %d for %s", attempt, account_id)

        logger.critical(
            "Referral code space exhausted: %d collisions in a row",
            self.code_attempts,
            extra={"event": "referral_code_exhausted", "account_id": account_id},
        )
        raise CodeGenerationExhaustedError(self.code_attempts)

    async def redeem_referral_code(self, referee_id: str, code: str) -> RedeemResult:
        try:
            owner = await self._validate_redemption(referee_id, code)
            referrer_bonus = await self._apply_redemption(referee_id, owner.id, code)
        except LedgerRejection as e:
            self._log_rejection(referee_id, code, e)
            return RedeemResult.failure(e.code, e.message)
        except IntegrityError:
            # referrals.referee_id is unique: a concurrent redemption committed first
            e = LedgerRejection(LedgerErrorCode.ALREADY_REDEEMED)
            self._log_rejection(referee_id, code, e)
            return RedeemResult.failure(e.code, e.message)
        except SQLAlchemyError as e:
            logger.exception(
                "Referral redemption failed for %s",
                referee_id,
                extra={"account_id": referee_id, "referral_code": code},
            )
            return RedeemResult.failure(LedgerErrorCode.TRANSACTION_FAILED, str(e))

        logger.info(
            "Account %s redeemed %s and received %d credit",
            referee_id,
            code,
            WELCOME_CREDITS,
            extra={"event": "referral_redeemed", "account_id": referee_id, "referral_code": code},
        )
        self._schedule_sync(referee_id, owner.id)
        return RedeemResult(
            success=True,
            credit_awarded=WELCOME_CREDITS,
            referrer_bonus=referrer_bonus,
        )

    async def get_referral_stats(self, owner_id: str) -> ReferralStats:
        async with self.store.session() as session:
            owner = await session.get(AccountRecord, owner_id)
            if owner is None:
                return ReferralStats(max_cycles=MAX_CYCLES)

            rows = await session.execute(
                select(ReferralRecord.status, func.count())
                .where(ReferralRecord.referrer_code == owner.referral_code)
                .group_by(ReferralRecord.status)
            )
            counts = {status: count for status, count in rows.all()}

        completed = counts.get(ReferralStatus.COMPLETED.value, 0)
        rewarded = counts.get(ReferralStatus.REWARDED.value, 0)
        max_reached = counts.get(ReferralStatus.MAX_REACHED.value, 0)
        return ReferralStats(
            current_progress=completed,
            total_credits=owner.credits,
            total_referrals=completed + rewarded + max_reached,
            completed_cycles=rewarded // REFERRALS_PER_CYCLE,
            max_cycles=MAX_CYCLES,
        )

    async def get_referred_accounts(self, owner_id: str) -> list[ReferredAccount]:
        async with self.store.session() as session:
            owner = await session.get(AccountRecord, owner_id)
            if owner is None:
                return []

            result = await session.execute(
                select(ReferralRecord)
                .where(
                    ReferralRecord.referrer_code == owner.referral_code,
                    ReferralRecord.status == ReferralStatus.COMPLETED.value,
                )
                .order_by(ReferralRecord.created_at.desc(), ReferralRecord.id.desc())
            )
            referrals = result.scalars().all()

        return [
            ReferredAccount(id=r.referee_id, code=r.referee_code, redeemed_at=r.created_at)
            for r in referrals
        ]

    async def use_credits(self, account_id: str, amount: int, used_for: str = "unknown") -> SpendResult:
        if amount <= 0:
            return SpendResult.failure(LedgerErrorCode.INVALID_AMOUNT)

        try:
            old_balance, remaining = await self._debit(account_id, amount, used_for)
        except LedgerRejection as e:
            logger.info(
                "Credit spend rejected for %s: %s",
                account_id,
                e.message,
                extra={"account_id": account_id, "error_code": e.code.value},
            )
            return SpendResult.failure(e.code, e.message)
        except SQLAlchemyError as e:
            logger.exception("Credit spend failed for %s", account_id, extra={"account_id": account_id})
            return SpendResult.failure(LedgerErrorCode.TRANSACTION_FAILED, str(e))

        logger.info(
            "Account %s used %d credits for %s (%d -> %d)",
            account_id,
            amount,
            used_for,
            old_balance,
            remaining,
            extra={"event": "credits_used", "account_id": account_id},
        )
        self._schedule_sync(account_id)
        return SpendResult(success=True, remaining_credits=remaining)

    async def get_credits(self, account_id: str) -> int:
        async with self.store.session() as session:
            credits = await session.scalar(
                select(AccountRecord.credits).where(AccountRecord.id == account_id)
            )
        return credits or 0

    async def get_credit_history(
        self, account_id: str, limit: int = 50, offset: int = 0
    ) -> CreditHistoryResponse:
        async with self.store.session() as session:
            total_count = await session.scalar(
                select(func.count())
                .select_from(CreditEntryRecord)
                .where(CreditEntryRecord.account_id == account_id)
            )
            result = await session.execute(
                select(CreditEntryRecord)
                .where(CreditEntryRecord.account_id == account_id)
                .order_by(CreditEntryRecord.id.desc())
                .offset(offset)
                .limit(limit)
            )
            entries = [CreditEntry.model_validate(e) for e in result.scalars().all()]
            balance = await session.scalar(
                select(AccountRecord.credits).where(AccountRecord.id == account_id)
            )

        return CreditHistoryResponse(
            account_id=account_id,
            entries=entries,
            total_count=total_count or 0,
            current_balance=balance or 0,
        )

    async def _current_account_id(self) -> str:
        if self.identity is None:
            raise IdentityUnavailableError("No account id given and no identity provider configured")
        return await self.identity.current_account_id()

    async def _get_account_record(self, account_id: str) -> Optional[AccountRecord]:
        async with self.store.session() as session:
            return await session.get(AccountRecord, account_id)

    async def _insert_account(self, account_id: str, code: str) -> Optional[AccountRecord]:
        async with self.store.transaction() as session:
            if await self._find_by_code(session, code) is not None:
                return None
            record = AccountRecord(
                id=account_id,
                referral_code=code,
                credits=0,
                created_at=datetime.now(timezone.utc),
                used_referral_code=None,
            )
            session.add(record)
        return record

    async def _validate_redemption(self, referee_id: str, code: str) -> AccountRecord:
        async with self.store.session() as session:
            referee = await session.get(AccountRecord, referee_id)
            if referee is not None and referee.used_referral_code:
                raise LedgerRejection(LedgerErrorCode.ALREADY_USED)

            if not is_valid_code(code):
                raise LedgerRejection(LedgerErrorCode.INVALID_FORMAT)

            owner = await self._find_by_code(session, code)
            prior_referral = await session.scalar(
                select(ReferralRecord.id).where(ReferralRecord.referee_id == referee_id)
            )

        if owner is None:
            owner = await self._materialize_remote_owner(code, referee_id)
        if owner is None:
            raise LedgerRejection(LedgerErrorCode.CODE_NOT_FOUND)

        if owner.id == referee_id:
            raise LedgerRejection(LedgerErrorCode.SELF_REFERRAL)

        if referee is None:
            raise LedgerRejection(LedgerErrorCode.REFEREE_NOT_FOUND)

        if prior_referral is not None:
            raise LedgerRejection(LedgerErrorCode.ALREADY_REDEEMED)

        return owner

    async def _materialize_remote_owner(self, code: str, referee_id: str) -> Optional[AccountRecord]:
        if self.directory is None:
            return None

        try:
            entry = await self.directory.lookup(code)
        except DirectoryUnavailableError as e:
            logger.warning("Directory unavailable, treating %s as unknown: %s", code, e)
            return None

        if entry is None or entry.data.referral_code != code:
            return None

        logger.info(
            "Referral code %s found in directory (owner %s)",
            code,
            entry.id,
            extra={"account_id": entry.id, "referral_code": code},
        )
        try:
            async with self.store.transaction() as session:
                if await session.get(AccountRecord, entry.id) is None:
                    session.add(AccountRecord(
                        id=entry.id,
                        referral_code=code,
                        credits=entry.data.credits,
                        created_at=entry.data.created_at or datetime.now(timezone.utc),
                    ))
        except IntegrityError:
            logger.debug("Directory owner %s was materialized concurrently", entry.id)

        # The local row for this id may carry a different code; the directory
        # still names the referee as the owner.
        if entry.id == referee_id:
            raise LedgerRejection(LedgerErrorCode.SELF_REFERRAL)

        async with self.store.session() as session:
            return await self._find_by_code(session, code)

    async def _apply_redemption(self, referee_id: str, owner_id: str, code: str) -> int:
        """Runs the redemption writes in one transaction. Returns the referrer bonus."""
        async with self.store.transaction() as session:
            # Lock the referrer so concurrent redemptions of one code see each other's rows
            owner = await session.get(AccountRecord, owner_id, with_for_update=True)
            if owner is None:
                raise LedgerRejection(LedgerErrorCode.CODE_NOT_FOUND)

            marked = await session.execute(
                update(AccountRecord)
                .where(
                    AccountRecord.id == referee_id,
                    AccountRecord.used_referral_code.is_(None),
                )
                .values(
                    used_referral_code=code,
                    credits=AccountRecord.credits + WELCOME_CREDITS,
                )
                .execution_options(synchronize_session=False)
            )
            if marked.rowcount == 0:
                raise LedgerRejection(LedgerErrorCode.ALREADY_USED)

            referee = (await session.execute(
                select(AccountRecord.referral_code, AccountRecord.credits)
                .where(AccountRecord.id == referee_id)
            )).one()

            session.add(ReferralRecord(
                referrer_code=code,
                referee_id=referee_id,
                referee_code=referee.referral_code,
                status=ReferralStatus.COMPLETED.value,
            ))
            session.add(CreditEntryRecord(
                account_id=referee_id,
                entry_type=EntryType.CREDIT.value,
                amount=WELCOME_CREDITS,
                balance_after=referee.credits,
                reason="welcome_credit",
            ))
            await session.flush()

            completed = await self._count_referrals(session, code, ReferralStatus.COMPLETED)
            if completed != REFERRALS_PER_CYCLE:
                return 0

            rewarded = await self._count_referrals(session, code, ReferralStatus.REWARDED)
            completed_cycles = rewarded // REFERRALS_PER_CYCLE

            if completed_cycles >= MAX_CYCLES:
                await self._archive_batch(session, code, ReferralStatus.MAX_REACHED)
                logger.info(
                    "Account %s reached max cycles (%d), no credits awarded",
                    owner.id,
                    MAX_CYCLES,
                    extra={"event": "referral_max_cycles_reached", "account_id": owner.id, "referral_code": code},
                )
                return 0

            owner.credits += CYCLE_REWARD_CREDITS
            session.add(CreditEntryRecord(
                account_id=owner.id,
                entry_type=EntryType.CREDIT.value,
                amount=CYCLE_REWARD_CREDITS,
                balance_after=owner.credits,
                reason="referral_cycle_reward",
            ))
            await self._archive_batch(session, code, ReferralStatus.REWARDED)
            logger.info(
                "Account %s earned %d credits for %d referrals (cycle %d/%d)",
                owner.id,
                CYCLE_REWARD_CREDITS,
                REFERRALS_PER_CYCLE,
                completed_cycles + 1,
                MAX_CYCLES,
                extra={"event": "referral_cycle_completed", "account_id": owner.id, "referral_code": code},
            )
            return CYCLE_REWARD_CREDITS

    async def _debit(self, account_id: str, amount: int, used_for: str) -> tuple[int, int]:
        async with self.store.transaction() as session:
            balance = await session.scalar(
                select(AccountRecord.credits).where(AccountRecord.id == account_id)
            )
            if balance is None:
                raise LedgerRejection(LedgerErrorCode.ACCOUNT_NOT_FOUND)
            if balance < amount:
                raise LedgerRejection(LedgerErrorCode.INSUFFICIENT_CREDITS)

            # Only applies if the stored balance still covers the debit
            result = await session.execute(
                update(AccountRecord)
                .where(AccountRecord.id == account_id, AccountRecord.credits >= amount)
                .values(credits=AccountRecord.credits - amount)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise LedgerRejection(
                    LedgerErrorCode.INSUFFICIENT_CREDITS,
                    "Insufficient credits (concurrent update)",
                )

            remaining = await session.scalar(
                select(AccountRecord.credits).where(AccountRecord.id == account_id)
            )
            session.add(CreditEntryRecord(
                account_id=account_id,
                entry_type=EntryType.DEBIT.value,
                amount=amount,
                balance_after=remaining,
                reason=f"spend:{used_for}",
            ))
        return balance, remaining

    @staticmethod
    async def _find_by_code(session: AsyncSession, code: str) -> Optional[AccountRecord]:
        return await session.scalar(
            select(AccountRecord).where(AccountRecord.referral_code == code)
        )

    @staticmethod
    async def _count_referrals(session: AsyncSession, code: str, status: ReferralStatus) -> int:
        count = await session.scalar(
            select(func.count())
            .select_from(ReferralRecord)
            .where(ReferralRecord.referrer_code == code, ReferralRecord.status == status.value)
        )
        return count or 0

    @staticmethod
    async def _archive_batch(session: AsyncSession, code: str, status: ReferralStatus) -> None:
        await session.execute(
            update(ReferralRecord)
            .where(
                ReferralRecord.referrer_code == code,
                ReferralRecord.status == ReferralStatus.COMPLETED.value,
            )
            .values(status=status.value)
            .execution_options(synchronize_session=False)
        )

    def _schedule_sync(self, *account_ids: str) -> None:
        if self.sync is not None:
            self.sync.schedule(*account_ids)

    @staticmethod
    def _log_rejection(referee_id: str, code: str, error: LedgerRejection) -> None:
        level = logging.WARNING if error.code == LedgerErrorCode.REFEREE_NOT_FOUND else logging.INFO
        logger.log(
            level,
            "Referral redemption rejected for %s: %s",
            referee_id,
            error.code.value,
            extra={
                "event": "referral_redemption_attempt",
                "account_id": referee_id,
                "referral_code": code,
                "error_code": error.code.value,
            },
        )
