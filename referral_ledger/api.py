from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .access import AccessGate, StaticSubscriptionChecker
from .config import get_settings
from .database import LedgerStore
from .directory import HttpCodeDirectory, InMemoryDirectory
from .errors import CodeGenerationExhaustedError, IdentityUnavailableError
from .logging_config import configure_logging
from .models import (
    AccessStatus,
    Account,
    ConsumeRequest,
    CreditHistoryResponse,
    CreditsResponse,
    LedgerErrorCode,
    RedeemRequest,
    RedeemResult,
    ReferralStats,
    ReferredAccount,
    SpendRequest,
    SpendResult,
)
from .service import ReferralLedger
from .sync import SyncScheduler

ERROR_STATUS: dict[LedgerErrorCode, int] = {
    LedgerErrorCode.INVALID_FORMAT: status.HTTP_400_BAD_REQUEST,
    LedgerErrorCode.INVALID_AMOUNT: status.HTTP_400_BAD_REQUEST,
    LedgerErrorCode.INSUFFICIENT_CREDITS: status.HTTP_402_PAYMENT_REQUIRED,
    LedgerErrorCode.CODE_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    LedgerErrorCode.REFEREE_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    LedgerErrorCode.ACCOUNT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    LedgerErrorCode.ALREADY_USED: status.HTTP_409_CONFLICT,
    LedgerErrorCode.ALREADY_REDEEMED: status.HTTP_409_CONFLICT,
    LedgerErrorCode.SELF_REFERRAL: status.HTTP_409_CONFLICT,
    LedgerErrorCode.TRANSACTION_FAILED: status.HTTP_500_INTERNAL_SERVER_ERROR,
    LedgerErrorCode.SUBSCRIPTION_CHECK_FAILED: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "ledger", None) is not None:
        # Dependencies were injected by the caller, who owns their lifecycle
        yield
        return

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)

    store = LedgerStore(settings.database_url, echo=settings.database_echo)
    await store.create_all()

    if settings.directory_url:
        directory = HttpCodeDirectory(
            settings.directory_url,
            api_key=settings.directory_api_key,
            timeout=settings.directory_timeout_seconds,
        )
    else:
        directory = InMemoryDirectory()

    sync = SyncScheduler(
        store,
        directory,
        debounce_seconds=settings.sync_debounce_seconds,
        max_attempts=settings.sync_max_attempts,
        backoff_seconds=settings.sync_backoff_seconds,
        queue_size=settings.sync_queue_size,
    )
    await sync.start()

    ledger = ReferralLedger(
        store,
        directory=directory,
        sync=sync,
        code_attempts=settings.code_generation_attempts,
    )
    app.state.ledger = ledger
    app.state.gate = AccessGate(ledger, StaticSubscriptionChecker(settings.subscribed_ids))
    try:
        yield
    finally:
        await sync.stop()
        await directory.aclose()
        await store.dispose()


def get_ledger(request: Request) -> ReferralLedger:
    return request.app.state.ledger


def get_gate(request: Request) -> AccessGate:
    return request.app.state.gate


def _result_response(result, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    if not result.success:
        status_code = ERROR_STATUS.get(result.error, status.HTTP_400_BAD_REQUEST)
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


def create_app(
    ledger: Optional[ReferralLedger] = None,
    gate: Optional[AccessGate] = None,
) -> FastAPI:
    app = FastAPI(
        title="Referral Ledger API",
        description="Referral codes, redemption cycles and credit balances",
        version="1.0.0",
        lifespan=lifespan,
    )
    if ledger is not None:
        app.state.ledger = ledger
        app.state.gate = gate or AccessGate(ledger, StaticSubscriptionChecker())

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["System"])
    async def health_check():
        return {"status": "healthy", "service": "referral-ledger"}

    @app.post("/accounts", response_model=Account, tags=["Accounts"])
    async def create_or_get_account(
        x_account_id: Optional[str] = Header(default=None),
        ledger: ReferralLedger = Depends(get_ledger),
    ) -> Account:
        try:
            return await ledger.create_or_get_account(x_account_id)
        except IdentityUnavailableError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except CodeGenerationExhaustedError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    @app.get("/accounts/{account_id}/credits", response_model=CreditsResponse, tags=["Credits"])
    async def get_credits(account_id: str, ledger: ReferralLedger = Depends(get_ledger)) -> CreditsResponse:
        return CreditsResponse(account_id=account_id, credits=await ledger.get_credits(account_id))

    @app.get("/accounts/{account_id}/credit-history", response_model=CreditHistoryResponse, tags=["Credits"])
    async def get_credit_history(
        account_id: str,
        limit: int = 50,
        offset: int = 0,
        ledger: ReferralLedger = Depends(get_ledger),
    ) -> CreditHistoryResponse:
        return await ledger.get_credit_history(account_id, limit, offset)

    @app.post("/accounts/{account_id}/credits/spend", response_model=SpendResult, tags=["Credits"])
    async def spend_credits(
        account_id: str,
        request: SpendRequest,
        ledger: ReferralLedger = Depends(get_ledger),
    ):
        result = await ledger.use_credits(account_id, request.amount, used_for=request.used_for)
        return _result_response(result)

    @app.get("/accounts/{account_id}/referral-stats", response_model=ReferralStats, tags=["Referrals"])
    async def get_referral_stats(account_id: str, ledger: ReferralLedger = Depends(get_ledger)) -> ReferralStats:
        return await ledger.get_referral_stats(account_id)

    @app.get("/accounts/{account_id}/referred", response_model=list[ReferredAccount], tags=["Referrals"])
    async def get_referred_accounts(
        account_id: str, ledger: ReferralLedger = Depends(get_ledger)
    ) -> list[ReferredAccount]:
        return await ledger.get_referred_accounts(account_id)

    @app.post("/accounts/{account_id}/redeem", response_model=RedeemResult, tags=["Referrals"])
    async def redeem_referral_code(
        account_id: str,
        request: RedeemRequest,
        ledger: ReferralLedger = Depends(get_ledger),
    ):
        result = await ledger.redeem_referral_code(account_id, request.code)
        return _result_response(result)

    @app.get("/accounts/{account_id}/access", response_model=AccessStatus, tags=["Access"])
    async def check_access(account_id: str, gate: AccessGate = Depends(get_gate)) -> AccessStatus:
        return await gate.check_access(account_id)

    @app.post("/accounts/{account_id}/access/consume", response_model=SpendResult, tags=["Access"])
    async def consume_access(
        account_id: str,
        request: Optional[ConsumeRequest] = None,
        gate: AccessGate = Depends(get_gate),
    ):
        request = request or ConsumeRequest()
        result = await gate.consume(account_id, used_for=request.used_for)
        return _result_response(result)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
