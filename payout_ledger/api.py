from typing import Optional
from uuid import UUID
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .errors import (
    LedgerServiceError, NotFoundError, AccountExistsError, DuplicateReferralError, ConflictError,
    TransientIOError,
)
from .logging_config import bind_request_context, setup_logging
from .models import (
    Account, AccountSummary, OpenAccountRequest, CreditReferralRequest, PayoutDestinationRequest,
    RejectPayoutRequest, PayoutResponse, ReferralResponse, PayoutHistoryResponse, PayoutRequest,
)
from .service import LedgerService
from .settings import settings


def status_for(error: LedgerServiceError) -> int:
    if isinstance(error, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, (AccountExistsError, DuplicateReferralError, ConflictError)):
        return status.HTTP_409_CONFLICT
    if isinstance(error, TransientIOError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_400_BAD_REQUEST


def build_service() -> LedgerService:
    if settings.database_url:
        from .sql_store import SqlStore

        store = SqlStore(settings.database_url)
        store.create_tables()
        return LedgerService(store=store)
    return LedgerService()


def create_app(ledger_service: Optional[LedgerService] = None, root_path: str = "") -> FastAPI:
    setup_logging()
    service = ledger_service or build_service()

    app = FastAPI(
        title="Interac Payout Ledger API",
        description="Referral credits and Interac e-Transfer payout requests, balances in CAD cents",
        version="1.0.0",
        root_path=root_path,
    )
    app.state.ledger = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        with bind_request_context(request_id=request.headers.get("x-request-id")) as request_id:
            response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(LedgerServiceError)
    async def ledger_error_handler(request: Request, exc: LedgerServiceError) -> JSONResponse:
        return JSONResponse(status_code=status_for(exc), content={"detail": exc.to_dict()})

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": settings.app_name}

    @app.post("/accounts", response_model=Account, status_code=status.HTTP_201_CREATED, tags=["Accounts"])
    def open_account(request: OpenAccountRequest) -> Account:
        return service.open_account(referral_code=request.referral_code)

    @app.get("/accounts/{account_id}/summary", response_model=AccountSummary, tags=["Accounts"])
    def get_account_summary(account_id: UUID) -> AccountSummary:
        return service.get_account_summary(account_id)

    @app.get("/accounts/{account_id}/referral-link", tags=["Accounts"])
    def get_referral_link(account_id: UUID) -> dict:
        return {"link": service.referral_link(account_id)}

    @app.put("/accounts/{account_id}/payout-destination", response_model=AccountSummary, tags=["Payouts"])
    def set_payout_destination(account_id: UUID, request: PayoutDestinationRequest) -> AccountSummary:
        service.set_payout_destination(account_id, request.email)
        return service.get_account_summary(account_id)

    @app.post(
        "/accounts/{account_id}/payouts",
        response_model=PayoutResponse,
        status_code=status.HTTP_201_CREATED,
        tags=["Payouts"],
    )
    def request_payout(account_id: UUID) -> PayoutResponse:
        payout = service.request_payout(account_id)
        return PayoutResponse(
            payout=payout,
            message=(
                f"Payout request of ${payout.amount_display} {payout.currency} submitted! "
                "You'll receive an Interac e-Transfer shortly."
            ),
        )

    @app.get("/accounts/{account_id}/payouts", response_model=PayoutHistoryResponse, tags=["Payouts"])
    def list_payouts(account_id: UUID) -> PayoutHistoryResponse:
        payouts = service.list_payouts(account_id)
        return PayoutHistoryResponse(account_id=account_id, payouts=payouts, total_count=len(payouts))

    @app.post("/referrals", response_model=ReferralResponse, status_code=status.HTTP_201_CREATED, tags=["Referrals"])
    def credit_referral(request: CreditReferralRequest) -> ReferralResponse:
        edge = service.credit_referral_bonus(request.referrer_id, request.referred_id, request.bonus_amount)
        return ReferralResponse(referral=edge, message="Referral bonus credited")

    @app.get("/payouts/{payout_id}", response_model=PayoutRequest, tags=["Settlement"])
    def get_payout(payout_id: UUID) -> PayoutRequest:
        return service.get_payout(payout_id)

    @app.post("/payouts/{payout_id}/settle", response_model=PayoutResponse, tags=["Settlement"])
    def settle_payout(payout_id: UUID) -> PayoutResponse:
        return PayoutResponse(payout=service.settle_payout(payout_id), message="Payout settled")

    @app.post("/payouts/{payout_id}/reject", response_model=PayoutResponse, tags=["Settlement"])
    def reject_payout(payout_id: UUID, request: RejectPayoutRequest) -> PayoutResponse:
        payout = service.reject_payout(payout_id, request.reason)
        return PayoutResponse(payout=payout, message="Payout rejected and balance restored")

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
