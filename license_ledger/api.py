from uuid import UUID

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .errors import ErrorCode, LedgerServiceError, OtpVerificationError, RecordNotFoundError
from .models import (
    ConfirmPurchaseRequest,
    ConfirmPurchaseResponse,
    CommissionView,
    CreatePurchaseRequest,
    CreateWithdrawalRequest,
    FinalizeWithdrawalRequest,
    IssueOtpRequest,
    IssueOtpResponse,
    LedgerHistoryResponse,
    ProcessWithdrawalRequest,
    PurchaseView,
    RejectPurchaseRequest,
    ScheduleView,
    SubmitPaymentRequest,
    SweepRequest,
    SweepResult,
    UpdateCapRequest,
    UserBalance,
    WithdrawalView,
)
from .platform import LedgerPlatform
from .storage import PACKAGES, InMemoryStorage
from .withdrawals import FinalizeDetail


HTTP_STATUS_BY_CODE = {
    ErrorCode.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_ADDRESS: status.HTTP_400_BAD_REQUEST,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.ACCOUNT_INACTIVE: status.HTTP_403_FORBIDDEN,
    ErrorCode.PENDING_WITHDRAWAL_EXISTS: status.HTTP_409_CONFLICT,
    ErrorCode.INSUFFICIENT_BALANCE: status.HTTP_400_BAD_REQUEST,
    ErrorCode.INSUFFICIENT_FUNDS: status.HTTP_400_BAD_REQUEST,
    ErrorCode.ALREADY_SETTLED: status.HTTP_409_CONFLICT,
    ErrorCode.SCHEDULE_ALREADY_EXISTS: status.HTTP_409_CONFLICT,
    ErrorCode.SCHEDULE_NOT_ACTIVE: status.HTTP_409_CONFLICT,
    ErrorCode.DAY_NOT_DUE: status.HTTP_409_CONFLICT,
    ErrorCode.OTP_VERIFICATION_FAILED: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.INVALID_STATE_TRANSITION: status.HTTP_409_CONFLICT,
    ErrorCode.TRANSIENT_CONFLICT: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def create_app(platform: LedgerPlatform | None = None, root_path: str = "") -> FastAPI:
    platform = platform or LedgerPlatform(storage=InMemoryStorage(seed=True))

    app = FastAPI(
        title="License Ledger API",
        description="Benefit accrual, referral commissions and OTP-gated withdrawals",
        version="1.0.0",
        root_path=root_path,
    )
    app.state.platform = platform

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerServiceError)
    async def ledger_error_handler(request: Request, exc: LedgerServiceError) -> JSONResponse:
        body = {"code": exc.code.value, "detail": exc.message}
        if isinstance(exc, OtpVerificationError):
            body["reason"] = exc.reason.value
        return JSONResponse(
            status_code=HTTP_STATUS_BY_CODE.get(exc.code, status.HTTP_400_BAD_REQUEST),
            content=body,
        )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "license-ledger"}

    @app.post("/purchases", response_model=PurchaseView, status_code=status.HTTP_201_CREATED, tags=["Purchases"])
    def create_purchase(request: CreatePurchaseRequest) -> PurchaseView:
        package = None
        if request.package_id:
            record = platform.storage.get(PACKAGES, request.package_id)
            if record is None:
                raise RecordNotFoundError(f"Package {request.package_id} not found")
            package = record.config
        purchase = platform.purchases.create_purchase(request.user_id, request.principal, package)
        return PurchaseView.of(purchase)

    @app.get("/purchases/{purchase_id}", response_model=PurchaseView, tags=["Purchases"])
    def get_purchase(purchase_id: UUID) -> PurchaseView:
        return PurchaseView.of(platform.purchases.get_purchase(purchase_id))

    @app.post("/purchases/{purchase_id}/payment", response_model=PurchaseView, tags=["Purchases"])
    def submit_payment(purchase_id: UUID, request: SubmitPaymentRequest) -> PurchaseView:
        return PurchaseView.of(platform.purchases.submit_payment(purchase_id, request.tx_hash))

    @app.post("/purchases/{purchase_id}/confirm", response_model=ConfirmPurchaseResponse, tags=["Purchases"])
    def confirm_purchase(purchase_id: UUID, request: ConfirmPurchaseRequest) -> ConfirmPurchaseResponse:
        result = platform.purchases.confirm(purchase_id, referral_chain=request.referral_chain)
        return ConfirmPurchaseResponse(
            purchase=PurchaseView.of(result.purchase),
            schedule=ScheduleView.of(result.schedule),
            commissions=[CommissionView.of(c) for c in result.commissions],
            message="Purchase confirmed successfully",
        )

    @app.post("/purchases/{purchase_id}/reject", response_model=PurchaseView, tags=["Purchases"])
    def reject_purchase(purchase_id: UUID, request: RejectPurchaseRequest) -> PurchaseView:
        purchase = platform.purchases.reject(purchase_id, request.reason)
        return PurchaseView.of(purchase)

    @app.get("/schedules/{schedule_id}", response_model=ScheduleView, tags=["Benefits"])
    def get_schedule(schedule_id: UUID) -> ScheduleView:
        return ScheduleView.of(platform.benefits.get_schedule(schedule_id))

    @app.post("/schedules/{schedule_id}/pause", response_model=ScheduleView, tags=["Benefits"])
    def pause_schedule(schedule_id: UUID) -> ScheduleView:
        return ScheduleView.of(platform.benefits.pause(schedule_id))

    @app.post("/schedules/{schedule_id}/resume", response_model=ScheduleView, tags=["Benefits"])
    def resume_schedule(schedule_id: UUID) -> ScheduleView:
        return ScheduleView.of(platform.benefits.resume(schedule_id))

    @app.post("/schedules/{schedule_id}/cap", response_model=ScheduleView, tags=["Benefits"])
    def update_cap(schedule_id: UUID, request: UpdateCapRequest) -> ScheduleView:
        return ScheduleView.of(platform.benefits.update_cap(schedule_id, request.cap_percent))

    @app.post("/otp", response_model=IssueOtpResponse, status_code=status.HTTP_201_CREATED, tags=["OTP"])
    def issue_otp(request: IssueOtpRequest) -> IssueOtpResponse:
        issued = platform.otp.issue(request.user_id, request.purpose)
        delivered = platform.notifications.deliver_pin(request.user_id, request.purpose, issued)
        return IssueOtpResponse(
            challenge_id=issued.challenge_id,
            expires_at=issued.expires_at,
            delivered=delivered,
        )

    @app.post("/withdrawals", response_model=WithdrawalView, status_code=status.HTTP_201_CREATED, tags=["Withdrawals"])
    def request_withdrawal(request: CreateWithdrawalRequest) -> WithdrawalView:
        withdrawal = platform.withdrawals.request_withdrawal(
            request.user_id, request.amount, request.destination_address, request.pin
        )
        return WithdrawalView.of(withdrawal)

    @app.get("/withdrawals/{withdrawal_id}", response_model=WithdrawalView, tags=["Withdrawals"])
    def get_withdrawal(withdrawal_id: UUID) -> WithdrawalView:
        return WithdrawalView.of(platform.withdrawals.get_withdrawal(withdrawal_id))

    @app.post("/withdrawals/{withdrawal_id}/approve", response_model=WithdrawalView, tags=["Withdrawals"])
    def approve_withdrawal(withdrawal_id: UUID) -> WithdrawalView:
        return WithdrawalView.of(platform.withdrawals.approve(withdrawal_id))

    @app.post("/withdrawals/{withdrawal_id}/process", response_model=WithdrawalView, tags=["Withdrawals"])
    def process_withdrawal(withdrawal_id: UUID, request: ProcessWithdrawalRequest) -> WithdrawalView:
        return WithdrawalView.of(platform.withdrawals.mark_processing(withdrawal_id, request.tx_hash))

    @app.post("/withdrawals/{withdrawal_id}/finalize", response_model=WithdrawalView, tags=["Withdrawals"])
    def finalize_withdrawal(withdrawal_id: UUID, request: FinalizeWithdrawalRequest) -> WithdrawalView:
        withdrawal = platform.withdrawals.finalize(
            withdrawal_id,
            request.outcome,
            FinalizeDetail(
                tx_hash=request.tx_hash,
                actual_fee=request.actual_fee,
                reason=request.reason,
            ),
        )
        return WithdrawalView.of(withdrawal)

    @app.post("/sweeps/benefits", response_model=SweepResult, tags=["Sweeps"])
    def sweep_benefits(request: SweepRequest) -> SweepResult:
        return platform.benefits.release_due(request.as_of)

    @app.post("/sweeps/commissions", response_model=SweepResult, tags=["Sweeps"])
    def sweep_commissions(request: SweepRequest) -> SweepResult:
        return platform.commissions.unlock_due(request.as_of)

    @app.post("/sweeps/reservations", response_model=SweepResult, tags=["Sweeps"])
    def sweep_reservations(request: SweepRequest) -> SweepResult:
        return platform.withdrawals.settle_reservations(request.as_of)

    @app.get("/users/{user_id}/balance", response_model=UserBalance, tags=["Users"])
    def get_user_balance(user_id: UUID, currency: str = "USDT") -> UserBalance:
        return platform.ledger.get_balance(user_id, currency)

    @app.get("/users/{user_id}/ledger", response_model=LedgerHistoryResponse, tags=["Users"])
    def get_user_ledger(user_id: UUID, currency: str = "USDT", limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        return platform.ledger.get_history(user_id, currency, limit, offset)

    @app.get("/users/{user_id}/commissions", response_model=list[CommissionView], tags=["Users"])
    def get_user_commissions(user_id: UUID) -> list[CommissionView]:
        return [CommissionView.of(c) for c in platform.commissions.list_for_user(user_id)]

    @app.get("/users/{user_id}/withdrawals", response_model=list[WithdrawalView], tags=["Users"])
    def get_user_withdrawals(user_id: UUID) -> list[WithdrawalView]:
        return [WithdrawalView.of(w) for w in platform.withdrawals.list_for_user(user_id)]

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    from .logging_config import setup_logging

    setup_logging()
    uvicorn.run(app, host="0.0.0.0", port=8000)
