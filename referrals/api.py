from typing import NoReturn, Optional
from uuid import UUID
from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from core.config import get_settings
from core.errors import (
    ConflictError,
    InsufficientBalanceError,
    InvalidInputError,
    NotFoundError,
    ServiceError,
)
from core.log import configure_logging
from ledger.models import LedgerBalance, LedgerHistoryResponse, LedgerMutationResponse

from .models import (
    AdminReferralStats,
    AdvanceProgressRequest,
    BonusRequest,
    DriverReferralStats,
    ExpireBalanceRequest,
    LeaderboardEntry,
    ProgressResponse,
    RedeemBalanceRequest,
    RedeemCodeRequest,
    RedeemCodeResponse,
    ReferralCodeResponse,
    ReferralPage,
    ReferralRecord,
    ReferralStatus,
)
from .service import ReferralService

settings = get_settings()
configure_logging(settings.LOG_LEVEL)

app = FastAPI(
    title=settings.APP_NAME,
    description="Driver referral program with exactly-once rewards and an auditable balance ledger",
    version=settings.APP_VERSION,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

referral_service = ReferralService(settings=settings)


def raise_http(error: ServiceError) -> NoReturn:
    if isinstance(error, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, (InvalidInputError, InsufficientBalanceError)):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "referral-ledger"}


@app.post("/drivers/{driver_id}/referral-code", response_model=ReferralCodeResponse,
          status_code=status.HTTP_201_CREATED, tags=["Referrals"])
def generate_referral_code(driver_id: str) -> ReferralCodeResponse:
    try:
        return referral_service.generate_code(driver_id)
    except ServiceError as e:
        raise_http(e)


@app.get("/drivers/{driver_id}/referral-code", response_model=ReferralCodeResponse, tags=["Referrals"])
def get_referral_code(driver_id: str) -> ReferralCodeResponse:
    try:
        return referral_service.get_or_create_code(driver_id)
    except ServiceError as e:
        raise_http(e)


@app.post("/drivers/{driver_id}/referral-code/redeem", response_model=RedeemCodeResponse, tags=["Referrals"])
def redeem_referral_code(driver_id: str, request: RedeemCodeRequest) -> RedeemCodeResponse:
    try:
        return referral_service.redeem_code(request.referral_code, driver_id)
    except ServiceError as e:
        raise_http(e)


@app.post("/drivers/{driver_id}/progress", tags=["Referrals"])
def advance_referral_progress(driver_id: str, request: AdvanceProgressRequest) -> dict:
    try:
        result: Optional[ProgressResponse] = referral_service.advance_progress(
            driver_id,
            request.deliveries_completed,
            request.total_earnings,
            request.days_active,
        )
    except ServiceError as e:
        raise_http(e)
    if result is None:
        return {"updated": False, "message": "No active referral found for driver"}
    return {"updated": True, **result.model_dump(mode="json")}


@app.get("/drivers/{driver_id}/stats", response_model=DriverReferralStats, tags=["Referrals"])
def get_driver_stats(driver_id: str) -> DriverReferralStats:
    try:
        return referral_service.get_driver_stats(driver_id)
    except ServiceError as e:
        raise_http(e)


@app.get("/drivers/{driver_id}/balance", response_model=LedgerBalance, tags=["Ledger"])
def get_driver_balance(driver_id: str) -> LedgerBalance:
    try:
        return referral_service.ledger.get_balance(driver_id)
    except ServiceError as e:
        raise_http(e)


@app.get("/drivers/{driver_id}/history", response_model=LedgerHistoryResponse, tags=["Ledger"])
def get_driver_history(driver_id: str, limit: Optional[int] = None) -> LedgerHistoryResponse:
    try:
        return referral_service.get_history(driver_id, limit)
    except ServiceError as e:
        raise_http(e)


@app.post("/drivers/{driver_id}/redeem", response_model=LedgerMutationResponse, tags=["Ledger"])
def redeem_balance(driver_id: str, request: RedeemBalanceRequest) -> LedgerMutationResponse:
    try:
        return referral_service.redeem_balance(driver_id, request.amount, request.description)
    except ServiceError as e:
        raise_http(e)


@app.get("/leaderboard", response_model=list[LeaderboardEntry], tags=["Referrals"])
def get_leaderboard(limit: Optional[int] = None) -> list[LeaderboardEntry]:
    try:
        return referral_service.get_leaderboard(limit)
    except ServiceError as e:
        raise_http(e)


@app.get("/admin/stats", response_model=AdminReferralStats, tags=["Admin"])
def get_admin_stats() -> AdminReferralStats:
    try:
        return referral_service.get_admin_stats()
    except ServiceError as e:
        raise_http(e)


@app.get("/admin/referrals", response_model=ReferralPage, tags=["Admin"])
def list_referrals(
    referral_status: Optional[ReferralStatus] = None,
    page: int = 1,
    limit: int = 20,
) -> ReferralPage:
    try:
        return referral_service.list_referrals(referral_status, page, limit)
    except ServiceError as e:
        raise_http(e)


@app.post("/admin/referrals/expire-overdue", tags=["Admin"])
def expire_overdue_referrals() -> dict:
    try:
        return {"expired": referral_service.expire_overdue()}
    except ServiceError as e:
        raise_http(e)


@app.get("/admin/referrals/{referral_id}", response_model=ReferralRecord, tags=["Admin"])
def get_referral(referral_id: UUID) -> ReferralRecord:
    try:
        return referral_service.get_referral(referral_id)
    except ServiceError as e:
        raise_http(e)


@app.post("/admin/referrals/{referral_id}/cancel", response_model=ReferralRecord, tags=["Admin"])
def cancel_referral(referral_id: UUID) -> ReferralRecord:
    try:
        return referral_service.cancel_referral(referral_id)
    except ServiceError as e:
        raise_http(e)


@app.post("/admin/referrals/{referral_id}/expire", response_model=ReferralRecord, tags=["Admin"])
def expire_referral(referral_id: UUID) -> ReferralRecord:
    try:
        return referral_service.expire_referral(referral_id)
    except ServiceError as e:
        raise_http(e)


@app.post("/admin/drivers/{driver_id}/bonus", response_model=LedgerMutationResponse,
          status_code=status.HTTP_201_CREATED, tags=["Admin"])
def award_bonus(driver_id: str, request: BonusRequest) -> LedgerMutationResponse:
    try:
        return referral_service.award_bonus(driver_id, request.amount, request.description)
    except ServiceError as e:
        raise_http(e)


@app.post("/admin/drivers/{driver_id}/expire-balance", response_model=LedgerMutationResponse, tags=["Admin"])
def expire_balance(driver_id: str, request: ExpireBalanceRequest) -> LedgerMutationResponse:
    try:
        return referral_service.expire_balance(driver_id, request.amount, request.description)
    except ServiceError as e:
        raise_http(e)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
