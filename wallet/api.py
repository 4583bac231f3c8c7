import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from .auth import current_user, get_service, login_session, logout_session, require_admin
from .config import DEFAULT_SESSION_SECRET, Settings
from .errors import (
    AuthenticationRequired,
    AuthorizationDenied,
    ConflictError,
    InsufficientBalanceError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from .models import (
    ApprovalResponse,
    BalanceRequest,
    BalanceRequestCreate,
    BalanceRequestStatus,
    LoginRequest,
    MessageResponse,
    OtpGenerateRequest,
    OtpHistory,
    OtpResponse,
    Referral,
    ReferralCreditResponse,
    RegisterRequest,
    Transaction,
    User,
    UserPublic,
)
from .service import WalletService
from .sql_storage import SqlStorage
from .storage import InMemoryStorage, LedgerStore

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health", tags=["System"])
def health_check(service: WalletService = Depends(get_service)):
    service.storage.ping()
    return {"status": "healthy", "service": "otp-wallet", "storage": service.storage.name}


# Auth

@router.post("/api/auth/register", response_model=UserPublic, status_code=status.HTTP_201_CREATED, tags=["Auth"])
def register(body: RegisterRequest, request: Request, service: WalletService = Depends(get_service)) -> UserPublic:
    try:
        user = service.register(body)
    except (ValidationError, ConflictError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    login_session(request, user)
    return user.public()


@router.post("/api/auth/login", response_model=UserPublic, tags=["Auth"])
def login(body: LoginRequest, request: Request, service: WalletService = Depends(get_service)) -> UserPublic:
    try:
        user = service.authenticate(body.username, body.password)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except AuthenticationRequired as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    login_session(request, user)
    return user.public()


@router.post("/api/auth/logout", response_model=MessageResponse, tags=["Auth"])
def logout(request: Request, user: User = Depends(current_user)) -> MessageResponse:
    logout_session(request)
    logger.info("User id=%s logged out", user.id)
    return MessageResponse(message="Logged out")


@router.get("/api/user", response_model=UserPublic, tags=["Auth"])
def get_current_user(user: User = Depends(current_user)) -> UserPublic:
    return user.public()


# Wallet

@router.get("/api/wallet/transactions", response_model=list[Transaction], tags=["Wallet"])
def list_transactions(
    user: User = Depends(current_user), service: WalletService = Depends(get_service)
) -> list[Transaction]:
    return service.list_transactions(user.id)


@router.post(
    "/api/wallet/balance-request",
    response_model=BalanceRequest,
    status_code=status.HTTP_201_CREATED,
    tags=["Wallet"],
)
def submit_balance_request(
    body: BalanceRequestCreate,
    user: User = Depends(current_user),
    service: WalletService = Depends(get_service),
) -> BalanceRequest:
    try:
        return service.submit_balance_request(user.id, body)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/api/wallet/balance-requests", response_model=list[BalanceRequest], tags=["Wallet"])
def list_my_balance_requests(
    user: User = Depends(current_user), service: WalletService = Depends(get_service)
) -> list[BalanceRequest]:
    return service.list_balance_requests(user.id)


# Admin

@router.get("/api/admin/balance-requests", response_model=list[BalanceRequest], tags=["Admin"])
def list_all_balance_requests(
    status_filter: Optional[BalanceRequestStatus] = Query(default=None, alias="status"),
    admin: User = Depends(require_admin),
    service: WalletService = Depends(get_service),
) -> list[BalanceRequest]:
    return service.list_all_balance_requests(admin, status_filter)


@router.post("/api/admin/balance-requests/{request_id}/approve", response_model=ApprovalResponse, tags=["Admin"])
def approve_balance_request(
    request_id: int,
    admin: User = Depends(require_admin),
    service: WalletService = Depends(get_service),
) -> ApprovalResponse:
    try:
        return service.approve_balance_request(request_id, admin)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ConflictError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except AuthorizationDenied as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))


@router.post("/api/admin/balance-requests/{request_id}/reject", response_model=BalanceRequest, tags=["Admin"])
def reject_balance_request(
    request_id: int,
    admin: User = Depends(require_admin),
    service: WalletService = Depends(get_service),
) -> BalanceRequest:
    try:
        return service.reject_balance_request(request_id, admin)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ConflictError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except AuthorizationDenied as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))


@router.post("/api/admin/referrals/{referral_id}/credit", response_model=ReferralCreditResponse, tags=["Admin"])
def credit_referral(
    referral_id: int,
    admin: User = Depends(require_admin),
    service: WalletService = Depends(get_service),
) -> ReferralCreditResponse:
    try:
        return service.credit_referral(referral_id, admin)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ConflictError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except AuthorizationDenied as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))


# OTP

@router.post("/api/otp/generate", response_model=OtpResponse, tags=["OTP"])
def generate_otp(
    body: OtpGenerateRequest,
    user: User = Depends(current_user),
    service: WalletService = Depends(get_service),
) -> OtpResponse:
    try:
        return service.generate_otp(user.id, body)
    except InsufficientBalanceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("/api/otp/history", response_model=list[OtpHistory], tags=["OTP"])
def list_otp_history(
    user: User = Depends(current_user), service: WalletService = Depends(get_service)
) -> list[OtpHistory]:
    return service.list_otp_history(user.id)


@router.delete("/api/otp/history", response_model=MessageResponse, tags=["OTP"])
def clear_otp_history(
    user: User = Depends(current_user), service: WalletService = Depends(get_service)
) -> MessageResponse:
    deleted = service.clear_otp_history(user.id)
    return MessageResponse(message="OTP history cleared", deleted=deleted)


# Referrals

@router.get("/api/referrals", response_model=list[Referral], tags=["Referrals"])
def list_referrals(
    user: User = Depends(current_user), service: WalletService = Depends(get_service)
) -> list[Referral]:
    return service.list_referrals(user.id)


async def storage_error_handler(request: Request, exc: StorageError):
    logger.error("Storage error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


async def request_validation_handler(request: Request, exc: RequestValidationError):
    # Malformed bodies and path parameters answer 400 like service-level ValidationError.
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": jsonable_encoder(exc.errors())},
    )


def build_storage(settings: Settings) -> LedgerStore:
    if settings.database_url:
        return SqlStorage(settings.database_url)
    logger.warning("DATABASE_URL not set; using the in-memory ledger store")
    return InMemoryStorage()


def create_app(service: Optional[WalletService] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or (service.settings if service is not None else Settings())
    logging.basicConfig(level=settings.LOG_LEVEL.upper())
    if settings.SESSION_SECRET == DEFAULT_SESSION_SECRET:
        logger.warning("SESSION_SECRET is not set; session cookies are signed with the built-in default")

    if service is None:
        service = WalletService(build_storage(settings), settings)

    if settings.ADMIN_USERNAME and settings.ADMIN_PASSWORD:
        service.ensure_admin(settings.ADMIN_USERNAME, settings.ADMIN_PASSWORD)
    if settings.SEED_DEMO_USER:
        service.seed_demo_user()

    app = FastAPI(
        title="OTP Wallet API",
        description="Prepaid wallet with admin-approved top-ups, OTP issuance and referrals",
        version="1.0.0",
    )
    app.state.wallet_service = service

    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.SESSION_SECRET,
        max_age=settings.SESSION_MAX_AGE,
        https_only=settings.SESSION_HTTPS_ONLY,
        same_site="lax",
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(StorageError, storage_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(router)
    return app


app = create_app()
