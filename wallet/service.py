import logging
import secrets
from decimal import ROUND_CEILING, Decimal, InvalidOperation
from typing import Optional

from .auth import generate_referral_code, hash_password, verify_password
from .config import Settings
from .errors import (
    AuthenticationRequired,
    AuthorizationDenied,
    ConflictError,
    InsufficientBalanceError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from .models import (
    ApprovalResponse,
    BalanceRequest,
    BalanceRequestCreate,
    BalanceRequestStatus,
    OtpGenerateRequest,
    OtpHistory,
    OtpResponse,
    Referral,
    ReferralCreditPolicy,
    ReferralCreditResponse,
    RegisterRequest,
    Transaction,
    TransactionType,
    User,
)
from .storage import InMemoryStorage, LedgerStore

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
DEFAULT_SERVICE_NAME = "Generic"
REFERRAL_CODE_ATTEMPTS = 5


def _parse_amount(value) -> Optional[Decimal]:
    """Parse a user-supplied number, or None when it is not a finite number."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


def _to_money(value) -> Optional[Decimal]:
    amount = _parse_amount(value)
    return amount.quantize(CENT) if amount is not None else None


def generate_otp_code() -> str:
    return str(100000 + secrets.randbelow(900000))


class WalletService:
    def __init__(self, storage: Optional[LedgerStore] = None, settings: Optional[Settings] = None):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or Settings()

    # Accounts

    def register(self, request: RegisterRequest) -> User:
        username = (request.username or "").strip()
        if not username or not request.password:
            raise ValidationError("Username and password are required")
        if self.storage.get_user_by_username(username):
            raise ConflictError("Username already exists")

        referral_code = (request.referral_code or "").strip() or self._new_referral_code(username)
        referred_by = (request.referred_by or "").strip() or None
        referrer = self._resolve_referrer(referred_by) if referred_by else None

        with self.storage.atomic():
            user = self.storage.create_user(
                username=username,
                password_hash=hash_password(request.password),
                referral_code=referral_code,
                referred_by=referred_by,
                is_admin=False,
            )
            if referrer is not None:
                referral = self.storage.create_referral(referrer_id=referrer.id, referred_id=user.id)
                if self.settings.REFERRAL_CREDIT_POLICY == ReferralCreditPolicy.SIGNUP:
                    self._credit_referral(referral.id)

        if referred_by and referrer is None:
            logger.info("User %s registered with unknown referrer %r", username, referred_by)
        logger.info("Registered user id=%s username=%s", user.id, username)
        return user

    def authenticate(self, username: str, password: str) -> User:
        if not username or not password:
            raise ValidationError("Username and password are required")
        user = self.storage.get_user_by_username(username)
        if user is None or not verify_password(user.password_hash, password):
            logger.warning("Failed login for username=%s", username)
            raise AuthenticationRequired("Invalid credentials")
        logger.info("User id=%s logged in", user.id)
        return user

    def ensure_admin(self, username: str, password: str) -> User:
        existing = self.storage.get_user_by_username(username)
        if existing is not None:
            if not existing.is_admin:
                raise ConflictError(f"Username {username} is taken by a non-admin account")
            return existing

        admin = self.storage.create_user(
            username=username,
            password_hash=hash_password(password),
            referral_code=self._new_referral_code(username),
            is_admin=True,
        )
        logger.info("Bootstrapped admin account id=%s username=%s", admin.id, username)
        return admin

    def seed_demo_user(self) -> User:
        existing = self.storage.get_user_by_username("demo")
        if existing is not None:
            return existing
        with self.storage.atomic():
            demo = self.storage.create_user(
                username="demo",
                password_hash=hash_password("password"),
                referral_code="DEMO2023",
            )
            demo = self.storage.adjust_balance(demo.id, Decimal("100"))
            self.storage.append_transaction(
                user_id=demo.id, amount=Decimal("100"), type=TransactionType.ADD, note="Initial balance"
            )
        return demo

    def get_user(self, user_id: int) -> User:
        user = self.storage.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    # Ledger

    def list_transactions(self, user_id: int) -> list[Transaction]:
        return self.storage.list_transactions(user_id)

    def ledger_total(self, user_id: int) -> Decimal:
        return sum((t.amount for t in self.storage.list_transactions(user_id)), Decimal("0"))

    # Balance requests

    def submit_balance_request(self, user_id: int, request: BalanceRequestCreate) -> BalanceRequest:
        amount = _parse_amount(request.amount)
        if amount is None or amount <= 0:
            raise ValidationError("Valid amount is required")
        if amount != amount.quantize(CENT):
            raise ValidationError("Amount cannot have more than two decimal places")
        amount = amount.quantize(CENT)
        utr_number = request.utr_number.strip() if isinstance(request.utr_number, str) else ""
        if not utr_number:
            raise ValidationError("Valid UTR number is required")

        self.get_user(user_id)
        balance_request = self.storage.create_balance_request(
            user_id=user_id, amount=amount, utr_number=utr_number
        )
        logger.info(
            "Balance request #%s submitted by user id=%s amount=%s",
            balance_request.id, user_id, amount,
        )
        return balance_request

    def list_balance_requests(self, user_id: int) -> list[BalanceRequest]:
        return self.storage.list_balance_requests(user_id)

    def list_all_balance_requests(
        self, admin: User, status: Optional[BalanceRequestStatus] = None
    ) -> list[BalanceRequest]:
        self._require_admin(admin)
        return self.storage.list_all_balance_requests(status)

    def approve_balance_request(self, request_id: int, admin: User) -> ApprovalResponse:
        self._require_admin(admin)

        with self.storage.atomic():
            approved = self.storage.set_balance_request_status(
                request_id, BalanceRequestStatus.APPROVED, admin.id
            )
            if approved is None:
                self._raise_not_pending(request_id)

            user = self.storage.adjust_balance(approved.user_id, approved.amount)
            if user is None:
                raise NotFoundError(f"User {approved.user_id} not found")
            self.storage.append_transaction(
                user_id=user.id,
                amount=approved.amount,
                type=TransactionType.ADD,
                note=f"Balance request #{request_id} approved",
            )

            if (
                self.settings.REFERRAL_CREDIT_POLICY == ReferralCreditPolicy.FIRST_TOPUP
                and self.storage.count_approved_balance_requests(user.id) == 1
            ):
                referral = self.storage.get_referral_for_referred(user.id)
                if referral is not None and not referral.credited:
                    self._credit_referral(referral.id)

        logger.info(
            "Balance request #%s approved by admin id=%s; user id=%s credited %s",
            request_id, admin.id, user.id, approved.amount,
        )
        return ApprovalResponse(request=approved, user=user.public())

    def reject_balance_request(self, request_id: int, admin: User) -> BalanceRequest:
        self._require_admin(admin)

        with self.storage.atomic():
            rejected = self.storage.set_balance_request_status(
                request_id, BalanceRequestStatus.REJECTED, admin.id
            )
            if rejected is None:
                self._raise_not_pending(request_id)

        logger.info("Balance request #%s rejected by admin id=%s", request_id, admin.id)
        return rejected

    # OTP

    def generate_otp(self, user_id: int, request: OtpGenerateRequest) -> OtpResponse:
        cost = self._resolve_cost(request.price)
        service_name = request.service_name or DEFAULT_SERVICE_NAME

        user = self.get_user(user_id)
        if user.balance < cost:
            raise InsufficientBalanceError("Insufficient balance")

        otp = generate_otp_code()
        with self.storage.atomic():
            user = self.storage.adjust_balance(user_id, -cost)
            if user is None:
                raise NotFoundError(f"User {user_id} not found")
            self.storage.append_transaction(
                user_id=user_id,
                amount=-cost,
                type=TransactionType.DEDUCT,
                note=f"OTP Generated for {service_name}",
            )
            self.storage.append_otp_history(
                user_id=user_id,
                otp=otp,
                service_id=request.service_id,
                service_name=service_name,
            )

        logger.info("OTP issued to user id=%s for %s, cost=%s", user_id, service_name, cost)
        return OtpResponse(otp=otp, cost=cost, service=service_name, balance=user.balance)

    def list_otp_history(self, user_id: int) -> list[OtpHistory]:
        return self.storage.list_otp_history(user_id)

    def clear_otp_history(self, user_id: int) -> int:
        deleted = self.storage.clear_otp_history(user_id)
        logger.info("Cleared %s OTP history rows for user id=%s", deleted, user_id)
        return deleted

    # Referrals

    def list_referrals(self, user_id: int) -> list[Referral]:
        return self.storage.list_referrals(user_id)

    def credit_referral(self, referral_id: int, admin: User) -> ReferralCreditResponse:
        self._require_admin(admin)
        referral, referrer = self._credit_referral(referral_id)
        return ReferralCreditResponse(referral=referral, user=referrer.public())

    def _credit_referral(self, referral_id: int) -> tuple[Referral, User]:
        bonus = _to_money(self.settings.REFERRAL_BONUS)
        with self.storage.atomic():
            referral = self.storage.mark_referral_credited(referral_id)
            if referral is None:
                if self.storage.get_referral(referral_id) is None:
                    raise NotFoundError(f"Referral {referral_id} not found")
                raise InvalidStateError(f"Referral {referral_id} has already been credited")

            referrer = self.storage.adjust_balance(referral.referrer_id, bonus)
            if referrer is None:
                raise NotFoundError(f"User {referral.referrer_id} not found")
            self.storage.append_transaction(
                user_id=referrer.id,
                amount=bonus,
                type=TransactionType.ADD,
                note=f"Referral bonus for user #{referral.referred_id}",
            )

        logger.info("Referral %s credited: referrer id=%s +%s", referral.id, referrer.id, bonus)
        return referral, referrer

    # Helpers

    def _resolve_cost(self, price) -> Decimal:
        cost = _parse_amount(price)
        if cost is None or cost <= 0:
            return _to_money(self.settings.DEFAULT_OTP_COST)
        # Sub-cent prices round up so a positive price is never free.
        return cost.quantize(CENT, rounding=ROUND_CEILING)

    def _resolve_referrer(self, referred_by: str) -> Optional[User]:
        return (
            self.storage.get_user_by_referral_code(referred_by)
            or self.storage.get_user_by_referral_code(referred_by.upper())
            or self.storage.get_user_by_username(referred_by)
        )

    def _new_referral_code(self, username: str) -> str:
        for _ in range(REFERRAL_CODE_ATTEMPTS):
            code = generate_referral_code(username)
            if self.storage.get_user_by_referral_code(code) is None:
                return code
        raise ConflictError("Could not allocate a unique referral code")

    def _raise_not_pending(self, request_id: int):
        existing = self.storage.get_balance_request(request_id)
        if existing is None:
            raise NotFoundError(f"Balance request {request_id} not found")
        logger.warning(
            "Balance request #%s is already %s; disposition refused", request_id, existing.status.value
        )
        raise InvalidStateError(f"Balance request #{request_id} has already been processed")

    @staticmethod
    def _require_admin(user: User) -> None:
        if not user.is_admin:
            raise AuthorizationDenied("Admin access required")
