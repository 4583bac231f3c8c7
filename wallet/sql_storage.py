import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterator, Optional

from sqlalchemy import delete, desc, func, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .database import (
    BalanceRequestRow,
    OtpHistoryRow,
    ReferralRow,
    TransactionRow,
    UserRow,
    init_db,
    make_engine,
    make_sessionmaker,
)
from .errors import ConflictError, InsufficientBalanceError, StorageError, WalletServiceError
from .models import (
    BalanceRequest,
    BalanceRequestStatus,
    OtpHistory,
    Referral,
    Transaction,
    TransactionType,
    User,
)
from .storage import LedgerStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_decimal(x) -> Decimal:
    if isinstance(x, Decimal):
        return x
    return Decimal(str(x))


class SqlStorage(LedgerStore):
    """Relational ledger store.

    Each public call runs in its own session unless an ``atomic()`` block is
    open on the current thread, in which case it joins that block's session.
    """

    name = "sql"

    def __init__(self, database_url: str = "", *, engine=None, create_schema: bool = True):
        self.engine = engine if engine is not None else make_engine(database_url)
        self._sessionmaker = make_sessionmaker(self.engine)
        self._local = threading.local()
        if create_schema:
            init_db(self.engine)

    @contextmanager
    def atomic(self) -> Iterator["SqlStorage"]:
        if getattr(self._local, "session", None) is not None:
            yield self
            return

        db = self._sessionmaker()
        self._local.session = db
        try:
            yield self
            db.commit()
        except WalletServiceError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("Ledger unit of work failed")
            raise StorageError(f"Storage failure: {e}") from e
        except BaseException:
            db.rollback()
            raise
        finally:
            self._local.session = None
            db.close()

    @property
    def _db(self) -> Session:
        return self._local.session

    def ping(self) -> bool:
        with self.atomic():
            self._db.execute(text("SELECT 1"))
        return True

    # Users

    def get_user(self, user_id: int) -> Optional[User]:
        with self.atomic():
            row = self._db.get(UserRow, user_id)
            return User.model_validate(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self.atomic():
            row = self._db.scalars(select(UserRow).where(UserRow.username == username)).first()
            return User.model_validate(row) if row else None

    def get_user_by_referral_code(self, referral_code: str) -> Optional[User]:
        with self.atomic():
            row = self._db.scalars(select(UserRow).where(UserRow.referral_code == referral_code)).first()
            return User.model_validate(row) if row else None

    def create_user(
        self,
        *,
        username: str,
        password_hash: str,
        referral_code: str,
        referred_by: Optional[str] = None,
        is_admin: bool = False,
    ) -> User:
        with self.atomic():
            row = UserRow(
                username=username,
                password_hash=password_hash,
                balance=Decimal("0"),
                referral_code=referral_code,
                referred_by=referred_by,
                is_admin=is_admin,
                created_at=_utcnow(),
            )
            self._db.add(row)
            try:
                self._db.flush()
            except IntegrityError as e:
                raise ConflictError(f"Username {username} or referral code {referral_code} already exists") from e
            return User.model_validate(row)

    def adjust_balance(self, user_id: int, delta: Decimal) -> Optional[User]:
        delta = _to_decimal(delta)
        with self.atomic():
            result = self._db.execute(
                update(UserRow)
                .where(UserRow.id == user_id, UserRow.balance + delta >= 0)
                .values(balance=UserRow.balance + delta)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                current = self._db.scalar(select(UserRow.balance).where(UserRow.id == user_id))
                if current is None:
                    return None
                raise InsufficientBalanceError(
                    f"Insufficient balance: {_to_decimal(current)} available, {-delta} required"
                )

            row = self._db.get(UserRow, user_id, populate_existing=True)
            return User.model_validate(row)

    # Transactions

    def append_transaction(
        self, *, user_id: int, amount: Decimal, type: TransactionType, note: str
    ) -> Transaction:
        with self.atomic():
            row = TransactionRow(
                user_id=user_id,
                amount=_to_decimal(amount),
                type=TransactionType(type).value,
                note=note,
                timestamp=_utcnow(),
            )
            self._db.add(row)
            self._db.flush()
            return Transaction.model_validate(row)

    def list_transactions(self, user_id: int) -> list[Transaction]:
        with self.atomic():
            rows = self._db.scalars(
                select(TransactionRow)
                .where(TransactionRow.user_id == user_id)
                .order_by(desc(TransactionRow.timestamp), desc(TransactionRow.id))
            ).all()
            return [Transaction.model_validate(r) for r in rows]

    # OTP history

    def append_otp_history(
        self,
        *,
        user_id: int,
        otp: str,
        service_id: Optional[str] = None,
        service_name: Optional[str] = None,
    ) -> OtpHistory:
        with self.atomic():
            row = OtpHistoryRow(
                user_id=user_id,
                otp=otp,
                service_id=service_id,
                service_name=service_name,
                timestamp=_utcnow(),
            )
            self._db.add(row)
            self._db.flush()
            return OtpHistory.model_validate(row)

    def list_otp_history(self, user_id: int) -> list[OtpHistory]:
        with self.atomic():
            rows = self._db.scalars(
                select(OtpHistoryRow)
                .where(OtpHistoryRow.user_id == user_id)
                .order_by(desc(OtpHistoryRow.timestamp), desc(OtpHistoryRow.id))
            ).all()
            return [OtpHistory.model_validate(r) for r in rows]

    def clear_otp_history(self, user_id: int) -> int:
        with self.atomic():
            result = self._db.execute(
                delete(OtpHistoryRow)
                .where(OtpHistoryRow.user_id == user_id)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

    # Referrals

    def create_referral(self, *, referrer_id: int, referred_id: int) -> Referral:
        with self.atomic():
            row = ReferralRow(
                referrer_id=referrer_id,
                referred_id=referred_id,
                timestamp=_utcnow(),
                credited=False,
            )
            self._db.add(row)
            self._db.flush()
            return Referral.model_validate(row)

    def get_referral(self, referral_id: int) -> Optional[Referral]:
        with self.atomic():
            row = self._db.get(ReferralRow, referral_id)
            return Referral.model_validate(row) if row else None

    def get_referral_for_referred(self, referred_id: int) -> Optional[Referral]:
        with self.atomic():
            row = self._db.scalars(
                select(ReferralRow).where(ReferralRow.referred_id == referred_id).order_by(ReferralRow.id)
            ).first()
            return Referral.model_validate(row) if row else None

    def list_referrals(self, referrer_id: int) -> list[Referral]:
        with self.atomic():
            rows = self._db.scalars(
                select(ReferralRow)
                .where(ReferralRow.referrer_id == referrer_id)
                .order_by(desc(ReferralRow.timestamp), desc(ReferralRow.id))
            ).all()
            return [Referral.model_validate(r) for r in rows]

    def mark_referral_credited(self, referral_id: int) -> Optional[Referral]:
        with self.atomic():
            result = self._db.execute(
                update(ReferralRow)
                .where(ReferralRow.id == referral_id, ReferralRow.credited.is_(False))
                .values(credited=True)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None
            row = self._db.get(ReferralRow, referral_id, populate_existing=True)
            return Referral.model_validate(row)

    # Balance requests

    def create_balance_request(self, *, user_id: int, amount: Decimal, utr_number: str) -> BalanceRequest:
        with self.atomic():
            row = BalanceRequestRow(
                user_id=user_id,
                amount=_to_decimal(amount),
                utr_number=utr_number,
                status=BalanceRequestStatus.PENDING.value,
                timestamp=_utcnow(),
                approved_by=None,
                approved_at=None,
            )
            self._db.add(row)
            self._db.flush()
            return BalanceRequest.model_validate(row)

    def get_balance_request(self, request_id: int) -> Optional[BalanceRequest]:
        with self.atomic():
            row = self._db.get(BalanceRequestRow, request_id)
            return BalanceRequest.model_validate(row) if row else None

    def list_balance_requests(self, user_id: int) -> list[BalanceRequest]:
        with self.atomic():
            rows = self._db.scalars(
                select(BalanceRequestRow)
                .where(BalanceRequestRow.user_id == user_id)
                .order_by(desc(BalanceRequestRow.timestamp), desc(BalanceRequestRow.id))
            ).all()
            return [BalanceRequest.model_validate(r) for r in rows]

    def list_all_balance_requests(
        self, status: Optional[BalanceRequestStatus] = None
    ) -> list[BalanceRequest]:
        with self.atomic():
            q = select(BalanceRequestRow).order_by(desc(BalanceRequestRow.timestamp), desc(BalanceRequestRow.id))
            if status is not None:
                q = q.where(BalanceRequestRow.status == BalanceRequestStatus(status).value)
            return [BalanceRequest.model_validate(r) for r in self._db.scalars(q).all()]

    def count_approved_balance_requests(self, user_id: int) -> int:
        with self.atomic():
            return self._db.scalar(
                select(func.count(BalanceRequestRow.id)).where(
                    BalanceRequestRow.user_id == user_id,
                    BalanceRequestRow.status == BalanceRequestStatus.APPROVED.value,
                )
            ) or 0

    def set_balance_request_status(
        self, request_id: int, status: BalanceRequestStatus, admin_id: int
    ) -> Optional[BalanceRequest]:
        status = BalanceRequestStatus(status)
        with self.atomic():
            result = self._db.execute(
                update(BalanceRequestRow)
                .where(
                    BalanceRequestRow.id == request_id,
                    BalanceRequestRow.status == BalanceRequestStatus.PENDING.value,
                )
                .values(
                    status=status.value,
                    approved_by=admin_id,
                    approved_at=_utcnow() if status != BalanceRequestStatus.PENDING else None,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None
            row = self._db.get(BalanceRequestRow, request_id, populate_existing=True)
            return BalanceRequest.model_validate(row)
