import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterator, Optional

from .errors import ConflictError, InsufficientBalanceError
from .models import (
    BalanceRequest,
    BalanceRequestStatus,
    OtpHistory,
    Referral,
    Transaction,
    TransactionType,
    User,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _newest_first(records: list) -> list:
    return sorted(records, key=lambda r: (r.timestamp, r.id), reverse=True)


class LedgerStore(ABC):
    """Persistence contract shared by the in-memory and SQL backends.

    Writes issued inside one ``atomic()`` block commit together or not at all.
    ``adjust_balance`` never lets a balance drop below zero and
    ``set_balance_request_status`` only moves a request out of ``pending``.
    """

    name = "abstract"

    @abstractmethod
    def atomic(self):
        ...

    @abstractmethod
    def ping(self) -> bool:
        ...

    # Users
    @abstractmethod
    def get_user(self, user_id: int) -> Optional[User]:
        ...

    @abstractmethod
    def get_user_by_username(self, username: str) -> Optional[User]:
        ...

    @abstractmethod
    def get_user_by_referral_code(self, referral_code: str) -> Optional[User]:
        ...

    @abstractmethod
    def create_user(
        self,
        *,
        username: str,
        password_hash: str,
        referral_code: str,
        referred_by: Optional[str] = None,
        is_admin: bool = False,
    ) -> User:
        ...

    @abstractmethod
    def adjust_balance(self, user_id: int, delta: Decimal) -> Optional[User]:
        ...

    # Transactions
    @abstractmethod
    def append_transaction(
        self, *, user_id: int, amount: Decimal, type: TransactionType, note: str
    ) -> Transaction:
        ...

    @abstractmethod
    def list_transactions(self, user_id: int) -> list[Transaction]:
        ...

    # OTP history
    @abstractmethod
    def append_otp_history(
        self,
        *,
        user_id: int,
        otp: str,
        service_id: Optional[str] = None,
        service_name: Optional[str] = None,
    ) -> OtpHistory:
        ...

    @abstractmethod
    def list_otp_history(self, user_id: int) -> list[OtpHistory]:
        ...

    @abstractmethod
    def clear_otp_history(self, user_id: int) -> int:
        ...

    # Referrals
    @abstractmethod
    def create_referral(self, *, referrer_id: int, referred_id: int) -> Referral:
        ...

    @abstractmethod
    def get_referral(self, referral_id: int) -> Optional[Referral]:
        ...

    @abstractmethod
    def get_referral_for_referred(self, referred_id: int) -> Optional[Referral]:
        ...

    @abstractmethod
    def list_referrals(self, referrer_id: int) -> list[Referral]:
        ...

    @abstractmethod
    def mark_referral_credited(self, referral_id: int) -> Optional[Referral]:
        ...

    # Balance requests
    @abstractmethod
    def create_balance_request(self, *, user_id: int, amount: Decimal, utr_number: str) -> BalanceRequest:
        ...

    @abstractmethod
    def get_balance_request(self, request_id: int) -> Optional[BalanceRequest]:
        ...

    @abstractmethod
    def list_balance_requests(self, user_id: int) -> list[BalanceRequest]:
        ...

    @abstractmethod
    def list_all_balance_requests(
        self, status: Optional[BalanceRequestStatus] = None
    ) -> list[BalanceRequest]:
        ...

    @abstractmethod
    def count_approved_balance_requests(self, user_id: int) -> int:
        ...

    @abstractmethod
    def set_balance_request_status(
        self, request_id: int, status: BalanceRequestStatus, admin_id: int
    ) -> Optional[BalanceRequest]:
        ...


class InMemoryStorage(LedgerStore):
    name = "memory"

    _TABLES = ("users", "transactions", "otp_history", "referrals", "balance_requests")

    def __init__(self):
        self.users: dict[int, User] = {}
        self.transactions: dict[int, Transaction] = {}
        self.otp_history: dict[int, OtpHistory] = {}
        self.referrals: dict[int, Referral] = {}
        self.balance_requests: dict[int, BalanceRequest] = {}
        self._counters: dict[str, int] = {table: 0 for table in self._TABLES}
        self._lock = threading.RLock()
        self._depth = 0

    def _next_id(self, table: str) -> int:
        self._counters[table] += 1
        return self._counters[table]

    def _snapshot(self) -> dict:
        # Records are replaced, never mutated, so shallow copies are enough.
        state = {table: dict(getattr(self, table)) for table in self._TABLES}
        state["_counters"] = dict(self._counters)
        return state

    def _restore(self, state: dict) -> None:
        for table in self._TABLES:
            setattr(self, table, state[table])
        self._counters = state["_counters"]

    @contextmanager
    def atomic(self) -> Iterator["InMemoryStorage"]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            state = self._snapshot()
            self._depth = 1
            try:
                yield self
            except BaseException:
                self._restore(state)
                raise
            finally:
                self._depth = 0

    def ping(self) -> bool:
        return True

    def get_user(self, user_id: int) -> Optional[User]:
        return self.users.get(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.username == username), None)

    def get_user_by_referral_code(self, referral_code: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.referral_code == referral_code), None)

    def create_user(
        self,
        *,
        username: str,
        password_hash: str,
        referral_code: str,
        referred_by: Optional[str] = None,
        is_admin: bool = False,
    ) -> User:
        with self._lock:
            if self.get_user_by_username(username):
                raise ConflictError(f"Username {username} already exists")
            if self.get_user_by_referral_code(referral_code):
                raise ConflictError(f"Referral code {referral_code} already in use")

            user = User(
                id=self._next_id("users"),
                username=username,
                password_hash=password_hash,
                balance=Decimal("0"),
                referral_code=referral_code,
                referred_by=referred_by,
                is_admin=is_admin,
                created_at=_utcnow(),
            )
            self.users[user.id] = user
            return user

    def adjust_balance(self, user_id: int, delta: Decimal) -> Optional[User]:
        with self._lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            new_balance = user.balance + delta
            if new_balance < 0:
                raise InsufficientBalanceError(
                    f"Insufficient balance: {user.balance} available, {-delta} required"
                )
            updated = user.model_copy(update={"balance": new_balance})
            self.users[user_id] = updated
            return updated

    def append_transaction(
        self, *, user_id: int, amount: Decimal, type: TransactionType, note: str
    ) -> Transaction:
        with self._lock:
            record = Transaction(
                id=self._next_id("transactions"),
                user_id=user_id,
                amount=amount,
                type=type,
                note=note,
                timestamp=_utcnow(),
            )
            self.transactions[record.id] = record
            return record

    def list_transactions(self, user_id: int) -> list[Transaction]:
        with self._lock:
            return _newest_first([t for t in self.transactions.values() if t.user_id == user_id])

    def append_otp_history(
        self,
        *,
        user_id: int,
        otp: str,
        service_id: Optional[str] = None,
        service_name: Optional[str] = None,
    ) -> OtpHistory:
        with self._lock:
            record = OtpHistory(
                id=self._next_id("otp_history"),
                user_id=user_id,
                otp=otp,
                service_id=service_id,
                service_name=service_name,
                timestamp=_utcnow(),
            )
            self.otp_history[record.id] = record
            return record

    def list_otp_history(self, user_id: int) -> list[OtpHistory]:
        with self._lock:
            return _newest_first([h for h in self.otp_history.values() if h.user_id == user_id])

    def clear_otp_history(self, user_id: int) -> int:
        with self._lock:
            doomed = [hid for hid, h in self.otp_history.items() if h.user_id == user_id]
            for hid in doomed:
                del self.otp_history[hid]
            return len(doomed)

    def create_referral(self, *, referrer_id: int, referred_id: int) -> Referral:
        with self._lock:
            record = Referral(
                id=self._next_id("referrals"),
                referrer_id=referrer_id,
                referred_id=referred_id,
                timestamp=_utcnow(),
                credited=False,
            )
            self.referrals[record.id] = record
            return record

    def get_referral(self, referral_id: int) -> Optional[Referral]:
        return self.referrals.get(referral_id)

    def get_referral_for_referred(self, referred_id: int) -> Optional[Referral]:
        return next((r for r in self.referrals.values() if r.referred_id == referred_id), None)

    def list_referrals(self, referrer_id: int) -> list[Referral]:
        with self._lock:
            return _newest_first([r for r in self.referrals.values() if r.referrer_id == referrer_id])

    def mark_referral_credited(self, referral_id: int) -> Optional[Referral]:
        with self._lock:
            referral = self.referrals.get(referral_id)
            if referral is None or referral.credited:
                return None
            updated = referral.model_copy(update={"credited": True})
            self.referrals[referral_id] = updated
            return updated

    def create_balance_request(self, *, user_id: int, amount: Decimal, utr_number: str) -> BalanceRequest:
        with self._lock:
            record = BalanceRequest(
                id=self._next_id("balance_requests"),
                user_id=user_id,
                amount=amount,
                utr_number=utr_number,
                status=BalanceRequestStatus.PENDING,
                timestamp=_utcnow(),
                approved_by=None,
                approved_at=None,
            )
            self.balance_requests[record.id] = record
            return record

    def get_balance_request(self, request_id: int) -> Optional[BalanceRequest]:
        return self.balance_requests.get(request_id)

    def list_balance_requests(self, user_id: int) -> list[BalanceRequest]:
        with self._lock:
            return _newest_first([r for r in self.balance_requests.values() if r.user_id == user_id])

    def list_all_balance_requests(
        self, status: Optional[BalanceRequestStatus] = None
    ) -> list[BalanceRequest]:
        with self._lock:
            requests = list(self.balance_requests.values())
            if status is not None:
                requests = [r for r in requests if r.status == status]
            return _newest_first(requests)

    def count_approved_balance_requests(self, user_id: int) -> int:
        with self._lock:
            return sum(
                1 for r in self.balance_requests.values()
                if r.user_id == user_id and r.status == BalanceRequestStatus.APPROVED
            )

    def set_balance_request_status(
        self, request_id: int, status: BalanceRequestStatus, admin_id: int
    ) -> Optional[BalanceRequest]:
        with self._lock:
            request = self.balance_requests.get(request_id)
            if request is None or not request.is_pending():
                return None
            updated = request.model_copy(update={
                "status": status,
                "approved_by": admin_id,
                "approved_at": _utcnow() if status != BalanceRequestStatus.PENDING else None,
            })
            self.balance_requests[request_id] = updated
            return updated
