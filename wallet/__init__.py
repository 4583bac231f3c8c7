"""
Prepaid OTP Wallet

This package provides:
- A ledger store with in-memory and SQL backends behind one interface
- Balance requests: pending → approved / rejected, credited atomically on approval
- Balance-gated OTP issuance that debits the wallet
- Referral tracking with a configurable crediting policy
- A FastAPI surface with session-cookie authentication
"""

from .models import (
    BalanceRequest,
    BalanceRequestStatus,
    OtpHistory,
    Referral,
    ReferralCreditPolicy,
    Transaction,
    TransactionType,
    User,
)
from .service import WalletService
from .storage import InMemoryStorage, LedgerStore

__all__ = [
    "BalanceRequest",
    "BalanceRequestStatus",
    "OtpHistory",
    "Referral",
    "ReferralCreditPolicy",
    "Transaction",
    "TransactionType",
    "User",
    "WalletService",
    "InMemoryStorage",
    "LedgerStore",
]
