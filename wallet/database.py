import logging

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    create_engine,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import func

logger = logging.getLogger(__name__)

Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(64), nullable=False, unique=True)
    password_hash = Column(String(255), nullable=False)
    balance = Column(Numeric(12, 2), nullable=False, default=0)
    referral_code = Column(String(32), nullable=False, unique=True)
    referred_by = Column(String(64), nullable=True)
    is_admin = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=True)


class TransactionRow(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    type = Column(String(16), nullable=False)  # add / deduct
    note = Column(Text, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_transactions_user_id", "user_id"),
    )


class OtpHistoryRow(Base):
    __tablename__ = "otp_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    otp = Column(String(16), nullable=False)
    service_id = Column(String(64), nullable=True)
    service_name = Column(String(128), nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_otp_history_user_id", "user_id"),
    )


class ReferralRow(Base):
    __tablename__ = "referrals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    referrer_id = Column(Integer, nullable=False)
    referred_id = Column(Integer, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    credited = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_referrals_referrer_id", "referrer_id"),
        Index("ix_referrals_referred_id", "referred_id"),
    )


class BalanceRequestRow(Base):
    __tablename__ = "balance_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    utr_number = Column(String(64), nullable=False)

    # pending / approved / rejected
    status = Column(String(16), nullable=False, default="pending")

    timestamp = Column(DateTime(timezone=True), nullable=False)
    approved_by = Column(Integer, nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_balance_requests_user_id", "user_id"),
        Index("ix_balance_requests_status", "status"),
    )


def make_engine(database_url: str):
    if not database_url:
        raise RuntimeError("DATABASE_URL is not set")

    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, future=True, **kwargs)

    return create_engine(database_url, pool_pre_ping=True, future=True)


def make_sessionmaker(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine, future=True)


def init_db(engine) -> None:
    Base.metadata.create_all(bind=engine, checkfirst=True)
    logger.info("Ledger schema ready on %s", engine.url.render_as_string(hide_password=True))
