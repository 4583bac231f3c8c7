from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Optional, Union

from pydantic import AliasGenerator, BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel


Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class TransactionType(str, Enum):
    ADD = "add"
    DEDUCT = "deduct"


class BalanceRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ReferralCreditPolicy(str, Enum):
    MANUAL = "manual"
    SIGNUP = "signup"
    FIRST_TOPUP = "first_topup"


class Record(BaseModel):
    """Server-owned entity, serialized with camelCase keys."""

    model_config = ConfigDict(
        from_attributes=True,
        alias_generator=AliasGenerator(serialization_alias=to_camel),
    )


class Body(BaseModel):
    """Client payload, accepted in camelCase or snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UserPublic(Record):
    id: int
    username: str
    balance: Money
    referral_code: str
    referred_by: Optional[str] = None
    is_admin: bool = False
    created_at: Optional[datetime] = None


class User(Record):
    id: int
    username: str
    password_hash: str
    balance: Money = Decimal("0")
    referral_code: str
    referred_by: Optional[str] = None
    is_admin: bool = False
    created_at: Optional[datetime] = None

    def public(self) -> UserPublic:
        return UserPublic(**self.model_dump(exclude={"password_hash"}))


class Transaction(Record):
    id: int
    user_id: int
    amount: Money
    type: TransactionType
    note: str
    timestamp: datetime


class OtpHistory(Record):
    id: int
    user_id: int
    otp: str
    service_id: Optional[str] = None
    service_name: Optional[str] = None
    timestamp: datetime


class Referral(Record):
    id: int
    referrer_id: int
    referred_id: int
    timestamp: datetime
    credited: bool = False


class BalanceRequest(Record):
    id: int
    user_id: int
    amount: Money
    utr_number: str
    status: BalanceRequestStatus = BalanceRequestStatus.PENDING
    timestamp: datetime
    approved_by: Optional[int] = None
    approved_at: Optional[datetime] = None

    def is_pending(self) -> bool:
        return self.status == BalanceRequestStatus.PENDING


class RegisterRequest(Body):
    username: str = Field(..., description="Unique login name")
    password: str
    referral_code: Optional[str] = Field(default=None, description="Own referral code; generated when omitted")
    referred_by: Optional[str] = Field(default=None, description="Referral code or username of the referrer")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "username": "ravi",
            "password": "s3cret-pass",
            "referredBy": "DEMOX7K2QP",
        }
    })


class LoginRequest(Body):
    username: str
    password: str


class BalanceRequestCreate(Body):
    amount: Optional[Decimal] = None
    utr_number: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {"amount": 100, "utrNumber": "UTR123"}
    })


class OtpGenerateRequest(Body):
    service_id: Optional[str] = None
    service_name: Optional[str] = None
    price: Optional[Union[float, str]] = None


class OtpResponse(Record):
    otp: str
    cost: Money
    service: str
    balance: Money


class ApprovalResponse(Record):
    request: BalanceRequest
    user: UserPublic


class ReferralCreditResponse(Record):
    referral: Referral
    user: UserPublic


class MessageResponse(Record):
    message: str
    deleted: Optional[int] = None
