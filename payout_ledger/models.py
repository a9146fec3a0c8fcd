from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4
from pydantic import BaseModel, Field, ConfigDict


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_minor_units(amount: int) -> str:
    """Render minor units as dollars, e.g. 1050 -> "10.50"."""
    sign = "-" if amount < 0 else ""
    whole, cents = divmod(abs(amount), 100)
    return f"{sign}{whole}.{cents:02d}"


class PayoutStatus(str, Enum):
    PENDING = "PENDING"
    SETTLED = "SETTLED"
    REJECTED = "REJECTED"


class Account(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    referral_code: str
    payout_email: Optional[str] = None
    balance: int = Field(default=0, ge=0, description="Minor units (cents)")
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


class AccountPatch(BaseModel):
    balance_delta: int = 0
    payout_email: Optional[str] = None


class ReferralEdge(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    referrer_id: UUID
    referred_id: UUID
    bonus_amount: int = Field(..., gt=0)
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


class PayoutRequest(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    account_id: UUID
    amount_requested: int = Field(..., gt=0)
    destination_email: str
    currency: str = "CAD"
    status: PayoutStatus = PayoutStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    def can_resolve(self) -> bool:
        return self.status == PayoutStatus.PENDING

    @property
    def amount_display(self) -> str:
        return format_minor_units(self.amount_requested)


class AccountSummary(BaseModel):
    account_id: UUID
    balance: int
    balance_display: str
    payout_email: Optional[str] = None
    referral_code: str
    referral_count: int


class OpenAccountRequest(BaseModel):
    referral_code: Optional[str] = Field(default=None, description="Code from the ?ref= link")

    model_config = ConfigDict(json_schema_extra={
        "example": {"referral_code": "K7QX2MPA"}
    })


class CreditReferralRequest(BaseModel):
    referrer_id: UUID
    referred_id: UUID
    bonus_amount: Optional[int] = Field(default=None, gt=0)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "referrer_id": "550e8400-e29b-41d4-a716-446655440000",
            "referred_id": "660e8400-e29b-41d4-a716-446655440001",
            "bonus_amount": 1000
        }
    })


class PayoutDestinationRequest(BaseModel):
    email: str = Field(..., description="Interac e-Transfer email")


class RejectPayoutRequest(BaseModel):
    reason: str = Field(..., min_length=1, description="Why the transfer failed")


class PayoutResponse(BaseModel):
    payout: PayoutRequest
    message: str


class ReferralResponse(BaseModel):
    referral: ReferralEdge
    message: str


class PayoutHistoryResponse(BaseModel):
    account_id: UUID
    payouts: list[PayoutRequest]
    total_count: int
