# clubhouse/schemas.py

from pydantic import BaseModel, EmailStr, Field
from typing import Optional, List
from datetime import datetime, date, time

from clubhouse.models import BookingStatus, ParticipantType, PaymentStatus, SnapshotStatus

# ------------------------------------------------------------------
# BOOKINGS
# ------------------------------------------------------------------

class ParticipantIn(BaseModel):
    participant_type: ParticipantType = ParticipantType.guest
    display_name: str
    member_email: Optional[EmailStr] = None  # required for participant_type=member


class BookingCreate(BaseModel):
    user_email: EmailStr
    user_name: Optional[str] = None
    resource_id: int
    request_date: date
    start_time: time
    duration_minutes: int
    declared_player_count: Optional[int] = 1
    # Everyone except the owner, who is added automatically.
    participants: List[ParticipantIn] = Field(default_factory=list)
    external_booking_id: Optional[str] = None
    calendar_event_id: Optional[str] = None


class ParticipantOut(BaseModel):
    id: int
    participant_type: ParticipantType
    display_name: str
    member_id: Optional[int] = None
    payment_status: PaymentStatus
    cached_fee_cents: int
    used_guest_pass: bool

    model_config = {"from_attributes": True}


class BookingOut(BaseModel):
    id: int
    user_email: str
    user_name: Optional[str] = None
    resource_id: Optional[int] = None
    request_date: date
    start_time: time
    end_time: time
    duration_minutes: int
    declared_player_count: int
    status: BookingStatus
    external_booking_id: Optional[str] = None
    session_id: Optional[int] = None
    staff_notes: Optional[str] = None
    cancellation_pending_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class LimitCheckOut(BaseModel):
    allowed: bool
    included_minutes: int
    overage_minutes: int
    remaining_minutes: int
    tier: Optional[str] = None
    reason: Optional[str] = None

    model_config = {"from_attributes": True}


class BookingCreated(BaseModel):
    booking: BookingOut
    limit_check: LimitCheckOut
    estimated_overage_cents: int = 0


class CancelRequest(BaseModel):
    source: str = "member"  # member | staff | external
    cancelled_by: Optional[str] = None


class CompleteCancellationRequest(BaseModel):
    staff_email: EmailStr


class RescheduleRequest(BaseModel):
    request_date: date
    start_time: time
    # Both default to the booking's current values.
    duration_minutes: Optional[int] = None
    resource_id: Optional[int] = None
    actor: Optional[str] = None


class TransitionRequest(BaseModel):
    trigger: str  # approve | confirm | attend | decline
    actor: Optional[str] = None


class TransitionOut(BaseModel):
    booking_id: int
    status: BookingStatus
    previous_status: BookingStatus
    changed: bool = True
    failed_follow_ups: List[str] = Field(default_factory=list)

    model_config = {"from_attributes": True}


# ------------------------------------------------------------------
# FEES
# ------------------------------------------------------------------

class ParticipantIds(BaseModel):
    participant_ids: List[int]


class PrepaymentRequest(ParticipantIds):
    customer_ref: str


class ParticipantFeeOut(BaseModel):
    participant_id: int
    amount_cents: int
    source: str

    model_config = {"from_attributes": True}


class FeeCalculationOut(BaseModel):
    success: bool
    fees: List[ParticipantFeeOut] = Field(default_factory=list)
    total_cents: int = 0
    error: Optional[str] = None

    model_config = {"from_attributes": True}


class PrepaymentOut(BaseModel):
    payment_required: bool
    total_cents: int
    payment_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    snapshot_id: Optional[int] = None
    reused: bool = False


class FeeSnapshotOut(BaseModel):
    id: int
    booking_id: int
    session_id: int
    participant_fees: List[dict]
    total_cents: int
    status: SnapshotStatus
    payment_intent_id: Optional[str] = None
    expires_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class FeeEstimateOut(BaseModel):
    overage_minutes: int
    overage_fee_cents: int
    guest_count: int
    guest_fees_cents: int
    total_fee_cents: int

    model_config = {"from_attributes": True}


# ------------------------------------------------------------------
# SETTINGS
# ------------------------------------------------------------------

class VolumeTierIn(BaseModel):
    min_members: int = Field(ge=1)
    price_cents: int = Field(ge=0)


class PricingUpdate(BaseModel):
    overage_rate_cents: Optional[int] = Field(default=None, ge=0)
    guest_fee_cents: Optional[int] = Field(default=None, ge=0)
    block_minutes: Optional[int] = Field(default=None, ge=1)
    family_discount_percent: Optional[int] = Field(default=None, ge=0, le=100)
    corporate_tiers: Optional[List[VolumeTierIn]] = None
    corporate_base_price_cents: Optional[int] = Field(default=None, ge=0)


class PricingOut(BaseModel):
    overage_rate_cents: int
    overage_rate_dollars: float
    guest_fee_cents: int
    guest_fee_dollars: float
    block_minutes: int
    family_discount_percent: int
    corporate_tiers: List[VolumeTierIn]
    corporate_base_price_cents: int


class TierInvalidate(BaseModel):
    tier: Optional[str] = None  # omit to clear every cached tier


class AvailabilityOut(BaseModel):
    resource_id: int
    date: date
    available: bool
