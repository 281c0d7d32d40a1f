# clubhouse/models.py
from sqlalchemy import Column, Integer, String, DateTime, Date, Time, ForeignKey, Enum, Text, Boolean, JSON
from sqlalchemy.orm import relationship, validates
from datetime import datetime, timezone, time
import enum
from clubhouse.database import Base


def utcnow() -> datetime:
    # Naive UTC so values compare cleanly after a round trip through SQLite.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def compute_end_time(start_time: time, duration_minutes: int) -> time:
    """
    End of a booking that starts at `start_time` and lasts `duration_minutes`.

    Bookings never cross midnight; a range ending after 24:00 raises ValueError.
    Ending exactly at midnight is also rejected because the end would wrap to 00:00.
    """
    if duration_minutes is None or int(duration_minutes) < 0:
        raise ValueError("duration_minutes must be >= 0")
    start_minutes = start_time.hour * 60 + start_time.minute
    end_minutes = start_minutes + int(duration_minutes)
    if end_minutes >= 24 * 60:
        raise ValueError("booking would cross midnight")
    return time(end_minutes // 60, end_minutes % 60)


class ResourceType(str, enum.Enum):
    simulator = "simulator"
    conference_room = "conference_room"


class BookingStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    confirmed = "confirmed"
    attended = "attended"
    cancellation_pending = "cancellation_pending"
    cancelled = "cancelled"
    declined = "declined"


# Statuses that consume a member's daily allowance.
USAGE_STATUSES = (
    BookingStatus.pending,
    BookingStatus.approved,
    BookingStatus.confirmed,
    BookingStatus.attended,
)

# Statuses that hold a resource slot. A cancellation_pending booking still
# occupies the bay until the external scheduler releases it.
OCCUPYING_STATUSES = USAGE_STATUSES + (BookingStatus.cancellation_pending,)

TERMINAL_STATUSES = (BookingStatus.cancelled, BookingStatus.declined)


class ParticipantType(str, enum.Enum):
    owner = "owner"
    member = "member"
    guest = "guest"


class PaymentStatus(str, enum.Enum):
    pending = "pending"
    paid = "paid"
    waived = "waived"
    refunded = "refunded"


class SnapshotStatus(str, enum.Enum):
    pending = "pending"
    completed = "completed"


class Resource(Base):
    __tablename__ = "resources"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(120), nullable=False, unique=True)
    type = Column(Enum(ResourceType, name="resource_type"), nullable=False, default=ResourceType.simulator)
    calendar_id = Column(String(200), nullable=True)

    bookings = relationship("Booking", back_populates="resource")


class MembershipTier(Base):
    """
    Per-tier allowance configuration.

    Convention: a daily allowance >= 999 minutes (or `unlimited_access`) means
    no overage is ever computed for the tier.
    """
    __tablename__ = "membership_tiers"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(60), unique=True, nullable=False, index=True)
    daily_sim_minutes = Column(Integer, default=0, nullable=False)
    daily_conf_room_minutes = Column(Integer, default=0, nullable=False)
    booking_window_days = Column(Integer, default=7, nullable=False)
    guest_passes_per_month = Column(Integer, default=0, nullable=False)
    can_book_simulators = Column(Boolean, default=True, nullable=False)
    can_book_conference = Column(Boolean, default=False, nullable=False)
    can_book_wellness = Column(Boolean, default=False, nullable=False)
    unlimited_access = Column(Boolean, default=False, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Member(Base):
    __tablename__ = "members"
    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(200), unique=True, index=True, nullable=False)
    name = Column(String(200), nullable=True)
    tier = Column(String(60), nullable=True)
    role = Column(String(30), default="member")  # member | staff | admin
    guest_passes_remaining = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class Booking(Base):
    __tablename__ = "bookings"
    id = Column(Integer, primary_key=True, index=True)
    user_email = Column(String(200), nullable=False, index=True)
    user_name = Column(String(200), nullable=True)
    resource_id = Column(Integer, ForeignKey("resources.id"), nullable=True, index=True)
    request_date = Column(Date, nullable=False, index=True)
    start_time = Column(Time, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    end_time = Column(Time, nullable=False)
    declared_player_count = Column(Integer, default=1, nullable=False)
    # Stable enum type name so AUTO_MIGRATE can extend it on Postgres.
    status = Column(Enum(BookingStatus, name="booking_status"), default=BookingStatus.pending, nullable=False, index=True)
    external_booking_id = Column(String(100), nullable=True, index=True)
    calendar_event_id = Column(String(200), nullable=True)
    session_id = Column(Integer, nullable=True, index=True)
    staff_notes = Column(Text, nullable=True)
    cancellation_pending_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    resource = relationship("Resource", back_populates="bookings")
    sessions = relationship("BookingSession", back_populates="booking")

    @validates("duration_minutes")
    def _validate_duration(self, key, value):
        if value is None or int(value) < 0:
            raise ValueError("duration_minutes must be >= 0")
        return int(value)

    @property
    def is_externally_linked(self) -> bool:
        return bool(str(self.external_booking_id or "").strip())


class BookingSession(Base):
    __tablename__ = "booking_sessions"
    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    session_date = Column(Date, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)

    booking = relationship("Booking", back_populates="sessions")
    participants = relationship(
        "BookingParticipant",
        back_populates="session",
        order_by="BookingParticipant.id",
    )


class BookingParticipant(Base):
    __tablename__ = "booking_participants"
    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("booking_sessions.id"), nullable=False, index=True)
    participant_type = Column(Enum(ParticipantType, name="participant_type"), nullable=False)
    display_name = Column(String(200), nullable=False)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=True, index=True)
    payment_status = Column(Enum(PaymentStatus, name="participant_payment_status"), default=PaymentStatus.pending, nullable=False)
    # Authoritative once written by the fee calculator, until explicitly cleared.
    cached_fee_cents = Column(Integer, default=0, nullable=False)
    used_guest_pass = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    session = relationship("BookingSession", back_populates="participants")
    member = relationship("Member")

    @validates("cached_fee_cents")
    def _validate_fee(self, key, value):
        value = int(value or 0)
        if value < 0:
            raise ValueError("cached_fee_cents must be >= 0")
        return value


class UsageLedger(Base):
    __tablename__ = "usage_ledger"
    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("booking_sessions.id"), nullable=False, index=True)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False, index=True)
    minutes_charged = Column(Integer, default=0, nullable=False)
    overage_fee_cents = Column(Integer, default=0, nullable=False)
    guest_fee_cents = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class FeeSnapshot(Base):
    """
    What we intended to charge when a payment was initiated.

    Once `status` is completed the amounts are the permanent record of the
    charge; a new charge gets a new snapshot.
    """
    __tablename__ = "fee_snapshots"
    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    session_id = Column(Integer, ForeignKey("booking_sessions.id"), nullable=False, index=True)
    participant_fees = Column(JSON, nullable=False, default=list)  # [{"participant_id": 1, "amount_cents": 2500}, ...]
    total_cents = Column(Integer, nullable=False, default=0)
    status = Column(Enum(SnapshotStatus, name="fee_snapshot_status"), default=SnapshotStatus.pending, nullable=False)
    payment_intent_id = Column(String(120), nullable=True, unique=True)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class FacilityClosure(Base):
    __tablename__ = "facility_closures"
    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(200), nullable=False)
    start_date = Column(Date, nullable=False, index=True)
    end_date = Column(Date, nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    # Comma-separated resource ids or names. NULL affects nothing;
    # "entire_facility" affects every resource.
    affected_areas = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class BookingAuditLog(Base):
    __tablename__ = "booking_audit_log"
    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    action = Column(String(60), nullable=False)
    actor = Column(String(200), nullable=True)
    previous_status = Column(String(30), nullable=True)
    new_status = Column(String(30), nullable=True)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class ClubSetting(Base):
    __tablename__ = "club_settings"
    key = Column(String(200), primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=utcnow)
