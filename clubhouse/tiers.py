from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date
from typing import Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from clubhouse import models
from clubhouse.usage import UNLIMITED_TIER_THRESHOLD

logger = logging.getLogger(__name__)


def normalize_tier_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip().lower()
    return value or None


@dataclass(frozen=True)
class TierLimits:
    tier: str
    daily_sim_minutes: int = 0
    daily_conf_room_minutes: int = 0
    booking_window_days: int = 7
    guest_passes_per_month: int = 0
    can_book_simulators: bool = False
    can_book_conference: bool = False
    can_book_wellness: bool = False
    unlimited_access: bool = False

    def daily_minutes_for(self, resource_type: str) -> int:
        if _resource_type_str(resource_type) == models.ResourceType.conference_room.value:
            return int(self.daily_conf_room_minutes)
        return int(self.daily_sim_minutes)

    def can_book(self, resource_type: str) -> bool:
        if _resource_type_str(resource_type) == models.ResourceType.conference_room.value:
            return bool(self.can_book_conference)
        return bool(self.can_book_simulators)

    def is_unlimited_for(self, resource_type: str) -> bool:
        return bool(self.unlimited_access) or self.daily_minutes_for(resource_type) >= UNLIMITED_TIER_THRESHOLD


def _resource_type_str(value) -> str:
    return str(getattr(value, "value", value) or models.ResourceType.simulator.value)


def default_tier_limits(tier: Optional[str]) -> TierLimits:
    # Unknown tiers get nothing: no minutes, no capabilities.
    return TierLimits(tier=normalize_tier_name(tier) or "unknown")


def _limits_from_row(row: models.MembershipTier) -> TierLimits:
    return TierLimits(
        tier=normalize_tier_name(row.name),
        daily_sim_minutes=int(row.daily_sim_minutes or 0),
        daily_conf_room_minutes=int(row.daily_conf_room_minutes or 0),
        booking_window_days=int(row.booking_window_days or 0),
        guest_passes_per_month=int(row.guest_passes_per_month or 0),
        can_book_simulators=bool(row.can_book_simulators),
        can_book_conference=bool(row.can_book_conference),
        can_book_wellness=bool(row.can_book_wellness),
        unlimited_access=bool(row.unlimited_access),
    )


class TierCache:
    """
    In-memory tier allowance cache keyed by normalized tier name.

    Entries are immutable records replaced whole, so readers never observe a
    half-written entry. Invalidation is explicit: by name after a tier edit,
    or wholesale after a bulk configuration change.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, TierLimits] = {}
        # Bumped by every invalidation; a load that straddles one is not stored.
        self._generation = 0

    def get(self, db: Session, tier_name: Optional[str]) -> TierLimits:
        key = normalize_tier_name(tier_name)
        if not key:
            return default_tier_limits(None)

        cached = self._entries.get(key)
        if cached is not None:
            return cached

        with self._lock:
            generation = self._generation

        row = (
            db.query(models.MembershipTier)
            .filter(func.lower(models.MembershipTier.name) == key)
            .first()
        )
        if not row:
            logger.warning("[TIERS] No tier configuration for %r; using empty limits", tier_name)
            return default_tier_limits(key)

        limits = _limits_from_row(row)
        with self._lock:
            if self._generation == generation:
                self._entries[key] = limits
        return limits

    def invalidate(self, tier_name: Optional[str]) -> None:
        key = normalize_tier_name(tier_name)
        if not key:
            return
        with self._lock:
            self._generation += 1
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._entries = {}

    def __contains__(self, tier_name) -> bool:
        return normalize_tier_name(tier_name) in self._entries


tier_cache = TierCache()


def tier_limits(db: Session, tier_name: Optional[str], cache: Optional[TierCache] = None) -> TierLimits:
    return (cache or tier_cache).get(db, tier_name)


def member_tier(db: Session, email: str) -> Optional[str]:
    email = str(email or "").strip().lower()
    if not email:
        return None
    member = db.query(models.Member).filter(func.lower(models.Member.email) == email).first()
    if not member:
        return None
    return member.tier


# ------------------------------------------------------------------
# Daily usage
# ------------------------------------------------------------------

@dataclass(frozen=True)
class DailyUsage:
    owner_minutes: int
    participant_minutes: int
    total_minutes: int


def daily_booked_minutes(
    db: Session,
    email: str,
    on_date: date,
    resource_type: str = models.ResourceType.simulator.value,
    exclude_booking_id: Optional[int] = None,
) -> int:
    """Minutes of the member's own bookings (as owner) on `on_date` for a resource type."""
    email = str(email or "").strip().lower()
    query = (
        db.query(func.coalesce(func.sum(models.Booking.duration_minutes), 0))
        .join(models.Resource, models.Resource.id == models.Booking.resource_id)
        .filter(
            func.lower(models.Booking.user_email) == email,
            models.Booking.request_date == on_date,
            models.Booking.status.in_(models.USAGE_STATUSES),
            models.Resource.type == models.ResourceType(_resource_type_str(resource_type)),
        )
    )
    if exclude_booking_id is not None:
        query = query.filter(models.Booking.id != exclude_booking_id)
    return int(query.scalar() or 0)


def daily_participant_minutes(db: Session, email: str, on_date: date) -> int:
    """
    Minutes allocated to the member as a participant in other members'
    bookings on `on_date`, read from the persisted usage ledger.
    """
    email = str(email or "").strip().lower()
    total = (
        db.query(func.coalesce(func.sum(models.UsageLedger.minutes_charged), 0))
        .join(models.Member, models.Member.id == models.UsageLedger.member_id)
        .join(models.BookingSession, models.BookingSession.id == models.UsageLedger.session_id)
        .join(models.Booking, models.Booking.id == models.BookingSession.booking_id)
        .filter(
            func.lower(models.Member.email) == email,
            models.Booking.request_date == on_date,
            models.Booking.status.in_(models.USAGE_STATUSES),
            func.lower(models.Booking.user_email) != email,
        )
        .scalar()
    )
    return int(total or 0)


def total_daily_usage_minutes(
    db: Session,
    email: str,
    on_date: date,
    resource_type: str = models.ResourceType.simulator.value,
) -> DailyUsage:
    owner = daily_booked_minutes(db, email, on_date, resource_type)
    participant = daily_participant_minutes(db, email, on_date)
    return DailyUsage(owner_minutes=owner, participant_minutes=participant, total_minutes=owner + participant)
