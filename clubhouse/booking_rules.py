from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from clubhouse import models
from clubhouse.tiers import TierCache, TierLimits, tier_limits, total_daily_usage_minutes
from clubhouse.usage import UNLIMITED_TIER_THRESHOLD

logger = logging.getLogger(__name__)


RESOURCE_LABELS = {
    models.ResourceType.simulator.value: "simulator",
    models.ResourceType.conference_room.value: "conference room",
}


@dataclass(frozen=True)
class LimitCheck:
    allowed: bool
    included_minutes: int = 0
    overage_minutes: int = 0
    remaining_minutes: int = 0
    tier: Optional[str] = None
    reason: Optional[str] = None


def check_daily_booking_limit(
    db: Session,
    email: str,
    on_date: date,
    requested_minutes: int,
    tier_name: Optional[str],
    resource_type: str = models.ResourceType.simulator.value,
    cache: Optional[TierCache] = None,
) -> LimitCheck:
    """
    Decide whether a booking may proceed and how its minutes split into
    included time and overage.

    Only the tier's capability can refuse a booking. Overage never blocks; it
    is reported in raw minutes and priced later by the fee calculator.
    """
    resource_type = str(getattr(resource_type, "value", resource_type) or models.ResourceType.simulator.value)
    requested_minutes = max(0, int(requested_minutes or 0))
    limits = tier_limits(db, tier_name, cache)

    if not limits.can_book(resource_type):
        label = RESOURCE_LABELS.get(resource_type, resource_type)
        return LimitCheck(
            allowed=False,
            tier=limits.tier,
            reason=f"Your membership tier ({tier_name or 'none'}) does not include {label} bookings",
        )

    if limits.is_unlimited_for(resource_type):
        return LimitCheck(
            allowed=True,
            included_minutes=requested_minutes,
            overage_minutes=0,
            remaining_minutes=UNLIMITED_TIER_THRESHOLD,
            tier=limits.tier,
        )

    allowance = limits.daily_minutes_for(resource_type)
    already_used = total_daily_usage_minutes(db, email, on_date, resource_type).total_minutes
    remaining = max(0, allowance - already_used)
    included = min(requested_minutes, remaining)

    return LimitCheck(
        allowed=True,
        included_minutes=included,
        overage_minutes=requested_minutes - included,
        remaining_minutes=remaining - included,
        tier=limits.tier,
    )


def remaining_minutes(
    db: Session,
    email: str,
    on_date: date,
    tier_name: Optional[str],
    resource_type: str = models.ResourceType.simulator.value,
    cache: Optional[TierCache] = None,
) -> int:
    limits = tier_limits(db, tier_name, cache)
    if limits.is_unlimited_for(resource_type):
        return UNLIMITED_TIER_THRESHOLD
    allowance = limits.daily_minutes_for(resource_type)
    if allowance <= 0:
        return 0
    used = total_daily_usage_minutes(db, email, on_date, resource_type).total_minutes
    return max(0, allowance - used)


def enforce_social_tier_guest_rule(limits: TierLimits, participant_types: Iterable[str]) -> Optional[str]:
    """
    Social members with no guest passes cannot bring guests to simulator
    bookings. Returns the refusal reason, or None when allowed.
    """
    if "social" not in (limits.tier or ""):
        return None
    if limits.guest_passes_per_month > 0:
        return None
    if any(str(getattr(t, "value", t)) == models.ParticipantType.guest.value for t in participant_types):
        return (
            "Social tier members cannot bring guests to simulator bookings. "
            "Your membership includes 0 guest passes per month."
        )
    return None


def booking_window_for_tier(limits: TierLimits, today: Optional[date] = None) -> date:
    """Last date a member of this tier may book."""
    today = today or date.today()
    return today + timedelta(days=max(0, int(limits.booking_window_days or 0)))
