from __future__ import annotations

from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence, Union

from clubhouse.pricing import PricingConfig, current_pricing

# Daily allowances at or above this many minutes never produce overage.
UNLIMITED_TIER_THRESHOLD = 999

MemberKey = Union[int, str]


@dataclass(frozen=True)
class Participant:
    participant_type: str  # owner | member | guest
    display_name: str = ""
    member_id: Optional[int] = None
    email: Optional[str] = None
    participant_id: Optional[int] = None

    @property
    def member_key(self) -> Optional[MemberKey]:
        if self.member_id is not None:
            return self.member_id
        if self.email:
            return self.email.strip().lower()
        return None


@dataclass(frozen=True)
class UsageAllocation:
    participant: Participant
    minutes_allocated: int


@dataclass(frozen=True)
class OverageResult:
    has_overage: bool
    overage_minutes: int
    overage_fee_cents: int


@dataclass(frozen=True)
class FeeEstimate:
    overage_minutes: int
    overage_fee_cents: int
    guest_count: int
    guest_fees_cents: int
    total_fee_cents: int


def _type_of(participant: Participant) -> str:
    raw = getattr(participant, "participant_type", None)
    return str(getattr(raw, "value", raw) or "")


def allocate(
    total_minutes: int,
    participants: Sequence[Participant],
    declared_slots: Optional[int] = None,
    assign_remainder_to_owner: bool = False,
) -> List[UsageAllocation]:
    """
    Split a session's minutes across its participants.

    The divisor is the participant count, or `declared_slots` when more players
    were declared than registered; time for unregistered slots is not
    allocated to anyone. The integer-division remainder goes one minute at a
    time to the front of the list, or entirely to the owner when
    `assign_remainder_to_owner` is set (first participant if there is no owner).
    """
    if not participants:
        return []

    total_minutes = max(0, int(total_minutes or 0))
    count = len(participants)
    divisor = count
    if declared_slots is not None and int(declared_slots) > count:
        divisor = int(declared_slots)

    share, remainder = divmod(total_minutes, divisor)

    if assign_remainder_to_owner:
        owner_index = next((i for i, p in enumerate(participants) if _type_of(p) == "owner"), 0)
        return [
            UsageAllocation(participant=p, minutes_allocated=share + (remainder if i == owner_index else 0))
            for i, p in enumerate(participants)
        ]

    return [
        UsageAllocation(participant=p, minutes_allocated=share + (1 if i < remainder else 0))
        for i, p in enumerate(participants)
    ]


def overage_for(
    minutes_used: int,
    daily_allowance_minutes: int,
    pricing: Optional[PricingConfig] = None,
) -> OverageResult:
    if daily_allowance_minutes >= UNLIMITED_TIER_THRESHOLD or minutes_used <= daily_allowance_minutes:
        return OverageResult(has_overage=False, overage_minutes=0, overage_fee_cents=0)

    pricing = pricing or current_pricing()
    overage_minutes = int(minutes_used) - int(daily_allowance_minutes)
    return OverageResult(
        has_overage=True,
        overage_minutes=overage_minutes,
        overage_fee_cents=pricing.overage_cents(overage_minutes),
    )


def total_session_cost(
    allocations: Sequence[UsageAllocation],
    allowances: Mapping[MemberKey, int],
    pricing: Optional[PricingConfig] = None,
) -> int:
    """
    Total overage owed for a session, in cents.

    Guests are billed the flat guest fee elsewhere and are skipped here. A
    member missing from `allowances` is treated as having no allowance, so
    every allocated minute is billed.
    """
    pricing = pricing or current_pricing()
    total = 0
    for allocation in allocations:
        if _type_of(allocation.participant) == "guest":
            continue
        key = allocation.participant.member_key
        allowance = allowances.get(key, 0) if key is not None else 0
        total += overage_for(allocation.minutes_allocated, allowance, pricing).overage_fee_cents
    return total


def estimate_booking_fees(
    duration_minutes: int,
    player_count: int,
    already_used_minutes: int,
    allowance_minutes: int,
    is_conference_room: bool = False,
    pricing: Optional[PricingConfig] = None,
) -> FeeEstimate:
    """
    Pre-booking estimate shown to members before they submit a request.

    Simulator time is split evenly across declared players; everyone after the
    owner is counted as a guest. Conference-room time is not split.
    """
    pricing = pricing or current_pricing()
    players = max(1, int(player_count or 0))
    duration_minutes = max(0, int(duration_minutes or 0))

    if is_conference_room:
        owner_minutes = duration_minutes
        guest_count = 0
    else:
        owner_minutes = duration_minutes // players
        guest_count = players - 1

    overage = overage_for(int(already_used_minutes or 0) + owner_minutes, allowance_minutes, pricing)
    # Minutes already over the allowance before this booking were billed elsewhere.
    prior = overage_for(int(already_used_minutes or 0), allowance_minutes, pricing)
    overage_minutes = max(0, overage.overage_minutes - prior.overage_minutes)
    overage_fee = pricing.overage_cents(overage_minutes) if overage.has_overage else 0
    guest_fees = guest_count * pricing.guest_fee_cents if duration_minutes > 0 else 0

    return FeeEstimate(
        overage_minutes=overage_minutes,
        overage_fee_cents=overage_fee,
        guest_count=guest_count,
        guest_fees_cents=guest_fees,
        total_fee_cents=overage_fee + guest_fees,
    )


def format_cents(cents: int) -> str:
    return f"${cents / 100:.2f}"
