from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from clubhouse import models
from clubhouse.errors import FailureKind, ServiceResult
from clubhouse.integrations import PaymentGateway, default_integrations
from clubhouse.pricing import PricingConfig, current_pricing
from clubhouse.tiers import TierCache, daily_booked_minutes, daily_participant_minutes, tier_limits
from clubhouse.usage import Participant, allocate

logger = logging.getLogger(__name__)

SNAPSHOT_TTL_MINUTES = 30

SOURCE_CACHED = "cached"
SOURCE_LEDGER = "ledger"
SOURCE_CALCULATED = "calculated"


@dataclass(frozen=True)
class ParticipantFee:
    participant_id: int
    amount_cents: int
    source: str  # cached | ledger | calculated


@dataclass
class FeeCalculationResult:
    success: bool
    fees: List[ParticipantFee] = field(default_factory=list)
    total_cents: int = 0
    error: Optional[str] = None


def _ids(values: Iterable) -> List[int]:
    return sorted({int(v) for v in (values or [])})


def _ledger_fees_by_member(db: Session, session_id: int) -> Dict[int, int]:
    rows = (
        db.query(
            models.UsageLedger.member_id,
            func.coalesce(func.sum(models.UsageLedger.overage_fee_cents + models.UsageLedger.guest_fee_cents), 0),
        )
        .filter(models.UsageLedger.session_id == session_id)
        .group_by(models.UsageLedger.member_id)
        .all()
    )
    return {int(member_id): int(total or 0) for member_id, total in rows}


def _calculate_fees(
    db: Session,
    session_id: int,
    participant_ids: Iterable[int],
    pricing: Optional[PricingConfig] = None,
) -> FeeCalculationResult:
    """
    Resolve what each requested participant owes, writing newly derived
    amounts back to `cached_fee_cents`. Does not commit.

    Priority: cached fee, then ledger-posted overage + guest charges, then the
    flat guest fee for guests. Members with neither owe nothing. Paid and
    waived participants are skipped.
    """
    pricing = pricing or current_pricing()
    ids = _ids(participant_ids)
    if not ids:
        return FeeCalculationResult(success=True)

    participants = (
        db.query(models.BookingParticipant)
        .filter(
            models.BookingParticipant.session_id == session_id,
            models.BookingParticipant.id.in_(ids),
        )
        .order_by(models.BookingParticipant.id)
        .with_for_update()
        .all()
    )
    ledger = _ledger_fees_by_member(db, session_id)

    fees: List[ParticipantFee] = []
    for p in participants:
        if p.payment_status in (models.PaymentStatus.paid, models.PaymentStatus.waived):
            continue

        amount = 0
        source = SOURCE_CALCULATED
        ledger_fee = ledger.get(p.member_id, 0) if p.member_id is not None else 0

        if int(p.cached_fee_cents or 0) > 0:
            amount = int(p.cached_fee_cents)
            source = SOURCE_CACHED
        elif ledger_fee > 0:
            amount = ledger_fee
            source = SOURCE_LEDGER
        elif p.participant_type == models.ParticipantType.guest:
            amount = int(pricing.guest_fee_cents)

        if amount <= 0:
            continue

        fees.append(ParticipantFee(participant_id=p.id, amount_cents=amount, source=source))
        if source != SOURCE_CACHED:
            p.cached_fee_cents = amount

    db.flush()
    return FeeCalculationResult(success=True, fees=fees, total_cents=sum(f.amount_cents for f in fees))


def calculate_and_cache_participant_fees(
    db: Session,
    session_id: int,
    participant_ids: Iterable[int],
    pricing: Optional[PricingConfig] = None,
) -> FeeCalculationResult:
    """
    Compute and cache participant fees in one transaction.

    Never raises: on any failure the transaction is rolled back and an
    unsuccessful result is returned, so payment creation can check `success`.
    """
    try:
        result = _calculate_fees(db, session_id, participant_ids, pricing)
        db.commit()
        return result
    except Exception as e:
        db.rollback()
        logger.error("[FEES] Error calculating fees for session %s: %s", session_id, str(e)[:200])
        return FeeCalculationResult(success=False, error=str(e) or "Failed to calculate fees")


def clear_cached_fees(db: Session, participant_ids: Iterable[int]) -> None:
    ids = _ids(participant_ids)
    if not ids:
        return
    try:
        (
            db.query(models.BookingParticipant)
            .filter(models.BookingParticipant.id.in_(ids))
            .update({models.BookingParticipant.cached_fee_cents: 0}, synchronize_session=False)
        )
        db.commit()
    except Exception as e:
        db.rollback()
        logger.warning("[FEES] Error clearing cached fees for %s: %s", ids, str(e)[:200])


# ------------------------------------------------------------------
# Usage ledger
# ------------------------------------------------------------------

def _overage_minutes(used: int, allowance: int) -> int:
    return max(0, int(used) - int(allowance))


def write_session_usage(
    db: Session,
    session: models.BookingSession,
    pricing: Optional[PricingConfig] = None,
    cache: Optional[TierCache] = None,
    assign_remainder_to_owner: bool = False,
) -> List[models.UsageLedger]:
    """
    Write the session's minute allocation to the usage ledger. Does not commit.

    Each registered member gets a row with their allocated minutes and the
    overage those minutes add on top of what they already used that day.
    Existing rows for the session are replaced, so re-running is safe.
    """
    pricing = pricing or current_pricing()
    booking = session.booking
    session_id = session.id

    resource_type = booking.resource.type.value if booking.resource else models.ResourceType.simulator.value
    participants = [
        Participant(
            participant_type=p.participant_type.value,
            display_name=p.display_name,
            member_id=p.member_id,
            email=p.member.email if p.member else None,
            participant_id=p.id,
        )
        for p in session.participants
    ]
    allocations = allocate(
        booking.duration_minutes,
        participants,
        declared_slots=booking.declared_player_count,
        assign_remainder_to_owner=assign_remainder_to_owner,
    )

    db.query(models.UsageLedger).filter(models.UsageLedger.session_id == session_id).delete(synchronize_session=False)
    db.flush()

    rows: List[models.UsageLedger] = []
    for allocation in allocations:
        p = allocation.participant
        if p.participant_type == models.ParticipantType.guest.value or p.member_id is None:
            continue

        member = db.query(models.Member).filter(models.Member.id == p.member_id).first()
        limits = tier_limits(db, member.tier if member else None, cache)
        fee = 0
        if not limits.is_unlimited_for(resource_type):
            allowance = limits.daily_minutes_for(resource_type)
            email = member.email if member else p.email
            prior = (
                daily_booked_minutes(db, email, booking.request_date, resource_type, exclude_booking_id=booking.id)
                + daily_participant_minutes(db, email, booking.request_date)
            )
            added = _overage_minutes(prior + allocation.minutes_allocated, allowance) - _overage_minutes(prior, allowance)
            fee = pricing.overage_cents(added)

        row = models.UsageLedger(
            session_id=session_id,
            member_id=p.member_id,
            minutes_charged=allocation.minutes_allocated,
            overage_fee_cents=fee,
            guest_fee_cents=0,
        )
        db.add(row)
        rows.append(row)

    db.flush()
    return rows


def record_session_usage(
    db: Session,
    session_id: int,
    pricing: Optional[PricingConfig] = None,
    cache: Optional[TierCache] = None,
    assign_remainder_to_owner: bool = False,
) -> ServiceResult[List[models.UsageLedger]]:
    session = db.query(models.BookingSession).filter(models.BookingSession.id == session_id).first()
    if not session:
        return ServiceResult.fail(FailureKind.NOT_FOUND, "Session not found")
    if not session.booking:
        return ServiceResult.fail(FailureKind.NOT_FOUND, "Booking not found")

    try:
        rows = write_session_usage(db, session, pricing, cache, assign_remainder_to_owner)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("[FEES] Recorded %s usage rows for session %s", len(rows), session_id)
    return ServiceResult.ok(rows)


# ------------------------------------------------------------------
# Prepayment snapshots
# ------------------------------------------------------------------

def _snapshot_fees(fees: List[ParticipantFee]) -> List[dict]:
    return [{"participant_id": f.participant_id, "amount_cents": f.amount_cents} for f in fees]


def _snapshot_participant_ids(snapshot: models.FeeSnapshot) -> List[int]:
    return [int(entry["participant_id"]) for entry in (snapshot.participant_fees or [])]


def create_fee_snapshot_payment(
    db: Session,
    session_id: int,
    participant_ids: Iterable[int],
    customer_ref: str,
    payments: Optional[PaymentGateway] = None,
    pricing: Optional[PricingConfig] = None,
) -> ServiceResult[dict]:
    """
    Freeze the fees owed by `participant_ids` into a pending snapshot and open
    a payment intent for the total.

    The session row is locked for the whole sequence so two concurrent calls
    cannot leave two live snapshots for the same unpaid participants. A live
    pending snapshot for the same participants and total is reused. If the
    gateway refuses the intent the snapshot is deleted.
    """
    payments = payments or default_integrations.payments
    session = (
        db.query(models.BookingSession)
        .filter(models.BookingSession.id == session_id)
        .with_for_update()
        .first()
    )
    if not session:
        db.rollback()
        return ServiceResult.fail(FailureKind.NOT_FOUND, "Session not found")

    try:
        calc = _calculate_fees(db, session_id, participant_ids, pricing)
    except Exception:
        db.rollback()
        raise

    if calc.total_cents <= 0:
        db.commit()
        return ServiceResult.ok({
            "payment_required": False,
            "total_cents": 0,
            "payment_intent_id": None,
            "client_secret": None,
            "snapshot_id": None,
        })

    now = models.utcnow()
    fee_ids = sorted(f.participant_id for f in calc.fees)
    live = (
        db.query(models.FeeSnapshot)
        .filter(
            models.FeeSnapshot.session_id == session_id,
            models.FeeSnapshot.status == models.SnapshotStatus.pending,
            models.FeeSnapshot.payment_intent_id.isnot(None),
            models.FeeSnapshot.expires_at > now,
        )
        .order_by(models.FeeSnapshot.id.desc())
        .all()
    )
    for existing in live:
        if existing.total_cents == calc.total_cents and sorted(_snapshot_participant_ids(existing)) == fee_ids:
            db.commit()
            logger.info("[PAYMENTS] Reusing snapshot %s for session %s", existing.id, session_id)
            return ServiceResult.ok({
                "payment_required": True,
                "total_cents": existing.total_cents,
                "payment_intent_id": existing.payment_intent_id,
                "client_secret": None,
                "snapshot_id": existing.id,
                "reused": True,
            })

    snapshot = models.FeeSnapshot(
        booking_id=session.booking_id,
        session_id=session_id,
        participant_fees=_snapshot_fees(calc.fees),
        total_cents=calc.total_cents,
        status=models.SnapshotStatus.pending,
        expires_at=now + timedelta(minutes=SNAPSHOT_TTL_MINUTES),
    )
    db.add(snapshot)
    db.flush()

    try:
        intent = payments.create_intent(
            customer_ref=customer_ref,
            amount_cents=calc.total_cents,
            purpose="booking_fee",
            description=f"Booking fees for session #{session_id}",
            metadata={
                "booking_id": str(session.booking_id),
                "session_id": str(session_id),
                "fee_snapshot_id": str(snapshot.id),
                "participant_ids": ",".join(str(i) for i in fee_ids),
            },
        )
    except Exception as e:
        logger.warning("[PAYMENTS] Intent creation failed for session %s, removing snapshot %s: %s",
                       session_id, snapshot.id, str(e)[:200])
        db.delete(snapshot)
        db.commit()
        return ServiceResult.fail(FailureKind.PAYMENT_FAILED, "Failed to create payment intent")

    snapshot.payment_intent_id = intent["payment_intent_id"]
    db.commit()
    db.refresh(snapshot)
    return ServiceResult.ok({
        "payment_required": True,
        "total_cents": snapshot.total_cents,
        "payment_intent_id": snapshot.payment_intent_id,
        "client_secret": intent.get("client_secret"),
        "snapshot_id": snapshot.id,
        "reused": False,
    })


def _locked_snapshot(db: Session, payment_intent_id: str) -> Optional[models.FeeSnapshot]:
    return (
        db.query(models.FeeSnapshot)
        .filter(models.FeeSnapshot.payment_intent_id == payment_intent_id)
        .with_for_update()
        .first()
    )


def _snapshot_participants(db: Session, snapshot: models.FeeSnapshot) -> List[models.BookingParticipant]:
    ids = _snapshot_participant_ids(snapshot)
    if not ids:
        return []
    return (
        db.query(models.BookingParticipant)
        .filter(models.BookingParticipant.id.in_(ids))
        .with_for_update()
        .all()
    )


def mark_payment_succeeded(db: Session, payment_intent_id: str) -> ServiceResult[models.FeeSnapshot]:
    from clubhouse.booking_state import Trigger, next_status

    try:
        snapshot = _locked_snapshot(db, payment_intent_id)
        if not snapshot:
            db.rollback()
            return ServiceResult.fail(FailureKind.NOT_FOUND, "Fee snapshot not found")
        if snapshot.status == models.SnapshotStatus.completed:
            db.rollback()
            return ServiceResult.ok(snapshot)

        snapshot.status = models.SnapshotStatus.completed
        for p in _snapshot_participants(db, snapshot):
            if p.payment_status != models.PaymentStatus.waived:
                p.payment_status = models.PaymentStatus.paid

        booking = (
            db.query(models.Booking)
            .filter(models.Booking.id == snapshot.booking_id)
            .with_for_update()
            .first()
        )
        if booking and booking.status == models.BookingStatus.pending:
            target = next_status(booking.status, Trigger.approve)
            if target:
                booking.status = target
                db.add(models.BookingAuditLog(
                    booking_id=booking.id,
                    action="payment_succeeded",
                    actor="payments",
                    previous_status=models.BookingStatus.pending.value,
                    new_status=target.value,
                    note=f"Payment {payment_intent_id} succeeded",
                ))

        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(snapshot)
    logger.info("[PAYMENTS] Payment %s succeeded for snapshot %s", payment_intent_id, snapshot.id)
    return ServiceResult.ok(snapshot)


def mark_payment_refunded(db: Session, payment_intent_id: str) -> ServiceResult[models.FeeSnapshot]:
    try:
        snapshot = _locked_snapshot(db, payment_intent_id)
        if not snapshot:
            db.rollback()
            return ServiceResult.fail(FailureKind.NOT_FOUND, "Fee snapshot not found")

        for p in _snapshot_participants(db, snapshot):
            if p.payment_status == models.PaymentStatus.paid:
                p.payment_status = models.PaymentStatus.refunded
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("[PAYMENTS] Payment %s refunded for snapshot %s", payment_intent_id, snapshot.id)
    return ServiceResult.ok(snapshot)
