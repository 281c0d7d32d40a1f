from __future__ import annotations
# clubhouse/crud.py
import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clubhouse import models, schemas
from clubhouse.availability import find_conflicting_booking, is_resource_available_for_date
from clubhouse.booking_rules import (
    LimitCheck,
    booking_window_for_tier,
    check_daily_booking_limit,
    enforce_social_tier_guest_rule,
)
from clubhouse.booking_state import ACTIVE_STATUSES, lock_booking, record_change
from clubhouse.errors import FailureKind, ServiceResult
from clubhouse.fees import write_session_usage
from clubhouse.pricing import PricingConfig, current_pricing
from clubhouse.tiers import TierCache, tier_limits

logger = logging.getLogger(__name__)

MAX_DURATION_MINUTES = 480


@dataclass(frozen=True)
class CreatedBooking:
    booking: models.Booking
    limit_check: LimitCheck
    estimated_overage_cents: int = 0


def get_member_by_email(db: Session, email: Optional[str]) -> Optional[models.Member]:
    email = str(email or "").strip().lower()
    if not email:
        return None
    return db.query(models.Member).filter(func.lower(models.Member.email) == email).first()


def get_booking(db: Session, booking_id: int) -> Optional[models.Booking]:
    return db.query(models.Booking).filter(models.Booking.id == booking_id).first()


def _take_guest_pass(db: Session, owner: models.Member) -> bool:
    """Decrement the owner's pass balance in the database; False when none are left."""
    taken = (
        db.query(models.Member)
        .filter(models.Member.id == owner.id, models.Member.guest_passes_remaining > 0)
        .update(
            {models.Member.guest_passes_remaining: models.Member.guest_passes_remaining - 1},
            synchronize_session=False,
        )
    )
    if taken:
        db.expire(owner, ["guest_passes_remaining"])
    return bool(taken)


def _add_session(
    db: Session,
    booking: models.Booking,
    owner: models.Member,
    booking_in: schemas.BookingCreate,
) -> ServiceResult[models.BookingSession]:
    session = models.BookingSession(booking=booking, session_date=booking.request_date)
    db.add(session)
    session.participants.append(models.BookingParticipant(
        participant_type=models.ParticipantType.owner,
        display_name=booking.user_name or owner.name or owner.email,
        member=owner,
    ))

    for p in booking_in.participants:
        ptype = models.ParticipantType(p.participant_type)
        if ptype == models.ParticipantType.owner:
            continue
        member = None
        used_pass = False
        payment_status = models.PaymentStatus.pending

        if ptype == models.ParticipantType.member:
            member = get_member_by_email(db, p.member_email)
            if not member:
                return ServiceResult.fail(FailureKind.NOT_FOUND, f"Member not found: {p.member_email}")
        elif _take_guest_pass(db, owner):
            used_pass = True
            payment_status = models.PaymentStatus.waived

        session.participants.append(models.BookingParticipant(
            participant_type=ptype,
            display_name=p.display_name,
            member=member,
            used_guest_pass=used_pass,
            payment_status=payment_status,
        ))

    db.flush()
    booking.session_id = session.id
    return ServiceResult.ok(session)


def create_booking(
    db: Session,
    booking_in: schemas.BookingCreate,
    cache: Optional[TierCache] = None,
    pricing: Optional[PricingConfig] = None,
    today: Optional[date] = None,
) -> ServiceResult[CreatedBooking]:
    """
    Create a pending booking request.

    Refusals come back as failed results: bad duration (400), unknown
    resource or member (404), closed resource (409), tier without the
    capability (403), overlapping booking (409). Overage never refuses a
    booking; it is reported on the limit check.
    """
    pricing = pricing or current_pricing()
    duration = int(booking_in.duration_minutes or 0)
    if duration < 1 or duration > MAX_DURATION_MINUTES:
        return ServiceResult.fail(FailureKind.VALIDATION, f"Duration must be between 1 and {MAX_DURATION_MINUTES} minutes")
    try:
        end_time = models.compute_end_time(booking_in.start_time, duration)
    except ValueError:
        return ServiceResult.fail(FailureKind.VALIDATION, "Bookings cannot extend past midnight")

    resource = db.query(models.Resource).filter(models.Resource.id == booking_in.resource_id).first()
    if not resource:
        return ServiceResult.fail(FailureKind.NOT_FOUND, "Resource not found")

    if not is_resource_available_for_date(db, resource.id, booking_in.request_date):
        return ServiceResult.fail(FailureKind.UNAVAILABLE, f"{resource.name} is closed on {booking_in.request_date}")

    owner = get_member_by_email(db, booking_in.user_email)
    if not owner:
        return ServiceResult.fail(FailureKind.NOT_FOUND, "Member not found")

    limits = tier_limits(db, owner.tier, cache)
    today = today or date.today()
    if booking_in.request_date < today:
        return ServiceResult.fail(FailureKind.VALIDATION, "Cannot book a date in the past")
    last_day = booking_window_for_tier(limits, today)
    if booking_in.request_date > last_day:
        return ServiceResult.fail(
            FailureKind.VALIDATION,
            f"Your membership tier can book up to {limits.booking_window_days} days ahead (until {last_day})",
        )

    check = check_daily_booking_limit(
        db,
        owner.email,
        booking_in.request_date,
        duration,
        owner.tier,
        resource.type.value,
        cache,
    )
    if not check.allowed:
        return ServiceResult.fail(FailureKind.CAPABILITY_DENIED, check.reason, value=check)

    if resource.type == models.ResourceType.simulator:
        reason = enforce_social_tier_guest_rule(limits, [p.participant_type for p in booking_in.participants])
        if reason:
            return ServiceResult.fail(FailureKind.CAPABILITY_DENIED, reason)

    declared = max(int(booking_in.declared_player_count or 1), 1 + len(booking_in.participants))
    estimated_overage_cents = pricing.overage_cents(check.overage_minutes)

    try:
        conflict = find_conflicting_booking(db, resource.id, booking_in.request_date, booking_in.start_time, end_time)
        if conflict:
            db.rollback()
            return ServiceResult.fail(
                FailureKind.CONFLICT,
                f"{resource.name} is already booked from {conflict.start_time:%H:%M} to {conflict.end_time:%H:%M}",
            )

        b = models.Booking(
            user_email=owner.email,
            user_name=booking_in.user_name or owner.name,
            resource=resource,
            request_date=booking_in.request_date,
            start_time=booking_in.start_time,
            duration_minutes=duration,
            end_time=end_time,
            declared_player_count=declared,
            status=models.BookingStatus.pending,
            external_booking_id=booking_in.external_booking_id,
            calendar_event_id=booking_in.calendar_event_id,
        )
        db.add(b)
        db.flush()

        if declared > 1:
            added = _add_session(db, b, owner, booking_in)
            if not added.success:
                db.rollback()
                return added
            rows = write_session_usage(db, added.value, pricing, cache)
            # Group bookings bill the owner only for their own share of the minutes.
            estimated_overage_cents = sum(r.overage_fee_cents for r in rows if r.member_id == owner.id)

        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(b)
    logger.info(
        "[BOOKING] Created booking %s for %s on %s %s (%s min, overage %s min)",
        b.id, b.user_email, b.request_date, b.start_time, duration, check.overage_minutes,
    )
    return ServiceResult.ok(
        CreatedBooking(
            booking=b,
            limit_check=check,
            estimated_overage_cents=estimated_overage_cents,
        ),
        status_code=201,
    )


def _slot_label(resource, on_date, start, end) -> str:
    name = resource.name if resource else "unknown resource"
    return f"{name} {on_date} {start:%H:%M}-{end:%H:%M}"


def reschedule_booking(
    db: Session,
    booking_id: int,
    request_date: date,
    start_time: time,
    duration_minutes: Optional[int] = None,
    resource_id: Optional[int] = None,
    actor: Optional[str] = None,
    cache: Optional[TierCache] = None,
    pricing: Optional[PricingConfig] = None,
    now: Optional[datetime] = None,
) -> ServiceResult[models.Booking]:
    """
    Staff move of an active booking to a new slot, optionally on another resource.

    The conflict check, the booking and session update, the usage ledger
    rewrite and the reset of unpaid participants' cached fees all commit
    together. Paid and waived participants keep their fees.
    """
    pricing = pricing or current_pricing()
    now = now or datetime.now()

    try:
        booking = lock_booking(db, booking_id)
        if not booking:
            db.rollback()
            return ServiceResult.fail(FailureKind.NOT_FOUND, "Booking not found")
        if booking.status == models.BookingStatus.cancelled:
            db.rollback()
            return ServiceResult.fail(FailureKind.INVALID_STATE, "Cannot reschedule a cancelled booking")
        if booking.status not in ACTIVE_STATUSES:
            status = booking.status.value
            db.rollback()
            return ServiceResult.fail(FailureKind.INVALID_STATE, f"Cannot reschedule a booking with status '{status}'")
        if datetime.combine(booking.request_date, booking.start_time) <= now:
            db.rollback()
            return ServiceResult.fail(
                FailureKind.INVALID_STATE,
                "Cannot reschedule a booking that has already started or is in the past",
            )

        duration = int(duration_minutes if duration_minutes is not None else booking.duration_minutes)
        if duration < 1 or duration > MAX_DURATION_MINUTES:
            db.rollback()
            return ServiceResult.fail(FailureKind.VALIDATION, f"Duration must be between 1 and {MAX_DURATION_MINUTES} minutes")
        try:
            end_time = models.compute_end_time(start_time, duration)
        except ValueError:
            db.rollback()
            return ServiceResult.fail(FailureKind.VALIDATION, "Bookings cannot extend past midnight")
        if request_date < now.date():
            db.rollback()
            return ServiceResult.fail(FailureKind.VALIDATION, "Cannot move a booking to a date in the past")

        resource = booking.resource
        if resource_id is not None and resource_id != booking.resource_id:
            resource = db.query(models.Resource).filter(models.Resource.id == resource_id).first()
        if not resource:
            db.rollback()
            return ServiceResult.fail(FailureKind.NOT_FOUND, "Resource not found")
        if not is_resource_available_for_date(db, resource.id, request_date):
            name = resource.name
            db.rollback()
            return ServiceResult.fail(FailureKind.UNAVAILABLE, f"{name} is closed on {request_date}")

        conflict = find_conflicting_booking(
            db, resource.id, request_date, start_time, end_time, exclude_booking_id=booking.id,
        )
        if conflict:
            db.rollback()
            return ServiceResult.fail(FailureKind.CONFLICT, "Time slot conflicts with existing booking")

        moved_from = _slot_label(booking.resource, booking.request_date, booking.start_time, booking.end_time)
        booking.resource = resource
        booking.request_date = request_date
        booking.start_time = start_time
        booking.duration_minutes = duration
        booking.end_time = end_time

        if booking.session_id:
            session = db.get(models.BookingSession, booking.session_id)
            if session:
                session.session_date = request_date
                write_session_usage(db, session, pricing, cache)
                # Unpaid fees are recalculated on next read.
                (
                    db.query(models.BookingParticipant)
                    .filter(
                        models.BookingParticipant.session_id == session.id,
                        models.BookingParticipant.payment_status == models.PaymentStatus.pending,
                    )
                    .update({models.BookingParticipant.cached_fee_cents: 0}, synchronize_session=False)
                )

        note = f"[Rescheduled by {actor or 'staff'} from {moved_from} to {_slot_label(resource, request_date, start_time, end_time)}]"
        record_change(db, booking, "rescheduled", actor, booking.status, note)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("[BOOKING] Failed to reschedule booking %s: %s", booking_id, str(e)[:200])
        return ServiceResult.fail(FailureKind.INTERNAL, "Failed to confirm reschedule")

    db.refresh(booking)
    logger.info("[BOOKING] Booking %s rescheduled to %s %s on resource %s", booking.id, request_date, start_time, resource.id)
    return ServiceResult.ok(booking)
