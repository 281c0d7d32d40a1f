"""
Booking lifecycle.

    pending -> approved -> confirmed -> attended
    pending | approved | confirmed -> cancellation_pending -> cancelled
    pending | approved | confirmed -> cancelled
    pending -> declined

Every transition locks the booking row, validates against TRANSITIONS,
writes the status change and its audit row, and commits once. External side
effects (payments, calendar, notifications) run only after that commit and
can never undo it.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clubhouse import models
from clubhouse.errors import FailureKind, ServiceResult
from clubhouse.integrations import STAFF_RECIPIENT, Integrations, default_integrations
from clubhouse.post_commit import PostCommitTasks

logger = logging.getLogger(__name__)

S = models.BookingStatus


class Trigger(str, enum.Enum):
    approve = "approve"
    confirm = "confirm"
    attend = "attend"
    decline = "decline"
    request_cancellation = "request_cancellation"
    cancel = "cancel"
    complete_cancellation = "complete_cancellation"


class CancelSource(str, enum.Enum):
    member = "member"
    staff = "staff"
    # The external scheduler the booking is linked to.
    external = "external"


ACTIVE_STATUSES = (S.pending, S.approved, S.confirmed)

TRANSITIONS: Dict[Tuple[S, Trigger], S] = {
    (S.pending, Trigger.approve): S.approved,
    (S.approved, Trigger.confirm): S.confirmed,
    (S.confirmed, Trigger.attend): S.attended,
    (S.pending, Trigger.decline): S.declined,
    (S.cancellation_pending, Trigger.cancel): S.cancelled,
    (S.cancellation_pending, Trigger.complete_cancellation): S.cancelled,
}
for _status in ACTIVE_STATUSES:
    TRANSITIONS[(_status, Trigger.request_cancellation)] = S.cancellation_pending
    TRANSITIONS[(_status, Trigger.cancel)] = S.cancelled

# Triggers callers may fire through apply_transition; cancellation has its own entry points.
DIRECT_TRIGGERS = (Trigger.approve, Trigger.confirm, Trigger.attend, Trigger.decline)


def next_status(current, trigger) -> Optional[S]:
    """Target status for `trigger` fired in `current`, or None when illegal."""
    try:
        return TRANSITIONS.get((S(current), Trigger(trigger)))
    except ValueError:
        return None


@dataclass(frozen=True)
class TransitionOutcome:
    booking_id: int
    status: S
    previous_status: S
    user_email: Optional[str] = None
    changed: bool = True
    failed_follow_ups: Tuple[str, ...] = ()


def _append_note(notes: Optional[str], line: str) -> str:
    if not notes:
        return line
    if line in notes:
        return notes
    return f"{notes}\n{line}"


def record_change(db: Session, booking: models.Booking, action: str, actor: Optional[str], previous: S, note: str) -> None:
    booking.staff_notes = _append_note(booking.staff_notes, note)
    db.add(models.BookingAuditLog(
        booking_id=booking.id,
        action=action,
        actor=actor,
        previous_status=previous.value,
        new_status=booking.status.value,
        note=note,
    ))


def lock_booking(db: Session, booking_id: int) -> Optional[models.Booking]:
    return db.query(models.Booking).filter(models.Booking.id == booking_id).with_for_update().first()


def _unchanged(booking: models.Booking) -> TransitionOutcome:
    return TransitionOutcome(
        booking_id=booking.id,
        status=booking.status,
        previous_status=booking.status,
        user_email=booking.user_email,
        changed=False,
    )


# ------------------------------------------------------------------
# Post-commit follow-ups
# ------------------------------------------------------------------

def _booking_participants(db: Session, booking_id: int):
    return (
        db.query(models.BookingParticipant)
        .join(models.BookingSession, models.BookingSession.id == models.BookingParticipant.session_id)
        .filter(models.BookingSession.booking_id == booking_id)
        .all()
    )


def release_guest_passes(db: Session, booking_id: int, owner_email: str) -> int:
    """Return guest passes held by the booking's guests to the owner."""
    try:
        held = [p for p in _booking_participants(db, booking_id) if p.used_guest_pass]
        if not held:
            return 0
        for p in held:
            p.used_guest_pass = False
        (
            db.query(models.Member)
            .filter(models.Member.email == owner_email)
            .update(
                {models.Member.guest_passes_remaining: func.coalesce(models.Member.guest_passes_remaining, 0) + len(held)},
                synchronize_session=False,
            )
        )
        db.commit()
        logger.info("[BOOKING] Released %s guest passes for booking %s", len(held), booking_id)
        return len(held)
    except Exception:
        db.rollback()
        raise


def void_booking_payments(db: Session, booking_id: int, integrations: Integrations) -> None:
    """
    Cancel pending payment intents and refund completed ones.
    Completed snapshots stay as the record of what was charged.
    """
    from clubhouse.fees import mark_payment_refunded

    snapshots = (
        db.query(models.FeeSnapshot)
        .filter(
            models.FeeSnapshot.booking_id == booking_id,
            models.FeeSnapshot.payment_intent_id.isnot(None),
        )
        .all()
    )
    pending = [(s.id, s.payment_intent_id) for s in snapshots if s.status == models.SnapshotStatus.pending]
    completed = [(s.payment_intent_id, s.total_cents) for s in snapshots if s.status == models.SnapshotStatus.completed]

    for snapshot_id, intent_id in pending:
        integrations.payments.cancel_intent(intent_id)
        try:
            db.query(models.FeeSnapshot).filter(models.FeeSnapshot.id == snapshot_id).update(
                {models.FeeSnapshot.expires_at: models.utcnow()}, synchronize_session=False
            )
            db.commit()
        except Exception:
            db.rollback()
            raise

    for intent_id, amount in completed:
        integrations.payments.refund_intent(intent_id, amount)
        mark_payment_refunded(db, intent_id)


def delete_calendar_event(integrations: Integrations, calendar_id: Optional[str], event_id: Optional[str]) -> None:
    if not calendar_id or not event_id:
        return
    integrations.calendar.delete_event(calendar_id, event_id)


def _cancellation_follow_ups(
    db: Session,
    booking: models.Booking,
    source: CancelSource,
    integrations: Integrations,
) -> PostCommitTasks:
    booking_id = booking.id
    owner_email = booking.user_email
    calendar_id = booking.resource.calendar_id if booking.resource else None
    when = f"{booking.request_date} {booking.start_time}"

    tasks = PostCommitTasks("BOOKING")
    tasks.add("release_guest_passes", release_guest_passes, db, booking_id, owner_email)
    tasks.add("void_payments", void_booking_payments, db, booking_id, integrations)
    tasks.add("delete_calendar_event", delete_calendar_event, integrations, calendar_id, booking.calendar_event_id)
    tasks.add(
        "notify_member",
        integrations.notifier.notify,
        owner_email,
        "Booking Cancelled",
        f"Your booking for {when} has been cancelled.",
        booking_id,
    )
    if source == CancelSource.member:
        tasks.add(
            "notify_staff",
            integrations.notifier.notify,
            STAFF_RECIPIENT,
            "Booking Cancelled by Member",
            f"{booking.user_name or owner_email} cancelled their booking for {when}.",
            booking_id,
        )
    return tasks


# ------------------------------------------------------------------
# Entry points
# ------------------------------------------------------------------

def cancel_booking(
    db: Session,
    booking_id: int,
    source: CancelSource,
    cancelled_by: Optional[str] = None,
    integrations: Optional[Integrations] = None,
) -> ServiceResult[TransitionOutcome]:
    """
    Cancel a booking, or park it in cancellation_pending when it is linked to
    the external scheduler and the request did not come from that scheduler.

    Repeating a cancel on a cancelled booking (or on a pending cancellation,
    from any non-external source) succeeds without side effects.
    """
    integrations = integrations or default_integrations
    source = CancelSource(source)
    actor = cancelled_by or source.value

    try:
        booking = lock_booking(db, booking_id)
        if not booking:
            db.rollback()
            return ServiceResult.fail(FailureKind.NOT_FOUND, "Booking request not found")

        if booking.status == S.cancelled or (
            booking.status == S.cancellation_pending and source != CancelSource.external
        ):
            outcome = _unchanged(booking)
            db.rollback()
            return ServiceResult.ok(outcome)

        previous = booking.status
        if booking.is_externally_linked and source != CancelSource.external:
            target = next_status(previous, Trigger.request_cancellation)
        else:
            target = next_status(previous, Trigger.cancel)

        if target is None:
            db.rollback()
            return ServiceResult.fail(
                FailureKind.INVALID_STATE,
                f"Cannot cancel a booking with status '{previous.value}'",
            )

        booking.status = target
        stamp = models.utcnow()
        if target == S.cancellation_pending:
            booking.cancellation_pending_at = stamp
            note = f"[Cancellation requested by {actor} ({source.value}) at {stamp:%Y-%m-%d %H:%M} UTC - awaiting external release]"
            record_change(db, booking, "cancellation_requested", actor, previous, note)
        else:
            booking.cancellation_pending_at = None
            note = f"[Cancelled by {actor} ({source.value}) at {stamp:%Y-%m-%d %H:%M} UTC]"
            record_change(db, booking, "cancelled", actor, previous, note)

        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("[BOOKING] Failed to cancel booking %s: %s", booking_id, str(e)[:200])
        return ServiceResult.fail(FailureKind.INTERNAL, "Failed to cancel booking")

    if target == S.cancellation_pending:
        logger.info("[BOOKING] Booking %s is linked to %s; cancellation pending", booking.id, booking.external_booking_id)
        tasks = PostCommitTasks("BOOKING")
        tasks.add(
            "notify_staff",
            integrations.notifier.notify,
            STAFF_RECIPIENT,
            "Cancellation Pending",
            f"Booking #{booking.id} ({booking.external_booking_id}) needs releasing in the external scheduler.",
            booking.id,
        )
    else:
        logger.info("[BOOKING] Booking %s cancelled by %s", booking.id, actor)
        tasks = _cancellation_follow_ups(db, booking, source, integrations)

    failed = tasks.run()
    return ServiceResult.ok(TransitionOutcome(
        booking_id=booking_id,
        status=target,
        previous_status=previous,
        user_email=booking.user_email,
        failed_follow_ups=tuple(failed),
    ))


def complete_pending_cancellation(
    db: Session,
    booking_id: int,
    staff_email: str,
    integrations: Optional[Integrations] = None,
) -> ServiceResult[TransitionOutcome]:
    """Finalize a cancellation once the external scheduler has released the slot."""
    integrations = integrations or default_integrations

    try:
        booking = lock_booking(db, booking_id)
        if not booking:
            db.rollback()
            return ServiceResult.fail(FailureKind.NOT_FOUND, "Booking not found")

        previous = booking.status
        if previous != S.cancellation_pending:
            db.rollback()
            return ServiceResult.fail(
                FailureKind.INVALID_STATE,
                f"Cannot complete cancellation: booking status is '{previous.value}', expected 'cancellation_pending'",
            )

        booking.status = next_status(previous, Trigger.complete_cancellation)
        booking.cancellation_pending_at = None
        stamp = models.utcnow()
        note = f"[Cancellation completed by {staff_email} at {stamp:%Y-%m-%d %H:%M} UTC]"
        record_change(db, booking, "cancellation_completed", staff_email, previous, note)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("[BOOKING] Failed to complete cancellation for booking %s: %s", booking_id, str(e)[:200])
        return ServiceResult.fail(FailureKind.INTERNAL, "Failed to complete cancellation")

    logger.info("[BOOKING] Cancellation completed for booking %s by %s", booking.id, staff_email)
    failed = _cancellation_follow_ups(db, booking, CancelSource.staff, integrations).run()
    return ServiceResult.ok(TransitionOutcome(
        booking_id=booking_id,
        status=S.cancelled,
        previous_status=previous,
        user_email=booking.user_email,
        failed_follow_ups=tuple(failed),
    ))


TRANSITION_MESSAGES = {
    S.approved: ("Booking Approved", "Your booking for {when} has been approved."),
    S.confirmed: ("Booking Confirmed", "Your booking for {when} is confirmed."),
    S.declined: ("Booking Declined", "Your booking request for {when} was declined."),
}


def apply_transition(
    db: Session,
    booking_id: int,
    trigger: Trigger,
    actor: Optional[str] = None,
    integrations: Optional[Integrations] = None,
) -> ServiceResult[TransitionOutcome]:
    integrations = integrations or default_integrations
    try:
        trigger = Trigger(trigger)
    except ValueError:
        return ServiceResult.fail(FailureKind.VALIDATION, f"Unknown trigger '{trigger}'")
    if trigger not in DIRECT_TRIGGERS:
        return ServiceResult.fail(FailureKind.VALIDATION, f"Use the cancellation endpoints for '{trigger.value}'")

    try:
        booking = lock_booking(db, booking_id)
        if not booking:
            db.rollback()
            return ServiceResult.fail(FailureKind.NOT_FOUND, "Booking not found")

        previous = booking.status
        target = next_status(previous, trigger)
        if target is None:
            db.rollback()
            return ServiceResult.fail(
                FailureKind.INVALID_STATE,
                f"Cannot {trigger.value} a booking with status '{previous.value}'",
            )

        booking.status = target
        note = f"[{trigger.value.capitalize()} by {actor or 'system'} at {models.utcnow():%Y-%m-%d %H:%M} UTC]"
        record_change(db, booking, trigger.value, actor, previous, note)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("[BOOKING] Booking %s %s -> %s", booking.id, previous.value, target.value)

    tasks = PostCommitTasks("BOOKING")
    if target == S.declined:
        tasks.add("release_guest_passes", release_guest_passes, db, booking.id, booking.user_email)
        tasks.add("void_payments", void_booking_payments, db, booking.id, integrations)
    message = TRANSITION_MESSAGES.get(target)
    if message:
        title, body = message
        tasks.add(
            "notify_member",
            integrations.notifier.notify,
            booking.user_email,
            title,
            body.format(when=f"{booking.request_date} {booking.start_time}"),
            booking.id,
        )
    failed = tasks.run()

    return ServiceResult.ok(TransitionOutcome(
        booking_id=booking_id,
        status=target,
        previous_status=previous,
        user_email=booking.user_email,
        failed_follow_ups=tuple(failed),
    ))
