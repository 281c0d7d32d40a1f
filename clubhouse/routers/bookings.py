# clubhouse/routers/bookings.py
from __future__ import annotations

from datetime import date as Date

from fastapi import APIRouter, Depends, Query, HTTPException
from sqlalchemy.orm import Session

from clubhouse import crud, models, schemas
from clubhouse.booking_rules import check_daily_booking_limit
from clubhouse.booking_state import CancelSource, apply_transition, cancel_booking, complete_pending_cancellation
from clubhouse.database import get_db
from clubhouse.errors import result_to_http

router = APIRouter(prefix="/bookings", tags=["bookings"])


def _transition_payload(outcome) -> schemas.TransitionOut:
    return schemas.TransitionOut(
        booking_id=outcome.booking_id,
        status=outcome.status,
        previous_status=outcome.previous_status,
        changed=outcome.changed,
        failed_follow_ups=list(outcome.failed_follow_ups),
    )


@router.post("", response_model=schemas.BookingCreated, status_code=201)
def create_booking(booking_in: schemas.BookingCreate, db: Session = Depends(get_db)):
    result = crud.create_booking(db, booking_in)
    if not result.success:
        raise result_to_http(result)
    created = result.value
    return schemas.BookingCreated(
        booking=schemas.BookingOut.model_validate(created.booking),
        limit_check=schemas.LimitCheckOut.model_validate(created.limit_check),
        estimated_overage_cents=created.estimated_overage_cents,
    )


@router.get("/limit-check", response_model=schemas.LimitCheckOut)
def limit_check(
    email: str = Query(...),
    date: Date = Query(...),
    minutes: int = Query(..., ge=0),
    resource_type: models.ResourceType = Query(models.ResourceType.simulator),
    db: Session = Depends(get_db),
):
    """Preview how a request would split into included minutes and overage."""
    member = crud.get_member_by_email(db, email)
    if not member:
        raise HTTPException(status_code=404, detail="Member not found")
    check = check_daily_booking_limit(db, member.email, date, minutes, member.tier, resource_type.value)
    return schemas.LimitCheckOut.model_validate(check)


@router.get("/{booking_id}", response_model=schemas.BookingOut)
def get_booking(booking_id: int, db: Session = Depends(get_db)):
    b = crud.get_booking(db, booking_id)
    if not b:
        raise HTTPException(status_code=404, detail="Booking not found")
    return b


@router.post("/{booking_id}/cancel", response_model=schemas.TransitionOut)
def cancel(booking_id: int, req: schemas.CancelRequest, db: Session = Depends(get_db)):
    try:
        source = CancelSource(req.source)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown cancellation source '{req.source}'")
    result = cancel_booking(db, booking_id, source, cancelled_by=req.cancelled_by)
    if not result.success:
        raise result_to_http(result)
    return _transition_payload(result.value)


@router.post("/{booking_id}/complete-cancellation", response_model=schemas.TransitionOut)
def complete_cancellation(booking_id: int, req: schemas.CompleteCancellationRequest, db: Session = Depends(get_db)):
    result = complete_pending_cancellation(db, booking_id, req.staff_email)
    if not result.success:
        raise result_to_http(result)
    return _transition_payload(result.value)


@router.post("/{booking_id}/transition", response_model=schemas.TransitionOut)
def transition(booking_id: int, req: schemas.TransitionRequest, db: Session = Depends(get_db)):
    result = apply_transition(db, booking_id, req.trigger, actor=req.actor)
    if not result.success:
        raise result_to_http(result)
    return _transition_payload(result.value)


@router.post("/{booking_id}/reschedule", response_model=schemas.BookingOut)
def reschedule(booking_id: int, req: schemas.RescheduleRequest, db: Session = Depends(get_db)):
    result = crud.reschedule_booking(
        db,
        booking_id,
        req.request_date,
        req.start_time,
        duration_minutes=req.duration_minutes,
        resource_id=req.resource_id,
        actor=req.actor,
    )
    if not result.success:
        raise result_to_http(result)
    return result.value
