# clubhouse/routers/fees.py
from datetime import date as Date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from clubhouse import crud, schemas
from clubhouse.database import get_db
from clubhouse.errors import result_to_http
from clubhouse.fees import (
    calculate_and_cache_participant_fees,
    clear_cached_fees,
    create_fee_snapshot_payment,
    mark_payment_refunded,
    mark_payment_succeeded,
)
from clubhouse.models import ResourceType
from clubhouse.tiers import tier_limits, total_daily_usage_minutes
from clubhouse.usage import UNLIMITED_TIER_THRESHOLD, estimate_booking_fees

router = APIRouter(prefix="/fees", tags=["fees"])


@router.post("/sessions/{session_id}/calculate", response_model=schemas.FeeCalculationOut)
def calculate_fees(session_id: int, req: schemas.ParticipantIds, db: Session = Depends(get_db)):
    """Resolve and cache what each participant owes. Failures come back with success=false."""
    return calculate_and_cache_participant_fees(db, session_id, req.participant_ids)


@router.post("/sessions/{session_id}/prepayment", response_model=schemas.PrepaymentOut)
def create_prepayment(session_id: int, req: schemas.PrepaymentRequest, db: Session = Depends(get_db)):
    result = create_fee_snapshot_payment(db, session_id, req.participant_ids, req.customer_ref)
    if not result.success:
        raise result_to_http(result)
    return result.value


@router.post("/clear")
def clear_fees(req: schemas.ParticipantIds, db: Session = Depends(get_db)):
    clear_cached_fees(db, req.participant_ids)
    return {"status": "ok", "participant_ids": req.participant_ids}


@router.post("/payments/{payment_intent_id}/succeeded", response_model=schemas.FeeSnapshotOut)
def payment_succeeded(payment_intent_id: str, db: Session = Depends(get_db)):
    result = mark_payment_succeeded(db, payment_intent_id)
    if not result.success:
        raise result_to_http(result)
    return result.value


@router.post("/payments/{payment_intent_id}/refunded", response_model=schemas.FeeSnapshotOut)
def payment_refunded(payment_intent_id: str, db: Session = Depends(get_db)):
    result = mark_payment_refunded(db, payment_intent_id)
    if not result.success:
        raise result_to_http(result)
    return result.value


@router.get("/estimate", response_model=schemas.FeeEstimateOut)
def estimate(
    email: str = Query(...),
    date: Date = Query(...),
    duration_minutes: int = Query(..., ge=0),
    player_count: int = Query(1, ge=1),
    resource_type: ResourceType = Query(ResourceType.simulator),
    db: Session = Depends(get_db),
):
    """
    Fee preview shown before a booking request is submitted.
    Unknown emails are estimated as having no allowance.
    """
    member = crud.get_member_by_email(db, email)
    limits = tier_limits(db, member.tier if member else None)
    allowance = limits.daily_minutes_for(resource_type.value)
    if limits.is_unlimited_for(resource_type.value):
        allowance = UNLIMITED_TIER_THRESHOLD
    used = 0
    if member:
        used = total_daily_usage_minutes(db, member.email, date, resource_type.value).total_minutes
    return estimate_booking_fees(
        duration_minutes,
        player_count,
        used,
        allowance,
        is_conference_room=resource_type == ResourceType.conference_room,
    )
