from __future__ import annotations

import logging
from datetime import date, time
from typing import Optional, Union

from sqlalchemy.orm import Session

from clubhouse import models

logger = logging.getLogger(__name__)

ENTIRE_FACILITY = "entire_facility"
MINUTES_PER_DAY = 24 * 60

TimeLike = Union[str, time, int, None]


def parse_time_to_minutes(value: TimeLike) -> int:
    """'HH:MM' / 'HH:MM:SS' / time / minutes -> minutes after midnight. Empty values are 0."""
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, time):
        return value.hour * 60 + value.minute
    text = str(value).strip()
    if not text:
        return 0
    parts = text.split(":")
    hours = int(parts[0] or 0)
    minutes = int(parts[1] or 0) if len(parts) > 1 else 0
    return hours * 60 + minutes


def _ranges(start: int, end: int):
    # An end at or before the start wraps past midnight.
    if end <= start:
        return [(start, MINUTES_PER_DAY), (0, end)]
    return [(start, end)]


def has_time_overlap(start1: TimeLike, end1: TimeLike, start2: TimeLike, end2: TimeLike) -> bool:
    """
    True when [start1, end1) and [start2, end2) share at least one minute.

    Ranges that end at or before they start are treated as crossing midnight,
    so 23:00-01:00 overlaps 00:00-00:30. Touching ranges do not overlap.
    """
    a = _ranges(parse_time_to_minutes(start1), parse_time_to_minutes(end1))
    b = _ranges(parse_time_to_minutes(start2), parse_time_to_minutes(end2))
    for s1, e1 in a:
        for s2, e2 in b:
            if s1 < e2 and s2 < e1:
                return True
    return False


def _closure_affects(closure: models.FacilityClosure, resource: Optional[models.Resource], resource_id: int) -> bool:
    raw = closure.affected_areas
    if raw is None or not str(raw).strip():
        return False
    tokens = [t.strip().lower() for t in str(raw).split(",") if t.strip()]
    if ENTIRE_FACILITY in tokens:
        return True
    if str(resource_id) in tokens:
        return True
    if resource is not None and resource.name and resource.name.strip().lower() in tokens:
        return True
    return False


def is_resource_available_for_date(db: Session, resource_id: int, on_date: date) -> bool:
    """
    False only when an active closure covering `on_date` names this resource.

    Closures opt specific resources in; one without affected areas closes
    nothing. Any lookup failure is logged and the resource is reported
    available.
    """
    try:
        # A failed statement must not abort the caller's transaction.
        with db.begin_nested():
            closures = (
                db.query(models.FacilityClosure)
                .filter(
                    models.FacilityClosure.is_active.is_(True),
                    models.FacilityClosure.start_date <= on_date,
                    models.FacilityClosure.end_date >= on_date,
                )
                .all()
            )
            resource = None
            if closures:
                resource = db.query(models.Resource).filter(models.Resource.id == resource_id).first()
        if not closures:
            return True
        for closure in closures:
            if _closure_affects(closure, resource, resource_id):
                logger.info(
                    "[AVAILABILITY] Resource %s closed on %s by closure %s (%s)",
                    resource_id, on_date, closure.id, closure.title,
                )
                return False
        return True
    except Exception as e:
        logger.warning("[AVAILABILITY] Closure lookup failed, treating resource %s as available: %s", resource_id, str(e)[:200])
        return True


def find_conflicting_booking(
    db: Session,
    resource_id: int,
    on_date: date,
    start_time: TimeLike,
    end_time: TimeLike,
    exclude_booking_id: Optional[int] = None,
) -> Optional[models.Booking]:
    """
    First booking holding the resource during [start_time, end_time) on `on_date`.

    Locks the resource row first so concurrent requests for the same bay
    serialize through the check and the insert that follows it. The caller
    owns the transaction.
    """
    db.query(models.Resource).filter(models.Resource.id == resource_id).with_for_update().first()

    query = db.query(models.Booking).filter(
        models.Booking.resource_id == resource_id,
        models.Booking.request_date == on_date,
        models.Booking.status.in_(models.OCCUPYING_STATUSES),
    )
    if exclude_booking_id is not None:
        query = query.filter(models.Booking.id != exclude_booking_id)

    for existing in query.with_for_update().all():
        if has_time_overlap(start_time, end_time, existing.start_time, existing.end_time):
            return existing
    return None
