# clubhouse/routers/settings.py
from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from clubhouse import schemas
from clubhouse.availability import is_resource_available_for_date
from clubhouse.database import get_db
from clubhouse.pricing import PricingConfig, load_pricing_from_settings, pricing_store, save_pricing_to_settings
from clubhouse.tiers import tier_cache

router = APIRouter(prefix="/settings", tags=["settings"])


def _pricing_payload(config: PricingConfig) -> schemas.PricingOut:
    return schemas.PricingOut(
        overage_rate_cents=config.overage_rate_cents,
        overage_rate_dollars=config.overage_rate_dollars,
        guest_fee_cents=config.guest_fee_cents,
        guest_fee_dollars=config.guest_fee_dollars,
        block_minutes=config.block_minutes,
        family_discount_percent=config.family_discount_percent,
        corporate_tiers=[
            schemas.VolumeTierIn(min_members=t.min_members, price_cents=t.price_cents)
            for t in config.corporate_tiers
        ],
        corporate_base_price_cents=config.corporate_base_price_cents,
    )


@router.get("/pricing", response_model=schemas.PricingOut)
def get_pricing():
    return _pricing_payload(pricing_store.current())


@router.put("/pricing", response_model=schemas.PricingOut)
def update_pricing(req: schemas.PricingUpdate, db: Session = Depends(get_db)):
    changes = req.model_dump(exclude_none=True, exclude={"corporate_tiers"})
    if req.corporate_tiers is not None:
        changes["corporate_tiers"] = [t.model_dump() for t in req.corporate_tiers]
    try:
        config = pricing_store.apply(**changes)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    save_pricing_to_settings(db, config)
    return _pricing_payload(load_pricing_from_settings(db, pricing_store))


@router.post("/tiers/invalidate")
def invalidate_tiers(req: schemas.TierInvalidate):
    if req.tier:
        tier_cache.invalidate(req.tier)
        return {"status": "ok", "invalidated": req.tier.strip().lower()}
    tier_cache.clear()
    return {"status": "ok", "invalidated": "all"}


@router.get("/availability", response_model=schemas.AvailabilityOut)
def availability(resource_id: int = Query(...), on_date: date = Query(..., alias="date"), db: Session = Depends(get_db)):
    return schemas.AvailabilityOut(
        resource_id=resource_id,
        date=on_date,
        available=is_resource_available_for_date(db, resource_id, on_date),
    )
