from __future__ import annotations

import json
import logging
import math
import os
import threading
from dataclasses import dataclass, replace
from typing import Iterable, Optional, Tuple

from dotenv import load_dotenv
from sqlalchemy.orm import Session

from clubhouse import models

load_dotenv()

logger = logging.getLogger(__name__)


def _env_int(key: str, default: int) -> int:
    raw = str(os.getenv(key, "") or "").strip()
    if not raw:
        return int(default)
    try:
        return int(float(raw))
    except ValueError:
        logger.warning("[PRICING] Ignoring non-numeric %s=%r", key, raw)
        return int(default)


DEFAULT_OVERAGE_RATE_CENTS = _env_int("OVERAGE_RATE_CENTS", 2500)
DEFAULT_GUEST_FEE_CENTS = _env_int("GUEST_FEE_CENTS", 2500)
DEFAULT_BLOCK_MINUTES = _env_int("OVERAGE_BLOCK_MINUTES", 30)
DEFAULT_FAMILY_DISCOUNT_PERCENT = _env_int("FAMILY_DISCOUNT_PERCENT", 20)
DEFAULT_CORPORATE_BASE_PRICE_CENTS = 35000


@dataclass(frozen=True)
class VolumeTier:
    min_members: int
    price_cents: int


DEFAULT_CORPORATE_TIERS: Tuple[VolumeTier, ...] = (
    VolumeTier(min_members=50, price_cents=24900),
    VolumeTier(min_members=20, price_cents=27500),
    VolumeTier(min_members=10, price_cents=29900),
    VolumeTier(min_members=5, price_cents=32500),
)


def _sorted_tiers(tiers: Iterable[VolumeTier]) -> Tuple[VolumeTier, ...]:
    return tuple(sorted(tiers, key=lambda t: t.min_members, reverse=True))


@dataclass(frozen=True)
class PricingConfig:
    """
    Immutable pricing snapshot. Dollar values are derived from cents on read.
    """
    overage_rate_cents: int = DEFAULT_OVERAGE_RATE_CENTS
    guest_fee_cents: int = DEFAULT_GUEST_FEE_CENTS
    block_minutes: int = DEFAULT_BLOCK_MINUTES
    corporate_tiers: Tuple[VolumeTier, ...] = DEFAULT_CORPORATE_TIERS
    corporate_base_price_cents: int = DEFAULT_CORPORATE_BASE_PRICE_CENTS
    family_discount_percent: int = DEFAULT_FAMILY_DISCOUNT_PERCENT

    @property
    def overage_rate_dollars(self) -> float:
        return self.overage_rate_cents / 100

    @property
    def guest_fee_dollars(self) -> float:
        return self.guest_fee_cents / 100

    def overage_blocks(self, overage_minutes: int) -> int:
        if overage_minutes <= 0:
            return 0
        return math.ceil(overage_minutes / self.block_minutes)

    def overage_cents(self, overage_minutes: int) -> int:
        # A partial block always bills as a full block.
        return self.overage_blocks(overage_minutes) * self.overage_rate_cents

    def overage_dollars(self, overage_minutes: int) -> float:
        return self.overage_cents(overage_minutes) / 100

    def corporate_price_for(self, member_count: int) -> int:
        qualifying = [t.price_cents for t in self.corporate_tiers if t.min_members <= member_count]
        if not qualifying:
            return self.corporate_base_price_cents
        return min(qualifying)


def _non_negative(name: str, value: int) -> int:
    value = int(value)
    if value < 0:
        raise ValueError(f"{name} must be >= 0")
    return value


def _positive(name: str, value: int) -> int:
    value = int(value)
    if value <= 0:
        raise ValueError(f"{name} must be > 0")
    return value


def _percent(name: str, value: int) -> int:
    value = int(value)
    if value < 0 or value > 100:
        raise ValueError(f"{name} must be between 0 and 100")
    return value


def _volume_tiers(name: str, tiers: Iterable[VolumeTier]) -> Tuple[VolumeTier, ...]:
    cleaned = []
    for tier in tiers:
        if isinstance(tier, dict):
            tier = VolumeTier(min_members=int(tier["min_members"]), price_cents=int(tier["price_cents"]))
        _non_negative("min_members", tier.min_members)
        _non_negative("price_cents", tier.price_cents)
        cleaned.append(tier)
    return _sorted_tiers(cleaned)


FIELD_VALIDATORS = {
    "overage_rate_cents": _non_negative,
    "guest_fee_cents": _non_negative,
    "block_minutes": _positive,
    "corporate_base_price_cents": _non_negative,
    "family_discount_percent": _percent,
    "corporate_tiers": _volume_tiers,
}


def validate_pricing_field(name: str, value):
    """Normalized value for one PricingConfig field; ValueError when out of range."""
    if name not in FIELD_VALIDATORS:
        raise ValueError(f"Unknown pricing field '{name}'")
    return FIELD_VALIDATORS[name](name, value)


class PricingStore:
    """
    Process-wide holder of the current PricingConfig.

    Updates build a new snapshot and swap the reference under a lock, so a
    reader holding `current()` never sees half of an update.
    """

    def __init__(self, defaults: Optional[PricingConfig] = None):
        self._lock = threading.Lock()
        self._defaults = defaults or PricingConfig()
        self._current = self._defaults

    def current(self) -> PricingConfig:
        return self._current

    def apply(self, **changes) -> PricingConfig:
        """
        Validate every change, then install them together as one snapshot.
        Nothing is applied if any value is rejected.
        """
        cleaned = {name: validate_pricing_field(name, value) for name, value in changes.items()}
        with self._lock:
            if cleaned:
                self._current = replace(self._current, **cleaned)
            return self._current

    def init(self, config: PricingConfig) -> PricingConfig:
        with self._lock:
            self._current = config
            return config

    def reset(self) -> PricingConfig:
        return self.init(self._defaults)

    def update_overage_rate(self, cents: int) -> PricingConfig:
        return self.apply(overage_rate_cents=cents)

    def update_guest_fee(self, cents: int) -> PricingConfig:
        return self.apply(guest_fee_cents=cents)

    def update_block_minutes(self, minutes: int) -> PricingConfig:
        return self.apply(block_minutes=minutes)

    def update_corporate_volume_pricing(self, tiers: Iterable[VolumeTier], base_price_cents: int) -> PricingConfig:
        return self.apply(corporate_tiers=tiers, corporate_base_price_cents=base_price_cents)

    def update_family_discount_percent(self, pct: int) -> PricingConfig:
        return self.apply(family_discount_percent=pct)


pricing_store = PricingStore()


def current_pricing() -> PricingConfig:
    return pricing_store.current()


# ------------------------------------------------------------------
# Persistence in club_settings
# ------------------------------------------------------------------

SETTING_KEYS = {
    "overage_rate_cents": "pricing_overage_rate_cents",
    "guest_fee_cents": "pricing_guest_fee_cents",
    "block_minutes": "pricing_overage_block_minutes",
    "corporate_base_price_cents": "pricing_corporate_base_price_cents",
    "family_discount_percent": "pricing_family_discount_percent",
    "corporate_tiers": "pricing_corporate_volume_tiers",
}


def _club_setting(db: Session, key: str) -> Optional[str]:
    row = db.query(models.ClubSetting).filter(models.ClubSetting.key == key).first()
    if not row or row.value is None:
        return None
    raw = str(row.value).strip()
    return raw or None


def _upsert_setting(db: Session, key: str, value: str) -> None:
    row = db.query(models.ClubSetting).filter(models.ClubSetting.key == key).first()
    if row:
        row.value = value
        row.updated_at = models.utcnow()
    else:
        db.add(models.ClubSetting(key=key, value=value, updated_at=models.utcnow()))


def load_pricing_from_settings(db: Session, store: PricingStore = pricing_store) -> PricingConfig:
    """
    Apply club_settings on top of the store's current values in one swap.
    Malformed or out-of-range rows are skipped with a warning.
    """
    changes = {}
    for field_name in ("overage_rate_cents", "guest_fee_cents", "block_minutes", "corporate_base_price_cents", "family_discount_percent"):
        raw = _club_setting(db, SETTING_KEYS[field_name])
        if raw is None:
            continue
        try:
            changes[field_name] = validate_pricing_field(field_name, int(float(raw)))
        except (ValueError, OverflowError):
            logger.warning("[PRICING] Skipping invalid setting %s=%r", SETTING_KEYS[field_name], raw)

    raw_tiers = _club_setting(db, SETTING_KEYS["corporate_tiers"])
    if raw_tiers:
        try:
            parsed = json.loads(raw_tiers)
            changes["corporate_tiers"] = validate_pricing_field("corporate_tiers", parsed)
        except (ValueError, KeyError, TypeError, AttributeError):
            logger.warning("[PRICING] Skipping malformed corporate tier setting")

    if not changes:
        return store.current()
    return store.apply(**changes)


def save_pricing_to_settings(db: Session, config: PricingConfig) -> None:
    _upsert_setting(db, SETTING_KEYS["overage_rate_cents"], str(config.overage_rate_cents))
    _upsert_setting(db, SETTING_KEYS["guest_fee_cents"], str(config.guest_fee_cents))
    _upsert_setting(db, SETTING_KEYS["block_minutes"], str(config.block_minutes))
    _upsert_setting(db, SETTING_KEYS["corporate_base_price_cents"], str(config.corporate_base_price_cents))
    _upsert_setting(db, SETTING_KEYS["family_discount_percent"], str(config.family_discount_percent))
    _upsert_setting(
        db,
        SETTING_KEYS["corporate_tiers"],
        json.dumps([{"min_members": t.min_members, "price_cents": t.price_cents} for t in config.corporate_tiers]),
    )
    db.commit()
