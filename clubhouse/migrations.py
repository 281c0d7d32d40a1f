from __future__ import annotations

import logging
import os
from sqlalchemy import text

logger = logging.getLogger(__name__)


def _add_enum_value(type_name: str, label: str) -> str:
    # ALTER TYPE ... ADD VALUE has no IF NOT EXISTS guard on older Postgres.
    return f"""
        DO $$
        BEGIN
          IF EXISTS (SELECT 1 FROM pg_type WHERE typname = '{type_name}') THEN
            IF NOT EXISTS (
              SELECT 1
              FROM pg_enum e
              JOIN pg_type t ON t.oid = e.enumtypid
              WHERE t.typname = '{type_name}' AND e.enumlabel = '{label}'
            ) THEN
              ALTER TYPE {type_name} ADD VALUE '{label}';
            END IF;
          END IF;
        END $$;
        """


def run_auto_migrations(engine) -> None:
    """
    Minimal, idempotent schema migrations.

    `create_all()` creates missing tables but never adds columns or enum
    labels to existing ones. Gated behind `AUTO_MIGRATE=1`, Postgres only.
    """

    if str(os.getenv("AUTO_MIGRATE", "")).strip() not in {"1", "true", "TRUE", "yes", "YES"}:
        return

    dialect = getattr(getattr(engine, "dialect", None), "name", "") or ""
    if dialect not in {"postgresql", "postgres"}:
        return

    statements: list[str] = [
        # ----------------------------
        # Enum extensions
        # ----------------------------
        _add_enum_value("booking_status", "cancellation_pending"),
        _add_enum_value("booking_status", "attended"),
        _add_enum_value("participant_payment_status", "refunded"),
        # ----------------------------
        # Settings table
        # ----------------------------
        """
        CREATE TABLE IF NOT EXISTS club_settings (
          key text PRIMARY KEY,
          value text NULL,
          updated_at timestamptz NOT NULL DEFAULT now()
        );
        """,
        # ----------------------------
        # Tier additions
        # ----------------------------
        "ALTER TABLE membership_tiers ADD COLUMN IF NOT EXISTS daily_conf_room_minutes integer NOT NULL DEFAULT 0;",
        "ALTER TABLE membership_tiers ADD COLUMN IF NOT EXISTS can_book_wellness boolean NOT NULL DEFAULT false;",
        "ALTER TABLE membership_tiers ADD COLUMN IF NOT EXISTS unlimited_access boolean NOT NULL DEFAULT false;",
        "ALTER TABLE members ADD COLUMN IF NOT EXISTS guest_passes_remaining integer NOT NULL DEFAULT 0;",
        # ----------------------------
        # Booking additions
        # ----------------------------
        "ALTER TABLE bookings ADD COLUMN IF NOT EXISTS declared_player_count integer NOT NULL DEFAULT 1;",
        "ALTER TABLE bookings ADD COLUMN IF NOT EXISTS external_booking_id varchar(100) NULL;",
        "ALTER TABLE bookings ADD COLUMN IF NOT EXISTS calendar_event_id varchar(200) NULL;",
        "ALTER TABLE bookings ADD COLUMN IF NOT EXISTS session_id integer NULL;",
        "ALTER TABLE bookings ADD COLUMN IF NOT EXISTS staff_notes text NULL;",
        "ALTER TABLE bookings ADD COLUMN IF NOT EXISTS cancellation_pending_at timestamp NULL;",
        # ----------------------------
        # Billing additions
        # ----------------------------
        "ALTER TABLE booking_participants ADD COLUMN IF NOT EXISTS cached_fee_cents integer NOT NULL DEFAULT 0;",
        "ALTER TABLE booking_participants ADD COLUMN IF NOT EXISTS used_guest_pass boolean NOT NULL DEFAULT false;",
        "ALTER TABLE usage_ledger ADD COLUMN IF NOT EXISTS guest_fee_cents integer NOT NULL DEFAULT 0;",
        "ALTER TABLE fee_snapshots ADD COLUMN IF NOT EXISTS expires_at timestamp NULL;",
        # ----------------------------
        # Supabase hardening (PostgREST exposure)
        # ----------------------------
        # Server-side connections only, so RLS without policies denies PostgREST by default.
        "ALTER TABLE IF EXISTS public.resources ENABLE ROW LEVEL SECURITY;",
        "ALTER TABLE IF EXISTS public.membership_tiers ENABLE ROW LEVEL SECURITY;",
        "ALTER TABLE IF EXISTS public.members ENABLE ROW LEVEL SECURITY;",
        "ALTER TABLE IF EXISTS public.bookings ENABLE ROW LEVEL SECURITY;",
        "ALTER TABLE IF EXISTS public.booking_sessions ENABLE ROW LEVEL SECURITY;",
        "ALTER TABLE IF EXISTS public.booking_participants ENABLE ROW LEVEL SECURITY;",
        "ALTER TABLE IF EXISTS public.usage_ledger ENABLE ROW LEVEL SECURITY;",
        "ALTER TABLE IF EXISTS public.fee_snapshots ENABLE ROW LEVEL SECURITY;",
        "ALTER TABLE IF EXISTS public.facility_closures ENABLE ROW LEVEL SECURITY;",
        "ALTER TABLE IF EXISTS public.booking_audit_log ENABLE ROW LEVEL SECURITY;",
        "ALTER TABLE IF EXISTS public.club_settings ENABLE ROW LEVEL SECURITY;",
    ]

    with engine.begin() as conn:
        for stmt in statements:
            conn.execute(text(stmt))
    logger.info("[DB] Auto-migrations applied (%s statements)", len(statements))
