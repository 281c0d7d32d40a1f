# dbfixtures.py - shared in-memory database setup for the test modules
import unittest
from datetime import date, time, timedelta

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from clubhouse import models
from clubhouse.database import Base
from clubhouse.pricing import PricingConfig
from clubhouse.tiers import TierCache

TOMORROW = date.today() + timedelta(days=1)

# Fixed so tests do not depend on OVERAGE_RATE_CENTS / GUEST_FEE_CENTS in the environment.
TEST_PRICING = PricingConfig(
    overage_rate_cents=2500,
    guest_fee_cents=2500,
    block_minutes=30,
    family_discount_percent=20,
)


def make_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


class DatabaseTestCase(unittest.TestCase):
    def setUp(self):
        self.engine = make_engine()
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        self.db = self.SessionLocal()
        self.tier_cache = TierCache()
        self.pricing = TEST_PRICING

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Builders
    # ------------------------------------------------------------------

    def add_tier(self, name, daily_sim_minutes=60, **kwargs):
        tier = models.MembershipTier(
            name=name,
            daily_sim_minutes=daily_sim_minutes,
            daily_conf_room_minutes=kwargs.pop("daily_conf_room_minutes", 60),
            booking_window_days=kwargs.pop("booking_window_days", 7),
            guest_passes_per_month=kwargs.pop("guest_passes_per_month", 0),
            can_book_simulators=kwargs.pop("can_book_simulators", True),
            can_book_conference=kwargs.pop("can_book_conference", True),
            unlimited_access=kwargs.pop("unlimited_access", False),
            **kwargs,
        )
        self.db.add(tier)
        self.db.commit()
        return tier

    def add_member(self, email, tier="core", name=None, guest_passes_remaining=0):
        member = models.Member(
            email=email,
            name=name or email.split("@")[0].title(),
            tier=tier,
            guest_passes_remaining=guest_passes_remaining,
        )
        self.db.add(member)
        self.db.commit()
        return member

    def add_resource(self, name="Bay 1", resource_type=models.ResourceType.simulator, calendar_id=None):
        resource = models.Resource(name=name, type=resource_type, calendar_id=calendar_id)
        self.db.add(resource)
        self.db.commit()
        return resource

    def add_booking(
        self,
        member,
        resource,
        start=time(10, 0),
        duration=60,
        status=models.BookingStatus.approved,
        on_date=TOMORROW,
        external_booking_id=None,
        calendar_event_id=None,
        declared_player_count=1,
    ):
        booking = models.Booking(
            user_email=member.email,
            user_name=member.name,
            resource_id=resource.id,
            request_date=on_date,
            start_time=start,
            duration_minutes=duration,
            end_time=models.compute_end_time(start, duration),
            declared_player_count=declared_player_count,
            status=status,
            external_booking_id=external_booking_id,
            calendar_event_id=calendar_event_id,
        )
        self.db.add(booking)
        self.db.commit()
        return booking

    def add_session(self, booking, participants):
        """
        `participants` is a list of (participant_type, member_or_None) or
        (participant_type, member_or_None, extra_kwargs) tuples.
        """
        session = models.BookingSession(booking_id=booking.id, session_date=booking.request_date)
        self.db.add(session)
        self.db.flush()
        rows = []
        for entry in participants:
            ptype, member = entry[0], entry[1]
            extra = entry[2] if len(entry) > 2 else {}
            row = models.BookingParticipant(
                session_id=session.id,
                participant_type=ptype,
                display_name=(member.name if member else "Guest"),
                member_id=(member.id if member else None),
                **extra,
            )
            self.db.add(row)
            rows.append(row)
        booking.session_id = session.id
        self.db.commit()
        return session, rows
