import unittest
from unittest import mock
from datetime import date, time

from dbfixtures import TOMORROW, DatabaseTestCase
from clubhouse import models
from clubhouse.booking_rules import (
    booking_window_for_tier,
    check_daily_booking_limit,
    enforce_social_tier_guest_rule,
    remaining_minutes,
)
from clubhouse.tiers import daily_participant_minutes, tier_limits


class DailyLimitTests(DatabaseTestCase):
    def setUp(self):
        super().setUp()
        self.add_tier("core", daily_sim_minutes=60, daily_conf_room_minutes=90)
        self.add_tier("social", daily_sim_minutes=0, can_book_conference=False)
        self.add_tier("vip", daily_sim_minutes=999, unlimited_access=True)
        self.add_tier("group lessons", daily_sim_minutes=0, can_book_simulators=False, can_book_conference=False)
        self.bay = self.add_resource("Bay 1")
        self.bay2 = self.add_resource("Bay 2")
        self.room = self.add_resource("Conference Room", models.ResourceType.conference_room)
        self.alice = self.add_member("alice@club.test", tier="core")

    def check(self, email, minutes, tier, resource_type="simulator"):
        return check_daily_booking_limit(self.db, email, TOMORROW, minutes, tier, resource_type, self.tier_cache)

    def test_tier_without_capability_is_refused(self):
        self.add_member("lessons@club.test", tier="group lessons")
        result = self.check("lessons@club.test", 60, "group lessons")
        self.assertFalse(result.allowed)
        self.assertIn("does not include simulator bookings", result.reason)

    def test_unknown_tier_is_refused(self):
        result = self.check("alice@club.test", 30, "platinum")
        self.assertFalse(result.allowed)

    def test_social_tier_books_everything_as_overage(self):
        self.add_member("sam@club.test", tier="social")
        result = self.check("sam@club.test", 60, "Social")
        self.assertTrue(result.allowed)
        self.assertEqual(result.included_minutes, 0)
        self.assertEqual(result.overage_minutes, 60)
        self.assertEqual(self.pricing.overage_cents(result.overage_minutes), 5000)

    def test_request_larger_than_allowance(self):
        result = self.check("alice@club.test", 90, "core")
        self.assertTrue(result.allowed)
        self.assertEqual(result.included_minutes, 60)
        self.assertEqual(result.overage_minutes, 30)
        self.assertEqual(result.remaining_minutes, 0)

    def test_allowance_already_used(self):
        self.add_booking(self.alice, self.bay, duration=60)
        result = self.check("alice@club.test", 60, "core")
        self.assertTrue(result.allowed)
        self.assertEqual(result.included_minutes, 0)
        self.assertEqual(result.overage_minutes, 60)
        self.assertEqual(result.remaining_minutes, 0)

    def test_partial_overage(self):
        self.add_booking(self.alice, self.bay, duration=30)
        result = self.check("alice@club.test", 60, "core")
        self.assertEqual(result.included_minutes, 30)
        self.assertEqual(result.overage_minutes, 30)
        self.assertEqual(self.pricing.overage_cents(result.overage_minutes), 2500)

    def test_exactly_remaining(self):
        self.add_booking(self.alice, self.bay, duration=30)
        result = self.check("alice@club.test", 30, "core")
        self.assertEqual(result.included_minutes, 30)
        self.assertEqual(result.overage_minutes, 0)
        self.assertEqual(result.remaining_minutes, 0)

    def test_one_minute_left(self):
        self.add_booking(self.alice, self.bay, duration=59)
        result = self.check("alice@club.test", 30, "core")
        self.assertEqual(result.included_minutes, 1)
        self.assertEqual(result.overage_minutes, 29)
        self.assertEqual(self.pricing.overage_cents(result.overage_minutes), 2500)

    def test_cancelled_and_other_days_do_not_count(self):
        self.add_booking(self.alice, self.bay, duration=60, status=models.BookingStatus.cancelled)
        self.add_booking(self.alice, self.bay2, duration=60, status=models.BookingStatus.declined)
        self.add_booking(self.alice, self.bay, duration=60, on_date=date(2020, 1, 1))
        result = self.check("alice@club.test", 60, "core")
        self.assertEqual(result.included_minutes, 60)
        self.assertEqual(result.overage_minutes, 0)

    def test_unlimited_tier(self):
        self.add_member("vic@club.test", tier="vip")
        result = self.check("vic@club.test", 480, "vip")
        self.assertTrue(result.allowed)
        self.assertEqual(result.included_minutes, 480)
        self.assertEqual(result.overage_minutes, 0)
        self.assertEqual(result.remaining_minutes, 999)

    def test_conference_room_uses_its_own_allowance(self):
        self.add_booking(self.alice, self.bay, duration=60)
        result = self.check("alice@club.test", 120, "core", "conference_room")
        self.assertEqual(result.included_minutes, 90)
        self.assertEqual(result.overage_minutes, 30)

        self.add_member("sam@club.test", tier="social")
        refused = self.check("sam@club.test", 30, "social", "conference_room")
        self.assertFalse(refused.allowed)
        self.assertIn("conference room", refused.reason)

    def test_participant_minutes_count_towards_usage(self):
        bob = self.add_member("bob@club.test", tier="core")
        booking = self.add_booking(bob, self.bay2, start=time(14, 0), duration=90, declared_player_count=2)
        session, _ = self.add_session(booking, [
            (models.ParticipantType.owner, bob),
            (models.ParticipantType.member, self.alice),
        ])
        self.db.add(models.UsageLedger(session_id=session.id, member_id=self.alice.id, minutes_charged=45))
        self.db.commit()

        self.assertEqual(daily_participant_minutes(self.db, "alice@club.test", TOMORROW), 45)
        result = self.check("alice@club.test", 30, "core")
        self.assertEqual(result.included_minutes, 15)
        self.assertEqual(result.overage_minutes, 15)
        # Bob's own booking is not counted twice through the ledger.
        self.assertEqual(daily_participant_minutes(self.db, "bob@club.test", TOMORROW), 0)

    def test_remaining_minutes(self):
        self.add_booking(self.alice, self.bay, duration=45)
        self.assertEqual(remaining_minutes(self.db, "alice@club.test", TOMORROW, "core", cache=self.tier_cache), 15)
        self.assertEqual(remaining_minutes(self.db, "alice@club.test", TOMORROW, "vip", cache=self.tier_cache), 999)
        self.assertEqual(remaining_minutes(self.db, "alice@club.test", TOMORROW, "social", cache=self.tier_cache), 0)


class TierCacheTests(DatabaseTestCase):
    def test_cached_until_invalidated(self):
        tier = self.add_tier("core", daily_sim_minutes=60)
        self.assertEqual(tier_limits(self.db, "Core", self.tier_cache).daily_sim_minutes, 60)

        tier.daily_sim_minutes = 120
        self.db.commit()
        self.assertEqual(tier_limits(self.db, "core", self.tier_cache).daily_sim_minutes, 60)

        self.tier_cache.invalidate(" CORE ")
        self.assertNotIn("core", self.tier_cache)
        self.assertEqual(tier_limits(self.db, "core", self.tier_cache).daily_sim_minutes, 120)

    def test_clear(self):
        self.add_tier("core")
        self.add_tier("premium", daily_sim_minutes=90)
        tier_limits(self.db, "core", self.tier_cache)
        tier_limits(self.db, "premium", self.tier_cache)
        self.tier_cache.clear()
        self.assertNotIn("core", self.tier_cache)
        self.assertNotIn("premium", self.tier_cache)

    def test_missing_tier_is_not_cached(self):
        limits = tier_limits(self.db, "ghost", self.tier_cache)
        self.assertEqual(limits.daily_sim_minutes, 0)
        self.assertFalse(limits.can_book_simulators)
        self.assertNotIn("ghost", self.tier_cache)

    def test_load_overlapping_invalidation_is_not_stored(self):
        row = self.add_tier("core", daily_sim_minutes=60)

        def first():
            # An admin edits the tier while this read is in flight.
            self.tier_cache.invalidate("core")
            return row

        db = mock.Mock()
        db.query.return_value.filter.return_value.first.side_effect = first

        self.assertEqual(self.tier_cache.get(db, "core").daily_sim_minutes, 60)
        self.assertNotIn("core", self.tier_cache)

        self.tier_cache.get(self.db, "core")
        self.assertIn("core", self.tier_cache)


class GuestRuleTests(DatabaseTestCase):
    def setUp(self):
        super().setUp()
        self.add_tier("social", daily_sim_minutes=0, guest_passes_per_month=0)
        self.add_tier("core", daily_sim_minutes=60, guest_passes_per_month=4)

    def test_social_member_cannot_bring_guests(self):
        limits = tier_limits(self.db, "social", self.tier_cache)
        reason = enforce_social_tier_guest_rule(limits, ["member", models.ParticipantType.guest])
        self.assertIsNotNone(reason)
        self.assertIn("0 guest passes", reason)

    def test_social_member_with_members_only(self):
        limits = tier_limits(self.db, "social", self.tier_cache)
        self.assertIsNone(enforce_social_tier_guest_rule(limits, ["member"]))

    def test_other_tiers_may_bring_guests(self):
        limits = tier_limits(self.db, "core", self.tier_cache)
        self.assertIsNone(enforce_social_tier_guest_rule(limits, ["guest", "guest"]))

    def test_booking_window(self):
        limits = tier_limits(self.db, "core", self.tier_cache)
        self.assertEqual(booking_window_for_tier(limits, today=date(2026, 3, 1)), date(2026, 3, 8))


if __name__ == "__main__":
    unittest.main()
