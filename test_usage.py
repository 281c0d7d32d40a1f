import unittest

from clubhouse.pricing import PricingConfig
from clubhouse.usage import (
    Participant,
    allocate,
    estimate_booking_fees,
    format_cents,
    overage_for,
    total_session_cost,
)

PRICING = PricingConfig(overage_rate_cents=2500, guest_fee_cents=2500, block_minutes=30)


def owner(member_id=1, email="owner@club.test"):
    return Participant(participant_type="owner", display_name="Owner", member_id=member_id, email=email)


def member(member_id, email=None):
    return Participant(participant_type="member", display_name=f"Member {member_id}", member_id=member_id, email=email)


def guest(name="Guest"):
    return Participant(participant_type="guest", display_name=name)


class AllocationTests(unittest.TestCase):
    def test_remainder_goes_to_first_participants(self):
        allocations = allocate(61, [owner(), member(2), guest()])
        self.assertEqual([a.minutes_allocated for a in allocations], [21, 20, 20])

    def test_remainder_to_owner(self):
        allocations = allocate(62, [member(2), owner(), guest()], assign_remainder_to_owner=True)
        self.assertEqual([a.minutes_allocated for a in allocations], [20, 22, 20])

    def test_remainder_to_first_when_no_owner(self):
        allocations = allocate(61, [member(2), member(3)], assign_remainder_to_owner=True)
        self.assertEqual([a.minutes_allocated for a in allocations], [31, 30])

    def test_declared_slots_divide_time(self):
        # Four players declared, two registered: each registered player gets a quarter.
        allocations = allocate(120, [owner(), member(2)], declared_slots=4)
        self.assertEqual([a.minutes_allocated for a in allocations], [30, 30])

    def test_declared_slots_below_count_ignored(self):
        allocations = allocate(60, [owner(), member(2)], declared_slots=1)
        self.assertEqual([a.minutes_allocated for a in allocations], [30, 30])

    def test_empty_and_zero(self):
        self.assertEqual(allocate(60, []), [])
        allocations = allocate(0, [owner(), guest()])
        self.assertEqual([a.minutes_allocated for a in allocations], [0, 0])

    def test_single_participant_gets_everything(self):
        allocations = allocate(61, [owner()])
        self.assertEqual(allocations[0].minutes_allocated, 61)

    def test_sum_is_preserved(self):
        for total in (1, 7, 59, 60, 61, 89, 90, 119, 121, 480):
            for count in (1, 2, 3, 4, 5):
                people = [owner()] + [member(i + 2) for i in range(count - 1)]
                with self.subTest(total=total, count=count):
                    allocations = allocate(total, people)
                    self.assertEqual(sum(a.minutes_allocated for a in allocations), total)
                    shares = [a.minutes_allocated for a in allocations]
                    self.assertLessEqual(max(shares) - min(shares), 1)


class OverageTests(unittest.TestCase):
    def test_within_allowance(self):
        result = overage_for(45, 60, PRICING)
        self.assertFalse(result.has_overage)
        self.assertEqual(result.overage_fee_cents, 0)

    def test_exactly_at_allowance(self):
        self.assertFalse(overage_for(60, 60, PRICING).has_overage)

    def test_unlimited_tier(self):
        result = overage_for(5000, 999, PRICING)
        self.assertFalse(result.has_overage)
        self.assertEqual(result.overage_minutes, 0)

    def test_one_minute_over_bills_a_block(self):
        result = overage_for(61, 60, PRICING)
        self.assertTrue(result.has_overage)
        self.assertEqual(result.overage_minutes, 1)
        self.assertEqual(result.overage_fee_cents, 2500)

    def test_zero_allowance(self):
        result = overage_for(60, 0, PRICING)
        self.assertEqual(result.overage_minutes, 60)
        self.assertEqual(result.overage_fee_cents, 5000)


class SessionCostTests(unittest.TestCase):
    def test_guests_are_skipped(self):
        allocations = allocate(120, [owner(member_id=1), guest(), guest()])
        # Owner has 40 minutes within a 60 minute allowance; guests pay the flat fee elsewhere.
        self.assertEqual(total_session_cost(allocations, {1: 60}, PRICING), 0)

    def test_unknown_member_has_no_allowance(self):
        allocations = allocate(60, [owner(member_id=1), member(7)])
        # Member 7 has no allowance entry, so all 30 minutes are billed.
        self.assertEqual(total_session_cost(allocations, {1: 60}, PRICING), 2500)

    def test_email_keys(self):
        allocations = allocate(90, [Participant(participant_type="owner", email="Owner@Club.Test")])
        self.assertEqual(total_session_cost(allocations, {"owner@club.test": 60}, PRICING), 2500)

    def test_shared_session(self):
        # 120 minutes across owner (60 allowance) and a 0-allowance member: 60 each.
        allocations = allocate(120, [owner(member_id=1), member(2)])
        self.assertEqual(total_session_cost(allocations, {1: 60, 2: 0}, PRICING), 5000)


class EstimateTests(unittest.TestCase):
    def test_solo_within_allowance(self):
        estimate = estimate_booking_fees(60, 1, 0, 120, pricing=PRICING)
        self.assertEqual(estimate.total_fee_cents, 0)
        self.assertEqual(estimate.guest_count, 0)

    def test_solo_pushes_over_allowance(self):
        estimate = estimate_booking_fees(60, 1, 100, 120, pricing=PRICING)
        self.assertEqual(estimate.overage_minutes, 40)
        self.assertEqual(estimate.overage_fee_cents, 5000)
        self.assertEqual(estimate.total_fee_cents, 5000)

    def test_guest_fee(self):
        estimate = estimate_booking_fees(120, 2, 0, 120, pricing=PRICING)
        self.assertEqual(estimate.overage_minutes, 0)
        self.assertEqual(estimate.guest_count, 1)
        self.assertEqual(estimate.guest_fees_cents, 2500)
        self.assertEqual(estimate.total_fee_cents, 2500)

    def test_guests_and_overage(self):
        estimate = estimate_booking_fees(120, 3, 30, 60, pricing=PRICING)
        self.assertEqual(estimate.guest_count, 2)
        self.assertEqual(estimate.guest_fees_cents, 5000)
        self.assertEqual(estimate.overage_minutes, 10)
        self.assertEqual(estimate.overage_fee_cents, 2500)
        self.assertEqual(estimate.total_fee_cents, 7500)

    def test_already_over_allowance_only_bills_new_minutes(self):
        estimate = estimate_booking_fees(30, 1, 90, 60, pricing=PRICING)
        self.assertEqual(estimate.overage_minutes, 30)
        self.assertEqual(estimate.overage_fee_cents, 2500)

    def test_conference_room_is_not_split(self):
        estimate = estimate_booking_fees(60, 1, 0, 30, is_conference_room=True, pricing=PRICING)
        self.assertEqual(estimate.overage_minutes, 30)
        self.assertEqual(estimate.total_fee_cents, 2500)

    def test_unlimited_allowance(self):
        estimate = estimate_booking_fees(240, 1, 300, 999, pricing=PRICING)
        self.assertEqual(estimate.total_fee_cents, 0)

    def test_zero_duration(self):
        estimate = estimate_booking_fees(0, 3, 0, 60, pricing=PRICING)
        self.assertEqual(estimate.total_fee_cents, 0)
        self.assertEqual(estimate.guest_fees_cents, 0)

    def test_format_cents(self):
        self.assertEqual(format_cents(2500), "$25.00")
        self.assertEqual(format_cents(7550), "$75.50")


if __name__ == "__main__":
    unittest.main()
