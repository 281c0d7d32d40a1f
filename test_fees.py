import unittest
from datetime import time
from unittest import mock

from sqlalchemy.exc import OperationalError

from dbfixtures import DatabaseTestCase
from clubhouse import models
from clubhouse.errors import FailureKind
from clubhouse.fees import (
    SOURCE_CACHED,
    SOURCE_CALCULATED,
    SOURCE_LEDGER,
    calculate_and_cache_participant_fees,
    clear_cached_fees,
    create_fee_snapshot_payment,
    mark_payment_refunded,
    mark_payment_succeeded,
    record_session_usage,
)
from clubhouse.integrations import MockPaymentGateway

P = models.ParticipantType


class FeeTestCase(DatabaseTestCase):
    def setUp(self):
        super().setUp()
        self.add_tier("core", daily_sim_minutes=60)
        self.bay = self.add_resource("Bay 1")
        self.alice = self.add_member("alice@club.test", tier="core")
        self.bob = self.add_member("bob@club.test", tier="core")
        self.booking = self.add_booking(
            self.alice, self.bay, duration=120, status=models.BookingStatus.pending, declared_player_count=3
        )

    def participant(self, participant_id):
        self.db.expire_all()
        return self.db.get(models.BookingParticipant, participant_id)


class ParticipantFeeTests(FeeTestCase):
    def test_priority_cached_then_ledger_then_guest_fee(self):
        carol = self.add_member("carol@club.test", tier="core")
        session, (owner, member, guest, other) = self.add_session(self.booking, [
            (P.owner, self.alice, {"cached_fee_cents": 1000}),
            (P.member, self.bob),
            (P.guest, None),
            (P.member, carol),
        ])
        self.db.add(models.UsageLedger(session_id=session.id, member_id=self.bob.id, minutes_charged=40, overage_fee_cents=2500))
        # Owner's ledger entry loses to the cached amount.
        self.db.add(models.UsageLedger(session_id=session.id, member_id=self.alice.id, minutes_charged=40, overage_fee_cents=5000))
        self.db.commit()

        result = calculate_and_cache_participant_fees(
            self.db, session.id, [owner.id, member.id, guest.id, other.id], self.pricing
        )

        self.assertTrue(result.success)
        by_id = {f.participant_id: f for f in result.fees}
        self.assertEqual((by_id[owner.id].amount_cents, by_id[owner.id].source), (1000, SOURCE_CACHED))
        self.assertEqual((by_id[member.id].amount_cents, by_id[member.id].source), (2500, SOURCE_LEDGER))
        self.assertEqual((by_id[guest.id].amount_cents, by_id[guest.id].source), (2500, SOURCE_CALCULATED))
        self.assertNotIn(other.id, by_id)
        self.assertEqual(result.total_cents, 6000)
        self.assertEqual(self.participant(guest.id).cached_fee_cents, 2500)
        self.assertEqual(self.participant(member.id).cached_fee_cents, 2500)

    def test_paid_and_waived_are_skipped(self):
        session, (owner, paid, waived) = self.add_session(self.booking, [
            (P.owner, self.alice),
            (P.guest, None, {"payment_status": models.PaymentStatus.paid}),
            (P.guest, None, {"payment_status": models.PaymentStatus.waived, "used_guest_pass": True}),
        ])
        result = calculate_and_cache_participant_fees(self.db, session.id, [owner.id, paid.id, waived.id], self.pricing)
        self.assertTrue(result.success)
        self.assertEqual(result.fees, [])
        self.assertEqual(result.total_cents, 0)

    def test_repeat_calculation_reads_cache(self):
        session, (owner, guest) = self.add_session(self.booking, [(P.owner, self.alice), (P.guest, None)])
        first = calculate_and_cache_participant_fees(self.db, session.id, [owner.id, guest.id], self.pricing)
        second = calculate_and_cache_participant_fees(self.db, session.id, [guest.id, owner.id, guest.id], self.pricing)

        self.assertEqual(first.total_cents, 2500)
        self.assertEqual(second.total_cents, first.total_cents)
        self.assertEqual([f.source for f in first.fees], [SOURCE_CALCULATED])
        self.assertEqual([f.source for f in second.fees], [SOURCE_CACHED])

    def test_participants_from_another_session_are_ignored(self):
        session, (owner,) = self.add_session(self.booking, [(P.owner, self.alice)])
        other_booking = self.add_booking(self.bob, self.bay, start=time(14, 0))
        _, (stranger,) = self.add_session(other_booking, [(P.guest, None)])
        result = calculate_and_cache_participant_fees(self.db, session.id, [owner.id, stranger.id], self.pricing)
        self.assertEqual(result.fees, [])

    def test_failure_returns_unsuccessful_result(self):
        db = mock.Mock()
        db.query.side_effect = OperationalError("select", {}, Exception("connection lost"))
        with self.assertLogs("clubhouse.fees", level="ERROR"):
            result = calculate_and_cache_participant_fees(db, 1, [1, 2], self.pricing)
        self.assertFalse(result.success)
        self.assertTrue(result.error)
        db.rollback.assert_called_once()
        db.commit.assert_not_called()

    def test_clear_cached_fees(self):
        session, (owner, guest) = self.add_session(self.booking, [
            (P.owner, self.alice, {"cached_fee_cents": 1500}),
            (P.guest, None, {"cached_fee_cents": 2500}),
        ])
        clear_cached_fees(self.db, [owner.id, guest.id])
        self.assertEqual(self.participant(owner.id).cached_fee_cents, 0)
        self.assertEqual(self.participant(guest.id).cached_fee_cents, 0)

    def test_clear_failure_is_logged(self):
        db = mock.Mock()
        db.query.side_effect = OperationalError("update", {}, Exception("connection lost"))
        with self.assertLogs("clubhouse.fees", level="WARNING"):
            clear_cached_fees(db, [1])
        db.rollback.assert_called_once()


class PrepaymentTests(FeeTestCase):
    def setUp(self):
        super().setUp()
        self.session, (self.owner, self.guest) = self.add_session(
            self.booking, [(P.owner, self.alice), (P.guest, None)]
        )
        self.gateway = MockPaymentGateway()

    def prepay(self, ids=None, gateway=None):
        return create_fee_snapshot_payment(
            self.db,
            self.session.id,
            ids if ids is not None else [self.owner.id, self.guest.id],
            "cus_alice",
            payments=gateway or self.gateway,
            pricing=self.pricing,
        )

    def snapshots(self):
        return self.db.query(models.FeeSnapshot).all()

    def test_creates_snapshot_and_intent(self):
        result = self.prepay()

        self.assertTrue(result.success)
        payload = result.value
        self.assertTrue(payload["payment_required"])
        self.assertEqual(payload["total_cents"], 2500)
        self.assertFalse(payload["reused"])
        self.assertTrue(payload["client_secret"])

        (snapshot,) = self.snapshots()
        self.assertEqual(snapshot.status, models.SnapshotStatus.pending)
        self.assertEqual(snapshot.payment_intent_id, payload["payment_intent_id"])
        self.assertEqual(snapshot.participant_fees, [{"participant_id": self.guest.id, "amount_cents": 2500}])
        self.assertIsNotNone(snapshot.expires_at)

        intent = self.gateway.intents[payload["payment_intent_id"]]
        self.assertEqual(intent["amount_cents"], 2500)
        self.assertEqual(intent["metadata"]["fee_snapshot_id"], str(snapshot.id))
        self.assertEqual(intent["metadata"]["participant_ids"], str(self.guest.id))

    def test_live_snapshot_is_reused(self):
        first = self.prepay()
        second = self.prepay()

        self.assertTrue(second.value["reused"])
        self.assertEqual(second.value["payment_intent_id"], first.value["payment_intent_id"])
        self.assertEqual(len(self.snapshots()), 1)
        self.assertEqual(len(self.gateway.intents), 1)

    def test_expired_snapshot_is_not_reused(self):
        first = self.prepay()
        snapshot = self.snapshots()[0]
        snapshot.expires_at = models.utcnow()
        self.db.commit()

        second = self.prepay()
        self.assertFalse(second.value["reused"])
        self.assertNotEqual(second.value["payment_intent_id"], first.value["payment_intent_id"])
        self.assertEqual(len(self.snapshots()), 2)

    def test_nothing_owed(self):
        result = self.prepay(ids=[self.owner.id])
        self.assertTrue(result.success)
        self.assertFalse(result.value["payment_required"])
        self.assertEqual(self.snapshots(), [])

    def test_gateway_failure_removes_snapshot(self):
        gateway = mock.Mock()
        gateway.create_intent.side_effect = RuntimeError("card processor down")
        with self.assertLogs("clubhouse.fees", level="WARNING"):
            result = self.prepay(gateway=gateway)

        self.assertFalse(result.success)
        self.assertEqual(result.kind, FailureKind.PAYMENT_FAILED)
        self.assertEqual(self.snapshots(), [])

    def test_unknown_session(self):
        result = create_fee_snapshot_payment(self.db, 9999, [1], "cus_x", payments=self.gateway, pricing=self.pricing)
        self.assertFalse(result.success)
        self.assertEqual(result.kind, FailureKind.NOT_FOUND)
        self.assertEqual(result.status_code, 404)

    def test_payment_succeeded(self):
        intent_id = self.prepay().value["payment_intent_id"]

        result = mark_payment_succeeded(self.db, intent_id)
        self.assertTrue(result.success)
        self.assertEqual(result.value.status, models.SnapshotStatus.completed)
        self.assertEqual(self.participant(self.guest.id).payment_status, models.PaymentStatus.paid)
        self.assertEqual(self.participant(self.owner.id).payment_status, models.PaymentStatus.pending)

        booking = self.db.get(models.Booking, self.booking.id)
        self.assertEqual(booking.status, models.BookingStatus.approved)

        again = mark_payment_succeeded(self.db, intent_id)
        self.assertTrue(again.success)
        audit = self.db.query(models.BookingAuditLog).filter(models.BookingAuditLog.action == "payment_succeeded").all()
        self.assertEqual(len(audit), 1)

    def test_payment_succeeded_unknown_intent(self):
        result = mark_payment_succeeded(self.db, "pi_missing")
        self.assertEqual(result.kind, FailureKind.NOT_FOUND)

    def test_payment_refunded(self):
        intent_id = self.prepay().value["payment_intent_id"]
        mark_payment_succeeded(self.db, intent_id)

        result = mark_payment_refunded(self.db, intent_id)
        self.assertTrue(result.success)
        self.assertEqual(self.participant(self.guest.id).payment_status, models.PaymentStatus.refunded)


class UsageLedgerTests(FeeTestCase):
    def setUp(self):
        super().setUp()
        self.session, _ = self.add_session(self.booking, [
            (P.owner, self.alice),
            (P.member, self.bob),
            (P.guest, None),
        ])

    def ledger(self):
        rows = self.db.query(models.UsageLedger).filter(models.UsageLedger.session_id == self.session.id).all()
        return {row.member_id: row for row in rows}

    def test_members_get_their_share(self):
        result = record_session_usage(self.db, self.session.id, self.pricing, self.tier_cache)

        self.assertTrue(result.success)
        rows = self.ledger()
        self.assertEqual(set(rows), {self.alice.id, self.bob.id})
        self.assertEqual(rows[self.alice.id].minutes_charged, 40)
        self.assertEqual(rows[self.bob.id].minutes_charged, 40)
        self.assertEqual(rows[self.alice.id].overage_fee_cents, 0)
        self.assertEqual(rows[self.bob.id].guest_fee_cents, 0)

    def test_overage_counts_prior_usage(self):
        other_bay = self.add_resource("Bay 2")
        self.add_booking(self.bob, other_bay, start=time(8, 0), duration=60)

        record_session_usage(self.db, self.session.id, self.pricing, self.tier_cache)
        rows = self.ledger()
        # Bob already used his 60 minutes, so all 40 are overage: two blocks.
        self.assertEqual(rows[self.bob.id].overage_fee_cents, 5000)
        self.assertEqual(rows[self.alice.id].overage_fee_cents, 0)

    def test_rerun_replaces_rows(self):
        record_session_usage(self.db, self.session.id, self.pricing, self.tier_cache)
        record_session_usage(self.db, self.session.id, self.pricing, self.tier_cache)
        self.assertEqual(self.db.query(models.UsageLedger).count(), 2)

    def test_unknown_session(self):
        result = record_session_usage(self.db, 9999, self.pricing, self.tier_cache)
        self.assertEqual(result.kind, FailureKind.NOT_FOUND)


if __name__ == "__main__":
    unittest.main()
