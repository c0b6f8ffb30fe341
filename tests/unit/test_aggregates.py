#!/usr/bin/env python3
"""
Session Aggregate Unit Tests

Tests for the ParkingSession state machine and its domain events.
"""

import unittest
from datetime import datetime, timedelta

from parkflow.domain.aggregates import ParkingSession, SessionStateError, ALLOWED_TRANSITIONS
from parkflow.domain.models import (
    SessionStatus, PaymentStatus, CloseReason, RateRules, LicensePlate,
    SessionOpenedEvent, SessionClosedEvent, SessionExitPendingEvent,
    SessionPaidEvent, SessionRepricedEvent, SessionCorrectedEvent, SessionErrorEvent
)
from parkflow.domain.services import compute_fee

ENTRY = datetime(2024, 1, 1, 10, 0)


class TestParkingSession(unittest.TestCase):

    def setUp(self):
        self.session = ParkingSession.open("12가 3456", ENTRY, "lane-in", "plan-1")

    def price(self, minutes: int):
        return compute_fee(ENTRY, ENTRY + timedelta(minutes=minutes), RateRules())

    def test_open_normalizes_plate_and_raises_event(self):
        self.assertEqual(self.session.plate_no, "12가3456")
        self.assertEqual(self.session.status, SessionStatus.PARKING)
        events = self.session.clear_events()
        self.assertEqual(len(events), 1)
        self.assertIsInstance(events[0], SessionOpenedEvent)
        self.assertFalse(self.session.has_changes)

    def test_priced_exit_waits_for_payment(self):
        status = self.session.record_exit_fee(ENTRY + timedelta(minutes=65), "lane-out", self.price(65))
        self.assertEqual(status, SessionStatus.EXIT_PENDING)
        self.assertEqual(self.session.final_fee, 1500)
        self.assertEqual(self.session.payment_status, PaymentStatus.PENDING)
        self.assertTrue(self.session.is_waiting_at_exit)
        self.assertIsInstance(self.session.clear_events()[-1], SessionExitPendingEvent)

    def test_free_exit_closes(self):
        status = self.session.record_exit_fee(ENTRY + timedelta(minutes=20), "lane-out", self.price(20))
        self.assertEqual(status, SessionStatus.CLOSED)
        self.assertEqual(self.session.close_reason, CloseReason.FREE_EXIT)
        self.assertIsInstance(self.session.clear_events()[-1], SessionClosedEvent)

    def test_membership_close_zeroes_fee(self):
        self.session.close_for_membership(ENTRY + timedelta(hours=5), "lane-out", "m-1")
        self.assertTrue(self.session.is_closed)
        self.assertEqual(self.session.final_fee, 0)
        self.assertEqual(self.session.close_reason, CloseReason.MEMBERSHIP_VALID)
        self.assertEqual(self.session.exit_lane_id, "lane-out")

    def test_membership_close_drops_earlier_pricing(self):
        self.session.record_exit_fee(ENTRY + timedelta(minutes=65), "lane-out", self.price(65))
        self.assertEqual(self.session.final_fee, 1500)

        self.session.close_for_membership(ENTRY + timedelta(minutes=70), "lane-out", "m-1")
        self.assertEqual(self.session.close_reason, CloseReason.MEMBERSHIP_VALID)
        self.assertEqual(self.session.final_fee, 0)
        self.assertEqual(self.session.raw_fee, 0)
        self.assertEqual(self.session.discount_total, 0)
        self.assertIsNone(self.session.fee_breakdown)

    def test_prepaid_then_exit(self):
        self.session.confirm_payment(0, ENTRY + timedelta(minutes=10))
        self.assertEqual(self.session.status, SessionStatus.PAID)
        self.session.close_after_payment(ENTRY + timedelta(minutes=15), "lane-out")
        self.assertEqual(self.session.close_reason, CloseReason.NORMAL_EXIT)
        types = [type(e) for e in self.session.clear_events()]
        self.assertEqual(types, [SessionOpenedEvent, SessionPaidEvent, SessionClosedEvent])

    def test_close_after_payment_requires_paid(self):
        with self.assertRaises(SessionStateError):
            self.session.close_after_payment(ENTRY, "lane-out")

    def test_double_payment_rejected(self):
        self.session.confirm_payment(1000, ENTRY)
        with self.assertRaises(SessionStateError):
            self.session.confirm_payment(1000, ENTRY)

    def test_closed_is_terminal(self):
        self.session.force_close(ENTRY + timedelta(hours=1), "cleanup")
        self.assertEqual(self.session.close_reason, CloseReason.FORCE_CLOSE)
        with self.assertRaises(SessionStateError):
            self.session.flag_error("late")
        with self.assertRaises(SessionStateError):
            self.session.confirm_payment(100, ENTRY)
        with self.assertRaises(SessionStateError):
            self.session.reprice(self.price(65))
        self.assertEqual(ALLOWED_TRANSITIONS[SessionStatus.CLOSED], set())

    def test_force_close_from_error_is_recovery(self):
        self.session.flag_error("camera misread")
        self.assertEqual(self.session.status, SessionStatus.ERROR)
        self.session.force_close(ENTRY + timedelta(hours=1), "operator")
        self.assertEqual(self.session.close_reason, CloseReason.ERROR_RECOVERY)
        self.assertIn(SessionErrorEvent, [type(e) for e in self.session.clear_events()])

    def test_error_cannot_be_paid(self):
        self.session.flag_error("camera misread")
        with self.assertRaises(SessionStateError):
            self.session.confirm_payment(100, ENTRY)

    def test_reprice_to_zero_releases_pending_session(self):
        self.session.record_exit_fee(ENTRY + timedelta(minutes=65), "lane-out", self.price(65))
        self.assertTrue(self.session.reprice(self.price(20)))
        self.assertEqual(self.session.close_reason, CloseReason.FREE_EXIT)
        self.assertEqual(self.session.payment_status, PaymentStatus.NONE)

    def test_reprice_keeps_pending_session_open(self):
        self.session.record_exit_fee(ENTRY + timedelta(minutes=65), "lane-out", self.price(65))
        self.assertFalse(self.session.reprice(self.price(120)))
        self.assertEqual(self.session.status, SessionStatus.EXIT_PENDING)
        self.assertEqual(self.session.final_fee, 4000)
        self.assertIsInstance(self.session.clear_events()[-1], SessionRepricedEvent)

    def test_correction(self):
        self.session.correct("misread", plate_no="12가3457", entry_at=ENTRY - timedelta(minutes=5))
        self.assertEqual(self.session.plate_no, "12가3457")
        self.assertEqual(self.session.entry_at, ENTRY - timedelta(minutes=5))
        event = self.session.clear_events()[-1]
        self.assertIsInstance(event, SessionCorrectedEvent)
        self.assertEqual(event.details['changes']['plate_no'], "12가3457")

    def test_correction_needs_a_field(self):
        with self.assertRaises(ValueError):
            self.session.correct("nothing")

    def test_restore_raises_no_events(self):
        restored = ParkingSession.restore({
            'id': self.session.id,
            'plate_no': self.session.plate_no,
            'entry_at': ENTRY,
            'status': SessionStatus.EXIT_PENDING,
            'final_fee': 1500,
            'version': 3,
        })
        self.assertEqual(restored, self.session)
        self.assertEqual(restored.final_fee, 1500)
        self.assertEqual(restored.version, 3)
        self.assertFalse(restored.has_changes)


class TestLicensePlate(unittest.TestCase):

    def test_normalization(self):
        self.assertEqual(LicensePlate(" 서울 12가-3456 ").value, "서울12가3456")
        self.assertEqual(LicensePlate("ab 12 cd").value, "AB12CD")

    def test_korean_format_is_informational(self):
        self.assertTrue(LicensePlate("123가4567").is_korean_format)
        self.assertFalse(LicensePlate("ABC123").is_korean_format)

    def test_empty_plate_rejected(self):
        with self.assertRaises(ValueError):
            LicensePlate(" -- ")


if __name__ == "__main__":
    unittest.main()
