#!/usr/bin/env python3
"""
Session Service Unit Tests

Tests for entry/exit processing, payments, discounts and operator
operations over the in-memory unit of work.
"""

import threading
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

from parkflow.application.dtos import PlateCaptureDTO
from parkflow.application.session_service import (
    ServiceFactory, EntryResult, ExitResult,
    SessionNotFoundError, SessionClosedError, SessionAlreadyPaidError,
    InvalidSessionTransitionError, RatePlanNotFoundError, DiscountRuleNotFoundError,
    DiscountNotStackableError, DiscountLimitExceededError, MissingExitTimeError
)
from parkflow.domain.models import (
    SessionStatus, CloseReason, BarrierReason, PaymentMethod,
    RatePlan, RateRules, TariffTier, DiscountRule, DiscountType, Membership
)
from parkflow.domain.services import FeeComputationService
from parkflow.domain.strategies import RateResolver

ENTRY = datetime(2024, 1, 1, 10, 0)
PLATE = "12가3456"


class SessionServiceTestCase(unittest.TestCase):
    """Wires a service over a shared in-memory store with one active plan"""

    def setUp(self):
        self.notifier = Mock()
        self.service = ServiceFactory.create_in_memory_service(notifier=self.notifier)
        self.store = self.service.uow_factory()
        self.plan = self.store.rate_plans.add(RatePlan("Standard", RateRules(), is_active=True))
        self.store.barriers.register("lane-out", "gate-1")

    def enter(self, plate: str = PLATE, at: datetime = ENTRY) -> EntryResult:
        return self.service.process_entry(plate, "lane-in", at, device_id="cam-1")

    def leave(self, minutes: int, plate: str = PLATE) -> ExitResult:
        return self.service.process_exit(plate, "lane-out", ENTRY + timedelta(minutes=minutes), device_id="cam-2")

    def stored(self, session_id: str):
        return self.store.sessions.get(session_id)


class TestEntryProcessing(SessionServiceTestCase):

    def test_entry_opens_session_with_active_plan(self):
        result = self.enter()
        self.assertTrue(result.session_created)
        session = self.stored(result.session_id)
        self.assertEqual(session.status, SessionStatus.PARKING)
        self.assertEqual(session.rate_plan_id, self.plan.id)
        self.assertEqual(session.entry_lane_id, "lane-in")

    def test_duplicate_entry_is_suppressed(self):
        first = self.enter()
        second = self.enter(" 12가 3456", ENTRY + timedelta(minutes=1))
        self.assertFalse(second.session_created)
        self.assertIsNone(second.session_id)
        self.assertEqual(self.store.sessions.count(), 1)
        events = self.store.plate_events.list_by_plate(PLATE)
        self.assertEqual([e.session_id for e in events], [first.session_id, None])

    def test_entry_without_active_plan(self):
        self.store.rate_plans.add(RatePlan("Draft", RateRules(), is_active=False, id=self.plan.id))
        result = self.enter()
        self.assertIsNone(self.stored(result.session_id).rate_plan_id)
        exit_result = self.leave(300)
        self.assertEqual(exit_result.final_fee, 0)
        self.assertEqual(exit_result.close_reason, CloseReason.FREE_EXIT)

    def test_concurrent_entries_create_one_session(self):
        start = threading.Barrier(8)
        results = []

        def capture():
            start.wait()
            results.append(self.enter())

        threads = [threading.Thread(target=capture) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(sum(1 for r in results if r.session_created), 1)
        self.assertEqual(self.store.sessions.count(), 1)

    def test_capture_dispatch(self):
        capture = PlateCaptureDTO(
            device_id="cam-1", lane_id="lane-in", direction="ENTRY",
            plate_no=PLATE, captured_at=ENTRY, confidence=0.97,
        )
        result = self.service.process_capture(capture)
        self.assertIsInstance(result, EntryResult)
        exit_capture = capture.model_copy(update={
            'direction': "EXIT", 'lane_id': "lane-out", 'captured_at': ENTRY + timedelta(minutes=65),
        })
        self.assertIsInstance(self.service.process_capture(exit_capture), ExitResult)


class TestExitProcessing(SessionServiceTestCase):

    def test_orphan_exit(self):
        result = self.leave(10)
        self.assertIsNone(result.session_id)
        self.assertIsNone(result.new_state)
        self.assertIsNone(result.barrier_command)
        self.assertEqual(self.store.sessions.count(), 0)
        events = self.store.plate_events.list_by_plate(PLATE)
        self.assertEqual(len(events), 1)
        self.assertIsNone(events[0].session_id)

    def test_chargeable_exit_waits_for_payment(self):
        session_id = self.enter().session_id
        result = self.leave(65)
        self.assertEqual(result.session_id, session_id)
        self.assertEqual(result.new_state, SessionStatus.EXIT_PENDING)
        self.assertEqual(result.final_fee, 1500)
        self.assertEqual(result.breakdown.chargeable_minutes, 35)
        self.assertIsNone(result.barrier_command)
        self.assertEqual(self.store.barrier_commands.all(), [])

    def test_free_exit_opens_barrier(self):
        session_id = self.enter().session_id
        result = self.leave(25)
        self.assertEqual(result.new_state, SessionStatus.CLOSED)
        self.assertEqual(result.close_reason, CloseReason.FREE_EXIT)
        command = result.barrier_command
        self.assertEqual(command.device_id, "gate-1")
        self.assertEqual(command.reason, BarrierReason.FREE_EXIT)
        self.assertEqual(command.correlation_id, session_id)
        self.assertEqual(self.store.barrier_commands.list_for_session(session_id), [command])
        self.notifier.publish_barrier_command.assert_called_once_with(command)

    def test_membership_overrides_billing(self):
        self.store.memberships.add(Membership(PLATE, ENTRY - timedelta(days=30), ENTRY + timedelta(days=30)))
        self.enter()
        result = self.leave(600)
        self.assertEqual(result.new_state, SessionStatus.CLOSED)
        self.assertEqual(result.final_fee, 0)
        self.assertEqual(result.close_reason, CloseReason.MEMBERSHIP_VALID)
        self.assertEqual(result.barrier_command.reason, BarrierReason.MEMBERSHIP_VALID)

    def test_membership_checked_at_exit_instant(self):
        self.store.memberships.add(Membership(PLATE, ENTRY - timedelta(days=30), ENTRY + timedelta(minutes=30)))
        self.enter()
        result = self.leave(65)
        self.assertEqual(result.new_state, SessionStatus.EXIT_PENDING)

    def test_offset_captures_against_naive_reference_data(self):
        seoul = timezone(timedelta(hours=9))
        service = ServiceFactory.create_in_memory_service(
            fee_service=FeeComputationService(RateResolver(timezone=seoul))
        )
        store = service.uow_factory()
        store.rate_plans.add(RatePlan("Standard", RateRules(), is_active=True))
        store.memberships.add(Membership("34나5678", ENTRY - timedelta(days=30), ENTRY + timedelta(days=1)))

        service.process_entry(PLATE, "lane-in", ENTRY.replace(tzinfo=seoul))
        # 02:05 UTC is 11:05 in Seoul
        priced = service.process_exit(PLATE, "lane-out", datetime(2024, 1, 1, 2, 5, tzinfo=timezone.utc))
        self.assertEqual(priced.breakdown.parking_minutes, 65)
        self.assertEqual(priced.final_fee, 1500)
        self.assertEqual(store.sessions.get(priced.session_id).entry_at, ENTRY)

        service.process_entry("34나5678", "lane-in", ENTRY.replace(tzinfo=seoul))
        member = service.process_exit("34나5678", "lane-out", (ENTRY + timedelta(hours=3)).replace(tzinfo=seoul))
        self.assertEqual(member.close_reason, CloseReason.MEMBERSHIP_VALID)

    def test_exit_lane_without_barrier(self):
        self.enter()
        result = self.service.process_exit(PLATE, "lane-side", ENTRY + timedelta(minutes=5))
        self.assertEqual(result.new_state, SessionStatus.CLOSED)
        self.assertIsNone(result.barrier_command)

    def test_second_exit_after_pending_is_orphan(self):
        self.enter()
        self.leave(65)
        self.assertIsNone(self.leave(70).session_id)

    def test_notifier_failure_does_not_undo_transition(self):
        self.notifier.publish_domain_events.side_effect = RuntimeError("broker down")
        self.notifier.publish_barrier_command.side_effect = RuntimeError("broker down")
        session_id = self.enter().session_id
        result = self.leave(10)
        self.assertEqual(result.new_state, SessionStatus.CLOSED)
        self.assertEqual(self.stored(session_id).status, SessionStatus.CLOSED)
        self.assertEqual(len(self.store.barrier_commands.all()), 1)

    def test_events_published_after_transition(self):
        self.enter()
        self.leave(65)
        published = [
            event.event_type
            for call in self.notifier.publish_domain_events.call_args_list
            for event in call.args[0]
        ]
        self.assertEqual(published, ["session.opened", "session.exit_pending"])


class TestPayments(SessionServiceTestCase):

    def test_payment_at_exit_closes_and_opens_barrier(self):
        session_id = self.enter().session_id
        self.leave(65)
        result = self.service.confirm_payment(session_id, 1500, PaymentMethod.CARD, ENTRY + timedelta(minutes=67))
        self.assertEqual(result.status, SessionStatus.CLOSED)
        self.assertEqual(result.close_reason, CloseReason.NORMAL_EXIT)
        self.assertEqual(result.barrier_command.reason, BarrierReason.PAYMENT_CONFIRMED)
        self.assertEqual(result.barrier_command.lane_id, "lane-out")
        payments = self.store.payments.list_for_session(session_id)
        self.assertEqual([(p.amount, p.method) for p in payments], [(1500, PaymentMethod.CARD)])

    def test_payment_without_auto_close_waits_for_exit_capture(self):
        self.service.config['close_on_payment_at_exit'] = False
        session_id = self.enter().session_id
        self.leave(65)
        result = self.service.confirm_payment(session_id, 1500)
        self.assertEqual(result.status, SessionStatus.PAID)
        self.assertIsNone(result.barrier_command)

        exit_result = self.leave(70)
        self.assertEqual(exit_result.session_id, session_id)
        self.assertEqual(exit_result.close_reason, CloseReason.NORMAL_EXIT)
        self.assertEqual(exit_result.barrier_command.reason, BarrierReason.PAYMENT_CONFIRMED)

    def test_prepayment_before_exit(self):
        session_id = self.enter().session_id
        self.assertEqual(self.service.confirm_payment(session_id, 2000).status, SessionStatus.PAID)
        result = self.leave(90)
        self.assertEqual(result.new_state, SessionStatus.CLOSED)
        self.assertEqual(result.close_reason, CloseReason.NORMAL_EXIT)

    def test_payment_rejections(self):
        session_id = self.enter().session_id
        self.service.confirm_payment(session_id, 1000)
        with self.assertRaises(SessionAlreadyPaidError):
            self.service.confirm_payment(session_id, 1000)
        self.leave(65)
        with self.assertRaises(SessionClosedError):
            self.service.confirm_payment(session_id, 1000)
        with self.assertRaises(SessionNotFoundError):
            self.service.confirm_payment("missing", 1000)


class TestDiscounts(SessionServiceTestCase):

    def setUp(self):
        super().setUp()
        self.shop = self.store.discount_rules.add(DiscountRule("Shop", DiscountType.AMOUNT, 500))
        self.once = self.store.discount_rules.add(
            DiscountRule("Validation", DiscountType.AMOUNT, 300, max_apply_count=1)
        )
        self.exclusive = self.store.discount_rules.add(
            DiscountRule("Staff", DiscountType.PERCENT, 50, is_stackable=False)
        )
        self.free = self.store.discount_rules.add(DiscountRule("VIP", DiscountType.FREE_ALL, 0))

    def test_discount_applied_while_parking_counts_at_exit(self):
        session_id = self.enter().session_id
        result = self.service.apply_discount(session_id, self.shop.id, applied_by="desk")
        self.assertEqual(result.status, SessionStatus.PARKING)
        exit_result = self.leave(65)
        self.assertEqual(exit_result.breakdown.raw_fee, 1500)
        self.assertEqual(exit_result.breakdown.discount_total, 500)
        self.assertEqual(exit_result.final_fee, 1000)
        applications = self.store.discount_applications.list_for_session(session_id)
        self.assertEqual(applications[0].applied_by, "desk")

    def test_discount_on_pending_session_reprices(self):
        session_id = self.enter().session_id
        self.leave(65)
        result = self.service.apply_discount(session_id, self.shop.id, value_override=1000)
        self.assertEqual(result.status, SessionStatus.EXIT_PENDING)
        self.assertEqual(result.final_fee, 500)
        self.assertEqual(self.store.discount_applications.list_for_session(session_id)[0].applied_value, 1000)

    def test_discount_to_zero_releases_vehicle(self):
        session_id = self.enter().session_id
        self.leave(65)
        result = self.service.apply_discount(session_id, self.free.id)
        self.assertEqual(result.status, SessionStatus.CLOSED)
        self.assertEqual(result.close_reason, CloseReason.FREE_EXIT)
        self.assertEqual(result.barrier_command.reason, BarrierReason.FREE_EXIT)

    def test_non_stackable_rule_cannot_join(self):
        session_id = self.enter().session_id
        self.service.apply_discount(session_id, self.shop.id)
        with self.assertRaises(DiscountNotStackableError):
            self.service.apply_discount(session_id, self.exclusive.id)

    def test_nothing_joins_non_stackable_rule(self):
        session_id = self.enter().session_id
        self.service.apply_discount(session_id, self.exclusive.id)
        with self.assertRaises(DiscountNotStackableError):
            self.service.apply_discount(session_id, self.shop.id)

    def test_stackable_rule_repeats(self):
        session_id = self.enter().session_id
        self.service.apply_discount(session_id, self.shop.id)
        self.service.apply_discount(session_id, self.shop.id)
        self.assertEqual(self.leave(65).final_fee, 500)

    def test_apply_count_limit(self):
        session_id = self.enter().session_id
        self.service.apply_discount(session_id, self.once.id)
        with self.assertRaises(DiscountLimitExceededError):
            self.service.apply_discount(session_id, self.once.id)
        self.assertEqual(len(self.store.discount_applications.list_for_session(session_id)), 1)

    def test_unknown_rule(self):
        session_id = self.enter().session_id
        with self.assertRaises(DiscountRuleNotFoundError):
            self.service.apply_discount(session_id, "missing")

    def test_discount_on_paid_or_closed_session(self):
        session_id = self.enter().session_id
        self.service.confirm_payment(session_id, 1000)
        with self.assertRaises(SessionAlreadyPaidError):
            self.service.apply_discount(session_id, self.shop.id)
        self.leave(65)
        with self.assertRaises(SessionClosedError):
            self.service.apply_discount(session_id, self.shop.id)


class TestOperatorOperations(SessionServiceTestCase):

    def test_recalculate_requires_exit_time(self):
        session_id = self.enter().session_id
        with self.assertRaises(MissingExitTimeError):
            self.service.recalculate(session_id, "check")

    def test_recalculate_under_another_plan(self):
        cheap = self.store.rate_plans.add(RatePlan("Cheap", RateRules(default=TariffTier(base_fee=500, additional_fee=100))))
        session_id = self.enter().session_id
        self.leave(65)
        result = self.service.recalculate(session_id, "tariff dispute", rate_plan_id=cheap.id)
        self.assertEqual(result.final_fee, 600)
        self.assertEqual(result.breakdown.rate_plan_name, "Cheap")
        self.assertEqual(self.stored(session_id).rate_plan_id, cheap.id)
        with self.assertRaises(RatePlanNotFoundError):
            self.service.recalculate(session_id, "typo", rate_plan_id="missing")

    def test_recalculate_after_correction(self):
        session_id = self.enter().session_id
        self.leave(65)
        self.service.correct_session(session_id, "clock skew", entry_at=ENTRY + timedelta(minutes=40))
        result = self.service.recalculate(session_id, "clock skew")
        self.assertEqual(result.final_fee, 0)
        self.assertEqual(result.barrier_command.reason, BarrierReason.FREE_EXIT)
        self.assertEqual(self.stored(session_id).status, SessionStatus.CLOSED)

    def test_correct_plate(self):
        session_id = self.enter("12가3456").session_id
        result = self.service.correct_session(session_id, "misread", plate_no="12가3457")
        self.assertEqual(result.plate_no, "12가3457")
        self.assertIsNotNone(self.store.sessions.find_active_by_plate("12가3457"))

    def test_force_close_without_barrier(self):
        session_id = self.enter().session_id
        result = self.service.force_close(session_id, "abandoned", note="towed")
        self.assertEqual(result.close_reason, CloseReason.FORCE_CLOSE)
        self.assertIsNone(result.barrier_command)
        self.assertEqual(self.store.barrier_commands.all(), [])
        with self.assertRaises(SessionClosedError):
            self.service.force_close(session_id, "again")

    def test_flag_error_then_recover(self):
        session_id = self.enter().session_id
        self.assertEqual(self.service.flag_error(session_id, "double plate").status, SessionStatus.ERROR)
        self.assertIsNone(self.leave(30).session_id)
        result = self.service.force_close(session_id, "resolved")
        self.assertEqual(result.close_reason, CloseReason.ERROR_RECOVERY)
        with self.assertRaises(InvalidSessionTransitionError):
            self.service.flag_error(session_id, "late")

    def test_unknown_session(self):
        with self.assertRaises(SessionNotFoundError):
            self.service.get_session("missing")


if __name__ == "__main__":
    unittest.main()
