#!/usr/bin/env python3
"""
Command Pattern Unit Tests

Tests the command factory and processor on top of an in-memory session
service.
"""

import unittest
from unittest.mock import Mock

from parkflow.application.commands import (
    CommandFactory, CommandProcessor, ProcessCaptureCommand, ForceCloseCommand
)
from parkflow.application.session_service import ServiceFactory
from parkflow.domain.models import RatePlan, DiscountRule, DiscountType


def capture(direction: str, at: str, plate: str = "12가3456", lane: str = None) -> dict:
    return {
        "type": "capture",
        "data": {
            "deviceId": "cam-1",
            "laneId": lane or ("lane-in" if direction == "ENTRY" else "lane-out"),
            "direction": direction,
            "plateNo": plate,
            "capturedAt": at,
        },
    }


class TestCommandFactory(unittest.TestCase):

    def test_creates_command_with_executor(self):
        command = CommandFactory.create_command(
            "force_close", {"sessionId": "s-1", "reason": "stuck", "executedBy": "operator-7"}
        )
        self.assertIsInstance(command, ForceCloseCommand)
        self.assertEqual(command.executed_by, "operator-7")
        self.assertEqual(command.request.session_id, "s-1")

    def test_unknown_type(self):
        with self.assertRaises(ValueError):
            CommandFactory.create_command("teleport", {})

    def test_description(self):
        command = CommandFactory.create_command("capture", capture("ENTRY", "2024-01-01T10:00:00")["data"])
        self.assertIsInstance(command, ProcessCaptureCommand)
        self.assertEqual(command.get_description(), "ProcessCapture")
        self.assertEqual(command.executed_by, "system")


class TestCommandProcessor(unittest.TestCase):

    def setUp(self):
        self.service = ServiceFactory.create_in_memory_service(notifier=Mock())
        store = self.service.uow_factory()
        with store as uow:
            uow.rate_plans.add(RatePlan(name="Standard", is_active=True, id="plan-1"))
            uow.discount_rules.add(DiscountRule("Store", DiscountType.AMOUNT, 1000, id="store-1000"))
            uow.barriers.register("lane-out", "gate-1")
        self.processor = CommandProcessor(self.service)

    def test_entry_exit_and_payment(self):
        entry = self.processor.handle(capture("ENTRY", "2024-01-01T10:00:00"))
        self.assertTrue(entry["success"])
        session_id = entry["data"]["session_id"]

        exit_result = self.processor.handle(capture("EXIT", "2024-01-01T12:00:00"))
        self.assertEqual(exit_result["data"]["new_state"], "EXIT_PENDING")
        self.assertEqual(exit_result["data"]["final_fee"], 4000)

        discounted = self.processor.handle({
            "type": "apply_discount",
            "data": {"sessionId": session_id, "discountRuleId": "store-1000"},
        })
        self.assertEqual(discounted["data"]["final_fee"], 3000)

        paid = self.processor.handle({
            "type": "confirm_payment",
            "data": {"sessionId": session_id, "amount": 3000, "method": "CARD"},
        })
        self.assertTrue(paid["success"])
        self.assertEqual(paid["data"]["status"], "CLOSED")
        self.assertEqual(paid["data"]["barrier_command"]["reason"], "PAYMENT_CONFIRMED")
        self.assertEqual(len(self.processor.get_history()), 4)

    def test_compute_fee_command(self):
        result = self.processor.handle({
            "type": "compute_fee",
            "data": {"entryAt": "2024-01-01T10:00:00", "exitAt": "2024-01-01T10:20:00"},
        })
        self.assertTrue(result["success"])
        self.assertEqual(result["data"]["final_fee"], 0)

    def test_service_rejection_becomes_failure(self):
        result = self.processor.handle({"type": "get_session", "data": {"sessionId": "missing"}})
        self.assertFalse(result["success"])
        self.assertEqual(result["error_type"], "SessionNotFoundError")
        self.assertIsNotNone(result["command_id"])
        self.assertEqual(self.processor.get_history(), [])

    def test_invalid_payload_becomes_failure(self):
        result = self.processor.handle({"type": "confirm_payment", "data": {"sessionId": "s-1"}})
        self.assertFalse(result["success"])
        self.assertEqual(result["error_type"], "ValidationError")
        self.assertIsNone(result["command_id"])

    def test_unknown_type_becomes_failure(self):
        result = self.processor.handle({"type": "teleport", "data": {}})
        self.assertFalse(result["success"])
        self.assertEqual(result["error_type"], "ValueError")

    def test_batch_and_history_limit(self):
        processor = CommandProcessor(self.service, max_history_size=2)
        results = processor.process_batch([
            capture("ENTRY", "2024-01-01T10:00:00", plate="11가1111"),
            capture("ENTRY", "2024-01-01T10:01:00", plate="22가2222"),
            capture("ENTRY", "2024-01-01T10:02:00", plate="33가3333"),
        ])
        self.assertTrue(all(r["success"] for r in results))
        self.assertEqual(len(processor.get_history()), 2)
        self.assertEqual(len(processor.get_history(limit=1)), 1)
        processor.clear_history()
        self.assertEqual(processor.get_history(), [])


if __name__ == "__main__":
    unittest.main()
