#!/usr/bin/env python3
"""
DTO Unit Tests

Validation rules of the boundary DTOs and their conversion into domain
value objects.
"""

import unittest
from datetime import datetime

from pydantic import ValidationError

from parkflow.application.dtos import (
    PlateCaptureDTO, RateRulesDTO, RatePlanDTO, DiscountRuleDTO, MembershipDTO,
    SeedDataDTO, FeeQueryDTO, PaymentConfirmationDTO, SessionCorrectionDTO
)
from parkflow.domain.models import DiscountType, RateCategory


class TestPlateCaptureDTO(unittest.TestCase):

    def capture(self, **overrides):
        data = {
            'deviceId': 'cam-1',
            'laneId': 'lane-in',
            'direction': 'ENTRY',
            'plateNo': '12가 3456',
            'capturedAt': '2024-01-01T10:00:00',
        }
        data.update(overrides)
        return PlateCaptureDTO.model_validate(data)

    def test_camel_case_payload(self):
        dto = self.capture(confidence=0.93)
        self.assertEqual(dto.lane_id, 'lane-in')
        self.assertEqual(dto.direction, 'ENTRY')
        self.assertEqual(dto.captured_at, datetime(2024, 1, 1, 10, 0))

    def test_snake_case_names_accepted(self):
        dto = PlateCaptureDTO(
            device_id='cam-2', lane_id='lane-out', direction='EXIT',
            plate_no='34나5678', captured_at=datetime(2024, 1, 1, 11, 0),
        )
        self.assertEqual(dto.to_dict(by_alias=True)['laneId'], 'lane-out')

    def test_rejections(self):
        for overrides in (
            {'direction': 'SIDEWAYS'},
            {'plateNo': ' - '},
            {'confidence': 1.5},
            {'laneId': ''},
        ):
            with self.subTest(overrides=overrides):
                with self.assertRaises(ValidationError):
                    self.capture(**overrides)


class TestRateDTOs(unittest.TestCase):

    def test_defaults_match_domain_defaults(self):
        rules = RateRulesDTO().to_domain()
        self.assertEqual(rules.free_minutes, 30)
        self.assertEqual(rules.default.base_fee, 1000)
        self.assertEqual(rules.default.daily_max, 15000)

    def test_night_tier_conversion(self):
        rules = RateRulesDTO.model_validate({
            'timeBasedEnabled': True,
            'nightRateEnabled': True,
            'nightStart': '22:00',
            'nightEnd': '06:00',
            'night': {'baseFee': 500, 'additionalFee': 200, 'dailyMax': 5000},
        }).to_domain()
        self.assertIsNotNone(rules.night_window)
        self.assertEqual(rules.tier_for(RateCategory.NIGHT).base_fee, 500)

    def test_night_window_must_be_complete(self):
        with self.assertRaises(ValidationError):
            RateRulesDTO.model_validate({'nightStart': '22:00'})
        with self.assertRaises(ValidationError):
            RateRulesDTO.model_validate({'nightStart': '25:00', 'nightEnd': '06:00'})

    def test_negative_fee_rejected(self):
        with self.assertRaises(ValidationError):
            RateRulesDTO.model_validate({'default': {'baseFee': -1}})

    def test_rate_plan_keeps_id(self):
        plan = RatePlanDTO(id='plan-1', name='Standard', is_active=True).to_domain()
        self.assertEqual((plan.id, plan.is_active), ('plan-1', True))


class TestDiscountAndMembershipDTOs(unittest.TestCase):

    def test_discount_rule(self):
        rule = DiscountRuleDTO.model_validate(
            {'id': 'd-1', 'name': 'Store', 'type': 'PERCENT', 'value': 10, 'isStackable': False}
        ).to_domain()
        self.assertEqual(rule.type, DiscountType.PERCENT)
        self.assertFalse(rule.is_stackable)

    def test_discount_rule_rejects_unknown_type(self):
        with self.assertRaises(ValidationError):
            DiscountRuleDTO.model_validate({'name': 'x', 'type': 'BOGUS', 'value': 1})

    def test_membership_window(self):
        membership = MembershipDTO.model_validate({
            'plateNo': '12가3456',
            'validFrom': '2024-01-01T00:00:00',
            'validTo': '2024-12-31T23:59:59',
        }).to_domain()
        self.assertTrue(membership.covers(datetime(2024, 6, 1)))
        with self.assertRaises(ValidationError):
            MembershipDTO.model_validate({
                'plateNo': '12가3456',
                'validFrom': '2024-12-31T00:00:00',
                'validTo': '2024-01-01T00:00:00',
            })


class TestRequestDTOs(unittest.TestCase):

    def test_seed_allows_one_active_plan(self):
        with self.assertRaises(ValidationError):
            SeedDataDTO.model_validate({'ratePlans': [
                {'name': 'A', 'isActive': True},
                {'name': 'B', 'isActive': True},
            ]})

    def test_fee_query_defaults(self):
        dto = FeeQueryDTO.model_validate({'entryAt': '2024-01-01T10:00:00', 'exitAt': '2024-01-01T11:00:00'})
        self.assertEqual(dto.discounts, [])
        self.assertEqual(dto.rules.free_minutes, 30)

    def test_payment_defaults_to_mock(self):
        dto = PaymentConfirmationDTO.model_validate({'sessionId': 's-1', 'amount': 1500})
        self.assertEqual(dto.method, 'MOCK')
        with self.assertRaises(ValidationError):
            PaymentConfirmationDTO.model_validate({'sessionId': 's-1', 'amount': -1})

    def test_correction_needs_a_field(self):
        with self.assertRaises(ValidationError):
            SessionCorrectionDTO.model_validate({'sessionId': 's-1', 'reason': 'typo'})
        dto = SessionCorrectionDTO.model_validate(
            {'sessionId': 's-1', 'reason': 'typo', 'plateNoCorrected': '12가3457'}
        )
        self.assertEqual(dto.plate_no_corrected, '12가3457')


if __name__ == "__main__":
    unittest.main()
