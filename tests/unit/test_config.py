#!/usr/bin/env python3
"""
Configuration Unit Tests

Tests for settings layering (defaults, YAML, environment) and seed loading.
"""

import os
import tempfile
import textwrap
import unittest

from pydantic import ValidationError

from parkflow.infrastructure.config import Settings, load_settings, load_seed_data, read_yaml


class ConfigTestCase(unittest.TestCase):

    def write_yaml(self, content: str) -> str:
        handle = tempfile.NamedTemporaryFile('w', suffix='.yaml', delete=False, encoding='utf-8')
        with handle:
            handle.write(textwrap.dedent(content))
        self.addCleanup(os.remove, handle.name)
        return handle.name


class TestSettings(ConfigTestCase):

    def test_defaults(self):
        settings = load_settings(environ={})
        self.assertEqual(settings.broker_type, "memory")
        self.assertEqual(settings.timezone, "Asia/Seoul")
        self.assertTrue(settings.close_on_payment_at_exit)

    def test_environment_overrides_file(self):
        path = self.write_yaml("""
            settings:
              database_url: sqlite:///file.db
              log_level: DEBUG
        """)
        settings = load_settings(path, environ={
            'PARKFLOW_DATABASE_URL': 'memory',
            'PARKFLOW_LOCK_TIMEOUT_SECONDS': '2.5',
            'PARKFLOW_CLOSE_ON_PAYMENT_AT_EXIT': 'false',
        })
        self.assertEqual(settings.database_url, 'memory')
        self.assertEqual(settings.log_level, 'DEBUG')
        self.assertEqual(settings.lock_timeout_seconds, 2.5)
        self.assertFalse(settings.close_on_payment_at_exit)

    def test_invalid_values_rejected(self):
        with self.assertRaises(ValidationError):
            Settings.from_env(environ={'PARKFLOW_BROKER_TYPE': 'kafka'})
        with self.assertRaises(ValidationError):
            Settings(lock_timeout_seconds=0)

    def test_yaml_must_be_mapping(self):
        path = self.write_yaml("- just\n- a list\n")
        with self.assertRaises(ValueError):
            read_yaml(path)


class TestSeedLoading(ConfigTestCase):

    SEED = """
        ratePlans:
          - id: plan-1
            name: Standard
            isActive: true
            rules:
              freeMinutes: 10
        discountRules:
          - id: store-1000
            name: Store validation
            type: AMOUNT
            value: 1000
        memberships:
          - plateNo: 12가3456
            validFrom: 2024-01-01T00:00:00
            validTo: 2024-12-31T23:59:59
        barriers:
          - laneId: lane-out
            deviceId: gate-1
    """

    def test_top_level_seed(self):
        seed = load_seed_data(self.write_yaml(self.SEED))
        self.assertEqual(seed.rate_plans[0].rules.free_minutes, 10)
        self.assertEqual(seed.discount_rules[0].type, 'AMOUNT')
        self.assertEqual(seed.barriers[0].device_id, 'gate-1')
        self.assertEqual(len(seed.memberships), 1)

    def test_seed_section(self):
        nested = "seed:\n" + textwrap.indent(textwrap.dedent(self.SEED), "  ")
        seed = load_seed_data(self.write_yaml(nested))
        self.assertEqual(seed.rate_plans[0].id, 'plan-1')


if __name__ == "__main__":
    unittest.main()
