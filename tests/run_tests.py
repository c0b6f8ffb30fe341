# File: tests/run_tests.py
#!/usr/bin/env python3
"""
Test runner for the Parking Session Engine tests.

Usage:
    python tests/run_tests.py                      # everything
    python tests/run_tests.py unit                 # one suite directory
    python tests/run_tests.py unit.test_strategies # one module
    python tests/run_tests.py unit.test_strategies.TestFeeCalculator
"""

import unittest
import sys
from pathlib import Path

# Make the project root importable when run as a script
sys.path.insert(0, str(Path(__file__).parent.parent))

SUITES = ('unit', 'integration')


def run_all_tests(suite: str = None):
    """Discover and run test_*.py modules, optionally limited to one suite"""
    test_loader = unittest.TestLoader()
    tests_dir = Path(__file__).parent
    start_dir = tests_dir / suite if suite else tests_dir

    test_suite = test_loader.discover(
        str(start_dir),
        pattern='test_*.py',
        top_level_dir=str(tests_dir.parent),
    )

    test_runner = unittest.TextTestRunner(verbosity=2)
    return test_runner.run(test_suite)


def run_specific_test(test_name: str):
    """Run a module (suite.module) or a test case (suite.module.TestCase)"""
    test_loader = unittest.TestLoader()
    test_suite = test_loader.loadTestsFromName(f'tests.{test_name}')

    test_runner = unittest.TextTestRunner(verbosity=2)
    return test_runner.run(test_suite)


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] in SUITES:
        result = run_all_tests(sys.argv[1])
    elif len(sys.argv) > 1:
        result = run_specific_test(sys.argv[1])
    else:
        result = run_all_tests()

    sys.exit(0 if result.wasSuccessful() else 1)
