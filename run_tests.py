#!/usr/bin/env python
"""
Test runner script for the client test suite
Usage: python run_tests.py [app ...]
"""
import os
import sys

import django
from django.conf import settings
from django.test.utils import get_runner

TEST_LABELS = [
    'campus_founders.core',
    'campus_founders.social',
    'campus_founders.startups',
    'campus_founders.investments',
]

if __name__ == "__main__":
    os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'campus_founders.config.settings')
    django.setup()
    TestRunner = get_runner(settings)
    test_runner = TestRunner()
    failures = test_runner.run_tests(sys.argv[1:] or TEST_LABELS)
    sys.exit(bool(failures))
