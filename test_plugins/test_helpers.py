#!/usr/bin/env python3
"""Tests for the shared formatting helpers."""

import sys
import os
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from utils.helpers import format_number, format_time_ago


class TestHelpers(unittest.TestCase):

    def test_format_number(self):
        self.assertEqual(format_number(500.0), "500")
        self.assertEqual(format_number(1530.25), "1530.25")
        self.assertEqual(format_number(-0.95), "-0.95")
        self.assertEqual(format_number(7), "7")
        self.assertEqual(format_number(None), "N/A")

    def test_format_number_never_scientific(self):
        self.assertEqual(format_number(0.00001), "0.00001")
        self.assertEqual(format_number(-0.000025), "-0.000025")
        self.assertEqual(format_number(1e16 + 0.5), "10000000000000000")

    def test_format_time_ago(self):
        self.assertEqual(format_time_ago(None), "never")
        self.assertEqual(format_time_ago(2), "just now")
        self.assertEqual(format_time_ago(42), "42s ago")
        self.assertEqual(format_time_ago(7200), "2 hr ago")
        self.assertEqual(format_time_ago(172800), "2 days ago")


if __name__ == '__main__':
    unittest.main()
