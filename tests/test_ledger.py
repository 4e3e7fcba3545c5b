"""Tests for FailureLedger - sliding window counts."""

import os
import random
import sys
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from engine.ledger import FailureLedger
from utils.settings import Settings


def make_ledger(threshold=5, window=300):
    settings = Settings.from_dict({
        "classifications": {"auth-failure": {"threshold": threshold, "window": window}},
    })
    return FailureLedger(settings.policy)


class TestRecord(unittest.TestCase):

    def test_counts_inside_window(self):
        """Each match inside the window adds one."""
        ledger = make_ledger()
        counts = [ledger.record("203.0.113.7", "auth-failure", 1, t) for t in (0, 10, 20, 30, 40)]
        self.assertEqual(counts, [1, 2, 3, 4, 5])

    def test_weight(self):
        """Weighted matches count more than once."""
        ledger = make_ledger()
        self.assertEqual(ledger.record("203.0.113.7", "auth-failure", 3, 0), 3)
        self.assertEqual(ledger.record("203.0.113.7", "auth-failure", 2, 1), 5)

    def test_old_timestamps_drop_out(self):
        """Matches window seconds old no longer count."""
        ledger = make_ledger(window=300)
        ledger.record("203.0.113.7", "auth-failure", 1, 0)
        ledger.record("203.0.113.7", "auth-failure", 1, 100)
        # t=0 is exactly window seconds old at t=300 and falls out
        self.assertEqual(ledger.record("203.0.113.7", "auth-failure", 1, 300), 2)
        self.assertEqual(ledger.record("203.0.113.7", "auth-failure", 1, 401), 2)

    def test_keys_are_independent(self):
        """Address and classification together form the key."""
        ledger = make_ledger()
        ledger.record("203.0.113.7", "auth-failure", 1, 0)
        ledger.record("203.0.113.7", "sshd", 1, 0)
        self.assertEqual(ledger.record("198.51.100.1", "auth-failure", 1, 0), 1)
        self.assertEqual(len(ledger), 3)
        self.assertIn(("203.0.113.7", "sshd"), ledger)

    def test_clock_going_backwards(self):
        """An earlier timestamp is still counted and kept in order."""
        ledger = make_ledger(window=300)
        ledger.record("203.0.113.7", "auth-failure", 1, 100)
        self.assertEqual(ledger.record("203.0.113.7", "auth-failure", 1, 50), 2)
        timestamps = ledger.get("203.0.113.7", "auth-failure").timestamps
        self.assertEqual(timestamps, sorted(timestamps))

    def test_window_correctness_against_brute_force(self):
        """The count equals the matches in the trailing window, whatever came before."""
        rng = random.Random(7)
        window = 300
        ledger = make_ledger(window=window)
        history = []
        now = 0.0
        for _ in range(500):
            now += rng.choice([0, 1, 5, 30, 120, 400])
            weight = rng.randint(1, 3)
            history.extend([now] * weight)
            expected = sum(1 for t in history if t > now - window)
            self.assertEqual(ledger.record("203.0.113.7", "auth-failure", weight, now), expected)


class TestMaintenance(unittest.TestCase):

    def test_count_without_recording(self):
        """count looks without creating a record."""
        ledger = make_ledger(window=300)
        ledger.record("203.0.113.7", "auth-failure", 2, 0)
        self.assertEqual(ledger.count("203.0.113.7", "auth-failure", 10), 2)
        self.assertEqual(ledger.count("203.0.113.7", "auth-failure", 300), 0)
        self.assertEqual(len(ledger), 0)
        self.assertEqual(ledger.count("192.0.2.1", "auth-failure", 0), 0)

    def test_purge_expired_removes_empty_records(self):
        """Records with nothing left in their window are dropped."""
        ledger = make_ledger(window=300)
        for i in range(100):
            ledger.record(f"198.51.100.{i}", "auth-failure", 1, 0)
        ledger.record("203.0.113.7", "auth-failure", 1, 200)

        self.assertEqual(ledger.purge_expired(350), 100)
        self.assertEqual(len(ledger), 1)
        self.assertEqual(ledger.purge_expired(1000), 1)
        self.assertEqual(len(ledger), 0)

    def test_forget(self):
        """forget drops every classification of an address."""
        ledger = make_ledger()
        ledger.record("203.0.113.7", "auth-failure", 1, 0)
        ledger.record("203.0.113.7", "sshd", 1, 0)
        ledger.record("198.51.100.1", "sshd", 1, 0)
        ledger.forget("203.0.113.7")
        self.assertEqual([r.address for r in ledger], ["198.51.100.1"])

    def test_policy_change_applies_to_existing_records(self):
        """A reloaded window applies to records already held."""
        ledger = make_ledger(window=300)
        ledger.record("203.0.113.7", "auth-failure", 1, 0)
        wider = Settings.from_dict({"classifications": {"auth-failure": {"window": 1000}}})
        ledger.set_policy_lookup(wider.policy)
        self.assertEqual(ledger.record("203.0.113.7", "auth-failure", 1, 500), 2)

    def test_clear(self):
        ledger = make_ledger()
        ledger.record("203.0.113.7", "auth-failure", 1, 0)
        ledger.clear()
        self.assertEqual(len(ledger), 0)


if __name__ == '__main__':
    unittest.main()
