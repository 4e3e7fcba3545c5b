"""Tests for BlockManager - block lifecycle."""

import os
import shutil
import sys
import tempfile
import threading
import time
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from actions.base import AlertDispatcher, FirewallApplier
from database import StateStore
from engine.blocks import BlockManager
from models import BlockState, ListEntry, Outcome
from utils.addresses import parse_network
from utils.filelock import StateIntegrityError
from utils.settings import Settings


class FakeApplier(FirewallApplier):
    """Records calls; fails while ``failing`` is set."""

    def __init__(self):
        self.blocked = {}
        self.calls = []
        self.failing = False

    def block(self, address, ports=None, duration=None):
        self.calls.append(("block", address, ports, duration))
        if self.failing:
            return Outcome.recoverable("iptables: timeout")
        self.blocked[address] = (ports, duration)
        return Outcome.success()

    def unblock(self, address):
        self.calls.append(("unblock", address))
        if self.failing:
            return Outcome.recoverable("iptables: timeout")
        self.blocked.pop(address, None)
        return Outcome.success()

    def count(self, kind, address=None):
        return sum(1 for c in self.calls if c[0] == kind and (address is None or c[1] == address))


class FakeAlerts(AlertDispatcher):

    def __init__(self, outcome=None):
        self.sent = []
        self.outcome = outcome or Outcome.success()

    def notify(self, summary):
        self.sent.append(summary)
        return self.outcome


class FakeClock:
    def __init__(self, now=10_000.0):
        self.now = now

    def __call__(self):
        return self.now


class BlocksTestCase(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = StateStore(os.path.join(self.temp_dir, "blocks.json"), lock_timeout=0.5)
        self.applier = FakeApplier()
        self.alerts = FakeAlerts()
        self.clock = FakeClock()
        self.settings = Settings.from_dict({
            "classifications": {
                "auth-failure": {"threshold": 5, "window": 300, "duration": 600},
                "portscan": {"permanent": True, "ports": [22, 80]},
            },
        })
        self.manager = self.make_manager(self.settings)

    def tearDown(self):
        self.manager.close(timeout=1)
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def make_manager(self, settings):
        return BlockManager(self.store, self.applier, self.alerts, settings, clock=self.clock)

    def trigger(self, address="203.0.113.7", classification="auth-failure", now=100.0, ports=None):
        policy = self.settings.policy(classification)
        return self.manager.trigger(address, policy, "Failed login from", 5, now, ports=ports)


class TestTrigger(BlocksTestCase):

    def test_new_temporary_block(self):
        """A first trigger blocks for the policy duration."""
        state = self.trigger(now=40.0)
        self.assertEqual(state, BlockState.BLOCKED_TEMPORARY)

        entry = self.store.load().blocks["203.0.113.7"]
        self.assertEqual(entry.created_at, 40.0)
        self.assertEqual(entry.expires_at, 640.0)
        self.assertEqual(entry.classification, "auth-failure")
        self.assertEqual(self.applier.calls, [("block", "203.0.113.7", None, 600)])
        self.assertEqual(self.manager.stats["blocks"], 1)

    def test_alert_sent_after_store_write(self):
        """The alert only goes out once the block is on disk."""
        stored_before_alert = []

        def notify(summary):
            stored_before_alert.append(summary.address in StateStore(str(self.store.path)).load().blocks)
            return Outcome.success()

        with patch.object(self.alerts, "notify", side_effect=notify):
            self.trigger()
            self.manager.flush_alerts()
        self.assertEqual(stored_before_alert, [True])

    def test_alert_summary(self):
        """The alert carries address, count and expiry."""
        self.trigger(now=40.0)
        self.manager.flush_alerts()
        summary = self.alerts.sent[0]
        self.assertEqual(summary.address, "203.0.113.7")
        self.assertEqual(summary.count, 5)
        self.assertFalse(summary.permanent)
        self.assertEqual(summary.expires_at, 640.0)

    def test_idempotent_reblock_refreshes_expiry(self):
        """A second trigger never adds a second firewall rule."""
        self.trigger(now=40.0)
        state = self.trigger(now=50.0)

        self.assertEqual(state, BlockState.BLOCKED_TEMPORARY)
        self.assertEqual(self.applier.count("block"), 1)
        self.assertEqual(self.store.load().blocks["203.0.113.7"].expires_at, 650.0)
        self.assertEqual(len(self.store.load().blocks), 1)
        self.manager.flush_alerts()
        self.assertEqual(len(self.alerts.sent), 1)
        self.assertEqual(self.manager.stats["refreshes"], 1)

    def test_permanent_policy(self):
        """Permanent classifications block for good on the policy ports."""
        state = self.trigger(classification="portscan")
        self.assertEqual(state, BlockState.BLOCKED_PERMANENT)
        entry = self.store.load().blocks["203.0.113.7"]
        self.assertTrue(entry.permanent)
        self.assertEqual(entry.ports, (22, 80))
        self.assertEqual(self.applier.calls, [("block", "203.0.113.7", (22, 80), None)])

    def test_permanent_block_untouched_by_trigger(self):
        """A permanent block gets no expiry from a later trigger."""
        self.trigger(classification="portscan", now=10.0)
        self.assertEqual(self.trigger(now=20.0), BlockState.BLOCKED_PERMANENT)
        self.assertIsNone(self.store.load().blocks["203.0.113.7"].expires_at)
        self.assertEqual(self.applier.count("block"), 1)

    def test_applier_failure_stays_unblocked_and_retries(self):
        """A failed firewall call leaves the address free for a retry."""
        self.applier.failing = True
        self.assertEqual(self.trigger(now=40.0), BlockState.UNBLOCKED)
        self.assertEqual(self.store.load().blocks, {})
        self.assertEqual(self.alerts.sent, [])
        self.assertEqual(self.manager.stats["apply_failures"], 1)

        self.applier.failing = False
        self.assertEqual(self.trigger(now=50.0), BlockState.BLOCKED_TEMPORARY)
        self.assertIn("203.0.113.7", self.store.load().blocks)

    def test_select_ports_uses_rule_ports(self):
        """With select_ports the rule ports are blocked."""
        settings = Settings.from_dict({"blocking": {"select_ports": True}})
        self.manager = self.make_manager(settings)
        self.trigger(ports=(22,))
        self.assertEqual(self.store.load().blocks["203.0.113.7"].ports, (22,))

    def test_rule_ports_ignored_without_select_ports(self):
        self.trigger(ports=(22,))
        self.assertIsNone(self.store.load().blocks["203.0.113.7"].ports)

    def test_store_write_failure_reverts_firewall(self):
        """A block that cannot be stored is taken out of the firewall."""
        with patch.object(StateStore, "_replace", side_effect=OSError("disk full")):
            with self.assertRaises(OSError):
                self.trigger()
        self.assertEqual(self.applier.calls[-1], ("unblock", "203.0.113.7"))
        self.assertNotIn("203.0.113.7", self.applier.blocked)
        self.manager.flush_alerts()
        self.assertEqual(self.alerts.sent, [])

    def test_corrupt_state_raises(self):
        """A corrupt state file stops the block before the firewall call."""
        with open(self.store.path, "w") as f:
            f.write("{broken")
        with self.assertRaises(StateIntegrityError):
            self.trigger()
        self.assertEqual(self.applier.calls, [])

    def test_alert_failure_counted(self):
        """A failed alert is counted and does not undo the block."""
        self.alerts.outcome = Outcome.recoverable("webhook down")
        self.assertEqual(self.trigger(), BlockState.BLOCKED_TEMPORARY)
        self.manager.flush_alerts()
        self.assertEqual(self.manager.stats["alert_failures"], 1)


class TestAlertDelivery(BlocksTestCase):
    """Alerts are delivered off the blocking path."""

    def test_slow_alert_does_not_hold_up_blocks(self):
        """A hung alert dispatcher delays neither trigger nor sweep."""
        release = threading.Event()

        def notify(summary):
            release.wait(10)
            return Outcome.success()

        with patch.object(self.alerts, "notify", side_effect=notify) as slow_notify:
            started = time.monotonic()
            self.trigger("203.0.113.7", now=0.0)
            self.trigger("198.51.100.1", now=0.0)
            self.assertEqual(sorted(self.manager.sweep(600.0)), ["198.51.100.1", "203.0.113.7"])
            self.assertLess(time.monotonic() - started, 2)
            self.assertFalse(self.manager.flush_alerts(timeout=0.05))

            release.set()
            self.assertTrue(self.manager.flush_alerts(timeout=5))
        self.assertEqual(slow_notify.call_count, 2)

    def test_close_delivers_queued_alerts(self):
        self.trigger()
        self.manager.close(timeout=5)
        self.assertEqual(len(self.alerts.sent), 1)

    def test_raising_dispatcher_counted(self):
        with patch.object(self.alerts, "notify", side_effect=RuntimeError("boom")):
            self.trigger()
            self.manager.flush_alerts()
        self.assertEqual(self.manager.stats["alert_failures"], 1)


class TestEscalation(BlocksTestCase):

    def setUp(self):
        super().setUp()
        self.manager = self.make_manager(Settings.from_dict({
            "blocking": {"permblock_count": 2, "permblock_interval": 10_000},
        }))

    def cycle(self, now):
        state = self.trigger(now=now)
        self.manager.sweep(now + 601)
        return state

    def test_escalates_after_repeated_temporary_blocks(self):
        """Enough temporary blocks inside the interval make the next one permanent."""
        self.assertEqual(self.cycle(100.0), BlockState.BLOCKED_TEMPORARY)
        self.assertEqual(self.cycle(1000.0), BlockState.BLOCKED_TEMPORARY)
        self.assertEqual(self.trigger(now=2000.0), BlockState.BLOCKED_PERMANENT)
        self.assertEqual(self.applier.calls[-1], ("block", "203.0.113.7", None, None))
        self.assertNotIn("203.0.113.7", self.store.load().history)

    def test_old_history_does_not_escalate(self):
        """History older than the interval is not counted."""
        self.cycle(100.0)
        self.cycle(1000.0)
        self.assertEqual(self.trigger(now=20_000.0), BlockState.BLOCKED_TEMPORARY)

    def test_history_persisted(self):
        """Block history survives a reload of the store."""
        self.cycle(100.0)
        fresh = StateStore(str(self.store.path))
        self.assertEqual(fresh.load().history, {"203.0.113.7": [100.0]})


class TestSweep(BlocksTestCase):

    def test_expired_entries_unblocked_once(self):
        """Expiry sweep liveness."""
        self.trigger("203.0.113.7", now=0.0)
        self.trigger("198.51.100.1", now=0.0)
        self.trigger("192.0.2.50", classification="portscan", now=0.0)

        self.assertEqual(self.manager.sweep(599.0), [])
        self.assertEqual(sorted(self.manager.sweep(600.0)), ["198.51.100.1", "203.0.113.7"])
        self.assertEqual(self.applier.count("unblock", "203.0.113.7"), 1)
        self.assertEqual(self.applier.count("unblock", "198.51.100.1"), 1)
        self.assertEqual(list(self.store.load().blocks), ["192.0.2.50"])

        self.assertEqual(self.manager.sweep(700.0), [])
        self.assertEqual(self.applier.count("unblock"), 2)
        self.assertEqual(self.manager.stats["unblocks"], 2)

    def test_failed_unblock_retried(self):
        """A failed unblock keeps its entry for the next sweep."""
        self.trigger(now=0.0)
        self.applier.failing = True
        self.assertEqual(self.manager.sweep(600.0), [])
        self.assertIn("203.0.113.7", self.store.load().blocks)

        self.applier.failing = False
        self.assertEqual(self.manager.sweep(610.0), ["203.0.113.7"])
        self.assertEqual(self.store.load().blocks, {})

    def test_refreshed_block_not_swept(self):
        """A refreshed block lives until its new expiry."""
        self.trigger(now=0.0)
        self.trigger(now=500.0)
        self.assertEqual(self.manager.sweep(600.0), [])

    def test_entry_created_now_skipped(self):
        self.manager.add_manual("203.0.113.7", duration=1, reason="test")
        store = self.store.load()
        entry = store.blocks["203.0.113.7"]
        # an entry whose expiry is due but was created at the sweep instant waits one sweep
        with self.store.transaction() as state:
            state.blocks["203.0.113.7"].expires_at = entry.created_at
        self.assertEqual(self.manager.sweep(entry.created_at), [])
        self.assertEqual(self.manager.sweep(entry.created_at + 1), ["203.0.113.7"])


class TestManual(BlocksTestCase):

    def test_add_manual_permanent(self):
        """A manual block without duration is permanent."""
        outcome = self.manager.add_manual("203.0.113.7", duration=None, reason="abuse report")
        self.assertTrue(outcome.ok)
        entry = self.store.load().blocks["203.0.113.7"]
        self.assertTrue(entry.permanent)
        self.assertEqual(entry.classification, "manual")
        self.assertEqual(entry.created_at, self.clock.now)
        self.assertEqual(self.manager.state_of("203.0.113.7"), BlockState.BLOCKED_PERMANENT)

    def test_add_manual_cidr_and_ports(self):
        """CIDR input is stored in its network form."""
        outcome = self.manager.add_manual("198.51.100.7/24", duration=3600, ports=(25,))
        self.assertTrue(outcome.ok)
        entry = self.store.load().blocks["198.51.100.0/24"]
        self.assertEqual(entry.expires_at, self.clock.now + 3600)
        self.assertEqual(self.applier.calls, [("block", "198.51.100.0/24", (25,), 3600)])

    def test_add_manual_invalid(self):
        """Garbage never reaches the firewall."""
        self.assertFalse(self.manager.add_manual("nonsense").ok)
        self.assertEqual(self.applier.calls, [])

    def test_add_manual_duplicate(self):
        """A second manual block of the same address is refused."""
        self.manager.add_manual("203.0.113.7")
        self.assertFalse(self.manager.add_manual("203.0.113.7").ok)
        self.assertEqual(self.applier.count("block"), 1)

    def test_remove(self):
        """Remove lifts the block and drops the entry."""
        self.trigger()
        self.assertTrue(self.manager.remove("203.0.113.7").ok)
        self.assertEqual(self.store.load().blocks, {})
        self.assertEqual(self.manager.state_of("203.0.113.7"), BlockState.UNBLOCKED)

    def test_remove_unknown(self):
        self.assertFalse(self.manager.remove("203.0.113.7").ok)
        self.assertEqual(self.applier.calls, [])

    def test_remove_failure_keeps_entry(self):
        """A failed unblock keeps the stored entry."""
        self.trigger()
        self.applier.failing = True
        self.assertFalse(self.manager.remove("203.0.113.7").ok)
        self.assertIn("203.0.113.7", self.store.load().blocks)

    def test_remove_normalises_address(self):
        """Remove finds a block whatever the case of the IPv6 input."""
        self.manager.add_manual("2001:db8::1", duration=60)
        self.assertTrue(self.manager.remove("2001:DB8::1").ok)
        self.assertEqual(self.applier.calls[-1], ("unblock", "2001:db8::1"))
        self.assertEqual(self.store.load().blocks, {})

    def test_active_sorted(self):
        self.trigger("198.51.100.1", now=20.0)
        self.trigger("203.0.113.7", now=10.0)
        self.assertEqual([e.address for e in self.manager.active()], ["203.0.113.7", "198.51.100.1"])


class TestRestore(BlocksTestCase):

    def test_restore_reapplies_live_blocks(self):
        """Restore re-applies live blocks with their remaining time."""
        self.trigger("203.0.113.7", now=self.clock.now - 100)
        self.trigger("198.51.100.1", now=self.clock.now - 1000)
        self.trigger("192.0.2.50", classification="portscan", now=0.0)

        fresh_applier = FakeApplier()
        manager = BlockManager(self.store, fresh_applier, None, self.settings, clock=self.clock)
        self.assertEqual(manager.restore(), 2)
        self.assertEqual(fresh_applier.blocked["203.0.113.7"], (None, 500))
        self.assertEqual(fresh_applier.blocked["192.0.2.50"], ((22, 80), None))
        self.assertNotIn("198.51.100.1", fresh_applier.blocked)


class TestDenyEnforcement(BlocksTestCase):

    def entries(self, *addresses):
        return [ListEntry(network=parse_network(a), source_file="deny") for a in addresses]

    def test_new_entries_blocked_permanently(self):
        """Deny entries are blocked permanently on all ports."""
        added, removed = self.manager.enforce_deny(self.entries("203.0.113.7", "198.51.100.0/24"))
        self.assertEqual(sorted(added), ["198.51.100.0/24", "203.0.113.7"])
        self.assertEqual(removed, [])
        self.assertEqual(self.applier.blocked["203.0.113.7"], (None, None))
        self.assertEqual(self.manager.state_of("203.0.113.7"), BlockState.BLOCKED_PERMANENT)

    def test_never_written_to_state(self):
        """Deny blocks stay out of the state file."""
        self.manager.enforce_deny(self.entries("203.0.113.7"))
        self.assertEqual(self.store.load().blocks, {})
        self.assertFalse(self.store.path.exists())

    def test_idempotent(self):
        self.manager.enforce_deny(self.entries("203.0.113.7"))
        self.assertEqual(self.manager.enforce_deny(self.entries("203.0.113.7")), ([], []))
        self.assertEqual(self.applier.count("block"), 1)

    def test_removed_entries_unblocked(self):
        """Entries dropped from the deny list are lifted."""
        self.manager.enforce_deny(self.entries("203.0.113.7", "198.51.100.1"))
        added, removed = self.manager.enforce_deny(self.entries("198.51.100.1"))
        self.assertEqual((added, removed), ([], ["203.0.113.7"]))
        self.assertNotIn("203.0.113.7", self.applier.blocked)
        self.assertEqual(self.manager.denied, ["198.51.100.1"])

    def test_removed_entry_with_own_block_kept_in_firewall(self):
        self.manager.enforce_deny(self.entries("203.0.113.7"))
        self.trigger("203.0.113.7")
        self.manager.enforce_deny([])
        self.assertEqual(self.applier.count("unblock"), 0)

    def test_adopted_entries_survive_sweep(self):
        """An expired block of a denied address leaves the deny rule alone."""
        self.manager.adopt_deny(self.entries("203.0.113.7"))
        self.assertEqual(self.applier.calls, [])
        self.manager.add_manual("203.0.113.7", duration=5)

        self.assertEqual(self.manager.sweep(self.clock.now + 100), [])
        self.assertEqual(self.applier.count("unblock"), 0)
        self.assertEqual(self.store.load().blocks, {})
        self.assertEqual(self.manager.state_of("203.0.113.7"), BlockState.BLOCKED_PERMANENT)

    def test_remove_of_denied_address_keeps_rule(self):
        self.manager.enforce_deny(self.entries("203.0.113.7"))
        self.trigger("203.0.113.7")
        outcome = self.manager.remove("203.0.113.7")
        self.assertTrue(outcome.ok)
        self.assertEqual(self.applier.count("unblock"), 0)
        self.assertIn("203.0.113.7", self.applier.blocked)
        self.assertEqual(self.store.load().blocks, {})

    def test_failed_entry_retried(self):
        """A deny entry the firewall refused is retried next time."""
        self.applier.failing = True
        self.assertEqual(self.manager.enforce_deny(self.entries("203.0.113.7")), ([], []))
        self.applier.failing = False
        self.assertEqual(self.manager.enforce_deny(self.entries("203.0.113.7")), (["203.0.113.7"], []))


if __name__ == '__main__':
    unittest.main()
