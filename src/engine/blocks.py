"""
Block Manager - lifecycle of firewall blocks.

An address moves UNBLOCKED -> PENDING -> BLOCKED_TEMPORARY or
BLOCKED_PERMANENT, and temporary blocks return to UNBLOCKED once the sweep
has removed them from the firewall. The firewall call happens while the
state lock is held, so the daemon and the admin CLI never race on the same
address.
"""

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as futures_wait
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from database import StateSnapshot, StateStore
from models import AlertSummary, BlockEntry, BlockState, ListEntry, Outcome
from models.detection import Ports
from actions.base import AlertDispatcher, FirewallApplier
from utils.addresses import parse_network
from utils.formatters import format_duration
from utils.logger import get_logger
from utils.settings import ClassificationPolicy, Settings

logger = get_logger("blocks")


def _canonical(address: str) -> Optional[str]:
    """Stored form of an address or CIDR, None if invalid."""
    network = parse_network(address)
    if network is None:
        return None
    return str(network.network_address) if network.num_addresses == 1 else str(network)


class BlockManager:
    """
    Creates, refreshes, expires and restores blocks.

    Usage:
        manager = BlockManager(store, IptablesApplier(), LogAlertDispatcher(), settings)
        state = manager.trigger("203.0.113.7", settings.policy("sshd"), "Failed SSH login from", 5, now)
        manager.sweep(now)
    """

    def __init__(self, store: StateStore, applier: FirewallApplier,
                 alerts: Optional[AlertDispatcher] = None,
                 settings: Optional[Settings] = None,
                 clock: Callable[[], float] = time.time):
        """
        Initialize block manager.

        Args:
            store: Shared state store
            applier: Firewall applier
            alerts: Alert dispatcher, None for no alerts
            settings: Source of the ``blocking.*`` options
            clock: Time source for manual operations
        """
        self.store = store
        self.applier = applier
        self.alerts = alerts
        self.clock = clock
        self._lock = threading.RLock()
        self._pending: Set[str] = set()
        # deny-list blocks live only in memory and in the firewall
        self._deny: Dict[str, ListEntry] = {}
        self._alert_lock = threading.Lock()
        self._alert_pool: Optional[ThreadPoolExecutor] = None
        self._alert_futures: List[Future] = []
        self.stats: Dict[str, int] = {
            "blocks": 0,
            "refreshes": 0,
            "unblocks": 0,
            "apply_failures": 0,
            "alert_failures": 0,
        }
        self.configure(settings or Settings.from_dict({}))

    def configure(self, settings: Settings) -> None:
        """Read the blocking options (startup and reload)."""
        self.select_ports = settings.get_bool("blocking.select_ports")
        self.permblock_count = settings.get_int("blocking.permblock_count", 0, minimum=0)
        self.permblock_interval = settings.get_int("blocking.permblock_interval", 86400, minimum=1)

    # =========================================================================
    # Internals
    # =========================================================================

    def _ports_for(self, policy: ClassificationPolicy, rule_ports: Ports) -> Ports:
        if policy.ports:
            return policy.ports
        if self.select_ports:
            return rule_ports
        return None

    def _recent_history(self, state: StateSnapshot, address: str, now: float) -> List[float]:
        cutoff = now - self.permblock_interval
        return [t for t in state.history.get(address, []) if t > cutoff]

    def _escalates(self, state: StateSnapshot, address: str, now: float) -> bool:
        if self.permblock_count <= 0:
            return False
        return len(self._recent_history(state, address, now)) >= self.permblock_count

    def _apply(self, state: StateSnapshot, entry: BlockEntry) -> Outcome:
        """Block entry in the firewall and record it in state (inside a transaction)."""
        duration = None if entry.permanent else max(1, int(entry.expires_at - entry.created_at))
        self._pending.add(entry.address)
        try:
            outcome = self.applier.block(entry.address, entry.ports, duration)
        finally:
            self._pending.discard(entry.address)

        if not outcome.ok:
            self.stats["apply_failures"] += 1
            logger.warning(f"Could not block {entry.address}: {outcome.detail}")
            return outcome

        state.blocks[entry.address] = entry
        if entry.permanent:
            state.history.pop(entry.address, None)
        else:
            state.history[entry.address] = self._recent_history(state, entry.address, entry.created_at) + [
                entry.created_at]
        return outcome

    def _commit(self, address: str, mutate: Callable[[StateSnapshot], Tuple[Outcome, Optional[BlockEntry]]]
                ) -> Tuple[Outcome, Optional[BlockEntry]]:
        """
        Run mutate inside a store transaction.

        If the firewall block succeeded but the state write then fails, the
        firewall block is reverted before the error propagates.
        """
        applied: Optional[BlockEntry] = None
        try:
            with self.store.transaction() as state:
                outcome, applied = mutate(state)
        except Exception:
            if applied is not None:
                logger.error(f"State write failed after blocking {address}, reverting firewall block")
                revert = self.applier.unblock(address)
                if not revert.ok:
                    logger.error(f"Revert of {address} failed: {revert.detail}")
            raise
        return outcome, applied

    def _alert(self, summary: AlertSummary) -> None:
        """Queue summary for delivery; trigger never waits on the alert dispatcher."""
        if self.alerts is None:
            return
        with self._alert_lock:
            if self._alert_pool is None:
                self._alert_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="bastion-alerts")
            self._alert_futures = [f for f in self._alert_futures if not f.done()]
            self._alert_futures.append(self._alert_pool.submit(self._deliver, summary))

    def _deliver(self, summary: AlertSummary) -> None:
        try:
            outcome = self.alerts.notify(summary)
        except Exception as e:
            outcome = Outcome.recoverable(str(e))
        if not outcome.ok:
            with self._alert_lock:
                self.stats["alert_failures"] += 1
            logger.warning(f"Alert for {summary.address} failed: {outcome.detail}")

    def flush_alerts(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for queued alerts.

        Returns:
            False if some alert was still in flight after timeout
        """
        with self._alert_lock:
            pending = list(self._alert_futures)
        _, not_done = futures_wait(pending, timeout=timeout)
        return not not_done

    def close(self, timeout: Optional[float] = None) -> None:
        """Deliver queued alerts (up to timeout) and stop the alert worker."""
        if not self.flush_alerts(timeout):
            logger.warning("Shutting down with undelivered alerts")
        with self._alert_lock:
            pool, self._alert_pool = self._alert_pool, None
            self._alert_futures = []
        if pool is not None:
            pool.shutdown(wait=False)

    # =========================================================================
    # Automatic blocks
    # =========================================================================

    def trigger(self, address: str, policy: ClassificationPolicy, reason: str, count: int, now: float,
                ports: Ports = None, blocklist_detail: str = "") -> BlockState:
        """
        Block address after its failure count crossed policy.threshold.

        An existing temporary block gets a fresh expiry, an existing
        permanent block is left alone. A failed firewall call leaves the
        address unblocked so the next qualifying match retries.

        Args:
            address: Offending address
            policy: Policy of the classification that tripped
            reason: Human readable reason
            count: Failures inside the window
            now: Cycle timestamp
            ports: Ports of the matching rule
            blocklist_detail: Extra detail from a blocklist check

        Returns:
            Resulting block state

        Raises:
            StateIntegrityError: If the state file is corrupt or locked
        """
        with self._lock:
            result = {"state": BlockState.UNBLOCKED}

            def mutate(state: StateSnapshot) -> Tuple[Outcome, Optional[BlockEntry]]:
                existing = state.blocks.get(address)
                if existing is not None:
                    if existing.permanent:
                        result["state"] = BlockState.BLOCKED_PERMANENT
                    else:
                        existing.expires_at = now + policy.duration
                        self.stats["refreshes"] += 1
                        result["state"] = BlockState.BLOCKED_TEMPORARY
                        logger.debug(f"Refreshed block of {address} until {existing.expires_at:.0f}")
                    return Outcome.success("existing"), None

                permanent = policy.permanent or self._escalates(state, address, now)
                entry = BlockEntry(
                    address=address,
                    reason=f"{reason} {address} ({policy.name}): {count} in {format_duration(policy.window_seconds)}",
                    classification=policy.name,
                    created_at=now,
                    expires_at=None if permanent else now + policy.duration,
                    ports=self._ports_for(policy, ports),
                )
                outcome = self._apply(state, entry)
                if not outcome.ok:
                    return outcome, None
                result["state"] = BlockState.BLOCKED_PERMANENT if permanent else BlockState.BLOCKED_TEMPORARY
                return outcome, entry

            outcome, entry = self._commit(address, mutate)
            if entry is None:
                return result["state"]

            self.stats["blocks"] += 1
            kind = "permanently" if entry.permanent else f"for {format_duration(policy.duration)}"
            logger.info(f"Blocked {address} {kind}: {entry.reason}")
            self._alert(AlertSummary(
                address=address,
                classification=policy.name,
                reason=reason,
                count=count,
                permanent=entry.permanent,
                expires_at=entry.expires_at,
                ports=entry.ports,
                blocklist_detail=blocklist_detail,
            ))
            return result["state"]

    def sweep(self, now: float) -> List[str]:
        """
        Unblock every temporary entry whose expiry has passed.

        Entries created at ``now`` are left for the next sweep. An unblock
        that fails keeps its entry so the next sweep retries it.

        Returns:
            Addresses unblocked
        """
        with self._lock:
            unblocked: List[str] = []

            def mutate(state: StateSnapshot) -> Tuple[Outcome, Optional[BlockEntry]]:
                for address, entry in sorted(state.blocks.items()):
                    if entry.permanent or entry.expires_at > now or entry.created_at >= now:
                        continue
                    if address in self._deny:
                        del state.blocks[address]
                        continue
                    outcome = self.applier.unblock(address)
                    if not outcome.ok:
                        logger.warning(f"Could not unblock {address}, will retry: {outcome.detail}")
                        continue
                    del state.blocks[address]
                    unblocked.append(address)

                cutoff = now - self.permblock_interval
                for address in list(state.history):
                    recent = [t for t in state.history[address] if t > cutoff]
                    if recent:
                        state.history[address] = recent
                    else:
                        del state.history[address]
                return Outcome.success(), None

            self._commit("", mutate)
            if unblocked:
                self.stats["unblocks"] += len(unblocked)
                logger.info(f"Expired {len(unblocked)} blocks: {', '.join(unblocked)}")
            return unblocked

    # =========================================================================
    # Manual operations
    # =========================================================================

    def add_manual(self, address: str, duration: Optional[int] = None, reason: str = "Manually blocked",
                   ports: Ports = None) -> Outcome:
        """
        Block address by hand.

        Args:
            address: Address or CIDR
            duration: Seconds, None for permanent
            reason: Stored reason
            ports: Ports to block, None for all

        Returns:
            Outcome of the firewall call
        """
        canonical = _canonical(address)
        if canonical is None:
            return Outcome.fatal(f"Invalid address: {address}")
        address = canonical
        now = self.clock()

        with self._lock:
            def mutate(state: StateSnapshot) -> Tuple[Outcome, Optional[BlockEntry]]:
                if address in state.blocks:
                    return Outcome.fatal(f"{address} is already blocked"), None
                entry = BlockEntry(
                    address=address,
                    reason=reason,
                    classification="manual",
                    created_at=now,
                    expires_at=None if duration is None else now + duration,
                    ports=ports,
                )
                outcome = self._apply(state, entry)
                return outcome, entry if outcome.ok else None

            outcome, entry = self._commit(address, mutate)
            if entry is not None:
                self.stats["blocks"] += 1
                logger.info(f"Manually blocked {address} ({format_duration(duration)}): {reason}")
            return outcome

    def remove(self, address: str) -> Outcome:
        """
        Remove a stored block from the firewall and the state.

        An address that is also on the deny list keeps its firewall rule;
        only the stored entry goes.
        """
        address = _canonical(address) or address
        with self._lock:
            def mutate(state: StateSnapshot) -> Tuple[Outcome, Optional[BlockEntry]]:
                if address not in state.blocks:
                    return Outcome.fatal(f"{address} is not blocked"), None
                if address in self._deny:
                    outcome = Outcome.success("deny list keeps the firewall rule")
                else:
                    outcome = self.applier.unblock(address)
                if outcome.ok:
                    del state.blocks[address]
                    state.history.pop(address, None)
                return outcome, None

            outcome, _ = self._commit("", mutate)
            if outcome.ok:
                self.stats["unblocks"] += 1
                logger.info(f"Removed block of {address}")
            return outcome

    def restore(self) -> int:
        """
        Re-apply every stored block to the firewall (startup).

        Expired temporary entries are left to the next sweep.

        Returns:
            Number of blocks applied
        """
        now = self.clock()
        restored = 0
        for entry in self.store.load().blocks.values():
            if not entry.permanent and entry.expires_at <= now:
                continue
            duration = None if entry.permanent else max(1, int(entry.expires_at - now))
            outcome = self.applier.block(entry.address, entry.ports, duration)
            if outcome.ok:
                restored += 1
            else:
                self.stats["apply_failures"] += 1
                logger.warning(f"Could not restore block of {entry.address}: {outcome.detail}")
        if restored:
            logger.info(f"Restored {restored} blocks from state")
        return restored

    # =========================================================================
    # Deny list
    # =========================================================================

    def adopt_deny(self, entries: Iterable[ListEntry]) -> None:
        """
        Record deny entries that the daemon already enforces.

        Used by short-lived tools sharing the firewall with the daemon: the
        firewall is not touched, but sweep and remove will leave the rules
        of these addresses in place.
        """
        with self._lock:
            self._deny = {entry.address: entry for entry in entries}

    def enforce_deny(self, entries: Iterable[ListEntry]) -> Tuple[List[str], List[str]]:
        """
        Make the firewall match the deny list.

        New entries are blocked permanently, entries no longer listed are
        unblocked unless the state holds a block of their own. Failed
        blocks are retried on the next call.

        Returns:
            (addresses blocked, addresses unblocked)
        """
        with self._lock:
            wanted = {entry.address: entry for entry in entries}
            added: List[str] = []
            removed: List[str] = []

            for address, entry in wanted.items():
                if address in self._deny:
                    continue
                outcome = self.applier.block(address, None, None)
                if outcome.ok:
                    self._deny[address] = entry
                    added.append(address)
                else:
                    self.stats["apply_failures"] += 1
                    logger.warning(f"Could not apply deny entry {address}: {outcome.detail}")

            stale = [address for address in self._deny if address not in wanted]
            if stale:
                stored = self.store.load().blocks
                for address in stale:
                    if address not in stored:
                        outcome = self.applier.unblock(address)
                        if not outcome.ok:
                            logger.warning(f"Could not lift deny entry {address}: {outcome.detail}")
                            continue
                    del self._deny[address]
                    removed.append(address)

            if added or removed:
                logger.info(f"Deny list enforced: {len(added)} added, {len(removed)} removed")
            return added, removed

    # =========================================================================
    # Queries
    # =========================================================================

    def state_of(self, address: str) -> BlockState:
        """Current block state of address."""
        if address in self._pending:
            return BlockState.PENDING
        if address in self._deny:
            return BlockState.BLOCKED_PERMANENT
        entry = self.store.load().blocks.get(address)
        if entry is None:
            return BlockState.UNBLOCKED
        return BlockState.BLOCKED_PERMANENT if entry.permanent else BlockState.BLOCKED_TEMPORARY

    def active(self) -> List[BlockEntry]:
        """Stored blocks, oldest first."""
        return sorted(self.store.load().blocks.values(), key=lambda e: e.created_at)

    @property
    def denied(self) -> List[str]:
        """Addresses currently enforced from the deny list."""
        return sorted(self._deny)
