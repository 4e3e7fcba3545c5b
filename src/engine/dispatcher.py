"""
Dispatcher - the daemon's detection loop.

Each cycle: poll sources -> match rules -> update the failure ledger ->
for addresses over threshold resolve list membership and trigger a block ->
expiry sweep -> periodic list reload and deny-list enforcement.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Set

from const import EXIT_FATAL, EXIT_OK, MISSING_SOURCE_LOG_INTERVAL, STATE_ERROR_LOG_INTERVAL
from database import StateStore
from models import BlockState, ListDecision, LogSource, Match, RuleSet
from actions.alerts import LogAlertDispatcher, MultiAlertDispatcher, WebhookAlertDispatcher
from actions.base import (AlertDispatcher, BlocklistChecker, DisabledBlocklistChecker, FirewallApplier,
                          NullApplier)
from actions.iptables import IptablesApplier
from utils.filelock import StateIntegrityError
from utils.logger import RateLimitedLog, get_logger
from utils.settings import ClassificationPolicy, ConfigError, Settings

from .blocks import BlockManager
from .ledger import FailureLedger
from .lists import ListResolver
from .log_reader import LogReader
from .rules import RuleEngine, load_rule_sets
from .sources import build_sources

logger = get_logger("dispatcher")

STAT_KEYS = (
    "cycles", "lines", "matched", "skipped", "blocks", "refreshes", "unblocks",
    "apply_failures", "alert_failures", "rbl_timeouts", "source_errors", "state_errors",
)


class Dispatcher:
    """
    Drives detection cycles at a fixed interval.

    Ledger and block manager updates are serialised by one mutex; only
    source reads run in parallel when ``daemon.reader_threads`` > 1.

    Usage:
        dispatcher = build_dispatcher(Settings.load("config/config.yaml"))
        signal.signal(signal.SIGHUP, lambda *_: dispatcher.request_reload())
        sys.exit(dispatcher.run_forever())
    """

    def __init__(self, settings: Settings, sources: List[LogSource], reader: LogReader,
                 engine: RuleEngine, rule_sets: Dict[str, RuleSet], ledger: FailureLedger,
                 resolver: ListResolver, blocks: BlockManager,
                 checker: Optional[BlocklistChecker] = None,
                 clock: Callable[[], float] = time.time):
        self.sources = sources
        self.reader = reader
        self.engine = engine
        self.rule_sets = rule_sets
        self.ledger = ledger
        self.resolver = resolver
        self.blocks = blocks
        self.checker = checker or DisabledBlocklistChecker()
        self.clock = clock

        self._mutex = threading.Lock()
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._reload_requested = threading.Event()
        self._state_log = RateLimitedLog(logger, STATE_ERROR_LOG_INTERVAL)
        self._source_log = RateLimitedLog(logger, MISSING_SOURCE_LOG_INTERVAL)
        self._own_stats: Dict[str, int] = {"cycles": 0, "rbl_timeouts": 0, "source_errors": 0, "state_errors": 0}
        self._state_failed = False
        self._last_list_check: Optional[float] = None
        # addresses blocked or refreshed in the current cycle
        self._refreshed: Set[str] = set()

        self._configure(settings)
        self.ledger.set_policy_lookup(self.policy)

    def _configure(self, settings: Settings) -> None:
        self.settings = settings
        self.interval = max(0.1, settings.get_float("daemon.interval", 10))
        self.reader_threads = settings.get_int("daemon.reader_threads", 1, minimum=1)
        self.list_check_interval = settings.get_int("daemon.list_check_interval", 60, minimum=0)
        self.reader.read_budget_bytes = settings.get_int("daemon.read_budget_bytes", 1024 * 1024, minimum=1)
        self._policies: Dict[str, ClassificationPolicy] = {}

    def policy(self, classification: str) -> ClassificationPolicy:
        """Policy of a classification, cached until the next reload."""
        policy = self._policies.get(classification)
        if policy is None:
            policy = self.settings.policy(classification)
            self._policies[classification] = policy
        return policy

    @property
    def stats(self) -> Dict[str, int]:
        """Aggregate counters of every component."""
        merged = dict.fromkeys(STAT_KEYS, 0)
        merged.update(self._own_stats)
        merged.update(self.engine.stats)
        merged.update(self.blocks.stats)
        return merged

    # =========================================================================
    # Control
    # =========================================================================

    def request_reload(self) -> None:
        """Re-read configuration and list files before the next cycle."""
        self._reload_requested.set()
        self._wake.set()

    def request_stop(self) -> None:
        """Finish the current cycle and leave run_forever."""
        self._stop.set()
        self._wake.set()

    def close(self, timeout: Optional[float] = None) -> None:
        """Deliver queued alerts and release worker threads."""
        self.blocks.close(timeout)

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def start(self) -> None:
        """Re-apply stored blocks and the deny list (once, before the loop)."""
        try:
            self.blocks.restore()
        except StateIntegrityError as e:
            self._state_error(e)
        self._enforce_deny()
        self._last_list_check = self.clock()

    def reload(self) -> bool:
        """
        Re-read configuration, rules, sources and lists without restarting.

        On an invalid configuration the running one is kept.

        Returns:
            True if the new configuration was applied
        """
        logger.info("Reloading configuration")
        try:
            settings = self.settings.reload()
            rule_sets = load_rule_sets(settings)
            sources = build_sources(settings, rule_sets)
            check_policies(settings, rule_sets)
        except ConfigError as e:
            logger.error(f"Reload failed, keeping current configuration: {e}")
            return False

        with self._mutex:
            known = {(s.path, s.rule_set_id): s for s in self.sources}
            self.sources = [known.get((s.path, s.rule_set_id), s) for s in sources]
            self.rule_sets = rule_sets
            self._configure(settings)
            self.ledger.set_policy_lookup(self.policy)
            self.blocks.configure(settings)
            self.resolver.set_paths(
                settings.get_list("lists.allow"),
                settings.get_list("lists.ignore"),
                settings.get_list("lists.deny"),
            )
            self.resolver.reload()
        self._enforce_deny()
        logger.info(f"Configuration reloaded: {len(self.sources)} sources, {len(self.rule_sets)} rule sets")
        return True

    # =========================================================================
    # Cycle
    # =========================================================================

    def run_cycle(self) -> Dict[str, int]:
        """
        Run one detection cycle.

        Returns:
            Counters after the cycle
        """
        if self._reload_requested.is_set():
            self._reload_requested.clear()
            self.reload()

        now = self.clock()
        self._own_stats["cycles"] += 1
        self._state_failed = False
        self._refreshed.clear()

        if self.reader_threads > 1 and len(self.sources) > 1:
            with ThreadPoolExecutor(max_workers=self.reader_threads, thread_name_prefix="bastion-reader") as pool:
                list(pool.map(lambda source: self._process_source(source, now), self.sources))
        else:
            for source in self.sources:
                self._process_source(source, now)

        with self._mutex:
            if not self._state_failed:
                try:
                    self.blocks.sweep(now)
                except (StateIntegrityError, OSError) as e:
                    self._state_error(e)
            self.ledger.purge_expired(now)

        if self._last_list_check is None or now - self._last_list_check >= self.list_check_interval:
            self._last_list_check = now
            changed = self.resolver.reload_if_changed()
            if changed:
                logger.info(f"List files changed: {', '.join(sorted(changed))}")
            self._enforce_deny()

        return self.stats

    def _process_source(self, source: LogSource, now: float) -> None:
        try:
            result = self.reader.poll(source)
        except Exception as e:
            logger.exception(f"Unexpected error reading {source.path}")
            result = None
            detail = str(e)
        else:
            detail = result.outcome.detail

        if result is None or not result.outcome.ok:
            with self._mutex:
                self._own_stats["source_errors"] += 1
            if not source.missing:
                self._source_log.log(logging.WARNING, source.path, f"Skipping source {source.path}: {detail}")
            return

        rule_set = self.rule_sets.get(source.rule_set_id)
        if rule_set is None:
            return
        for line in result.lines:
            match = self.engine.apply(rule_set, line)
            if match is not None:
                self._handle_match(match, now)

    def _handle_match(self, match: Match, now: float) -> None:
        policy = self.policy(match.classification)
        if not policy.enabled:
            return

        with self._mutex:
            count = self.ledger.record(match.address, match.classification, match.weight, now)
            if count < policy.threshold:
                return

            decision = self.resolver.decision(match.address)
            if decision is not ListDecision.UNLISTED:
                logger.debug(f"{match.address} reached threshold but is on the {decision.value} list")
                self.ledger.forget(match.address)
                return

            if self._state_failed:
                return
            if match.address in self._refreshed:
                return

            blocklist_detail = ""
            result = self.checker.check(match.address)
            if result.timed_out:
                self._own_stats["rbl_timeouts"] += 1
            elif result.listed:
                blocklist_detail = result.detail

            try:
                state = self.blocks.trigger(
                    match.address, policy, match.description, count, now,
                    ports=match.ports, blocklist_detail=blocklist_detail,
                )
            except (StateIntegrityError, OSError) as e:
                self._state_error(e)
                return
            if state in (BlockState.BLOCKED_TEMPORARY, BlockState.BLOCKED_PERMANENT):
                self._refreshed.add(match.address)

    def _state_error(self, error: Exception) -> None:
        self._state_failed = True
        self._own_stats["state_errors"] += 1
        self._state_log.log(logging.ERROR, "state", f"State store unavailable, block changes skipped: {error}")

    def _enforce_deny(self) -> None:
        with self._mutex:
            try:
                self.blocks.enforce_deny(self.resolver.deny_entries())
            except (StateIntegrityError, OSError) as e:
                self._state_error(e)

    # =========================================================================
    # Loop
    # =========================================================================

    def run_forever(self) -> int:
        """
        Run cycles until request_stop().

        Returns:
            Exit code: EXIT_OK after a graceful stop, EXIT_FATAL on an
            unexpected error
        """
        logger.info(f"Dispatcher started: {len(self.sources)} sources, interval {self.interval}s")
        try:
            self.start()
            while not self._stop.is_set():
                started = time.monotonic()
                self.run_cycle()
                remaining = self.interval - (time.monotonic() - started)
                if remaining > 0 and not self._stop.is_set():
                    self._wake.wait(remaining)
                self._wake.clear()
        except Exception:
            logger.exception("Fatal error in dispatcher loop")
            return EXIT_FATAL
        finally:
            self.close(self.settings.get_float("alerts.timeout", 5))

        logger.info(f"Dispatcher stopped after {self._own_stats['cycles']} cycles")
        return EXIT_OK


# =============================================================================
# Wiring
# =============================================================================

def check_policies(settings: Settings, rule_sets: Dict[str, RuleSet]) -> None:
    """Resolve the policy of every classification a rule can produce.

    Raises:
        ConfigError: On an invalid classification policy
    """
    for rule_set in rule_sets.values():
        for rule in rule_set.rules:
            settings.policy(rule.classification)
    settings.policy("manual")


def build_applier(settings: Settings) -> FirewallApplier:
    """Firewall applier selected by ``firewall.*`` and ``daemon.enabled``."""
    backend = (settings.get_str("firewall.backend", "iptables") or "").lower()
    if not settings.get_bool("daemon.enabled", True) or settings.get_bool("firewall.dry_run"):
        logger.warning("Detect-only mode: the firewall will not be changed")
        return NullApplier()
    if backend == "none":
        return NullApplier()
    if backend != "iptables":
        raise ConfigError(f"Unknown firewall backend '{backend}'")

    applier = IptablesApplier(
        chain=settings.get_str("firewall.chain", "BASTION"),
        timeout=settings.get_int("firewall.timeout", 10, minimum=1),
    )
    outcome = applier.ensure_chain()
    if not outcome.ok:
        logger.error(f"Firewall chain setup failed: {outcome.detail}")
    return applier


def build_alerts(settings: Settings) -> Optional[AlertDispatcher]:
    """Alert dispatcher from ``alerts.*``; None when alerts are off."""
    if not settings.get_bool("alerts.enabled", True):
        return None
    dispatchers: List[AlertDispatcher] = [LogAlertDispatcher()]
    url = settings.get_str("alerts.webhook_url")
    if url:
        dispatchers.append(WebhookAlertDispatcher(url, timeout=settings.get_float("alerts.timeout", 5)))
    if len(dispatchers) == 1:
        return dispatchers[0]
    return MultiAlertDispatcher(dispatchers)


def build_store(settings: Settings) -> StateStore:
    return StateStore(
        settings.get_str("state.path"),
        lock_path=settings.get_str("state.lock_path"),
        lock_timeout=settings.get_float("state.lock_timeout", 10),
    )


def build_dispatcher(settings: Settings, clock: Callable[[], float] = time.time,
                     applier: Optional[FirewallApplier] = None,
                     alerts: Optional[AlertDispatcher] = None,
                     checker: Optional[BlocklistChecker] = None) -> Dispatcher:
    """
    Wire every component from settings.

    Raises:
        ConfigError: On an invalid configuration
    """
    rule_sets = load_rule_sets(settings)
    sources = build_sources(settings, rule_sets)
    check_policies(settings, rule_sets)

    resolver = ListResolver(
        settings.get_list("lists.allow"),
        settings.get_list("lists.ignore"),
        settings.get_list("lists.deny"),
    )
    blocks = BlockManager(
        build_store(settings),
        applier or build_applier(settings),
        alerts if alerts is not None else build_alerts(settings),
        settings,
        clock=clock,
    )
    return Dispatcher(
        settings,
        sources,
        LogReader(settings.get_int("daemon.read_budget_bytes", 1024 * 1024, minimum=1)),
        RuleEngine(),
        rule_sets,
        FailureLedger(settings.policy),
        resolver,
        blocks,
        checker=checker,
        clock=clock,
    )
