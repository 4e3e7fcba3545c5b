"""Interfaces of the collaborators the engine calls out to."""

from abc import ABC, abstractmethod
from typing import Optional

from models import AlertSummary, BlocklistResult, Outcome
from models.detection import Ports
from utils.logger import get_logger

logger = get_logger(__name__)


class FirewallApplier(ABC):
    """Applies and removes packet-filter blocks for single addresses."""

    @abstractmethod
    def block(self, address: str, ports: Ports = None, duration: Optional[int] = None) -> Outcome:
        """
        Block traffic from address.

        Args:
            address: IPv4/IPv6 literal or CIDR
            ports: Destination ports to block, None for all
            duration: Seconds, None for a permanent block

        Returns:
            Outcome; never raises for firewall errors
        """

    @abstractmethod
    def unblock(self, address: str) -> Outcome:
        """Remove every block for address."""

    @property
    def name(self) -> str:
        """Get applier name."""
        return self.__class__.__name__.replace('Applier', '')


class NullApplier(FirewallApplier):
    """Records nothing and always succeeds (detect-only and dry-run mode)."""

    def block(self, address: str, ports: Ports = None, duration: Optional[int] = None) -> Outcome:
        logger.info(f"[dry-run] block {address} ports={ports or 'all'} duration={duration or 'permanent'}")
        return Outcome.success("dry-run")

    def unblock(self, address: str) -> Outcome:
        logger.info(f"[dry-run] unblock {address}")
        return Outcome.success("dry-run")


class AlertDispatcher(ABC):
    """Sends a notification when a block is created."""

    @abstractmethod
    def notify(self, summary: AlertSummary) -> Outcome:
        """Deliver summary; failures are reported, not raised."""


class BlocklistChecker(ABC):
    """Looks an address up in DNS blocklists."""

    @abstractmethod
    def check(self, address: str) -> BlocklistResult:
        """Return whether address is listed; a timeout is inconclusive."""


class DisabledBlocklistChecker(BlocklistChecker):
    """Blocklist checking switched off: every address is unlisted."""

    def check(self, address: str) -> BlocklistResult:
        return BlocklistResult(listed=False, detail="", timed_out=False)
