"""Data models for failure detection and blocking."""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from utils.addresses import IPNetwork

Ports = Optional[Tuple[int, ...]]


class OutcomeStatus(Enum):
    """Result class of an operation that may fail in an expected way."""

    OK = "ok"
    RECOVERABLE = "recoverable"
    FATAL = "fatal"


@dataclass(frozen=True)
class Outcome:
    """Typed result returned instead of raising for expected failures."""

    status: OutcomeStatus = OutcomeStatus.OK
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.OK

    @classmethod
    def success(cls, detail: str = "") -> "Outcome":
        return cls(OutcomeStatus.OK, detail)

    @classmethod
    def recoverable(cls, detail: str) -> "Outcome":
        return cls(OutcomeStatus.RECOVERABLE, detail)

    @classmethod
    def fatal(cls, detail: str) -> "Outcome":
        return cls(OutcomeStatus.FATAL, detail)


class ListDecision(Enum):
    """List membership of an address, in precedence order."""

    ALLOW = "allow"
    IGNORE = "ignore"
    DENY = "deny"
    UNLISTED = "unlisted"


class BlockState(Enum):
    """Lifecycle state of an address in the block manager."""

    UNBLOCKED = "unblocked"
    PENDING = "pending"
    BLOCKED_TEMPORARY = "blocked_temporary"
    BLOCKED_PERMANENT = "blocked_permanent"


@dataclass
class LogSource:
    """A monitored log file and the rule set applied to its lines."""

    path: str
    rule_set_id: str
    last_offset: Optional[int] = None
    last_inode: Optional[Tuple[int, int]] = None
    last_size: int = 0
    missing: bool = False
    pending: bytes = b""


@dataclass(frozen=True)
class Rule:
    """A compiled pattern that identifies an offending address."""

    pattern: re.Pattern
    classification: str
    weight: int = 1
    port_hint: Ports = None
    description: str = ""


@dataclass(frozen=True)
class RuleSet:
    """Ordered, immutable list of rules; the first matching rule wins."""

    name: str
    rules: Tuple[Rule, ...] = ()

    def __len__(self) -> int:
        return len(self.rules)


@dataclass(frozen=True)
class Match:
    """Result of applying a rule set to one log line."""

    address: str
    classification: str
    weight: int = 1
    ports: Ports = None
    description: str = ""
    account: str = ""


@dataclass
class FailureRecord:
    """Timestamps of recent failures for one (address, classification)."""

    address: str
    classification: str
    timestamps: List[float] = field(default_factory=list)
    window_seconds: int = 3600
    threshold: int = 5

    @property
    def count(self) -> int:
        return len(self.timestamps)


@dataclass
class BlockEntry:
    """A block recorded in the state store."""

    address: str
    reason: str
    classification: str
    created_at: float
    expires_at: Optional[float] = None
    ports: Ports = None

    @property
    def permanent(self) -> bool:
        return self.expires_at is None

    def to_dict(self) -> Dict[str, Any]:
        """Serialise for the state file."""
        return {
            "address": self.address,
            "reason": self.reason,
            "classification": self.classification,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "ports": list(self.ports) if self.ports else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BlockEntry":
        """Create BlockEntry from state file data.

        Raises:
            KeyError, TypeError, ValueError: On malformed records
        """
        expires_at = data.get("expires_at")
        ports = data.get("ports")
        return cls(
            address=str(data["address"]),
            reason=str(data.get("reason", "")),
            classification=str(data.get("classification", "")),
            created_at=float(data["created_at"]),
            expires_at=None if expires_at is None else float(expires_at),
            ports=tuple(int(p) for p in ports) if ports else None,
        )


@dataclass(frozen=True)
class ListEntry:
    """One address or CIDR from an allow, ignore or deny list file."""

    network: IPNetwork
    comment: str = ""
    source_file: str = ""

    @property
    def address(self) -> str:
        """Literal for single hosts, CIDR notation for wider networks."""
        if self.network.num_addresses == 1:
            return str(self.network.network_address)
        return str(self.network)


@dataclass(frozen=True)
class ReadResult:
    """Lines read from a source in one poll plus the read outcome."""

    lines: List[str] = field(default_factory=list)
    outcome: Outcome = field(default_factory=Outcome)


@dataclass(frozen=True)
class BlocklistResult:
    """DNS-blocklist verdict; a timeout is neither listed nor clean."""

    listed: bool = False
    detail: str = ""
    timed_out: bool = False


@dataclass(frozen=True)
class AlertSummary:
    """Event passed to the alert dispatcher when a block is created."""

    address: str
    classification: str
    reason: str
    count: int
    permanent: bool
    expires_at: Optional[float] = None
    ports: Ports = None
    blocklist_detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "classification": self.classification,
            "reason": self.reason,
            "count": self.count,
            "permanent": self.permanent,
            "expires_at": self.expires_at,
            "ports": list(self.ports) if self.ports else None,
            "blocklist_detail": self.blocklist_detail,
        }
