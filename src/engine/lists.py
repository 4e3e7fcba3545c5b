"""Allow / ignore / deny list files and precedence resolution."""

import os
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from models import ListDecision, ListEntry
from utils.addresses import address_in, parse_network
from utils.logger import get_logger

logger = get_logger("lists")

_INCLUDE = re.compile(r'^Include\s+(\S+)', re.IGNORECASE)

# path -> mtime_ns (None when the file does not exist)
Stamps = Dict[str, Optional[int]]

LIST_KINDS = ("allow", "ignore", "deny")


def _mtime(path: str) -> Optional[int]:
    try:
        return os.stat(path).st_mtime_ns
    except OSError:
        return None


def parse_list_file(path: str, _seen: Optional[Set[str]] = None) -> Tuple[List[ListEntry], Stamps, int]:
    """
    Parse one list file.

    Format: one address or CIDR per line, ``#`` starts a comment (a trailing
    comment is kept as the entry's comment), ``Include <path>`` pulls in
    another file. Unreadable files yield no entries.

    Returns:
        (entries, mtimes of every file read, number of invalid lines)
    """
    seen = _seen if _seen is not None else set()
    real = os.path.realpath(path)
    stamps: Stamps = {path: _mtime(path)}
    if real in seen:
        return [], stamps, 0
    seen.add(real)

    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            lines = f.read().splitlines()
    except FileNotFoundError:
        return [], stamps, 0
    except OSError as e:
        logger.error(f"Cannot read list file {path}: {e}")
        return [], stamps, 0

    entries: List[ListEntry] = []
    invalid = 0
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#"):
            continue

        include = _INCLUDE.match(line)
        if include:
            included, included_stamps, included_invalid = parse_list_file(include.group(1), seen)
            entries.extend(included)
            stamps.update(included_stamps)
            invalid += included_invalid
            continue

        value, _, comment = line.partition("#")
        value = value.strip().split()[0] if value.strip() else ""
        network = parse_network(value)
        if network is None:
            invalid += 1
            continue
        entries.append(ListEntry(network=network, comment=comment.strip(), source_file=path))

    return entries, stamps, invalid


@dataclass(frozen=True)
class AddressList:
    """Entries of one list kind from all of its files."""

    entries: Tuple[ListEntry, ...] = ()
    stamps: Stamps = field(default_factory=dict)
    invalid: int = 0

    @classmethod
    def load(cls, paths: Iterable[str]) -> "AddressList":
        entries: List[ListEntry] = []
        stamps: Stamps = {}
        invalid = 0
        for path in paths:
            file_entries, file_stamps, file_invalid = parse_list_file(path)
            entries.extend(file_entries)
            stamps.update(file_stamps)
            invalid += file_invalid
        return cls(entries=tuple(entries), stamps=stamps, invalid=invalid)

    def find(self, address: str) -> Optional[ListEntry]:
        """First entry equal to or containing address."""
        for entry in self.entries:
            if address_in(address, entry.network):
                return entry
        return None

    def __contains__(self, address: str) -> bool:
        return self.find(address) is not None

    def __len__(self) -> int:
        return len(self.entries)


@dataclass(frozen=True)
class ListSnapshot:
    """The three lists as one immutable value, swapped in atomically."""

    allow: AddressList = field(default_factory=AddressList)
    ignore: AddressList = field(default_factory=AddressList)
    deny: AddressList = field(default_factory=AddressList)


class ListResolver:
    """
    Decides whether an address may be blocked.

    Precedence is fixed: Allow, then Ignore, then Deny, else Unlisted.
    Only Unlisted addresses may get a new dynamic block.

    Usage:
        resolver = ListResolver(["/etc/bastion/allow"], ["/etc/bastion/ignore"], ["/etc/bastion/deny"])
        if resolver.decision("203.0.113.7") is ListDecision.UNLISTED:
            ...
    """

    def __init__(self, allow_paths: Iterable[str] = (), ignore_paths: Iterable[str] = (),
                 deny_paths: Iterable[str] = ()):
        self._paths = {
            "allow": list(allow_paths),
            "ignore": list(ignore_paths),
            "deny": list(deny_paths),
        }
        self._snapshot = ListSnapshot()
        self.reload()

    @property
    def snapshot(self) -> ListSnapshot:
        return self._snapshot

    def decision(self, address: str) -> ListDecision:
        """Resolve list membership of address."""
        snapshot = self._snapshot
        if address in snapshot.allow:
            return ListDecision.ALLOW
        if address in snapshot.ignore:
            return ListDecision.IGNORE
        if address in snapshot.deny:
            return ListDecision.DENY
        return ListDecision.UNLISTED

    def deny_entries(self) -> Tuple[ListEntry, ...]:
        return self._snapshot.deny.entries

    def reload(self) -> Set[str]:
        """Re-read every list file unconditionally.

        Returns:
            Kinds whose entries changed
        """
        return self._load(force=True)

    def reload_if_changed(self) -> Set[str]:
        """Re-read list kinds whose files' modification times changed.

        Returns:
            Kinds that were reloaded
        """
        return self._load(force=False)

    def set_paths(self, allow_paths: Iterable[str], ignore_paths: Iterable[str], deny_paths: Iterable[str]) -> None:
        """Point at new list files (configuration reload); call reload() after."""
        self._paths = {
            "allow": list(allow_paths),
            "ignore": list(ignore_paths),
            "deny": list(deny_paths),
        }

    def _load(self, force: bool) -> Set[str]:
        current = self._snapshot
        updated = {}
        changed: Set[str] = set()
        for kind in LIST_KINDS:
            old: AddressList = getattr(current, kind)
            if not force and not self._stale(kind, old):
                updated[kind] = old
                continue
            new = AddressList.load(self._paths[kind])
            if new.invalid:
                logger.warning(f"{new.invalid} invalid entries skipped in {kind} list")
            updated[kind] = new
            if force or new.entries != old.entries:
                changed.add(kind)
            if not force:
                logger.info(f"Reloaded {kind} list: {len(new)} entries")

        self._snapshot = ListSnapshot(**updated)
        return changed

    def _stale(self, kind: str, current: AddressList) -> bool:
        stamps = current.stamps
        if set(self._paths[kind]) - set(stamps):
            return True
        return any(_mtime(path) != mtime for path, mtime in stamps.items())
