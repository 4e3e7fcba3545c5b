"""Sliding-window failure counts per (address, classification)."""

from bisect import bisect_right
from typing import Callable, Dict, Iterator, Tuple

from models import FailureRecord
from utils.logger import get_logger
from utils.settings import ClassificationPolicy

logger = get_logger("ledger")

Key = Tuple[str, str]


class FailureLedger:
    """
    Counts recent failures.

    Timestamps at or before ``now - window`` fall out of the window. Records
    whose window empties are removed, so sustained low-level noise does not
    grow the ledger. Not thread safe: callers serialise access.

    Usage:
        ledger = FailureLedger(settings.policy)
        count = ledger.record("203.0.113.7", "sshd", 1, now)
        if count >= settings.policy("sshd").threshold:
            ...
    """

    def __init__(self, policy_lookup: Callable[[str], ClassificationPolicy]):
        """
        Initialize ledger.

        Args:
            policy_lookup: Returns the policy (window, threshold) of a classification
        """
        self._policy_lookup = policy_lookup
        self._records: Dict[Key, FailureRecord] = {}

    def _prune(self, record: FailureRecord, now: float) -> None:
        cutoff = now - record.window_seconds
        # timestamps are kept sorted; drop everything <= cutoff
        index = bisect_right(record.timestamps, cutoff)
        if index:
            del record.timestamps[:index]

    def record(self, address: str, classification: str, weight: int, now: float) -> int:
        """
        Add weight failures at now and return the count inside the window.

        Args:
            address: Offending address
            classification: Failure classification
            weight: Failures represented by this match
            now: Current timestamp

        Returns:
            Number of failures in the trailing window
        """
        key = (address, classification)
        record = self._records.get(key)
        if record is None:
            policy = self._policy_lookup(classification)
            record = FailureRecord(
                address=address,
                classification=classification,
                window_seconds=policy.window_seconds,
                threshold=policy.threshold,
            )
            self._records[key] = record

        if record.timestamps and now < record.timestamps[-1]:
            # clock went backwards; keep the list sorted
            position = bisect_right(record.timestamps, now)
            record.timestamps[position:position] = [now] * max(1, weight)
        else:
            record.timestamps.extend([now] * max(1, weight))

        self._prune(record, now)
        if not record.timestamps:
            del self._records[key]
            return 0
        return record.count

    def count(self, address: str, classification: str, now: float) -> int:
        """Current count for a key without recording anything."""
        key = (address, classification)
        record = self._records.get(key)
        if record is None:
            return 0
        self._prune(record, now)
        if not record.timestamps:
            del self._records[key]
            return 0
        return record.count

    def purge_expired(self, now: float) -> int:
        """
        Drop timestamps outside their window everywhere.

        Returns:
            Number of records removed
        """
        removed = 0
        for key in list(self._records):
            record = self._records[key]
            self._prune(record, now)
            if not record.timestamps:
                del self._records[key]
                removed += 1
        if removed:
            logger.debug(f"Purged {removed} expired failure records")
        return removed

    def set_policy_lookup(self, policy_lookup: Callable[[str], ClassificationPolicy]) -> None:
        """Switch to new policies (after a reload); existing records adopt them."""
        self._policy_lookup = policy_lookup
        for record in self._records.values():
            policy = policy_lookup(record.classification)
            record.window_seconds = policy.window_seconds
            record.threshold = policy.threshold

    def forget(self, address: str) -> None:
        """Drop every record for address."""
        for key in [k for k in self._records if k[0] == address]:
            del self._records[key]

    def clear(self) -> None:
        self._records.clear()

    def get(self, address: str, classification: str) -> FailureRecord:
        """Get record (KeyError if absent)."""
        return self._records[(address, classification)]

    def __iter__(self) -> Iterator[FailureRecord]:
        return iter(list(self._records.values()))

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key: Key) -> bool:
        return key in self._records
