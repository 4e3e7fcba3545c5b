"""Data models for the application."""

from models.detection import (
    AlertSummary,
    BlockEntry,
    BlocklistResult,
    BlockState,
    FailureRecord,
    ListDecision,
    ListEntry,
    LogSource,
    Match,
    Outcome,
    OutcomeStatus,
    ReadResult,
    Rule,
    RuleSet,
)

__all__ = [
    'AlertSummary',
    'BlockEntry',
    'BlocklistResult',
    'BlockState',
    'FailureRecord',
    'ListDecision',
    'ListEntry',
    'LogSource',
    'Match',
    'Outcome',
    'OutcomeStatus',
    'ReadResult',
    'Rule',
    'RuleSet',
]
