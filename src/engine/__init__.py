"""Detection engine: log reading, rule matching, failure counting and blocking."""

from .blocks import BlockManager
from .dispatcher import Dispatcher, build_dispatcher
from .ledger import FailureLedger
from .lists import ListResolver
from .log_reader import LogReader
from .rules import RuleEngine, load_rule_sets
from .sources import build_sources

__all__ = [
    'BlockManager',
    'Dispatcher',
    'FailureLedger',
    'ListResolver',
    'LogReader',
    'RuleEngine',
    'build_dispatcher',
    'build_sources',
    'load_rule_sets',
]
