"""Actions package: firewall, alert and blocklist collaborators."""

from .alerts import LogAlertDispatcher, MultiAlertDispatcher, WebhookAlertDispatcher
from .base import AlertDispatcher, BlocklistChecker, DisabledBlocklistChecker, FirewallApplier, NullApplier
from .iptables import IptablesApplier

__all__ = [
    'AlertDispatcher',
    'BlocklistChecker',
    'DisabledBlocklistChecker',
    'FirewallApplier',
    'IptablesApplier',
    'LogAlertDispatcher',
    'MultiAlertDispatcher',
    'NullApplier',
    'WebhookAlertDispatcher',
]
