"""Formatting utilities for alerts and the admin CLI."""

from datetime import datetime
from typing import Optional

from rich.text import Text

from const import SECONDS_IN_DAY, SECONDS_IN_HOUR, SECONDS_IN_MINUTE, SECONDS_IN_YEAR


def format_duration(seconds: Optional[float]) -> str:
    """Format a duration as human readable.

    Args:
        seconds: Duration in seconds, None for permanent

    Returns:
        Formatted string like "3Y", "7d", "2h", "30m", "45s" or "permanent"
    """
    if seconds is None:
        return "permanent"
    if seconds < 0:
        seconds = 0

    if seconds >= SECONDS_IN_YEAR:
        return f"{int(seconds // SECONDS_IN_YEAR)}Y"
    elif seconds >= SECONDS_IN_DAY:
        return f"{int(seconds // SECONDS_IN_DAY)}d"
    elif seconds >= SECONDS_IN_HOUR:
        return f"{int(seconds // SECONDS_IN_HOUR)}h"
    elif seconds >= SECONDS_IN_MINUTE:
        return f"{int(seconds // SECONDS_IN_MINUTE)}m"
    return f"{int(seconds)}s"


def format_timestamp(ts: Optional[float]) -> str:
    """Format a Unix timestamp as local date and time, "-" if unset."""
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def format_expiry(expires_at: Optional[float], now: float) -> Text:
    """Format remaining block lifetime with color coding.

    Args:
        expires_at: Expiry timestamp, None for permanent
        now: Current timestamp

    Returns:
        Rich Text: permanent (bold red), expired (dim), or remaining time
    """
    if expires_at is None:
        return Text("permanent", style="bold red")
    remaining = expires_at - now
    if remaining <= 0:
        return Text("expired", style="dim")
    text = Text(f"{format_duration(remaining)} left")
    if remaining < SECONDS_IN_MINUTE * 5:
        text.style = "yellow"
    return text


def format_ports(ports) -> str:
    """Format a port tuple, "all" when unrestricted."""
    if not ports:
        return "all"
    return ",".join(str(p) for p in ports)
