"""
Database module for Bastion.

This module provides the persistent block state shared with the admin CLI.
"""

from .state_store import StateSnapshot, StateStore

__all__ = ["StateSnapshot", "StateStore"]
