"""Tenant roster parsing."""

from .roster import RosterEntry, parse_group_label, parse_roster

__all__ = ["RosterEntry", "parse_group_label", "parse_roster"]
