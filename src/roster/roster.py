from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass
from typing import IO, Iterable, List, Union

from src.cluster.errors import ValidationError
from src.common.naming import NO_GROUP

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RosterEntry:
    id: str
    name: str
    group: int = NO_GROUP

    @property
    def has_group(self) -> bool:
        return self.group != NO_GROUP


def _strip_marker(value: str) -> str:
    # LMS exports prefix ids and usernames with '#'.
    value = value.strip()
    return value[1:] if value.startswith("#") else value


def parse_group_label(label: str) -> int:
    """``"Group 3"`` -> 3; anything without a numeric second word -> NO_GROUP."""

    parts = label.strip().split(" ")
    if len(parts) < 2:
        return NO_GROUP
    try:
        return int(parts[1])
    except ValueError:
        return NO_GROUP


def _parse_rows(rows: Iterable[List[str]]) -> List[RosterEntry]:
    entries: List[RosterEntry] = []
    iterator = iter(rows)
    if next(iterator, None) is None:
        return entries
    for line_number, row in enumerate(iterator, start=2):
        if not row or all(not cell.strip() for cell in row):
            continue
        if len(row) < 3:
            raise ValidationError(f"roster line {line_number}: expected 3 columns (id, name, group), got {len(row)}")
        name = _strip_marker(row[1])
        if not name:
            raise ValidationError(f"roster line {line_number}: display name is empty")
        group = parse_group_label(row[2])
        if group == NO_GROUP and row[2].strip():
            logger.warning("roster line %d: unrecognised group label %r", line_number, row[2])
        entries.append(RosterEntry(id=_strip_marker(row[0]), name=name, group=group))
    return entries


def parse_roster(source: Union[str, bytes, IO[str]]) -> List[RosterEntry]:
    """Parse a roster CSV (header row, then id, display name, group label)."""

    if isinstance(source, bytes):
        try:
            source = source.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise ValidationError(f"roster is not valid UTF-8: {exc}") from exc
    if isinstance(source, str):
        source = io.StringIO(source.lstrip("\ufeff"))
    try:
        return _parse_rows(csv.reader(source))
    except csv.Error as exc:
        raise ValidationError(f"roster is not valid CSV: {exc}") from exc


__all__ = ["RosterEntry", "parse_group_label", "parse_roster"]
