import io

import pytest

from src.cluster.errors import ValidationError
from src.common.naming import NO_GROUP
from src.roster import RosterEntry, parse_group_label, parse_roster

ROSTER = """\
OrgDefinedId,Username,Group
#1001,#Jane Doe,Group 1
1002,John Smith,Group 1
1003,Ann Lee,Group 2
1004,Bob Ray,
"""


def test_parse_roster_strips_markers_and_parses_groups() -> None:
    entries = parse_roster(ROSTER)
    assert entries == [
        RosterEntry(id="1001", name="Jane Doe", group=1),
        RosterEntry(id="1002", name="John Smith", group=1),
        RosterEntry(id="1003", name="Ann Lee", group=2),
        RosterEntry(id="1004", name="Bob Ray", group=NO_GROUP),
    ]
    assert not entries[3].has_group


def test_parse_roster_accepts_bytes_with_bom_and_streams() -> None:
    data = ("\ufeff" + ROSTER).encode("utf-8")
    assert len(parse_roster(data)) == 4
    assert len(parse_roster(io.StringIO(ROSTER))) == 4


def test_header_only_and_empty_rosters_are_empty() -> None:
    assert parse_roster("") == []
    assert parse_roster("OrgDefinedId,Username,Group\n") == []
    assert parse_roster("OrgDefinedId,Username,Group\n\n,,\n") == []


@pytest.mark.parametrize(
    "label, expected",
    [("Group 3", 3), ("Group 12", 12), ("Group", NO_GROUP), ("Group x", NO_GROUP), ("", NO_GROUP)],
)
def test_parse_group_label(label: str, expected: int) -> None:
    assert parse_group_label(label) == expected


def test_short_rows_are_rejected() -> None:
    with pytest.raises(ValidationError, match="line 2"):
        parse_roster("id,name,group\n1001,Jane Doe\n")


def test_empty_name_is_rejected() -> None:
    with pytest.raises(ValidationError, match="display name"):
        parse_roster("id,name,group\n1001,#,Group 1\n")


def test_invalid_utf8_is_a_validation_error() -> None:
    with pytest.raises(ValidationError):
        parse_roster(b"id,name,group\n\xff\xfe,x,Group 1\n")
