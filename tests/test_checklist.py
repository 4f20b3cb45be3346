from datetime import datetime

import pytest

from memlane.errors import InvalidRequest
from memlane.services.checklist import count_checkboxes, toggle_checkbox
from memlane.services.formatting import format_duration, format_marker

BODY = """• Discussed roadmap
- [ ] Draft the plan
  - [x] Collect numbers
* [ ] Review with team
- [] not a checkbox
Done [ ] inline text"""


def test_counts_only_list_checkboxes():
    assert count_checkboxes(BODY) == 3


@pytest.mark.parametrize(
    "index, line_before, line_after",
    [
        (0, "- [ ] Draft the plan", "- [x] Draft the plan"),
        (1, "  - [x] Collect numbers", "  - [ ] Collect numbers"),
        (2, "* [ ] Review with team", "* [x] Review with team"),
    ],
)
def test_toggle_flips_exactly_the_nth_checkbox(index, line_before, line_after):
    toggled = toggle_checkbox(BODY, index)

    assert toggled == BODY.replace(line_before, line_after)
    assert len(toggled) == len(BODY)
    assert sum(a != b for a, b in zip(toggled, BODY)) == 1


def test_toggling_twice_restores_the_text():
    assert toggle_checkbox(toggle_checkbox(BODY, 2), 2) == BODY


def test_uppercase_mark_counts_as_checked():
    assert toggle_checkbox("- [X] shout", 0) == "- [ ] shout"


def test_out_of_range_index_is_rejected():
    with pytest.raises(InvalidRequest):
        toggle_checkbox(BODY, 3)


@pytest.mark.parametrize("seconds, expected", [(0, "00:00"), (59.9, "00:59"), (75, "01:15"), (3725, "62:05"), (-4, "00:00")])
def test_duration_is_shown_as_minutes_and_seconds(seconds, expected):
    assert format_duration(seconds) == expected


def test_marker_uses_twelve_hour_clock():
    assert format_marker(datetime(2024, 1, 1, 0, 5)) == "12:05 AM"
    assert format_marker(datetime(2024, 1, 1, 13, 30)) == "01:30 PM"
