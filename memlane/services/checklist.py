"""Checkbox action items inside summary bodies (``- [ ] task`` / ``- [x] task``)."""

import re

from memlane.errors import InvalidRequest

_CHECKBOX_LINE = re.compile(r"^(\s*[-*] \[)([ xX])(\])")


def count_checkboxes(text: str) -> int:
    return sum(1 for line in text.split("\n") if _CHECKBOX_LINE.match(line))


def toggle_checkbox(text: str, index: int) -> str:
    """Flip the *index*-th checkbox (0-based, document order); nothing else changes."""
    lines = text.split("\n")
    seen = -1
    for i, line in enumerate(lines):
        match = _CHECKBOX_LINE.match(line)
        if not match:
            continue
        seen += 1
        if seen == index:
            mark = " " if match.group(2) in "xX" else "x"
            lines[i] = line[: match.start(2)] + mark + line[match.end(2):]
            return "\n".join(lines)
    raise InvalidRequest(f"Summary has no checkbox #{index}")
