"""Display helpers for transcripts and durations."""

from datetime import datetime

# Printed after every segment except the last one of a session
SEGMENT_DIVIDER = "━" * 49


def format_marker(moment: datetime) -> str:
    """Clock-time marker written above each segment's text, e.g. ``03:07 PM``."""
    return moment.strftime("%I:%M %p")


def format_duration(seconds: float) -> str:
    """Format a duration as ``mm:ss``; minutes keep growing past 59."""
    total = max(0, int(seconds))
    return f"{total // 60:02d}:{total % 60:02d}"
