"""
core/durations.py -- Human-readable duration strings ("15m", "7d", "1 hour").

Token lifetimes are configured as short strings in the environment so ops can
tune them without touching code. parse_duration() turns them into timedelta
values at startup (Settings validation) and again wherever a lifetime is needed.

Accepted grammar: a non-negative number followed by an optional unit. A bare
number is seconds. Units are case-insensitive:
  ms, msec(s), millisecond(s)
  s, sec(s), second(s)
  m, min(s), minute(s)
  h, hr(s), hour(s)
  d, day(s)
  w, week(s)
  y, yr(s), year(s)   (365.25 days)

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations

import re
from datetime import timedelta

_DURATION_RE = re.compile(
    r"^(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>[a-z]+)?$",
    re.IGNORECASE,
)

_UNIT_SECONDS: dict[str, float] = {}
for _names, _seconds in (
    (("ms", "msec", "msecs", "millisecond", "milliseconds"), 0.001),
    (("s", "sec", "secs", "second", "seconds"), 1),
    (("m", "min", "mins", "minute", "minutes"), 60),
    (("h", "hr", "hrs", "hour", "hours"), 60 * 60),
    (("d", "day", "days"), 24 * 60 * 60),
    (("w", "week", "weeks"), 7 * 24 * 60 * 60),
    (("y", "yr", "yrs", "year", "years"), 365.25 * 24 * 60 * 60),
):
    for _name in _names:
        _UNIT_SECONDS[_name] = _seconds


def parse_duration(text: str) -> timedelta:
    """Parse a duration string into a timedelta.

    Raises ValueError for empty strings, negative values, or unknown units.
    """
    match = _DURATION_RE.match(str(text).strip())
    if match is None:
        raise ValueError(f"Invalid duration string: {text!r}")
    unit = (match.group("unit") or "s").lower()
    if unit not in _UNIT_SECONDS:
        raise ValueError(f"Unknown duration unit {unit!r} in {text!r}")
    return timedelta(seconds=float(match.group("value")) * _UNIT_SECONDS[unit])
