"""Parsing of duration strings such as ``"300ms"``, ``"1.5h"`` or ``"2h45m"``."""

from __future__ import annotations

import re
from fractions import Fraction

__all__ = ["parse_duration"]

_NANOSECOND = 1
_MICROSECOND = 1_000 * _NANOSECOND
_MILLISECOND = 1_000 * _MICROSECOND
_SECOND = 1_000 * _MILLISECOND
_MINUTE = 60 * _SECOND
_HOUR = 60 * _MINUTE

_UNITS = {
    "ns": _NANOSECOND,
    "us": _MICROSECOND,
    "\u00b5s": _MICROSECOND,  # micro sign
    "\u03bcs": _MICROSECOND,  # greek small letter mu
    "ms": _MILLISECOND,
    "s": _SECOND,
    "m": _MINUTE,
    "h": _HOUR,
}

_MAX_NANOS = (1 << 63) - 1

_COMPONENT = re.compile(r"(\d*)(?:\.(\d*))?([^\d.]*)")


def parse_duration(text: str) -> float:
    """Parse a duration string and return its length in seconds.

    A duration is an optionally signed sequence of decimal numbers, each with
    an optional fraction and a unit suffix; valid units are ``ns``, ``us``
    (or ``µs``), ``ms``, ``s``, ``m`` and ``h``. The bare string ``"0"`` is
    also accepted. Raises :class:`ValueError` for anything else.
    """
    rest = text
    negative = False
    if rest and rest[0] in "+-":
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return 0.0
    if not rest:
        raise ValueError(f"invalid duration {text!r}")

    total = 0
    pos = 0
    while pos < len(rest):
        match = _COMPONENT.match(rest, pos)
        whole, frac, unit = match.groups()
        if not whole and not frac:
            raise ValueError(f"invalid duration {text!r}")
        if not unit:
            raise ValueError(f"missing unit in duration {text!r}")
        scale = _UNITS.get(unit)
        if scale is None:
            raise ValueError(f"unknown unit {unit!r} in duration {text!r}")
        nanos = int(whole or "0") * scale
        if frac:
            nanos += int(Fraction(int(frac), 10 ** len(frac)) * scale)
        total += nanos
        if total > _MAX_NANOS:
            raise ValueError(f"invalid duration {text!r}")
        pos = match.end()

    if negative:
        total = -total
    return total / _SECOND