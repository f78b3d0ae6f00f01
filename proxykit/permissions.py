"""Whitelist and blacklist rules of the form ``actions:hosts:ports``."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional

__all__ = [
    "PortRange",
    "PortSet",
    "StringSet",
    "Permission",
    "Permissions",
    "parse_port_range",
    "parse_port_set",
    "parse_string_set",
    "parse_permissions",
    "can",
]

_INTEGER = re.compile(r"[+-]?\d+")


def _atoi(text: str) -> int:
    if not _INTEGER.fullmatch(text):
        raise ValueError(f"invalid syntax: {text!r}")
    return int(text)


def _glob(pattern: str, subject: str) -> bool:
    """Match ``subject`` against ``pattern`` where ``*`` matches any run."""
    if pattern == "":
        return subject == pattern
    if pattern == "*":
        return True
    parts = pattern.split("*")
    if len(parts) == 1:
        return subject == pattern
    leading = pattern.startswith("*")
    trailing = pattern.endswith("*")
    *inner, last = parts
    for i, part in enumerate(inner):
        idx = subject.find(part)
        if i == 0:
            if not leading and idx != 0:
                return False
        elif idx < 0:
            return False
        subject = subject[idx + len(part):]
    return trailing or subject.endswith(last)


@dataclass(frozen=True)
class PortRange:
    """An inclusive range of ports, such as 1000-2000."""

    min: int
    max: int

    def contains(self, value: int) -> bool:
        return self.min <= value <= self.max


def parse_port_range(text: str) -> PortRange:
    """Parse ``"80"``, ``"1000-2000"`` or ``"*"`` (all ports)."""
    if text == "*":
        return PortRange(0, 65535)
    bounds = text.split("-")
    if len(bounds) == 1:
        port = _atoi(text)
        if port < 0 or port > 65535:
            raise ValueError(f"invalid port: {text}")
        return PortRange(port, port)
    if len(bounds) == 2:
        low = _atoi(bounds[0])
        high = _atoi(bounds[1])
        return PortRange(max(0, min(low, high)), min(65535, max(low, high)))
    raise ValueError(f"invalid range: {text}")


@dataclass(frozen=True)
class PortSet:
    """A set of port ranges."""

    ranges: tuple = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "ranges", tuple(self.ranges))

    def __iter__(self) -> Iterator[PortRange]:
        return iter(self.ranges)

    def __len__(self) -> int:
        return len(self.ranges)

    def contains(self, value: int) -> bool:
        return any(r.contains(value) for r in self.ranges)


def parse_port_set(text: str) -> PortSet:
    """Parse a comma separated list of port ranges."""
    if text == "":
        raise ValueError("must specify at least one port")
    return PortSet(parse_port_range(part) for part in text.split(","))


@dataclass(frozen=True)
class StringSet:
    """A set of glob patterns."""

    patterns: tuple = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "patterns", tuple(self.patterns))

    def __iter__(self) -> Iterator[str]:
        return iter(self.patterns)

    def __len__(self) -> int:
        return len(self.patterns)

    def contains(self, subject: str) -> bool:
        return any(_glob(p, subject) for p in self.patterns)


def parse_string_set(text: str) -> StringSet:
    """Parse a comma separated list of patterns."""
    if text == "":
        raise ValueError("cannot be empty")
    return StringSet(text.split(","))


@dataclass(frozen=True)
class Permission:
    """A single rule granting actions on hosts and ports."""

    actions: StringSet
    hosts: StringSet
    ports: PortSet


@dataclass(frozen=True)
class Permissions:
    """An ordered collection of rules; any matching rule grants access."""

    rules: tuple = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "rules", tuple(self.rules))

    def __iter__(self) -> Iterator[Permission]:
        return iter(self.rules)

    def __len__(self) -> int:
        return len(self.rules)

    def can(self, action: str, host: str, port: int) -> bool:
        return any(
            p.actions.contains(action)
            and p.hosts.contains(host)
            and p.ports.contains(port)
            for p in self.rules
        )


def parse_permissions(text: str) -> Permissions:
    """Parse space separated ``actions:hosts:ports`` rules."""
    if text == "":
        return Permissions()
    rules = []
    for perm in text.split(" "):
        parts = perm.split(":")
        if len(parts) != 3:
            raise ValueError(
                f"permission must have format [actions]:[hosts]:[ports] given: {perm}"
            )
        try:
            actions = parse_string_set(parts[0])
        except ValueError:
            raise ValueError(
                f"action list must look like connect,bind given: {parts[0]}"
            ) from None
        try:
            hosts = parse_string_set(parts[1])
        except ValueError:
            raise ValueError(
                f"hosts list must look like google.pl,*.google.com given: {parts[1]}"
            ) from None
        try:
            ports = parse_port_set(parts[2])
        except ValueError:
            raise ValueError(
                f"ports list must look like 80,8000-9000, given: {parts[2]}"
            ) from None
        rules.append(Permission(actions, hosts, ports))
    return Permissions(rules)


def _split_host_port(addr: str) -> tuple:
    if addr.startswith("["):
        end = addr.find("]")
        if end < 0:
            raise ValueError(f"missing ']' in address {addr!r}")
        if end + 1 >= len(addr) or addr[end + 1] != ":":
            raise ValueError(f"missing port in address {addr!r}")
        host, port = addr[1:end], addr[end + 2:]
        if "[" in host or "]" in port or "[" in port:
            raise ValueError(f"unexpected bracket in address {addr!r}")
        return host, port
    idx = addr.rfind(":")
    if idx < 0:
        raise ValueError(f"missing port in address {addr!r}")
    host, port = addr[:idx], addr[idx + 1:]
    if ":" in host:
        raise ValueError(f"too many colons in address {addr!r}")
    if any(c in host or c in port for c in "[]"):
        raise ValueError(f"unexpected bracket in address {addr!r}")
    return host, port


def can(
    action: str,
    addr: str,
    whitelist: Optional[Permissions],
    blacklist: Optional[Permissions],
) -> bool:
    """Tell whether ``action`` on ``addr`` passes the whitelist and blacklist."""
    if ":" not in addr:
        addr += ":80"
    try:
        host, port_text = _split_host_port(addr)
        port = _atoi(port_text)
    except ValueError:
        return False
    return (whitelist is None or whitelist.can(action, host, port)) and (
        blacklist is None or not blacklist.can(action, host, port)
    )