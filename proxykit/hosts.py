"""A static hostname to IP table that can be reloaded from a hosts file."""

from __future__ import annotations

import ipaddress
import logging
import threading
from dataclasses import dataclass, field
from typing import IO, Iterable, Optional, Union

from .durations import parse_duration

__all__ = ["Host", "Hosts"]

_log = logging.getLogger("proxykit")

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


@dataclass(frozen=True)
class Host:
    """A static mapping from a hostname and its aliases to an IP."""

    ip: Optional[IPAddress]
    hostname: str
    aliases: tuple = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "aliases", tuple(self.aliases))


def _split_line(line: str) -> list:
    return line.split("#", 1)[0].split()


def _parse_ip(text: str) -> Optional[IPAddress]:
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


class Hosts:
    """A static table lookup for hostnames.

    Each line of a hosts file reads ``IP canonical_hostname [aliases...]``;
    fields are separated by blanks and text after ``#`` is a comment. A line
    ``reload <duration>`` sets the reload period.
    """

    def __init__(self, *hosts: Host) -> None:
        self._hosts = list(hosts)
        self._period = 0.0
        self._stopped = threading.Event()
        self._lock = threading.RLock()

    def add_host(self, *hosts: Host) -> None:
        with self._lock:
            self._hosts.extend(hosts)

    def lookup(self, host: str) -> Optional[IPAddress]:
        """Return the IP for ``host`` or ``None`` when it is not in the table."""
        if not host:
            return None
        ip = None
        with self._lock:
            for entry in self._hosts:
                if entry.hostname == host:
                    ip = entry.ip
                    break
                if host in entry.aliases:
                    ip = entry.ip
        if ip is not None:
            _log.debug("[hosts] hit: %s %s", host, ip)
        return ip

    def reload(self, stream: Optional[Union[IO, Iterable]]) -> None:
        """Parse a hosts file from ``stream`` and replace the table with it."""
        if stream is None or self.stopped():
            return
        period = 0.0
        hosts = []
        for raw in stream:
            line = raw.decode() if isinstance(raw, bytes) else raw
            fields = _split_line(line)
            if len(fields) < 2:
                continue
            if fields[0] == "reload":
                try:
                    period = parse_duration(fields[1])
                except ValueError:
                    period = 0.0
                continue
            ip = _parse_ip(fields[0])
            if ip is None:
                continue
            hosts.append(Host(ip, fields[1], fields[2:]))
        with self._lock:
            self._period = period
            self._hosts = hosts

    def period(self) -> float:
        """Return the reload period in seconds, or -1 once stopped."""
        if self.stopped():
            return -1
        with self._lock:
            return self._period

    def stop(self) -> None:
        self._stopped.set()

    def stopped(self) -> bool:
        return self._stopped.is_set()