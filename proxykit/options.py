"""Options shared by the proxy server handlers."""

from __future__ import annotations

import socket
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

from .hosts import Hosts
from .node import Node
from .permissions import Permissions

__all__ = ["UserInfo", "HandlerOptions"]

Authenticator = Callable[[str, str], bool]
Dialer = Callable[[str, int, float], socket.socket]


@dataclass(frozen=True)
class UserInfo:
    """A user name with an optional password; ``None`` means no password."""

    username: str
    password: Optional[str] = None


def _local_authenticator(credentials: dict) -> Authenticator:
    def authenticate(username: str, password: str) -> bool:
        stored = credentials.get(username)
        if stored is None:
            return False
        return stored == "" or stored == password

    return authenticate


@dataclass
class HandlerOptions:
    """Settings of a proxy server handler.

    Giving ``users`` builds a local authenticator from them unless an
    ``authenticator`` is given explicitly. ``bypass`` is any object with a
    ``contains(address)`` method; ``dialer`` opens the outgoing connection and
    is called as ``dialer(host, port, timeout)``.
    """

    addr: str = ""
    users: Sequence[Optional[UserInfo]] = ()
    authenticator: Optional[Authenticator] = None
    whitelist: Optional[Permissions] = None
    blacklist: Optional[Permissions] = None
    bypass: Optional[Any] = None
    retries: int = 0
    timeout: float = 0.0
    hosts: Optional[Hosts] = None
    probe_resist: str = ""
    knocking_host: str = ""
    node: Node = field(default_factory=Node)
    host: str = ""
    ips: list = field(default_factory=list)
    tcp_mode: bool = False
    dialer: Optional[Dialer] = None

    def __post_init__(self) -> None:
        self.users = tuple(self.users)
        credentials = {
            user.username: user.password or ""
            for user in self.users
            if user is not None
        }
        if credentials and self.authenticator is None:
            self.authenticator = _local_authenticator(credentials)

    def authenticate(self, username: str, password: str) -> bool:
        """Tell whether the credentials are accepted; no authenticator accepts all."""
        if self.authenticator is None:
            return True
        return bool(self.authenticator(username, password))