"""QUIC settings and an AES-GCM wrapper that encrypts every UDP datagram."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass
from typing import Any, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

__all__ = ["QUICConfig", "QUICCipherConn", "NONCE_SIZE"]

NONCE_SIZE = 12


@dataclass
class QUICConfig:
    """Settings of a QUIC client or server; durations are in seconds."""

    tls_config: Optional[Any] = None
    timeout: float = 0.0
    keep_alive: bool = False
    idle_timeout: float = 0.0
    key: Optional[bytes] = None


class QUICCipherConn:
    """A UDP socket whose datagrams are sealed with AES-GCM.

    Each datagram on the wire is ``nonce || ciphertext || tag`` with a fresh
    random 12 byte nonce.
    """

    def __init__(self, sock: socket.socket, key: bytes) -> None:
        self._sock = sock
        self.key = bytes(key)

    def encrypt(self, data: bytes) -> bytes:
        aead = AESGCM(self.key)
        nonce = os.urandom(NONCE_SIZE)
        return nonce + aead.encrypt(nonce, bytes(data), None)

    def decrypt(self, data: bytes) -> bytes:
        """Open a sealed datagram; raise ValueError if it is short or forged."""
        aead = AESGCM(self.key)
        data = bytes(data)
        if len(data) < NONCE_SIZE:
            raise ValueError("ciphertext too short")
        nonce, ciphertext = data[:NONCE_SIZE], data[NONCE_SIZE:]
        try:
            return aead.decrypt(nonce, ciphertext, None)
        except InvalidTag:
            raise ValueError("message authentication failed") from None

    def recvfrom(self, size: int) -> Tuple[bytes, Any]:
        """Receive one datagram of up to ``size`` bytes and return (plaintext, addr)."""
        data, addr = self._sock.recvfrom(size)
        return self.decrypt(data), addr

    def sendto(self, data: bytes, addr) -> int:
        """Seal ``data`` and send it to ``addr``; return the bytes put on the wire."""
        sealed = self.encrypt(data)
        self._sock.sendto(sealed, addr)
        return len(sealed)

    def close(self) -> None:
        self._sock.close()

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return getattr(self._sock, name)

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.close()