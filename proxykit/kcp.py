"""Settings of KCP tunnels and the derivation of their cipher keys."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, fields
from typing import Any, Mapping, NamedTuple

__all__ = [
    "KCP_SALT",
    "KCPConfig",
    "BlockCryptKey",
    "default_kcp_config",
    "block_crypt_key",
]

KCP_SALT = "kcp-go"

_PBKDF2_ITERATIONS = 4096
_PBKDF2_LENGTH = 32

# Presets of (nodelay, interval, resend, nc) selected by the mode name.
_MODES = {
    "normal": (0, 40, 2, 1),
    "fast": (0, 30, 2, 1),
    "fast2": (1, 20, 2, 1),
    "fast3": (1, 10, 2, 1),
}

# Cipher name -> number of key bytes taken from the derived key.
_KEY_LENGTHS = {
    "sm4": 16,
    "tea": 16,
    "xor": 32,
    "none": 32,
    "aes-128": 16,
    "aes-192": 24,
    "blowfish": 32,
    "twofish": 32,
    "cast5": 16,
    "3des": 24,
    "xtea": 16,
    "salsa20": 32,
    "aes": 32,
}

# Configuration file keys that differ from the attribute names.
_JSON_NAMES = {"no_congestion": "nc"}


@dataclass
class KCPConfig:
    """Settings of a KCP tunnel; the defaults are the stock configuration."""

    key: str = "it's a secrect"
    crypt: str = "aes"
    mode: str = "fast"
    mtu: int = 1350
    sndwnd: int = 1024
    rcvwnd: int = 1024
    datashard: int = 10
    parityshard: int = 3
    dscp: int = 0
    nocomp: bool = False
    acknodelay: bool = False
    nodelay: int = 0
    interval: int = 50
    resend: int = 0
    no_congestion: int = 0
    sockbuf: int = 4194304
    keepalive: int = 10
    snmplog: str = ""
    snmpperiod: int = 60
    signal: bool = False
    tcp: bool = False

    def apply_mode(self) -> None:
        """Set nodelay, interval, resend and congestion control from the mode."""
        preset = _MODES.get(self.mode)
        if preset is not None:
            self.nodelay, self.interval, self.resend, self.no_congestion = preset

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "KCPConfig":
        """Build a config from configuration file keys; missing keys keep defaults."""
        config = cls()
        for f in fields(cls):
            name = _JSON_NAMES.get(f.name, f.name)
            if name in data:
                setattr(config, f.name, data[name])
        return config


def default_kcp_config() -> KCPConfig:
    """Return a fresh copy of the default KCP configuration."""
    return KCPConfig()


class BlockCryptKey(NamedTuple):
    """The cipher to use and the key bytes for it."""

    method: str
    key: bytes


def block_crypt_key(key: str, crypt: str, salt: str = KCP_SALT) -> BlockCryptKey:
    """Derive the cipher key from a passphrase with PBKDF2-SHA1.

    Unknown cipher names fall back to ``aes`` with a 32 byte key.
    """
    derived = hashlib.pbkdf2_hmac(
        "sha1", key.encode(), salt.encode(), _PBKDF2_ITERATIONS, _PBKDF2_LENGTH
    )
    method = crypt if crypt in _KEY_LENGTHS else "aes"
    return BlockCryptKey(method, derived[: _KEY_LENGTHS[method]])