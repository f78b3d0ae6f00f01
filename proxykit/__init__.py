"""Building blocks for a tunnelling proxy: access rules, hosts table, nodes,
an HTTP proxy handler and connector, obfuscation wrappers and transport settings."""

__version__ = "0.1.0"

__all__ = [
    "durations",
    "hosts",
    "http",
    "kcp",
    "logger",
    "node",
    "obfs",
    "options",
    "permissions",
    "quic",
]