"""Loggers: one writing through the standard logging module, one silent."""

from __future__ import annotations

import logging
import re
from typing import Optional

__all__ = ["LogLogger", "NopLogger"]

_VERB = re.compile(r"%(%|v)")


def _printf(fmt: str, args: tuple) -> str:
    converted = _VERB.sub(lambda m: "%%" if m.group(1) == "%" else "%s", fmt)
    try:
        return converted % args
    except (TypeError, ValueError):
        return " ".join([fmt, *map(str, args)])


class LogLogger:
    """Writes messages to a :mod:`logging` logger at INFO level."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger("proxykit")

    def log(self, *args) -> None:
        self._logger.info(" ".join(map(str, args)), stacklevel=2)

    def logf(self, fmt: str, *args) -> None:
        self._logger.info(_printf(fmt, args), stacklevel=2)


def _null_logger() -> logging.Logger:
    sink = logging.Logger("proxykit.nop")
    sink.addHandler(logging.NullHandler())
    sink.propagate = False
    return sink


class NopLogger:
    """Discards every message by routing it to a handler that drops it."""

    def __init__(self) -> None:
        self._sink = _null_logger()

    def log(self, *args) -> None:
        self._sink.info(" ".join(map(str, args)))

    def logf(self, fmt: str, *args) -> None:
        self._sink.info(_printf(fmt, args))