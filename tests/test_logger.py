import logging
import os

from proxykit.logger import LogLogger, NopLogger


def test_log_joins_arguments(caplog):
    caplog.set_level(logging.INFO, logger="proxykit")
    LogLogger().log("[kcp]", 42, "accept")
    assert [r.getMessage() for r in caplog.records] == ["[kcp] 42 accept"]


def test_logf_formats(caplog):
    caplog.set_level(logging.INFO, logger="proxykit")
    LogLogger().logf("[http] %s -> %s : %d", "a", "b", 3)
    assert caplog.records[0].getMessage() == "[http] a -> b : 3"


def test_logf_value_verb(caplog):
    caplog.set_level(logging.INFO, logger="proxykit")
    LogLogger().logf("[ohttp] %v 100%%", "x")
    assert caplog.records[0].getMessage() == "[ohttp] x 100%"


def test_logf_mismatch_does_not_raise(caplog):
    caplog.set_level(logging.INFO, logger="proxykit")
    LogLogger().logf("%s %s", "only")
    assert "only" in caplog.records[0].getMessage()


def test_records_caller_location(caplog):
    caplog.set_level(logging.INFO, logger="proxykit")
    LogLogger().log("here")
    assert caplog.records[0].filename == os.path.basename(__file__)


def test_custom_logger(caplog):
    custom = logging.getLogger("proxykit.custom")
    caplog.set_level(logging.INFO, logger="proxykit.custom")
    LogLogger(custom).log("msg")
    assert caplog.records[0].name == "proxykit.custom"


def test_nop_logger_discards(caplog):
    caplog.set_level(logging.DEBUG)
    nop = NopLogger()
    nop.log("a", "b")
    nop.logf("%s", "c")
    assert caplog.records == []