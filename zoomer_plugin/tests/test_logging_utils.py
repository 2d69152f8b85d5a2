from __future__ import annotations

import logging

import pytest

from zoomer_plugin import logging_utils


def test_resolve_logs_dir_prefers_env_override(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv(logging_utils.LOG_DIR_ENV, str(tmp_path / "custom"))

    target = logging_utils.resolve_logs_dir("Zoomer")

    assert target == tmp_path / "custom" / "Zoomer"
    assert target.is_dir()


def test_rotating_handler_keeps_retention_minus_one_backups(tmp_path) -> None:
    formatter = logging.Formatter("%(message)s")
    handler = logging_utils.build_rotating_file_handler(tmp_path, "zoomer.log", retention=3, formatter=formatter)
    try:
        assert handler.backupCount == 2
        assert handler.formatter is formatter
        assert handler.baseFilename.endswith("zoomer.log")
    finally:
        handler.close()


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("trace", logging.DEBUG),
        ("Warn", logging.WARNING),
        ("20", logging.INFO),
        (logging.ERROR, logging.ERROR),
        ("nonsense", None),
        (None, None),
        (1.5, None),
    ],
)
def test_coerce_log_level(raw, expected) -> None:
    assert logging_utils.coerce_log_level(raw) == expected


def test_resolve_log_level_env_wins(monkeypatch) -> None:
    monkeypatch.setenv(logging_utils.LOG_LEVEL_ENV, "ERROR")
    assert logging_utils.resolve_log_level("DEBUG") == logging.ERROR


def test_resolve_log_level_falls_back(monkeypatch) -> None:
    monkeypatch.delenv(logging_utils.LOG_LEVEL_ENV, raising=False)
    assert logging_utils.resolve_log_level("DEBUG") == logging.DEBUG
    assert logging_utils.resolve_log_level("bogus") == logging.INFO


def test_host_handler_forwards_formatted_warnings() -> None:
    messages: list[str] = []
    handler = logging_utils.HostLogHandler(messages.append)
    handler.setFormatter(logging.Formatter("%(levelname)s %(message)s"))
    logger = logging.getLogger("Zoomer.Test.HostBridge")
    logger.addHandler(handler)
    logger.propagate = False
    try:
        logger.info("quiet")
        logger.warning("toggle failed")
    finally:
        logger.removeHandler(handler)

    assert messages == ["WARNING toggle failed"]
