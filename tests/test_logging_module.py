import importlib
import json
import logging

import pytest

import overseer.logging as logging_module
from overseer.logging import get_logger


@pytest.fixture(autouse=True)
def _reload_logging_module():
    importlib.reload(logging_module)
    yield
    importlib.reload(logging_module)


def _read_payloads(path):
    for handler in logging.getLogger("overseer").handlers:
        handler.flush()
    lines = path.read_text(encoding="utf-8").strip().splitlines()
    return [json.loads(line) for line in lines]


def test_configure_logging_writes_json(tmp_path):
    log_file = tmp_path / "overseer.log"
    logging_module.configure_logging(level="info", log_file=log_file)
    logger = get_logger("tests.logging")
    logger.info("structured message", extra={"metadata": {"key": "value"}})

    payload = _read_payloads(log_file)[-1]
    assert payload["message"] == "structured message"
    assert payload["metadata"]["key"] == "value"
    assert payload["level"] == "INFO"
    assert payload["component"] == "overseer.tests.logging"


def test_log_file_from_environment(tmp_path, monkeypatch):
    log_file = tmp_path / "nested" / "run.log"
    monkeypatch.setenv("OVERSEER_LOG_FILE", str(log_file))
    monkeypatch.setenv("OVERSEER_LOG_LEVEL", "debug")
    logging_module.configure_logging()

    get_logger("tests.env").debug("checked %s", "value")

    assert logging.getLogger("overseer").level == logging.DEBUG
    assert _read_payloads(log_file)[-1]["message"] == "checked value"


def test_adapter_merges_metadata(tmp_path):
    log_file = tmp_path / "overseer.log"
    logging_module.configure_logging(level="info", log_file=log_file)
    logger = get_logger("tests.adapter", metadata={"provider": "codex"})

    logger.info("launch", extra={"metadata": {"pid": 42}})

    assert isinstance(logger, logging_module.OverseerLoggerAdapter)
    assert _read_payloads(log_file)[-1]["metadata"] == {"provider": "codex", "pid": 42}


def test_get_logger_namespaces_names():
    assert get_logger("overseer.providers.harness").name == "overseer.providers.harness"
    assert get_logger("custom").name == "overseer.custom"


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, logging.WARNING),
        ("info", logging.INFO),
        (" DEBUG ", logging.DEBUG),
        ("10", 10),
        (logging.ERROR, logging.ERROR),
        ("nonsense", logging.WARNING),
    ],
)
def test_level_coercion(value, expected):
    assert logging_module._coerce_level(value) == expected


def test_console_handler_is_added_once(caplog):
    logging_module.configure_logging(level="warning")
    logging_module.configure_logging(level="info")
    base_logger = logging.getLogger("overseer")
    caplog.set_level("INFO", logger="overseer.tests.console")

    get_logger("tests.console").info("visible")

    console_handlers = [
        handler
        for handler in base_logger.handlers
        if isinstance(handler.formatter, logging_module.OverseerConsoleFormatter)
    ]
    assert len(console_handlers) == 1
    assert base_logger.level == logging.INFO
    assert "visible" in caplog.text
