"""Unit tests for logging_config (get_logger, configure_logging)."""

from __future__ import annotations

import io
import logging

import orjson

from bruin.logging_config import configure_logging, get_logger


def test_get_logger_returns_logger() -> None:
    logger = get_logger("test")
    assert isinstance(logger, logging.Logger)
    assert logger.name == "bruin.test"


def test_get_logger_root_name() -> None:
    logger = get_logger("bruin")
    assert logger.name == "bruin"


def test_configure_logging_replaces_handler() -> None:
    configure_logging("INFO", "text", io.StringIO())
    configure_logging("INFO", "text", io.StringIO())
    root = logging.getLogger("bruin")
    assert len(root.handlers) == 1
    assert root.level == logging.INFO
    configure_logging()


def test_text_format_includes_run_context() -> None:
    stream = io.StringIO()
    configure_logging("INFO", "text", stream)
    try:
        get_logger("engine").info("Network error: boom", extra={"collection": "cats", "request": "Get fact"})
        get_logger("engine").info("plain")
    finally:
        configure_logging()
    lines = stream.getvalue().splitlines()
    assert "bruin.engine [collection=cats request=Get fact]: Network error: boom" in lines[0]
    assert lines[1].endswith("bruin.engine: plain")


def test_json_format() -> None:
    stream = io.StringIO()
    configure_logging("WARNING", "json", stream)
    try:
        get_logger("engine").info("hidden")
        get_logger("engine").warning("request %s failed", "r1", extra={"environment": "prod"})
    finally:
        configure_logging()
    lines = stream.getvalue().splitlines()
    assert len(lines) == 1
    obj = orjson.loads(lines[0])
    assert obj["level"] == "WARNING"
    assert obj["logger"] == "bruin.engine"
    assert obj["message"] == "request r1 failed"
    assert obj["environment"] == "prod"
    assert "collection" not in obj
