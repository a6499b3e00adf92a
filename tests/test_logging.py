from __future__ import annotations

import json
import logging

import pytest

from smart_upload.logging import (
    JsonFormatter,
    clear_log_context,
    get_log_context,
    get_logger,
    set_log_context,
)


@pytest.fixture(autouse=True)
def _clean_context():
    clear_log_context()
    yield
    clear_log_context()


def _record(message: str, **extra: object) -> logging.LogRecord:
    record = get_logger("test").makeRecord(
        "smart_upload.test", logging.INFO, __file__, 1, message, (), None
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_thread_context() -> None:
    set_log_context(batch_id="b1", item_id="i1", job="smartupload.process")

    payload = json.loads(JsonFormatter().format(_record("vision pass completed")))

    assert payload["msg"] == "vision pass completed"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "smart_upload.test"
    assert (payload["batch_id"], payload["item_id"]) == ("b1", "i1")
    assert payload["job"] == "smartupload.process"
    assert "stage" not in payload


def test_json_formatter_prefers_record_extra_and_metrics() -> None:
    set_log_context(stage="process")

    payload = json.loads(
        JsonFormatter().format(
            _record("done", stage="vision", duration_ms=12.5, metrics={"prompt_tokens": 10})
        )
    )

    assert payload["stage"] == "vision"
    assert payload["duration_ms"] == 12.5
    assert payload["metrics"] == {"prompt_tokens": 10}


def test_clear_log_context_by_key() -> None:
    set_log_context(batch_id="b1", item_id="i1")

    clear_log_context(["item_id"])

    assert get_log_context() == {"batch_id": "b1"}


def test_get_logger_namespaces_under_package() -> None:
    assert get_logger().name == "smart_upload"
    assert get_logger("worker").name == "smart_upload.worker"
