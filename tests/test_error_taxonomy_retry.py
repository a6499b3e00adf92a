from __future__ import annotations

import json
import sqlite3

import pytest

from smart_upload.utils.error_taxonomy import (
    ERROR_FRIENDLY_MESSAGES,
    ERROR_HTTP_STATUS,
    BatchNotFoundError,
    BudgetExhaustedError,
    InvalidStateError,
    MalformedModelResponseError,
    PageAccountingError,
    build_error_details,
    classify_pipeline_error,
    extract_http_status_code,
    is_storage_error_exception,
    is_transient_exception,
)
from smart_upload.utils.retry import run_with_retry


class HttpError(RuntimeError):
    def __init__(self, status_code: int, message: str = "http error") -> None:
        super().__init__(message)
        self.status_code = status_code


def test_transient_classifier() -> None:
    assert is_transient_exception(HttpError(429)) is True
    assert is_transient_exception(HttpError(503)) is True
    assert is_transient_exception(HttpError(400)) is False
    assert is_transient_exception(TimeoutError("timeout")) is True
    assert is_transient_exception(ConnectionResetError("reset")) is True
    assert is_transient_exception(ValueError("bad parse")) is False


def test_storage_classifier() -> None:
    assert is_storage_error_exception(sqlite3.OperationalError("locked")) is True
    assert is_storage_error_exception(PermissionError("denied")) is True
    assert is_storage_error_exception(ConnectionError("network")) is False
    assert is_storage_error_exception(ValueError("nope")) is False


def test_error_code_mapping() -> None:
    assert classify_pipeline_error(BatchNotFoundError("b1")) == "BATCH_NOT_FOUND"
    assert classify_pipeline_error(BudgetExhaustedError("calls")) == "BUDGET_EXHAUSTED"
    assert classify_pipeline_error(PageAccountingError(["page 2 is not covered"])) == (
        "PAGE_ACCOUNTING_VIOLATION"
    )
    assert classify_pipeline_error(json.JSONDecodeError("msg", "{}", 0)) == "LLM_INVALID_JSON"
    assert classify_pipeline_error(HttpError(503)) == "LLM_API_ERROR"
    assert classify_pipeline_error(sqlite3.OperationalError("db fail")) == "STORAGE_ERROR"

    class WeirdError(Exception):
        pass

    assert classify_pipeline_error(WeirdError("boom")) == "UNKNOWN_ERROR"


def test_every_code_has_message_and_status() -> None:
    assert set(ERROR_FRIENDLY_MESSAGES) == set(ERROR_HTTP_STATUS)
    assert InvalidStateError("x").status_code == 409
    assert BatchNotFoundError("b1").status_code == 404


def test_build_error_details_keeps_structured_fields() -> None:
    details = build_error_details(PageAccountingError(["page 2 is not covered"]))

    assert details["code"] == "PAGE_ACCOUNTING_VIOLATION"
    assert details["violations"] == ["page 2 is not covered"]
    assert details["details"].startswith("PageAccountingError: ")
    assert extract_http_status_code(HttpError(502)) == 502
    assert build_error_details(HttpError(502))["status_code"] == 502


def test_malformed_response_codes() -> None:
    assert MalformedModelResponseError("bad json", raw_text="oops").code == "LLM_INVALID_JSON"
    assert (
        MalformedModelResponseError("missing title", raw_text="{}", schema_invalid=True).code
        == "LLM_SCHEMA_INVALID"
    )


def test_run_with_retry_backs_off_then_succeeds() -> None:
    delays: list[float] = []
    attempts = {"count": 0}

    def flaky() -> str:
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise ConnectionError("down")
        return "ok"

    result = run_with_retry(
        operation=flaky,
        should_retry=is_transient_exception,
        max_retries=2,
        base_delay_seconds=0.5,
        sleep_fn=delays.append,
    )

    assert result == "ok"
    assert delays == [0.5, 1.0]


def test_run_with_retry_stops_on_non_retryable_and_after_limit() -> None:
    delays: list[float] = []

    with pytest.raises(ValueError):
        run_with_retry(
            operation=lambda: (_ for _ in ()).throw(ValueError("bad")),
            should_retry=is_transient_exception,
            sleep_fn=delays.append,
        )
    assert delays == []

    with pytest.raises(TimeoutError):
        run_with_retry(
            operation=lambda: (_ for _ in ()).throw(TimeoutError("slow")),
            should_retry=is_transient_exception,
            max_retries=1,
            sleep_fn=delays.append,
        )
    assert delays == [0.5]
