from __future__ import annotations

import json
import socket
import sqlite3
from typing import Any, Literal

ErrorCode = Literal[
    "BATCH_NOT_FOUND",
    "ITEM_NOT_FOUND",
    "PROPOSAL_NOT_FOUND",
    "INVALID_STATE",
    "BUDGET_EXHAUSTED",
    "LLM_API_ERROR",
    "LLM_INVALID_JSON",
    "LLM_SCHEMA_INVALID",
    "PAGE_ACCOUNTING_VIOLATION",
    "PDF_INVALID",
    "LOW_CONFIDENCE",
    "STORAGE_ERROR",
    "CATALOG_ERROR",
    "SPLIT_FAILED",
    "UNKNOWN_ERROR",
]

ERROR_FRIENDLY_MESSAGES: dict[ErrorCode, str] = {
    "BATCH_NOT_FOUND": "Upload batch was not found.",
    "ITEM_NOT_FOUND": "Upload item was not found.",
    "PROPOSAL_NOT_FOUND": "Metadata proposal was not found.",
    "INVALID_STATE": "Operation is not allowed in the current state.",
    "BUDGET_EXHAUSTED": "Model call budget for this upload was exhausted.",
    "LLM_API_ERROR": "Model provider request failed. The job will be retried.",
    "LLM_INVALID_JSON": "Model returned invalid JSON output.",
    "LLM_SCHEMA_INVALID": "Model output is missing required fields.",
    "PAGE_ACCOUNTING_VIOLATION": (
        "Cutting instructions do not cover every page exactly once."
    ),
    "PDF_INVALID": "Uploaded file is not a readable PDF.",
    "LOW_CONFIDENCE": "Extraction confidence too low. Manual entry required.",
    "STORAGE_ERROR": "Storage operation failed while handling upload data.",
    "CATALOG_ERROR": "Writing to the music catalog failed.",
    "SPLIT_FAILED": "One or more parts could not be extracted from the PDF.",
    "UNKNOWN_ERROR": "Unexpected error occurred during smart upload.",
}

ERROR_HTTP_STATUS: dict[ErrorCode, int] = {
    "BATCH_NOT_FOUND": 404,
    "ITEM_NOT_FOUND": 404,
    "PROPOSAL_NOT_FOUND": 404,
    "INVALID_STATE": 409,
    "BUDGET_EXHAUSTED": 429,
    "LLM_API_ERROR": 502,
    "LLM_INVALID_JSON": 502,
    "LLM_SCHEMA_INVALID": 502,
    "PAGE_ACCOUNTING_VIOLATION": 422,
    "PDF_INVALID": 422,
    "LOW_CONFIDENCE": 422,
    "STORAGE_ERROR": 503,
    "CATALOG_ERROR": 500,
    "SPLIT_FAILED": 500,
    "UNKNOWN_ERROR": 500,
}


class SmartUploadError(Exception):
    code: ErrorCode = "UNKNOWN_ERROR"

    @property
    def status_code(self) -> int:
        return ERROR_HTTP_STATUS[self.code]


class NotFoundError(SmartUploadError, LookupError):
    entity = "Object"

    def __init__(self, object_id: str) -> None:
        super().__init__(f"{self.entity} not found: {object_id}")
        self.object_id = object_id


class BatchNotFoundError(NotFoundError):
    code: ErrorCode = "BATCH_NOT_FOUND"
    entity = "Batch"


class ItemNotFoundError(NotFoundError):
    code: ErrorCode = "ITEM_NOT_FOUND"
    entity = "Item"


class ProposalNotFoundError(NotFoundError):
    code: ErrorCode = "PROPOSAL_NOT_FOUND"
    entity = "Proposal"


class InvalidStateError(SmartUploadError):
    """Raised when an operation is illegal for the object's current status."""

    code: ErrorCode = "INVALID_STATE"


class BudgetExhaustedError(SmartUploadError):
    code: ErrorCode = "BUDGET_EXHAUSTED"

    def __init__(self, reason: str) -> None:
        super().__init__(f"Smart Upload budget exhausted: {reason}")
        self.reason = reason


class MalformedModelResponseError(SmartUploadError, ValueError):
    """Raised when a model pass returns non-JSON or schema-invalid output."""

    def __init__(
        self,
        message: str,
        *,
        raw_text: str,
        errors: list[str] | None = None,
        schema_invalid: bool = False,
    ) -> None:
        super().__init__(message)
        self.raw_text = raw_text
        self.errors = list(errors or [])
        self.code: ErrorCode = "LLM_SCHEMA_INVALID" if schema_invalid else "LLM_INVALID_JSON"


class PageAccountingError(SmartUploadError, ValueError):
    code: ErrorCode = "PAGE_ACCOUNTING_VIOLATION"

    def __init__(self, violations: list[str]) -> None:
        super().__init__("Invalid cutting instructions: " + "; ".join(violations))
        self.violations = list(violations)


class InvalidPdfError(SmartUploadError, ValueError):
    code: ErrorCode = "PDF_INVALID"


class CatalogError(SmartUploadError):
    code: ErrorCode = "CATALOG_ERROR"


class SplitFailedError(SmartUploadError):
    code: ErrorCode = "SPLIT_FAILED"

    def __init__(self, failures: list[str]) -> None:
        super().__init__("Failed to extract part(s): " + "; ".join(failures))
        self.failures = list(failures)


def classify_pipeline_error(error: Exception) -> ErrorCode:
    if isinstance(error, SmartUploadError):
        return error.code
    if isinstance(error, json.JSONDecodeError):
        return "LLM_INVALID_JSON"
    if is_storage_error_exception(error):
        return "STORAGE_ERROR"
    if is_transient_exception(error):
        return "LLM_API_ERROR"
    if extract_http_status_code(error) is not None:
        return "LLM_API_ERROR"
    return "UNKNOWN_ERROR"


def is_transient_exception(error: Exception) -> bool:
    status_code = extract_http_status_code(error)
    if status_code is not None:
        return is_retryable_status_code(status_code)

    if isinstance(error, (ConnectionError, TimeoutError, socket.timeout)):
        return True

    class_name = error.__class__.__name__.lower()
    message = str(error).lower()
    if "timeout" in class_name or "timed out" in message:
        return True
    if "connection" in class_name or "network" in class_name:
        return True
    return False


def is_retryable_status_code(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code <= 599


def extract_http_status_code(error: Exception) -> int | None:
    if isinstance(error, SmartUploadError):
        return None

    for field_name in ("status_code", "status", "http_status"):
        value = getattr(error, field_name, None)
        parsed = _to_int_or_none(value)
        if parsed is not None:
            return parsed

    response = getattr(error, "response", None)
    if response is not None:
        parsed = _to_int_or_none(getattr(response, "status_code", None))
        if parsed is not None:
            return parsed

    return None


def build_error_details(error: Exception) -> dict[str, Any]:
    details: dict[str, Any] = {
        "code": classify_pipeline_error(error),
        "details": f"{error.__class__.__name__}: {error}",
    }
    status_code = extract_http_status_code(error)
    if status_code is not None:
        details["status_code"] = status_code

    for field_name in ("violations", "errors", "failures", "reason"):
        value = getattr(error, field_name, None)
        if value:
            details[field_name] = value
    return details


def is_storage_error_exception(error: Exception) -> bool:
    if isinstance(error, sqlite3.Error):
        return True
    if isinstance(error, (ConnectionError, TimeoutError)):
        return False
    if isinstance(error, OSError):
        return True
    return False


def _to_int_or_none(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
