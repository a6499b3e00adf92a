from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from smart_upload import cli

from tests.conftest import FakeVisionClient, build_pdf, vision_payload


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("SMART_UPLOAD_SQLITE_PATH", str(tmp_path / "smart_upload.sqlite3"))
    monkeypatch.setenv("SMART_UPLOAD_CATALOG_SQLITE_PATH", str(tmp_path / "catalog.sqlite3"))
    monkeypatch.setenv("SMART_UPLOAD_STORAGE_DIR", str(tmp_path / "objects"))
    monkeypatch.chdir(tmp_path)


def _run(capsys, *args: str) -> tuple[int, Any, str]:
    code = cli.main(["--env-file", "missing.env", "--log-level", "ERROR", *args])
    captured = capsys.readouterr()
    payload = json.loads(captured.out) if captured.out.strip() else None
    return code, payload, captured.err


def _write_pdf(tmp_path: Path, name: str = "stars.pdf", pages: int = 3) -> str:
    path = tmp_path / name
    path.write_bytes(build_pdf(pages))
    return str(path)


def test_validate_config_prints_pipeline_config(capsys, monkeypatch) -> None:
    monkeypatch.setenv("SMART_UPLOAD_MAX_LLM_CALLS", "3")

    code, payload, _ = _run(capsys, "validate-config")

    assert code == 0
    assert payload["auto_approve_threshold"] == 90
    assert payload["max_llm_calls"] == 3


def test_validate_config_reports_invalid_settings(capsys, monkeypatch) -> None:
    monkeypatch.setenv("SMART_UPLOAD_MAX_LLM_CALLS", "-1")

    code, _, err = _run(capsys, "validate-config")

    assert code == 1
    assert "Config validation error" in err


def test_validate_rejects_non_pdf(capsys, tmp_path: Path) -> None:
    text_file = tmp_path / "notes.txt"
    text_file.write_text("not music", encoding="utf-8")

    code, payload, _ = _run(capsys, "validate", str(text_file))

    assert code == 1
    assert payload["valid"] is False


def test_upload_without_processing_then_cancel(capsys, tmp_path: Path) -> None:
    code, payload, _ = _run(
        capsys, "upload", _write_pdf(tmp_path), "--user-id", "librarian", "--no-process"
    )

    assert code == 0
    batch_id = payload["batch"]["batch_id"]
    assert payload["batch"]["status"] == "UPLOADING"
    [item] = payload["items"]
    assert item["mime_type"] == "application/pdf"
    assert item["storage_key"].startswith(f"smart-upload/{batch_id}/")

    code, payload, _ = _run(capsys, "cancel", batch_id)

    assert code == 0
    assert payload["batch"]["status"] == "CANCELLED"
    assert payload["items"][0]["status"] == "CANCELLED"


def test_upload_processes_and_ingest_commits(capsys, monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr(
        cli,
        "build_vision_client",
        lambda settings: FakeVisionClient([vision_payload(confidenceScore=95)]),
    )

    code, payload, _ = _run(capsys, "upload", _write_pdf(tmp_path), "--user-id", "librarian")

    assert code == 0
    batch_id = payload["batch"]["batch_id"]
    assert payload["batch"]["status"] == "APPROVED"
    assert payload["proposals"][0]["approved_by"] == "system:auto-approve"

    code, payload, _ = _run(capsys, "ingest", batch_id)

    assert code == 0
    assert payload["batch"]["status"] == "COMPLETE"
    assert payload["items"][0]["current_step"] == "INGESTED"


def test_approve_applies_corrections_file(capsys, monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr(
        cli,
        "build_vision_client",
        lambda settings: FakeVisionClient([vision_payload(confidenceScore=75)]),
    )
    _, payload, _ = _run(capsys, "upload", _write_pdf(tmp_path), "--user-id", "librarian")
    assert payload["batch"]["status"] == "NEEDS_REVIEW"
    proposal_id = payload["proposals"][0]["proposal_id"]

    corrections = tmp_path / "corrections.json"
    corrections.write_text(json.dumps({"title": "The Stars and Stripes Forever"}), encoding="utf-8")
    code, payload, _ = _run(
        capsys, "approve", proposal_id, "--by", "librarian", "--corrections", str(corrections)
    )

    assert code == 0
    assert payload["batch"]["status"] == "APPROVED"
    [proposal] = payload["proposals"]
    assert proposal["title"] == "The Stars and Stripes Forever"
    assert proposal["corrections"] == {"title": "The Stars and Stripes Forever"}


def test_ingest_unapproved_batch_reports_invalid_state(capsys, tmp_path: Path) -> None:
    _, payload, _ = _run(
        capsys, "upload", _write_pdf(tmp_path), "--user-id", "librarian", "--no-process"
    )

    code, _, err = _run(capsys, "ingest", payload["batch"]["batch_id"])

    assert code == 1
    assert err.startswith("INVALID_STATE: Operation is not allowed in the current state.")


def test_status_of_unknown_batch(capsys) -> None:
    code, payload, err = _run(capsys, "status", "missing")

    assert code == 1
    assert payload is None
    assert "Batch not found: missing" in err
