from __future__ import annotations

import argparse
import json
import mimetypes
import os
import sys
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

from dotenv import load_dotenv
from pydantic import ValidationError

from smart_upload.config.settings import Settings
from smart_upload.jobs.queue import INGEST_BATCH_JOB, PROCESS_ITEM_JOB, InMemoryJobQueue
from smart_upload.jobs.worker import SmartUploadWorker
from smart_upload.llm_client.factory import build_vision_client
from smart_upload.logging import get_logger, setup_logging
from smart_upload.pipeline.extraction import ExtractionPipeline
from smart_upload.pipeline.ingestion import INGESTABLE_BATCH_STATUSES, BatchIngestor
from smart_upload.pipeline.validators import FileCandidate, validate_files
from smart_upload.prompts.manager import PromptManager
from smart_upload.storage.catalog import SqliteCatalogWriter
from smart_upload.storage.object_store import LocalObjectStorage, build_source_key
from smart_upload.storage.repo import SmartUploadRepo
from smart_upload.utils.error_taxonomy import (
    ERROR_FRIENDLY_MESSAGES,
    InvalidStateError,
    SmartUploadError,
)

logger = get_logger("cli")


@dataclass(slots=True)
class Runtime:
    settings: Settings
    repo: SmartUploadRepo
    storage: LocalObjectStorage
    catalog: SqliteCatalogWriter
    queue: InMemoryJobQueue
    worker: SmartUploadWorker


def build_runtime(settings: Settings) -> Runtime:
    repo = SmartUploadRepo(settings.resolved_sqlite_path)
    storage = LocalObjectStorage(settings.resolved_storage_dir)
    catalog = SqliteCatalogWriter(settings.resolved_catalog_sqlite_path)
    queue = InMemoryJobQueue()
    pipeline = ExtractionPipeline(
        llm_client=build_vision_client(settings),
        prompt_manager=PromptManager(),
    )
    worker = SmartUploadWorker(
        repo=repo,
        storage=storage,
        pipeline=pipeline,
        ingestor=BatchIngestor(repo=repo, storage=storage, catalog=catalog),
        queue=queue,
        config=settings.pipeline_config(),
    )
    queue.on_dead_letter = worker.handle_dead_letter
    return Runtime(
        settings=settings,
        repo=repo,
        storage=storage,
        catalog=catalog,
        queue=queue,
        worker=worker,
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="smart-upload",
        description="Ingest sheet-music PDFs into the music catalog.",
    )
    parser.add_argument("--env-file", default=".env", help="Path to .env file")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("validate-config", help="Load and print the pipeline config.")

    p_validate = subparsers.add_parser("validate", help="Check files before upload.")
    p_validate.add_argument("files", nargs="+")

    p_upload = subparsers.add_parser("upload", help="Create a batch and process files.")
    p_upload.add_argument("files", nargs="+")
    p_upload.add_argument("--user-id", required=True)
    p_upload.add_argument(
        "--no-process",
        action="store_true",
        help="Store files without running extraction.",
    )

    p_status = subparsers.add_parser("status", help="Show a batch with its items.")
    p_status.add_argument("batch_id")

    p_approve = subparsers.add_parser("approve", help="Approve a metadata proposal.")
    p_approve.add_argument("proposal_id")
    p_approve.add_argument("--by", required=True, dest="approved_by")
    p_approve.add_argument(
        "--corrections",
        default=None,
        help="Path to a JSON file with reviewer corrections.",
    )

    p_ingest = subparsers.add_parser("ingest", help="Commit an approved batch.")
    p_ingest.add_argument("batch_id")

    p_cancel = subparsers.add_parser("cancel", help="Cancel a batch.")
    p_cancel.add_argument("batch_id")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    if os.path.exists(args.env_file):
        load_dotenv(dotenv_path=args.env_file)
    setup_logging(level=args.log_level.upper())

    try:
        settings = Settings()
        pipeline_config = settings.pipeline_config()
    except (ValidationError, ValueError) as error:
        print(f"Config validation error:\n{error}", file=sys.stderr)
        return 1

    if args.command == "validate-config":
        _print_json(asdict(pipeline_config))
        return 0
    if args.command == "validate":
        return _validate(args.files, settings)

    try:
        runtime = build_runtime(settings)
        if args.command == "upload":
            return _upload(runtime, args.files, user_id=args.user_id, process=not args.no_process)
        if args.command == "status":
            return _status(runtime, args.batch_id)
        if args.command == "approve":
            return _approve(runtime, args.proposal_id, args.approved_by, args.corrections)
        if args.command == "ingest":
            batch = runtime.repo.require_batch(args.batch_id)
            if batch.status not in INGESTABLE_BATCH_STATUSES:
                raise InvalidStateError(
                    f"Batch {batch.batch_id} must be APPROVED to ingest (status {batch.status})"
                )
            runtime.queue.enqueue(INGEST_BATCH_JOB, {"batchId": args.batch_id})
            runtime.queue.drain(runtime.worker.handle)
            _report_dead_letters(runtime)
            return _status(runtime, args.batch_id)
        if args.command == "cancel":
            runtime.repo.cancel_batch(args.batch_id)
            return _status(runtime, args.batch_id)
    except SmartUploadError as error:
        print(
            f"{error.code}: {ERROR_FRIENDLY_MESSAGES[error.code]} ({error})",
            file=sys.stderr,
        )
        return 1
    except ValueError as error:
        print(f"Invalid input: {error}", file=sys.stderr)
        return 1
    return 2


def _validate(files: list[str], settings: Settings) -> int:
    report = validate_files(
        [_candidate(Path(path)) for path in files],
        max_files=settings.max_files_per_batch,
        max_total_bytes=settings.max_total_batch_bytes,
    )
    _print_json(asdict(report))
    return 0 if report.valid else 1


def _upload(runtime: Runtime, files: list[str], *, user_id: str, process: bool) -> int:
    paths = [Path(path) for path in files]
    report = validate_files(
        [_candidate(path) for path in paths],
        max_files=runtime.settings.max_files_per_batch,
        max_total_bytes=runtime.settings.max_total_batch_bytes,
    )
    if not report.valid:
        _print_json(asdict(report))
        return 1

    batch = runtime.repo.create_batch(user_id=user_id)
    for path in paths:
        item_id = str(uuid4())
        key = build_source_key(batch_id=batch.batch_id, item_id=item_id, file_name=path.name)
        runtime.storage.upload(path.read_bytes(), key)
        runtime.repo.add_item(
            batch_id=batch.batch_id,
            item_id=item_id,
            file_name=path.name,
            file_size=path.stat().st_size,
            mime_type=_guess_mime_type(path),
            storage_key=key,
        )
        if process:
            runtime.queue.enqueue(PROCESS_ITEM_JOB, {"itemId": item_id})

    runtime.queue.drain(runtime.worker.handle)
    _report_dead_letters(runtime)
    return _status(runtime, batch.batch_id)


def _approve(
    runtime: Runtime, proposal_id: str, approved_by: str, corrections_path: str | None
) -> int:
    corrections: dict[str, Any] | None = None
    if corrections_path:
        corrections = json.loads(Path(corrections_path).read_text(encoding="utf-8"))
        if not isinstance(corrections, dict):
            raise ValueError("Corrections file must contain a JSON object")

    proposal = runtime.repo.approve_proposal(
        proposal_id, approved_by=approved_by, corrections=corrections
    )
    batch_id = runtime.repo.require_item(proposal.item_id).batch_id
    batch = runtime.repo.require_batch(batch_id)
    if batch.status == "APPROVED" and runtime.settings.autonomous_ingest:
        runtime.queue.enqueue(INGEST_BATCH_JOB, {"batchId": batch_id})
        runtime.queue.drain(runtime.worker.handle)
        _report_dead_letters(runtime)
    return _status(runtime, batch_id)


def _status(runtime: Runtime, batch_id: str) -> int:
    bundle = runtime.repo.get_batch_with_items(batch_id)
    if bundle is None:
        print(f"Batch not found: {batch_id}", file=sys.stderr)
        return 1
    _print_json(asdict(bundle))
    return 0


def _report_dead_letters(runtime: Runtime) -> None:
    for job, error in runtime.queue.dead_letters:
        logger.error("job %s gave up: %s", job.name, error, extra={"job": job.name})


def _candidate(path: Path) -> FileCandidate:
    size = path.stat().st_size if path.is_file() else 0
    return FileCandidate(name=path.name, mime_type=_guess_mime_type(path), size=size)


def _guess_mime_type(path: Path) -> str:
    mime_type, _ = mimetypes.guess_type(path.name)
    return mime_type or "application/octet-stream"


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True, default=str))


if __name__ == "__main__":
    raise SystemExit(main())
