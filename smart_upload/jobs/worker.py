from __future__ import annotations

from pathlib import PurePosixPath
from typing import Any, Callable

from smart_upload.config.settings import PipelineConfig
from smart_upload.jobs.queue import INGEST_BATCH_JOB, PROCESS_ITEM_JOB, Job, JobQueue
from smart_upload.logging import clear_log_context, get_logger, set_log_context
from smart_upload.pipeline.budget import SessionBudget
from smart_upload.pipeline.extraction import ExtractionOutcome, ExtractionPipeline, PassResponse
from smart_upload.pipeline.ingestion import BatchIngestor, BatchIngestResult
from smart_upload.pipeline.part_naming import normalize_instrument_label
from smart_upload.pipeline.rendering import read_pdf_info
from smart_upload.pipeline.response_parsing import normalize_confidence
from smart_upload.pipeline.routing import RoutingDecision
from smart_upload.pipeline.validators import is_pdf_magic_bytes
from smart_upload.storage.models import (
    FROZEN_ITEM_STATUSES,
    PENDING_ITEM_STATUSES,
    ItemRecord,
    ProposalInput,
)
from smart_upload.storage.object_store import ObjectStorage
from smart_upload.storage.repo import SmartUploadRepo
from smart_upload.utils.error_taxonomy import (
    ERROR_FRIENDLY_MESSAGES,
    InvalidPdfError,
    SmartUploadError,
    build_error_details,
    is_storage_error_exception,
    is_transient_exception,
)
from smart_upload.utils.retry import run_with_retry

logger = get_logger("worker")

AUTO_APPROVER = "system:auto-approve"
PROCESSABLE_ITEM_STATUSES = frozenset({"CREATED", "UPLOADING", "PROCESSING", "FAILED"})


class SmartUploadWorker:
    """Runs queued Smart Upload jobs.

    Every job is safe to deliver more than once: processing starts a fresh
    budget session and replaces the item's proposal, step updates never move
    backwards, and batch counters are recomputed from item rows.
    """

    def __init__(
        self,
        *,
        repo: SmartUploadRepo,
        storage: ObjectStorage,
        pipeline: ExtractionPipeline,
        ingestor: BatchIngestor,
        queue: JobQueue,
        config: PipelineConfig,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        self.repo = repo
        self.storage = storage
        self.pipeline = pipeline
        self.ingestor = ingestor
        self.queue = queue
        self.config = config
        self._sleep_fn = sleep_fn

    def handle(self, job_name: str, payload: dict[str, Any]) -> Any:
        set_log_context(job=job_name)
        try:
            if job_name == PROCESS_ITEM_JOB:
                return self.process_item(str(payload["itemId"]))
            if job_name == INGEST_BATCH_JOB:
                return self.ingest_batch(str(payload["batchId"]))
            raise ValueError(f"Unknown job name: {job_name}")
        finally:
            clear_log_context()

    def ingest_batch(self, batch_id: str) -> BatchIngestResult:
        set_log_context(batch_id=batch_id, stage="ingest")
        return self.ingestor.ingest_batch(batch_id)

    def process_item(self, item_id: str) -> ItemRecord:
        item = self.repo.require_item(item_id)
        set_log_context(batch_id=item.batch_id, item_id=item_id, stage="process")

        if item.status not in PROCESSABLE_ITEM_STATUSES:
            logger.info("item already %s, skipping", item.status)
            return item
        if self._batch_cancelled(item.batch_id):
            return self._cancel_item(item)

        self.repo.update_item_status(item_id, "PROCESSING")
        self.repo.sync_batch_status(item.batch_id)

        try:
            outcome = self._extract(item)
            if outcome is None:
                return self.repo.require_item(item_id)
            self._apply_outcome(item, outcome)
        except Exception as error:  # noqa: BLE001
            self._record_failure(item, error)
            if _is_redeliverable(error):
                raise

        batch = self.repo.sync_batch_status(item.batch_id)
        if batch.status == "APPROVED" and self.config.autonomous_ingest:
            logger.info("batch approved, queueing ingestion")
            self.queue.enqueue(INGEST_BATCH_JOB, {"batchId": batch.batch_id})
        return self.repo.require_item(item_id)

    def _extract(self, item: ItemRecord) -> ExtractionOutcome | None:
        if item.mime_type.lower() != "application/pdf":
            raise InvalidPdfError(f"Only PDF files can be processed, got {item.mime_type}")
        if item.storage_key is None:
            raise InvalidPdfError("Item has no stored file")

        pdf_bytes = self._download(item.storage_key)
        if not is_pdf_magic_bytes(pdf_bytes):
            raise InvalidPdfError("File content is not a PDF")
        self.repo.update_item_step(item.item_id, "VALIDATED")

        info = read_pdf_info(pdf_bytes)
        self.repo.update_item_metadata(
            item.item_id, ocr_text=info.text, page_count=info.page_count
        )
        self.repo.update_item_step(item.item_id, "TEXT_EXTRACTED")

        budget = SessionBudget(
            max_llm_calls=self.config.max_llm_calls,
            max_input_tokens=self.config.max_input_tokens,
        )
        outcome = self.pipeline.run(
            pdf_bytes=pdf_bytes,
            total_pages=info.page_count,
            config=self.config,
            budget=budget,
            fallback_instrument=_fallback_instrument(item.file_name),
            on_pass_response=lambda response: self._record_pass(item, response),
        )

        if self._batch_cancelled(item.batch_id):
            self._cancel_item(self.repo.require_item(item.item_id))
            return None
        return outcome

    def _apply_outcome(self, item: ItemRecord, outcome: ExtractionOutcome) -> None:
        instructions = outcome.plan.instructions
        self.repo.update_item_metadata(
            item.item_id,
            extracted_metadata=outcome.metadata,
            is_packet=bool(outcome.metadata.get("isMultiPart")) or len(instructions) > 1,
        )
        self.repo.update_item_step(item.item_id, "METADATA_EXTRACTED")

        proposal = self.repo.create_proposal(item.item_id, _proposal_input(outcome))
        if outcome.plan.valid:
            self.repo.update_item_step(item.item_id, "SPLIT_PLANNED")

        if outcome.decision is RoutingDecision.FAILED_LOW_CONFIDENCE:
            self.repo.update_item_status(
                item.item_id,
                "FAILED",
                error_message=(
                    f"{ERROR_FRIENDLY_MESSAGES['LOW_CONFIDENCE']} "
                    f"(confidence {outcome.confidence})"
                ),
                error_details={
                    "code": "LOW_CONFIDENCE",
                    "details": "; ".join(outcome.review_notes),
                    "confidence": outcome.confidence,
                },
            )
        elif outcome.decision is RoutingDecision.AUTO_APPROVED:
            self.repo.approve_proposal(proposal.proposal_id, approved_by=AUTO_APPROVER)
        else:
            self.repo.update_item_status(item.item_id, "NEEDS_REVIEW")

    def _record_pass(self, item: ItemRecord, response: PassResponse) -> None:
        self.repo.record_pass_response(
            item_id=item.item_id,
            batch_id=item.batch_id,
            pass_name=response.pass_name,
            model=response.model,
            raw_text=response.raw_text,
            parse_status=response.parse_status,
            error_message=response.error_message,
            usage=response.usage or None,
        )

    def _record_failure(self, item: ItemRecord, error: Exception) -> None:
        current = self.repo.get_item(item.item_id)
        if current is None or current.status in FROZEN_ITEM_STATUSES:
            logger.info("item no longer processable after error: %s", error)
            return

        details = build_error_details(error)
        retryable = _is_redeliverable(error)
        details["retryable"] = retryable
        logger.warning(
            "item processing failed (%s): %s",
            details["code"],
            error,
            extra={"metrics": {"code": details["code"], "retryable": retryable}},
        )
        # Redeliverable errors leave the item PROCESSING until the queue gives up.
        self.repo.update_item_status(
            item.item_id,
            "PROCESSING" if retryable else "FAILED",
            error_message=str(error),
            error_details=details,
        )

    def handle_dead_letter(self, job: Job, error: Exception) -> None:
        """Fail whatever a job left behind once its deliveries are used up."""
        if job.name == PROCESS_ITEM_JOB:
            item = self.repo.get_item(str(job.payload.get("itemId")))
            if item is None or item.status not in PENDING_ITEM_STATUSES:
                return
            self.repo.update_item_status(
                item.item_id,
                "FAILED",
                error_message=f"Gave up after {job.attempt} attempt(s): {error}",
                error_details=build_error_details(error),
            )
            self.repo.sync_batch_status(item.batch_id)
            return

        if job.name == INGEST_BATCH_JOB:
            batch = self.repo.get_batch(str(job.payload.get("batchId")))
            if batch is None or batch.status != "INGESTING":
                return
            for item in self.repo.list_batch_items(batch.batch_id):
                if item.status == "INGESTING":
                    self.repo.update_item_status(
                        item.item_id,
                        "FAILED",
                        error_message=f"Ingestion gave up: {error}",
                        error_details=build_error_details(error),
                    )
            items = self.repo.list_batch_items(batch.batch_id)
            self.repo.update_batch_status(
                batch.batch_id,
                "COMPLETE" if any(item.status == "COMPLETE" for item in items) else "FAILED",
                error_summary=f"Ingestion gave up after {job.attempt} attempt(s): {error}",
            )

    def _batch_cancelled(self, batch_id: str) -> bool:
        return self.repo.require_batch(batch_id).status == "CANCELLED"

    def _cancel_item(self, item: ItemRecord) -> ItemRecord:
        logger.info("batch cancelled, item will not be processed")
        if item.status in FROZEN_ITEM_STATUSES or item.status == "FAILED":
            return item
        return self.repo.update_item_status(item.item_id, "CANCELLED")

    def _download(self, key: str) -> bytes:
        kwargs: dict[str, Any] = {}
        if self._sleep_fn is not None:
            kwargs["sleep_fn"] = self._sleep_fn
        return run_with_retry(
            operation=lambda: self.storage.download(key),
            should_retry=lambda error: not isinstance(error, FileNotFoundError)
            and (is_storage_error_exception(error) or is_transient_exception(error)),
            **kwargs,
        )


def _proposal_input(outcome: ExtractionOutcome) -> ProposalInput:
    metadata = outcome.metadata
    confidence = float(outcome.confidence)
    instruments = list(
        dict.fromkeys(instruction.instrument for instruction in outcome.plan.instructions)
    )
    duration = metadata.get("duration")
    return ProposalInput(
        title=_text(metadata.get("title")),
        composer=_text(metadata.get("composer")),
        arranger=_text(metadata.get("arranger")),
        publisher=_text(metadata.get("publisher")),
        genre=_text(metadata.get("genre")),
        difficulty=_text(metadata.get("difficulty")),
        duration=duration if isinstance(duration, int) and not isinstance(duration, bool) else None,
        notes=_text(metadata.get("notes")),
        instrumentation=instruments,
        title_confidence=confidence if _text(metadata.get("title")) else None,
        composer_confidence=confidence if _text(metadata.get("composer")) else None,
        difficulty_confidence=confidence if _text(metadata.get("difficulty")) else None,
        overall_confidence=float(normalize_confidence(outcome.confidence)),
        cutting_instructions=[
            instruction.to_payload() for instruction in outcome.plan.instructions
        ],
        routing_decision=outcome.decision.value,
        review_notes=list(outcome.review_notes),
    )


def _fallback_instrument(file_name: str) -> str | None:
    """Instrument named by the file itself, e.g. "March - Tuba.pdf"."""
    normalized = normalize_instrument_label(PurePosixPath(file_name).stem.replace("_", " "))
    if normalized.section == "Other" or normalized.part_type != "PART":
        return None
    return normalized.instrument


def _is_redeliverable(error: Exception) -> bool:
    if isinstance(error, (SmartUploadError, FileNotFoundError)):
        return False
    return is_transient_exception(error) or is_storage_error_exception(error)


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
