from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable
from uuid import uuid4

from smart_upload.logging import get_logger
from smart_upload.pipeline.cutting_instructions import (
    check_partition,
    instructions_from_payloads,
)
from smart_upload.storage.db import connection, init_db
from smart_upload.storage.models import (
    APPROVABLE_ITEM_STATUSES,
    CLOSING_ITEM_STATUSES,
    FROZEN_ITEM_STATUSES,
    PENDING_ITEM_STATUSES,
    PROPOSAL_EDITABLE_FIELDS,
    STEP_ORDER,
    UPLOAD_STATUSES,
    BatchBundle,
    BatchRecord,
    ItemRecord,
    ItemStep,
    ParseStatus,
    PassName,
    PassResponseRecord,
    ProposalInput,
    ProposalRecord,
    UploadStatus,
    can_transition_batch,
    is_terminal_status,
    step_index,
)
from smart_upload.utils.error_taxonomy import (
    BatchNotFoundError,
    InvalidStateError,
    ItemNotFoundError,
    PageAccountingError,
    ProposalNotFoundError,
)

logger = get_logger("repo")

_BATCH_COLUMNS = """
    batch_id,
    user_id,
    status,
    total_files,
    processed_files,
    success_files,
    failed_files,
    error_summary,
    created_at,
    updated_at,
    completed_at
"""

_ITEM_COLUMNS = """
    item_id,
    batch_id,
    file_name,
    file_size,
    mime_type,
    storage_key,
    status,
    current_step,
    error_message,
    error_details_json,
    ocr_text,
    extracted_metadata_json,
    is_packet,
    page_count,
    split_files_json,
    created_at,
    updated_at,
    completed_at
"""

_REFRESH_COUNTS_SQL = """
    UPDATE batches
    SET
        total_files = (SELECT COUNT(*) FROM items WHERE batch_id = :batch_id),
        processed_files = (
            SELECT COUNT(*) FROM items
            WHERE batch_id = :batch_id AND status IN ('COMPLETE', 'FAILED')
        ),
        success_files = (
            SELECT COUNT(*) FROM items
            WHERE batch_id = :batch_id AND status = 'COMPLETE'
        ),
        failed_files = (
            SELECT COUNT(*) FROM items
            WHERE batch_id = :batch_id AND status = 'FAILED'
        ),
        updated_at = :updated_at
    WHERE batch_id = :batch_id
"""


class SmartUploadRepo:
    """Batch, item and proposal state, plus the per-pass audit trail.

    Every state change goes through this class. Counters are recomputed
    from item rows inside the same transaction as the change that moved
    them, so concurrent workers cannot double count.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        init_db(self.db_path)

    # Batches

    def create_batch(self, *, user_id: str, batch_id: str | None = None) -> BatchRecord:
        batch_identifier = batch_id or str(uuid4())
        now = _utc_now()

        with connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO batches (batch_id, user_id, status, created_at, updated_at)
                VALUES (?, ?, 'CREATED', ?, ?)
                """,
                (batch_identifier, user_id, now, now),
            )

        logger.info("batch created", extra={"batch_id": batch_identifier})
        return self.require_batch(batch_identifier)

    def get_batch(self, batch_id: str) -> BatchRecord | None:
        with connection(self.db_path) as conn:
            return _fetch_batch(conn, batch_id)

    def require_batch(self, batch_id: str) -> BatchRecord:
        batch = self.get_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)
        return batch

    def get_batch_with_items(self, batch_id: str) -> BatchBundle | None:
        batch = self.get_batch(batch_id)
        if batch is None:
            return None

        return BatchBundle(
            batch=batch,
            items=self.list_batch_items(batch_id),
            proposals=self.list_batch_proposals(batch_id),
        )

    def list_batches(
        self,
        *,
        user_id: str | None = None,
        include_all: bool = False,
        status: UploadStatus | None = None,
        limit: int = 100,
    ) -> list[BatchRecord]:
        """Own batches, or every batch when ``include_all`` is set."""
        if not include_all and not user_id:
            raise ValueError("user_id is required unless include_all is set")

        safe_limit = max(1, min(limit, 1000))
        where_clauses: list[str] = []
        params: list[Any] = []
        if not include_all:
            where_clauses.append("user_id = ?")
            params.append(user_id)
        if status is not None:
            where_clauses.append("status = ?")
            params.append(status)

        where_sql = f"WHERE {' AND '.join(where_clauses)}" if where_clauses else ""
        with connection(self.db_path) as conn:
            rows = conn.execute(
                f"""
                SELECT {_BATCH_COLUMNS}
                FROM batches
                {where_sql}
                ORDER BY created_at DESC, batch_id DESC
                LIMIT ?
                """,
                (*params, safe_limit),
            ).fetchall()

        return [_row_to_batch_record(row) for row in rows]

    def update_batch_status(
        self,
        batch_id: str,
        status: UploadStatus,
        *,
        error_summary: str | None = None,
    ) -> BatchRecord:
        _require_known_status(status)
        with connection(self.db_path, immediate=True) as conn:
            batch = _fetch_batch(conn, batch_id)
            if batch is None:
                raise BatchNotFoundError(batch_id)
            _set_batch_status(conn, batch, status, error_summary=error_summary)

        return self.require_batch(batch_id)

    def cancel_batch(self, batch_id: str) -> BatchRecord:
        """Cancel the batch and every item that has not finished.

        Completed and failed items keep their status.
        """
        now = _utc_now()
        with connection(self.db_path, immediate=True) as conn:
            batch = _fetch_batch(conn, batch_id)
            if batch is None:
                raise BatchNotFoundError(batch_id)
            if is_terminal_status(batch.status):
                raise InvalidStateError(
                    f"Cannot cancel batch {batch_id} in status {batch.status}"
                )

            conn.execute(
                """
                UPDATE items
                SET status = 'CANCELLED', updated_at = ?, completed_at = ?
                WHERE batch_id = ? AND status NOT IN ('COMPLETE', 'FAILED', 'CANCELLED')
                """,
                (now, now, batch_id),
            )
            _refresh_counts(conn, batch_id)
            _set_batch_status(conn, batch, "CANCELLED")

        logger.info("batch cancelled", extra={"batch_id": batch_id})
        return self.require_batch(batch_id)

    def refresh_batch_counts(self, batch_id: str) -> BatchRecord:
        with connection(self.db_path, immediate=True) as conn:
            if _fetch_batch(conn, batch_id) is None:
                raise BatchNotFoundError(batch_id)
            _refresh_counts(conn, batch_id)

        return self.require_batch(batch_id)

    def sync_batch_status(self, batch_id: str) -> BatchRecord:
        """Derive the batch status from its items.

        Batches that are ingesting or already terminal are left alone, as are
        batches whose items are all cancelled.
        """
        with connection(self.db_path, immediate=True) as conn:
            batch = _fetch_batch(conn, batch_id)
            if batch is None:
                raise BatchNotFoundError(batch_id)
            if batch.status == "INGESTING" or is_terminal_status(batch.status):
                return batch

            items = [
                item for item in _fetch_items(conn, batch_id) if item.status != "CANCELLED"
            ]
            if not items:
                return batch

            statuses = {item.status for item in items}
            error_summary: str | None = None
            if statuses & PENDING_ITEM_STATUSES:
                target: UploadStatus = "PROCESSING"
            elif "NEEDS_REVIEW" in statuses:
                target = "NEEDS_REVIEW"
            elif "APPROVED" in statuses:
                target = "APPROVED"
            elif "COMPLETE" in statuses:
                target = "COMPLETE"
            else:
                target = "FAILED"

            if target in {"COMPLETE", "FAILED"}:
                error_summary = _join_item_errors(items)
            _refresh_counts(conn, batch_id)
            _set_batch_status(conn, batch, target, error_summary=error_summary)

        return self.require_batch(batch_id)

    # Items

    def add_item(
        self,
        *,
        batch_id: str,
        file_name: str,
        file_size: int,
        mime_type: str,
        storage_key: str | None = None,
        is_packet: bool = False,
        item_id: str | None = None,
    ) -> ItemRecord:
        item_identifier = item_id or str(uuid4())
        now = _utc_now()

        with connection(self.db_path, immediate=True) as conn:
            batch = _fetch_batch(conn, batch_id)
            if batch is None:
                raise BatchNotFoundError(batch_id)
            if is_terminal_status(batch.status):
                raise InvalidStateError(
                    f"Cannot add items to batch {batch_id} in status {batch.status}"
                )

            conn.execute(
                f"""
                INSERT INTO items ({_ITEM_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, 'CREATED', NULL, NULL, NULL, NULL, NULL,
                        ?, NULL, NULL, ?, ?, NULL)
                """,
                (
                    item_identifier,
                    batch_id,
                    file_name,
                    int(file_size),
                    mime_type,
                    storage_key,
                    1 if is_packet else 0,
                    now,
                    now,
                ),
            )
            _refresh_counts(conn, batch_id)
            if batch.status == "CREATED":
                _set_batch_status(conn, batch, "UPLOADING")

        return self.require_item(item_identifier)

    def get_item(self, item_id: str) -> ItemRecord | None:
        with connection(self.db_path) as conn:
            return _fetch_item(conn, item_id)

    def require_item(self, item_id: str) -> ItemRecord:
        item = self.get_item(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)
        return item

    def list_batch_items(self, batch_id: str) -> list[ItemRecord]:
        with connection(self.db_path) as conn:
            return _fetch_items(conn, batch_id)

    def update_item_status(
        self,
        item_id: str,
        status: UploadStatus,
        *,
        error_message: str | None = None,
        error_details: dict[str, Any] | None = None,
    ) -> ItemRecord:
        """Set the item status and recompute the batch counters.

        Setting the current status again is allowed. Completed and cancelled
        items reject any other status. Once the batch has finished, items
        may only be failed or cancelled.
        """
        _require_known_status(status)
        now = _utc_now()
        with connection(self.db_path, immediate=True) as conn:
            item = _fetch_item(conn, item_id)
            if item is None:
                raise ItemNotFoundError(item_id)
            if item.status in FROZEN_ITEM_STATUSES and item.status != status:
                raise InvalidStateError(
                    f"Item {item_id} is {item.status} and can no longer change"
                )
            if item.status != status and status not in CLOSING_ITEM_STATUSES:
                _require_open_batch(conn, item.batch_id)

            completed_at = (item.completed_at or now) if is_terminal_status(status) else None
            conn.execute(
                """
                UPDATE items
                SET
                    status = ?,
                    error_message = ?,
                    error_details_json = ?,
                    updated_at = ?,
                    completed_at = ?
                WHERE item_id = ?
                """,
                (
                    status,
                    error_message,
                    _to_json_text(error_details) if error_details is not None else None,
                    now,
                    completed_at,
                    item_id,
                ),
            )
            _refresh_counts(conn, item.batch_id)

        return self.require_item(item_id)

    def update_item_step(self, item_id: str, step: ItemStep) -> ItemRecord:
        """Advance ``current_step``. Earlier or equal steps are a no-op."""
        if step not in STEP_ORDER:
            raise ValueError(f"Unknown item step: {step}")

        with connection(self.db_path, immediate=True) as conn:
            item = _fetch_item(conn, item_id)
            if item is None:
                raise ItemNotFoundError(item_id)
            if step_index(step) <= step_index(item.current_step):
                return item
            _require_mutable_item(item)

            conn.execute(
                "UPDATE items SET current_step = ?, updated_at = ? WHERE item_id = ?",
                (step, _utc_now(), item_id),
            )

        return self.require_item(item_id)

    def update_item_metadata(
        self,
        item_id: str,
        *,
        ocr_text: str | None = None,
        extracted_metadata: dict[str, Any] | None = None,
        is_packet: bool | None = None,
        page_count: int | None = None,
        storage_key: str | None = None,
        split_files: list[dict[str, Any]] | None = None,
    ) -> ItemRecord:
        """Overwrite the given fields; ``None`` leaves a field as it is."""
        with connection(self.db_path, immediate=True) as conn:
            item = _fetch_item(conn, item_id)
            if item is None:
                raise ItemNotFoundError(item_id)
            _require_mutable_item(item)

            conn.execute(
                """
                UPDATE items
                SET
                    ocr_text = COALESCE(?, ocr_text),
                    extracted_metadata_json = COALESCE(?, extracted_metadata_json),
                    is_packet = COALESCE(?, is_packet),
                    page_count = COALESCE(?, page_count),
                    storage_key = COALESCE(?, storage_key),
                    split_files_json = COALESCE(?, split_files_json),
                    updated_at = ?
                WHERE item_id = ?
                """,
                (
                    ocr_text,
                    _to_json_text(extracted_metadata)
                    if extracted_metadata is not None
                    else None,
                    None if is_packet is None else int(is_packet),
                    page_count,
                    storage_key,
                    _to_json_text(split_files) if split_files is not None else None,
                    _utc_now(),
                    item_id,
                ),
            )

        return self.require_item(item_id)

    # Proposals

    def create_proposal(self, item_id: str, proposal: ProposalInput) -> ProposalRecord:
        """Store the item's proposal, replacing any earlier one.

        A replaced proposal keeps its id and loses any approval.
        """
        now = _utc_now()
        with connection(self.db_path, immediate=True) as conn:
            item = _fetch_item(conn, item_id)
            if item is None:
                raise ItemNotFoundError(item_id)
            _require_mutable_item(item)

            conn.execute(
                """
                INSERT INTO proposals (
                    proposal_id,
                    item_id,
                    batch_id,
                    title,
                    composer,
                    arranger,
                    publisher,
                    genre,
                    difficulty,
                    duration,
                    notes,
                    instrumentation_json,
                    title_confidence,
                    composer_confidence,
                    difficulty_confidence,
                    overall_confidence,
                    cutting_instructions_json,
                    routing_decision,
                    review_notes_json,
                    matched_piece_id,
                    is_new_piece,
                    created_at,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (item_id) DO UPDATE SET
                    title = excluded.title,
                    composer = excluded.composer,
                    arranger = excluded.arranger,
                    publisher = excluded.publisher,
                    genre = excluded.genre,
                    difficulty = excluded.difficulty,
                    duration = excluded.duration,
                    notes = excluded.notes,
                    instrumentation_json = excluded.instrumentation_json,
                    title_confidence = excluded.title_confidence,
                    composer_confidence = excluded.composer_confidence,
                    difficulty_confidence = excluded.difficulty_confidence,
                    overall_confidence = excluded.overall_confidence,
                    cutting_instructions_json = excluded.cutting_instructions_json,
                    routing_decision = excluded.routing_decision,
                    review_notes_json = excluded.review_notes_json,
                    corrections_json = '{}',
                    matched_piece_id = excluded.matched_piece_id,
                    is_new_piece = excluded.is_new_piece,
                    is_approved = 0,
                    approved_by = NULL,
                    approved_at = NULL,
                    updated_at = excluded.updated_at
                """,
                (
                    str(uuid4()),
                    item_id,
                    item.batch_id,
                    proposal.title,
                    proposal.composer,
                    proposal.arranger,
                    proposal.publisher,
                    proposal.genre,
                    proposal.difficulty,
                    proposal.duration,
                    proposal.notes,
                    _to_json_text(list(proposal.instrumentation)),
                    proposal.title_confidence,
                    proposal.composer_confidence,
                    proposal.difficulty_confidence,
                    proposal.overall_confidence,
                    _to_json_text(list(proposal.cutting_instructions)),
                    proposal.routing_decision,
                    _to_json_text(list(proposal.review_notes)),
                    proposal.matched_piece_id,
                    1 if proposal.is_new_piece else 0,
                    now,
                    now,
                ),
            )

        created = self.get_item_proposal(item_id)
        if created is None:
            raise RuntimeError(f"Failed to create proposal for item {item_id}")
        return created

    def update_proposal(
        self, proposal_id: str, corrections: dict[str, Any]
    ) -> ProposalRecord:
        """Apply reviewer corrections and remember them in ``corrections``."""
        unknown = sorted(set(corrections) - set(PROPOSAL_EDITABLE_FIELDS))
        if unknown:
            raise ValueError(f"Fields cannot be corrected: {', '.join(unknown)}")

        with connection(self.db_path, immediate=True) as conn:
            proposal = _fetch_proposal(conn, proposal_id)
            if proposal is None:
                raise ProposalNotFoundError(proposal_id)
            item = _fetch_item(conn, proposal.item_id)
            if item is None:
                raise ItemNotFoundError(proposal.item_id)
            _require_mutable_item(item)
            _require_open_batch(conn, item.batch_id)
            _apply_corrections(conn, proposal, item, corrections)

        return self.require_proposal(proposal_id)

    def approve_proposal(
        self,
        proposal_id: str,
        *,
        approved_by: str,
        corrections: dict[str, Any] | None = None,
    ) -> ProposalRecord:
        """Approve the proposal and move its item to ``APPROVED``.

        The proposal must end up with cutting instructions that partition the
        item's pages; reviewers fix rejected plans through ``corrections``.
        """
        unknown = sorted(set(corrections or {}) - set(PROPOSAL_EDITABLE_FIELDS))
        if unknown:
            raise ValueError(f"Fields cannot be corrected: {', '.join(unknown)}")

        now = _utc_now()
        with connection(self.db_path, immediate=True) as conn:
            proposal = _fetch_proposal(conn, proposal_id)
            if proposal is None:
                raise ProposalNotFoundError(proposal_id)
            item = _fetch_item(conn, proposal.item_id)
            if item is None:
                raise ItemNotFoundError(proposal.item_id)
            if item.status not in APPROVABLE_ITEM_STATUSES:
                raise InvalidStateError(
                    f"Cannot approve proposal for item {item.item_id} in status {item.status}"
                )
            _require_open_batch(conn, item.batch_id)

            if corrections:
                _apply_corrections(conn, proposal, item, corrections)
                proposal = _fetch_proposal(conn, proposal_id) or proposal

            if item.page_count is not None:
                violations = _instruction_violations(
                    proposal.cutting_instructions, item.page_count
                )
                if violations:
                    raise InvalidStateError(
                        "Proposal has no valid cutting instructions: "
                        + "; ".join(violations)
                    )

            conn.execute(
                """
                UPDATE proposals
                SET is_approved = 1, approved_by = ?, approved_at = ?, updated_at = ?
                WHERE proposal_id = ?
                """,
                (approved_by, now, now, proposal_id),
            )
            conn.execute(
                """
                UPDATE items
                SET status = 'APPROVED', error_message = NULL, error_details_json = NULL,
                    completed_at = NULL, updated_at = ?
                WHERE item_id = ?
                """,
                (now, item.item_id),
            )
            _refresh_counts(conn, item.batch_id)

        logger.info(
            "proposal approved by %s",
            approved_by,
            extra={"batch_id": proposal.batch_id, "item_id": proposal.item_id},
        )
        self.sync_batch_status(proposal.batch_id)
        return self.require_proposal(proposal_id)

    def get_proposal(self, proposal_id: str) -> ProposalRecord | None:
        with connection(self.db_path) as conn:
            return _fetch_proposal(conn, proposal_id)

    def require_proposal(self, proposal_id: str) -> ProposalRecord:
        proposal = self.get_proposal(proposal_id)
        if proposal is None:
            raise ProposalNotFoundError(proposal_id)
        return proposal

    def get_item_proposal(self, item_id: str) -> ProposalRecord | None:
        with connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM proposals WHERE item_id = ?", (item_id,)
            ).fetchone()

        if row is None:
            return None
        return _row_to_proposal_record(row)

    def list_batch_proposals(self, batch_id: str) -> list[ProposalRecord]:
        with connection(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT * FROM proposals
                WHERE batch_id = ?
                ORDER BY created_at ASC, proposal_id ASC
                """,
                (batch_id,),
            ).fetchall()

        return [_row_to_proposal_record(row) for row in rows]

    # Audit

    def record_pass_response(
        self,
        *,
        item_id: str,
        batch_id: str,
        pass_name: PassName,
        raw_text: str,
        parse_status: ParseStatus,
        model: str | None = None,
        error_message: str | None = None,
        usage: dict[str, Any] | None = None,
    ) -> PassResponseRecord:
        with connection(self.db_path) as conn:
            cursor = conn.execute(
                """
                INSERT INTO pass_responses (
                    item_id,
                    batch_id,
                    pass_name,
                    model,
                    raw_text,
                    parse_status,
                    error_message,
                    usage_json,
                    created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item_id,
                    batch_id,
                    pass_name,
                    model,
                    raw_text,
                    parse_status,
                    error_message,
                    _to_json_text(usage) if usage is not None else None,
                    _utc_now(),
                ),
            )
            row = conn.execute(
                "SELECT * FROM pass_responses WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()

        return _row_to_pass_response_record(row)

    def list_pass_responses(self, item_id: str) -> list[PassResponseRecord]:
        with connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM pass_responses WHERE item_id = ? ORDER BY id ASC",
                (item_id,),
            ).fetchall()

        return [_row_to_pass_response_record(row) for row in rows]


def _fetch_batch(conn: sqlite3.Connection, batch_id: str) -> BatchRecord | None:
    row = conn.execute(
        f"SELECT {_BATCH_COLUMNS} FROM batches WHERE batch_id = ?", (batch_id,)
    ).fetchone()
    if row is None:
        return None
    return _row_to_batch_record(row)


def _fetch_item(conn: sqlite3.Connection, item_id: str) -> ItemRecord | None:
    row = conn.execute(
        f"SELECT {_ITEM_COLUMNS} FROM items WHERE item_id = ?", (item_id,)
    ).fetchone()
    if row is None:
        return None
    return _row_to_item_record(row)


def _fetch_items(conn: sqlite3.Connection, batch_id: str) -> list[ItemRecord]:
    rows = conn.execute(
        f"""
        SELECT {_ITEM_COLUMNS}
        FROM items
        WHERE batch_id = ?
        ORDER BY created_at ASC, item_id ASC
        """,
        (batch_id,),
    ).fetchall()
    return [_row_to_item_record(row) for row in rows]


def _fetch_proposal(conn: sqlite3.Connection, proposal_id: str) -> ProposalRecord | None:
    row = conn.execute(
        "SELECT * FROM proposals WHERE proposal_id = ?", (proposal_id,)
    ).fetchone()
    if row is None:
        return None
    return _row_to_proposal_record(row)


def _refresh_counts(conn: sqlite3.Connection, batch_id: str) -> None:
    conn.execute(_REFRESH_COUNTS_SQL, {"batch_id": batch_id, "updated_at": _utc_now()})


def _set_batch_status(
    conn: sqlite3.Connection,
    batch: BatchRecord,
    status: UploadStatus,
    *,
    error_summary: str | None = None,
) -> None:
    if not can_transition_batch(batch.status, status):
        raise InvalidStateError(
            f"Batch {batch.batch_id} cannot move from {batch.status} to {status}"
        )

    now = _utc_now()
    if batch.status == status:
        if error_summary is not None:
            conn.execute(
                "UPDATE batches SET error_summary = ?, updated_at = ? WHERE batch_id = ?",
                (error_summary, now, batch.batch_id),
            )
        return

    conn.execute(
        """
        UPDATE batches
        SET
            status = ?,
            error_summary = COALESCE(?, error_summary),
            updated_at = ?,
            completed_at = ?
        WHERE batch_id = ?
        """,
        (
            status,
            error_summary,
            now,
            now if is_terminal_status(status) else None,
            batch.batch_id,
        ),
    )
    logger.info(
        "batch status %s -> %s",
        batch.status,
        status,
        extra={"batch_id": batch.batch_id},
    )


def _apply_corrections(
    conn: sqlite3.Connection,
    proposal: ProposalRecord,
    item: ItemRecord,
    corrections: dict[str, Any],
) -> None:
    values = dict(corrections)
    if "cutting_instructions" in values:
        instructions = list(values["cutting_instructions"] or [])
        if item.page_count is not None:
            violations = _instruction_violations(instructions, item.page_count)
            if violations:
                raise PageAccountingError(violations)
        values["cutting_instructions"] = [
            instruction.to_payload()
            for instruction in instructions_from_payloads(
                instructions, label_source="reviewer"
            )
        ]

    columns: list[str] = []
    params: list[Any] = []
    for name, value in values.items():
        if name in {"instrumentation", "cutting_instructions"}:
            columns.append(f"{name}_json = ?")
            params.append(_to_json_text(list(value or [])))
        elif name == "is_new_piece":
            columns.append("is_new_piece = ?")
            params.append(1 if value else 0)
        else:
            columns.append(f"{name} = ?")
            params.append(value)

    merged = {**proposal.corrections, **values}
    columns.extend(["corrections_json = ?", "updated_at = ?"])
    params.extend([_to_json_text(merged), _utc_now()])
    conn.execute(
        f"UPDATE proposals SET {', '.join(columns)} WHERE proposal_id = ?",
        (*params, proposal.proposal_id),
    )


def _instruction_violations(
    payloads: Iterable[dict[str, Any]], total_pages: int
) -> list[str]:
    try:
        instructions = instructions_from_payloads(payloads)
    except ValueError as error:
        return [str(error)]
    return check_partition(instructions, total_pages)


def _require_mutable_item(item: ItemRecord) -> None:
    if item.status in FROZEN_ITEM_STATUSES:
        raise InvalidStateError(
            f"Item {item.item_id} is {item.status} and can no longer change"
        )


def _require_open_batch(conn: sqlite3.Connection, batch_id: str) -> None:
    batch = _fetch_batch(conn, batch_id)
    if batch is None:
        raise BatchNotFoundError(batch_id)
    if is_terminal_status(batch.status):
        raise InvalidStateError(
            f"Batch {batch_id} is {batch.status} and its items can no longer change"
        )


def _require_known_status(status: str) -> None:
    if status not in UPLOAD_STATUSES:
        raise ValueError(f"Unknown status: {status}")


def _join_item_errors(items: Iterable[ItemRecord]) -> str | None:
    messages = [
        f"{item.file_name}: {item.error_message}"
        for item in items
        if item.status == "FAILED" and item.error_message
    ]
    return "; ".join(messages) or None


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def _to_optional_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value)


def _to_optional_int(value: object) -> int | None:
    if value is None:
        return None
    return int(value)


def _to_optional_float(value: object) -> float | None:
    if value is None:
        return None
    return float(value)


def _row_to_batch_record(row: object) -> BatchRecord:
    return BatchRecord(
        batch_id=str(row["batch_id"]),
        user_id=str(row["user_id"]),
        status=str(row["status"]),
        total_files=int(row["total_files"]),
        processed_files=int(row["processed_files"]),
        success_files=int(row["success_files"]),
        failed_files=int(row["failed_files"]),
        error_summary=_to_optional_str(row["error_summary"]),
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
        completed_at=_to_optional_str(row["completed_at"]),
    )


def _row_to_item_record(row: object) -> ItemRecord:
    split_files = _from_json_value(row["split_files_json"])
    return ItemRecord(
        item_id=str(row["item_id"]),
        batch_id=str(row["batch_id"]),
        file_name=str(row["file_name"]),
        file_size=int(row["file_size"]),
        mime_type=str(row["mime_type"]),
        storage_key=_to_optional_str(row["storage_key"]),
        status=str(row["status"]),
        current_step=_to_optional_str(row["current_step"]),
        error_message=_to_optional_str(row["error_message"]),
        error_details=_from_json_text(row["error_details_json"]),
        ocr_text=_to_optional_str(row["ocr_text"]),
        extracted_metadata=_from_json_text(row["extracted_metadata_json"]),
        is_packet=bool(row["is_packet"]),
        page_count=_to_optional_int(row["page_count"]),
        split_files=split_files if isinstance(split_files, list) else None,
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
        completed_at=_to_optional_str(row["completed_at"]),
    )


def _row_to_proposal_record(row: object) -> ProposalRecord:
    return ProposalRecord(
        proposal_id=str(row["proposal_id"]),
        item_id=str(row["item_id"]),
        batch_id=str(row["batch_id"]),
        title=_to_optional_str(row["title"]),
        composer=_to_optional_str(row["composer"]),
        arranger=_to_optional_str(row["arranger"]),
        publisher=_to_optional_str(row["publisher"]),
        genre=_to_optional_str(row["genre"]),
        difficulty=_to_optional_str(row["difficulty"]),
        duration=_to_optional_int(row["duration"]),
        notes=_to_optional_str(row["notes"]),
        instrumentation=_list_or_empty(row["instrumentation_json"]),
        title_confidence=_to_optional_float(row["title_confidence"]),
        composer_confidence=_to_optional_float(row["composer_confidence"]),
        difficulty_confidence=_to_optional_float(row["difficulty_confidence"]),
        overall_confidence=_to_optional_float(row["overall_confidence"]),
        cutting_instructions=_list_or_empty(row["cutting_instructions_json"]),
        routing_decision=_to_optional_str(row["routing_decision"]),
        review_notes=_list_or_empty(row["review_notes_json"]),
        corrections=_from_json_text(row["corrections_json"]) or {},
        matched_piece_id=_to_optional_str(row["matched_piece_id"]),
        is_new_piece=bool(row["is_new_piece"]),
        is_approved=bool(row["is_approved"]),
        approved_by=_to_optional_str(row["approved_by"]),
        approved_at=_to_optional_str(row["approved_at"]),
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
    )


def _row_to_pass_response_record(row: object) -> PassResponseRecord:
    return PassResponseRecord(
        id=int(row["id"]),
        item_id=str(row["item_id"]),
        batch_id=str(row["batch_id"]),
        pass_name=str(row["pass_name"]),
        model=_to_optional_str(row["model"]),
        raw_text=str(row["raw_text"]),
        parse_status=str(row["parse_status"]),
        error_message=_to_optional_str(row["error_message"]),
        usage=_from_json_text(row["usage_json"]),
        created_at=str(row["created_at"]),
    )


def _to_json_text(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False)


def _from_json_value(value: object) -> Any:
    text = _to_optional_str(value)
    if text is None:
        return None

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def _from_json_text(value: object) -> dict[str, Any] | None:
    parsed = _from_json_value(value)
    if parsed is None:
        return None
    if not isinstance(parsed, dict):
        return {"_value": parsed}
    return parsed


def _list_or_empty(value: object) -> list[Any]:
    parsed = _from_json_value(value)
    if isinstance(parsed, list):
        return parsed
    return []
