from __future__ import annotations

from typing import Callable

import pytest

from smart_upload.pipeline.ingestion import BatchIngestor
from smart_upload.storage.catalog import CatalogEntry, SqliteCatalogWriter
from smart_upload.storage.models import ProposalInput
from smart_upload.storage.object_store import LocalObjectStorage, build_source_key
from smart_upload.storage.repo import SmartUploadRepo
from smart_upload.utils.error_taxonomy import CatalogError, InvalidStateError

FLUTE_AND_OBOE = [
    {"partName": "Flute", "instrument": "Flute", "pageRange": [1, 2]},
    {"partName": "Oboe", "instrument": "Oboe", "pageRange": [3, 3]},
]


class FlakyUploadStorage(LocalObjectStorage):
    def __init__(self, root, *, failures: int) -> None:
        super().__init__(root)
        self.failures = failures
        self.upload_attempts = 0

    def upload(self, data: bytes, key: str) -> str:
        self.upload_attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("object store unreachable")
        return super().upload(data, key)


class BrokenCatalog:
    def commit(self, entry: CatalogEntry):
        raise CatalogError("catalog is read-only")


def _approved_item(
    repo: SmartUploadRepo,
    storage: LocalObjectStorage,
    pdf_bytes: bytes,
    *,
    batch_id: str | None = None,
    file_name: str = "festive.pdf",
    page_count: int = 3,
    instructions: list[dict[str, object]] | None = None,
    **proposal_fields: object,
) -> tuple[str, str]:
    if batch_id is None:
        batch_id = repo.create_batch(user_id="librarian").batch_id
    item = repo.add_item(
        batch_id=batch_id, file_name=file_name, file_size=len(pdf_bytes), mime_type="application/pdf"
    )
    key = storage.upload(
        pdf_bytes, build_source_key(batch_id=batch_id, item_id=item.item_id, file_name=file_name)
    )
    repo.update_item_metadata(
        item.item_id, storage_key=key, page_count=page_count, extracted_metadata={"fileType": "PART"}
    )
    repo.update_item_status(item.item_id, "NEEDS_REVIEW")
    proposal = repo.create_proposal(
        item.item_id,
        ProposalInput(
            title="Festive Overture",
            composer="Dmitri Shostakovich",
            cutting_instructions=instructions if instructions is not None else FLUTE_AND_OBOE,
            **proposal_fields,  # type: ignore[arg-type]
        ),
    )
    repo.approve_proposal(proposal.proposal_id, approved_by="librarian")
    return batch_id, item.item_id


def _ingestor(repo, storage, catalog) -> BatchIngestor:
    return BatchIngestor(repo=repo, storage=storage, catalog=catalog, sleep_fn=lambda _: None)


def test_ingest_batch_splits_uploads_and_commits(
    repo: SmartUploadRepo,
    storage: LocalObjectStorage,
    catalog: SqliteCatalogWriter,
    make_pdf: Callable[..., bytes],
) -> None:
    batch_id, item_id = _approved_item(repo, storage, make_pdf(3))

    result = _ingestor(repo, storage, catalog).ingest_batch(batch_id)

    assert result.success is True
    [ingested] = result.ingested
    assert len(ingested.part_ids) == 2
    assert len(ingested.file_ids) == 3

    item = repo.require_item(item_id)
    assert item.status == "COMPLETE"
    assert item.current_step == "INGESTED"
    assert [entry["storageKey"] for entry in item.split_files or []] == [
        f"smart-upload/{batch_id}/{item_id}/parts/Festive_Overture_Flute.pdf",
        f"smart-upload/{batch_id}/{item_id}/parts/Festive_Overture_Oboe.pdf",
    ]
    assert all(storage.exists(entry["storageKey"]) for entry in item.split_files or [])

    parts = catalog.list_piece_parts(ingested.piece_id)
    assert [(part["instrument_name"], part["page_start"], part["page_end"]) for part in parts] == [
        ("Flute", 1, 2),
        ("Oboe", 3, 3),
    ]

    batch = repo.require_batch(batch_id)
    assert batch.status == "COMPLETE"
    assert (batch.success_files, batch.failed_files) == (1, 0)


def test_ingest_batch_requires_approved_batch(
    repo: SmartUploadRepo,
    storage: LocalObjectStorage,
    catalog: SqliteCatalogWriter,
) -> None:
    batch = repo.create_batch(user_id="librarian")
    repo.add_item(batch_id=batch.batch_id, file_name="a.pdf", file_size=1, mime_type="application/pdf")

    with pytest.raises(InvalidStateError) as exc_info:
        _ingestor(repo, storage, catalog).ingest_batch(batch.batch_id)

    assert exc_info.value.status_code == 409
    assert repo.require_batch(batch.batch_id).status == "UPLOADING"


def test_catalog_failure_leaves_nothing_in_catalog(
    repo: SmartUploadRepo,
    storage: LocalObjectStorage,
    catalog: SqliteCatalogWriter,
    make_pdf: Callable[..., bytes],
) -> None:
    batch_id, item_id = _approved_item(repo, storage, make_pdf(3))

    result = _ingestor(repo, storage, BrokenCatalog()).ingest_batch(batch_id)

    assert result.status == "FAILED"
    assert result.errors == ["festive.pdf: catalog is read-only"]
    item = repo.require_item(item_id)
    assert item.status == "FAILED"
    assert item.error_details is not None
    assert item.error_details["code"] == "CATALOG_ERROR"
    assert catalog.count_pieces() == 0
    batch = repo.require_batch(batch_id)
    assert batch.status == "FAILED"
    assert batch.error_summary == "festive.pdf: catalog is read-only"


def test_page_mismatch_fails_only_that_item(
    repo: SmartUploadRepo,
    storage: LocalObjectStorage,
    catalog: SqliteCatalogWriter,
    make_pdf: Callable[..., bytes],
) -> None:
    batch_id, good_item = _approved_item(repo, storage, make_pdf(3))
    _, bad_item = _approved_item(
        repo, storage, make_pdf(2), batch_id=batch_id, file_name="short.pdf"
    )

    result = _ingestor(repo, storage, catalog).ingest_batch(batch_id)

    assert result.status == "COMPLETE"
    assert result.success is False
    assert [entry.item_id for entry in result.ingested] == [good_item]
    assert len(result.errors) == 1
    assert result.errors[0].startswith("short.pdf: ")
    assert repo.require_item(bad_item).status == "FAILED"
    assert repo.require_item(bad_item).error_details["code"] == "PAGE_ACCOUNTING_VIOLATION"
    assert catalog.count_pieces() == 1

    batch = repo.require_batch(batch_id)
    assert (batch.status, batch.success_files, batch.failed_files) == ("COMPLETE", 1, 1)


def test_transient_storage_errors_propagate_and_redelivery_completes(
    repo: SmartUploadRepo,
    catalog: SqliteCatalogWriter,
    make_pdf: Callable[..., bytes],
    tmp_path,
) -> None:
    storage = FlakyUploadStorage(tmp_path / "objects", failures=0)
    batch_id, item_id = _approved_item(repo, storage, make_pdf(3))
    storage.failures = 3

    with pytest.raises(ConnectionError):
        _ingestor(repo, storage, catalog).ingest_batch(batch_id)

    assert storage.upload_attempts == 4
    assert repo.require_item(item_id).status == "INGESTING"
    assert repo.require_batch(batch_id).status == "INGESTING"
    assert catalog.count_pieces() == 0

    result = _ingestor(repo, storage, catalog).ingest_batch(batch_id)

    assert result.success is True
    assert repo.require_item(item_id).status == "COMPLETE"
    assert catalog.count_pieces() == 1


def test_storage_retry_recovers_within_one_attempt(
    repo: SmartUploadRepo,
    catalog: SqliteCatalogWriter,
    make_pdf: Callable[..., bytes],
    tmp_path,
) -> None:
    storage = FlakyUploadStorage(tmp_path / "objects", failures=0)
    batch_id, _ = _approved_item(repo, storage, make_pdf(3))
    storage.failures = 2

    result = _ingestor(repo, storage, catalog).ingest_batch(batch_id)

    assert result.success is True


def test_ingest_attaches_to_matched_piece(
    repo: SmartUploadRepo,
    storage: LocalObjectStorage,
    catalog: SqliteCatalogWriter,
    make_pdf: Callable[..., bytes],
) -> None:
    first_batch, _ = _approved_item(repo, storage, make_pdf(3))
    [first] = _ingestor(repo, storage, catalog).ingest_batch(first_batch).ingested

    second_batch, _ = _approved_item(
        repo,
        storage,
        make_pdf(1),
        page_count=1,
        instructions=[{"partName": "Tuba", "instrument": "Tuba", "pageRange": [1, 1]}],
        matched_piece_id=first.piece_id,
        is_new_piece=False,
    )
    [second] = _ingestor(repo, storage, catalog).ingest_batch(second_batch).ingested

    assert second.piece_id == first.piece_id
    assert catalog.count_pieces() == 1
    assert len(catalog.list_piece_parts(first.piece_id)) == 3


def test_duplicate_part_names_get_distinct_storage_keys(
    repo: SmartUploadRepo,
    storage: LocalObjectStorage,
    catalog: SqliteCatalogWriter,
    make_pdf: Callable[..., bytes],
) -> None:
    batch_id, item_id = _approved_item(
        repo,
        storage,
        make_pdf(3),
        instructions=[
            {"partName": "Flute", "instrument": "Flute", "pageRange": [1, 1]},
            {"partName": "Flute", "instrument": "Flute", "pageRange": [2, 2]},
            {"partName": "Flute 2", "instrument": "Flute", "pageRange": [3, 3]},
        ],
    )

    result = _ingestor(repo, storage, catalog).ingest_batch(batch_id)

    assert result.success is True
    keys = [entry["storageKey"] for entry in repo.require_item(item_id).split_files or []]
    assert len(set(keys)) == 3
    assert all(storage.exists(key) for key in keys)


def test_items_added_during_ingestion_are_cancelled_on_finish(
    repo: SmartUploadRepo,
    storage: LocalObjectStorage,
    catalog: SqliteCatalogWriter,
    make_pdf: Callable[..., bytes],
) -> None:
    batch_id, item_id = _approved_item(repo, storage, make_pdf(3))
    repo.update_batch_status(batch_id, "INGESTING")
    late = repo.add_item(
        batch_id=batch_id, file_name="late.pdf", file_size=2048, mime_type="application/pdf"
    )

    result = _ingestor(repo, storage, catalog).ingest_batch(batch_id)

    assert result.success is True
    assert repo.require_item(item_id).status == "COMPLETE"
    late_item = repo.require_item(late.item_id)
    assert late_item.status == "CANCELLED"
    assert late_item.error_message == "Added after ingestion started"
    batch = repo.require_batch(batch_id)
    assert (batch.status, batch.success_files, batch.failed_files) == ("COMPLETE", 1, 0)
