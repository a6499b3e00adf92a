from __future__ import annotations

import pytest

from smart_upload.storage.catalog import (
    CatalogEntry,
    CatalogFile,
    CatalogPart,
    SqliteCatalogWriter,
    guess_instrument_family,
)
from smart_upload.utils.error_taxonomy import CatalogError


def _entry(item_id: str = "item-1", **overrides: object) -> CatalogEntry:
    values: dict[str, object] = {
        "source_item_id": item_id,
        "title": "Festive Overture",
        "composer": "Dmitri Shostakovich",
        "publisher": "Boosey",
        "files": [
            CatalogFile(
                file_name="overture.pdf",
                file_type="PART",
                file_size=2048,
                mime_type="application/pdf",
                storage_key="smart-upload/b/i/source/overture.pdf",
            ),
            CatalogFile(
                file_name="Festive_Overture_Flute.pdf",
                file_type="PART",
                file_size=1024,
                mime_type="application/pdf",
                storage_key="smart-upload/b/i/parts/Festive_Overture_Flute.pdf",
            ),
        ],
        "parts": [
            CatalogPart(
                instrument="Flute",
                part_name="Festive Overture Flute",
                storage_key="smart-upload/b/i/parts/Festive_Overture_Flute.pdf",
                page_start=1,
                page_end=2,
            )
        ],
    }
    values.update(overrides)
    return CatalogEntry(**values)  # type: ignore[arg-type]


def test_catalog_commit_creates_piece_files_and_parts(catalog: SqliteCatalogWriter) -> None:
    commit = catalog.commit(_entry())

    assert commit.created is True
    assert len(commit.file_ids) == 2
    assert len(commit.part_ids) == 1

    piece = catalog.get_piece(commit.piece_id)
    assert piece is not None
    assert piece["title"] == "Festive Overture"

    [part] = catalog.list_piece_parts(commit.piece_id)
    assert part["instrument_name"] == "Flute"
    assert part["family"] == "Woodwinds"
    assert part["file_id"] == commit.file_ids[1]
    assert (part["page_start"], part["page_end"]) == (1, 2)

    files = catalog.list_piece_files(commit.piece_id)
    assert {row["source"] for row in files} == {"smart_upload"}
    assert {row["original_upload_id"] for row in files} == {"item-1"}


def test_catalog_commit_is_idempotent_per_item(catalog: SqliteCatalogWriter) -> None:
    first = catalog.commit(_entry())
    second = catalog.commit(_entry())

    assert second.created is False
    assert second.piece_id == first.piece_id
    assert second.file_ids == first.file_ids
    assert second.part_ids == first.part_ids
    assert catalog.count_pieces() == 1


def test_catalog_reuses_people_and_instruments(catalog: SqliteCatalogWriter) -> None:
    first = catalog.commit(_entry("item-1"))
    second = catalog.commit(_entry("item-2", composer="dmitri shostakovich"))

    first_piece = catalog.get_piece(first.piece_id)
    second_piece = catalog.get_piece(second.piece_id)

    assert first.piece_id != second.piece_id
    assert first_piece is not None and second_piece is not None
    assert first_piece["composer_id"] == second_piece["composer_id"]
    assert catalog.count_pieces() == 2


def test_catalog_attaches_to_matched_piece(catalog: SqliteCatalogWriter) -> None:
    existing = catalog.commit(_entry("item-1"))
    attached = catalog.commit(_entry("item-2", matched_piece_id=existing.piece_id))

    assert attached.piece_id == existing.piece_id
    assert catalog.count_pieces() == 1
    assert len(catalog.list_piece_parts(existing.piece_id)) == 2


def test_catalog_rejects_unknown_matched_piece_without_partial_writes(
    catalog: SqliteCatalogWriter,
) -> None:
    with pytest.raises(CatalogError):
        catalog.commit(_entry("item-9", matched_piece_id="missing-piece"))

    assert catalog.count_pieces() == 0
    retry = catalog.commit(_entry("item-9"))
    assert retry.created is True


@pytest.mark.parametrize(
    ("name", "family"),
    [
        ("1st Bb Clarinet", "Woodwinds"),
        ("Tuba", "Brass"),
        ("Cello", "Strings"),
        ("Snare Drum", "Percussion"),
        ("Piano", "Keyboard"),
        ("Unlabelled", "Other"),
    ],
)
def test_guess_instrument_family(name: str, family: str) -> None:
    assert guess_instrument_family(name) == family
