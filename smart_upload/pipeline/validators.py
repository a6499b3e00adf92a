from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Sequence

from smart_upload.logging import get_logger

logger = get_logger("validators")

ALLOWED_MIME_TYPES: tuple[str, ...] = (
    "application/pdf",
    "audio/mpeg",
    "audio/mp3",
    "audio/wav",
    "audio/x-wav",
    "audio/ogg",
    "audio/webm",
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/tiff",
    "image/bmp",
    "application/vnd.recordare.musicxml",
    "application/xml",
)
ALLOWED_MIME_FAMILIES: tuple[str, ...] = ("audio/", "image/")

MAX_FILE_SIZE = 100 * 1024 * 1024
DEFAULT_MAX_FILES = 20
DEFAULT_MAX_TOTAL_BYTES = 500 * 1024 * 1024
SMALL_FILE_BYTES = 1024
NEAR_LIMIT_RATIO = 0.8
MAX_FILENAME_LENGTH = 255

_SIZE_UNITS = ("Bytes", "KB", "MB", "GB", "TB")


@dataclass(frozen=True, slots=True)
class FileCandidate:
    name: str
    mime_type: str
    size: int


@dataclass(frozen=True, slots=True)
class ValidationReport:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def validate_file(
    candidate: FileCandidate, *, max_file_size: int = MAX_FILE_SIZE
) -> ValidationReport:
    errors: list[str] = []
    warnings: list[str] = []

    if not is_allowed_mime_type(candidate.mime_type):
        errors.append(
            f"Invalid file type: {candidate.mime_type}. "
            f"Allowed types: {', '.join(ALLOWED_MIME_TYPES)}"
        )

    if candidate.size > max_file_size:
        errors.append(
            f"File too large: {format_file_size(candidate.size)}. "
            f"Maximum size: {format_file_size(max_file_size)}"
        )

    if candidate.size <= 0:
        errors.append("File is empty")
    elif candidate.size < SMALL_FILE_BYTES:
        warnings.append(f"File is very small: {candidate.size} bytes")

    filename_warning = check_filename(candidate.name)
    if filename_warning is not None:
        warnings.append(filename_warning)

    if errors:
        logger.debug("file validation failed: %s (%d errors)", candidate.name, len(errors))

    return ValidationReport(valid=not errors, errors=errors, warnings=warnings)


def validate_batch_limits(
    candidates: Sequence[FileCandidate],
    *,
    max_files: int = DEFAULT_MAX_FILES,
    max_total_bytes: int = DEFAULT_MAX_TOTAL_BYTES,
    max_file_size: int = MAX_FILE_SIZE,
) -> ValidationReport:
    errors: list[str] = []
    warnings: list[str] = []

    file_count = len(candidates)
    total_bytes = sum(max(0, candidate.size) for candidate in candidates)

    if file_count > max_files:
        errors.append(f"Too many files: {file_count}. Maximum: {max_files}")

    if total_bytes > max_total_bytes:
        errors.append(
            f"Total size too large: {format_file_size(total_bytes)}. "
            f"Maximum: {format_file_size(max_total_bytes)}"
        )

    if file_count == 0:
        warnings.append("No files selected for upload")
    else:
        largest = max(candidates, key=lambda candidate: candidate.size)
        if max_file_size >= largest.size >= max_file_size * NEAR_LIMIT_RATIO:
            warnings.append(
                f"Largest file ({largest.name}) is close to size limit "
                f"({format_file_size(max_file_size)})"
            )

    return ValidationReport(valid=not errors, errors=errors, warnings=warnings)


def validate_files(
    candidates: Sequence[FileCandidate],
    *,
    max_files: int = DEFAULT_MAX_FILES,
    max_total_bytes: int = DEFAULT_MAX_TOTAL_BYTES,
    max_file_size: int = MAX_FILE_SIZE,
) -> ValidationReport:
    all_errors: list[str] = []
    all_warnings: list[str] = []

    for candidate in candidates:
        result = validate_file(candidate, max_file_size=max_file_size)
        all_errors.extend(result.errors)
        all_warnings.extend(result.warnings)

    batch_result = validate_batch_limits(
        candidates,
        max_files=max_files,
        max_total_bytes=max_total_bytes,
        max_file_size=max_file_size,
    )
    all_errors.extend(batch_result.errors)
    all_warnings.extend(batch_result.warnings)

    errors = _dedupe(all_errors)
    if errors:
        logger.info(
            "upload validation rejected %d file(s)",
            len(candidates),
            extra={"metrics": {"errors": len(errors)}},
        )
    return ValidationReport(
        valid=not errors,
        errors=errors,
        warnings=_dedupe(all_warnings),
    )


def is_allowed_mime_type(mime_type: str) -> bool:
    normalized = (mime_type or "").strip().lower()
    if normalized in ALLOWED_MIME_TYPES:
        return True
    return any(normalized.startswith(family) for family in ALLOWED_MIME_FAMILIES)


def check_filename(filename: str) -> str | None:
    if not filename or not filename.strip():
        return "Filename is empty"
    if ".." in filename or "/" in filename or "\\" in filename:
        return "Filename contains path separators"
    if "\0" in filename:
        return "Filename contains null bytes"
    if len(filename) > MAX_FILENAME_LENGTH:
        return f"Filename is too long (max {MAX_FILENAME_LENGTH} characters)"
    if filename.startswith(".") and len(filename) > 1:
        return "Warning: file may be hidden"
    return None


def format_file_size(size_bytes: int) -> str:
    if size_bytes <= 0:
        return "0 Bytes"

    index = 0
    value = float(size_bytes)
    while value >= 1024 and index < len(_SIZE_UNITS) - 1:
        value /= 1024
        index += 1
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{text} {_SIZE_UNITS[index]}"


def is_pdf_magic_bytes(data: bytes) -> bool:
    return len(data) >= 4 and data[:4] == b"%PDF"


def _dedupe(values: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(values))
