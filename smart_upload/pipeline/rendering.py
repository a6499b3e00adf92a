from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Literal, Protocol, Sequence

import fitz  # PyMuPDF

from smart_upload.logging import get_logger
from smart_upload.utils.error_taxonomy import InvalidPdfError

logger = get_logger("rendering")

# 100x100 white PNG used in place of any page that cannot be rendered.
PLACEHOLDER_IMAGE_BASE64 = (
    "iVBORw0KGgoAAAANSUhEUgAAAGQAAABkCAYAAABw4pVUAAAADUlEQVR42u3BMQEAAADCoPVPbQhfoAAAAOA1v9QJZX6z/sIAAAAASUVORK5CYII="
)
DEFAULT_MAX_SAMPLED_PAGES = 8
TEXT_LAYER_MAX_PAGES = 3

ImageFormat = Literal["png", "jpeg"]


@dataclass(frozen=True, slots=True)
class RenderOptions:
    scale: float = 2.0
    max_width: int = 1024
    image_format: ImageFormat = "png"
    jpeg_quality: int = 85

    @property
    def mime_type(self) -> str:
        return "image/png" if self.image_format == "png" else "image/jpeg"


@dataclass(frozen=True, slots=True)
class PdfInfo:
    page_count: int
    text: str


class PageRenderer(Protocol):
    def render(
        self,
        pdf_bytes: bytes,
        page_indices: Sequence[int],
        options: RenderOptions,
    ) -> list[str]: ...


class PyMuPDFPageRenderer:
    """Renders 0-indexed pages to base64 images.

    The result has one entry per requested index, in request order. Pages
    that are out of range or fail to render become the placeholder image.
    """

    def render(
        self,
        pdf_bytes: bytes,
        page_indices: Sequence[int],
        options: RenderOptions | None = None,
    ) -> list[str]:
        render_options = options or RenderOptions()
        document = _open_document(pdf_bytes)
        images: list[str] = []
        with document:
            page_count = int(document.page_count)
            for page_index in page_indices:
                if page_index < 0 or page_index >= page_count:
                    logger.warning(
                        "page index %d out of range (pages=%d), using placeholder",
                        page_index,
                        page_count,
                    )
                    images.append(PLACEHOLDER_IMAGE_BASE64)
                    continue

                try:
                    images.append(
                        _render_page(document.load_page(page_index), render_options)
                    )
                except Exception as error:  # noqa: BLE001
                    logger.warning(
                        "failed to render page %d, using placeholder: %s",
                        page_index,
                        error,
                    )
                    images.append(PLACEHOLDER_IMAGE_BASE64)

        return images


def sample_page_indices(
    total_pages: int, max_samples: int = DEFAULT_MAX_SAMPLED_PAGES
) -> list[int]:
    """Pick 0-indexed pages to show the model.

    Small documents are sent whole. Larger ones always include the first two
    pages and the last page, with the rest spread evenly in between.
    """
    if total_pages <= 0:
        return []
    if total_pages <= max_samples:
        return list(range(total_pages))
    if max_samples < 3:
        return [0, total_pages - 1][:max_samples]

    fixed = [0, 1, total_pages - 1]
    remaining = max_samples - len(fixed)
    step = (total_pages - 3) // (remaining + 1)
    interior = [
        1 + offset * step
        for offset in range(1, remaining + 1)
        if 1 + offset * step < total_pages - 1
    ]
    return sorted(set(fixed + interior))


def read_pdf_info(pdf_bytes: bytes, *, text_pages: int = TEXT_LAYER_MAX_PAGES) -> PdfInfo:
    document = _open_document(pdf_bytes)
    with document:
        page_count = int(document.page_count)
        chunks: list[str] = []
        for page_index in range(min(page_count, text_pages)):
            text = document.load_page(page_index).get_text("text") or ""
            if text.strip():
                chunks.append(text.strip())

    return PdfInfo(page_count=page_count, text="\n\n".join(chunks))


def _open_document(pdf_bytes: bytes) -> fitz.Document:
    try:
        document = fitz.open(stream=pdf_bytes, filetype="pdf")
    except Exception as error:  # noqa: BLE001
        raise InvalidPdfError(f"Unable to open PDF: {error}") from error

    if document.page_count < 1:
        document.close()
        raise InvalidPdfError("PDF has no pages")
    return document


def _render_page(page: fitz.Page, options: RenderOptions) -> str:
    scale = options.scale
    width = float(page.rect.width) * scale
    if options.max_width > 0 and width > options.max_width:
        scale = options.max_width / float(page.rect.width)

    pixmap = page.get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
    if options.image_format == "jpeg":
        data = pixmap.tobytes("jpeg", jpg_quality=options.jpeg_quality)
    else:
        data = pixmap.tobytes("png")
    return base64.b64encode(data).decode("ascii")
