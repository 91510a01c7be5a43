"""PDF page text extraction.

Uses PyMuPDF (fitz) for native text extraction. Pages whose text cannot be
read come back empty so page numbering stays aligned with the PDF.
"""

import asyncio
import io
from abc import ABC, abstractmethod

from pdfrag.core.errors import PageExtractionError
from pdfrag.core.logging import get_logger
from pdfrag.core.schemas_chunks import Page

logger = get_logger(__name__)

# Lazy import to avoid loading heavy libraries at module load
fitz = None


def _get_fitz():
    """Lazy load PyMuPDF."""
    global fitz
    if fitz is None:
        import fitz as _fitz

        fitz = _fitz
    return fitz


class PageExtractor(ABC):
    """Turns document bytes into per-page plain text."""

    @abstractmethod
    async def extract_pages(self, data: bytes) -> list[Page]:
        """Return one Page per page, in order."""


class PdfPageExtractor(PageExtractor):
    """PageExtractor for PDFs backed by PyMuPDF."""

    def __init__(self, max_pages: int | None = None):
        self.max_pages = max_pages

    async def extract_pages(self, data: bytes) -> list[Page]:
        return await asyncio.to_thread(self._extract_sync, data)

    def _extract_sync(self, data: bytes) -> list[Page]:
        fitz_lib = _get_fitz()

        try:
            doc = fitz_lib.open(stream=io.BytesIO(data), filetype="pdf")
        except Exception as e:
            logger.error(f"Could not open PDF: {e}")
            raise PageExtractionError(f"Could not open PDF: {e}") from e

        pages: list[Page] = []
        try:
            page_count = len(doc)
            if self.max_pages is not None and page_count > self.max_pages:
                logger.warning(
                    f"PDF has {page_count} pages, truncating to {self.max_pages}",
                    extra={"page_count": page_count},
                )
                page_count = self.max_pages

            unreadable = 0
            for page_num in range(page_count):
                try:
                    text = doc[page_num].get_text("text")
                except Exception as e:
                    unreadable += 1
                    logger.warning(f"Failed to read page {page_num + 1}: {e}")
                    text = ""
                pages.append(Page(page_number=page_num + 1, text=text))
        finally:
            doc.close()

        logger.info(
            f"Extracted {len(pages)} pages",
            extra={"pages": len(pages), "unreadable_pages": unreadable},
        )
        return pages
