"""PDF processor using PyMuPDF with a Tesseract OCR fallback for scanned pages."""

import logging
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import anyio
import pymupdf

from threatdoc.cancellation import CancellationToken
from threatdoc.models import Document, ProcessingOptions

from .base import (
    DocumentProcessor,
    FormatValidationError,
    PasswordProtectedError,
    TextAccumulator,
    read_signature,
)
from .content_stream import ContentStreamSyntaxError, extract_text
from .ocr import OcrEngine

logger = logging.getLogger(__name__)

PDF_SIGNATURE = b"%PDF-"
OCR_DPI = 300

_PDF_DATE = re.compile(
    r"^(?:D:)?(\d{4})(\d{2})?(\d{2})?(\d{2})?(\d{2})?(\d{2})?"
    r"(?:(Z)|([+-])(\d{2})'?(\d{2})?'?)?"
)


def parse_pdf_date(value: Optional[str]) -> Optional[datetime]:
    """Parse a PDF date string such as ``D:20240131142500+01'00'``.

    Returns:
        Timezone-aware datetime (naive dates are taken as UTC), or None when
        the value is empty or malformed
    """
    if not value:
        return None
    match = _PDF_DATE.match(value.strip())
    if not match:
        return None
    year, month, day, hour, minute, second, zulu, sign, tz_hour, tz_minute = (
        match.groups()
    )
    tz = timezone.utc
    if sign and not zulu:
        offset = timedelta(hours=int(tz_hour), minutes=int(tz_minute or 0))
        tz = timezone(offset if sign == "+" else -offset)
    try:
        return datetime(
            int(year),
            int(month or 1),
            int(day or 1),
            int(hour or 0),
            int(minute or 0),
            int(second or 0),
            tzinfo=tz,
        )
    except ValueError:
        return None


class PdfProcessor(DocumentProcessor):
    """Processor for PDF documents.

    Text is read from the page content streams (text-show operators) page by
    page. When a document carries no embedded text at all and OCR is enabled,
    every page is rendered and recognized by the OcrEngine instead.

    Features:
    - Page markers (``--- Page N ---``) for citations
    - Single attempt with the configured default password for encrypted files
    - OCR fallback with per-page confidence warnings
    - Document information dictionary metadata
    """

    name = "pdf"
    supported_extensions = frozenset({".pdf"})
    priority = 100
    file_type = "PDF"

    MIME_TYPE = "application/pdf"

    def __init__(self, ocr_engine: Optional[OcrEngine] = None):
        """Initialize the PDF processor.

        Args:
            ocr_engine: Engine used for scanned documents (None disables OCR)
        """
        self.ocr_engine = ocr_engine
        logger.info(
            f"Initialized PdfProcessor "
            f"{'with' if ocr_engine else 'without'} OCR support"
        )

    def _signature_ok(self, path: Path) -> bool:
        return read_signature(path, len(PDF_SIGNATURE)) == PDF_SIGNATURE

    def _check_structure(self, path: Path) -> bool:
        with pymupdf.open(str(path)) as doc:
            return bool(doc.needs_pass) or doc.page_count > 0

    async def _extract(
        self,
        path: Path,
        options: ProcessingOptions,
        document: Document,
        cancel: CancellationToken,
    ) -> None:
        try:
            doc = await anyio.to_thread.run_sync(pymupdf.open, str(path))
        except pymupdf.FileDataError as e:
            raise FormatValidationError(
                f"File could not be opened as a PDF document: {e}", context=str(path)
            ) from e

        try:
            if doc.needs_pass:
                self._unlock(doc, options, document)

            document.page_count = doc.page_count
            if options.extract_metadata:
                try:
                    self._apply_metadata(doc, document)
                except Exception as e:
                    self._record_metadata_failure(document, e)

            if not options.extract_text_content:
                return

            accumulator = TextAccumulator(options.max_text_content_length)
            has_text = await anyio.to_thread.run_sync(
                self._extract_pages, doc, accumulator, document, cancel
            )

            if not has_text and options.enable_ocr:
                logger.info(f"No embedded text found in {path.name}, trying OCR")
                accumulator = await self._extract_with_ocr(
                    doc, options, document, cancel
                )

            self._finish_text(document, accumulator)
        finally:
            doc.close()

    def _unlock(
        self, doc: pymupdf.Document, options: ProcessingOptions, document: Document
    ) -> None:
        """Make the single permitted attempt to open an encrypted document."""
        document.is_password_protected = True

        if options.skip_password_protected:
            raise PasswordProtectedError(
                "PDF is password protected and was skipped "
                "(skip_password_protected is set).",
                context="skipped",
            )

        password = options.password
        if password is None:
            raise PasswordProtectedError(
                "PDF is password protected and no default password is configured.",
                context="no_password",
            )

        if not doc.authenticate(password):
            raise PasswordProtectedError(
                "PDF is password protected and the default password was rejected.",
                context="wrong_password",
            )
        logger.info("Opened password protected PDF with the default password")

    def _apply_metadata(self, doc: pymupdf.Document, document: Document) -> None:
        info = doc.metadata or {}
        metadata = document.metadata
        metadata.title = info.get("title") or None
        metadata.author = info.get("author") or None
        metadata.subject = info.get("subject") or None
        metadata.keywords = info.get("keywords") or None
        metadata.creator = info.get("creator") or None
        metadata.producer = info.get("producer") or None
        metadata.creation_date = parse_pdf_date(info.get("creationDate"))
        metadata.modification_date = parse_pdf_date(info.get("modDate"))
        metadata.mime_type = self.MIME_TYPE
        metadata.page_count = doc.page_count

        if info.get("format"):
            metadata.custom_properties["pdf_format"] = info["format"]
        metadata.custom_properties["encrypted"] = bool(
            info.get("encryption") or document.is_password_protected
        )

    def _extract_pages(
        self,
        doc: pymupdf.Document,
        accumulator: TextAccumulator,
        document: Document,
        cancel: CancellationToken,
    ) -> bool:
        """Read every page's content stream. Runs in a worker thread.

        Returns:
            True if any page carried non-blank text
        """
        has_text = False
        for index, page in enumerate(doc):
            cancel.raise_if_cancelled()
            page_number = index + 1
            try:
                text = extract_text(page.read_contents())
            except ContentStreamSyntaxError as e:
                logger.warning(f"Could not read page {page_number}: {e}")
                document.add_warning(
                    "PAGE_EXTRACTION_FAILED",
                    f"Text of page {page_number} could not be extracted: {e}",
                    context=str(page_number),
                )
                continue

            if not text.strip():
                continue
            has_text = True
            accumulator.marker(f"Page {page_number}")
            if not accumulator.append_line(text):
                break
        return has_text

    async def _extract_with_ocr(
        self,
        doc: pymupdf.Document,
        options: ProcessingOptions,
        document: Document,
        cancel: CancellationToken,
    ) -> TextAccumulator:
        accumulator = TextAccumulator(options.max_text_content_length)
        engine = self.ocr_engine
        if engine is None or not engine.is_available():
            logger.warning("OCR requested but no OCR engine is available")
            document.add_warning(
                "OCR_UNAVAILABLE",
                "Document has no embedded text and OCR is not available",
            )
            return accumulator

        document.is_scanned = True
        for index in range(doc.page_count):
            cancel.raise_if_cancelled()
            page_number = index + 1
            image = await anyio.to_thread.run_sync(_render_page, doc, index)
            result = await engine.process_image(
                image,
                language=options.ocr_language,
                min_confidence=options.ocr_min_confidence,
            )

            if not result.success:
                document.add_warning(
                    "OCR_PAGE_FAILED",
                    f"OCR failed for page {page_number}: {result.error_message}",
                    context=str(page_number),
                )
                continue
            if result.below_threshold:
                document.add_warning(
                    "OCR_LOW_CONFIDENCE",
                    f"OCR confidence for page {page_number} is "
                    f"{result.confidence * 100:.1f}%, below "
                    f"{options.ocr_min_confidence:.1f}%",
                    context=str(page_number),
                )

            if not result.text.strip():
                continue
            accumulator.marker(f"Page {page_number} (OCR)")
            if not accumulator.append_line(result.text.strip()):
                break
        return accumulator

    def close(self) -> None:
        if self.ocr_engine is not None:
            self.ocr_engine.close()


def _render_page(doc: pymupdf.Document, index: int) -> bytes:
    pixmap = doc[index].get_pixmap(dpi=OCR_DPI)
    return pixmap.tobytes("png")
