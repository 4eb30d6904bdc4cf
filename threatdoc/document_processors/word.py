"""Word processor using python-docx."""

import logging
import zipfile
from pathlib import Path
from typing import Optional

import anyio
import docx
from docx.document import Document as DocxDocument
from docx.opc.exceptions import PackageNotFoundError
from docx.table import Table
from docx.text.hyperlink import Hyperlink
from docx.text.paragraph import Paragraph

from threatdoc.cancellation import CancellationToken
from threatdoc.models import Document, ProcessingOptions

from .base import DocumentProcessor, FormatValidationError, TextAccumulator
from .ooxml import (
    has_ole_signature,
    has_zip_signature,
    parse_int,
    read_extended_properties,
)

logger = logging.getLogger(__name__)

DOCX_MIME_TYPE = (
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
)
DOC_MIME_TYPE = "application/msword"

LEGACY_PLACEHOLDER = (
    "Legacy .doc format - conversion required for full text extraction."
)

# Body blocks (paragraphs or tables) between cancellation checks
CANCEL_CHECK_INTERVAL = 50


class WordProcessor(DocumentProcessor):
    """Processor for Word documents (.docx, legacy .doc).

    Body paragraphs and tables are read in document order. Headers and
    footers follow the body, each behind a marker line. With
    ``preserve_formatting`` bold and italic runs are wrapped in markdown
    markers and tables are rendered as pipe-delimited rows.

    Legacy binary .doc files are accepted but only yield a placeholder text.
    """

    name = "word"
    supported_extensions = frozenset({".docx", ".doc"})
    priority = 90
    file_type = "Word"

    def _signature_ok(self, path: Path) -> bool:
        if path.suffix.lower() == ".doc":
            return has_ole_signature(path)
        return has_zip_signature(path)

    def _check_structure(self, path: Path) -> bool:
        if path.suffix.lower() == ".doc":
            return True
        docx.Document(str(path))
        return True

    async def _extract(
        self,
        path: Path,
        options: ProcessingOptions,
        document: Document,
        cancel: CancellationToken,
    ) -> None:
        if path.suffix.lower() == ".doc":
            document.metadata.mime_type = DOC_MIME_TYPE
            document.metadata.custom_properties["document_format"] = "Legacy Binary"
            self._apply_legacy_placeholder(document, ".doc", LEGACY_PLACEHOLDER)
            return

        await anyio.to_thread.run_sync(
            self._extract_docx, path, options, document, cancel
        )

    def _extract_docx(
        self,
        path: Path,
        options: ProcessingOptions,
        document: Document,
        cancel: CancellationToken,
    ) -> None:
        """Read a .docx package. Runs in a worker thread."""
        try:
            word = docx.Document(str(path))
        except (PackageNotFoundError, zipfile.BadZipFile, KeyError) as e:
            raise FormatValidationError(
                f"File could not be opened as a Word document: {e}",
                context=str(path),
            ) from e
        cancel.raise_if_cancelled()

        extended: dict[str, str] = {}
        try:
            extended = read_extended_properties(path)
        except Exception as e:
            self._record_metadata_failure(document, e)

        page_count = parse_int(extended.get("Pages"))
        document.page_count = page_count if page_count else max(1, len(word.sections))

        if options.extract_metadata:
            try:
                self._apply_metadata(word, extended, document)
            except Exception as e:
                self._record_metadata_failure(document, e)

        if options.extract_text_content:
            accumulator = TextAccumulator(options.max_text_content_length)
            self._extract_text(word, options, accumulator, cancel)
            self._finish_text(document, accumulator)

    def _apply_metadata(
        self, word: DocxDocument, extended: dict[str, str], document: Document
    ) -> None:
        core = word.core_properties
        metadata = document.metadata
        metadata.title = core.title or None
        metadata.author = core.author or None
        metadata.subject = core.subject or None
        metadata.keywords = core.keywords or None
        metadata.creation_date = core.created
        metadata.modification_date = core.modified
        metadata.creator = extended.get("Application")
        metadata.producer = extended.get("Application")
        metadata.mime_type = DOCX_MIME_TYPE
        metadata.page_count = document.page_count

        custom = metadata.custom_properties
        custom["document_format"] = "Office Open XML"
        if core.last_modified_by:
            custom["last_modified_by"] = core.last_modified_by
        if core.category:
            custom["category"] = core.category
        if core.comments:
            custom["comments"] = core.comments
        if core.revision:
            custom["revision"] = core.revision
        for key in ("Words", "Characters", "Paragraphs"):
            value = parse_int(extended.get(key))
            if value is not None:
                custom[key.lower()] = value

    def _extract_text(
        self,
        word: DocxDocument,
        options: ProcessingOptions,
        accumulator: TextAccumulator,
        cancel: CancellationToken,
    ) -> None:
        for index, block in enumerate(word.iter_inner_content()):
            if index % CANCEL_CHECK_INTERVAL == 0:
                cancel.raise_if_cancelled()
            if not self._append_block(block, options, accumulator):
                return

        headers: list[str] = []
        footers: list[str] = []
        for section in word.sections:
            if not section.header.is_linked_to_previous:
                headers.append(self._render_part(section.header, options))
            if not section.footer.is_linked_to_previous:
                footers.append(self._render_part(section.footer, options))

        cancel.raise_if_cancelled()
        for label, texts in (("Header", headers), ("Footer", footers)):
            for text in texts:
                if not text:
                    continue
                accumulator.marker(label)
                if not accumulator.append_line(text):
                    return

    def _append_block(
        self,
        block: Paragraph | Table,
        options: ProcessingOptions,
        accumulator: TextAccumulator,
    ) -> bool:
        if isinstance(block, Table):
            text = render_table(block, options.preserve_formatting)
            if not text:
                return True
            accumulator.blank_line()
            keep_going = accumulator.append_line(text)
            accumulator.blank_line()
            return keep_going

        text = render_paragraph(block, options.preserve_formatting)
        if not text.strip():
            return True
        return accumulator.append_line(text)

    def _render_part(self, part, options: ProcessingOptions) -> str:
        """Render a header or footer, paragraphs and tables in order."""
        lines = []
        for block in part.iter_inner_content():
            if isinstance(block, Table):
                text = render_table(block, options.preserve_formatting)
            else:
                text = render_paragraph(block, options.preserve_formatting)
            if text and text.strip():
                lines.append(text)
        return "\n".join(lines)


def render_paragraph(paragraph: Paragraph, preserve_formatting: bool) -> str:
    if not preserve_formatting:
        return paragraph.text

    parts = []
    for item in paragraph.iter_inner_content():
        runs = item.runs if isinstance(item, Hyperlink) else [item]
        for run in runs:
            text = run.text
            if not text:
                continue
            if run.bold and run.italic:
                text = f"***{text}***"
            elif run.bold:
                text = f"**{text}**"
            elif run.italic:
                text = f"*{text}*"
            parts.append(text)
    return "".join(parts)


def render_table(table: Table, preserve_formatting: bool) -> Optional[str]:
    """Render a table as tab-delimited or pipe-delimited rows.

    Horizontally merged cells are reported once per row.
    """
    rows = []
    for row in table.rows:
        seen = set()
        cells = []
        for cell in row.cells:
            if cell._tc in seen:
                continue
            seen.add(cell._tc)
            cells.append(" ".join(cell.text.split()))
        if any(cells):
            rows.append(cells)

    if not rows:
        return None
    if preserve_formatting:
        body = "\n".join(f"| {' | '.join(cells)} |" for cells in rows)
        return f"[Table]\n{body}\n[/Table]"
    return "\n".join("\t".join(cells) for cells in rows)
