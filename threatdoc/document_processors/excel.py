"""Excel processor using openpyxl."""

import logging
import zipfile
from datetime import date, datetime, time
from pathlib import Path
from typing import Any, Optional

import anyio
import openpyxl
from openpyxl.styles.numbers import is_date_format, is_timedelta_format
from openpyxl.utils.datetime import WINDOWS_EPOCH, from_excel
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.workbook.workbook import Workbook

from threatdoc.cancellation import CancellationToken
from threatdoc.models import Document, ProcessingOptions

from .base import DocumentProcessor, FormatValidationError, TextAccumulator
from .ooxml import has_ole_signature, has_zip_signature, read_extended_properties

logger = logging.getLogger(__name__)

XLSX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
XLS_MIME_TYPE = "application/vnd.ms-excel"

LEGACY_PLACEHOLDER = (
    "Legacy .xls format - conversion required for full data extraction."
)

ROW_BATCH_SIZE = 100


def format_cell(
    value: Any,
    number_format: Optional[str] = None,
    epoch: datetime = WINDOWS_EPOCH,
) -> str:
    """Render a cell value as text.

    Booleans become TRUE/FALSE. Numbers with a date number format are
    converted from the workbook epoch and rendered as yyyy-MM-dd; a serial
    outside the representable date range is kept as the raw number.
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if (
        isinstance(value, (int, float))
        and number_format
        and is_date_format(number_format)
    ):
        try:
            value = from_excel(
                value, epoch, timedelta=is_timedelta_format(number_format)
            )
        except (OverflowError, ValueError):
            logger.debug(f"Date serial {value} is out of range, kept as number")
            return str(value)
    if isinstance(value, (datetime, date)):
        return value.strftime("%Y-%m-%d")
    if isinstance(value, time):
        return value.isoformat()
    return str(value)


def format_row(values: list[str], preserve_formatting: bool) -> str:
    if preserve_formatting:
        return "| " + " | ".join(values) + " |"
    return "\t".join(values)


class ExcelProcessor(DocumentProcessor):
    """Processor for Excel workbooks (.xlsx, legacy .xls).

    Worksheets are read in workbook order, each behind a
    ``--- Sheet: name ---`` marker. Empty cells are left out of a row and
    empty rows are skipped. Every worksheet counts as one page.
    """

    name = "excel"
    supported_extensions = frozenset({".xlsx", ".xls"})
    priority = 80
    file_type = "Excel"

    def _signature_ok(self, path: Path) -> bool:
        if path.suffix.lower() == ".xls":
            return has_ole_signature(path)
        return has_zip_signature(path)

    def _check_structure(self, path: Path) -> bool:
        if path.suffix.lower() == ".xls":
            return True
        workbook = openpyxl.load_workbook(path, read_only=True)
        workbook.close()
        return True

    async def _extract(
        self,
        path: Path,
        options: ProcessingOptions,
        document: Document,
        cancel: CancellationToken,
    ) -> None:
        if path.suffix.lower() == ".xls":
            document.metadata.mime_type = XLS_MIME_TYPE
            document.metadata.custom_properties["document_format"] = "Legacy Binary"
            self._apply_legacy_placeholder(document, ".xls", LEGACY_PLACEHOLDER)
            return

        await anyio.to_thread.run_sync(
            self._extract_xlsx, path, options, document, cancel
        )

    def _extract_xlsx(
        self,
        path: Path,
        options: ProcessingOptions,
        document: Document,
        cancel: CancellationToken,
    ) -> None:
        """Read a .xlsx package. Runs in a worker thread."""
        try:
            workbook = openpyxl.load_workbook(path, read_only=True, data_only=True)
        except (InvalidFileException, zipfile.BadZipFile, KeyError) as e:
            raise FormatValidationError(
                f"File could not be opened as an Excel workbook: {e}",
                context=str(path),
            ) from e

        # Date serials are converted in format_cell so that out-of-range
        # values keep their number instead of becoming "#VALUE!".
        workbook._date_formats = set()
        workbook._timedelta_formats = set()

        try:
            document.page_count = len(workbook.worksheets)

            if options.extract_metadata:
                try:
                    self._apply_metadata(path, workbook, document)
                except Exception as e:
                    self._record_metadata_failure(document, e)

            if options.extract_text_content:
                accumulator = TextAccumulator(options.max_text_content_length)
                self._extract_text(workbook, options, accumulator, cancel)
                self._finish_text(document, accumulator)
        finally:
            workbook.close()

    def _apply_metadata(
        self, path: Path, workbook: Workbook, document: Document
    ) -> None:
        props = workbook.properties
        extended = read_extended_properties(path)

        metadata = document.metadata
        metadata.title = props.title or None
        metadata.author = props.creator or None
        metadata.subject = props.subject or None
        metadata.keywords = props.keywords or None
        metadata.creation_date = props.created
        metadata.modification_date = props.modified
        metadata.creator = props.creator or None
        metadata.producer = extended.get("Application")
        metadata.mime_type = XLSX_MIME_TYPE
        metadata.page_count = document.page_count

        custom = metadata.custom_properties
        custom["document_format"] = "Office Open XML"
        custom["sheet_names"] = list(workbook.sheetnames)
        if props.lastModifiedBy:
            custom["last_modified_by"] = props.lastModifiedBy
        if props.category:
            custom["category"] = props.category
        if props.description:
            custom["comments"] = props.description

    def _extract_text(
        self,
        workbook: Workbook,
        options: ProcessingOptions,
        accumulator: TextAccumulator,
        cancel: CancellationToken,
    ) -> None:
        for sheet in workbook.worksheets:
            cancel.raise_if_cancelled()
            if not accumulator.marker(f"Sheet: {sheet.title}"):
                return

            for index, row in enumerate(sheet.iter_rows()):
                if index % ROW_BATCH_SIZE == 0:
                    cancel.raise_if_cancelled()
                values = [
                    text
                    for text in (
                        format_cell(cell.value, cell.number_format, workbook.epoch)
                        for cell in row
                    )
                    if text
                ]
                if not values:
                    continue
                if not accumulator.append_line(
                    format_row(values, options.preserve_formatting)
                ):
                    logger.debug(f"Text limit reached in sheet {sheet.title}")
                    return
