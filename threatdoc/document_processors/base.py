"""Abstract base class for format processors and the processing error taxonomy."""

import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import anyio

from threatdoc.cancellation import NEVER_CANCELLED, CancellationToken
from threatdoc.indicators import extract_indicators
from threatdoc.models import (
    Document,
    ErrorKind,
    ProcessingError,
    ProcessingOptions,
)
from threatdoc.tlp import classify

logger = logging.getLogger(__name__)


class ProcessorError(Exception):
    """Base class for processing failures. Carries the failure kind and code."""

    kind: ErrorKind = ErrorKind.UNEXPECTED
    code: str = "UNEXPECTED"

    def __init__(self, message: str, context: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_error(self) -> ProcessingError:
        return ProcessingError(
            kind=self.kind,
            code=self.code,
            message=self.message,
            context=self.context,
            exception=self,
        )


class DocumentNotFoundError(ProcessorError):
    kind = ErrorKind.NOT_FOUND
    code = "NOT_FOUND"


class SizeExceededError(ProcessorError):
    kind = ErrorKind.SIZE_EXCEEDED
    code = "SIZE_EXCEEDED"


class UnsupportedFormatError(ProcessorError):
    kind = ErrorKind.UNSUPPORTED_FORMAT
    code = "UNSUPPORTED_FORMAT"


class PasswordProtectedError(ProcessorError):
    kind = ErrorKind.PASSWORD_PROTECTED
    code = "PASSWORD_PROTECTED"


class FormatValidationError(ProcessorError):
    kind = ErrorKind.VALIDATION_FAILED
    code = "VALIDATION_FAILED"


class ProcessingCancelledError(ProcessorError):
    kind = ErrorKind.CANCELLED
    code = "CANCELLED"


MARKER_LINE = re.compile(r"^--- .+ ---$")

# Extra characters collected past the limit so a marker line that straddles
# the limit can be replaced by the content that follows it.
_OVERFLOW_MARGIN = 256


class TextAccumulator:
    """Collects extracted text and enforces the maximum content length.

    The final text is exactly ``max_length`` characters when the collected
    text is longer. A marker line (``--- Page 3 ---``) is never cut in half
    when enough content follows it: the marker is dropped and the budget is
    filled from the content after it instead.
    """

    def __init__(self, max_length: int):
        self.max_length = max_length
        self._parts: list[str] = []
        self._length = 0
        self._tail = ""
        self.truncated = False

    def __len__(self) -> int:
        return self._length

    @property
    def is_full(self) -> bool:
        return self._length >= self.max_length + _OVERFLOW_MARGIN

    def append(self, text: str) -> bool:
        """Append raw text. Returns False once no more text is accepted."""
        if self.is_full:
            return False
        if text:
            self._parts.append(text)
            self._length += len(text)
            self._tail = (self._tail + text)[-2:]
        return not self.is_full

    def append_line(self, line: str = "") -> bool:
        return self.append(line + "\n")

    def blank_line(self) -> bool:
        """Separate blocks with one empty line, never at the very start."""
        if self._length == 0 or self._tail == "\n\n":
            return not self.is_full
        if not self._tail.endswith("\n"):
            self.append("\n")
        return self.append("\n")

    def marker(self, label: str) -> bool:
        """Start a new block with a ``--- label ---`` marker line."""
        self.blank_line()
        return self.append_line(f"--- {label} ---")

    def getvalue(self) -> str:
        """Return the collected text without trailing line breaks.

        Sets ``truncated`` when the text had to be cut to ``max_length``.
        """
        text = "".join(self._parts).rstrip("\n")
        self.truncated = len(text) > self.max_length
        if not self.truncated:
            return text
        return self._truncate(text)

    def _truncate(self, text: str) -> str:
        cut = self.max_length
        line_start = text.rfind("\n", 0, cut) + 1
        line_end = text.find("\n", line_start)
        if line_end == -1:
            line_end = len(text)
        if line_end > cut and MARKER_LINE.match(text[line_start:line_end]):
            tail = text[line_end + 1 :]
            needed = cut - line_start
            if len(tail) >= needed:
                return text[:line_start] + tail[:needed]
        return text[:cut]


class DocumentProcessor(ABC):
    """Abstract base class for format processors (strategies).

    A processor extracts text, metadata and a page count from one container
    format. Subclasses declare the formats they handle and implement
    ``_extract``; the shared ``process`` method applies the preconditions,
    the error capture and the TLP classification.

    Example:
        class CsvProcessor(DocumentProcessor):
            name = "csv"
            supported_extensions = frozenset({".csv"})
            file_type = "CSV"

            async def _extract(self, path, options, document, cancel):
                text = await anyio.Path(path).read_text()
                document.set_text(text[: options.max_text_content_length])
    """

    name: str
    """Stable identifier used as the registry key"""

    supported_extensions: frozenset[str]
    """Lower-case extensions including the dot, e.g. {".pdf"}"""

    priority: int = 0
    """Higher priority processors win when several claim an extension"""

    file_type: str = ""
    """Human-readable format label stored on the Document"""

    def can_process(self, path: str | Path) -> bool:
        """Check whether the path's extension is handled by this processor."""
        if not path:
            return False
        suffix = Path(path).suffix.lower()
        return any(suffix == ext.lower() for ext in self.supported_extensions)

    async def validate(self, path: str | Path) -> bool:
        """Check a file without fully processing it.

        Returns:
            True if the extension is supported, the file exists and is not
            empty, and its format signature matches. Never raises.
        """
        try:
            if not self.can_process(path):
                return False
            path = Path(path)
            if not path.is_file() or path.stat().st_size == 0:
                return False
            if not await anyio.to_thread.run_sync(self._signature_ok, path):
                return False
            return bool(await anyio.to_thread.run_sync(self._check_structure, path))
        except Exception as e:
            logger.error(f"Error validating {self.file_type} file {path}: {e}")
            return False

    async def process(
        self,
        path: str | Path,
        options: Optional[ProcessingOptions] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> Document:
        """Process a document and return the normalized record.

        Args:
            path: File to process
            options: Processing options (defaults when omitted)
            cancel: Cooperative cancellation token

        Returns:
            Document in completed or failed state

        Raises:
            UnsupportedFormatError: Extension not handled by this processor
            DocumentNotFoundError: File does not exist
            SizeExceededError: File larger than options.max_file_size_mb
        """
        options = options or ProcessingOptions()
        cancel = cancel or NEVER_CANCELLED
        path = Path(path)

        if not self.can_process(path):
            raise UnsupportedFormatError(
                f"File '{path}' is not a supported {self.file_type} file.",
                context=path.suffix,
            )
        if not path.is_file():
            raise DocumentNotFoundError(f"File not found: {path}", context=str(path))

        size = path.stat().st_size
        if size > options.max_file_size_bytes:
            raise SizeExceededError(
                f"File size ({size // (1024 * 1024)} MB) exceeds maximum allowed "
                f"size ({options.max_file_size_mb} MB).",
                context=str(size),
            )

        document = Document(
            file_name=path.name,
            file_path=str(path),
            file_type=self.file_type,
            processor=self.name,
            file_size_bytes=size,
        )
        document.start()
        logger.info(f"Starting {self.file_type} processing for file: {path}")

        try:
            cancel.raise_if_cancelled()
            if not await anyio.to_thread.run_sync(self._signature_ok, path):
                raise FormatValidationError(
                    f"File does not appear to be a valid {self.file_type} "
                    f"({path.suffix.lower()}) file.",
                    context=str(path),
                )

            await self._extract(path, options, document, cancel)
            cancel.raise_if_cancelled()

            if options.extract_indicators and document.extracted_text:
                indicators = extract_indicators(document.extracted_text)
                if indicators:
                    document.metadata.custom_properties["indicators"] = indicators

            document.tlp_designation = classify(document.extracted_text, options)
            document.complete()
        except ProcessingCancelledError as e:
            logger.warning(f"{self.file_type} processing cancelled for file: {path}")
            document.fail(e.to_error())
        except ProcessorError as e:
            logger.warning(
                f"{self.file_type} processing failed for file {path}: "
                f"[{e.code}] {e.message}"
            )
            document.fail(e.to_error())
        except Exception as e:
            logger.error(
                f"Error processing {self.file_type} file: {path}", exc_info=True
            )
            document.fail(
                ProcessingError(
                    kind=ErrorKind.UNEXPECTED,
                    code="UNEXPECTED",
                    message=(
                        f"Unexpected error during {self.file_type} processing: {e}"
                    ),
                    context=type(e).__name__,
                    exception=e,
                )
            )
        else:
            logger.info(
                f"{self.file_type} processing completed for file: {path}. "
                f"Pages: {document.page_count}, "
                f"Text length: {document.extracted_text_length}, "
                f"Scanned: {document.is_scanned}"
            )
        return document

    @abstractmethod
    async def _extract(
        self,
        path: Path,
        options: ProcessingOptions,
        document: Document,
        cancel: CancellationToken,
    ) -> None:
        """Fill text, metadata and page count of ``document``.

        Metadata problems should be recorded with ``_record_metadata_failure``.
        Fatal conditions are raised as ProcessorError subclasses.
        """
        pass

    def _signature_ok(self, path: Path) -> bool:
        """Check the leading bytes of the file against the expected signature."""
        return True

    def _check_structure(self, path: Path) -> bool:
        """Deeper structural validation used by ``validate``."""
        return True

    def close(self) -> None:
        """Release held resources. Called when the processor is unregistered."""
        pass

    def _record_metadata_failure(self, document: Document, error: Exception) -> None:
        logger.warning(f"Error extracting {self.file_type} metadata: {error}")
        document.add_warning(
            "METADATA_EXTRACTION_FAILED",
            f"Metadata could not be extracted: {error}",
            context=type(error).__name__,
        )

    def _finish_text(self, document: Document, accumulator: TextAccumulator) -> None:
        text = accumulator.getvalue()
        if accumulator.truncated:
            logger.warning(
                f"Text extraction truncated at {accumulator.max_length} characters"
            )
            document.add_warning(
                "TEXT_TRUNCATED",
                f"Extracted text truncated at {accumulator.max_length} characters",
            )
        document.set_text(text)

    def _apply_legacy_placeholder(
        self, document: Document, extension: str, placeholder: str
    ) -> None:
        """Mark a legacy binary document as degraded with an explanatory text."""
        logger.warning(
            f"Legacy {extension} format detected. Limited processing available."
        )
        document.is_degraded = True
        document.page_count = 0
        document.set_text(placeholder)
        document.add_warning(
            "LEGACY_FORMAT",
            f"Legacy {extension} format detected",
            context="Convert to the Open XML format for full extraction",
        )

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(name={self.name!r}, "
            f"extensions={sorted(self.supported_extensions)}, priority={self.priority})"
        )


def read_signature(path: Path, length: int) -> bytes:
    with open(path, "rb") as f:
        return f.read(length)
