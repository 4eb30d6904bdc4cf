"""Data model shared by the document processors, the registry and the plugin host."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    SecretStr,
    field_validator,
)


class DocumentStatus(str, Enum):
    """Lifecycle of a single processing attempt."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DocumentStatus.COMPLETED, DocumentStatus.FAILED)


class TlpDesignation(str, Enum):
    """Traffic Light Protocol sharing designation."""

    RED = "red"
    AMBER = "amber"
    GREEN = "green"
    CLEAR = "clear"


class ErrorKind(str, Enum):
    """Failure taxonomy for processing attempts."""

    NOT_FOUND = "not_found"
    SIZE_EXCEEDED = "size_exceeded"
    UNSUPPORTED_FORMAT = "unsupported_format"
    PASSWORD_PROTECTED = "password_protected"
    VALIDATION_FAILED = "validation_failed"
    CANCELLED = "cancelled"
    UNEXPECTED = "unexpected"


class DocumentFinalizedError(RuntimeError):
    """Raised when a document is modified after reaching a terminal status."""

    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _read_only(self, *args, **kwargs):
    raise DocumentFinalizedError("Finalized document state is read-only")


class FrozenDict(dict):
    """dict that rejects mutation. Copies are plain dicts."""

    __setitem__ = __delitem__ = __ior__ = _read_only
    clear = pop = popitem = setdefault = update = _read_only

    def __reduce__(self):
        return (dict, (dict(self),))


class FrozenList(list):
    """list that rejects mutation. Copies are plain lists."""

    __setitem__ = __delitem__ = __iadd__ = __imul__ = _read_only
    append = extend = insert = pop = remove = clear = sort = reverse = _read_only

    def __reduce__(self):
        return (list, (list(self),))


def freeze(value: Any) -> Any:
    """Recursively replace dicts and lists with their read-only variants."""
    if isinstance(value, dict):
        return FrozenDict((k, freeze(v)) for k, v in value.items())
    if isinstance(value, list):
        return FrozenList(freeze(v) for v in value)
    return value


class ProcessingWarning(BaseModel):
    """Advisory condition attached to a document; never changes its status."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    context: Optional[str] = None


class ProcessingError(BaseModel):
    """Fatal condition for the current processing attempt."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    kind: ErrorKind
    code: str
    message: str
    context: Optional[str] = None

    exception: Optional[BaseException] = Field(default=None, exclude=True, repr=False)
    """Originating exception, kept for callers that want the traceback"""


class DocumentMetadata(BaseModel):
    """Descriptive metadata read from the container format."""

    title: Optional[str] = None
    author: Optional[str] = None
    subject: Optional[str] = None
    keywords: Optional[str] = None
    creation_date: Optional[datetime] = None
    modification_date: Optional[datetime] = None
    producer: Optional[str] = None
    creator: Optional[str] = None
    mime_type: Optional[str] = None
    page_count: int = 0
    custom_properties: dict[str, Any] = Field(default_factory=dict)

    _sealed: bool = PrivateAttr(default=False)

    def __setattr__(self, name: str, value: Any) -> None:
        if getattr(self, "_sealed", False):
            raise DocumentFinalizedError(
                f"Metadata of a finalized document is read-only; '{name}' cannot change"
            )
        super().__setattr__(name, value)

    def seal(self) -> None:
        """Make the metadata read-only, including nested custom properties."""
        self.__dict__["custom_properties"] = freeze(self.custom_properties)
        self._sealed = True


class OcrResult(BaseModel):
    """Outcome of recognizing a single raster image."""

    success: bool
    text: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    language: str = "eng"
    error_message: Optional[str] = None
    below_threshold: bool = False
    processing_time: float = 0.0
    """Seconds spent in recognition"""


class ProcessingOptions(BaseModel):
    """Per-call processing configuration. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    extract_metadata: bool = True
    extract_text_content: bool = True
    enable_ocr: bool = True
    ocr_language: str = "eng"
    ocr_min_confidence: float = Field(default=60.0, ge=0.0, le=100.0)
    auto_detect_tlp: bool = True
    default_tlp_designation: TlpDesignation = TlpDesignation.AMBER
    preserve_formatting: bool = False
    max_text_content_length: int = Field(default=1_000_000, gt=0)
    max_file_size_mb: int = Field(default=100, gt=0)
    skip_password_protected: bool = False
    default_password: SecretStr = SecretStr("")
    extract_indicators: bool = False
    max_concurrent_files: int = Field(default=4, ge=1, le=32)

    @field_validator("ocr_language")
    @classmethod
    def _language_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("ocr_language must not be blank")
        return value

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024

    @property
    def password(self) -> Optional[str]:
        """The configured default password, or None when unset."""
        value = self.default_password.get_secret_value()
        return value or None

    @classmethod
    def from_env(cls) -> "ProcessingOptions":
        from threatdoc.config import get_processing_options

        return get_processing_options()


class Document(BaseModel):
    """Normalized record produced by one processing attempt.

    Only the processor that owns the attempt mutates the record. Once the
    status is terminal (completed or failed) the record is read-only: every
    assignment, including those to metadata, custom properties and the
    warning list, raises DocumentFinalizedError.
    """

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    file_name: str
    file_path: str
    file_type: str = ""
    processor: Optional[str] = None

    processing_start_time: Optional[datetime] = None
    processing_end_time: Optional[datetime] = None
    status: DocumentStatus = DocumentStatus.PENDING

    extracted_text: str = ""
    extracted_text_length: int = 0
    page_count: int = 0
    file_size_bytes: int = 0

    is_scanned: bool = False
    is_password_protected: bool = False
    is_degraded: bool = False
    """Legacy formats that only yield a placeholder instead of real text"""

    tlp_designation: Optional[TlpDesignation] = None
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)

    error_message: Optional[str] = None
    error: Optional[ProcessingError] = None
    warnings: list[ProcessingWarning] = Field(default_factory=list)

    def __setattr__(self, name: str, value: Any) -> None:
        status = self.__dict__.get("status")
        if status is not None and status.is_terminal:
            raise DocumentFinalizedError(
                f"Document {self.file_name} is {status.value}; '{name}' cannot change"
            )
        super().__setattr__(name, value)

    @property
    def succeeded(self) -> bool:
        return self.status == DocumentStatus.COMPLETED

    @property
    def processing_time(self) -> Optional[float]:
        if self.processing_start_time and self.processing_end_time:
            return (
                self.processing_end_time - self.processing_start_time
            ).total_seconds()
        return None

    def start(self) -> None:
        self.processing_start_time = _utcnow()
        self.status = DocumentStatus.PROCESSING

    def set_text(self, text: str) -> None:
        self.extracted_text = text
        self.extracted_text_length = len(text)

    def add_warning(
        self, code: str, message: str, context: Optional[str] = None
    ) -> None:
        if self.status.is_terminal:
            raise DocumentFinalizedError(
                f"Document {self.file_name} is {self.status.value}; warnings are closed"
            )
        self.warnings.append(
            ProcessingWarning(code=code, message=message, context=context)
        )

    def complete(self) -> None:
        self.processing_end_time = _utcnow()
        self.status = DocumentStatus.COMPLETED
        self._seal()

    def fail(self, error: ProcessingError) -> None:
        self.error = error
        self.error_message = error.message
        self.processing_end_time = _utcnow()
        self.status = DocumentStatus.FAILED
        self._seal()

    def _seal(self) -> None:
        self.metadata.seal()
        self.__dict__["warnings"] = FrozenList(self.warnings)
