"""Format processors for extracting text and metadata from office documents."""

from .base import (
    DocumentNotFoundError,
    DocumentProcessor,
    FormatValidationError,
    PasswordProtectedError,
    ProcessingCancelledError,
    ProcessorError,
    SizeExceededError,
    UnsupportedFormatError,
)
from .excel import ExcelProcessor
from .ocr import OcrEngine
from .pdf import PdfProcessor
from .registry import (
    StrategyRegistration,
    StrategyRegistry,
    create_default_registry,
    get_registry,
)
from .word import WordProcessor

__all__ = [
    "DocumentNotFoundError",
    "DocumentProcessor",
    "ExcelProcessor",
    "FormatValidationError",
    "OcrEngine",
    "PasswordProtectedError",
    "PdfProcessor",
    "ProcessingCancelledError",
    "ProcessorError",
    "SizeExceededError",
    "StrategyRegistration",
    "StrategyRegistry",
    "UnsupportedFormatError",
    "WordProcessor",
    "create_default_registry",
    "get_registry",
]
