"""Central registry for document processors."""

import itertools
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from threatdoc.cancellation import CancellationToken
from threatdoc.config import Settings, get_settings
from threatdoc.models import Document, ProcessingOptions

from .base import DocumentProcessor, UnsupportedFormatError
from .excel import ExcelProcessor
from .ocr import OcrEngine
from .pdf import PdfProcessor
from .word import WordProcessor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StrategyRegistration:
    processor: DocumentProcessor
    extensions: frozenset[str]
    priority: int
    sequence: int
    """Registration order, used to break priority ties"""

    @property
    def name(self) -> str:
        return self.processor.name


class StrategyRegistry:
    """Central registry for document processors.

    Routes files to processors by extension. Candidates are ordered by
    descending priority; processors with equal priority are ordered by
    registration, so the one registered first wins.

    Mutations are serialized by a lock and publish a new immutable snapshot.
    Lookups read the current snapshot without locking and therefore observe
    the registry either before or after a concurrent mutation, never in
    between.

    Example:
        registry = StrategyRegistry()
        registry.register(PdfProcessor())
        registry.register(WordProcessor(), priority=50)

        # Auto-select processor based on the file extension
        document = await registry.process("report.pdf")
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._sequence = itertools.count()
        self._by_name: dict[str, StrategyRegistration] = {}
        self._snapshot: tuple[StrategyRegistration, ...] = ()

    def register(
        self, processor: DocumentProcessor, priority: Optional[int] = None
    ) -> bool:
        """Register a document processor.

        Args:
            processor: Processor instance to register
            priority: Overrides ``processor.priority`` when given

        Returns:
            True if registered, False if a processor with the same name was
            already registered (the existing registration is kept)

        Raises:
            ValueError: If the processor declares no supported extensions
        """
        extensions = frozenset(ext.lower() for ext in processor.supported_extensions)
        if not extensions:
            raise ValueError(
                f"Processor '{processor.name}' declares no supported extensions"
            )
        if priority is None:
            priority = processor.priority

        with self._lock:
            if processor.name in self._by_name:
                logger.warning(
                    f"Processor '{processor.name}' already registered, ignoring"
                )
                return False

            registration = StrategyRegistration(
                processor=processor,
                extensions=extensions,
                priority=priority,
                sequence=next(self._sequence),
            )
            by_name = dict(self._by_name)
            by_name[processor.name] = registration
            self._publish(by_name)

        logger.info(
            f"Registered processor: {processor.name} "
            f"(priority={priority}, supports={sorted(extensions)})"
        )
        return True

    def unregister(self, name: str) -> bool:
        """Remove a processor and release its resources.

        Returns:
            True if a processor with that name was registered
        """
        with self._lock:
            if name not in self._by_name:
                return False
            by_name = dict(self._by_name)
            registration = by_name.pop(name)
            self._publish(by_name)

        logger.info(f"Unregistered processor: {name}")
        try:
            registration.processor.close()
        except Exception as e:
            logger.error(f"Error closing processor '{name}': {e}", exc_info=True)
        return True

    def _publish(self, by_name: dict[str, StrategyRegistration]) -> None:
        self._by_name = by_name
        self._snapshot = tuple(
            sorted(by_name.values(), key=lambda r: (-r.priority, r.sequence))
        )

    def get_processor(self, name: str) -> Optional[DocumentProcessor]:
        registration = self._by_name.get(name)
        return registration.processor if registration else None

    def get_strategy(self, path: str | Path) -> Optional[DocumentProcessor]:
        """Find the best processor for a file.

        Args:
            path: File path; only the extension is considered

        Returns:
            Highest priority processor that can process the path, or None
        """
        for registration in self._snapshot:
            if registration.processor.can_process(path):
                logger.debug(f"Found processor '{registration.name}' for '{path}'")
                return registration.processor

        logger.debug(f"No processor found for '{path}'")
        return None

    def get_all_strategies(self) -> list[DocumentProcessor]:
        """All processors, highest priority first."""
        return [registration.processor for registration in self._snapshot]

    def registrations(self) -> tuple[StrategyRegistration, ...]:
        return self._snapshot

    def list_processors(self) -> list[str]:
        """List all registered processor names in priority order."""
        return [registration.name for registration in self._snapshot]

    def get_supported_extensions(self) -> list[str]:
        """Sorted, deduplicated union of all registered extensions."""
        extensions: set[str] = set()
        for registration in self._snapshot:
            extensions.update(registration.extensions)
        return sorted(extensions)

    async def process(
        self,
        path: str | Path,
        options: Optional[ProcessingOptions] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> Document:
        """Process a document with the best matching processor.

        Args:
            path: File to process
            options: Processing options passed to the processor
            cancel: Cooperative cancellation token

        Returns:
            Document in completed or failed state

        Raises:
            UnsupportedFormatError: If no processor handles the extension
            DocumentNotFoundError: File does not exist
            SizeExceededError: File exceeds the configured maximum size
        """
        processor = self.get_strategy(path)
        if processor is None:
            raise UnsupportedFormatError(
                f"No processor found for file: {path}. "
                f"Supported extensions: {', '.join(self.get_supported_extensions())}",
                context=Path(path).suffix.lower(),
            )

        logger.info(f"Processing with '{processor.name}' processor")
        return await processor.process(path, options, cancel)

    def close(self) -> None:
        """Unregister and close every processor."""
        for name in self.list_processors():
            self.unregister(name)

    def __len__(self) -> int:
        return len(self._snapshot)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name


def create_default_registry(settings: Optional[Settings] = None) -> StrategyRegistry:
    """Build a registry holding the built-in PDF, Word and Excel processors.

    Args:
        settings: Source of the OCR configuration (default: environment)
    """
    settings = settings or get_settings()
    ocr_engine = None
    if settings.enable_ocr:
        ocr_engine = OcrEngine(
            tessdata_dir=settings.tessdata_dir,
            default_language=settings.ocr_language,
            tesseract_cmd=settings.tesseract_cmd,
        )

    registry = StrategyRegistry()
    registry.register(PdfProcessor(ocr_engine=ocr_engine))
    registry.register(WordProcessor())
    registry.register(ExcelProcessor())
    return registry


# Global registry instance, built on first use
_registry: Optional[StrategyRegistry] = None
_registry_lock = threading.Lock()


def get_registry() -> StrategyRegistry:
    """Get the global processor registry.

    Returns:
        Singleton StrategyRegistry populated with the built-in processors
    """
    global _registry
    with _registry_lock:
        if _registry is None:
            _registry = create_default_registry()
        return _registry
