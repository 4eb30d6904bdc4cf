"""Batch processing of documents through a strategy registry."""

import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import anyio

from threatdoc.cancellation import CancellationToken
from threatdoc.document_processors.base import ProcessorError
from threatdoc.document_processors.registry import StrategyRegistry
from threatdoc.models import Document, ErrorKind, ProcessingError, ProcessingOptions

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], Awaitable[None]]


@dataclass
class BatchResult:
    """Outcome of a batch run.

    ``documents`` holds every attempt that got past the preconditions, in
    input order; ``errors`` holds the precondition failures by path.
    """

    documents: list[Document] = field(default_factory=list)
    errors: dict[str, ProcessingError] = field(default_factory=dict)
    total: int = 0
    duration: float = 0.0
    """Seconds"""

    @property
    def succeeded(self) -> int:
        return sum(1 for document in self.documents if document.succeeded)

    @property
    def failed(self) -> int:
        return self.total - self.succeeded

    @property
    def success_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return self.succeeded / self.total


class DocumentPipeline:
    """Processes documents with bounded concurrency.

    Each file is routed through the registry. Failures of one file never
    abort the batch: precondition errors are recorded per path and every
    other failure is reported on the returned Document.

    Example:
        pipeline = DocumentPipeline(get_registry(), ProcessingOptions.from_env())
        result = await pipeline.process_batch(["a.pdf", "b.docx"])
        print(f"{result.succeeded}/{result.total} processed")
    """

    def __init__(
        self,
        registry: StrategyRegistry,
        options: Optional[ProcessingOptions] = None,
    ):
        self.registry = registry
        self.options = options or ProcessingOptions()

    async def process(
        self, path: str | Path, cancel: Optional[CancellationToken] = None
    ) -> Document:
        """Process a single document.

        Raises:
            UnsupportedFormatError, DocumentNotFoundError, SizeExceededError:
                Precondition failures
        """
        return await self.registry.process(path, self.options, cancel)

    async def process_batch(
        self,
        paths: Sequence[str | Path],
        cancel: Optional[CancellationToken] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> BatchResult:
        """Process several documents concurrently.

        At most ``options.max_concurrent_files`` documents are processed at
        the same time.

        Args:
            paths: Files to process
            cancel: Cancellation token shared by all files
            progress_callback: Awaited after each file with
                (completed, total, path)

        Returns:
            BatchResult with documents in input order
        """
        started = time.perf_counter()
        total = len(paths)
        documents: list[Optional[Document]] = [None] * total
        errors: dict[str, ProcessingError] = {}
        limiter = anyio.CapacityLimiter(self.options.max_concurrent_files)
        completed = 0

        logger.info(
            f"Starting batch of {total} document(s) "
            f"(max_concurrent={self.options.max_concurrent_files})"
        )

        async def process_one(index: int, path: str | Path) -> None:
            nonlocal completed
            async with limiter:
                try:
                    documents[index] = await self.process(path, cancel)
                except ProcessorError as e:
                    logger.warning(f"Skipping {path}: [{e.code}] {e.message}")
                    errors[str(path)] = e.to_error()
                except Exception as e:
                    logger.error(f"Error processing {path}", exc_info=True)
                    errors[str(path)] = ProcessingError(
                        kind=ErrorKind.UNEXPECTED,
                        code="UNEXPECTED",
                        message=f"Unexpected error: {e}",
                        context=type(e).__name__,
                        exception=e,
                    )

            completed += 1
            if progress_callback:
                await progress_callback(completed, total, str(path))

        async with anyio.create_task_group() as tg:
            for idx, path in enumerate(paths):
                tg.start_soon(process_one, idx, path)

        result = BatchResult(
            documents=[document for document in documents if document is not None],
            errors=errors,
            total=total,
            duration=time.perf_counter() - started,
        )
        logger.info(
            f"Batch complete: {result.succeeded} succeeded, {result.failed} failed "
            f"in {result.duration:.2f}s"
        )
        return result
