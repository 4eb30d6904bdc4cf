"""Cooperative cancellation signal shared between the caller and worker threads."""

import threading
from typing import Optional


class CancellationToken:
    """Thread-safe cancellation flag.

    Processors check the token between extraction units (pages, paragraph
    blocks, row batches). Extraction runs in worker threads, so the flag is a
    threading.Event rather than an anyio primitive.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: Optional[str] = None) -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            from threatdoc.document_processors.base import ProcessingCancelledError

            raise ProcessingCancelledError(self._reason or "Processing was cancelled.")


class _NeverCancelled(CancellationToken):
    def cancel(self, reason: Optional[str] = None) -> None:
        raise RuntimeError("The shared no-op token cannot be cancelled")


NEVER_CANCELLED = _NeverCancelled()
"""Default token for callers that do not supply one"""
