"""Local OCR engine backed by Tesseract."""

import io
import logging
import shutil
import time
from pathlib import Path
from typing import Optional

import anyio
import pytesseract
from PIL import Image

from threatdoc.config import default_tessdata_dir
from threatdoc.models import OcrResult

from .base import ProcessorError

logger = logging.getLogger(__name__)


class OcrEngine:
    """Owns one Tesseract recognition context.

    The context is bound to a trained-data directory and a default language.
    Recognition calls are serialized with a lock: at most one image is being
    recognized by an engine at any time, regardless of how many documents are
    processed concurrently.

    Requirements:
        - tesseract binary installed (e.g., apt install tesseract-ocr)
        - trained data for the configured languages in ``tessdata_dir``

    Example:
        engine = OcrEngine(default_language="eng+deu")
        if engine.is_available():
            result = await engine.process_image(png_bytes)
    """

    def __init__(
        self,
        tessdata_dir: Optional[str | Path] = None,
        default_language: str = "eng",
        tesseract_cmd: Optional[str] = None,
    ):
        """Initialize the engine.

        Args:
            tessdata_dir: Directory holding ``*.traineddata`` files
                (None = THREATDOC_TESSDATA_DIR / TESSDATA_PREFIX / system default)
            default_language: Default OCR language (e.g., "eng", "eng+deu")
            tesseract_cmd: Path to tesseract executable (None = auto-detect)
        """
        self.tessdata_dir = Path(tessdata_dir) if tessdata_dir else default_tessdata_dir()
        self.default_language = default_language
        self.tesseract_cmd = tesseract_cmd or "tesseract"
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

        self._lock = anyio.Lock()
        self._closed = False
        logger.info(
            f"Initialized OcrEngine: lang={default_language}, "
            f"tessdata={self.tessdata_dir}"
        )

    @property
    def closed(self) -> bool:
        return self._closed

    def is_available(self) -> bool:
        """Check whether recognition can run.

        Returns:
            False when the engine is closed, the trained-data directory is
            missing or the tesseract binary cannot be found
        """
        if self._closed:
            return False
        if not self.tessdata_dir.is_dir():
            logger.debug(f"Tessdata directory not found: {self.tessdata_dir}")
            return False
        if shutil.which(self.tesseract_cmd) is None:
            logger.debug(f"Tesseract binary not found: {self.tesseract_cmd}")
            return False
        return True

    def available_languages(self) -> list[str]:
        if not self.tessdata_dir.is_dir():
            return []
        return sorted(p.stem for p in self.tessdata_dir.glob("*.traineddata"))

    async def process_image(
        self,
        image: bytes,
        language: Optional[str] = None,
        min_confidence: float = 60.0,
    ) -> OcrResult:
        """Recognize text in a raster image.

        A result below ``min_confidence`` is still successful; it is flagged
        with ``below_threshold`` and logged.

        Args:
            image: Encoded image bytes (PNG, JPEG, TIFF, ...)
            language: OCR language(s) (default: engine default)
            min_confidence: Advisory threshold on the 0-100 scale

        Returns:
            OcrResult; recognition failures yield ``success=False``

        Raises:
            ProcessorError: If the engine has been closed
        """
        if self._closed:
            raise ProcessorError("OCR engine is closed")

        language = language or self.default_language
        async with self._lock:
            result = await anyio.to_thread.run_sync(
                self._recognize, image, language, min_confidence
            )

        if result.below_threshold:
            logger.warning(
                f"OCR confidence {result.confidence * 100:.1f}% is below "
                f"threshold {min_confidence:.1f}%"
            )
        return result

    def _recognize(
        self, image: bytes, language: str, min_confidence: float
    ) -> OcrResult:
        started = time.perf_counter()
        try:
            with Image.open(io.BytesIO(image)) as img:
                data = pytesseract.image_to_data(
                    img,
                    lang=language,
                    config=f'--tessdata-dir "{self.tessdata_dir}"',
                    output_type=pytesseract.Output.DICT,
                )
        except Exception as e:
            logger.error(f"Tesseract OCR failed: {e}")
            return OcrResult(
                success=False,
                language=language,
                error_message=f"OCR failed: {e}",
                processing_time=time.perf_counter() - started,
            )

        text = _assemble_text(data)
        confidences = [float(c) for c in data["conf"] if float(c) >= 0]
        confidence = sum(confidences) / len(confidences) / 100 if confidences else 0.0
        confidence = min(max(confidence, 0.0), 1.0)

        logger.debug(
            f"Tesseract OCR completed: {len(text)} chars, "
            f"confidence={confidence * 100:.1f}%"
        )
        return OcrResult(
            success=True,
            text=text,
            confidence=confidence,
            language=language,
            below_threshold=confidence * 100 < min_confidence,
            processing_time=time.perf_counter() - started,
        )

    def close(self) -> None:
        """Release the context. Later recognition calls raise ProcessorError."""
        if not self._closed:
            self._closed = True
            logger.info("OcrEngine closed")


def _assemble_text(data: dict[str, list]) -> str:
    """Rebuild line-structured text from ``image_to_data`` word boxes."""
    lines: dict[tuple[int, int, int], list[str]] = {}
    for i, word in enumerate(data["text"]):
        if not word or not word.strip():
            continue
        key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
        lines.setdefault(key, []).append(word.strip())
    return "\n".join(" ".join(words) for words in lines.values())
