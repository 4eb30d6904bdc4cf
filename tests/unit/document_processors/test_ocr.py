"""Unit tests for the Tesseract OCR engine."""

import io
import threading
import time
from unittest.mock import patch

import anyio
import pytest
from PIL import Image

from threatdoc.document_processors.base import ProcessorError
from threatdoc.document_processors.ocr import OcrEngine, _assemble_text
from threatdoc.document_processors.pdf import PdfProcessor
from threatdoc.models import DocumentStatus

pytestmark = pytest.mark.unit

IMAGE_TO_DATA = "threatdoc.document_processors.ocr.pytesseract.image_to_data"


def _png() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (32, 16), "white").save(buffer, format="PNG")
    return buffer.getvalue()


def _data(words, confs, lines=None):
    count = len(words)
    return {
        "text": words,
        "conf": confs,
        "block_num": [1] * count,
        "par_num": [1] * count,
        "line_num": lines or [1] * count,
    }


class TestAvailability:
    """Test OCR engine availability checks."""

    def test_missing_tessdata_dir(self, tmp_path):
        """Test that a missing tessdata directory makes OCR unavailable."""
        engine = OcrEngine(tessdata_dir=tmp_path / "missing")
        assert engine.is_available() is False

    def test_missing_binary(self, tmp_path):
        """Test that a missing tesseract binary makes OCR unavailable."""
        engine = OcrEngine(tessdata_dir=tmp_path)
        with patch("threatdoc.document_processors.ocr.shutil.which", return_value=None):
            assert engine.is_available() is False

    def test_available(self, tmp_path):
        """Test that OCR is available with tessdata and a binary."""
        engine = OcrEngine(tessdata_dir=tmp_path)
        with patch(
            "threatdoc.document_processors.ocr.shutil.which",
            return_value="/usr/bin/tesseract",
        ):
            assert engine.is_available() is True

    def test_closed_engine_is_unavailable(self, tmp_path):
        """Test that a closed engine reports itself unavailable."""
        engine = OcrEngine(tessdata_dir=tmp_path)
        engine.close()
        assert engine.closed
        assert engine.is_available() is False

    def test_available_languages(self, tmp_path):
        """Test listing the installed traineddata languages."""
        (tmp_path / "eng.traineddata").write_bytes(b"")
        (tmp_path / "deu.traineddata").write_bytes(b"")
        (tmp_path / "readme.txt").write_text("")

        engine = OcrEngine(tessdata_dir=tmp_path)

        assert engine.available_languages() == ["deu", "eng"]

    def test_tessdata_dir_from_environment(self, tmp_path, monkeypatch):
        """Test that the tessdata directory is read from the environment."""
        monkeypatch.setenv("THREATDOC_TESSDATA_DIR", str(tmp_path))
        assert OcrEngine().tessdata_dir == tmp_path


class TestProcessImage:
    """Test recognizing text in images."""

    async def test_recognizes_text(self, tmp_path):
        """Test that words, confidence and language are returned."""
        engine = OcrEngine(tessdata_dir=tmp_path, default_language="eng+deu")
        data = _data(
            ["", "Hello", "world", "Next"], ["-1", "90", "80", "70"], [0, 1, 1, 2]
        )

        with patch(IMAGE_TO_DATA, return_value=data) as image_to_data:
            result = await engine.process_image(_png())

        assert result.success is True
        assert result.text == "Hello world\nNext"
        assert result.confidence == pytest.approx(0.8)
        assert result.language == "eng+deu"
        assert result.below_threshold is False

        kwargs = image_to_data.call_args.kwargs
        assert kwargs["lang"] == "eng+deu"
        assert str(tmp_path) in kwargs["config"]

    async def test_language_override(self, tmp_path):
        """Test that a per-call language overrides the default."""
        engine = OcrEngine(tessdata_dir=tmp_path)

        with patch(IMAGE_TO_DATA, return_value=_data(["x"], [95])) as image_to_data:
            result = await engine.process_image(_png(), language="fra")

        assert result.language == "fra"
        assert image_to_data.call_args.kwargs["lang"] == "fra"

    async def test_low_confidence_is_flagged(self, tmp_path):
        """Test that results under the confidence threshold are flagged."""
        engine = OcrEngine(tessdata_dir=tmp_path)

        with patch(IMAGE_TO_DATA, return_value=_data(["faint"], [40])):
            result = await engine.process_image(_png(), min_confidence=60)

        assert result.success is True
        assert result.below_threshold is True
        assert result.text == "faint"

    async def test_no_words(self, tmp_path):
        """Test that an image without words yields empty text."""
        engine = OcrEngine(tessdata_dir=tmp_path)

        with patch(IMAGE_TO_DATA, return_value=_data([""], [-1])):
            result = await engine.process_image(_png())

        assert result.success is True
        assert result.text == ""
        assert result.confidence == 0.0

    async def test_tesseract_failure(self, tmp_path):
        """Test that a tesseract error becomes a failed result."""
        engine = OcrEngine(tessdata_dir=tmp_path)

        with patch(IMAGE_TO_DATA, side_effect=RuntimeError("tesseract exited")):
            result = await engine.process_image(_png())

        assert result.success is False
        assert "tesseract exited" in result.error_message

    async def test_invalid_image(self, tmp_path):
        """Test that unreadable image data becomes a failed result."""
        engine = OcrEngine(tessdata_dir=tmp_path)

        result = await engine.process_image(b"not an image")

        assert result.success is False

    async def test_closed_engine_raises(self, tmp_path):
        """Test that recognizing with a closed engine raises."""
        engine = OcrEngine(tessdata_dir=tmp_path)
        engine.close()

        with pytest.raises(ProcessorError):
            await engine.process_image(_png())

    async def test_recognition_is_serialized(self, tmp_path):
        """Concurrent calls never run recognition at the same time."""
        engine = OcrEngine(tessdata_dir=tmp_path)
        active = 0
        peak = 0
        lock = threading.Lock()

        def slow_image_to_data(*args, **kwargs):
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.05)
            with lock:
                active -= 1
            return _data(["ok"], [90])

        with patch(IMAGE_TO_DATA, side_effect=slow_image_to_data):
            async with anyio.create_task_group() as tg:
                for _ in range(4):
                    tg.start_soon(engine.process_image, _png())

        assert peak == 1


class TestAssembleText:
    """Test assembling recognized words into lines."""

    def test_groups_words_by_line(self):
        """Test that words are grouped by block, paragraph and line."""
        data = {
            "text": ["Title", "", "first", "line", "second"],
            "block_num": [1, 1, 2, 2, 2],
            "par_num": [1, 1, 1, 1, 1],
            "line_num": [1, 1, 1, 1, 2],
        }
        assert _assemble_text(data) == "Title\nfirst line\nsecond"


@pytest.mark.ocr
class TestTesseractIntegration:
    """Test OCR against a locally installed tesseract."""

    async def test_scanned_pdf_with_local_tesseract(self, scanned_pdf):
        """Test OCR of a scanned PDF end to end."""
        engine = OcrEngine()
        if not engine.is_available():
            pytest.skip("tesseract or trained data not installed")

        document = await PdfProcessor(ocr_engine=engine).process(scanned_pdf)

        assert document.status == DocumentStatus.COMPLETED
        assert document.is_scanned is True
