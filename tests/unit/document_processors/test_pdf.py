"""Unit tests for the PDF processor."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pymupdf
import pytest
from pydantic import SecretStr

from threatdoc.cancellation import CancellationToken
from threatdoc.document_processors.base import (
    DocumentNotFoundError,
    SizeExceededError,
    UnsupportedFormatError,
)
from threatdoc.document_processors.pdf import PdfProcessor, parse_pdf_date
from threatdoc.models import (
    DocumentStatus,
    ErrorKind,
    OcrResult,
    ProcessingOptions,
    TlpDesignation,
)

pytestmark = pytest.mark.unit


def _mock_engine(*results: OcrResult) -> MagicMock:
    engine = MagicMock()
    engine.is_available.return_value = True
    if len(results) == 1:
        engine.process_image = AsyncMock(return_value=results[0])
    else:
        engine.process_image = AsyncMock(side_effect=list(results))
    return engine


class TestParsePdfDate:
    """Test parsing of PDF date strings."""

    def test_full_date_with_offset(self):
        """Test a full date with a positive UTC offset."""
        parsed = parse_pdf_date("D:20240131142500+01'00'")
        assert parsed == datetime(
            2024, 1, 31, 14, 25, 0, tzinfo=timezone(timedelta(hours=1))
        )

    def test_negative_offset(self):
        """Test a date with a negative offset and no trailing quote."""
        parsed = parse_pdf_date("D:20231105080000-05'30")
        assert parsed.utcoffset() == -timedelta(hours=5, minutes=30)

    def test_zulu(self):
        """Test that a Z suffix is read as UTC."""
        assert parse_pdf_date("D:20240101000000Z") == datetime(
            2024, 1, 1, tzinfo=timezone.utc
        )

    def test_partial_date_defaults(self):
        """Test that missing date parts default to the start of the period."""
        assert parse_pdf_date("D:2023") == datetime(2023, 1, 1, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [None, "", "yesterday", "D:20241399"])
    def test_invalid(self, value):
        """Test that malformed dates parse to None."""
        assert parse_pdf_date(value) is None


class TestPdfProcessor:
    """Test text and metadata extraction from PDFs."""

    async def test_extracts_pages_with_markers(self, make_pdf):
        """Test that each page is introduced by a page marker."""
        path = make_pdf(["Threat report", "TLP:GREEN"], ["Second page"])

        document = await PdfProcessor().process(path)

        assert document.status == DocumentStatus.COMPLETED
        assert document.page_count == 2
        assert document.extracted_text == (
            "--- Page 1 ---\nThreat report\nTLP:GREEN\n\n--- Page 2 ---\nSecond page"
        )
        assert document.tlp_designation == TlpDesignation.GREEN
        assert document.metadata.mime_type == "application/pdf"
        assert document.is_scanned is False

    async def test_blank_pages_are_skipped(self, make_pdf):
        """Test that pages without text produce no marker."""
        path = make_pdf(["First"], [], ["Third"])

        document = await PdfProcessor().process(path)

        assert document.page_count == 3
        assert document.extracted_text == (
            "--- Page 1 ---\nFirst\n\n--- Page 3 ---\nThird"
        )

    async def test_unmarked_pdf_is_amber(self, make_pdf):
        """Test that a PDF without a TLP marker is AMBER."""
        document = await PdfProcessor().process(make_pdf(["Nothing marked"]))
        assert document.tlp_designation == TlpDesignation.AMBER

    async def test_invalid_signature_fails(self, tmp_path):
        """Test that a file without the PDF signature fails validation."""
        path = tmp_path / "fake.pdf"
        path.write_text("This is not a PDF")

        document = await PdfProcessor().process(path)

        assert document.status == DocumentStatus.FAILED
        assert document.error.kind == ErrorKind.VALIDATION_FAILED

    async def test_metadata(self, tmp_path):
        """Test that document info is copied into the metadata."""
        path = tmp_path / "meta.pdf"
        doc = pymupdf.open()
        page = doc.new_page()
        page.insert_text((72, 72), "Indicators of compromise", fontname="helv")
        doc.set_metadata(
            {
                "title": "Quarterly Threat Landscape",
                "author": "CERT Team",
                "subject": "Ransomware",
                "keywords": "ransomware, initial access",
                "creationDate": "D:20240131142500+01'00'",
            }
        )
        doc.save(str(path))
        doc.close()

        document = await PdfProcessor().process(path)

        metadata = document.metadata
        assert metadata.title == "Quarterly Threat Landscape"
        assert metadata.author == "CERT Team"
        assert metadata.subject == "Ransomware"
        assert metadata.keywords == "ransomware, initial access"
        assert metadata.creation_date == datetime(
            2024, 1, 31, 14, 25, tzinfo=timezone(timedelta(hours=1))
        )
        assert metadata.page_count == 1
        assert metadata.custom_properties["encrypted"] is False
        assert "Indicators of compromise" in document.extracted_text

    async def test_metadata_disabled(self, make_pdf):
        """Test that metadata is left empty when extraction is off."""
        document = await PdfProcessor().process(
            make_pdf(["text"]), ProcessingOptions(extract_metadata=False)
        )
        assert document.metadata.mime_type is None
        assert document.page_count == 1

    async def test_text_extraction_disabled(self, make_pdf):
        """Test that no text is extracted when extraction is off."""
        document = await PdfProcessor().process(
            make_pdf(["text"]), ProcessingOptions(extract_text_content=False)
        )
        assert document.status == DocumentStatus.COMPLETED
        assert document.extracted_text == ""
        assert document.page_count == 1

    async def test_truncated_text(self, make_pdf):
        """Test that long PDFs are truncated with a warning."""
        path = make_pdf(["a" * 80], ["b" * 80])

        document = await PdfProcessor().process(
            path, ProcessingOptions(max_text_content_length=120)
        )

        assert document.extracted_text_length == 120
        assert "TEXT_TRUNCATED" in [w.code for w in document.warnings]


class TestPdfPreconditions:
    """Test the checks that run before a PDF is opened."""

    async def test_missing_file_raises(self, tmp_path):
        """A path that does not exist raises before any document is built."""
        with pytest.raises(DocumentNotFoundError):
            await PdfProcessor().process(tmp_path / "missing.pdf")

    async def test_oversized_file_is_never_opened(self, tmp_path):
        """Files over the size limit raise without being parsed."""
        path = tmp_path / "huge.pdf"
        path.write_bytes(b"%PDF-1.4\n" + b"0" * (1024 * 1024))

        with patch("threatdoc.document_processors.pdf.pymupdf.open") as pdf_open:
            with pytest.raises(SizeExceededError) as exc_info:
                await PdfProcessor().process(
                    path, ProcessingOptions(max_file_size_mb=1)
                )

        pdf_open.assert_not_called()
        assert exc_info.value.to_error().kind == ErrorKind.SIZE_EXCEEDED

    async def test_wrong_extension_raises(self, tmp_path):
        """Only .pdf files are accepted, whatever their content."""
        path = tmp_path / "report.txt"
        path.write_bytes(b"%PDF-1.4\n")

        with pytest.raises(UnsupportedFormatError):
            await PdfProcessor().process(path)

    def test_can_process_is_case_insensitive(self):
        """Upper-case suffixes are recognized."""
        processor = PdfProcessor()
        assert processor.can_process("REPORT.PDF") is True
        assert processor.can_process("report.pdf.txt") is False
        assert processor.can_process("") is False


class TestPdfPasswords:
    """Test handling of password-protected PDFs."""

    async def test_no_password_configured(self, encrypted_pdf):
        """Test that an encrypted PDF fails without a password."""
        document = await PdfProcessor().process(encrypted_pdf)

        assert document.status == DocumentStatus.FAILED
        assert document.is_password_protected is True
        assert document.error.kind == ErrorKind.PASSWORD_PROTECTED
        assert document.error.context == "no_password"

    async def test_wrong_password(self, encrypted_pdf):
        """Test that a wrong password fails the document."""
        options = ProcessingOptions(default_password=SecretStr("guess"))

        document = await PdfProcessor().process(encrypted_pdf, options)

        assert document.status == DocumentStatus.FAILED
        assert document.error.context == "wrong_password"

    async def test_skip_password_protected(self, encrypted_pdf):
        """Test that encrypted PDFs can be skipped outright."""
        options = ProcessingOptions(
            skip_password_protected=True, default_password=SecretStr("secret")
        )

        document = await PdfProcessor().process(encrypted_pdf, options)

        assert document.status == DocumentStatus.FAILED
        assert document.error.context == "skipped"

    async def test_correct_password(self, encrypted_pdf):
        """Test that the right password unlocks the text."""
        options = ProcessingOptions(default_password=SecretStr("secret"))

        document = await PdfProcessor().process(encrypted_pdf, options)

        assert document.status == DocumentStatus.COMPLETED
        assert document.is_password_protected is True
        assert "Confidential TLP:RED briefing" in document.extracted_text
        assert document.tlp_designation == TlpDesignation.RED
        assert document.metadata.custom_properties["encrypted"] is True

    async def test_password_not_in_error_message(self, encrypted_pdf):
        """Test that the password never appears in the error."""
        options = ProcessingOptions(default_password=SecretStr("guess"))

        document = await PdfProcessor().process(encrypted_pdf, options)

        assert "guess" not in document.error_message


class TestPdfOcr:
    """Test the OCR fallback for scanned pages."""

    async def test_scanned_pdf_uses_ocr(self, scanned_pdf):
        """Test that pages without text are sent to OCR."""
        engine = _mock_engine(
            OcrResult(success=True, text="Scanned page TLP:GREEN", confidence=0.92)
        )

        document = await PdfProcessor(ocr_engine=engine).process(scanned_pdf)

        assert document.status == DocumentStatus.COMPLETED
        assert document.is_scanned is True
        assert document.extracted_text == (
            "--- Page 1 (OCR) ---\nScanned page TLP:GREEN\n\n"
            "--- Page 2 (OCR) ---\nScanned page TLP:GREEN"
        )
        assert document.tlp_designation == TlpDesignation.GREEN
        assert engine.process_image.await_count == 2

        image = engine.process_image.await_args.args[0]
        assert image.startswith(b"\x89PNG")
        assert engine.process_image.await_args.kwargs == {
            "language": "eng",
            "min_confidence": 60.0,
        }

    async def test_ocr_language_and_threshold_passed(self, scanned_pdf):
        """Test that the OCR language and threshold come from the options."""
        engine = _mock_engine(OcrResult(success=True, text="Text", confidence=0.9))
        options = ProcessingOptions(ocr_language="deu", ocr_min_confidence=80)

        await PdfProcessor(ocr_engine=engine).process(scanned_pdf, options)

        assert engine.process_image.await_args.kwargs == {
            "language": "deu",
            "min_confidence": 80.0,
        }

    async def test_low_confidence_warns_per_page(self, scanned_pdf):
        """Test that each low-confidence page records a warning."""
        engine = _mock_engine(
            OcrResult(
                success=True, text="blurry", confidence=0.3, below_threshold=True
            )
        )

        document = await PdfProcessor(ocr_engine=engine).process(scanned_pdf)

        assert document.status == DocumentStatus.COMPLETED
        low = [w for w in document.warnings if w.code == "OCR_LOW_CONFIDENCE"]
        assert [w.context for w in low] == ["1", "2"]
        assert "blurry" in document.extracted_text

    async def test_failed_page_is_skipped(self, scanned_pdf):
        """Test that a page OCR cannot read is skipped with a warning."""
        engine = _mock_engine(
            OcrResult(success=False, error_message="tesseract crashed"),
            OcrResult(success=True, text="Page two text", confidence=0.8),
        )

        document = await PdfProcessor(ocr_engine=engine).process(scanned_pdf)

        assert document.status == DocumentStatus.COMPLETED
        assert document.extracted_text == "--- Page 2 (OCR) ---\nPage two text"
        failed = [w for w in document.warnings if w.code == "OCR_PAGE_FAILED"]
        assert len(failed) == 1
        assert failed[0].context == "1"

    async def test_ocr_unavailable(self, scanned_pdf):
        """Test that an unavailable engine leaves a warning."""
        engine = MagicMock()
        engine.is_available.return_value = False

        document = await PdfProcessor(ocr_engine=engine).process(scanned_pdf)

        assert document.status == DocumentStatus.COMPLETED
        assert document.extracted_text == ""
        assert document.is_scanned is False
        assert [w.code for w in document.warnings] == ["OCR_UNAVAILABLE"]

    async def test_no_engine(self, scanned_pdf):
        """Test that a scanned PDF without an engine still completes."""
        document = await PdfProcessor().process(scanned_pdf)

        assert document.status == DocumentStatus.COMPLETED
        assert [w.code for w in document.warnings] == ["OCR_UNAVAILABLE"]

    async def test_ocr_disabled(self, scanned_pdf):
        """Test that OCR is not attempted when disabled."""
        engine = _mock_engine(OcrResult(success=True, text="x", confidence=1.0))

        document = await PdfProcessor(ocr_engine=engine).process(
            scanned_pdf, ProcessingOptions(enable_ocr=False)
        )

        assert document.status == DocumentStatus.COMPLETED
        assert document.warnings == []
        engine.process_image.assert_not_awaited()

    async def test_text_pdf_does_not_use_ocr(self, make_pdf):
        """Test that pages with embedded text skip OCR."""
        engine = _mock_engine(OcrResult(success=True, text="x", confidence=1.0))

        document = await PdfProcessor(ocr_engine=engine).process(make_pdf(["Text"]))

        assert document.is_scanned is False
        engine.process_image.assert_not_awaited()

    async def test_cancelled_between_pages(self, scanned_pdf):
        """Test that cancellation is checked between pages."""
        token = CancellationToken()

        async def recognize(image, language=None, min_confidence=60.0):
            token.cancel("stop")
            return OcrResult(success=True, text="first", confidence=0.9)

        engine = MagicMock()
        engine.is_available.return_value = True
        engine.process_image = AsyncMock(side_effect=recognize)

        document = await PdfProcessor(ocr_engine=engine).process(
            scanned_pdf, cancel=token
        )

        assert document.status == DocumentStatus.FAILED
        assert document.error.kind == ErrorKind.CANCELLED
        assert engine.process_image.await_count == 1

    def test_close_closes_engine(self):
        """Test that closing the processor closes its engine."""
        engine = MagicMock()
        PdfProcessor(ocr_engine=engine).close()
        engine.close.assert_called_once()


class TestPdfValidate:
    """Test PDF structure validation."""

    async def test_valid_pdf(self, make_pdf):
        """Test that a well-formed PDF validates."""
        assert await PdfProcessor().validate(make_pdf(["ok"])) is True

    async def test_encrypted_pdf_is_valid(self, encrypted_pdf):
        """Test that an encrypted PDF validates to a bool True."""
        assert await PdfProcessor().validate(encrypted_pdf) is True

    async def test_text_file_with_pdf_extension(self, tmp_path):
        """Test that a text file named .pdf does not validate."""
        path = tmp_path / "fake.pdf"
        path.write_text("hello")
        assert await PdfProcessor().validate(path) is False
