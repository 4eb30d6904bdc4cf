import logging
from pathlib import Path
from typing import Callable

import docx
import openpyxl
import pymupdf
import pytest

from threatdoc.document_processors.ooxml import OLE_SIGNATURE

logger = logging.getLogger(__name__)


@pytest.fixture(scope="session")
def anyio_backend():
    """Configure anyio to use asyncio backend for all tests."""
    return "asyncio"


def build_pdf(streams: list[bytes]) -> bytes:
    """Assemble a minimal uncompressed PDF with one page per content stream."""
    count = len(streams)
    kids = " ".join(f"{4 + 2 * i} 0 R" for i in range(count))
    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        f"<< /Type /Pages /Kids [{kids}] /Count {count} >>".encode(),
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]
    for i, stream in enumerate(streams):
        objects.append(
            (
                "<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
                "/Resources << /Font << /F1 3 0 R >> >> "
                f"/Contents {5 + 2 * i} 0 R >>"
            ).encode()
        )
        objects.append(
            b"<< /Length %d >>\nstream\n" % len(stream) + stream + b"\nendstream"
        )

    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, 1):
        offsets.append(len(out))
        out += b"%d 0 obj\n" % number + body + b"\nendobj\n"

    xref = len(out)
    out += b"xref\n0 %d\n" % (len(objects) + 1)
    out += b"0000000000 65535 f \n"
    for offset in offsets:
        out += b"%010d 00000 n \n" % offset
    out += b"trailer\n<< /Size %d /Root 1 0 R >>\nstartxref\n%d\n%%%%EOF\n" % (
        len(objects) + 1,
        xref,
    )
    return bytes(out)


def text_stream(*lines: str) -> bytes:
    """Content stream showing each line with Tj, separated by T*."""
    shown = b" T*\n".join(
        b"(" + line.encode("latin-1") + b") Tj" for line in lines
    )
    return b"BT\n/F1 12 Tf\n14 TL\n72 720 Td\n" + shown + b"\nET"


@pytest.fixture
def make_pdf(tmp_path: Path) -> Callable[..., Path]:
    """Write a handcrafted PDF whose pages show the given lines."""

    def _make(*pages: list[str] | str, name: str = "sample.pdf") -> Path:
        streams = []
        for page in pages:
            lines = [page] if isinstance(page, str) else page
            streams.append(text_stream(*lines) if lines else b"")
        path = tmp_path / name
        path.write_bytes(build_pdf(streams))
        return path

    return _make


@pytest.fixture
def encrypted_pdf(tmp_path: Path) -> Path:
    """PDF encrypted with user password 'secret'."""
    path = tmp_path / "encrypted.pdf"
    doc = pymupdf.open()
    page = doc.new_page()
    page.insert_text((72, 72), "Confidential TLP:RED briefing", fontname="helv")
    doc.save(
        str(path),
        encryption=pymupdf.PDF_ENCRYPT_AES_256,
        owner_pw="owner-pass",
        user_pw="secret",
    )
    doc.close()
    return path


@pytest.fixture
def scanned_pdf(tmp_path: Path) -> Path:
    """Two-page PDF without any text objects."""
    path = tmp_path / "scanned.pdf"
    doc = pymupdf.open()
    for _ in range(2):
        page = doc.new_page()
        page.draw_rect(pymupdf.Rect(72, 72, 300, 200), color=(0, 0, 0), fill=(0, 0, 0))
    doc.save(str(path))
    doc.close()
    return path


@pytest.fixture
def make_docx(tmp_path: Path) -> Callable[..., Path]:
    """Write a .docx built by a callback receiving the python-docx document."""

    def _make(build: Callable, name: str = "sample.docx") -> Path:
        document = docx.Document()
        build(document)
        path = tmp_path / name
        document.save(str(path))
        return path

    return _make


@pytest.fixture
def make_xlsx(tmp_path: Path) -> Callable[..., Path]:
    """Write a .xlsx built by a callback receiving the openpyxl workbook."""

    def _make(build: Callable, name: str = "sample.xlsx") -> Path:
        workbook = openpyxl.Workbook()
        build(workbook)
        path = tmp_path / name
        workbook.save(str(path))
        return path

    return _make


@pytest.fixture
def make_legacy(tmp_path: Path) -> Callable[[str], Path]:
    """Write a file with an OLE compound document signature."""

    def _make(name: str) -> Path:
        path = tmp_path / name
        path.write_bytes(OLE_SIGNATURE + b"\x00" * 504)
        return path

    return _make
