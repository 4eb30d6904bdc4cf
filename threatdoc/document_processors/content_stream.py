"""Text extraction from raw PDF page content streams.

pypdf parses a decoded content stream into (operands, operator) pairs; the
string operands of the text-showing operators (Tj, TJ, ' and ") are
concatenated in stream order. Glyph-to-Unicode mapping through font CMaps is
out of scope; pypdf decodes strings as UTF-16 when they carry a byte order
mark and as PDFDocEncoding otherwise, and undecodable strings fall back to
Latin-1, which matches the simple single-byte encodings of the standard fonts.
"""

from typing import Any, Optional

from pypdf.errors import PdfReadError
from pypdf.generic import ContentStream, DecodedStreamObject, NameObject

# TJ displacements are in thousandths of text space; a gap wider than this is
# rendered as a word break.
WORD_GAP_THRESHOLD = -200

TEXT_SHOW_OPERATORS = frozenset({b"Tj", b"TJ", b"'", b'"'})
LINE_BREAK_OPERATORS = frozenset({b"T*", b"ET"})


class ContentStreamSyntaxError(ValueError):
    pass


def parse_operations(data: bytes) -> list[tuple[list, bytes]]:
    """Parse a decoded content stream into (operands, operator) pairs.

    Raises:
        ContentStreamSyntaxError: The stream is malformed
    """
    stream = DecodedStreamObject()
    stream.set_data(data)
    try:
        return list(ContentStream(stream, None).operations)
    except PdfReadError as e:
        raise ContentStreamSyntaxError(f"Malformed content stream: {e}") from e


def decode_pdf_string(value: Any) -> str:
    """Decode a string operand into text."""
    if isinstance(value, bytes):
        value = value.decode("latin-1")
    return str(value).replace("\x00", "")


def _is_string(value: Any) -> bool:
    return isinstance(value, (str, bytes)) and not isinstance(value, NameObject)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def extract_text(data: bytes) -> str:
    """Concatenate the text shown by a content stream, in stream order.

    Args:
        data: Decoded (decompressed) content stream bytes

    Returns:
        The shown text; line breaks are inserted for T*, ', " and ET and
        for text positioning that moves to another line (Td, TD, Tm)
    """
    parts: list[str] = []
    line_y: Optional[float] = None

    def newline() -> None:
        if parts and not parts[-1].endswith("\n"):
            parts.append("\n")

    for operands, operator in parse_operations(data):
        if operator in TEXT_SHOW_OPERATORS:
            if operator in (b"'", b'"'):
                newline()
            _show(operator, operands, parts)
        elif operator in LINE_BREAK_OPERATORS:
            newline()
        elif operator in (b"Td", b"TD"):
            if len(operands) >= 2 and _is_number(operands[1]) and operands[1] != 0:
                newline()
        elif operator == b"Tm" and len(operands) >= 6:
            y = operands[5]
            if line_y is not None and y != line_y:
                newline()
            line_y = y

    return "".join(parts).strip()


def _show(operator: bytes, operands: list, parts: list[str]) -> None:
    if not operands:
        return
    operand = operands[-1]
    if operator == b"TJ":
        if not isinstance(operand, list):
            return
        for item in operand:
            if _is_string(item):
                parts.append(decode_pdf_string(item))
            elif _is_number(item) and item < WORD_GAP_THRESHOLD:
                parts.append(" ")
    elif _is_string(operand):
        parts.append(decode_pdf_string(operand))
