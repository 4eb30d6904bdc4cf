"""Helpers shared by the Office Open XML and legacy OLE processors."""

import logging
import zipfile
from pathlib import Path
from typing import Optional
from xml.etree import ElementTree

from .base import read_signature

logger = logging.getLogger(__name__)

ZIP_SIGNATURE = b"PK\x03\x04"
OLE_SIGNATURE = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"

EXTENDED_PROPERTIES_PART = "docProps/app.xml"
_EXTENDED_NS = (
    "{http://schemas.openxmlformats.org/officeDocument/2006/extended-properties}"
)


def has_zip_signature(path: Path) -> bool:
    return read_signature(path, len(ZIP_SIGNATURE)) == ZIP_SIGNATURE


def has_ole_signature(path: Path) -> bool:
    return read_signature(path, len(OLE_SIGNATURE)) == OLE_SIGNATURE


def read_extended_properties(path: Path) -> dict[str, str]:
    """Read the flat text elements of docProps/app.xml.

    Returns:
        Mapping of element name to text (e.g. {"Application": "Microsoft
        Office Word", "Pages": "3"}); empty when the part is missing.
    """
    with zipfile.ZipFile(path) as archive:
        try:
            raw = archive.read(EXTENDED_PROPERTIES_PART)
        except KeyError:
            return {}

    root = ElementTree.fromstring(raw)
    properties: dict[str, str] = {}
    for child in root:
        if len(child) or child.text is None:
            continue
        tag = child.tag
        if tag.startswith(_EXTENDED_NS):
            tag = tag[len(_EXTENDED_NS) :]
        properties[tag] = child.text.strip()
    return properties


def parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None
