"""Pattern-based extraction of threat indicators from document text."""

import re

EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
IPV4_PATTERN = re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b")
CVE_PATTERN = re.compile(r"\bCVE-\d{4}-\d{4,}\b", re.IGNORECASE)
TICKET_PATTERN = re.compile(
    r"\b(?:INC|INCIDENT|TICKET|IR|CASE)[-\s]?(\d{4,10})\b", re.IGNORECASE
)
HASH_PATTERN = re.compile(r"\b(?:[A-Fa-f0-9]{64}|[A-Fa-f0-9]{40}|[A-Fa-f0-9]{32})\b")


def _unique(values) -> list[str]:
    seen: dict[str, None] = {}
    for value in values:
        seen.setdefault(value, None)
    return list(seen)


def _valid_ipv4(candidate: str) -> bool:
    return all(int(octet) <= 255 for octet in candidate.split("."))


def extract_indicators(text: str) -> dict[str, list[str]]:
    """Collect indicator values from text.

    Values are deduplicated and keep their order of first appearance. CVE
    identifiers are upper-cased and hashes lower-cased so that case variants
    collapse into one entry.
    """
    if not text:
        return {}

    indicators = {
        "emails": _unique(m.group(0) for m in EMAIL_PATTERN.finditer(text)),
        "ipv4": _unique(
            m.group(0) for m in IPV4_PATTERN.finditer(text) if _valid_ipv4(m.group(0))
        ),
        "cves": _unique(m.group(0).upper() for m in CVE_PATTERN.finditer(text)),
        "tickets": _unique(m.group(1) for m in TICKET_PATTERN.finditer(text)),
        "hashes": _unique(m.group(0).lower() for m in HASH_PATTERN.finditer(text)),
    }
    return {name: values for name, values in indicators.items() if values}
