"""Traffic Light Protocol classification of extracted text."""

from typing import Optional

from threatdoc.models import ProcessingOptions, TlpDesignation

# Checked in order; the first designation with a matching marker wins.
TLP_MARKERS: tuple[tuple[TlpDesignation, tuple[str, ...]], ...] = (
    (TlpDesignation.RED, ("tlp:red", "tlp red")),
    (TlpDesignation.AMBER, ("tlp:amber", "tlp amber")),
    (TlpDesignation.GREEN, ("tlp:green", "tlp green")),
    (
        TlpDesignation.CLEAR,
        ("tlp:white", "tlp white", "tlp:clear", "tlp clear"),
    ),
)

CONSERVATIVE_DEFAULT = TlpDesignation.AMBER


def find_marker(text: Optional[str]) -> Optional[TlpDesignation]:
    """Return the highest-priority TLP marker present in text, if any."""
    if not text:
        return None
    lowered = text.lower()
    for designation, patterns in TLP_MARKERS:
        if any(pattern in lowered for pattern in patterns):
            return designation
    return None


def classify(
    text: Optional[str], options: Optional[ProcessingOptions] = None
) -> TlpDesignation:
    """Classify text into a TLP designation.

    With auto-detection disabled, or when there is no text to scan, the
    configured default designation is returned as is. With auto-detection
    enabled a non-empty text without any marker is treated as AMBER.

    Args:
        text: Extracted document text
        options: Processing options (defaults when omitted)

    Returns:
        TlpDesignation for the text
    """
    options = options or ProcessingOptions()
    if not options.auto_detect_tlp or not text:
        return options.default_tlp_designation

    marker = find_marker(text)
    if marker is None:
        return CONSERVATIVE_DEFAULT
    return marker
