"""Document processing pipeline for threat-intelligence imports."""

__version__ = "0.1.0"
