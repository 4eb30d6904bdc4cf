import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from pydantic import SecretStr

from threatdoc.models import ProcessingOptions, TlpDesignation

SYSTEM_TESSDATA_DIR = "/usr/share/tesseract-ocr/5/tessdata"


def default_tessdata_dir() -> Path:
    """Resolve the Tesseract trained-data directory.

    Order: THREATDOC_TESSDATA_DIR, TESSDATA_PREFIX, the Debian/Ubuntu
    tesseract 5 location.
    """
    return Path(
        os.getenv("THREATDOC_TESSDATA_DIR")
        or os.getenv("TESSDATA_PREFIX")
        or SYSTEM_TESSDATA_DIR
    )


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class Settings:
    """Application settings from environment variables."""

    # OCR settings
    tessdata_dir: Optional[str] = None  # None = TESSDATA_PREFIX or system default
    tesseract_cmd: Optional[str] = None  # None = auto-detect on PATH
    enable_ocr: bool = True
    ocr_language: str = "eng"
    ocr_min_confidence: float = 60.0  # 0-100, advisory

    # Processing limits
    max_file_size_mb: int = 100
    max_text_length: int = 1_000_000
    max_concurrent_files: int = 4

    # Classification and extraction behaviour
    auto_detect_tlp: bool = True
    default_tlp: str = "amber"
    preserve_formatting: bool = False
    extract_indicators: bool = False

    # Encrypted documents
    skip_password_protected: bool = False
    default_password: Optional[str] = None

    # Plugins
    plugin_dir: Optional[str] = None

    # Logging
    log_format: str = "text"  # "json" or "text"
    log_level: str = "INFO"

    def __post_init__(self):
        """Validate values that cannot be checked by the option model."""
        logger = logging.getLogger(__name__)

        if self.log_format not in ("text", "json"):
            raise ValueError(
                f"LOG_FORMAT must be 'text' or 'json', got '{self.log_format}'"
            )

        valid_tlp = [designation.value for designation in TlpDesignation]
        if self.default_tlp.lower() not in valid_tlp:
            raise ValueError(
                f"THREATDOC_DEFAULT_TLP must be one of {valid_tlp}, "
                f"got '{self.default_tlp}'"
            )
        self.default_tlp = self.default_tlp.lower()

        if self.plugin_dir and not Path(self.plugin_dir).is_dir():
            logger.warning(
                f"THREATDOC_PLUGIN_DIR is set to {self.plugin_dir}, "
                f"which is not a directory. No plugins will be loaded."
            )

    def get_tessdata_dir(self) -> Path:
        return Path(self.tessdata_dir) if self.tessdata_dir else default_tessdata_dir()

    def to_processing_options(self, **overrides) -> ProcessingOptions:
        """Build per-call processing options from these settings.

        Args:
            **overrides: Option fields that take precedence over the settings

        Raises:
            pydantic.ValidationError: If a value is out of range
        """
        values = {
            "enable_ocr": self.enable_ocr,
            "ocr_language": self.ocr_language,
            "ocr_min_confidence": self.ocr_min_confidence,
            "auto_detect_tlp": self.auto_detect_tlp,
            "default_tlp_designation": TlpDesignation(self.default_tlp),
            "preserve_formatting": self.preserve_formatting,
            "max_text_content_length": self.max_text_length,
            "max_file_size_mb": self.max_file_size_mb,
            "skip_password_protected": self.skip_password_protected,
            "default_password": SecretStr(self.default_password or ""),
            "extract_indicators": self.extract_indicators,
            "max_concurrent_files": self.max_concurrent_files,
        }
        values.update(overrides)
        return ProcessingOptions(**values)

    def __repr__(self) -> str:
        password = "'**********'" if self.default_password else None
        return (
            f"Settings(tessdata_dir={self.tessdata_dir!r}, "
            f"enable_ocr={self.enable_ocr}, ocr_language={self.ocr_language!r}, "
            f"max_file_size_mb={self.max_file_size_mb}, "
            f"default_tlp={self.default_tlp!r}, default_password={password}, "
            f"plugin_dir={self.plugin_dir!r}, log_format={self.log_format!r}, "
            f"log_level={self.log_level!r})"
        )


def get_settings() -> Settings:
    """Get application settings from environment variables.

    Returns:
        Settings object with configuration values
    """
    return Settings(
        tessdata_dir=os.getenv("THREATDOC_TESSDATA_DIR")
        or os.getenv("TESSDATA_PREFIX"),
        tesseract_cmd=os.getenv("THREATDOC_TESSERACT_CMD"),
        enable_ocr=_env_bool("THREATDOC_ENABLE_OCR", "true"),
        ocr_language=os.getenv("THREATDOC_OCR_LANGUAGE", "eng"),
        ocr_min_confidence=float(os.getenv("THREATDOC_OCR_MIN_CONFIDENCE", "60")),
        max_file_size_mb=int(os.getenv("THREATDOC_MAX_FILE_SIZE_MB", "100")),
        max_text_length=int(os.getenv("THREATDOC_MAX_TEXT_LENGTH", "1000000")),
        max_concurrent_files=int(os.getenv("THREATDOC_MAX_CONCURRENT_FILES", "4")),
        auto_detect_tlp=_env_bool("THREATDOC_AUTO_DETECT_TLP", "true"),
        default_tlp=os.getenv("THREATDOC_DEFAULT_TLP", "amber"),
        preserve_formatting=_env_bool("THREATDOC_PRESERVE_FORMATTING", "false"),
        extract_indicators=_env_bool("THREATDOC_EXTRACT_INDICATORS", "false"),
        skip_password_protected=_env_bool(
            "THREATDOC_SKIP_PASSWORD_PROTECTED", "false"
        ),
        default_password=os.getenv("THREATDOC_DEFAULT_PASSWORD") or None,
        plugin_dir=os.getenv("THREATDOC_PLUGIN_DIR"),
        log_format=os.getenv("LOG_FORMAT", "text"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )


def get_processing_options(**overrides) -> ProcessingOptions:
    """Get processing options from environment variables."""
    return get_settings().to_processing_options(**overrides)
