"""
config.py — Central configuration for tender-boq.

Every tunable lives here: model provider settings, intake limits, the
database URL. Defaults are sane for local development; in deployment the
environment variables override them. Modules import the `config`
singleton at the bottom of this file instead of reading os.environ
themselves, so there is exactly one place to look when a value is wrong.
"""

from dataclasses import dataclass, field
from typing import Dict, Tuple
import os
import logging

logger = logging.getLogger(__name__)

# Values people paste from README files instead of a real key. A key that
# matches one of these is treated as "not configured".
_PLACEHOLDER_KEYS = (
    "your_openai_api_key_here",
    "your-api-key",
    "your-api-key-here",
    "insert_key_here",
    "sk-your-key-here",
    "your_key_here",
    "replace_with_your_key",
)

_PLACEHOLDER_DB_FRAGMENTS = (
    "user:password@",
    "username:password@",
    "your_password",
    "insert_url_here",
)

SUPPORTED_PROVIDERS = ("openai", "llama_cpp")


@dataclass
class LLMConfig:
    """
    Language-model settings.

    Two providers are supported. "openai" talks to the hosted chat
    completions API with schema-constrained output. "llama_cpp" runs a
    local GGUF model through llama-cpp-python for air-gapped installs.

    Temperature defaults to 0.0: extraction should be as repeatable as the
    model allows. llama.cpp occasionally loops at exactly 0.0 on long
    documents; set LLM_TEMPERATURE=0.1 for that provider if it happens.
    """
    provider: str = os.getenv("LLM_PROVIDER", "openai")
    model: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    api_key: str = os.getenv("OPENAI_API_KEY", "")
    base_url: str = os.getenv("OPENAI_BASE_URL", "")
    temperature: float = float(os.getenv("LLM_TEMPERATURE", "0.0"))
    # Seconds. None would leave the SDK default in place.
    timeout: float = float(os.getenv("LLM_TIMEOUT", "120"))

    # llama_cpp only
    model_path: str = os.getenv(
        "LLM_MODEL_PATH",
        "models/mistral-7b-instruct-v0.2.Q4_K_M.gguf",
    )
    n_ctx: int = 8192
    max_tokens: int = 4096
    n_threads: int = 0  # 0 = auto-detect

    def has_valid_api_key(self) -> bool:
        """True when the key is set and is not an obvious placeholder."""
        key = (self.api_key or "").strip()
        if not key:
            return False
        return key.lower() not in _PLACEHOLDER_KEYS


@dataclass
class IngestionConfig:
    """
    Intake limits and the accepted media types.

    The MIME table is the only place formats are declared. The names on
    the right are what users see in the "unsupported file type" message.
    """
    max_file_size_mb: int = int(os.getenv("MAX_FILE_SIZE_MB", "10"))
    pdf_mime_types: Dict[str, str] = field(default_factory=lambda: {
        "application/pdf": "PDF",
    })
    spreadsheet_mime_types: Dict[str, str] = field(default_factory=lambda: {
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "Excel (XLSX)",
        "application/vnd.ms-excel": "Excel (XLS)",
    })
    delimited_mime_types: Dict[str, str] = field(default_factory=lambda: {
        "text/csv": "CSV",
        "application/csv": "CSV",
    })
    # Browsers and curl send these when they can't tell; fall back to the
    # file extension in that case.
    generic_mime_types: Tuple[str, ...] = ("", "application/octet-stream")

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024

    def supported_type_names(self) -> list:
        names = []
        for table in (self.pdf_mime_types, self.spreadsheet_mime_types, self.delimited_mime_types):
            for name in table.values():
                if name not in names:
                    names.append(name)
        return names


@dataclass
class DatabaseConfig:
    """Record store settings. SQLite by default, any SQLAlchemy URL works."""
    url: str = os.getenv("DATABASE_URL", "sqlite:///tender_boq.db")
    echo: bool = os.getenv("DATABASE_ECHO", "").lower() in ("1", "true", "yes")

    def has_valid_url(self) -> bool:
        if not self.url:
            return False
        lowered = self.url.lower()
        return not any(fragment in lowered for fragment in _PLACEHOLDER_DB_FRAGMENTS)


@dataclass
class Config:
    """Top-level settings object. Build one per process."""
    llm: LLMConfig = field(default_factory=LLMConfig)
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)

    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    def __post_init__(self):
        """Fail fast on values that would only blow up mid-request."""
        if self.llm.provider not in SUPPORTED_PROVIDERS:
            raise ValueError(
                f"LLM provider must be one of {SUPPORTED_PROVIDERS}, got '{self.llm.provider}'"
            )
        if self.ingestion.max_file_size_mb <= 0:
            raise ValueError(
                f"max_file_size_mb must be positive, got {self.ingestion.max_file_size_mb}"
            )
        if self.llm.provider == "openai" and not self.llm.has_valid_api_key():
            logger.warning(
                "OPENAI_API_KEY is not configured. Extraction calls will fail "
                "with an authentication error until it is set."
            )

    def status(self) -> Dict[str, bool]:
        """Configuration completeness, for the CLI `status` command and /api/status."""
        llm_ready = (
            self.llm.has_valid_api_key()
            if self.llm.provider == "openai"
            else bool(self.llm.model_path)
        )
        db_ready = self.database.has_valid_url()
        return {
            "hasModelAccess": llm_ready,
            "hasDatabaseUrl": db_ready,
            "isFullyConfigured": llm_ready and db_ready,
        }


# Shared instance imported by every module
config = Config()
