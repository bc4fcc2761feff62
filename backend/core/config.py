"""
core/config.py — Single source of truth for all environment configuration.

Rules:
- All env vars are read HERE and nowhere else.
- load_dotenv() is called ONCE here.
- Every other module imports `settings` from this file.
- Malformed values fall back to their defaults with a warning.
"""

import logging
import os
import time
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# ── Load .env (repo root, so it works from backend/ or root) ─────────────────
_env_path = Path(__file__).resolve().parents[2] / ".env"
load_dotenv(dotenv_path=_env_path, override=False)

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("⚠️  %s is not a valid integer — using default %d", name, default)
        return default
    if value < minimum:
        logger.warning("⚠️  %s must be >= %d — using default %d", name, minimum, default)
        return default
    return value


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("⚠️  %s is not a valid number — using default %s", name, default)
        return default
    if value < minimum:
        logger.warning("⚠️  %s must be >= %s — using default %s", name, minimum, default)
        return default
    return value


class Settings:
    """
    Validated application settings loaded from environment variables.
    Instantiated once at import time as the `settings` singleton.
    """

    def __init__(self) -> None:
        # ── Database ──────────────────────────────────────────────────────────
        self.database_url: str = (
            os.getenv("DATABASE_URL", "").strip() or "sqlite+aiosqlite:///./knowledge.db"
        )

        # ── Google Gemini embeddings ──────────────────────────────────────────
        self.gemini_api_key: Optional[str] = (
            os.getenv("GEMINI_API_KEY", "").strip()
            or os.getenv("GOOGLE_API_KEY", "").strip()
            or None
        )
        self.google_cloud_project: str = os.getenv("GOOGLE_CLOUD_PROJECT", "").strip()
        self.google_cloud_location: str = os.getenv("GOOGLE_CLOUD_LOCATION", "us-central1").strip()
        self.embedding_model: str = os.getenv("EMBEDDING_MODEL", "text-embedding-004").strip()
        dims = _env_int("EMBEDDING_DIMENSIONS", 0)
        self.embedding_dimensions: Optional[int] = dims or None
        self.embedding_max_input_chars: int = _env_int("EMBEDDING_MAX_INPUT_CHARS", 8000, minimum=1)
        self.embedding_timeout_seconds: float = _env_float("EMBEDDING_TIMEOUT_SECONDS", 30.0, minimum=0.1)
        self.embedding_max_retries: int = _env_int("EMBEDDING_MAX_RETRIES", 0)
        self.embedding_batch_size: int = _env_int("EMBEDDING_BATCH_SIZE", 5, minimum=1)
        self.embedding_batch_delay_seconds: float = _env_float("EMBEDDING_BATCH_DELAY_SECONDS", 1.0)

        # ── Chunking / indexing ───────────────────────────────────────────────
        self.chunk_size: int = _env_int("CHUNK_SIZE", 1000, minimum=1)
        self.chunk_overlap: int = _env_int("CHUNK_OVERLAP", 200)
        self.raw_text_preview_chars: int = _env_int("RAW_TEXT_PREVIEW_CHARS", 5000)

        # ── Search ────────────────────────────────────────────────────────────
        self.search_default_limit: int = _env_int("SEARCH_DEFAULT_LIMIT", 5, minimum=1)
        self.search_similarity_threshold: float = _env_float(
            "SEARCH_SIMILARITY_THRESHOLD", 0.7, minimum=-1.0
        )
        self.search_candidate_multiplier: int = _env_int("SEARCH_CANDIDATE_MULTIPLIER", 3, minimum=1)

        # ── App ───────────────────────────────────────────────────────────────
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
        self.port: int = _env_int("PORT", 8080, minimum=1)
        self.start_time: float = time.time()

        # ── Derived flags ─────────────────────────────────────────────────────
        self.embeddings_configured: bool = bool(
            self.gemini_api_key or self.google_cloud_project
        )

        self._validate()
        self._log_startup()

    # ── Private helpers ───────────────────────────────────────────────────────

    def _validate(self) -> None:
        """Warn loudly about missing or inconsistent config. Does NOT crash."""
        if self.log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            logger.warning("⚠️  LOG_LEVEL %r is not recognised — using INFO", self.log_level)
            self.log_level = "INFO"
        if self.chunk_overlap >= self.chunk_size:
            logger.warning(
                "⚠️  CHUNK_OVERLAP (%d) >= CHUNK_SIZE (%d) — chunks will repeat heavily",
                self.chunk_overlap,
                self.chunk_size,
            )
        if not self.embeddings_configured:
            logger.error(
                "❌ No embedding credentials: set GEMINI_API_KEY or GOOGLE_CLOUD_PROJECT.\n"
                "   Owners may still supply their own key per request."
            )

    def _log_startup(self) -> None:
        logger.info(
            "⚙️  Config loaded | DB: %s | Embeddings: %s (%s) | Batch: %d every %.1fs",
            self.database_url.split("://", 1)[0],
            "✅" if self.embeddings_configured else "❌ MISSING",
            self.embedding_model,
            self.embedding_batch_size,
            self.embedding_batch_delay_seconds,
        )

    @property
    def uptime_seconds(self) -> int:
        return int(time.time() - self.start_time)


# ── Singleton ─────────────────────────────────────────────────────────────────
settings = Settings()
