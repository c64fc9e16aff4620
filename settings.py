from __future__ import annotations

import os
from dataclasses import dataclass


def _bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    openai_base_url: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    gateway_api_key: str = os.getenv("AI_GATEWAY_API_KEY", "")
    gateway_base_url: str = os.getenv("AI_GATEWAY_BASE_URL", "https://ai.gateway.lovable.dev/v1")
    gateway_default_model: str = os.getenv("AI_GATEWAY_DEFAULT_MODEL", "google/gemini-2.5-flash")
    chat_model: str = os.getenv("CHAT_MODEL", "gpt-4o-mini")
    vision_model: str = os.getenv("VISION_MODEL", "gpt-4o")
    transcription_model: str = os.getenv("TRANSCRIPTION_MODEL", "whisper-1")
    transcription_language: str = os.getenv("TRANSCRIPTION_LANGUAGE", "pt")
    embedding_model: str = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
    embedding_dimensions: int = _int("EMBEDDING_DIMENSIONS", 768)

    evolution_api_url: str = os.getenv("EVOLUTION_API_URL", "")
    evolution_api_key: str = os.getenv("EVOLUTION_API_KEY", "")

    supabase_url: str = os.getenv("SUPABASE_URL", "")
    supabase_service_key: str = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
    record_store_path: str = os.getenv("RECORD_STORE_PATH", "")
    redis_url: str = os.getenv("REDIS_URL", "")

    google_client_id: str = os.getenv("GOOGLE_CLIENT_ID", "")
    google_client_secret: str = os.getenv("GOOGLE_CLIENT_SECRET", "")
    calendar_timezone: str = os.getenv("CALENDAR_TIMEZONE", "America/Sao_Paulo")
    calendar_utc_offset_hours: int = _int("CALENDAR_UTC_OFFSET_HOURS", -3)

    zapsign_sandbox_url: str = os.getenv("ZAPSIGN_SANDBOX_URL", "https://sandbox.api.zapsign.com.br/api/v1")
    zapsign_production_url: str = os.getenv("ZAPSIGN_PRODUCTION_URL", "https://api.zapsign.com.br/api/v1")

    llm_timeout_seconds: int = _int("LLM_TIMEOUT_SECONDS", 30)
    channel_timeout_seconds: int = _int("CHANNEL_TIMEOUT_SECONDS", 30)
    retry_max_attempts: int = _int("RETRY_MAX_ATTEMPTS", 3)
    retry_base_delay_seconds: float = _float("RETRY_BASE_DELAY_SECONDS", 0.5)
    retry_max_delay_seconds: float = _float("RETRY_MAX_DELAY_SECONDS", 5.0)
    retry_jitter_seconds: float = _float("RETRY_JITTER_SECONDS", 0.2)

    typing_min_seconds: float = _float("TYPING_MIN_SECONDS", 1.0)
    typing_max_seconds: float = _float("TYPING_MAX_SECONDS", 4.0)
    typing_ms_per_char: int = _int("TYPING_MS_PER_CHAR", 30)
    delayed_greeting_seconds: int = _int("DELAYED_GREETING_SECONDS", 60)

    rag_match_threshold: float = _float("RAG_MATCH_THRESHOLD", 0.5)
    rag_match_count: int = _int("RAG_MATCH_COUNT", 3)
    rag_widened_threshold: float = _float("RAG_WIDENED_THRESHOLD", 0.3)
    rag_widened_count: int = _int("RAG_WIDENED_COUNT", 6)
    rag_lexical_limit: int = _int("RAG_LEXICAL_LIMIT", 3)

    history_window: int = _int("HISTORY_WINDOW", 25)
    memory_save_every: int = _int("MEMORY_SAVE_EVERY", 5)

    audit_log_path: str = os.getenv("AUDIT_LOG_PATH", "")
    webhook_token: str = os.getenv("WEBHOOK_TOKEN", "")
    rate_limit_per_minute: int = _int("RATE_LIMIT_PER_MINUTE", 120)

    debug: bool = _bool("DEBUG", True)


SETTINGS = Settings()
