"""Runtime configuration loaded from the environment (and ``.env``)."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parents[1]

DEFAULT_MODELS = {
    "groq": "llama-3.1-8b-instant",
    "openai": "gpt-4o-mini",
    "ollama": "llama3",
    "gemini": "gemini-2.0-flash",
}


@dataclass
class Settings:
    # Language-model provider
    provider: str = "groq"
    model: str = "llama-3.1-8b-instant"
    api_key: str | None = None
    base_url: str | None = None

    # Storage / embeddings
    db_path: str = str(BASE_DIR / "inventory.db")
    embedding_model: str = "all-MiniLM-L6-v2"

    # Transcription buffer + interpreter
    silence_timeout: float = 3.0
    accumulator_window: float = 5.0
    history_limit: int = 8
    history_token_budget: int = 1024
    recent_command_limit: int = 5

    # Item resolution
    resolver_top_k: int = 5
    embedding_weight: float = 0.7
    token_weight: float = 0.3
    match_threshold: float = 0.6

    # Confirmation policy
    low_confidence: float = 0.5
    high_confidence: float = 0.8
    large_change_ratio: float = 0.4
    large_change_absolute: float = 100.0
    similar_name_threshold: float = 0.75
    accuracy_threshold: float = 0.7
    min_confirmation_history: int = 5
    visual_timeout: float = 10.0
    voice_timeout: float = 5.0
    pending_ttl: float = 30.0
    read_only_roles: frozenset[str] = field(
        default_factory=lambda: frozenset({"readonly", "viewer"})
    )

    # Undo
    undo_expiration_hours: float = 168.0


def _parse_float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
        # safeguard: enforce non-negative
        return value if value >= 0 else default
    except ValueError:
        return default


def _parse_int_env(name: str, default: int, min_val: int = 0, max_val: int = 10_000) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
        # safeguard: clamp into sane range
        return max(min_val, min(max_val, value))
    except ValueError:
        return default


def _parse_set_env(name: str, default: frozenset[str]) -> frozenset[str]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return frozenset(part.strip().lower() for part in raw.split(",") if part.strip())


def load_settings(env_path: str | Path | None = None) -> Settings:
    """
    Load configuration from environment variables (and defaults).

    Values that fail to parse fall back to their defaults instead of raising.
    The API key is not required here; providers that need one fail when the
    client is built.
    """
    load_dotenv(dotenv_path=env_path or BASE_DIR / ".env")

    provider = os.getenv("STOCKVOICE_PROVIDER", "groq").strip().lower() or "groq"
    if provider not in DEFAULT_MODELS:
        provider = "groq"

    model = os.getenv("STOCKVOICE_MODEL", "").strip() or DEFAULT_MODELS[provider]

    api_key_env = {
        "groq": "GROQ_API_KEY",
        "openai": "OPENAI_API_KEY",
        "gemini": "GEMINI_API_KEY",
    }.get(provider)
    api_key = os.getenv(api_key_env, "").strip() if api_key_env else ""

    db_path = Path(os.getenv("STOCKVOICE_DB_PATH", "").strip() or BASE_DIR / "inventory.db")
    db_path.parent.mkdir(parents=True, exist_ok=True)

    defaults = Settings()
    return Settings(
        provider=provider,
        model=model,
        api_key=api_key or None,
        base_url=os.getenv("STOCKVOICE_BASE_URL", "").strip() or None,
        db_path=str(db_path),
        embedding_model=os.getenv("STOCKVOICE_EMBEDDING_MODEL", "").strip() or defaults.embedding_model,
        silence_timeout=_parse_float_env("STOCKVOICE_SILENCE_TIMEOUT", defaults.silence_timeout),
        accumulator_window=_parse_float_env("STOCKVOICE_ACCUMULATOR_WINDOW", defaults.accumulator_window),
        history_limit=_parse_int_env("STOCKVOICE_HISTORY_LIMIT", defaults.history_limit, min_val=2, max_val=100),
        history_token_budget=_parse_int_env(
            "STOCKVOICE_HISTORY_TOKENS", defaults.history_token_budget, min_val=64, max_val=32_000
        ),
        recent_command_limit=_parse_int_env(
            "STOCKVOICE_RECENT_COMMANDS", defaults.recent_command_limit, min_val=1, max_val=50
        ),
        resolver_top_k=_parse_int_env("STOCKVOICE_RESOLVER_TOP_K", defaults.resolver_top_k, min_val=1, max_val=50),
        match_threshold=_parse_float_env("STOCKVOICE_MATCH_THRESHOLD", defaults.match_threshold),
        large_change_ratio=_parse_float_env("STOCKVOICE_LARGE_CHANGE_RATIO", defaults.large_change_ratio),
        large_change_absolute=_parse_float_env(
            "STOCKVOICE_LARGE_CHANGE_ABSOLUTE", defaults.large_change_absolute
        ),
        visual_timeout=_parse_float_env("STOCKVOICE_VISUAL_TIMEOUT", defaults.visual_timeout),
        pending_ttl=_parse_float_env("STOCKVOICE_PENDING_TTL", defaults.pending_ttl),
        read_only_roles=_parse_set_env("STOCKVOICE_READ_ONLY_ROLES", defaults.read_only_roles),
        undo_expiration_hours=_parse_float_env("STOCKVOICE_UNDO_HOURS", defaults.undo_expiration_hours),
    )
