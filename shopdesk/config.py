from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent


@dataclass(frozen=True)
class Settings:
    """Configuration container for models, store backend, timeouts and limits."""
    gemini_api_key: str
    gemini_model_chat: str
    gemini_model_extractor: str
    prompts_dir: Path
    store_backend: str
    store_path: Path
    supabase_url: str
    supabase_key: str
    store_timeout_seconds: float
    llm_timeout_seconds: float
    llm_max_retries: int
    integration_timeout_seconds: float
    history_limit: int
    summary_max_chars: int
    reply_compact_threshold: int


def load_settings() -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: No inputs; returns a Settings instance.
    Side Effects / State: Reads environment variables and resolves filesystem paths.
    Dependencies: Uses os.getenv and BASE_DIR for default paths.
    Failure Modes: Invalid numeric env values raise ValueError; an unknown
        STORE_BACKEND raises ValueError.
    If Removed: The app cannot pick a store, model or timeout and fails at startup.
    Testing Notes: Verify defaults and overrides via environment variables.
    """
    # Resolve store and prompt paths, then build Settings.
    store_path = os.getenv("STORE_PATH")
    if store_path:
        store_file = Path(store_path)
    else:
        store_file = (BASE_DIR / "data" / "store.json").resolve()

    store_backend = os.getenv("STORE_BACKEND", "json").strip().lower()
    if store_backend not in {"json", "supabase"}:
        raise ValueError("STORE_BACKEND must be 'json' or 'supabase'")

    default_model = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
    return Settings(
        gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
        gemini_model_chat=os.getenv("GEMINI_MODEL_CHAT") or default_model,
        gemini_model_extractor=os.getenv("GEMINI_MODEL_EXTRACTOR") or default_model,
        prompts_dir=(BASE_DIR / "prompts").resolve(),
        store_backend=store_backend,
        store_path=store_file,
        supabase_url=os.getenv("SUPABASE_URL", "").rstrip("/"),
        supabase_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("SUPABASE_KEY", ""),
        store_timeout_seconds=float(os.getenv("STORE_TIMEOUT_SECONDS", "25")),
        llm_timeout_seconds=float(os.getenv("LLM_TIMEOUT_SECONDS", "60")),
        llm_max_retries=int(os.getenv("LLM_MAX_RETRIES", "1")),
        integration_timeout_seconds=float(os.getenv("INTEGRATION_TIMEOUT_SECONDS", "20")),
        history_limit=int(os.getenv("HISTORY_LIMIT", "10")),
        summary_max_chars=int(os.getenv("SUMMARY_MAX_CHARS", "1500")),
        reply_compact_threshold=int(os.getenv("REPLY_COMPACT_THRESHOLD", "600")),
    )
