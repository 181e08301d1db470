from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent

TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    """Configuration container for models, channel credentials, and runtime limits."""
    gemini_api_key: str
    gemini_model: str
    gemini_model_judge: str
    telegram_bot_token: str
    public_url: str
    prompts_dir: Path
    canonical_path: Path
    llm_classifier_enabled: bool
    delivery_base_delay_ms: int
    delivery_max_delay_ms: int
    delivery_max_retries: int
    max_sessions: int
    reference_data_enabled: bool
    reference_data_url: str
    reference_data_timeout: float
    log_level: str


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in TRUE_VALUES


def load_settings() -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: No inputs; returns a Settings instance.
    Side Effects / State: Reads environment variables and filesystem paths.
    Dependencies: Uses os.getenv and BASE_DIR for packaged prompt/resource paths.
    Failure Modes: Invalid numeric env values raise ValueError.
    If Removed: The app cannot configure the completion service or the channel.
    Testing Notes: Verify defaults and overrides via monkeypatched environment.
    """
    # Resolve resource and prompt paths, then build Settings.
    canonical_path = os.getenv("CANONICAL_PATH")
    if canonical_path:
        canonical_file = Path(canonical_path)
    else:
        canonical_file = (BASE_DIR / "resources" / "canonical.json").resolve()

    prompts_dir = (BASE_DIR / "prompts").resolve()
    gemini_model = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")

    return Settings(
        gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
        gemini_model=gemini_model,
        gemini_model_judge=os.getenv("GEMINI_MODEL_JUDGE") or gemini_model,
        telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN", ""),
        public_url=os.getenv("PUBLIC_URL", "").rstrip("/"),
        prompts_dir=prompts_dir,
        canonical_path=canonical_file,
        llm_classifier_enabled=_env_flag("LLM_CLASSIFIER_ENABLED"),
        delivery_base_delay_ms=int(os.getenv("DELIVERY_BASE_DELAY_MS", "250")),
        delivery_max_delay_ms=int(os.getenv("DELIVERY_MAX_DELAY_MS", "4000")),
        delivery_max_retries=int(os.getenv("DELIVERY_MAX_RETRIES", "50")),
        max_sessions=int(os.getenv("MAX_SESSIONS", "10000")),
        reference_data_enabled=_env_flag("REFERENCE_DATA_ENABLED"),
        reference_data_url=os.getenv("REFERENCE_DATA_URL", "https://data.gov.sg/api/action").rstrip("/"),
        reference_data_timeout=float(os.getenv("REFERENCE_DATA_TIMEOUT", "5.0")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
