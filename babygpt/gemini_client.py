from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from .config import Settings
from .errors import QuotaExceeded

logger = logging.getLogger("babygpt.gemini")

DEFAULT_SAFETY_SETTINGS = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_ONLY_HIGH"},
]

QUOTA_MARKERS = (
    "insufficient_quota",
    "billing_hard_limit",
    "you exceeded",
    "quota exceeded",
    "exceeded your current quota",
    "resource_exhausted",
    "billing",
)


class GeminiClient:
    """Thin async wrapper around the Gemini SDK with model caching and quota mapping."""

    def __init__(self, settings: Settings) -> None:
        """Purpose: Configure the Gemini SDK and initialize the model cache.
        Inputs/Outputs: Input is Settings; no return value.
        Side Effects / State: Configures the SDK global API key.
        Dependencies: Uses google.generativeai and Settings from config.
        Failure Modes: Raises ValueError if the API key or model name is missing.
        If Removed: Composer, judge and classifier cannot reach the completion service.
        Testing Notes: Validate missing key raises ValueError.
        """
        # Configure API key and remember the default model.
        if not settings.gemini_api_key:
            raise ValueError("GEMINI_API_KEY is required")
        genai.configure(api_key=settings.gemini_api_key)
        self._default_model = _normalize_model_name(settings.gemini_model)
        if not self._default_model:
            raise ValueError("Gemini model name is required")
        self._models: Dict[Tuple[str, str], genai.GenerativeModel] = {}

    def _model(self, model: Optional[str], system_instruction: Optional[str]) -> genai.GenerativeModel:
        # System instructions are bound at model construction, so cache per pair.
        model_name = _normalize_model_name(model) if model else self._default_model
        if not model_name:
            raise ValueError("Gemini model name is required")
        key = (model_name, system_instruction or "")
        if key not in self._models:
            if system_instruction:
                self._models[key] = genai.GenerativeModel(model_name, system_instruction=system_instruction)
            else:
                self._models[key] = genai.GenerativeModel(model_name)
        return self._models[key]

    async def generate_content(
        self,
        contents: list,
        model: Optional[str] = None,
        system_instruction: Optional[str] = None,
        temperature: float = 0.2,
        max_output_tokens: int = 2048,
        json_mode: bool = False,
    ) -> str:
        """Purpose: Generate a response from structured chat contents.
        Inputs/Outputs: Input is a list of content entries plus optional system prompt;
            returns the stripped response text.
        Side Effects / State: May add a model to the internal cache.
        Dependencies: GenerativeModel.generate_content_async.
        Failure Modes: Quota/billing exhaustion raises QuotaExceeded; every other SDK
            error propagates unchanged.
        If Removed: No generated answers, verdicts, or classifications.
        Testing Notes: Map a ResourceExhausted error and a plain error separately.
        """
        generation_config: Dict[str, object] = {
            "temperature": temperature,
            "max_output_tokens": max_output_tokens,
        }
        if json_mode:
            generation_config["response_mime_type"] = "application/json"

        try:
            response = await self._model(model, system_instruction).generate_content_async(
                contents,
                generation_config=generation_config,
                safety_settings=DEFAULT_SAFETY_SETTINGS,
            )
        except google_exceptions.ResourceExhausted as exc:
            logger.warning("gemini quota exhausted: %s", exc)
            raise QuotaExceeded(str(exc)) from exc
        except Exception as exc:
            if is_quota_error(exc):
                logger.warning("gemini quota exhausted: %s", exc)
                raise QuotaExceeded(str(exc)) from exc
            raise

        try:
            text: Optional[str] = response.text
        except ValueError:
            # Blocked or empty candidates have no text accessor.
            logger.warning("gemini returned no text candidates")
            return ""
        return (text or "").strip()


def is_quota_error(exc: BaseException) -> bool:
    """Return True when an error message reports quota or billing exhaustion."""
    message = str(exc).lower()
    return any(marker in message for marker in QUOTA_MARKERS)


def _normalize_model_name(name: Optional[str]) -> str:
    """Strip a "models/" prefix and whitespace from a model name."""
    if not name:
        return ""
    cleaned = name.strip()
    if cleaned.startswith("models/"):
        return cleaned.split("/", 1)[1]
    return cleaned
