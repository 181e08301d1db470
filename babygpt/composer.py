from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .flows import Flow
from .prompt_loader import load_template
from .utils import extract_urls

logger = logging.getLogger("babygpt.composer")

MAX_ANSWER_WORDS = 180
EMPTY_COMPLETION_FALLBACK = "Let's take this step by step."


@dataclass(frozen=True)
class GeneratedAnswer:
    text: str
    extracted_links: List[str] = field(default_factory=list)


class AnswerComposer:
    """Requests a generated answer from the completion service for a resolved flow."""

    def __init__(self, gemini: object, prompts_dir: Path, model: Optional[str] = None) -> None:
        self._gemini = gemini
        self._model = model
        self._system_template = load_template(prompts_dir / "composer.txt", ("max_words", "flow", "tag"))

    async def compose(
        self,
        flow: Flow,
        user_text: str,
        tag: Optional[str] = None,
        hint: Optional[str] = None,
    ) -> GeneratedAnswer:
        """Purpose: Produce a generated answer and the URLs it mentions.
        Inputs/Outputs: Inputs are flow, raw user text, optional tag and base-steps hint;
            output is a GeneratedAnswer.
        Side Effects / State: One completion-service call.
        Dependencies: composer.txt persona prompt, GeminiClient.generate_content, extract_urls.
        Failure Modes: QuotaExceeded propagates as-is so the router can show the
            maintenance message; other errors propagate unchanged.
        If Removed: Flows without a canonical answer have nothing to say.
        Testing Notes: Fake the client and check links are extracted in order, de-duplicated.
        """
        # Persona and context go in the system instruction; the user text stays verbatim.
        system = self._system_template.render(
            max_words=MAX_ANSWER_WORDS,
            flow=flow.value,
            tag=tag or "general",
        )
        user = f"User: {user_text}\nBase steps (may be empty):\n{hint or ''}"
        text = await self._gemini.generate_content(
            [{"role": "user", "parts": [{"text": user}]}],
            model=self._model,
            system_instruction=system,
            temperature=0.3,
        )
        text = text or EMPTY_COMPLETION_FALLBACK
        answer = GeneratedAnswer(text=text, extracted_links=extract_urls(text))
        logger.info(
            "compose flow=%s tag=%s chars=%s links=%s", flow.value, tag, len(answer.text), len(answer.extracted_links)
        )
        return answer
