"""Arbitration between a canonical answer and a freshly generated one.

Selection is a two-state decision:
    NoCanonical  -> use the generated answer, no judge call.
    HasCanonical -> judge -> canonical | generated.

The generated answer wins only when the judge names it with confidence of at
least GENERATED_MIN_CONFIDENCE. Any judge failure selects the canonical answer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .canonical_bank import CanonicalAnswer
from .composer import MAX_ANSWER_WORDS, GeneratedAnswer
from .errors import MalformedServiceOutput
from .flows import Flow
from .models import Verdict
from .prompt_loader import load_template
from .utils import safe_json_loads

logger = logging.getLogger("babygpt.judge")

GENERATED_MIN_CONFIDENCE = 0.65


class AnswerSource(str, Enum):
    CANONICAL = "canonical"
    GENERATED = "generated"


@dataclass(frozen=True)
class Selection:
    source: AnswerSource
    text: str
    verdict: Optional[Verdict] = None
    reason: str = ""


def decide(verdict: Optional[Verdict]) -> AnswerSource:
    """Apply the decision rule; a missing verdict always means canonical."""
    if (
        verdict is not None
        and verdict.winner == AnswerSource.GENERATED.value
        and verdict.confidence >= GENERATED_MIN_CONFIDENCE
    ):
        return AnswerSource.GENERATED
    return AnswerSource.CANONICAL


def parse_verdict(raw: str) -> Verdict:
    data = safe_json_loads(raw)
    if data is None:
        raise MalformedServiceOutput("judge returned no JSON object", raw=raw)
    if isinstance(data.get("winner"), str):
        data["winner"] = data["winner"].strip().lower()
    try:
        return Verdict.model_validate(data)
    except ValidationError as exc:
        raise MalformedServiceOutput(f"judge output failed validation: {exc}", raw=raw) from exc


class ArbitrationJudge:
    def __init__(self, gemini: object, prompts_dir: Path, model: Optional[str] = None) -> None:
        self._gemini = gemini
        self._model = model
        self._system_template = load_template(prompts_dir / "judge.txt", ("max_words", "flow"))

    async def judge(self, flow: Flow, user_text: str, canonical_text: str, generated_text: str) -> Verdict:
        """Purpose: Ask the completion service which candidate answer is better.
        Inputs/Outputs: Inputs are flow, user text and both candidates; output is a Verdict.
        Side Effects / State: One completion-service call in JSON mode.
        Dependencies: judge.txt rubric prompt, GeminiClient.generate_content, parse_verdict.
        Failure Modes: QuotaExceeded, MalformedServiceOutput or any SDK error propagate;
            arbitrate() turns all of them into the canonical answer.
        If Removed: Canonical answers would always win and generated ones never show.
        Testing Notes: Feed malformed JSON and out-of-range confidence to the parser.
        """
        system = self._system_template.render(max_words=MAX_ANSWER_WORDS, flow=flow.value)
        user = (
            f"Parent's message:\n{user_text}\n\n"
            f"Candidate \"canonical\":\n{canonical_text}\n\n"
            f"Candidate \"generated\":\n{generated_text}"
        )
        raw = await self._gemini.generate_content(
            [{"role": "user", "parts": [{"text": user}]}],
            model=self._model,
            system_instruction=system,
            temperature=0.0,
            json_mode=True,
        )
        return parse_verdict(raw)

    async def arbitrate(
        self,
        flow: Flow,
        user_text: str,
        canonical: Optional[CanonicalAnswer],
        generated: GeneratedAnswer,
    ) -> Selection:
        """Purpose: Select the answer to show for one turn.
        Inputs/Outputs: Inputs are flow, user text, optional canonical answer and the
            generated answer; output is a Selection.
        Side Effects / State: Calls judge() only when a canonical answer exists.
        Dependencies: judge() and decide().
        Failure Modes: None escape; judge failures are logged and select canonical.
        If Removed: The router cannot choose between canonical and generated text.
        Testing Notes: Boundary confidence 0.65 selects generated; a raising judge
            selects the canonical text exactly.
        """
        if canonical is None:
            return Selection(source=AnswerSource.GENERATED, text=generated.text, reason="no_canonical")

        try:
            verdict = await self.judge(flow, user_text, canonical.text, generated.text)
        except Exception as exc:
            # Fail safe: never show an unvalidated generated answer.
            logger.warning(
                "judge failed flow=%s tag=%s error=%s; using canonical", flow.value, canonical.tag, exc
            )
            return Selection(source=AnswerSource.CANONICAL, text=canonical.text, reason="judge_failed")

        source = decide(verdict)
        logger.info(
            "judge flow=%s tag=%s winner=%s confidence=%.2f selected=%s",
            flow.value,
            canonical.tag,
            verdict.winner,
            verdict.confidence,
            source.value,
        )
        text = generated.text if source is AnswerSource.GENERATED else canonical.text
        return Selection(source=source, text=text, verdict=verdict, reason="judged")
