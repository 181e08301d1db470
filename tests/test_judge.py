import pytest

from babygpt.canonical_bank import CanonicalAnswer
from babygpt.composer import GeneratedAnswer
from babygpt.errors import MalformedServiceOutput, QuotaExceeded
from babygpt.flows import Flow
from babygpt.judge import (
    GENERATED_MIN_CONFIDENCE,
    AnswerSource,
    ArbitrationJudge,
    decide,
    parse_verdict,
)
from babygpt.models import Verdict
from conftest import PROMPTS_DIR, FakeGemini

CANONICAL = CanonicalAnswer(Flow.NUTRITION, "milk", "Canonical milk guide.")
GENERATED = GeneratedAnswer("Generated milk guide.")


class TestDecide:
    def test_threshold_is_inclusive(self):
        assert GENERATED_MIN_CONFIDENCE == 0.65
        assert decide(Verdict(winner="generated", confidence=0.65)) is AnswerSource.GENERATED
        assert decide(Verdict(winner="generated", confidence=0.649)) is AnswerSource.CANONICAL

    def test_canonical_winner_and_missing_verdict(self):
        assert decide(Verdict(winner="canonical", confidence=0.99)) is AnswerSource.CANONICAL
        assert decide(None) is AnswerSource.CANONICAL


class TestParseVerdict:
    def test_fenced_and_mixed_case(self):
        verdict = parse_verdict('```json\n{"winner": "Generated", "confidence": 0.7, "reason": "clearer"}\n```')
        assert verdict.winner == "generated"
        assert verdict.confidence == 0.7
        assert verdict.reason == "clearer"

    @pytest.mark.parametrize(
        "raw",
        [
            "canonical",
            '{"winner": "both", "confidence": 0.9}',
            '{"winner": "generated", "confidence": 1.5}',
            '{"winner": "generated"}',
        ],
    )
    def test_rejects_malformed(self, raw):
        with pytest.raises(MalformedServiceOutput):
            parse_verdict(raw)


class TestArbitrate:
    @pytest.mark.asyncio
    async def test_no_canonical_skips_judge(self):
        gemini = FakeGemini()
        selection = await ArbitrationJudge(gemini, PROMPTS_DIR).arbitrate(Flow.UNKNOWN, "hi", None, GENERATED)
        assert selection.source is AnswerSource.GENERATED
        assert selection.text == GENERATED.text
        assert selection.reason == "no_canonical"
        assert gemini.calls == []

    @pytest.mark.asyncio
    async def test_generated_wins_at_threshold(self):
        gemini = FakeGemini(['{"winner": "generated", "confidence": 0.65}'])
        selection = await ArbitrationJudge(gemini, PROMPTS_DIR).arbitrate(
            Flow.NUTRITION, "how much milk", CANONICAL, GENERATED
        )
        assert selection.source is AnswerSource.GENERATED
        assert selection.text == GENERATED.text
        assert selection.verdict.confidence == 0.65

    @pytest.mark.asyncio
    async def test_low_confidence_keeps_canonical(self):
        gemini = FakeGemini(['{"winner": "generated", "confidence": 0.6}'])
        selection = await ArbitrationJudge(gemini, PROMPTS_DIR).arbitrate(
            Flow.NUTRITION, "how much milk", CANONICAL, GENERATED
        )
        assert selection.source is AnswerSource.CANONICAL
        assert selection.text == CANONICAL.text

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "failure",
        [QuotaExceeded("quota exceeded"), RuntimeError("connection reset"), "no json at all"],
    )
    async def test_any_judge_failure_selects_canonical(self, failure):
        gemini = FakeGemini([failure])
        selection = await ArbitrationJudge(gemini, PROMPTS_DIR).arbitrate(
            Flow.NUTRITION, "how much milk", CANONICAL, GENERATED
        )
        assert selection.source is AnswerSource.CANONICAL
        assert selection.text == CANONICAL.text
        assert selection.reason == "judge_failed"

    @pytest.mark.asyncio
    async def test_judge_request_shape(self):
        gemini = FakeGemini(['{"winner": "canonical", "confidence": 0.9}'])
        await ArbitrationJudge(gemini, PROMPTS_DIR, model="judge-model").judge(
            Flow.NUTRITION, "how much milk", CANONICAL.text, GENERATED.text
        )
        call = gemini.calls[0]
        assert call["json_mode"] is True
        assert call["temperature"] == 0.0
        assert call["model"] == "judge-model"
        assert "Topic: nutrition" in call["system_instruction"]
        assert "Safety" in call["system_instruction"]
        user = gemini.user_text(0)
        assert CANONICAL.text in user
        assert GENERATED.text in user
