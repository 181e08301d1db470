"""Layered intent resolution: explicit action, active flow, ordered rules, classifier.

Resolution order (first decisive step wins):
    1. An explicit UI action names a flow, or a flow plus a subtopic tag.
    2. The session already has an active flow; only the subtopic is derived.
    3. The ordered top-level rules pick a flow from the text.
    4. Nothing matched: `unknown`, or (when enabled) the constrained classifier.

The resolver only reads sessions. When a step requires the active flow to
change it sets `Resolution.persist_flow` and the router performs the write.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from .errors import MalformedServiceOutput
from .flows import FLOW_CATALOG, Flow
from .models import IntentClassification
from .prompt_loader import PromptTemplate, load_template
from .session_store import SessionView
from .utils import normalize_text, safe_json_loads

logger = logging.getLogger("babygpt.intent")

Predicate = Callable[[str], bool]

# Classifier output that maps to the emergency reply instead of a flow.
EMERGENCY_INTENT = "emergency"


@dataclass(frozen=True)
class RouteRule:
    """One entry of an ordered dispatch table."""
    name: str
    predicate: Predicate
    flow: Flow


@dataclass(frozen=True)
class SubtopicRule:
    tag: str
    predicate: Predicate


@dataclass(frozen=True)
class ExplicitAction:
    """A menu selection (flow) or a sub-choice chip (flow + tag)."""
    flow: Flow
    tag: Optional[str] = None


@dataclass(frozen=True)
class Resolution:
    flow: Flow
    tag: Optional[str] = None
    source: str = "rule"
    persist_flow: bool = False
    emergency: bool = False


def matches(pattern: str) -> Predicate:
    """Build a predicate that searches normalized text with `pattern`."""
    compiled = re.compile(pattern)

    def predicate(normalized: str) -> bool:
        return compiled.search(normalized) is not None

    return predicate


TOP_LEVEL_RULES: List[RouteRule] = [
    RouteRule("crying_sleep", matches(r"cry|sleep|colic|night waking|won'?t sleep"), Flow.CRY),
    RouteRule("nutrition", matches(r"solid|wean|milk|feed|recipe|diet|meal"), Flow.NUTRITION),
    RouteRule("milestones", matches(r"milestone|tummy|speech|development"), Flow.MILESTONES),
    RouteRule(
        "caregiving",
        matches(r"infantcare|preschool|nanny|babysitter|daycare|helper|\bmdw\b|\bmaid\b|work permit|permit"),
        Flow.CAREGIVER,
    ),
    RouteRule("conflicting_advice", matches(r"conflicting|too many opinions|overload"), Flow.ADVICE),
    RouteRule("wellbeing", matches(r"overwhelmed|anxious|tired|burnt\s?out"), Flow.WELLBEING),
    RouteRule("help", matches(r"\bhelp\b|\bmenu\b"), Flow.HELP),
]

SUBTOPIC_RULES: Dict[Flow, List[SubtopicRule]] = {
    Flow.CRY: [
        SubtopicRule("colic", matches(r"colic")),
        SubtopicRule("night_waking", matches(r"night waking|wak(?:e|es|ing) (?:up )?at night|night feed")),
        SubtopicRule("soothing", matches(r"cry|fuss|sooth|calm")),
    ],
    Flow.NUTRITION: [
        SubtopicRule("milk", matches(r"milk|formula|breastfe|bottle|how much")),
        SubtopicRule("solids", matches(r"solid|wean|puree|first food")),
        SubtopicRule("recipes", matches(r"recipe|meal|menu idea|snack")),
    ],
    Flow.MILESTONES: [
        SubtopicRule("motor", matches(r"tummy|crawl|walk|roll|sit")),
        SubtopicRule("speech", matches(r"speech|talk|word|babbl")),
    ],
    Flow.CAREGIVER: [
        SubtopicRule("helper", matches(r"helper|\bmdw\b|\bmaid\b|permit")),
        SubtopicRule("infantcare", matches(r"infantcare|preschool|daycare|childcare|centre|center")),
        SubtopicRule("nanny", matches(r"nanny|babysitter")),
    ],
    Flow.ADVICE: [
        SubtopicRule("conflict", matches(r"conflict|opinion|overload|grandparent|in-?laws")),
    ],
    Flow.WELLBEING: [
        SubtopicRule("checkin", matches(r"overwhelmed|anxious|tired|burnt\s?out|stress")),
    ],
}

CLASSIFIER_INTENTS: Tuple[str, ...] = tuple(flow.value for flow in Flow) + (EMERGENCY_INTENT,)


def first_match(rules: Sequence[RouteRule], normalized: str) -> Optional[RouteRule]:
    """Evaluate rules in order and return the first whose predicate holds."""
    for rule in rules:
        if rule.predicate(normalized):
            return rule
    return None


def derive_tag(flow: Flow, normalized: str) -> Optional[str]:
    """Purpose: Pick a subtopic tag inside `flow` from the flow's ordered patterns.
    Inputs/Outputs: Inputs are a flow and normalized text; output is a tag or None.
    Side Effects / State: None; pure function.
    Dependencies: SUBTOPIC_RULES and the flow's fallback_tag in FLOW_CATALOG.
    Failure Modes: None; flows without rules yield None.
    If Removed: Canonical answers can never be selected for free text.
    Testing Notes: Caregiver text with no cue falls through to "infantcare".
    """
    for rule in SUBTOPIC_RULES.get(flow, []):
        if rule.predicate(normalized):
            return rule.tag
    spec = FLOW_CATALOG.get(flow)
    return spec.fallback_tag if spec else None


def parse_classification(raw: str) -> Resolution:
    """Parse classifier JSON into a resolution restricted to the fixed enumeration."""
    data = safe_json_loads(raw)
    if data is None:
        raise MalformedServiceOutput("classifier returned no JSON object", raw=raw)
    try:
        parsed = IntentClassification.model_validate(data)
    except ValidationError as exc:
        raise MalformedServiceOutput(f"classifier output failed validation: {exc}", raw=raw) from exc
    intent = parsed.intent.strip().lower()
    if intent not in CLASSIFIER_INTENTS:
        raise MalformedServiceOutput(f"classifier returned intent outside catalog: {intent!r}", raw=raw)
    if intent == EMERGENCY_INTENT:
        return Resolution(flow=Flow.UNKNOWN, source="classifier", emergency=True)
    return Resolution(flow=Flow(intent), source="classifier")


class IntentResolver:
    def __init__(
        self,
        sessions: SessionView,
        gemini: object = None,
        prompts_dir: Optional[Path] = None,
        classifier_enabled: bool = False,
        model: Optional[str] = None,
    ) -> None:
        """Purpose: Configure the resolver with a read-only session view.
        Inputs/Outputs: Inputs are the session view and, for the optional classifier,
            a completion client, prompt directory, and model name; no return value.
        Side Effects / State: Loads the classifier prompt when the classifier is enabled.
        Dependencies: SessionView, GeminiClient-compatible object, load_template.
        Failure Modes: Raises ValueError if the classifier is enabled without a client.
        If Removed: The router cannot route text to flows.
        Testing Notes: Construct with a fake client to exercise the classifier branch.
        """
        self._sessions = sessions
        self._gemini = gemini
        self._model = model
        self._classifier_enabled = classifier_enabled
        self._classifier_prompt: Optional[PromptTemplate] = None
        if classifier_enabled:
            if gemini is None or prompts_dir is None:
                raise ValueError("classifier requires a completion client and prompts_dir")
            self._classifier_prompt = load_template(prompts_dir / "intent_classifier.txt", ("intents",))

    async def resolve(
        self,
        conversation_id: str,
        text: str,
        explicit_action: Optional[ExplicitAction] = None,
    ) -> Resolution:
        """Purpose: Resolve the flow and optional subtopic tag for one inbound message.
        Inputs/Outputs: Inputs are conversation id, raw text and optional explicit action;
            output is a Resolution.
        Side Effects / State: None on the session store; may call the classifier.
        Dependencies: TOP_LEVEL_RULES, SUBTOPIC_RULES, SessionView, classifier prompt.
        Failure Modes: QuotaExceeded and MalformedServiceOutput propagate from the
            classifier branch; rule-based steps never raise.
        If Removed: Every message would fall through to the generic answer path.
        Testing Notes: Cover each step of the order and the rule ordering invariant.
        """
        normalized = normalize_text(text)

        # 1) Explicit menu action.
        if explicit_action is not None:
            tag = explicit_action.tag
            logger.info(
                "chat=%s resolve=explicit flow=%s tag=%s", conversation_id, explicit_action.flow.value, tag
            )
            return Resolution(flow=explicit_action.flow, tag=tag, source="explicit", persist_flow=True)

        # 2) Active session flow.
        session = self._sessions.get(conversation_id)
        if session is not None and session.active_flow is not None:
            flow = session.active_flow
            tag = derive_tag(flow, normalized)
            logger.info("chat=%s resolve=session flow=%s tag=%s", conversation_id, flow.value, tag)
            return Resolution(flow=flow, tag=tag, source="session")

        # 3) Ordered top-level rules.
        rule = first_match(TOP_LEVEL_RULES, normalized)
        if rule is not None:
            tag = derive_tag(rule.flow, normalized)
            logger.info(
                "chat=%s resolve=rule rule=%s flow=%s tag=%s", conversation_id, rule.name, rule.flow.value, tag
            )
            return Resolution(flow=rule.flow, tag=tag, source="rule")

        # 4) Unknown, optionally refined by the constrained classifier.
        if not self._classifier_enabled:
            logger.info("chat=%s resolve=unknown", conversation_id)
            return Resolution(flow=Flow.UNKNOWN, source="fallback")
        resolution = await self._classify(conversation_id, text)
        if resolution.flow not in (Flow.UNKNOWN, Flow.HELP):
            resolution = Resolution(
                flow=resolution.flow,
                tag=derive_tag(resolution.flow, normalized),
                source=resolution.source,
            )
        return resolution

    async def _classify(self, conversation_id: str, text: str) -> Resolution:
        # Constrained output: one catalog value plus confidence, JSON only.
        system = self._classifier_prompt.render(intents=", ".join(CLASSIFIER_INTENTS))
        raw = await self._gemini.generate_content(
            [{"role": "user", "parts": [{"text": text}]}],
            model=self._model,
            system_instruction=system,
            temperature=0.0,
            json_mode=True,
        )
        resolution = parse_classification(raw)
        logger.info(
            "chat=%s resolve=classifier flow=%s emergency=%s",
            conversation_id,
            resolution.flow.value,
            resolution.emergency,
        )
        return resolution
