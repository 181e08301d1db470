"""Flow catalog: the fixed set of conversation topics and their menu texts."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple


class Flow(str, Enum):
    CRY = "cry"
    NUTRITION = "nutrition"
    MILESTONES = "milestones"
    CAREGIVER = "caregiver"
    ADVICE = "advice"
    WELLBEING = "wellbeing"
    HELP = "help"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["Flow"]:
        """Return the flow named by `value`, or None for anything outside the catalog."""
        if not value:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


# Flows that are never remembered as the session's active topic.
PSEUDO_FLOWS = {Flow.HELP, Flow.UNKNOWN}


@dataclass(frozen=True)
class Subtopic:
    tag: str
    label: str
    question: str


@dataclass(frozen=True)
class FlowSpec:
    flow: Flow
    label: str
    prompt: str
    subtopics: Tuple[Subtopic, ...] = field(default_factory=tuple)
    fallback_tag: Optional[str] = None

    def subtopic(self, tag: Optional[str]) -> Optional[Subtopic]:
        for subtopic in self.subtopics:
            if subtopic.tag == tag:
                return subtopic
        return None


FLOW_CATALOG: Dict[Flow, FlowSpec] = {
    Flow.CRY: FlowSpec(
        flow=Flow.CRY,
        label="🍼 Crying / Sleep",
        prompt="Tell me the crying/sleep details (age + when it happens).",
        subtopics=(
            Subtopic("soothing", "Soothing a crying baby", "How do I soothe my crying baby?"),
            Subtopic("night_waking", "Night waking", "My baby keeps waking at night. What can I try?"),
            Subtopic("colic", "Colic", "How do I cope with colic?"),
        ),
    ),
    Flow.NUTRITION: FlowSpec(
        flow=Flow.NUTRITION,
        label="🥣 Nutrition",
        prompt="Ask about feeding (milk amounts, starting solids, meal ideas).",
        subtopics=(
            Subtopic("milk", "Milk amounts", "How much milk does my baby need?"),
            Subtopic("solids", "Starting solids", "When and how do I start solids?"),
            Subtopic("recipes", "Meal ideas", "Any simple meal ideas for my toddler?"),
        ),
    ),
    Flow.MILESTONES: FlowSpec(
        flow=Flow.MILESTONES,
        label="🧸 Milestones",
        prompt="Tell me your baby's age and which milestone you are curious about.",
        subtopics=(
            Subtopic("motor", "Motor skills", "What motor milestones should I expect?"),
            Subtopic("speech", "Speech", "When do babies start talking?"),
        ),
    ),
    Flow.CAREGIVER: FlowSpec(
        flow=Flow.CAREGIVER,
        label="👩‍🍼 Caregiving",
        prompt="What caregiver do you need? (infantcare, helper/MDW, nanny/babysitter) and area?",
        subtopics=(
            Subtopic("infantcare", "Infantcare", "How do I find infantcare?"),
            Subtopic("helper", "Helper / MDW", "How do I hire a helper (MDW)?"),
            Subtopic("nanny", "Nanny / Babysitter", "How do I find a nanny or babysitter?"),
        ),
        fallback_tag="infantcare",
    ),
    Flow.ADVICE: FlowSpec(
        flow=Flow.ADVICE,
        label="🧭 Conflicting Advice",
        prompt="What conflicting advice are you getting? I'll help you pick a plan.",
        subtopics=(
            Subtopic("conflict", "Too many opinions", "Everyone tells me something different. What should I follow?"),
        ),
    ),
    Flow.WELLBEING: FlowSpec(
        flow=Flow.WELLBEING,
        label="💛 Wellbeing",
        prompt="How are you feeling today? Tell me what feels hardest right now.",
        subtopics=(
            Subtopic("checkin", "Quick check-in", "I'm feeling overwhelmed. What can I do right now?"),
        ),
    ),
}

# Order of the main menu buttons.
MENU_FLOWS: List[Flow] = [Flow.CRY, Flow.NUTRITION, Flow.CAREGIVER, Flow.ADVICE]


def flow_spec(flow: Flow) -> Optional[FlowSpec]:
    return FLOW_CATALOG.get(flow)
