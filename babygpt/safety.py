"""Safety filter run on every inbound text before any routing."""

from __future__ import annotations

import re
from enum import Enum
from typing import List, Optional, Pattern, Tuple

from .utils import normalize_text


class SafetyClass(str, Enum):
    EMERGENCY = "emergency"
    OFF_LIMITS = "offLimits"
    NONE = "none"


# Clinical red flags; checked before the off-limits categories.
EMERGENCY_PATTERNS: List[Tuple[str, Pattern[str]]] = [
    ("breathing", re.compile(r"blue lips|not ?breathing|difficulty breathing|struggling to breathe")),
    ("consciousness", re.compile(r"unresponsive|seizure|convulsion")),
    ("meningitis", re.compile(r"stiff neck|bulging fontanel(?:le)?")),
    ("high_fever", re.compile(r"fever\s?(?:of\s)?(?:40|41)")),
]

OFF_LIMITS_PATTERNS: List[Tuple[str, Pattern[str]]] = [
    ("self_harm", re.compile(r"self[- ]harm|suicid")),
    ("sexual", re.compile(r"sexual")),
    ("violence_illegal", re.compile(r"violence|illegal")),
    ("financial", re.compile(r"\bloans?\b|money lending|moneylender")),
]

EMERGENCY_REPLY = "⚠️ This may be urgent. Please call 995 or go to the nearest A&E now."
OFF_LIMITS_REPLY = (
    "Sorry, I can't assist with that topic. If you feel unsafe, call SOS (1767) or IMH (6389 2222)."
)


def matched_category(text: str) -> Optional[Tuple[SafetyClass, str]]:
    """Purpose: Find the first safety category that matches the text.
    Inputs/Outputs: Input is raw text; output is (class, category name) or None.
    Side Effects / State: None; pure function.
    Dependencies: EMERGENCY_PATTERNS then OFF_LIMITS_PATTERNS, in order.
    Failure Modes: None; unmatched text returns None.
    If Removed: classify() has no evidence to report in logs.
    Testing Notes: Text matching both families must report the emergency category.
    """
    normalized = normalize_text(text)
    for name, pattern in EMERGENCY_PATTERNS:
        if pattern.search(normalized):
            return SafetyClass.EMERGENCY, name
    for name, pattern in OFF_LIMITS_PATTERNS:
        if pattern.search(normalized):
            return SafetyClass.OFF_LIMITS, name
    return None


def classify(text: str) -> SafetyClass:
    """Classify inbound text; emergency wins over off-limits."""
    match = matched_category(text)
    return match[0] if match else SafetyClass.NONE


def safety_reply(safety: SafetyClass) -> Optional[str]:
    if safety is SafetyClass.EMERGENCY:
        return EMERGENCY_REPLY
    if safety is SafetyClass.OFF_LIMITS:
        return OFF_LIMITS_REPLY
    return None
