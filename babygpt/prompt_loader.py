"""System-instruction templates stored as text files under `prompts/`."""

from __future__ import annotations

import logging
import string
from functools import lru_cache
from pathlib import Path
from typing import FrozenSet, Iterable

logger = logging.getLogger("babygpt.prompts")


class PromptTemplate:
    """A prompt file whose `{placeholders}` were checked against the caller's fields."""

    def __init__(self, name: str, text: str, fields: FrozenSet[str]) -> None:
        self.name = name
        self.text = text
        self.fields = fields

    def render(self, **values: object) -> str:
        missing = self.fields - set(values)
        if missing:
            raise KeyError(f"prompt {self.name} missing values: {sorted(missing)}")
        return self.text.format(**values)


def template_fields(text: str) -> FrozenSet[str]:
    """Return the named placeholders in a str.format template; `{{ }}` escapes are ignored."""
    return frozenset(field for _, field, _, _ in string.Formatter().parse(text) if field)


def load_template(prompt_path: Path, fields: Iterable[str]) -> PromptTemplate:
    """Purpose: Load a prompt template once and verify its placeholders.
    Inputs/Outputs: Inputs are the prompt path and the placeholder names the caller
        will supply; output is a PromptTemplate.
    Side Effects / State: Reads the file on first use; later calls hit the cache.
    Dependencies: template_fields, _read_prompt.
    Failure Modes: A missing file raises FileNotFoundError; placeholders that differ
        from `fields` or malformed braces raise ValueError at startup rather than
        on the first user message.
    If Removed: Composer, judge and classifier have no system instruction.
    Testing Notes: Point at a temp file with an unexpected placeholder.
    """
    return _load_template(Path(prompt_path).resolve(), frozenset(fields))


@lru_cache(maxsize=None)
def _load_template(prompt_path: Path, fields: FrozenSet[str]) -> PromptTemplate:
    text = _read_prompt(prompt_path)
    found = template_fields(text)
    if found != fields:
        raise ValueError(
            f"prompt {prompt_path.name} placeholders {sorted(found)} do not match expected {sorted(fields)}"
        )
    logger.info("prompt loaded file=%s fields=%s", prompt_path.name, ",".join(sorted(fields)))
    return PromptTemplate(prompt_path.name, text, fields)


def _read_prompt(prompt_path: Path) -> str:
    # Editors on Windows save prompts with a BOM.
    return prompt_path.read_text(encoding="utf-8").lstrip("\ufeff")
