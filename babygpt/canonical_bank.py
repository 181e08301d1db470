"""Canonical answer bank loaded from the packaged canonical.json resource.

The bank maps (flow, subtopic tag) to operator-authored answer text, flows to
their default reference links, and flows to the "base steps" hint the composer
passes to the completion service. Lookups are pure; a missing entry is normal.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .flows import Flow

logger = logging.getLogger("babygpt.canonical")


@dataclass(frozen=True)
class CanonicalAnswer:
    flow: Flow
    tag: str
    text: str


@dataclass(frozen=True)
class ReferenceLink:
    title: str
    url: str


@dataclass
class BankMeta:
    """Metadata describing the resource file version for logging."""
    file_name: str
    updated_at: str
    sha256: str


class CanonicalAnswerBank:
    def __init__(
        self,
        answers: Dict[Tuple[Flow, str], CanonicalAnswer],
        links: Dict[str, List[ReferenceLink]],
        hints: Optional[Dict[Flow, str]] = None,
        helplines: Optional[Dict[Flow, List[str]]] = None,
        meta: Optional[BankMeta] = None,
    ) -> None:
        self._answers = dict(answers)
        self._links = {key: list(value) for key, value in links.items()}
        self._hints = dict(hints or {})
        self._helplines = dict(helplines or {})
        self.meta = meta
        self._titles = {link.url: link.title for group in self._links.values() for link in group}

    @classmethod
    def from_file(cls, path: Path) -> "CanonicalAnswerBank":
        """Purpose: Load and validate the canonical bank from a JSON resource file.
        Inputs/Outputs: Input is a Path; returns a populated CanonicalAnswerBank.
        Side Effects / State: Reads the file and computes its hash and mtime.
        Dependencies: Uses json, hashlib and _parse_bank.
        Failure Modes: Missing files and JSON decode errors raise to the caller;
            entries naming an unknown flow raise ValueError.
        If Removed: Every reply relies on the generated answer alone.
        Testing Notes: Load the packaged file and check known (flow, tag) pairs.
        """
        # Read bytes for hashing, then parse the JSON payload.
        raw_bytes = path.read_bytes()
        meta = BankMeta(
            file_name=path.name,
            updated_at=datetime.fromtimestamp(path.stat().st_mtime).isoformat(),
            sha256=hashlib.sha256(raw_bytes).hexdigest(),
        )
        data = json.loads(raw_bytes.decode("utf-8-sig"))
        bank = _parse_bank(data, meta)
        logger.info(
            "canonical bank loaded file=%s answers=%s sha256=%s",
            meta.file_name,
            len(bank._answers),
            meta.sha256[:12],
        )
        return bank

    def lookup(self, flow: Flow, tag: Optional[str]) -> Optional[CanonicalAnswer]:
        if not tag:
            return None
        return self._answers.get((flow, tag))

    def links(self, flow: Flow, tag: Optional[str] = None) -> List[str]:
        """Return the tag-specific reference URLs when present, else the flow defaults."""
        if tag and f"{flow.value}/{tag}" in self._links:
            group = self._links[f"{flow.value}/{tag}"]
        else:
            group = self._links.get(flow.value, [])
        return [link.url for link in group]

    def hint(self, flow: Flow) -> str:
        return self._hints.get(flow, "")

    def helplines(self, flow: Flow) -> List[str]:
        return list(self._helplines.get(flow, []))

    def title_for(self, url: str) -> Optional[str]:
        return self._titles.get(url)


def _parse_bank(data: Dict[str, Any], meta: Optional[BankMeta] = None) -> CanonicalAnswerBank:
    answers: Dict[Tuple[Flow, str], CanonicalAnswer] = {}
    for entry in data.get("answers", []):
        if not isinstance(entry, dict):
            continue
        flow = _require_flow(entry.get("flow"))
        tag = str(entry.get("tag") or "").strip()
        text = str(entry.get("text") or "").strip()
        if not tag or not text:
            continue
        answers[(flow, tag)] = CanonicalAnswer(flow=flow, tag=tag, text=text)

    links: Dict[str, List[ReferenceLink]] = {}
    for key, group in (data.get("links") or {}).items():
        _require_flow(key.split("/", 1)[0])
        links[key] = [
            ReferenceLink(title=str(item.get("title") or ""), url=str(item["url"]))
            for item in group
            if isinstance(item, dict) and item.get("url")
        ]

    hints = {_require_flow(key): str(value) for key, value in (data.get("hints") or {}).items()}
    helplines = {
        _require_flow(key): [str(line) for line in value]
        for key, value in (data.get("helplines") or {}).items()
    }
    return CanonicalAnswerBank(answers, links, hints=hints, helplines=helplines, meta=meta)


def _require_flow(value: Any) -> Flow:
    flow = Flow.parse(str(value or ""))
    if flow is None:
        raise ValueError(f"Unknown flow in canonical bank: {value!r}")
    return flow
