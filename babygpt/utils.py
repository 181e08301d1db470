import json
import re
import unicodedata
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

URL_RE = re.compile(r"https?://[^\s<>()\[\]{}\"'`]+", re.IGNORECASE)
URL_TRAILING_PUNCTUATION = ".,;:!?*_~"


def normalize_text(text: str) -> str:
    """Purpose: Normalize free-form chat text for stable pattern matching.
    Inputs/Outputs: Input is a raw string; output is lowercase text with diacritics
        removed, typographic apostrophes folded, and whitespace collapsed.
    Side Effects / State: None; pure function.
    Dependencies: Uses unicodedata and regex; called by the safety filter and resolver.
    Failure Modes: Returns an empty string when input is falsy.
    If Removed: Patterns such as "won't sleep" miss curly-apostrophe input.
    Testing Notes: "Won’t  SLEEP" should become "won't sleep".
    """
    # Lowercase, strip combining marks, and collapse whitespace.
    if not text:
        return ""
    lowered = text.lower().replace("’", "'").replace("‘", "'")
    decomposed = unicodedata.normalize("NFD", lowered)
    stripped = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")
    return re.sub(r"\s+", " ", stripped).strip()


def extract_urls(text: str) -> List[str]:
    """Purpose: Extract well-formed http(s) URLs in order of first appearance.
    Inputs/Outputs: Input is free text; output is a de-duplicated list of URLs.
    Side Effects / State: None; pure function.
    Dependencies: Uses URL_RE and urllib.parse.urlsplit for host validation.
    Failure Modes: Tokens without a host are skipped.
    If Removed: Generated answers carry no links for the curator to vet.
    Testing Notes: Trailing punctuation and markdown parentheses must not leak into URLs.
    """
    # Trim sentence punctuation and keep only tokens with a parseable host.
    seen = set()
    urls: List[str] = []
    for match in URL_RE.finditer(text or ""):
        candidate = match.group(0).rstrip(URL_TRAILING_PUNCTUATION)
        if not url_host(candidate):
            continue
        if candidate in seen:
            continue
        seen.add(candidate)
        urls.append(candidate)
    return urls


def url_host(url: str) -> str:
    """Return the lowercase host of a URL, or an empty string when it has none."""
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return ""
    return (host or "").lower().rstrip(".")


def extract_json_block(text: str) -> Optional[str]:
    """Purpose: Extract the first JSON object block from an arbitrary string.
    Inputs/Outputs: Input is a raw string; output is JSON substring or None.
    Side Effects / State: None; pure function.
    Dependencies: None beyond built-ins; used by safe_json_loads.
    Failure Modes: Returns None if braces are missing or inverted.
    If Removed: Fenced model output cannot be parsed by the classifier and judge.
    Testing Notes: Provide strings with extra text before/after JSON and ensure extraction.
    """
    # Locate the outermost JSON braces to extract a parseable block.
    if not text:
        return None
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return text[start : end + 1]


def safe_json_loads(text: str) -> Optional[Dict[str, Any]]:
    """Parse a JSON object from model output, returning None when it is not one."""
    block = extract_json_block(text)
    if not block:
        return None
    try:
        data = json.loads(block)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None
