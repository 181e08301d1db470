from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from .canonical_bank import CanonicalAnswerBank
from .flows import Flow
from .utils import extract_urls, url_host

logger = logging.getLogger("babygpt.links")

MAX_LINKS = 6

ALLOWED_DOMAINS = (
    "healthhub.sg",
    "kkh.com.sg",
    "ecda.gov.sg",
    "life.gov.sg",
    "mom.gov.sg",
    "familiesforlife.sg",
    "hpb.gov.sg",
    "moh.gov.sg",
    "imh.com.sg",
    "sos.org.sg",
)


def is_allowed(url: str, allowed_domains: Iterable[str] = ALLOWED_DOMAINS) -> bool:
    """True when the URL host equals an allow-listed domain or is a subdomain of one."""
    host = url_host(url)
    if not host:
        return False
    return any(host == domain or host.endswith("." + domain) for domain in allowed_domains)


class LinkCurator:
    def __init__(
        self,
        bank: CanonicalAnswerBank,
        allowed_domains: Iterable[str] = ALLOWED_DOMAINS,
        max_links: int = MAX_LINKS,
    ) -> None:
        self._bank = bank
        self._allowed = tuple(domain.lower() for domain in allowed_domains)
        self._max_links = max_links

    def curate(self, flow: Flow, tag: Optional[str], generated_text: str) -> List[str]:
        """Purpose: Build the reference link list shown under a reply.
        Inputs/Outputs: Inputs are flow, optional tag and generated text; output is an
            ordered list of at most max_links unique URLs.
        Side Effects / State: None.
        Dependencies: CanonicalAnswerBank.links, extract_urls, is_allowed.
        Failure Modes: None; URLs outside the allow-list are dropped.
        If Removed: Replies lose curated references or leak unvetted domains.
        Testing Notes: Mix allowed, look-alike and duplicate URLs and check the output.
        """
        # Operator links first, then vetted links from the generated text.
        candidates = self._bank.links(flow, tag) + extract_urls(generated_text)
        curated: List[str] = []
        dropped = 0
        for url in candidates:
            if not is_allowed(url, self._allowed):
                dropped += 1
                continue
            if url in curated:
                continue
            curated.append(url)
        if dropped:
            logger.info("links flow=%s dropped=%s", flow.value, dropped)
        return curated[: self._max_links]
