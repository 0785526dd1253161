"""Admission control for discovered URLs."""
from __future__ import annotations

from collections import Counter
from typing import Iterable, List, Set

import structlog

from venom.fetch.snapshot import PageCapture
from venom.fetch.urls import domain_of, is_http_url, normalize_url

LOGGER = structlog.get_logger(__name__)


class AdmissionFilter:
    """Decides whether a URL may become a job and owns the visited set.

    The visited set and the per-domain counters live for the lifetime of
    the filter (one process run) and are only emptied by ``reset()``.
    """

    def __init__(
        self,
        *,
        allowed_domains: Iterable[str] = (),
        blocked_domains: Iterable[str] = (),
        max_urls_per_domain: int = 100,
    ) -> None:
        self._allowed = [domain.lower() for domain in allowed_domains if domain]
        self._blocked = [domain.lower() for domain in blocked_domains if domain]
        self._max_urls_per_domain = max_urls_per_domain
        self._visited: Set[str] = set()
        self._per_domain: Counter[str] = Counter()

    def should_admit(self, url: str) -> bool:
        if normalize_url(url) in self._visited:
            return False
        if not is_http_url(url):
            return False
        domain = domain_of(url)
        if any(blocked in domain for blocked in self._blocked):
            return False
        if self._allowed and not any(allowed in domain for allowed in self._allowed):
            return False
        return True

    def admit(self, url: str) -> bool:
        """Check, apply the domain budget and mark ``url`` visited in one step.

        No await happens between the check and the mark, so two handlers
        racing on the same link cannot both be admitted.
        """
        if not self.should_admit(url):
            return False
        if self.domain_exhausted(domain_of(url)):
            return False
        self.mark_visited(url)
        return True

    def mark_visited(self, url: str) -> None:
        canonical = normalize_url(url)
        if canonical in self._visited:
            return
        self._visited.add(canonical)
        self._per_domain[domain_of(url)] += 1

    def forget(self, url: str) -> None:
        """Undo a mark whose job never made it into the frontier."""
        canonical = normalize_url(url)
        if canonical not in self._visited:
            return
        self._visited.discard(canonical)
        domain = domain_of(url)
        self._per_domain[domain] -= 1
        if self._per_domain[domain] <= 0:
            del self._per_domain[domain]

    def has_visited(self, url: str) -> bool:
        return normalize_url(url) in self._visited

    def domain_exhausted(self, domain: str) -> bool:
        return self._per_domain[domain] >= self._max_urls_per_domain

    def domain_count(self, domain: str) -> int:
        return self._per_domain[domain]

    @property
    def visited_count(self) -> int:
        return len(self._visited)

    def reset(self) -> None:
        self._visited.clear()
        self._per_domain.clear()

    def links_to_follow(self, capture: PageCapture, max_depth: int) -> List[str]:
        """Internal links of ``capture`` worth queueing; none once it sits at ``max_depth``.

        Nothing is marked visited here. Callers ``admit`` each link right
        before inserting its job and ``forget`` it if the insert fails.
        """
        if capture.depth >= max_depth:
            return []
        candidates: List[str] = []
        seen: Set[str] = set()
        for link in capture.internal_links:
            canonical = normalize_url(link.href)
            if canonical in seen or not self.should_admit(link.href):
                continue
            seen.add(canonical)
            candidates.append(link.href)
        remaining = max(self._max_urls_per_domain - self._per_domain[capture.domain], 0)
        LOGGER.debug(
            "links_selected",
            source=capture.url,
            selected=min(len(candidates), remaining),
            found=len(capture.html.links),
        )
        return candidates[:remaining]
