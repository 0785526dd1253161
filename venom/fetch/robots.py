"""Robots.txt compliance gate."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.robotparser import RobotFileParser

import httpx
import structlog

from venom.fetch.urls import domain_of

LOGGER = structlog.get_logger(__name__)


@dataclass(slots=True)
class RobotsResult:
    is_allowed: bool
    crawl_delay: Optional[float] = None
    sitemaps: List[str] = field(default_factory=list)


class RobotsGate:
    """Caches parsed robots.txt per domain and answers allow/delay queries.

    Only successful fetches are cached. A missing file, an error status or a
    network failure allows everything and is retried on the next call.
    The cache lives as long as the gate; ``clear()`` empties it.
    """

    def __init__(
        self,
        *,
        user_agent: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._user_agent = user_agent
        self._timeout = timeout
        self._transport = transport
        self._cache: Dict[str, RobotFileParser] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def check(self, url: str) -> RobotsResult:
        """Return whether ``url`` may be fetched plus the domain's directives."""
        domain = domain_of(url)
        if not domain:
            return RobotsResult(is_allowed=True)
        parser = await self._parser_for(domain)
        if parser is None:
            return RobotsResult(is_allowed=True)
        delay = parser.crawl_delay(self._user_agent)
        return RobotsResult(
            is_allowed=parser.can_fetch(self._user_agent, url),
            crawl_delay=float(delay) if delay else None,
            sitemaps=list(parser.site_maps() or []),
        )

    async def allowed(self, url: str) -> bool:
        result = await self.check(url)
        return result.is_allowed

    def cached(self, domain: str) -> Optional[RobotFileParser]:
        return self._cache.get(domain)

    def clear(self) -> None:
        self._cache.clear()

    async def _parser_for(self, domain: str) -> Optional[RobotFileParser]:
        if domain in self._cache:
            return self._cache[domain]
        lock = self._locks.setdefault(domain, asyncio.Lock())
        async with lock:
            if domain in self._cache:
                return self._cache[domain]
            parser = await self._fetch(domain)
            if parser is not None:
                self._cache[domain] = parser
            return parser

    async def _fetch(self, domain: str) -> Optional[RobotFileParser]:
        robots_url = f"https://{domain}/robots.txt"
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                headers={"User-Agent": self._user_agent},
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                response = await client.get(robots_url)
        except httpx.HTTPError as exc:
            LOGGER.warning("robots_fetch_failed", domain=domain, error=str(exc))
            return None
        if not response.is_success:
            LOGGER.debug("robots_missing", domain=domain, status=response.status_code)
            return None
        parser = RobotFileParser(robots_url)
        parser.parse(response.text.splitlines())
        LOGGER.debug("robots_fetched", domain=domain, size=len(response.text))
        return parser
