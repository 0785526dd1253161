"""Representations of rendered pages and their captions."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


@dataclass(slots=True)
class ExtractedLink:
    href: str
    text: str
    is_internal: bool


@dataclass(slots=True)
class ExtractedHtml:
    """Cleaned markup plus the facts pulled out of it."""

    html: str
    title: str
    text_content: str
    links: List[ExtractedLink] = field(default_factory=list)
    description: Optional[str] = None


@dataclass(slots=True)
class ExtractedCss:
    css: str = ""
    stylesheet_count: int = 0
    original_size: int = 0


@dataclass(slots=True)
class CaptionResult:
    """Structured description produced by a captioning provider."""

    caption: str
    visual_elements: List[str]
    page_type: str
    confidence: float
    model: str
    tokens_used: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(slots=True)
class PageCapture:
    """The rendered artifact and extracted data for one fetched job."""

    url: str
    normalized_url: str
    domain: str
    depth: int
    screenshot_path: str
    html: ExtractedHtml
    css: ExtractedCss
    status_code: int
    final_url: str
    load_time_ms: int
    capture_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    bytes_downloaded: int = 0
    caption: Optional[CaptionResult] = None

    @property
    def internal_links(self) -> List[ExtractedLink]:
        return [link for link in self.html.links if link.is_internal]
