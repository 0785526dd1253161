"""HTML cleaning plus title, text and link extraction."""
from __future__ import annotations

import re
from typing import List, Optional, Set
from urllib.parse import urljoin, urldefrag

from bs4 import BeautifulSoup

from venom.fetch.snapshot import ExtractedCss, ExtractedHtml, ExtractedLink
from venom.fetch.urls import domain_of, is_http_url

TAGS_TO_REMOVE = ("script", "noscript", "style", "iframe", "object", "embed", "applet")
LINK_RELS_TO_REMOVE = {"preload", "prefetch", "dns-prefetch", "preconnect"}
NOISY_ATTRIBUTE_PREFIXES = ("on", "data-v-", "ng-", "v-", "_ngcontent", "_nghost")
NOISY_ATTRIBUTES = {
    "data-reactid",
    "data-reactroot",
    "data-react-checksum",
    "data-testid",
    "data-test",
    "data-qa",
    "data-track",
    "data-tracking",
    "data-analytics",
    "data-gtm",
    "data-ga",
    "data-pixel",
    "jsaction",
    "jscontroller",
    "jsmodel",
    "jsname",
    "jsdata",
}
_WHITESPACE = re.compile(r"\s+")


def _is_noisy(attribute: str) -> bool:
    name = attribute.lower()
    return name in NOISY_ATTRIBUTES or name.startswith(NOISY_ATTRIBUTE_PREFIXES)


def extract_links(soup: BeautifulSoup, page_url: str) -> List[ExtractedLink]:
    """Absolute http(s) links in document order, deduplicated, flagged internal by host."""
    page_domain = domain_of(page_url)
    links: List[ExtractedLink] = []
    seen: Set[str] = set()
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.startswith(("javascript:", "mailto:", "tel:")):
            continue
        absolute, _ = urldefrag(urljoin(page_url, href))
        if not is_http_url(absolute) or absolute in seen:
            continue
        seen.add(absolute)
        links.append(
            ExtractedLink(
                href=absolute,
                text=_WHITESPACE.sub(" ", anchor.get_text(" ", strip=True))[:200],
                is_internal=domain_of(absolute) == page_domain,
            )
        )
    return links


def _meta_description(soup: BeautifulSoup) -> Optional[str]:
    tag = soup.find("meta", attrs={"name": "description"}) or soup.find("meta", attrs={"property": "og:description"})
    if tag and tag.get("content"):
        return tag["content"].strip()
    return None


def extract_html(html: str, page_url: str) -> ExtractedHtml:
    soup = BeautifulSoup(html, "html.parser")
    links = extract_links(soup, page_url)
    title_tag = soup.find("title")
    title = title_tag.get_text(strip=True) if title_tag else ""
    description = _meta_description(soup)

    for element in soup(list(TAGS_TO_REMOVE)):
        element.decompose()
    for element in soup.find_all("meta", attrs={"http-equiv": True}):
        element.decompose()
    for element in soup.find_all("link", rel=True):
        if LINK_RELS_TO_REMOVE.intersection(element.get("rel", [])):
            element.decompose()
    for element in soup.find_all(True):
        for attribute in [name for name in element.attrs if _is_noisy(name)]:
            del element[attribute]

    body = soup.body or soup
    text = _WHITESPACE.sub(" ", body.get_text(" ", strip=True)).strip()
    return ExtractedHtml(
        html=str(soup),
        title=title,
        description=description,
        text_content=text,
        links=links,
    )


def extract_css(html: str) -> ExtractedCss:
    """Bundle inline stylesheets; external sheets are counted but not fetched."""
    soup = BeautifulSoup(html, "html.parser")
    blocks = [style.get_text() for style in soup.find_all("style")]
    external = [link for link in soup.find_all("link", rel=True) if "stylesheet" in link.get("rel", [])]
    css = "\n".join(block.strip() for block in blocks if block.strip())
    return ExtractedCss(
        css=css,
        stylesheet_count=len(blocks) + len(external),
        original_size=sum(len(block) for block in blocks),
    )
