"""Fetch stage — download a page and convert it to markdown-ish text.

Security requirements:
- Content-Type whitelist: text/html and text/plain only.
- Max response body: 5 MB (configurable).
- Timeout: 30 seconds (connect + read).
- Max redirects: 3; every redirect target goes through the URL guard.

Transient failures (network errors, timeouts, HTTP 408/429/5xx) raise a
retryable ``FetchError``; everything else is final.
"""

from __future__ import annotations

import logging
import re
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from http.client import HTTPException, HTTPResponse
from typing import Callable

import html2text
from bs4 import BeautifulSoup

from knowio.errors import FetchError, ValidationFailure

logger = logging.getLogger(__name__)

_DEFAULT_USER_AGENT = "knowio-bot/0.1"
_MAX_BYTES = 5 * 1024 * 1024  # 5 MB
_TIMEOUT = 30  # seconds
_MAX_REDIRECTS = 3
_MAX_LINKS = 50
_ALLOWED_CONTENT_TYPES = {"text/html", "text/plain"}
_RETRYABLE_STATUS = {408, 425, 429}

# Elements that never hold page content.
_STRIP_TAGS = [
    "script", "style", "noscript", "head", "nav", "header", "footer", "aside",
    "form", "button", "input", "select", "textarea", "iframe", "embed", "object",
    "video", "audio",
]
_STRIP_CLASSES = {
    "nav", "navigation", "menu", "sidebar", "header", "footer", "banner",
    "advertisement", "ads", "ad", "promo", "promotion", "social", "share",
    "sharing", "comments", "comment-section", "breadcrumb", "breadcrumbs",
    "pagination", "pager", "related", "recommended",
}
_STRIP_ROLES = {"navigation", "banner", "contentinfo"}
# Preferred containers for the main text, in priority order.
_CONTENT_SELECTORS = [
    "main", "article", "[role=main]", ".main-content", ".content", "#content",
    ".post-content", ".entry-content", ".article-content", ".documentation",
    ".docs", ".api-docs",
]
_SKIP_LINK_RE = re.compile(r"\.(css|js|json|xml|pdf|zip|tar|gz|exe|dmg|png|jpe?g|gif|svg)$", re.I)
_NAV_LINK_WORDS = ("nav", "menu", "breadcrumb", "pagination", "footer", "header")
_NAV_CONTAINERS = ["nav", "header", "footer"]


@dataclass
class FetchedPage:
    url: str
    title: str
    content: str
    links: list[str] = field(default_factory=list)


def _make_converter() -> html2text.HTML2Text:
    h2t = html2text.HTML2Text()
    h2t.ignore_links = True
    h2t.ignore_images = True
    h2t.ignore_emphasis = True
    h2t.body_width = 0
    return h2t


class Fetcher:
    """Fetch pages over HTTP(S) and extract text, title, and same-host links.

    Args:
        user_agent: Sent as the User-Agent header.
        timeout: Socket timeout per request in seconds.
        max_bytes: Largest accepted body.
        max_redirects: Redirects followed before giving up.
        url_guard: Called with every redirect target; raising stops the fetch.
    """

    def __init__(
        self,
        *,
        user_agent: str = _DEFAULT_USER_AGENT,
        timeout: float = _TIMEOUT,
        max_bytes: int = _MAX_BYTES,
        max_redirects: int = _MAX_REDIRECTS,
        url_guard: Callable[[str], None] | None = None,
    ) -> None:
        self.user_agent = user_agent
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.max_redirects = max_redirects
        self._url_guard = url_guard

    def fetch(self, url: str) -> FetchedPage:
        """Download *url* and return its text content and outgoing links.

        Raises:
            FetchError: ``retryable`` is set for transient failures.
        """
        body, content_type, final_url = self._download(url)
        text = body.decode("utf-8", errors="replace")

        if content_type == "text/plain":
            page = FetchedPage(url=url, title=_title_from_url(final_url), content=text.strip())
        else:
            page = parse_html(text, url=url, base_url=final_url)

        if not page.content.strip():
            raise FetchError(f"No content extracted from '{url}'")
        logger.debug("Fetched %s (%d chars, %d links)", url, len(page.content), len(page.links))
        return page

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _download(self, url: str) -> tuple[bytes, str, str]:
        """Return (body, content_type_without_params, final_url)."""
        request = urllib.request.Request(url, headers={"User-Agent": self.user_agent})
        opener = urllib.request.build_opener(
            _LimitedRedirectHandler(self.max_redirects, self._url_guard)
        )

        try:
            response: HTTPResponse = opener.open(request, timeout=self.timeout)
        except urllib.error.HTTPError as exc:
            retryable = exc.code in _RETRYABLE_STATUS or exc.code >= 500
            raise FetchError(
                f"HTTP {exc.code} fetching '{url}'", retryable=retryable
            ) from exc
        except urllib.error.URLError as exc:
            raise FetchError(f"Failed to fetch URL '{url}': {exc.reason}", retryable=True) from exc
        except (TimeoutError, socket.timeout, ConnectionError, HTTPException) as exc:
            raise FetchError(f"Failed to fetch URL '{url}': {exc}", retryable=True) from exc

        with response:
            raw_ct = response.headers.get("Content-Type", "text/html")
            ct = raw_ct.split(";")[0].strip().lower()
            if ct not in _ALLOWED_CONTENT_TYPES:
                raise FetchError(
                    f"Unsupported Content-Type '{ct}' for URL '{url}'. "
                    f"Accepted: {', '.join(sorted(_ALLOWED_CONTENT_TYPES))}"
                )

            try:
                body = response.read(self.max_bytes + 1)
            except (TimeoutError, socket.timeout, ConnectionError, HTTPException) as exc:
                raise FetchError(
                    f"Failed reading body of '{url}': {exc}", retryable=True
                ) from exc
            final_url = response.geturl() or url

        if len(body) > self.max_bytes:
            raise FetchError(
                f"Response body exceeds {self.max_bytes // (1024 * 1024)} MB limit for URL '{url}'."
            )
        return body, ct, final_url


class _LimitedRedirectHandler(urllib.request.HTTPRedirectHandler):
    """Raise an error after more than *max_redirects* redirects."""

    def __init__(self, max_redirects: int, url_guard: Callable[[str], None] | None) -> None:
        self._max_redirects = max_redirects
        self._url_guard = url_guard
        self._count = 0

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        self._count += 1
        if self._count > self._max_redirects:
            raise FetchError(
                f"Too many redirects (>{self._max_redirects}) for URL '{req.full_url}'."
            )
        if self._url_guard is not None:
            try:
                self._url_guard(newurl)
            except ValidationFailure as exc:
                raise FetchError(f"Redirect to '{newurl}' rejected: {exc}") from exc
        return super().redirect_request(req, fp, code, msg, headers, newurl)


# ---------------------------------------------------------------------------
# HTML extraction
# ---------------------------------------------------------------------------


def parse_html(html: str, *, url: str, base_url: str | None = None) -> FetchedPage:
    """Extract title, main text, and crawlable links from *html*."""
    soup = BeautifulSoup(html, "html.parser")
    base = base_url or url

    title = _extract_title(soup) or _title_from_url(base)
    links = extract_links(soup, base)

    for tag in soup.find_all(_STRIP_TAGS):
        tag.decompose()
    for tag in soup.find_all(_is_boilerplate):
        if not tag.decomposed:
            tag.decompose()

    container = None
    for selector in _CONTENT_SELECTORS:
        container = soup.select_one(selector)
        if container is not None:
            break
    if container is None:
        container = soup.body or soup

    text = _make_converter().handle(str(container))
    text = re.sub(r"\n{3,}", "\n\n", text).strip()
    return FetchedPage(url=url, title=title, content=text, links=links)


def extract_links(soup: BeautifulSoup, base_url: str) -> list[str]:
    """Absolute same-host http(s) links, fragment-free, de-duplicated, in order."""
    base_host = urllib.parse.urlsplit(base_url).hostname
    own = urllib.parse.urldefrag(base_url)[0]
    seen: set[str] = set()
    links: list[str] = []

    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.startswith(("#", "javascript:", "mailto:", "tel:")):
            continue
        attrs = " ".join(anchor.get("class", [])) + " " + (anchor.get("id") or "")
        if any(word in attrs.lower() for word in _NAV_LINK_WORDS):
            continue
        if anchor.find_parent(_NAV_CONTAINERS) is not None:
            continue

        absolute = urllib.parse.urldefrag(urllib.parse.urljoin(base_url, href))[0]
        parsed = urllib.parse.urlsplit(absolute)
        if parsed.scheme not in ("http", "https") or parsed.hostname != base_host:
            continue
        if _SKIP_LINK_RE.search(parsed.path) or absolute == own:
            continue
        if absolute in seen:
            continue
        seen.add(absolute)
        links.append(absolute)
        if len(links) >= _MAX_LINKS:
            break
    return links


def _is_boilerplate(tag) -> bool:
    if tag.attrs is None:
        return False
    classes = {c.lower() for c in tag.get("class", [])}
    if classes & _STRIP_CLASSES:
        return True
    return (tag.get("role") or "").lower() in _STRIP_ROLES


def _extract_title(soup: BeautifulSoup) -> str:
    if soup.title and soup.title.get_text(strip=True):
        return soup.title.get_text(strip=True)
    h1 = soup.find("h1")
    return h1.get_text(strip=True) if h1 else ""


def _title_from_url(url: str) -> str:
    parsed = urllib.parse.urlsplit(url)
    segment = parsed.path.rstrip("/").rsplit("/", 1)[-1]
    return segment or parsed.hostname or url
