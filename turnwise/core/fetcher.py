"""Fetch the content behind a URL typed as a chat message.

HTML pages are reduced to their visible text, plain text is kept as-is, and
PDFs go through a pdf-to-text endpoint when one is configured. Bodies are
streamed and the download stops as soon as it passes ``max_bytes``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import urlparse

import httpx
import structlog
from bs4 import BeautifulSoup

from turnwise.config import FetchConfig
from turnwise.core.errors import FetchFailedError

logger = structlog.get_logger()

_WHITESPACE = re.compile(r"[ \t\r\f\v]+")
_BLANK_LINES = re.compile(r"\n\s*\n+")

_HTML_TYPES = ("text/html", "application/xhtml+xml")
_SKIP_TAGS = ["head", "title", "script", "style", "noscript", "template", "svg"]
_BLOCK_TAGS = [
    "p", "div", "li", "tr", "h1", "h2", "h3", "h4", "h5", "h6",
    "section", "article", "header", "footer", "pre", "blockquote",
]


def is_url(text: str) -> bool:
    """True if the whole input is a single http(s) URL."""
    text = text.strip()
    if not text or any(ch.isspace() for ch in text):
        return False
    parsed = urlparse(text)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


@dataclass
class FetchedResource:
    """Text content of a fetched URL."""

    url: str
    content: str
    byte_size: int
    mime_kind: str


def html_to_text(html: str) -> str:
    """Visible text of an HTML document, title first."""
    soup = BeautifulSoup(html, "html.parser")
    title = soup.title.get_text(strip=True) if soup.title else ""

    for tag in soup(_SKIP_TAGS):
        tag.decompose()
    for br in soup("br"):
        br.replace_with("\n")
    for block in soup(_BLOCK_TAGS):
        block.insert_before("\n")
        block.insert_after("\n")

    raw = _WHITESPACE.sub(" ", soup.get_text())
    lines = [line.strip() for line in raw.split("\n")]
    body = _BLANK_LINES.sub("\n\n", "\n".join(lines)).strip()
    if title and not body.startswith(title):
        return f"{title}\n\n{body}"
    return body


def _mime_type(resp: httpx.Response) -> str:
    return resp.headers.get("content-type", "").split(";")[0].strip().lower()


class ResourceFetcher:
    """Fetches URL inputs over HTTP."""

    def __init__(
        self,
        config: FetchConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or FetchConfig()
        self._client = client

    def _make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.config.timeout,
            follow_redirects=True,
            headers={"User-Agent": self.config.user_agent},
        )

    async def fetch(self, url: str) -> FetchedResource:
        """Fetch a URL and return its text. Raises FetchFailedError."""
        if self._client is not None:
            return await self._fetch(self._client, url)
        async with self._make_client() as client:
            return await self._fetch(client, url)

    async def _fetch(self, client: httpx.AsyncClient, url: str) -> FetchedResource:
        body = b""
        text = ""
        try:
            async with client.stream("GET", url) as resp:
                if resp.status_code >= 400:
                    logger.warning("fetch_failed", url=url, status=resp.status_code)
                    raise FetchFailedError(url, f"HTTP {resp.status_code} {resp.reason_phrase}".strip())

                mime = _mime_type(resp)
                is_pdf = mime == "application/pdf" or (not mime and url.lower().endswith(".pdf"))
                if not is_pdf:
                    if mime and mime not in _HTML_TYPES and not mime.startswith("text/"):
                        raise FetchFailedError(url, f"unsupported content type {mime}")
                    body = await self._read_body(url, resp)
                    text = body.decode(resp.charset_encoding or "utf-8", errors="replace")
        except httpx.HTTPError as e:
            logger.warning("fetch_failed", url=url, error=str(e))
            raise FetchFailedError(url, str(e) or type(e).__name__) from e

        if is_pdf:
            return await self._pdf_to_text(client, url)

        if mime in _HTML_TYPES:
            content = html_to_text(text)
            mime_kind = "text/html"
        else:
            content = text.strip()
            mime_kind = "text/plain"

        if not content:
            raise FetchFailedError(url, "no text content")

        logger.info("fetch_ok", url=url, mime=mime_kind, bytes=len(body), chars=len(content))
        return FetchedResource(url=url, content=content, byte_size=len(body), mime_kind=mime_kind)

    async def _read_body(self, url: str, resp: httpx.Response) -> bytes:
        """Read the body, giving up once it passes ``max_bytes``."""
        limit = self.config.max_bytes
        declared = resp.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > limit:
            logger.warning("fetch_too_large", url=url, declared=int(declared), limit=limit)
            raise FetchFailedError(url, f"response too large ({declared} bytes)")

        body = bytearray()
        async for chunk in resp.aiter_bytes():
            body.extend(chunk)
            if len(body) > limit:
                logger.warning("fetch_too_large", url=url, received=len(body), limit=limit)
                raise FetchFailedError(url, f"response too large (over {limit} bytes)")
        return bytes(body)

    async def _pdf_to_text(self, client: httpx.AsyncClient, url: str) -> FetchedResource:
        """Convert a PDF via the configured pdf2text endpoint."""
        endpoint = self.config.pdf2text_url
        if not endpoint:
            raise FetchFailedError(url, "PDF input needs fetch.pdf2text_url to be configured")

        try:
            resp = await client.get(endpoint, params={"url": url})
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise FetchFailedError(url, f"pdf2text failed: {e}") from e

        if not isinstance(data, dict):
            raise FetchFailedError(url, "pdf2text returned an unexpected payload")
        if resp.status_code >= 400 or "error" in data:
            reason = data.get("error") or resp.status_code
            raise FetchFailedError(url, f"pdf2text failed: {reason}")

        content = (data.get("content") or "").strip()
        if not content:
            raise FetchFailedError(url, "no text content")

        logger.info("fetch_ok", url=url, mime="application/pdf", chars=len(content))
        return FetchedResource(
            url=url,
            content=content,
            byte_size=int(data.get("size") or len(content)),
            mime_kind="application/pdf",
        )
