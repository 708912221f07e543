"""
Content acquisition: turns a URL, an uploaded PDF, or a bare topic into
plain extracted text (or an explicit absence of text for topic-only sessions).
"""
from __future__ import annotations

import asyncio
import re
from contextlib import closing
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

import fitz
import httpx
from bs4 import BeautifulSoup

from . import config
from .errors import ExtractionError
from .observability import get_logger

logger = get_logger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")

# Boilerplate stripped before looking for the main content container.
_NOISE_SELECTORS = "script, style, noscript, nav, header, footer, aside, .advertisement, .ads, .social-share"

# Searched in order; the first match wins.
CONTENT_SELECTORS = (
    "article",
    "main",
    '[role="main"]',
    ".content",
    ".post-content",
    ".entry-content",
    ".article-content",
    "#content",
    ".main-content",
)


@dataclass(frozen=True)
class AcquiredContent:
    source_kind: str
    text: str | None
    url: str | None = None
    file_name: str | None = None

    @property
    def is_topic_only(self) -> bool:
        return self.text is None


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", str(text or "")).strip()


def validate_url(url: str) -> str:
    candidate = str(url or "").strip()
    parsed = urlparse(candidate)
    if parsed.scheme.lower() not in {"http", "https"}:
        raise ExtractionError(
            "Invalid URL protocol. Only HTTP and HTTPS are supported.", status_code=400
        )
    if not parsed.netloc:
        raise ExtractionError(f"Invalid URL: {candidate!r}", status_code=400)
    return candidate


def html_to_text(html: str) -> str:
    """Extracts readable text from the main content container, falling back to <body>."""
    soup = BeautifulSoup(html or "", "html.parser")
    for element in soup.select(_NOISE_SELECTORS):
        element.decompose()

    for selector in CONTENT_SELECTORS:
        container = soup.select_one(selector)
        if container is not None:
            text = collapse_whitespace(container.get_text(" "))
            if text:
                return text
            break

    body = soup.body if soup.body is not None else soup
    return collapse_whitespace(body.get_text(" "))


async def fetch_html(url: str, client: httpx.AsyncClient | None = None) -> str:
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(
            timeout=config.FETCH_TIMEOUT_S,
            follow_redirects=True,
            max_redirects=5,
            headers={"User-Agent": config.FETCH_USER_AGENT},
        )
    try:
        response = await client.get(url)
        response.raise_for_status()
        return response.text
    except httpx.HTTPStatusError as exc:
        status = exc.response.status_code
        raise ExtractionError(
            f"Content extraction failed: Failed to fetch content: {status} {exc.response.reason_phrase}"
        ) from exc
    except httpx.HTTPError as exc:
        raise ExtractionError(f"Content extraction failed: {type(exc).__name__}: {exc}") from exc
    finally:
        if owns_client:
            await client.aclose()


async def extract_from_url(
    url: str,
    client: httpx.AsyncClient | None = None,
    min_chars: int | None = None,
) -> str:
    url = validate_url(url)
    floor = config.MIN_URL_CONTENT_CHARS if min_chars is None else int(min_chars)
    html = await fetch_html(url, client=client)
    text = html_to_text(html)
    if len(text) < floor:
        raise ExtractionError(
            "Content extraction failed: Unable to extract meaningful content from the URL"
        )
    logger.info("content_extracted", source="url", url=url, chars=len(text))
    return text


def extract_pdf_text(path: str | Path, min_chars: int | None = None) -> str:
    floor = config.MIN_PDF_CONTENT_CHARS if min_chars is None else int(min_chars)
    try:
        with closing(fitz.open(str(path))) as pdf_doc:
            raw = "\n".join(page.get_text("text") for page in pdf_doc)
    except Exception as exc:
        raise ExtractionError(f"PDF processing failed: {exc}") from exc

    text = collapse_whitespace(raw)
    if len(text) < floor:
        raise ExtractionError("PDF processing failed: Unable to extract meaningful text from the PDF")
    logger.info("content_extracted", source="pdf", path=str(path), chars=len(text))
    return text


async def extract_from_pdf(path: str | Path, min_chars: int | None = None) -> str:
    """Runs the blocking PyMuPDF extraction off the event loop."""
    return await asyncio.to_thread(extract_pdf_text, path, min_chars)


async def acquire_url(url: str, client: httpx.AsyncClient | None = None) -> AcquiredContent:
    text = await extract_from_url(url, client=client)
    return AcquiredContent(source_kind="url", text=text, url=str(url).strip())


async def acquire_pdf(path: str | Path, file_name: str) -> AcquiredContent:
    text = await extract_from_pdf(path)
    return AcquiredContent(source_kind="pdf", text=text, file_name=str(file_name))


def acquire_topic() -> AcquiredContent:
    return AcquiredContent(source_kind="topic-only", text=None)
