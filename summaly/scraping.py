"""
Entry points composing the fetcher, the tag stripper and the charset resolver.

scraping() is the HTML path used for previews; get() and head() are the plain
text and header-only paths.
"""
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import httpx
import lxml.html
import structlog

from .encoding import DEFAULT_ENCODING, resolve_detailed, to_encoding, to_text
from .fetcher import HTTPFetcher, RetrievalRequest
from .stripper import strip_stream

logger = structlog.get_logger(__name__)

HTML_TYPE_FILTER = re.compile(r'^(text/html|application/xhtml\+xml)')
HTML_ACCEPT = 'text/html,application/xhtml+xml'

# lxml refuses str input that still declares an encoding
_XML_DECLARATION = re.compile(r'^\s*<\?xml[^>]*>', re.IGNORECASE)


@dataclass
class ScrapeResult:
    body: str
    document: lxml.html.HtmlElement
    response: httpx.Response
    encoding: str
    encoding_source: str


@asynccontextmanager
async def _fetcher_scope(fetcher: Optional[HTTPFetcher]):
    """Use the caller's fetcher, or a throwaway one closed on exit."""
    if fetcher is not None:
        yield fetcher
        return
    async with HTTPFetcher() as owned:
        yield owned


def parse_document(text: str) -> lxml.html.HtmlElement:
    text = _XML_DECLARATION.sub('', text, count=1)
    if not text.strip():
        text = '<html></html>'
    return lxml.html.document_fromstring(text)


async def scraping(
    url: str,
    *,
    lang: Optional[str] = None,
    user_agent: Optional[str] = None,
    response_timeout: Optional[float] = None,
    operation_timeout: Optional[float] = None,
    content_length_limit: Optional[int] = None,
    content_length_required: Optional[bool] = None,
    fetcher: Optional[HTTPFetcher] = None,
) -> ScrapeResult:
    """Fetch an HTML page and decode it with the best known charset."""
    async with _fetcher_scope(fetcher) as active:
        request = RetrievalRequest(
            url=url,
            method='GET',
            headers={
                'Accept': HTML_ACCEPT,
                'User-Agent': user_agent or active.user_agent,
                'Accept-Language': lang,
            },
            type_filter=HTML_TYPE_FILTER,
            response_timeout=response_timeout,
            operation_timeout=operation_timeout,
            content_length_limit=content_length_limit,
            content_length_required=content_length_required,
        )
        async with await active.fetch(request) as retrieval:
            stripped = await strip_stream(retrieval.aiter_bytes())

    resolution = resolve_detailed(stripped.candidates, retrieval.response.charset_encoding, stripped.body)

    logger.info("scraping_completed",
                url=url,
                final_url=retrieval.url,
                transferred=retrieval.transferred,
                stripped_size=len(stripped.body),
                encoding=resolution.encoding,
                encoding_source=resolution.source)

    return ScrapeResult(
        body=resolution.text,
        document=parse_document(resolution.text),
        response=retrieval.response,
        encoding=resolution.encoding,
        encoding_source=resolution.source,
    )


async def get(url: str, *, fetcher: Optional[HTTPFetcher] = None) -> str:
    """GET *url* and return its body as text (header charset, else utf-8)."""
    request = RetrievalRequest(url=url, method='GET', headers={'Accept': '*/*'})
    async with _fetcher_scope(fetcher) as active:
        async with await active.fetch(request) as retrieval:
            body = await retrieval.read()

    encoding = to_encoding(retrieval.response.charset_encoding) or DEFAULT_ENCODING
    return to_text(body, encoding)


async def head(url: str, *, fetcher: Optional[HTTPFetcher] = None) -> httpx.Response:
    """HEAD *url*; the response carries status, headers and the final URL."""
    request = RetrievalRequest(url=url, method='HEAD', headers={'Accept': '*/*'})
    async with _fetcher_scope(fetcher) as active:
        retrieval = await active.fetch(request)
        await retrieval.aclose()
    return retrieval.response
