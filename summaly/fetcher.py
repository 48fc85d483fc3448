"""
Encapsulates actual HTTP fetch logic on top of httpx.
Enforces the response and operation deadlines, the content type filter and
the size limit, and hands the body out as a lazily consumed stream.
Keeps network code separate from parsing.
"""
import asyncio
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Optional, Pattern, Union

import httpx
import structlog

from . import __version__
from .config import config
from .errors import (
    FetchTimeoutError,
    InvalidURLError,
    MissingContentLengthError,
    SizeExceededError,
    StatusError,
    TransportError,
    TypeRejectedError,
)
from .url_validator import validate_url

logger = structlog.get_logger(__name__)

DEFAULT_RESPONSE_TIMEOUT = 20.0
DEFAULT_OPERATION_TIMEOUT = 60.0
DEFAULT_MAX_RESPONSE_SIZE = 10 * 1024 * 1024
DEFAULT_MAX_REDIRECTS = 10
DEFAULT_BOT_UA = f"SummalyBot/{__version__}"

METHODS = ('GET', 'HEAD', 'POST')


def _or_default(value, default):
    return default if value is None else value


@dataclass
class RetrievalRequest:
    """A single bounded HTTP request.

    Header values set to None are left out of the request. Timeouts are in
    seconds. Fields left as None take the fetcher default; 0 is a real value.
    """
    url: str
    method: str = 'GET'
    body: Optional[Union[str, bytes]] = None
    headers: Dict[str, Optional[str]] = field(default_factory=dict)
    type_filter: Optional[Union[str, Pattern]] = None
    response_timeout: Optional[float] = None
    operation_timeout: Optional[float] = None
    content_length_limit: Optional[int] = None
    content_length_required: Optional[bool] = None

    def __post_init__(self):
        self.method = self.method.upper()
        if self.method not in METHODS:
            raise ValueError(f"Unsupported method: {self.method}")
        if self.method == 'HEAD' and self.body is not None:
            raise ValueError("HEAD requests cannot carry a body")
        if isinstance(self.type_filter, str):
            self.type_filter = re.compile(self.type_filter)

    def wire_headers(self) -> Dict[str, str]:
        return {name: value for name, value in self.headers.items() if value is not None}


class Deadlines:
    """Response and operation deadlines racing to abort the same request.

    The response deadline only bounds the wait for headers and is disarmed once
    they arrive; the operation deadline runs until the body is fully read.
    """

    def __init__(self, response_timeout: float, operation_timeout: float):
        now = asyncio.get_running_loop().time()
        self.response_timeout = response_timeout
        self.operation_timeout = operation_timeout
        self.response_at: Optional[float] = now + response_timeout
        self.operation_at = now + operation_timeout

    def disarm_response(self):
        self.response_at = None

    def earliest(self):
        """Return (when, phase, timeout) of the next deadline to fire."""
        if self.response_at is not None and self.response_at <= self.operation_at:
            return self.response_at, 'response', self.response_timeout
        return self.operation_at, 'operation', self.operation_timeout

    @asynccontextmanager
    async def guard(self):
        """Cancel the enclosed await when the earliest armed deadline passes."""
        when, phase, timeout = self.earliest()
        scope = asyncio.timeout_at(when)
        try:
            async with scope:
                yield
        except TimeoutError as e:
            if scope.expired():
                raise FetchTimeoutError(phase, timeout) from e
            raise


@asynccontextmanager
async def _http_errors(url: str, deadlines: Deadlines):
    """Translate httpx failures into the package error types."""
    try:
        yield
    except httpx.TimeoutException as e:
        _, phase, timeout = deadlines.earliest()
        raise FetchTimeoutError(phase, timeout) from e
    except httpx.RequestError as e:
        raise TransportError(url, e) from e


class Retrieval:
    """Validated response whose body has not been read yet.

    The body can be consumed once, through ``aiter_bytes``. Closing the
    retrieval (or leaving its ``async with`` block) releases the connection.
    """

    def __init__(self, response: httpx.Response, deadlines: Deadlines, limit: int):
        self.response = response
        self.limit = limit
        self.transferred = 0
        self._deadlines = deadlines
        self._consumed = False
        self._closed = False

    @property
    def url(self) -> str:
        return str(self.response.url)

    @property
    def status_code(self) -> int:
        return self.response.status_code

    @property
    def headers(self) -> httpx.Headers:
        return self.response.headers

    @property
    def closed(self) -> bool:
        return self._closed

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        """Yield body chunks, aborting once the transfer exceeds the limit."""
        if self._consumed:
            raise httpx.StreamConsumed()
        self._consumed = True

        chunks = self.response.aiter_bytes()
        try:
            while True:
                async with _http_errors(self.url, self._deadlines), self._deadlines.guard():
                    try:
                        chunk = await anext(chunks)
                    except StopAsyncIteration:
                        break
                self.transferred += len(chunk)
                if self.transferred > self.limit:
                    logger.warning("fetch_aborted", url=self.url, reason="size_exceeded",
                                   transferred=self.transferred, limit=self.limit)
                    await self.aclose()
                    raise SizeExceededError(self.limit, self.transferred)
                yield chunk
        except BaseException:
            await self.aclose()
            raise
        finally:
            await chunks.aclose()

        logger.debug("fetch_completed", url=self.url, transferred=self.transferred)

    def __aiter__(self):
        return self.aiter_bytes()

    async def read(self) -> bytes:
        return b''.join([chunk async for chunk in self.aiter_bytes()])

    async def aclose(self):
        if self._closed:
            return
        self._closed = True
        await self.response.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()


class HTTPFetcher:
    def __init__(self, settings: Dict = None, transport: httpx.AsyncBaseTransport = None):
        """Initialize the HTTP fetcher from the fetcher config section.

        Args:
            settings: Overrides for the ``fetcher`` config section.
            transport: Optional httpx transport, e.g. ``httpx.MockTransport``.
        """
        settings = {**config.fetcher, **(settings or {})}
        self.user_agent = settings.get('user_agent') or DEFAULT_BOT_UA
        self.response_timeout = float(_or_default(settings.get('response_timeout'), DEFAULT_RESPONSE_TIMEOUT))
        self.operation_timeout = float(_or_default(settings.get('operation_timeout'), DEFAULT_OPERATION_TIMEOUT))
        self.max_response_size = int(_or_default(settings.get('content_length_limit'), DEFAULT_MAX_RESPONSE_SIZE))
        self.content_length_required = bool(settings.get('content_length_required') or False)
        self.max_redirects = int(_or_default(settings.get('max_redirects'), DEFAULT_MAX_REDIRECTS))

        # deadlines are enforced by Deadlines, not by httpx
        self._client = httpx.AsyncClient(
            timeout=None,
            follow_redirects=True,
            max_redirects=self.max_redirects,
            headers={'User-Agent': self.user_agent},
            limits=httpx.Limits(
                max_connections=int(settings.get('max_connections') or 20),
                max_keepalive_connections=int(settings.get('max_keepalive_connections') or 10),
            ),
            transport=transport,
        )

    async def fetch(self, request: RetrievalRequest) -> Retrieval:
        """Send *request* and return the validated, still unread response.

        Raises a SummalyError subclass on any violation; the connection is
        released before the error leaves this method.
        """
        validation = validate_url(request.url)
        if not validation['valid']:
            raise InvalidURLError(request.url, validation['reason'])

        limit = _or_default(request.content_length_limit, self.max_response_size)
        required = _or_default(request.content_length_required, self.content_length_required)
        deadlines = Deadlines(
            _or_default(request.response_timeout, self.response_timeout),
            _or_default(request.operation_timeout, self.operation_timeout),
        )

        logger.info("fetch_started", url=request.url, method=request.method)
        http_request = self._client.build_request(
            request.method,
            request.url,
            headers=request.wire_headers(),
            content=request.body,
        )

        response = None
        try:
            async with _http_errors(request.url, deadlines), deadlines.guard():
                response = await self._client.send(http_request, stream=True)
            deadlines.disarm_response()

            logger.info("fetch_response",
                        url=request.url,
                        final_url=str(response.url),
                        status_code=response.status_code,
                        content_type=response.headers.get('content-type'),
                        content_length=response.headers.get('content-length'))

            self._validate(response, request.type_filter, limit, required)
        except BaseException as e:
            if response is not None:
                await response.aclose()
            logger.warning("fetch_rejected", url=request.url, error=str(e), error_type=type(e).__name__)
            raise

        return Retrieval(response, deadlines, limit)

    def _validate(self, response: httpx.Response, type_filter: Optional[Pattern], limit: int, required: bool):
        """Check status, content type and declared size before any body byte is read."""
        if not response.is_success:
            raise StatusError(response.status_code, response.reason_phrase)

        content_type = response.headers.get('content-type')
        if type_filter is not None and not (content_type and type_filter.search(content_type)):
            raise TypeRejectedError(content_type)

        content_length = response.headers.get('content-length')
        if content_length:
            try:
                size = int(content_length)
            except ValueError:
                size = None
            if size is not None and size > limit:
                raise SizeExceededError(limit, size, declared=True)
        elif required:
            raise MissingContentLengthError()

    async def aclose(self):
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

