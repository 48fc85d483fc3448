import asyncio

import httpx
import pytest

from summaly.fetcher import HTTPFetcher


class FakeStream:
    """Async body that records how far the client actually read it."""

    def __init__(self, chunks, stall: bool = False, delay: float = 0.0):
        self.chunks = list(chunks)
        self.stall = stall
        self.delay = delay
        self.sent = 0
        self.started = False
        self.closed = False

    async def body(self):
        self.started = True
        try:
            for chunk in self.chunks:
                if self.delay:
                    await asyncio.sleep(self.delay)
                self.sent += 1
                yield chunk
            if self.stall:
                await asyncio.sleep(3600)
        finally:
            self.closed = True


@pytest.fixture
def run():
    return asyncio.run


@pytest.fixture
def make_fetcher():
    def factory(handler, **settings):
        return HTTPFetcher(settings, transport=httpx.MockTransport(handler))
    return factory


@pytest.fixture
def fake_stream():
    return FakeStream
