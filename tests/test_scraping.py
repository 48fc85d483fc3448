import importlib

import httpx
import pytest

from summaly.errors import SizeExceededError, TypeRejectedError
from summaly.fetcher import DEFAULT_BOT_UA
from summaly.scraping import get, head, parse_document, scraping

# the package re-exports the scraping function under the module name
scraping_module = importlib.import_module('summaly.scraping')


def test_large_euc_jp_document_decodes_with_header_charset(run, make_fetcher):
    paragraph = '<p>日本語のテキストです。</p>\n'.encode('euc_jp')
    head_html = '<html><head><title>日本語のページ</title></head><body>'.encode('euc_jp')
    repeat = (5 * 1024 * 1024) // len(paragraph)
    document = head_html + paragraph * repeat + b'</body></html>'
    assert len(document) > 5 * 1024 * 1024 - len(paragraph)

    def handler(request):
        return httpx.Response(200, headers={'Content-Type': 'text/html; charset=EUC-JP'}, content=document)

    async def scenario():
        async with make_fetcher(handler) as fetcher:
            return await scraping('https://example.jp/', fetcher=fetcher)

    result = run(scenario())
    assert result.encoding == 'euc_jp'
    assert result.encoding_source == 'header'
    assert result.document.findtext('.//title') == '日本語のページ'
    assert result.body.startswith('<title>日本語のページ</title>日本語のテキストです。')
    assert '<p>' not in result.body


def test_meta_charset_wins_over_header(run, make_fetcher):
    document = (
        '<html><head><meta charset="windows-1251"><title>Привет</title>'
        '<meta property="og:description" content="Описание"></head><body>текст</body></html>'
    ).encode('cp1251')

    def handler(request):
        return httpx.Response(200, headers={'Content-Type': 'text/html; charset=koi8-r'}, content=document)

    async def scenario():
        async with make_fetcher(handler) as fetcher:
            return await scraping('https://example.ru/', fetcher=fetcher)

    result = run(scenario())
    assert result.encoding == 'cp1251'
    assert result.encoding_source == 'meta_charset'
    assert result.document.findtext('.//title') == 'Привет'
    assert result.document.xpath('//meta[@property="og:description"]/@content') == ['Описание']


def test_shift_jis_meta_decodes_vendor_characters(run, make_fetcher):
    document = '<meta charset="Shift_JIS"><title>①髙橋</title>'.encode('cp932')

    def handler(request):
        return httpx.Response(200, headers={'Content-Type': 'text/html'}, content=document)

    async def scenario():
        async with make_fetcher(handler) as fetcher:
            return await scraping('https://example.jp/', fetcher=fetcher)

    result = run(scenario())
    assert result.encoding == 'cp932'
    assert result.document.findtext('.//title') == '①髙橋'


def test_scraping_sends_preview_headers(run, make_fetcher):
    seen = {}

    def handler(request):
        seen.clear()
        seen.update(request.headers)
        return httpx.Response(200, headers={'Content-Type': 'text/html'}, content=b'<title>x</title>')

    async def scenario():
        async with make_fetcher(handler) as fetcher:
            await scraping('https://example.com/', lang='ja-JP', fetcher=fetcher)
            await scraping('https://example.com/', user_agent='Custom/2', fetcher=fetcher)

    run(scenario())
    assert seen['accept'] == 'text/html,application/xhtml+xml'
    assert seen['user-agent'] == 'Custom/2'
    assert 'accept-language' not in seen


def test_scraping_default_user_agent_and_language(run, make_fetcher):
    seen = {}

    def handler(request):
        seen.update(request.headers)
        return httpx.Response(200, headers={'Content-Type': 'text/html'}, content=b'<title>x</title>')

    async def scenario():
        async with make_fetcher(handler) as fetcher:
            await scraping('https://example.com/', lang='ja-JP', fetcher=fetcher)

    run(scenario())
    assert seen['user-agent'] == DEFAULT_BOT_UA
    assert seen['accept-language'] == 'ja-JP'


def test_rejected_type_never_reaches_stripper(run, make_fetcher, monkeypatch):
    def handler(request):
        return httpx.Response(200, headers={'Content-Type': 'image/png'}, content=b'\x89PNG')

    async def fail_strip(chunks):
        raise AssertionError("stripper must not run")

    monkeypatch.setattr(scraping_module, 'strip_stream', fail_strip)

    async def scenario():
        async with make_fetcher(handler) as fetcher:
            await scraping('https://example.com/logo.png', fetcher=fetcher)

    with pytest.raises(TypeRejectedError):
        run(scenario())


def test_scraping_honours_content_length_limit(run, make_fetcher):
    def handler(request):
        return httpx.Response(200, headers={'Content-Type': 'text/html'}, content=b'<p>' + b'x' * 4096 + b'</p>')

    async def scenario():
        async with make_fetcher(handler) as fetcher:
            await scraping('https://example.com/', content_length_limit=1024, fetcher=fetcher)

    with pytest.raises(SizeExceededError) as exc_info:
        run(scenario())
    assert exc_info.value.declared is True


def test_xhtml_with_xml_declaration(run, make_fetcher):
    document = (
        b'<?xml version="1.0" encoding="utf-8"?>'
        b'<html xmlns="http://www.w3.org/1999/xhtml"><head><title>XHTML</title></head></html>'
    )

    def handler(request):
        return httpx.Response(200, headers={'Content-Type': 'application/xhtml+xml'}, content=document)

    async def scenario():
        async with make_fetcher(handler) as fetcher:
            return await scraping('https://example.com/', fetcher=fetcher)

    result = run(scenario())
    assert result.document.findtext('.//title') == 'XHTML'


def test_parse_empty_document():
    assert parse_document('   ').tag == 'html'


def test_get_returns_text(run, make_fetcher):
    def handler(request):
        assert request.headers['accept'] == '*/*'
        return httpx.Response(200, headers={'Content-Type': 'text/plain; charset=iso-8859-1'}, content='café'.encode('latin-1'))

    async def scenario():
        async with make_fetcher(handler) as fetcher:
            return await get('https://example.com/robots.txt', fetcher=fetcher)

    assert run(scenario()) == 'café'


def test_get_without_charset_uses_utf8(run, make_fetcher):
    def handler(request):
        return httpx.Response(200, headers={'Content-Type': 'application/json'}, content='{"a": "ü"}'.encode('utf-8'))

    async def scenario():
        async with make_fetcher(handler) as fetcher:
            return await get('https://example.com/data.json', fetcher=fetcher)

    assert run(scenario()) == '{"a": "ü"}'


def test_head_returns_final_response(run, make_fetcher):
    methods = []

    def handler(request):
        methods.append(request.method)
        if request.url.path == '/short':
            return httpx.Response(302, headers={'Location': 'https://example.com/article'})
        return httpx.Response(200, headers={'Content-Type': 'text/html', 'Content-Length': '1234'})

    async def scenario():
        async with make_fetcher(handler) as fetcher:
            return await head('https://example.com/short', fetcher=fetcher)

    response = run(scenario())
    assert str(response.url) == 'https://example.com/article'
    assert response.headers['content-length'] == '1234'
    assert response.is_closed
    assert methods == ['HEAD', 'HEAD']


def test_scraping_without_fetcher_creates_and_closes_one(run, monkeypatch):
    created = []

    def handler(request):
        return httpx.Response(200, headers={'Content-Type': 'text/html'}, content=b'<title>own</title>')

    class RecordingFetcher(scraping_module.HTTPFetcher):
        def __init__(self):
            super().__init__(transport=httpx.MockTransport(handler))
            created.append(self)

    monkeypatch.setattr(scraping_module, 'HTTPFetcher', RecordingFetcher)

    result = run(scraping('https://example.com/'))
    assert result.document.findtext('.//title') == 'own'
    assert len(created) == 1
    assert created[0]._client.is_closed


def test_owned_fetcher_uses_configured_user_agent(run, monkeypatch):
    seen = {}

    def handler(request):
        seen.update(request.headers)
        return httpx.Response(200, headers={'Content-Type': 'text/html'}, content=b'<title>ua</title>')

    class ConfiguredFetcher(scraping_module.HTTPFetcher):
        def __init__(self):
            super().__init__({'user_agent': 'FromConfig/9'}, transport=httpx.MockTransport(handler))

    monkeypatch.setattr(scraping_module, 'HTTPFetcher', ConfiguredFetcher)

    run(scraping('https://example.com/'))
    assert seen['user-agent'] == 'FromConfig/9'


def test_explicit_user_agent_beats_configured_one(run, make_fetcher):
    seen = {}

    def handler(request):
        seen.update(request.headers)
        return httpx.Response(200, headers={'Content-Type': 'text/html'}, content=b'<title>ua</title>')

    async def scenario():
        async with make_fetcher(handler, user_agent='FromConfig/9') as fetcher:
            await scraping('https://example.com/', user_agent='Caller/1', fetcher=fetcher)

    run(scenario())
    assert seen['user-agent'] == 'Caller/1'


def test_quoted_header_charset_is_used(run, make_fetcher):
    document = '<title>Привет</title>'.encode('cp1251')

    def handler(request):
        return httpx.Response(200, headers={'Content-Type': 'text/html; CHARSET="Windows-1251"; q=1'}, content=document)

    async def scenario():
        async with make_fetcher(handler) as fetcher:
            return await scraping('https://example.ru/', fetcher=fetcher)

    result = run(scenario())
    assert result.encoding == 'cp1251'
    assert result.encoding_source == 'header'
    assert result.document.findtext('.//title') == 'Привет'


def test_scraping_request_waives_required_content_length(run, make_fetcher):
    async def chunked():
        yield b'<title>streamed</title>'

    def handler(request):
        return httpx.Response(200, headers={'Content-Type': 'text/html'}, content=chunked())

    async def scenario():
        async with make_fetcher(handler, content_length_required=True) as fetcher:
            return await scraping('https://example.com/', content_length_required=False, fetcher=fetcher)

    assert run(scenario()).document.findtext('.//title') == 'streamed'
