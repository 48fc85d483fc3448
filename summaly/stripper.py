"""
Token-level HTML pruning that runs before the document encoding is known.

The byte stream is tokenized through a latin-1 view, which maps every byte to
exactly one code point, so text passes through untouched and the surviving
bytes are still in the source encoding. Nothing here builds a tree: tokens are
pulled one at a time and filtered.
"""
import html.parser
from typing import AsyncIterable, Iterable, Iterator, List, NamedTuple, Optional, Tuple

import structlog

from .encoding import META_CHARSET, META_HTTP_EQUIV, CharsetCandidate, content_type_charset

logger = structlog.get_logger(__name__)

START = 'start'
START_END = 'startend'
END = 'end'
TEXT = 'text'
OTHER = 'other'

REMOVED_TAGS = frozenset({'script', 'template', 'style', 'svg'})
KEPT_TAGS = frozenset({'title', 'link', 'meta'})
KEPT_IDS = frozenset({'title', 'productDescription', 'landingImage'})

VOID_ELEMENTS = frozenset({
    'area', 'base', 'br', 'col', 'embed', 'hr', 'img', 'input',
    'link', 'meta', 'param', 'source', 'track', 'wbr',
})

RAW_ENCODING = 'latin-1'


class Token(NamedTuple):
    kind: str
    raw: bytes
    tag: Optional[str] = None
    attrs: Tuple[Tuple[str, Optional[str]], ...] = ()

    def attr(self, name: str) -> Optional[str]:
        for key, value in self.attrs:
            if key == name:
                return value
        return None


class StripResult(NamedTuple):
    body: bytes
    candidates: List[CharsetCandidate]


def _raw(text: str) -> bytes:
    return text.encode(RAW_ENCODING)


class _Tokenizer(html.parser.HTMLParser):
    """HTMLParser that records tokens instead of acting on them."""

    def __init__(self):
        super().__init__(convert_charrefs=False)
        self._tokens: List[Token] = []

    def pop_tokens(self) -> List[Token]:
        tokens, self._tokens = self._tokens, []
        return tokens

    def handle_starttag(self, tag, attrs):
        self._tokens.append(Token(START, _raw(self.get_starttag_text()), tag, tuple(attrs)))

    def handle_startendtag(self, tag, attrs):
        self._tokens.append(Token(START_END, _raw(self.get_starttag_text()), tag, tuple(attrs)))

    def handle_endtag(self, tag):
        self._tokens.append(Token(END, _raw(f"</{tag}>"), tag))

    def handle_data(self, data):
        self._tokens.append(Token(TEXT, _raw(data)))

    def handle_entityref(self, name):
        self._tokens.append(Token(TEXT, _raw(f"&{name};")))

    def handle_charref(self, name):
        self._tokens.append(Token(TEXT, _raw(f"&#{name};")))

    def handle_comment(self, data):
        self._tokens.append(Token(OTHER, _raw(f"<!--{data}-->")))

    def handle_decl(self, decl):
        self._tokens.append(Token(OTHER, _raw(f"<!{decl}>")))

    def handle_pi(self, data):
        self._tokens.append(Token(OTHER, _raw(f"<?{data}>")))

    def unknown_decl(self, data):
        self._tokens.append(Token(OTHER, _raw(f"<![{data}]>")))


def iter_tokens(chunks: Iterable[bytes]) -> Iterator[Token]:
    """Tokenize a sequence of byte chunks lazily."""
    tokenizer = _Tokenizer()
    for chunk in chunks:
        tokenizer.feed(chunk.decode(RAW_ENCODING))
        yield from tokenizer.pop_tokens()
    tokenizer.close()
    yield from tokenizer.pop_tokens()


async def aiter_tokens(chunks: AsyncIterable[bytes]):
    """Async counterpart of iter_tokens for response bodies."""
    tokenizer = _Tokenizer()
    async for chunk in chunks:
        tokenizer.feed(chunk.decode(RAW_ENCODING))
        for token in tokenizer.pop_tokens():
            yield token
    tokenizer.close()
    for token in tokenizer.pop_tokens():
        yield token


def meta_charset_candidates(token: Token) -> List[CharsetCandidate]:
    """Charset hints carried by a meta start tag."""
    found = []
    charset = token.attr('charset')
    if charset and charset.strip():
        found.append(CharsetCandidate(META_CHARSET, charset.strip()))

    http_equiv = token.attr('http-equiv')
    if http_equiv and http_equiv.strip().lower() == 'content-type':
        value = content_type_charset(token.attr('content'))
        if value:
            found.append(CharsetCandidate(META_HTTP_EQUIV, value))
    return found


class TagFilter:
    """Drops non-content subtrees and unwraps everything outside the allow-list.

    One instance handles one document; charset hints seen on meta elements are
    collected in document order in ``candidates``.
    """

    def __init__(self):
        self.candidates: List[CharsetCandidate] = []
        self._removed: List[str] = []
        self._open: List[Tuple[str, bool]] = []

    def _is_kept(self, token: Token) -> bool:
        return token.tag in KEPT_TAGS or token.attr('id') in KEPT_IDS

    def feed(self, token: Token) -> Iterator[Token]:
        if self._removed:
            yield from self._skip(token)
            return

        if token.kind in (START, START_END):
            if token.tag == 'meta':
                self.candidates.extend(meta_charset_candidates(token))
            if token.tag in REMOVED_TAGS:
                if token.kind == START:
                    self._removed = [token.tag]
                return
            kept = self._is_kept(token)
            if token.kind == START and token.tag not in VOID_ELEMENTS:
                self._open.append((token.tag, kept))
            if kept:
                yield token
        elif token.kind == END:
            yield from self._close(token)
        else:
            yield token

    def _skip(self, token: Token) -> Iterator[Token]:
        if token.kind == START and token.tag not in VOID_ELEMENTS:
            self._removed.append(token.tag)
        elif token.kind == END:
            if token.tag in self._removed:
                while self._removed.pop() != token.tag:
                    pass
            elif any(tag == token.tag for tag, _ in self._open):
                # an unclosed removed element ends with its parent
                self._removed = []
                yield from self._close(token)

    def _close(self, token: Token) -> Iterator[Token]:
        for index in range(len(self._open) - 1, -1, -1):
            if self._open[index][0] == token.tag:
                break
        else:
            return

        closed = self._open[index:]
        del self._open[index:]
        # implicitly closed kept elements get their end tags too
        for tag, kept in reversed(closed):
            if kept:
                yield Token(END, _raw(f"</{tag}>"), tag)

    def filter(self, tokens: Iterable[Token]) -> Iterator[Token]:
        for token in tokens:
            yield from self.feed(token)


def filter_tokens(tokens: Iterable[Token], tag_filter: TagFilter = None) -> Iterator[Token]:
    return (tag_filter or TagFilter()).filter(tokens)


def strip_chunks(chunks: Iterable[bytes]) -> StripResult:
    tag_filter = TagFilter()
    body = b''.join(token.raw for token in tag_filter.filter(iter_tokens(chunks)))
    return StripResult(body, tag_filter.candidates)


def strip_bytes(data: bytes) -> StripResult:
    """Strip a complete document held in memory."""
    return strip_chunks([data])


async def strip_stream(chunks: AsyncIterable[bytes]) -> StripResult:
    """Strip a document while it is being downloaded.

    Memory is bounded by the surviving output, not by the transferred body.
    """
    tag_filter = TagFilter()
    parts = []
    async for token in aiter_tokens(chunks):
        for kept in tag_filter.feed(token):
            parts.append(kept.raw)
    body = b''.join(parts)
    logger.debug("document_stripped", size=len(body), charset_hints=len(tag_filter.candidates))
    return StripResult(body, tag_filter.candidates)
