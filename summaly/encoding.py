"""
Character encoding resolution for fetched documents.

Candidates come from the document itself (meta charset, meta http-equiv), the
Content-Type response header and statistical detection on the raw bytes. The
highest priority candidate naming a known text codec wins; utf-8 otherwise.
"""
import codecs
from email.message import Message
from typing import Generic, Iterable, NamedTuple, Optional, Tuple, TypeVar

import structlog
from chardet.universaldetector import UniversalDetector

logger = structlog.get_logger(__name__)

T = TypeVar('T')

META_CHARSET = 3
META_HTTP_EQUIV = 2
HEADER = 1
DETECTED = 0

SOURCE_NAMES = {
    META_CHARSET: 'meta_charset',
    META_HTTP_EQUIV: 'meta_http_equiv',
    HEADER: 'header',
    DETECTED: 'detected',
}

DEFAULT_ENCODING = 'utf-8'
DETECTION_THRESHOLD = 0.99
DETECTION_CHUNK_SIZE = 64 * 1024

# cp932 is a superset of Shift_JIS that also covers the vendor extensions
SHIFT_JIS_ALIASES = ('shift_jis', 'shift-jis', 'windows-31j', 'x-sjis')

# legacy labels decoded with the superset codec browsers use for them
SUPERSET_CODECS = {
    **{alias: 'cp932' for alias in SHIFT_JIS_ALIASES},
    'gb2312': 'gbk',
    'gb_2312': 'gbk',
    'gb_2312-80': 'gbk',
    'x-gbk': 'gbk',
    'euc-kr': 'cp949',
    'euc_kr': 'cp949',
    'ks_c_5601-1987': 'cp949',
    'windows-949': 'cp949',
    'windows-874': 'cp874',
    'tis-620': 'cp874',
    'big5': 'big5hkscs',
}


class PrioritizedValue(Generic[T]):
    """Keeps the best non-empty value seen so far.

    A write takes effect when its priority is >= the current one, so at equal
    priority the later write wins.
    """

    def __init__(self):
        self.content: Optional[T] = None
        self.priority: int = -1

    def assign(self, content: Optional[T], priority: int) -> bool:
        if content is None or (isinstance(content, str) and not content.strip()):
            return False
        if priority < self.priority:
            return False
        self.content = content
        self.priority = priority
        return True


class CharsetCandidate(NamedTuple):
    priority: int
    value: Optional[str]


class Resolution(NamedTuple):
    text: str
    encoding: str
    source: str


def to_encoding(candidate: Optional[str]) -> Optional[str]:
    """Normalize a charset label to a Python codec name, or None if unusable."""
    if candidate is None:
        return None
    label = candidate.strip().strip('"\'').strip()
    if not label:
        return None
    superset = SUPERSET_CODECS.get(label.lower())
    if superset is not None:
        return superset
    try:
        name = codecs.lookup(label).name
        # empty input skips the text codec check, so decode a real byte
        b'a'.decode(name, 'replace')
    except (LookupError, ValueError):
        return None
    return name


def content_type_charset(content_type: Optional[str]) -> Optional[str]:
    """Extract the charset parameter of a Content-Type value."""
    if not content_type:
        return None
    msg = Message()
    msg['content-type'] = content_type
    charset = msg.get_param('charset')
    if not isinstance(charset, str):
        return None
    return charset.strip() or None


def pick_candidate(candidates: Iterable[CharsetCandidate]) -> Optional[CharsetCandidate]:
    """Reduce candidates to the highest priority one naming a known codec."""
    slot = PrioritizedValue()
    for candidate in candidates:
        slot.assign(to_encoding(candidate.value), candidate.priority)
    if slot.content is None:
        return None
    return CharsetCandidate(slot.priority, slot.content)


def detect_encoding(body: bytes) -> Optional[str]:
    """Statistically detect the encoding, only trusting very confident guesses."""
    if not body:
        return None
    detector = UniversalDetector()
    for start in range(0, len(body), DETECTION_CHUNK_SIZE):
        detector.feed(body[start:start + DETECTION_CHUNK_SIZE])
        if detector.done:
            break
    detected = detector.close()
    if not detected or detected.get('confidence', 0) < DETECTION_THRESHOLD:
        return None
    return to_encoding(detected.get('encoding'))


def to_text(body: bytes, encoding: str) -> str:
    return body.decode(encoding, errors='replace')


def resolve_detailed(candidates: Iterable[CharsetCandidate], header_charset: Optional[str],
                     body: bytes) -> Resolution:
    """Pick an encoding for *body* and decode it, reporting which source won."""
    chosen = pick_candidate(list(candidates) + [CharsetCandidate(HEADER, header_charset)])
    if chosen is None:
        detected = detect_encoding(body)
        if detected is not None:
            chosen = CharsetCandidate(DETECTED, detected)

    if chosen is None:
        encoding, source = DEFAULT_ENCODING, 'fallback'
    else:
        encoding, source = chosen.value, SOURCE_NAMES.get(chosen.priority, str(chosen.priority))

    logger.debug("charset_resolved", encoding=encoding, source=source, size=len(body))
    return Resolution(to_text(body, encoding), encoding, source)


def resolve(candidates: Iterable[CharsetCandidate], header_charset: Optional[str],
            body: bytes) -> Tuple[str, str]:
    """Return (text, encoding) for *body*."""
    resolution = resolve_detailed(candidates, header_charset, body)
    return resolution.text, resolution.encoding
