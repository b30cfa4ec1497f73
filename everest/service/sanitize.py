from __future__ import annotations

import re
import unicodedata

_BLOCK_RE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"</?[A-Za-z!][^>]*>")
_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"
_BIDI_OVERRIDES = frozenset(
    [chr(c) for c in range(0x202A, 0x202F)] + [chr(c) for c in range(0x2066, 0x206A)]
)


def normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    cleaned = "".join(
        c for c in value if c not in _ZERO_WIDTH and c not in _BIDI_OVERRIDES
    )
    return unicodedata.normalize("NFKC", cleaned)


def strip_tags(value: str) -> str:
    """Remove markup; script and style blocks lose their contents too."""
    without_blocks = _BLOCK_RE.sub("", value)
    return _TAG_RE.sub("", without_blocks)


def clean_text(value: str) -> str:
    """Text as stored for chat content and device names."""
    return strip_tags(normalize_unicode(value)).strip()
