"""
Text sanitization for scraped metadata values.

Every raw string captured by an extraction tier passes through here before it
is accepted into a record field. A value that fails any check becomes None.
"""

import re
from typing import Any, Iterable, Optional


# Substrings that indicate markup or script leaking into a value
INJECTION_MARKERS = ('script', 'iframe', 'onclick', 'onerror', 'onload')

# Gallery chrome that sits next to metadata but is never metadata itself
UI_PHRASES = ('add to board', 'copy link', 'copy embed')

MAX_LENGTH = 200
MAX_LINES = 3

_COMPLETE_TAG = re.compile(r'<[^>]*>')
_UNTERMINATED_TAG = re.compile(r'<[^>]*$')
_ANGLE_BRACKETS = re.compile(r'[<>]')


class Sanitizer:
    """
    Validates and cleans raw extracted text.

    Examples:
        "  Jane Doe " -> "Jane Doe"
        "<b>Paris</b>" -> "Paris"
        "<script>alert(1)</script>" -> None
        "Copy Link" -> None
    """

    def __init__(self, extra_phrases: Iterable[str] = ()):
        self.ui_phrases = UI_PHRASES + tuple(p.lower() for p in extra_phrases)

    def clean(self, value: Any) -> Optional[str]:
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            value = str(value)
        if not isinstance(value, str):
            return None

        lower = value.lower()
        if any(marker in lower for marker in INJECTION_MARKERS):
            return None
        if any(phrase in lower for phrase in self.ui_phrases):
            return None

        cleaned = _COMPLETE_TAG.sub('', value)
        cleaned = _UNTERMINATED_TAG.sub('', cleaned)
        cleaned = _ANGLE_BRACKETS.sub('', cleaned)
        cleaned = cleaned.replace('\xa0', ' ').strip()

        if len(cleaned) > MAX_LENGTH:
            return None
        if len(cleaned.split('\n')) > MAX_LINES:
            return None

        return cleaned or None

    __call__ = clean


def clean_text(value: Any) -> Optional[str]:
    """Sanitize with the default phrase blocklist."""
    return _default.clean(value)


_default = Sanitizer()
