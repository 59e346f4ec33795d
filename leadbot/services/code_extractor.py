# leadbot/services/code_extractor.py
from __future__ import annotations

import re
from typing import Optional

from leadbot.core.config import settings

_CODE_CHARS = r"[A-Za-z0-9_-]"

LABELLED_CODE_PATTERN = re.compile(
    rf"(?:descuento|codigo|código|token|promocion|promoción)\s*:\s*({_CODE_CHARS}{{1,21}})\.?",
    re.IGNORECASE,
)
# ASCII word boundaries: accented letters end a token.
LONG_TOKEN_PATTERN = re.compile(rf"\b({_CODE_CHARS}{{8,21}})\b", re.ASCII)
ANY_TOKEN_PATTERN = re.compile(rf"\b({_CODE_CHARS}{{1,21}})\b", re.ASCII)


def extract_code(text: Optional[str], *, fallback: Optional[bool] = None) -> Optional[str]:
    """Return the promotional code embedded in a chat message, or None.

    The labelled form ("Descuento: Nv5M-ilY.") always wins. When fallbacks are
    enabled the first standalone 8-21 character token is used, then any token
    of up to 21 characters.
    """
    if not text:
        return None

    match = LABELLED_CODE_PATTERN.search(text)
    if match:
        return match.group(1)

    if fallback is None:
        fallback = settings.code_fallback_enabled
    if not fallback:
        return None

    for pattern in (LONG_TOKEN_PATTERN, ANY_TOKEN_PATTERN):
        match = pattern.search(text)
        if match:
            return match.group(1)

    return None
