"""Input clean-up shared by the domain services."""
from __future__ import annotations

import re
from typing import Optional

import bleach

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def sanitize_text(value: Optional[str], max_length: Optional[int] = None) -> Optional[str]:
    """Strip markup and surrounding whitespace; empty strings become None."""
    if value is None:
        return None
    cleaned = bleach.clean(str(value), tags=[], strip=True).strip()
    if max_length is not None:
        cleaned = cleaned[:max_length]
    return cleaned or None


def parse_hhmm(value: str) -> int:
    """Minutes after midnight for an "HH:MM" string."""
    match = _HHMM.match((value or "").strip())
    if not match:
        raise ValueError("Time must be in HH:MM format")
    return int(match.group(1)) * 60 + int(match.group(2))
