"""Utilities to derive display names from bundle identifiers."""

from __future__ import annotations

import re
from typing import Optional

_KNOWN_APP_NAMES: dict[str, str] = {
    "com.apple.mobilesms": "Messages",
    "com.apple.dt.xcode": "Xcode",
    "com.microsoft.vscode": "Visual Studio Code",
    "com.tinyspeck.slackmacgap": "Slack",
    "com.google.chrome": "Google Chrome",
    "org.mozilla.firefox": "Firefox",
}

_SEPARATORS = re.compile(r"[-_]+")


def display_name_for(bundle_id: Optional[str]) -> str:
    """Best-effort human readable name for a bundle identifier."""
    if not bundle_id:
        return "Unknown"
    normalized = bundle_id.strip()
    known = _KNOWN_APP_NAMES.get(normalized.lower())
    if known:
        return known

    last_component = normalized.rsplit(".", 1)[-1]
    cleaned = _SEPARATORS.sub(" ", last_component).strip()
    if not cleaned:
        return normalized
    return " ".join(_capitalize(word) for word in cleaned.split())


def _capitalize(word: str) -> str:
    return word[:1].upper() + word[1:]
