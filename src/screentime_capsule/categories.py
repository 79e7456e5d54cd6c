"""Rule-based classification of bundle identifiers into usage categories."""

from __future__ import annotations

from typing import Optional

from .models import UsageCategory

# Bump when the rule table changes; first match wins, so reordering reclassifies apps.
RULES_VERSION = 1

_CATEGORY_RULES: tuple[tuple[str, UsageCategory], ...] = (
    ("xcode", UsageCategory.PRODUCTIVITY),
    ("terminal", UsageCategory.PRODUCTIVITY),
    ("vscode", UsageCategory.PRODUCTIVITY),
    ("finance", UsageCategory.PRODUCTIVITY),
    ("numbers", UsageCategory.PRODUCTIVITY),
    ("excel", UsageCategory.PRODUCTIVITY),
    ("photoshop", UsageCategory.CREATIVITY),
    ("illustrator", UsageCategory.CREATIVITY),
    ("sketch", UsageCategory.CREATIVITY),
    ("figma", UsageCategory.CREATIVITY),
    ("finalcut", UsageCategory.CREATIVITY),
    ("logic", UsageCategory.CREATIVITY),
    ("music", UsageCategory.ENTERTAINMENT),
    ("spotify", UsageCategory.ENTERTAINMENT),
    ("netflix", UsageCategory.ENTERTAINMENT),
    ("youtube", UsageCategory.ENTERTAINMENT),
    ("tv", UsageCategory.ENTERTAINMENT),
    ("message", UsageCategory.SOCIAL),
    ("slack", UsageCategory.SOCIAL),
    ("discord", UsageCategory.SOCIAL),
    ("twitter", UsageCategory.SOCIAL),
    ("facebook", UsageCategory.SOCIAL),
    ("instagram", UsageCategory.SOCIAL),
    ("game", UsageCategory.ENTERTAINMENT),
    ("steam", UsageCategory.ENTERTAINMENT),
    ("books", UsageCategory.UTILITIES),
    ("kindle", UsageCategory.UTILITIES),
    ("safari", UsageCategory.UTILITIES),
    ("chrome", UsageCategory.UTILITIES),
    ("firefox", UsageCategory.UTILITIES),
    ("health", UsageCategory.UTILITIES),
    ("fitness", UsageCategory.UTILITIES),
)


def categorize(bundle_id: Optional[str]) -> UsageCategory:
    """Return the category of the first rule whose substring occurs in ``bundle_id``."""
    if not bundle_id:
        return UsageCategory.OTHER
    lowered = bundle_id.lower()
    for needle, category in _CATEGORY_RULES:
        if needle in lowered:
            return category
    return UsageCategory.OTHER
