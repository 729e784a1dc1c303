"""Header classification for tunneled requests and responses."""

import enum
from typing import Iterable, List, Tuple


class HeaderTreatment(enum.Enum):
    SUPPRESSED = "suppressed"
    CONTENT_SPECIFIC = "content-specific"
    GENERAL = "general"


# Headers that describe the relay hop itself and must never reach the target
SUPPRESSED_HEADERS = frozenset({
    "host",
})

# Headers describing the message body rather than the message
CONTENT_SPECIFIC_HEADERS = frozenset({
    "allow",
    "content-disposition",
    "content-encoding",
    "content-language",
    "content-length",
    "content-location",
    "content-range",
    "content-type",
    "expires",
    "last-modified",
})


def classify_header(name: str) -> HeaderTreatment:
    """Return how a header should be tunneled. Lookup is case-insensitive."""
    key = name.strip().lower()
    if key in SUPPRESSED_HEADERS:
        return HeaderTreatment.SUPPRESSED
    if key in CONTENT_SPECIFIC_HEADERS:
        return HeaderTreatment.CONTENT_SPECIFIC
    return HeaderTreatment.GENERAL


def partition_headers(
    headers: Iterable[Tuple[str, str]],
) -> Tuple[List[Tuple[str, str]], List[Tuple[str, str]]]:
    """
    Split header pairs into (general, content_specific), dropping suppressed ones.

    Original order and repeated names are kept within each group.
    """
    general: List[Tuple[str, str]] = []
    content: List[Tuple[str, str]] = []
    for name, value in headers:
        treatment = classify_header(name)
        if treatment is HeaderTreatment.SUPPRESSED:
            continue
        if treatment is HeaderTreatment.CONTENT_SPECIFIC:
            content.append((name, value))
        else:
            general.append((name, value))
    return general, content
