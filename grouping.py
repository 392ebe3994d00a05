"""
grouping.py - Turn per-line OCR fragments into wine entry candidates.

A printed wine entry usually spans one to three lines ("Opus One",
"Napa Valley 2019", "$425"). Fragments are walked top-to-bottom and lines
separated by less than a small vertical gap are merged into one candidate.

Every candidate then passes through a strict admission filter. Menus produce
many short, high-confidence but meaningless lines (prices, page numbers,
section titles, UI chrome); letting them through would flood the matcher
and pollute the session with junk matches.
"""

from __future__ import annotations

import re
from typing import Iterable, Optional

from pydantic import BaseModel

from config import DEFAULT_SETTINGS, ScannerSettings
from logging_config import get_logger
from models import BoundingBox, TextFragment, WineTextCandidate
from normalize import extract_vintage, normalize

logger = get_logger(__name__)

SPECIAL_CHARS = "&%$#@~^*+-="
NUMERIC_SYMBOLS = SPECIAL_CHARS + " "

# Phrases that never belong to an actual wine entry, matched as whole words.
REJECT_PHRASES: tuple[str, ...] = (
    "wine list",
    "wine color",
    "wine type",
    "wines by the glass",
    "menu",
    "restaurant",
    "welcome",
    "please",
    "thank you",
    "bookmarks",
    "profiles",
    "window",
    "help",
    "command",
    "option",
    "esc",
    "share",
    "grid",
    "top100",
    "spectator",
)

_PAGINATION = re.compile(r"\b(?:page|pg)\s*\d+(?:\s*(?:of|/)\s*\d+)?\b|^\s*\d+\s*(?:/|of)\s*\d+\s*$")
_FUNCTION_KEY = re.compile(r"\bf(?:[1-9]|1[0-2])\b")

# A candidate made only of these words is a filter chip or section label.
BARE_WORDS: frozenset[str] = frozenset(
    {
        "all", "red", "white", "rose", "sparkling", "still", "dessert", "fortified",
        "wine", "wines", "and",
        "australia", "argentina", "france", "spain", "united", "states", "usa",
        "chile", "austria", "germany", "italy", "portugal", "new", "zealand",
        "south", "africa",
    }
)

MENU_WORDS: tuple[str, ...] = ("grid", "list", "share", "color", "type", "country")

GRAPE_TERMS: tuple[str, ...] = (
    "cabernet", "merlot", "pinot", "chardonnay", "sauvignon", "syrah", "shiraz",
    "riesling", "zinfandel", "malbec", "sangiovese", "tempranillo", "grenache",
    "viognier", "gewurztraminer", "chenin", "semillon", "muscat", "nebbiolo",
    "barbera", "albarino", "gruner", "mourvedre", "carmenere", "petite",
)

REGION_TERMS: tuple[str, ...] = (
    "bordeaux", "burgundy", "champagne", "napa", "sonoma", "rioja", "barolo",
    "barbaresco", "chianti", "tuscany", "rhone", "alsace", "loire", "chablis",
    "cote", "cotes", "margaux", "pauillac", "saint", "st", "appellation", "ava",
    "aoc", "doc", "docg", "ribera", "piedmont", "mendoza", "willamette", "mosel",
)

PRODUCER_TERMS: tuple[str, ...] = (
    "chateau", "domaine", "estate", "vineyard", "vineyards", "winery", "cellars",
    "wines", "vintners", "productions", "reserve", "special", "private", "select",
)


def _words_pattern(terms: Iterable[str]) -> re.Pattern[str]:
    alternatives = "|".join(re.escape(term) for term in sorted(terms, key=len, reverse=True))
    return re.compile(rf"\b(?:{alternatives})\b")


_GRAPE_PATTERN = _words_pattern(GRAPE_TERMS)
_REGION_PATTERN = _words_pattern(REGION_TERMS)
_PRODUCER_PATTERN = _words_pattern(PRODUCER_TERMS)
_REJECT_PATTERN = _words_pattern(REJECT_PHRASES)


class WineIndicators(BaseModel):
    """Which of the four strong wine signals a text carries."""

    grape: bool = False
    region: bool = False
    vintage: bool = False
    producer: bool = False

    @property
    def count(self) -> int:
        return sum((self.grape, self.region, self.vintage, self.producer))


def detect_indicators(text: str) -> WineIndicators:
    normalized = normalize(text)
    return WineIndicators(
        grape=bool(_GRAPE_PATTERN.search(normalized)),
        region=bool(_REGION_PATTERN.search(normalized)),
        vintage=extract_vintage(normalized) is not None,
        producer=bool(_PRODUCER_PATTERN.search(normalized)),
    )


def _sort_key(fragment: TextFragment) -> tuple:
    box = fragment.bounding_box
    return (-box.max_y, box.min_x, box.min_y, fragment.text, fragment.confidence)


def build_candidate(fragments: list[TextFragment]) -> Optional[WineTextCandidate]:
    """Join a group of fragments into one candidate, or None if it has no text."""
    if not fragments:
        return None
    full_text = " ".join(fragment.text.strip() for fragment in fragments if fragment.text.strip())
    if not full_text:
        return None
    return WineTextCandidate(
        full_text=full_text,
        bounding_box=BoundingBox.union([fragment.bounding_box for fragment in fragments]),
        confidence=sum(fragment.confidence for fragment in fragments) / len(fragments),
        line_count=len(fragments),
    )


def group_all(
    fragments: Iterable[TextFragment],
    settings: Optional[ScannerSettings] = None,
) -> list[WineTextCandidate]:
    """Group vertically adjacent fragments without applying the admission filter."""
    settings = settings or DEFAULT_SETTINGS
    ordered = sorted(fragments, key=_sort_key)
    if not ordered:
        return []

    groups: list[list[TextFragment]] = []
    current: list[TextFragment] = []
    previous: Optional[TextFragment] = None

    for fragment in ordered:
        if previous is None:
            current.append(fragment)
        else:
            gap = previous.bounding_box.min_y - fragment.bounding_box.max_y
            if gap < settings.group_gap_threshold:
                current.append(fragment)
            else:
                groups.append(current)
                current = [fragment]
        previous = fragment
    groups.append(current)

    candidates = [candidate for candidate in map(build_candidate, groups) if candidate is not None]
    logger.debug(
        "group_all | fragments=%d | groups=%d | candidates=%d",
        len(ordered),
        len(groups),
        len(candidates),
    )
    return candidates


def _reject(reason: str, candidate: WineTextCandidate) -> bool:
    logger.debug("candidate_rejected | reason=%s | text=%r", reason, candidate.full_text)
    return False


def is_likely_wine_entry(
    candidate: WineTextCandidate,
    settings: Optional[ScannerSettings] = None,
) -> bool:
    """Admission filter. Strict on purpose: a missed line is cheaper than a junk match."""
    settings = settings or DEFAULT_SETTINGS
    text = candidate.full_text.strip()
    lowered = text.lower()

    if len(text) < settings.min_text_length:
        return _reject("too_short", candidate)

    if candidate.confidence <= settings.min_candidate_confidence:
        return _reject("low_confidence", candidate)

    if _REJECT_PATTERN.search(lowered) or _PAGINATION.search(lowered) or _FUNCTION_KEY.search(lowered):
        return _reject("non_wine_pattern", candidate)

    words = re.findall(r"[^\W\d_]+", normalize(text))
    if words and all(word in BARE_WORDS for word in words):
        return _reject("bare_words", candidate)

    special_count = sum(1 for char in text if char in SPECIAL_CHARS)
    if special_count > settings.max_special_chars:
        return _reject("special_chars", candidate)

    numeric_symbol_count = sum(1 for char in text if char.isdigit() or char in NUMERIC_SYMBOLS)
    if numeric_symbol_count / len(text) > settings.max_numeric_symbol_ratio:
        return _reject("numeric_density", candidate)

    if text.isupper() and len(text) > settings.all_caps_max_length:
        return _reject("all_caps_header", candidate)

    indicators = detect_indicators(text)
    if indicators.count < settings.min_wine_indicators:
        return _reject(f"indicators_{indicators.count}", candidate)

    menu_word_count = sum(1 for word in MENU_WORDS if re.search(rf"\b{word}\b", lowered))
    if menu_word_count >= 2:
        return _reject("menu_structure", candidate)

    return True


def group_fragments(
    fragments: Iterable[TextFragment],
    settings: Optional[ScannerSettings] = None,
) -> list[WineTextCandidate]:
    """Group fragments into candidates and keep the ones that look like wine entries."""
    settings = settings or DEFAULT_SETTINGS
    candidates = group_all(fragments, settings)
    admitted = [candidate for candidate in candidates if is_likely_wine_entry(candidate, settings)]
    logger.debug(
        "group_fragments | candidates=%d | admitted=%d",
        len(candidates),
        len(admitted),
    )
    return admitted
