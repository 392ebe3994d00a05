"""
normalize.py - Wine text normalization module.

Core functions:
    normalize(text)          -> canonical lowercase form used for every comparison
    phonetic_key(text)       -> 4-character sound-alike key
    similarity(a, b)         -> blended score in [0, 1]

Parsing helpers:
    extract_vintage(text)    -> 1950-2039 or None
    extract_price(text)      -> Decimal or None
    strip_price(text)        -> text without the "$123.00" part

Design principles:
    - SAME normalization on BOTH sides (OCR text and database records)
    - normalize() is idempotent: normalize(normalize(x)) == normalize(x)
    - Pure transformations, no I/O
    - Invalid input degrades to neutral defaults, never raises

Pipeline (order matters):
    1. OCR look-alike fixes   "0pus" -> "Opus", "2O19" -> "2019"
    2. Lowercase and fold     "Château" -> "chateau", "Œil" -> "oeil"
    3. Abbreviations          "ch." -> "chateau", "'15" -> "2015"
    4. Producer variations    "&" -> "and", trailing "estate"/"winery" dropped
    5. Punctuation/spacing    non-word runs -> single space, trimmed
"""

from __future__ import annotations

import re
import unicodedata
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from rapidfuzz.distance import Levenshtein

from logging_config import get_logger

logger = get_logger(__name__)

# Any letter, in any script. Digits and underscore are excluded from \w.
LETTER = r"[^\W\d_]"

# Look-alike digits read inside words, mapped to the letter they imitate.
OCR_CORRECTIONS: dict[str, str] = {
    "0": "o",
    "1": "i",
    "5": "s",
    "8": "b",
}

# Letters read inside digit runs, mapped to the digit they imitate.
DIGIT_LOOKALIKES: dict[str, str] = {
    "O": "0",
    "o": "0",
    "l": "1",
    "I": "1",
}

LIGATURES: dict[str, str] = {
    "œ": "oe",
    "Œ": "OE",
    "æ": "ae",
    "Æ": "AE",
    "ß": "ss",
    "ẞ": "SS",
    "ø": "o",
    "Ø": "O",
    "ł": "l",
    "Ł": "L",
}

# Keys are matched on lowercased, diacritic-free text. Multi-word keys accept
# any punctuation between their words ("cab-sauv", "v'yd").
ABBREVIATIONS: dict[str, str] = {
    # Producer prefixes
    "ch": "chateau",
    "cht": "chateau",
    "dom": "domaine",
    "est": "estate",
    "vyd": "vineyard",
    "vnyd": "vineyard",
    "v'yd": "vineyard",
    # Grapes
    "cab": "cabernet",
    "cab sauv": "cabernet sauvignon",
    "cabernet sauv": "cabernet sauvignon",
    "cs": "cabernet sauvignon",
    "sauv": "sauvignon",
    "sauv blanc": "sauvignon blanc",
    "sb": "sauvignon blanc",
    "chard": "chardonnay",
    "pn": "pinot noir",
    "pg": "pinot grigio",
    "pinot g": "pinot grigio",
    "zin": "zinfandel",
    "zinf": "zinfandel",
    "shiraz": "syrah",
    "gewurz": "gewurztraminer",
    "gruner": "gruner veltliner",
    # Wine types
    "nv": "non vintage",
    "n v": "non vintage",
    # Regions
    "bdx": "bordeaux",
    "burg": "burgundy",
    "bourgogne": "burgundy",
    "toscana": "tuscany",
    "piemonte": "piedmont",
    "ribera": "ribera del duero",
    "napa": "napa valley",
    # Quality
    "rsv": "reserve",
    "res": "reserve",
    "reserva": "reserve",
    "riserva": "reserve",
    "1er cru": "premier cru",
    "1er": "premier cru",
    "gc": "grand cru",
    "pc": "premier cru",
    # Blends
    "gsm": "grenache syrah mourvedre",
    "cdp": "chateauneuf du pape",
    "chateauneuf": "chateauneuf du pape",
    # Serving sizes
    "btl": "bottle",
    "gls": "glass",
}

# Generic words that don't distinguish one producer from another when they
# trail the name ("Stag's Leap Wine Cellars" == "Stag's Leap Wine").
PRODUCER_SUFFIXES: frozenset[str] = frozenset(
    {"estate", "vineyard", "vineyards", "winery", "cellar", "cellars"}
)

CONJUNCTIONS: dict[str, str] = {
    "&": " and ",
    "+": " and ",
}

_VINTAGE_SHORTHAND = re.compile(r"['’‘`](\d{2})(?!\w)")
_FULL_YEAR = re.compile(r"(?<!\d)(19[5-9]\d|20[0-3]\d)(?!\d)")
_PRICE = re.compile(r"\$\s*(\d[\d,]*(?:\.\d{2})?)")
_POSSESSIVE = re.compile(r"['’]s(?!\w)")
_TOKEN = re.compile(r"[^\W_]+")
_NON_WORD = re.compile(r"[\W_]+")

_DOUBLE_V = re.compile(r"[vV][vV]")
_DIGIT_IN_WORD = re.compile(rf"(?<={LETTER})[0158](?={LETTER})")
_LETTER_IN_NUMBER = re.compile(r"(?<=[0-9])[OolI]+(?=[0-9])")
_DIGIT_WORD_START = re.compile(
    rf"(?<![^\W_])([015])(?={LETTER}{{2}})(?!(?i:er)(?!{LETTER}))"
)


def _coerce(text: Any) -> str:
    if text is None:
        return ""
    if isinstance(text, str):
        return text
    try:
        return str(text)
    except Exception:
        return ""


def _fold(text: str) -> str:
    """Strip diacritics (NFKD + drop combining marks) and fold ligatures."""
    decomposed = unicodedata.normalize("NFKD", text)
    stripped = "".join(char for char in decomposed if not unicodedata.combining(char))
    return "".join(LIGATURES.get(char, char) for char in stripped)


def _as_letter(digit: str, neighbour: str) -> str:
    letter = OCR_CORRECTIONS[digit]
    return letter.upper() if neighbour.isupper() else letter


def _fix_ocr_errors(text: str) -> str:
    # Order: no rule below can create work for a rule that ran before it.
    text = _DOUBLE_V.sub(lambda m: "W" if m.group(0)[0].isupper() else "w", text)
    text = _DIGIT_IN_WORD.sub(
        lambda m: _as_letter(m.group(0), text[m.end()] if m.end() < len(text) else ""),
        text,
    )
    text = _LETTER_IN_NUMBER.sub(
        lambda m: "".join(DIGIT_LOOKALIKES[char] for char in m.group(0)),
        text,
    )
    return _DIGIT_WORD_START.sub(
        lambda m: _as_letter(m.group(1), text[m.end()]),
        text,
    )


def _build_abbreviation_patterns() -> list[tuple[re.Pattern[str], str]]:
    patterns: list[tuple[re.Pattern[str], str]] = []
    ordered = sorted(ABBREVIATIONS.items(), key=lambda item: (-len(item[0]), item[0]))
    for key, expansion in ordered:
        key_words = re.findall(r"\w+", key)
        words = expansion.split()
        if not key_words or key_words == words:
            continue
        body = r"[\W_]+".join(re.escape(word) for word in key_words)
        guard = ""
        if words[: len(key_words)] == key_words and len(words) > len(key_words):
            # "napa" -> "napa valley" must not fire on "napa valley" again.
            tail = r"[\W_]+".join(re.escape(word) for word in words[len(key_words) :])
            guard = rf"(?![\W_]+{tail}(?![^\W_]))"
        pattern = re.compile(rf"(?<![^\W_]){body}\.?(?![^\W_]){guard}")
        patterns.append((pattern, expansion))
    return patterns


_ABBREVIATION_PATTERNS = _build_abbreviation_patterns()


def _expand_vintage(match: re.Match[str]) -> str:
    year = int(match.group(1))
    return f" {1900 + year if year > 50 else 2000 + year}"


def _expand_abbreviations(text: str) -> str:
    text = _VINTAGE_SHORTHAND.sub(_expand_vintage, text)
    for pattern, expansion in _ABBREVIATION_PATTERNS:
        text = pattern.sub(expansion, text)
    return text


def _strip_trailing_suffixes(text: str) -> str:
    while True:
        tokens = list(_TOKEN.finditer(text))
        if len(tokens) < 2 or tokens[-1].group(0) not in PRODUCER_SUFFIXES:
            return text
        text = text[: tokens[-1].start()]


def _normalize_producer_variations(text: str) -> str:
    for symbol, replacement in CONJUNCTIONS.items():
        text = text.replace(symbol, replacement)
    text = _POSSESSIVE.sub(" ", text)
    return _strip_trailing_suffixes(text)


def normalize(text: Any) -> str:
    """Normalize wine-list or database text into its canonical comparison form."""
    raw = _coerce(text)
    if not raw.strip():
        return ""

    try:
        value = _fix_ocr_errors(_fold(raw))
        value = _fold(value.lower())
        value = _expand_abbreviations(value)
        value = _normalize_producer_variations(value)
        value = _NON_WORD.sub(" ", value).strip()
    except (TypeError, ValueError, re.error) as exc:
        logger.warning(
            "normalize | error=%s | raw=%r | fallback=''",
            type(exc).__name__,
            raw,
        )
        return ""

    logger.debug("normalize | raw=%r | normalized=%r", raw, value)
    return value


PHONETIC_CODES: dict[str, str] = {
    **dict.fromkeys("bfpv", "1"),
    **dict.fromkeys("cgjkqsxz", "2"),
    **dict.fromkeys("dt", "3"),
    "l": "4",
    **dict.fromkeys("mn", "5"),
    "r": "6",
}


def _phonetic_key_of_normalized(normalized: str) -> str:
    if not normalized:
        return ""
    key = normalized[0].upper()
    last_code = ""
    for char in normalized[1:]:
        code = PHONETIC_CODES.get(char)
        if code is None:
            continue
        if code != last_code:
            key += code
            last_code = code
    return (key + "000")[:4]


def phonetic_key(text: Any) -> str:
    """Soundex-style key: first letter plus consonant classes, padded to 4."""
    return _phonetic_key_of_normalized(normalize(text))


def similarity(a: Any, b: Any) -> float:
    """Blend token overlap, edit distance and sound-alike into one score.

    0.5 * Jaccard(token sets) + 0.4 * (1 - levenshtein / max_len)
    + 0.1 when phonetic keys agree. Symmetric, bounded to [0, 1].
    """
    left = normalize(a)
    right = normalize(b)
    if left == right:
        return 1.0
    if not left or not right:
        return 0.0

    tokens_left = set(left.split())
    tokens_right = set(right.split())
    union = tokens_left | tokens_right
    token_score = len(tokens_left & tokens_right) / len(union) if union else 0.0

    max_length = max(len(left), len(right))
    edit_score = 1.0 - Levenshtein.distance(left, right) / max_length

    key_left = _phonetic_key_of_normalized(left)
    phonetic_bonus = 0.1 if key_left and key_left == _phonetic_key_of_normalized(right) else 0.0

    score = token_score * 0.5 + edit_score * 0.4 + phonetic_bonus
    return max(0.0, min(1.0, score))


def extract_vintage(text: Any) -> Optional[int]:
    """Return the first plausible vintage (1950-2039), full or 'YY form."""
    value = _coerce(text)
    match = _FULL_YEAR.search(value)
    if match:
        return int(match.group(1))
    short = _VINTAGE_SHORTHAND.search(value)
    if short:
        year = int(short.group(1))
        year = 1900 + year if year > 50 else 2000 + year
        if year <= 2039:
            return year
    return None


def extract_price(text: Any) -> Optional[Decimal]:
    """Parse the first "$1,250.00"-style price."""
    match = _PRICE.search(_coerce(text))
    if not match:
        return None
    try:
        return Decimal(match.group(1).replace(",", ""))
    except InvalidOperation:
        logger.debug("extract_price | unparseable=%r | fallback=None", match.group(0))
        return None


def strip_price(text: Any) -> str:
    return re.sub(r"\s{2,}", " ", _PRICE.sub(" ", _coerce(text))).strip()
