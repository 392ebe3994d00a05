"""
match.py - Resolve wine text candidates to database records.

Tiered resolution, stopping at the first tier that clears its bar:
1. exact local   normalized producer+name (+ vintage) is a key of the store
2. fuzzy local   best store similarity at or above the fuzzy floor
3. fuzzy remote  top result of the remote search service, confidence as-is

Matching never raises. "No result" is the error channel: a candidate that no
tier resolves, a store that blows up, and a remote timeout all end as None.

Vintage handling, for the fuzzy tiers and the remote tier alike:
- no printed vintage   -> best wine regardless of vintage, matched_vintage None
- printed vintage held -> matched_vintage is the printed vintage
- printed vintage not held -> nearest vintage of the wine, flagged
  MatchType.VINTAGE_VARIANT with the record's own vintage
"""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Iterable, Optional, Union

from pydantic import BaseModel, Field

from config import DEFAULT_SETTINGS, ScannerSettings
from logging_config import get_logger, graceful
from models import MatchResult, MatchType, WineRecord, WineTextCandidate
from normalize import extract_price, extract_vintage, normalize, strip_price
from remote_search import RemoteSearchClient
from wine_store import LocalWineStore

logger = get_logger(__name__)

CandidateInput = Union[WineTextCandidate, str]


class ParsedWineText(BaseModel):
    """What the matcher extracts from one candidate's text."""

    normalized_text: str = Field(..., description="normalize() of the text with its price removed.")
    vintage: Optional[int] = Field(default=None, description="Printed vintage, 1950-2039.")
    price: Optional[Decimal] = Field(default=None, description="Printed list price.")


def parse_wine_text(text: Optional[str]) -> ParsedWineText:
    raw = text or ""
    normalized = normalize(strip_price(raw))
    return ParsedWineText(
        normalized_text=normalized,
        vintage=extract_vintage(normalized),
        price=extract_price(raw),
    )


def _text_of(candidate: CandidateInput) -> str:
    if isinstance(candidate, WineTextCandidate):
        return candidate.full_text
    return str(candidate or "")


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


class WineMatcher:
    """Runs the exact, fuzzy and remote tiers against one store."""

    def __init__(
        self,
        store: LocalWineStore,
        remote: Optional[RemoteSearchClient] = None,
        settings: Optional[ScannerSettings] = None,
    ) -> None:
        self.store = store
        self.remote = remote
        self.settings = settings or DEFAULT_SETTINGS

    def _remote_result(self, wine: WineRecord, confidence: float, parsed: ParsedWineText) -> MatchResult:
        self.store.cache(wine)
        result = MatchResult.fuzzy(wine, confidence, parsed.vintage, MatchType.FUZZY_REMOTE)
        logger.debug(
            "match_complete | tier=remote | match_type=%s | wine_id=%s | vintage=%s | confidence=%.3f | text=%r",
            result.match_type.value,
            wine.id,
            result.matched_vintage,
            result.confidence,
            parsed.normalized_text,
        )
        return result

    @graceful(lambda: None, log_level=logging.WARNING)
    def match_local(self, candidate: CandidateInput) -> Optional[MatchResult]:
        """Exact then fuzzy tier against the local store."""
        parsed = parse_wine_text(_text_of(candidate))
        if not parsed.normalized_text:
            return None

        exact = self.store.find_exact_text(parsed.normalized_text, parsed.vintage)
        if exact is not None:
            logger.debug(
                "match_complete | tier=exact | wine_id=%s | vintage=%s | text=%r",
                exact.id,
                parsed.vintage,
                parsed.normalized_text,
            )
            return MatchResult(
                wine=exact,
                confidence=_clamp(self.settings.exact_confidence),
                matched_vintage=parsed.vintage,
                match_type=MatchType.EXACT,
            )

        fuzzy = self.store.find_fuzzy(
            parsed.normalized_text,
            vintage=parsed.vintage,
            min_similarity=self.settings.fuzzy_min_similarity,
        )
        if fuzzy is None:
            return None

        wine, score = fuzzy
        result = MatchResult.fuzzy(wine, score, parsed.vintage)
        logger.debug(
            "match_complete | tier=%s | wine_id=%s | confidence=%.3f | text=%r",
            result.match_type.value,
            wine.id,
            result.confidence,
            parsed.normalized_text,
        )
        return result

    @graceful(lambda: None, log_level=logging.WARNING)
    async def match(self, candidate: CandidateInput) -> Optional[MatchResult]:
        """All three tiers. The local tiers run in a worker thread."""
        local = await asyncio.to_thread(self.match_local, candidate)
        if local is not None or self.remote is None:
            return local

        parsed = parse_wine_text(_text_of(candidate))
        if not parsed.normalized_text:
            return None
        result = await self.remote.search(parsed.normalized_text, parsed.vintage)
        if result is None:
            return None
        return self._remote_result(result.wine, result.confidence, parsed)

    async def batch_match(self, texts: Iterable[str]) -> dict[str, Optional[MatchResult]]:
        """Local tiers per text, then one remote batch call for the rest."""
        ordered = list(dict.fromkeys(texts))
        results: dict[str, Optional[MatchResult]] = {}
        for text in ordered:
            results[text] = await asyncio.to_thread(self.match_local, text)

        unmatched = [text for text in ordered if results[text] is None]
        if not unmatched or self.remote is None:
            return results

        parsed_by_text = {text: parse_wine_text(text) for text in unmatched}
        remote = await self.remote.batch_match(
            [parsed.normalized_text for parsed in parsed_by_text.values()],
            confidence_threshold=self.settings.partial_match_threshold,
        )
        for text, parsed in parsed_by_text.items():
            wine, confidence = remote.get(parsed.normalized_text, (None, 0.0))
            if wine is None or confidence < self.settings.partial_match_threshold:
                continue
            results[text] = self._remote_result(wine, confidence, parsed)

        logger.info(
            "batch_match_complete | texts=%d | matched=%d | remote_queried=%d",
            len(ordered),
            sum(1 for result in results.values() if result is not None),
            len(unmatched),
        )
        return results
