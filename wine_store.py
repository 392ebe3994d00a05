"""
wine_store.py - In-memory index of reviewed wines.

The store answers two questions for the matcher:
    find_exact(...)   "is this text exactly one of our wines?"
    find_fuzzy(...)   "which wine does this text most resemble, and how much?"

Indexes (all keyed by normalize() output, so OCR text and records meet on the
same ground):
    exact index     (name key, vintage) -> ids, name key = producer + name,
                    plus aliases with region / sub-region / appellation / grape
    term index      token (>= 3 chars) -> ids, the fuzzy shortlist
    phonetic index  phonetic key -> ids, catches misspelled single tokens

Records come from a CSV export (read with pandas), a versioned JSON cache, or
the remote search tier (`cache`). Reads and writes share one RLock so a
processing pass can read while a remote result is being cached.
"""

from __future__ import annotations

import json
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Any, Iterable, Optional

import pandas as pd
from pydantic import ValidationError

from logging_config import get_logger
from models import WineColor, WineRecord
from normalize import normalize, phonetic_key, similarity

logger = get_logger(__name__)

CACHE_VERSION = 2
MIN_TERM_LENGTH = 3
MIN_PARTIAL_TERM_LENGTH = 4
SEARCH_MIN_SIMILARITY = 0.3

REQUIRED_COLUMNS = ["producer"]

_NUMBER_TOKEN = re.compile(r"(?<!\S)\d+(?!\S)")


def _collapse(text: str) -> str:
    return " ".join(text.split())


def name_key(producer: Optional[str], name: Optional[str]) -> str:
    """Normalized producer + name; a name repeating the producer counts once."""
    producer_key = normalize(producer)
    if not normalize(name) or normalize(name) == producer_key:
        return producer_key
    return normalize(f"{producer or ''} {name}")


def record_aliases(wine: WineRecord) -> list[str]:
    """Normalized texts a wine list may print for this record."""
    base = name_key(wine.producer, wine.name)
    if not base:
        return []
    aliases = [base]
    extras = [wine.region, wine.sub_region or "", wine.appellation or ""]
    grape = wine.grape_varieties[0].name if wine.grape_varieties else ""
    if grape:
        grape_key = normalize(grape)
        aliases.append(_collapse(f"{base} {grape_key}"))
        extras.append(f"{grape} {wine.region}")
    for extra in extras:
        extra_key = normalize(extra)
        if extra_key:
            aliases.append(_collapse(f"{base} {extra_key}"))
    unique: list[str] = []
    for alias in aliases:
        if alias not in unique:
            unique.append(alias)
    return unique


def query_variants(normalized_text: str, vintage: Optional[int] = None) -> list[str]:
    """The text as given, without its vintage token, and without any numbers."""
    variants = [normalized_text]
    if vintage is not None:
        variants.append(_collapse(re.sub(rf"(?<!\S){vintage}(?!\S)", " ", normalized_text)))
    variants.append(_collapse(_NUMBER_TOKEN.sub(" ", normalized_text)))
    result: list[str] = []
    for variant in variants:
        if variant and variant not in result:
            result.append(variant)
    return result


class LocalWineStore:
    """Read-mostly wine index used by the local match tiers."""

    def __init__(self, wines: Optional[Iterable[WineRecord]] = None) -> None:
        self._lock = threading.RLock()
        self._wines: dict[str, WineRecord] = {}
        self._aliases: dict[str, list[str]] = {}
        self._exact: dict[tuple[str, Optional[int]], set[str]] = {}
        self._names: dict[str, set[str]] = {}
        self._terms: dict[str, set[str]] = {}
        self._phonetic: dict[str, set[str]] = {}
        if wines:
            self.cache_many(wines)

    def __len__(self) -> int:
        with self._lock:
            return len(self._wines)

    def __contains__(self, wine_id: object) -> bool:
        with self._lock:
            return wine_id in self._wines

    # -- Writes --

    def cache(self, wine: WineRecord) -> None:
        """Add or replace one record."""
        with self._lock:
            if wine.id in self._wines:
                self._unindex(wine.id)
            self._wines[wine.id] = wine
            self._index(wine)
        logger.debug("wine_cached | wine_id=%s | name=%r", wine.id, wine.full_name)

    def cache_many(self, wines: Iterable[WineRecord]) -> int:
        count = 0
        with self._lock:
            for wine in wines:
                self.cache(wine)
                count += 1
        logger.info("wines_cached | count=%d | total=%d", count, len(self))
        return count

    def clear(self) -> None:
        with self._lock:
            self._wines.clear()
            self._aliases.clear()
            self._exact.clear()
            self._names.clear()
            self._terms.clear()
            self._phonetic.clear()

    def _index(self, wine: WineRecord) -> None:
        aliases = record_aliases(wine)
        self._aliases[wine.id] = aliases
        for alias in aliases:
            self._exact.setdefault((alias, wine.vintage), set()).add(wine.id)
        if aliases:
            self._names.setdefault(aliases[0], set()).add(wine.id)

        search_text = normalize(f"{wine.display_name} {wine.region}")
        for term in search_text.split():
            if len(term) >= MIN_TERM_LENGTH and not term.isdigit():
                self._terms.setdefault(term, set()).add(wine.id)
        if aliases:
            self._phonetic.setdefault(phonetic_key(aliases[0]), set()).add(wine.id)

    def _unindex(self, wine_id: str) -> None:
        for index in (self._exact, self._names, self._terms, self._phonetic):
            for key in list(index):
                index[key].discard(wine_id)
                if not index[key]:
                    del index[key]
        self._aliases.pop(wine_id, None)

    # -- Reads --

    def get(self, wine_id: str) -> Optional[WineRecord]:
        with self._lock:
            return self._wines.get(wine_id)

    def all_wines(self) -> list[WineRecord]:
        with self._lock:
            return sorted(self._wines.values(), key=lambda wine: wine.id)

    def _pick(self, ids: Iterable[str]) -> Optional[WineRecord]:
        wines = sorted((self._wines[wine_id] for wine_id in ids), key=lambda wine: wine.id)
        return wines[0] if wines else None

    def _lookup(self, key: str, vintage: Optional[int]) -> Optional[WineRecord]:
        if not key:
            return None
        if vintage is not None:
            hit = self._pick(self._exact.get((key, vintage), ()))
            if hit is not None:
                return hit
            # Non-vintage wines (NV champagne) answer any printed year.
            return self._pick(self._exact.get((key, None), ()))

        hit = self._pick(self._exact.get((key, None), ()))
        if hit is not None:
            return hit
        vintaged = [
            self._wines[wine_id]
            for (alias, year), ids in self._exact.items()
            if alias == key and year is not None
            for wine_id in ids
        ]
        if not vintaged:
            return None
        return sorted(vintaged, key=lambda wine: (-(wine.vintage or 0), wine.id))[0]

    def find_exact(self, producer: str, name: str, vintage: Optional[int] = None) -> Optional[WineRecord]:
        """Exact lookup by producer + name (+ vintage when given)."""
        key = name_key(producer, name)
        with self._lock:
            return self._lookup(key, vintage)

    def find_exact_text(self, normalized_text: str, vintage: Optional[int] = None) -> Optional[WineRecord]:
        """Exact lookup by a whole normalized candidate text."""
        with self._lock:
            for variant in query_variants(normalized_text, vintage):
                hit = self._lookup(variant, vintage)
                if hit is not None:
                    return hit
        return None

    def _shortlist(self, variants: list[str]) -> set[str]:
        ids: set[str] = set()
        for variant in variants:
            for term in variant.split():
                if term.isdigit():
                    continue
                ids.update(self._terms.get(term, ()))
                if len(term) >= MIN_PARTIAL_TERM_LENGTH:
                    for index_term, term_ids in self._terms.items():
                        if len(index_term) >= MIN_PARTIAL_TERM_LENGTH and (term in index_term or index_term in term):
                            ids.update(term_ids)
            ids.update(self._phonetic.get(phonetic_key(variant), ()))
        return ids

    def _score(self, wine_id: str, variants: list[str]) -> float:
        return max(
            (similarity(variant, alias) for variant in variants for alias in self._aliases.get(wine_id, ())),
            default=0.0,
        )

    @staticmethod
    def _vintage_rank(wine: WineRecord, vintage: Optional[int]) -> tuple[int, int]:
        if vintage is not None:
            if wine.vintage == vintage:
                return 0, 0
            if wine.vintage is None:
                return 1, 0
            return 2, abs(wine.vintage - vintage)
        if wine.vintage is None:
            return 1, 0
        return 2, -wine.vintage

    def _ranked(self, normalized_text: str, vintage: Optional[int]) -> list[tuple[WineRecord, float]]:
        variants = query_variants(normalized_text, vintage)
        if not variants:
            return []
        ids = self._shortlist(variants) or set(self._wines)
        scored = [(self._wines[wine_id], self._score(wine_id, variants)) for wine_id in ids]
        scored.sort(key=lambda item: (-round(item[1], 6), self._vintage_rank(item[0], vintage), item[0].id))
        return scored

    def find_fuzzy(
        self,
        normalized_text: str,
        vintage: Optional[int] = None,
        min_similarity: float = 0.0,
    ) -> Optional[tuple[WineRecord, float]]:
        """Best-scoring record above `min_similarity`, or None.

        Equal scores prefer the requested vintage, then a vintage-less record,
        then the closest vintage, then the lowest id.
        """
        with self._lock:
            ranked = self._ranked(normalized_text, vintage)
        if not ranked:
            return None
        wine, score = ranked[0]
        score = max(0.0, min(1.0, score))
        if score < min_similarity:
            logger.debug(
                "find_fuzzy | below_floor=%.3f | floor=%.2f | best=%s",
                score,
                min_similarity,
                wine.id,
            )
            return None
        return wine, score

    def search(
        self,
        query: str,
        limit: int = 10,
        vintage: Optional[int] = None,
        color: Optional[WineColor | str] = None,
        min_score: Optional[int] = None,
        min_similarity: float = SEARCH_MIN_SIMILARITY,
    ) -> list[tuple[WineRecord, float]]:
        """Ranked (wine, confidence) results for free-text search."""
        normalized = normalize(query)
        if not normalized or limit <= 0:
            return []
        wanted_color = WineColor(color) if color else None
        with self._lock:
            ranked = self._ranked(normalized, vintage)

        results: list[tuple[WineRecord, float]] = []
        for wine, score in ranked:
            if score < min_similarity:
                continue
            if vintage is not None and wine.vintage not in (vintage, None):
                continue
            if wanted_color is not None and wine.color != wanted_color:
                continue
            if min_score is not None and (wine.score or 0) < min_score:
                continue
            results.append((wine, max(0.0, min(1.0, score))))
            if len(results) >= limit:
                break
        return results

    # -- Loading and saving --

    def load_wines_csv(self, csv_path: str | Path) -> int:
        """Load wines from a CSV export. Returns the number of records cached."""
        path = str(csv_path).strip()
        if not path:
            raise ValueError("csv_path cannot be empty")
        if not os.path.exists(path):
            raise FileNotFoundError(f"Wines CSV not found: {path}")

        try:
            df = pd.read_csv(path, encoding="utf-8-sig", dtype=str)
        except UnicodeDecodeError:
            logger.warning(
                "csv_encoding_warning | path=%s | reason='utf-8 decode failed' | fallback=latin-1",
                path,
            )
            df = pd.read_csv(path, encoding="latin-1", dtype=str)
        except Exception as exc:
            raise ValueError(f"Failed to read CSV '{path}': {exc}") from exc

        df.columns = [str(col).strip().lower() for col in df.columns]
        df = df.dropna(how="all").copy()
        missing = [column for column in REQUIRED_COLUMNS if column not in df.columns]
        if missing:
            raise ValueError(f"Wines CSV missing required columns: {missing} (found: {list(df.columns)})")

        wines: list[WineRecord] = []
        skipped = 0
        for idx, row in df.iterrows():
            payload = {column: (row[column].strip() if pd.notna(row[column]) else None) for column in df.columns}
            payload = {key: value for key, value in payload.items() if value not in (None, "")}
            payload.setdefault("id", f"csv-{idx}")
            try:
                wines.append(WineRecord.model_validate(payload))
            except ValidationError as exc:
                skipped += 1
                logger.warning(
                    "csv_row_warning | path=%s | row=%s | errors=%d | fallback=skip",
                    path,
                    idx,
                    exc.error_count(),
                )

        count = self.cache_many(wines)
        logger.info("csv_loaded | path=%s | rows=%d | wines=%d | skipped=%d", path, len(df), count, skipped)
        return count

    def load_wines_json(self, json_path: str | Path) -> int:
        """Load a versioned cache file: {"version": 2, "wines": [...]}.

        A missing or mismatched version leaves the store empty.
        """
        path = Path(json_path)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning(
                "wine_cache_load_warning | path=%s | error_type=%s | error=%s | fallback=empty",
                path,
                type(exc).__name__,
                exc,
            )
            return 0

        version = raw.get("version") if isinstance(raw, dict) else None
        if version != CACHE_VERSION:
            logger.warning(
                "wine_cache_version_mismatch | path=%s | saved=%s | current=%s | fallback=empty",
                path,
                version,
                CACHE_VERSION,
            )
            self.clear()
            return 0

        wines: list[WineRecord] = []
        for item in raw.get("wines") or []:
            try:
                wines.append(WineRecord.model_validate(item))
            except ValidationError as exc:
                logger.warning("wine_cache_record_warning | path=%s | errors=%d | fallback=skip", path, exc.error_count())
        return self.cache_many(wines)

    def load(self, path: str | Path) -> int:
        """Load by extension: .csv via pandas, anything else as a JSON cache."""
        if str(path).lower().endswith(".csv"):
            return self.load_wines_csv(path)
        return self.load_wines_json(path)

    def save_json(self, json_path: str | Path) -> None:
        """Persist all records atomically as a versioned JSON cache."""
        path = Path(json_path).resolve()
        path.parent.mkdir(parents=True, exist_ok=True)
        payload: dict[str, Any] = {
            "version": CACHE_VERSION,
            "wines": [wine.model_dump(mode="json") for wine in self.all_wines()],
        }
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=str(path.parent),
            delete=False,
            suffix=".tmp",
            prefix="wines-",
        ) as tmp_file:
            json.dump(payload, tmp_file, ensure_ascii=False, indent=2)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
            tmp_path = Path(tmp_file.name)
        os.replace(tmp_path, path)
