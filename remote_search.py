"""
remote_search.py - HTTP client for the wine search service.

The remote tier is the matcher's last resort. It is treated as a stateless,
idempotent call with a bounded timeout: a timeout, transport failure or bad
payload degrades to "no remote match" and never reaches the scanner UI.

Wire format (both directions use the same envelope):
    {"success": true, "data": {...}}
    {"success": false, "error": {"code": "...", "message": "..."}}
"""

from __future__ import annotations

from typing import Any, Optional

import httpx
from pydantic import ValidationError

from config import ScannerSettings
from logging_config import get_logger
from models import MatchResult, MatchType, WineRecord

logger = get_logger(__name__)

MAX_BATCH_QUERIES = 100


class RemoteSearchError(Exception):
    """Non-2xx response or a payload that does not follow the envelope."""


class RemoteSearchClient:
    """Async client for GET /wines/search, POST /wines/batch-match, GET /wines/{id}."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        connect_timeout: float = 10.0,
        timeout: float = 30.0,
        retries: int = 1,
        min_confidence: float = 0.7,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not str(base_url or "").strip():
            raise ValueError("base_url is required for RemoteSearchClient.")
        self.base_url = base_url.rstrip("/")
        self.retries = max(0, int(retries))
        self.min_confidence = min_confidence
        headers = {"Accept": "application/json"}
        if api_key:
            headers["X-API-Key"] = api_key
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout, connect=connect_timeout),
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: ScannerSettings, transport: Optional[httpx.AsyncBaseTransport] = None) -> Optional["RemoteSearchClient"]:
        """Client for `settings.api_base_url`, or None when no URL is configured."""
        if not settings.remote_enabled:
            return None
        return cls(
            base_url=settings.api_base_url,
            api_key=settings.api_key,
            connect_timeout=settings.connect_timeout_s,
            timeout=settings.request_timeout_s,
            retries=settings.remote_retries,
            min_confidence=settings.remote_min_confidence,
            transport=transport,
        )

    async def __aenter__(self) -> "RemoteSearchClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Send with retries on transport errors; return the envelope's data."""
        attempts = self.retries + 1
        for attempt in range(1, attempts + 1):
            try:
                response = await self._client.request(method, path, **kwargs)
                break
            except httpx.TransportError as exc:
                logger.warning(
                    "remote_transport_warning | path=%s | attempt=%d/%d | error_type=%s",
                    path,
                    attempt,
                    attempts,
                    type(exc).__name__,
                )
                if attempt == attempts:
                    raise

        if response.status_code == 404:
            return None
        if not response.is_success:
            raise RemoteSearchError(f"{method} {path} returned {response.status_code}")

        try:
            body = response.json()
        except ValueError as exc:
            raise RemoteSearchError(f"{method} {path} returned invalid JSON") from exc
        if not isinstance(body, dict) or not body.get("success"):
            error = body.get("error") if isinstance(body, dict) else None
            raise RemoteSearchError(f"{method} {path} failed: {error}")
        return body.get("data")

    async def search(self, normalized_text: str, vintage: Optional[int] = None) -> Optional[MatchResult]:
        """Top remote result for a normalized text, or None. Never raises."""
        if not normalized_text:
            return None
        params: dict[str, Any] = {"q": normalized_text, "fuzzy": "true", "limit": 1}
        if vintage is not None:
            params["vintage"] = vintage

        try:
            data = await self._request("GET", "/wines/search", params=params)
            results = (data or {}).get("results") or []
            if not results:
                logger.debug("remote_search | query=%r | results=0", normalized_text)
                return None
            best = results[0]
            wine = WineRecord.model_validate(best["wine"])
            confidence = max(0.0, min(1.0, float(best.get("match_confidence", 0.0))))
        except (httpx.HTTPError, RemoteSearchError, ValidationError, KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.warning(
                "remote_search_failed | query=%r | error_type=%s | error=%s | fallback=None",
                normalized_text,
                type(exc).__name__,
                exc,
            )
            return None

        if confidence < self.min_confidence:
            logger.debug(
                "remote_search | query=%r | below_floor=%.3f | floor=%.2f",
                normalized_text,
                confidence,
                self.min_confidence,
            )
            return None

        return MatchResult.fuzzy(wine, confidence, vintage, MatchType.FUZZY_REMOTE)

    async def batch_match(
        self,
        queries: list[str],
        confidence_threshold: Optional[float] = None,
    ) -> dict[str, tuple[Optional[WineRecord], float]]:
        """Match up to 100 queries per request. Failed chunks map to (None, 0.0)."""
        unique = list(dict.fromkeys(query for query in queries if query))
        results: dict[str, tuple[Optional[WineRecord], float]] = {}
        threshold = self.min_confidence if confidence_threshold is None else confidence_threshold

        for start in range(0, len(unique), MAX_BATCH_QUERIES):
            chunk = unique[start : start + MAX_BATCH_QUERIES]
            payload = {"queries": chunk, "options": {"fuzzy": True, "confidence_threshold": threshold}}
            try:
                data = await self._request("POST", "/wines/batch-match", json=payload)
                for item in (data or {}).get("matches") or []:
                    query = item.get("query")
                    wine_payload = item.get("wine")
                    wine = WineRecord.model_validate(wine_payload) if wine_payload else None
                    results[query] = (wine, max(0.0, min(1.0, float(item.get("confidence") or 0.0))))
            except (httpx.HTTPError, RemoteSearchError, ValidationError, TypeError, ValueError, AttributeError) as exc:
                logger.warning(
                    "remote_batch_failed | queries=%d | error_type=%s | error=%s | fallback=unmatched",
                    len(chunk),
                    type(exc).__name__,
                    exc,
                )
            for query in chunk:
                results.setdefault(query, (None, 0.0))
        return results

    async def get_wine(self, wine_id: str) -> Optional[WineRecord]:
        try:
            data = await self._request("GET", f"/wines/{wine_id}")
            if not data:
                return None
            return WineRecord.model_validate(data.get("wine", data))
        except (httpx.HTTPError, RemoteSearchError, ValidationError, AttributeError) as exc:
            logger.warning(
                "remote_get_wine_failed | wine_id=%s | error_type=%s | fallback=None",
                wine_id,
                type(exc).__name__,
            )
            return None
