"""
api.py - FastAPI HTTP layer over the local wine store.

Serves the endpoints RemoteSearchClient consumes, so one scanner can act as
the remote tier for another:
  - GET  /health
  - GET  /wines/search
  - POST /wines/batch-match
  - GET  /wines/{wine_id}

Every response uses the envelope
    {"success": true, "data": {...}}
    {"success": false, "error": {"code": "...", "message": "..."}}

No matching logic lives here; it all goes through LocalWineStore.
"""

from __future__ import annotations

import os
import threading
from typing import Any, Optional

import uvicorn
from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import ScannerSettings
from logging_config import get_logger, setup_logging
from models import WineColor
from normalize import extract_vintage, normalize
from wine_store import LocalWineStore

logger = get_logger("winelens-api")

MAX_SEARCH_LIMIT = 50
MAX_BATCH_QUERIES = 100
DEFAULT_CONFIDENCE_THRESHOLD = 0.7

ERROR_CODES = {400: "VALIDATION_ERROR", 404: "NOT_FOUND", 500: "SERVER_ERROR"}

app = FastAPI(
    title="WineLens Wine Search API",
    version="1.0.0",
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

_store_lock = threading.Lock()
_store: Optional[LocalWineStore] = None


def set_store(store: Optional[LocalWineStore]) -> None:
    """Replace the served store. None forces a reload on next request."""
    global _store
    with _store_lock:
        _store = store


def get_store() -> LocalWineStore:
    """Served store, loaded once from WINELENS_WINES_PATH."""
    global _store
    with _store_lock:
        if _store is None:
            settings = ScannerSettings.from_env()
            store = LocalWineStore()
            if settings.wines_path:
                store.load(settings.wines_path)
            else:
                logger.warning("api_store_warning | reason='WINELENS_WINES_PATH not set' | fallback=empty")
            _store = store
        return _store


def _success(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data}


@app.exception_handler(HTTPException)
async def _http_error(_: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": {"code": ERROR_CODES.get(exc.status_code, "ERROR"), "message": str(exc.detail)},
        },
    )


@app.get("/health")
def health() -> dict[str, Any]:
    """Service health check."""
    return _success({"status": "ok", "wines": len(get_store())})


@app.get("/wines/search")
def search_wines(
    q: Optional[str] = None,
    limit: int = 10,
    vintage: Optional[int] = None,
    color: Optional[str] = None,
    min_score: Optional[int] = None,
    fuzzy: bool = True,
) -> dict[str, Any]:
    """Ranked search; without `fuzzy` only an exact hit is returned."""
    if not q or not q.strip():
        raise HTTPException(status_code=400, detail='Query parameter "q" is required')
    if color:
        try:
            WineColor(color.strip().lower())
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Unknown color: {color!r}") from exc
    search_limit = max(1, min(limit, MAX_SEARCH_LIMIT))
    normalized = normalize(q)

    try:
        store = get_store()
        if fuzzy:
            hits = [
                (wine, confidence, "fuzzy")
                for wine, confidence in store.search(
                    q,
                    limit=search_limit,
                    vintage=vintage,
                    color=color.strip().lower() if color else None,
                    min_score=min_score,
                )
            ]
        else:
            exact = store.find_exact_text(normalized, vintage if vintage is not None else extract_vintage(normalized))
            hits = [(exact, 1.0, "exact")] if exact is not None else []
    except Exception as exc:
        logger.error(
            "api_search_error | query=%r | error_type=%s | error=%s",
            q,
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail="Search failed") from exc

    results = [
        {
            "wine": wine.model_dump(mode="json"),
            "match_confidence": round(confidence, 4),
            "match_type": "exact" if confidence >= 1.0 else match_type,
        }
        for wine, confidence, match_type in hits
    ]
    return _success({"results": results, "total_count": len(results), "query_normalized": normalized})


@app.post("/wines/batch-match")
def batch_match(payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
    """Best store match per query; below the threshold counts as unmatched."""
    queries = payload.get("queries")
    if not isinstance(queries, list) or not queries:
        raise HTTPException(status_code=400, detail="queries array is required")
    if len(queries) > MAX_BATCH_QUERIES:
        raise HTTPException(status_code=400, detail=f"Maximum {MAX_BATCH_QUERIES} queries per request")

    options = payload.get("options") or {}
    try:
        threshold = float(options.get("confidence_threshold", DEFAULT_CONFIDENCE_THRESHOLD))
    except (TypeError, ValueError, AttributeError) as exc:
        raise HTTPException(status_code=400, detail="options.confidence_threshold must be a number") from exc

    store = get_store()
    matches: list[dict[str, Any]] = []
    for query in queries:
        text = str(query or "")
        try:
            best = store.search(text, limit=1)
        except Exception as exc:
            logger.warning(
                "api_batch_query_warning | query=%r | error_type=%s | fallback=unmatched",
                text,
                type(exc).__name__,
            )
            best = []
        if best and best[0][1] >= threshold:
            wine, confidence = best[0]
            matches.append({"query": query, "matched": True, "wine": wine.model_dump(mode="json"), "confidence": confidence})
        else:
            matches.append({"query": query, "matched": False, "wine": None, "confidence": best[0][1] if best else 0.0})

    matched_count = sum(1 for match in matches if match["matched"])
    logger.info("api_batch_match | queries=%d | matched=%d | threshold=%.2f", len(queries), matched_count, threshold)
    return _success({"matches": matches, "match_rate": matched_count / len(queries)})


@app.get("/wines/{wine_id}")
def get_wine(wine_id: str) -> dict[str, Any]:
    """One wine plus up to five other vintages of the same producer and name."""
    store = get_store()
    wine = store.get(wine_id)
    if wine is None:
        raise HTTPException(status_code=404, detail="Wine not found")

    related = [
        other
        for other in store.all_wines()
        if other.id != wine.id and other.producer == wine.producer and other.name == wine.name
    ]
    related.sort(key=lambda other: -(other.vintage or 0))
    return _success(
        {
            "wine": wine.model_dump(mode="json"),
            "related_vintages": [
                {"id": other.id, "vintage": other.vintage, "score": other.score} for other in related[:5]
            ],
        }
    )


def run(port: Optional[int] = None) -> None:
    port = port or int(os.getenv("PORT", "8000"))
    uvicorn.run("api:app", host="0.0.0.0", port=port, reload=False)


if __name__ == "__main__":
    setup_logging()
    run()
