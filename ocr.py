"""
ocr.py - OCR collaborators.

Providers turn one camera frame into per-line TextFragments:
    ReplayOCRProvider        recorded fragments carried by the frame (CLI, tests)
    GoogleVisionOCRProvider  Google Cloud Vision TEXT_DETECTION over HTTPS

ResilientOCR wraps any provider for the scanning pipeline. A failing frame
yields [] instead of an exception; repeated failures switch the provider to
its fast mode and eventually report the engine as unavailable so the UI can
say so instead of stalling silently.
"""

from __future__ import annotations

import base64
from typing import Any, Iterable, Optional, Protocol, runtime_checkable

import httpx

from config import DEFAULT_SETTINGS, ScannerSettings
from logging_config import get_logger
from models import BoundingBox, Frame, TextFragment

logger = get_logger(__name__)

GOOGLE_VISION_URL = "https://vision.googleapis.com/v1/images:annotate"
GOOGLE_LANGUAGE_HINTS = ["en", "fr", "it", "es", "de", "pt"]
# TEXT_DETECTION reports no per-word confidence.
GOOGLE_DEFAULT_CONFIDENCE = 0.9


class OCRProviderError(Exception):
    """The provider could not recognize text in a frame."""


@runtime_checkable
class OCRProvider(Protocol):
    name: str
    requires_internet: bool

    async def recognize_frame(self, frame: Frame) -> list[TextFragment]:
        ...


def filter_fragments(fragments: Iterable[TextFragment], min_confidence: float) -> list[TextFragment]:
    """Drop blank fragments and those at or below the confidence floor."""
    return [
        fragment
        for fragment in fragments
        if fragment.text.strip() and fragment.confidence > min_confidence
    ]


class ReplayOCRProvider:
    """Returns the fragments recorded alongside each frame."""

    name = "Replay"
    requires_internet = False

    async def recognize_frame(self, frame: Frame) -> list[TextFragment]:
        if frame.fragments is None:
            raise OCRProviderError("frame carries no recorded fragments")
        return list(frame.fragments)


class GoogleVisionOCRProvider:
    """Google Cloud Vision TEXT_DETECTION client.

    Vertices come back in pixels with a top-left origin; they are converted to
    normalized boxes with a bottom-left origin like every other fragment.
    """

    name = "Google Cloud Vision"
    requires_internet = True

    def __init__(
        self,
        api_key: str,
        timeout: float = 30.0,
        connect_timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not str(api_key or "").strip():
            raise ValueError("api_key is required for GoogleVisionOCRProvider.")
        self.api_key = api_key
        self.fast_mode = False
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=connect_timeout),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def build_request(self, frame: Frame) -> dict[str, Any]:
        request: dict[str, Any] = {
            "image": {"content": base64.b64encode(frame.image).decode("ascii")},
            "features": [{"type": "TEXT_DETECTION", "maxResults": 100}],
        }
        if not self.fast_mode:
            request["imageContext"] = {"languageHints": GOOGLE_LANGUAGE_HINTS}
        return {"requests": [request]}

    async def recognize_frame(self, frame: Frame) -> list[TextFragment]:
        if not frame.image:
            raise OCRProviderError("frame has no image data")
        if frame.width <= 0 or frame.height <= 0:
            raise OCRProviderError("frame size is required to normalize bounding boxes")

        try:
            response = await self._client.post(
                GOOGLE_VISION_URL,
                params={"key": self.api_key},
                json=self.build_request(frame),
            )
        except httpx.HTTPError as exc:
            raise OCRProviderError(f"Google Vision request failed: {type(exc).__name__}") from exc

        if response.status_code != 200:
            message = f"HTTP error: {response.status_code}"
            try:
                message = response.json()["error"]["message"]
            except (ValueError, KeyError, TypeError):
                pass
            raise OCRProviderError(f"Google Vision API error: {message}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise OCRProviderError("Google Vision returned invalid JSON") from exc
        return self.parse_response(payload, frame.width, frame.height)

    @staticmethod
    def parse_response(payload: dict[str, Any], width: int, height: int) -> list[TextFragment]:
        responses = payload.get("responses") or [{}]
        annotations = (responses[0] or {}).get("textAnnotations") or []

        fragments: list[TextFragment] = []
        # The first annotation is the whole text block.
        for annotation in annotations[1:]:
            text = annotation.get("description")
            vertices = (annotation.get("boundingPoly") or {}).get("vertices") or []
            if not text or len(vertices) < 2:
                continue
            xs = [float(vertex.get("x", 0)) for vertex in vertices]
            ys = [float(vertex.get("y", 0)) for vertex in vertices]
            box = BoundingBox(
                x=min(xs) / width,
                y=1.0 - max(ys) / height,
                width=(max(xs) - min(xs)) / width,
                height=(max(ys) - min(ys)) / height,
            )
            fragments.append(TextFragment(text=text, bounding_box=box, confidence=GOOGLE_DEFAULT_CONFIDENCE))
        return fragments


class ResilientOCR:
    """Absorbs provider failures and tracks degradation for the pipeline."""

    def __init__(
        self,
        provider: OCRProvider,
        degrade_after: int = 3,
        fault_after: int = 10,
        min_confidence: float = 0.5,
    ) -> None:
        self.provider = provider
        self.degrade_after = degrade_after
        self.fault_after = fault_after
        self.min_confidence = min_confidence
        self.consecutive_failures = 0
        self.degraded = False

    @property
    def name(self) -> str:
        return self.provider.name

    @property
    def requires_internet(self) -> bool:
        return self.provider.requires_internet

    @property
    def faulted(self) -> bool:
        return self.consecutive_failures >= self.fault_after

    def _record_failure(self, exc: Exception) -> None:
        self.consecutive_failures += 1
        logger.warning(
            "ocr_frame_failed | provider=%s | consecutive=%d | error_type=%s | error=%s | fallback=[]",
            self.name,
            self.consecutive_failures,
            type(exc).__name__,
            exc,
        )
        if not self.degraded and self.consecutive_failures >= self.degrade_after:
            self.degraded = True
            if hasattr(self.provider, "fast_mode"):
                self.provider.fast_mode = True
            logger.warning("ocr_degraded | provider=%s | after=%d", self.name, self.consecutive_failures)
        if self.consecutive_failures == self.fault_after:
            logger.error("ocr_unavailable | provider=%s | after=%d", self.name, self.consecutive_failures)

    async def recognize_frame(self, frame: Frame) -> list[TextFragment]:
        try:
            fragments = await self.provider.recognize_frame(frame)
        except Exception as exc:
            self._record_failure(exc)
            return []
        self.consecutive_failures = 0
        return filter_fragments(fragments, self.min_confidence)


def create_ocr_provider(
    settings: Optional[ScannerSettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ResilientOCR:
    """Select the provider once from settings and wrap it for the pipeline."""
    settings = settings or DEFAULT_SETTINGS
    choice = settings.ocr_provider.strip().lower()

    provider: OCRProvider
    if choice == "google":
        if settings.google_vision_api_key:
            provider = GoogleVisionOCRProvider(
                settings.google_vision_api_key,
                timeout=settings.request_timeout_s,
                connect_timeout=settings.connect_timeout_s,
                transport=transport,
            )
        else:
            logger.warning("ocr_provider_warning | provider=google | reason='api key missing' | fallback=replay")
            provider = ReplayOCRProvider()
    elif choice == "replay":
        provider = ReplayOCRProvider()
    else:
        raise ValueError(f"Unknown OCR provider: {settings.ocr_provider!r} (expected 'replay' or 'google')")

    logger.info("ocr_provider_selected | provider=%s | internet=%s", provider.name, provider.requires_internet)
    return ResilientOCR(
        provider,
        degrade_after=settings.ocr_degrade_after,
        fault_after=settings.ocr_fault_after,
        min_confidence=settings.ocr_min_fragment_confidence,
    )
