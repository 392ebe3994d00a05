"""
models.py - Data Models for the Wine List Scanner

This file defines ALL data structures shared across the scanner. Every module
in the pipeline communicates exclusively through these models:

    ocr.py          ->  list[TextFragment]
    grouping.py     ->  list[WineTextCandidate]
    match.py        ->  MatchResult | None
    session.py      ->  RecognizedWine, ScanSession

Design principles:
1. Data flows one way: fragments -> candidates -> matches -> session state
2. OCR-side models are scoped to a single frame and never mutated
3. WineRecord belongs to the wine database; the scanner treats it as read-only
4. All fields carry descriptions so the JSON schema of the HTTP API and of
   the persisted session layout documents itself

Schema relationships:
    BoundingBox      --used by--> TextFragment, WineTextCandidate, RecognizedWine
    WineRecord       --used by--> MatchResult.wine, RecognizedWine.matched_wine
    RecognizedWine   --used by--> ScanSession.wines
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _clamp_unit(value: Any) -> float:
    number = float(value)
    return max(0.0, min(1.0, number))


class BoundingBox(BaseModel):
    """Normalized rectangle in frame coordinates.

    All values are fractions of the frame (0.0-1.0). The origin is the
    BOTTOM-LEFT corner, so a larger `max_y` means higher on screen. This is
    the convention of on-device text recognizers; the grouper relies on it
    when it sorts fragments top-to-bottom.
    """

    model_config = ConfigDict(frozen=True)

    x: float = Field(default=0.0, description="Left edge (0-1).")
    y: float = Field(default=0.0, description="Bottom edge (0-1), origin bottom-left.")
    width: float = Field(default=0.0, description="Width as a fraction of frame width.")
    height: float = Field(default=0.0, description="Height as a fraction of frame height.")

    @field_validator("x", "y", "width", "height", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        return _clamp_unit(value)

    @property
    def min_x(self) -> float:
        return self.x

    @property
    def min_y(self) -> float:
        return self.y

    @property
    def max_x(self) -> float:
        return self.x + self.width

    @property
    def max_y(self) -> float:
        return self.y + self.height

    @property
    def area(self) -> float:
        return self.width * self.height

    @classmethod
    def from_edges(cls, min_x: float, min_y: float, max_x: float, max_y: float) -> "BoundingBox":
        return cls(x=min_x, y=min_y, width=max(0.0, max_x - min_x), height=max(0.0, max_y - min_y))

    @classmethod
    def union(cls, boxes: list["BoundingBox"]) -> "BoundingBox":
        """Smallest box containing every box (min of mins, max of maxes)."""
        if not boxes:
            return cls()
        return cls.from_edges(
            min(box.min_x for box in boxes),
            min(box.min_y for box in boxes),
            max(box.max_x for box in boxes),
            max(box.max_y for box in boxes),
        )

    def overlap_ratio(self, other: "BoundingBox") -> float:
        """Intersection area divided by the smaller of the two areas."""
        width = min(self.max_x, other.max_x) - max(self.min_x, other.min_x)
        height = min(self.max_y, other.max_y) - max(self.min_y, other.min_y)
        if width <= 0 or height <= 0:
            return 0.0
        smaller = min(self.area, other.area)
        if smaller <= 0:
            return 0.0
        return (width * height) / smaller


class TextFragment(BaseModel):
    """One line of text recognized in a camera frame.

    Produced by the OCR collaborator, already filtered by its confidence floor.
    Immutable and scoped to the frame it came from.
    """

    model_config = ConfigDict(frozen=True)

    text: str = Field(..., description="Recognized text exactly as the OCR engine returned it.")
    bounding_box: BoundingBox = Field(default_factory=BoundingBox)
    confidence: float = Field(
        default=1.0,
        ge=0.0,
        le=1.0,
        description="Recognizer confidence for this line (0.0-1.0).",
    )


class WineTextCandidate(BaseModel):
    """A run of vertically adjacent fragments hypothesized to be one wine entry.

    Created by the grouper; discarded after matching unless it produced a
    match. Always built from at least one fragment and never has blank text.
    """

    full_text: str = Field(..., description="Fragment texts joined with single spaces.")
    bounding_box: BoundingBox = Field(default_factory=BoundingBox, description="Union of fragment boxes.")
    confidence: float = Field(default=1.0, ge=0.0, le=1.0, description="Mean fragment confidence.")
    line_count: int = Field(default=1, ge=1, description="Number of fragments in the group.")

    @field_validator("full_text")
    @classmethod
    def _non_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("full_text must be non-empty")
        return value


class WineColor(str, Enum):
    RED = "red"
    WHITE = "white"
    ROSE = "rose"
    SPARKLING = "sparkling"
    DESSERT = "dessert"
    FORTIFIED = "fortified"


class DrinkWindowStatus(str, Enum):
    TOO_YOUNG = "too_young"
    READY = "ready"
    PEAKING = "peaking"
    PAST_PRIME = "past_prime"


class GrapeVariety(BaseModel):
    name: str
    percentage: Optional[float] = Field(default=None, ge=0, le=100)


class WineRecord(BaseModel):
    """A reviewed wine as stored in the wine database.

    Owned by the database; the scanner never mutates one. `score` is the
    critic score shown on the badge, `drink_window_*` the vintage-specific
    years in which the wine is expected to be at its best.
    """

    id: str = Field(..., description="Database identifier, stable across lookups.")
    producer: str = Field(..., description="Producer/winery, e.g. 'Opus One' or 'Chateau Margaux'.")
    name: str = Field(default="", description="Cuvee or wine name within the producer's range.")
    vintage: Optional[int] = Field(default=None, description="Harvest year; None for non-vintage wines.")
    region: str = ""
    sub_region: Optional[str] = None
    appellation: Optional[str] = None
    country: str = ""
    color: WineColor = WineColor.RED
    grape_varieties: list[GrapeVariety] = Field(default_factory=list)
    score: Optional[int] = Field(default=None, ge=0, le=100, description="Critic score, 0-100.")
    tasting_note: str = ""
    reviewer_initials: str = ""
    drink_window_start: Optional[int] = None
    drink_window_end: Optional[int] = None
    release_price: Optional[Decimal] = Field(default=None, ge=0)
    release_price_currency: str = "USD"
    label_url: Optional[str] = None
    top100_rank: Optional[int] = None

    @field_validator("color", mode="before")
    @classmethod
    def _normalize_color(cls, value: Any) -> Any:
        if isinstance(value, WineColor):
            return value
        text = str(value or "").strip().lower()
        if "rose" in text or "rosé" in text:
            return WineColor.ROSE
        for color in WineColor:
            if color.value in text:
                return color
        return WineColor.RED

    @field_validator("grape_varieties", mode="before")
    @classmethod
    def _coerce_grapes(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            value = [part for part in value.split(";")]
        result: list[Any] = []
        for item in value:
            if isinstance(item, str):
                name = item.strip()
                if name:
                    result.append({"name": name})
            else:
                result.append(item)
        return result

    @field_validator("tasting_note", "reviewer_initials", "region", "country", "name", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @property
    def full_name(self) -> str:
        if self.vintage is not None:
            return f"{self.producer} {self.name} {self.vintage}".replace("  ", " ").strip()
        return self.display_name

    @property
    def display_name(self) -> str:
        if not self.name or self.name.lower() == self.producer.lower():
            return self.producer
        return f"{self.producer} {self.name}"

    @property
    def drink_window_display(self) -> str:
        start, end = self.drink_window_start, self.drink_window_end
        if start is None and end is None:
            return "Drink now"
        if end is None:
            return f"From {start}"
        if start is None:
            return f"Until {end}"
        if start == end:
            return str(start)
        return f"{start}-{end}"

    def drink_window_status(self, year: Optional[int] = None) -> DrinkWindowStatus:
        current = year if year is not None else datetime.now().year
        if self.drink_window_start is None:
            return DrinkWindowStatus.READY
        if current < self.drink_window_start:
            return DrinkWindowStatus.TOO_YOUNG
        if self.drink_window_end is not None and current > self.drink_window_end:
            return DrinkWindowStatus.PAST_PRIME
        if self.drink_window_end is not None and current >= self.drink_window_end - 2:
            return DrinkWindowStatus.PEAKING
        return DrinkWindowStatus.READY


class MatchType(str, Enum):
    """How a candidate was resolved to a wine record."""

    # Normalized producer+name (and vintage, when printed) hit the exact index.
    EXACT = "exact"

    # Best local similarity score above the fuzzy floor.
    FUZZY_LOCAL = "fuzzy_local"

    # Top result of the remote search collaborator.
    FUZZY_REMOTE = "fuzzy_remote"

    # The list printed a vintage the database does not hold; the nearest
    # available vintage of the same wine was matched instead.
    VINTAGE_VARIANT = "vintage_variant"

    # Only used on unresolved RecognizedWine entries kept for UI feedback.
    NO_MATCH = "no_match"


class MatchResult(BaseModel):
    """Best match for one candidate. At most one per candidate."""

    wine: WineRecord
    confidence: float = Field(..., ge=0.0, le=1.0)
    matched_vintage: Optional[int] = Field(
        default=None,
        description="Vintage the match refers to. None when OCR exposed no vintage.",
    )
    match_type: MatchType

    @classmethod
    def fuzzy(
        cls,
        wine: WineRecord,
        confidence: float,
        printed_vintage: Optional[int],
        match_type: MatchType = MatchType.FUZZY_LOCAL,
    ) -> "MatchResult":
        """Non-exact hit for a printed vintage.

        A record of a different vintage is flagged VINTAGE_VARIANT and keeps its
        own year. Non-vintage records answer any printed year.
        """
        confidence = max(0.0, min(1.0, float(confidence)))
        if printed_vintage is not None and wine.vintage not in (printed_vintage, None):
            return cls(
                wine=wine,
                confidence=confidence,
                matched_vintage=wine.vintage,
                match_type=MatchType.VINTAGE_VARIANT,
            )
        return cls(wine=wine, confidence=confidence, matched_vintage=printed_vintage, match_type=match_type)


class ValueIndicator(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    UNKNOWN = "unknown"


class RecognizedWine(BaseModel):
    """The externally visible unit: one wine-list entry seen during a scan.

    `matched_wine is None` marks an unresolved candidate. Those are kept in the
    current-frame results for overlay feedback and never enter a ScanSession.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Session-unique id.")
    original_text: str
    bounding_box: BoundingBox = Field(default_factory=BoundingBox)
    ocr_confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    matched_wine: Optional[WineRecord] = None
    match_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    matched_vintage: Optional[int] = None
    match_type: MatchType = MatchType.NO_MATCH
    list_price: Optional[Decimal] = Field(default=None, ge=0, description="Price printed on the list.")

    @classmethod
    def from_candidate(
        cls,
        candidate: WineTextCandidate,
        result: Optional[MatchResult],
        list_price: Optional[Decimal] = None,
    ) -> "RecognizedWine":
        return cls(
            original_text=candidate.full_text,
            bounding_box=candidate.bounding_box,
            ocr_confidence=candidate.confidence,
            matched_wine=result.wine if result else None,
            match_confidence=result.confidence if result else 0.0,
            matched_vintage=result.matched_vintage if result else None,
            match_type=result.match_type if result else MatchType.NO_MATCH,
            list_price=list_price,
        )

    @property
    def is_matched(self) -> bool:
        return self.matched_wine is not None

    @property
    def dedup_key(self) -> Optional[tuple[str, Optional[int]]]:
        """(wine id, vintage): same wine at two vintages is two entries."""
        if self.matched_wine is None:
            return None
        vintage = self.matched_vintage if self.matched_vintage is not None else self.matched_wine.vintage
        return self.matched_wine.id, vintage

    @property
    def value_ratio(self) -> Optional[float]:
        if self.matched_wine is None or self.list_price is None:
            return None
        release = self.matched_wine.release_price
        if release is None or release <= 0:
            return None
        return float(self.list_price) / float(release)

    @property
    def value_indicator(self) -> ValueIndicator:
        ratio = self.value_ratio
        if ratio is None:
            return ValueIndicator.UNKNOWN
        if ratio < 2.0:
            return ValueIndicator.EXCELLENT
        if ratio < 2.5:
            return ValueIndicator.GOOD
        if ratio < 3.5:
            return ValueIndicator.FAIR
        return ValueIndicator.POOR

    @property
    def is_best_value(self) -> bool:
        ratio = self.value_ratio
        if ratio is None or self.matched_wine is None:
            return False
        return (self.matched_wine.score or 0) >= 90 and ratio < 2.5


class ScanSession(BaseModel):
    """One continuous scanning interaction.

    This is also the persisted session layout handed to storage on save:
    a flat record of start time, optional location and the deduplicated wines.
    """

    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    start_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: Optional[datetime] = None
    location: Optional[str] = Field(default=None, description="Restaurant name, if provided.")
    wines: list[RecognizedWine] = Field(default_factory=list)

    @property
    def matched_count(self) -> int:
        return sum(1 for wine in self.wines if wine.is_matched)

    @property
    def top_score(self) -> Optional[int]:
        scores = [wine.matched_wine.score for wine in self.wines if wine.matched_wine and wine.matched_wine.score is not None]
        return max(scores) if scores else None

    def keys(self) -> set[tuple[str, Optional[int]]]:
        return {wine.dedup_key for wine in self.wines if wine.dedup_key is not None}

    def contains(self, key: Optional[tuple[str, Optional[int]]]) -> bool:
        return key is not None and key in self.keys()


class ScannerState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    PROCESSING = "processing"
    STOPPED = "stopped"


_FAULT_TEXT: dict[str, tuple[str, str]] = {
    "camera_not_authorized": (
        "Camera Access Required",
        "Please enable camera access in Settings to scan wine lists.",
    ),
    "camera_unavailable": (
        "Camera Error",
        "Unable to start the camera. Please try again or restart the app.",
    ),
    "ocr_unavailable": (
        "Text Recognition Unavailable",
        "Text recognition keeps failing on this device. Try better lighting or restart scanning.",
    ),
}


class ScannerFault(str, Enum):
    """Conditions the presentation layer must show explicitly."""

    CAMERA_NOT_AUTHORIZED = "camera_not_authorized"
    CAMERA_UNAVAILABLE = "camera_unavailable"
    OCR_UNAVAILABLE = "ocr_unavailable"

    @property
    def title(self) -> str:
        return _FAULT_TEXT[self.value][0]

    @property
    def message(self) -> str:
        return _FAULT_TEXT[self.value][1]

    @property
    def is_fatal(self) -> bool:
        return self is not ScannerFault.OCR_UNAVAILABLE


class Frame(BaseModel):
    """One camera frame handed to the OCR collaborator.

    `image` holds encoded image bytes (JPEG/PNG) with its pixel size. Replayed
    scans carry pre-recognized `fragments` instead of, or alongside, pixels.
    """

    image: bytes = b""
    width: int = Field(default=0, ge=0)
    height: int = Field(default=0, ge=0)
    fragments: Optional[list[TextFragment]] = None
