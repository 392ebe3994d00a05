"""
Pytest configuration and shared fixtures for the wine list scanner tests.

This module provides:
- A small reviewed-wine catalogue and a store built from it
- A fragment factory for building OCR output by hand
- Settings with the default thresholds

Usage:
    pytest -v
    pytest test_session.py -v
"""

from __future__ import annotations

import os
import sys
from decimal import Decimal
from typing import Callable

import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from config import ScannerSettings
from models import BoundingBox, TextFragment, WineRecord
from wine_store import LocalWineStore


# =============================================================================
# Catalogue
# =============================================================================

def _catalogue() -> list[WineRecord]:
    return [
        WineRecord(
            id="opus-2019",
            producer="Opus One",
            name="Opus One",
            vintage=2019,
            region="Napa Valley",
            country="USA",
            color="red",
            grape_varieties=["Cabernet Sauvignon", "Merlot"],
            score=97,
            release_price=Decimal("425"),
        ),
        WineRecord(
            id="opus-2018",
            producer="Opus One",
            name="Opus One",
            vintage=2018,
            region="Napa Valley",
            country="USA",
            color="red",
            grape_varieties=["Cabernet Sauvignon", "Merlot"],
            score=96,
            release_price=Decimal("395"),
        ),
        WineRecord(
            id="margaux-2015",
            producer="Chateau Margaux",
            vintage=2015,
            region="Bordeaux",
            appellation="Margaux",
            country="France",
            color="red",
            score=99,
            release_price=Decimal("650"),
        ),
        WineRecord(
            id="veuve-nv",
            producer="Veuve Clicquot",
            name="Brut Yellow Label",
            region="Champagne",
            country="France",
            color="sparkling",
            grape_varieties="Pinot Noir;Chardonnay",
            score=91,
            release_price=Decimal("60"),
        ),
        WineRecord(
            id="cloudy-bay-2022",
            producer="Cloudy Bay",
            name="Sauvignon Blanc",
            vintage=2022,
            region="Marlborough",
            country="New Zealand",
            color="white",
            grape_varieties=["Sauvignon Blanc"],
            score=90,
            release_price=Decimal("35"),
        ),
    ]


@pytest.fixture
def wines() -> list[WineRecord]:
    return _catalogue()


@pytest.fixture
def store(wines) -> LocalWineStore:
    return LocalWineStore(wines)


@pytest.fixture
def settings() -> ScannerSettings:
    return ScannerSettings()


# =============================================================================
# OCR output
# =============================================================================

@pytest.fixture
def fragment() -> Callable[..., TextFragment]:
    """Factory: fragment("Opus One", y=0.78) with a bottom-left origin box."""

    def make(
        text: str,
        y: float,
        x: float = 0.1,
        width: float = 0.4,
        height: float = 0.03,
        confidence: float = 0.9,
    ) -> TextFragment:
        return TextFragment(
            text=text,
            bounding_box=BoundingBox(x=x, y=y, width=width, height=height),
            confidence=confidence,
        )

    return make
