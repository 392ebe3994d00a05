"""
config.py - Tunable scanner settings.

Every threshold below was tuned empirically against printed wine lists. They
are order-of-magnitude values, not derived constants, so each one can be
overridden through a WINELENS_* environment variable (or a local .env file).
"""

from __future__ import annotations

import os
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from logging_config import get_logger

logger = get_logger(__name__)

ENV_PREFIX = "WINELENS_"


class ScannerSettings(BaseModel):
    """All knobs for grouping, matching, throttling and collaborators."""

    # -- Candidate grouping --
    group_gap_threshold: float = Field(
        default=0.025,
        gt=0,
        lt=1,
        description=(
            "Maximum vertical gap (fraction of frame height) between one "
            "fragment's bottom edge and the next fragment's top edge for both "
            "to belong to the same wine entry."
        ),
    )

    # -- Admission filter --
    min_text_length: int = Field(default=15, ge=1)
    min_candidate_confidence: float = Field(default=0.5, ge=0, le=1)
    max_special_chars: int = Field(
        default=2,
        ge=0,
        description="More than this many of &%$#@~^*+-= marks a keyboard/UI artifact.",
    )
    max_numeric_symbol_ratio: float = Field(default=0.5, ge=0, le=1)
    all_caps_max_length: int = Field(
        default=8,
        ge=0,
        description="All-caps strings longer than this are section headers ('RED WINES').",
    )
    min_wine_indicators: int = Field(default=2, ge=0, le=4)

    # -- Matching --
    exact_confidence: float = Field(default=0.98, ge=0, le=1)
    fuzzy_min_similarity: float = Field(default=0.7, ge=0, le=1)
    remote_min_confidence: float = Field(default=0.7, ge=0, le=1)
    partial_match_threshold: float = Field(
        default=0.5,
        ge=0,
        le=1,
        description="Remote batch results at or above this are still returned.",
    )

    # -- Session pipeline --
    throttle_interval_s: float = Field(default=0.5, ge=0)
    overlay_overlap_threshold: float = Field(default=0.5, ge=0, le=1)

    # -- OCR collaborator --
    ocr_provider: str = Field(default="replay", description="'replay' or 'google'.")
    ocr_min_fragment_confidence: float = Field(default=0.5, ge=0, le=1)
    ocr_degrade_after: int = Field(default=3, ge=1)
    ocr_fault_after: int = Field(default=10, ge=1)
    google_vision_api_key: str = ""

    # -- Remote search collaborator --
    api_base_url: str = ""
    api_key: str = ""
    connect_timeout_s: float = Field(default=10.0, gt=0)
    request_timeout_s: float = Field(default=30.0, gt=0)
    remote_retries: int = Field(default=1, ge=0)

    # -- Persistence --
    session_dir: str = "data/sessions"
    history_limit: int = Field(default=50, ge=1)
    wines_path: str = ""

    @property
    def remote_enabled(self) -> bool:
        return bool(self.api_base_url.strip())

    @classmethod
    def from_env(cls, env_file: Optional[str] = None, **overrides: Any) -> "ScannerSettings":
        """Build settings from WINELENS_* variables, then apply overrides."""
        if env_file:
            load_dotenv(env_file)
        else:
            load_dotenv()

        values: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            raw = os.getenv(f"{ENV_PREFIX}{name.upper()}")
            if raw is None or not raw.strip():
                continue
            annotation = field.annotation
            try:
                if annotation is int:
                    values[name] = int(raw)
                elif annotation is float:
                    values[name] = float(raw)
                else:
                    values[name] = raw.strip()
            except ValueError:
                logger.warning(
                    "settings_env_warning | variable=%s%s | raw=%r | fallback=default",
                    ENV_PREFIX,
                    name.upper(),
                    raw,
                )

        values.update(overrides)
        settings = cls.model_validate(values)
        logger.debug(
            "settings_loaded | ocr_provider=%s | remote_enabled=%s | throttle_s=%.2f",
            settings.ocr_provider,
            settings.remote_enabled,
            settings.throttle_interval_s,
        )
        return settings


DEFAULT_SETTINGS = ScannerSettings()
