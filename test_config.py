"""
test_config.py - Settings loading from WINELENS_* environment variables.

Usage:
    pytest test_config.py -v
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from config import ScannerSettings


def test_defaults(settings):
    assert settings.group_gap_threshold == pytest.approx(0.025)
    assert settings.fuzzy_min_similarity == pytest.approx(0.7)
    assert settings.exact_confidence == pytest.approx(0.98)
    assert settings.throttle_interval_s == pytest.approx(0.5)
    assert not settings.remote_enabled


def test_environment_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("WINELENS_FUZZY_MIN_SIMILARITY", "0.65")
    monkeypatch.setenv("WINELENS_HISTORY_LIMIT", "10")
    monkeypatch.setenv("WINELENS_API_BASE_URL", " https://wines.example.test/api ")
    monkeypatch.setenv("WINELENS_OCR_PROVIDER", "")

    settings = ScannerSettings.from_env(env_file=str(tmp_path / "missing.env"))

    assert settings.fuzzy_min_similarity == pytest.approx(0.65)
    assert settings.history_limit == 10
    assert settings.api_base_url == "https://wines.example.test/api"
    assert settings.remote_enabled
    assert settings.ocr_provider == "replay"


def test_malformed_number_keeps_default(monkeypatch, tmp_path):
    monkeypatch.setenv("WINELENS_THROTTLE_INTERVAL_S", "fast")
    settings = ScannerSettings.from_env(env_file=str(tmp_path / "missing.env"))
    assert settings.throttle_interval_s == pytest.approx(0.5)


def test_dotenv_file(monkeypatch, tmp_path):
    monkeypatch.delenv("WINELENS_OCR_FAULT_AFTER", raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text("WINELENS_OCR_FAULT_AFTER=4\n", encoding="utf-8")

    try:
        settings = ScannerSettings.from_env(env_file=str(env_file))
    finally:
        monkeypatch.delenv("WINELENS_OCR_FAULT_AFTER", raising=False)

    assert settings.ocr_fault_after == 4


def test_keyword_overrides_win(monkeypatch, tmp_path):
    monkeypatch.setenv("WINELENS_REMOTE_RETRIES", "3")
    settings = ScannerSettings.from_env(env_file=str(tmp_path / "missing.env"), remote_retries=0)
    assert settings.remote_retries == 0


def test_out_of_range_value_is_rejected(monkeypatch, tmp_path):
    monkeypatch.setenv("WINELENS_HISTORY_LIMIT", "0")
    with pytest.raises(ValidationError):
        ScannerSettings.from_env(env_file=str(tmp_path / "missing.env"))
