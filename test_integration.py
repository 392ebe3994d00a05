"""
test_integration.py - End-to-end scans over the bundled sample data.

Covers the full path a recorded scan takes:
frames JSON -> OCR replay -> grouping -> matching -> session -> history / CLI output

Usage:
    pytest test_integration.py -v
"""

from __future__ import annotations

import asyncio
import json
from decimal import Decimal
from pathlib import Path

import httpx
import pytest

import api
from config import ScannerSettings
from main import load_frames, main, replay_scan
from match import WineMatcher
from models import MatchType, ValueIndicator
from remote_search import RemoteSearchClient
from session_store import SessionStore
from wine_store import LocalWineStore

DATA_DIR = Path(__file__).resolve().parent / "data"
WINES_CSV = DATA_DIR / "wines_sample.csv"
FRAMES_JSON = DATA_DIR / "frames_sample.json"

EXPECTED = {
    ("opus-2019", 2019),
    ("caymus-2020", 2020),
    ("tignanello-2019", 2019),
    ("cloudy-bay-2022", 2022),
}


@pytest.fixture
def sample_store() -> LocalWineStore:
    store = LocalWineStore()
    assert store.load(WINES_CSV) == 8
    return store


# =============================================================================
# Replay
# =============================================================================

class TestReplay:
    def test_sample_menu(self, sample_store):
        frames = load_frames(str(FRAMES_JSON))
        assert len(frames) == 2

        session = asyncio.run(replay_scan(frames, sample_store, ScannerSettings(), location="Bistro Nord"))

        assert session.location == "Bistro Nord"
        assert session.keys() == EXPECTED
        assert session.matched_count == 4
        assert all(entry.match_type is MatchType.EXACT for entry in session.wines)

        by_id = {entry.matched_wine.id: entry for entry in session.wines}
        opus = by_id["opus-2019"]
        assert opus.original_text == "Opus One $650 Napa Valley 2019"
        assert opus.list_price == Decimal("650")
        assert opus.value_indicator is ValueIndicator.EXCELLENT
        assert by_id["caymus-2020"].list_price == Decimal("180")
        assert by_id["tignanello-2019"].list_price is None

    def test_saved_into_history(self, sample_store, tmp_path):
        session_store = SessionStore(tmp_path)
        frames = load_frames(str(FRAMES_JSON))

        saved = asyncio.run(replay_scan(frames, sample_store, ScannerSettings(), session_store, "Bistro Nord"))

        history = session_store.load_history()
        assert [item.id for item in history] == [saved.id]
        assert history[0].keys() == EXPECTED
        assert history[0].end_time is not None
        assert session_store.load_current() is None


# =============================================================================
# CLI
# =============================================================================

class TestCLI:
    def test_scan_json(self, capsys):
        main(["scan", "--wines", str(WINES_CSV), "--frames", str(FRAMES_JSON), "--json"])

        payload = json.loads(capsys.readouterr().out)
        assert {(item["matched_wine"]["id"], item["matched_vintage"]) for item in payload["wines"]} == EXPECTED

    def test_scan_text(self, capsys):
        main(["scan", "--wines", str(WINES_CSV), "--frames", str(FRAMES_JSON), "--location", "Bistro Nord"])

        out = capsys.readouterr().out
        assert "4 wine(s) matched at Bistro Nord" in out
        assert "Opus One 2019" in out

    def test_scan_save_uses_session_dir(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv("WINELENS_SESSION_DIR", str(tmp_path / "sessions"))
        main(["scan", "--wines", str(WINES_CSV), "--frames", str(FRAMES_JSON), "--save", "--location", "Bistro Nord"])

        history = SessionStore(tmp_path / "sessions").load_history()
        assert len(history) == 1
        assert history[0].keys() == EXPECTED
        assert history[0].location == "Bistro Nord"
        assert "4 wine(s) matched" in capsys.readouterr().out

    def test_missing_frames_file(self, tmp_path):
        with pytest.raises(SystemExit) as info:
            main(["scan", "--wines", str(WINES_CSV), "--frames", str(tmp_path / "missing.json")])
        assert info.value.code == 1

    @pytest.mark.parametrize("content", ['{"fragments": []}', "[42]", "not json"])
    def test_bad_frames_file(self, tmp_path, content):
        frames = tmp_path / "frames.json"
        frames.write_text(content, encoding="utf-8")

        with pytest.raises(ValueError):
            load_frames(str(frames))
        with pytest.raises(SystemExit) as info:
            main(["scan", "--wines", str(WINES_CSV), "--frames", str(frames)])
        assert info.value.code == 1


# =============================================================================
# Remote tier against the HTTP API
# =============================================================================

def test_remote_tier_through_api(sample_store):
    api.set_store(sample_store)
    local = LocalWineStore()

    async def scenario():
        remote = RemoteSearchClient("http://testserver", transport=httpx.ASGITransport(app=api.app))
        try:
            matcher = WineMatcher(local, remote=remote)
            result = await matcher.match("Caymus Cabernet Sauvignon Napa Valley 2020 $180")
            wine = await remote.get_wine("opus-2018")
            return result, wine
        finally:
            await remote.aclose()

    try:
        result, wine = asyncio.run(scenario())
    finally:
        api.set_store(None)

    assert result.match_type is MatchType.FUZZY_REMOTE
    assert result.wine.id == "caymus-2020"
    assert result.matched_vintage == 2020
    assert "caymus-2020" in local
    assert wine.vintage == 2018
