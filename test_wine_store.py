"""
test_wine_store.py - Local wine store tests.

Covers exact/fuzzy lookup, vintage preference, search filters, and the CSV
and JSON cache loaders.

Usage:
    pytest test_wine_store.py -v
"""

from __future__ import annotations

import json

import pytest

from models import WineRecord
from normalize import normalize
from wine_store import CACHE_VERSION, LocalWineStore, name_key, query_variants, record_aliases


# =============================================================================
# Keys and aliases
# =============================================================================

def test_name_key_does_not_repeat_the_producer():
    assert name_key("Opus One", "Opus One") == "opus one"
    assert name_key("Chateau Margaux", "") == "chateau margaux"
    assert name_key("Cloudy Bay", "Sauvignon Blanc") == "cloudy bay sauvignon blanc"


def test_record_aliases(wines):
    opus = wines[0]
    assert record_aliases(opus) == [
        "opus one",
        "opus one cabernet sauvignon",
        "opus one napa valley",
        "opus one cabernet sauvignon napa valley",
    ]


def test_query_variants():
    assert query_variants("opus one napa valley 2019", 2019) == [
        "opus one napa valley 2019",
        "opus one napa valley",
    ]
    assert query_variants("penfolds bin 389") == ["penfolds bin 389", "penfolds bin"]


# =============================================================================
# Exact lookup
# =============================================================================

class TestFindExact:
    def test_producer_name_and_vintage(self, store):
        assert store.find_exact("Opus One", "Opus One", 2019).id == "opus-2019"
        assert store.find_exact("Opus One", "", 2018).id == "opus-2018"

    def test_unknown_vintage_has_no_exact_hit(self, store):
        assert store.find_exact("Opus One", "Opus One", 2017) is None

    def test_without_vintage_prefers_newest(self, store):
        assert store.find_exact("Opus One", "Opus One").id == "opus-2019"

    def test_non_vintage_record_answers_any_year(self, store):
        assert store.find_exact("Veuve Clicquot", "Brut Yellow Label", 2015).id == "veuve-nv"

    def test_whole_text_with_region(self, store):
        wine = store.find_exact_text(normalize("Opus One Napa Valley 2019"), 2019)
        assert wine.id == "opus-2019"

    def test_whole_text_with_appellation(self, store):
        wine = store.find_exact_text(normalize("Ch. Margaux Margaux 2015"), 2015)
        assert wine.id == "margaux-2015"


# =============================================================================
# Fuzzy lookup and search
# =============================================================================

class TestFindFuzzy:
    def test_misread_name(self, store):
        hit = store.find_fuzzy(normalize("Opus Onne Napa Valley"), min_similarity=0.7)
        assert hit is not None
        wine, score = hit
        assert wine.id == "opus-2019"
        assert 0.7 <= score <= 1.0

    def test_requested_vintage_wins_ties(self, store):
        wine, _ = store.find_fuzzy(normalize("Opus Onne Napa Valley 2018"), vintage=2018)
        assert wine.id == "opus-2018"

    def test_closest_vintage_when_year_is_missing(self, store):
        wine, _ = store.find_fuzzy(normalize("Opus One Napa Valley 2017"), vintage=2017)
        assert wine.id == "opus-2018"

    def test_below_floor(self, store):
        assert store.find_fuzzy(normalize("Lovely Dinner Special"), min_similarity=0.7) is None

    def test_empty_store(self):
        assert LocalWineStore().find_fuzzy("opus one") is None


class TestSearch:
    def test_ranked_by_score_then_vintage(self, store):
        ids = [wine.id for wine, _ in store.search("opus")]
        assert ids == ["opus-2019", "opus-2018"]

    def test_filters(self, store):
        assert [wine.id for wine, _ in store.search("opus one", vintage=2018)] == ["opus-2018"]
        assert store.search("opus one", color="sparkling") == []
        assert [wine.id for wine, _ in store.search("veuve clicquot", color="sparkling")] == ["veuve-nv"]
        assert [wine.id for wine, _ in store.search("opus one", min_score=97)] == ["opus-2019"]

    def test_limit_and_empty_query(self, store):
        assert len(store.search("opus", limit=1)) == 1
        assert store.search("   ") == []


# =============================================================================
# Writes
# =============================================================================

def test_cache_replaces_and_reindexes(store):
    renamed = WineRecord(id="opus-2019", producer="Overture", vintage=2019, region="Napa Valley")
    store.cache(renamed)

    assert len(store) == 5
    assert store.find_exact("Opus One", "Opus One", 2019) is None
    assert store.find_exact("Overture", "", 2019).id == "opus-2019"


def test_clear(store):
    store.clear()
    assert len(store) == 0
    assert "opus-2019" not in store


# =============================================================================
# Loading and saving
# =============================================================================

CSV_TEXT = """id,producer,name,vintage,region,color,grape_varieties,score,release_price
opus-2019,Opus One,Opus One,2019,Napa Valley,red,Cabernet Sauvignon;Merlot,97,425.00
,Caymus,Cabernet Sauvignon,2020,Napa Valley,red,Cabernet Sauvignon,92,95.00
broken,Broken Wine,,2019,Nowhere,red,,not-a-score,
"""


class TestLoading:
    def test_load_csv(self, tmp_path):
        path = tmp_path / "wines.csv"
        path.write_text(CSV_TEXT, encoding="utf-8")

        store = LocalWineStore()
        assert store.load(path) == 2

        opus = store.get("opus-2019")
        assert opus.vintage == 2019
        assert [grape.name for grape in opus.grape_varieties] == ["Cabernet Sauvignon", "Merlot"]
        assert store.get("csv-1").producer == "Caymus"
        assert store.get("broken") is None

    def test_csv_missing_required_column(self, tmp_path):
        path = tmp_path / "wines.csv"
        path.write_text("id,name\n1,Opus One\n", encoding="utf-8")
        with pytest.raises(ValueError, match="missing required columns"):
            LocalWineStore().load_wines_csv(path)

    def test_csv_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            LocalWineStore().load_wines_csv(tmp_path / "nope.csv")

    def test_json_cache_roundtrip(self, store, tmp_path):
        path = tmp_path / "cache" / "wines.json"
        store.save_json(path)

        reloaded = LocalWineStore()
        assert reloaded.load(path) == len(store)
        assert reloaded.get("veuve-nv").vintage is None
        assert reloaded.find_exact("Opus One", "Opus One", 2019).id == "opus-2019"

    def test_json_cache_version_mismatch_empties_store(self, store, tmp_path):
        path = tmp_path / "wines.json"
        path.write_text(json.dumps({"version": CACHE_VERSION - 1, "wines": []}), encoding="utf-8")

        assert store.load_wines_json(path) == 0
        assert len(store) == 0

    def test_unreadable_json_cache(self, tmp_path):
        path = tmp_path / "wines.json"
        path.write_text("{not json", encoding="utf-8")
        assert LocalWineStore().load_wines_json(path) == 0
