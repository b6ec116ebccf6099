import pytest
from unittest.mock import Mock

from reconciler.core.crawler import BLDataRefresher
from reconciler.database.models import BLMinifigPart, BLSetMinifig, SENTINEL_ID
from reconciler.models.errors import ExternalApiError, StoreWriteError
from reconciler.models.schemas import SubsetEntry, SubsetItem
from reconciler.utils.rate_limiter import RequestSpacingLimiter


def entry(no, item_type, color_id=None, quantity=1, name=None):
    return SubsetEntry(
        item=SubsetItem(no=no, type=item_type, name=name),
        color_id=color_id,
        quantity=quantity,
    )


@pytest.fixture
def client():
    """Client double that counts calls through a real limiter"""
    client = Mock()
    client.rate_limiter = RequestSpacingLimiter(min_interval_ms=0)
    client.set_responses = {}
    client.minifig_responses = {}

    def answer(responses, key):
        client.rate_limiter.wait_for_slot()
        response = responses[key]
        if isinstance(response, Exception):
            raise response
        return response

    client.get_set_minifigs.side_effect = lambda s: answer(client.set_responses, s)
    client.get_minifig_parts.side_effect = lambda m: answer(client.minifig_responses, m)
    return client


@pytest.fixture
def catalog(seed):
    seed.inventory(1, "75192-1", minifigs=["fig-000001", "fig-000002"])
    seed.inventory(2, "10179-1", minifigs=["fig-000003"])
    seed.inventory(3, "3001-1", parts=[("3001", 5, 4)])
    seed.inventory(4, "fig-000001", parts=[("3626", 1, 1)])
    return seed


class TestCandidates:
    def test_set_candidates(self, repository, catalog, client):
        """Test sets already holding BL data are not candidates"""
        catalog.bl_set("10179-1")

        refresher = BLDataRefresher(repository, client, budget=0)

        assert refresher.set_candidates() == ["75192-1"]

    def test_set_candidates_newest_first(self, repository, catalog, client):
        """Test set candidates are ordered by year, newest first"""
        catalog.inventory(5, "6000-1", minifigs=["fig-000004"])
        catalog.inventory(6, "75300-1", minifigs=["fig-000005"])
        catalog.sets({"10179-1": 2007, "75192-1": 2017, "75300-1": 2017})

        refresher = BLDataRefresher(repository, client, budget=0)

        assert refresher.set_candidates() == ["75192-1", "75300-1", "10179-1", "6000-1"]

    def test_minifig_candidates(self, repository, seed, client):
        """Test only BL minifigs without crawled parts are candidates"""
        seed.bl_set("75192-1", "sw0001a", "sw0002")
        seed.bl_set("10179-1", "sw0002", "sw0003")
        seed.bl_set("0000-1")
        seed.bl_minifig("sw0002", [("3626", 5, 1)])
        seed.bl_minifig("sw0003")

        refresher = BLDataRefresher(repository, client, budget=0)

        assert refresher.minifig_candidates() == ["sw0001a"]


class TestSetRefresh:
    def test_writes_rows_and_sentinel(self, repository, catalog, client):
        """Test set refresh stores minifigs and a sentinel for empty sets"""
        client.set_responses = {
            "75192-1": [
                entry("sw0001a", "MINIFIG", name="Luke Skywalker"),
                entry("sw0002", "MINIFIG", quantity=2),
            ],
            "10179-1": [],
        }

        stats = BLDataRefresher(repository, client, budget=0).refresh_set_minifigs()

        assert stats.candidates == 2
        assert stats.crawled == 2
        assert stats.empty == 1
        assert stats.rows_written == 3
        assert not stats.budget_exhausted

        assert repository.bl_minifigs_by_set() == {"75192-1": {"sw0001a", "sw0002"}}
        sentinel = repository.select_page(BLSetMinifig, BLSetMinifig.set_num == "10179-1")
        assert [(row.minifig_no, row.quantity) for row in sentinel] == [(SENTINEL_ID, 0)]

    def test_rerun_crawls_nothing(self, repository, catalog, client):
        """Test a second refresh makes no calls"""
        client.set_responses = {"75192-1": [entry("sw0001a", "MINIFIG")], "10179-1": []}
        refresher = BLDataRefresher(repository, client, budget=0)
        refresher.refresh_set_minifigs()

        stats = refresher.refresh_set_minifigs()

        assert stats.candidates == 0
        assert client.get_set_minifigs.call_count == 2

    def test_api_error_skips_set(self, repository, catalog, client):
        """Test a failed fetch skips the set and leaves it a candidate"""
        client.set_responses = {
            "10179-1": ExternalApiError("BrickLink 500", status_code=500),
            "75192-1": [entry("sw0001a", "MINIFIG")],
        }
        refresher = BLDataRefresher(repository, client, budget=0)

        stats = refresher.refresh_set_minifigs()

        assert stats.errors == 1
        assert stats.crawled == 1
        assert repository.crawled_set_nums() == {"75192-1"}
        assert refresher.set_candidates() == ["10179-1"]

    def test_store_error_is_counted(self, repository, catalog, client):
        """Test store write failures are counted, not raised"""
        client.set_responses = {"10179-1": [], "75192-1": []}
        refresher = BLDataRefresher(repository, client, budget=0)
        repository.upsert = Mock(side_effect=StoreWriteError("locked", table="bl_set_minifigs"))

        stats = refresher.refresh_set_minifigs()

        assert stats.crawled == 2
        assert stats.errors == 2
        assert stats.rows_written == 0

    def test_budget_stops_crawl(self, repository, catalog, seed, client):
        """Test the crawl stops once the call budget is spent"""
        seed.inventory(5, "6000-1", minifigs=["fig-000004"])
        client.set_responses = {
            "10179-1": [entry("sw0003", "MINIFIG")],
            "6000-1": [entry("sw0004", "MINIFIG")],
            "75192-1": [entry("sw0001a", "MINIFIG")],
        }

        stats = BLDataRefresher(repository, client, budget=2).refresh_set_minifigs()

        assert stats.candidates == 3
        assert stats.crawled == 2
        assert stats.budget_exhausted
        assert client.rate_limiter.call_count == 2
        assert repository.crawled_set_nums() == {"10179-1", "6000-1"}

    def test_budget_goes_to_newest_set(self, repository, catalog, client):
        """Test a one-call budget is spent on the newest set"""
        catalog.sets({"10179-1": 2007, "75192-1": 2017})
        client.set_responses = {
            "10179-1": [entry("sw0003", "MINIFIG")],
            "75192-1": [entry("sw0001a", "MINIFIG")],
        }

        stats = BLDataRefresher(repository, client, budget=1).refresh_set_minifigs()

        assert stats.crawled == 1
        assert stats.budget_exhausted
        client.get_set_minifigs.assert_called_once_with("75192-1")
        assert repository.crawled_set_nums() == {"75192-1"}


class TestMinifigRefresh:
    def test_writes_parts_and_sentinel(self, repository, seed, client):
        """Test minifig refresh stores parts and a sentinel for empty minifigs"""
        seed.bl_set("75192-1", "sw0001a", "sw0002")
        client.minifig_responses = {
            "sw0001a": [
                entry("3626", "PART", color_id=3),
                entry("973", "PART", color_id=11),
                entry("sticker", "PART"),
            ],
            "sw0002": [],
        }

        stats = BLDataRefresher(repository, client, budget=0).refresh_minifig_parts()

        assert stats.crawled == 2
        assert stats.empty == 1
        assert stats.rows_written == 4

        rows = repository.select_page(BLMinifigPart, BLMinifigPart.bl_minifig_no == "sw0001a")
        assert {(r.bl_part_id, r.bl_color_id) for r in rows} == {("3626", 3), ("973", 11), ("sticker", 0)}
        assert repository.crawled_bl_minifig_nos() == {"sw0001a", "sw0002"}
        assert set(repository.all_bl_fingerprints()) == {"sw0001a"}

    def test_budget_shared_with_set_refresh(self, repository, catalog, client):
        """Test calls made by the set refresh count against the minifig refresh"""
        client.set_responses = {"75192-1": [entry("sw0001a", "MINIFIG")], "10179-1": []}
        client.minifig_responses = {"sw0001a": [entry("3626", "PART", color_id=3)]}
        refresher = BLDataRefresher(repository, client, budget=2)

        refresher.refresh_set_minifigs()
        stats = refresher.refresh_minifig_parts()

        assert stats.candidates == 1
        assert stats.crawled == 0
        assert stats.budget_exhausted
        assert client.rate_limiter.call_count == 2


class TestRowBuilders:
    def test_duplicate_minifigs_are_summed(self):
        """Test repeated minifig entries collapse into one row"""
        rows = BLDataRefresher._set_minifig_rows(
            "75192-1",
            [entry("sw0001a", "MINIFIG"), entry("sw0001a", "MINIFIG", quantity=2)],
        )
        assert len(rows) == 1
        assert rows[0]["quantity"] == 3

    def test_duplicate_parts_are_summed_per_color(self):
        """Test repeated part entries collapse per color"""
        rows = BLDataRefresher._minifig_part_rows(
            "sw0001a",
            [
                entry("3626", "PART", color_id=3),
                entry("3626", "PART", color_id=3),
                entry("3626", "PART", color_id=5),
            ],
        )
        assert sorted((r["bl_color_id"], r["quantity"]) for r in rows) == [(3, 2), (5, 1)]

    def test_empty_results_become_sentinels(self):
        """Test empty answers produce sentinel rows"""
        set_rows = BLDataRefresher._set_minifig_rows("0000-1", [])
        part_rows = BLDataRefresher._minifig_part_rows("sw9999", [])

        assert set_rows[0]["minifig_no"] == SENTINEL_ID
        assert part_rows[0]["bl_part_id"] == SENTINEL_ID
        assert part_rows[0]["quantity"] == 0
