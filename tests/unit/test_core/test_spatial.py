"""Tests for the spatial analyzer (constraint query engine)."""

import threading
import time
import pytest
from core.catalog import ConstraintCatalog
from core.errors import DatasetQueryError
from core.spatial import (
    DatasetStatus, ReportCache, SpatialAnalyzer, TIMEOUT_DETAIL,
    constraint_impact, ptal_rating, summarise_transport, ConstraintQueryResult,
)

LON, LAT = -0.1276, 51.5034
D_LON = 50 / 69440
D_LAT = 40 / 111250

SITE = {
    "type": "Polygon",
    "coordinates": [[
        [LON, LAT], [LON + D_LON, LAT], [LON + D_LON, LAT + D_LAT],
        [LON, LAT + D_LAT], [LON, LAT],
    ]],
}

FLOOD_ENTITY = {
    "entity": 7010001,
    "name": "Flood Zone 3",
    "dataset": "flood-risk-zone",
    "flood-risk-level": "3",
    "geometry": f"POLYGON (({LON - 0.01} {LAT - 0.01}, {LON + 0.01} {LAT - 0.01}, "
                f"{LON + 0.01} {LAT + 0.01}, {LON - 0.01} {LAT + 0.01}, {LON - 0.01} {LAT - 0.01}))",
}


class FakeClient:
    """Answers per dataset name; values are lists or exceptions."""

    def __init__(self, responses=None, block=None):
        self.responses = responses or {}
        self.block = block or {}
        self.calls = []
        self._lock = threading.Lock()

    def query_dataset(self, name, geometry_wkt, limit=None):
        with self._lock:
            self.calls.append(name)
        if name in self.block:
            self.block[name].wait(5)
        response = self.responses.get(name, [])
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def catalog():
    return ConstraintCatalog().load()


class TestAnalyzeSite:

    def test_flood_zone_site(self, catalog):
        client = FakeClient({"flood-risk-zone": [FLOOD_ENTITY]})
        analyzer = SpatialAnalyzer(client, catalog)
        report = analyzer.analyze_site(SITE, "1 Test Street", {"analysis_type": "basic"})

        assert report.metrics.area == pytest.approx(2000, rel=0.02)
        assert report.confidence == 100.0
        assert report.site_id.startswith("site_")
        assert [c.dataset_id for c in report.constraints] == [
            e.dataset_id for e in catalog.select_datasets("basic")
        ]

        flood = report.by_category("flood")[0]
        assert flood.status == DatasetStatus.OK
        assert flood.features[0]["flood_zone"] == "Zone 3"
        assert flood.features[0]["coverage_percent"] == 100.0
        assert flood.features[0]["distance_m"] == 0.0

        others = [c for c in report.constraints if c.category != "flood"]
        assert all(c.status == DatasetStatus.EMPTY for c in others)

        assert report.planning_assessment["risk_level"] == "high"
        assert "Flood risk assessment required" in report.planning_assessment["policy_implications"]
        assert report.evidence[0].reference == "flood-risk-zone"
        assert report.evidence[0].relevance_score == 0.9

    def test_empty_ring_is_not_a_crash(self, catalog):
        client = FakeClient()
        analyzer = SpatialAnalyzer(client, catalog)
        report = analyzer.analyze_site({"type": "Polygon", "coordinates": [[]]})

        assert report.confidence == 0
        assert report.metrics.error
        assert report.site_id.startswith("invalid_")
        assert client.calls == []

    def test_cache_hit_skips_queries(self, catalog):
        client = FakeClient({"flood-risk-zone": [FLOOD_ENTITY]})
        analyzer = SpatialAnalyzer(client, catalog, cache=ReportCache())
        first = analyzer.analyze_site(SITE)
        calls = len(client.calls)
        second = analyzer.analyze_site(SITE)

        assert len(client.calls) == calls
        assert second.from_cache
        assert not first.from_cache
        assert second.site_id == first.site_id

    def test_profile_is_part_of_cache_key(self, catalog):
        client = FakeClient()
        analyzer = SpatialAnalyzer(client, catalog)
        analyzer.analyze_site(SITE, options={"analysis_type": "basic"})
        report = analyzer.analyze_site(SITE, options={"analysis_type": "environmental"})
        assert not report.from_cache

    def test_partial_failure(self, catalog):
        client = FakeClient({
            "flood-risk-zone": [FLOOD_ENTITY],
            "listed-building": DatasetQueryError("listed-building", "HTTP 503", 503),
        })
        analyzer = SpatialAnalyzer(client, catalog)
        report = analyzer.analyze_site(SITE)

        listed = next(c for c in report.constraints if c.dataset_id == "listed-building")
        assert listed.status == DatasetStatus.ERROR
        assert listed.error_detail == "HTTP 503"
        assert report.confidence == 75.0
        assert report.degraded_sources == ["listed-building"]
        assert "Manual check required: listed-building data unavailable" in \
            report.planning_assessment["policy_implications"]

    def test_all_errors_not_cached(self, catalog):
        failure = DatasetQueryError("x", "connection refused")
        client = FakeClient({e.dataset_id: failure for e in catalog.select_datasets("basic")})
        cache = ReportCache()
        report = SpatialAnalyzer(client, catalog, cache=cache).analyze_site(SITE)
        assert report.confidence == 0.0
        assert len(cache) == 0

    def test_deadline_marks_slow_dataset(self, catalog):
        release = threading.Event()
        client = FakeClient({"flood-risk-zone": [FLOOD_ENTITY]}, block={"listed-building": release})
        analyzer = SpatialAnalyzer(client, catalog, analysis_timeout=0.3)
        try:
            report = analyzer.analyze_site(SITE)
        finally:
            release.set()

        listed = next(c for c in report.constraints if c.dataset_id == "listed-building")
        assert listed.status == DatasetStatus.ERROR
        assert listed.error_detail == TIMEOUT_DETAIL
        flood = next(c for c in report.constraints if c.dataset_id == "flood-risk-zone")
        assert flood.status == DatasetStatus.OK

    def test_candidate_names_fall_through(self, catalog):
        stop = {"entity": 1, "name": "High St Stop", "point": f"POINT ({LON} {LAT + 0.002})"}
        client = FakeClient({"transport-access-node": [], "bus-stop": [stop]})
        analyzer = SpatialAnalyzer(client, catalog)
        report = analyzer.analyze_site(SITE, options={"analysis_type": "basic", "development_type": "residential"})

        transport = report.by_category("transport")[0]
        assert transport.status == DatasetStatus.OK
        assert transport.queried_name == "bus-stop"
        assert report.transport["bus_stops"][0]["name"] == "High St Stop"

    def test_empty_feature_geometry_keeps_dataset_ok(self, catalog):
        empty = {"entity": 7010002, "name": "Flood Zone 2", "flood-risk-level": "2", "geometry": "POLYGON EMPTY"}
        client = FakeClient({"flood-risk-zone": [empty, FLOOD_ENTITY]})
        report = SpatialAnalyzer(client, catalog).analyze_site(SITE)

        flood = report.by_category("flood")[0]
        assert flood.status == DatasetStatus.OK
        assert [f["entity"] for f in flood.features] == [7010001, 7010002]
        assert flood.features[1]["distance_m"] is None
        assert flood.features[1]["coverage_percent"] == 0.0
        assert report.confidence == 100.0

    def test_list_analysis_type_falls_back_to_basic(self, catalog):
        client = FakeClient()
        report = SpatialAnalyzer(client, catalog).analyze_site(SITE, options={"analysis_type": ["basic"]})

        assert report.analysis_type == "basic"
        assert [c.dataset_id for c in report.constraints] == [
            e.dataset_id for e in catalog.select_datasets("basic")
        ]

    def test_deadline_logs_pending_datasets(self, catalog, caplog):
        release = threading.Event()
        client = FakeClient(block={"listed-building": release})
        analyzer = SpatialAnalyzer(client, catalog, analysis_timeout=0.3)
        try:
            with caplog.at_level("WARNING", logger="core.spatial"):
                analyzer.analyze_site(SITE)
        finally:
            release.set()

        assert "queries pending" in caplog.text
        assert "listed-building" in caplog.text


class CountingClient(FakeClient):
    """Records the peak number of simultaneous queries."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.in_flight = 0
        self.peak = 0

    def query_dataset(self, name, geometry_wkt, limit=None):
        with self._lock:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        try:
            time.sleep(0.05)
            return super().query_dataset(name, geometry_wkt, limit)
        finally:
            with self._lock:
                self.in_flight -= 1


class TestDispatch:
    """Worker pool bound and merge order."""

    def test_worker_bound_is_respected(self, catalog):
        client = CountingClient()
        analyzer = SpatialAnalyzer(client, catalog, max_workers=2)
        report = analyzer.analyze_site(SITE, options={"analysis_type": "comprehensive"})

        assert len(report.constraints) > 2
        assert 1 <= client.peak <= 2

    def test_slowest_first_entry_keeps_declaration_order(self, catalog):
        release = threading.Event()
        client = FakeClient({"flood-risk-zone": [FLOOD_ENTITY]}, block={"conservation-area": release})
        timer = threading.Timer(0.2, release.set)
        timer.start()
        try:
            report = SpatialAnalyzer(client, catalog).analyze_site(SITE, options={"analysis_type": "comprehensive"})
        finally:
            timer.cancel()
            release.set()

        assert [c.dataset_id for c in report.constraints] == [
            e.dataset_id for e in catalog.select_datasets("comprehensive")
        ]
        assert report.constraints[0].dataset_id == "conservation-area"
        assert report.constraints[0].status == DatasetStatus.EMPTY


class TestTransportSummary:

    def test_station_and_stops_score(self):
        result = ConstraintQueryResult(
            dataset_id="transport-access-node", category="transport", status=DatasetStatus.OK,
            features=[
                {"name": "Central Station", "node_type": "RSE", "distance_m": 192.0},
                {"name": "Stop A", "node_type": "BCT", "distance_m": 100.0},
                {"name": "Stop B", "node_type": "BCT", "distance_m": 300.0},
                {"name": "Stop C", "node_type": "BCT", "distance_m": 900.0},
            ],
        )
        summary = summarise_transport(result)
        assert summary["nearest_station"]["name"] == "Central Station"
        assert summary["ptal_score"] == 12.0
        assert summary["accessibility_rating"] == "Excellent (6a/6b)"
        assert summary["car_parking_standard"] == "Car-free development possible"

    def test_error_result(self):
        result = ConstraintQueryResult(
            dataset_id="transport-access-node", category="transport",
            status=DatasetStatus.ERROR, error_detail="timeout",
        )
        assert summarise_transport(result) == {"error": "timeout"}


@pytest.mark.parametrize("score,rating", [
    (9, "Excellent (6a/6b)"), (6, "Very Good (5/6a)"), (4.5, "Good (3/4)"),
    (2, "Moderate (2/3)"), (0, "Poor (0/1)"),
])
def test_ptal_rating(score, rating):
    assert ptal_rating(score) == rating


def test_constraint_impact():
    assert constraint_impact("critical", 50, 0.0) == "critical"
    assert constraint_impact("high", 10, 0.0) == "medium"
    assert constraint_impact("low", 0, 250.0) == "none"
