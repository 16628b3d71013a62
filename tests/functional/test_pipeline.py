"""End-to-end assessment pipeline with a fake dataset client."""

import sqlite3
import threading
import pytest
from unittest.mock import MagicMock, patch
from core.catalog import ConstraintCatalog
from core.compliance import PolicyComplianceEngine
from core.considerations import MaterialConsiderationsAssessor
from core.errors import SerializationError
from core.orchestrator import (
    PHASES, AssessmentPipeline, AssessmentRequest, compile_evidence,
)
from core.rag import PolicyLibrary
from core.retrieval import EvidenceItem, EvidenceRetrievalChain
from core.scenario import ScenarioModeler
from core.spatial import SpatialAnalyzer
from core.storage import AssessmentStore
from loaders.geocoder import GeocodedLocation

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

CONSERVATION_AREA = {
    "entity": 44000001,
    "name": "Whitehall Conservation Area",
    "dataset": "conservation-area",
    "geometry": f"POLYGON (({LON - 0.01} {LAT - 0.01}, {LON + 0.01} {LAT - 0.01}, "
                f"{LON + 0.01} {LAT + 0.01}, {LON - 0.01} {LAT + 0.01}, {LON - 0.01} {LAT - 0.01}))",
}

REQUEST = {
    "assessment_id": "asm_test",
    "geometry": SITE,
    "description": "Erection of 12 residential dwellings including 4 affordable homes",
    "local_plan_id": "lp-2030",
    "analysis_options": {"analysis_type": "basic", "development_type": "residential"},
    "documents": [{
        "id": "das",
        "doc_type": "design_and_access_statement",
        "title": "Design and Access Statement",
        "text": "The scheme respects the conservation area and provides 12 cycle spaces.",
    }],
}


class FakeClient:
    def __init__(self, responses=None):
        self.responses = responses or {}
        self._lock = threading.Lock()
        self.calls = []

    def query_dataset(self, name, geometry_wkt, limit=None):
        with self._lock:
            self.calls.append(name)
        return self.responses.get(name, [])


class FakeGeocoder:
    def __init__(self, location=None):
        self.location = location
        self.queries = []

    def geocode(self, address):
        self.queries.append(address)
        return self.location


@pytest.fixture
def store(tmp_path):
    store = AssessmentStore(db_path=str(tmp_path / "pipeline.db"))
    store.add_local_plan("lp-2030", "Borough Local Plan 2030")
    store.add_policy("lp-2030", {
        "policy_ref": "H1",
        "title": "Housing Delivery",
        "category": "housing",
        "content": "Residential schemes of at least 10 dwellings must provide affordable housing.",
    })
    store.add_policy("lp-2030", {
        "policy_ref": "HE2",
        "title": "Conservation Areas",
        "category": "design",
        "content": "Development in a conservation area must respect local character.",
    })
    return store


def make_pipeline(store, geocoder=None, progress_callback=None):
    chain = EvidenceRetrievalChain(PolicyLibrary())
    return AssessmentPipeline(
        analyzer=SpatialAnalyzer(FakeClient({"conservation-area": [CONSERVATION_AREA]}), ConstraintCatalog().load()),
        retrieval=chain,
        compliance=PolicyComplianceEngine(chain, store),
        considerations=MaterialConsiderationsAssessor(),
        scenarios=ScenarioModeler(store),
        store=store,
        geocoder=geocoder,
        progress_callback=progress_callback,
    )


class TestPipeline:

    def test_full_run(self, store):
        progress = []
        pipeline = make_pipeline(store, progress_callback=lambda p, pct, msg: progress.append((p, pct)))

        result = pipeline.run(AssessmentRequest.from_dict(REQUEST))

        assert result["status"] == "completed"
        assert result["version"] == 1
        assert result["warnings"] == []
        assert result["document_ids"] == ["das"]
        assert result["document_facts"]["housing_units"] == 12
        assert result["constraint_report"]["confidence"] == 100.0
        assert result["material_considerations"]["categories"]
        assert result["compliance_check"]["local_plan_id"] == "lp-2030"
        assert 0 < result["confidence"] <= 100
        assert progress == PHASES

        scores = [e["relevance_score"] for e in result["evidence"]]
        assert scores == sorted(scores, reverse=True)
        assert any(e["source_type"] == "dataset" and e["reference"] == "conservation-area"
                   for e in result["evidence"])
        assert any(d.startswith("retrieval:agentic") for d in result["degraded_sources"])

        assert store.get_assessment("asm_test")["status"] == "completed"
        assert store.get_compliance_check("asm_test", "lp-2030") is not None

    def test_rerun_stores_new_version(self, store):
        pipeline = make_pipeline(store)
        pipeline.run(AssessmentRequest.from_dict(REQUEST))
        pipeline.run(AssessmentRequest.from_dict(REQUEST))
        assert store.list_assessment_versions("asm_test") == [1, 2]

    def test_address_resolved_by_geocoder(self, store):
        location = GeocodedLocation(
            address_query="10 Downing Street, London SW1A 2AA",
            latitude=LAT, longitude=LON,
            display_name="10 Downing Street", place_type="house", postcode="SW1A 2AA",
        )
        geocoder = FakeGeocoder(location)
        pipeline = make_pipeline(store, geocoder=geocoder)

        result = pipeline.run(AssessmentRequest(address="10 Downing Street, London SW1A 2AA"))

        assert geocoder.queries == ["10 Downing Street, London SW1A 2AA"]
        assert result["location"]["postcode"] == "SW1A 2AA"
        assert result["constraint_report"]["metrics"]["area"] > 0
        assert result["warnings"] == []

    def test_missing_location_degrades(self, store):
        pipeline = make_pipeline(store)
        result = pipeline.run(AssessmentRequest(description="Change of use to office"))

        phases = [w["phase"] for w in result["warnings"]]
        assert result["status"] == "completed"
        assert "address" in phases
        assert "spatial_retrieval" in phases
        assert result["constraint_report"]["confidence"] == 0.0
        assert store.get_assessment(result["id"]) is not None

    def test_unknown_plan_warns(self, store):
        pipeline = make_pipeline(store)
        request = AssessmentRequest.from_dict({**REQUEST, "local_plan_id": "missing-plan"})
        result = pipeline.run(request)

        assert result["compliance_check"] is None
        messages = " ".join(w["message"] for w in result["warnings"])
        assert "missing-plan" in messages

    def test_inline_scenario(self, store):
        pipeline = make_pipeline(store)
        request = AssessmentRequest.from_dict({
            **REQUEST,
            "local_plan_id": None,
            "scenario_parameters": {"housing": {"totalUnits": 12, "phasing": 1}},
        })
        result = pipeline.run(request)

        scenario = result["scenario_result"]
        assert scenario["scenario_id"].startswith("scn_")
        assert scenario["housing"]["total_units"] == 12
        assert scenario["housing"]["site_area_ha"] == result["constraint_report"]["metrics"]["area_hectares"]
        assert [s.id for s in pipeline.scenarios.get_scenarios("adhoc")] == [scenario["scenario_id"]]

    def test_cancel_between_phases(self, store):
        holder = {}

        def on_progress(phase, percent, message):
            if phase == "considerations":
                holder["pipeline"].cancel("asm_test")

        pipeline = make_pipeline(store, progress_callback=on_progress)
        holder["pipeline"] = pipeline
        result = pipeline.run(AssessmentRequest.from_dict(REQUEST))

        assert result["status"] == "cancelled"
        assert result["material_considerations"] is not None
        assert result["compliance_check"] is None
        assert result["evidence"] == []
        cancelled = [w["phase"] for w in result["warnings"] if w["message"] == "cancelled"]
        assert cancelled == ["scoring", "evidence"]
        assert store.get_assessment("asm_test")["status"] == "cancelled"
        assert not pipeline.is_cancelled("asm_test")

    def test_failing_progress_callback_is_ignored(self, store):
        def broken(phase, percent, message):
            raise RuntimeError("ui gone")

        result = make_pipeline(store, progress_callback=broken).run(AssessmentRequest.from_dict(REQUEST))
        assert result["status"] == "completed"

    def test_storage_failure_returns_unstored_assessment(self, store):
        pipeline = make_pipeline(store)
        pipeline.store.save_assessment = MagicMock(side_effect=sqlite3.OperationalError("database is locked"))

        result = pipeline.run(AssessmentRequest.from_dict(REQUEST))

        assert result["status"] == "completed"
        assert result["stored"] is False
        assert result["id"] == "asm_test"
        persistence = [w["message"] for w in result["warnings"] if w["phase"] == "persistence"]
        assert persistence == ["Assessment not stored: database is locked"]
        assert not pipeline.is_cancelled("asm_test")

    def test_sanitize_failure_returns_unstored_assessment(self, store):
        pipeline = make_pipeline(store)
        with patch("core.orchestrator.sanitize_for_storage",
                   side_effect=SerializationError("Sanitized payload changed across a JSON round-trip")):
            result = pipeline.run(AssessmentRequest.from_dict(REQUEST))

        assert result["stored"] is False
        assert [w["phase"] for w in result["warnings"]] == ["persistence"]
        assert store.get_assessment("asm_test") is None

    def test_invalid_site_scenario_ignores_placeholder_area(self, store):
        pipeline = make_pipeline(store)
        request = AssessmentRequest.from_dict({
            **REQUEST,
            "geometry": {"type": "Polygon", "coordinates": [[]]},
            "local_plan_id": None,
            "scenario_parameters": {"housing": {"totalUnits": 12, "phasing": 1}},
        })
        result = pipeline.run(request)

        assert result["constraint_report"]["metrics"]["error"]
        scenario = result["scenario_result"]
        assert "site_area_ha" not in scenario["housing"]
        assert not any(r["category"] == "land" for r in scenario["risks"])


def test_compile_evidence_deduplicates():
    items = compile_evidence(
        [EvidenceItem("policy", "H1", "a", 0.4), EvidenceItem("policy", "H1", "b", 0.7)],
        [EvidenceItem("dataset", "flood-risk-zone", "c", 0.9)],
    )
    assert [(i.reference, i.relevance_score) for i in items] == [("flood-risk-zone", 0.9), ("H1", 0.7)]
