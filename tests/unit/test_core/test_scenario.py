"""Tests for the scenario modeler."""

import pytest
from core.errors import InputError
from core.scenario import (
    DEFAULT_PARAMETERS, ScenarioModeler, build_timeline, merge_parameters,
    model_parameters, overall_risk,
)
from core.storage import AssessmentStore


@pytest.fixture
def store(tmp_path):
    return AssessmentStore(db_path=str(tmp_path / "scenarios.db"))


@pytest.fixture
def modeler(store):
    return ScenarioModeler(store)


class TestParameters:

    def test_merge_is_deep_and_pure(self):
        merged = merge_parameters(DEFAULT_PARAMETERS, {"housing": {"total_units": 500}})
        assert merged["housing"]["total_units"] == 500
        assert merged["housing"]["phasing"] == 5
        assert DEFAULT_PARAMETERS["housing"]["total_units"] == 1000

    def test_camel_case_keys(self):
        merged = merge_parameters(DEFAULT_PARAMETERS, {"employment": {"sectorMix": {"office": 100}}})
        assert merged["employment"]["sector_mix"]["office"] == 100
        assert merged["employment"]["sector_mix"]["retail"] == 20


class TestProjections:

    def test_default_scenario(self):
        result = model_parameters(DEFAULT_PARAMETERS)

        assert result.housing["affordable_units"] == 300
        assert result.housing["annual_delivery"] == 200
        assert result.housing["land_required_ha"] == pytest.approx(33.33, abs=0.01)
        assert result.employment["sector_breakdown"] == {"office": 200, "industrial": 150, "retail": 100, "other": 50}
        assert result.transport["total_trips"] == 9000
        assert result.transport["parking_spaces"] == 1500
        assert result.transport["traffic_impact"] == "medium"
        assert result.infrastructure["costs"]["total"] == 8_000_000
        assert result.infrastructure["education"]["primary_schools_needed"] == 1
        assert result.viability["estimated_revenue"] == 137_500_000
        assert result.viability["viability_gap"] == -92_000_000
        assert result.viability["viability_status"] == "viable"
        assert result.timeline["total_duration"] == 5
        assert result.risks == []
        assert result.summary["risk_level"] == "low"
        assert 0 <= result.summary["success_probability"] <= 100

    def test_unbalanced_sector_mix_is_modelled_with_risk(self):
        params = merge_parameters(DEFAULT_PARAMETERS, {
            "employment": {"sector_mix": {"office": 60, "industrial": 40, "retail": 30, "other": 20}},
        })
        result = model_parameters(params)

        assert result.employment["sector_mix_total"] == 150
        assert result.employment["sector_breakdown"]["office"] == 300
        mix_risks = [r for r in result.risks if r["category"] == "parameters"]
        assert len(mix_risks) == 1
        assert mix_risks[0]["level"] == "medium"
        assert "150" in mix_risks[0]["description"]

    def test_high_affordable_share_is_marginal(self):
        params = merge_parameters(DEFAULT_PARAMETERS, {
            "housing": {"total_units": 2000, "affordable_percentage": 100, "phasing": 3},
            "employment": {"total_jobs": 0},
        })
        result = model_parameters(params)

        assert result.viability["viability_status"] == "marginal"
        assert result.viability["viability_gap"] == 6_000_000
        assert result.viability["mitigation"]
        levels = {r["category"]: r["level"] for r in result.risks}
        assert levels["delivery"] == "high"
        assert levels["market"] == "medium"
        assert levels["viability"] == "medium"
        assert result.timeline["total_duration"] == 7

    def test_no_revenue_is_unviable(self):
        params = merge_parameters(DEFAULT_PARAMETERS, {
            "housing": {"total_units": 0},
            "employment": {"total_jobs": 0},
        })
        result = model_parameters(params)

        assert result.viability["viability_status"] == "unviable"
        assert "Review development parameters to improve viability" in result.summary["recommendations"]

    def test_success_probability_bounds(self):
        params = merge_parameters(DEFAULT_PARAMETERS, {
            "housing": {"total_units": 30000, "affordable_percentage": 100, "phasing": 1,
                        "density_range": {"min": 60, "max": 120}},
            "infrastructure": {"schools": {"primary": 0, "secondary": 0}, "healthcare": {"gp": 0},
                               "transport": {"bus_routes": 0}},
            "environment": {"biodiversity_net_gain": 0},
        })
        result = model_parameters(params)
        assert result.summary["success_probability"] == 0
        assert result.summary["risk_level"] == "high"

    def test_site_context_area_shortfall(self):
        result = model_parameters(DEFAULT_PARAMETERS, site_context={"metrics": {"area_hectares": 10}})
        assert result.housing["site_capacity"] == 300
        assert result.housing["site_area_shortfall_ha"] == pytest.approx(23.33, abs=0.01)
        assert any(r["category"] == "land" for r in result.risks)

    def test_errored_site_metrics_are_ignored(self):
        context = {"metrics": {"area_hectares": 0.0, "error": "Polygon ring is empty"}}
        result = model_parameters(DEFAULT_PARAMETERS, site_context=context)
        baseline = model_parameters(DEFAULT_PARAMETERS)

        assert "site_area_ha" not in result.housing
        assert not any(r["category"] == "land" for r in result.risks)
        assert result.summary["success_probability"] == baseline.summary["success_probability"]

    def test_allocations_drive_capacity(self):
        allocations = [{"name": "North", "capacity": 400, "area_hectares": 12}]
        result = model_parameters(DEFAULT_PARAMETERS, allocations)
        assert result.housing["allocated_capacity"] == 400
        assert result.housing["capacity_shortfall"] == 600
        assert result.housing["delivery_feasibility"] == "difficult"
        assert result.environment["development_area_ha"] == 12


def test_timeline_milestones():
    timeline = build_timeline(merge_parameters(DEFAULT_PARAMETERS, {"housing": {"phasing": 4, "total_units": 400}}))
    phases = timeline["phases"]
    assert timeline["total_duration"] == 4
    assert phases[0]["milestones"] == ["Planning permission secured"]
    assert "50% completion" in phases[1]["milestones"]
    assert phases[-1]["milestones"] == ["Development complete"]
    assert phases[-1]["cumulative_units"] == 400
    assert timeline["critical_path"][1]["dependencies"] == ["Phase 1 complete"]


def test_overall_risk():
    high = {"level": "high"}
    medium = {"level": "medium"}
    assert overall_risk([]) == "low"
    assert overall_risk([high]) == "medium"
    assert overall_risk([medium] * 4) == "medium"
    assert overall_risk([high] * 3) == "high"


class TestModeler:

    def test_create_and_run(self, modeler, store):
        scenario = modeler.create_scenario("lp-2030", {"name": "Growth", "parameters": {"housing": {"total_units": 800}}})
        assert scenario.status == "draft"
        assert scenario.parameters["housing"]["total_units"] == 800

        result = modeler.run_scenario_modeling(scenario.id)
        stored = modeler.get_scenario(scenario.id)
        assert stored.status == "modeled"
        assert stored.results["housing"]["total_units"] == 800
        assert result.summary["success_probability"] == stored.results["summary"]["success_probability"]

    def test_update_resets_to_draft(self, modeler):
        scenario = modeler.create_scenario("lp-2030", {"name": "Growth"})
        modeler.run_scenario_modeling(scenario.id)
        updated = modeler.update_scenario(scenario.id, {"parameters": {"housing": {"phasing": 8}}})
        assert updated.status == "draft"
        assert updated.parameters["housing"]["phasing"] == 8
        assert updated.parameters["housing"]["total_units"] == 1000

    def test_get_scenarios_most_recent_first(self, modeler):
        first = modeler.create_scenario("lp-2030", {"name": "A"})
        second = modeler.create_scenario("lp-2030", {"name": "B"})
        modeler.update_scenario(first.id, {"name": "A2"})
        names = [s.name for s in modeler.get_scenarios("lp-2030")]
        assert names == ["A2", "B"]
        assert modeler.get_scenarios("other-plan") == []
        assert second.id != first.id

    def test_delete(self, modeler):
        scenario = modeler.create_scenario("lp-2030", {"name": "Temp"})
        assert modeler.delete_scenario(scenario.id)
        assert not modeler.delete_scenario(scenario.id)
        with pytest.raises(InputError):
            modeler.get_scenario(scenario.id)

    def test_unknown_scenario(self, modeler):
        with pytest.raises(InputError):
            modeler.run_scenario_modeling("scn_missing")

    def test_bad_parameters_mark_error(self, modeler):
        scenario = modeler.create_scenario("lp-2030", {"name": "Broken", "parameters": {"housing": {"total_units": "many"}}})
        with pytest.raises(InputError):
            modeler.run_scenario_modeling(scenario.id)
        assert modeler.get_scenario(scenario.id).status == "error"

    def test_nan_phasing_marks_error(self, modeler):
        scenario = modeler.create_scenario("lp-2030", {"name": "Nan", "parameters": {"housing": {"phasing": float("nan")}}})
        with pytest.raises(InputError):
            modeler.run_scenario_modeling(scenario.id)
        stored = modeler.get_scenario(scenario.id)
        assert stored.status == "error"
        assert stored.error.startswith("Unusable parameters")

    def test_compare(self, modeler):
        modest = modeler.create_scenario("lp-2030", {"name": "Modest"})
        risky = modeler.create_scenario("lp-2030", {"name": "Risky", "parameters": {
            "housing": {"total_units": 2000, "affordable_percentage": 100, "phasing": 3},
        }})

        with pytest.raises(InputError):
            modeler.compare_scenarios(modest.id, risky.id)

        modeler.run_scenario_modeling(modest.id)
        modeler.run_scenario_modeling(risky.id)
        comparison = modeler.compare_scenarios(modest.id, risky.id)

        assert comparison["recommendation"] == "Scenario 'Modest' is recommended based on higher success probability"
        assert comparison["comparison"]["housing"]["total_units"]["difference"] == 1000
