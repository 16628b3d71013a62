"""
Scenario Modeler - Plan-making scenarios and impact projections.

A scenario is a set of development parameters (housing, employment,
infrastructure, environment) for a local plan. Modelling projects housing
delivery, employment land, transport demand, environmental performance,
infrastructure needs and costs, viability, timeline and risks.

Parameters are taken as given: a sector mix that does not sum to 100 is
modelled anyway and reported as a risk.
"""

import copy
import math
import re
import uuid
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.errors import InputError

log = logging.getLogger(__name__)


DEFAULT_PARAMETERS: Dict[str, Any] = {
    "housing": {
        "total_units": 1000,
        "affordable_percentage": 30,
        "density_range": {"min": 20, "max": 40},  # dwellings per hectare
        "phasing": 5,                              # years
    },
    "employment": {
        "total_jobs": 500,
        "sector_mix": {"office": 40, "industrial": 30, "retail": 20, "other": 10},
    },
    "infrastructure": {
        "schools": {"primary": 1, "secondary": 0.5},
        "healthcare": {"gp": 1, "hospital": 0.1},
        "transport": {"bus_routes": 2, "parking_ratio": 1.5},
    },
    "environment": {
        "green_space_percentage": 15,
        "biodiversity_net_gain": 10,
        "renewable_energy_target": 20,
    },
}

# Infrastructure cost per housing unit (£)
INFRASTRUCTURE_COST_PER_UNIT = {
    "education": 2000,
    "healthcare": 500,
    "transport": 3000,
    "utilities": 1500,
    "green_infrastructure": 1000,
}

JOBS_PER_HECTARE = {"office": 25, "industrial": 15, "retail": 35, "other": 20}

HOUSEHOLD_SIZE = 2.4
AVERAGE_HOUSE_PRICE = 250000
CONSTRUCTION_COST_PER_UNIT = 120000
COMMERCIAL_REVENUE_PER_JOB = 15000
AFFORDABLE_DISCOUNT = 0.5
ABSORPTION_UNITS_PER_YEAR = 300
PRIMARY_SCHOOL_PLACES = 420
SECONDARY_SCHOOL_PLACES = 900
PATIENTS_PER_GP = 2000
INFRASTRUCTURE_COST_RISK = 50_000_000


def _snake(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def normalise_keys(value: Any) -> Any:
    """camelCase keys to snake_case, recursively."""
    if isinstance(value, dict):
        return {_snake(str(k)): normalise_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [normalise_keys(v) for v in value]
    return value


def merge_parameters(base: Dict[str, Any], updates: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Deep merge of updates over base; neither input is modified."""
    merged = copy.deepcopy(base)

    def deep_merge(target, source):
        for key, value in source.items():
            if isinstance(value, dict):
                if not isinstance(target.get(key), dict):
                    target[key] = {}
                deep_merge(target[key], value)
            else:
                target[key] = value

    deep_merge(merged, normalise_keys(updates or {}))
    return merged


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ═══════════════════════════════════════════════════════════════════════════
# RECORDS
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class Scenario:
    id: str
    plan_id: str
    name: str
    parameters: Dict[str, Any]
    description: str = ""
    baseline_year: int = field(default_factory=lambda: datetime.now().year)
    status: str = "draft"   # draft | modeled | error
    results: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
    modeled_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "plan_id": self.plan_id,
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
            "baseline_year": self.baseline_year,
            "status": self.status,
            "results": self.results,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "modeled_at": self.modeled_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Scenario":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class ScenarioResult:
    """Sections of a modelled scenario."""
    housing: Dict[str, Any] = field(default_factory=dict)
    employment: Dict[str, Any] = field(default_factory=dict)
    transport: Dict[str, Any] = field(default_factory=dict)
    environment: Dict[str, Any] = field(default_factory=dict)
    infrastructure: Dict[str, Any] = field(default_factory=dict)
    viability: Dict[str, Any] = field(default_factory=dict)
    timeline: Dict[str, Any] = field(default_factory=dict)
    risks: List[Dict[str, Any]] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "housing": self.housing,
            "employment": self.employment,
            "transport": self.transport,
            "environment": self.environment,
            "infrastructure": self.infrastructure,
            "viability": self.viability,
            "timeline": self.timeline,
            "risks": list(self.risks),
            "summary": self.summary,
        }


# ═══════════════════════════════════════════════════════════════════════════
# PROJECTIONS
# ═══════════════════════════════════════════════════════════════════════════
def infrastructure_costs(params: Dict[str, Any]) -> Dict[str, float]:
    units = params["housing"]["total_units"]
    costs = {name: units * rate for name, rate in INFRASTRUCTURE_COST_PER_UNIT.items()}
    costs["total"] = sum(costs.values())
    return costs


def assess_housing(params: Dict[str, Any], allocations: List[Dict[str, Any]], site_area_ha: Optional[float]) -> Dict[str, Any]:
    housing = params["housing"]
    units = housing["total_units"]
    phasing = max(1, housing["phasing"])
    affordable = round(units * housing["affordable_percentage"] / 100)
    avg_density = (housing["density_range"]["min"] + housing["density_range"]["max"]) / 2
    land_required = units / avg_density if avg_density > 0 else 0.0

    allocated_capacity = sum(a.get("capacity") or 0 for a in allocations)
    result = {
        "total_units": units,
        "affordable_units": affordable,
        "market_units": units - affordable,
        "annual_delivery": round(units / phasing, 1),
        "land_required_ha": round(land_required, 2),
        "allocated_capacity": allocated_capacity,
        "capacity_shortfall": units - allocated_capacity if allocations else None,
        "delivery_feasibility": _delivery_feasibility(units / phasing, len(allocations)),
    }
    if site_area_ha is not None:
        result["site_area_ha"] = site_area_ha
        result["site_capacity"] = round(site_area_ha * avg_density)
        result["site_area_shortfall_ha"] = round(max(0.0, land_required - site_area_ha), 2)
    return result


def _delivery_feasibility(annual_delivery: float, site_count: int) -> str:
    if site_count == 0:
        return "feasible"
    if annual_delivery > 200 and site_count < 3:
        return "challenging"
    if annual_delivery > 100 and site_count < 2:
        return "difficult"
    return "feasible"


def assess_employment(params: Dict[str, Any]) -> Dict[str, Any]:
    employment = params["employment"]
    jobs = employment["total_jobs"]
    mix = employment.get("sector_mix") or {}

    land_needs = {}
    breakdown = {}
    for sector, share in mix.items():
        sector_jobs = jobs * share / 100
        breakdown[sector] = round(sector_jobs)
        land_needs[sector] = round(sector_jobs / JOBS_PER_HECTARE.get(sector, JOBS_PER_HECTARE["other"]), 2)

    total_land = sum(land_needs.values())
    return {
        "total_jobs": jobs,
        "sector_breakdown": breakdown,
        "land_needs_ha": land_needs,
        "total_land_needed_ha": round(total_land, 2),
        "sector_mix_total": sum(mix.values()),
        "job_density": round(jobs / total_land, 1) if total_land > 0 else 0,
    }


def assess_transport(params: Dict[str, Any]) -> Dict[str, Any]:
    units = params["housing"]["total_units"]
    jobs = params["employment"]["total_jobs"]
    transport = params["infrastructure"]["transport"]

    housing_trips = units * 8
    employment_trips = jobs * 2
    total_trips = housing_trips + employment_trips
    bus_needed = math.ceil(total_trips * 0.2 / 50)

    if total_trips > 10000:
        traffic = "high"
    elif total_trips > 5000:
        traffic = "medium"
    else:
        traffic = "low"

    return {
        "total_trips": total_trips,
        "housing_trips": housing_trips,
        "employment_trips": employment_trips,
        "parking_spaces": round(units * transport["parking_ratio"]),
        "bus_capacity_needed": bus_needed,
        "bus_routes_planned": transport["bus_routes"],
        "bus_capacity_shortfall": max(0, bus_needed - transport["bus_routes"]),
        "traffic_impact": traffic,
        "sustainability_score": min(100, transport["bus_routes"] * 25),
    }


def assess_environment(params: Dict[str, Any], development_area_ha: float) -> Dict[str, Any]:
    env = params["environment"]
    units = params["housing"]["total_units"]

    green_space = development_area_ha * env["green_space_percentage"] / 100
    carbon = units * 2.5
    renewables = units * env["renewable_energy_target"] / 100
    rating = (
        min(25, env["green_space_percentage"])
        + min(25, env["biodiversity_net_gain"] * 2.5)
        + min(50, env["renewable_energy_target"] * 2.5)
    )
    return {
        "development_area_ha": round(development_area_ha, 2),
        "green_space_required_ha": round(green_space, 2),
        "green_space_per_resident_m2": round(green_space * 10000 / (units * HOUSEHOLD_SIZE), 1) if units else 0,
        "biodiversity_net_gain": env["biodiversity_net_gain"],
        "biodiversity_area_ha": round(development_area_ha * env["biodiversity_net_gain"] / 100, 2),
        "carbon_emissions_t": carbon,
        "renewable_generation_t": renewables,
        "net_carbon_impact_t": carbon - renewables,
        "sustainability_rating": round(rating),
    }


def assess_infrastructure(params: Dict[str, Any], transport: Dict[str, Any]) -> Dict[str, Any]:
    units = params["housing"]["total_units"]
    infra = params["infrastructure"]
    population = units * HOUSEHOLD_SIZE

    primary_places = round(population * 0.12)
    secondary_places = round(population * 0.08)
    primary_needed = math.ceil(primary_places / PRIMARY_SCHOOL_PLACES)
    secondary_needed = math.ceil(secondary_places / SECONDARY_SCHOOL_PLACES)
    gp_capacity = infra["healthcare"]["gp"] * PATIENTS_PER_GP

    ratios = [
        _provision_ratio(infra["schools"]["primary"], primary_needed),
        _provision_ratio(infra["schools"]["secondary"], secondary_needed),
        _provision_ratio(gp_capacity, population),
        _provision_ratio(transport["bus_routes_planned"], transport["bus_capacity_needed"]),
    ]

    return {
        "population": round(population),
        "education": {
            "primary_places": primary_places,
            "secondary_places": secondary_places,
            "primary_schools_needed": primary_needed,
            "secondary_schools_needed": secondary_needed,
        },
        "healthcare": {
            "gp_patients": round(population),
            "gp_capacity": gp_capacity,
            "additional_gps_needed": max(0, math.ceil((population - gp_capacity) / PATIENTS_PER_GP)),
        },
        "utilities": {
            "electricity_demand_kw": units * 4.8,
            "water_demand_l_per_day": population * 150,
            "waste_generation_kg_per_year": population * 400,
        },
        "adequacy": round(sum(ratios) / len(ratios), 3),
        "costs": infrastructure_costs(params),
    }


def _provision_ratio(provided: float, needed: float) -> float:
    if needed <= 0:
        return 1.0
    return min(1.0, max(0.0, provided / needed))


def assess_viability(params: Dict[str, Any], infra_cost: float) -> Dict[str, Any]:
    housing = params["housing"]
    units = housing["total_units"]
    affordable_units = round(units * housing["affordable_percentage"] / 100)

    sales = units * AVERAGE_HOUSE_PRICE
    commercial = params["employment"]["total_jobs"] * COMMERCIAL_REVENUE_PER_JOB
    construction = units * CONSTRUCTION_COST_PER_UNIT
    estimated_revenue = sales + commercial - construction
    subsidy = affordable_units * AVERAGE_HOUSE_PRICE * AFFORDABLE_DISCOUNT

    gap = infra_cost + subsidy - estimated_revenue
    margin = abs(estimated_revenue) * 0.1
    if estimated_revenue > 0 and gap <= -margin:
        status = "viable"
    elif estimated_revenue > 0 and gap <= margin:
        status = "marginal"
    else:
        status = "unviable"

    mitigation = []
    if gap > 0:
        mitigation = ["Seek public funding support", "Consider phased delivery", "Review affordable housing requirements"]

    return {
        "housing_revenue": sales,
        "commercial_revenue": commercial,
        "construction_cost": construction,
        "estimated_revenue": estimated_revenue,
        "infrastructure_cost": infra_cost,
        "affordable_housing_subsidy": subsidy,
        "viability_gap": gap,
        "viability_status": status,
        "mitigation": mitigation,
    }


def build_timeline(params: Dict[str, Any]) -> Dict[str, Any]:
    units = params["housing"]["total_units"]
    years = max(int(params["housing"]["phasing"]), math.ceil(units / ABSORPTION_UNITS_PER_YEAR), 1)
    per_year = units / years

    phases = []
    for year in range(1, years + 1):
        milestones = []
        if year == 1:
            milestones.append("Planning permission secured")
        if year == math.ceil(years / 2):
            milestones.append("50% completion")
        if year == years:
            milestones.append("Development complete")
        phases.append({
            "year": year,
            "phase": f"Phase {year}",
            "housing_units": round(per_year),
            "cumulative_units": round(per_year * year),
            "milestones": milestones,
        })

    critical_path = [{
        "phase": p["phase"],
        "dependencies": ["Planning permission"] if p["year"] == 1 else [f"Phase {p['year'] - 1} complete"],
        "duration_months": 12,
        "critical_activity": "Housing construction",
    } for p in phases]

    return {"total_duration": years, "phases": phases, "critical_path": critical_path}


def identify_risks(params: Dict[str, Any], result: ScenarioResult) -> List[Dict[str, Any]]:
    housing = params["housing"]
    risks = []

    def add(level, category, description, impact):
        risks.append({"level": level, "category": category, "description": description, "impact": impact})

    if housing["phasing"] < 5:
        add("high", "delivery", "Accelerated delivery timeline may be challenging",
            "Potential delays in housing delivery")
    if housing["total_units"] > 1500:
        add("medium", "market", "Large housing numbers may saturate local market",
            "Slower sales rates and extended delivery")
    if result.infrastructure["costs"]["total"] > INFRASTRUCTURE_COST_RISK:
        add("high", "infrastructure", "High infrastructure costs may affect viability",
            "Potential funding gaps for essential infrastructure")
    if params["environment"]["biodiversity_net_gain"] < 10:
        add("medium", "environmental", "Biodiversity net gain target below best practice",
            "Potential regulatory challenges")
    if housing["affordable_percentage"] > 40:
        add("medium", "viability", "Affordable housing share above typical policy norms",
            "Reduced scheme viability without subsidy")
    if housing["density_range"]["max"] > 50 and result.infrastructure["adequacy"] < 0.5:
        add("high", "capacity", "High density with low infrastructure provision",
            "Schools, healthcare and transport capacity likely exceeded")

    mix_total = result.employment["sector_mix_total"]
    if mix_total != 100:
        add("medium", "parameters", f"Employment sector mix totals {mix_total}% rather than 100%",
            "Employment land and job projections are scaled by an inconsistent mix")

    shortfall = result.housing.get("site_area_shortfall_ha")
    if shortfall:
        add("high", "land", f"Site is {shortfall} ha short of the land required at the planned density",
            "Housing numbers cannot be delivered on the site without higher density")
    return risks


def overall_risk(risks: List[Dict[str, Any]]) -> str:
    high = sum(1 for r in risks if r["level"] == "high")
    medium = sum(1 for r in risks if r["level"] == "medium")
    if high > 2:
        return "high"
    if high > 0 or medium > 3:
        return "medium"
    return "low"


def success_probability(result: ScenarioResult) -> float:
    score = 100.0
    status = result.viability["viability_status"]
    if status == "unviable":
        score -= 40
    elif status == "marginal":
        score -= 20
    score -= 15 * sum(1 for r in result.risks if r["level"] == "high")
    score -= 8 * sum(1 for r in result.risks if r["level"] == "medium")
    score -= 20 * (1 - result.infrastructure["adequacy"])
    return round(max(0.0, min(100.0, score)), 1)


def summarise(result: ScenarioResult) -> Dict[str, Any]:
    recommendations = []
    if result.viability["viability_status"] == "unviable":
        recommendations.append("Review development parameters to improve viability")
    if result.transport["bus_capacity_shortfall"] > 0:
        recommendations.append("Enhance public transport provision")
    if result.environment["net_carbon_impact_t"] > 0:
        recommendations.append("Increase renewable energy provision")
    if result.infrastructure["adequacy"] < 0.5:
        recommendations.append("Plan additional school, healthcare and transport capacity")

    return {
        "overall_viability": result.viability["viability_status"],
        "key_metrics": {
            "housing_delivery": result.housing["total_units"],
            "job_creation": result.employment["total_jobs"],
            "infrastructure_cost": result.infrastructure["costs"]["total"],
            "carbon_impact_t": result.environment["net_carbon_impact_t"],
            "viability_gap": result.viability["viability_gap"],
        },
        "risk_level": overall_risk(result.risks),
        "recommendations": recommendations,
        "success_probability": success_probability(result),
    }


def model_parameters(
    parameters: Dict[str, Any],
    allocations: Optional[List[Dict[str, Any]]] = None,
    site_context: Optional[Dict[str, Any]] = None,
) -> ScenarioResult:
    """Pure projection of a full parameter set."""
    allocations = allocations or []
    site_area = None
    if site_context:
        metrics = site_context.get("metrics") or {}
        site_area = site_context.get("area_hectares")
        # Metrics from an invalid geometry carry a placeholder 0 ha area
        if site_area is None and not metrics.get("error"):
            site_area = metrics.get("area_hectares")

    if site_area is not None:
        development_area = site_area
    else:
        development_area = sum(_allocation_area(a) for a in allocations)

    result = ScenarioResult()
    result.housing = assess_housing(parameters, allocations, site_area)
    result.employment = assess_employment(parameters)
    result.transport = assess_transport(parameters)
    result.environment = assess_environment(parameters, development_area)
    result.infrastructure = assess_infrastructure(parameters, result.transport)
    result.viability = assess_viability(parameters, result.infrastructure["costs"]["total"])
    result.timeline = build_timeline(parameters)
    result.risks = identify_risks(parameters, result)
    result.summary = summarise(result)
    return result


def _allocation_area(allocation: Dict[str, Any]) -> float:
    if allocation.get("area_hectares"):
        return float(allocation["area_hectares"])
    if allocation.get("capacity"):
        return allocation["capacity"] / 30
    return 1.0


# ═══════════════════════════════════════════════════════════════════════════
# MODELER
# ═══════════════════════════════════════════════════════════════════════════
class ScenarioModeler:
    """
    Usage:
        modeler = ScenarioModeler(store)
        scenario = modeler.create_scenario("lp-2030", {"name": "Growth", "parameters": {...}})
        result = modeler.run_scenario_modeling(scenario.id)
    """

    def __init__(self, store):
        self.store = store

    def create_scenario(self, plan_id: str, data: Dict[str, Any]) -> Scenario:
        if not isinstance(data, dict):
            raise InputError("Scenario data must be a mapping")
        scenario = Scenario(
            id=f"scn_{uuid.uuid4().hex[:12]}",
            plan_id=plan_id,
            name=data.get("name") or "Unnamed scenario",
            description=data.get("description") or "",
            parameters=merge_parameters(DEFAULT_PARAMETERS, data.get("parameters")),
        )
        if data.get("baseline_year"):
            scenario.baseline_year = int(data["baseline_year"])
        self.store.save_scenario(scenario.to_dict())
        log.info(f"Created scenario {scenario.id} '{scenario.name}' for plan {plan_id}")
        return scenario

    def get_scenario(self, scenario_id: str) -> Scenario:
        data = self.store.get_scenario(scenario_id)
        if data is None:
            raise InputError(f"Unknown scenario: {scenario_id}")
        return Scenario.from_dict(data)

    def update_scenario(self, scenario_id: str, updates: Dict[str, Any]) -> Scenario:
        """Merge updates into a scenario; any change puts it back to draft."""
        scenario = self.get_scenario(scenario_id)
        for key in ("name", "description", "baseline_year"):
            if key in updates:
                setattr(scenario, key, updates[key])
        if updates.get("parameters"):
            scenario.parameters = merge_parameters(scenario.parameters, updates["parameters"])
        scenario.status = "draft"
        scenario.updated_at = _now()
        self.store.save_scenario(scenario.to_dict())
        return scenario

    def get_scenarios(self, plan_id: str) -> List[Scenario]:
        scenarios = [Scenario.from_dict(d) for d in self.store.list_scenarios(plan_id)]
        scenarios.sort(key=lambda s: s.updated_at, reverse=True)
        return scenarios

    def delete_scenario(self, scenario_id: str) -> bool:
        return self.store.delete_scenario(scenario_id)

    def run_scenario_modeling(self, scenario_id: str, site_context: Optional[Dict[str, Any]] = None) -> ScenarioResult:
        """
        Model a stored scenario and save the results on it.

        Raises:
            InputError if the scenario is unknown or its parameters are unusable
        """
        scenario = self.get_scenario(scenario_id)
        allocations = self.store.get_site_allocations(scenario.plan_id)

        try:
            result = model_parameters(scenario.parameters, allocations, site_context)
        except (KeyError, TypeError, ValueError, OverflowError, ZeroDivisionError) as e:
            scenario.status = "error"
            scenario.error = f"Unusable parameters: {e}"
            scenario.updated_at = _now()
            self.store.save_scenario(scenario.to_dict())
            raise InputError(scenario.error) from e

        scenario.results = result.to_dict()
        scenario.status = "modeled"
        scenario.error = None
        scenario.modeled_at = scenario.updated_at = _now()
        self.store.save_scenario(scenario.to_dict())

        log.info(
            f"Modeled {scenario_id}: {result.viability['viability_status']}, "
            f"success {result.summary['success_probability']}%, {len(result.risks)} risks"
        )
        return result

    def compare_scenarios(self, scenario1_id: str, scenario2_id: str) -> Dict[str, Any]:
        s1, s2 = self.get_scenario(scenario1_id), self.get_scenario(scenario2_id)
        if not s1.results or not s2.results:
            raise InputError("Both scenarios must be modeled before comparison")
        r1, r2 = s1.results, s2.results

        def diff(a, b):
            return {"scenario1": a, "scenario2": b, "difference": b - a}

        p1 = r1["summary"]["success_probability"]
        p2 = r2["summary"]["success_probability"]
        if p1 > p2 + 10:
            recommendation = f"Scenario '{s1.name}' is recommended based on higher success probability"
        elif p2 > p1 + 10:
            recommendation = f"Scenario '{s2.name}' is recommended based on higher success probability"
        else:
            recommendation = "Both scenarios have similar prospects; consider a hybrid approach"

        return {
            "scenarios": [{"id": s1.id, "name": s1.name}, {"id": s2.id, "name": s2.name}],
            "comparison": {
                "housing": {
                    "total_units": diff(r1["housing"]["total_units"], r2["housing"]["total_units"]),
                    "affordable_units": diff(r1["housing"]["affordable_units"], r2["housing"]["affordable_units"]),
                },
                "employment": {
                    "total_jobs": diff(r1["employment"]["total_jobs"], r2["employment"]["total_jobs"]),
                    "land_needed_ha": diff(r1["employment"]["total_land_needed_ha"], r2["employment"]["total_land_needed_ha"]),
                },
                "viability": {
                    "viability_gap": diff(r1["viability"]["viability_gap"], r2["viability"]["viability_gap"]),
                    "status": {"scenario1": r1["viability"]["viability_status"],
                               "scenario2": r2["viability"]["viability_status"]},
                },
                "environment": {
                    "net_carbon_impact_t": diff(r1["environment"]["net_carbon_impact_t"], r2["environment"]["net_carbon_impact_t"]),
                    "sustainability_rating": diff(r1["environment"]["sustainability_rating"], r2["environment"]["sustainability_rating"]),
                },
                "risks": {
                    "risk_count": diff(len(r1["risks"]), len(r2["risks"])),
                    "high_risks": diff(sum(1 for r in r1["risks"] if r["level"] == "high"),
                                       sum(1 for r in r2["risks"] if r["level"] == "high")),
                },
                "success_probability": diff(p1, p2),
            },
            "recommendation": recommendation,
        }
