"""
Material Considerations - Score planning considerations and strike the planning balance.

Each consideration (listed buildings, flood risk, parking...) is scored
0-100 from the constraint report and facts extracted from the submitted
documents. Categories are weighted into a cumulative score that decides the
overall balance and an advisory recommendation.
"""

import re
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from core.spatial import DatasetStatus

log = logging.getLogger(__name__)


# Category weights for the planning balance
CATEGORY_WEIGHTS = {
    "Statutory": 100,
    "Heritage": 95,
    "Environment": 90,
    "Transport": 85,
    "Housing": 85,
    "Design": 80,
    "Amenity": 75,
    "Economic": 70,
    "Climate": 70,
    "Infrastructure": 65,
    "Procedural": 60,
    "Other": 50,
}

AFFORDABLE_THRESHOLD_UNITS = 10
AFFORDABLE_REQUIRED_PERCENT = 30

RECOMMENDATIONS = {
    "benefits_outweigh_harms": ("approve", "Benefits outweigh any identified harms", 0.8),
    "neutral_balance": ("approve", "Balanced proposal with acceptable impacts", 0.6),
    "harms_outweigh_benefits": ("refuse", "Harms outweigh benefits", 0.7),
    "significant_harm_outweighs_benefits": ("refuse", "Significant harm identified", 0.9),
}

BALANCE_CONCLUSIONS = {
    "benefits_outweigh_harms": "The identified benefits of the proposal are considered to outweigh any harms identified.",
    "neutral_balance": "The proposal presents a balanced case with benefits and harms broadly offsetting each other.",
    "harms_outweigh_benefits": "The identified harms outweigh the benefits of the proposal.",
    "significant_harm_outweighs_benefits": "Significant harm has been identified that substantially outweighs any benefits.",
}


# ═══════════════════════════════════════════════════════════════════════════
# DOCUMENT FACTS
# ═══════════════════════════════════════════════════════════════════════════
HEIGHT_PATTERNS = [
    re.compile(r"(\d+(?:\.\d+)?)\s*(?:m|metres|meters)\s+(?:high|tall|in height)", re.IGNORECASE),
    re.compile(r"(?:height|ridge)\s+(?:of\s+)?(?:up\s+to\s+)?(\d+(?:\.\d+)?)\s*(?:m|metres|meters)\b", re.IGNORECASE),
]
UNITS_RE = re.compile(
    r"(\d+)\s+(?:new\s+)?(?:residential\s+)?(?:dwellings|units|homes|houses|flats|apartments)\b",
    re.IGNORECASE,
)
AFFORDABLE_UNITS_RE = re.compile(
    r"(\d+)\s+(?:\w+\s+)?affordable\s+(?:dwellings|units|homes|houses|flats)",
    re.IGNORECASE,
)
AFFORDABLE_PERCENT_RE = re.compile(r"(\d+(?:\.\d+)?)\s*%\s+affordable", re.IGNORECASE)
PARKING_RE = re.compile(r"(\d+)\s+(?:car\s+)?parking\s+spaces", re.IGNORECASE)
ACCESS_RE = re.compile(r"\b(?:vehicular access|access road|site access|access from|junction|visibility splay)\b", re.IGNORECASE)


@dataclass
class DocumentFacts:
    """Figures pulled from submitted document text."""
    heights: List[float] = field(default_factory=list)
    housing_units: Optional[int] = None
    affordable_units: Optional[int] = None
    parking_spaces: Optional[int] = None
    access_mentioned: bool = False

    @property
    def max_height(self) -> Optional[float]:
        return max(self.heights) if self.heights else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "heights": list(self.heights),
            "housing_units": self.housing_units,
            "affordable_units": self.affordable_units,
            "parking_spaces": self.parking_spaces,
            "access_mentioned": self.access_mentioned,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DocumentFacts":
        data = data or {}
        return cls(
            heights=[float(h) for h in data.get("heights") or []],
            housing_units=data.get("housing_units"),
            affordable_units=data.get("affordable_units"),
            parking_spaces=data.get("parking_spaces"),
            access_mentioned=bool(data.get("access_mentioned")),
        )


def extract_document_facts(texts: List[str]) -> DocumentFacts:
    """Regex extraction of heights, unit numbers, parking and access mentions."""
    facts = DocumentFacts()
    text = "\n".join(t for t in texts if t)
    if not text:
        return facts

    for pattern in HEIGHT_PATTERNS:
        facts.heights.extend(float(m.group(1)) for m in pattern.finditer(text))
    facts.heights = sorted(set(facts.heights))

    affordable = [int(m.group(1)) for m in AFFORDABLE_UNITS_RE.finditer(text)]
    affordable_spans = {m.start(1) for m in AFFORDABLE_UNITS_RE.finditer(text)}
    units = [int(m.group(1)) for m in UNITS_RE.finditer(text) if m.start(1) not in affordable_spans]
    if units:
        facts.housing_units = max(units)

    if affordable:
        facts.affordable_units = max(affordable)
    else:
        percent = AFFORDABLE_PERCENT_RE.search(text)
        if percent and facts.housing_units:
            facts.affordable_units = round(facts.housing_units * float(percent.group(1)) / 100)

    parking = [int(m.group(1)) for m in PARKING_RE.finditer(text)]
    if parking:
        facts.parking_spaces = max(parking)

    facts.access_mentioned = bool(ACCESS_RE.search(text))
    return facts


# ═══════════════════════════════════════════════════════════════════════════
# RESULT TYPES
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class ConsiderationAssessment:
    id: str
    description: str
    category: str
    score: float = 50
    significance: str = "low"
    analysis: str = ""
    evidence: List[Dict[str, Any]] = field(default_factory=list)
    confidence: float = 0.5
    policy_references: List[str] = field(default_factory=list)
    conditions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "category": self.category,
            "score": self.score,
            "significance": self.significance,
            "analysis": self.analysis.strip(),
            "evidence": list(self.evidence),
            "confidence": self.confidence,
            "policy_references": list(self.policy_references),
            "conditions": list(self.conditions),
        }


@dataclass
class CategoryAssessment:
    category: str
    overall_score: float = 0.0
    confidence: float = 0.0
    considerations: List[ConsiderationAssessment] = field(default_factory=list)
    key_issues: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def recommended_conditions(self) -> List[str]:
        conditions = []
        for c in self.considerations:
            for condition in c.conditions:
                if condition not in conditions:
                    conditions.append(condition)
        return conditions

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "overall_score": self.overall_score,
            "confidence": self.confidence,
            "considerations": [c.to_dict() for c in self.considerations],
            "key_issues": list(self.key_issues),
            "recommended_conditions": self.recommended_conditions,
        }


@dataclass
class PlanningBalance:
    weights_applied: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    cumulative_score: float = 0.0
    significant_benefits: List[Dict[str, Any]] = field(default_factory=list)
    significant_harms: List[Dict[str, Any]] = field(default_factory=list)
    overall_balance: str = "neutral_balance"
    narrative: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "weights_applied": self.weights_applied,
            "cumulative_score": self.cumulative_score,
            "significant_benefits": list(self.significant_benefits),
            "significant_harms": list(self.significant_harms),
            "overall_balance": self.overall_balance,
            "narrative": self.narrative,
        }


@dataclass
class MaterialAssessment:
    categories: Dict[str, CategoryAssessment]
    balance: PlanningBalance
    recommendation: Dict[str, Any]
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "categories": {name: c.to_dict() for name, c in self.categories.items()},
            "balance": self.balance.to_dict(),
            "recommendation": dict(self.recommendation),
            "confidence": self.confidence,
        }


# ═══════════════════════════════════════════════════════════════════════════
# ASSESSOR
# ═══════════════════════════════════════════════════════════════════════════
class SiteFacts:
    """Read-only view over a ConstraintReport for the scorers."""

    def __init__(self, report=None):
        self.report = report

    def _features(self, dataset_id: str) -> List[Dict[str, Any]]:
        if self.report is None:
            return []
        return self.report.features_for(dataset_id)

    def unavailable(self, dataset_id: str) -> bool:
        """True when the dataset query failed, as opposed to finding nothing."""
        if self.report is None:
            return False
        return any(c.dataset_id == dataset_id and c.status == DatasetStatus.ERROR for c in self.report.constraints)

    @property
    def conservation_areas(self) -> List[Dict[str, Any]]:
        return [f for f in self._features("conservation-area") if f["coverage_percent"] > 0 or f["distance_m"] == 0]

    @property
    def listed_buildings(self) -> List[Dict[str, Any]]:
        return [f for f in self._features("listed-building") if f["distance_m"] is not None]

    @property
    def flood_zones(self) -> List[Dict[str, Any]]:
        return self._features("flood-risk-zone")

    @property
    def ptal_score(self) -> Optional[float]:
        if self.report is None or not self.report.transport:
            return None
        return self.report.transport.get("ptal_score")


class MaterialConsiderationsAssessor:
    """
    Usage:
        assessor = MaterialConsiderationsAssessor()
        result = assessor.assess(report, extract_document_facts(texts))
        result.recommendation["decision"]
    """

    # (id, category, description, scorer)
    CONSIDERATIONS = [
        ("character-appearance", "Heritage", "Character and Appearance", "_character_and_appearance"),
        ("listed-buildings", "Heritage", "Listed Buildings", "_listed_buildings"),
        ("conservation-areas", "Heritage", "Conservation Areas", "_conservation_areas"),
        ("flood-risk", "Environment", "Flood Risk", "_flood_risk"),
        ("affordable-housing", "Housing", "Affordable Housing", "_affordable_housing"),
        ("parking-provision", "Transport", "Parking Provision", "_parking_provision"),
        ("highway-safety", "Transport", "Highway Safety", "_highway_safety"),
        ("privacy-overlooking", "Amenity", "Privacy and Overlooking", "_privacy_overlooking"),
    ]

    def assess(self, report=None, facts: Optional[DocumentFacts] = None) -> MaterialAssessment:
        facts = facts or DocumentFacts()
        site = SiteFacts(report)

        categories: Dict[str, CategoryAssessment] = {}
        for cid, category, description, scorer in self.CONSIDERATIONS:
            item = ConsiderationAssessment(id=cid, description=description, category=category)
            getattr(self, scorer)(item, site, facts)
            categories.setdefault(category, CategoryAssessment(category=category)).considerations.append(item)

        for assessment in categories.values():
            _score_category(assessment)

        balance = planning_balance(categories)
        decision, reasoning, confidence = RECOMMENDATIONS.get(
            balance.overall_balance, ("defer", "Further information required", 0.3)
        )
        overall_confidence = round(sum(c.confidence for c in categories.values()) / len(categories), 2)

        log.info(f"Planning balance: {balance.overall_balance} ({balance.cumulative_score})")
        return MaterialAssessment(
            categories=categories,
            balance=balance,
            recommendation={"decision": decision, "reasoning": reasoning, "confidence": confidence},
            confidence=overall_confidence,
        )

    # ───────────────────────────────────────────────────────────────────────
    # Scorers
    # ───────────────────────────────────────────────────────────────────────
    def _character_and_appearance(self, item: ConsiderationAssessment, site: SiteFacts, facts: DocumentFacts):
        item.significance = "high"
        item.score = 50
        if site.conservation_areas:
            area = site.conservation_areas[0]
            item.score -= 20
            item.analysis += "Site located within Conservation Area; character and appearance considerations are critical. "
            item.evidence.append({"type": "spatial", "description": f"Site overlaps {area['name']}", "impact": "high"})
            item.policy_references.append("NPPF paragraphs 199-202")
        if site.listed_buildings and site.listed_buildings[0]["distance_m"] < 100:
            closest = site.listed_buildings[0]
            item.score -= 15
            item.analysis += f"Adjacent to listed building ({closest['distance_m']}m away); setting considerations apply. "
            item.evidence.append({"type": "spatial", "description": f"{closest['distance_m']}m from {closest['name']}", "impact": "medium"})
        if facts.max_height is not None and facts.max_height > 18:
            item.score -= 10
            item.analysis += f"Proposed height of {facts.max_height}m may impact local character. "
            item.conditions.append("Materials and design details to be agreed")
        if not item.analysis:
            item.analysis = "No heritage designations affect the site's character. "
        item.confidence = 0.7

    def _listed_buildings(self, item: ConsiderationAssessment, site: SiteFacts, facts: DocumentFacts):
        if site.unavailable("listed-building"):
            _data_unavailable(item, "Listed building")
            return
        if not site.listed_buildings:
            _not_applicable(item, "No listed buildings in proximity; consideration not applicable.")
            return
        item.significance = "high"
        item.policy_references += ["NPPF paragraphs 199-202", "Planning (Listed Buildings and Conservation Areas) Act 1990"]
        closest = site.listed_buildings[0]
        distance = closest["distance_m"]
        if distance < 50:
            item.score = 20
            item.analysis = (
                f"Development within {distance}m of Grade {closest.get('grade') or 'II'} listed {closest['name']}. "
                "Substantial harm to setting likely. "
            )
            item.evidence.append({"type": "spatial", "description": f"{distance}m from {closest['name']}",
                                  "impact": "high", "statutory": True})
        elif distance < 200:
            item.score = 40
            item.analysis = f"Development {distance}m from listed building. Some impact on setting possible. "
            item.conditions.append("Heritage Impact Assessment required")
        else:
            item.score = 70
            item.analysis = f"Listed building {distance}m away. Minimal impact on setting expected. "
        item.confidence = 0.8

    def _conservation_areas(self, item: ConsiderationAssessment, site: SiteFacts, facts: DocumentFacts):
        if site.unavailable("conservation-area"):
            _data_unavailable(item, "Conservation area")
            return
        if not site.conservation_areas:
            _not_applicable(item, "Site not within Conservation Area; consideration not applicable.")
            return
        item.significance = "high"
        item.policy_references += ["NPPF paragraphs 199-202", "Planning (Listed Buildings and Conservation Areas) Act 1990 s.72"]
        overlap = site.conservation_areas[0]
        coverage = overlap["coverage_percent"]
        item.analysis = f"Site {coverage}% within {overlap['name']}. "
        if coverage > 75:
            item.score = 30
            item.analysis += "Majority of site within Conservation Area; special attention to character required. "
        elif coverage > 25:
            item.score = 50
            item.analysis += "Partial overlap with Conservation Area; character considerations apply. "
        else:
            item.score = 70
            item.analysis += "Minor overlap with Conservation Area; limited character impact. "
        item.conditions += ["Conservation Area Consent may be required for demolition",
                            "Materials and design to preserve or enhance character"]
        item.confidence = 0.9

    def _flood_risk(self, item: ConsiderationAssessment, site: SiteFacts, facts: DocumentFacts):
        if site.unavailable("flood-risk-zone"):
            _data_unavailable(item, "Flood risk")
            return
        if not site.flood_zones:
            item.score = 100
            item.analysis = "Site not within identified flood risk area."
            item.significance = "low"
            item.confidence = 0.8
            return
        item.significance = "high"
        item.policy_references.append("NPPF paragraphs 159-169")
        zones = [f.get("flood_zone") or "" for f in site.flood_zones]
        coverage = max(f["coverage_percent"] for f in site.flood_zones)
        if "Zone 3" in zones:
            item.score = 10
            item.analysis = f"{coverage}% of site in Flood Zone 3 (high probability). Development generally inappropriate. "
            item.conditions += ["Flood Risk Assessment required", "Sequential Test required"]
        elif "Zone 2" in zones:
            item.score = 40
            item.analysis = f"{coverage}% of site in Flood Zone 2 (medium probability). Flood Risk Assessment required. "
            item.conditions.append("Flood Risk Assessment required")
        else:
            item.score = 80
            item.analysis = "Site in low flood risk area. Standard drainage considerations apply. "
        item.confidence = 0.9

    def _affordable_housing(self, item: ConsiderationAssessment, site: SiteFacts, facts: DocumentFacts):
        units = facts.housing_units or 0
        if units < AFFORDABLE_THRESHOLD_UNITS:
            item.significance = "not_applicable"
            item.analysis = "Development below affordable housing threshold."
            item.score = 100
            item.confidence = 0.8
            return
        item.significance = "high"
        item.policy_references.append("NPPF paragraph 64")
        affordable = facts.affordable_units or 0
        percent = round(affordable / units * 100, 1)
        if percent >= AFFORDABLE_REQUIRED_PERCENT:
            item.score = 100
            item.analysis = f"{percent}% affordable housing provided ({affordable}/{units} units). Meets policy requirement. "
        elif percent > 0:
            item.score = 50
            item.analysis = (f"{percent}% affordable housing provided ({affordable}/{units} units). "
                             f"Below {AFFORDABLE_REQUIRED_PERCENT}% requirement. ")
            item.conditions.append("Viability assessment required to justify shortfall")
        else:
            item.score = 0
            item.analysis = f"No affordable housing provision identified. Policy requires {AFFORDABLE_REQUIRED_PERCENT}%. "
            item.conditions.append("Affordable housing provision or financial contribution required")
        item.confidence = 0.7

    def _parking_provision(self, item: ConsiderationAssessment, site: SiteFacts, facts: DocumentFacts):
        item.significance = "medium"
        if facts.parking_spaces is None and facts.housing_units is None:
            item.score = 60
            item.analysis = "No parking or unit figures found in the submission; detailed assessment required."
            item.confidence = 0.3
            return

        spaces = facts.parking_spaces or 0
        units = facts.housing_units or 1
        ratio = spaces / units
        required = required_parking_ratio(site.ptal_score)
        if ratio >= required:
            item.score = 80
            item.analysis = f"{spaces} parking spaces for {units} units ({ratio:.1f} per unit). Adequate provision. "
        else:
            shortfall = round((required - ratio) * units)
            item.score = 40
            item.analysis = f"{spaces} parking spaces for {units} units. Shortfall of approximately {shortfall} spaces. "
            item.conditions.append("Car parking management plan required")
        item.confidence = 0.6

    def _highway_safety(self, item: ConsiderationAssessment, site: SiteFacts, facts: DocumentFacts):
        item.significance = "high"
        item.score = 50
        item.analysis = "Highway safety assessment based on access arrangements and traffic generation. "
        if facts.access_mentioned:
            item.score += 10
            item.analysis += "Access arrangements described in submitted documents. "
        else:
            item.score -= 20
            item.analysis += "No clear access arrangements provided; highway safety concerns. "
            item.conditions.append("Access details to be agreed with Highway Authority")
        item.confidence = 0.6

    def _privacy_overlooking(self, item: ConsiderationAssessment, site: SiteFacts, facts: DocumentFacts):
        item.significance = "medium"
        item.score = 60
        item.analysis = "Privacy and overlooking assessment based on proximity to existing dwellings. "
        if facts.max_height is not None and facts.max_height > 12:
            item.score -= 15
            item.analysis += f"Height of {facts.max_height}m increases overlooking potential. "
            item.conditions.append("Window positions and screening to prevent overlooking")
        item.analysis += "Standard separation distances should be maintained. "
        item.confidence = 0.5


def _not_applicable(item: ConsiderationAssessment, analysis: str):
    item.significance = "not_applicable"
    item.analysis = analysis
    item.score = 100
    item.confidence = 1.0


def _data_unavailable(item: ConsiderationAssessment, label: str):
    item.significance = "medium"
    item.analysis = f"{label} data unavailable; manual check required."
    item.score = 50
    item.confidence = 0.2
    item.conditions.append(f"{label} constraints to be checked manually before determination")


def required_parking_ratio(ptal_score: Optional[float]) -> float:
    """Spaces per unit expected at a given accessibility score (0-20 scale)."""
    if ptal_score is None:
        return 1.0
    if ptal_score >= 6:
        return 0.5
    if ptal_score >= 4:
        return 0.75
    if ptal_score >= 2:
        return 1.0
    return 1.5


def _score_category(assessment: CategoryAssessment):
    considerations = assessment.considerations
    total_confidence = sum(c.confidence for c in considerations)
    if total_confidence > 0:
        assessment.overall_score = round(sum(c.score * c.confidence for c in considerations) / total_confidence, 2)
    assessment.confidence = round(total_confidence / len(considerations), 2) if considerations else 0.0
    for c in considerations:
        if c.significance == "high" or c.score < 30:
            assessment.key_issues.append({
                "consideration": c.description,
                "issue": c.analysis.strip(),
                "severity": "critical" if c.score < 30 else "significant",
            })


def significance_band(score: float) -> str:
    if score >= 80:
        return "significant_benefit"
    if score >= 60:
        return "minor_benefit"
    if score >= 40:
        return "neutral"
    if score >= 20:
        return "minor_harm"
    return "significant_harm"


def overall_balance(cumulative: float, harms: List[Dict[str, Any]]) -> str:
    if any(h["score"] < 20 for h in harms):
        return "significant_harm_outweighs_benefits"
    if cumulative >= 70:
        return "benefits_outweigh_harms"
    if cumulative >= 50:
        return "neutral_balance"
    if cumulative >= 30:
        return "harms_outweigh_benefits"
    return "significant_harm_outweighs_benefits"


def planning_balance(categories: Dict[str, CategoryAssessment]) -> PlanningBalance:
    balance = PlanningBalance()
    total_weight = 0
    weighted = 0.0

    for name, assessment in categories.items():
        weight = CATEGORY_WEIGHTS.get(name, CATEGORY_WEIGHTS["Other"])
        score = assessment.overall_score
        balance.weights_applied[name] = {
            "score": score,
            "weight": weight,
            "weighted_score": round(score * weight / 100, 2),
            "significance": significance_band(score),
        }
        total_weight += weight
        weighted += score * weight / 100

        if score >= 80:
            balance.significant_benefits.append({
                "category": name,
                "score": score,
                "description": f"{name} considerations strongly support the proposal (score: {score})",
            })
        elif score <= 30:
            issues = ", ".join(i["consideration"] for i in assessment.key_issues) or "no specific issue recorded"
            balance.significant_harms.append({
                "category": name,
                "score": score,
                "description": f"{name} considerations raise concerns: {issues} (score: {score})",
            })

    if total_weight:
        balance.cumulative_score = round(weighted / total_weight * 100, 2)
    balance.overall_balance = overall_balance(balance.cumulative_score, balance.significant_harms)
    balance.narrative = balance_narrative(balance)
    return balance


def balance_narrative(balance: PlanningBalance) -> str:
    lines = ["Planning Balance Assessment:", ""]
    if balance.significant_benefits:
        lines.append("Significant Benefits:")
        lines += [f"• {b['description']}" for b in balance.significant_benefits]
        lines.append("")
    if balance.significant_harms:
        lines.append("Significant Harms/Concerns:")
        lines += [f"• {h['description']}" for h in balance.significant_harms]
        lines.append("")
    lines.append(
        f"Overall Assessment: {balance.overall_balance.replace('_', ' ')} "
        f"(Cumulative Score: {balance.cumulative_score})"
    )
    lines.append("")
    lines.append(BALANCE_CONCLUSIONS.get(balance.overall_balance, ""))
    return "\n".join(lines)
