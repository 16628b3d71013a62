"""
Spatial Analyzer - Constraint queries for an application site.

Selects datasets from the constraint catalog, queries them in parallel on a
bounded thread pool, and merges the answers into a ConstraintReport. A
dataset that fails degrades to status "error" on that dataset only; the
report itself is always returned.
"""

import hashlib
import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed, TimeoutError as FuturesTimeout
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from shapely.errors import GEOSException

from core.catalog import CatalogEntry, ConstraintCatalog
from core.errors import AnalysisTimeoutError, DatasetQueryError, InputError
from core.geometry import (
    SiteGeometry, SiteMetrics, compute_metrics,
    parse_feature_geometry, distance_to_site, coverage_percent,
)
from core.retrieval import EvidenceItem

log = logging.getLogger(__name__)


class DatasetStatus:
    """Outcome of one dataset query."""
    OK = "ok"          # Entities found
    EMPTY = "empty"    # Query succeeded, nothing there
    ERROR = "error"    # Network/HTTP/decode failure or timeout


TIMEOUT_DETAIL = "timeout"

SEVERITY_RELEVANCE = {"critical": 1.0, "high": 0.9, "medium": 0.7, "low": 0.5}

CATEGORY_IMPLICATIONS = {
    "heritage": ["Heritage impact assessment required", "Consultation with conservation officer needed"],
    "flood": ["Flood risk assessment required", "Sequential test may apply"],
    "ecology": ["Ecological survey needed", "Environmental impact assessment may be required"],
    "landscape": ["Landscape impact assessment required", "Design must respect character"],
    "regulatory": ["Check permitted development restrictions"],
}

RAIL_NODE_TYPES = {"RSE", "RLY", "RPL", "MET", "PLT", "TMU"}
WALKING_SPEED_M_PER_MIN = 80


# ═══════════════════════════════════════════════════════════════════════════
# RESULT TYPES
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class AnalysisOptions:
    """Options for analyze_site."""
    analysis_type: str = "basic"
    development_type: Optional[str] = None

    @classmethod
    def from_value(cls, value: Any) -> "AnalysisOptions":
        if value is None:
            return cls()
        if isinstance(value, AnalysisOptions):
            return value
        if isinstance(value, dict):
            analysis_type = value.get("analysis_type") or value.get("analysisType") or "basic"
            development_type = value.get("development_type") or value.get("developmentType")
            if not isinstance(analysis_type, str):
                raise InputError(f"analysis_type must be a string, got {type(analysis_type).__name__}")
            if development_type is not None and not isinstance(development_type, str):
                raise InputError(f"development_type must be a string, got {type(development_type).__name__}")
            return cls(analysis_type=analysis_type, development_type=development_type)
        raise InputError(f"Unsupported analysis options: {type(value).__name__}")


@dataclass
class ConstraintQueryResult:
    """Answer for one catalog entry."""
    dataset_id: str
    category: str
    features: List[Dict[str, Any]] = field(default_factory=list)
    status: str = DatasetStatus.EMPTY
    error_detail: Optional[str] = None
    queried_name: Optional[str] = None
    severity: str = "low"
    policy_refs: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dataset_id": self.dataset_id,
            "category": self.category,
            "features": self.features,
            "status": self.status,
            "error_detail": self.error_detail,
            "queried_name": self.queried_name,
            "severity": self.severity,
            "policy_refs": list(self.policy_refs),
        }


@dataclass
class ConstraintReport:
    """
    Structured constraint answer for one site and analysis profile.

    `constraints` is ordered by catalog declaration order, never by the
    order in which the parallel queries happened to finish.
    """
    site_id: str
    geometry_hash: str
    cache_key: str
    metrics: SiteMetrics
    constraints: List[ConstraintQueryResult] = field(default_factory=list)
    confidence: float = 0.0
    timestamp: str = ""
    address: Optional[str] = None
    analysis_type: str = "basic"
    development_type: Optional[str] = None
    transport: Optional[Dict[str, Any]] = None
    planning_assessment: Dict[str, Any] = field(default_factory=dict)
    evidence: List[EvidenceItem] = field(default_factory=list)
    degraded_sources: List[str] = field(default_factory=list)
    from_cache: bool = False

    def by_category(self, category: str) -> List[ConstraintQueryResult]:
        return [c for c in self.constraints if c.category == category]

    def features_for(self, dataset_id: str) -> List[Dict[str, Any]]:
        for c in self.constraints:
            if c.dataset_id == dataset_id and c.status == DatasetStatus.OK:
                return c.features
        return []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "site_id": self.site_id,
            "geometry_hash": self.geometry_hash,
            "cache_key": self.cache_key,
            "address": self.address,
            "analysis_type": self.analysis_type,
            "development_type": self.development_type,
            "metrics": self.metrics.to_dict(),
            "constraints": [c.to_dict() for c in self.constraints],
            "confidence": self.confidence,
            "timestamp": self.timestamp,
            "transport": self.transport,
            "planning_assessment": self.planning_assessment,
            "evidence": [e.to_dict() for e in self.evidence],
            "degraded_sources": list(self.degraded_sources),
            "from_cache": self.from_cache,
        }


class ReportCache:
    """
    In-memory report cache.

    Plain dict semantics: concurrent writers of the same key store equal
    reports, so the last write wins without corruption.
    """

    def __init__(self):
        self._reports: Dict[str, ConstraintReport] = {}

    def get(self, key: str) -> Optional[ConstraintReport]:
        return self._reports.get(key)

    def set(self, key: str, report: ConstraintReport):
        self._reports[key] = report

    def clear(self):
        self._reports.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._reports

    def __len__(self) -> int:
        return len(self._reports)


def make_cache_key(site: SiteGeometry, options: AnalysisOptions) -> str:
    payload = json.dumps({
        "geometry": site.exterior,
        "analysis_type": options.analysis_type,
        "development_type": options.development_type,
    }, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode()).hexdigest()


# ═══════════════════════════════════════════════════════════════════════════
# ANALYZER
# ═══════════════════════════════════════════════════════════════════════════
class SpatialAnalyzer:
    """
    Constraint query engine.

    Usage:
        analyzer = SpatialAnalyzer(PlanningDataClient(), ConstraintCatalog().load())
        report = analyzer.analyze_site(geojson_polygon, "1 High St", {"analysis_type": "basic"})
    """

    def __init__(
        self,
        client,
        catalog: Optional[ConstraintCatalog] = None,
        max_workers: int = 4,
        analysis_timeout: float = 60.0,
        cache: Optional[ReportCache] = None,
    ):
        self.client = client
        self.catalog = catalog or ConstraintCatalog()
        self.max_workers = max(1, max_workers)
        self.analysis_timeout = analysis_timeout
        self.cache = cache if cache is not None else ReportCache()

    def select_datasets_for_analysis(self, options: Any = None) -> List[CatalogEntry]:
        opts = AnalysisOptions.from_value(options)
        return self.catalog.select_datasets(opts.analysis_type, opts.development_type)

    def analyze_site(self, geometry: Any, address: Optional[str] = None, options: Any = None) -> ConstraintReport:
        """
        Analyze a site against the constraint datasets for a profile.

        Never raises for bad geometry or failing datasets: invalid geometry
        yields metrics.error with confidence 0, failing datasets yield
        status "error" entries and a proportionally lower confidence.
        """
        try:
            opts = AnalysisOptions.from_value(options)
        except InputError as e:
            log.warning(f"Bad analysis options, using defaults: {e}")
            opts = AnalysisOptions()

        try:
            site = SiteGeometry.from_input(geometry)
        except InputError as e:
            log.warning(f"Invalid site geometry: {e}")
            return self._invalid_report(geometry, address, opts, str(e))

        key = make_cache_key(site, opts)
        cached = self.cache.get(key)
        if cached is not None:
            log.debug(f"Report cache hit: {cached.site_id}")
            return replace(cached, from_cache=True, address=address or cached.address)

        started = time.time()
        metrics = compute_metrics(site)
        entries = self.select_datasets_for_analysis(opts)
        results = self._dispatch(entries, site)

        errored = [r.dataset_id for r in results if r.status == DatasetStatus.ERROR]
        confidence = 100.0
        if results:
            confidence = round(100.0 * (1 - len(errored) / len(results)), 1)

        report = ConstraintReport(
            site_id=f"site_{key[:16]}",
            geometry_hash=site.geometry_hash,
            cache_key=key,
            metrics=metrics,
            constraints=results,
            confidence=confidence,
            timestamp=datetime.now(timezone.utc).isoformat(),
            address=address,
            analysis_type=opts.analysis_type,
            development_type=opts.development_type,
            degraded_sources=errored,
        )
        transport_results = report.by_category("transport")
        if transport_results:
            report.transport = summarise_transport(transport_results[0])
        report.planning_assessment = assess_planning_context(report)
        report.evidence = build_dataset_evidence(report)

        if results and len(errored) == len(results):
            log.warning(f"All {len(results)} datasets failed; report not cached")
        else:
            self.cache.set(key, report)

        log.info(
            f"Analyzed {report.site_id}: {len(results)} datasets, "
            f"{len(errored)} errors, confidence {confidence} ({time.time() - started:.1f}s)"
        )
        return report

    def _invalid_report(self, geometry: Any, address: Optional[str], opts: AnalysisOptions, message: str) -> ConstraintReport:
        digest = hashlib.sha256(repr(geometry).encode()).hexdigest()
        return ConstraintReport(
            site_id=f"invalid_{digest[:16]}",
            geometry_hash=digest,
            cache_key="",
            metrics=SiteMetrics(error=message),
            confidence=0.0,
            timestamp=datetime.now(timezone.utc).isoformat(),
            address=address,
            analysis_type=opts.analysis_type,
            development_type=opts.development_type,
            planning_assessment={"risk_level": "unknown", "development_potential": "unknown",
                                 "key_constraints": [], "policy_implications": []},
        )

    def _dispatch(self, entries: List[CatalogEntry], site: SiteGeometry) -> List[ConstraintQueryResult]:
        """Query all entries on the pool; merge in declaration order."""
        if not entries:
            return []

        cancelled = threading.Event()
        results: Dict[str, ConstraintQueryResult] = {}
        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="dataset")
        futures = {executor.submit(self._query_entry, entry, site, cancelled): entry for entry in entries}

        try:
            for future in as_completed(futures, timeout=self.analysis_timeout):
                entry = futures[future]
                try:
                    results[entry.dataset_id] = future.result()
                except Exception as e:
                    log.error(f"Unexpected failure querying {entry.dataset_id}: {e}")
                    results[entry.dataset_id] = _error_result(entry, str(e))
        except FuturesTimeout:
            deadline = AnalysisTimeoutError(
                self.analysis_timeout, [e.dataset_id for e in entries if e.dataset_id not in results]
            )
            log.warning(f"{deadline}, cancelling: {', '.join(deadline.pending)}")
            cancelled.set()
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        merged = []
        for entry in entries:
            result = results.get(entry.dataset_id)
            if result is None:
                result = _error_result(entry, TIMEOUT_DETAIL)
            merged.append(result)
        return merged

    def _query_entry(self, entry: CatalogEntry, site: SiteGeometry, cancelled: threading.Event) -> ConstraintQueryResult:
        """Query an entry's candidate names in order; first non-empty, non-error answer wins."""
        if entry.search_radius_m > 0:
            query_wkt = site.buffered_envelope(entry.search_radius_m).wkt
        else:
            query_wkt = site.wkt

        last_error = None
        empty_name = None
        for name in entry.query_names:
            if cancelled.is_set():
                return _error_result(entry, TIMEOUT_DETAIL)
            try:
                raw = self.client.query_dataset(name, query_wkt)
            except DatasetQueryError as e:
                log.warning(f"Dataset {name} failed: {e.detail}")
                last_error = e.detail
                continue

            if raw:
                features = [normalise_feature(entry, name, item, site) for item in raw]
                features.sort(key=lambda f: (f["distance_m"] is None, f["distance_m"] or 0.0))
                return ConstraintQueryResult(
                    dataset_id=entry.dataset_id,
                    category=entry.category,
                    features=features,
                    status=DatasetStatus.OK,
                    queried_name=name,
                    severity=entry.severity,
                    policy_refs=list(entry.policy_refs),
                )
            if empty_name is None:
                empty_name = name

        if empty_name is not None:
            return ConstraintQueryResult(
                dataset_id=entry.dataset_id,
                category=entry.category,
                status=DatasetStatus.EMPTY,
                queried_name=empty_name,
                severity=entry.severity,
                policy_refs=list(entry.policy_refs),
            )
        return _error_result(entry, last_error or "no candidate dataset answered")


def _error_result(entry: CatalogEntry, detail: str) -> ConstraintQueryResult:
    return ConstraintQueryResult(
        dataset_id=entry.dataset_id,
        category=entry.category,
        status=DatasetStatus.ERROR,
        error_detail=detail,
        severity=entry.severity,
        policy_refs=list(entry.policy_refs),
    )


# ═══════════════════════════════════════════════════════════════════════════
# FEATURE NORMALISATION
# ═══════════════════════════════════════════════════════════════════════════
def normalise_feature(entry: CatalogEntry, queried_name: str, raw: Dict[str, Any], site: SiteGeometry) -> Dict[str, Any]:
    """Flatten a platform entity into the fields the engine relies on."""
    geom = parse_feature_geometry(raw)
    distance = None
    coverage = 0.0
    if geom is not None:
        try:
            distance = round(distance_to_site(site, geom), 1)
            coverage = coverage_percent(site, geom)
        except (GEOSException, ValueError) as e:
            log.debug(f"Skipping spatial relation for entity {raw.get('entity')}: {e}")
            distance, coverage = None, 0.0

    feature = {
        "entity": raw.get("entity"),
        "name": raw.get("name") or raw.get("reference") or f"{queried_name} {raw.get('entity', '')}".strip(),
        "reference": raw.get("reference"),
        "dataset": raw.get("dataset") or queried_name,
        "distance_m": distance,
        "coverage_percent": coverage,
        "point": raw.get("point"),
    }

    if entry.category == "flood":
        feature["flood_zone"] = _flood_zone(raw)
    if entry.dataset_id == "listed-building":
        feature["grade"] = raw.get("listed-building-grade") or raw.get("grade")
    if entry.category == "transport":
        feature["node_type"] = (
            raw.get("transport-access-node-type") or raw.get("stop-type") or raw.get("type") or ""
        ).upper()
    return feature


def _flood_zone(raw: Dict[str, Any]) -> Optional[str]:
    level = str(raw.get("flood-risk-level") or "").strip()
    if level in ("2", "3"):
        return f"Zone {level}"
    name = (raw.get("name") or "").lower()
    for zone in ("3", "2"):
        if f"zone {zone}" in name:
            return f"Zone {zone}"
    return None


# ═══════════════════════════════════════════════════════════════════════════
# DERIVED SUMMARIES
# ═══════════════════════════════════════════════════════════════════════════
def summarise_transport(result: ConstraintQueryResult) -> Dict[str, Any]:
    """Nearest stops, PTAL-style score (0-20), rating and parking standard."""
    if result.status == DatasetStatus.ERROR:
        return {"error": result.error_detail}

    stations, stops = [], []
    for f in result.features:
        if f.get("distance_m") is None:
            continue
        is_rail = f.get("node_type") in RAIL_NODE_TYPES or "station" in (f.get("name") or "").lower()
        (stations if is_rail else stops).append(f)

    nearest_station = stations[0] if stations else None
    score = 0.0
    if nearest_station and nearest_station["distance_m"] <= 960:
        score += max(0.0, 10 - nearest_station["distance_m"] / 96)
    accessible_stops = [s for s in stops if s["distance_m"] <= 480]
    if accessible_stops:
        score += min(len(accessible_stops) * 2, 10)
    score = round(score, 1)

    return {
        "nearest_station": _stop_summary(nearest_station) if nearest_station else None,
        "bus_stops": [_stop_summary(s) for s in stops[:5]],
        "ptal_score": score,
        "accessibility_rating": ptal_rating(score),
        "car_parking_standard": parking_standard(score),
    }


def _stop_summary(feature: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "name": feature.get("name"),
        "distance_m": feature["distance_m"],
        "walking_time_min": round(feature["distance_m"] / WALKING_SPEED_M_PER_MIN),
    }


def ptal_rating(score: float) -> str:
    if score >= 8:
        return "Excellent (6a/6b)"
    if score >= 6:
        return "Very Good (5/6a)"
    if score >= 4:
        return "Good (3/4)"
    if score >= 2:
        return "Moderate (2/3)"
    return "Poor (0/1)"


def parking_standard(score: float) -> str:
    if score >= 6:
        return "Car-free development possible"
    if score >= 4:
        return "Reduced parking standards"
    if score >= 2:
        return "Standard parking requirements"
    return "Higher parking provision may be needed"


def constraint_impact(severity: str, coverage: float, distance: Optional[float]) -> str:
    """Impact of a constraint given its severity and how much of the site it touches."""
    if coverage <= 0 and distance not in (0, 0.0):
        return "none"
    if severity == "critical":
        return "critical" if coverage > 10 else "high"
    if severity == "high":
        return "high" if coverage > 25 else "medium"
    if severity == "medium":
        return "medium" if coverage > 50 else "low"
    return "low"


def assess_planning_context(report: ConstraintReport) -> Dict[str, Any]:
    key_constraints = []
    implications: List[str] = []

    for result in report.constraints:
        if result.status != DatasetStatus.OK or result.category == "transport":
            continue
        touching = [f for f in result.features if f["coverage_percent"] > 0 or f["distance_m"] == 0]
        if not touching:
            continue
        coverage = max(f["coverage_percent"] for f in touching)
        impact = constraint_impact(result.severity, coverage, 0.0)
        key_constraints.append({
            "dataset_id": result.dataset_id,
            "category": result.category,
            "name": touching[0]["name"],
            "severity": result.severity,
            "coverage_percent": coverage,
            "impact": impact,
        })
        for item in list(result.policy_refs) + CATEGORY_IMPLICATIONS.get(result.category, []):
            if item not in implications:
                implications.append(item)

    for dataset_id in report.degraded_sources:
        implications.append(f"Manual check required: {dataset_id} data unavailable")

    impacts = {c["impact"] for c in key_constraints}
    if impacts & {"critical", "high"}:
        risk = "high"
    elif "medium" in impacts:
        risk = "medium"
    else:
        risk = "low"

    return {
        "risk_level": risk,
        "development_potential": {"high": "low", "medium": "medium", "low": "high"}[risk],
        "key_constraints": key_constraints,
        "policy_implications": implications,
    }


def build_dataset_evidence(report: ConstraintReport) -> List[EvidenceItem]:
    evidence = []
    for result in report.constraints:
        if result.status != DatasetStatus.OK:
            continue
        nearest = result.features[0]
        if nearest["coverage_percent"] > 0:
            relation = f"overlaps {nearest['coverage_percent']}% of the site"
        elif nearest["distance_m"] is not None:
            relation = f"is {nearest['distance_m']}m from the site"
        else:
            relation = "is recorded at the site"
        evidence.append(EvidenceItem(
            source_type="dataset",
            reference=result.dataset_id,
            text=f"{nearest['name']} ({result.category}, {result.severity} severity) {relation}",
            relevance_score=SEVERITY_RELEVANCE.get(result.severity, 0.5),
        ))
    return evidence
