"""
Assessment Pipeline - Multi-phase orchestration of a planning assessment.

Phases:
1. Document intake       - record documents, extract facts
2. Address resolution    - geocode when no geometry is supplied
3. Spatial + retrieval   - constraint queries and evidence retrieval, concurrently
4. Material considerations
5. Compliance and scenario scoring
6. Evidence compilation
7. Sanitization and persistence

A phase that fails adds a warning and the pipeline carries on. The
assessment is always sanitized and stored, even when cancelled.
"""

import uuid
import threading
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from core.compliance import PolicyComplianceEngine
from core.config import AssessorSettings
from core.catalog import ConstraintCatalog
from core.considerations import DocumentFacts, MaterialConsiderationsAssessor, extract_document_facts
from core.errors import PlanningAssessmentError, SerializationError
from core.llm import LLMClient
from core.rag import HashEmbedder, PolicyLibrary
from core.retrieval import EvidenceItem, EvidenceRetrievalChain, RetrievalResult
from core.sanitize import sanitize_for_storage
from core.scenario import ScenarioModeler
from core.spatial import ConstraintReport, SpatialAnalyzer
from core.storage import AssessmentStore
from loaders.geocoder import Geocoder
from loaders.planning_data import PlanningDataClient

log = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int, str], None]

PHASES = [
    ("intake", 5),
    ("address", 15),
    ("spatial_retrieval", 50),
    ("considerations", 65),
    ("scoring", 80),
    ("evidence", 90),
    ("persistence", 100),
]

ADHOC_PLAN_ID = "adhoc"


# ═══════════════════════════════════════════════════════════════════════════
# RECORDS
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class IntakeDocument:
    """An uploaded document whose text has already been extracted."""
    id: str
    doc_type: str = "other"     # design_and_access_statement, planning_statement, transport_report, ...
    title: str = ""
    text: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "doc_type": self.doc_type, "title": self.title, "text": self.text}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IntakeDocument":
        return cls(
            id=str(data.get("id") or f"doc_{uuid.uuid4().hex[:8]}"),
            doc_type=data.get("doc_type") or data.get("type") or "other",
            title=data.get("title") or "",
            text=data.get("text") or "",
        )


@dataclass
class AssessmentRequest:
    documents: List[IntakeDocument] = field(default_factory=list)
    address: Optional[str] = None
    geometry: Any = None
    analysis_options: Dict[str, Any] = field(default_factory=dict)
    description: str = ""
    local_plan_id: Optional[str] = None
    scenario_id: Optional[str] = None
    scenario_parameters: Optional[Dict[str, Any]] = None
    assessment_id: str = field(default_factory=lambda: f"asm_{uuid.uuid4().hex[:12]}")

    @property
    def development_type(self) -> Optional[str]:
        return self.analysis_options.get("development_type") or self.analysis_options.get("developmentType")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AssessmentRequest":
        request = cls(
            documents=[IntakeDocument.from_dict(d) for d in data.get("documents") or []],
            address=data.get("address"),
            geometry=data.get("geometry"),
            analysis_options=dict(data.get("analysis_options") or {}),
            description=data.get("description") or "",
            local_plan_id=data.get("local_plan_id"),
            scenario_id=data.get("scenario_id"),
            scenario_parameters=data.get("scenario_parameters"),
        )
        if data.get("assessment_id"):
            request.assessment_id = data["assessment_id"]
        return request


@dataclass
class Assessment:
    """
    Top-level aggregate. Each phase appends its output; the stored copy is
    never modified afterwards, a re-run stores a new version.
    """
    id: str
    document_ids: List[str] = field(default_factory=list)
    documents: List[Dict[str, Any]] = field(default_factory=list)
    site_address: Optional[str] = None
    description: str = ""
    development_type: Optional[str] = None
    local_plan_id: Optional[str] = None
    document_facts: Dict[str, Any] = field(default_factory=dict)
    location: Optional[Dict[str, Any]] = None
    constraint_report: Optional[Dict[str, Any]] = None
    material_considerations: Optional[Dict[str, Any]] = None
    evidence: List[Dict[str, Any]] = field(default_factory=list)
    compliance_check: Optional[Dict[str, Any]] = None
    scenario_result: Optional[Dict[str, Any]] = None
    phase_log: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[Dict[str, str]] = field(default_factory=list)
    degraded_sources: List[str] = field(default_factory=list)
    confidence: float = 0.0
    status: str = "running"     # running | completed | cancelled
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    completed_at: Optional[str] = None

    def warn(self, phase: str, message: str):
        log.warning(f"[{self.id}] {phase}: {message}")
        self.warnings.append({"phase": phase, "message": message})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "document_ids": list(self.document_ids),
            "documents": list(self.documents),
            "site_address": self.site_address,
            "description": self.description,
            "development_type": self.development_type,
            "local_plan_id": self.local_plan_id,
            "document_facts": self.document_facts,
            "location": self.location,
            "constraint_report": self.constraint_report,
            "material_considerations": self.material_considerations,
            "evidence": list(self.evidence),
            "compliance_check": self.compliance_check,
            "scenario_result": self.scenario_result,
            "phase_log": list(self.phase_log),
            "warnings": list(self.warnings),
            "degraded_sources": list(self.degraded_sources),
            "confidence": self.confidence,
            "status": self.status,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
        }


def compile_evidence(retrieved: List[EvidenceItem], dataset_evidence: List[EvidenceItem]) -> List[EvidenceItem]:
    """Deduplicate by (source_type, reference) keeping the highest relevance; best first."""
    best: Dict[tuple, EvidenceItem] = {}
    for item in list(retrieved) + list(dataset_evidence):
        key = (item.source_type, item.reference)
        if key not in best or item.relevance_score > best[key].relevance_score:
            best[key] = item
    return sorted(best.values(), key=lambda i: (-i.relevance_score, i.source_type, i.reference))


# ═══════════════════════════════════════════════════════════════════════════
# PIPELINE
# ═══════════════════════════════════════════════════════════════════════════
class AssessmentPipeline:
    """
    Runs assessments with collaborators injected once at construction.

    Usage:
        pipeline = build_pipeline(AssessorSettings.from_env())
        assessment = pipeline.run(AssessmentRequest(address="10 Downing Street, London"))
    """

    def __init__(
        self,
        analyzer: SpatialAnalyzer,
        retrieval: EvidenceRetrievalChain,
        compliance: PolicyComplianceEngine,
        considerations: MaterialConsiderationsAssessor,
        scenarios: ScenarioModeler,
        store: AssessmentStore,
        geocoder: Optional[Geocoder] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.analyzer = analyzer
        self.retrieval = retrieval
        self.compliance = compliance
        self.considerations = considerations
        self.scenarios = scenarios
        self.store = store
        self.geocoder = geocoder
        self.progress_callback = progress_callback
        self._cancelled = set()
        self._lock = threading.Lock()

    def cancel(self, assessment_id: str):
        """Skip the remaining phases of a run; the partial assessment is still stored."""
        with self._lock:
            self._cancelled.add(assessment_id)
        log.info(f"Cancellation requested for {assessment_id}")

    def is_cancelled(self, assessment_id: str) -> bool:
        with self._lock:
            return assessment_id in self._cancelled

    # ───────────────────────────────────────────────────────────────────────
    # Run
    # ───────────────────────────────────────────────────────────────────────
    def run(self, request: AssessmentRequest) -> Dict[str, Any]:
        """
        Run every phase for a request.

        Returns:
            The stored, sanitized assessment record
        """
        assessment = Assessment(
            id=request.assessment_id,
            site_address=request.address,
            description=request.description,
            development_type=request.development_type,
            local_plan_id=request.local_plan_id,
        )
        state: Dict[str, Any] = {"geometry": request.geometry}
        log.info(f"Starting assessment {assessment.id}")

        steps = [
            ("intake", lambda: self._intake(assessment, request)),
            ("address", lambda: self._resolve_address(assessment, request, state)),
            ("spatial_retrieval", lambda: self._spatial_and_retrieval(assessment, request, state)),
            ("considerations", lambda: self._material_considerations(assessment, state)),
            ("scoring", lambda: self._scoring(assessment, request, state)),
            ("evidence", lambda: self._compile_evidence(assessment, state)),
        ]
        percents = dict(PHASES)

        for phase, step in steps:
            if self.is_cancelled(assessment.id):
                assessment.status = "cancelled"
                assessment.warn(phase, "cancelled")
                continue
            started = datetime.now(timezone.utc)
            self._report(phase, percents[phase], f"Running {phase}")
            try:
                step()
                outcome = "ok"
            except Exception as e:
                log.exception(f"Phase {phase} failed for {assessment.id}")
                assessment.warn(phase, str(e))
                outcome = "failed"
            assessment.phase_log.append({
                "phase": phase,
                "outcome": outcome,
                "started_at": started.isoformat(),
                "duration_ms": int((datetime.now(timezone.utc) - started).total_seconds() * 1000),
            })

        if assessment.status != "cancelled":
            assessment.status = "completed"
        assessment.confidence = self._confidence(assessment, state)
        assessment.completed_at = datetime.now(timezone.utc).isoformat()

        self._report("persistence", percents["persistence"], "Sanitizing and storing")
        stored = self._persist(assessment)
        with self._lock:
            self._cancelled.discard(assessment.id)
        log.info(
            f"Assessment {assessment.id} {assessment.status}: confidence {assessment.confidence}, "
            f"{len(assessment.warnings)} warnings"
        )
        return stored

    def _report(self, phase: str, percent: int, message: str):
        if self.progress_callback is None:
            return
        try:
            self.progress_callback(phase, percent, message)
        except Exception as e:
            log.warning(f"Progress callback failed: {e}")

    # ───────────────────────────────────────────────────────────────────────
    # Phases
    # ───────────────────────────────────────────────────────────────────────
    def _intake(self, assessment: Assessment, request: AssessmentRequest):
        assessment.documents = [d.to_dict() for d in request.documents]
        assessment.document_ids = [d.id for d in request.documents]
        texts = [d.text for d in request.documents if d.text]
        if request.description:
            texts.append(request.description)
        assessment.document_facts = extract_document_facts(texts).to_dict()

    def _resolve_address(self, assessment: Assessment, request: AssessmentRequest, state: Dict[str, Any]):
        if state["geometry"] is not None:
            return
        if not request.address:
            raise PlanningAssessmentError("No geometry or address supplied")
        if self.geocoder is None:
            raise PlanningAssessmentError("No geocoder configured")

        location = self.geocoder.geocode(request.address)
        if location is None:
            raise PlanningAssessmentError(f"Could not resolve address: {request.address}")
        assessment.location = location.to_dict()
        state["geometry"] = {"type": "Point", "coordinates": [location.longitude, location.latitude]}

    def _spatial_and_retrieval(self, assessment: Assessment, request: AssessmentRequest, state: Dict[str, Any]):
        if request.local_plan_id:
            try:
                self.compliance.load_policies(request.local_plan_id)
            except PlanningAssessmentError as e:
                assessment.warn("spatial_retrieval", f"Local plan not indexed: {e}")

        context = {
            "local_plan_id": request.local_plan_id,
            "address": request.address,
            "development_type": request.development_type,
        }
        query = _retrieval_query(request)

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="assessment") as pool:
            spatial_future = pool.submit(
                self.analyzer.analyze_site, state["geometry"], request.address, request.analysis_options
            )
            retrieval_future = pool.submit(self.retrieval.retrieve, query, context)

            report: ConstraintReport = spatial_future.result()
            retrieval: RetrievalResult = retrieval_future.result()

        state["report"] = report
        state["retrieval"] = retrieval
        assessment.constraint_report = report.to_dict()
        if report.metrics.error:
            assessment.warn("spatial_retrieval", f"Site geometry unusable: {report.metrics.error}")

        assessment.degraded_sources.extend(f"dataset:{d}" for d in report.degraded_sources)
        assessment.degraded_sources.extend(f"retrieval:{d}" for d in retrieval.degraded_layers)

    def _material_considerations(self, assessment: Assessment, state: Dict[str, Any]):
        result = self.considerations.assess(state.get("report"), DocumentFacts.from_dict(assessment.document_facts))
        state["considerations"] = result
        assessment.material_considerations = result.to_dict()

    def _scoring(self, assessment: Assessment, request: AssessmentRequest, state: Dict[str, Any]):
        if request.local_plan_id:
            try:
                check = self.compliance.check_assessment(assessment.to_dict(), request.local_plan_id)
                self.store.save_compliance_check(check.to_dict())
                state["compliance"] = check
                assessment.compliance_check = check.to_dict()
            except Exception as e:
                log.exception(f"Compliance check failed for {assessment.id}")
                assessment.warn("scoring", f"Compliance check failed: {e}")

        if request.scenario_id or request.scenario_parameters:
            site_context = assessment.constraint_report
            if site_context and (site_context.get("metrics") or {}).get("error"):
                site_context = None
            scenario_id = request.scenario_id
            if scenario_id is None:
                scenario = self.scenarios.create_scenario(
                    request.local_plan_id or ADHOC_PLAN_ID,
                    {"name": f"Assessment {assessment.id}", "parameters": request.scenario_parameters},
                )
                scenario_id = scenario.id
            result = self.scenarios.run_scenario_modeling(scenario_id, site_context=site_context)
            assessment.scenario_result = {"scenario_id": scenario_id, **result.to_dict()}

    def _compile_evidence(self, assessment: Assessment, state: Dict[str, Any]):
        retrieval = state.get("retrieval")
        report = state.get("report")
        items = compile_evidence(
            retrieval.items if retrieval else [],
            report.evidence if report else [],
        )
        assessment.evidence = [i.to_dict() for i in items]

    def _persist(self, assessment: Assessment) -> Dict[str, Any]:
        """Sanitize and store. On failure the caller still gets the assessment, marked stored=False."""
        try:
            clean = sanitize_for_storage(assessment.to_dict())
        except SerializationError as e:
            log.exception(f"Sanitizing {assessment.id} failed")
            assessment.warn("persistence", str(e))
            return {**assessment.to_dict(), "stored": False}

        try:
            return self.store.save_assessment(clean)
        except Exception as e:
            log.exception(f"Storing {assessment.id} failed")
            assessment.warn("persistence", f"Assessment not stored: {e}")
            clean["warnings"] = [dict(w) for w in assessment.warnings]
            clean["stored"] = False
            return clean

    def _confidence(self, assessment: Assessment, state: Dict[str, Any]) -> float:
        """Mean of the component confidences on a 0-100 scale, less 5 per warning."""
        parts = []
        report = state.get("report")
        if report is not None:
            parts.append(report.confidence)
        if state.get("considerations") is not None:
            parts.append(state["considerations"].confidence * 100)
        if state.get("compliance") is not None:
            parts.append(state["compliance"].confidence * 100)
        if not parts:
            return 0.0
        score = sum(parts) / len(parts) - 5 * len(assessment.warnings)
        return round(max(0.0, min(100.0, score)), 1)


def _retrieval_query(request: AssessmentRequest) -> str:
    parts = [request.development_type or "", request.description]
    parts += [d.title for d in request.documents if d.title]
    return " ".join(p for p in parts if p).strip() or "planning application policy requirements"


# ═══════════════════════════════════════════════════════════════════════════
# COMPOSITION ROOT
# ═══════════════════════════════════════════════════════════════════════════
def build_pipeline(
    settings: Optional[AssessorSettings] = None,
    progress_callback: Optional[ProgressCallback] = None,
) -> AssessmentPipeline:
    """Construct every collaborator once and inject it."""
    settings = settings or AssessorSettings()

    client = PlanningDataClient(
        entity_url=settings.planning_data_url,
        dataset_index_url=settings.dataset_catalog_url,
        timeout=settings.dataset_timeout_seconds,
        limit=settings.entity_limit,
    )
    catalog = ConstraintCatalog().load(client)
    analyzer = SpatialAnalyzer(
        client,
        catalog,
        max_workers=settings.max_workers,
        analysis_timeout=settings.analysis_timeout_seconds,
    )

    generator = None
    if settings.llm_enabled:
        generator = LLMClient(settings.llm_api_url, api_key=settings.llm_api_key, model=settings.llm_model)

    library = PolicyLibrary(embedder=HashEmbedder())
    chain = EvidenceRetrievalChain(
        library,
        generator=generator,
        layer_timeout=settings.retrieval_layer_timeout_seconds,
    )
    store = AssessmentStore(settings.database_path)

    return AssessmentPipeline(
        analyzer=analyzer,
        retrieval=chain,
        compliance=PolicyComplianceEngine(chain, store),
        considerations=MaterialConsiderationsAssessor(),
        scenarios=ScenarioModeler(store),
        store=store,
        geocoder=Geocoder(cache_path=settings.geocode_cache_path),
        progress_callback=progress_callback,
    )
