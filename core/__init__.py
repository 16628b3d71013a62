"""
Core module for the Planning Assessor.
Contains the constraint query engine, evidence retrieval, compliance and
scenario scoring, and the assessment pipeline.
"""

from core.catalog import CatalogEntry, ConstraintCatalog
from core.compliance import ComplianceCheck, PolicyComplianceEngine, PolicyComplianceResult
from core.config import AssessorSettings, configure_logging
from core.considerations import MaterialConsiderationsAssessor
from core.errors import (
    AnalysisTimeoutError,
    DatasetQueryError,
    InputError,
    PlanningAssessmentError,
    RetrievalLayerUnavailable,
    SerializationError,
)
from core.geometry import SiteGeometry, SiteMetrics
from core.orchestrator import Assessment, AssessmentPipeline, AssessmentRequest, build_pipeline
from core.retrieval import EvidenceItem, EvidenceRetrievalChain
from core.sanitize import sanitize_for_storage
from core.scenario import ScenarioModeler, ScenarioResult
from core.spatial import ConstraintQueryResult, ConstraintReport, SpatialAnalyzer
from core.storage import AssessmentStore

__all__ = [
    # Constraints
    "CatalogEntry",
    "ConstraintCatalog",
    "SiteGeometry",
    "SiteMetrics",
    "SpatialAnalyzer",
    "ConstraintQueryResult",
    "ConstraintReport",
    # Evidence and scoring
    "EvidenceItem",
    "EvidenceRetrievalChain",
    "PolicyComplianceEngine",
    "PolicyComplianceResult",
    "ComplianceCheck",
    "MaterialConsiderationsAssessor",
    "ScenarioModeler",
    "ScenarioResult",
    # Pipeline
    "Assessment",
    "AssessmentPipeline",
    "AssessmentRequest",
    "AssessmentStore",
    "build_pipeline",
    "sanitize_for_storage",
    "AssessorSettings",
    "configure_logging",
    # Errors
    "PlanningAssessmentError",
    "InputError",
    "DatasetQueryError",
    "RetrievalLayerUnavailable",
    "AnalysisTimeoutError",
    "SerializationError",
]
