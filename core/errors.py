"""
Error taxonomy for the planning assessment engine.

Every error here is recoverable at some layer: datasets degrade to a status
field, retrieval layers fall through to the next layer, and the orchestrator
turns anything else into a phase warning.
"""

from typing import List, Optional


class PlanningAssessmentError(Exception):
    """Base class for all engine errors."""


class InputError(PlanningAssessmentError):
    """Malformed geometry, parameters or an unknown identifier."""


class DatasetQueryError(PlanningAssessmentError):
    """Network, HTTP or decoding failure for one constraint dataset."""

    def __init__(self, dataset_id: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{dataset_id}: {message}")
        self.dataset_id = dataset_id
        self.status_code = status_code
        self.detail = message

    @property
    def is_client_error(self) -> bool:
        return self.status_code is not None and 400 <= self.status_code < 500


class RetrievalLayerUnavailable(PlanningAssessmentError):
    """A retrieval layer cannot run (missing capability or empty index)."""

    def __init__(self, layer: str, reason: str = "unavailable"):
        super().__init__(f"{layer} retrieval unavailable: {reason}")
        self.layer = layer
        self.reason = reason


class AnalysisTimeoutError(PlanningAssessmentError, TimeoutError):
    """Overall analysis deadline exceeded while dataset queries were still pending."""

    def __init__(self, timeout: float, pending: Optional[List[str]] = None):
        self.timeout = timeout
        self.pending = list(pending or [])
        super().__init__(f"Analysis deadline of {timeout}s reached with {len(self.pending)} queries pending")


class SerializationError(PlanningAssessmentError):
    """A value that cannot survive a JSON round-trip reached the storage boundary."""
