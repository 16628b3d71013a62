"""
Constraint Catalog - Registry of constraint datasets and analysis profiles.

Maps constraint categories (heritage, flood, ecology, ...) to named datasets
on the planning data platform. Entries are immutable and shared read-only
between concurrent analyses; a refresh swaps in a new tuple of entries.
"""

import logging
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple, Any

log = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# ENTRIES
# ═══════════════════════════════════════════════════════════════════════════
@dataclass(frozen=True)
class CatalogEntry:
    """
    One constraint dataset (or family of candidate dataset names).

    Attributes:
        category: Constraint category, e.g. "heritage" or "flood"
        dataset_id: Canonical dataset identifier
        entity_count_hint: Approximate number of entities nationally
        profiles: Analysis profiles that include this dataset
        severity: Planning severity of a hit ("critical" .. "low")
        policy_refs: National policy paragraphs engaged by a hit
        candidate_names: Ordered dataset names to try; first non-empty wins
        search_radius_m: Query a buffer of this size instead of the site itself
    """
    category: str
    dataset_id: str
    entity_count_hint: int
    profiles: Tuple[str, ...]
    severity: str = "low"
    policy_refs: Tuple[str, ...] = ()
    candidate_names: Tuple[str, ...] = ()
    search_radius_m: float = 0.0

    @property
    def query_names(self) -> Tuple[str, ...]:
        return self.candidate_names or (self.dataset_id,)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "dataset_id": self.dataset_id,
            "entity_count_hint": self.entity_count_hint,
            "profiles": list(self.profiles),
            "severity": self.severity,
            "policy_refs": list(self.policy_refs),
        }


# Declaration order here fixes the order of constraints in every report.
BUILTIN_ENTRIES: Tuple[CatalogEntry, ...] = (
    CatalogEntry("heritage", "conservation-area", 9800,
                 ("basic", "comprehensive", "heritage-focused"),
                 severity="high", policy_refs=("NPPF 199", "NPPF 200", "NPPF 202")),
    CatalogEntry("heritage", "listed-building", 379000,
                 ("basic", "comprehensive", "heritage-focused"),
                 severity="high", policy_refs=("NPPF 199", "NPPF 200", "NPPF 201")),
    CatalogEntry("regulatory", "article-4-direction", 4200,
                 ("comprehensive", "heritage-focused"), severity="medium"),
    CatalogEntry("regulatory", "tree-preservation-order", 57000,
                 ("basic", "comprehensive", "environmental"), severity="low"),
    CatalogEntry("heritage", "scheduled-monument", 20000,
                 ("comprehensive", "heritage-focused"), severity="critical"),
    CatalogEntry("heritage", "world-heritage-site", 20,
                 ("comprehensive", "heritage-focused"), severity="critical"),
    CatalogEntry("flood", "flood-risk-zone", 520000,
                 ("basic", "comprehensive", "environmental"),
                 severity="high", policy_refs=("NPPF 159", "NPPF 160", "NPPF 161")),
    CatalogEntry("ecology", "ancient-woodland", 44000,
                 ("comprehensive", "environmental"), severity="medium"),
    CatalogEntry("ecology", "special-protection-area", 280,
                 ("comprehensive", "environmental"),
                 severity="medium", policy_refs=("NPPF 180", "NPPF 181")),
    CatalogEntry("ecology", "special-area-of-conservation", 260,
                 ("comprehensive", "environmental"), severity="medium"),
    CatalogEntry("ecology", "site-of-special-scientific-interest", 4100,
                 ("comprehensive", "environmental"),
                 severity="medium", policy_refs=("NPPF 180", "NPPF 181")),
    CatalogEntry("landscape", "green-belt", 190,
                 ("comprehensive", "environmental"),
                 severity="high", policy_refs=("NPPF 147", "NPPF 148", "NPPF 149")),
    CatalogEntry("landscape", "national-park", 10,
                 ("comprehensive", "environmental"), severity="medium"),
    CatalogEntry("landscape", "area-of-outstanding-natural-beauty", 34,
                 ("comprehensive", "environmental"), severity="medium"),
    # Dataset naming for transport nodes varies between platform releases
    CatalogEntry("transport", "transport-access-node", 430000,
                 ("comprehensive", "transport"), severity="low",
                 candidate_names=("transport-access-node", "bus-stop"),
                 search_radius_m=960.0),
)

# Used whenever selection happens before load() has completed
DEFAULT_DATASETS = ("conservation-area", "listed-building", "flood-risk-zone", "tree-preservation-order")

PROFILE_DESCRIPTIONS = {
    "basic": "Core statutory constraints for a quick planning check",
    "comprehensive": "All heritage, environmental, landscape and transport datasets",
    "heritage-focused": "Designated heritage assets and their settings",
    "environmental": "Flood, ecology and landscape designations",
    "transport": "Public transport accessibility around the site",
}

TRANSPORT_DEVELOPMENT_TYPES = ("residential", "mixed-use", "mixed_use")


# ═══════════════════════════════════════════════════════════════════════════
# CATALOG
# ═══════════════════════════════════════════════════════════════════════════
class ConstraintCatalog:
    """
    Registry of constraint datasets.

    Usage:
        catalog = ConstraintCatalog()
        catalog.select_datasets("basic")          # safe before load()
        catalog.load(client)                      # refresh entity-count hints
        catalog.select_datasets("comprehensive", "residential")
    """

    def __init__(self, entries: Tuple[CatalogEntry, ...] = BUILTIN_ENTRIES):
        self._entries: Tuple[CatalogEntry, ...] = tuple(entries)
        self.loaded = False

    @property
    def entries(self) -> Tuple[CatalogEntry, ...]:
        return self._entries

    def get(self, dataset_id: str) -> Optional[CatalogEntry]:
        for entry in self._entries:
            if entry.dataset_id == dataset_id or dataset_id in entry.candidate_names:
                return entry
        return None

    def load(self, client=None) -> "ConstraintCatalog":
        """
        Mark the catalog loaded, refreshing entity-count hints if a client is given.

        A failed refresh keeps the built-in hints.
        """
        if client is not None:
            try:
                counts = client.fetch_dataset_counts()
            except Exception as e:
                log.warning(f"Dataset index refresh failed, keeping built-in hints: {e}")
                counts = {}
            if counts:
                self._entries = tuple(
                    replace(entry, entity_count_hint=counts.get(entry.dataset_id, entry.entity_count_hint))
                    for entry in self._entries
                )
                log.info(f"Refreshed entity counts for {len(counts)} datasets")
        self.loaded = True
        return self

    def select_datasets(
        self,
        analysis_type: str = "basic",
        development_type: Optional[str] = None
    ) -> List[CatalogEntry]:
        """
        Pick the datasets for an analysis profile, in declaration order.

        Before load() only the built-in default set is returned.
        """
        if not self.loaded:
            return [e for e in self._entries if e.dataset_id in DEFAULT_DATASETS]

        known = isinstance(analysis_type, str) and analysis_type in PROFILE_DESCRIPTIONS
        profile = analysis_type if known else "basic"
        if profile != analysis_type:
            log.warning(f"Unknown analysis type '{analysis_type}', using 'basic'")

        wants_transport = isinstance(development_type, str) and development_type.lower() in TRANSPORT_DEVELOPMENT_TYPES

        return [
            e for e in self._entries
            if profile in e.profiles or (wants_transport and e.category == "transport")
        ]

    def categories(self) -> Dict[str, List[CatalogEntry]]:
        grouped: Dict[str, List[CatalogEntry]] = {}
        for entry in self._entries:
            grouped.setdefault(entry.category, []).append(entry)
        return grouped

    def describe(self) -> Dict[str, Any]:
        """Summary of datasets and recommended profile combinations."""
        combinations = {}
        for profile, description in PROFILE_DESCRIPTIONS.items():
            entries = [e for e in self._entries if profile in e.profiles]
            combinations[profile] = {
                "description": description,
                "datasets": [e.dataset_id for e in entries],
                "estimated_query_time": _estimate_query_time(entries),
            }

        return {
            "total_datasets": len(self._entries),
            "loaded": self.loaded,
            "datasets_by_category": {
                category: [e.to_dict() for e in entries]
                for category, entries in self.categories().items()
            },
            "recommended_combinations": combinations,
        }


def _estimate_query_time(entries: List[CatalogEntry]) -> str:
    # Large national datasets are slower to filter spatially
    seconds = sum(1.0 + min(e.entity_count_hint, 500000) / 250000 for e in entries)
    if seconds < 5:
        return "fast (< 5s)"
    if seconds < 15:
        return "moderate (5-15s)"
    return "slow (> 15s)"
