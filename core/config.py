"""
Engine Settings and Logging Setup

All tunables for the assessment engine live in one dataclass. Values can be
overridden from the environment with PLANNING_* variables.
"""

import os
import logging
from dataclasses import dataclass, asdict, fields
from typing import Optional, Dict, Any

log = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s │ %(name)-20s │ %(levelname)-8s │ %(message)s'
LOG_DATEFMT = '%H:%M:%S'


# ═══════════════════════════════════════════════════════════════════════════
# SETTINGS
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class AssessorSettings:
    """
    Every configurable value for the assessment engine.

    Defaults are safe for offline development: no LLM endpoint is set, so
    the agentic retrieval layer reports itself unavailable.
    """

    # Constraint data
    planning_data_url: str = "https://www.planning.data.gov.uk/entity.json"
    """Entity search endpoint queried once per dataset."""

    dataset_catalog_url: str = "https://www.planning.data.gov.uk/dataset.json"
    """Dataset index used to refresh catalog entity-count hints."""

    entity_limit: int = 100
    """Maximum entities requested per dataset query."""

    # Concurrency and deadlines
    max_workers: int = 4
    """Size of the dataset query pool. Hard ceiling on in-flight requests."""

    dataset_timeout_seconds: float = 15.0
    """Per-request timeout for a single dataset query."""

    analysis_timeout_seconds: float = 60.0
    """Overall deadline for one analyze_site call."""

    retrieval_layer_timeout_seconds: float = 10.0
    """Deadline for each evidence retrieval layer."""

    # Persistence
    database_path: str = "assessments.db"
    """SQLite file holding assessments, plans, compliance checks and scenarios."""

    geocode_cache_path: str = "geocode_cache.db"
    """SQLite file caching geocoder responses."""

    # Optional text generation for agentic retrieval
    llm_api_url: Optional[str] = None
    """OpenAI-compatible chat completions URL. Unset disables agentic retrieval."""

    llm_api_key: Optional[str] = None
    """Bearer token for the LLM endpoint."""

    llm_model: str = "gpt-4o-mini"
    """Model name sent to the LLM endpoint."""

    log_level: str = "INFO"
    """Root log level."""

    @property
    def llm_enabled(self) -> bool:
        return bool(self.llm_api_url)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("llm_api_key", None)
        return data

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "AssessorSettings":
        """Build settings from defaults overlaid with PLANNING_* variables."""
        env = os.environ if environ is None else environ
        settings = cls()

        for field_name, env_name in ENV_OVERRIDES.items():
            raw = env.get(env_name)
            if raw is None or raw == "":
                continue
            current = getattr(settings, field_name)
            target_type = _FIELD_TYPES[field_name]
            try:
                if target_type is int:
                    value = int(raw)
                elif target_type is float:
                    value = float(raw)
                else:
                    value = raw
            except ValueError:
                log.warning(f"Ignoring {env_name}={raw!r}, keeping {current!r}")
                continue
            setattr(settings, field_name, value)

        return settings


ENV_OVERRIDES = {
    "planning_data_url": "PLANNING_DATA_URL",
    "dataset_catalog_url": "PLANNING_DATASET_CATALOG_URL",
    "entity_limit": "PLANNING_ENTITY_LIMIT",
    "max_workers": "PLANNING_MAX_WORKERS",
    "dataset_timeout_seconds": "PLANNING_DATASET_TIMEOUT",
    "analysis_timeout_seconds": "PLANNING_ANALYSIS_TIMEOUT",
    "retrieval_layer_timeout_seconds": "PLANNING_RETRIEVAL_TIMEOUT",
    "database_path": "PLANNING_DB_PATH",
    "geocode_cache_path": "PLANNING_GEOCODE_CACHE",
    "llm_api_url": "PLANNING_LLM_URL",
    "llm_api_key": "PLANNING_LLM_API_KEY",
    "llm_model": "PLANNING_LLM_MODEL",
    "log_level": "PLANNING_LOG_LEVEL",
}

# Optional[str] fields are plain strings for parsing purposes
_FIELD_TYPES = {
    f.name: (f.type if f.type in (int, float) else str)
    for f in fields(AssessorSettings)
}


# ═══════════════════════════════════════════════════════════════════════════
# LOGGING
# ═══════════════════════════════════════════════════════════════════════════
def configure_logging(level: str = "INFO"):
    """Install the console log format used by the CLI."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )
