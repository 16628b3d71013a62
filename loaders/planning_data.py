"""
Planning Data Loader - Fetch constraint entities from the planning data platform.

Uses the planning.data.gov.uk entity search API:
    GET <base>?dataset=<id>&geometry=<wkt>&geometry_relation=intersects&limit=<n>
"""

import logging
from typing import Any, Dict, List, Optional

import requests
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from core.errors import DatasetQueryError

log = logging.getLogger(__name__)


def _is_transient(error: BaseException) -> bool:
    """Network failures and 5xx responses are worth another attempt; 4xx are not."""
    if isinstance(error, DatasetQueryError):
        return error.status_code is None or error.status_code >= 500
    return False


class PlanningDataClient:
    """
    Client for constraint dataset queries.

    API: planning.data.gov.uk entity.json / dataset.json
    Coverage: England
    """

    ENTITY_URL = "https://www.planning.data.gov.uk/entity.json"
    DATASET_INDEX_URL = "https://www.planning.data.gov.uk/dataset.json"
    USER_AGENT = "PlanningAssessor/1.0"

    def __init__(
        self,
        entity_url: Optional[str] = None,
        dataset_index_url: Optional[str] = None,
        timeout: float = 15.0,
        limit: int = 100,
    ):
        self.entity_url = entity_url or self.ENTITY_URL
        self.dataset_index_url = dataset_index_url or self.DATASET_INDEX_URL
        self.timeout = timeout
        self.limit = limit
        self.session = requests.Session()
        self.session.headers.update({
            "User-Agent": self.USER_AGENT,
            "Accept": "application/json",
        })

    @retry(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    def _get_json(self, url: str, params: Dict[str, Any], dataset_id: str) -> Any:
        """Make a request with retry; every failure surfaces as DatasetQueryError."""
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise DatasetQueryError(dataset_id, f"request failed: {e}")

        if response.status_code >= 400:
            raise DatasetQueryError(
                dataset_id, f"HTTP {response.status_code}", status_code=response.status_code
            )

        try:
            return response.json()
        except ValueError:
            raise DatasetQueryError(dataset_id, "response was not valid JSON")

    def query_dataset(self, dataset_id: str, geometry_wkt: str, limit: Optional[int] = None) -> List[Dict]:
        """
        Get entities of one dataset that intersect a geometry.

        Args:
            dataset_id: Dataset name, e.g. "flood-risk-zone"
            geometry_wkt: Query geometry as WKT (WGS84)
            limit: Maximum entities to return

        Returns:
            List of entity dicts (possibly empty)

        Raises:
            DatasetQueryError on network, HTTP or decoding failure
        """
        params = {
            "dataset": dataset_id,
            "geometry": geometry_wkt,
            "geometry_relation": "intersects",
            "limit": limit or self.limit,
        }

        data = self._get_json(self.entity_url, params, dataset_id)

        if isinstance(data, list):
            entities = data
        elif isinstance(data, dict) and isinstance(data.get("entities"), list):
            entities = data["entities"]
        else:
            raise DatasetQueryError(dataset_id, "unexpected response shape")

        log.debug(f"{dataset_id}: {len(entities)} entities")
        return entities

    def fetch_dataset_counts(self) -> Dict[str, int]:
        """Entity counts per dataset from the dataset index."""
        data = self._get_json(self.dataset_index_url, {}, "dataset-index")
        records = data.get("datasets", []) if isinstance(data, dict) else data
        counts = {}
        for record in records or []:
            if not isinstance(record, dict):
                continue
            name = record.get("dataset")
            count = record.get("entity-count", record.get("entity_count"))
            if name and isinstance(count, (int, float)):
                counts[name] = int(count)
        return counts
