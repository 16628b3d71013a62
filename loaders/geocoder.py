"""
Geocoder - Resolve site addresses to coordinates using Nominatim.

Features:
- UK postcode extraction, used as a fallback query when the full address misses
- Rate limiting (1 request/second per Nominatim policy)
- SQLite cache of responses
- Retry with exponential backoff
"""

import re
import time
import json
import sqlite3
import hashlib
import threading
import logging
from dataclasses import dataclass
from typing import Optional, Tuple, Dict, Any

import requests
from tenacity import retry, stop_after_attempt, wait_exponential

log = logging.getLogger(__name__)

_MIN_REQUEST_INTERVAL = 1.1

UK_POSTCODE_RE = re.compile(
    r"\b([A-Z]{1,2}\d[A-Z\d]?)\s*(\d[A-Z]{2})\b",
    re.IGNORECASE,
)


def extract_postcode(text: str) -> Optional[str]:
    """Return the first UK postcode in `text`, normalised to 'OUTWARD INWARD'."""
    if not text:
        return None
    match = UK_POSTCODE_RE.search(text)
    if not match:
        return None
    return f"{match.group(1).upper()} {match.group(2).upper()}"


@dataclass
class GeocodedLocation:
    """Result from geocoding a site address."""
    address_query: str
    latitude: float
    longitude: float
    display_name: str
    place_type: str
    bounding_box: Optional[Tuple[float, float, float, float]] = None  # south, north, west, east
    postcode: Optional[str] = None
    matched_on: str = "address"  # "address" or "postcode"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address_query": self.address_query,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "display_name": self.display_name,
            "place_type": self.place_type,
            "bounding_box": list(self.bounding_box) if self.bounding_box else None,
            "postcode": self.postcode,
            "matched_on": self.matched_on,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GeocodedLocation":
        data = dict(data)
        if data.get("bounding_box"):
            data["bounding_box"] = tuple(data["bounding_box"])
        return cls(**data)


class GeocodingCache:
    """SQLite cache keyed by a hash of the normalised query."""

    def __init__(self, db_path: str = "geocode_cache.db"):
        self.db_path = db_path
        self._init_db()

    def _init_db(self):
        conn = sqlite3.connect(self.db_path)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS geocode_cache (
                query_hash TEXT PRIMARY KEY,
                query_text TEXT,
                result_json TEXT,
                created_at REAL
            )
        """)
        conn.commit()
        conn.close()

    def _hash_query(self, query: str) -> str:
        normalised = " ".join(query.lower().split())
        return hashlib.sha256(normalised.encode()).hexdigest()

    def get(self, query: str) -> Optional[Dict]:
        conn = sqlite3.connect(self.db_path)
        row = conn.execute(
            "SELECT result_json FROM geocode_cache WHERE query_hash = ?",
            (self._hash_query(query),)
        ).fetchone()
        conn.close()
        return json.loads(row[0]) if row else None

    def set(self, query: str, result: Dict):
        conn = sqlite3.connect(self.db_path)
        conn.execute(
            """INSERT OR REPLACE INTO geocode_cache
               (query_hash, query_text, result_json, created_at)
               VALUES (?, ?, ?, ?)""",
            (self._hash_query(query), query, json.dumps(result), time.time())
        )
        conn.commit()
        conn.close()


class Geocoder:
    """
    Address resolution against OpenStreetMap Nominatim, restricted to the UK.

    Respects rate limits: max 1 request per second per instance.
    """

    SEARCH_URL = "https://nominatim.openstreetmap.org/search"
    REVERSE_URL = "https://nominatim.openstreetmap.org/reverse"
    USER_AGENT = "PlanningAssessor/1.0 (site address resolution)"

    def __init__(self, cache_path: str = "geocode_cache.db", country_codes: str = "gb", timeout: float = 10.0):
        self.cache = GeocodingCache(cache_path)
        self.country_codes = country_codes
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": self.USER_AGENT})
        self._lock = threading.Lock()
        self._last_request_time = 0.0

    def _rate_limit(self):
        with self._lock:
            elapsed = time.time() - self._last_request_time
            if elapsed < _MIN_REQUEST_INTERVAL:
                time.sleep(_MIN_REQUEST_INTERVAL - elapsed)
            self._last_request_time = time.time()

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=2, min=2, max=10))
    def _make_request(self, url: str, params: Dict) -> Any:
        self._rate_limit()
        response = self.session.get(url, params=params, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def _search(self, query: str) -> Optional[Dict]:
        params = {
            "q": query,
            "format": "jsonv2",
            "limit": 1,
            "countrycodes": self.country_codes,
        }
        try:
            results = self._make_request(self.SEARCH_URL, params)
        except Exception as e:
            log.error(f"Geocoding failed for '{query}': {e}")
            return None
        return results[0] if results else None

    def geocode(self, address: str) -> Optional[GeocodedLocation]:
        """
        Resolve an address to coordinates.

        Tries the full address first, then the postcode alone.

        Returns:
            GeocodedLocation, or None if nothing matched
        """
        if not address or not address.strip():
            return None

        cached = self.cache.get(address)
        if cached:
            log.debug(f"Cache hit for: {address}")
            return GeocodedLocation.from_dict(cached)

        postcode = extract_postcode(address)
        matched_on = "address"
        result = self._search(address)
        if result is None and postcode:
            log.info(f"No match for full address, retrying with postcode {postcode}")
            result = self._search(postcode)
            matched_on = "postcode"

        if result is None:
            log.warning(f"No results for: {address}")
            return None

        bbox = None
        if "boundingbox" in result:
            bb = result["boundingbox"]
            bbox = (float(bb[0]), float(bb[1]), float(bb[2]), float(bb[3]))

        location = GeocodedLocation(
            address_query=address,
            latitude=float(result["lat"]),
            longitude=float(result["lon"]),
            display_name=result.get("display_name", ""),
            place_type=result.get("type", "unknown"),
            bounding_box=bbox,
            postcode=postcode,
            matched_on=matched_on,
        )

        self.cache.set(address, location.to_dict())
        log.info(f"Geocoded: {address} -> ({location.latitude}, {location.longitude})")
        return location

    def reverse_geocode(self, lat: float, lon: float) -> Optional[str]:
        """Coordinates to a display address, or None."""
        cache_key = f"reverse:{lat:.6f},{lon:.6f}"
        cached = self.cache.get(cache_key)
        if cached:
            return cached.get("display_name")

        params = {"lat": lat, "lon": lon, "format": "jsonv2"}
        try:
            result = self._make_request(self.REVERSE_URL, params)
        except Exception as e:
            log.error(f"Reverse geocoding failed: {e}")
            return None

        display_name = result.get("display_name", "")
        self.cache.set(cache_key, {"display_name": display_name})
        return display_name
