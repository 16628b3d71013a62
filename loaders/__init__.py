"""
Data loaders for the Planning Assessor.

Includes:
- Constraint datasets (planning.data.gov.uk)
- Geocoding (Nominatim, UK only)
"""

from loaders.planning_data import PlanningDataClient
from loaders.geocoder import Geocoder, GeocodedLocation, extract_postcode

__all__ = [
    "PlanningDataClient",
    "Geocoder",
    "GeocodedLocation",
    "extract_postcode",
]
