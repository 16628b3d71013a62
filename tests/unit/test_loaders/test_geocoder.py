import pytest
from unittest.mock import MagicMock, patch
from loaders.geocoder import Geocoder, extract_postcode

DOWNING_STREET = {
    "lat": "51.5034",
    "lon": "-0.1276",
    "display_name": "10 Downing Street, Westminster, London, SW1A 2AA",
    "type": "house",
    "boundingbox": ["51.5033", "51.5035", "-0.1277", "-0.1275"],
}


@pytest.fixture
def mock_loader(tmp_path):
    cache_path = str(tmp_path / "test_geo.db")
    with patch('requests.Session') as mock_session:
        loader = Geocoder(cache_path=cache_path)
        loader.session = mock_session.return_value
        loader._rate_limit = lambda: None
        yield loader


def _response(payload):
    response = MagicMock()
    response.json.return_value = payload
    return response


def test_geocode_success(mock_loader):
    """Verify geocoding success."""
    mock_loader.session.get.return_value = _response([DOWNING_STREET])

    result = mock_loader.geocode("10 Downing Street, London SW1A 2AA")
    assert result.latitude == 51.5034
    assert result.longitude == -0.1276
    assert result.postcode == "SW1A 2AA"
    assert result.matched_on == "address"
    assert result.bounding_box == (51.5033, 51.5035, -0.1277, -0.1275)
    assert mock_loader.session.get.call_args.kwargs["params"]["countrycodes"] == "gb"


def test_geocode_cached(mock_loader):
    """Second lookup is served from the cache."""
    mock_loader.session.get.return_value = _response([DOWNING_STREET])
    mock_loader.geocode("10 Downing Street, London SW1A 2AA")
    again = mock_loader.geocode("10  downing street, london sw1a 2aa")

    assert again.display_name == DOWNING_STREET["display_name"]
    assert mock_loader.session.get.call_count == 1


def test_postcode_fallback(mock_loader):
    """A miss on the full address retries with the postcode."""
    mock_loader.session.get.side_effect = [_response([]), _response([DOWNING_STREET])]

    result = mock_loader.geocode("Flat 2, Nowhere Lane, SW1A 2AA")
    assert result.matched_on == "postcode"
    assert mock_loader.session.get.call_args.kwargs["params"]["q"] == "SW1A 2AA"


def test_no_match(mock_loader):
    mock_loader.session.get.return_value = _response([])
    assert mock_loader.geocode("Unknown place") is None
    assert mock_loader.geocode("   ") is None


def test_reverse_geocode_success(mock_loader):
    """Verify reverse geocoding success."""
    mock_loader.session.get.return_value = _response({"display_name": "10 Downing Street"})

    name = mock_loader.reverse_geocode(51.5034, -0.1276)
    assert name == "10 Downing Street"


@pytest.mark.parametrize("text,expected", [
    ("10 Downing Street, London SW1A 2AA", "SW1A 2AA"),
    ("Manchester m1 1ae", "M1 1AE"),
    ("EC1A1BB", "EC1A 1BB"),
    ("No postcode here", None),
    ("", None),
])
def test_extract_postcode(text, expected):
    assert extract_postcode(text) == expected
