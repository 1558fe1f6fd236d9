import time
from types import SimpleNamespace

import pytest
from geopy.exc import (
    GeocoderAuthenticationFailure,
    GeocoderInsufficientPrivileges,
    GeocoderQuotaExceeded,
    GeocoderRateLimited,
    GeocoderServiceError,
    GeocoderTimedOut,
    GeocoderUnavailable,
)

from sector_agent.config.settings import Settings
from sector_agent.models.schemas import Coordinates
from sector_agent.services.errors import (
    ProviderAuthError,
    ProviderRateLimited,
    ProviderTimeout,
    ProviderUnavailable,
)
from sector_agent.services.geocoding_provider import (
    NominatimProvider,
    OpenCageProvider,
    build_provider,
    coordinates_from_values,
)

PARIS_LOCATION = SimpleNamespace(latitude=48.86, longitude=2.34)


class FakeGeolocator:
    def __init__(self, result=None, error=None, delay=0.0):
        self.result = result
        self.error = error
        self.delay = delay
        self.calls = []

    def geocode(self, address, **kwargs):
        self.calls.append((address, kwargs))
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        return self.result


def opencage(geolocator, api_key="test-key"):
    return OpenCageProvider(api_key, language="fr", country="fr", timeout_seconds=1.0, geolocator=geolocator)


def nominatim(geolocator, timeout_seconds=1.0):
    return NominatimProvider("sector-agent-tests", language="fr", country="fr",
                             timeout_seconds=timeout_seconds, geolocator=geolocator)


@pytest.mark.parametrize("lat, lng, expected", [
    (48.86, 2.34, Coordinates(latitude=48.86, longitude=2.34)),
    ("48.86", "2.34", Coordinates(latitude=48.86, longitude=2.34)),
    (None, 2.34, None),
    (True, 2.34, None),
    (91, 2.34, None),
    (48.86, "est", None),
])
def test_coordinates_from_values(lat, lng, expected):
    assert coordinates_from_values(lat, lng) == expected


async def test_opencage_sends_french_hints():
    geolocator = FakeGeolocator(PARIS_LOCATION)
    provider = opencage(geolocator)

    assert await provider.geocode("10 Rue de Paris") == Coordinates(latitude=48.86, longitude=2.34)
    address, kwargs = geolocator.calls[0]
    assert address == "10 Rue de Paris"
    assert kwargs == {"exactly_one": True, "language": "fr", "country": "fr"}


async def test_opencage_no_match_is_no_result():
    assert await opencage(FakeGeolocator(None)).geocode("nulle part") is None


async def test_opencage_without_key_is_an_auth_error():
    geolocator = FakeGeolocator(PARIS_LOCATION)
    with pytest.raises(ProviderAuthError):
        await opencage(geolocator, api_key=None).geocode("10 Rue de Paris")
    assert geolocator.calls == []


def test_opencage_without_key_builds_no_client():
    assert OpenCageProvider(None, language="fr", country="fr", timeout_seconds=1.0).geolocator is None


async def test_nominatim_returns_coordinates():
    geolocator = FakeGeolocator(PARIS_LOCATION)

    assert await nominatim(geolocator).geocode("10 Rue de Paris") == Coordinates(latitude=48.86, longitude=2.34)
    assert geolocator.calls[0][1]["country_codes"] == "fr"


async def test_out_of_range_location_is_no_result():
    geolocator = FakeGeolocator(SimpleNamespace(latitude=120.0, longitude=2.34))
    assert await nominatim(geolocator).geocode("10 Rue de Paris") is None


@pytest.mark.parametrize("make_provider", [opencage, nominatim], ids=["opencage", "nominatim"])
@pytest.mark.parametrize("error, expected", [
    (GeocoderTimedOut("slow"), ProviderTimeout),
    (GeocoderAuthenticationFailure("bad key"), ProviderAuthError),
    (GeocoderInsufficientPrivileges("forbidden"), ProviderAuthError),
    (GeocoderQuotaExceeded("quota"), ProviderRateLimited),
    (GeocoderRateLimited("too many requests"), ProviderRateLimited),
    (GeocoderUnavailable("down"), ProviderUnavailable),
    (GeocoderServiceError("HTTP 400"), ProviderUnavailable),
])
async def test_geopy_errors_map_to_provider_errors(make_provider, error, expected):
    with pytest.raises(expected):
        await make_provider(FakeGeolocator(error=error)).geocode("10 Rue de Paris")


async def test_slow_lookup_times_out():
    provider = nominatim(FakeGeolocator(PARIS_LOCATION, delay=0.2), timeout_seconds=0.05)
    with pytest.raises(ProviderTimeout):
        await provider.geocode("10 Rue de Paris")


async def test_build_provider_selects_backend():
    opencage_provider = build_provider(Settings(geocoding_provider="opencage", opencage_api_key="k"))
    assert isinstance(opencage_provider, OpenCageProvider)
    await opencage_provider.aclose()

    assert isinstance(build_provider(Settings(geocoding_provider="Nominatim")), NominatimProvider)
    with pytest.raises(ValueError):
        build_provider(Settings(geocoding_provider="google"))
