import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from geopy.exc import (
    GeocoderAuthenticationFailure,
    GeocoderInsufficientPrivileges,
    GeocoderQuotaExceeded,
    GeocoderServiceError,
    GeocoderTimedOut,
)
from geopy.geocoders import Nominatim, OpenCage

from sector_agent.config.settings import Settings, settings as default_settings
from sector_agent.models.schemas import Coordinates
from sector_agent.services.errors import (
    ProviderAuthError,
    ProviderRateLimited,
    ProviderTimeout,
    ProviderUnavailable,
)

logger = logging.getLogger(__name__)


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def coordinates_from_values(lat: Any, lng: Any) -> Optional[Coordinates]:
    """Builds Coordinates only when both values are numeric and in range."""
    lat_f, lng_f = _as_float(lat), _as_float(lng)
    if lat_f is None or lng_f is None:
        return None
    if not (-90 <= lat_f <= 90 and -180 <= lng_f <= 180):
        return None
    return Coordinates(latitude=lat_f, longitude=lng_f)


class GeocodingProvider(ABC):
    """
    External geocoder. `geocode` returns the first candidate's coordinates,
    None when the provider found nothing usable, and raises a ProviderError
    subclass when the call itself failed.
    """
    name = "provider"

    @abstractmethod
    async def geocode(self, address: str) -> Optional[Coordinates]:
        ...

    async def aclose(self) -> None:
        return None


class _GeopyProvider(GeocodingProvider):
    """
    Wraps a synchronous geopy geocoder: the lookup runs in a worker thread
    under an overall timeout and geopy's exceptions map to ProviderError
    subclasses.
    """
    label = "Geocoder"

    def __init__(self, *, language: str, country: str, timeout_seconds: float):
        self.language = language
        self.country = country
        self.timeout_seconds = timeout_seconds

    @abstractmethod
    def _geocode_sync(self, address: str):
        ...

    async def geocode(self, address: str) -> Optional[Coordinates]:
        try:
            location = await asyncio.wait_for(
                asyncio.to_thread(self._geocode_sync, address),
                timeout=self.timeout_seconds,
            )
        except (asyncio.TimeoutError, GeocoderTimedOut) as e:
            raise ProviderTimeout(f"{self.label} timed out for '{address}'") from e
        except (GeocoderAuthenticationFailure, GeocoderInsufficientPrivileges) as e:
            raise ProviderAuthError(f"{self.label} refused the request: {e}") from e
        except GeocoderQuotaExceeded as e:
            # Also covers GeocoderRateLimited.
            raise ProviderRateLimited(f"{self.label} quota or rate limit reached: {e}") from e
        except GeocoderServiceError as e:
            raise ProviderUnavailable(f"{self.label} service error for '{address}': {e}") from e

        if location is None:
            return None
        return coordinates_from_values(getattr(location, "latitude", None), getattr(location, "longitude", None))


class OpenCageProvider(_GeopyProvider):
    name = "opencage"
    label = "OpenCage"

    def __init__(self, api_key: Optional[str], *, language: str, country: str, timeout_seconds: float,
                 geolocator: Optional[OpenCage] = None):
        super().__init__(language=language, country=country, timeout_seconds=timeout_seconds)
        self.api_key = api_key
        if geolocator is None and api_key:
            geolocator = OpenCage(api_key, timeout=timeout_seconds)
        self.geolocator = geolocator

    def _geocode_sync(self, address: str):
        return self.geolocator.geocode(
            address,
            exactly_one=True,
            language=self.language,
            country=self.country,
        )

    async def geocode(self, address: str) -> Optional[Coordinates]:
        if not self.api_key:
            raise ProviderAuthError("OPENCAGE_API_KEY is not set.")
        return await super().geocode(address)


class NominatimProvider(_GeopyProvider):
    """geopy's Nominatim client; OpenStreetMap asks for a unique User-Agent."""
    name = "nominatim"
    label = "Nominatim"

    def __init__(self, user_agent: str, *, language: str, country: str, timeout_seconds: float,
                 geolocator: Optional[Nominatim] = None):
        super().__init__(language=language, country=country, timeout_seconds=timeout_seconds)
        if not user_agent or user_agent == "your-app-name-here":
            logger.warning("A unique User-Agent for geocoding is not configured. Using a default.")
            user_agent = "sector-agent/1.0"
        self.geolocator = geolocator or Nominatim(user_agent=user_agent, timeout=timeout_seconds)

    def _geocode_sync(self, address: str):
        return self.geolocator.geocode(
            address,
            exactly_one=True,
            language=self.language,
            country_codes=self.country,
        )


def build_provider(config: Settings = default_settings) -> GeocodingProvider:
    """Creates the provider selected by GEOCODING_PROVIDER."""
    provider = config.geocoding_provider.lower()
    if provider == "opencage":
        if not config.opencage_api_key:
            logger.error("OPENCAGE_API_KEY is not set; every OpenCage lookup will fail with an auth error.")
        return OpenCageProvider(
            config.opencage_api_key,
            language=config.geocoding_language,
            country=config.geocoding_country,
            timeout_seconds=config.geocoding_timeout_seconds,
        )
    if provider == "nominatim":
        return NominatimProvider(
            config.geocoding_user_agent,
            language=config.geocoding_language,
            country=config.geocoding_country,
            timeout_seconds=config.geocoding_timeout_seconds,
        )
    raise ValueError(f"Geocoding provider '{config.geocoding_provider}' not supported.")
