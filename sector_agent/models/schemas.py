from datetime import datetime
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional, Dict, Any, Tuple

# Sentinel zone names returned by the zone index
UNASSIGNED_ZONE = "unassigned"
PENDING_ZONE = "pending"


class ErrorKind(str, Enum):
    CACHE_UNAVAILABLE = "cache_unavailable"
    PROVIDER_TIMEOUT = "provider_timeout"
    PROVIDER_AUTH_ERROR = "provider_auth_error"
    PROVIDER_RATE_LIMITED = "provider_rate_limited"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    PROVIDER_NO_RESULT = "provider_no_result"
    INVALID_ADDRESS = "invalid_address"
    ZONE_DATA_ERROR = "zone_data_error"
    WRITE_BACK_FAILURE = "write_back_failure"


# Only these kinds are surfaced to callers as batch-level warnings.
BATCH_WARNING_KINDS = frozenset({
    ErrorKind.CACHE_UNAVAILABLE,
    ErrorKind.PROVIDER_AUTH_ERROR,
    ErrorKind.PROVIDER_RATE_LIMITED,
})


class LocationState(str, Enum):
    LOCATED = "located"
    NOT_LOCATED = "not_located"
    NO_ADDRESS = "no_address"


# --- Geocoding ---

class Coordinates(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float
    longitude: float


class CacheEntry(BaseModel):
    """A stored resolution outcome; coordinates is None for a known-absent address."""
    model_config = ConfigDict(frozen=True)

    address: str
    coordinates: Optional[Coordinates] = None
    resolved_at: datetime

    @property
    def found(self) -> bool:
        return self.coordinates is not None


class ResolveReport(BaseModel):
    results: Dict[str, Optional[Coordinates]] = Field(default_factory=dict)
    warnings: List[ErrorKind] = Field(default_factory=list)
    provider_calls: int = 0
    cache_hits: int = 0


# --- Zones ---

class ZoneDefinition(BaseModel):
    name: str = Field(..., description="Display name of the sector, e.g. 'Paris Centre'.")
    boundary: List[Tuple[float, float]] = Field(default=[], description="Ordered (latitude, longitude) vertices.")


# --- Tickets and shipments ---

class TicketRecord(BaseModel):
    """Read-only view of a document-store record; `data` keeps every raw field."""
    model_config = ConfigDict(frozen=True)

    id: str
    collection: str
    status_text: str = ""
    free_text_request: str = ""
    address: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    def with_status(self, status: str) -> "TicketRecord":
        return self.model_copy(update={"status_text": status})


class ResolvedTicket(BaseModel):
    record: TicketRecord
    coordinates: Optional[Coordinates] = None
    zone_name: str = PENDING_ZONE
    location_state: LocationState = LocationState.NO_ADDRESS


class PipelineSnapshot(BaseModel):
    collection: str
    records: List[ResolvedTicket] = Field(default_factory=list)
    warnings: List[ErrorKind] = Field(default_factory=list)
    produced_at: datetime


# --- API payloads ---

class GeocodeRequest(BaseModel):
    addresses: List[str]


class ClassifyRequest(BaseModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class ClassifyResponse(BaseModel):
    zone_name: str


class RecordCreateRequest(BaseModel):
    data: Dict[str, Any]


class CollectionStats(BaseModel):
    collection: str
    status_counts: Dict[str, int]
    zone_counts: Dict[str, int]
