from sector_agent.models.schemas import ErrorKind


class SectorAgentError(Exception):
    kind: ErrorKind

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind.value)


class CacheUnavailable(SectorAgentError):
    kind = ErrorKind.CACHE_UNAVAILABLE


class InvalidAddress(SectorAgentError):
    kind = ErrorKind.INVALID_ADDRESS


class ZoneDataError(SectorAgentError):
    kind = ErrorKind.ZONE_DATA_ERROR


class WriteBackFailure(SectorAgentError):
    kind = ErrorKind.WRITE_BACK_FAILURE


# --- Provider errors: the address resolves to None for this run and is not cached ---

class ProviderError(SectorAgentError):
    kind = ErrorKind.PROVIDER_UNAVAILABLE


class ProviderUnavailable(ProviderError):
    kind = ErrorKind.PROVIDER_UNAVAILABLE


class ProviderTimeout(ProviderError):
    kind = ErrorKind.PROVIDER_TIMEOUT


class ProviderAuthError(ProviderError):
    kind = ErrorKind.PROVIDER_AUTH_ERROR


class ProviderRateLimited(ProviderError):
    kind = ErrorKind.PROVIDER_RATE_LIMITED
