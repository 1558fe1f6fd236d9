import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from sector_agent.models.schemas import BATCH_WARNING_KINDS, Coordinates, ErrorKind, ResolveReport
from sector_agent.services.background import BackgroundTasks
from sector_agent.services.errors import CacheUnavailable, InvalidAddress, ProviderError
from sector_agent.services.geocode_cache import GeocodeCache
from sector_agent.services.geocoding_provider import GeocodingProvider

logger = logging.getLogger(__name__)


@dataclass
class _Outcome:
    address: str
    coordinates: Optional[Coordinates] = None
    # False when a provider error left the address unresolved for this run only
    terminal: bool = True
    cache_hit: bool = False
    provider_called: bool = False
    errors: List[ErrorKind] = field(default_factory=list)


def normalize_address(raw: Any) -> str:
    """Returns the trimmed cache key, or raises InvalidAddress for blank or non-text input."""
    if not isinstance(raw, str):
        raise InvalidAddress(f"Address must be text, got {type(raw).__name__}.")
    key = raw.strip()
    if not key:
        raise InvalidAddress("Address is blank.")
    return key


def clean_addresses(addresses: Iterable) -> List[str]:
    """Trims, drops blank or non-text entries, and dedupes while keeping first-seen order."""
    seen = set()
    cleaned = []
    for raw in addresses or []:
        try:
            key = normalize_address(raw)
        except InvalidAddress as e:
            logger.debug(f"Skipping address {raw!r}: {e}")
            continue
        if key not in seen:
            seen.add(key)
            cleaned.append(key)
    return cleaned


class GeocodingResolver:
    """
    Resolves addresses to coordinates: cache first, provider on a miss,
    cache write-back in the background.

    All bookkeeping lives in two maps owned by this object and guarded by
    one lock: `_inflight` (address -> the single task resolving it) and
    `_resolved` (provider outcomes whose cache write has not landed yet). A
    second request for an address joins the existing task instead of starting
    a new provider call. Once the cache row is written the entry is dropped
    and the durable cache answers from then on. `_resolved` keeps at most
    `memo_size` entries, oldest first out, for when the cache cannot be written.
    """

    def __init__(self, cache: GeocodeCache, provider: GeocodingProvider, *,
                 max_concurrency: int = 1, min_interval_seconds: float = 0.0, memo_size: int = 1024,
                 background: Optional[BackgroundTasks] = None):
        self.cache = cache
        self.provider = provider
        self.min_interval_seconds = min_interval_seconds
        self.memo_size = max(0, memo_size)
        self.background = background or BackgroundTasks("geocode-cache")
        self.provider_calls = 0

        self._lock = asyncio.Lock()
        self._inflight: Dict[str, asyncio.Task] = {}
        self._resolved: "OrderedDict[str, Optional[Coordinates]]" = OrderedDict()
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))
        self._throttle_lock = asyncio.Lock()
        self._next_allowed = 0.0

    # --- Public API ---

    async def resolve_all(self, addresses: Iterable[str]) -> ResolveReport:
        """
        Returns a mapping for every valid address in the input. Per-address
        failures resolve to None; only cache outages and provider auth/rate
        limit failures are reported in `warnings`.
        """
        report = ResolveReport()
        waiting: Dict[str, asyncio.Task] = {}

        async with self._lock:
            for address in clean_addresses(addresses):
                if address in self._resolved:
                    report.results[address] = self._resolved[address]
                    continue
                task = self._inflight.get(address)
                if task is None:
                    task = asyncio.ensure_future(self._resolve_one(address))
                    task.set_name(f"geocode:{address}")
                    self._inflight[address] = task
                waiting[address] = task

        warnings = set()
        for address, task in waiting.items():
            # Shielded: a caller that goes away does not cancel the shared resolution.
            outcome: _Outcome = await asyncio.shield(task)
            report.results[address] = outcome.coordinates
            if outcome.cache_hit:
                report.cache_hits += 1
            if outcome.provider_called:
                report.provider_calls += 1
            warnings.update(kind for kind in outcome.errors if kind in BATCH_WARNING_KINDS)

        report.warnings = sorted(warnings, key=lambda kind: kind.value)
        if report.warnings:
            logger.warning(f"Geocoding batch finished with warnings: {[w.value for w in report.warnings]}")
        return report

    async def resolve(self, address: str) -> Optional[Coordinates]:
        report = await self.resolve_all([address])
        return report.results.get(address.strip()) if isinstance(address, str) else None

    @property
    def memoized(self) -> int:
        return len(self._resolved)

    def is_in_flight(self, address: str) -> bool:
        return address.strip() in self._inflight

    # --- Resolution of one address ---

    async def _resolve_one(self, address: str) -> _Outcome:
        outcome = _Outcome(address=address)
        try:
            async with self._semaphore:
                await self._resolve_into(outcome)
        except Exception as e:
            logger.error(f"Unexpected failure resolving '{address}': {e}", exc_info=True)
            outcome.coordinates = None
            outcome.terminal = False
            outcome.errors.append(ErrorKind.PROVIDER_UNAVAILABLE)
        finally:
            async with self._lock:
                if outcome.terminal and outcome.provider_called:
                    self._remember(address, outcome.coordinates)
                self._inflight.pop(address, None)
        if outcome.terminal and outcome.provider_called:
            self.background.spawn(self._persist(address, outcome.coordinates), f"store:{address}")
        return outcome

    def _remember(self, address: str, coordinates: Optional[Coordinates]) -> None:
        self._resolved[address] = coordinates
        self._resolved.move_to_end(address)
        while len(self._resolved) > self.memo_size:
            self._resolved.popitem(last=False)

    async def _persist(self, address: str, coordinates: Optional[Coordinates]) -> None:
        if await self.cache.store(address, coordinates):
            async with self._lock:
                self._resolved.pop(address, None)

    async def _resolve_into(self, outcome: _Outcome) -> None:
        address = outcome.address
        try:
            entry = await self.cache.fetch(address)
        except CacheUnavailable as e:
            logger.warning(f"{e}; falling through to the provider.")
            outcome.errors.append(ErrorKind.CACHE_UNAVAILABLE)
            entry = None

        if entry is not None:
            logger.debug(f"Cache hit for '{address}' (found={entry.found}).")
            outcome.cache_hit = True
            outcome.coordinates = entry.coordinates
            return

        await self._throttle()
        self.provider_calls += 1
        outcome.provider_called = True
        try:
            coordinates = await self.provider.geocode(address)
        except ProviderError as e:
            logger.warning(f"Geocoding provider error for '{address}' ({e.kind.value}): {e}")
            outcome.coordinates = None
            outcome.terminal = False
            outcome.errors.append(e.kind)
            return

        outcome.coordinates = coordinates
        if coordinates is None:
            logger.info(f"No geocoding result for '{address}'; caching as not found.")
            outcome.errors.append(ErrorKind.PROVIDER_NO_RESULT)

    async def _throttle(self) -> None:
        if self.min_interval_seconds <= 0:
            return
        loop = asyncio.get_running_loop()
        async with self._throttle_lock:
            now = loop.time()
            if now < self._next_allowed:
                await asyncio.sleep(self._next_allowed - now)
            self._next_allowed = loop.time() + self.min_interval_seconds
