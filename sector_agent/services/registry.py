import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from sqlalchemy.orm import sessionmaker

from sector_agent.config.settings import Settings, settings as default_settings
from sector_agent.services.background import BackgroundTasks
from sector_agent.services.document_store import DocumentStore, SqlDocumentStore
from sector_agent.services.geocode_cache import GeocodeCache
from sector_agent.services.geocoding_provider import GeocodingProvider, build_provider
from sector_agent.services.geocoding_resolver import GeocodingResolver
from sector_agent.services.sector_pipeline import SectorPipeline
from sector_agent.services.status_reconciler import StatusReconciler
from sector_agent.services.zone_index import SectorZoneIndex, zone_index as default_zone_index

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: DocumentStore
    cache: GeocodeCache
    provider: GeocodingProvider
    resolver: GeocodingResolver
    zone_index: SectorZoneIndex
    reconciler: StatusReconciler
    pipeline: SectorPipeline
    watchers: Dict[str, asyncio.Task] = field(default_factory=dict)

    def watch(self, collection: str) -> None:
        """Keeps the pipeline running on `collection` in the background."""
        if collection in self.watchers and not self.watchers[collection].done():
            return
        self.watchers[collection] = asyncio.ensure_future(self.pipeline.run(collection))

    async def close(self) -> None:
        for task in self.watchers.values():
            task.cancel()
        await asyncio.gather(*self.watchers.values(), return_exceptions=True)
        self.watchers.clear()
        await self.reconciler.background.drain(timeout=10)
        await self.resolver.background.drain(timeout=10)
        await self.provider.aclose()


def build_services(session_factory: sessionmaker, *, config: Settings = default_settings,
                   store: Optional[DocumentStore] = None,
                   provider: Optional[GeocodingProvider] = None,
                   zones: Optional[SectorZoneIndex] = None) -> Services:
    """Wires the core services; any collaborator can be swapped (e.g. an in-memory store)."""
    store = store or SqlDocumentStore(session_factory, poll_interval_seconds=config.snapshot_poll_interval_seconds)
    cache = GeocodeCache(session_factory)
    provider = provider or build_provider(config)
    resolver = GeocodingResolver(
        cache,
        provider,
        max_concurrency=config.geocoding_max_concurrency,
        min_interval_seconds=config.geocoding_min_interval_seconds,
        memo_size=config.geocoding_memo_size,
        background=BackgroundTasks("geocode-cache"),
    )
    reconciler = StatusReconciler(
        store,
        rma_marker=config.rma_marker,
        rma_status=config.rma_status,
        default_status=config.default_status,
        background=BackgroundTasks("status-write-back"),
    )
    zones = zones or default_zone_index
    pipeline = SectorPipeline(store, resolver, zones, reconciler, ticket_collections=config.ticket_collections)
    services = Services(
        store=store, cache=cache, provider=provider, resolver=resolver,
        zone_index=zones, reconciler=reconciler, pipeline=pipeline,
    )
    logger.info(f"Services ready (provider={provider.name}, zones={len(zones.zones)}).")
    return services
