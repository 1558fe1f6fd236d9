import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional

from sector_agent.config.settings import settings
from sector_agent.models.schemas import (
    LocationState,
    PENDING_ZONE,
    PipelineSnapshot,
    ResolvedTicket,
    TicketRecord,
)
from sector_agent.services.document_store import DocumentStore, to_ticket_record
from sector_agent.services.geocoding_resolver import GeocodingResolver
from sector_agent.services.status_reconciler import StatusReconciler
from sector_agent.services.zone_index import SectorZoneIndex

logger = logging.getLogger(__name__)

Listener = Callable[[PipelineSnapshot], None]


class SectorPipeline:
    """
    Turns document-store snapshots into enriched records for presentation:
    status reconciliation for ticket collections, address resolution, then
    sector assignment. Every snapshot is processed from scratch and the
    result is pushed to the registered listeners.
    """

    def __init__(self, store: DocumentStore, resolver: GeocodingResolver, zone_index: SectorZoneIndex,
                 reconciler: StatusReconciler, ticket_collections: Optional[Iterable[str]] = None):
        self.store = store
        self.resolver = resolver
        self.zone_index = zone_index
        self.reconciler = reconciler
        self.ticket_collections = set(ticket_collections if ticket_collections is not None
                                      else settings.ticket_collections)
        self._listeners: List[Listener] = []

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Registers a callback for every new PipelineSnapshot; returns an unsubscribe function."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return _remove

    def is_ticket_collection(self, collection: str) -> bool:
        return collection in self.ticket_collections

    def to_records(self, collection: str, documents: Iterable[Dict[str, Any]]) -> List[TicketRecord]:
        if self.is_ticket_collection(collection):
            return self.reconciler.reconcile_documents(collection, documents)
        return [r for r in (to_ticket_record(collection, doc) for doc in documents) if r is not None]

    async def enrich(self, collection: str, records: List[TicketRecord]) -> PipelineSnapshot:
        report = await self.resolver.resolve_all(r.address for r in records if r.address)
        enriched = []
        for record in records:
            key = record.address.strip() if record.address else ""
            if not key:
                enriched.append(ResolvedTicket(record=record, zone_name=PENDING_ZONE,
                                               location_state=LocationState.NO_ADDRESS))
                continue
            coordinates = report.results.get(key)
            enriched.append(ResolvedTicket(
                record=record,
                coordinates=coordinates,
                zone_name=self.zone_index.classify(coordinates),
                location_state=LocationState.LOCATED if coordinates else LocationState.NOT_LOCATED,
            ))
        return PipelineSnapshot(
            collection=collection,
            records=enriched,
            warnings=report.warnings,
            produced_at=datetime.now(timezone.utc),
        )

    async def process_snapshot(self, collection: str, documents: Iterable[Dict[str, Any]]) -> PipelineSnapshot:
        snapshot = await self.enrich(collection, self.to_records(collection, documents))
        self._notify(snapshot)
        return snapshot

    async def current(self, collection: str) -> PipelineSnapshot:
        """One-shot processing of the collection as it is right now."""
        return await self.process_snapshot(collection, await self.store.snapshot(collection))

    async def run(self, collection: str) -> None:
        """Processes every snapshot the store emits until the task is cancelled."""
        logger.info(f"Sector pipeline subscribed to '{collection}'.")
        async for records in self._record_stream(collection):
            snapshot = await self.enrich(collection, records)
            self._notify(snapshot)

    async def _record_stream(self, collection: str) -> AsyncIterator[List[TicketRecord]]:
        if self.is_ticket_collection(collection):
            async for records in self.reconciler.stream(collection):
                yield records
        else:
            async for documents in self.store.subscribe(collection):
                yield self.to_records(collection, documents)

    def _notify(self, snapshot: PipelineSnapshot) -> None:
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Pipeline listener {listener!r} failed: {e}", exc_info=True)
