import asyncio

import pytest

from conftest import PARIS, PARIS_ADDRESS
from sector_agent.config.settings import DEFAULT_ZONES_FILE
from sector_agent.models.schemas import LocationState, PENDING_ZONE
from sector_agent.services.document_store import InMemoryDocumentStore
from sector_agent.services.geocode_cache import GeocodeCache
from sector_agent.services.geocoding_resolver import GeocodingResolver
from sector_agent.services.sector_pipeline import SectorPipeline
from sector_agent.services.status_reconciler import StatusReconciler
from sector_agent.services.zone_index import SectorZoneIndex

SEED = {
    "CHR": [
        {"id": "t1", "statut": "en cours", "demandeSAP": "demande de RMA", "adresse": PARIS_ADDRESS},
        {"id": "t2", "statut": "Terminée", "demandeSAP": "", "adresse": ""},
        {"id": "t3", "statut": "À clôturer", "demandeSAP": "", "adresse": "Lieu-dit introuvable"},
    ],
    "envois": [
        {"id": "e1", "statutExpedition": "expédié", "ville": PARIS_ADDRESS, "nomClient": "Boulangerie"},
    ],
}


@pytest.fixture
def store():
    return InMemoryDocumentStore(SEED)


@pytest.fixture
def pipeline(store, session_factory, provider):
    resolver = GeocodingResolver(GeocodeCache(session_factory), provider)
    reconciler = StatusReconciler(store)
    return SectorPipeline(store, resolver, SectorZoneIndex.from_file(DEFAULT_ZONES_FILE), reconciler,
                          ticket_collections=["CHR", "HACCP", "Kezia", "Tabac"])


async def drain(pipeline):
    await pipeline.reconciler.background.drain()
    await pipeline.resolver.background.drain()


async def test_snapshot_keeps_every_record_with_location_state(pipeline):
    snapshot = await pipeline.current("CHR")
    by_id = {item.record.id: item for item in snapshot.records}

    assert [item.record.id for item in snapshot.records] == ["t1", "t2", "t3"]
    assert by_id["t1"].location_state == LocationState.LOCATED
    assert by_id["t1"].coordinates == PARIS
    assert by_id["t1"].zone_name == "Paris Centre"
    assert by_id["t1"].record.status_text == "Demande de RMA"

    assert by_id["t2"].location_state == LocationState.NO_ADDRESS
    assert by_id["t2"].zone_name == PENDING_ZONE

    assert by_id["t3"].location_state == LocationState.NOT_LOCATED
    assert by_id["t3"].zone_name == PENDING_ZONE
    await drain(pipeline)


async def test_shipments_are_located_without_status_writes(pipeline, store):
    snapshot = await pipeline.current("envois")
    item = snapshot.records[0]

    assert item.record.status_text == "expédié"
    assert item.zone_name == "Paris Centre"
    assert pipeline.reconciler.background.pending == 0
    assert (await store.snapshot("envois"))[0]["statutExpedition"] == "expédié"
    await drain(pipeline)


async def test_documents_without_id_are_skipped(pipeline):
    snapshot = await pipeline.process_snapshot("CHR", [{"statut": "en cours"}, {"id": "ok", "statut": "Terminée"}])
    assert [item.record.id for item in snapshot.records] == ["ok"]


async def test_listeners_receive_snapshots_and_can_unsubscribe(pipeline):
    received = []

    def broken_listener(snapshot):
        raise RuntimeError("display closed")

    pipeline.add_listener(broken_listener)
    unsubscribe = pipeline.add_listener(received.append)

    await pipeline.current("CHR")
    assert len(received) == 1
    assert received[0].collection == "CHR"

    unsubscribe()
    await pipeline.current("CHR")
    assert len(received) == 1
    await drain(pipeline)


async def test_run_follows_store_updates(pipeline, store, provider):
    snapshots: asyncio.Queue = asyncio.Queue()
    pipeline.add_listener(snapshots.put_nowait)
    task = asyncio.ensure_future(pipeline.run("CHR"))

    try:
        first = await asyncio.wait_for(snapshots.get(), timeout=2)
        assert first.records[0].record.status_text == "Demande de RMA"

        # The RMA write-back is published back through the store.
        second = await asyncio.wait_for(snapshots.get(), timeout=2)
        assert second.records[0].record.data["statut"] == "Demande de RMA"

        await store.add_document("CHR", {"demandeSAP": "", "adresse": PARIS_ADDRESS}, doc_id="t4")
        third = await asyncio.wait_for(snapshots.get(), timeout=2)
        added = [item for item in third.records if item.record.id == "t4"][0]
        assert added.record.status_text == "en cours"
        assert added.zone_name == "Paris Centre"
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    assert provider.calls.count(PARIS_ADDRESS) == 1
    assert pipeline.reconciler.write_backs == 1
    await drain(pipeline)
