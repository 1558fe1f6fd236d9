import asyncio

import pytest

from sector_agent.services.document_store import (
    InMemoryDocumentStore,
    SqlDocumentStore,
    prepare_new_document,
    to_ticket_record,
)
from sector_agent.services.errors import WriteBackFailure


def test_to_ticket_record_maps_document_fields():
    record = to_ticket_record("CHR", {
        "id": "t1", "statut": "en cours", "demandeSAP": "Installation", "adresse": "  ", "ville": "Lyon",
    })
    assert record.status_text == "en cours"
    assert record.free_text_request == "Installation"
    assert record.address == "Lyon"
    assert record.data["id"] == "t1"

    shipment = to_ticket_record("envois", {"id": 7, "statutExpedition": "livré", "statut": "ignored"})
    assert shipment.id == "7"
    assert shipment.status_text == "livré"
    assert shipment.address is None

    assert to_ticket_record("CHR", {"statut": "en cours"}) is None


def test_prepare_new_document_sets_default_status_for_tickets():
    assert prepare_new_document("Tabac", {"id": "x", "raisonSociale": "Tabac"}) == {
        "raisonSociale": "Tabac", "statut": "en cours",
    }
    assert prepare_new_document("Tabac", {"statut": "Terminée"}) == {"statut": "Terminée"}
    assert prepare_new_document("envois", {"nomClient": "A"}) == {"nomClient": "A"}


async def test_sql_store_add_snapshot_and_write(session_factory):
    store = SqlDocumentStore(session_factory, poll_interval_seconds=0.01)
    doc_id = await store.add_document("HACCP", {"raisonSociale": "Boulangerie", "adresse": "Lyon"})

    snapshot = await store.snapshot("HACCP")
    assert snapshot == [{"id": doc_id, "raisonSociale": "Boulangerie", "adresse": "Lyon", "statut": "en cours"}]
    assert await store.snapshot("CHR") == []

    await store.write_field("HACCP", doc_id, "statut", "Terminée")
    assert (await store.snapshot("HACCP"))[0]["statut"] == "Terminée"

    with pytest.raises(WriteBackFailure):
        await store.write_field("HACCP", "missing", "statut", "Terminée")


async def test_sql_store_subscription_emits_on_change(session_factory):
    store = SqlDocumentStore(session_factory, poll_interval_seconds=0.01)
    await store.add_document("CHR", {"statut": "en cours"}, doc_id="t1")

    stream = store.subscribe("CHR")
    first = await asyncio.wait_for(stream.__anext__(), timeout=2)
    assert first == [{"id": "t1", "statut": "en cours"}]

    await store.write_field("CHR", "t1", "statut", "À clôturer")
    second = await asyncio.wait_for(stream.__anext__(), timeout=2)
    assert second == [{"id": "t1", "statut": "À clôturer"}]
    await stream.aclose()


async def test_in_memory_store_pushes_to_subscribers():
    store = InMemoryDocumentStore({"Kezia": [{"id": "k1", "statut": "en cours"}]})
    stream = store.subscribe("Kezia")

    assert await stream.__anext__() == [{"id": "k1", "statut": "en cours"}]
    await store.add_document("Kezia", {"raisonSociale": "Épicerie"}, doc_id="k2")
    latest = await stream.__anext__()
    assert [doc["id"] for doc in latest] == ["k1", "k2"]
    assert latest[1]["statut"] == "en cours"
    await stream.aclose()

    with pytest.raises(WriteBackFailure):
        await store.write_field("Kezia", "absent", "statut", "Terminée")
