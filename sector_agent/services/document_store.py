import asyncio
import copy
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.future import select
from sqlalchemy.orm import sessionmaker

from sector_agent.config.settings import settings
from sector_agent.data_models.models import Document
from sector_agent.models.schemas import TicketRecord
from sector_agent.services.errors import WriteBackFailure

logger = logging.getLogger(__name__)

# --- Helper Functions ---

STATUS_FIELD = "statut"
REQUEST_FIELD = "demandeSAP"
ADDRESS_FIELDS = ("adresse", "ville")
SHIPMENT_STATUS_FIELD = "statutExpedition"


def _text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def status_field_for(collection: str) -> str:
    return SHIPMENT_STATUS_FIELD if collection == settings.shipment_collection else STATUS_FIELD


def to_ticket_record(collection: str, document: Dict[str, Any]) -> Optional[TicketRecord]:
    """Builds the core's read-only view of a raw document; returns None when it has no id."""
    doc_id = document.get("id")
    if doc_id is None or _text(doc_id).strip() == "":
        logger.warning(f"Skipping a document without id in collection '{collection}'.")
        return None

    address = None
    for field_name in ADDRESS_FIELDS:
        value = document.get(field_name)
        if isinstance(value, str) and value.strip():
            address = value
            break

    return TicketRecord(
        id=_text(doc_id),
        collection=collection,
        status_text=_text(document.get(status_field_for(collection))),
        free_text_request=_text(document.get(REQUEST_FIELD)),
        address=address,
        data=dict(document),
    )


def prepare_new_document(collection: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """SAP sector tickets get the default status when none is provided."""
    new_data = {k: v for k, v in data.items() if k != "id"}
    if collection in settings.ticket_collections and not new_data.get(STATUS_FIELD):
        new_data[STATUS_FIELD] = settings.default_status
    return new_data


class DocumentStore(ABC):
    """
    The slice of the remote document database the core relies on: full
    snapshots per collection, a stream of snapshots, and single-field
    writes with last-write-wins semantics.
    """

    @abstractmethod
    async def snapshot(self, collection: str) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def subscribe(self, collection: str) -> AsyncIterator[List[Dict[str, Any]]]:
        ...

    @abstractmethod
    async def write_field(self, collection: str, doc_id: str, field: str, value: Any) -> None:
        ...

    @abstractmethod
    async def add_document(self, collection: str, data: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        ...


class SqlDocumentStore(DocumentStore):
    """Document store on the `documents` table; subscriptions poll and emit on change."""

    def __init__(self, session_factory: sessionmaker, poll_interval_seconds: float = 5.0):
        self.session_factory = session_factory
        self.poll_interval_seconds = poll_interval_seconds

    async def snapshot(self, collection: str) -> List[Dict[str, Any]]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Document).where(Document.collection == collection).order_by(Document.id)
            )
            return [{"id": row.doc_id, **(row.data or {})} for row in result.scalars().all()]

    async def subscribe(self, collection: str) -> AsyncIterator[List[Dict[str, Any]]]:
        last: Optional[List[Dict[str, Any]]] = None
        while True:
            try:
                current = await self.snapshot(collection)
            except SQLAlchemyError as e:
                logger.error(f"Error polling collection '{collection}': {e}")
            else:
                if current != last:
                    last = current
                    yield copy.deepcopy(current)
            await asyncio.sleep(self.poll_interval_seconds)

    async def write_field(self, collection: str, doc_id: str, field: str, value: Any) -> None:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Document).where(Document.collection == collection, Document.doc_id == doc_id)
                )
                row = result.scalars().first()
                if row is None:
                    raise WriteBackFailure(f"Document {collection}/{doc_id} no longer exists.")
                # Reassign so the JSON column is flagged dirty.
                row.data = {**(row.data or {}), field: value}
                await session.commit()
        except SQLAlchemyError as e:
            raise WriteBackFailure(f"Error updating {collection}/{doc_id}.{field}: {e}") from e

    async def add_document(self, collection: str, data: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        doc_id = doc_id or str(uuid.uuid4())
        async with self.session_factory() as session:
            session.add(Document(collection=collection, doc_id=doc_id, data=prepare_new_document(collection, data)))
            await session.commit()
        logger.info(f"Added document {collection}/{doc_id}.")
        return doc_id


class InMemoryDocumentStore(DocumentStore):
    """Process-local store that pushes a fresh snapshot to subscribers after every change."""

    def __init__(self, seed: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}
        for collection, documents in (seed or {}).items():
            bucket = self._collections.setdefault(collection, {})
            for document in documents:
                bucket[str(document["id"])] = {k: v for k, v in document.items() if k != "id"}

    async def snapshot(self, collection: str) -> List[Dict[str, Any]]:
        return self._snapshot_now(collection)

    def _snapshot_now(self, collection: str) -> List[Dict[str, Any]]:
        bucket = self._collections.get(collection, {})
        return [{"id": doc_id, **copy.deepcopy(data)} for doc_id, data in bucket.items()]

    def _publish(self, collection: str) -> None:
        for queue in self._subscribers.get(collection, []):
            queue.put_nowait(self._snapshot_now(collection))

    async def subscribe(self, collection: str) -> AsyncIterator[List[Dict[str, Any]]]:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(collection, []).append(queue)
        queue.put_nowait(self._snapshot_now(collection))
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers[collection].remove(queue)

    async def write_field(self, collection: str, doc_id: str, field: str, value: Any) -> None:
        document = self._collections.get(collection, {}).get(doc_id)
        if document is None:
            raise WriteBackFailure(f"Document {collection}/{doc_id} no longer exists.")
        document[field] = value
        self._publish(collection)

    async def add_document(self, collection: str, data: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        doc_id = doc_id or str(uuid.uuid4())
        self._collections.setdefault(collection, {})[doc_id] = prepare_new_document(collection, data)
        self._publish(collection)
        return doc_id
