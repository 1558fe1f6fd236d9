import asyncio
import logging
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple

from sector_agent.config.settings import settings
from sector_agent.models.schemas import TicketRecord
from sector_agent.services.background import BackgroundTasks
from sector_agent.services.document_store import STATUS_FIELD, DocumentStore, to_ticket_record
from sector_agent.services.errors import WriteBackFailure

logger = logging.getLogger(__name__)

RecordKey = Tuple[str, str]


def derive_status(status_text: Optional[str], free_text_request: Optional[str], *,
                  rma_marker: str = settings.rma_marker,
                  rma_status: str = settings.rma_status,
                  default_status: str = settings.default_status) -> str:
    """
    Canonical status of a ticket, evaluated in priority order:
      1. the request text carries the RMA marker -> RMA status;
      2. no status yet -> default new-ticket status;
      3. otherwise the stored status is kept as-is.
    Applying it to its own output returns the same value.
    """
    status_text = status_text or ""
    if rma_marker and rma_marker.lower() in (free_text_request or "").lower() and status_text != rma_status:
        return rma_status
    if not status_text.strip():
        return default_status
    return status_text


class StatusReconciler:
    """
    Emits every ticket with its derived status straight away and persists
    corrections in the background. A record whose status already matches
    its derivation never triggers a write, and at most one write per record
    and value is pending at any time. A failed write is not retried; the
    next snapshot of the record schedules it again.
    """

    def __init__(self, store: DocumentStore, *,
                 rma_marker: str = settings.rma_marker,
                 rma_status: str = settings.rma_status,
                 default_status: str = settings.default_status,
                 background: Optional[BackgroundTasks] = None):
        self.store = store
        self.rma_marker = rma_marker
        self.rma_status = rma_status
        self.default_status = default_status
        self.background = background or BackgroundTasks("status-write-back")
        self.write_backs = 0
        self.failed_write_backs = 0

        self._pending: Dict[RecordKey, str] = {}
        self._locks: Dict[RecordKey, asyncio.Lock] = {}

    def derive(self, record: TicketRecord) -> str:
        return derive_status(
            record.status_text,
            record.free_text_request,
            rma_marker=self.rma_marker,
            rma_status=self.rma_status,
            default_status=self.default_status,
        )

    def reconcile(self, records: Iterable[TicketRecord]) -> List[TicketRecord]:
        """Synchronous: returns corrected records and only schedules the writes."""
        corrected = []
        for record in records:
            derived = self.derive(record)
            if derived != record.status_text:
                self._schedule_write_back(record, derived)
                record = record.with_status(derived)
            else:
                # The stored value is already right; a queued correction is stale.
                self._pending.pop((record.collection, record.id), None)
            corrected.append(record)
        return corrected

    def reconcile_documents(self, collection: str, documents: Iterable[Dict[str, Any]]) -> List[TicketRecord]:
        records = [r for r in (to_ticket_record(collection, doc) for doc in documents) if r is not None]
        return self.reconcile(records)

    async def stream(self, collection: str) -> AsyncIterator[List[TicketRecord]]:
        """Reconciled view of every snapshot the store emits for `collection`."""
        async for documents in self.store.subscribe(collection):
            yield self.reconcile_documents(collection, documents)

    def pending_write_back(self, collection: str, record_id: str) -> Optional[str]:
        return self._pending.get((collection, record_id))

    # --- Background write-back ---

    def _schedule_write_back(self, record: TicketRecord, status: str) -> None:
        key = (record.collection, record.id)
        if self._pending.get(key) == status:
            return
        self._pending[key] = status
        logger.debug(f"Scheduling status write-back {record.collection}/{record.id}: "
                     f"'{record.status_text}' -> '{status}'")
        self.background.spawn(self._write_back(key, status), f"{record.collection}/{record.id}")

    async def _write_back(self, key: RecordKey, status: str) -> None:
        collection, record_id = key
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            try:
                if self._pending.get(key) != status:
                    # A newer derived value for this record superseded this one.
                    return
                await self.store.write_field(collection, record_id, STATUS_FIELD, status)
                self.write_backs += 1
                logger.info(f"Status of {collection}/{record_id} corrected to '{status}'.")
            except WriteBackFailure as e:
                self.failed_write_backs += 1
                logger.error(f"Status write-back failed for {collection}/{record_id}: {e}")
            finally:
                if self._pending.get(key) == status:
                    del self._pending[key]
                if key not in self._pending:
                    self._locks.pop(key, None)
