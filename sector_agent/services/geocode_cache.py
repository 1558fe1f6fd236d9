import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.future import select
from sqlalchemy.orm import sessionmaker

from sector_agent.data_models.models import GeocodeEntry
from sector_agent.models.schemas import CacheEntry, Coordinates
from sector_agent.services.errors import CacheUnavailable

logger = logging.getLogger(__name__)


def _to_cache_entry(row: GeocodeEntry) -> CacheEntry:
    coordinates = None
    if row.found and row.latitude is not None and row.longitude is not None:
        coordinates = Coordinates(latitude=row.latitude, longitude=row.longitude)
    resolved_at = row.resolved_at
    if resolved_at is not None and resolved_at.tzinfo is None:
        resolved_at = resolved_at.replace(tzinfo=timezone.utc)
    return CacheEntry(address=row.address, coordinates=coordinates, resolved_at=resolved_at)


class GeocodeCache:
    """
    Durable address -> coordinates store backed by the `geocodes` table.

    The cache is best-effort: read failures degrade to a miss and write
    failures are logged, so a broken backing store only costs extra
    provider calls. Entries are written once and never updated.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def fetch(self, address: str) -> Optional[CacheEntry]:
        """Like `lookup`, but raises CacheUnavailable instead of degrading to a miss."""
        try:
            async with self.session_factory() as session:
                result = await session.execute(select(GeocodeEntry).where(GeocodeEntry.address == address))
                row = result.scalars().first()
                return _to_cache_entry(row) if row else None
        except SQLAlchemyError as e:
            raise CacheUnavailable(f"Geocode cache lookup failed for '{address}': {e}") from e

    async def lookup(self, address: str) -> Optional[CacheEntry]:
        """Returns the stored entry, or None on a miss or a backing-store error."""
        try:
            return await self.fetch(address)
        except CacheUnavailable as e:
            logger.warning(str(e))
            return None

    async def store(self, address: str, coordinates: Optional[Coordinates]) -> bool:
        """
        Persists a resolution outcome (None marks a known-absent address).
        A second store for an address that already has an entry is a no-op.
        """
        try:
            async with self.session_factory() as session:
                existing = await session.execute(select(GeocodeEntry.id).where(GeocodeEntry.address == address))
                if existing.scalars().first() is not None:
                    logger.debug(f"Geocode for '{address}' already cached; keeping the existing entry.")
                    return True
                session.add(GeocodeEntry(
                    address=address,
                    latitude=coordinates.latitude if coordinates else None,
                    longitude=coordinates.longitude if coordinates else None,
                    found=coordinates is not None,
                    resolved_at=datetime.now(timezone.utc),
                ))
                try:
                    await session.commit()
                except IntegrityError:
                    # Lost the insert race against another writer; content is identical.
                    await session.rollback()
                    logger.debug(f"Concurrent geocode store for '{address}' ignored.")
                    return True
            logger.info(f"Geocode stored for '{address}' (found={coordinates is not None}).")
            return True
        except SQLAlchemyError as e:
            logger.error(f"Error storing geocode for '{address}': {e}")
            return False
