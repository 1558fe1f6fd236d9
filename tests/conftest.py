import asyncio
from typing import Dict, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from sector_agent.database import session as db_session
from sector_agent.models.schemas import Coordinates
from sector_agent.services.geocoding_provider import GeocodingProvider

PARIS_ADDRESS = "10 Rue de Paris, 75001 Paris"
PARIS = Coordinates(latitude=48.86, longitude=2.34)
LYON = Coordinates(latitude=45.76, longitude=4.84)


class FakeProvider(GeocodingProvider):
    """Scripted geocoder. An error registered for an address is raised once, then the address resolves normally."""
    name = "fake"

    def __init__(self, results: Optional[Dict[str, Optional[Coordinates]]] = None,
                 errors: Optional[Dict[str, Exception]] = None, delay: float = 0.0):
        self.results = dict(results or {})
        self.errors = dict(errors or {})
        self.delay = delay
        self.calls = []
        self.closed = False

    async def geocode(self, address: str) -> Optional[Coordinates]:
        self.calls.append(address)
        if self.delay:
            await asyncio.sleep(self.delay)
        error = self.errors.pop(address, None)
        if error is not None:
            raise error
        return self.results.get(address)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def provider():
    return FakeProvider({PARIS_ADDRESS: PARIS, "Place Bellecour, Lyon": LYON})


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    factory = db_session.create_db_engine_and_session(f"sqlite+aiosqlite:///{tmp_path / 'sector.db'}")
    await db_session.init_db()
    yield factory
    await db_session.dispose_db()


@pytest_asyncio.fixture
async def broken_session_factory(tmp_path):
    """A database without tables: every query fails."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()
