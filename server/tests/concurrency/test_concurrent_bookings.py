"""Concurrency tests for booking operations.

Interleavings that SQLite can express run against a file database with one
session per request. Truly parallel requests need PostgreSQL and run only
when TOURBOOK_TEST_POSTGRES_URL points at a disposable database.
"""

import asyncio
import os
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from tourbook.core.database import Base
from tourbook.core.exceptions import ProblemDetailsException
from tourbook.models import Booking, Departure, Tour
from tourbook.schemas.booking import CancelBookingRequest, CreateBookingRequest
from tourbook.services.booking_service import BookingService
from tourbook.services.departure_service import DepartureService
from tourbook.services.inventory_service import InsufficientCapacityError, InventoryService

POSTGRES_URL = os.environ.get("TOURBOOK_TEST_POSTGRES_URL")

requires_postgres = pytest.mark.skipif(
    not POSTGRES_URL,
    reason="TOURBOOK_TEST_POSTGRES_URL not set",
)


async def _make_factory(url: str):
    engine = create_async_engine(url, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


async def _seed(session_factory, slots: int):
    async with session_factory() as session:
        tour = Tour(title="Concurrent Test Tour", slug="concurrent-test-tour", price_amount=10000)
        session.add(tour)
        await session.flush()
        departure = Departure(
            tour_id=tour.id,
            starts_at=datetime(2030, 9, 1, 9, 0, tzinfo=timezone.utc),
            available_slots=slots,
            booked_slots=0,
        )
        session.add(departure)
        await session.commit()
        return tour.id, departure.id


async def _booked_slots(session_factory, departure_id) -> int:
    async with session_factory() as session:
        departure = await DepartureService(session).get_departure_by_id(departure_id)
        return departure.booked_slots


@pytest_asyncio.fixture
async def file_db(tmp_path):
    """A file-backed SQLite database where every session has its own connection."""
    engine, session_factory = await _make_factory(f"sqlite+aiosqlite:///{tmp_path / 'race.db'}")
    yield session_factory
    await engine.dispose()


@pytest_asyncio.fixture
async def postgres_db():
    engine, session_factory = await _make_factory(POSTGRES_URL)
    yield session_factory
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.mark.asyncio
async def test_stale_duplicate_check_returns_existing_booking(file_db, monkeypatch):
    """A request that missed the first booking in its lookup still gets that booking back."""
    tour_id, departure_id = await _seed(file_db, slots=10)
    request = CreateBookingRequest(tour_id=str(tour_id), departure_id=str(departure_id), adults=2)
    user = {"user_id": "racer", "roles": []}

    async with file_db() as first_session:
        first = await BookingService(first_session).create_booking(request, user)

    original_lookup = BookingService._find_active_booking
    calls = {"count": 0}

    async def stale_lookup(self, *args):
        calls["count"] += 1
        if calls["count"] == 1:
            return None
        return await original_lookup(self, *args)

    monkeypatch.setattr(BookingService, "_find_active_booking", stale_lookup)

    async with file_db() as second_session:
        second = await BookingService(second_session).create_booking(request, user)

    assert second.is_existing is True
    assert second.booking.id == first.booking.id
    assert await _booked_slots(file_db, departure_id) == 2


@pytest.mark.asyncio
async def test_stale_departure_read_cannot_oversell(file_db):
    """A session that saw free seats before another session took them is refused."""
    _, departure_id = await _seed(file_db, slots=3)

    async with file_db() as slow_session, file_db() as fast_session:
        stale = await DepartureService(slow_session).get_departure_by_id(departure_id)
        assert stale.remaining_slots == 3

        await InventoryService(fast_session).reserve(departure_id, 2)
        await fast_session.commit()

        with pytest.raises(InsufficientCapacityError) as exc_info:
            await InventoryService(slow_session).reserve(departure_id, 2)
        await slow_session.rollback()

    assert exc_info.value.available_seats == 1
    assert await _booked_slots(file_db, departure_id) == 2


@pytest.mark.asyncio
async def test_cancel_from_second_session_is_rejected(file_db):
    """Two cancellations of one booking release its seats once."""
    tour_id, departure_id = await _seed(file_db, slots=5)
    user = {"user_id": "canceller", "roles": []}

    async with file_db() as session:
        booking = (await BookingService(session).create_booking(
            CreateBookingRequest(tour_id=str(tour_id), departure_id=str(departure_id), adults=3), user
        )).booking
    booking_id = str(booking.id)

    outcomes = []
    for _ in range(2):
        async with file_db() as session:
            try:
                await BookingService(session).cancel_booking(CancelBookingRequest(booking_id=booking_id), user)
                outcomes.append("cancelled")
            except ProblemDetailsException as e:
                outcomes.append(e.code)

    assert outcomes == ["cancelled", "ALREADY_CANCELLED"]
    assert await _booked_slots(file_db, departure_id) == 0


@requires_postgres
@pytest.mark.slow
@pytest.mark.asyncio
async def test_parallel_identical_requests_create_one_booking(postgres_db):
    tour_id, departure_id = await _seed(postgres_db, slots=20)
    request = CreateBookingRequest(tour_id=str(tour_id), departure_id=str(departure_id), adults=2)
    user = {"user_id": "double-clicker", "roles": []}

    async def submit():
        async with postgres_db() as session:
            result = await BookingService(session).create_booking(request, user)
            return result.booking.id

    results = await asyncio.gather(*[submit() for _ in range(10)])

    assert len(set(results)) == 1
    assert await _booked_slots(postgres_db, departure_id) == 2
    async with postgres_db() as session:
        count = await session.scalar(select(func.count()).select_from(Booking))
    assert count == 1


@requires_postgres
@pytest.mark.slow
@pytest.mark.asyncio
async def test_parallel_bookings_never_oversell(postgres_db):
    tour_id, departure_id = await _seed(postgres_db, slots=10)

    async def submit(index: int):
        async with postgres_db() as session:
            try:
                await BookingService(session).create_booking(
                    CreateBookingRequest(tour_id=str(tour_id), departure_id=str(departure_id), adults=1),
                    {"user_id": f"traveler-{index}", "roles": []},
                )
                return True
            except InsufficientCapacityError:
                return False

    results = await asyncio.gather(*[submit(i) for i in range(25)])

    assert sum(results) == 10
    assert await _booked_slots(postgres_db, departure_id) == 10
