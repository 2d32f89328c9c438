"""Pytest configuration and fixtures."""

from datetime import date, time

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from clinic_os.core.models import Base
from clinic_os.scheduling.models import (
    CandidateSlot,
    RecurrencePattern,
    RecurrenceRule,
    Series,
)
from clinic_os.scheduling.recurrence import OccurrenceGenerator


@pytest.fixture
def generator():
    return OccurrenceGenerator()


@pytest.fixture
def weekly_slot():
    """Monday 2025-03-03 09:00 with therapist th-1 in the PT track."""
    return CandidateSlot(
        track_id="pt",
        date=date(2025, 3, 3),
        time=time(9, 0),
        duration_minutes=45,
        therapist_id="th-1",
        room_id="room-a",
    )


@pytest.fixture
def weekly_series(generator, weekly_slot) -> Series:
    """Four weekly occurrences: 03-03, 03-10, 03-17, 03-24."""
    rule = RecurrenceRule.after_count(RecurrencePattern.WEEKLY, 4)
    return generator.materialize(weekly_slot, rule, series_id="series-1", patient_id="pat-1")


@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session(engine):
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as sess:
        yield sess
        await sess.rollback()
