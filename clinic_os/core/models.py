"""SQLAlchemy 2.0 async models for the booking store."""

from __future__ import annotations

import uuid
from datetime import date, datetime, time, timezone

from sqlalchemy import (
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# Statuses that hold a therapist's slot.
ACTIVE_STATUSES = ("scheduled", "paused")
_ACTIVE_WHERE = text("status IN ('scheduled', 'paused')")
ACTIVE_SLOT_INDEX = "uq_occurrences_active_slot"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_uuid() -> uuid.UUID:
    return uuid.uuid4()


class Base(DeclarativeBase):
    pass


class SeriesDB(Base):
    __tablename__ = "appointment_series"

    id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=_new_uuid)
    patient_id: Mapped[str | None] = mapped_column(String(64))
    track_id: Mapped[str] = mapped_column(String(64), nullable=False)
    therapist_id: Mapped[str] = mapped_column(String(64), nullable=False)
    pattern: Mapped[str] = mapped_column(String(20), nullable=False)
    end_kind: Mapped[str] = mapped_column(String(20), nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date)
    end_count: Mapped[int | None] = mapped_column(Integer)
    anchor_date: Mapped[date] = mapped_column(Date, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    occurrences: Mapped[list[OccurrenceDB]] = relationship(
        back_populates="series",
        lazy="selectin",
        order_by="OccurrenceDB.sequence_index",
    )

    __table_args__ = (
        Index("ix_appointment_series_patient_id", "patient_id"),
        Index("ix_appointment_series_therapist_id", "therapist_id"),
    )


class OccurrenceDB(Base):
    __tablename__ = "appointment_occurrences"

    id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=_new_uuid)
    series_id: Mapped[uuid.UUID | None] = mapped_column(PG_UUID(as_uuid=True), ForeignKey("appointment_series.id", ondelete="CASCADE"))
    sequence_index: Mapped[int] = mapped_column(Integer, default=0)
    patient_id: Mapped[str | None] = mapped_column(String(64))
    track_id: Mapped[str | None] = mapped_column(String(64))
    therapist_id: Mapped[str] = mapped_column(String(64), nullable=False)
    room_id: Mapped[str | None] = mapped_column(String(64))
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)
    scheduled_time: Mapped[time] = mapped_column(Time, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=60)
    status: Mapped[str] = mapped_column(String(20), default="scheduled")
    cancel_reason: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    series: Mapped[SeriesDB | None] = relationship(back_populates="occurrences")

    __table_args__ = (
        UniqueConstraint("series_id", "sequence_index", name="uq_occurrences_series_index"),
        Index("ix_occurrences_patient_date", "patient_id", "scheduled_date"),
        Index("ix_occurrences_status", "status"),
        # One active booking per therapist and slot
        Index(
            ACTIVE_SLOT_INDEX,
            "therapist_id",
            "scheduled_date",
            "scheduled_time",
            unique=True,
            postgresql_where=_ACTIVE_WHERE,
            sqlite_where=_ACTIVE_WHERE,
        ),
    )
