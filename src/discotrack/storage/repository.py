from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select, func

from discotrack.errors import StorageError, WriteError
from discotrack.models.db import ChangeRecordRow
from discotrack.models.schemas import ChangeEntry, ChangeRecord

logger = structlog.get_logger()

# Smallest step used to keep (service_id, detected_at) unique
COLLISION_STEP = timedelta(microseconds=1)


def _to_db_time(value: datetime) -> datetime:
    """Aware UTC. Naive input is taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _from_db_time(value: datetime) -> datetime:
    # SQLite drops the offset; the stored value is UTC either way
    return _to_db_time(value)


def _to_row(record: ChangeRecord, detected_at: datetime) -> ChangeRecordRow:
    return ChangeRecordRow(
        service_id=record.service_id,
        detected_at=detected_at,
        revision=record.revision,
        revision_only=record.revision_only,
        tags=json.dumps(record.tags),
        entries=json.dumps([entry.model_dump(mode="json") for entry in record.entries]),
    )


def _from_row(row: ChangeRecordRow) -> ChangeRecord:
    return ChangeRecord(
        service_id=row.service_id,
        detected_at=_from_db_time(row.detected_at),
        revision=row.revision,
        entries=tuple(ChangeEntry.model_validate(item) for item in json.loads(row.entries)),
    )


async def _execute(session: AsyncSession, stmt):
    try:
        return await session.execute(stmt)
    except SQLAlchemyError as e:
        raise StorageError(f"Failed to read change log: {e}") from e


async def _latest_detected_at(session: AsyncSession, service_id: str) -> datetime | None:
    result = await session.execute(
        select(func.max(ChangeRecordRow.detected_at)).where(ChangeRecordRow.service_id == service_id)
    )
    latest = result.scalar_one_or_none()
    return _from_db_time(latest) if latest is not None else None


async def append_record(session: AsyncSession, record: ChangeRecord) -> ChangeRecord:
    """Persist a change record and return it with its effective ``detected_at``.

    Records are never overwritten. When ``detected_at`` is not strictly after
    the latest record of the same service (clock went backwards, or two
    cycles landed on the same instant) it is moved to one microsecond past
    that record.
    """
    if not record.entries:
        raise ValueError("Refusing to append a change record without entries")

    detected_at = _to_db_time(record.detected_at)
    try:
        latest = await _latest_detected_at(session, record.service_id)
        if latest is not None and detected_at <= latest:
            logger.warning(
                "change_record_timestamp_adjusted",
                service_id=record.service_id,
                requested=detected_at.isoformat(),
                latest=latest.isoformat(),
            )
            detected_at = latest + COLLISION_STEP

        session.add(_to_row(record, detected_at))
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        raise WriteError(f"Failed to append change record for {record.service_id}: {e}") from e

    return record.model_copy(update={"detected_at": _from_db_time(detected_at)})


def _select_records(
    service_id: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    tag: str | None = None,
):
    stmt = select(ChangeRecordRow)
    if service_id is not None:
        stmt = stmt.where(ChangeRecordRow.service_id == service_id)
    if since is not None:
        stmt = stmt.where(ChangeRecordRow.detected_at >= _to_db_time(since))
    if until is not None:
        stmt = stmt.where(ChangeRecordRow.detected_at <= _to_db_time(until))
    if tag:
        stmt = stmt.where(ChangeRecordRow.tags.contains(json.dumps(tag), autoescape=True))
    return stmt.order_by(ChangeRecordRow.detected_at, ChangeRecordRow.service_id, ChangeRecordRow.id)


async def iter_records(
    session: AsyncSession,
    service_id: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    tag: str | None = None,
) -> AsyncIterator[ChangeRecord]:
    """Yield matching records lazily in ascending ``detected_at`` order."""
    try:
        rows = await session.stream_scalars(_select_records(service_id, since, until, tag))
        async for row in rows:
            yield _from_row(row)
    except SQLAlchemyError as e:
        raise StorageError(f"Failed to read change log: {e}") from e


async def query_records(
    session: AsyncSession,
    service_id: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    tag: str | None = None,
    offset: int = 0,
    limit: int | None = None,
) -> list[ChangeRecord]:
    stmt = _select_records(service_id, since, until, tag).offset(offset)
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await _execute(session, stmt)
    return [_from_row(row) for row in result.scalars().all()]


async def get_record(session: AsyncSession, service_id: str, detected_at: datetime) -> ChangeRecord | None:
    stmt = select(ChangeRecordRow).where(
        ChangeRecordRow.service_id == service_id,
        ChangeRecordRow.detected_at == _to_db_time(detected_at),
    )
    result = await _execute(session, stmt)
    row = result.scalars().first()
    return _from_row(row) if row else None


async def count_records(session: AsyncSession, service_id: str | None = None) -> int:
    stmt = select(func.count(ChangeRecordRow.id))
    if service_id is not None:
        stmt = stmt.where(ChangeRecordRow.service_id == service_id)
    result = await _execute(session, stmt)
    return result.scalar_one()


async def count_by_service(session: AsyncSession) -> dict[str, int]:
    stmt = select(ChangeRecordRow.service_id, func.count(ChangeRecordRow.id)).group_by(ChangeRecordRow.service_id)
    result = await _execute(session, stmt)
    return {service_id: count for service_id, count in result.all()}
