from __future__ import annotations

import time
from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import HTMLResponse
from sqlalchemy.ext.asyncio import AsyncSession

from discotrack.config import TrackerConfig, get_tracker_config
from discotrack.models.schemas import (
    ChangeDetailResponse,
    ChangeListResponse,
    ChangeRecord,
    ChangeRecordSummary,
    DiffLine,
    DiffResponse,
    ServiceStatus,
    StatusResponse,
)
from discotrack.models.db import ChangeKind
from discotrack.rendering import render_template
from discotrack.storage import repository
from discotrack.storage.database import get_session
from discotrack.storage.snapshots import SnapshotStore, get_snapshot_store

logger = structlog.get_logger()

router = APIRouter()

MAX_RESULTS = 50

# Diff view ordering: additions, deletions, modifications
DIFF_SYMBOLS = {ChangeKind.ADDED: "+", ChangeKind.REMOVED: "-", ChangeKind.MODIFIED: "M"}
DIFF_ORDER = {"+": 0, "-": 1, "M": 2}


def _summarize(record: ChangeRecord) -> ChangeRecordSummary:
    return ChangeRecordSummary(
        service=record.service_id,
        detected_at=record.detected_at,
        revision=record.revision,
        revision_only=record.revision_only,
        summary=record.summary(),
    )


async def _page(
    session: AsyncSession,
    service_id: str | None,
    since: datetime | None,
    until: datetime | None,
    tag: str | None,
    offset: int,
    max_results: int,
) -> ChangeListResponse:
    max_results = min(max_results, MAX_RESULTS)
    records = await repository.query_records(
        session,
        service_id=service_id,
        since=since,
        until=until,
        tag=tag,
        offset=offset,
        limit=max_results + 1,
    )
    return ChangeListResponse(
        data=[_summarize(r) for r in records[:max_results]],
        has_more=len(records) > max_results,
        offset=offset,
        max_results=max_results,
    )


async def _get_or_404(session: AsyncSession, service_id: str, detected_at: datetime) -> ChangeRecord:
    record = await repository.get_record(session, service_id, detected_at)
    if record is None:
        logger.info("change_not_found", service_id=service_id, detected_at=detected_at.isoformat())
        raise HTTPException(status_code=404, detail=f"No change for {service_id} at {detected_at.isoformat()}")
    return record


@router.get("/", response_class=HTMLResponse)
async def index(config: TrackerConfig = Depends(get_tracker_config)):
    return render_template(
        "index.html",
        title="Discovery Document Tracker API",
        services=config.service_descriptors(),
        max_results=MAX_RESULTS,
    )


@router.get("/api/status", response_model=StatusResponse)
async def status(
    request: Request,
    session: AsyncSession = Depends(get_session),
    config: TrackerConfig = Depends(get_tracker_config),
    snapshots: SnapshotStore = Depends(get_snapshot_store),
):
    started_at = getattr(request.app.state, "started_at", time.monotonic())
    counts = await repository.count_by_service(session)
    stored = set(snapshots.list_services())
    tracked = {svc.service_id: svc for svc in config.service_descriptors()}

    services = [
        ServiceStatus(
            service_id=service_id,
            name=tracked[service_id].name if service_id in tracked else None,
            tracked=service_id in tracked,
            has_snapshot=service_id in stored,
            changes=counts.get(service_id, 0),
        )
        for service_id in sorted(tracked.keys() | stored | counts.keys())
    ]
    return StatusResponse(uptime_seconds=int(time.monotonic() - started_at), services=services)


@router.get("/api/changes", response_model=ChangeListResponse)
async def all_changes(
    since: datetime | None = None,
    until: datetime | None = None,
    tag: str | None = None,
    offset: int = Query(0, ge=0),
    max_results: int = Query(MAX_RESULTS, ge=1),
    session: AsyncSession = Depends(get_session),
):
    return await _page(session, None, since, until, tag, offset, max_results)


@router.get("/api/changes/{service_id}", response_model=ChangeListResponse)
async def service_changes(
    service_id: str,
    since: datetime | None = None,
    until: datetime | None = None,
    tag: str | None = None,
    offset: int = Query(0, ge=0),
    max_results: int = Query(MAX_RESULTS, ge=1),
    session: AsyncSession = Depends(get_session),
):
    return await _page(session, service_id, since, until, tag, offset, max_results)


@router.get("/api/changes/{service_id}/{detected_at}", response_model=ChangeDetailResponse)
async def specific_change(
    service_id: str,
    detected_at: datetime,
    session: AsyncSession = Depends(get_session),
):
    record = await _get_or_404(session, service_id, detected_at)
    return ChangeDetailResponse(
        service=record.service_id,
        detected_at=record.detected_at,
        revision=record.revision,
        revision_only=record.revision_only,
        summary=record.summary(),
        changes=[entry.as_payload() for entry in record.entries],
    )


@router.get(
    "/api/changes/{service_id}/{detected_at}/diff",
    response_model=DiffResponse,
    response_model_exclude_unset=True,
)
async def diff_format_change(
    service_id: str,
    detected_at: datetime,
    session: AsyncSession = Depends(get_session),
):
    record = await _get_or_404(session, service_id, detected_at)

    lines = []
    for entry in record.entries:
        payload = entry.as_payload()
        payload.pop("kind")
        lines.append(DiffLine(change_type=DIFF_SYMBOLS[entry.kind], **payload))
    lines.sort(key=lambda line: (DIFF_ORDER[line.change_type], line.path))

    return DiffResponse(service=record.service_id, detected_at=record.detected_at, changes=lines)
