"""Periodic fetch, diff, persist and notify cycles, one timer per service.

Each service gets its own asyncio task that ticks every ``check_interval``
seconds, counted from the start of the previous tick. A tick that fires
while the previous cycle of the same service is still running is dropped.
Notifications run as separate background tasks so a slow webhook never
holds up the next cycle.
"""
from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from discotrack.errors import FetchError, StorageError
from discotrack.models.db import CycleState
from discotrack.models.schemas import ChangeRecord, ServiceDescriptor
from discotrack.pipeline.differ import diff
from discotrack.pipeline.fetcher import fetch_document
from discotrack.pipeline.notifier import DiscordNotifier
from discotrack.storage import repository
from discotrack.storage.snapshots import SnapshotStore

logger = structlog.get_logger()

FetchFn = Callable[[ServiceDescriptor], Awaitable[dict[str, Any]]]


class Tracker:
    def __init__(
        self,
        services: Iterable[ServiceDescriptor],
        snapshots: SnapshotStore,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: DiscordNotifier | None = None,
        check_interval: float = 3600.0,
        fetch: FetchFn = fetch_document,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.services = {service.service_id: service for service in services}
        self.check_interval = check_interval
        self.skipped_ticks: dict[str, int] = defaultdict(int)

        self._snapshots = snapshots
        self._session_factory = session_factory
        self._notifier = notifier
        self._fetch = fetch
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep

        self._timers: dict[str, asyncio.Task] = {}
        self._cycles: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        self._states: dict[str, CycleState] = {}

    @property
    def notifications_enabled(self) -> bool:
        return self._notifier is not None

    def state(self, service_id: str) -> CycleState:
        return self._states.get(service_id, CycleState.IDLE)

    def in_flight(self, service_id: str) -> asyncio.Task | None:
        task = self._cycles.get(service_id)
        return task if task is not None and not task.done() else None

    def start(self) -> None:
        for service_id, service in self.services.items():
            if service_id not in self._timers:
                self._timers[service_id] = asyncio.create_task(
                    self.run_timer(service), name=f"tracker-timer:{service_id}"
                )
        logger.info("tracker_started", services=sorted(self.services), check_interval=self.check_interval)

    async def stop(self, grace: float | None = None) -> None:
        """Stop the timers, let running cycles finish within ``grace`` seconds, drop pending notifications."""
        for task in self._timers.values():
            task.cancel()
        await asyncio.gather(*self._timers.values(), return_exceptions=True)
        self._timers.clear()

        running = [task for task in self._cycles.values() if not task.done()]
        if running:
            logger.info("tracker_waiting_for_cycles", count=len(running), grace=grace)
            _, pending = await asyncio.wait(running, timeout=grace)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        background = list(self._background)
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        logger.info("tracker_stopped")

    async def drain(self) -> None:
        """Wait for in-flight cycles and background notifications to finish."""
        while True:
            pending = [task for task in self._cycles.values() if not task.done()] + list(self._background)
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def run_timer(self, service: ServiceDescriptor) -> None:
        next_tick = self._clock()
        while True:
            self.tick(service)
            next_tick += self.check_interval
            delay = next_tick - self._clock()
            if delay < 0:
                # Process was suspended past one or more ticks; those ticks are dropped
                missed = int(-delay // self.check_interval) + 1
                next_tick += missed * self.check_interval
                delay += missed * self.check_interval
                self.skipped_ticks[service.service_id] += missed
                logger.warning("ticks_missed", service_id=service.service_id, missed=missed)
            await self._sleep(delay)

    def tick(self, service: ServiceDescriptor) -> bool:
        """Start a cycle unless one is already running for this service."""
        service_id = service.service_id
        if self.in_flight(service_id) is not None:
            self.skipped_ticks[service_id] += 1
            logger.warning(
                "tick_skipped",
                service_id=service_id,
                state=self.state(service_id).value,
                skipped_total=self.skipped_ticks[service_id],
            )
            return False

        self._cycles[service_id] = asyncio.create_task(self.run_cycle(service), name=f"tracker-cycle:{service_id}")
        return True

    async def run_cycle(self, service: ServiceDescriptor) -> ChangeRecord | None:
        """Run one fetch, diff, persist, notify cycle. Returns the appended record, if any."""
        service_id = service.service_id
        log = logger.bind(service_id=service_id)
        started = self._clock()

        try:
            self._states[service_id] = CycleState.FETCHING
            try:
                document = await self._fetch(service)
            except FetchError as e:
                log.warning("fetch_failed", error=str(e), status=e.status_code)
                self._report_error(service_id, "fetch", str(e))
                return None
            fetched_at = datetime.now(timezone.utc)

            self._states[service_id] = CycleState.DIFFING
            previous = await asyncio.to_thread(self._snapshots.load, service_id)
            if previous is None:
                self._states[service_id] = CycleState.PERSISTING
                await asyncio.to_thread(self._snapshots.store, service_id, document, fetched_at)
                log.info("initial_snapshot_stored", revision=document.get("revision"))
                return None

            entries = await asyncio.to_thread(diff, previous.document, document)
            if not entries:
                self._states[service_id] = CycleState.PERSISTING
                await asyncio.to_thread(self._snapshots.store, service_id, document, fetched_at)
                log.info("no_changes_detected", revision=document.get("revision"))
                return None

            record = ChangeRecord(
                service_id=service_id,
                detected_at=fetched_at,
                revision=str(document.get("revision") or "unknown"),
                entries=tuple(entries),
            )

            self._states[service_id] = CycleState.PERSISTING
            record, publish_error = await self._persist(record, document, fetched_at)
            log.info(
                "changes_detected",
                detected_at=record.detected_at.isoformat(),
                entries=len(record.entries),
                tags=record.tags,
                revision_only=record.revision_only,
            )

            if self._notifier is not None:
                self._states[service_id] = CycleState.NOTIFYING
                self._spawn(self._dispatch(service, record), f"tracker-notify:{service_id}")

            if publish_error is not None:
                # The record is durable and announced; only the snapshot is stale
                log.error("snapshot_publish_failed", error=str(publish_error))
                self._report_error(service_id, "storage", str(publish_error))
            return record

        except StorageError as e:
            log.error("storage_failed", error=str(e))
            self._report_error(service_id, "storage", str(e))
            return None
        except Exception as e:
            log.exception("cycle_error", error=str(e))
            self._report_error(service_id, "cycle", f"{e.__class__.__name__}: {e}")
            return None
        finally:
            self._states[service_id] = CycleState.IDLE
            log.debug("cycle_finished", duration=round(self._clock() - started, 3))

    async def _persist(
        self, record: ChangeRecord, document: dict[str, Any], fetched_at: datetime
    ) -> tuple[ChangeRecord, StorageError | None]:
        # The snapshot only becomes visible once the record is durable
        staged = await asyncio.to_thread(self._snapshots.stage, record.service_id, document, fetched_at)
        try:
            async with self._session_factory() as session:
                stored = await repository.append_record(session, record)
        except BaseException:
            staged.discard()
            raise
        try:
            await asyncio.to_thread(staged.commit)
        except StorageError as e:
            return stored, e
        return stored, None

    async def _dispatch(self, service: ServiceDescriptor, record: ChangeRecord) -> None:
        try:
            await self._notifier.dispatch(record, service_name=service.name)
        except Exception as e:
            logger.exception("notification_dispatch_error", service_id=service.service_id, error=str(e))

    def _report_error(self, service_id: str, stage: str, message: str) -> None:
        if self._notifier is None:
            return
        self._spawn(self._send_error(service_id, stage, message), f"tracker-error:{service_id}")

    async def _send_error(self, service_id: str, stage: str, message: str) -> None:
        try:
            await self._notifier.report_error(service_id, stage, message)
        except Exception as e:
            logger.exception("error_report_failed", service_id=service_id, stage=stage, error=str(e))

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
