from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from urllib.parse import quote

import structlog
import httpx

from discotrack.config import get_settings
from discotrack.errors import DispatchError
from discotrack.models.db import ChangeKind
from discotrack.models.schemas import ChangeRecord, WebhookDestination, WebhookRoute
from discotrack.rendering import render_template

logger = structlog.get_logger()

WILDCARD_SERVICE = "*"

CHANGE_COLOR = 5814783  # blue
ERROR_COLOR = 15548997  # red

MAX_EMBED_LINES = 20
MAX_DESCRIPTION_CHARS = 4096
MAX_ERROR_CHARS = 1800

CHANGE_SYMBOLS = {
    ChangeKind.ADDED: "+",
    ChangeKind.REMOVED: "-",
    ChangeKind.MODIFIED: "M",
}


@dataclass
class DispatchReport:
    service_id: str
    skipped: bool = False
    delivered: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    error_notifications: int = 0


def _truncate(text: str, max_len: int) -> str:
    return text if len(text) <= max_len else text[: max_len - 3] + "..."


def mention(role_id: str) -> str:
    return f"<@&{role_id}>"


def build_mentions(record: ChangeRecord, tag_mention_role_ids) -> list[str]:
    """One mention per distinct entry tag that has a role, in first-appearance order."""
    mentions: list[str] = []
    seen_tags: set[str] = set()
    for entry in record.entries:
        tag = entry.tag.value
        if tag in seen_tags:
            continue
        seen_tags.add(tag)
        role_id = tag_mention_role_ids.get(tag)
        if role_id:
            token = mention(role_id)
            if token not in mentions:
                mentions.append(token)
    return mentions


def change_url(route: WebhookRoute, record: ChangeRecord) -> str:
    return (
        f"{route.tracker_api_url}/api/changes/"
        f"{quote(record.service_id, safe='')}/{quote(record.detected_at.isoformat(), safe='')}/diff"
    )


def build_description(record: ChangeRecord) -> str:
    lines = [
        {"symbol": CHANGE_SYMBOLS[entry.kind], "path": entry.path_str, "tag": entry.tag.value}
        for entry in record.entries[:MAX_EMBED_LINES]
    ]
    description = render_template(
        "discord_description.md.j2",
        summary=record.summary(),
        revision=record.revision if record.revision != "unknown" else None,
        lines=lines,
        remaining=max(0, len(record.entries) - MAX_EMBED_LINES),
    )
    return _truncate(description.strip(), MAX_DESCRIPTION_CHARS)


def build_payload(record: ChangeRecord, service_name: str, route: WebhookRoute) -> dict[str, Any]:
    """Discord webhook body for a change record.

    Discord reads ``content``/``embeds``/``allowed_mentions``; the remaining
    keys carry the full structured change list for other consumers.
    """
    mentions = build_mentions(record, route.tag_mention_role_ids)
    role_ids = [m[3:-1] for m in mentions]
    detected_at = record.detected_at.isoformat()

    return {
        "content": " ".join(mentions) if mentions else None,
        "allowed_mentions": {"parse": [], "roles": role_ids},
        "embeds": [
            {
                "description": build_description(record),
                "color": CHANGE_COLOR,
                "author": {
                    "name": _truncate(service_name, 256),
                    "url": change_url(route, record),
                },
                "footer": {"text": f"Change ID: {detected_at}"},
                "timestamp": detected_at,
            }
        ],
        "service": record.service_id,
        "service_name": service_name,
        "detected_at": detected_at,
        "revision": record.revision,
        "revision_only": record.revision_only,
        "mentions": mentions,
        "changes": [entry.as_payload() for entry in record.entries],
    }


def build_error_payload(route: WebhookRoute, service_id: str, stage: str, message: str) -> dict[str, Any]:
    content = mention(route.error_mention_role_id) if route.error_mention_role_id else None
    return {
        "content": content,
        "allowed_mentions": {
            "parse": [],
            "roles": [route.error_mention_role_id] if route.error_mention_role_id else [],
        },
        "embeds": [
            {
                "description": render_template(
                    "discord_error.md.j2",
                    service=service_id,
                    stage=stage,
                    message=_truncate(message, MAX_ERROR_CHARS),
                ).strip(),
                "color": ERROR_COLOR,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        ],
        "service": service_id,
        "stage": stage,
        "error": message,
    }


def _retry_after(resp: httpx.Response) -> float:
    try:
        body = resp.json()
        if isinstance(body, dict) and body.get("retry_after") is not None:
            return float(body["retry_after"])
    except ValueError:
        pass
    try:
        return float(resp.headers.get("retry-after", 1.0))
    except ValueError:
        return 1.0


class DiscordNotifier:
    """Delivers change records to the Discord webhooks of a WebhookRoute.

    A failure to deliver to one destination never affects the others; each
    failure is reported once to the route's error webhook.
    """

    def __init__(
        self,
        route: WebhookRoute,
        timeout: float | None = None,
        rate_limit_retries: int | None = None,
        max_retry_after: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        settings = get_settings()
        self.route = route
        self._timeout = timeout if timeout is not None else settings.webhook_timeout
        self._rate_limit_retries = (
            rate_limit_retries if rate_limit_retries is not None else settings.webhook_rate_limit_retries
        )
        self._max_retry_after = max_retry_after if max_retry_after is not None else settings.webhook_max_retry_after
        self._sleep = sleep or asyncio.sleep

    def destinations_for(self, service_id: str) -> tuple[WebhookDestination, ...]:
        specific = self.route.destinations.get(service_id)
        if specific:
            return specific
        return self.route.destinations.get(WILDCARD_SERVICE, ())

    async def dispatch(self, record: ChangeRecord, service_name: str | None = None) -> DispatchReport:
        report = DispatchReport(service_id=record.service_id)

        if self.route.skip_revision_only_changes and record.revision_only:
            logger.info("notification_skipped_revision_only", service_id=record.service_id)
            report.skipped = True
            return report

        destinations = self.destinations_for(record.service_id)
        if not destinations:
            logger.info("notification_no_destination", service_id=record.service_id)
            report.skipped = True
            return report

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            results = await asyncio.gather(
                *(self._deliver(client, dest, record, service_name or dest.name, report) for dest in destinations),
                return_exceptions=True,
            )

        for dest, result in zip(destinations, results):
            if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                logger.error(
                    "notification_unexpected_error",
                    service_id=record.service_id,
                    destination=dest.name,
                    error=repr(result),
                )

        logger.info(
            "notification_dispatched",
            service_id=record.service_id,
            delivered=len(report.delivered),
            failed=len(report.failed),
        )
        return report

    async def report_error(self, service_id: str, stage: str, message: str) -> bool:
        """Send a standalone error notification. Never raises."""
        if not self.route.error_webhook_url:
            return False
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await self._send_error(client, service_id, stage, message)

    async def _deliver(
        self,
        client: httpx.AsyncClient,
        destination: WebhookDestination,
        record: ChangeRecord,
        service_name: str,
        report: DispatchReport,
    ) -> None:
        payload = build_payload(record, service_name, self.route)
        try:
            await self._post(client, destination.webhook_url, payload, destination.name)
        except DispatchError as e:
            logger.error(
                "notification_failed",
                service_id=record.service_id,
                destination=destination.name,
                status=e.status_code,
                error=str(e),
            )
            report.failed.append(destination.name)
            if await self._send_error(
                client,
                record.service_id,
                "notify",
                f"Failed to deliver change {record.detected_at.isoformat()} to {destination.name}: {e}",
            ):
                report.error_notifications += 1
            return

        report.delivered.append(destination.name)
        logger.info("notification_sent", service_id=record.service_id, destination=destination.name)

    async def _send_error(self, client: httpx.AsyncClient, service_id: str, stage: str, message: str) -> bool:
        if not self.route.error_webhook_url:
            return False
        payload = build_error_payload(self.route, service_id, stage, message)
        try:
            await self._post(client, self.route.error_webhook_url, payload, "error_webhook")
        except DispatchError as e:
            logger.error("error_notification_failed", service_id=service_id, stage=stage, error=str(e))
            return False
        return True

    async def _post(self, client: httpx.AsyncClient, url: str, payload: dict[str, Any], destination: str) -> None:
        attempts = 0
        while True:
            try:
                resp = await client.post(url, json=payload)
            except httpx.TimeoutException as e:
                raise DispatchError(f"Timed out posting to {destination}", destination) from e
            except httpx.HTTPError as e:
                raise DispatchError(f"{e.__class__.__name__}: {e}", destination) from e

            if resp.status_code == 429 and attempts < self._rate_limit_retries:
                attempts += 1
                delay = min(max(_retry_after(resp), 0.0), self._max_retry_after)
                logger.warning("notification_rate_limited", destination=destination, retry_after=delay, attempt=attempts)
                await self._sleep(delay)
                continue

            if not resp.is_success:
                raise DispatchError(
                    f"Webhook returned {resp.status_code}: {resp.text[:200]}",
                    destination,
                    status_code=resp.status_code,
                )

            if resp.content and "json" in resp.headers.get("content-type", ""):
                try:
                    resp.json()
                except ValueError as e:
                    raise DispatchError(
                        f"Malformed response from webhook: {resp.text[:200]}",
                        destination,
                        status_code=resp.status_code,
                    ) from e
            return
