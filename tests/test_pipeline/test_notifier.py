from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
import respx
import httpx

from discotrack.models.schemas import ChangeRecord, WebhookDestination, WebhookRoute
from discotrack.pipeline.differ import diff
from discotrack.pipeline.notifier import (
    DiscordNotifier,
    build_error_payload,
    build_mentions,
    build_payload,
    change_url,
)

DETECTED_AT = datetime(2024, 1, 2, 12, 0, tzinfo=timezone.utc)
PEOPLE_HOOK = "https://discord.test/api/webhooks/people"
AUDIT_HOOK = "https://discord.test/api/webhooks/audit"
WILDCARD_HOOK = "https://discord.test/api/webhooks/all"
ERROR_HOOK = "https://discord.test/api/webhooks/errors"


def _route(**overrides):
    params = dict(
        destinations={
            "people.googleapis.com": (
                WebhookDestination(name="People API", webhook_url=PEOPLE_HOOK),
                WebhookDestination(name="Audit", webhook_url=AUDIT_HOOK),
            ),
        },
        tag_mention_role_ids={"new_method": "111", "removed_method": "222"},
        error_webhook_url=ERROR_HOOK,
        error_mention_role_id="999",
        skip_revision_only_changes=True,
        tracker_api_url="https://tracker.test",
    )
    params.update(overrides)
    return WebhookRoute(**params)


def _notifier(route=None, sleep=None):
    return DiscordNotifier(
        route or _route(),
        timeout=5,
        rate_limit_retries=2,
        max_retry_after=10,
        sleep=sleep or AsyncMock(),
    )


def _change_record(service_id="people.googleapis.com"):
    old = {"revision": "1", "resources": {"a": {"methods": {"m": {}}}}}
    new = {"revision": "2", "resources": {"a": {"methods": {"n": {}, "o": {}, "p": {}}}}}
    return ChangeRecord(
        service_id=service_id,
        detected_at=DETECTED_AT,
        revision="2",
        entries=tuple(diff(old, new)),
    )


def _revision_record(service_id="people.googleapis.com"):
    return ChangeRecord(
        service_id=service_id,
        detected_at=DETECTED_AT,
        revision="2",
        entries=tuple(diff({"revision": "1"}, {"revision": "2"})),
    )


class TestPayload:
    def test_mentions_once_per_tag(self):
        record = _change_record()
        mentions = build_mentions(record, {"new_method": "111", "removed_method": "222", "other": ""})

        # One removed method, three new methods, one revision bump
        assert mentions == ["<@&222>", "<@&111>"]

    def test_build_payload(self):
        record = _change_record()
        payload = build_payload(record, "People API", _route())

        assert payload["service_name"] == "People API"
        assert payload["detected_at"] == DETECTED_AT.isoformat()
        assert payload["revision_only"] is False
        assert len(payload["changes"]) == len(record.entries)
        assert set(payload["content"].split()) == {"<@&111>", "<@&222>"}
        assert sorted(payload["allowed_mentions"]["roles"]) == ["111", "222"]

        embed = payload["embeds"][0]
        assert embed["author"]["name"] == "People API"
        assert embed["author"]["url"] == change_url(_route(), record)
        assert embed["author"]["url"].startswith("https://tracker.test/api/changes/people.googleapis.com/")
        assert embed["author"]["url"].endswith("/diff")
        assert embed["footer"]["text"] == f"Change ID: {DETECTED_AT.isoformat()}"
        assert "**+3** additions" in embed["description"]
        assert "**~1** changes" in embed["description"]
        assert "**-1** removed" in embed["description"]
        assert "resources.a.methods.n" in embed["description"]

    def test_payload_without_mentions(self):
        payload = build_payload(_revision_record(), "People API", _route(tag_mention_role_ids={}))

        assert payload["content"] is None
        assert payload["mentions"] == []
        assert payload["revision_only"] is True

    def test_long_change_lists_are_cut(self):
        old = {"schemas": {}}
        new = {"schemas": {f"Schema{i:02d}": {} for i in range(30)}}
        record = ChangeRecord(
            service_id="people.googleapis.com",
            detected_at=DETECTED_AT,
            entries=tuple(diff(old, new)),
        )

        description = build_payload(record, "People API", _route())["embeds"][0]["description"]

        assert "schemas.Schema19" in description
        assert "schemas.Schema20" not in description
        assert "and 10 more" in description

    def test_error_payload_mentions_error_role(self):
        payload = build_error_payload(_route(), "people.googleapis.com", "fetch", "503 Service Unavailable")

        assert payload["content"] == "<@&999>"
        assert payload["stage"] == "fetch"
        assert "503 Service Unavailable" in payload["embeds"][0]["description"]


class TestDispatch:
    @pytest.mark.asyncio
    @respx.mock
    async def test_skip_revision_only_makes_no_calls(self):
        report = await _notifier().dispatch(_revision_record())

        assert report.skipped is True
        assert respx.calls.call_count == 0

    @pytest.mark.asyncio
    @respx.mock
    async def test_revision_only_sent_when_not_skipped(self):
        people = respx.post(PEOPLE_HOOK).mock(return_value=httpx.Response(204))
        audit = respx.post(AUDIT_HOOK).mock(return_value=httpx.Response(204))

        report = await _notifier(_route(skip_revision_only_changes=False)).dispatch(_revision_record())

        assert report.skipped is False
        assert people.call_count == 1
        assert audit.call_count == 1

    @pytest.mark.asyncio
    @respx.mock
    async def test_delivers_to_every_destination(self):
        people = respx.post(PEOPLE_HOOK).mock(return_value=httpx.Response(204))
        audit = respx.post(AUDIT_HOOK).mock(return_value=httpx.Response(204))

        report = await _notifier().dispatch(_change_record(), service_name="People API")

        assert sorted(report.delivered) == ["Audit", "People API"]
        assert report.failed == []
        body = json.loads(people.calls.last.request.content)
        assert body["service"] == "people.googleapis.com"
        assert body["embeds"][0]["author"]["name"] == "People API"
        assert audit.called

    @pytest.mark.asyncio
    @respx.mock
    async def test_failure_is_isolated_and_reported_once(self):
        respx.post(PEOPLE_HOOK).mock(return_value=httpx.Response(500, text="boom"))
        audit = respx.post(AUDIT_HOOK).mock(return_value=httpx.Response(204))
        errors = respx.post(ERROR_HOOK).mock(return_value=httpx.Response(204))

        report = await _notifier().dispatch(_change_record())

        assert report.delivered == ["Audit"]
        assert report.failed == ["People API"]
        assert audit.call_count == 1
        assert errors.call_count == 1
        assert report.error_notifications == 1

        body = json.loads(errors.calls.last.request.content)
        assert body["content"] == "<@&999>"
        assert body["stage"] == "notify"
        assert "People API" in body["error"]
        assert "500" in body["error"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_timeout_is_a_delivery_failure(self):
        respx.post(PEOPLE_HOOK).mock(side_effect=httpx.ReadTimeout("Timed out"))
        respx.post(AUDIT_HOOK).mock(return_value=httpx.Response(204))
        errors = respx.post(ERROR_HOOK).mock(return_value=httpx.Response(204))

        report = await _notifier().dispatch(_change_record())

        assert report.failed == ["People API"]
        assert errors.call_count == 1

    @pytest.mark.asyncio
    @respx.mock
    async def test_malformed_response_is_a_delivery_failure(self):
        respx.post(PEOPLE_HOOK).mock(
            return_value=httpx.Response(200, text="{oops", headers={"content-type": "application/json"})
        )
        respx.post(AUDIT_HOOK).mock(return_value=httpx.Response(200, json={"id": "1"}))
        respx.post(ERROR_HOOK).mock(return_value=httpx.Response(204))

        report = await _notifier().dispatch(_change_record())

        assert report.failed == ["People API"]
        assert report.delivered == ["Audit"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_error_webhook_failure_is_swallowed(self):
        respx.post(PEOPLE_HOOK).mock(return_value=httpx.Response(500))
        respx.post(AUDIT_HOOK).mock(return_value=httpx.Response(500))
        errors = respx.post(ERROR_HOOK).mock(return_value=httpx.Response(500))

        report = await _notifier().dispatch(_change_record())

        assert sorted(report.failed) == ["Audit", "People API"]
        assert errors.call_count == 2
        assert report.error_notifications == 0

    @pytest.mark.asyncio
    @respx.mock
    async def test_no_error_webhook_configured(self):
        respx.post(PEOPLE_HOOK).mock(return_value=httpx.Response(500))
        respx.post(AUDIT_HOOK).mock(return_value=httpx.Response(204))

        report = await _notifier(_route(error_webhook_url=None)).dispatch(_change_record())

        assert report.failed == ["People API"]
        assert report.error_notifications == 0
        assert respx.calls.call_count == 2

    @pytest.mark.asyncio
    @respx.mock
    async def test_rate_limit_is_retried(self):
        sleep = AsyncMock()
        people = respx.post(PEOPLE_HOOK).mock(side_effect=[
            httpx.Response(429, json={"message": "You are being rate limited.", "retry_after": 0.5}),
            httpx.Response(204),
        ])
        respx.post(AUDIT_HOOK).mock(return_value=httpx.Response(204))

        report = await _notifier(sleep=sleep).dispatch(_change_record())

        assert people.call_count == 2
        assert sorted(report.delivered) == ["Audit", "People API"]
        sleep.assert_awaited_once_with(0.5)

    @pytest.mark.asyncio
    @respx.mock
    async def test_rate_limit_retries_are_bounded(self):
        sleep = AsyncMock()
        people = respx.post(PEOPLE_HOOK).mock(
            return_value=httpx.Response(429, json={"retry_after": 60})
        )
        respx.post(AUDIT_HOOK).mock(return_value=httpx.Response(204))
        respx.post(ERROR_HOOK).mock(return_value=httpx.Response(204))

        report = await _notifier(sleep=sleep).dispatch(_change_record())

        assert people.call_count == 3
        assert report.failed == ["People API"]
        # retry_after is capped
        assert [call.args[0] for call in sleep.await_args_list] == [10, 10]

    @pytest.mark.asyncio
    @respx.mock
    async def test_no_destination_is_not_notified(self):
        report = await _notifier().dispatch(_change_record(service_id="youtube.googleapis.com"))

        assert report.skipped is True
        assert respx.calls.call_count == 0

    @pytest.mark.asyncio
    @respx.mock
    async def test_wildcard_destination(self):
        route = _route(destinations={
            "people.googleapis.com": (WebhookDestination(name="People API", webhook_url=PEOPLE_HOOK),),
            "*": (WebhookDestination(name="All services", webhook_url=WILDCARD_HOOK),),
        })
        wildcard = respx.post(WILDCARD_HOOK).mock(return_value=httpx.Response(204))
        people = respx.post(PEOPLE_HOOK).mock(return_value=httpx.Response(204))
        notifier = _notifier(route)

        await notifier.dispatch(_change_record(service_id="youtube.googleapis.com"))
        await notifier.dispatch(_change_record(service_id="people.googleapis.com"))

        assert wildcard.call_count == 1
        assert people.call_count == 1
        body = json.loads(wildcard.calls.last.request.content)
        assert body["service"] == "youtube.googleapis.com"


class TestReportError:
    @pytest.mark.asyncio
    @respx.mock
    async def test_sends_error_notification(self):
        errors = respx.post(ERROR_HOOK).mock(return_value=httpx.Response(204))

        sent = await _notifier().report_error("people.googleapis.com", "fetch", "Received 503")

        assert sent is True
        body = json.loads(errors.calls.last.request.content)
        assert body["service"] == "people.googleapis.com"
        assert body["error"] == "Received 503"

    @pytest.mark.asyncio
    @respx.mock
    async def test_without_error_webhook(self):
        sent = await _notifier(_route(error_webhook_url=None)).report_error("svc", "fetch", "boom")

        assert sent is False
        assert respx.calls.call_count == 0
