from __future__ import annotations

import json
from typing import Any

import structlog
import httpx

from discotrack.config import get_settings
from discotrack.errors import FetchError
from discotrack.models.schemas import ServiceDescriptor

logger = structlog.get_logger()

USER_AGENT = "discotrack/0.1 (Discovery Document Tracker)"


def build_params(service: ServiceDescriptor) -> dict[str, str]:
    params: dict[str, str] = {}
    if service.api_key:
        params["key"] = service.api_key
    if service.visibility_label:
        params["label"] = service.visibility_label
    return params


async def fetch_document(service: ServiceDescriptor, timeout: float | None = None) -> dict[str, Any]:
    """GET the discovery document for a service and parse it as a JSON object.

    Raises FetchError on transport errors, non-2xx responses, or a body that
    is not a JSON object.
    """
    timeout = timeout if timeout is not None else get_settings().fetch_timeout

    try:
        async with httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
        ) as client:
            resp = await client.get(service.endpoint, params=build_params(service))
    except httpx.HTTPError as e:
        raise FetchError(
            f"Request to {service.endpoint} failed: {e.__class__.__name__}: {e}",
            service_id=service.service_id,
        ) from e

    if not resp.is_success:
        raise FetchError(
            f"Received non-success status code {resp.status_code} from {service.endpoint}",
            service_id=service.service_id,
            status_code=resp.status_code,
        )

    try:
        document = resp.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise FetchError(
            f"Response from {service.endpoint} is not valid JSON: {e}",
            service_id=service.service_id,
            status_code=resp.status_code,
        ) from e

    if not isinstance(document, dict):
        raise FetchError(
            f"Response from {service.endpoint} is not a JSON object",
            service_id=service.service_id,
            status_code=resp.status_code,
        )

    logger.debug(
        "document_fetched",
        service_id=service.service_id,
        status=resp.status_code,
        revision=document.get("revision"),
    )
    return document
