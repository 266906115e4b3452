from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, computed_field

from discotrack.models.db import ChangeKind, ChangeTag


PathSegment = str | int

REVISION_PATH: tuple[PathSegment, ...] = ("revision",)


def format_path(path: tuple[PathSegment, ...]) -> str:
    """Render a path as ``resources.a.methods.n`` / ``scopes[2]``."""
    rendered = ""
    for segment in path:
        if isinstance(segment, int):
            rendered += f"[{segment}]"
        elif rendered:
            rendered += f".{segment}"
        else:
            rendered = segment
    return rendered


def is_revision_only(entries: tuple[ChangeEntry, ...] | list[ChangeEntry]) -> bool:
    return len(entries) == 1 and tuple(entries[0].path) == REVISION_PATH


class ServiceDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    service_id: str
    name: str
    endpoint: str
    api_key: str | None = None
    visibility_label: str | None = None


class DocumentSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    service_id: str
    fetched_at: datetime
    fingerprint: str
    document: dict[str, Any]


class ChangeEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: tuple[PathSegment, ...]
    kind: ChangeKind
    tag: ChangeTag
    old_value: Any = None
    new_value: Any = None

    @property
    def path_str(self) -> str:
        return format_path(self.path)

    def as_payload(self) -> dict[str, Any]:
        """Serialise with ``old_value``/``new_value`` only where the kind carries them."""
        data: dict[str, Any] = {
            "path": self.path_str,
            "kind": self.kind.value,
            "tag": self.tag.value,
        }
        if self.kind in (ChangeKind.REMOVED, ChangeKind.MODIFIED):
            data["old_value"] = self.old_value
        if self.kind in (ChangeKind.ADDED, ChangeKind.MODIFIED):
            data["new_value"] = self.new_value
        return data


class ChangeSummary(BaseModel):
    additions: int = 0
    modifications: int = 0
    deletions: int = 0
    tags: list[str] = []


class ChangeRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    service_id: str
    detected_at: datetime
    revision: str = "unknown"
    entries: tuple[ChangeEntry, ...]

    @computed_field
    @property
    def revision_only(self) -> bool:
        return is_revision_only(self.entries)

    @property
    def tags(self) -> list[str]:
        """Distinct entry tags in first-appearance order, plus ``revision_only`` when flagged."""
        seen: list[str] = []
        for entry in self.entries:
            if entry.tag.value not in seen:
                seen.append(entry.tag.value)
        if self.revision_only:
            seen.append(ChangeTag.REVISION_ONLY.value)
        return seen

    def summary(self) -> ChangeSummary:
        counts = {kind: 0 for kind in ChangeKind}
        for entry in self.entries:
            counts[entry.kind] += 1
        return ChangeSummary(
            additions=counts[ChangeKind.ADDED],
            modifications=counts[ChangeKind.MODIFIED],
            deletions=counts[ChangeKind.REMOVED],
            tags=self.tags,
        )


@dataclass(frozen=True)
class WebhookDestination:
    name: str
    webhook_url: str


@dataclass(frozen=True)
class WebhookRoute:
    """Immutable routing table handed to the notifier at startup."""

    destinations: Mapping[str, tuple[WebhookDestination, ...]] = field(default_factory=dict)
    tag_mention_role_ids: Mapping[str, str] = field(default_factory=dict)
    error_webhook_url: str | None = None
    error_mention_role_id: str | None = None
    skip_revision_only_changes: bool = False
    tracker_api_url: str = "http://localhost:3000"

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "destinations",
            MappingProxyType({k: tuple(v) for k, v in self.destinations.items()}),
        )
        object.__setattr__(self, "tag_mention_role_ids", MappingProxyType(dict(self.tag_mention_role_ids)))


# Local read API


class ChangeRecordSummary(BaseModel):
    service: str
    detected_at: datetime
    revision: str
    revision_only: bool
    summary: ChangeSummary


class ChangeListResponse(BaseModel):
    data: list[ChangeRecordSummary]
    has_more: bool
    offset: int
    max_results: int


class ChangeDetailResponse(BaseModel):
    service: str
    detected_at: datetime
    revision: str
    revision_only: bool
    summary: ChangeSummary
    changes: list[dict[str, Any]]


class DiffLine(BaseModel):
    change_type: str  # "+" addition, "-" deletion, "M" modification
    path: str
    tag: str
    old_value: Any = None
    new_value: Any = None


class DiffResponse(BaseModel):
    service: str
    detected_at: datetime
    changes: list[DiffLine]


class ServiceStatus(BaseModel):
    service_id: str
    name: str | None = None
    tracked: bool
    has_snapshot: bool
    changes: int = 0


class StatusResponse(BaseModel):
    uptime_seconds: int
    services: list[ServiceStatus]


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "0.1.0"
    changes_total: int = 0
