from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from enum import Enum

from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field


class ChangeKind(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"


class ChangeTag(str, Enum):
    NEW_METHOD = "new_method"
    REMOVED_METHOD = "removed_method"
    PARAMETER_CHANGE = "parameter_change"
    REVISION_ONLY = "revision_only"
    OTHER = "other"


class CycleState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    DIFFING = "diffing"
    PERSISTING = "persisting"
    NOTIFYING = "notifying"


class ChangeRecordRow(SQLModel, table=True):
    __tablename__ = "change_records"
    __table_args__ = (
        UniqueConstraint("service_id", "detected_at", name="uq_change_records_service_detected_at"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)

    service_id: str = Field(index=True)
    # UTC
    detected_at: datetime = Field(index=True)
    revision: str = "unknown"
    revision_only: bool = False

    tags: str = "[]"  # JSON list stored as string
    entries: str = "[]"  # JSON list stored as string

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
