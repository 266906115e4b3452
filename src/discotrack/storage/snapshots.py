from __future__ import annotations

import hashlib
import json
import os
import tempfile
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any
from urllib.parse import quote

import structlog

from discotrack.config import get_tracker_config
from discotrack.errors import StorageError
from discotrack.models.schemas import DocumentSnapshot

logger = structlog.get_logger()


def canonical_json(document: Any) -> str:
    return json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def fingerprint(document: Any) -> str:
    """SHA-256 of the canonical JSON form."""
    return hashlib.sha256(canonical_json(document).encode("utf-8")).hexdigest()


class StagedSnapshot:
    """A snapshot written to a temporary file, not yet visible to ``load``."""

    def __init__(self, snapshot: DocumentSnapshot, tmp_path: Path, target: Path) -> None:
        self.snapshot = snapshot
        self._tmp_path = tmp_path
        self._target = target
        self._done = False

    def commit(self) -> DocumentSnapshot:
        if self._done:
            raise StorageError(f"Snapshot for {self.snapshot.service_id} already committed or discarded")
        try:
            os.replace(self._tmp_path, self._target)
        except OSError as e:
            self.discard()
            raise StorageError(f"Failed to publish snapshot for {self.snapshot.service_id}: {e}") from e
        self._done = True
        logger.debug("snapshot_published", service_id=self.snapshot.service_id, path=str(self._target))
        return self.snapshot

    def discard(self) -> None:
        if self._done:
            return
        self._done = True
        try:
            self._tmp_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("snapshot_discard_failed", path=str(self._tmp_path), error=str(e))


class SnapshotStore:
    """Latest discovery document per service, one JSON file each."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create snapshot directory {self.root}: {e}") from e

    def path_for(self, service_id: str) -> Path:
        # Percent-encoding keeps distinct service ids in distinct files
        return self.root / f"{quote(service_id, safe='')}.json"

    def load(self, service_id: str) -> DocumentSnapshot | None:
        path = self.path_for(service_id)
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            snapshot = DocumentSnapshot.model_validate(data)
        except (OSError, ValueError) as e:
            raise StorageError(f"Failed to read snapshot for {service_id}: {e}") from e
        if snapshot.service_id != service_id:
            raise StorageError(
                f"Snapshot at {path} belongs to {snapshot.service_id}, not {service_id}"
            )
        return snapshot

    def stage(self, service_id: str, document: dict[str, Any], fetched_at: datetime | None = None) -> StagedSnapshot:
        snapshot = DocumentSnapshot(
            service_id=service_id,
            fetched_at=fetched_at or datetime.now(timezone.utc),
            fingerprint=fingerprint(document),
            document=document,
        )
        target = self.path_for(service_id)
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=f".{target.stem}.", suffix=".tmp")
        except OSError as e:
            raise StorageError(f"Failed to create snapshot file for {service_id}: {e}") from e
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(snapshot.model_dump_json())
                f.flush()
                os.fsync(f.fileno())
        except (OSError, TypeError, ValueError) as e:
            tmp_path.unlink(missing_ok=True)
            raise StorageError(f"Failed to write snapshot for {service_id}: {e}") from e
        return StagedSnapshot(snapshot, tmp_path, target)

    def store(self, service_id: str, document: dict[str, Any], fetched_at: datetime | None = None) -> DocumentSnapshot:
        return self.stage(service_id, document, fetched_at).commit()

    def list_services(self) -> list[str]:
        """Service ids with a published snapshot, sorted."""
        services = []
        for path in sorted(self.root.glob("*.json")):
            try:
                with open(path, encoding="utf-8") as f:
                    services.append(json.load(f)["service_id"])
            except (OSError, ValueError, KeyError) as e:
                logger.warning("snapshot_unreadable", path=str(path), error=str(e))
        return sorted(services)


@lru_cache
def get_snapshot_store() -> SnapshotStore:
    return SnapshotStore(get_tracker_config().storage_path)
