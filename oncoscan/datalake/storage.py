from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Protocol

from ..errors import PersistenceError


logger = logging.getLogger(__name__)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision and a ``Z`` suffix."""
    text = value.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    return text.replace("+00:00", "Z")


@dataclass(frozen=True)
class PredictionRecord:
    id: str
    result: str
    suggestion: str
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "result": self.result,
            "suggestion": self.suggestion,
            "createdAt": format_timestamp(self.created_at),
        }


@dataclass(frozen=True)
class StoredRecord:
    record_id: str
    data: Dict[str, Any]


class RecordStore(Protocol):
    def store(self, record: PredictionRecord) -> None: ...

    def list_all(self) -> List[StoredRecord]: ...


class FileSystemRecordStore:
    """Store prediction records as JSON files on the local filesystem."""

    def __init__(self, root: Path) -> None:
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def store(self, record: PredictionRecord) -> None:
        created = record.created_at.astimezone(timezone.utc)
        date_dir = self._root / created.strftime("%Y/%m/%d")
        path = date_dir / f"{record.id}.json"
        tmp_path = path.with_name(f"{path.name}.tmp")
        try:
            date_dir.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(record.to_dict(), indent=2), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as exc:
            raise PersistenceError(f"Failed to store prediction {record.id}: {exc}") from exc
        logger.debug("Stored prediction record path=%s", path)

    def list_all(self) -> List[StoredRecord]:
        records: List[StoredRecord] = []
        for path in sorted(self._root.rglob("*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except OSError as exc:
                raise PersistenceError(f"Failed to read prediction {path.stem}: {exc}") from exc
            except json.JSONDecodeError:
                logger.warning("Skipping unreadable prediction record path=%s", path)
                continue
            if isinstance(data, dict):
                records.append(StoredRecord(record_id=path.stem, data=data))
        return records


class FirestoreRecordStore:
    """Store prediction records as documents of a Firestore collection."""

    def __init__(
        self,
        collection: str = "predictions",
        *,
        client: Any | None = None,
        project: str | None = None,
        database: str | None = None,
        timeout: float | None = None,
    ) -> None:
        if client is None:
            from google.auth.exceptions import GoogleAuthError
            from google.cloud import firestore

            kwargs: Dict[str, Any] = {}
            if project:
                kwargs["project"] = project
            if database:
                kwargs["database"] = database
            try:
                client = firestore.Client(**kwargs)
            except GoogleAuthError as exc:
                raise PersistenceError(f"Cannot create Firestore client: {exc}") from exc
        self._client = client
        self._collection_name = collection
        self._timeout = timeout

    def store(self, record: PredictionRecord) -> None:
        from google.api_core import exceptions as api_exceptions

        document = self._client.collection(self._collection_name).document(record.id)
        try:
            document.set(record.to_dict(), timeout=self._timeout)
        except api_exceptions.GoogleAPIError as exc:
            raise _persistence_error(exc, f"Failed to store prediction {record.id}") from exc

    def list_all(self) -> List[StoredRecord]:
        from google.api_core import exceptions as api_exceptions

        collection = self._client.collection(self._collection_name)
        try:
            return [
                StoredRecord(record_id=snapshot.id, data=snapshot.to_dict() or {})
                for snapshot in collection.stream(timeout=self._timeout)
            ]
        except api_exceptions.GoogleAPIError as exc:
            raise _persistence_error(exc, "Failed to list predictions") from exc


def _persistence_error(exc: Exception, context: str) -> PersistenceError:
    status = getattr(exc, "code", None)
    message = getattr(exc, "message", None) or str(exc) or context
    return PersistenceError(message, status_code=int(status) if isinstance(status, int) else None)


__all__ = [
    "PredictionRecord",
    "StoredRecord",
    "RecordStore",
    "FileSystemRecordStore",
    "FirestoreRecordStore",
    "format_timestamp",
]
