"""
Document store abstraction for memorial records.

Records are schemaless documents grouped in named collections and addressed by a
string id. Two backends:

- SqlDocumentStore: JSON documents in the `documents` table (SQLAlchemy session).
- FirestoreDocumentStore: Cloud Firestore through firebase_admin.

Payload values equal to SERVER_TIMESTAMP are replaced by the store's clock on write.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Any

from app.petmemorial.models import StoredDocument

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


class DocumentStoreError(RuntimeError):
    pass


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP: Any = _ServerTimestamp()


class DocumentStore:
    def get(self, collection: str, doc_id: str) -> dict | None:
        raise NotImplementedError

    def add(self, collection: str, data: dict) -> str:
        raise NotImplementedError

    def set(self, collection: str, doc_id: str, data: dict, *, merge: bool = False) -> None:
        raise NotImplementedError

    def delete(self, collection: str, doc_id: str) -> None:
        raise NotImplementedError

    def list(self, collection: str) -> list[tuple[str, dict]]:
        raise NotImplementedError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _resolve_timestamps(data: dict, now: datetime) -> dict:
    return {k: (now if v is SERVER_TIMESTAMP else v) for k, v in data.items()}


# JSON column round-trip: datetimes/dates are tagged so they come back as native values.
def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return {"$datetime": value.isoformat()}
    if isinstance(value, date):
        return {"$date": value.isoformat()}
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    return value


def _decode(value: Any) -> Any:
    if isinstance(value, dict):
        if set(value) == {"$datetime"}:
            return datetime.fromisoformat(value["$datetime"])
        if set(value) == {"$date"}:
            return date.fromisoformat(value["$date"])
        return {k: _decode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_decode(v) for v in value]
    return value


class SqlDocumentStore(DocumentStore):
    """
    Documents persisted through the request's SQLAlchemy session.
    Writes are flushed, not committed: the caller owns the transaction.
    """

    def __init__(self, s: "Session"):
        self.s = s

    def _row(self, collection: str, doc_id: str) -> StoredDocument | None:
        return (
            self.s.query(StoredDocument)
            .filter(StoredDocument.collection == collection)
            .filter(StoredDocument.doc_id == doc_id)
            .one_or_none()
        )

    def get(self, collection: str, doc_id: str) -> dict | None:
        row = self._row(collection, doc_id)
        if row is None:
            return None
        return _decode(row.data or {})

    def add(self, collection: str, data: dict) -> str:
        doc_id = uuid.uuid4().hex
        self.set(collection, doc_id, data)
        return doc_id

    def set(self, collection: str, doc_id: str, data: dict, *, merge: bool = False) -> None:
        now = _utcnow()
        payload = _encode(_resolve_timestamps(data, now))
        naive_now = now.replace(tzinfo=None)
        row = self._row(collection, doc_id)
        if row is None:
            row = StoredDocument(collection=collection, doc_id=doc_id, data=payload, created_at=naive_now, updated_at=naive_now)
            self.s.add(row)
        elif merge:
            # Reassign so the JSON column is flagged dirty.
            row.data = {**(row.data or {}), **payload}
            row.updated_at = naive_now
        else:
            row.data = payload
            row.updated_at = naive_now
        self.s.flush()

    def delete(self, collection: str, doc_id: str) -> None:
        row = self._row(collection, doc_id)
        if row is not None:
            self.s.delete(row)
            self.s.flush()

    def list(self, collection: str) -> list[tuple[str, dict]]:
        rows = (
            self.s.query(StoredDocument)
            .filter(StoredDocument.collection == collection)
            .order_by(StoredDocument.created_at.asc(), StoredDocument.id.asc())
            .all()
        )
        return [(r.doc_id, _decode(r.data or {})) for r in rows]


class FirestoreDocumentStore(DocumentStore):
    def __init__(self, client: Any):
        self.client = client

    @staticmethod
    def _prepare(data: dict) -> dict:
        from google.cloud.firestore_v1 import SERVER_TIMESTAMP as FS_SERVER_TIMESTAMP  # type: ignore

        out = {}
        for k, v in data.items():
            if v is SERVER_TIMESTAMP:
                out[k] = FS_SERVER_TIMESTAMP
            elif isinstance(v, date) and not isinstance(v, datetime):
                out[k] = datetime(v.year, v.month, v.day, tzinfo=timezone.utc)
            else:
                out[k] = v
        return out

    def get(self, collection: str, doc_id: str) -> dict | None:
        snap = self.client.collection(collection).document(doc_id).get()
        if not snap.exists:
            return None
        return snap.to_dict() or {}

    def add(self, collection: str, data: dict) -> str:
        _update_time, ref = self.client.collection(collection).add(self._prepare(data))
        return ref.id

    def set(self, collection: str, doc_id: str, data: dict, *, merge: bool = False) -> None:
        self.client.collection(collection).document(doc_id).set(self._prepare(data), merge=merge)

    def delete(self, collection: str, doc_id: str) -> None:
        self.client.collection(collection).document(doc_id).delete()

    def list(self, collection: str) -> list[tuple[str, dict]]:
        return [(snap.id, snap.to_dict() or {}) for snap in self.client.collection(collection).stream()]


def docstore_from_config(config: dict, *, session: "Session | None" = None) -> DocumentStore:
    backend = (config.get("DOCSTORE_BACKEND") or "sql").strip().lower()
    if backend == "firestore":
        try:
            from firebase_admin import firestore  # type: ignore
        except Exception as e:  # pragma: no cover
            raise DocumentStoreError("firebase-admin required for the Firestore document store.") from e
        from app.petmemorial.firebase import firebase_app

        try:
            fb_app = firebase_app(
                (config.get("FIREBASE_CREDENTIALS") or "").strip(),
                (config.get("FIREBASE_PROJECT_ID") or "").strip(),
                storage_bucket=(config.get("FIREBASE_STORAGE_BUCKET") or "").strip(),
            )
            return FirestoreDocumentStore(firestore.client(app=fb_app))
        except Exception as e:
            raise DocumentStoreError(f"Firestore unavailable: {e}") from e
    if backend != "sql":
        raise DocumentStoreError(f"Unknown DOCSTORE_BACKEND: {backend}")
    if session is None:
        raise DocumentStoreError("SqlDocumentStore requires a database session.")
    return SqlDocumentStore(session)
