from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO
from urllib.parse import quote

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    pass


class StorageUnavailableError(StorageError):
    """The configured blob storage backend cannot be used (missing settings or library)."""


class Storage:
    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        raise NotImplementedError

    def open(self, key: str) -> BinaryIO:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def public_url(self, key: str) -> str:
        raise NotImplementedError


def _safe_key(key: str) -> str:
    return key.lstrip("/").replace("\\", "/")


@dataclass(frozen=True)
class LocalStorage(Storage):
    root: Path
    base_url: str = ""

    def _path(self, key: str) -> Path:
        p = (self.root / _safe_key(key)).resolve()
        if self.root.resolve() not in p.parents:
            raise StorageError(f"Invalid storage key: {key!r}")
        return p

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        p = self._path(key)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)

    def open(self, key: str) -> BinaryIO:
        p = self._path(key)
        return p.open("rb")

    def exists(self, key: str) -> bool:
        return self._path(key).exists()

    def public_url(self, key: str) -> str:
        # Served back by the app itself (routes.media).
        return f"{self.base_url.rstrip('/')}/media/{quote(_safe_key(key))}"


@dataclass(frozen=True)
class S3Storage(Storage):
    endpoint: str
    region: str
    bucket: str
    access_key_id: str
    secret_access_key: str
    public_base_url: str = ""

    def _client(self):
        try:
            import boto3  # type: ignore
        except Exception as e:  # pragma: no cover
            raise StorageUnavailableError("boto3 required for S3 storage. Install boto3.") from e
        return boto3.client(
            "s3",
            endpoint_url=f"https://{self.endpoint}" if self.endpoint else None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
        )

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        extra: dict[str, object] = {"ACL": "public-read"}
        if content_type:
            extra["ContentType"] = content_type
        self._client().put_object(Bucket=self.bucket, Key=key, Body=data, **extra)

    def open(self, key: str) -> BinaryIO:
        obj = self._client().get_object(Bucket=self.bucket, Key=key)
        return obj["Body"]  # type: ignore[return-value]

    def exists(self, key: str) -> bool:
        from botocore.exceptions import ClientError

        try:
            self._client().head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError:
            return False

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{quote(key)}"
        # Virtual-hosted style (e.g. https://bucket.nyc3.digitaloceanspaces.com/key)
        return f"https://{self.bucket}.{self.endpoint}/{quote(key)}"


@dataclass(frozen=True)
class FirebaseStorage(Storage):
    """Firebase (Google Cloud Storage) bucket; uploaded blobs are made public."""

    bucket_name: str
    credentials_path: str = ""
    project_id: str = ""

    def _bucket(self):
        try:
            from firebase_admin import storage as fb_storage  # type: ignore
        except Exception as e:  # pragma: no cover
            raise StorageUnavailableError("firebase-admin required for Firebase storage.") from e
        from app.petmemorial.firebase import firebase_app

        return fb_storage.bucket(
            self.bucket_name,
            app=firebase_app(self.credentials_path, self.project_id, storage_bucket=self.bucket_name),
        )

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        blob = self._bucket().blob(key)
        blob.upload_from_string(data, content_type=content_type or "application/octet-stream")
        blob.make_public()

    def open(self, key: str) -> BinaryIO:
        import io

        return io.BytesIO(self._bucket().blob(key).download_as_bytes())

    def exists(self, key: str) -> bool:
        return bool(self._bucket().blob(key).exists())

    def public_url(self, key: str) -> str:
        return self._bucket().blob(key).public_url


_S3_REQUIRED = ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")


def missing_storage_settings(config: dict) -> list[str]:
    backend = (config.get("STORAGE_BACKEND") or "local").strip().lower()
    if backend == "s3":
        return [k for k in _S3_REQUIRED if not (config.get(k) or "").strip()]
    if backend == "firebase":
        return [k for k in ("FIREBASE_STORAGE_BUCKET",) if not (config.get(k) or "").strip()]
    return []


def storage_from_config(config: dict, *, base_url: str | None = None) -> Storage:
    backend = (config.get("STORAGE_BACKEND") or "local").strip().lower()
    missing = missing_storage_settings(config)
    if missing:
        raise StorageUnavailableError(f"Armazenamento de imagens não está disponível (faltando: {', '.join(missing)}).")
    if backend == "s3":
        return S3Storage(
            endpoint=(config.get("S3_ENDPOINT") or "").strip(),
            region=(config.get("S3_REGION") or "nyc3").strip(),
            bucket=(config.get("S3_BUCKET") or "").strip(),
            access_key_id=(config.get("S3_ACCESS_KEY_ID") or "").strip(),
            secret_access_key=(config.get("S3_SECRET_ACCESS_KEY") or "").strip(),
            public_base_url=(config.get("S3_PUBLIC_BASE_URL") or "").strip(),
        )
    if backend == "firebase":
        return FirebaseStorage(
            bucket_name=(config.get("FIREBASE_STORAGE_BUCKET") or "").strip(),
            credentials_path=(config.get("FIREBASE_CREDENTIALS") or "").strip(),
            project_id=(config.get("FIREBASE_PROJECT_ID") or "").strip(),
        )
    if backend != "local":
        raise StorageUnavailableError(f"Armazenamento de imagens não está disponível (backend desconhecido: {backend}).")
    root_setting = (config.get("STORAGE_LOCAL_ROOT") or "").strip()
    root = Path(root_setting) if root_setting else Path(os.getcwd()) / "storage"
    return LocalStorage(root=root, base_url=(config.get("PUBLIC_BASE_URL") or base_url or "").strip())
