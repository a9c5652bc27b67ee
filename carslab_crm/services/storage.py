from __future__ import annotations

import hashlib
import io
import json
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

import boto3
from botocore.client import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseUpload

from carslab_crm.core.config import settings
from carslab_crm.core.exceptions import StorageException
from carslab_crm.core.logging_setup import logger

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"  # nosec B105
GOOGLE_DRIVE_SCOPES = ["https://www.googleapis.com/auth/drive.file"]
METADATA_SUFFIX = ".metadata"


@dataclass
class StoredFile:
    storage_key: str
    size: int
    etag: str


@dataclass
class StorageMetadata:
    size: int
    content_type: str
    last_modified: datetime
    etag: str
    custom_metadata: dict[str, str] = field(default_factory=dict)


class StorageProvider(Protocol):
    def store(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        metadata: dict[str, str] | None = None,
    ) -> StoredFile:
        ...

    def retrieve(self, key: str) -> bytes | None:
        ...

    def delete(self, key: str) -> bool:
        ...

    def exists(self, key: str) -> bool:
        ...

    def presigned_url(self, key: str, expires_seconds: int = 3600) -> str | None:
        ...


def resolve_storage_root() -> Path:
    """
    Directory where local files are kept. ``CARSLAB_STORAGE`` is read at call
    time so that tests can redirect it.
    """
    raw = os.getenv("CARSLAB_STORAGE") or settings.storage_root()
    return Path(raw).expanduser()


def _etag(data: bytes) -> str:
    return hashlib.md5(data, usedforsecurity=False).hexdigest()


@dataclass
class LocalFileStorageProvider:
    base_dir: Path

    def __post_init__(self) -> None:
        self.base_dir = Path(self.base_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        target = (self.base_dir / key).resolve()
        if target != self.base_dir and self.base_dir not in target.parents:
            raise StorageException(f"Invalid storage key: {key}")
        return target

    def store(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        metadata: dict[str, str] | None = None,
    ) -> StoredFile:
        target = self._path(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            logger.error("Failed to store file %s: %s", key, exc)
            raise StorageException("Failed to store file", {"key": key}) from exc

        side_car = {"content_type": content_type, **(metadata or {})}
        try:
            Path(f"{target}{METADATA_SUFFIX}").write_text(json.dumps(side_car), encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to save metadata for %s: %s", key, exc)

        logger.debug("Stored file %s (%s bytes)", key, len(data))
        return StoredFile(storage_key=key, size=len(data), etag=_etag(data))

    def retrieve(self, key: str) -> bytes | None:
        target = self._path(key)
        if not target.is_file():
            return None
        return target.read_bytes()

    def delete(self, key: str) -> bool:
        target = self._path(key)
        Path(f"{target}{METADATA_SUFFIX}").unlink(missing_ok=True)
        if not target.exists():
            return False
        target.unlink()
        return True

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def presigned_url(self, key: str, expires_seconds: int = 3600) -> str | None:  # noqa: ARG002
        return None

    def get_metadata(self, key: str) -> StorageMetadata | None:
        target = self._path(key)
        if not target.is_file():
            return None
        custom: dict[str, str] = {}
        side_car = Path(f"{target}{METADATA_SUFFIX}")
        if side_car.exists():
            try:
                custom = json.loads(side_car.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                logger.warning("Failed to load metadata for %s: %s", key, exc)
        content_type = custom.pop("content_type", "application/octet-stream")
        stat = target.stat()
        return StorageMetadata(
            size=stat.st_size,
            content_type=content_type,
            last_modified=datetime.utcfromtimestamp(stat.st_mtime),
            etag=_etag(target.read_bytes()),
            custom_metadata=custom,
        )


@dataclass
class S3StorageProvider:
    bucket: str
    client: Any

    def store(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        metadata: dict[str, str] | None = None,
    ) -> StoredFile:
        try:
            response = self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata=metadata or {},
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error("Failed to upload %s to bucket %s: %s", key, self.bucket, exc)
            raise StorageException("Failed to store file", {"key": key}) from exc
        etag = str(response.get("ETag", "")).strip('"') or _etag(data)
        return StoredFile(storage_key=key, size=len(data), etag=etag)

    def retrieve(self, key: str) -> bytes | None:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in {"NoSuchKey", "404"}:
                return None
            raise StorageException("Failed to retrieve file", {"key": key}) from exc
        body = response.get("Body")
        return body.read() if body else b""

    def delete(self, key: str) -> bool:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            logger.error("Failed to delete %s from bucket %s: %s", key, self.bucket, exc)
            return False
        return True

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError:
            return False
        return True

    def presigned_url(self, key: str, expires_seconds: int = 3600) -> str | None:
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_seconds,
        )


class GoogleDriveStorageProvider:
    """Stores files in a single Drive folder, using the storage key as the file name."""

    def __init__(self, service: Any, folder_id: str) -> None:
        self.service = service
        self.folder_id = folder_id

    @classmethod
    def from_settings(cls) -> "GoogleDriveStorageProvider":
        if not (
            settings.google_drive_client_id
            and settings.google_drive_client_secret
            and settings.google_drive_refresh_token
            and settings.google_drive_folder_id
        ):
            raise StorageException("Google Drive storage is not configured")
        creds = Credentials(
            token=None,
            refresh_token=settings.google_drive_refresh_token,
            client_id=settings.google_drive_client_id,
            client_secret=settings.google_drive_client_secret,
            token_uri=GOOGLE_TOKEN_URI,
            scopes=GOOGLE_DRIVE_SCOPES,
        )
        service = build("drive", "v3", credentials=creds, cache_discovery=False)
        return cls(service, settings.google_drive_folder_id)

    def _find_file_id(self, key: str) -> str | None:
        escaped = key.replace("\\", "\\\\").replace("'", "\\'")
        query = f"name = '{escaped}' and '{self.folder_id}' in parents and trashed = false"
        response = (
            self.service.files()
            .list(q=query, spaces="drive", fields="files(id, name)", pageSize=1)
            .execute()
        )
        files = response.get("files", [])
        return files[0]["id"] if files else None

    def store(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        metadata: dict[str, str] | None = None,
    ) -> StoredFile:
        media = MediaIoBaseUpload(io.BytesIO(data), mimetype=content_type, resumable=False)
        body = {"name": key, "parents": [self.folder_id], "appProperties": metadata or {}}
        try:
            existing = self._find_file_id(key)
            if existing:
                self.service.files().update(fileId=existing, media_body=media).execute()
            else:
                self.service.files().create(body=body, media_body=media, fields="id").execute()
        except HttpError as exc:
            logger.error("Failed to upload %s to Google Drive: %s", key, exc)
            raise StorageException("Failed to store file", {"key": key}) from exc
        return StoredFile(storage_key=key, size=len(data), etag=_etag(data))

    def retrieve(self, key: str) -> bytes | None:
        try:
            file_id = self._find_file_id(key)
            if not file_id:
                return None
            return self.service.files().get_media(fileId=file_id).execute()
        except HttpError as exc:
            raise StorageException("Failed to retrieve file", {"key": key}) from exc

    def delete(self, key: str) -> bool:
        try:
            file_id = self._find_file_id(key)
            if not file_id:
                return False
            self.service.files().delete(fileId=file_id).execute()
        except HttpError as exc:
            logger.error("Failed to delete %s from Google Drive: %s", key, exc)
            return False
        return True

    def exists(self, key: str) -> bool:
        try:
            return self._find_file_id(key) is not None
        except HttpError:
            return False

    def presigned_url(self, key: str, expires_seconds: int = 3600) -> str | None:  # noqa: ARG002
        return None


def _build_s3_provider() -> S3StorageProvider:
    client = boto3.client(
        "s3",
        endpoint_url=settings.s3_endpoint_url,
        aws_access_key_id=settings.s3_access_key,
        aws_secret_access_key=settings.s3_secret_key,
        config=BotoConfig(signature_version="s3v4"),
        region_name=settings.s3_region,
    )
    return S3StorageProvider(bucket=settings.s3_bucket, client=client)


def get_storage_provider() -> StorageProvider:
    # Tests always use the local filesystem unless explicitly allowed otherwise
    if os.getenv("PYTEST_CURRENT_TEST") and os.getenv("CARSLAB_ALLOW_REMOTE_STORAGE_IN_TESTS") != "1":
        return LocalFileStorageProvider(base_dir=resolve_storage_root())

    provider = settings.storage_provider.strip().lower()
    if provider == "s3":
        return _build_s3_provider()
    if provider == "google_drive":
        return GoogleDriveStorageProvider.from_settings()
    return LocalFileStorageProvider(base_dir=resolve_storage_root())


def get_backup_provider() -> StorageProvider | None:
    if not settings.backup_enabled:
        return None
    return GoogleDriveStorageProvider.from_settings()
