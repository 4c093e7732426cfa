"""
Object storage for lab images (logos, signatures, report template artwork).

Keys are always lab-prefixed: ``<lab_id>/<folder>/<epoch ms>.<ext>``. A key that does
not start with the caller's lab id belongs to another tenant and is refused.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    """Backend failure or missing object."""


def lab_key(lab_id: int, folder: str, ext: str, *, now_ms: int | None = None) -> str:
    ts = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{lab_id}/{folder}/{ts}.{ext.lstrip('.')}"


def is_lab_key(lab_id: int, key: str | None) -> bool:
    key = (key or "").strip()
    return key.startswith(f"{lab_id}/") and ".." not in key.split("/")


class Storage:
    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        raise NotImplementedError

    def open(self, key: str) -> BinaryIO:
        raise NotImplementedError

    def read_bytes(self, key: str) -> bytes:
        with self.open(key) as fobj:
            return fobj.read()

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


@dataclass(frozen=True)
class LocalStorage(Storage):
    root: Path

    def _resolve(self, key: str) -> Path:
        rel = key.replace("\\", "/").lstrip("/")
        target = (self.root / rel).resolve()
        if self.root.resolve() not in target.parents:
            raise StorageError(f"Invalid storage key: {key}")
        return target

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        target = self._resolve(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    def open(self, key: str) -> BinaryIO:
        try:
            return self._resolve(key).open("rb")
        except FileNotFoundError as e:
            raise StorageError(f"Object not found: {key}") from e

    def exists(self, key: str) -> bool:
        return self._resolve(key).is_file()

    def delete(self, key: str) -> None:
        self._resolve(key).unlink(missing_ok=True)


@dataclass(frozen=True)
class S3Storage(Storage):
    """S3 or an S3-compatible endpoint such as DigitalOcean Spaces."""

    endpoint: str
    region: str
    bucket: str
    access_key_id: str
    secret_access_key: str

    def _client(self):
        import boto3

        endpoint_url = None
        if self.endpoint:
            endpoint_url = self.endpoint if "://" in self.endpoint else f"https://{self.endpoint}"
        return boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id or None,
            aws_secret_access_key=self.secret_access_key or None,
        )

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        kwargs: dict[str, object] = {"Bucket": self.bucket, "Key": key, "Body": data}
        if content_type:
            kwargs["ContentType"] = content_type
        try:
            self._client().put_object(**kwargs)
        except Exception as e:
            logger.error("S3 upload failed (bucket=%s key=%s): %s", self.bucket, key, e)
            raise StorageError(f"Upload failed: {e}") from e

    def open(self, key: str) -> BinaryIO:
        try:
            resp = self._client().get_object(Bucket=self.bucket, Key=key)
        except Exception as e:
            raise StorageError(f"Object not found: {key}") from e
        return resp["Body"]  # type: ignore[return-value]

    def exists(self, key: str) -> bool:
        try:
            self._client().head_object(Bucket=self.bucket, Key=key)
        except Exception:
            return False
        return True

    def delete(self, key: str) -> None:
        try:
            self._client().delete_object(Bucket=self.bucket, Key=key)
        except Exception as e:
            logger.error("S3 delete failed (bucket=%s key=%s): %s", self.bucket, key, e)
            raise StorageError(f"Delete failed: {e}") from e


def storage_from_config(config: dict) -> Storage:
    def opt(name: str) -> str:
        return (config.get(name) or "").strip()

    if opt("STORAGE_BACKEND").lower() == "s3":
        return S3Storage(
            endpoint=opt("S3_ENDPOINT"),
            region=opt("S3_REGION"),
            bucket=opt("S3_BUCKET"),
            access_key_id=opt("S3_ACCESS_KEY_ID"),
            secret_access_key=opt("S3_SECRET_ACCESS_KEY"),
        )
    root = opt("STORAGE_ROOT")
    return LocalStorage(root=Path(root) if root else Path(os.getcwd()) / "storage")


def read_optional(storage: Storage, key: str | None) -> bytes | None:
    """Object bytes, or None when the key is empty or the object is missing."""
    if not key:
        return None
    try:
        return storage.read_bytes(key)
    except StorageError as e:
        logger.warning("Storage object unavailable (key=%s): %s", key, e)
        return None
