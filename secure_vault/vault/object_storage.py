"""Object storage for uploaded files: S3 in production, local disk or memory otherwise."""

from __future__ import annotations

import threading
from typing import List, Optional, Sequence

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.core.files.base import ContentFile
from django.core.files.storage import FileSystemStorage

from core.logging_utils import get_vault_logger
from vault.exceptions import ObjectStoreError

logger = get_vault_logger()

_S3_DELETE_BATCH = 1000


class BaseObjectStore:
    """Interface shared by every object store backend."""

    def upload(self, path: str, content: bytes, content_type: str) -> None:  # pragma: no cover - abstract
        raise NotImplementedError

    def download(self, path: str) -> bytes:  # pragma: no cover - abstract
        raise NotImplementedError

    def exists(self, path: str) -> bool:  # pragma: no cover - abstract
        raise NotImplementedError

    def list(self, prefix: str) -> List[str]:  # pragma: no cover - abstract
        raise NotImplementedError

    def remove(self, paths: Sequence[str]) -> None:  # pragma: no cover - abstract
        raise NotImplementedError


class S3ObjectStore(BaseObjectStore):
    def __init__(self, bucket: str, *, region: Optional[str] = None, endpoint_url: Optional[str] = None, client=None):
        self.bucket = bucket
        if client is None:
            client_kwargs = {}
            if region:
                client_kwargs["region_name"] = region
            if endpoint_url:
                client_kwargs["endpoint_url"] = endpoint_url
            client = boto3.client("s3", **client_kwargs)
        self._client = client

    def _fail(self, action: str, path: str, exc: Exception):
        logger.error(f"S3 {action} failed", extra_data={"bucket": self.bucket, "path": path, "error": str(exc)})
        raise ObjectStoreError(f"Unable to {action} {path}") from exc

    def upload(self, path, content, content_type):
        if self.exists(path):
            raise ObjectStoreError(f"An object already exists at {path}")
        try:
            self._client.put_object(Bucket=self.bucket, Key=path, Body=content, ContentType=content_type)
        except (ClientError, BotoCoreError) as exc:
            self._fail("upload", path, exc)

    def download(self, path):
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=path)
            return response["Body"].read()
        except (ClientError, BotoCoreError) as exc:
            self._fail("download", path, exc)

    def exists(self, path):
        try:
            self._client.head_object(Bucket=self.bucket, Key=path)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            self._fail("inspect", path, exc)
        except BotoCoreError as exc:
            self._fail("inspect", path, exc)
        return True

    def list(self, prefix):
        keys = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys.extend(item["Key"] for item in page.get("Contents", []))
        except (ClientError, BotoCoreError) as exc:
            self._fail("list", prefix, exc)
        return keys

    def remove(self, paths):
        paths = list(paths)
        for start in range(0, len(paths), _S3_DELETE_BATCH):
            batch = paths[start:start + _S3_DELETE_BATCH]
            try:
                response = self._client.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
                )
            except (ClientError, BotoCoreError) as exc:
                self._fail("remove", batch[0], exc)
            errors = response.get("Errors") or []
            if errors:
                raise ObjectStoreError(f"Unable to remove {len(errors)} object(s), first: {errors[0].get('Key')}")


class LocalObjectStore(BaseObjectStore):
    """Keeps objects under ``VAULT_STORAGE_ROOT/<bucket>`` using Django's file storage."""

    def __init__(self, location):
        self.storage = FileSystemStorage(location=str(location))

    def upload(self, path, content, content_type):
        if self.storage.exists(path):
            raise ObjectStoreError(f"An object already exists at {path}")
        saved = self.storage.save(path, ContentFile(content))
        if saved != path:
            self.storage.delete(saved)
            raise ObjectStoreError(f"An object already exists at {path}")

    def download(self, path):
        try:
            with self.storage.open(path, "rb") as stream:
                return stream.read()
        except FileNotFoundError as exc:
            raise ObjectStoreError(f"No object at {path}") from exc

    def exists(self, path):
        return self.storage.exists(path)

    def list(self, prefix):
        directory = prefix.rstrip("/")
        try:
            _, files = self.storage.listdir(directory)
        except FileNotFoundError:
            return []
        return [f"{directory}/{name}" for name in sorted(files)]

    def remove(self, paths):
        for path in paths:
            self.storage.delete(path)


class InMemoryObjectStore(BaseObjectStore):
    """Process-local store for development and tests. Contents vanish on restart."""

    def __init__(self):
        self._objects = {}
        self._lock = threading.Lock()

    def upload(self, path, content, content_type):
        with self._lock:
            if path in self._objects:
                raise ObjectStoreError(f"An object already exists at {path}")
            self._objects[path] = (bytes(content), content_type)

    def download(self, path):
        try:
            return self._objects[path][0]
        except KeyError as exc:
            raise ObjectStoreError(f"No object at {path}") from exc

    def exists(self, path):
        return path in self._objects

    def list(self, prefix):
        return sorted(path for path in self._objects if path.startswith(prefix))

    def remove(self, paths):
        with self._lock:
            for path in paths:
                self._objects.pop(path, None)


_store_instance: Optional[BaseObjectStore] = None
_store_lock = threading.Lock()


def _build_store() -> BaseObjectStore:
    backend = getattr(settings, "VAULT_OBJECT_STORE_BACKEND", "local")
    bucket = getattr(settings, "VAULT_STORAGE_BUCKET", "secure-files")

    if backend == "s3":
        return S3ObjectStore(
            bucket,
            region=getattr(settings, "VAULT_S3_REGION", None),
            endpoint_url=getattr(settings, "VAULT_S3_ENDPOINT", None),
        )
    if backend == "memory":
        return InMemoryObjectStore()
    if backend == "local":
        root = getattr(settings, "VAULT_STORAGE_ROOT", settings.BASE_DIR / "storage")
        return LocalObjectStore(f"{root}/{bucket}")

    raise ImproperlyConfigured(f"Unknown VAULT_OBJECT_STORE_BACKEND: {backend}")


def get_object_store() -> BaseObjectStore:
    """Return the process wide object store."""
    global _store_instance
    if _store_instance is not None:
        return _store_instance

    with _store_lock:
        if _store_instance is None:
            _store_instance = _build_store()
    return _store_instance


def reset_object_store() -> None:
    global _store_instance
    with _store_lock:
        _store_instance = None
