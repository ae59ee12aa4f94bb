from __future__ import annotations

import logging
import os
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from manifest_billing.core.config import settings
from manifest_billing.core.logging import get_logger, log_event, log_exception, monotonic_ms

logger = get_logger(__name__)

_KEY_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-/]*$")


class StorageError(RuntimeError):
    pass


class StorageWriteFailure(StorageError):
    """A snapshot could not be written; the caller's in-memory state is not durable."""


@dataclass(frozen=True)
class StoredObject:
    key: str
    byte_size: int


def _check_key(key: str) -> str:
    if not _KEY_RE.match(key) or ".." in key:
        raise StorageError(f"Invalid storage key: {key!r}")
    return key


class BlobStore:
    backend = "abstract"

    def get(self, *, key: str) -> bytes | None:  # pragma: no cover
        raise NotImplementedError

    def set(self, *, key: str, body: bytes) -> StoredObject:  # pragma: no cover
        raise NotImplementedError

    def remove(self, *, key: str) -> None:  # pragma: no cover
        raise NotImplementedError


class MemoryBlobStore(BlobStore):
    backend = "memory"

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    def get(self, *, key: str) -> bytes | None:
        return self._data.get(_check_key(key))

    def set(self, *, key: str, body: bytes) -> StoredObject:
        self._data[_check_key(key)] = bytes(body)
        return StoredObject(key=key, byte_size=len(body))

    def remove(self, *, key: str) -> None:
        self._data.pop(_check_key(key), None)

    def keys(self) -> list[str]:
        return sorted(self._data)


class LocalBlobStore(BlobStore):
    backend = "local"

    def __init__(self, root: Path):
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self._root / f"{_check_key(key)}.json"

    def set(self, *, key: str, body: bytes) -> StoredObject:
        start = time.monotonic()
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(body)
            os.replace(tmp, path)
        except OSError as e:
            log_exception(
                logger,
                "storage.set.failure",
                backend="local",
                storage_key=key,
                byte_size=len(body),
            )
            raise StorageWriteFailure(f"Could not write {key}") from e
        log_event(
            logger,
            "storage.set.success",
            level=logging.DEBUG,
            backend="local",
            storage_key=key,
            byte_size=len(body),
            duration_ms=monotonic_ms(start),
        )
        return StoredObject(key=key, byte_size=len(body))

    def get(self, *, key: str) -> bytes | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_bytes()
        except OSError as e:
            log_exception(logger, "storage.get.failure", backend="local", storage_key=key)
            raise StorageError(f"Could not read {key}") from e

    def remove(self, *, key: str) -> None:
        path = self._path(key)
        if path.exists():
            try:
                path.unlink()
            except OSError as e:
                log_exception(logger, "storage.remove.failure", backend="local", storage_key=key)
                raise StorageWriteFailure(f"Could not remove {key}") from e


_TRANSIENT_S3_CODES = frozenset(
    {"RequestTimeout", "Throttling", "ThrottlingException", "SlowDown", "InternalError", "ServiceUnavailable"}
)
_MISSING_S3_CODES = frozenset({"NoSuchKey", "404"})


def _s3_error_code(error: Exception) -> str | None:
    if isinstance(error, ClientError):
        return (error.response.get("Error") or {}).get("Code")
    return None


class S3BlobStore(BlobStore):
    """Snapshots as `<key>.json` objects in one bucket (S3 or an S3-compatible endpoint)."""

    backend = "s3"
    max_attempts = 4

    def __init__(self, client: Any | None = None) -> None:
        self._bucket = settings.s3_bucket
        self._client = client if client is not None else self._client_from_settings()

    @staticmethod
    def _client_from_settings() -> Any:
        region = settings.s3_region
        if not region or region.lower() == "auto":
            region = "us-east-1"
        session = boto3.session.Session(
            aws_access_key_id=settings.s3_access_key_id,
            aws_secret_access_key=settings.s3_secret_access_key,
            region_name=region,
        )
        config = BotoConfig(
            retries={"max_attempts": 3, "mode": "adaptive"},
            connect_timeout=30,
            read_timeout=60,
        )
        return session.client("s3", endpoint_url=settings.s3_endpoint_url or None, config=config)

    @staticmethod
    def _backoff_s(attempt: int) -> float:
        # 0.25s, 0.5s, 1s, ... capped at 3s
        return min(3.0, 0.25 * 2 ** (attempt - 1))

    @staticmethod
    def _is_transient(error: Exception) -> bool:
        if isinstance(error, ClientError):
            return _s3_error_code(error) in _TRANSIENT_S3_CODES
        return isinstance(error, BotoCoreError)

    def _call(self, op: str, key: str, fn: Callable[[], Any]) -> Any:
        attempt = 1
        while True:
            try:
                return fn()
            except (BotoCoreError, ClientError) as e:
                if attempt >= self.max_attempts or not self._is_transient(e):
                    raise
                delay_s = self._backoff_s(attempt)
                log_event(
                    logger,
                    f"storage.{op}.retry",
                    level=logging.WARNING,
                    backend="s3",
                    storage_key=key,
                    attempt=attempt,
                    delay_s=delay_s,
                    error_code=_s3_error_code(e),
                )
                time.sleep(delay_s)
                attempt += 1

    def set(self, *, key: str, body: bytes) -> StoredObject:
        object_key = f"{_check_key(key)}.json"
        start = time.monotonic()
        try:
            self._call(
                "set",
                key,
                lambda: self._client.put_object(
                    Bucket=self._bucket, Key=object_key, Body=body, ContentType="application/json"
                ),
            )
        except (BotoCoreError, ClientError) as e:
            log_exception(logger, "storage.set.failure", backend="s3", storage_key=key, byte_size=len(body))
            raise StorageWriteFailure(f"Could not write {key}") from e
        log_event(
            logger,
            "storage.set.success",
            level=logging.DEBUG,
            backend="s3",
            storage_key=key,
            byte_size=len(body),
            duration_ms=monotonic_ms(start),
        )
        return StoredObject(key=key, byte_size=len(body))

    def get(self, *, key: str) -> bytes | None:
        object_key = f"{_check_key(key)}.json"
        try:
            resp = self._call(
                "get", key, lambda: self._client.get_object(Bucket=self._bucket, Key=object_key)
            )
        except (BotoCoreError, ClientError) as e:
            if _s3_error_code(e) in _MISSING_S3_CODES:
                return None
            log_exception(logger, "storage.get.failure", backend="s3", storage_key=key)
            raise StorageError(f"Could not read {key}") from e
        return resp["Body"].read()

    def remove(self, *, key: str) -> None:
        object_key = f"{_check_key(key)}.json"
        try:
            self._call(
                "remove",
                key,
                lambda: self._client.delete_object(Bucket=self._bucket, Key=object_key),
            )
        except (BotoCoreError, ClientError) as e:
            log_exception(logger, "storage.remove.failure", backend="s3", storage_key=key)
            raise StorageWriteFailure(f"Could not remove {key}") from e


_storage: BlobStore | None = None


def get_storage() -> BlobStore:
    global _storage  # noqa: PLW0603
    if _storage is not None:
        return _storage

    if settings.storage_backend == "s3":
        _storage = S3BlobStore()
    elif settings.storage_backend == "memory":
        _storage = MemoryBlobStore()
    else:
        root = settings.local_storage_path
        if not root.is_absolute():
            root = Path(os.getcwd()) / root
        _storage = LocalBlobStore(root)
    return _storage


def diagnose_storage(*, write_test: bool = False) -> dict[str, Any]:
    """
    Best-effort health check of the configured blob store.

    When write_test=True, writes, reads back and removes a small diagnostics key.
    """
    start = time.monotonic()
    try:
        storage = get_storage()
    except Exception as e:  # noqa: BLE001
        return {"ok": False, "backend": settings.storage_backend, "error_type": type(e).__name__}

    result: dict[str, Any] = {"ok": True, "backend": storage.backend}
    if not write_test:
        return result

    key = f"diagnostics/healthz-{time.time_ns()}"
    body = b'{"ok": true}'
    try:
        storage.set(key=key, body=body)
        out = storage.get(key=key)
        storage.remove(key=key)
    except StorageError as e:
        result["ok"] = False
        result["error_type"] = type(e).__name__
        result["error"] = str(e)
        return result

    result["write_test"] = {
        "ok": out == body,
        "key": key,
        "duration_ms": monotonic_ms(start),
    }
    if out != body:
        result["ok"] = False
    return result
