import hashlib
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import NotFound, QuotaExceeded, StorageUnavailable
from .ids import generate_id
from .logs import get_logger


logger = get_logger("storage")

_MISSING_OBJECT_CODES = {"NoSuchKey", "404", "NotFound"}


@dataclass(frozen=True)
class StorageHandle:
    """Location of one stored object: the backend that owns it and its path."""

    backend: str
    path: str

    def __str__(self) -> str:
        return f"{self.backend}:{self.path}"


class StorageBackend(ABC):
    name = ""

    @abstractmethod
    def put(self, data: bytes) -> StorageHandle:
        """Store *data* and return a handle owned by the caller."""

    @abstractmethod
    def get(self, handle: StorageHandle) -> BinaryIO:
        """Open a stored object for reading."""

    @abstractmethod
    def delete(self, handle: StorageHandle) -> None:
        """Remove a stored object. A missing object counts as deleted."""

    @abstractmethod
    def exists(self, handle: StorageHandle) -> bool:
        ...

    def read(self, handle: StorageHandle) -> bytes:
        stream = self.get(handle)
        try:
            return stream.read()
        finally:
            stream.close()


class LocalStorageBackend(StorageBackend):
    """Filesystem store sharded by the first two characters of the digest."""

    name = "local"

    def __init__(self, root: Path, quota_bytes: Optional[int] = None) -> None:
        self.root = Path(root)
        self.quota_bytes = quota_bytes

    def _resolve(self, handle: StorageHandle) -> Path:
        candidate = (self.root / handle.path).resolve()
        root = self.root.resolve()
        if candidate == root or root not in candidate.parents:
            raise NotFound(f"Invalid storage path: {handle.path}")
        return candidate

    def usage_bytes(self) -> int:
        total = 0
        if not self.root.exists():
            return 0
        for entry in self.root.rglob("*"):
            if entry.is_file() and not entry.name.endswith(".tmp"):
                try:
                    total += entry.stat().st_size
                except OSError:
                    continue
        return total

    def _enforce_quota(self, size: int) -> None:
        if self.quota_bytes is None:
            return
        current_usage = self.usage_bytes()
        if current_usage + size > self.quota_bytes:
            logger.warning(
                "storage_quota_exceeded size=%d usage=%d limit=%d",
                size,
                current_usage,
                self.quota_bytes,
            )
            raise QuotaExceeded(current_usage, self.quota_bytes)

    def put(self, data: bytes) -> StorageHandle:
        self._enforce_quota(len(data))
        digest = hashlib.sha256(data).hexdigest()
        # The random suffix keeps identical uploads in separate objects so
        # each path is owned by exactly one paste.
        relative = f"{digest[:2]}/{digest}_{generate_id(12)}"
        handle = StorageHandle(self.name, relative)
        destination = self.root / relative
        temp_path = destination.with_name(f"{destination.name}.tmp")
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            old_umask = os.umask(0o077)
            try:
                with temp_path.open("wb") as target:
                    target.write(data)
                    target.flush()
                    os.fsync(target.fileno())
            finally:
                os.umask(old_umask)
            temp_path.replace(destination)
        except OSError as error:
            temp_path.unlink(missing_ok=True)
            self.prune_empty_dirs(destination.parent)
            logger.error("storage_put_failed path=%s error=%s", relative, error)
            raise StorageUnavailable(f"Failed to write content: {error}") from error
        logger.debug("storage_put path=%s size=%d", relative, len(data))
        return handle

    def get(self, handle: StorageHandle) -> BinaryIO:
        path = self._resolve(handle)
        try:
            return path.open("rb")
        except FileNotFoundError as error:
            raise NotFound(f"Stored object missing: {handle}") from error
        except OSError as error:
            raise StorageUnavailable(f"Failed to read content: {error}") from error

    def delete(self, handle: StorageHandle) -> None:
        try:
            path = self._resolve(handle)
        except NotFound:
            logger.warning("storage_delete_invalid_path handle=%s", handle)
            return
        try:
            path.unlink()
        except FileNotFoundError:
            logger.info("storage_delete_missing handle=%s", handle)
            return
        except OSError as error:
            logger.warning("storage_delete_failed handle=%s error=%s", handle, error)
            raise StorageUnavailable(f"Failed to delete content: {error}") from error
        self.prune_empty_dirs(path.parent)

    def exists(self, handle: StorageHandle) -> bool:
        try:
            return self._resolve(handle).is_file()
        except NotFound:
            return False

    def prune_empty_dirs(self, path: Path) -> None:
        """Remove empty shard directories after file deletion."""

        current = path
        try:
            current = current.resolve()
        except FileNotFoundError:
            return

        root = self.root.resolve()
        while current != root and root in current.parents:
            try:
                current.rmdir()
            except OSError:
                break
            current = current.parent


class S3StorageBackend(StorageBackend):
    """Object storage backend for S3 and S3-compatible services."""

    name = "s3"

    def __init__(self, bucket: str, client: Any, prefix: str = "") -> None:
        self.bucket = bucket
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "S3StorageBackend":
        client = boto3.client(
            "s3",
            endpoint_url=config.get("s3_endpoint_url") or None,
            region_name=config.get("s3_region") or None,
        )
        return cls(config["s3_bucket"], client, config.get("s3_prefix", ""))

    @staticmethod
    def _is_missing(error: ClientError) -> bool:
        code = str(error.response.get("Error", {}).get("Code", ""))
        return code in _MISSING_OBJECT_CODES

    def put(self, data: bytes) -> StorageHandle:
        digest = hashlib.sha256(data).hexdigest()
        key = f"{self.prefix}{digest[:2]}/{digest}_{generate_id(12)}"
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data)
        except ClientError as error:
            code = str(error.response.get("Error", {}).get("Code", ""))
            logger.error("s3_put_failed key=%s code=%s", key, code)
            if code in {"QuotaExceeded", "EntityTooLarge"}:
                raise QuotaExceeded(0, 0) from error
            raise StorageUnavailable(f"Failed to write content: {code}") from error
        except BotoCoreError as error:
            logger.error("s3_put_failed key=%s error=%s", key, error)
            raise StorageUnavailable(f"Failed to write content: {error}") from error
        return StorageHandle(self.name, key)

    def get(self, handle: StorageHandle) -> BinaryIO:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=handle.path)
        except ClientError as error:
            if self._is_missing(error):
                raise NotFound(f"Stored object missing: {handle}") from error
            raise StorageUnavailable(f"Failed to read content: {error}") from error
        except BotoCoreError as error:
            raise StorageUnavailable(f"Failed to read content: {error}") from error
        return response["Body"]

    def delete(self, handle: StorageHandle) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=handle.path)
        except ClientError as error:
            if self._is_missing(error):
                logger.info("storage_delete_missing handle=%s", handle)
                return
            logger.warning("s3_delete_failed handle=%s error=%s", handle, error)
            raise StorageUnavailable(f"Failed to delete content: {error}") from error
        except BotoCoreError as error:
            logger.warning("s3_delete_failed handle=%s error=%s", handle, error)
            raise StorageUnavailable(f"Failed to delete content: {error}") from error

    def exists(self, handle: StorageHandle) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=handle.path)
        except ClientError as error:
            if self._is_missing(error):
                return False
            raise StorageUnavailable(f"Failed to stat content: {error}") from error
        return True


class StorageRegistry:
    """Routes handles to the backend that wrote them.

    New content always goes to the active backend. Handles written by another
    registered backend remain readable and deletable.
    """

    def __init__(self, active: StorageBackend, *others: StorageBackend) -> None:
        self.active = active
        self._backends: Dict[str, StorageBackend] = {active.name: active}
        for backend in others:
            self._backends.setdefault(backend.name, backend)

    def put(self, data: bytes) -> StorageHandle:
        return self.active.put(data)

    def backend_for(self, handle: StorageHandle) -> StorageBackend:
        backend = self._backends.get(handle.backend)
        if backend is None:
            raise StorageUnavailable(f"No storage backend registered for {handle.backend}")
        return backend

    def get(self, handle: StorageHandle) -> BinaryIO:
        return self.backend_for(handle).get(handle)

    def read(self, handle: StorageHandle) -> bytes:
        return self.backend_for(handle).read(handle)

    def delete(self, handle: StorageHandle) -> None:
        self.backend_for(handle).delete(handle)

    def exists(self, handle: StorageHandle) -> bool:
        return self.backend_for(handle).exists(handle)


def build_backends(config: Dict[str, Any], uploads_root: Path) -> StorageRegistry:
    local = LocalStorageBackend(uploads_root)
    if config.get("storage_backend") == "s3":
        return StorageRegistry(S3StorageBackend.from_config(config), local)
    return StorageRegistry(local)
