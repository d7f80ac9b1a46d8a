"""Object storage client abstraction.

Provides a narrow interface over an S3-compatible bucket with:
- Object writes (transcoded pages)
- Existence checks and prefix listings (finalize verification)
- Version listing and version-precise deletes (object stores may keep
  several versions per key; cleanup must purge all of them)
- Server-side copies (edit drafts seeded from a published chapter)

All methods receive full object keys directly - no prefix manipulation.
Failures raise StorageError; callers decide whether to surface or swallow.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import lru_cache
from uuid import uuid4

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from folio.config import get_settings
from folio.errors import StorageUnavailableError
from folio.logging import get_logger

logger = get_logger(__name__)

# S3 DeleteObjects accepts at most 1000 keys per request
DELETE_BATCH_SIZE = 1000

# Error codes that mean the gateway has no version listing (e.g. some
# S3-compatible providers). Listing then falls back to plain keys.
VERSION_LISTING_UNSUPPORTED_CODES = frozenset(
    {"NotImplemented", "NotSupported", "MethodNotAllowed", "XNotImplemented"}
)


@dataclass(frozen=True)
class ObjectMetadata:
    """Storage object metadata.

    Advisory only. The reliable signal is existence (None vs not-None).
    """

    content_type: str
    size_bytes: int


@dataclass(frozen=True)
class ObjectVersion:
    """Reference to one stored version of an object.

    version_id is None when the bucket does not version objects.
    """

    key: str
    version_id: str | None = None


class StorageError(Exception):
    """Storage operation error."""

    def __init__(self, message: str, code: str = "E_STORAGE_ERROR"):
        super().__init__(message)
        self.message = message
        self.code = code


class ObjectStoreBase(ABC):
    """Abstract base class for object store implementations."""

    @abstractmethod
    def put_object(self, key: str, data: bytes, *, content_type: str) -> None:
        """Write an object.

        Raises:
            StorageError: If the write fails.
        """
        ...

    @abstractmethod
    def head_object(self, key: str) -> ObjectMetadata | None:
        """Return metadata if the object exists, None otherwise."""
        ...

    @abstractmethod
    def list_keys(self, prefix: str) -> list[str]:
        """List current object keys under a prefix."""
        ...

    @abstractmethod
    def list_versions(self, prefix: str) -> list[ObjectVersion]:
        """List every stored version (and delete marker) under a prefix."""
        ...

    @abstractmethod
    def delete_versions(self, versions: list[ObjectVersion]) -> int:
        """Delete the given versions.

        Returns:
            Number of versions deleted.
        """
        ...

    @abstractmethod
    def copy_object(self, source_key: str, dest_key: str) -> None:
        """Copy an object server-side."""
        ...

    def delete_all_by_prefix(self, prefix: str) -> int:
        """Delete every version of every object under a prefix.

        Returns:
            Number of versions deleted.
        """
        versions = self.list_versions(prefix)
        if not versions:
            return 0
        return self.delete_versions(versions)


class S3ObjectStore(ObjectStoreBase):
    """Production object store backed by an S3-compatible bucket (boto3)."""

    def __init__(
        self,
        bucket: str,
        access_key_id: str,
        secret_access_key: str,
        endpoint_url: str | None = None,
        region: str = "us-east-1",
        force_path_style: bool = True,
        client=None,
    ):
        """Initialize the object store.

        Args:
            bucket: Bucket name.
            access_key_id: Access key id.
            secret_access_key: Secret access key.
            endpoint_url: S3-compatible endpoint; None for AWS.
            region: Region name.
            force_path_style: Use path-style addressing.
            client: Preconfigured boto3 S3 client (tests).
        """
        self._bucket = bucket
        if client is None:
            client = boto3.client(
                "s3",
                endpoint_url=endpoint_url,
                aws_access_key_id=access_key_id,
                aws_secret_access_key=secret_access_key,
                region_name=region,
                config=Config(
                    s3={"addressing_style": "path" if force_path_style else "auto"},
                    retries={"max_attempts": 3, "mode": "standard"},
                ),
            )
        self._client = client

    @property
    def bucket(self) -> str:
        return self._bucket

    @property
    def client(self):
        return self._client

    def put_object(self, key: str, data: bytes, *, content_type: str) -> None:
        try:
            self._client.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                CacheControl="public, max-age=31536000, immutable",
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to write {key}: {e}", code="E_UPLOAD_FAILED") from e

    def head_object(self, key: str) -> ObjectMetadata | None:
        try:
            response = self._client.head_object(Bucket=self._bucket, Key=key)
        except ClientError as e:
            status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            code = e.response.get("Error", {}).get("Code")
            if status == 404 or code in {"404", "NoSuchKey", "NotFound"}:
                return None
            raise StorageError(f"Failed to stat {key}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to stat {key}: {e}") from e

        return ObjectMetadata(
            content_type=response.get("ContentType", "application/octet-stream"),
            size_bytes=int(response.get("ContentLength", 0)),
        )

    def list_keys(self, prefix: str) -> list[str]:
        keys: list[str] = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
                for obj in page.get("Contents") or []:
                    key = obj.get("Key")
                    if isinstance(key, str) and key:
                        keys.append(key)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to list {prefix}: {e}") from e
        return keys

    def list_versions(self, prefix: str) -> list[ObjectVersion]:
        versions: list[ObjectVersion] = []
        try:
            paginator = self._client.get_paginator("list_object_versions")
            for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
                for entry in (page.get("Versions") or []) + (page.get("DeleteMarkers") or []):
                    key = entry.get("Key")
                    if isinstance(key, str) and key:
                        versions.append(ObjectVersion(key=key, version_id=entry.get("VersionId")))
        except ClientError as e:
            if not _version_listing_unsupported(e):
                raise StorageError(f"Failed to list versions of {prefix}: {e}") from e
            logger.info("storage_version_listing_unsupported", prefix=prefix)
            return [ObjectVersion(key=key) for key in self.list_keys(prefix)]
        except BotoCoreError as e:
            raise StorageError(f"Failed to list versions of {prefix}: {e}") from e
        return versions

    def delete_versions(self, versions: list[ObjectVersion]) -> int:
        deleted = 0
        for i in range(0, len(versions), DELETE_BATCH_SIZE):
            chunk = versions[i : i + DELETE_BATCH_SIZE]
            objects = []
            for version in chunk:
                entry = {"Key": version.key}
                if version.version_id and version.version_id != "null":
                    entry["VersionId"] = version.version_id
                objects.append(entry)
            try:
                response = self._client.delete_objects(
                    Bucket=self._bucket,
                    Delete={"Objects": objects, "Quiet": False},
                )
            except (ClientError, BotoCoreError) as e:
                raise StorageError(f"Failed to delete {len(chunk)} object(s): {e}") from e

            errors = response.get("Errors") or []
            if errors:
                first = errors[0]
                raise StorageError(
                    f"Failed to delete {first.get('Key')}: "
                    f"{first.get('Code')} {first.get('Message')}"
                )
            deleted += len(response.get("Deleted") or [])
        return deleted

    def copy_object(self, source_key: str, dest_key: str) -> None:
        try:
            self._client.copy_object(
                Bucket=self._bucket,
                Key=dest_key,
                CopySource={"Bucket": self._bucket, "Key": source_key},
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to copy {source_key} to {dest_key}: {e}") from e


def _version_listing_unsupported(error: ClientError) -> bool:
    code = error.response.get("Error", {}).get("Code")
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return code in VERSION_LISTING_UNSUPPORTED_CODES or status in (405, 501)


class FakeObjectStore(ObjectStoreBase):
    """Fake object store for tests and local runs without a bucket.

    Keeps every version of every key in memory, like a versioned bucket.
    Thread-safe, since processing jobs run on worker threads.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._versions: dict[str, list[tuple[str, bytes, str]]] = {}  # key -> [(vid, data, ct)]
        self.failures: dict[str, StorageError] = {}  # operation name -> error to raise
        self.calls: list[tuple[str, str]] = []  # (operation, key or prefix)

    def _record(self, operation: str, target: str) -> None:
        self.calls.append((operation, target))
        error = self.failures.get(operation)
        if error is not None:
            raise error

    def put_object(self, key: str, data: bytes, *, content_type: str) -> None:
        with self._lock:
            self._record("put_object", key)
            self._versions.setdefault(key, []).append((uuid4().hex, data, content_type))

    def head_object(self, key: str) -> ObjectMetadata | None:
        with self._lock:
            self._record("head_object", key)
            stored = self._versions.get(key)
            if not stored:
                return None
            _, data, content_type = stored[-1]
            return ObjectMetadata(content_type=content_type, size_bytes=len(data))

    def list_keys(self, prefix: str) -> list[str]:
        with self._lock:
            self._record("list_keys", prefix)
            return sorted(k for k, v in self._versions.items() if v and k.startswith(prefix))

    def list_versions(self, prefix: str) -> list[ObjectVersion]:
        with self._lock:
            self._record("list_versions", prefix)
            return [
                ObjectVersion(key=key, version_id=vid)
                for key in sorted(self._versions)
                if key.startswith(prefix)
                for vid, _, _ in self._versions[key]
            ]

    def delete_versions(self, versions: list[ObjectVersion]) -> int:
        with self._lock:
            self._record("delete_versions", ",".join(v.key for v in versions))
            deleted = 0
            for version in versions:
                stored = self._versions.get(version.key, [])
                remaining = [entry for entry in stored if entry[0] != version.version_id]
                deleted += len(stored) - len(remaining)
                if remaining:
                    self._versions[version.key] = remaining
                else:
                    self._versions.pop(version.key, None)
            return deleted

    def copy_object(self, source_key: str, dest_key: str) -> None:
        with self._lock:
            self._record("copy_object", f"{source_key}->{dest_key}")
            stored = self._versions.get(source_key)
            if not stored:
                raise StorageError(f"Object not found: {source_key}", code="E_STORAGE_MISSING")
            _, data, content_type = stored[-1]
            self._versions.setdefault(dest_key, []).append((uuid4().hex, data, content_type))

    # Test helper methods

    def get_object(self, key: str) -> bytes | None:
        """Get the latest content of a key directly (test helper)."""
        with self._lock:
            stored = self._versions.get(key)
            return stored[-1][1] if stored else None

    def version_count(self, key: str) -> int:
        """Number of stored versions of a key (test helper)."""
        with self._lock:
            return len(self._versions.get(key, []))

    def keys(self) -> list[str]:
        """All keys with at least one version (test helper)."""
        with self._lock:
            return sorted(self._versions)

    def clear(self) -> None:
        """Clear all stored objects and recorded calls (test helper)."""
        with self._lock:
            self._versions.clear()
            self.calls.clear()
            self.failures.clear()


@lru_cache
def get_object_store() -> ObjectStoreBase:
    """Get the configured object store.

    Returns:
        S3ObjectStore built from settings.

    Raises:
        StorageUnavailableError: If bucket or credentials are not configured.
    """
    settings = get_settings()
    if not settings.storage_configured:
        raise StorageUnavailableError()

    return S3ObjectStore(
        bucket=settings.s3_bucket,
        access_key_id=settings.s3_access_key_id,
        secret_access_key=settings.s3_secret_access_key,
        endpoint_url=settings.s3_endpoint,
        region=settings.s3_region,
        force_path_style=settings.s3_force_path_style,
    )
