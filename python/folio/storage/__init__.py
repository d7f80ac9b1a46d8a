"""Storage module for object storage operations.

Provides:
- ObjectStoreBase contract with S3 (boto3) and in-memory implementations
- Key building utilities for consistent page keys
"""

from folio.storage.client import (
    FakeObjectStore,
    ObjectMetadata,
    ObjectStoreBase,
    ObjectVersion,
    S3ObjectStore,
    StorageError,
    get_object_store,
)
from folio.storage.paths import (
    PAGE_CONTENT_TYPE,
    build_draft_prefix,
    build_manga_prefix,
    build_page_key,
    build_public_url,
    page_file_name,
    parse_page_key,
)

__all__ = [
    "ObjectStoreBase",
    "S3ObjectStore",
    "FakeObjectStore",
    "ObjectMetadata",
    "ObjectVersion",
    "StorageError",
    "get_object_store",
    "PAGE_CONTENT_TYPE",
    "build_draft_prefix",
    "build_manga_prefix",
    "build_page_key",
    "build_public_url",
    "page_file_name",
    "parse_page_key",
]
