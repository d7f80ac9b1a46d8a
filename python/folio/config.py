"""Application settings loaded from environment variables.

Environment Configuration:
    FOLIO_ENV: Deployment environment (local | test | staging | prod)
    DATABASE_URL: Database connection string (required)
    FOLIO_ADMIN_SECRET: Admin API secret (required in staging/prod)

Object Storage Configuration (S3-compatible):
    S3_ENDPOINT: Endpoint URL (omit for AWS)
    S3_BUCKET, S3_ACCESS_KEY_ID, S3_SECRET_ACCESS_KEY: Required for any upload
    S3_REGION: Region name (default us-east-1)
    S3_FORCE_PATH_STYLE: Use path-style addressing (default true)
    S3_CHAPTER_PREFIX: Key prefix for all chapter pages (default "chapters")
    CHAPTER_CDN_BASE_URL: Public base URL for page links (defaults to S3_ENDPOINT)

Note: Storage settings are optional at load time. Operations that need a
backend check `storage_configured` and fail with E_STORAGE_UNAVAILABLE.
"""

from enum import Enum
from functools import lru_cache
from typing import Annotated

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


class Environment(str, Enum):
    """Valid deployment environments."""

    LOCAL = "local"
    TEST = "test"
    STAGING = "staging"
    PROD = "prod"


class Settings(BaseSettings):
    """Application configuration.

    Settings are loaded from environment variables.
    Validation rules:
    - DATABASE_URL is always required
    - FOLIO_ADMIN_SECRET is required in staging and prod only
    """

    folio_env: Environment = Field(default=Environment.LOCAL, alias="FOLIO_ENV")
    database_url: Annotated[str, Field(alias="DATABASE_URL")]
    admin_secret: str | None = Field(default=None, alias="FOLIO_ADMIN_SECRET")

    # Object storage
    s3_endpoint: str | None = Field(default=None, alias="S3_ENDPOINT")
    s3_bucket: str | None = Field(default=None, alias="S3_BUCKET")
    s3_access_key_id: str | None = Field(default=None, alias="S3_ACCESS_KEY_ID")
    s3_secret_access_key: str | None = Field(default=None, alias="S3_SECRET_ACCESS_KEY")
    s3_region: str = Field(default="us-east-1", alias="S3_REGION")
    s3_force_path_style: bool = Field(default=True, alias="S3_FORCE_PATH_STYLE")
    chapter_prefix: str = Field(default="chapters", alias="S3_CHAPTER_PREFIX")
    cdn_base_url: str | None = Field(default=None, alias="CHAPTER_CDN_BASE_URL")

    # Drafts and chapter limits
    draft_ttl_s: int = Field(default=3 * 60 * 60, alias="CHAPTER_DRAFT_TTL_S")  # 3 hours
    max_chapter_pages: int = Field(default=220, alias="CHAPTER_MAX_PAGES")
    max_page_upload_bytes: int = Field(
        default=25 * 1024 * 1024, alias="PAGE_MAX_UPLOAD_BYTES"
    )  # 25 MB

    # Transcoder
    page_max_width: int = Field(default=1200, alias="PAGE_MAX_WIDTH")
    page_webp_quality: int = Field(default=77, alias="PAGE_WEBP_QUALITY")

    # Background jobs
    job_workers: int = Field(default=4, alias="JOB_WORKERS")
    job_retention_s: int = Field(default=60 * 60, alias="JOB_RETENTION_S")  # 1 hour
    job_registry_max: int = Field(default=500, alias="JOB_REGISTRY_MAX")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @model_validator(mode="after")
    def validate_required_settings(self) -> "Settings":
        """Ensure environment-specific settings are present."""
        if self.folio_env in (Environment.STAGING, Environment.PROD):
            if not self.admin_secret:
                raise ValueError(
                    f"FOLIO_ADMIN_SECRET is required for FOLIO_ENV={self.folio_env.value}"
                )

        if self.max_chapter_pages <= 0:
            raise ValueError("CHAPTER_MAX_PAGES must be positive")
        if self.job_workers <= 0:
            raise ValueError("JOB_WORKERS must be positive")

        return self

    @property
    def requires_admin_secret(self) -> bool:
        """Whether admin requests must carry the admin secret header."""
        return self.folio_env in (Environment.STAGING, Environment.PROD) or bool(
            self.admin_secret
        )

    @property
    def storage_configured(self) -> bool:
        """Whether an object storage backend is fully configured."""
        return bool(self.s3_bucket and self.s3_access_key_id and self.s3_secret_access_key)

    @property
    def normalized_chapter_prefix(self) -> str:
        """Return the chapter key prefix without surrounding slashes."""
        return self.chapter_prefix.strip().strip("/") or "chapters"

    @property
    def public_base_url(self) -> str:
        """Return the base URL used to build public page links.

        Falls back to the path-style bucket URL on the storage endpoint.
        """
        if self.cdn_base_url:
            return self.cdn_base_url.rstrip("/")
        if self.s3_endpoint and self.s3_bucket:
            return f"{self.s3_endpoint.rstrip('/')}/{self.s3_bucket}"
        return ""


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If required settings are missing or invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache. Useful for testing."""
    get_settings.cache_clear()
