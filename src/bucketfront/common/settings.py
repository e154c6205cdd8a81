"""Application configuration models shared by services."""

from __future__ import annotations

from typing import Annotated, Optional

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


def _split_csv(value):
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class StorageSettings(BaseSettings):
    """Settings for reading objects from the storage backend and caching them."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    gcs_base: str = env_field("https://storage.googleapis.com", "BUCKETFRONT_GCS_BASE")
    index: str = env_field("index.html", "BUCKETFRONT_INDEX")
    cache_item_max_bytes: int = env_field(1 << 20, "BUCKETFRONT_CACHE_ITEM_MAX_BYTES")
    cache_ttl_seconds: int = env_field(24 * 3600, "BUCKETFRONT_CACHE_TTL")
    stat_timeout_seconds: float = env_field(5.0, "BUCKETFRONT_STAT_TIMEOUT")
    fetch_timeout_seconds: float = env_field(10.0, "BUCKETFRONT_FETCH_TIMEOUT")
    redis_url: Optional[str] = env_field(None, "BUCKETFRONT_REDIS_URL")
    redis_circuit_breaker_failures: int = env_field(5, "BUCKETFRONT_REDIS_CIRCUIT_FAILURES")
    redis_circuit_breaker_reset_seconds: float = env_field(30.0, "BUCKETFRONT_REDIS_CIRCUIT_RESET")
    # 0 disables the in-process tier
    local_cache_size: int = env_field(0, "BUCKETFRONT_LOCAL_CACHE_SIZE")
    local_cache_ttl_seconds: int = env_field(600, "BUCKETFRONT_LOCAL_CACHE_TTL")
    access_token: Optional[SecretStr] = env_field(None, "BUCKETFRONT_ACCESS_TOKEN")
    metadata_url: str = env_field(
        "http://metadata.google.internal/computeMetadata/v1/instance/service-accounts/default/token",
        "BUCKETFRONT_METADATA_URL",
    )

    @field_validator("gcs_base", mode="before")
    @classmethod
    def _strip_base(cls, value):
        if isinstance(value, str):
            return value.rstrip("/")
        return value

    @field_validator("index")
    @classmethod
    def _validate_index(cls, value: str) -> str:
        value = value.strip("/")
        if not value or "/" in value:
            raise ValueError("index must be a plain object name such as index.html")
        return value


class ProxySettings(BaseSettings):
    """Runtime settings for the HTTP front of the proxy."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    buckets: dict[str, str] = env_field({}, "BUCKETFRONT_BUCKETS")
    redirects: dict[str, str] = env_field({}, "BUCKETFRONT_REDIRECTS")
    tls_only: Annotated[list[str], NoDecode] = Field(default_factory=list, validation_alias="BUCKETFRONT_TLS_ONLY")
    hook_path: str = env_field("/-/hook/gcs", "BUCKETFRONT_HOOK_PATH")
    hook_token: Optional[SecretStr] = env_field(None, "BUCKETFRONT_HOOK_TOKEN")
    cors_origins: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["*"],
        validation_alias="BUCKETFRONT_CORS_ORIGINS",
    )
    cors_max_age: Optional[str] = env_field("86400", "BUCKETFRONT_CORS_MAX_AGE")
    request_timeout_seconds: float = env_field(10.0, "BUCKETFRONT_REQUEST_TIMEOUT")
    metrics_token: Optional[SecretStr] = env_field(None, "BUCKETFRONT_METRICS_TOKEN")
    log_level: str = env_field("INFO", "BUCKETFRONT_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "BUCKETFRONT_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "BUCKETFRONT_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "BUCKETFRONT_OTEL_SAMPLER_RATIO")

    @field_validator("tls_only", mode="before")
    @classmethod
    def _split_tls_only(cls, value):
        return _split_csv(value)

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _split_cors_origins(cls, value):
        return _split_csv(value)

    @field_validator("redirects")
    @classmethod
    def _validate_redirects(cls, value: dict[str, str]) -> dict[str, str]:
        for host, target in value.items():
            if target.endswith("/") or "?" in target:
                raise ValueError(f"redirect target for {host!r} must not end with '/' or carry a query")
        return value

    @model_validator(mode="after")
    def _require_default_bucket(self) -> "ProxySettings":
        if self.buckets and "default" not in self.buckets:
            raise ValueError("buckets must contain a 'default' entry")
        return self

    def bucket_for(self, key: str) -> Optional[str]:
        """Return the bucket mapped to ``key``, falling back to the default bucket."""
        return self.buckets.get(key, self.buckets.get("default"))
