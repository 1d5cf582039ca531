"""Application configuration for the mirror service."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Literal, Optional

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_SOURCE_HOSTS = (
    "github.com",
    "raw.githubusercontent.com",
    "gist.github.com",
    "gist.githubusercontent.com",
)


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class MirrorSettings(BaseSettings):
    """Runtime settings for the mirror proxy. Frozen once loaded."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        frozen=True,
    )

    source_hosts: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_SOURCE_HOSTS),
        validation_alias="FORGEMIRROR_SOURCE_HOSTS",
    )
    primary_host: str = env_field("github.com", "FORGEMIRROR_PRIMARY_HOST")

    dynamic_edge_ttl: int = env_field(3600, "FORGEMIRROR_DYNAMIC_EDGE_TTL")
    dynamic_browser_ttl: int = env_field(300, "FORGEMIRROR_DYNAMIC_BROWSER_TTL")
    versioned_edge_ttl: int = env_field(30 * 24 * 3600, "FORGEMIRROR_VERSIONED_EDGE_TTL")
    versioned_browser_ttl: int = env_field(24 * 3600, "FORGEMIRROR_VERSIONED_BROWSER_TTL")
    default_edge_ttl: int = env_field(24 * 3600, "FORGEMIRROR_DEFAULT_EDGE_TTL")
    default_browser_ttl: int = env_field(3600, "FORGEMIRROR_DEFAULT_BROWSER_TTL")
    stale_while_revalidate_seconds: int = env_field(24 * 3600, "FORGEMIRROR_SWR_SECONDS")

    max_retries: int = env_field(2, "FORGEMIRROR_MAX_RETRIES")
    retry_delay_seconds: float = env_field(0.5, "FORGEMIRROR_RETRY_DELAY")
    request_timeout_seconds: float = env_field(30.0, "FORGEMIRROR_REQUEST_TIMEOUT")

    store_backend: Literal["memory", "disk"] = env_field("memory", "FORGEMIRROR_STORE_BACKEND")
    store_path: Path = env_field(Path("./mirror-cache"), "FORGEMIRROR_STORE_PATH")
    store_max_entries: int = env_field(1024, "FORGEMIRROR_STORE_MAX_ENTRIES")
    store_max_bytes: Optional[int] = env_field(None, "FORGEMIRROR_STORE_MAX_BYTES")
    store_prune_every: int = env_field(64, "FORGEMIRROR_STORE_PRUNE_EVERY")

    bind_host: str = env_field("0.0.0.0", "FORGEMIRROR_BIND_HOST")
    port: int = env_field(8080, "FORGEMIRROR_PORT")
    metrics_token: Optional[SecretStr] = env_field(None, "FORGEMIRROR_METRICS_TOKEN")
    log_level: str = env_field("INFO", "FORGEMIRROR_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "FORGEMIRROR_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "FORGEMIRROR_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "FORGEMIRROR_OTEL_SAMPLER_RATIO")

    @field_validator("source_hosts", mode="before")
    @classmethod
    def _split_source_hosts(cls, value):
        if isinstance(value, str):
            value = value.split(",")
        if isinstance(value, (list, tuple)):
            return [str(item).strip().lower() for item in value if str(item).strip()]
        return value

    @field_validator("primary_host", mode="before")
    @classmethod
    def _normalize_primary_host(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("max_retries")
    @classmethod
    def _check_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("max_retries must be >= 0")
        return value

    @field_validator("request_timeout_seconds")
    @classmethod
    def _check_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("request_timeout_seconds must be positive")
        return value

    @field_validator("store_max_bytes")
    @classmethod
    def _check_store_max_bytes(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value <= 0:
            raise ValueError("store_max_bytes must be positive when set")
        return value

    @field_validator("retry_delay_seconds")
    @classmethod
    def _clamp_retry_delay(cls, value: float) -> float:
        return max(0.0, value)

    @model_validator(mode="after")
    def _primary_host_allowed(self) -> "MirrorSettings":
        if not self.source_hosts:
            raise ValueError("at least one source host is required")
        if self.primary_host not in self.source_hosts:
            raise ValueError(f"primary host {self.primary_host!r} is not an allowed source host")
        return self
