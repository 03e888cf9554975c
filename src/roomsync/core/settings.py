"""Client settings and configuration.

This module defines all tunables of the roomsync pipeline: cache bounds,
key-request throttling windows, resync attempts and network timeouts.
Settings are loaded from environment variables prefixed with ``ROOMSYNC_``.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Pipeline settings loaded from environment variables.

    Every component accepts an explicit ``Settings`` instance so tests can
    override values without touching the process environment.
    """

    # Homeserver API
    api_prefix: str = Field(default="/_matrix/client/v3", alias="ROOMSYNC_API_PREFIX")
    http_timeout_seconds: float = Field(default=30.0, alias="ROOMSYNC_HTTP_TIMEOUT_SECONDS")

    # Timeline cache
    cache_max_events: int = Field(default=100, alias="ROOMSYNC_CACHE_MAX_EVENTS")
    fetch_page_size: int = Field(default=50, alias="ROOMSYNC_FETCH_PAGE_SIZE")
    fetch_timeout_seconds: float = Field(default=30.0, alias="ROOMSYNC_FETCH_TIMEOUT_SECONDS")

    # Key request throttling
    key_request_window_seconds: float = Field(
        default=30.0,
        alias="ROOMSYNC_KEY_REQUEST_WINDOW_SECONDS",
    )
    key_request_retention_seconds: float = Field(
        default=300.0,
        alias="ROOMSYNC_KEY_REQUEST_RETENTION_SECONDS",
    )

    # Resync after a key request
    key_resync_attempts: int = Field(default=3, alias="ROOMSYNC_KEY_RESYNC_ATTEMPTS")
    key_resync_delay_seconds: float = Field(default=2.0, alias="ROOMSYNC_KEY_RESYNC_DELAY_SECONDS")
    key_resync_timeout_seconds: float = Field(
        default=5.0,
        alias="ROOMSYNC_KEY_RESYNC_TIMEOUT_SECONDS",
    )

    # Decryption
    pre_decrypt_sync_enabled: bool = Field(default=True, alias="ROOMSYNC_PRE_DECRYPT_SYNC")
    pre_decrypt_sync_timeout_seconds: float = Field(
        default=10.0,
        alias="ROOMSYNC_PRE_DECRYPT_SYNC_TIMEOUT_SECONDS",
    )
    decrypt_timeout_seconds: float = Field(default=5.0, alias="ROOMSYNC_DECRYPT_TIMEOUT_SECONDS")
    session_renewal_delay_seconds: float = Field(
        default=1.0,
        alias="ROOMSYNC_SESSION_RENEWAL_DELAY_SECONDS",
    )

    # Sending
    encryption_state_timeout_seconds: float = Field(
        default=5.0,
        alias="ROOMSYNC_ENCRYPTION_STATE_TIMEOUT_SECONDS",
    )
    send_probe_enabled: bool = Field(default=True, alias="ROOMSYNC_SEND_PROBE_ENABLED")
    send_timeout_seconds: float = Field(default=30.0, alias="ROOMSYNC_SEND_TIMEOUT_SECONDS")
    key_share_propagation_seconds: float = Field(
        default=3.0,
        alias="ROOMSYNC_KEY_SHARE_PROPAGATION_SECONDS",
    )

    # Background sync worker
    sync_interval_seconds: float = Field(default=60.0, alias="ROOMSYNC_SYNC_INTERVAL_SECONDS")
    sync_error_backoff_seconds: float = Field(
        default=120.0,
        alias="ROOMSYNC_SYNC_ERROR_BACKOFF_SECONDS",
    )
    sync_timeout_seconds: float = Field(default=30.0, alias="ROOMSYNC_SYNC_TIMEOUT_SECONDS")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )


settings = Settings()
