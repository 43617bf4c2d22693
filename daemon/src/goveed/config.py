"""
goveed Daemon Configuration Management
"""
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Settings Store
    settings_path: str = Field(
        default="~/.config/goveed/settings.json",
        description="JSON file holding the API key, rooms, favorites and scenes",
    )

    # Cloud Configuration
    cloud_base_url: str = Field(
        default="https://openapi.api.govee.com",
        description="Vendor cloud API base URL (a non-openapi host selects the legacy API)",
    )
    cloud_api_key: Optional[str] = Field(
        default=None, description="API key used when the settings store has none"
    )
    cloud_retry_count: int = Field(
        default=3, ge=0, description="Retries for transient cloud failures"
    )
    cloud_timeout_seconds: float = Field(default=10.0, description="Cloud request timeout")

    # LAN Configuration
    lan_enabled_default: bool = Field(
        default=True, description="Whether a new settings file starts with LAN control on"
    )
    lan_multicast_address: str = Field(
        default="239.255.255.250", description="Multicast group for LAN discovery"
    )
    lan_scan_port: int = Field(default=4001, description="Port devices listen on for scans")
    lan_response_port: int = Field(default=4002, description="Port scan replies arrive on")
    lan_control_port: int = Field(default=4003, description="Default device control port")
    lan_discovery_timeout_seconds: float = Field(
        default=1.5, description="How long to collect discovery replies"
    )
    lan_status_timeout_seconds: float = Field(
        default=1.2, description="How long to wait for a status reply"
    )

    # Scene Configuration
    scene_command_delay_seconds: float = Field(
        default=0.12, description="Delay after each command sent by a scene"
    )
    scene_rate_limit_backoff_seconds: float = Field(
        default=0.8, description="Wait before retrying a rate-limited scene command"
    )
    state_refresh_concurrency: int = Field(
        default=3, ge=1, description="Max concurrent device state fetches"
    )

    # Daemon Configuration
    daemon_host: str = Field(default="127.0.0.1", description="HTTP API bind address")
    daemon_port: int = Field(default=8765, description="HTTP API port")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    log_file: Optional[str] = Field(default=None, description="Optional JSON log file")

    # API Configuration
    api_title: str = Field(default="goveed Light Control API", description="API title")
    api_version: str = Field(default="0.1.0", description="API version")
    api_docs_enabled: bool = Field(default=True, description="Enable API documentation")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
