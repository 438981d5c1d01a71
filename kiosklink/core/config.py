from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator
from typing import Optional


class Settings(BaseSettings):
    """Agent settings loaded from environment variables."""

    environment: str = "development"
    log_level: Optional[str] = None

    # Backing store (PostgREST-compatible REST endpoint)
    store_url: str = "http://127.0.0.1:54321"
    store_api_key: str = ""
    screens_table: str = "screens"
    store_timeout_seconds: float = 10.0

    # Realtime push channel (derived from store_url when empty)
    realtime_url: str = ""
    realtime_heartbeat_seconds: float = 25.0
    realtime_reconnect_seconds: float = 5.0
    realtime_join_timeout_seconds: float = 10.0

    # Local cache (may be wiped at any time)
    cache_database_url: str = "sqlite:///./kiosklink_cache.db"

    # Launch environment
    device_hostname: Optional[str] = None
    detect_hostname: bool = False
    user_agent: str = "kiosklink/1.0"

    # Pages
    pairing_path: str = "/screen"
    agent_host: str = "127.0.0.1"
    agent_port: int = 8765
    content_base_url: str = "http://127.0.0.1:3000"

    # Browser; empty command runs headless (navigation is only logged)
    browser_command: str = ""
    autostart_agent: bool = True

    # Timing
    heartbeat_interval_seconds: float = 30.0
    health_check_interval_seconds: float = 5.0
    max_disconnect_seconds: float = 120.0

    # Registration
    code_length: int = 4
    registration_max_attempts: int = 10
    registration_retry_delay_seconds: float = 2.0

    @field_validator(
        'heartbeat_interval_seconds',
        'health_check_interval_seconds',
        'max_disconnect_seconds',
        'realtime_heartbeat_seconds',
        'realtime_reconnect_seconds',
        'realtime_join_timeout_seconds',
        'store_timeout_seconds',
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        """Intervals and timeouts must be positive."""
        if v <= 0:
            raise ValueError("interval must be greater than 0")
        return v

    @field_validator('registration_max_attempts', 'code_length')
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v}")
        return v

    @field_validator('pairing_path')
    @classmethod
    def validate_pairing_path(cls, v: str) -> str:
        """Pairing path is a route on the agent, not a URL."""
        if not v.startswith('/'):
            raise ValueError("pairing_path must start with '/'")
        return v

    @field_validator('store_url', 'content_base_url')
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(('http://', 'https://')):
            raise ValueError("URL must start with http:// or https://")
        return v.rstrip('/')

    @property
    def pairing_url(self) -> str:
        """URL of the locally served pairing page."""
        return f"http://{self.agent_host}:{self.agent_port}{self.pairing_path}"

    @property
    def resolved_realtime_url(self) -> str:
        """Realtime websocket URL, derived from the store URL unless set explicitly."""
        if self.realtime_url:
            return self.realtime_url
        base = self.store_url.replace("https://", "wss://", 1).replace("http://", "ws://", 1)
        return f"{base}/realtime/v1/websocket"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="KIOSK_",
        env_ignore_empty=True,
    )


settings = Settings()
