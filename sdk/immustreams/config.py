"""
Configuration for immustreams.

Uses pydantic-settings for environment variable loading.
"""

from pydantic import Field
from pydantic_settings import BaseSettings

from .channel import ChannelType


class Settings(BaseSettings):
    """Adapter and demo configuration loaded from environment."""

    # immudb REST endpoint
    store_address: str = Field(default="127.0.0.1:3323", description="immudb REST host:port")
    secure: bool = Field(default=False, description="Use https")
    database: str = Field(default="defaultdb", description="Database selected after login")
    username: str = Field(default="immudb")
    password: str = Field(default="immudb")
    request_timeout: float = Field(default=10.0, description="HTTP timeout seconds")
    relogin_on_expiry: bool = Field(default=True, description="Re-login once on 401")

    # Channel roles
    author_seed: str = Field(default="author seed 2")
    subscriber_seed: str = Field(default="subscriber seed")
    channel_type: ChannelType = Field(default=ChannelType.MULTI_BRANCH)

    # Demo publication
    message_count: int = Field(default=100, ge=0, le=256, description="Single-byte packets after the first")
    first_payload: str = Field(default="", description="Masked payload of the first packet")

    # Caller-side retry of timed out sends
    send_retries: int = Field(default=2, ge=0)
    retry_delay_ms: int = Field(default=100, ge=0)

    log_level: str = Field(default="INFO")
    log_format: str = Field(default="text", description="Log format (json, text)")

    model_config = {"env_prefix": "IMMUSTREAMS_"}

    @property
    def store_url(self) -> str:
        """Full immudb REST base URL."""
        scheme = "https" if self.secure else "http"
        return f"{scheme}://{self.store_address}"
