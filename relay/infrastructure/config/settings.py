"""
Runtime configuration, read from the environment (and a local ``.env``).
"""

from functools import lru_cache
from typing import List, Optional
import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class Settings(BaseModel):
    """Relay service settings"""

    host: str = "0.0.0.0"
    port: int = 3002
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    log_level: str = "INFO"
    log_format: str = "json"
    service_name: str = "relay"

    # Transport client implementation, as "package.module:ClassName"
    transport_client: Optional[str] = None
    auth_state_path: str = "auth_info/creds.json"
    message_store_path: Optional[str] = "message_store.json"
    message_store_flush_seconds: float = 10.0

    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"

    handoff_keyword: str = "humano"
    history_limit: int = 100
    delivery_max_attempts: int = 3
    delivery_retry_delay_seconds: float = 2.0
    startup_max_attempts: int = 3
    startup_retry_delay_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables, falling back to defaults"""

        env = {
            "host": os.getenv("HOST"),
            "port": os.getenv("PORT"),
            "log_level": os.getenv("LOG_LEVEL"),
            "log_format": os.getenv("LOG_FORMAT"),
            "service_name": os.getenv("SERVICE_NAME"),
            "transport_client": os.getenv("TRANSPORT_CLIENT"),
            "auth_state_path": os.getenv("AUTH_STATE_PATH"),
            "message_store_flush_seconds": os.getenv("MESSAGE_STORE_FLUSH_SECONDS"),
            "openai_api_key": os.getenv("OPENAI_API_KEY"),
            "openai_model": os.getenv("OPENAI_MODEL"),
            "handoff_keyword": os.getenv("HANDOFF_KEYWORD"),
            "history_limit": os.getenv("HISTORY_LIMIT"),
            "delivery_max_attempts": os.getenv("DELIVERY_MAX_ATTEMPTS"),
            "delivery_retry_delay_seconds": os.getenv("DELIVERY_RETRY_DELAY_SECONDS"),
            "startup_max_attempts": os.getenv("STARTUP_MAX_ATTEMPTS"),
            "startup_retry_delay_seconds": os.getenv("STARTUP_RETRY_DELAY_SECONDS"),
        }
        origins = os.getenv("CORS_ORIGINS")
        if origins:
            env["cors_origins"] = [o.strip() for o in origins.split(",") if o.strip()]

        values = {k: v for k, v in env.items() if v not in (None, "")}

        # An explicit empty MESSAGE_STORE_PATH keeps the message store in memory only
        store_path = os.getenv("MESSAGE_STORE_PATH")
        if store_path is not None:
            values["message_store_path"] = store_path or None

        return cls(**values)


@lru_cache
def get_settings() -> Settings:
    load_dotenv()
    return Settings.from_env()
