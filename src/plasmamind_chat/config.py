"""Runtime settings read from the environment."""

import os
from typing import Optional

from pydantic import BaseModel

DEFAULT_CHAT_MODEL = "gemini-2.5-flash"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    """Application settings."""

    gemini_api_key: Optional[str] = None
    default_chat_model: str = DEFAULT_CHAT_MODEL
    attachment_timeout: float = 30.0
    blob_base_url: str = "memory://chat-attachments"
    log_level: str = "INFO"
    log_json: bool = False
    title_length: int = 30

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
            default_chat_model=os.getenv("PLASMAMIND_DEFAULT_CHAT_MODEL", DEFAULT_CHAT_MODEL),
            attachment_timeout=float(os.getenv("PLASMAMIND_ATTACHMENT_TIMEOUT", "30")),
            blob_base_url=os.getenv("PLASMAMIND_BLOB_BASE_URL", "memory://chat-attachments"),
            log_level=os.getenv("PLASMAMIND_LOG_LEVEL", "INFO"),
            log_json=_env_bool("PLASMAMIND_LOG_JSON", False),
            title_length=int(os.getenv("PLASMAMIND_TITLE_LENGTH", "30")),
        )
