from __future__ import annotations

import os

from pydantic import BaseModel, Field


class EntityTypeConfig(BaseModel):
    """How one entity type is addressed on the remote service."""

    name: str
    path: str
    update_method: str = "PUT"
    fingerprint_fields: tuple[str, ...] = ("name", "createdAt")
    events: list[str] = Field(default_factory=list)


DEFAULT_ENTITY_TYPES: list[EntityTypeConfig] = [
    EntityTypeConfig(name="plans", path="/api/user-plans", update_method="PATCH"),
    EntityTypeConfig(name="matches", path="/api/matches"),
    EntityTypeConfig(name="drills", path="/api/drills"),
    EntityTypeConfig(name="equipment", path="/api/equipment"),
    EntityTypeConfig(
        name="attendance-polls",
        path="/api/attendance-polls",
        events=["vote-update", "rsvp-update"],
    ),
]


class Settings:
    """Application settings loaded from environment variables."""

    def __init__(self) -> None:
        self.api_url: str = os.environ.get("SYNC_API_URL", "http://localhost:5000")
        self.api_token: str = os.environ.get("SYNC_API_TOKEN", "")
        self.state_dir: str = os.environ.get("SYNC_STATE_DIR", "./.localfirst-sync/")
        self.scope: str = os.environ.get("SYNC_SCOPE", "")
        self.events_path: str = os.environ.get("SYNC_EVENTS_PATH", "/api/sse/polls")
        self.http_timeout: float = float(os.environ.get("SYNC_HTTP_TIMEOUT", "10"))
        self.reconnect_base_ms: int = int(
            os.environ.get("SYNC_RECONNECT_BASE_MS", "1000")
        )
        self.reconnect_max_ms: int = int(
            os.environ.get("SYNC_RECONNECT_MAX_MS", "30000")
        )
        self.reconnect_max_attempts: int = int(
            os.environ.get("SYNC_RECONNECT_MAX_ATTEMPTS", "5")
        )
        self.log_level: str = os.environ.get("SYNC_LOG_LEVEL", "WARNING")
        self.entity_types: list[EntityTypeConfig] = list(DEFAULT_ENTITY_TYPES)

    def entity_type(self, name: str) -> EntityTypeConfig:
        for entity_type in self.entity_types:
            if entity_type.name == name:
                return entity_type
        raise KeyError(f"Unknown entity type: {name}")

    def validate(self) -> None:
        if not self.api_url:
            raise ValueError("SYNC_API_URL environment variable is required")
        if not self.api_token:
            raise ValueError("SYNC_API_TOKEN environment variable is required")


settings = Settings()
