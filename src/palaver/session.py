from typing import Any

from pydantic import BaseModel, Field


class Session(BaseModel):
    """Application-owned handle for one conversation.

    Palaver keeps no process-wide registries; whatever the surrounding
    application needs to share with tools across calls (user ids,
    connection bookkeeping, caches) lives in ``metadata``.
    """

    session_id: str
    metadata: dict[str, Any] = Field(default_factory=dict)
