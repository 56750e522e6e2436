"""Pydantic schemas for the admin job (dead-letter) endpoints."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel


class JobResponse(BaseModel):
    id: int
    kind: str
    args: dict[str, Any]
    queue: str
    priority: int
    state: str
    attempt: int
    max_attempts: int
    scheduled_at: datetime
    attempted_at: datetime | None
    attempted_by: str | None
    errors: list[Any]
    unique_key: str | None
    created_at: datetime
    finalized_at: datetime | None

    model_config = {"from_attributes": True}
