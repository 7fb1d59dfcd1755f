from __future__ import annotations

from pydantic import BaseModel, Field

from keepalive.models import DEFAULT_INTERVAL_MINUTES


class AddDomainRequest(BaseModel):
    domain: str | None = Field(None, max_length=2000)
    interval: int | None = Field(None, ge=1)

    def effective_interval(self) -> int:
        return self.interval or DEFAULT_INTERVAL_MINUTES


class UpdateIntervalRequest(BaseModel):
    interval: int = Field(..., ge=1)
