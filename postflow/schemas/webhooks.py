from __future__ import annotations

from typing import Literal

from pydantic import BaseModel


class WebhookAckResponse(BaseModel):
    status: Literal["ok", "error"]
    message: str | None = None
