from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class WahaWebhook(BaseModel):
    """Gateway webhook envelope. Only the fields the pipeline consumes are validated."""

    model_config = ConfigDict(extra="ignore")

    event: Optional[str] = None
    session: str = Field(min_length=1)
    payload: dict[str, Any]


class WebhookResponse(BaseModel):
    success: bool
    message: str
