"""
Webhook acknowledgment schema.
"""

from typing import Optional
from pydantic import BaseModel, Field


class WebhookAckResponse(BaseModel):
    """Body returned for every inbound delivery."""

    status: str = Field(
        ...,
        description="processed/duplicate/ignored/rejected/failed/unknown_source"
    )
    delivery_id: Optional[str] = Field(default=None, description="Namespaced delivery identifier")
    run_id: Optional[str] = Field(default=None, description="Run that processed the delivery")
    detail: Optional[str] = None
