"""
API Response Schemas

Pydantic models for the JSON responses of the service. The redirect itself
has no body.
"""

from pydantic import BaseModel, Field


class StatsResponse(BaseModel):
    """Response model for statistics endpoint."""
    alias: str
    link_kind: str = Field(..., description="'link' or 'dynamic_link'")
    click_count: int = Field(..., description="Denormalized counter on the link row")
    recorded_clicks: int = Field(..., description="Click events actually stored")


class HealthResponse(BaseModel):
    status: str
    environment: str


class ErrorResponse(BaseModel):
    detail: str
