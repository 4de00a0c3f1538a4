"""Response models for the service-level endpoints."""

from pydantic import Field

from .base import StandardizedModel


class HealthResponse(StandardizedModel):
    """Response for health check endpoint."""

    status: str = Field(description="Health status")
    service: str = Field(description="Service name")
    version: str = Field(description="API version")
    environment: str = Field(description="Environment name")
    timestamp: str = Field(description="UTC ISO8601Z timestamp of the health response")
