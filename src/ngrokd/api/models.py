"""Pydantic request/response models for the directory API."""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class _APIModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def drop_nulls(cls, data: Any) -> Any:
        """Treat JSON nulls as absent so fields fall back to their defaults."""
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data


class OperatorBindingCreate(_APIModel):
    """Binding section of a registration request."""

    endpoint_selectors: list[str] = Field(default_factory=list)
    csr: str = ""


class OperatorCreateRequest(_APIModel):
    """Request body for POST /kubernetes_operators."""

    description: str = ""
    metadata: str = ""
    enabled_features: list[str] = Field(default_factory=list)
    region: str = ""
    binding: Optional[OperatorBindingCreate] = None


class OperatorCert(_APIModel):
    """Signed certificate and its issuance window."""

    cert: str = ""
    not_before: str = ""
    not_after: str = ""


class OperatorBinding(_APIModel):
    cert: OperatorCert = Field(default_factory=OperatorCert)
    ingress_endpoint: str = ""


class OperatorResponse(_APIModel):
    """Response body for POST /kubernetes_operators."""

    id: str
    binding: Optional[OperatorBinding] = None


class BoundEndpoint(_APIModel):
    """A single entry of GET /kubernetes_operators/{id}/bound_endpoints."""

    id: str
    url: str
    proto: str = ""
    port: int = 0


class BoundEndpointList(_APIModel):
    endpoints: list[BoundEndpoint] = Field(default_factory=list)
    next_page_uri: Optional[str] = None


class EndpointSummary(_APIModel):
    """A single entry of GET /endpoints, reduced to what validation needs."""

    id: str
    bindings: list[str] = Field(default_factory=list)


class EndpointSummaryList(_APIModel):
    endpoints: list[EndpointSummary] = Field(default_factory=list)
    next_page_uri: Optional[str] = None


__all__ = [
    "BoundEndpoint",
    "BoundEndpointList",
    "EndpointSummary",
    "EndpointSummaryList",
    "OperatorBinding",
    "OperatorBindingCreate",
    "OperatorCert",
    "OperatorCreateRequest",
    "OperatorResponse",
]
