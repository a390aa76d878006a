"""Directory API client and wire models."""
from __future__ import annotations

from ngrokd.api.client import API_VERSION, DEFAULT_API_URL, DirectoryClient
from ngrokd.api.models import (
    BoundEndpoint,
    OperatorBindingCreate,
    OperatorCreateRequest,
    OperatorResponse,
)

__all__ = [
    "API_VERSION",
    "BoundEndpoint",
    "DEFAULT_API_URL",
    "DirectoryClient",
    "OperatorBindingCreate",
    "OperatorCreateRequest",
    "OperatorResponse",
]
