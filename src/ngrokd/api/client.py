"""Directory API client — registration and bound-endpoint discovery.

Talks to the control-plane REST API with :mod:`httpx`. Every request carries
a bearer API key and the ``Ngrok-Version`` header. Non-2xx answers and
unparseable bodies raise :class:`~ngrokd.errors.APIError`; network failures
raise :class:`~ngrokd.errors.DirectoryError`.
"""
from __future__ import annotations

import logging
from typing import Optional, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from ngrokd.api.models import (
    BoundEndpoint,
    BoundEndpointList,
    EndpointSummaryList,
    OperatorCreateRequest,
    OperatorResponse,
)
from ngrokd.context import Context
from ngrokd.errors import APIError, DirectoryError

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.ngrok.com"
API_VERSION = "2"
BINDING_KIND = "kubernetes"

_MAX_PAGES = 100

_ModelT = TypeVar("_ModelT", bound=BaseModel)


class DirectoryClient:
    """Client for the directory (control-plane) API.

    Parameters
    ----------
    api_key:
        Bearer credential for the API.
    base_url:
        API root URL.
    timeout:
        Per-request timeout in seconds; a context deadline may shorten it.
    transport:
        Optional httpx transport, e.g. :class:`httpx.MockTransport` in tests.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_API_URL,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        if not api_key:
            raise ValueError("api_key must not be empty")
        self._timeout = timeout
        self._http = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Ngrok-Version": API_VERSION,
            },
        )

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def create_operator(self, ctx: Context, request: OperatorCreateRequest) -> OperatorResponse:
        """Register a new identity and return the signed certificate.

        Parameters
        ----------
        ctx:
            Cancellation context for the request.
        request:
            Registration request carrying the CSR and endpoint selectors.
        """
        return self._request(
            ctx,
            "POST",
            "/kubernetes_operators",
            OperatorResponse,
            json=request.model_dump(exclude_defaults=True),
        )

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def list_bound_endpoints(self, ctx: Context, operator_id: str) -> list[BoundEndpoint]:
        """Return the endpoints currently bound to *operator_id*.

        Candidates are cross-checked against the global endpoint listing and
        dropped unless they carry the expected binding kind, which filters
        stale entries out of the bound listing. If the cross-check itself
        fails, the unfiltered listing is returned.
        """
        candidates: list[BoundEndpoint] = []
        for page in self._pages(ctx, f"/kubernetes_operators/{operator_id}/bound_endpoints", BoundEndpointList):
            candidates.extend(page.endpoints)

        try:
            valid_ids = self._valid_endpoint_ids(ctx)
        except DirectoryError as exc:
            logger.warning(
                "Endpoint validation failed, using unfiltered listing of %d endpoint(s): %s",
                len(candidates),
                exc,
            )
            return candidates

        filtered = [ep for ep in candidates if ep.id in valid_ids]
        dropped = len(candidates) - len(filtered)
        if dropped:
            logger.debug("Dropped %d stale bound endpoint(s)", dropped)
        return filtered

    def _valid_endpoint_ids(self, ctx: Context) -> set[str]:
        valid: set[str] = set()
        for page in self._pages(ctx, "/endpoints", EndpointSummaryList):
            valid.update(ep.id for ep in page.endpoints if BINDING_KIND in ep.bindings)
        return valid

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Release pooled HTTP connections."""
        self._http.close()

    def __enter__(self) -> "DirectoryClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _pages(self, ctx: Context, path: str, model: type[_ModelT]):
        """Yield every page of a paginated listing, following next_page_uri."""
        url: Optional[str] = path
        seen: set[str] = set()
        while url and url not in seen and len(seen) < _MAX_PAGES:
            seen.add(url)
            page = self._request(ctx, "GET", url, model)
            yield page
            url = getattr(page, "next_page_uri", None)

    def _request(
        self,
        ctx: Context,
        method: str,
        url: str,
        model: type[_ModelT],
        json: Optional[dict[str, object]] = None,
    ) -> _ModelT:
        ctx.raise_if_done()
        timeout = self._timeout
        remaining = ctx.remaining()
        if remaining is not None:
            timeout = min(timeout, remaining)

        try:
            response = self._http.request(method, url, json=json, timeout=timeout)
        except httpx.HTTPError as exc:
            ctx.raise_if_done()
            raise DirectoryError(f"{method} {url} failed: {exc}") from exc

        body = response.text
        if not response.is_success:
            raise APIError(response.status_code, body)

        try:
            return model.model_validate_json(response.content)
        except ValidationError as exc:
            raise APIError(response.status_code, body, detail=f"malformed response: {exc}") from exc
