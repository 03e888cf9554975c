"""Homeserver transport for the roomsync pipelines.

This module provides the HomeserverClient class that performs authenticated
HTTP calls against the chat server's client-server API. It includes:

- Lazy ``httpx.AsyncClient`` creation guarded by a lock
- Bearer authentication from the session context
- Per-call timeouts
- Metrics collection for monitoring
- To-device message transmission
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import httpx

from roomsync.core.settings import Settings, settings
from roomsync.models.session import SessionContext
from roomsync.services.crypto_engine import ToDeviceRequest
from roomsync.utils.txn import new_txn_id

# Configure logger for this module
logger = logging.getLogger(__name__)

# HTTP status codes
HTTP_OK = 200
HTTP_MULTIPLE_CHOICES = 300


class TransportError(RuntimeError):
    """Base exception raised for transport failures (connection, timeout, bad body)."""


class TransportDisabledError(TransportError):
    """Raised when a request is attempted without a homeserver or access token."""


@dataclass
class TransportMetrics:
    """Metrics collection for homeserver requests."""

    request_count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_response_time: float = 0.0
    max_response_time: float = 0.0
    error_counts_by_type: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    endpoint_counts: dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def record_request(
        self, endpoint: str, response_time: float, success: bool, error_type: str | None = None
    ) -> None:
        """Record a request metric."""
        self.request_count += 1
        self.total_response_time += response_time
        self.max_response_time = max(self.max_response_time, response_time)
        self.endpoint_counts[endpoint] += 1

        if success:
            self.success_count += 1
        else:
            self.error_count += 1
            if error_type:
                self.error_counts_by_type[error_type] += 1

    def get_average_response_time(self) -> float:
        return self.total_response_time / self.request_count if self.request_count > 0 else 0.0


@dataclass(frozen=True)
class TransportResponse:
    """Status and decoded JSON body (or ``None``) of a completed request."""

    status: int
    body: Any = None

    @property
    def ok(self) -> bool:
        return HTTP_OK <= self.status < HTTP_MULTIPLE_CHOICES


def room_path(config: Settings, room_id: str, *parts: str) -> str:
    """Build ``{prefix}/rooms/{room_id}/...`` with every segment escaped."""
    segments = [quote(room_id, safe="")] + [quote(part, safe="") for part in parts]
    return f"{config.api_prefix}/rooms/" + "/".join(segments)


class HomeserverClient:
    """HTTP client wrapper for client-server API interactions."""

    def __init__(
        self,
        context: SessionContext,
        config: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.context = context
        self.config = config or settings
        self._client = client
        self._owns_client = client is None
        self._client_lock = asyncio.Lock()
        self._metrics = TransportMetrics()

    @property
    def enabled(self) -> bool:
        return bool(self.context.homeserver and self.context.access_token)

    async def _ensure_client(self) -> httpx.AsyncClient:
        if not self.enabled:
            raise TransportDisabledError("No homeserver session available")

        async with self._client_lock:
            if self._client is None:
                try:
                    self._client = httpx.AsyncClient(
                        base_url=self.context.homeserver.rstrip("/"),
                        timeout=httpx.Timeout(self.config.http_timeout_seconds),
                    )
                except Exception as exc:
                    raise TransportError(
                        f"Invalid homeserver {self.context.homeserver!r}: {exc}"
                    ) from exc

        return self._client

    def _build_auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.context.access_token}"}

    @dataclass
    class RequestParams:
        """Parameters for HTTP requests."""
        method: str
        path: str
        json_data: Any | None = None
        params: Mapping[str, Any] | None = None
        timeout: float | None = None

    async def _request(self, params: RequestParams) -> TransportResponse:
        client = await self._ensure_client()
        headers = self._build_auth_headers()

        start_time = time.monotonic()
        endpoint = f"{params.method} {params.path}"
        success = False
        error_type = None
        response_time = 0.0

        request_kwargs: dict[str, Any] = {
            "json": params.json_data,
            "params": params.params,
            "headers": headers,
        }
        if params.timeout is not None:
            request_kwargs["timeout"] = params.timeout

        try:
            response = await client.request(params.method, params.path, **request_kwargs)
            response_time = time.monotonic() - start_time
            body = self._decode_body(response)
            success = HTTP_OK <= response.status_code < HTTP_MULTIPLE_CHOICES
            if not success:
                error_type = f"http_{response.status_code}"
        except httpx.TimeoutException as exc:
            response_time = time.monotonic() - start_time
            error_type = "timeout"
            raise TransportError(f"Request timed out: {endpoint}") from exc
        except httpx.HTTPError as exc:
            response_time = time.monotonic() - start_time
            error_type = "network_error"
            raise TransportError(f"Request failed: {endpoint}: {exc}") from exc
        except Exception as exc:
            response_time = time.monotonic() - start_time
            error_type = "unknown_error"
            raise TransportError(f"Request failed: {endpoint}: {exc}") from exc
        finally:
            self._metrics.record_request(endpoint, response_time, success, error_type)

        return TransportResponse(status=response.status_code, body=body)

    @staticmethod
    def _decode_body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            logger.debug("Non-JSON response body from %s", response.request.url)
            return None

    async def get(
        self,
        path: str,
        params: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> TransportResponse:
        return await self._request(
            self.RequestParams(method="GET", path=path, params=params, timeout=timeout)
        )

    async def put(
        self, path: str, body: Any, *, timeout: float | None = None
    ) -> TransportResponse:
        return await self._request(
            self.RequestParams(method="PUT", path=path, json_data=body, timeout=timeout)
        )

    async def send_to_device(
        self, request: ToDeviceRequest, *, timeout: float | None = None
    ) -> TransportResponse:
        """Send an engine-produced to-device request.

        The body is wrapped in the ``{"messages": ...}`` envelope the server
        expects and sent under a fresh transaction id.
        """
        path = (
            f"{self.config.api_prefix}/sendToDevice/"
            f"{quote(request.event_type, safe='')}/{new_txn_id()}"
        )
        response = await self.put(path, {"messages": dict(request.body)}, timeout=timeout)
        if response.ok:
            logger.debug("to-device %s sent", request.event_type)
        else:
            logger.warning(
                "Failed to send to-device %s: status %d", request.event_type, response.status
            )
        return response

    def get_metrics(self) -> dict[str, Any]:
        """Get transport metrics.

        Returns:
            Dictionary containing performance and usage metrics
        """
        return {
            "request_count": self._metrics.request_count,
            "success_count": self._metrics.success_count,
            "error_count": self._metrics.error_count,
            "average_response_time": self._metrics.get_average_response_time(),
            "max_response_time": self._metrics.max_response_time,
            "error_counts_by_type": dict(self._metrics.error_counts_by_type),
            "endpoint_counts": dict(self._metrics.endpoint_counts),
        }

    async def close(self) -> None:
        """Clean up underlying HTTP client resources."""

        async with self._client_lock:
            if self._client is not None and self._owns_client:
                await self._client.aclose()
            self._client = None
