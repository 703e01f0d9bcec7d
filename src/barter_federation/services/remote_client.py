from __future__ import annotations

import logging
import time
from typing import Any, Dict, Mapping, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from barter_federation.core.metrics import (
    federation_outbound_latency,
    federation_outbound_requests_total,
)
from barter_federation.schemas import (
    FederationApiResponse,
    HandshakeRequest,
    HandshakeResponse,
    MessageRelayRequest,
    MessageRelayResponse,
    PostingSearchResponse,
    UserSearchResponse,
)

logger = logging.getLogger(__name__)

FEDERATION_PREFIX = "/federation/v1"

M = TypeVar("M", bound=BaseModel)


class RemoteServerError(RuntimeError):
    """Raised when an outbound call to a federated server does not produce a usable response.

    Attributes:
        status_code: HTTP status returned by the remote, if any.
        timed_out: Whether the call hit the client timeout.
    """

    def __init__(
        self, message: str, *, status_code: Optional[int] = None, timed_out: bool = False
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.timed_out = timed_out


def federation_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{FEDERATION_PREFIX}{path}"


class RemoteFederationClient:
    """HTTP client for the server-to-server endpoints of other federation servers.

    Every call carries the configured timeout. Failures are never retried
    here; they surface as :class:`RemoteServerError`.
    """

    def __init__(
        self,
        timeout: float = 10.0,
        mounts: Optional[Mapping[str, httpx.AsyncBaseTransport]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initializes the client.

        Args:
            timeout: Request timeout in seconds.
            mounts: Optional per-origin transports, keyed by URL pattern.
            transport: Optional default transport.
        """
        self.timeout = timeout
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            mounts=dict(mounts) if mounts else None,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _request(
        self,
        operation: str,
        method: str,
        url: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Any:
        started = time.perf_counter()
        status_label = "error"
        try:
            response = await self.client.request(method, url, json=json, params=params)
            status_label = str(response.status_code)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException as exc:
            status_label = "timeout"
            logger.warning("%s to %s timed out after %.1fs", operation, url, self.timeout)
            raise RemoteServerError(f"{operation} timed out", timed_out=True) from exc
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "%s to %s returned HTTP %s", operation, url, exc.response.status_code
            )
            raise RemoteServerError(
                f"{operation} failed with HTTP {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("%s to %s failed: %s", operation, url, exc)
            raise RemoteServerError(f"{operation} failed: {exc}") from exc
        except ValueError as exc:
            logger.warning("%s to %s returned a non-JSON body", operation, url)
            raise RemoteServerError(f"{operation} returned malformed JSON") from exc
        finally:
            federation_outbound_requests_total.labels(operation, status_label).inc()
            federation_outbound_latency.labels(operation).observe(time.perf_counter() - started)

    @staticmethod
    def _parse(operation: str, model: Type[M], body: Any) -> M:
        try:
            return model.model_validate(body)
        except ValidationError as exc:
            raise RemoteServerError(f"{operation} returned an unexpected body") from exc

    async def post_handshake(self, target_url: str, request: HandshakeRequest) -> HandshakeResponse:
        body = await self._request(
            "handshake", "POST", federation_url(target_url, "/handshake"), json=request.to_wire()
        )
        return self._parse("handshake", HandshakeResponse, body)

    async def post_message_relay(
        self, target_url: str, request: MessageRelayRequest
    ) -> MessageRelayResponse:
        body = await self._request(
            "message_relay",
            "POST",
            federation_url(target_url, "/messages/relay"),
            json=request.to_wire(),
        )
        envelope = self._parse(
            "message_relay", FederationApiResponse[MessageRelayResponse], body
        )
        if envelope.data is None:
            raise RemoteServerError(envelope.error or "message relay returned no data")
        return envelope.data

    async def search_remote_postings(
        self, target_url: str, params: Dict[str, str]
    ) -> PostingSearchResponse:
        """Signed posting search; ``params`` already carries serverId, timestamp and signature."""
        body = await self._request(
            "posting_search", "GET", federation_url(target_url, "/postings/search"), params=params
        )
        envelope = self._parse("posting_search", FederationApiResponse[PostingSearchResponse], body)
        if envelope.data is None:
            raise RemoteServerError(envelope.error or "posting search returned no data")
        return envelope.data

    async def search_remote_nearby_users(
        self, target_url: str, params: Dict[str, str]
    ) -> UserSearchResponse:
        body = await self._request(
            "nearby_users", "GET", federation_url(target_url, "/users/nearby"), params=params
        )
        envelope = self._parse("nearby_users", FederationApiResponse[UserSearchResponse], body)
        if envelope.data is None:
            raise RemoteServerError(envelope.error or "nearby user search returned no data")
        return envelope.data


__all__ = ["FEDERATION_PREFIX", "RemoteFederationClient", "RemoteServerError", "federation_url"]
