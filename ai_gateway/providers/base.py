"""
ai_gateway/providers/base.py

Provider contract and the shared HTTP plumbing for upstream LLM APIs.

Design Decisions:
- Providers are synchronous. The gateway core is blocking and
  the HTTP layer runs it in a worker thread.
- The httpx.Client is injectable so tests can pass one built on
  httpx.MockTransport instead of patching module globals.
- Every failure (transport error, non-2xx status, undecodable body) is
  raised as ProviderError. The gateway wraps it in UpstreamError; no
  retries happen at this layer.
- The request timeout is the only bound on the upstream call.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import httpx

from ai_gateway.schemas.gateway_schema import GatewayRequest, GatewayResponse
from ai_gateway.utils.config import DEFAULT_PROVIDER_TIMEOUT_SECONDS
from ai_gateway.utils.exceptions import ProviderError
from ai_gateway.utils.logger import get_logger

logger = get_logger(__name__)


class Provider(ABC):
    """An upstream chat-completion API."""

    name: str = "provider"
    known_models: tuple[str, ...] = ()

    @abstractmethod
    def chat(self, request: GatewayRequest) -> GatewayResponse:
        """Send `request` upstream and return the normalised response."""

    def close(self) -> None:
        """Release network resources. Default: nothing to release."""


class HTTPProvider(Provider):
    """
    Provider that talks JSON over HTTPS with one POST per request.

    Subclasses supply the endpoint path, auth headers, and the payload
    translation in both directions.

    Args:
        api_key: Credential for the upstream API.
        base_url: API root, e.g. 'https://api.openai.com/v1'.
        timeout: Seconds before the upstream call is abandoned.
        client: Pre-built httpx.Client (tests); one is created otherwise.
    """

    endpoint: str = ""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = DEFAULT_PROVIDER_TIMEOUT_SECONDS,
        client: httpx.Client | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    def chat(self, request: GatewayRequest) -> GatewayResponse:
        url = f"{self._base_url}{self.endpoint}"
        payload = self.build_payload(request)

        try:
            resp = self._client.post(url, headers=self.headers(), json=payload)
        except httpx.TimeoutException as exc:
            raise ProviderError(f"{self.name} request timed out.") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"{self.name} transport error: {exc}") from exc

        if resp.status_code >= 400:
            logger.warning(f"{self.name} upstream returned HTTP {resp.status_code}")
            raise ProviderError(
                f"{self.name} returned HTTP {resp.status_code}.",
                detail=_error_detail(resp),
                status_code=resp.status_code,
            )

        try:
            body = resp.json()
        except ValueError as exc:
            raise ProviderError(f"{self.name} returned a non-JSON body.") from exc
        if not isinstance(body, dict):
            raise ProviderError(f"{self.name} returned an unexpected body.")

        return self.parse_response(body, request)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    @abstractmethod
    def headers(self) -> dict[str, str]:
        """Auth and content headers for every request."""

    @abstractmethod
    def build_payload(self, request: GatewayRequest) -> dict[str, Any]:
        """Translate a GatewayRequest into the provider's JSON body."""

    @abstractmethod
    def parse_response(self, body: dict[str, Any], request: GatewayRequest) -> GatewayResponse:
        """Translate the provider's JSON body into a GatewayResponse."""


def _error_detail(resp: httpx.Response) -> str:
    """Best-effort error message from an upstream error body."""
    try:
        error = resp.json().get("error", "")
    except (ValueError, AttributeError):
        return resp.text[:200]
    if isinstance(error, dict):
        return str(error.get("message", ""))[:200]
    return str(error)[:200]


def as_token_count(value: Any) -> int:
    return value if isinstance(value, int) and value >= 0 else 0
