"""
tests/conftest.py

Shared fixtures: a controllable clock and a scripted provider, so unit
tests never sleep or touch the network.
"""

from __future__ import annotations

import pytest

from ai_gateway.providers.base import Provider
from ai_gateway.schemas.gateway_schema import ChatMessage, GatewayRequest, GatewayResponse


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubProvider(Provider):
    """Provider returning canned answers and recording every request."""

    name = "stub"
    known_models = ("stub-model",)

    def __init__(self, content: str = "Hello from upstream", error: Exception | None = None) -> None:
        self.content = content
        self.error = error
        self.calls: list[GatewayRequest] = []

    def chat(self, request: GatewayRequest) -> GatewayResponse:
        self.calls.append(request)
        if self.error is not None:
            raise self.error
        return GatewayResponse(
            content=f"{self.content} #{len(self.calls)}",
            model=request.model,
            prompt_tokens=12,
            completion_tokens=5,
        )


def _make_request(text: str = "What is a fixed window?", **overrides) -> GatewayRequest:
    fields = {
        "model": "stub-model",
        "messages": [ChatMessage(role="user", content=text)],
        **overrides,
    }
    return GatewayRequest(**fields)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider() -> StubProvider:
    return StubProvider()


@pytest.fixture
def failing_provider() -> StubProvider:
    return StubProvider(error=RuntimeError("connection reset by peer"))


@pytest.fixture
def make_request():
    """Factory for GatewayRequests: make_request("text", fresh=True)."""
    return _make_request
