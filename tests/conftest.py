"""Shared fixtures: fake providers, in-memory services and an ASGI client."""

import json
import time
from typing import Dict, List, Optional
from uuid import UUID

import httpx
import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport

from chat_relay.api.dependencies import AppServices
from chat_relay.api.middleware.auth import SupabaseAuth
from chat_relay.api.middleware.rate_limit import InMemoryRateLimitStore, IPRateGuard
from chat_relay.api.server import create_app
from chat_relay.config.settings import Settings
from chat_relay.models.events import CompletedEvent, FailedEvent, TokenEvent
from chat_relay.models.usage import TokenUsage
from chat_relay.providers.base import ChatResult, ProviderConfig, Vendor, check_prompt
from chat_relay.providers.factory import ProviderFactory
from chat_relay.storage import InMemoryMessageStore, InMemoryProfileStore, InMemoryUsageLedger

JWT_SECRET = "test-jwt-secret-with-enough-bytes-for-hs256"
USER_ID = "3f1c2b7a-0000-4000-8000-00000000a1b2"
CONVERSATION_ID = "6b2d9c1e-5a4f-4e3b-9c8d-7e6f5a4b3c2d"


def make_token(
    user_id: str = USER_ID,
    secret: str = JWT_SECRET,
    audience: str = "authenticated",
    expires_in: int = 3600,
    **claims,
) -> str:
    payload = {"sub": user_id, "aud": audience, "exp": int(time.time()) + expires_in, "role": "authenticated"}
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_headers(user_id: str = USER_ID) -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id)}"}


def chat_body(content: str = "Hello", model: str = "gpt-3.5-turbo", **extra) -> Dict:
    body = {"messages": [{"role": "user", "content": content}], "model": model}
    body.update(extra)
    return body


def parse_sse(text: str) -> List[Dict]:
    """Decode a complete SSE body into its JSON payloads."""
    events = []
    for frame in text.split("\n\n"):
        frame = frame.strip()
        if frame.startswith("data: "):
            events.append(json.loads(frame[len("data: "):]))
    return events


class FakeProvider:
    """Scripted stand-in for a vendor adapter.

    ``events`` is replayed by ``stream_chat``; ``result`` or ``error`` drives ``chat``.
    Every call records the turns it received.
    """

    def __init__(self, events=None, result: Optional[ChatResult] = None, error: Optional[Exception] = None):
        self.vendor = Vendor.OPENAI
        self.config: Optional[ProviderConfig] = None
        self.events = list(events) if events is not None else [
            TokenEvent("Hel"),
            TokenEvent("lo"),
            CompletedEvent("Hello", TokenUsage.from_counts(5, 2)),
        ]
        self.result = result or ChatResult(content="Hello", usage=TokenUsage.from_counts(5, 2))
        self.error = error
        self.calls: List = []
        self.built: List[str] = []
        self.closed = False

    def bind(self, vendor: Vendor, config: ProviderConfig) -> "FakeProvider":
        self.vendor = vendor
        self.config = config
        self.built.append(config.model)
        return self

    async def stream_chat(self, turns):
        self.calls.append(list(turns))
        problem = check_prompt(turns)
        if problem:
            yield FailedEvent(problem)
            return
        try:
            for event in self.events:
                yield event
        finally:
            self.closed = True

    async def chat(self, turns):
        self.calls.append(list(turns))
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        openai_api_key="sk-test",
        anthropic_api_key="sk-ant-test",
        google_api_key="google-test",
        supabase_jwt_secret=JWT_SECRET,
        database_url=None,
        redis_url=None,
        enable_metrics=True,
    )


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def rate_store():
    return InMemoryRateLimitStore()


@pytest.fixture
def profiles():
    return InMemoryProfileStore()


@pytest.fixture
def ledger():
    return InMemoryUsageLedger()


@pytest.fixture
def message_store():
    store = InMemoryMessageStore()
    store.add_conversation(UUID(CONVERSATION_ID), USER_ID)
    return store


@pytest.fixture
def factory(settings, fake_provider):
    builders = {vendor: (lambda config, vendor=vendor: fake_provider.bind(vendor, config)) for vendor in Vendor}
    return ProviderFactory(settings, builders=builders)


@pytest.fixture
def services(settings, rate_store, profiles, ledger, message_store, factory):
    return AppServices(
        settings=settings,
        auth=SupabaseAuth.from_settings(settings),
        rate_guard=IPRateGuard(rate_store, limit=settings.ip_rate_limit, window_seconds=settings.ip_rate_window_seconds),
        profiles=profiles,
        ledger=ledger,
        messages=message_store,
        factory=factory,
    )


@pytest.fixture
def app(settings, services):
    return create_app(settings=settings, services=services)


@pytest_asyncio.fixture
async def client(app):
    """HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
