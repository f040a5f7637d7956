"""Tests for the relay orchestrator: guard ordering, streaming and bookkeeping."""

import json
from datetime import datetime
from uuid import UUID

import pytest

from chat_relay.api.middleware.rate_limit import InMemoryRateLimitStore, IPRateGuard
from chat_relay.billing.tiers import SubscriptionTier
from chat_relay.errors import (
    InternalError,
    ModelForbidden,
    PersistenceFailed,
    QuotaExceeded,
    RateLimited,
    Unauthenticated,
    UpstreamProviderError,
    ValidationFailed,
)
from chat_relay.models.events import FailedEvent, TokenEvent
from chat_relay.relay import GENERATION_ERROR_MESSAGE, RelayOrchestrator, RelayState

from conftest import CONVERSATION_ID, USER_ID, chat_body, parse_sse

NOW = datetime(2024, 3, 14, 12, 0, 0)


def body(**kwargs) -> bytes:
    return json.dumps(chat_body(**kwargs)).encode()


class FailingMessageStore:
    def __init__(self):
        self.touched = []

    async def insert_message(self, conversation_id, user_id, content, tokens_used, model, metadata=None):
        raise PersistenceFailed("insert failed")

    async def touch_conversation(self, conversation_id, user_id):
        self.touched.append(conversation_id)


class FailingLedger:
    async def get_usage(self, user_id, now=None):
        raise PersistenceFailed("connection refused")

    async def increment(self, user_id, tokens, now=None):
        raise PersistenceFailed("connection refused")


@pytest.fixture
def orchestrator(rate_store, profiles, ledger, message_store, factory):
    return RelayOrchestrator(
        rate_guard=IPRateGuard(rate_store, limit=100, window_seconds=900),
        profiles=profiles,
        ledger=ledger,
        messages=message_store,
        factory=factory,
        clock=lambda: NOW,
    )


async def run(orchestrator, session, is_disconnected=None):
    frames = [frame async for frame in orchestrator.relay(session, is_disconnected)]
    return parse_sse("".join(frames))


class TestAdmission:
    @pytest.mark.asyncio
    async def test_free_user_is_admitted(self, orchestrator, fake_provider):
        session = await orchestrator.admit(USER_ID, "10.0.0.1", body())

        assert session.state is RelayState.MODEL_AUTHORIZED
        assert session.history == [
            RelayState.ADMITTED,
            RelayState.AUTHENTICATED,
            RelayState.QUOTA_CHECKED,
            RelayState.VALIDATED,
            RelayState.MODEL_AUTHORIZED,
        ]
        assert session.tier is SubscriptionTier.FREE
        assert session.provider is fake_provider
        assert fake_provider.built == ["gpt-3.5-turbo"]

    @pytest.mark.asyncio
    async def test_missing_identity_is_checked_first(self, orchestrator):
        with pytest.raises(Unauthenticated):
            await orchestrator.admit(None, "10.0.0.1", b"not json")

    @pytest.mark.asyncio
    async def test_ip_guard_runs_before_quota(self, profiles, ledger, message_store, factory):
        orchestrator = RelayOrchestrator(
            IPRateGuard(InMemoryRateLimitStore(), limit=1, window_seconds=60),
            profiles, ledger, message_store, factory,
        )
        ledger.set_usage(USER_ID, 50)

        with pytest.raises(QuotaExceeded):
            await orchestrator.admit(USER_ID, "10.0.0.1", body())

        with pytest.raises(RateLimited) as exc_info:
            await orchestrator.admit(USER_ID, "10.0.0.1", body())

        assert not isinstance(exc_info.value, QuotaExceeded)
        assert exc_info.value.status_code == 429
        assert 1 <= int(exc_info.value.headers["Retry-After"]) <= 60

    @pytest.mark.asyncio
    async def test_quota_runs_before_validation(self, orchestrator, ledger):
        ledger.set_usage(USER_ID, 50, now=NOW)

        with pytest.raises(QuotaExceeded) as exc_info:
            await orchestrator.admit(USER_ID, "10.0.0.1", b"{not json")

        error = exc_info.value
        assert error.status_code == 429
        assert error.message == "Monthly message limit reached (50 messages). Upgrade your plan for more."
        # NOW is 2024-03-14 12:00; the period resets 2024-04-01 00:00.
        assert error.headers["Retry-After"] == str(17 * 86400 + 12 * 3600)
        assert error.to_body()["usage"]["messages_used"] == 50
        assert error.to_body()["usage"]["remaining"] == 0

    @pytest.mark.asyncio
    async def test_last_free_message_then_denied(self, orchestrator, ledger):
        ledger.set_usage(USER_ID, 49, now=NOW)

        session = await orchestrator.admit(USER_ID, "10.0.0.1", body())
        assert session.quota.remaining == 1
        await run(orchestrator, session)
        assert (await ledger.get_usage(USER_ID, NOW)).messages_count == 50

        with pytest.raises(QuotaExceeded) as exc_info:
            await orchestrator.admit(USER_ID, "10.0.0.1", body())
        assert exc_info.value.retry_after == int((datetime(2024, 4, 1) - NOW).total_seconds())

    @pytest.mark.asyncio
    async def test_opus_on_free_tier_never_reaches_a_provider(self, orchestrator, fake_provider):
        with pytest.raises(ModelForbidden):
            await orchestrator.admit(USER_ID, "10.0.0.1", body(model="claude-3-opus-20240229"))

        assert fake_provider.built == []
        assert fake_provider.calls == []

    @pytest.mark.asyncio
    async def test_enterprise_is_unlimited(self, orchestrator, profiles, ledger):
        profiles.set_tier(USER_ID, "enterprise")
        ledger.set_usage(USER_ID, 1_000_000, now=NOW)

        session = await orchestrator.admit(USER_ID, "10.0.0.1", body(model="claude-3-opus-20240229"))

        assert session.quota.allowed

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload, fragment", [
        (b"{not json", "not valid JSON"),
        (json.dumps({"messages": [], "model": "gpt-4o"}).encode(), "messages"),
        (json.dumps(chat_body(model="gpt-5")).encode(), "model"),
        (json.dumps(chat_body(conversationId="nope")).encode(), "conversationId"),
    ])
    async def test_validation_failures(self, orchestrator, fake_provider, payload, fragment):
        with pytest.raises(ValidationFailed) as exc_info:
            await orchestrator.admit(USER_ID, "10.0.0.1", payload)

        assert exc_info.value.status_code == 400
        assert exc_info.value.message.startswith("Validation failed: ")
        assert fragment in exc_info.value.message
        assert fake_provider.built == []

    @pytest.mark.asyncio
    async def test_model_outside_tier_is_forbidden(self, orchestrator, fake_provider, ledger):
        with pytest.raises(ModelForbidden) as exc_info:
            await orchestrator.admit(USER_ID, "10.0.0.1", body(model="gpt-4"))

        assert exc_info.value.status_code == 403
        assert exc_info.value.message == "Your subscription tier (free) does not include access to gpt-4"
        assert fake_provider.built == []
        assert fake_provider.calls == []
        assert (await ledger.get_usage(USER_ID, NOW)).messages_count == 0

    @pytest.mark.asyncio
    async def test_profile_failure_is_internal_error(self, rate_store, ledger, message_store, factory):
        class BrokenProfiles:
            async def get_tier(self, user_id):
                raise PersistenceFailed("timeout")

        orchestrator = RelayOrchestrator(
            IPRateGuard(rate_store), BrokenProfiles(), ledger, message_store, factory,
        )

        with pytest.raises(InternalError) as exc_info:
            await orchestrator.admit(USER_ID, "10.0.0.1", body())

        assert exc_info.value.status_code == 500
        assert exc_info.value.message == "Failed to fetch profile"

    @pytest.mark.asyncio
    async def test_usage_failure_is_internal_error(self, rate_store, profiles, message_store, factory):
        orchestrator = RelayOrchestrator(
            IPRateGuard(rate_store), profiles, FailingLedger(), message_store, factory,
        )

        with pytest.raises(InternalError) as exc_info:
            await orchestrator.admit(USER_ID, "10.0.0.1", body())

        assert exc_info.value.message == "Failed to fetch usage"

    @pytest.mark.asyncio
    async def test_markup_is_stripped_before_the_provider(self, orchestrator):
        payload = json.dumps({
            "model": "gpt-3.5-turbo",
            "messages": [
                {"role": "assistant", "content": "<script>x()</script>"},
                {"role": "user", "content": "Hi <script>alert(1)</script>there"},
            ],
        }).encode()

        session = await orchestrator.admit(USER_ID, "10.0.0.1", payload)

        assert [turn.content for turn in session.request.turns] == ["Hi there"]

    @pytest.mark.asyncio
    async def test_rejected_session_cannot_advance(self, orchestrator):
        session = await orchestrator.admit(USER_ID, "10.0.0.1", body())
        session.advance(RelayState.ABORTED)

        with pytest.raises(RuntimeError):
            session.advance(RelayState.STREAMING)


class TestRelay:
    @pytest.mark.asyncio
    async def test_successful_stream_records_message_and_usage(self, orchestrator, ledger, message_store):
        session = await orchestrator.admit(USER_ID, "10.0.0.1", body(conversationId=CONVERSATION_ID))

        events = await run(orchestrator, session)

        assert events == [
            {"token": "Hel"},
            {"token": "lo"},
            {"done": True, "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7}},
        ]
        assert session.state is RelayState.CLOSED

        usage = await ledger.get_usage(USER_ID, NOW)
        assert usage.messages_count == 1
        assert usage.tokens_used == 7

        [stored] = message_store.messages
        assert stored.conversation_id == UUID(CONVERSATION_ID)
        assert stored.content == "Hello"
        assert stored.tokens_used == 7
        assert stored.model == "gpt-3.5-turbo"
        assert stored.role == "assistant"
        assert stored.metadata["provider"] == "openai"
        assert "latency_ms" in stored.metadata
        assert UUID(CONVERSATION_ID) in message_store.touched

    @pytest.mark.asyncio
    async def test_without_conversation_only_usage_is_recorded(self, orchestrator, ledger, message_store):
        session = await orchestrator.admit(USER_ID, "10.0.0.1", body())

        events = await run(orchestrator, session)

        assert events[-1]["done"] is True
        assert message_store.messages == []
        assert (await ledger.get_usage(USER_ID, NOW)).messages_count == 1

    @pytest.mark.asyncio
    async def test_provider_failure_sends_generic_error_and_skips_bookkeeping(
        self, orchestrator, fake_provider, ledger, message_store,
    ):
        fake_provider.events = [TokenEvent("Hel"), FailedEvent("openai: APIConnectionError: reset")]
        session = await orchestrator.admit(USER_ID, "10.0.0.1", body(conversationId=CONVERSATION_ID))

        events = await run(orchestrator, session)

        assert events == [{"token": "Hel"}, {"error": GENERATION_ERROR_MESSAGE}]
        assert "reset" not in json.dumps(events)
        assert session.state is RelayState.ABORTED
        assert (await ledger.get_usage(USER_ID, NOW)).messages_count == 0
        assert message_store.messages == []

    @pytest.mark.asyncio
    async def test_stream_without_terminal_event_fails(self, orchestrator, fake_provider, ledger):
        fake_provider.events = [TokenEvent("Hel")]
        session = await orchestrator.admit(USER_ID, "10.0.0.1", body())

        events = await run(orchestrator, session)

        assert events == [{"token": "Hel"}, {"error": GENERATION_ERROR_MESSAGE}]
        assert (await ledger.get_usage(USER_ID, NOW)).messages_count == 0

    @pytest.mark.asyncio
    async def test_persistence_failure_still_sends_done(self, rate_store, profiles, ledger, factory):
        messages = FailingMessageStore()
        orchestrator = RelayOrchestrator(IPRateGuard(rate_store), profiles, ledger, messages, factory,
                                         clock=lambda: NOW)
        session = await orchestrator.admit(USER_ID, "10.0.0.1", body(conversationId=CONVERSATION_ID))

        events = await run(orchestrator, session)

        assert events[-1]["done"] is True
        assert messages.touched == [UUID(CONVERSATION_ID)]
        assert (await ledger.get_usage(USER_ID, NOW)).messages_count == 1

    @pytest.mark.asyncio
    async def test_foreign_conversation_is_not_written(self, orchestrator, ledger, message_store):
        intruder = "9d4e5f60-0000-4000-8000-0000000000ff"
        session = await orchestrator.admit(intruder, "10.0.0.2", body(conversationId=CONVERSATION_ID))

        events = await run(orchestrator, session)

        assert events[-1]["done"] is True
        assert message_store.messages == []
        assert message_store.touched == {}
        assert (await ledger.get_usage(intruder, NOW)).messages_count == 1

    @pytest.mark.asyncio
    async def test_ledger_failure_still_sends_done(self, rate_store, profiles, ledger, message_store, factory):
        orchestrator = RelayOrchestrator(IPRateGuard(rate_store), profiles, ledger, message_store, factory,
                                         clock=lambda: NOW)
        session = await orchestrator.admit(USER_ID, "10.0.0.1", body(conversationId=CONVERSATION_ID))
        orchestrator.ledger = FailingLedger()

        events = await run(orchestrator, session)

        assert events[-1]["done"] is True
        assert len(message_store.messages) == 1

    @pytest.mark.asyncio
    async def test_disconnect_before_completion_skips_bookkeeping(self, orchestrator, ledger, message_store):
        session = await orchestrator.admit(USER_ID, "10.0.0.1", body(conversationId=CONVERSATION_ID))

        async def disconnected():
            return True

        events = await run(orchestrator, session, disconnected)

        assert events == [{"token": "Hel"}, {"token": "lo"}]
        assert session.state is RelayState.ABORTED
        assert message_store.messages == []
        assert (await ledger.get_usage(USER_ID, NOW)).messages_count == 0

    @pytest.mark.asyncio
    async def test_closing_the_relay_closes_the_provider_stream(self, orchestrator, fake_provider, ledger):
        session = await orchestrator.admit(USER_ID, "10.0.0.1", body())
        stream = orchestrator.relay(session)

        first = await stream.__anext__()
        await stream.aclose()

        assert parse_sse(first) == [{"token": "Hel"}]
        assert fake_provider.closed
        assert session.state is RelayState.ABORTED
        assert (await ledger.get_usage(USER_ID, NOW)).messages_count == 0

    @pytest.mark.asyncio
    async def test_exactly_one_terminal_event(self, orchestrator):
        session = await orchestrator.admit(USER_ID, "10.0.0.1", body())

        events = await run(orchestrator, session)

        terminals = [e for e in events if "done" in e or "error" in e]
        assert len(terminals) == 1
        assert events[-1] is terminals[0]


class TestComplete:
    @pytest.mark.asyncio
    async def test_non_streaming_completion(self, orchestrator, ledger, message_store):
        session = await orchestrator.admit(
            USER_ID, "10.0.0.1", body(conversationId=CONVERSATION_ID, stream=False),
        )

        result = await orchestrator.complete(session)

        assert result.content == "Hello"
        assert session.state is RelayState.CLOSED
        assert (await ledger.get_usage(USER_ID, NOW)).tokens_used == 7
        assert message_store.messages[0].content == "Hello"

    @pytest.mark.asyncio
    async def test_upstream_error_propagates_without_bookkeeping(self, orchestrator, fake_provider, ledger):
        fake_provider.error = UpstreamProviderError("openai: RateLimitError: slow down")
        session = await orchestrator.admit(USER_ID, "10.0.0.1", body(stream=False))

        with pytest.raises(UpstreamProviderError):
            await orchestrator.complete(session)

        assert session.state is RelayState.ABORTED
        assert (await ledger.get_usage(USER_ID, NOW)).messages_count == 0
