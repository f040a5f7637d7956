"""Tests for the shared provider helpers and the stream normalizer."""

import asyncio

import pytest

from chat_relay.models.chat import ConversationTurn, Role
from chat_relay.models.events import CompletedEvent, FailedEvent, TokenEvent
from chat_relay.models.usage import TokenUsage
from chat_relay.providers.base import (
    INVALID_PROMPT_MESSAGE,
    Vendor,
    call_with_retry,
    check_prompt,
    normalize_stream,
    split_system,
    window_turns,
)


def turn(role: str, content: str) -> ConversationTurn:
    return ConversationTurn(role=Role(role), content=content)


async def collect(events):
    return [event async for event in events]


class TestCheckPrompt:
    def test_trailing_user_turn_is_valid(self):
        assert check_prompt([turn("system", "be nice"), turn("user", "hi")]) is None

    def test_trailing_system_turn_is_ignored(self):
        assert check_prompt([turn("user", "hi"), turn("system", "be nice")]) is None

    @pytest.mark.parametrize("turns", [
        [],
        [turn("system", "only system")],
        [turn("user", "hi"), turn("assistant", "hello")],
        [turn("user", "   ")],
    ])
    def test_invalid_sequences(self, turns):
        assert check_prompt(turns) == INVALID_PROMPT_MESSAGE


def test_split_system_joins_instructions():
    system, conversation = split_system([
        turn("system", "one"),
        turn("user", "hi"),
        turn("system", "two"),
        turn("assistant", "yo"),
    ])

    assert system == "one\n\ntwo"
    assert [t.role for t in conversation] == [Role.USER, Role.ASSISTANT]


def test_split_system_without_instructions():
    system, conversation = split_system([turn("user", "hi")])
    assert system is None
    assert len(conversation) == 1


class TestWindowTurns:
    def test_no_limit_keeps_everything(self):
        turns = [turn("user", str(i)) for i in range(5)]
        assert window_turns(turns, None) == turns

    def test_window_opens_on_user_turn(self):
        turns = [
            turn("user", "1"), turn("assistant", "2"),
            turn("user", "3"), turn("assistant", "4"),
            turn("user", "5"),
        ]
        window = window_turns(turns, 4)
        assert [t.content for t in window] == ["3", "4", "5"]


async def deltas(*items, fail_with=None):
    for item in items:
        yield item
    if fail_with is not None:
        raise fail_with


@pytest.mark.asyncio
async def test_normalize_accumulates_tokens_and_usage():
    events = await collect(normalize_stream(
        Vendor.OPENAI,
        deltas("Hel", "", "lo", TokenUsage.from_counts(3, 1), TokenUsage.from_counts(3, 2)),
    ))

    assert events == [
        TokenEvent("Hel"),
        TokenEvent("lo"),
        CompletedEvent("Hello", TokenUsage(prompt_tokens=3, completion_tokens=2, total_tokens=5)),
    ]


@pytest.mark.asyncio
async def test_normalize_empty_stream_completes():
    events = await collect(normalize_stream(Vendor.ANTHROPIC, deltas()))
    assert events == [CompletedEvent("", TokenUsage())]


@pytest.mark.asyncio
async def test_normalize_reports_mid_stream_failure_after_tokens():
    events = await collect(normalize_stream(
        Vendor.GOOGLE,
        deltas("Hel", "lo", fail_with=ConnectionError("reset by peer")),
    ))

    assert events[:2] == [TokenEvent("Hel"), TokenEvent("lo")]
    assert isinstance(events[2], FailedEvent)
    assert events[2].error == "google: ConnectionError: reset by peer"
    assert len(events) == 3


@pytest.mark.asyncio
async def test_normalize_idle_timeout():
    async def stalled():
        yield "a"
        await asyncio.sleep(10)
        yield "b"

    events = await collect(normalize_stream(Vendor.OPENAI, stalled(), idle_timeout=0.05))

    assert events[0] == TokenEvent("a")
    assert isinstance(events[1], FailedEvent)
    assert "no data received" in events[1].error


@pytest.mark.asyncio
async def test_normalize_closes_upstream_when_consumer_stops():
    closed = []

    async def upstream():
        try:
            yield "a"
            yield "b"
            yield "c"
        finally:
            closed.append(True)

    stream = normalize_stream(Vendor.OPENAI, upstream())
    assert await stream.__anext__() == TokenEvent("a")
    await stream.aclose()

    assert closed == [True]


@pytest.mark.asyncio
async def test_call_with_retry_retries_transient_errors():
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise TimeoutError("slow")
        return "ok"

    result = await call_with_retry(flaky, lambda e: isinstance(e, TimeoutError), attempts=3)

    assert result == "ok"
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_call_with_retry_reraises_permanent_errors():
    attempts = []

    async def broken():
        attempts.append(1)
        raise ValueError("bad request")

    with pytest.raises(ValueError):
        await call_with_retry(broken, lambda e: isinstance(e, TimeoutError))

    assert len(attempts) == 1
