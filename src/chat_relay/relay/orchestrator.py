"""Relay orchestrator: admission pipeline, streaming and post-generation bookkeeping.

A request moves through

    Admitted → Authenticated → QuotaChecked → Validated → ModelAuthorized
             → Streaming → Finalizing → Closed

and may end in ``Aborted`` from any non-terminal state. ``admit`` runs every step up
to ``ModelAuthorized`` and raises a ``RelayError`` when a guard refuses; nothing has
been sent to the client at that point. ``relay`` then produces the event stream,
which always ends with exactly one ``done`` or ``error`` event.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Optional

from pydantic import ValidationError

from ..api.middleware.rate_limit import IPRateGuard
from ..billing.quota import QuotaDecision, evaluate_quota, summarize_usage
from ..billing.tiers import SubscriptionTier, can_access_model
from ..errors import (
    InternalError,
    ModelForbidden,
    PersistenceFailed,
    QuotaExceeded,
    RateLimited,
    RelayError,
    Unauthenticated,
    UpstreamProviderError,
    ValidationFailed,
    retry_after_seconds,
)
from ..logging import anonymize_user_id, get_logger
from ..metrics import (
    GUARD_REJECTIONS_TOTAL,
    PERSISTENCE_FAILURES_TOTAL,
    RELAY_OUTCOMES_TOTAL,
    STREAM_DURATION,
    TOKENS_TOTAL,
)
from ..models.chat import ChatRequest, ConversationTurn, GenerationRequest, describe_validation_error
from ..models.events import CompletedEvent, FailedEvent, TokenEvent
from ..models.usage import TokenUsage, UsagePeriodRecord
from ..providers.base import ChatProvider, ChatResult
from ..providers.factory import ProviderFactory
from ..security import detect_injection_attempt, sanitize_chat_message
from ..storage import MessageStore, ProfileStore, UsageLedger
from ..streaming.sse import encode_event

logger = get_logger(__name__)

GENERATION_ERROR_MESSAGE = "An internal error occurred while generating the response"


class RelayState(str, Enum):
    ADMITTED = "admitted"
    AUTHENTICATED = "authenticated"
    QUOTA_CHECKED = "quota_checked"
    VALIDATED = "validated"
    MODEL_AUTHORIZED = "model_authorized"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    CLOSED = "closed"
    ABORTED = "aborted"


TERMINAL_STATES = frozenset({RelayState.CLOSED, RelayState.ABORTED})


@dataclass
class RelaySession:
    """Everything the orchestrator learned about one request."""

    caller_id: Optional[str]
    client_ip: str
    state: RelayState = RelayState.ADMITTED
    history: List[RelayState] = field(default_factory=lambda: [RelayState.ADMITTED])
    tier: Optional[SubscriptionTier] = None
    usage: Optional[UsagePeriodRecord] = None
    quota: Optional[QuotaDecision] = None
    request: Optional[GenerationRequest] = None
    provider: Optional[ChatProvider] = None
    started_at: float = field(default_factory=time.monotonic)

    def advance(self, state: RelayState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"relay session already {self.state.value}")
        self.state = state
        self.history.append(state)

    @property
    def vendor(self) -> str:
        return self.provider.vendor.value if self.provider is not None else "unknown"

    @property
    def model(self) -> Optional[str]:
        return self.request.model_id.value if self.request is not None else None


class RelayOrchestrator:
    """Runs one chat request from admission to its terminal event."""

    def __init__(
        self,
        rate_guard: IPRateGuard,
        profiles: ProfileStore,
        ledger: UsageLedger,
        messages: MessageStore,
        factory: ProviderFactory,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.rate_guard = rate_guard
        self.profiles = profiles
        self.ledger = ledger
        self.messages = messages
        self.factory = factory
        self.clock = clock

    async def admit(self, caller_id: Optional[str], client_ip: str, body: bytes) -> RelaySession:
        """Run the guards in order; raise the first refusal as a ``RelayError``."""
        session = RelaySession(caller_id=caller_id, client_ip=client_ip)
        guard = "auth"
        try:
            if not caller_id:
                raise Unauthenticated()
            session.advance(RelayState.AUTHENTICATED)

            guard = "ip"
            await self._check_ip(session)

            guard = "quota"
            await self._check_quota(session)
            session.advance(RelayState.QUOTA_CHECKED)

            guard = "validation"
            session.request = self._parse(body)
            session.advance(RelayState.VALIDATED)

            guard = "model"
            if not can_access_model(session.tier, session.request.model_id):
                raise ModelForbidden(session.tier.value, session.request.model_id.value)
            session.advance(RelayState.MODEL_AUTHORIZED)

            session.request = self._sanitize(session)

            guard = "provider"
            session.provider = self.factory.for_model(session.request.model_id)
        except RelayError as e:
            session.advance(RelayState.ABORTED)
            GUARD_REJECTIONS_TOTAL.labels(guard=guard).inc()
            RELAY_OUTCOMES_TOTAL.labels(outcome="rejected").inc()
            logger.info(
                "relay_rejected",
                guard=guard,
                status_code=e.status_code,
                reason=e.message,
                user=anonymize_user_id(caller_id),
            )
            raise

        return session

    async def _check_ip(self, session: RelaySession) -> None:
        decision = await self.rate_guard.check(session.client_ip)
        if not decision.allowed:
            raise RateLimited(decision.reason, retry_after=retry_after_seconds(decision.reset_at))

    async def _check_quota(self, session: RelaySession) -> None:
        now = self.clock()
        try:
            session.tier = await self.profiles.get_tier(session.caller_id)
        except PersistenceFailed as e:
            logger.error("profile_lookup_failed", error=str(e), user=anonymize_user_id(session.caller_id))
            raise InternalError("Failed to fetch profile") from e

        try:
            session.usage = await self.ledger.get_usage(session.caller_id, now)
        except PersistenceFailed as e:
            logger.error("usage_lookup_failed", error=str(e), user=anonymize_user_id(session.caller_id))
            raise InternalError("Failed to fetch usage") from e

        session.quota = evaluate_quota(session.tier, session.usage.messages_count, now)
        if not session.quota.allowed:
            summary = summarize_usage(session.tier, session.usage)
            raise QuotaExceeded(
                session.quota.reason,
                retry_after=retry_after_seconds(session.quota.reset_at, now),
                extra={"usage": summary.model_dump(mode="json")},
            )

    @staticmethod
    def _parse(body: bytes) -> GenerationRequest:
        try:
            payload = json.loads(body)
        except ValueError:
            raise ValidationFailed("request body is not valid JSON")

        try:
            chat_request = ChatRequest.model_validate(payload)
        except ValidationError as e:
            raise ValidationFailed(describe_validation_error(e))

        return GenerationRequest.from_chat_request(chat_request)

    def _sanitize(self, session: RelaySession) -> GenerationRequest:
        """Strip executable markup from every turn; turns left empty are dropped."""
        turns = []
        for turn in session.request.turns:
            if detect_injection_attempt(turn.content):
                logger.info(
                    "injection_marker_detected",
                    role=turn.role.value,
                    user=anonymize_user_id(session.caller_id),
                )
            content = sanitize_chat_message(turn.content)
            if content:
                turns.append(ConversationTurn(role=turn.role, content=content))

        return session.request.model_copy(update={"turns": tuple(turns)})

    async def relay(
        self,
        session: RelaySession,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncIterator[str]:
        """Stream SSE frames for an admitted session.

        Tokens are forwarded as they arrive. A provider failure yields one generic
        ``error`` event and skips all bookkeeping. On completion the message and usage
        are recorded before ``done`` is sent, unless the client has already gone away.
        Closing this generator early closes the upstream stream as well.
        """
        session.advance(RelayState.STREAMING)
        session.started_at = time.monotonic()
        events = session.provider.stream_chat(session.request.turns)
        token_count = 0

        try:
            async for event in events:
                if isinstance(event, TokenEvent):
                    token_count += 1
                    yield encode_event({"token": event.text})

                elif isinstance(event, FailedEvent):
                    self._record_failure(session, event.error, event.exception, token_count)
                    yield encode_event({"error": GENERATION_ERROR_MESSAGE})
                    return

                elif isinstance(event, CompletedEvent):
                    if is_disconnected is not None and await is_disconnected():
                        self._record_abort(session, token_count)
                        return

                    session.advance(RelayState.FINALIZING)
                    await self._finalize(session, event.content, event.usage)
                    session.advance(RelayState.CLOSED)
                    RELAY_OUTCOMES_TOTAL.labels(outcome="completed").inc()
                    logger.info(
                        "relay_completed",
                        vendor=session.vendor,
                        model=session.model,
                        tokens=event.usage.total_tokens,
                        token_events=token_count,
                        user=anonymize_user_id(session.caller_id),
                    )
                    yield encode_event({"done": True, "usage": event.usage.model_dump()})
                    return

            self._record_failure(session, "provider stream ended without a terminal event", None, token_count)
            yield encode_event({"error": GENERATION_ERROR_MESSAGE})

        except (GeneratorExit, asyncio.CancelledError):
            self._record_abort(session, token_count)
            raise

        except Exception as e:
            if session.state in TERMINAL_STATES:
                raise
            logger.exception("relay_stream_crashed", vendor=session.vendor, model=session.model)
            self._record_failure(session, str(e), e, token_count)
            yield encode_event({"error": GENERATION_ERROR_MESSAGE})

        finally:
            await events.aclose()
            STREAM_DURATION.labels(vendor=session.vendor).observe(time.monotonic() - session.started_at)

    async def complete(self, session: RelaySession) -> ChatResult:
        """Non-streaming path: same admission and bookkeeping, one response body."""
        session.advance(RelayState.STREAMING)
        session.started_at = time.monotonic()

        try:
            result = await session.provider.chat(session.request.turns)
        except (UpstreamProviderError, ValidationFailed) as e:
            self._record_failure(session, str(e), e, 0)
            raise

        session.advance(RelayState.FINALIZING)
        await self._finalize(session, result.content, result.usage)
        session.advance(RelayState.CLOSED)
        RELAY_OUTCOMES_TOTAL.labels(outcome="completed").inc()
        STREAM_DURATION.labels(vendor=session.vendor).observe(time.monotonic() - session.started_at)
        logger.info(
            "relay_completed",
            vendor=session.vendor,
            model=session.model,
            tokens=result.usage.total_tokens,
            stream=False,
            user=anonymize_user_id(session.caller_id),
        )
        return result

    async def _finalize(self, session: RelaySession, content: str, usage: TokenUsage) -> None:
        """Record the generation; each write is attempted even if an earlier one failed."""
        latency_ms = int((time.monotonic() - session.started_at) * 1000)
        conversation_id = session.request.conversation_id

        if conversation_id is not None:
            try:
                await self.messages.insert_message(
                    conversation_id,
                    session.caller_id,
                    content,
                    usage.total_tokens,
                    session.model,
                    {"provider": session.vendor, "latency_ms": latency_ms},
                )
            except PersistenceFailed as e:
                self._record_persistence_failure(session, "insert_message", e)

            try:
                await self.messages.touch_conversation(conversation_id, session.caller_id)
            except PersistenceFailed as e:
                self._record_persistence_failure(session, "touch_conversation", e)

        try:
            await self.ledger.increment(session.caller_id, usage.total_tokens, self.clock())
        except PersistenceFailed as e:
            self._record_persistence_failure(session, "increment_usage", e)

        TOKENS_TOTAL.labels(vendor=session.vendor, kind="prompt").inc(usage.prompt_tokens)
        TOKENS_TOTAL.labels(vendor=session.vendor, kind="completion").inc(usage.completion_tokens)
        TOKENS_TOTAL.labels(vendor=session.vendor, kind="total").inc(usage.total_tokens)

    def _record_failure(
        self,
        session: RelaySession,
        error: str,
        exception: Optional[BaseException],
        token_count: int,
    ) -> None:
        session.advance(RelayState.ABORTED)
        RELAY_OUTCOMES_TOTAL.labels(outcome="failed").inc()
        logger.error(
            "relay_stream_failed",
            vendor=session.vendor,
            model=session.model,
            error=error,
            error_type=type(exception).__name__ if exception is not None else None,
            token_events=token_count,
            user=anonymize_user_id(session.caller_id),
        )

    def _record_abort(self, session: RelaySession, token_count: int) -> None:
        if session.state in TERMINAL_STATES:
            return
        session.advance(RelayState.ABORTED)
        RELAY_OUTCOMES_TOTAL.labels(outcome="aborted").inc()
        logger.info(
            "relay_client_disconnected",
            vendor=session.vendor,
            model=session.model,
            token_events=token_count,
            user=anonymize_user_id(session.caller_id),
        )

    def _record_persistence_failure(self, session: RelaySession, operation: str, error: PersistenceFailed) -> None:
        PERSISTENCE_FAILURES_TOTAL.labels(operation=operation).inc()
        logger.error(
            "relay_persistence_failed",
            operation=operation,
            error=str(error),
            model=session.model,
            user=anonymize_user_id(session.caller_id),
        )
