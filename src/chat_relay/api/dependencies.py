"""Service container and FastAPI dependencies."""

from dataclasses import dataclass, field
from typing import Optional

from fastapi import Request

from ..config.settings import Settings
from ..health import HealthChecker
from ..logging import get_logger
from ..providers.factory import ProviderFactory
from ..relay.orchestrator import RelayOrchestrator
from ..storage import (
    Database,
    InMemoryMessageStore,
    InMemoryProfileStore,
    InMemoryUsageLedger,
    MessageStore,
    PostgresMessageStore,
    PostgresProfileStore,
    PostgresUsageLedger,
    ProfileStore,
    UsageLedger,
)
from .middleware.auth import SupabaseAuth
from .middleware.rate_limit import (
    InMemoryRateLimitStore,
    IPRateGuard,
    RateLimitStore,
    RedisRateLimitStore,
)

logger = get_logger(__name__)


@dataclass
class AppServices:
    """Long-lived collaborators shared by every request."""

    settings: Settings
    auth: SupabaseAuth
    rate_guard: IPRateGuard
    profiles: ProfileStore
    ledger: UsageLedger
    messages: MessageStore
    factory: ProviderFactory
    orchestrator: RelayOrchestrator = field(init=False)
    health: HealthChecker = field(init=False)
    database: Optional[Database] = None

    def __post_init__(self):
        self.orchestrator = RelayOrchestrator(
            rate_guard=self.rate_guard,
            profiles=self.profiles,
            ledger=self.ledger,
            messages=self.messages,
            factory=self.factory,
        )
        self.health = HealthChecker(
            database=self.database,
            rate_limit_store=self.rate_guard.store,
            configured_vendors=self.factory.configured_vendors(),
        )

    async def aclose(self) -> None:
        await self.rate_guard.stop_sweeper()
        await self.factory.aclose()
        if self.database is not None:
            await self.database.close()


async def build_services(settings: Settings) -> AppServices:
    """Connect storage and the rate-limit store according to ``settings``."""
    database = None
    if settings.database_url:
        database = Database(settings.database_url, settings.database_pool_min, settings.database_pool_max)
        await database.connect()
        await database.create_tables()
        profiles: ProfileStore = PostgresProfileStore(database)
        ledger: UsageLedger = PostgresUsageLedger(database)
        messages: MessageStore = PostgresMessageStore(database)
    else:
        logger.warning("database_not_configured", detail="using in-memory stores")
        profiles = InMemoryProfileStore()
        ledger = InMemoryUsageLedger()
        messages = InMemoryMessageStore()

    if settings.redis_url:
        store: RateLimitStore = RedisRateLimitStore(settings.redis_url)
    else:
        store = InMemoryRateLimitStore()

    return AppServices(
        settings=settings,
        auth=SupabaseAuth.from_settings(settings),
        rate_guard=IPRateGuard(store, settings.ip_rate_limit, settings.ip_rate_window_seconds),
        profiles=profiles,
        ledger=ledger,
        messages=messages,
        factory=ProviderFactory(settings),
        database=database,
    )


def get_services(request: Request) -> AppServices:
    return request.app.state.services


def get_orchestrator(request: Request) -> RelayOrchestrator:
    return request.app.state.services.orchestrator
