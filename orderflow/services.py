"""
Wires the order core from settings: store, session guard, catalog, event feed,
matcher, lifecycle engine and queries.
"""
import logging
from dataclasses import dataclass

from orderflow.catalog import Catalog, InMemoryCatalog, PostgresCatalog
from orderflow.config import Settings, settings as default_settings
from orderflow.db import PostgresOrderStore, close_pool, get_pool, init_schema
from orderflow.dispatch import DispatchMatcher
from orderflow.events import EventPublisher, NullEventPublisher, RedisEventPublisher, SqsEventPublisher
from orderflow.idempotency import IdempotencyRegistry, InMemoryIdempotencyRegistry, RedisIdempotencyRegistry
from orderflow.lifecycle import LifecycleEngine
from orderflow.models import utcnow
from orderflow.queries import OrderQueries
from orderflow.redis_client import close_redis, get_redis
from orderflow.sessions import InMemorySessionDirectory, RedisSessionDirectory, SessionDirectory, SessionGuard
from orderflow.store import InMemoryOrderStore, OrderStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: OrderStore
    sessions: SessionDirectory
    guard: SessionGuard
    catalog: Catalog
    publisher: EventPublisher
    idempotency: IdempotencyRegistry
    matcher: DispatchMatcher
    engine: LifecycleEngine
    queries: OrderQueries


def assemble(
    store: OrderStore,
    sessions: SessionDirectory,
    catalog: Catalog,
    publisher: EventPublisher | None = None,
    idempotency: IdempotencyRegistry | None = None,
    clock=utcnow,
    auto_dispatch: bool | None = None,
) -> Services:
    publisher = publisher or NullEventPublisher()
    idempotency = idempotency or InMemoryIdempotencyRegistry()
    matcher = DispatchMatcher(store, publisher=publisher, clock=clock)
    engine = LifecycleEngine(
        store,
        catalog,
        matcher,
        publisher=publisher,
        idempotency=idempotency,
        clock=clock,
        auto_dispatch=auto_dispatch,
    )
    return Services(
        store=store,
        sessions=sessions,
        guard=SessionGuard(sessions, clock=clock),
        catalog=catalog,
        publisher=publisher,
        idempotency=idempotency,
        matcher=matcher,
        engine=engine,
        queries=OrderQueries(store, catalog),
    )


def build_memory_services(clock=utcnow, auto_dispatch: bool | None = None, publisher: EventPublisher | None = None) -> Services:
    """Everything in-process: development server and tests."""
    return assemble(
        InMemoryOrderStore(),
        InMemorySessionDirectory(),
        InMemoryCatalog(),
        publisher=publisher,
        clock=clock,
        auto_dispatch=auto_dispatch,
    )


async def build_services(cfg: Settings = default_settings) -> Services:
    if cfg.store_backend == "postgres":
        pool = await get_pool()
        await init_schema(pool)
        store: OrderStore = PostgresOrderStore(pool)
        catalog: Catalog = PostgresCatalog(pool)
    else:
        store = InMemoryOrderStore()
        catalog = InMemoryCatalog()

    if cfg.session_backend == "redis":
        r = await get_redis()
        sessions: SessionDirectory = RedisSessionDirectory(r)
        idempotency: IdempotencyRegistry = RedisIdempotencyRegistry(r, cfg.idempotency_ttl_seconds)
    else:
        sessions = InMemorySessionDirectory()
        idempotency = InMemoryIdempotencyRegistry()

    if cfg.event_backend == "redis":
        publisher: EventPublisher = RedisEventPublisher(await get_redis())
    elif cfg.event_backend == "sqs":
        publisher = SqsEventPublisher()
    else:
        publisher = NullEventPublisher()

    logger.info(
        "Services ready (store=%s, sessions=%s, events=%s)",
        cfg.store_backend,
        cfg.session_backend,
        cfg.event_backend,
    )
    return assemble(store, sessions, catalog, publisher=publisher, idempotency=idempotency, auto_dispatch=cfg.auto_dispatch)


async def close_services() -> None:
    await close_redis()
    await close_pool()
