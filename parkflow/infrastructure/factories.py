# File: parkflow/infrastructure/factories.py
"""
Factory Pattern Implementation for the Parking Session Engine

This module assembles a running engine from Settings:
1. Storage - in-memory or SQLAlchemy units of work
2. Locking - in-process or redis plate locks
3. Messaging - message bus over the configured broker and event store
4. Services - fee computation, session service and command processor
5. Seeding - rate plans, discount rules, memberships, barrier bindings
"""

from dataclasses import dataclass
from datetime import tzinfo
from typing import Callable, Optional
from zoneinfo import ZoneInfo
import logging

from ..domain.services import FeeComputationService
from ..domain.strategies import RateResolver
from ..application.commands import CommandProcessor
from ..application.dtos import SeedDataDTO
from ..application.session_service import SessionService
from .config import Settings
from .locking import PlateLockManager, InMemoryPlateLockManager, RedisPlateLockManager
from .messaging import EventBus, LoggingEventHandler, MessageBus, MessageBrokerFactory
from .repositories import UnitOfWork, RepositoryFactory

logger = logging.getLogger(__name__)

IN_MEMORY_DATABASE = "memory"


@dataclass
class Engine:
    """A wired engine instance"""
    settings: Settings
    uow_factory: Callable[[], UnitOfWork]
    service: SessionService
    processor: CommandProcessor
    message_bus: MessageBus

    def close(self) -> None:
        self.message_bus.close()


class EngineFactory:
    """Factory for creating engine components from settings"""

    @staticmethod
    def create_uow_factory(settings: Settings) -> Callable[[], UnitOfWork]:
        if settings.database_url == IN_MEMORY_DATABASE:
            return RepositoryFactory.create_in_memory_uow_factory()
        return RepositoryFactory.create_sqlalchemy_uow_factory(settings.database_url)

    @staticmethod
    def create_lock_manager(settings: Settings) -> PlateLockManager:
        if settings.lock_backend == "redis":
            if not settings.redis_url:
                raise ValueError("lock_backend 'redis' requires redis_url")
            return RedisPlateLockManager.from_url(settings.redis_url, timeout=settings.lock_timeout_seconds)
        return InMemoryPlateLockManager(timeout=settings.lock_timeout_seconds)

    @staticmethod
    def create_message_bus(settings: Settings, deliver_in_background: bool = True) -> MessageBus:
        event_bus = EventBus()
        event_bus.subscribe_all(LoggingEventHandler())
        return MessageBus(
            event_bus=event_bus,
            message_queue=MessageBrokerFactory.create_broker(
                settings.broker_type, settings.redis_url, settings.amqp_url
            ),
            event_store=MessageBrokerFactory.create_event_store(settings.mongo_url),
            events_topic=settings.events_topic,
            barrier_topic=settings.barrier_topic,
            deliver_in_background=deliver_in_background,
        )

    @staticmethod
    def create_fee_service(settings: Settings) -> FeeComputationService:
        return FeeComputationService(rate_resolver=RateResolver(timezone=ZoneInfo(settings.timezone)))

    @staticmethod
    def create_engine(
        settings: Settings,
        seed: Optional[SeedDataDTO] = None,
        deliver_in_background: bool = True
    ) -> Engine:
        uow_factory = EngineFactory.create_uow_factory(settings)
        if seed is not None:
            apply_seed(uow_factory, seed, ZoneInfo(settings.timezone))

        message_bus = EngineFactory.create_message_bus(settings, deliver_in_background)
        service = SessionService(
            uow_factory,
            lock_manager=EngineFactory.create_lock_manager(settings),
            notifier=message_bus,
            fee_service=EngineFactory.create_fee_service(settings),
            config={'close_on_payment_at_exit': settings.close_on_payment_at_exit},
        )
        logger.info(
            f"Engine ready (database={settings.database_url}, broker={settings.broker_type}, "
            f"locks={settings.lock_backend}, timezone={settings.timezone})"
        )
        return Engine(
            settings=settings,
            uow_factory=uow_factory,
            service=service,
            processor=CommandProcessor(service),
            message_bus=message_bus,
        )


def apply_seed(
    uow_factory: Callable[[], UnitOfWork],
    seed: SeedDataDTO,
    timezone: Optional[tzinfo] = None
) -> None:
    """
    Load reference data into the store. Entries whose id already exists
    are left untouched, so a seed file can be applied on every start.
    Membership windows are stored in the engine timezone.
    """
    with uow_factory() as uow:
        for dto in seed.rate_plans:
            plan = dto.to_domain()
            if uow.rate_plans.get(plan.id) is None:
                uow.rate_plans.add(plan)
        for dto in seed.discount_rules:
            rule = dto.to_domain()
            if uow.discount_rules.get(rule.id) is None:
                uow.discount_rules.add(rule)
        for dto in seed.memberships:
            membership = dto.to_domain(timezone)
            if uow.memberships.get(membership.id) is None:
                uow.memberships.add(membership)
        for binding in seed.barriers:
            uow.barriers.register(binding.lane_id, binding.device_id)

    logger.info(
        f"Seeded {len(seed.rate_plans)} rate plan(s), {len(seed.discount_rules)} discount rule(s), "
        f"{len(seed.memberships)} membership(s), {len(seed.barriers)} barrier binding(s)"
    )
