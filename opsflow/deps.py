"""
Process-wide wiring: one store, one lock registry, one scheduler, one engine.

The API process and the timer runner both call init_services() at startup.
Routes receive the container through FastAPI Depends(get_services), which
tests replace via app.dependency_overrides.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .adapters.notifications import HttpNotificationSink, NotificationSink
from .artifacts.storage import SpacesStorage
from .config import settings
from .db import close_db_pool, init_db_pool
from .engine.automation import AutomationScheduler
from .engine.locks import EntityLocks
from .engine.models import utcnow
from .engine.pg_store import PostgresStore
from .engine.stages import CATALOG, StageCatalog
from .engine.store import EntityStore, MemoryStore
from .engine.transitions import StageTransitionEngine
from .engine.triggers import DecisionTrigger, FileUploadTrigger, ManualConfirmTrigger

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: EntityStore
    sink: NotificationSink
    scheduler: AutomationScheduler
    engine: StageTransitionEngine
    uploads: FileUploadTrigger
    confirms: ManualConfirmTrigger
    decisions: DecisionTrigger


_services: Optional[Services] = None
_storage: Optional[SpacesStorage] = None


def build_services(
    store: EntityStore,
    sink: NotificationSink,
    *,
    catalog: StageCatalog = CATALOG,
    clock: Callable[[], datetime] = utcnow,
    business_timezone: str = settings.business_timezone,
) -> Services:
    locks = EntityLocks()
    scheduler = AutomationScheduler(
        store,
        sink,
        catalog=catalog,
        locks=locks,
        clock=clock,
        business_timezone=business_timezone,
    )
    engine = StageTransitionEngine(store, catalog=catalog, scheduler=scheduler, locks=locks, clock=clock)
    return Services(
        store=store,
        sink=sink,
        scheduler=scheduler,
        engine=engine,
        uploads=FileUploadTrigger(engine),
        confirms=ManualConfirmTrigger(engine),
        decisions=DecisionTrigger(engine),
    )


async def init_services() -> Services:
    global _services
    if _services is None:
        if settings.store_backend == "memory":
            store: EntityStore = MemoryStore()
        else:
            store = PostgresStore(await init_db_pool())
        sink = HttpNotificationSink(settings.notifications_base_url, settings.notifications_token)
        _services = build_services(store, sink)
        logger.info("Engine services initialized (store=%s)", settings.store_backend)
    return _services


async def close_services() -> None:
    global _services
    if _services is not None:
        await _services.scheduler.drain()
        _services = None
    await close_db_pool()


def get_services() -> Services:
    if _services is None:
        raise RuntimeError("Engine services are not initialized")
    return _services


def get_storage() -> SpacesStorage:
    global _storage
    if _storage is None:
        _storage = SpacesStorage()
    return _storage
