"""Explicit construction and lifecycle of the service graph."""

from __future__ import annotations

import logging
import socket
import uuid
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as redis

from booking_engine.services.appointment_requests import AppointmentRequestService
from booking_engine.services.booking_status import TherapistBookingStatus
from booking_engine.services.cache import create_redis_client
from booking_engine.services.circuit_breaker import CircuitBreakerRegistry, build_registry
from booking_engine.services.db import Database
from booking_engine.services.events import StatusEventBus
from booking_engine.services.idempotency import IdempotencyGuard
from booking_engine.services.jobs import JobScheduler, MaintenanceJobs
from booking_engine.services.lifecycle import AppointmentLifecycle
from booking_engine.services.locks import DistributedLock
from booking_engine.services.side_effects import (
    CLIENT_EMAIL,
    NOTION_SYNC,
    SLACK_NOTIFICATION,
    THERAPIST_EMAIL,
    SideEffectDispatcher,
)
from booking_engine.services.tracking_code import TrackingCodeRepair
from booking_engine.utils.config import Settings
from integrations import EmailAdapter, NotionAdapter, SlackAdapter

LOGGER = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    db: Database
    redis: "redis.Redis"
    lock: DistributedLock
    registry: CircuitBreakerRegistry
    events: StatusEventBus
    dispatcher: SideEffectDispatcher
    lifecycle: AppointmentLifecycle
    requests: AppointmentRequestService
    tracking_repair: TrackingCodeRepair
    jobs: MaintenanceJobs
    scheduler: JobScheduler
    slack: SlackAdapter
    email: EmailAdapter
    notion: NotionAdapter

    async def start(self) -> None:
        if self.settings.create_schema:
            await self.db.create_all()
        await self.lock.sweep_stale(self.settings.stale_lock_max_age_seconds)
        if self.settings.jobs_enabled:
            self.scheduler.start()
        LOGGER.info("Services started (instance=%s)", self.settings.instance_id or "auto")

    async def stop(self) -> None:
        grace = self.settings.shutdown_grace_seconds
        await self.scheduler.stop(grace)
        await self.dispatcher.drain(grace)
        await self.redis.aclose()
        await self.db.dispose()
        LOGGER.info("Services stopped")


def default_instance_id() -> str:
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:6]}"


def build_container(
    settings: Settings,
    *,
    redis_client: Optional["redis.Redis"] = None,
    database: Optional[Database] = None,
) -> ServiceContainer:
    """Wire every service from settings. Nothing here touches the network."""

    instance_id = settings.instance_id or default_instance_id()
    db = database or Database(settings.database_url)
    client = redis_client if redis_client is not None else create_redis_client(settings.redis_url)
    lock = DistributedLock(client)
    registry = build_registry(settings)
    events = StatusEventBus()

    use_stub = settings.use_stub_integrations
    timeout = settings.integration_timeout_seconds
    slack = SlackAdapter(
        webhook_url=settings.slack_webhook_url,
        use_stub=use_stub,
        timeout_seconds=timeout,
    )
    email = EmailAdapter(
        api_url=settings.email_api_url,
        api_key=settings.email_api_key,
        sender=settings.email_sender,
        use_stub=use_stub,
        timeout_seconds=timeout,
    )
    notion = NotionAdapter(
        api_key=settings.notion_api_key,
        database_id=settings.notion_users_database_id,
        use_stub=use_stub,
        timeout_seconds=timeout,
    )
    dispatcher = SideEffectDispatcher(
        db,
        registry,
        {
            SLACK_NOTIFICATION: slack,
            CLIENT_EMAIL: email,
            THERAPIST_EMAIL: email,
            NOTION_SYNC: notion,
        },
    )
    booking_status = TherapistBookingStatus(
        max_active_requests=settings.max_active_requests_per_therapist,
    )
    lifecycle = AppointmentLifecycle(
        db,
        booking_status=booking_status,
        dispatcher=dispatcher,
        events=events,
    )
    requests = AppointmentRequestService(
        db,
        guard=IdempotencyGuard(window_seconds=settings.idempotency_window_seconds),
        booking_status=booking_status,
        dispatcher=dispatcher,
        events=events,
        redis_client=client,
        max_active_threads_per_client=settings.max_active_threads_per_client,
        max_requests_per_window=settings.max_requests_per_window,
    )
    jobs = MaintenanceJobs(
        db,
        dispatcher=dispatcher,
        registry=registry,
        redis_client=client,
        slack=slack,
        stale_threshold_hours=settings.stale_threshold_hours,
        retention_days=settings.retention_days,
        mailing_weekday=settings.weekly_mailing_weekday,
    )
    scheduler = JobScheduler(lock, instance_id=instance_id)
    jobs.register_all(scheduler, settings)

    return ServiceContainer(
        settings=settings,
        db=db,
        redis=client,
        lock=lock,
        registry=registry,
        events=events,
        dispatcher=dispatcher,
        lifecycle=lifecycle,
        requests=requests,
        tracking_repair=TrackingCodeRepair(db),
        jobs=jobs,
        scheduler=scheduler,
        slack=slack,
        email=email,
        notion=notion,
    )
