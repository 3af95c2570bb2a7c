from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import Request

from .config import AppSettings
from .db import build_engine, create_session_factory, init_db, resolve_database_url
from .repositories import (
    DbAppointmentRepository,
    DbCallRepository,
    DbLeadRepository,
    InMemoryAppointmentRepository,
    InMemoryCallRepository,
    InMemoryLeadRepository,
)
from .services.appointments import AppointmentLifecycle
from .services.availability import AvailabilityService
from .services.calendar import build_calendar_store
from .services.correlator import CallLeadCorrelator
from .services.dashboard import DashboardService
from .services.outbound import OutboundCallService
from .services.sms import SmsService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything the HTTP layer needs, built once per process."""

    settings: AppSettings
    calls_repo: Any
    appointments_repo: Any
    leads_repo: Any
    calendar: Any
    availability: AvailabilityService
    correlator: CallLeadCorrelator
    lifecycle: AppointmentLifecycle
    sms: SmsService
    outbound: OutboundCallService
    dashboard: DashboardService
    engine: Any = None

    @property
    def storage_backend(self) -> str:
        return "sqlalchemy" if self.engine is not None else "memory"

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()


def _build_repositories(settings: AppSettings):
    if not settings.database.use_db_store:
        return (
            InMemoryCallRepository(),
            InMemoryAppointmentRepository(),
            InMemoryLeadRepository(),
            None,
        )
    engine = build_engine(resolve_database_url(settings.database))
    init_db(engine)
    session_factory = create_session_factory(engine)
    return (
        DbCallRepository(session_factory),
        DbAppointmentRepository(session_factory),
        DbLeadRepository(session_factory),
        engine,
    )


def build_services(settings: AppSettings, *, calendar: Any = None) -> Services:
    """Construct the service graph from settings.

    `calendar` overrides the configured calendar adapter; it must provide
    both the busy-interval query and the event operations.
    """
    calls_repo, appointments_repo, leads_repo, engine = _build_repositories(settings)
    calendar = calendar if calendar is not None else build_calendar_store(settings.calendar)
    availability = AvailabilityService(calendar, settings.calendar)
    correlator = CallLeadCorrelator(calls_repo, leads_repo)
    lifecycle = AppointmentLifecycle(
        events=calendar,
        availability=availability,
        appointments_repo=appointments_repo,
        correlator=correlator,
        settings=settings.booking,
        timezone=settings.calendar.timezone,
    )
    services = Services(
        settings=settings,
        calls_repo=calls_repo,
        appointments_repo=appointments_repo,
        leads_repo=leads_repo,
        calendar=calendar,
        availability=availability,
        correlator=correlator,
        lifecycle=lifecycle,
        sms=SmsService(settings.sms, timezone=settings.calendar.timezone),
        outbound=OutboundCallService(settings.vapi, calls_repo),
        dashboard=DashboardService(calls_repo, appointments_repo),
        engine=engine,
    )
    logger.info(
        "services_built",
        extra={
            "storage": services.storage_backend,
            "calendar": type(calendar).__name__,
            "sms_provider": settings.sms.provider,
        },
    )
    return services


def get_services(request: Request) -> Services:
    return request.app.state.services
