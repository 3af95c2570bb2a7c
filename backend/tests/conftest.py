from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from voxan.config import AppSettings, get_settings
from voxan.deps import build_services
from voxan.main import create_app
from voxan.services.calendar import StubCalendarStore


@pytest.fixture(autouse=True)
def _isolate_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> AppSettings:
    return AppSettings()


@pytest.fixture
def calendar() -> StubCalendarStore:
    return StubCalendarStore()


@pytest.fixture
def services(settings, calendar):
    built = build_services(settings, calendar=calendar)
    yield built
    built.close()


@pytest.fixture
def client(services) -> TestClient:
    return TestClient(create_app(services=services))
