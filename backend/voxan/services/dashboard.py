from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List

from ..models import APPOINTMENT_CANCELLED, APPOINTMENT_CONFIRMED


@dataclass
class ConversionMetrics:
    totalCalls: int
    successfulCalls: int
    totalCost: float
    avgDuration: float
    bookings: int
    cancellations: int


class DashboardService:
    """Read-only queries behind the operator dashboard."""

    def __init__(self, calls_repo, appointments_repo) -> None:
        self._calls = calls_repo
        self._appointments = appointments_repo

    def recent_calls(self, limit: int = 20) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        for call in self._calls.list_recent(limit):
            row = asdict(call)
            row["appointments"] = [
                asdict(a) for a in self._appointments.list_for_call(call.id)
            ]
            rows.append(row)
        return rows

    def upcoming_appointments(self, now: datetime | None = None) -> List[Dict[str, Any]]:
        now = now or datetime.now(UTC)
        return [asdict(a) for a in self._appointments.list_upcoming(now)]

    def metrics(self, since: datetime | None = None) -> ConversionMetrics:
        since = since or datetime.now(UTC) - timedelta(days=7)
        calls = self._calls.list_since(since)
        appointments = self._appointments.list_since(since)

        total_cost = sum((c.cost or Decimal("0") for c in calls), Decimal("0"))
        durations = [c.duration or 0 for c in calls]
        return ConversionMetrics(
            totalCalls=len(calls),
            successfulCalls=sum(1 for c in calls if c.success),
            totalCost=float(total_cost),
            avgDuration=sum(durations) / len(durations) if durations else 0.0,
            bookings=sum(1 for a in appointments if a.status == APPOINTMENT_CONFIRMED),
            cancellations=sum(
                1 for a in appointments if a.status == APPOINTMENT_CANCELLED
            ),
        )

    def snapshot(self, now: datetime | None = None) -> Dict[str, Any]:
        now = now or datetime.now(UTC)
        return {
            "recentCalls": self.recent_calls(20),
            "upcomingAppointments": self.upcoming_appointments(now),
            "metrics": asdict(self.metrics(now - timedelta(days=7))),
            "timestamp": now.isoformat(),
        }
