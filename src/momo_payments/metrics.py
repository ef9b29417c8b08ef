"""Payment core observability metrics.

Metric categories:
- Session metrics: counts by status, stuck sessions
- Webhook metrics: ledger entries by outcome and by source
- Notification metrics: outbox rows by status

Usage:
    collector = MetricsCollector(db)
    metrics = await collector.collect()

    print(metrics.to_prometheus())
    print(metrics.to_json())
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from momo_payments.models import (
    SESSION_STATUSES,
    Notification,
    PaymentSession,
    WebhookEvent,
    utcnow,
)


@dataclass
class Counter:
    """A counter metric (monotonically increasing)."""

    name: str
    value: int
    labels: dict[str, str] = field(default_factory=dict)
    help_text: str = ""


@dataclass
class Gauge:
    """A gauge metric (can go up or down)."""

    name: str
    value: float | int
    labels: dict[str, str] = field(default_factory=dict)
    help_text: str = ""


@dataclass
class PaymentMetrics:
    """Collection of all payment core metrics."""

    sessions_by_status: list[Gauge]
    stuck_sessions: Gauge
    webhook_events_by_outcome: list[Counter]
    webhook_events_by_source: list[Counter]
    notifications_by_status: list[Gauge]
    collected_at: datetime = field(default_factory=utcnow)

    def _metrics(self) -> list[Counter | Gauge]:
        return [
            *self.sessions_by_status,
            self.stuck_sessions,
            *self.webhook_events_by_outcome,
            *self.webhook_events_by_source,
            *self.notifications_by_status,
        ]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        result: dict[str, Any] = {"collected_at": self.collected_at.isoformat()}
        result["sessions_by_status"] = [_metric_to_dict(m) for m in self.sessions_by_status]
        result["stuck_sessions"] = _metric_to_dict(self.stuck_sessions)
        result["webhook_events_by_outcome"] = [
            _metric_to_dict(m) for m in self.webhook_events_by_outcome
        ]
        result["webhook_events_by_source"] = [
            _metric_to_dict(m) for m in self.webhook_events_by_source
        ]
        result["notifications_by_status"] = [
            _metric_to_dict(m) for m in self.notifications_by_status
        ]
        return result

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    def to_prometheus(self) -> str:
        """Convert to Prometheus text format."""
        lines: list[str] = []
        described: set[str] = set()

        for metric in self._metrics():
            if metric.name not in described:
                if metric.help_text:
                    lines.append(f"# HELP {metric.name} {metric.help_text}")
                metric_type = "counter" if isinstance(metric, Counter) else "gauge"
                lines.append(f"# TYPE {metric.name} {metric_type}")
                described.add(metric.name)

            labels = ""
            if metric.labels:
                labels = "{" + ",".join(f'{k}="{v}"' for k, v in metric.labels.items()) + "}"
            lines.append(f"{metric.name}{labels} {metric.value}")

        return "\n".join(lines) + "\n"


def _metric_to_dict(metric: Counter | Gauge) -> dict[str, Any]:
    return {
        "name": metric.name,
        "value": metric.value,
        "labels": metric.labels,
        "help": metric.help_text,
    }


class MetricsCollector:
    """Collects metrics from the database."""

    def __init__(self, db: AsyncSession, stale_after: timedelta = timedelta(minutes=10)):
        self._db = db
        self._stale_after = stale_after

    async def collect(self) -> PaymentMetrics:
        return PaymentMetrics(
            sessions_by_status=await self._sessions_by_status(),
            stuck_sessions=await self._stuck_sessions(),
            webhook_events_by_outcome=await self._webhook_events("outcome"),
            webhook_events_by_source=await self._webhook_events("source"),
            notifications_by_status=await self._notifications_by_status(),
        )

    async def _sessions_by_status(self) -> list[Gauge]:
        rows = await self._db.execute(
            select(PaymentSession.status, func.count()).group_by(PaymentSession.status)
        )
        counts = dict(rows.all())
        # Emit every status, including zeros, so dashboards see a stable series
        return [
            Gauge(
                name="momo_sessions",
                value=counts.get(status, 0),
                labels={"status": status},
                help_text="Payment sessions by status",
            )
            for status in SESSION_STATUSES
        ]

    async def _stuck_sessions(self) -> Gauge:
        cutoff = utcnow() - self._stale_after
        count = await self._db.scalar(
            select(func.count())
            .select_from(PaymentSession)
            .where(
                PaymentSession.status == "processing",
                PaymentSession.updated_at < cutoff,
            )
        )
        return Gauge(
            name="momo_stuck_sessions",
            value=count or 0,
            help_text="Processing sessions past the staleness threshold",
        )

    async def _webhook_events(self, dimension: str) -> list[Counter]:
        column = getattr(WebhookEvent, dimension)
        rows = await self._db.execute(
            select(column, func.count()).group_by(column).order_by(column)
        )
        return [
            Counter(
                name=f"momo_webhook_events_by_{dimension}_total",
                value=count,
                labels={dimension: value},
                help_text=f"Webhook ledger entries by {dimension}",
            )
            for value, count in rows.all()
        ]

    async def _notifications_by_status(self) -> list[Gauge]:
        rows = await self._db.execute(
            select(Notification.status, func.count()).group_by(Notification.status)
        )
        counts = dict(rows.all())
        return [
            Gauge(
                name="momo_notifications",
                value=counts.get(status, 0),
                labels={"status": status},
                help_text="Notifications by delivery status",
            )
            for status in ("pending", "sent", "failed")
        ]
