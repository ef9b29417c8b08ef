"""Payments command line interface.

Operational tools for:
- Schema creation
- Stuck-session sweeps (cron)
- Session inspection
- Manual callback replay
- Metrics emission
- Notification outbox delivery

Usage:
    momo-payments init-db
    momo-payments monitor
    momo-payments status MOMO123
    momo-payments replay MOMO123 --status COMPLETED
    momo-payments metrics --format prometheus
    momo-payments deliver
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from momo_payments.config import Settings, get_settings
from momo_payments.database import create_schema, get_engine, make_session_factory
from momo_payments.errors import PaymentError
from momo_payments.logging_config import configure_logging
from momo_payments.metrics import MetricsCollector
from momo_payments.providers import gateway_from_settings
from momo_payments.services.monitor import StuckSessionMonitor
from momo_payments.services.notifications import NotificationWorker
from momo_payments.services.reconciler import OrderReconciler
from momo_payments.services.session_store import SessionStore
from momo_payments.services.signatures import WebhookAuthenticator
from momo_payments.services.webhook_verifier import WebhookVerifier


class PaymentsCli:
    """Payments Command Line Interface."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.config = self.settings.payments_config()
        self.parser = self._build_parser()

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="momo-payments",
            description="Mobile-money payment operational tools",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        subparsers.add_parser("init-db", help="Create database tables")

        monitor = subparsers.add_parser(
            "monitor",
            help="Run one stuck-session sweep",
        )
        monitor.add_argument(
            "--mode",
            choices=["verify", "optimistic"],
            help="Override the configured recovery mode",
        )

        status = subparsers.add_parser("status", help="Show one payment session")
        status.add_argument("reference", help="Session reference")

        replay = subparsers.add_parser(
            "replay",
            help="Replay a gateway callback for a session",
        )
        replay.add_argument("reference", help="Session reference")
        replay.add_argument(
            "--status",
            default="COMPLETED",
            help="Gateway status to replay (default: COMPLETED)",
        )
        replay.add_argument(
            "--gateway-transaction-id",
            help="Gateway transaction id (defaults to the stored one)",
        )

        metrics = subparsers.add_parser("metrics", help="Emit metrics")
        metrics.add_argument(
            "--format",
            choices=["prometheus", "json"],
            default="prometheus",
            help="Output format (default: prometheus)",
        )

        subparsers.add_parser(
            "deliver",
            help="Deliver pending notifications and exit",
        )

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        configure_logging(self.settings.log_level)

        handlers: dict[str, Callable[[argparse.Namespace], Awaitable[int]]] = {
            "init-db": self._cmd_init_db,
            "monitor": self._cmd_monitor,
            "status": self._cmd_status,
            "replay": self._cmd_replay,
            "metrics": self._cmd_metrics,
            "deliver": self._cmd_deliver,
        }

        handler = handlers.get(parsed.command)
        if handler is None:
            print(f"Unknown command: {parsed.command}", file=sys.stderr)
            return 1

        try:
            return asyncio.run(handler(parsed))
        except PaymentError as e:
            print(f"Error ({e.code}): {e.message}", file=sys.stderr)
            return 1

    @asynccontextmanager
    async def _sessions(self) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
        engine = get_engine(self.settings.database_url)
        try:
            yield make_session_factory(engine)
        finally:
            await engine.dispose()

    def _verifier(self, db: AsyncSession) -> WebhookVerifier:
        return WebhookVerifier(db, WebhookAuthenticator(self.config.webhook), self.config)

    async def _cmd_init_db(self, args: argparse.Namespace) -> int:
        engine = get_engine(self.settings.database_url)
        try:
            await create_schema(engine)
        finally:
            await engine.dispose()
        print("Schema ready")
        return 0

    async def _cmd_monitor(self, args: argparse.Namespace) -> int:
        monitor_config = self.config.monitor
        if args.mode:
            monitor_config = replace(monitor_config, recovery_mode=args.mode)

        async with self._sessions() as factory, factory() as db:
            monitor = StuckSessionMonitor(
                db, self._verifier(db), gateway_from_settings(self.settings), monitor_config
            )
            report = await monitor.sweep()

        print(json.dumps(report.to_dict(), indent=2))
        return 1 if any(r.outcome == "error" for r in report.results) else 0

    async def _cmd_status(self, args: argparse.Namespace) -> int:
        async with self._sessions() as factory, factory() as db:
            session = await SessionStore(db).get(args.reference)
            order = await OrderReconciler(db, self.config.reconciler).find_order(session)
            info: dict[str, Any] = {
                "reference": session.reference,
                "status": session.status,
                "user_id": session.user_id,
                "amount": str(session.amount),
                "currency": session.currency,
                "provider": session.provider,
                "gateway_transaction_id": session.gateway_transaction_id,
                "failure_reason": session.failure_reason,
                "created_at": session.created_at.isoformat(),
                "updated_at": session.updated_at.isoformat(),
                "order_id": str(order.id) if order is not None else None,
            }

        print(json.dumps(info, indent=2))
        return 0

    async def _cmd_replay(self, args: argparse.Namespace) -> int:
        async with self._sessions() as factory, factory() as db:
            session = await SessionStore(db).get(args.reference)
            result = await self._verifier(db).replay(
                session.reference,
                args.status.upper(),
                args.gateway_transaction_id or session.gateway_transaction_id,
                source="admin",
                extra={"manual_trigger": True},
            )

        print(json.dumps(result.to_dict(), indent=2))
        return 0

    async def _cmd_metrics(self, args: argparse.Namespace) -> int:
        async with self._sessions() as factory, factory() as db:
            collected = await MetricsCollector(
                db, stale_after=self.config.monitor.stale_after
            ).collect()

        if args.format == "json":
            print(collected.to_json())
        else:
            print(collected.to_prometheus(), end="")
        return 0

    async def _cmd_deliver(self, args: argparse.Namespace) -> int:
        async with self._sessions() as factory:
            worker = NotificationWorker(factory, config=self.config.notifications)
            queued = await worker.drain_pending()
            await worker.run_until_idle()

        print(f"Processed {queued} pending notification(s)")
        return 0


def main() -> int:
    """CLI entry point."""
    cli = PaymentsCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
