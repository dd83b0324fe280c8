"""Billing Command Line Interface.

Operational tools for the background sweeps that keep transactions honest
when webhooks are lost:

Usage:
    billing-engine-ops verify-pending --older-than-minutes 5 --limit 50
    billing-engine-ops retry-credits
    billing-engine-ops expire-stale
    billing-engine-ops prune-webhooks --capacity 1000
    billing-engine-ops poll --ptn 99999166542651400095315364801168
    billing-engine-ops init-db

Every command prints a JSON summary on stdout.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

from billing_engine.api.dependencies import BillingServices
from billing_engine.config import get_settings
from billing_engine.database import create_all, dispose_db, init_db
from billing_engine.errors import BillingEngineError, VerificationTimedOut
from billing_engine.webhooks.dedupe import WebhookDeduplicator

logger = logging.getLogger(__name__)


class BillingCli:
    """Billing Command Line Interface."""

    def __init__(self) -> None:
        self.parser = self._build_parser()

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        settings = get_settings()
        parser = argparse.ArgumentParser(
            prog="billing-engine-ops",
            description="Billing engine operational tools",
        )
        parser.add_argument(
            "-v",
            "--verbose",
            action="store_true",
            help="Log at DEBUG level",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        # verify-pending command
        verify = subparsers.add_parser(
            "verify-pending",
            help="Re-verify PENDING transactions with their provider",
        )
        verify.add_argument(
            "--older-than-minutes",
            type=int,
            default=settings.stale_pending_minutes,
            help=f"Only transactions older than this (default: {settings.stale_pending_minutes})",
        )
        verify.add_argument(
            "--limit",
            type=int,
            default=settings.stale_pending_batch_size,
            help=f"Maximum transactions to check (default: {settings.stale_pending_batch_size})",
        )

        # retry-credits command
        retry = subparsers.add_parser(
            "retry-credits",
            help="Credit SUCCESS transactions whose subscription credit failed",
        )
        retry.add_argument(
            "--limit",
            type=int,
            help="Maximum transactions to retry",
        )

        # expire-stale command
        subparsers.add_parser(
            "expire-stale",
            help="Expire PENDING transactions past their validity window",
        )

        # prune-webhooks command
        prune = subparsers.add_parser(
            "prune-webhooks",
            help="Trim the processed-webhook table to its capacity",
        )
        prune.add_argument(
            "--capacity",
            type=int,
            default=settings.webhook_dedupe_capacity,
            help=f"Rows to keep (default: {settings.webhook_dedupe_capacity})",
        )

        # poll command
        poll = subparsers.add_parser(
            "poll",
            help="Poll one transaction until it settles",
        )
        poll.add_argument("--ptn", type=str, required=True, help="Payment transaction number")
        poll.add_argument(
            "--max-attempts",
            type=int,
            default=settings.poll_max_attempts,
            help=f"Polling bound (default: {settings.poll_max_attempts})",
        )
        poll.add_argument(
            "--interval",
            type=float,
            default=settings.poll_interval_seconds,
            help=f"Seconds between attempts (default: {settings.poll_interval_seconds:g})",
        )

        # init-db command
        subparsers.add_parser(
            "init-db",
            help="Create database tables (development only)",
        )

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        logging.basicConfig(
            level=logging.DEBUG if parsed.verbose else logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            stream=sys.stderr,
        )

        # Dispatch to command handler
        handlers: dict[str, Callable[[BillingServices, argparse.Namespace], Awaitable[dict[str, Any]]]] = {
            "verify-pending": self._cmd_verify_pending,
            "retry-credits": self._cmd_retry_credits,
            "expire-stale": self._cmd_expire_stale,
            "prune-webhooks": self._cmd_prune_webhooks,
            "poll": self._cmd_poll,
            "init-db": self._cmd_init_db,
        }

        handler = handlers.get(parsed.command)
        if handler is None:
            print(f"Unknown command: {parsed.command}", file=sys.stderr)
            return 1

        try:
            result = asyncio.run(self._execute(handler, parsed))
        except BillingEngineError as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return 1

        print(json.dumps(result, indent=2, default=str))
        return 0 if result.get("ok", True) else 2

    async def _execute(
        self,
        handler: Callable[[BillingServices, argparse.Namespace], Awaitable[dict[str, Any]]],
        args: argparse.Namespace,
    ) -> dict[str, Any]:
        _, session_factory = init_db()
        services = BillingServices(get_settings(), session_factory)
        try:
            return await handler(services, args)
        finally:
            await services.aclose()
            await dispose_db()

    async def _cmd_verify_pending(
        self, services: BillingServices, args: argparse.Namespace
    ) -> dict[str, Any]:
        """Re-verify stale PENDING transactions."""
        summary = await services.reconciler.verify_pending(
            older_than=timedelta(minutes=args.older_than_minutes),
            limit=args.limit,
        )
        return {"command": "verify-pending", **summary.to_dict()}

    async def _cmd_retry_credits(
        self, services: BillingServices, args: argparse.Namespace
    ) -> dict[str, Any]:
        """Retry failed subscription credits."""
        summary = await services.reconciler.retry_uncredited(args.limit)
        return {"command": "retry-credits", **summary.to_dict()}

    async def _cmd_expire_stale(
        self, services: BillingServices, args: argparse.Namespace
    ) -> dict[str, Any]:
        """Expire PENDING transactions past their window."""
        expired = await services.reconciler.expire_stale()
        return {"command": "expire-stale", "expired": len(expired), "ptns": expired}

    async def _cmd_prune_webhooks(
        self, services: BillingServices, args: argparse.Namespace
    ) -> dict[str, Any]:
        """Prune the processed-webhook table."""
        async with services.session_factory() as session:
            dedupe = WebhookDeduplicator(session, args.capacity)
            removed = await dedupe.prune()
            await session.commit()
            remaining = await dedupe.count()
        return {"command": "prune-webhooks", "removed": removed, "remaining": remaining}

    async def _cmd_poll(
        self, services: BillingServices, args: argparse.Namespace
    ) -> dict[str, Any]:
        """Poll one transaction."""
        try:
            outcome = await services.reconciler.poll(
                args.ptn, max_attempts=args.max_attempts, interval=args.interval
            )
        except VerificationTimedOut as exc:
            return {
                "command": "poll",
                "ok": False,
                "ptn": exc.ptn,
                "status": "PENDING",
                "timedOut": True,
                "attempts": exc.attempts,
            }
        return {
            "command": "poll",
            "ptn": outcome.ptn,
            "status": outcome.status.value,
            "credited": outcome.credited,
            "newExpiry": outcome.new_expiry.isoformat() if outcome.new_expiry else None,
            "message": outcome.message,
        }

    async def _cmd_init_db(
        self, services: BillingServices, args: argparse.Namespace
    ) -> dict[str, Any]:
        """Create tables."""
        await create_all()
        return {"command": "init-db", "created": True}


def main() -> int:
    """CLI entry point."""
    cli = BillingCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
