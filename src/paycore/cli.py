#!/usr/bin/env python
"""
CLI management commands for paycore.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime

import click
from sqlalchemy.ext.asyncio import AsyncEngine

from paycore.billing.config import BillingConfig
from paycore.billing.events import LoggingWebhookNotifier, WebhookNotifier
from paycore.billing.exceptions import UnsupportedIntervalError
from paycore.billing.integration import build_billing_engine
from paycore.billing.payments.gateway import PaymentGateway, SandboxPaymentGateway
from paycore.billing.storage.sql import SqlAlchemyBillingRepository
from paycore.billing.subscriptions.cycles import next_billing_date
from paycore.db import create_engine_from_settings, create_session_factory, init_db
from paycore.logging import setup_logging


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    engine_factory: Callable[[], AsyncEngine]
    init_db: Callable[[AsyncEngine], Awaitable[None]]
    gateway_factory: Callable[[BillingConfig], PaymentGateway]
    notifier_factory: Callable[[], WebhookNotifier]
    setup_logging: Callable[[], None]


def _default_gateway(config: BillingConfig) -> PaymentGateway:
    if config.gateway.provider != "sandbox":
        raise click.ClickException(
            f"Unsupported payment gateway provider: {config.gateway.provider}"
        )
    return SandboxPaymentGateway()


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    return CLIDependencies(
        engine_factory=create_engine_from_settings,
        init_db=init_db,
        gateway_factory=_default_gateway,
        notifier_factory=LoggingWebhookNotifier,
        setup_logging=setup_logging,
    )


@click.group()
def cli() -> None:
    """paycore recurring billing CLI."""
    pass


@cli.command("init-db")
def init_database() -> None:
    """Create the billing tables."""
    deps = _get_cli_dependencies()
    click.echo("Initializing database...")

    async def _init() -> None:
        engine = deps.engine_factory()
        try:
            await deps.init_db(engine)
        finally:
            await engine.dispose()

    asyncio.run(_init())
    click.echo("Database initialized successfully!")


@cli.command("next-billing-date")
@click.argument(
    "start",
    type=click.DateTime(formats=["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S"]),
)
@click.argument("interval")
@click.option("--count", default=1, show_default=True, help="Intervals per billing cycle")
@click.option("--periods", default=1, show_default=True, help="Number of boundaries to print")
def next_billing_date_command(start: datetime, interval: str, count: int, periods: int) -> None:
    """Print the billing period boundaries after START (UTC)."""
    boundary = start.replace(tzinfo=UTC) if start.tzinfo is None else start
    try:
        for _ in range(periods):
            boundary = next_billing_date(boundary, interval, count)
            click.echo(boundary.isoformat())
    except UnsupportedIntervalError as e:
        raise click.ClickException(e.message) from e


@cli.command("run-billing")
@click.option("--once", is_flag=True, help="Run a single billing tick and exit")
def run_billing(once: bool) -> None:
    """Run the recurring billing scheduler against the configured database."""
    deps = _get_cli_dependencies()
    deps.setup_logging()
    config = BillingConfig.from_settings()

    async def _run() -> None:
        engine = deps.engine_factory()
        try:
            billing = build_billing_engine(
                SqlAlchemyBillingRepository(create_session_factory(engine)),
                deps.gateway_factory(config),
                deps.notifier_factory(),
                config=config,
            )
            if once:
                summary = await billing.scheduler.run_once()
                click.echo(json.dumps(summary.model_dump(mode="json"), indent=2))
                return

            billing.scheduler.start()
            click.echo(
                "Recurring billing running every "
                f"{config.scheduler.tick_interval_seconds:g}s (Ctrl+C to stop)"
            )
            try:
                await asyncio.Event().wait()
            finally:
                await billing.scheduler.stop()
        finally:
            await engine.dispose()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        click.echo("Stopped.")


if __name__ == "__main__":
    cli()
