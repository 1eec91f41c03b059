#!/usr/bin/env python3
"""CLI commands for scheduled billing jobs.

Usage:
    python billing_cli.py --help
    python billing_cli.py seed-plans
    python billing_cli.py monthly-invoices --period 2026-09
    python billing_cli.py mark-overdue
"""

from __future__ import annotations

import sys
from typing import Optional

import click

from errors import BillingError


def get_app_context(ctx: click.Context):
    """Get Flask application context (an app passed via ``obj`` wins)."""
    app = (ctx.obj or {}).get("app")
    if app is None:
        from app import create_app
        app = create_app()
    return app.app_context()


# ---------------------------------------------------------------------------
# Click CLI Group
# ---------------------------------------------------------------------------

@click.group()
def cli():
    """Billing jobs for the marketplace billing service."""
    pass


@cli.command("seed-plans")
@click.pass_context
def seed_plans(ctx):
    """Create the default subscription plans."""
    with get_app_context(ctx):
        from services.plans import seed_default_plans

        created = seed_default_plans()
        click.echo(f"Seeded {created} plans")


@cli.command("monthly-invoices")
@click.option("--period", "-p", required=True, help="Billing period, YYYY-MM")
@click.option("--actor", default="system", show_default=True)
@click.pass_context
def monthly_invoices(ctx, period: str, actor: str):
    """Issue subscription and commission invoices for a period."""
    with get_app_context(ctx):
        from services.invoice import generate_monthly_invoices

        try:
            stats = generate_monthly_invoices(period, actor=actor)
        except BillingError as e:
            click.echo(f"Error: {e.message}", err=True)
            sys.exit(1)

        click.echo(f"Period {stats['period']}")
        click.echo(f"  subscription invoices: {stats['subscription_generated']}")
        click.echo(f"  commission invoices:   {stats['commission_generated']}")
        click.echo(f"  skipped:               {stats['skipped']}")
        click.echo(f"  total:                 {stats['total_amount']}")
        failed = stats["subscription_failed"] + stats["commission_failed"]
        if failed:
            click.echo(f"  failed:                {failed}", err=True)
            sys.exit(2)


@cli.command("mark-overdue")
@click.option("--today", default=None, help="Reference date, YYYY-MM-DD (default: today)")
@click.pass_context
def mark_overdue(ctx, today: Optional[str]):
    """Flag pending invoices past their due date."""
    with get_app_context(ctx):
        from services.invoice import mark_overdue_invoices
        from utils import parse_date

        reference = parse_date(today) if today else None
        if today and reference is None:
            click.echo("Error: --today must be YYYY-MM-DD", err=True)
            sys.exit(1)
        flagged = mark_overdue_invoices(reference)
        click.echo(f"Marked {flagged} invoices overdue")


if __name__ == "__main__":
    cli()
