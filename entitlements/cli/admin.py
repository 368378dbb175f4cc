import asyncio
import json
import logging
from datetime import timedelta

import click

from entitlements.core.errors import ReconciliationError
from entitlements.core.security import create_token_for_user
from entitlements.db.session import close_db
from entitlements.dependencies import build_subscription_service
from entitlements.models.subscription import Plan
from entitlements.services.cache import close_redis, init_redis
from entitlements.services.scheduled_jobs import run_expiry_sweep
from entitlements.utils.helpers import utc_now

logger = logging.getLogger(__name__)


def _run(coro):
    """Run a coroutine and release DB and Redis connections afterwards."""
    async def _wrapped():
        try:
            return await coro
        finally:
            await close_db()
            await close_redis()

    return asyncio.run(_wrapped())


@click.group()
def cli():
    """Entitlements admin commands"""
    pass


@cli.command()
@click.argument('user_id')
def status(user_id):
    """Show the entitlement of a user"""
    async def _status():
        service = build_subscription_service()
        record = await service.store.get_by_user_id(user_id)
        return record, await service.get_status(user_id)

    try:
        record, payload = _run(_status())
    except ReconciliationError as e:
        logger.error(f"CLI error: {e}")
        click.echo(f"❌ Error: {e}", err=True)
        raise SystemExit(1)

    if record is None:
        click.echo(f"No subscription record for {user_id}")
    else:
        click.echo(
            f"User {user_id}: status={record.status.value} plan={record.plan.value} "
            f"platform={record.platform.value} external_id={record.external_subscription_id} "
            f"version={record.version}"
        )
    click.echo(json.dumps(payload, indent=2, default=str))


@cli.command()
@click.argument('user_id')
@click.option('--plan', type=click.Choice([p.value for p in (Plan.MONTHLY, Plan.YEARLY, Plan.LIFETIME)]),
              required=True, help='Plan to grant')
@click.option('--days', type=int, default=30, show_default=True,
              help='Length of the granted period (ignored for lifetime)')
def grant(user_id, plan, days):
    """Grant a plan manually (support, testing)"""
    if days <= 0:
        click.echo("❌ --days must be positive", err=True)
        raise SystemExit(1)

    async def _grant():
        await init_redis()
        service = build_subscription_service()
        return await service.grant_manual_plan(
            user_id,
            Plan(plan),
            utc_now() + timedelta(days=days),
        )

    try:
        record = _run(_grant())
    except ReconciliationError as e:
        logger.error(f"CLI error: {e}")
        click.echo(f"❌ Error: {e}", err=True)
        raise SystemExit(1)

    if record is None:
        click.echo(f"❌ Grant for {user_id} was not applied", err=True)
        raise SystemExit(1)
    click.echo(
        f"✓ {user_id} now {record.status.value} on {record.plan.value}"
        + (f" until {record.period_end_at.isoformat()}" if record.period_end_at else "")
    )


@cli.command()
def sweep():
    """Run the expiry sweep once"""
    async def _sweep():
        service = build_subscription_service()
        return await run_expiry_sweep(service.store)

    try:
        summary = _run(_sweep())
    except ReconciliationError as e:
        logger.error(f"CLI error: {e}")
        click.echo(f"❌ Error: {e}", err=True)
        raise SystemExit(1)

    click.echo(f"✓ Expired {summary['processed']} subscriptions")
    for error in summary["errors"]:
        click.echo(f"  - {error['user_id']}: {error['error']}", err=True)


@cli.command()
@click.argument('user_id')
def token(user_id):
    """Print a bearer token for a user (local testing)"""
    click.echo(create_token_for_user(user_id))


if __name__ == '__main__':
    cli()
