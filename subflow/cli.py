import time

import click
from flask import current_app
from flask.cli import with_appcontext

from subflow.errors import SubflowError
from subflow.extensions import db
from subflow.models import Plan, User
from subflow.wiring import get_services

SEED_PLANS = (
    {
        "name": "Basic",
        "description": "Basic plan with essential features",
        "price": 999,
        "billingInterval": "MONTHLY",
        "features": ["Up to 5 projects", "Basic support", "1GB storage", "Standard templates"],
    },
    {
        "name": "Pro",
        "description": "Professional plan with advanced features",
        "price": 2999,
        "billingInterval": "MONTHLY",
        "trialDays": 14,
        "features": ["Unlimited projects", "Priority support", "10GB storage", "Premium templates",
                     "Advanced analytics", "API access"],
    },
    {
        "name": "Enterprise",
        "description": "Enterprise plan with custom solutions",
        "price": 9999,
        "billingInterval": "MONTHLY",
        "features": ["Everything in Pro", "Dedicated support", "Unlimited storage", "Custom integrations",
                     "White-label solution", "SLA guarantee"],
    },
    {
        "name": "Pro Yearly",
        "description": "Professional plan billed annually (20% discount)",
        "price": 28799,
        "billingInterval": "YEARLY",
        "features": ["All Pro features", "20% annual discount", "Priority support", "Advanced analytics"],
    },
)


def _subscription_side():
    services = get_services()
    if services.subscriptions is None:
        raise click.ClickException(f"Not available for SERVICE_ROLE={services.role}")
    return services


@click.group()
def schema():
    """Create/drop tables on every bind (no migration tooling)."""

@schema.command("create")
@with_appcontext
def schema_create():
    db.create_all()
    click.echo("Tables created (default + payments binds)")

@schema.command("drop")
@click.option("--yes", is_flag=True, help="Confirm dropping every table")
@with_appcontext
def schema_drop(yes):
    if not yes:
        raise click.ClickException("Refused: pass --yes to drop all tables")
    db.drop_all()
    click.echo("Tables dropped")


@click.group()
def users():
    """Mirror user identities issued by the auth layer."""

@users.command("create")
@click.option("--id", "user_id", required=True)
@click.option("--email", default=None)
@click.option("--name", default=None)
@with_appcontext
def users_create(user_id, email, name):
    if db.session.get(User, user_id):
        raise click.ClickException("User already exists")
    db.session.add(User(id=user_id, email=email, name=name, is_active=True))
    db.session.commit()
    click.echo(f"User created id={user_id} email={email}")


@click.group()
def plans():
    """Plan catalogue."""

@plans.command("seed")
@with_appcontext
def plans_seed():
    registry = _subscription_side().plans
    created = skipped = 0
    for entry in SEED_PLANS:
        if Plan.query.filter_by(name=entry["name"]).first():
            skipped += 1
            continue
        try:
            plan = registry.create_plan(dict(entry))
        except SubflowError as e:
            raise click.ClickException(f"Seeding {entry['name']!r} failed: {e.error_code}: {e.message}")
        created += 1
        click.echo(f"  {plan.name}: id={plan.id} gateway_plan_id={plan.gateway_plan_id}")
    click.echo(f"Plans seeded: created={created} skipped={skipped}")


@click.group()
def subscriptions():
    """Subscription maintenance."""

@subscriptions.command("expire-trials")
@with_appcontext
def subscriptions_expire_trials():
    if not current_app.config.get("TRIALS_ENABLED"):
        click.echo("TRIALS_ENABLED is off; nothing to do")
        return
    moved = _subscription_side().subscriptions.expire_trials()
    click.echo(f"Trials expired: {moved}")


@click.group()
def sagas():
    """Saga recovery tools."""

@sagas.command("sweep-plans")
@click.option("--older-than", type=int, default=None, help="Seconds; defaults to PLAN_SYNC_STALE_SECONDS")
@with_appcontext
def sagas_sweep_plans(older_than):
    if older_than is None:
        older_than = int(current_app.config.get("PLAN_SYNC_STALE_SECONDS", 300))
    counts = _subscription_side().plans.sweep_plan_sync_intents(older_than)
    click.echo("Plan sync intents: " + " ".join(f"{k}={v}" for k, v in sorted(counts.items())))


@click.group()
def worker():
    """Broker consumers."""

@worker.command("run")
@with_appcontext
def worker_run():
    services = get_services()
    services.start()
    click.echo(f"Worker running role={services.role} topics={','.join(services.router.topics)}")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        click.echo("Stopping worker")
    finally:
        services.stop()


def register_cli(app):
    app.cli.add_command(schema)
    app.cli.add_command(users)
    app.cli.add_command(plans)
    app.cli.add_command(subscriptions)
    app.cli.add_command(sagas)
    app.cli.add_command(worker)
