"""Flask CLI commands: database setup, one-off sweeps and the sweep worker."""
from __future__ import annotations

import json
import threading

import click
from flask import current_app
from flask.cli import AppGroup, with_appcontext

from .clock import FixedClock
from .engine import get_engine
from .extensions import db
from .jobs import SweepScheduler
from .models import MessageKind

sweep_cli = AppGroup("sweep", help="Run a background sweep once.")
messages_cli = AppGroup("messages", help="Inspect outbound messages.")

at_option = click.option(
    "--at",
    type=click.DateTime(),
    default=None,
    help="Evaluate the sweep as if it were this local time.",
)


def _engine(at):
    engine = get_engine()
    return engine.with_clock(FixedClock(at)) if at else engine


def _echo(summary) -> None:
    click.echo(json.dumps(summary.to_dict(), default=str))


@click.command("init-db")
@with_appcontext
def init_db_command() -> None:
    """Create all database tables."""
    db.create_all()
    click.echo("Database tables initialized")


@sweep_cli.command("no-shows")
@at_option
def sweep_no_shows(at) -> None:
    _echo(_engine(at).sweep_no_shows())


@sweep_cli.command("reminders")
@click.option(
    "--kind",
    type=click.Choice(list(MessageKind.REMINDERS)),
    default=MessageKind.REMINDER_24H,
    show_default=True,
)
@at_option
def sweep_reminders(kind, at) -> None:
    _echo(_engine(at).sweep_reminders(kind))


@sweep_cli.command("retry")
@at_option
def sweep_retry(at) -> None:
    _echo(_engine(at).retry_failed_messages())


@messages_cli.command("exhausted")
@click.option("--salon-id", type=int, default=None)
def list_exhausted(salon_id) -> None:
    """List messages that gave up after their retry budget."""
    messages = get_engine().exhausted_messages(salon_id)
    if not messages:
        click.echo("No exhausted messages")
        return
    for message in messages:
        click.echo(json.dumps(message.to_dict()))


@click.command("worker")
@with_appcontext
def worker_command() -> None:
    """Run the sweep scheduler until interrupted."""
    scheduler = SweepScheduler(current_app._get_current_object())
    scheduler.start()
    current_app.logger.info("Sweep worker started")
    stop = threading.Event()
    try:
        while not stop.wait(1):
            pass
    except (KeyboardInterrupt, SystemExit):
        click.echo("Stopping scheduler")
    finally:
        scheduler.shutdown()


def register_commands(app) -> None:
    app.cli.add_command(init_db_command)
    app.cli.add_command(sweep_cli)
    app.cli.add_command(messages_cli)
    app.cli.add_command(worker_command)
