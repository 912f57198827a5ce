import json
import logging
import threading

import click

from .config import load_settings
from .db import init_db, open_db
from .errors import NotFoundError, RelayError, StateConflictError
from .models import (
    DELIVERY, FAILED, KINDS, SEVERITIES, STATUSES, TRIGGER,
    DeliveryPayload, JobInput, TriggerPayload,
)
from .repository import JobStore, get_config, load_tunables, set_config
from .utils import format_relative, to_iso
from .worker import build_queues, run_service, setup_signal_handlers


def configure_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
    )


def _tunables(settings):
    with open_db(settings.db_path) as conn:
        return load_tunables(conn)


def _store(settings, kind: str) -> JobStore:
    return JobStore(settings.db_path, KINDS[kind], _tunables(settings)["max_retries_default"])


def _fail(e: Exception):
    click.secho(f"Error: {e}", fg="red")
    raise SystemExit(1)


def _describe(job) -> str:
    when = to_iso(job.scheduled_for)
    if job.status == "pending":
        when += f" ({format_relative(job.scheduled_for)})"
    return (
        f"#{job.id:<6} | {job.kind:<8} | {job.status:<10} | retries={job.retry_count}/{job.max_retries} "
        f"| at={when} | {job.label} | last_error={job.last_error}"
    )


kind_option = click.option(
    "--kind", type=click.Choice([DELIVERY, TRIGGER]), default=DELIVERY, show_default=True,
    help="Job flavor",
)


@click.group(help="relayq: persistent notification and automation job queue")
@click.option("--db", "db_path", default=None, help="SQLite file (default: $RELAYQ_DB or relayq.db)")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, db_path, verbose):
    configure_logging(verbose)
    settings = load_settings()
    if db_path:
        settings.db_path = db_path
    # Ensure DB/schema exist before any command runs
    init_db(settings.db_path)
    ctx.obj = settings


# ---------- Producers ----------
@cli.command("notify", help="Queue a chat notification")
@click.option("--source", required=True, help="Who is sending the notification")
@click.option("--message", required=True, help="Notification text")
@click.option("--title", default=None)
@click.option("--severity", type=click.Choice(SEVERITIES), default="info", show_default=True)
@click.option("--at", "scheduled_for", default=None,
              help="When to send: now, 5m, 2h, '1 day', or an ISO datetime (UTC if no offset)")
@click.option("--max-retries", default=None, type=int, help="Override max retry count")
@click.pass_obj
def notify_cmd(settings, source, message, title, severity, scheduled_for, max_retries):
    try:
        job_id = _store(settings, DELIVERY).create(JobInput(
            DeliveryPayload(source=source, message=message, title=title, severity=severity),
            scheduled_for=scheduled_for,
            max_retries=max_retries,
        ))
    except RelayError as e:
        _fail(e)
    click.secho(f"Queued notification #{job_id} ({scheduled_for or 'now'})", fg="green")


@cli.command("trigger", help="Queue a Home Assistant automation trigger")
@click.argument("automation_id")
@click.option("--by", "requested_by", required=True, help="Who requested the trigger")
@click.option("--name", "automation_name", default=None, help="Friendly automation name")
@click.option("--at", "scheduled_for", default="now", show_default=True,
              help="When to trigger: now, 5m, 2h, '1 day', or an ISO datetime (UTC if no offset)")
@click.option("--notify", "notify_on_complete", is_flag=True, help="Post a chat message when done")
@click.option("--max-retries", default=None, type=int, help="Override max retry count")
@click.pass_obj
def trigger_cmd(settings, automation_id, requested_by, automation_name, scheduled_for,
                notify_on_complete, max_retries):
    try:
        job_id = _store(settings, TRIGGER).create(JobInput(
            TriggerPayload(
                automation_id=automation_id,
                requested_by=requested_by,
                automation_name=automation_name,
                notify_on_complete=notify_on_complete,
            ),
            scheduled_for=scheduled_for,
            max_retries=max_retries,
        ))
    except RelayError as e:
        _fail(e)
    click.secho(f"Queued trigger #{job_id} for {automation_id} ({scheduled_for})", fg="green")


# ---------- Service ----------
@cli.command("serve", help="Run the queues and the scheduler until interrupted")
@click.pass_obj
def serve_cmd(settings):
    tunables = _tunables(settings)
    queues = build_queues(settings, tunables)
    if not queues:
        _fail(RelayError("No backend configured (set SLACK_* and/or HA_URL/HA_TOKEN)"))

    stop = threading.Event()
    setup_signal_handlers(stop)
    click.secho(
        f"Serving {', '.join(q.name for q in queues)} queue(s). Press Ctrl+C to stop…", fg="cyan"
    )
    run_service(queues, tunables["scheduler_interval"], stop)
    click.secho("Queues stopped.", fg="yellow")


# ---------- Jobs ----------
@cli.command("status", help="Queue statistics")
@click.pass_obj
def status_cmd(settings):
    out = {kind: _store(settings, kind).stats().as_dict() for kind in (DELIVERY, TRIGGER)}
    click.echo(json.dumps(out, indent=2))


@cli.command("list", help="Job history, newest first")
@kind_option
@click.option("--status", type=click.Choice(STATUSES), default=None)
@click.option("--limit", type=int, default=20, show_default=True)
@click.pass_obj
def list_cmd(settings, kind, status, limit):
    jobs = _store(settings, kind).history(limit=limit, status=status)
    if not jobs:
        click.echo("No jobs.")
        return
    for job in jobs:
        click.echo(_describe(job))


@cli.command("scheduled", help="Pending jobs scheduled for the future")
@kind_option
@click.option("--limit", type=int, default=20, show_default=True)
@click.pass_obj
def scheduled_cmd(settings, kind, limit):
    jobs = _store(settings, kind).list_scheduled(limit=limit)
    if not jobs:
        click.echo("Nothing scheduled.")
        return
    for job in jobs:
        click.echo(_describe(job))


@cli.command("failed", help="Jobs that exhausted their retries")
@kind_option
@click.option("--limit", type=int, default=20, show_default=True)
@click.pass_obj
def failed_cmd(settings, kind, limit):
    jobs = _store(settings, kind).query_by_status(FAILED, limit=limit)
    if not jobs:
        click.echo("No failed jobs.")
        return
    for job in jobs:
        click.echo(_describe(job))


@cli.command("cancel", help="Cancel a pending or processing job")
@click.argument("job_id", type=int)
@kind_option
@click.pass_obj
def cancel_cmd(settings, job_id, kind):
    store = _store(settings, kind)
    try:
        if not store.cancel(job_id):
            job = store.get(job_id)
            if job is None:
                raise NotFoundError(kind, job_id)
            raise StateConflictError(job_id, job.status, "cancel")
    except RelayError as e:
        _fail(e)
    click.secho(f"Cancelled {kind} job #{job_id}.", fg="green")


@cli.command("retry", help="Re-queue a failed job")
@click.argument("job_id", type=int)
@kind_option
@click.pass_obj
def retry_cmd(settings, job_id, kind):
    store = _store(settings, kind)
    try:
        if not store.retry_now(job_id):
            job = store.get(job_id)
            if job is None:
                raise NotFoundError(kind, job_id)
            raise StateConflictError(job_id, job.status, "retry")
    except RelayError as e:
        _fail(e)
    click.secho(f"Re-queued {kind} job #{job_id}; it runs on the next scheduler tick.", fg="green")


@cli.command("cleanup", help="Delete done jobs older than the retention period")
@click.option("--days", type=int, default=None, help="Override retention_days")
@click.pass_obj
def cleanup_cmd(settings, days):
    if days is None:
        days = _tunables(settings)["retention_days"]
    try:
        removed = {kind: _store(settings, kind).cleanup_done(days) for kind in (DELIVERY, TRIGGER)}
    except RelayError as e:
        _fail(e)
    click.echo(json.dumps(removed, indent=2))


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_obj
def config_get(settings):
    with open_db(settings.db_path) as conn:
        click.echo(json.dumps(get_config(conn), indent=2))


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def config_set_cmd(settings, key, value):
    try:
        with open_db(settings.db_path) as conn:
            set_config(conn, key, value)
    except RelayError as e:
        _fail(e)
    click.secho(f"Config updated: {key}={value}", fg="green")


def main():
    cli()
