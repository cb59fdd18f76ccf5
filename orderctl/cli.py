import json
import sqlite3

import click

from .channel_rules import list_channel_rules, upsert_channel_rule
from .db import init_db, connect_db
from .errors import OrderCtlError
from .importer import import_orders, preview_import
from .log import configure_logging
from .models import JOB_STATUSES, JOB_TYPES, SYNC_ORDER, INVOICE_ORDER, SHIP_ORDER
from .remote import RemoteOrderClient
from .repository import (
    enqueue_job, list_jobs, counts, failed_jobs, reenable_job,
    get_config, set_config,
)
from .worker import Worker, start_workers

ENQUEUE_TYPES = {"sync": SYNC_ORDER, "invoice": INVOICE_ORDER, "ship": SHIP_ORDER}


def _fail(e: Exception):
    click.secho(f"Error: {e}", fg="red")
    raise SystemExit(1)


def _remote_client() -> RemoteOrderClient:
    try:
        return RemoteOrderClient.from_env()
    except ValueError as e:
        _fail(e)


def _job_line(j) -> str:
    return (
        f"{j.id:>8} | {j.type:<13} | {j.status:<7} | order={j.target_id} "
        f"| attempts={j.attempts}/{j.max_attempts} | next={j.next_run_at} | last_error={j.last_error}"
    )


@click.group(help="orderctl — order import and sync job queue")
def cli():
    configure_logging()
    # Ensure DB/schema exist before any command runs
    init_db()


# ---------- Enqueue ----------
@cli.command("enqueue", help="Queue a sync, invoice or ship job for an order")
@click.argument("kind", type=click.Choice(sorted(ENQUEUE_TYPES)))
@click.argument("order_id", type=int)
@click.option("--max-attempts", default=None, type=int, help="Override max attempt count")
def enqueue_cmd(kind, order_id, max_attempts):
    conn = connect_db()
    try:
        job_id = enqueue_job(conn, ENQUEUE_TYPES[kind], order_id, max_attempts=max_attempts)
        click.secho(f"Job {job_id} queued: {ENQUEUE_TYPES[kind]} for order {order_id}", fg="green")
    except (ValueError, sqlite3.Error) as e:
        _fail(e)
    finally:
        conn.close()


# ---------- Import ----------
@cli.command("import", help="Import parsed orders from a JSON file and queue them for sync")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--imported-by", default=None, help="Name recorded on the imported orders")
@click.option("--dry-run", is_flag=True, help="Validate orders and stock without storing anything")
def import_cmd(path, imported_by, dry_run):
    try:
        with open(path, encoding="utf-8") as fh:
            records = json.load(fh)
    except (OSError, json.JSONDecodeError) as e:
        _fail(e)
    if not isinstance(records, list):
        _fail(ValueError("Import file must contain a JSON list of orders."))

    client = _remote_client()
    if dry_run:
        preview = preview_import(client, records)
        colour = "green" if preview["ok"] else "yellow"
        click.secho(
            f"Preview {'OK' if preview['ok'] else 'FAILED'}: "
            f"{preview['total_orders']} order(s), {preview['total_item_rows']} item row(s)",
            fg=colour,
        )
        for f in preview["failures"]:
            click.echo(f"  {f['file_order_id']}: {'; '.join(f['errors'])}")
        for issue in preview["issues"]:
            click.echo(f"  {issue['type']}: {issue['message']}")
        return

    conn = connect_db()
    try:
        result = import_orders(conn, client, records, imported_by=imported_by, source=path)
    except (sqlite3.Error, OrderCtlError) as e:
        _fail(e)
    finally:
        conn.close()

    colour = "green" if result["status"] == "DONE" else "yellow"
    click.secho(f"Import {result['import_id']} {result['status']}: {json.dumps(result['summary'])}", fg=colour)
    for f in result["failures"]:
        click.echo(f"  {f['file_order_id']}: {'; '.join(f['errors'])}")


# ---------- Workers ----------
@cli.group("worker", help="Manage workers")
def worker_group():
    pass


@worker_group.command("start")
@click.option("--count", type=int, default=1, show_default=True, help="Number of worker threads")
def worker_start(count):
    client = _remote_client()
    click.secho(f"Starting {count} worker(s). Press Ctrl+C to stop…", fg="cyan")
    start_workers(count, client)
    click.secho("Workers stopped.", fg="yellow")


@worker_group.command("run-once", help="Claim and run a single batch of due jobs")
def worker_run_once():
    client = _remote_client()
    conn = connect_db()
    try:
        processed = Worker("worker-once", client).run_once(conn)
    finally:
        conn.close()
    click.echo(f"Processed {processed} job(s).")


# ---------- Jobs ----------
@cli.command("list")
@click.option("--status", type=click.Choice(JOB_STATUSES), default=None)
@click.option("--type", "job_type", type=click.Choice(JOB_TYPES), default=None)
@click.option("--order-id", type=int, default=None)
@click.option("--limit", type=int, default=50, show_default=True)
def list_cmd(status, job_type, order_id, limit):
    conn = connect_db()
    try:
        rows = list_jobs(conn, status=status, job_type=job_type, order_id=order_id, limit=limit)
    finally:
        conn.close()

    if not rows:
        click.echo("No jobs.")
        return

    for j in rows:
        click.echo(_job_line(j))


@cli.command("status")
def status_cmd():
    conn = connect_db()
    try:
        click.echo(json.dumps(counts(conn), indent=2))
    finally:
        conn.close()


# ---------- Failed jobs ----------
@cli.group("failed", help="Permanently failed jobs")
def failed_group():
    pass


@failed_group.command("list")
def failed_list_cmd():
    conn = connect_db()
    try:
        rows = failed_jobs(conn)
    finally:
        conn.close()

    if not rows:
        click.echo("No failed jobs.")
        return

    for j in rows:
        click.echo(_job_line(j))


@failed_group.command("retry")
@click.argument("job_id", type=int)
def failed_retry_cmd(job_id):
    conn = connect_db()
    try:
        if reenable_job(conn, job_id):
            click.secho(f"Re-queued job {job_id}.", fg="green")
        else:
            raise click.ClickException(f"Job {job_id} not found or not finished.")
    except click.ClickException as e:
        _fail(e)
    finally:
        conn.close()


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
def config_get():
    conn = connect_db()
    try:
        click.echo(json.dumps(get_config(conn), indent=2))
    finally:
        conn.close()


@config_group.command("set")
@click.argument("key")
@click.argument("value")
def config_set_cmd(key, value):
    conn = connect_db()
    try:
        set_config(conn, key, value)
        click.secho(f"Config updated: {key}={value}", fg="green")
    except ValueError as e:
        _fail(e)
    finally:
        conn.close()


# ---------- Channel rules ----------
@cli.group("channel-rule", help="Per-channel auto invoice / ship rules")
def channel_rule_group():
    pass


@channel_rule_group.command("list")
def channel_rule_list():
    conn = connect_db()
    try:
        rows = list_channel_rules(conn)
    finally:
        conn.close()

    if not rows:
        click.echo("No channel rules.")
        return

    for r in rows:
        click.echo(
            f"{r['channel']} | auto_invoice={bool(r['auto_invoice'])} "
            f"| auto_ship={bool(r['auto_ship'])} | active={bool(r['is_active'])}"
        )


@channel_rule_group.command("set")
@click.argument("channel")
@click.option("--auto-invoice/--no-auto-invoice", default=True, show_default=True)
@click.option("--auto-ship/--no-auto-ship", default=False, show_default=True)
@click.option("--active/--inactive", default=True, show_default=True)
def channel_rule_set(channel, auto_invoice, auto_ship, active):
    conn = connect_db()
    try:
        upsert_channel_rule(conn, channel, auto_invoice, auto_ship, active)
        click.secho(f"Channel rule saved: {channel}", fg="green")
    except ValueError as e:
        _fail(e)
    finally:
        conn.close()


def main():
    cli()
