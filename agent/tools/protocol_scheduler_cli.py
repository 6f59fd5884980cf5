#!/usr/bin/env python3
"""
Protocol Scheduler CLI Tool

Operator commands for the recovery protocol scheduling engine: seeding
templates, assigning protocols, resyncing, and inspecting patient schedules.

Usage:
    python tools/protocol_scheduler_cli.py load-templates --dir protocol_templates
    python tools/protocol_scheduler_cli.py add-patient patient-001 --anchor-date 2024-03-01
    python tools/protocol_scheduler_cli.py assign patient-001 tka-standard
    python tools/protocol_scheduler_cli.py resync patient-001 tka-standard
    python tools/protocol_scheduler_cli.py due patient-001 --date 2024-03-05
    python tools/protocol_scheduler_cli.py complete <instance-id> --data '{"pain": 3}'
    python tools/protocol_scheduler_cli.py move-anchor patient-001 2024-03-08
    python tools/protocol_scheduler_cli.py progress patient-001
    python tools/protocol_scheduler_cli.py redis-status
"""

import json
from typing import List

import click
from dotenv import load_dotenv
from tabulate import tabulate

from config.settings import DEFAULT_TIMEZONE, TEMPLATES_DIR
from scheduling.exceptions import ProtocolSchedulingError
from scheduling.models import Patient, TaskInstance, TaskStatus
from scheduling.scheduler import ProtocolScheduler

DATE_TYPE = click.DateTime(formats=["%Y-%m-%d"])


def _as_date(value):
    return value.date() if value is not None else None


def _instance_table(instances: List[TaskInstance]) -> str:
    rows = [
        [
            instance.scheduled_date.isoformat(),
            instance.day_offset,
            instance.protocol_id,
            instance.title,
            instance.kind.value,
            instance.status.value,
            instance.id[:12],
        ]
        for instance in instances
    ]
    return tabulate(rows, headers=['Date', 'Day', 'Protocol', 'Task', 'Kind', 'Status', 'ID'], tablefmt='grid')


def _fail(ctx, action: str, error: ProtocolSchedulingError):
    """Report a scheduling error and exit non-zero"""
    hint = " (safe to retry)" if error.retryable else ""
    click.echo(f"❌ Error {action}: {error}{hint}", err=True)
    ctx.exit(1)


# CLI Commands
@click.group()
@click.option('--redis-url', envvar='REDIS_URL', help='Redis URL (default: REDIS_URL or REDIS_HOST settings)')
@click.pass_context
def cli(ctx, redis_url):
    """Recovery Protocol Scheduler Management CLI"""
    load_dotenv()
    ctx.ensure_object(dict)
    if 'scheduler' not in ctx.obj:
        from config.redis import create_redis_connection
        from shared.redis_store import RedisProtocolStore

        store = RedisProtocolStore(create_redis_connection(redis_url))
        ctx.obj['scheduler'] = ProtocolScheduler(store)


@cli.command()
@click.option('--dir', 'directory', default=TEMPLATES_DIR, type=click.Path(exists=True, file_okay=False),
              help="Directory of YAML protocol templates")
@click.pass_context
def load_templates(ctx, directory):
    """Load protocol templates from YAML files into the store"""
    scheduler = ctx.obj['scheduler']

    try:
        templates = scheduler.templates.seed_from_dir(directory)
    except ProtocolSchedulingError as e:
        _fail(ctx, "loading templates", e)

    click.echo(f"✅ Loaded {len(templates)} protocol templates from {directory}")
    click.echo(tabulate(
        [[t.id, t.title, t.surgery_type, len(t.tasks), t.version] for t in templates],
        headers=['ID', 'Title', 'Surgery', 'Tasks', 'Version'],
        tablefmt='grid'
    ))


@cli.command()
@click.argument('patient_id')
@click.option('--anchor-date', type=DATE_TYPE, help="Surgery date (YYYY-MM-DD)")
@click.option('--tenant', default="", help="Tenant id")
@click.option('--name', default="", help="Patient name")
@click.option('--surgery-type', default="", help="Surgery type, e.g. TKA")
@click.option('--timezone', default=DEFAULT_TIMEZONE, help="Patient timezone for 'today'")
@click.pass_context
def add_patient(ctx, patient_id, anchor_date, tenant, name, surgery_type, timezone):
    """Create or update a patient"""
    scheduler = ctx.obj['scheduler']

    patient = Patient(
        id=patient_id,
        tenant_id=tenant,
        anchor_date=_as_date(anchor_date),
        name=name,
        surgery_type=surgery_type,
        timezone=timezone,
    )
    try:
        scheduler.store.save_patient(patient)
    except ProtocolSchedulingError as e:
        _fail(ctx, "saving patient", e)

    anchor = patient.anchor_date.isoformat() if patient.anchor_date else "not set"
    click.echo(f"✅ Saved patient {patient_id} (anchor date: {anchor})")


@cli.command()
@click.argument('patient_id')
@click.argument('protocol_id')
@click.option('--anchor-date', type=DATE_TYPE, help="Surgery date (YYYY-MM-DD)")
@click.option('--replace', is_flag=True, help="Resync an existing active assignment instead of failing")
@click.pass_context
def assign(ctx, patient_id, protocol_id, anchor_date, replace):
    """Assign a protocol to a patient"""
    scheduler = ctx.obj['scheduler']

    try:
        result = scheduler.assign_protocol(patient_id, protocol_id, anchor_date=_as_date(anchor_date), replace=replace)
    except ProtocolSchedulingError as e:
        _fail(ctx, "assigning protocol", e)

    click.echo(f"✅ Assigned {protocol_id} to {patient_id}")
    click.echo(f"🆔 Assignment: {result.assignment_id}")
    click.echo(f"📅 Anchor date: {result.anchor_date.isoformat()}")
    click.echo(f"📋 Tasks created: {result.tasks_created}")


@cli.command()
@click.argument('patient_id')
@click.argument('protocol_id', required=False)
@click.option('--force', is_flag=True, help="Drop pre-anchor progress when the anchor moved earlier")
@click.pass_context
def resync(ctx, patient_id, protocol_id, force):
    """Resync one protocol (or every active protocol) for a patient"""
    scheduler = ctx.obj['scheduler']

    try:
        if protocol_id:
            results = {protocol_id: scheduler.resync_protocol(patient_id, protocol_id, force=force)}
        else:
            results = scheduler.resync_all(patient_id, force=force)
    except ProtocolSchedulingError as e:
        _fail(ctx, "resyncing", e)

    if not results:
        click.echo(f"📋 Patient {patient_id} has no active assignments")
        return

    click.echo(f"🔄 Resynced {len(results)} protocol(s) for {patient_id}")
    click.echo(tabulate(
        [[pid, r.created, r.preserved, r.removed, r.total] for pid, r in results.items()],
        headers=['Protocol', 'Created', 'Preserved', 'Removed', 'Total'],
        tablefmt='grid'
    ))


@cli.command()
@click.argument('patient_id')
@click.option('--date', 'reference_date', type=DATE_TYPE, help="Reference date (default: today for the patient)")
@click.pass_context
def due(ctx, patient_id, reference_date):
    """List tasks due on a date"""
    scheduler = ctx.obj['scheduler']

    try:
        instances = scheduler.get_due_instances(patient_id, _as_date(reference_date))
    except ProtocolSchedulingError as e:
        _fail(ctx, "listing due tasks", e)

    if not instances:
        click.echo("📋 No tasks due")
        return

    click.echo(f"📅 {len(instances)} task(s) due:")
    click.echo(_instance_table(instances))


@cli.command()
@click.argument('patient_id')
@click.option('--date', 'reference_date', type=DATE_TYPE, help="Reference date (default: today for the patient)")
@click.pass_context
def overdue(ctx, patient_id, reference_date):
    """List pending tasks scheduled before a date"""
    scheduler = ctx.obj['scheduler']

    try:
        instances = scheduler.get_overdue_instances(patient_id, _as_date(reference_date))
    except ProtocolSchedulingError as e:
        _fail(ctx, "listing overdue tasks", e)

    if not instances:
        click.echo("✅ No overdue tasks")
        return

    click.echo(f"⚠️ {len(instances)} overdue task(s):")
    click.echo(_instance_table(instances))


@cli.command()
@click.argument('instance_id')
@click.option('--status', type=click.Choice([s.value for s in TaskStatus]), default=TaskStatus.COMPLETED.value,
              help="New status")
@click.option('--data', 'completion_data', help="Completion payload as JSON")
@click.pass_context
def complete(ctx, instance_id, status, completion_data):
    """Record progress on a task instance"""
    scheduler = ctx.obj['scheduler']

    payload = None
    if completion_data:
        try:
            payload = json.loads(completion_data)
        except json.JSONDecodeError as e:
            raise click.BadParameter(f"not valid JSON: {e}", param_hint="--data")

    try:
        instance = scheduler.record_completion(instance_id, status=status, completion_data=payload)
    except ProtocolSchedulingError as e:
        _fail(ctx, "recording completion", e)

    click.echo(f"✅ {instance.title} ({instance.scheduled_date.isoformat()}) marked {instance.status.value}")


@cli.command()
@click.argument('patient_id')
@click.argument('new_anchor', type=DATE_TYPE)
@click.option('--force', is_flag=True, help="Drop pre-anchor progress when moving the anchor earlier")
@click.pass_context
def move_anchor(ctx, patient_id, new_anchor, force):
    """Correct a patient's anchor (surgery) date and resync"""
    scheduler = ctx.obj['scheduler']

    try:
        results = scheduler.correct_anchor_date(patient_id, _as_date(new_anchor), force=force)
    except ProtocolSchedulingError as e:
        _fail(ctx, "moving anchor date", e)

    click.echo(f"📅 Anchor date for {patient_id} set to {_as_date(new_anchor).isoformat()}")
    for protocol_id, result in results.items():
        click.echo(f"   {protocol_id}: created={result.created} preserved={result.preserved} removed={result.removed}")


@cli.command()
@click.argument('patient_id')
@click.option('--date', 'reference_date', type=DATE_TYPE, help="Reference date (default: today for the patient)")
@click.pass_context
def progress(ctx, patient_id, reference_date):
    """Show per-protocol progress for a patient"""
    scheduler = ctx.obj['scheduler']

    try:
        summaries = scheduler.get_patient_progress(patient_id, _as_date(reference_date))
    except ProtocolSchedulingError as e:
        _fail(ctx, "loading progress", e)

    if not summaries:
        click.echo(f"📋 Patient {patient_id} has no assignments")
        return

    click.echo(tabulate(
        [
            [s.protocol_id, s.recovery_day, s.phase, s.total, s.completed, s.in_progress, s.overdue,
             f"{s.completion_rate:.0%}"]
            for s in summaries
        ],
        headers=['Protocol', 'Day', 'Phase', 'Total', 'Done', 'In Progress', 'Overdue', 'Rate'],
        tablefmt='grid'
    ))


@cli.command()
@click.pass_context
def redis_status(ctx):
    """Check Redis connection and protocol data status"""
    store = ctx.obj['scheduler'].store
    redis_client = getattr(store, 'redis_client', None)
    if redis_client is None:
        click.echo("ℹ️ Store is not Redis-backed")
        return

    try:
        store.ping()
        click.echo("✅ Redis connection: OK")
        key_types = store.key_counts()
    except ProtocolSchedulingError as e:
        _fail(ctx, "checking Redis status", e)

    click.echo(f"📊 Protocol keys in Redis: {sum(key_types.values())}")
    if key_types:
        click.echo(tabulate(sorted(key_types.items()), headers=['Key type', 'Count'], tablefmt='grid'))


if __name__ == '__main__':
    cli()
