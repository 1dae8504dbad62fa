"""Cadence CLI — manage recurring-task templates in a local database."""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from datetime import date, datetime, timezone
from typing import Any, TypeVar

import click
import yaml
from dotenv import load_dotenv
from pydantic import ValidationError
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from core.clock import SystemClock
from core.config import EngineSettings
from core.errors import SchedulingError
from main import build_engine
from main import main as run_engine
from recurrence.engine import RecurrenceEngine, TimeWindow
from scheduler.models import InstanceStatus, Template, TemplateStatus
from scheduler.service import TemplateService

console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")

_STATUS_COLOR: dict[str, str] = {
    "active": "green",
    "paused": "yellow",
    "archived": "dim",
    "pending": "blue",
    "in_progress": "yellow",
    "completed": "green",
    "skipped": "dim",
    "expired": "red",
}


# ── Internal helpers ──────────────────────────────────────────────────────────


def _color(status: str) -> str:
    return _STATUS_COLOR.get(status, "white")


def _load_file(path: str) -> dict:
    with open(path) as f:
        return yaml.safe_load(f) if path.endswith((".yaml", ".yml")) else json.load(f)


def _die(msg: str, code: int = 1) -> None:
    err_console.print(f"[red]Error:[/] {escape(msg)}", soft_wrap=True)
    sys.exit(code)


def _to_ms(value: Any) -> int:
    """Epoch ms from an int, an ISO-8601 string, or a YAML date/datetime (naive → UTC)."""
    if isinstance(value, bool):
        raise ValueError(f"Not a timestamp: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if isinstance(value, date) and not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    raise ValueError(f"Not a timestamp: {value!r}")


def _fmt_ms(ms: int | None) -> str:
    if ms is None:
        return "-"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC %a")


def _template_from_file(path: str) -> Template:
    """Build a Template from a YAML / JSON file.

    \b
    Times may be epoch ms or ISO-8601; week days are case-insensitive:
      name: standup
      rule:
        type: weekly
        week_days: [monday, wednesday]
      time_config:
        start_at: "2024-01-01T09:00:00Z"
    """
    payload = _load_file(path)
    if not isinstance(payload, dict):
        _die(f"{path}: expected a mapping at the top level")
    try:
        rule = dict(payload.get("rule") or {})
        if "week_days" in rule:
            rule["week_days"] = [str(d).upper() for d in rule["week_days"]]
        if "dates" in rule:
            rule["dates"] = [_to_ms(d) for d in rule["dates"]]
        time_config = dict(payload.get("time_config") or {})
        for key in ("start_at", "end_at"):
            if time_config.get(key) is not None:
                time_config[key] = _to_ms(time_config[key])
        return Template.model_validate({**payload, "rule": rule, "time_config": time_config})
    except (ValidationError, ValueError) as exc:
        _die(f"Invalid template file {path}: {exc}")


def _settings(obj: dict) -> EngineSettings:
    return EngineSettings(database_url=obj["db"])


def _with_service(obj: dict, fn: Callable[[TemplateService], Awaitable[T]]) -> T:
    """Open the database, run *fn* against a TemplateService, close the database."""

    async def _call() -> T:
        engine = build_engine(_settings(obj))
        await engine.repository.init()
        try:
            return await fn(engine.service)
        finally:
            await engine.repository.close()

    try:
        return asyncio.run(_call())
    except SchedulingError as exc:
        _die(str(exc))


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _print_templates(templates: list[Template]) -> None:
    table = Table(box=box.SIMPLE)
    table.add_column("Template ID", style="cyan")
    table.add_column("Name")
    table.add_column("Rule")
    table.add_column("Status")
    table.add_column("Materialised until")
    for t in templates:
        status = t.status.value
        table.add_row(
            t.template_uuid,
            t.name,
            _describe_rule(t),
            f"[{_color(status)}]{status}[/]",
            _fmt_ms(t.generation_watermark),
        )
    console.print(table)


def _describe_rule(template: Template) -> str:
    rule = template.rule
    if rule.type == "daily":
        text = "daily" if rule.interval == 1 else f"every {rule.interval} days"
    elif rule.type == "weekly":
        days = ",".join(d.value[:3].title() for d in rule.week_days)
        text = f"weekly {days}" if rule.interval == 1 else f"every {rule.interval} weeks {days}"
    else:
        text = f"{len(rule.dates)} dates"
    if rule.occurrences:
        text += f" ×{rule.occurrences}"
    return text


# ── Root group ────────────────────────────────────────────────────────────────


@click.group()
@click.option(
    "--db",
    default="sqlite+aiosqlite:///cadence.db",
    envvar="CADENCE_DATABASE_URL",
    show_default=True,
    help="SQLAlchemy database URL.",
)
@click.option("--json", "json_output", is_flag=True, help="Output raw JSON.")
@click.pass_context
def cli(ctx: click.Context, db: str, json_output: bool) -> None:
    """Cadence — recurring task scheduler."""
    load_dotenv()
    ctx.ensure_object(dict)
    ctx.obj["db"] = db
    ctx.obj["json_output"] = json_output


# ── cadence preview ───────────────────────────────────────────────────────────


@cli.command("preview")
@click.argument("file", type=click.Path(exists=True))
@click.option("--from", "from_", default=None, metavar="WHEN",
              help="Window start (ISO-8601 or epoch ms). Defaults to the template start.")
@click.option("--days", default=14, show_default=True, help="Window length in days.")
@click.pass_obj
def preview(obj: dict, file: str, from_: str | None, days: int) -> None:
    """Print the trigger times a template file would produce. Nothing is saved."""
    template = _template_from_file(file)
    start = template.time_config.start_at
    if from_ is not None:
        start = _to_ms(int(from_) if from_.isdigit() else from_)
    try:
        timestamps = RecurrenceEngine().generate(template, TimeWindow.days(start, days))
    except SchedulingError as exc:
        _die(str(exc))

    if obj["json_output"]:
        _echo_json(timestamps)
        return

    if not timestamps:
        click.echo("No occurrences in window.")
        return

    table = Table(box=box.SIMPLE)
    table.add_column("#", justify="right")
    table.add_column("Epoch ms", style="cyan")
    table.add_column("When")
    for n, ts in enumerate(timestamps, 1):
        table.add_row(str(n), str(ts), _fmt_ms(ts))
    console.print(table)


# ── cadence template ──────────────────────────────────────────────────────────


@cli.group("template")
def template() -> None:
    """Manage task templates."""


@template.command("add")
@click.argument("file", type=click.Path(exists=True))
@click.pass_obj
def template_add(obj: dict, file: str) -> None:
    """Create a template from a YAML or JSON file and materialise its first batch."""
    new = _template_from_file(file)
    created = _with_service(obj, lambda svc: svc.create_template(new))

    if obj["json_output"]:
        _echo_json(created.model_dump(mode="json"))
        return
    click.echo(
        f"Created  {created.template_uuid}  [{created.status.value}]  "
        f"until: {_fmt_ms(created.generation_watermark)}"
    )


@template.command("list")
@click.option("--status", type=click.Choice([s.value for s in TemplateStatus]),
              help="Filter by status.")
@click.pass_obj
def template_list(obj: dict, status: str | None) -> None:
    """List templates, oldest first."""
    wanted = TemplateStatus(status) if status else None
    templates = _with_service(obj, lambda svc: svc.list_templates(wanted))

    if obj["json_output"]:
        _echo_json([t.model_dump(mode="json") for t in templates])
        return
    if not templates:
        click.echo("No templates found.")
        return
    _print_templates(templates)


@template.command("show")
@click.argument("template_uuid")
@click.pass_obj
def template_show(obj: dict, template_uuid: str) -> None:
    """Show a template and its next occurrence."""
    found = _with_service(obj, lambda svc: svc.get_template(template_uuid))
    next_run = None
    if found.is_active:
        next_run = RecurrenceEngine().next_occurrence(found, SystemClock().now() - 1)

    if obj["json_output"]:
        _echo_json({**found.model_dump(mode="json"), "next_run_at": next_run})
        return
    _print_templates([found])
    console.print(f"Next run: {_fmt_ms(next_run)}")


def _print_transition(obj: dict, verb: str, updated: Template) -> None:
    if obj["json_output"]:
        _echo_json(updated.model_dump(mode="json"))
        return
    click.echo(f"{verb}  {updated.template_uuid}  [{updated.status.value}]")


@template.command("pause")
@click.argument("template_uuid")
@click.pass_obj
def template_pause(obj: dict, template_uuid: str) -> None:
    """Pause a template and skip its open instances."""
    updated = _with_service(obj, lambda svc: svc.pause_template(template_uuid))
    _print_transition(obj, "Paused", updated)


@template.command("activate")
@click.argument("template_uuid")
@click.pass_obj
def template_activate(obj: dict, template_uuid: str) -> None:
    """Re-activate a paused template and top up its instances."""
    updated = _with_service(obj, lambda svc: svc.activate_template(template_uuid))
    _print_transition(obj, "Activated", updated)


@template.command("archive")
@click.argument("template_uuid")
@click.pass_obj
def template_archive(obj: dict, template_uuid: str) -> None:
    """Archive a template for good."""
    updated = _with_service(obj, lambda svc: svc.archive_template(template_uuid))
    _print_transition(obj, "Archived", updated)


# ── cadence instances ─────────────────────────────────────────────────────────


@cli.command("instances")
@click.argument("template_uuid")
@click.option("--status", "statuses", multiple=True,
              type=click.Choice([s.value for s in InstanceStatus]),
              help="Only these statuses (repeatable).")
@click.option("--limit", default=50, show_default=True, help="Rows to show.")
@click.pass_obj
def instances(obj: dict, template_uuid: str, statuses: tuple[str, ...], limit: int) -> None:
    """List a template's instances in scheduled order."""
    wanted = [InstanceStatus(s) for s in statuses] or None
    rows = _with_service(obj, lambda svc: svc.list_instances(template_uuid, wanted))
    rows = rows[:limit]

    if obj["json_output"]:
        _echo_json([i.model_dump(mode="json") for i in rows])
        return
    if not rows:
        click.echo("No instances found.")
        return

    table = Table(box=box.SIMPLE)
    table.add_column("Instance ID", style="cyan")
    table.add_column("Scheduled")
    table.add_column("Status")
    table.add_column("Note")
    for i in rows:
        status = i.status.value
        table.add_row(
            i.instance_uuid,
            _fmt_ms(i.scheduled_at),
            f"[{_color(status)}]{status}[/]",
            (i.note or "")[:60],
        )
    console.print(table)


# ── cadence run ───────────────────────────────────────────────────────────────


@cli.command("run")
@click.option("--seconds", type=float, default=None, metavar="SECS",
              help="Stop after this long. Runs until Ctrl-C by default.")
@click.pass_obj
def run(obj: dict, seconds: float | None) -> None:
    """Run the scheduler loop against the database."""
    try:
        asyncio.run(run_engine(seconds, _settings(obj)))
    except KeyboardInterrupt:
        click.echo("Stopped.")
