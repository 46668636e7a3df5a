# workshop/cli.py
"""``flask jobcards ...`` commands for operating on job cards from a shell."""

import json
import logging

import click
from flask.cli import AppGroup

from workshop.api.client import ApiError
from workshop.jobcards.utils import build_services, draft_store, make_engine

jobcards_cli = AppGroup("jobcards", help="Job card commands.")

role_option = click.option(
    "--role", default="Admin", show_default=True,
    type=click.Choice(["Technician", "Supervisor", "Admin"], case_sensitive=False),
)


def _engine(job_id: str, role: str):
    services = build_services()
    try:
        job = services.jobs.get(job_id)
    except ApiError as e:
        raise click.ClickException(str(e))
    return make_engine(services, role, job=job).mount()


def _finish(engine, ok: bool) -> None:
    for notice in engine.notices:
        click.echo(f"[{notice.level}] {notice.message}")
    if not ok:
        raise click.ClickException(engine.notices[-1].message if engine.notices else "failed")


@jobcards_cli.command("show")
@click.argument("job_id")
@role_option
def show_command(job_id: str, role: str) -> None:
    engine = _engine(job_id, role)
    click.echo(json.dumps(engine.to_view(), indent=2, default=str))


@jobcards_cli.command("start")
@click.argument("job_id")
@role_option
def start_command(job_id: str, role: str) -> None:
    engine = _engine(job_id, role)
    _finish(engine, engine.start_work())


@jobcards_cli.command("complete")
@click.argument("job_id")
@role_option
def complete_command(job_id: str, role: str) -> None:
    """Mark a job complete and raise its invoice."""
    engine = _engine(job_id, role)
    _finish(engine, engine.mark_complete())


@jobcards_cli.command("draft-show")
def draft_show_command() -> None:
    draft = draft_store().load()
    if draft is None:
        click.echo("No draft saved")
        return
    click.echo(json.dumps(draft, indent=2))


@jobcards_cli.command("draft-clear")
def draft_clear_command() -> None:
    draft_store().clear()
    logging.info("job card draft cleared")
    click.echo("Draft cleared")
