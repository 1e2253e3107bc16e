from typing import Optional

import click
from rich.table import Column, Table, box

from .. import terminal
from ..config import settings
from ..models.database import init_db
from ..models.run import PipelineRun, RunStatus
from .extraclick import ClickManagementGroup

_STATUS_STYLES = {
    RunStatus.DONE: "green",
    RunStatus.FAILED: "red",
}


@click.group(
    name="runs",
    help="Inspect the run ledger.",
    cls=ClickManagementGroup,
)
def management():
    pass


@management.command(
    name="list",
    help="List recent runs.",
    epilog="""
    Examples:

      {cli_name} runs list --environment dev --limit 5
    """,
)
@click.option("--environment", "-e", help="Only runs of this environment.")
@click.option("--limit", type=click.IntRange(min=1), default=20, help="Number of runs.")
def list_runs(environment: Optional[str], limit: int):
    db = init_db(settings.database_url)

    with db.session() as session:
        query = session.query(PipelineRun)
        if environment:
            query = query.filter(PipelineRun.environment == environment)
        runs = query.order_by(PipelineRun.created_at.desc()).limit(limit).all()

    table = Table(
        Column("ID"),
        Column("Environment"),
        Column("Operation"),
        Column("Status"),
        Column("Stage"),
        Column("Trigger"),
        Column("Created"),
        box=box.SIMPLE,
    )

    for run in runs:
        style = _STATUS_STYLES.get(run.status, "")
        table.add_row(
            run.id,
            run.environment,
            run.operation,
            f"[{style}]{run.status.value}[/{style}]" if style else run.status.value,
            run.stage or "",
            run.trigger,
            run.created_at.strftime("%Y-%m-%d %H:%M:%S") if run.created_at else "",
        )

    table.add_section()
    table.add_row(f"[bold]{len(runs)} items")
    terminal.print(table)


@management.command(
    name="show",
    help="Show one run.",
    epilog="""
    Examples:

      {cli_name} runs show run_0123456789ab
    """,
)
@click.argument("run_id", required=True)
def show_run(run_id: str):
    db = init_db(settings.database_url)

    with db.session() as session:
        run = session.get(PipelineRun, run_id)
        data = run.to_dict() if run is not None else None

    if data is None:
        terminal.error(f"Run {run_id} not found")

    terminal.print_json(data)
