from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, NoReturn

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from loyalty import services
from loyalty.db import init_db, session_scope
from loyalty.errors import MaintenanceBusy, OperationFailed, ValidationError
from loyalty.gateway import SqlEntityStore

app = typer.Typer(help="Loyalty rating maintenance: diagnose, migrate and repair rating targets")
console = Console()


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.WARNING
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(levelname)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=False, show_path=False, markup=True)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    db: Path | None = typer.Option(None, "--db", help="SQLite database file (defaults to the configured path)."),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    ctx.obj = {"json_output": json_output}
    _configure_logging(verbose=verbose, json_output=json_output)
    init_db(db)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _render_table(title: str, columns: list[str], rows: list[list[Any]], *, border_style: str = "cyan") -> None:
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    for column in columns:
        table.add_column(column)
    for row in rows:
        table.add_row(*("-" if v is None else str(v) for v in row))
    console.print(Panel(table, title=title, border_style=border_style))


def _emit(ctx: typer.Context, payload: Any) -> bool:
    """Print JSON and return True when --json is set; otherwise leave rendering to the caller."""
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return True
    return False


def _fail(ctx: typer.Context, payload: dict) -> NoReturn:
    if not _emit(ctx, payload):
        console.print(f"[bold red]{payload['error']}[/bold red]: {payload.get('details', '')}")
        partial = payload.get("partial")
        if partial:
            counts = [[k, v] for k, v in partial.items() if isinstance(v, int)]
            _render_table("Completed before failure", ["Count", "Value"], counts, border_style="red")
    raise typer.Exit(code=1)


@app.command("diagnose")
def diagnose_command(
    ctx: typer.Context,
    group: str | None = typer.Option(None, "--group", help="Limit the report to one group id."),
) -> None:
    """Classify every rating as valid, orphaned or placeholder-bound."""
    with session_scope() as session:
        report = services.diagnose(SqlEntityStore(session), group)
    if _emit(ctx, report):
        return
    _render_table("Rating integrity", ["Count", "Value"], [[k, v] for k, v in report["summary"].items()])
    for key, title in (
        ("orphanedRatingSamples", "Orphaned ratings"),
        ("ratingsPointingToPlaceholdersSamples", "Ratings pointing to placeholders"),
    ):
        samples = report[key]
        if samples:
            _render_table(
                title, ["Rating", "Group", "Target", "Metric", "Value"],
                [[r["id"], r["groupId"], r["targetObjectId"] or r["targetMemberId"], r["metricId"], r["value"]]
                 for r in samples],
                border_style="yellow",
            )
    console.print(report["message"])


@app.command("migrate")
def migrate_command(
    ctx: typer.Context,
    preview: bool = typer.Option(False, "--preview", help="Only show what would be migrated."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    """Convert placeholder members into objects. Run once per placeholder cohort."""
    with session_scope() as session:
        store = SqlEntityStore(session)
        summary = services.migration_preview(store)
        if preview:
            if not _emit(ctx, summary):
                _render_table(
                    f"Placeholders to migrate ({summary['totalPlaceholderMembers']})",
                    ["Group", "Count", "Names"],
                    [[gid, g["count"], ", ".join(g["items"])] for gid, g in summary["byGroup"].items()],
                )
            return

        if not yes and not typer.confirm(
            f"Migrate {summary['totalPlaceholderMembers']} placeholder members? "
            "Re-running later creates duplicate objects."
        ):
            raise typer.Abort()

        try:
            result = services.run_migration(store)
        except OperationFailed as exc:
            _fail(ctx, services.failure_payload(exc))
        except MaintenanceBusy as exc:
            _fail(ctx, {"error": "Maintenance in progress", "details": str(exc)})

    if _emit(ctx, result):
        return
    console.print(f"[green]✓[/green] {result['message']}")
    if result["migratedItems"]:
        _render_table(
            "Migrated placeholders", ["Name", "Group", "Old id", "New id"],
            [[i["name"], i["groupId"], i["oldId"], i["newId"]] for i in result["migratedItems"]],
        )


@app.command("repair")
def repair_command(ctx: typer.Context) -> None:
    """Re-target ratings by matching placeholder names to objects in the same group."""
    with session_scope() as session:
        try:
            result = services.run_repair(SqlEntityStore(session))
        except OperationFailed as exc:
            _fail(ctx, services.failure_payload(exc))
        except MaintenanceBusy as exc:
            _fail(ctx, {"error": "Maintenance in progress", "details": str(exc)})

    if _emit(ctx, result):
        return
    console.print(f"[green]✓[/green] {result['message']}")
    if result["fixes"]:
        _render_table(
            "Fixed", ["Rating", "Old target", "New target", "Matched name"],
            [[f["ratingId"], f["oldTargetId"], f["newTargetId"], f["matchedByName"]] for f in result["fixes"]],
        )
    if result["unfixable"]:
        _render_table(
            "Unfixable", ["Rating", "Target", "Reason"],
            [[u["ratingId"], u["targetId"], u["reason"]] for u in result["unfixable"]],
            border_style="yellow",
        )


@app.command("scores")
def scores_command(
    ctx: typer.Context,
    group: str = typer.Argument(..., help="Group id to aggregate."),
    captain: str = typer.Option("", "--captain", help="Identity of the group captain."),
) -> None:
    """Aggregated score per object and metric (one decimal in the table)."""
    try:
        with session_scope() as session:
            store = SqlEntityStore(session)
            if _wants_json(ctx):
                _emit(ctx, services.group_scores(store, group, captain))
                return
            grid = services.score_grid(store, group, captain)
    except ValidationError as exc:
        raise typer.BadParameter(str(exc)) from exc

    _render_table(
        f"Scores for {group}", ["Object", *grid["metrics"]],
        [[row["name"], *row["cells"]] for row in grid["rows"]],
    )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
