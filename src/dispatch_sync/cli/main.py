"""dispatch-sync CLI main entry point."""

from __future__ import annotations

import logging
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.table import Table

from dispatch_sync.audit.history import AuditHistory, RestoreError
from dispatch_sync.audit.models import AuditableEntity
from dispatch_sync.audit.summary import summarize
from dispatch_sync.cli._helpers import (
    load_config,
    open_engine,
    open_remote,
    open_store,
    output_result,
    run_async,
)
from dispatch_sync.core.records import User
from dispatch_sync.core.sync_state import EntitySyncState
from dispatch_sync.dto.registry import UPLOAD_ORDER
from dispatch_sync.sync.batch_result import CycleReport
from dispatch_sync.sync.entity_state import EntityStateTracker

app = typer.Typer(
    name="dispatch-sync",
    help="dispatch-sync - local-first sync engine for Dispatch records",
    no_args_is_help=True,
)

config_app = typer.Typer(help="Configuration management")
app.add_typer(config_app, name="config")

console = Console()

TokenOption = Annotated[
    str | None,
    typer.Option("--token", envvar="DISPATCH_SYNC_TOKEN", help="Access token of the signed-in user"),
]
UserOption = Annotated[
    str | None,
    typer.Option("--user", envvar="DISPATCH_SYNC_USER", help="Id of the signed-in user"),
]
JsonOption = Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")]


@app.callback()
def _configure(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")] = False,
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _report_dict(report: CycleReport) -> dict[str, Any]:
    return {
        "full": report.full,
        "succeeded": report.succeeded,
        "uploaded": report.uploaded_count,
        "downloaded": report.downloaded_count,
        "failed": len(report.failed_records),
        "orphans_removed": sum(report.orphans_removed.values()),
        "duration": round(report.duration or 0.0, 3),
        "error": report.error.user_message if report.error else None,
        "failures": [
            {"table": table, "id": record_id, "kind": error.kind.value, "message": error.message}
            for table, record_id, error in report.failed_records
        ],
    }


def _run_sync(token: str | None, user: str | None, *, full: bool) -> dict[str, Any]:
    async def _sync() -> dict[str, Any]:
        engine = await open_engine(load_config(), token, user)
        try:
            report = await (engine.full_sync() if full else engine.sync())
        finally:
            await engine.shutdown()
        return _report_dict(report)

    return run_async(_sync())


def _print_report(result: dict[str, Any]) -> None:
    if result["error"]:
        typer.secho(f"Sync failed: {result['error']}", fg=typer.colors.RED)
    else:
        typer.secho("Sync complete", fg=typer.colors.GREEN)
    typer.echo(f"Uploaded: {result['uploaded']}")
    typer.echo(f"Downloaded: {result['downloaded']}")
    if result["orphans_removed"]:
        typer.echo(f"Orphans removed: {result['orphans_removed']}")
    for failure in result["failures"]:
        typer.secho(
            f"  {failure['table']}/{failure['id']}: {failure['kind']} ({failure['message']})",
            fg=typer.colors.YELLOW,
        )


@app.command()
def sync(token: TokenOption = None, user: UserOption = None, json_output: JsonOption = False) -> None:
    """Upload local changes, then download remote changes.

    Examples:
        dispatch-sync sync
        dispatch-sync sync --json
    """
    result = _run_sync(token, user, full=False)
    if json_output:
        output_result(result, True)
    else:
        _print_report(result)
    if result["error"]:
        raise typer.Exit(1)


@app.command("full-sync")
def full_sync(
    token: TokenOption = None, user: UserOption = None, json_output: JsonOption = False
) -> None:
    """Re-download every table and remove records deleted remotely."""
    result = _run_sync(token, user, full=True)
    if json_output:
        output_result(result, True)
    else:
        _print_report(result)
    if result["error"]:
        raise typer.Exit(1)


@app.command("reset-failed")
def reset_failed(
    table: Annotated[
        list[str] | None, typer.Option("--table", "-t", help="Only reset this table")
    ] = None,
) -> None:
    """Return failed records to pending so the next sync retries them."""
    unknown = [name for name in table or [] if name not in UPLOAD_ORDER]
    if unknown:
        typer.secho(f"Unknown table(s): {', '.join(unknown)}", fg=typer.colors.RED)
        raise typer.Exit(1)

    async def _reset() -> int:
        store = await open_store(load_config())
        return await EntityStateTracker(store).reset_failed(table or None)

    count = run_async(_reset())
    typer.echo(f"Reset {count} failed record(s)")


@app.command()
def status(json_output: JsonOption = False) -> None:
    """Show record counts per sync state and any failed records."""

    async def _status() -> dict[str, Any]:
        store = await open_store(load_config())
        counts = {}
        failures = []
        for name in UPLOAD_ORDER:
            by_state = await store.count_by_state(name)
            counts[name] = {state.value: count for state, count in by_state.items()}
            for record in await store.fetch(name, states=(EntitySyncState.FAILED,)):
                failures.append(
                    {
                        "table": name,
                        "id": record.id,
                        "retries": record.sync.retry_count,
                        "error": record.sync.last_error,
                    }
                )
        return {"tables": counts, "failed": failures}

    result = run_async(_status())
    if json_output:
        output_result(result, True)
        return

    table = Table(title="Sync state")
    table.add_column("Table", style="cyan")
    for state in EntitySyncState:
        table.add_column(state.value.capitalize(), justify="right")
    for name, by_state in result["tables"].items():
        table.add_row(name, *(str(by_state[state.value]) for state in EntitySyncState))
    console.print(table)

    for failure in result["failed"]:
        console.print(
            f"[red]failed[/red] {failure['table']}/{failure['id']} "
            f"after {failure['retries']} attempt(s): {failure['error']}"
        )


@app.command()
def history(
    entity: Annotated[str, typer.Argument(help="Entity type, e.g. task, listing, activity")],
    entity_id: Annotated[str, typer.Argument(help="Entity id")],
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum entries")] = 50,
    token: TokenOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show the change history of one entity.

    Examples:
        dispatch-sync history task 5f0c...
        dispatch-sync history listing 9a1b... --limit 10
    """
    try:
        entity_type = AuditableEntity(entity)
    except ValueError:
        typer.secho(f"Unknown entity type: {entity}", fg=typer.colors.RED)
        raise typer.Exit(1) from None

    async def _history() -> list[dict[str, Any]]:
        config = load_config()
        store = await open_store(config)
        remote = await open_remote(config, token)
        entries = await AuditHistory(remote).fetch_combined_history(entity_type, entity_id, limit)

        async def name_of(user_id: str | None) -> str:
            if user_id is None:
                return "System"
            user = await store.get(User.table, user_id)
            return user.name if isinstance(user, User) and user.name else "Someone"

        names = {entry.changed_by: await name_of(entry.changed_by) for entry in entries}

        def lookup(user_id: str) -> str | None:
            return names.get(user_id)

        return [
            {
                "changed_at": entry.changed_at.isoformat(),
                "action": entry.action.value,
                "summary": summarize(entry, names[entry.changed_by], user_lookup=lookup),
            }
            for entry in entries
        ]

    rows = run_async(_history())
    if json_output:
        output_result({"entries": rows}, True)
        return
    if not rows:
        typer.echo("No history")
        return
    for row in rows:
        typer.secho(f"{row['changed_at']}  ", fg=typer.colors.BRIGHT_BLACK, nl=False)
        typer.echo(row["summary"])


@app.command()
def restore(
    entity: Annotated[str, typer.Argument(help="Entity type, e.g. task, listing")],
    entity_id: Annotated[str, typer.Argument(help="Entity id")],
    token: TokenOption = None,
) -> None:
    """Restore a deleted entity."""
    try:
        entity_type = AuditableEntity(entity)
    except ValueError:
        typer.secho(f"Unknown entity type: {entity}", fg=typer.colors.RED)
        raise typer.Exit(1) from None

    async def _restore() -> str:
        remote = await open_remote(load_config(), token)
        return await AuditHistory(remote).restore_entity(entity_type, entity_id)

    try:
        restored = run_async(_restore())
    except RestoreError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(1) from None
    typer.secho(f"Restored {entity} {restored}", fg=typer.colors.GREEN)


@config_app.command("show")
def config_show(json_output: JsonOption = False) -> None:
    """Show the effective configuration (the anon key is masked)."""
    config = load_config()
    data = config.to_dict()
    if data["remote"].get("anon_key"):
        data["remote"]["anon_key"] = data["remote"]["anon_key"][:6] + "..."
    if json_output:
        output_result(data, True)
        return
    typer.echo(f"Config: {config.config_path}")
    typer.echo(f"Database: {config.db_path}")
    for section, values in data.items():
        if not isinstance(values, dict):
            continue
        typer.secho(f"\n[{section}]", fg=typer.colors.CYAN, bold=True)
        for key, value in values.items():
            typer.echo(f"  {key} = {value}")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
