"""Command line interface for MediaShelf."""

from __future__ import annotations

import difflib
import threading
from pathlib import Path
from typing import Any, NoReturn, Optional

import click
import yaml
from click.core import ParameterSource
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from mediashelf.config import STAMP_PREFIX, ConfigError, ConfigManager, assign_nested, resolve_with_precedence
from mediashelf.config.models import MediaShelfConfig
from mediashelf.errors import MediaShelfError
from mediashelf.events import LifecycleEvent
from mediashelf.logs import configure_logging
from mediashelf.pipeline import MediaShelf
from mediashelf.state.models import FileStatus, TrackedItem

console = Console()


def _handle_cli_error(
    message: str,
    *,
    code: str,
    json_output: bool,
    details: Any | None = None,
    original: Exception | None = None,
) -> NoReturn:
    """Emit a standardized error and terminate the command.

    Raises:
        SystemExit: In JSON mode, after printing the error payload.
        click.ClickException: Otherwise.
    """
    if json_output:
        payload: dict[str, Any] = {"error": {"code": code, "message": message}}
        if details is not None:
            payload["error"]["details"] = details
        console.print_json(data=payload)
        raise SystemExit(1)

    if isinstance(original, click.ClickException):
        raise original

    raise click.ClickException(message) from original


def _emit_message(message: Any, *, quiet: bool, mode: str = "detail") -> None:
    if quiet and mode != "error":
        return
    console.print(message)


def _load_config(json_output: bool) -> MediaShelfConfig:
    try:
        manager = ConfigManager()
        manager.ensure_exists()
        return manager.load()
    except ConfigError as exc:
        _handle_cli_error(str(exc), code="config_error", json_output=json_output, original=exc)


def _open_shelf(config: MediaShelfConfig, json_output: bool, **kwargs: Any) -> MediaShelf:
    try:
        return MediaShelf(config, **kwargs)
    except MediaShelfError as exc:
        _handle_cli_error(str(exc), code="state_error", json_output=json_output, original=exc)


def _item_payload(item: TrackedItem) -> dict[str, Any]:
    return item.model_dump(
        mode="json",
        include={
            "fingerprint",
            "source_path",
            "display_name",
            "status",
            "suggested_category",
            "category",
            "confidence",
            "alternative_categories",
            "decision",
            "target_path",
            "moved_to_path",
            "error_kind",
            "error_detail",
            "retry_count",
        },
    )


def _resolve_quiet(ctx: click.Context, quiet: bool, config: MediaShelfConfig) -> bool:
    if ctx.get_parameter_source("quiet") == ParameterSource.COMMANDLINE:
        return quiet
    return config.cli.quiet_default


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(package_name="mediashelf")
@click.option("-v", "--verbose", is_flag=True, help="Log debug output to the console.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """MediaShelf files new media into a category-organized library."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


@cli.command()
@click.argument("roots", nargs=-1, type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--once", is_flag=True, help="Process current contents once and exit.")
@click.option("--json", "json_output", is_flag=True, help="Emit JSON instead of text.")
@click.option("--quiet", is_flag=True, help="Suppress non-error output.")
@click.pass_context
def watch(ctx: click.Context, roots: tuple[Path, ...], once: bool, json_output: bool, quiet: bool) -> None:
    """Watch ROOTS (or the configured roots) and organize new files."""
    config = _load_config(json_output)
    quiet_enabled = _resolve_quiet(ctx, quiet, config)
    if json_output and quiet_enabled and ctx.get_parameter_source("quiet") == ParameterSource.COMMANDLINE:
        raise click.ClickException("--json cannot be combined with --quiet.")

    root_paths = [root.expanduser().resolve() for root in roots] or list(config.discovery.watch_roots)
    if not root_paths:
        raise click.ClickException(
            "Provide at least one ROOT or set discovery.watch_roots in the configuration."
        )

    configure_logging(
        config.logging,
        config.state.directory,
        console=Console(stderr=True, quiet=quiet_enabled or json_output),
        verbose=bool(ctx.obj and ctx.obj.get("verbose")),
    )
    shelf = _open_shelf(config, json_output, roots=root_paths)

    if once:
        try:
            summary = shelf.scan_once()
        except MediaShelfError as exc:
            _handle_cli_error(str(exc), code="pipeline_error", json_output=json_output, original=exc)
            return
        finally:
            shelf.events.close()
        if json_output:
            console.print_json(
                data={**summary, "pending": [_item_payload(item) for item in shelf.items(FileStatus.CLASSIFIED)]}
            )
            return
        counts = ", ".join(f"{name}={count}" for name, count in summary["items"].items() if count)
        _emit_message(
            f"[green]Watch summary: submitted={summary['submitted']}, {counts or 'no items'}.[/green]",
            quiet=quiet_enabled,
            mode="summary",
        )
        if not summary["finished"]:
            _emit_message("[yellow]Some items were still in progress at exit.[/yellow]", quiet=quiet_enabled)
        return

    if not quiet_enabled:
        shelf.subscribe(lambda event: _emit_event(event, json_output=json_output))

    stop = threading.Event()
    try:
        shelf.start()
    except MediaShelfError as exc:
        _handle_cli_error(str(exc), code="pipeline_error", json_output=json_output, original=exc)
        return
    if not json_output:
        monitored = ", ".join(str(path) for path in root_paths)
        _emit_message(f"[cyan]Watching {monitored}. Press Ctrl+C to stop.[/cyan]", quiet=quiet_enabled)
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        if not json_output:
            _emit_message("[yellow]Stopping; unfinished items resume next time.[/yellow]", quiet=quiet_enabled)
    finally:
        shelf.stop()


def _emit_event(event: LifecycleEvent, *, json_output: bool) -> None:
    if json_output:
        console.print_json(data=event.model_dump(mode="json"))
        return
    label = event.fingerprint[:12] if event.fingerprint else event.path
    detail = f" {event.detail}" if event.detail else ""
    console.print(f"[bold]{event.kind.value}[/bold] {label}{detail}")


@cli.command()
@click.option(
    "--status",
    "statuses",
    multiple=True,
    type=click.Choice([status.value for status in FileStatus]),
    help="Only list items in this status (repeatable).",
)
@click.option("--limit", type=int, help="Maximum number of items to list.")
@click.option("--json", "json_output", is_flag=True, help="Emit JSON instead of a table.")
def status(statuses: tuple[str, ...], limit: Optional[int], json_output: bool) -> None:
    """List tracked items and counts per status."""
    config = _load_config(json_output)
    shelf = _open_shelf(config, json_output)
    items = shelf.items(*(FileStatus(value) for value in statuses))
    effective_limit = limit if limit is not None else config.cli.status_limit
    shown = items[-effective_limit:] if effective_limit > 0 else items
    counts = shelf.repository.stats()

    if json_output:
        console.print_json(data={"counts": counts, "items": [_item_payload(item) for item in shown]})
        return

    table = Table(title="Tracked items")
    table.add_column("Fingerprint", style="cyan", no_wrap=True)
    table.add_column("File")
    table.add_column("Status")
    table.add_column("Category")
    table.add_column("Confidence", justify="right")
    table.add_column("Error")
    for item in shown:
        category = item.category or (f"{item.suggested_category}?" if item.suggested_category else "")
        table.add_row(
            item.fingerprint[:12],
            item.display_name,
            item.status.value,
            category,
            f"{item.confidence:.2f}" if item.classified_at else "",
            item.error_detail or "",
        )
    console.print(table)
    summary = ", ".join(f"{name}={count}" for name, count in counts.items() if count)
    console.print(f"[green]{len(items)} item(s): {summary or 'none'}.[/green]")


@cli.command()
@click.argument("fingerprint")
@click.option("--json", "json_output", is_flag=True, help="Emit JSON instead of a table.")
def history(fingerprint: str, json_output: bool) -> None:
    """Show the recorded lifecycle events of one item."""
    config = _load_config(json_output)
    shelf = _open_shelf(config, json_output)
    full = _lookup(shelf, fingerprint, json_output)
    try:
        events = shelf.item_history(full)
    finally:
        shelf.events.close()
    if json_output:
        console.print_json(data={"fingerprint": full, "events": [event.model_dump(mode="json") for event in events]})
        return
    if not events:
        console.print(f"[yellow]No history recorded for {full[:12]}.[/yellow]")
        return
    table = Table(title=f"History of {full[:12]}")
    table.add_column("When", no_wrap=True)
    table.add_column("Event")
    table.add_column("Detail")
    for event in events:
        table.add_row(event.timestamp.isoformat(timespec="seconds"), event.kind.value, event.detail or "")
    console.print(table)


def _lookup(shelf: MediaShelf, prefix: str, json_output: bool) -> str:
    """Expand a fingerprint prefix to the full fingerprint."""
    matches = [item.fingerprint for item in shelf.items() if item.fingerprint.startswith(prefix)]
    if len(matches) == 1:
        return matches[0]
    message = f"No tracked item matches {prefix}" if not matches else f"{prefix} is ambiguous"
    _handle_cli_error(message, code="not_found" if not matches else "ambiguous", json_output=json_output)


def _run_action(action: str, fingerprint: str, json_output: bool, *args: str) -> None:
    config = _load_config(json_output)
    shelf = _open_shelf(config, json_output)
    full = _lookup(shelf, fingerprint, json_output)
    try:
        item = getattr(shelf, action)(full, *args)
    except MediaShelfError as exc:
        code = getattr(getattr(exc, "kind", None), "value", "error")
        _handle_cli_error(str(exc), code=code, json_output=json_output, original=exc)
        return
    finally:
        shelf.events.close()
    if json_output:
        console.print_json(data={"action": action, "item": _item_payload(item)})
        return
    console.print(f"[green]{action}: {item.display_name} is now {item.status.value}.[/green]")
    if item.error_detail and item.status is not FileStatus.MOVED:
        console.print(f"[yellow]{item.error_detail}[/yellow]")


@cli.command()
@click.argument("fingerprint")
@click.argument("category")
@click.option("--json", "json_output", is_flag=True, help="Emit JSON instead of text.")
def confirm(fingerprint: str, category: str, json_output: bool) -> None:
    """Confirm CATEGORY for the item FINGERPRINT (a unique prefix is enough)."""
    _run_action("confirm", fingerprint, json_output, category)


@cli.command()
@click.argument("fingerprint")
@click.option("--json", "json_output", is_flag=True, help="Emit JSON instead of text.")
def ignore(fingerprint: str, json_output: bool) -> None:
    """Stop processing FINGERPRINT."""
    _run_action("ignore", fingerprint, json_output)


@cli.command()
@click.argument("fingerprint")
@click.option("--json", "json_output", is_flag=True, help="Emit JSON instead of text.")
def reset(fingerprint: str, json_output: bool) -> None:
    """Reset FINGERPRINT to new so it is processed again."""
    _run_action("reset", fingerprint, json_output)


@cli.command()
@click.argument("fingerprint")
@click.option("--json", "json_output", is_flag=True, help="Emit JSON instead of text.")
def reprocess(fingerprint: str, json_output: bool) -> None:
    """Retry the failed item FINGERPRINT with a fresh retry budget."""
    _run_action("reprocess", fingerprint, json_output)


@cli.command()
@click.option("--json", "json_output", is_flag=True, help="Emit JSON instead of text.")
def recover(json_output: bool) -> None:
    """Finish or roll back moves interrupted by a crash."""
    config = _load_config(json_output)
    shelf = _open_shelf(config, json_output)
    try:
        outcomes = shelf.recover()
    except MediaShelfError as exc:
        _handle_cli_error(str(exc), code="recovery_error", json_output=json_output, original=exc)
        return
    finally:
        shelf.events.close()
    if json_output:
        console.print_json(
            data={
                "recovered": [
                    {
                        "fingerprint": outcome.entry.fingerprint,
                        "action": outcome.action,
                        "phase": outcome.entry.phase.value,
                        "to_path": str(outcome.entry.to_path),
                    }
                    for outcome in outcomes
                ]
            }
        )
        return
    if not outcomes:
        console.print("[green]No interrupted moves found.[/green]")
        return
    for outcome in outcomes:
        console.print(f"{outcome.entry.fingerprint[:12]}: {outcome.action} ({outcome.detail})")


@cli.group()
def config() -> None:
    """Manage MediaShelf configuration files and overrides."""


@config.command("view")
@click.option("--no-env", is_flag=True, help="Ignore environment overrides when displaying output.")
def config_view(no_env: bool) -> None:
    """Display the effective configuration after applying precedence rules."""
    manager = ConfigManager()
    try:
        manager.ensure_exists()
        loaded = manager.load(include_env=not no_env)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    yaml_text = yaml.safe_dump(loaded.model_dump(mode="json"), sort_keys=False)
    console.print(Syntax(yaml_text, "yaml", word_wrap=True))


@config.command("set")
@click.argument("key")
@click.option("--value", required=True, help="Value to assign to KEY.")
def config_set(key: str, value: str) -> None:
    """Persist a configuration value expressed as a dotted KEY."""
    manager = ConfigManager()
    manager.ensure_exists()

    before = manager.read_text().splitlines()
    segments = [segment.strip() for segment in key.split(".") if segment.strip()]
    if not segments:
        raise click.ClickException(
            "KEY must specify a dotted path such as 'organization.conflict_resolution'."
        )

    try:
        parsed_value = yaml.safe_load(value)
    except yaml.YAMLError as exc:
        raise click.ClickException(f"Unable to parse value: {exc}") from exc

    file_data = manager.load_file_overrides()
    assign_nested(file_data, segments, parsed_value)

    try:
        resolve_with_precedence(defaults=MediaShelfConfig(), file_overrides=file_data)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    manager.save(file_data)
    after = manager.read_text().splitlines()

    diff = list(
        difflib.unified_diff(
            [line for line in before if not line.startswith(STAMP_PREFIX)],
            [line for line in after if not line.startswith(STAMP_PREFIX)],
            fromfile="config.yaml (before)",
            tofile="config.yaml (after)",
            lineterm="",
        )
    )
    if not diff:
        console.print("[yellow]No changes applied; value already up to date.[/yellow]")
        return
    console.print(Syntax("\n".join(diff), "diff", word_wrap=False))
    console.print(f"[green]Updated {'.'.join(segments)}.[/green]")


def main() -> None:
    """Invoke the Click CLI as the console script entry point."""
    cli()


if __name__ == "__main__":
    main()
