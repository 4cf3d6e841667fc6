"""Main CLI dispatcher for testimpact."""

import json
import logging
import sys
import threading
from pathlib import Path

import click
from rich.logging import RichHandler

from testimpact.core import report_codec
from testimpact.core.fingerprint import digest_files
from testimpact.core.git_storage import StorageError
from testimpact.core.registry import AnalyzerRegistry, ExecutionContext
from testimpact.core.settings import settings
from testimpact.display.console import console, err_console
from testimpact.display.formatters import create_report_summary_table, display_repository_state

root_option = click.option(
    "--root",
    "root",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Directory inside the git repository (default: current directory)",
)


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose or settings.debug_mode else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False, rich_tracebacks=True)],
        force=True,
    )


def load_context(root: Path | None, port: int | None = None) -> ExecutionContext:
    try:
        return ExecutionContext.for_directory(root, port=port)
    except ValueError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """testimpact - skip tests whose footprint did not change since the last analyzed commit."""
    configure_logging(verbose)


@cli.command()
@root_option
@click.option("--port", type=int, default=None, help="Port to listen on (default: settings, 0 = any free port)")
def serve(root: Path | None, port: int | None) -> None:
    """Run a coordination server for a repository until interrupted."""
    context = load_context(root)

    with AnalyzerRegistry() as registry:
        try:
            server = registry.get_or_create(context.repository_root, port=port)
        except OSError as e:
            raise click.ClickException(f"Unable to start the server: {e}") from e

        console.print(f"[green]Serving test impact data for {context.repository_root}[/green]")
        console.print(f"[bold]URL:[/bold] {server.url}")
        console.print(f"[bold]Port:[/bold] {server.port}")
        console.print("[dim]Press Ctrl+C to stop[/dim]")

        try:
            threading.Event().wait()
        except KeyboardInterrupt:
            console.print("\n[yellow]Stopping server[/yellow]")


@cli.command()
@root_option
def status(root: Path | None) -> None:
    """Show the baseline commit and the files changed since it."""
    context = load_context(root)
    try:
        state = context.storage.get_state()
    except StorageError as e:
        raise click.ClickException(str(e)) from e

    display_repository_state(state, str(context.repository_root))

    if state is not None and state.notes:
        try:
            report = report_codec.decode(state.notes)
        except report_codec.ReportFormatError as e:
            console.print(f"[red]Stored report is corrupt: {e}[/red]")
            sys.exit(1)
        console.print(create_report_summary_table(report))


@cli.command("show-reports")
@root_option
@click.option("--file", "output_file", type=click.Path(dir_okay=False, path_type=Path), help="Write to a file")
def show_reports(root: Path | None, output_file: Path | None) -> None:
    """Pretty-print the report attached to HEAD."""
    context = load_context(root)
    try:
        notes = context.storage.read_notes()
    except StorageError as e:
        raise click.ClickException(str(e)) from e

    if not notes.strip():
        console.print("[yellow]No test report attached to HEAD[/yellow]")
        return

    text = notes.strip()
    try:
        if not text.startswith("{"):
            text = report_codec.uncompress(text)
        pretty = json.dumps(json.loads(text), indent=2, ensure_ascii=False)
    except (report_codec.ReportFormatError, json.JSONDecodeError) as e:
        raise click.ClickException(f"Stored report is corrupt: {e}") from e

    if output_file is not None:
        output_file.write_text(pretty + "\n", encoding="utf-8")
        console.print(f"[green]Report written to {output_file}[/green]")
    else:
        click.echo(pretty)


@cli.command("clear-reports")
@root_option
@click.confirmation_option(prompt="Remove the test report attached to HEAD?")
def clear_reports(root: Path | None) -> None:
    """Remove the test report attached to HEAD."""
    context = load_context(root)
    try:
        context.storage.remove_notes()
    except StorageError as e:
        raise click.ClickException(str(e)) from e
    console.print(f"[green]Removed test report from HEAD in {settings.notes_ref}[/green]")


@cli.command()
@click.argument("project")
@root_option
@click.option("--port", type=int, required=True, help="Port of a running coordination server")
@click.option("--digest", default=None, help="Dependency fingerprint of the project")
@click.option(
    "--dependencies",
    "dependency_files",
    multiple=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Dependency manifest(s) to fingerprint instead of --digest",
)
def disabled(
    project: str, root: Path | None, port: int, digest: str | None, dependency_files: tuple[Path, ...]
) -> None:
    """List the tests of PROJECT that a running server would skip."""
    if digest is None and not dependency_files:
        raise click.UsageError("Either --digest or --dependencies is required")
    if digest is None:
        digest = digest_files(dependency_files)

    context = load_context(root, port=port)
    try:
        tests = context.client.disabled_tests(project, digest)
    finally:
        context.client.close()

    for test in sorted(tests):
        click.echo(test)


if __name__ == "__main__":
    cli()
