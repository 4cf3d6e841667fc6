"""Rich formatting utilities for displaying repository state and reports."""

from rich.table import Table

from testimpact.core.models import ImpactReport, RepositoryState
from testimpact.display.console import console


def display_repository_state(state: RepositoryState | None, root: str) -> None:
    """Display the baseline and the files changed since it.

    Args:
        state: Repository state, None when the repository has no commit
        root: Repository root shown in the header
    """
    console.print(f"\n[bold]Test impact state: {root}[/bold]")

    if state is None:
        console.print("[yellow]No commit found, every test will run[/yellow]")
        return

    if state.baseline_commit:
        console.print(f"Baseline commit: [cyan]{state.baseline_commit}[/cyan]")
    else:
        console.print("[yellow]No analyzed commit in the history, every test will run[/yellow]")

    if state.modified:
        _display_files_table("Modified since baseline", state.modified)
    if state.uncommitted:
        _display_files_table("Uncommitted", state.uncommitted)
        console.print("[yellow]Working tree is dirty, new reports will not be stored[/yellow]")
    elif state.modified is not None and not state.modified:
        console.print("[green]No changes since the baseline[/green]")


def _display_files_table(title: str, files: frozenset[str]) -> None:
    table = Table(title=title)
    table.add_column("File", style="magenta")

    for path in sorted(files):
        table.add_row(path)

    console.print(table)


def create_report_summary_table(report: ImpactReport) -> Table:
    """Create a table with one row per project of a decoded report."""
    table = Table(title="Stored Test Reports")
    table.add_column("Project", style="cyan")
    table.add_column("Tests", justify="right")
    table.add_column("Referenced Classes", justify="right")
    table.add_column("Digest", style="dim")

    projects = sorted(set(report.footprints) | set(report.digests))
    for project in projects:
        tests = report.footprints.get(project, {})
        classes = set().union(*tests.values()) if tests else set()
        table.add_row(project, str(len(tests)), str(len(classes)), report.digests.get(project, "-"))

    return table
