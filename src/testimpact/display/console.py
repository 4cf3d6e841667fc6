"""Rich consoles shared by the CLI: results on stdout, log records on stderr."""

from rich.console import Console

console = Console()
err_console = Console(stderr=True)
