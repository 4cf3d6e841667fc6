"""Display and formatting utilities for testimpact."""

from testimpact.display.formatters import create_report_summary_table, display_repository_state

__all__ = [
    "create_report_summary_table",
    "display_repository_state",
]
