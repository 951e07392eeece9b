"""
Progress reporting for long-running CLI commands.

A single module-level reporter shows a Rich status spinner and prints a
checkmark line for each finished step, so engine callers do not need to pass
console objects around.
"""

from typing import Optional

from rich.console import Console
from rich.status import Status


class ProgressReporter:
    """Status spinner that prints a checkmark for each finished step."""

    def __init__(self):
        self._status: Optional[Status] = None
        self._console: Optional[Console] = None
        self._current_step: Optional[str] = None

    def initialize(self, console: Console, initial_message: str = "Starting...") -> Status:
        """
        Bind the reporter to a console and create the status object.

        Returns:
            Status object that should be used as a context manager
        """
        self._console = console
        self._status = console.status(f"[dim]{initial_message}[/dim]")
        self._current_step = initial_message
        return self._status

    def _print_done(self, message: str) -> None:
        if self._console is not None:
            self._console.print(f"[green]✓[/green] [dim]{message}[/dim]")

    def step(self, message: str) -> None:
        """Mark the current step as completed and start a new one."""
        if self._status is None:
            return
        if self._current_step is not None:
            self._print_done(self._current_step)
        self._current_step = message
        self._status.update(f"[dim]{message}[/dim]")

    def complete_step(self, message: Optional[str] = None) -> None:
        """Mark the current step as completed without starting a new one."""
        if self._current_step is None:
            return
        self._print_done(message or self._current_step)
        self._current_step = None


# Global reporter instance
reporter = ProgressReporter()
