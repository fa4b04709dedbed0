"""Base prompt handling and UI components."""

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

console = Console()


class PromptHandler:
    """Base class for rendering property tables to the terminal."""

    title = ""
    border_style = "blue"

    def _new_table(self) -> Table:
        table = Table(show_header=False, box=None, padding=(0, 1))
        table.add_column("Property", style="cyan", no_wrap=True)
        table.add_column("Value", style="green", no_wrap=True)
        return table

    def _generate_table(self) -> Table:
        return self._new_table()

    def _generate_display(self) -> Panel:
        """Generate the main display panel."""
        return Panel(
            self._generate_table(),
            title=Text(self.title, style="bold cyan"),
            border_style=self.border_style,
            padding=(1, 2),
        )

    def show(self) -> None:
        console.print(self._generate_display())
