"""Console output for a supervised run."""

import psutil
from loguru import logger

from coremesh.core.exceptions import SystemProxyError
from coremesh.core.lib.supervisor import RunningProcess
from coremesh.core.lib.system_proxy import ProxyEndpoint, detect_endpoint
from coremesh.core.runner import RunController
from coremesh.core.utils.utils import format_bytes

from .prompt import PromptHandler


def _memory_of(proc: RunningProcess) -> str:
    try:
        return format_bytes(psutil.Process(proc.pid).memory_info().rss)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return "-"


class RunUI(PromptHandler):
    """Summary panel printed once a run reaches RUNNING."""

    title = "coremesh"

    def __init__(self, controller: RunController, endpoint: ProxyEndpoint | None = None) -> None:
        self.controller = controller
        self.endpoint = endpoint

    def _generate_table(self):
        table = self._new_table()
        for proc in self.controller.supervisor.started:
            state = f"exited ({proc.returncode})" if proc.done else f"pid {proc.pid}, {_memory_of(proc)}"
            table.add_row(f"{proc.spec.role.value} {proc.name}", state)
        if self.endpoint is not None:
            table.add_row("Edge endpoint", f"{self.endpoint.protocol}://{self.endpoint.address}")
        table.add_row("System proxy", "applied" if self.controller.proxy_changed else "unchanged")
        table.add_row("", "[dim]Press Ctrl+C to stop[/dim]")
        return table


class EndpointUI(PromptHandler):
    """Table describing the edge endpoint detected from a config."""

    title = "Edge proxy endpoint"

    def __init__(self, endpoint: ProxyEndpoint, config_path: str) -> None:
        self.endpoint = endpoint
        self.config_path = config_path

    def _generate_table(self):
        table = self._new_table()
        table.add_row("Config", self.config_path)
        table.add_row("Protocol", self.endpoint.protocol)
        table.add_row("Address", self.endpoint.address)
        return table


def show_run_summary(controller: RunController) -> None:
    """``on_running`` hook for the run controller."""
    endpoint = None
    try:
        endpoint = detect_endpoint(controller.edge.config_path)
    except SystemProxyError as e:
        logger.debug(f"No endpoint for the summary: {e}")
    RunUI(controller, endpoint).show()
