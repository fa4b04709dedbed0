"""Prompt and UI utilities."""

from coremesh.core.utils.prompt.prompt import PromptHandler, console
from coremesh.core.utils.prompt.run_ui import EndpointUI, RunUI, show_run_summary

__all__ = ["console", "EndpointUI", "PromptHandler", "RunUI", "show_run_summary"]
