"""Utility functions and helpers."""

from coremesh.core.utils.utils import format_bytes, format_command, replace_config_placeholder

__all__ = ["format_bytes", "format_command", "replace_config_placeholder"]
