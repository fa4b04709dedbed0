"""Common utility functions."""

import shlex
from collections.abc import Sequence
from typing import Final

CONFIG_PLACEHOLDER: Final = "{{config}}"

# Size constants
BYTES_PER_KB: Final = 1024
BYTES_PER_MB: Final = BYTES_PER_KB * 1024
BYTES_PER_GB: Final = BYTES_PER_MB * 1024

SIZE_UNITS: Final = [
    ("B", 1),
    ("KB", BYTES_PER_KB),
    ("MB", BYTES_PER_MB),
    ("GB", BYTES_PER_GB),
]


def replace_config_placeholder(args: Sequence[str], config_path: str) -> list[str]:
    """Substitute the config placeholder in an argument template.

    Args:
        args: Argument template, possibly containing ``{{config}}``
        config_path: Path substituted for every placeholder

    Returns:
        list[str]: Expanded arguments, or ``[config_path]`` for an empty template
    """
    out = [arg.replace(CONFIG_PLACEHOLDER, config_path) for arg in args]
    if not out:
        return [config_path]
    return out


def format_command(argv: Sequence[str]) -> str:
    """Render an argv list as a shell-like string for log lines."""
    return shlex.join(argv)


def format_bytes(bytes_: float) -> str:
    """Format bytes into human readable format.

    Args:
        bytes_: Number of bytes to format

    Returns:
        str: Formatted string with appropriate unit
    """
    for unit, divisor in SIZE_UNITS:
        if bytes_ < divisor * BYTES_PER_KB:
            return f"{bytes_ / divisor:.1f} {unit}"
    return f"{bytes_ / BYTES_PER_GB:.1f} GB"
