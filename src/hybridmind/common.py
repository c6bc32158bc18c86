"""Terminal helpers shared by the API launcher and the CLI client."""

from enum import Enum
from typing import (
    Any,
    Mapping,
)


class AnsiColors(Enum):
    """
    ANSI color codes for terminal output.
    """

    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[33m"
    BLUE = "\033[94m"
    GREY = "\033[90m"


def colored_print(text: str, color: AnsiColors, *args: Any, **kwargs: Any) -> None:
    """
    Print text in color.

    Args:
        text: The text to print
        color: The color to use (AnsiColors enum)
        args: Additional positional arguments for print
        kwargs: Additional keyword arguments for print
    """
    print(f"{color.value}{text}\033[0m", *args, **kwargs)  # ANSI reset at the end


def format_usage(usage: Mapping[str, Any] | None) -> str:
    """One-line token summary, e.g. ``120 in / 340 out (460 total)``."""
    if not usage:
        return "no usage reported"
    return (
        f"{usage.get('promptTokens', 0)} in / {usage.get('completionTokens', 0)} out "
        f"({usage.get('totalTokens', 0)} total)"
    )
