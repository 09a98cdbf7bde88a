"""
CLI output helpers.
"""

from __future__ import annotations

from typing import Any

from rich.console import Console

console = Console()
err_console = Console(stderr=True)


def flatten(data: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten nested settings into ``a__b`` keys, matching the env delimiter."""
    flat: dict[str, Any] = {}
    for key, value in data.items():
        name = f"{prefix}__{key}" if prefix else key
        if isinstance(value, dict):
            flat.update(flatten(value, name))
        else:
            flat[name] = value
    return flat


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if hasattr(value, "value"):
        return str(value.value)
    return str(value)
