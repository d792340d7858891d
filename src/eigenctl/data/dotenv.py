"""Read and write ``.env`` files stored next to instance and stack state."""
from __future__ import annotations

from collections.abc import Mapping

_HEADER = "# Managed by eigenctl. Manual edits may be overwritten.\n"


def render_env(values: Mapping[str, str]) -> str:
    """Render *values* as ``KEY=VALUE`` lines sorted by key."""
    lines = [_HEADER]
    for key in sorted(values):
        name = key.strip()
        if not name or "=" in name or "\n" in name:
            raise ValueError(f"Invalid environment variable name: {key!r}")
        value = str(values[key])
        if "\n" in value:
            raise ValueError(f"Environment value for {name} must be a single line")
        lines.append(f"{name}={value}\n")
    return "".join(lines)


def parse_env(text: str) -> dict[str, str]:
    """Parse ``KEY=VALUE`` lines, ignoring blanks and comments."""
    values: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
            value = value[1:-1]
        values[key.strip()] = value
    return values


__all__ = ["parse_env", "render_env"]
