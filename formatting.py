from typing import Any, Optional, Union

SIZE_UNITS = ["B", "KB", "MB", "GB", "TB"]
SIZE_BASE = 1000

Number = Union[int, float]


def format_size(num_bytes: Optional[Number]) -> Optional[str]:
    """Human readable size using decimal units, e.g. 1500 -> '1.5 KB'.

    Anything past the last unit stays in TB ('1500 TB').
    """
    if num_bytes is None:
        return None
    if num_bytes == 0:
        return "0 B"

    value = float(num_bytes)
    unit = 0
    while abs(value) >= SIZE_BASE and unit < len(SIZE_UNITS) - 1:
        value /= SIZE_BASE
        unit += 1

    text = f"{round(value, 2):.2f}".rstrip("0").rstrip(".")
    return f"{text} {SIZE_UNITS[unit]}"


def _dimension(part: str) -> float:
    try:
        return float(part)
    except ValueError:
        return 1.0


def get_raw_resolution(resolution: Optional[str]) -> Optional[float]:
    """Average pixel area of a resolution string.

    Files with several video streams report e.g. "1920x1080,720x480"; the
    result is the mean of the areas. A missing or unreadable width or height
    counts as 1.
    """
    if resolution is None:
        return None

    areas = []
    for pair in resolution.split(","):
        parts = pair.split("x")
        width = _dimension(parts[0])
        height = _dimension(parts[1]) if len(parts) > 1 else 1.0
        areas.append(width * height)

    return sum(areas) / len(areas)


def format_qualified_value(primary: Any, secondary: Any, tertiary: Any = None) -> str:
    """Build '[tertiary] primary (secondary)', leaving out empty parts."""
    text = ""
    if tertiary:
        text += f"[{tertiary}] "
    text += "" if primary is None else str(primary)
    if secondary:
        text += f" ({secondary})"
    return text.strip()
