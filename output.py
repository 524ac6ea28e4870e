import json
import re
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, TextIO

from fields import HIDDEN_FIELDS, INTERNAL_FIELDS, MERGED_INTO, Schema
from filterql import to_text
from formatting import format_qualified_value, format_size

OUTPUT_TYPES = ("md", "json")

Row = Dict[str, Any]

_CAMEL_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
# column -> the field folded into it
_MERGE_SOURCES = {target: source for source, target in MERGED_INTO.items()}


@dataclass
class OutputOptions:
    output: str = "md"
    quiet: bool = False
    short_headers: bool = False
    show_all: bool = False

    def __post_init__(self) -> None:
        self.output = self.output.lower()
        if self.output not in OUTPUT_TYPES:
            raise ValueError(f"Invalid output type '{self.output}'")
        # JSON goes to stdout untouched, so nothing else may be printed.
        if self.output == "json":
            self.quiet = True


def get_stats(rows: List[Row]) -> str:
    total_size = sum(row.get("rawSize") or 0 for row in rows)
    return f"{len(rows)} media entries with a size of {format_size(total_size)}"


def header_title(key: str) -> str:
    words = _CAMEL_RE.sub(" ", key)
    return words[:1].upper() + words[1:]


def _escape(value: Any) -> str:
    text = to_text(value).replace("\n", " ")
    return text.replace("|", "\\|")


def display_rows(rows: List[Row], show_all: bool = False) -> List[Row]:
    """Rows as shown in the markdown table: internal fields dropped, hidden
    fields dropped unless show_all, merged fields folded into their column."""
    shown = []
    for row in rows:
        out: Row = {}
        for key, value in row.items():
            if key in INTERNAL_FIELDS:
                continue
            if key in HIDDEN_FIELDS and not show_all:
                continue
            if key in MERGED_INTO and MERGED_INTO[key] in row:
                continue
            source = _MERGE_SOURCES.get(key)
            if source:
                value = format_qualified_value(value, row.get(source))
            out[key] = value
        shown.append(out)
    return shown


def to_markdown(rows: List[Row], schema: Optional[Schema] = None, short_headers: bool = False, show_all: bool = False) -> str:
    shown = display_rows(rows, show_all)
    columns: List[str] = []
    for row in shown:
        for key in row:
            if key not in columns:
                columns.append(key)
    if not columns:
        return ""

    def title(key: str) -> str:
        if short_headers:
            spec = (schema or {}).get(key)
            return spec.alias if spec and spec.alias else key.lower()
        return header_title(key)

    headers = [title(c) for c in columns]
    body = [[_escape(row.get(c)) for c in columns] for row in shown]
    widths = [max([3, len(h)] + [len(cells[i]) for cells in body]) for i, h in enumerate(headers)]

    def line(cells: List[str]) -> str:
        return "| " + " | ".join(cell.ljust(width) for cell, width in zip(cells, widths)) + " |"

    lines = [line(headers), line([":" + "-" * (w - 1) for w in widths])]
    lines.extend(line(cells) for cells in body)
    return "\n".join(lines) + "\n"


def to_json(rows: List[Row]) -> str:
    return json.dumps(rows, separators=(",", ":"), ensure_ascii=False)


def print_media_data(rows: List[Row], schema: Schema, options: OutputOptions, stream: Optional[TextIO] = None) -> None:
    stream = stream or sys.stdout
    if options.output == "json":
        stream.write(to_json(rows))
    else:
        stream.write(to_markdown(rows, schema, options.short_headers, options.show_all))
    stream.flush()
