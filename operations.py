from typing import Any, Callable, Dict, List

from fields import RAW_TWINS
from filterql import FilterQL, OperationError, natural_key, to_number

Row = Dict[str, Any]


def _sort_key(field_type: str, values: List[Any]) -> Callable[[Any], Any]:
    present = [v for v in values if v is not None]
    if field_type == "number" and all(to_number(v) is not None for v in present):
        return lambda v: (0, 0.0) if v is None else (1, to_number(v))
    # None becomes "" and sorts first
    return natural_key


def sort_rows(rows: List[Row], args: List[str], ql: FilterQL) -> List[Row]:
    """SORT <field> [asc|desc]

    size and resolution sort by their raw numeric twins, so "900 MB" comes
    before "1.2 GB".
    """
    field = args[0] if args else ""
    direction = args[1] if len(args) > 1 else "asc"

    resolved = ql.require_field(field, "SORT")
    twin = RAW_TWINS.get(resolved)
    if twin and twin in ql.schema:
        resolved = twin

    if direction not in ("asc", "desc"):
        raise OperationError(
            f"Invalid direction argument '{direction}' for operation 'SORT': should be either 'asc' or 'desc'"
        )

    key = _sort_key(ql.field_spec(resolved).type, [row.get(resolved) for row in rows])
    return sorted(rows, key=lambda row: key(row.get(resolved)), reverse=direction == "desc")


def exclude_fields(rows: List[Row], args: List[str], ql: FilterQL) -> List[Row]:
    """EXCLUDE <field>... ; names that don't resolve are ignored."""
    excluded = {ql.resolve_field(name) for name in args} - {None}
    if not excluded:
        return list(rows)
    return [{key: value for key, value in row.items() if key not in excluded} for row in rows]


CUSTOM_OPERATIONS = {
    "SORT": sort_rows,
    "EXCLUDE": exclude_fields,
}
