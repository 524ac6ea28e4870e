"""
A small query language for filtering and transforming lists of flat rows.

A query is an optional filter expression followed by any number of
operations, each introduced by a pipe:

    title *= "star wars" && year >= 1990 | SORT size desc | LIMIT 5

Filter expressions:

    field == value      equal (case-insensitive for text)
    field != value      not equal
    field *= value      contains
    field ^= value      starts with
    field $= value      ends with
    field ~= value      regular expression search
    field %= value      fuzzy match
    field > value       also >=, <, <=; numeric for number fields,
                        natural ordering ("2 files" < "10 files") otherwise
    field               true when the value is truthy (e.g. `monitored`)
    !expr, a && b, a || b, ( ... ), *

Fields may be given by name or alias. Values containing spaces or any of
( ) | & ! = < > * ^ $ ~ % need double quotes; \\" and \\\\ escape inside quotes.
A missing value equals the empty string and never matches an ordering
comparison, so `releaseGroup == ""` finds rows without a release group.
"""
import operator
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from rapidfuzz import fuzz, process

from fields import FieldSpec, Schema

FUZZY_THRESHOLD = 80
SUGGESTION_CUTOFF = 70

TEXT_OPERATORS = ("==", "!=", "*=", "^=", "$=", "~=", "%=")
ORDERING = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
}
NUMERIC = {
    "==": operator.eq,
    "!=": operator.ne,
    **ORDERING,
}
# Longest first so that ">=" wins over ">".
COMPARISON_OPERATORS = tuple(sorted(TEXT_OPERATORS + tuple(ORDERING), key=len, reverse=True))

_WORD_RE = re.compile(r'[^\s()|&"!=<>*^$~%]+')
_DIGITS_RE = re.compile(r"(\d+)")


class FilterQLError(Exception):
    pass


class QuerySyntaxError(FilterQLError):
    pass


class UnknownFieldError(FilterQLError):
    def __init__(self, name: str, operation: Optional[str] = None, suggestion: Optional[str] = None) -> None:
        self.name = name
        self.operation = operation
        self.suggestion = suggestion
        message = f"Unknown field '{name}'"
        if operation:
            message += f" for operation '{operation}'"
        if suggestion:
            message += f", did you mean '{suggestion}'?"
        super().__init__(message)


class UnknownOperationError(FilterQLError):
    pass


class OperationError(FilterQLError):
    pass


# =========================
# AST
# =========================
@dataclass(frozen=True)
class MatchAll:
    pass


@dataclass(frozen=True)
class Truthy:
    field: str


@dataclass(frozen=True)
class Comparison:
    field: str
    operator: str
    value: str


@dataclass(frozen=True)
class Not:
    operand: "Node"


@dataclass(frozen=True)
class And:
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Or:
    left: "Node"
    right: "Node"


Node = Union[MatchAll, Truthy, Comparison, Not, And, Or]


@dataclass(frozen=True)
class Operation:
    name: str
    args: Tuple[str, ...] = ()


@dataclass
class Query:
    filter: Optional[Node] = None
    operations: List[Operation] = field(default_factory=list)


Row = Dict[str, Any]
OperationFn = Callable[[List[Row], List[str], "FilterQL"], List[Row]]


# =========================
# Value helpers
# =========================
def to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def to_bool(value: str) -> Optional[bool]:
    lowered = value.strip().lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    return None


def natural_key(value: Any) -> Tuple[Tuple[int, int, str], ...]:
    """Sort key that ignores case, accents and punctuation and compares runs
    of digits by their numeric value.

    Punctuation still separates numbers: "1.5" sorts before "2" and
    "345600,921600" before "2073600".
    """
    text = unicodedata.normalize("NFKD", to_text(value)).casefold()
    key = []
    # split() with a capture group puts the digit runs at odd indexes
    for index, part in enumerate(_DIGITS_RE.split(text)):
        if index % 2:
            key.append((0, int(part), ""))
            continue
        letters = "".join(ch for ch in part if ch.isalnum() and not unicodedata.combining(ch))
        if letters:
            key.append((1, 0, letters))
    return tuple(key)


def compare(field_type: str, left: Any, op: str, right: str) -> bool:
    """Compare a row value against a query literal."""
    if left is None and op in ORDERING:
        return False

    if field_type == "number" and op in NUMERIC:
        lhs, rhs = to_number(left), to_number(right)
        if lhs is not None and rhs is not None:
            return NUMERIC[op](lhs, rhs)

    if field_type == "boolean" and op in ("==", "!=") and left is not None:
        wanted = to_bool(right)
        if wanted is not None:
            equal = bool(left) == wanted
            return equal if op == "==" else not equal

    lhs_text = to_text(left)
    lhs, rhs = lhs_text.casefold(), right.casefold()
    if op == "==":
        return lhs == rhs
    if op == "!=":
        return lhs != rhs
    if op == "*=":
        return rhs in lhs
    if op == "^=":
        return lhs.startswith(rhs)
    if op == "$=":
        return lhs.endswith(rhs)
    if op == "~=":
        return re.search(right, lhs_text, flags=re.IGNORECASE) is not None
    if op == "%=":
        return fuzz.token_set_ratio(lhs, rhs) >= FUZZY_THRESHOLD
    if op in ORDERING:
        return ORDERING[op](natural_key(lhs_text), natural_key(right))
    raise QuerySyntaxError(f"Unknown operator '{op}'")


# =========================
# Lexer
# =========================
@dataclass(frozen=True)
class Token:
    kind: str
    value: str
    pos: int


def tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    length = len(text)
    while pos < length:
        ch = text[pos]
        if ch.isspace():
            pos += 1
            continue

        if ch == '"':
            start = pos
            pos += 1
            chars = []
            while pos < length and text[pos] != '"':
                if text[pos] == "\\" and pos + 1 < length:
                    pos += 1
                chars.append(text[pos])
                pos += 1
            if pos >= length:
                raise QuerySyntaxError(f"Unterminated string starting at position {start}")
            pos += 1
            tokens.append(Token("STRING", "".join(chars), start))
            continue

        two = text[pos:pos + 2]
        if two == "&&":
            tokens.append(Token("AND", two, pos))
            pos += 2
            continue
        if two == "||":
            tokens.append(Token("OR", two, pos))
            pos += 2
            continue

        matched = next((op for op in COMPARISON_OPERATORS if text.startswith(op, pos)), None)
        if matched:
            tokens.append(Token("OP", matched, pos))
            pos += len(matched)
            continue

        single = {"(": "LPAREN", ")": "RPAREN", "|": "PIPE", "!": "NOT", "*": "STAR"}
        if ch in single:
            tokens.append(Token(single[ch], ch, pos))
            pos += 1
            continue

        match = _WORD_RE.match(text, pos)
        if not match:
            raise QuerySyntaxError(f"Unexpected character '{ch}' at position {pos}")
        tokens.append(Token("WORD", match.group(0), pos))
        pos = match.end()

    tokens.append(Token("EOF", "", length))
    return tokens


# =========================
# Parser
# =========================
class _Parser:
    def __init__(self, tokens: List[Token], resolve: Callable[[str], str]) -> None:
        self.tokens = tokens
        self.index = 0
        self.resolve = resolve

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def expect(self, kind: str, what: str) -> Token:
        if self.current.kind != kind:
            self.fail(f"expected {what}")
        return self.advance()

    def fail(self, message: str) -> None:
        token = self.current
        found = "end of query" if token.kind == "EOF" else f"'{token.value}'"
        raise QuerySyntaxError(f"{message} but found {found} at position {token.pos}")

    def parse(self) -> Query:
        query = Query()
        if self.current.kind not in ("PIPE", "EOF"):
            query.filter = self.parse_or()
        while self.current.kind == "PIPE":
            self.advance()
            query.operations.append(self.parse_operation())
        if self.current.kind != "EOF":
            self.fail("expected '&&', '||', '|' or end of query")
        return query

    def parse_or(self) -> Node:
        node = self.parse_and()
        while self.current.kind == "OR":
            self.advance()
            node = Or(node, self.parse_and())
        return node

    def parse_and(self) -> Node:
        node = self.parse_unary()
        while self.current.kind == "AND":
            self.advance()
            node = And(node, self.parse_unary())
        return node

    def parse_unary(self) -> Node:
        token = self.current
        if token.kind == "NOT":
            self.advance()
            return Not(self.parse_unary())
        if token.kind == "LPAREN":
            self.advance()
            node = self.parse_or()
            self.expect("RPAREN", "')'")
            return node
        if token.kind == "STAR":
            self.advance()
            return MatchAll()
        if token.kind == "WORD":
            return self.parse_field()
        self.fail("expected a field, '!', '(' or '*'")

    def parse_field(self) -> Node:
        name = self.resolve(self.advance().value)
        if self.current.kind != "OP":
            return Truthy(name)
        op = self.advance().value
        if self.current.kind not in ("WORD", "STRING"):
            self.fail(f"expected a value after '{op}'")
        value = self.advance().value
        if op == "~=":
            try:
                re.compile(value)
            except re.error as exc:
                raise QuerySyntaxError(f"Invalid regular expression '{value}': {exc}") from exc
        return Comparison(name, op, value)

    def parse_operation(self) -> Operation:
        name = self.expect("WORD", "an operation name").value
        args = []
        while self.current.kind in ("WORD", "STRING"):
            args.append(self.advance().value)
        return Operation(name.upper(), tuple(args))


# =========================
# Engine
# =========================
def limit_rows(rows: List[Row], args: List[str], ql: "FilterQL") -> List[Row]:
    if len(args) != 1 or not args[0].isdigit():
        raise OperationError(
            f"Invalid arguments {args} for operation 'LIMIT': expected a single non-negative integer"
        )
    return list(rows[: int(args[0])])


BUILTIN_OPERATIONS: Dict[str, OperationFn] = {
    "LIMIT": limit_rows,
}


class FilterQL:
    """Parses queries against a schema and applies them to rows."""

    def __init__(self, schema: Schema, custom_operations: Optional[Dict[str, OperationFn]] = None) -> None:
        self.schema = schema
        self.aliases = {spec.alias: name for name, spec in schema.items() if spec.alias}
        self.operations: Dict[str, OperationFn] = dict(BUILTIN_OPERATIONS)
        for name, fn in (custom_operations or {}).items():
            self.operations[name.upper()] = fn

    def resolve_field(self, name: str) -> Optional[str]:
        if name in self.schema:
            return name
        return self.aliases.get(name)

    def require_field(self, name: str, operation: Optional[str] = None) -> str:
        resolved = self.resolve_field(name)
        if resolved is None:
            choices = list(self.schema) + list(self.aliases)
            match = process.extractOne(name, choices, scorer=fuzz.ratio, score_cutoff=SUGGESTION_CUTOFF)
            suggestion = self.resolve_field(match[0]) if match else None
            raise UnknownFieldError(name, operation, suggestion)
        return resolved

    def field_spec(self, name: str) -> FieldSpec:
        return self.schema[name]

    def parse(self, query: Optional[str]) -> Query:
        if not query or not query.strip():
            return Query()
        return _Parser(tokenize(query), self.require_field).parse()

    def matches(self, node: Optional[Node], row: Row) -> bool:
        if node is None or isinstance(node, MatchAll):
            return True
        if isinstance(node, Truthy):
            return bool(row.get(node.field))
        if isinstance(node, Comparison):
            spec = self.schema[node.field]
            return compare(spec.type, row.get(node.field), node.operator, node.value)
        if isinstance(node, Not):
            return not self.matches(node.operand, row)
        if isinstance(node, And):
            return self.matches(node.left, row) and self.matches(node.right, row)
        if isinstance(node, Or):
            return self.matches(node.left, row) or self.matches(node.right, row)
        raise TypeError(f"Unsupported filter node {node!r}")

    def apply_filter(self, rows: List[Row], node: Optional[Node]) -> List[Row]:
        return [row for row in rows if self.matches(node, row)]

    def apply_operations(self, rows: List[Row], operations: List[Operation]) -> List[Row]:
        for op in operations:
            fn = self.operations.get(op.name.upper())
            if fn is None:
                known = ", ".join(sorted(self.operations))
                raise UnknownOperationError(f"Unknown operation '{op.name}' (expected one of: {known})")
            rows = fn(rows, list(op.args), self)
        return rows

    def query(self, rows: List[Row], text: Optional[str]) -> List[Row]:
        parsed = self.parse(text)
        return self.apply_operations(self.apply_filter(rows, parsed.filter), parsed.operations)
