"""
SQL identifier safety layer.

This module is the only sanctioned path from a configuration string to a
string that may be interpolated into SQL. Names are validated first and
quoted second; ``SafeIdentifier`` and ``QualifiedTable`` can only be built here,
and the statement builders in ``sql.py`` refuse anything else.
"""

from __future__ import annotations

import re
from dataclasses import InitVar, dataclass
from typing import AbstractSet, Iterable

from flask import current_app, has_app_context

from .errors import IdentifierError

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
MAX_IDENTIFIER_LENGTH = 63  # PostgreSQL NAMEDATALEN - 1
DEFAULT_ALLOWED_SCHEMAS: frozenset[str] = frozenset({"workspace", "reference"})
DEFAULT_SCHEMA = "workspace"

_CONSTRUCTION_TOKEN = object()

_WORD_RE = re.compile(r"[^\W\d][\w$]*")
_NUMBER_RE = re.compile(r"(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_DOLLAR_TAG_RE = re.compile(r"\$(?:[^\W\d]\w*)?\$")
_PARAMETER_RE = re.compile(r"\$\d+")

# Keywords that put the next name in a relation position.
_TABLE_KEYWORDS = frozenset({"from", "join", "into", "update", "table", "using"})
_TABLE_MODIFIERS = frozenset({"only", "lateral"})
# Keywords that end a FROM list at the current nesting level.
_CLAUSE_KEYWORDS = frozenset(
    {
        "where", "group", "order", "having", "limit", "offset", "union", "intersect", "except",
        "window", "returning", "fetch", "for", "select", "values", "set", "do", "conflict",
    }
)
_QUERY_KEYWORDS = frozenset({"select", "insert", "update", "delete", "merge", "values", "table", "with"})
# Functions whose argument syntax uses FROM without naming a relation.
_FROM_ARGUMENT_FUNCTIONS = frozenset({"extract", "substring", "trim", "overlay", "position"})


@dataclass(frozen=True)
class SafeIdentifier:
    """A validated schema, table, or column name."""

    name: str
    _token: InitVar[object] = None

    def __post_init__(self, _token: object) -> None:
        if _token is not _CONSTRUCTION_TOKEN:
            raise TypeError("SafeIdentifier is only created by quote_identifier() or quote_columns().")

    @property
    def quoted(self) -> str:
        return f'"{self.name}"'

    def __str__(self) -> str:
        return self.quoted


@dataclass(frozen=True)
class QualifiedTable:
    """A validated ``schema.table`` pair whose schema is whitelisted."""

    schema: SafeIdentifier
    table: SafeIdentifier
    _token: InitVar[object] = None

    def __post_init__(self, _token: object) -> None:
        if _token is not _CONSTRUCTION_TOKEN:
            raise TypeError("QualifiedTable is only created by safe_table_name() or quote_qualified_table().")

    @property
    def quoted(self) -> str:
        return f"{self.schema.quoted}.{self.table.quoted}"

    @property
    def qualified_name(self) -> str:
        return f"{self.schema.name}.{self.table.name}"

    def __str__(self) -> str:
        return self.quoted


def _resolve_allowed_schemas(allowed: Iterable[str] | None) -> AbstractSet[str]:
    if allowed is not None:
        return frozenset(allowed)
    if has_app_context():
        configured = current_app.config.get("PIPELINE_ALLOWED_SCHEMAS")
        if configured:
            return frozenset(configured)
    return DEFAULT_ALLOWED_SCHEMAS


def is_valid_identifier(name: object) -> bool:
    """Return True when ``name`` is a plain SQL identifier of at most 63 characters."""

    if not isinstance(name, str) or not name:
        return False
    if len(name) > MAX_IDENTIFIER_LENGTH:
        return False
    return IDENTIFIER_PATTERN.match(name) is not None


def is_valid_qualified_table_name(qualified_name: object) -> bool:
    if not isinstance(qualified_name, str):
        return False
    parts = qualified_name.split(".")
    if len(parts) != 2:
        return False
    schema, table = parts
    return is_valid_identifier(schema) and is_valid_identifier(table)


def are_valid_column_names(columns: object) -> bool:
    if isinstance(columns, (str, bytes)) or not isinstance(columns, Iterable):
        return False
    names = list(columns)
    if not names:
        return False
    return all(is_valid_identifier(name) for name in names)


def is_allowed_schema(schema: object, allowed: Iterable[str] | None = None) -> bool:
    """Return True when ``schema`` is in the deployment's schema whitelist."""

    if not isinstance(schema, str):
        return False
    return schema in _resolve_allowed_schemas(allowed)


def quote_identifier(name: str) -> SafeIdentifier:
    if not is_valid_identifier(name):
        raise IdentifierError(f"Invalid identifier: {name!r}", identifier=str(name))
    return SafeIdentifier(name, _CONSTRUCTION_TOKEN)


def quote_qualified_table(qualified_name: str, *, allowed_schemas: Iterable[str] | None = None) -> QualifiedTable:
    if not is_valid_qualified_table_name(qualified_name):
        raise IdentifierError(f"Invalid qualified table name: {qualified_name!r}", identifier=str(qualified_name))

    schema, table = qualified_name.split(".")
    allowed = _resolve_allowed_schemas(allowed_schemas)
    if schema not in allowed:
        raise IdentifierError(
            f"Schema '{schema}' is not allowed. Allowed schemas: {', '.join(sorted(allowed))}",
            identifier=schema,
        )
    return QualifiedTable(quote_identifier(schema), quote_identifier(table), _CONSTRUCTION_TOKEN)


def safe_table_name(
    table_name: str,
    default_schema: str = DEFAULT_SCHEMA,
    *,
    allowed_schemas: Iterable[str] | None = None,
) -> QualifiedTable:
    """
    Validate ``table`` or ``schema.table`` and return it as a quoted pair.

    Bare names are placed in ``default_schema``. Both parts must be valid
    identifiers and the schema must be whitelisted; any violation raises
    ``IdentifierError`` before a single character of SQL is produced.
    """

    if not isinstance(table_name, str) or not table_name:
        raise IdentifierError(f"Invalid table name: {table_name!r}", identifier=str(table_name))
    if "." in table_name:
        return quote_qualified_table(table_name, allowed_schemas=allowed_schemas)
    return quote_qualified_table(f"{default_schema}.{table_name}", allowed_schemas=allowed_schemas)


def quote_columns(columns: Iterable[str]) -> tuple[SafeIdentifier, ...]:
    """Validate and quote every column name, failing without a partial result."""

    if isinstance(columns, (str, bytes)):
        raise IdentifierError("Column names must be provided as a sequence, not a single string.")
    names = list(columns)
    if not names:
        raise IdentifierError("At least one column name is required.")
    invalid = [name for name in names if not is_valid_identifier(name)]
    if invalid:
        raise IdentifierError(f"Invalid column names provided: {invalid[:3]!r}", identifier=str(invalid[0]))
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise IdentifierError(f"Duplicate column names provided: {duplicates!r}", identifier=duplicates[0])
    return tuple(SafeIdentifier(name, _CONSTRUCTION_TOKEN) for name in names)


@dataclass(frozen=True)
class SqlToken:
    kind: str  # word, quoted, string, number, parameter, punct, space, comment
    text: str


def _scan_quoted(sql: str, start: int, quote: str, *, backslash_escapes: bool = False) -> int:
    """Index just past the literal opened at ``start``; doubled quotes are escapes."""

    index = start + 1
    while index < len(sql):
        char = sql[index]
        if backslash_escapes and char == "\\":
            index += 2
            continue
        if char == quote:
            if sql.startswith(quote, index + 1):
                index += 2
                continue
            return index + 1
        index += 1
    raise IdentifierError(f"Unterminated {quote} literal in SQL.")


def tokenize_sql(sql: str) -> list[SqlToken]:
    """
    Split ``sql`` into tokens in a single left-to-right pass.

    Comments, string literals, dollar-quoted bodies and quoted identifiers are
    recognised together, so none of them can hide or fake another. Quoted
    identifiers carry their unescaped name. Unterminated literals and nested
    block comments are rejected since PostgreSQL and SQLite disagree on them.
    """

    tokens: list[SqlToken] = []
    index = 0
    length = len(sql)
    while index < length:
        char = sql[index]
        if char.isspace():
            end = index
            while end < length and sql[end].isspace():
                end += 1
            tokens.append(SqlToken("space", sql[index:end]))
        elif sql.startswith("--", index):
            end = sql.find("\n", index)
            end = length if end == -1 else end
            tokens.append(SqlToken("comment", sql[index:end]))
        elif sql.startswith("/*", index):
            close = sql.find("*/", index + 2)
            if close == -1:
                raise IdentifierError("Unterminated block comment in SQL.")
            if "/*" in sql[index + 2 : close]:
                raise IdentifierError("Nested block comments are not supported in SQL.")
            end = close + 2
            tokens.append(SqlToken("comment", sql[index:end]))
        elif char in "eE" and sql.startswith("'", index + 1):
            end = _scan_quoted(sql, index + 1, "'", backslash_escapes=True)
            tokens.append(SqlToken("string", sql[index:end]))
        elif char == "'":
            end = _scan_quoted(sql, index, "'")
            tokens.append(SqlToken("string", sql[index:end]))
        elif char == '"':
            end = _scan_quoted(sql, index, '"')
            tokens.append(SqlToken("quoted", sql[index + 1 : end - 1].replace('""', '"')))
        elif char == "$" and _DOLLAR_TAG_RE.match(sql, index):
            tag = _DOLLAR_TAG_RE.match(sql, index).group(0)
            close = sql.find(tag, index + len(tag))
            if close == -1:
                raise IdentifierError("Unterminated dollar-quoted string in SQL.")
            end = close + len(tag)
            tokens.append(SqlToken("string", sql[index:end]))
        elif char == "$" and _PARAMETER_RE.match(sql, index):
            end = _PARAMETER_RE.match(sql, index).end()
            tokens.append(SqlToken("parameter", sql[index:end]))
        elif _NUMBER_RE.match(sql, index) and (char.isdigit() or char == "."):
            end = _NUMBER_RE.match(sql, index).end()
            tokens.append(SqlToken("number", sql[index:end]))
        elif _WORD_RE.match(sql, index):
            end = _WORD_RE.match(sql, index).end()
            tokens.append(SqlToken("word", sql[index:end]))
        else:
            end = index + 1
            tokens.append(SqlToken("punct", char))
        index = end
    return tokens


def scrub_sql(sql: str) -> str:
    """``sql`` with comments blanked and string literals emptied."""

    pieces = []
    for token in tokenize_sql(sql or ""):
        if token.kind == "comment":
            pieces.append(" ")
        elif token.kind == "string":
            pieces.append("''")
        elif token.kind == "quoted":
            pieces.append('"' + token.text.replace('"', '""') + '"')
        else:
            pieces.append(token.text)
    return "".join(pieces)


@dataclass
class _Scope:
    in_from: bool = False
    expect_relation: bool = False
    function: str | None = None


def _name_part(token: SqlToken) -> str:
    # Unquoted names fold to lower case; quoted names are exact.
    return token.text.lower() if token.kind == "word" else token.text


def _read_dotted_name(tokens: list[SqlToken], index: int) -> tuple[list[str], int]:
    parts = [_name_part(tokens[index])]
    index += 1
    while (
        index + 1 < len(tokens)
        and tokens[index].kind == "punct"
        and tokens[index].text == "."
        and tokens[index + 1].kind in ("word", "quoted")
    ):
        parts.append(_name_part(tokens[index + 1]))
        index += 2
    return parts, index


def referenced_schemas(sql: str) -> frozenset[str]:
    """
    Schemas qualifying any relation or function the statement names.

    Every dotted name in a relation position is reported: after
    FROM/JOIN/INTO/UPDATE/TABLE/USING (and ONLY or LATERAL), after a comma in
    a FROM list, and inside parenthesised FROM items at any depth. Dotted
    names followed by ``(`` are function calls and are reported too. All
    qualifiers of a name are returned, so ``db.schema.table`` yields both.
    """

    tokens = [token for token in tokenize_sql(sql or "") if token.kind not in ("space", "comment")]
    schemas: set[str] = set()
    scopes = [_Scope()]
    previous: list[str] = []
    index = 0
    while index < len(tokens):
        token = tokens[index]
        scope = scopes[-1]

        if token.kind in ("word", "quoted"):
            parts, index = _read_dotted_name(tokens, index)
            calls = index < len(tokens) and tokens[index].text == "("
            keyword = parts[0] if token.kind == "word" and len(parts) == 1 else None

            if scope.expect_relation and keyword in _TABLE_MODIFIERS:
                previous.append(keyword)
                continue
            if len(parts) > 1 and (scope.expect_relation or calls):
                schemas.update(parts[:-1])
            if scope.expect_relation:
                scope.expect_relation = False
                previous.append(".".join(parts))
                continue

            if keyword in _QUERY_KEYWORDS:
                scope.function = None
            if keyword in _CLAUSE_KEYWORDS:
                scope.in_from = False
                scope.expect_relation = False
            elif keyword == "on":
                scope.expect_relation = False
            if keyword in _TABLE_KEYWORDS:
                # IS [NOT] DISTINCT FROM compares values
                distinct_from = (
                    keyword == "from" and previous[-1:] == ["distinct"] and previous[-2:-1] in (["is"], ["not"])
                )
                argument_from = keyword == "from" and scope.function in _FROM_ARGUMENT_FUNCTIONS
                if not (distinct_from or argument_from):
                    scope.expect_relation = True
                    if keyword in ("from", "join"):
                        scope.in_from = True
            previous.append(keyword if keyword is not None else ".".join(parts))
            continue

        if token.kind == "punct" and token.text == "(":
            if scope.expect_relation:
                scope.expect_relation = False
                scopes.append(_Scope(in_from=True, expect_relation=True))
            else:
                caller = previous[-1] if previous and tokens[index - 1].kind in ("word", "quoted") else None
                scopes.append(_Scope(function=caller))
        elif token.kind == "punct" and token.text == ")":
            if len(scopes) > 1:
                scopes.pop()
        elif token.kind == "punct" and token.text == ",":
            if scope.in_from:
                scope.expect_relation = True
        elif scope.expect_relation:
            scope.expect_relation = False
        previous.append(token.text)
        index += 1

    return frozenset(schemas)
