"""Query sandbox — trust boundary for engine-authored SQL.

The reasoning engine writes SQLite SELECT statements against the two
tenant-scoped tables. The text is untrusted: it may be close to valid and
still dangerous. `QuerySandbox.validate_and_rewrite()` either returns a
rewritten query that is safe to run for one tenant, or a
ValidationFailure describing why it was refused. It never raises.

Table references and tenant filters are found by a small token scan that
follows every SELECT (subqueries and compound parts included). Anything
the scan cannot classify is refused rather than skipped.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from valora.errors import VALIDATION_ERROR

logger = logging.getLogger(__name__)

ALLOWED_TABLES = ("Transaction", "RecurringTransaction")
TENANT_COLUMN = "userId"
TENANT_PLACEHOLDER = "{USER_ID_PLACEHOLDER}"
DEFAULT_MAX_ROWS = 100

_FORBIDDEN_KEYWORDS = re.compile(
    r"\b(DELETE|UPDATE|INSERT|DROP|ALTER|CREATE|TRUNCATE|EXEC|EXECUTE|PRAGMA"
    r"|ATTACH|DETACH|VACUUM|REINDEX|GRANT|REVOKE)\b",
    re.IGNORECASE,
)
_SELECT = re.compile(r"^\s*SELECT\b", re.IGNORECASE)
_TERMINATOR_FOLLOWED = re.compile(r";\s*\S")
_TRAILING_TERMINATORS = re.compile(r"[\s;]+$")
_COMMENT = re.compile(r"--|/\*")
_STRING_LITERAL = re.compile(r"'(?:[^']|'')*'")
_PLACEHOLDER = re.compile(r"['\"]?" + re.escape(TENANT_PLACEHOLDER) + r"['\"]?")
_LIMIT = re.compile(r"\bLIMIT\s+(\d+)", re.IGNORECASE)
_UNQUOTED_TABLE = re.compile(
    r"(?<![\"'`\w\[])\b(" + "|".join(ALLOWED_TABLES) + r")\b(?![\"'`\w\]])"
)
_SAFE_TENANT_CHARS = re.compile(r"[^a-zA-Z0-9\-_@.]")

_TOKEN_KINDS = ("placeholder", "string", "quoted", "word", "punct")
_TOKEN = re.compile(
    r"\s*(?:"
    r"(?P<placeholder>(?P<pq>['\"]?)" + re.escape(TENANT_PLACEHOLDER) + r"(?P=pq))"
    r"|(?P<string>'(?:[^']|'')*')"
    r"|(?P<quoted>\"(?:[^\"]|\"\")*\"|`[^`]*`|\[[^\]]*\])"
    r"|(?P<word>\w+)"
    r"|(?P<punct>\S))"
)

# Keyword -> clause it opens, for the SELECT it belongs to.
_CLAUSES = {
    "FROM": "from",
    "WHERE": "where",
    "GROUP": "other",
    "ORDER": "other",
    "LIMIT": "other",
    "HAVING": "other",
    "WINDOW": "other",
}
_COMPOUND_OPERATORS = frozenset({"UNION", "INTERSECT", "EXCEPT"})
_NOT_AN_ALIAS = frozenset({
    "WHERE", "JOIN", "LEFT", "RIGHT", "FULL", "INNER", "OUTER", "CROSS",
    "NATURAL", "ON", "USING", "GROUP", "ORDER", "LIMIT", "HAVING", "WINDOW",
    "UNION", "INTERSECT", "EXCEPT", "INDEXED", "NOT", "OFFSET",
})

_MISSING_FILTER = f"Query must include WHERE {TENANT_COLUMN} = '{TENANT_PLACEHOLDER}' filter"


@dataclass(frozen=True)
class SandboxedQuery:
    """A query that passed every rule, rewritten for one tenant."""

    raw: str
    rewritten: str
    target_entity: str


@dataclass(frozen=True)
class ValidationFailure:
    """Why a query was refused. Returned, never raised."""

    reason: str
    code: str = VALIDATION_ERROR


class _Rejected(Exception):
    """Raised inside the token scan; becomes a ValidationFailure."""


# ---------------------------------------------------------------------------
# Tokens and SELECT scopes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str
    depth: int

    @property
    def keyword(self) -> str:
        return self.text.upper() if self.kind == "word" else ""

    @property
    def name(self) -> str:
        """Identifier text without its quoting."""
        if self.kind in ("quoted", "string"):
            return self.text[1:-1]
        return self.text

    def is_punct(self, text: str) -> bool:
        return self.kind == "punct" and self.text == text


@dataclass(frozen=True)
class _TableRef:
    name: str
    alias: str = ""

    def matches(self, qualifier: str) -> bool:
        # An aliased table is only reachable through its alias.
        return qualifier == (self.alias or self.name).lower()


@dataclass
class _SelectScope:
    """One SELECT core: its tables and the tokens of its WHERE clause."""

    depth: int
    clause: str = "columns"
    expect_table: bool = False
    tables: list[_TableRef] = field(default_factory=list)
    where: list[_Token] = field(default_factory=list)


def _tokenize(sql: str) -> list[_Token]:
    """Split *sql* into tokens, each tagged with its parenthesis depth."""
    tokens: list[_Token] = []
    depth = 0
    for match in _TOKEN.finditer(sql):
        kind = next(k for k in _TOKEN_KINDS if match.group(k) is not None)
        text = match.group(kind)
        if kind == "punct" and text == ")":
            depth -= 1
            if depth < 0:
                raise _Rejected("Query has unbalanced parentheses")
        tokens.append(_Token(kind, text, depth))
        if kind == "punct" and text == "(":
            depth += 1
    if depth:
        raise _Rejected("Query has unbalanced parentheses")
    return tokens


def _table_ref(tokens: list[_Token], index: int) -> list[_TableRef]:
    """Read the FROM/JOIN item starting at *index*. Subqueries yield nothing."""
    token = tokens[index]
    rest = tokens[index + 1:]
    if token.is_punct("("):
        if rest and rest[0].keyword == "SELECT":
            return []
        raise _Rejected("Only tables or subqueries may follow FROM or JOIN")
    if token.kind not in ("word", "quoted", "string"):
        raise _Rejected(f"Unsupported table reference '{token.text}'")

    # Schema-qualified names and table-valued functions never match the allow-list.
    if rest and rest[0].is_punct("."):
        return [_TableRef(token.name + "." + (rest[1].name if len(rest) > 1 else ""))]
    if rest and rest[0].is_punct("("):
        return [_TableRef(token.name + "()")]

    position = 1 if rest and rest[0].keyword == "AS" else 0
    alias = ""
    if len(rest) > position:
        candidate = rest[position]
        if candidate.kind == "quoted" or (
            candidate.kind == "word" and candidate.keyword not in _NOT_AN_ALIAS
        ):
            alias = candidate.name
    return [_TableRef(token.name, alias)]


def _select_scopes(tokens: list[_Token]) -> list[_SelectScope]:
    """Group *tokens* into SELECT cores, outermost first."""
    scopes: list[_SelectScope] = []
    active: dict[int, _SelectScope | None] = {0: None}

    for index, token in enumerate(tokens):
        depth = token.depth
        keyword = token.keyword
        if token.is_punct(")"):
            for level in [level for level in active if level > depth]:
                del active[level]
        if keyword == "IN":
            following = tokens[index + 1] if index + 1 < len(tokens) else None
            if following is None or not following.is_punct("("):
                raise _Rejected("IN must be followed by a parenthesised list or subquery")

        scope = active.get(depth)
        if keyword == "SELECT":
            scope = _SelectScope(depth)
            active[depth] = scope
            scopes.append(scope)
        elif scope is None:
            pass
        elif keyword in _COMPOUND_OPERATORS:
            active[depth] = None
        elif scope.expect_table:
            scope.expect_table = False
            scope.tables.extend(_table_ref(tokens, index))
        elif keyword in _CLAUSES:
            scope.clause = _CLAUSES[keyword]
            scope.expect_table = keyword == "FROM"
        elif scope.clause == "from" and (keyword == "JOIN" or token.is_punct(",")):
            scope.expect_table = True
        elif scope.clause == "where":
            scope.where.append(token)

        for level, outer in active.items():
            if outer is not None and level < depth and outer.clause == "where":
                outer.where.append(token)
        if token.is_punct("("):
            active[depth + 1] = None

    return scopes


# ---------------------------------------------------------------------------
# Tenant filter
# ---------------------------------------------------------------------------


def _split_conjuncts(tokens: list[_Token], depth: int) -> list[list[_Token]] | None:
    """Split *tokens* on the ANDs at *depth*; None when an OR sits at that level."""
    conjuncts: list[list[_Token]] = [[]]
    between = False
    case_level = 0
    for token in tokens:
        if token.depth == depth:
            keyword = token.keyword
            if keyword == "CASE":
                case_level += 1
            elif keyword == "END" and case_level:
                case_level -= 1
            elif not case_level:
                if keyword == "OR":
                    return None
                if keyword == "BETWEEN":
                    between = True
                elif keyword == "AND":
                    if between:
                        between = False
                    else:
                        conjuncts.append([])
                        continue
        conjuncts[-1].append(token)
    return conjuncts


def _is_wrapped(tokens: list[_Token]) -> bool:
    """True when one pair of parentheses encloses all of *tokens*."""
    if len(tokens) < 2 or not (tokens[0].is_punct("(") and tokens[-1].is_punct(")")):
        return False
    return all(t.depth > tokens[0].depth for t in tokens[1:-1])


def _filter_qualifier(tokens: list[_Token]) -> str | None:
    """For ``[alias.]userId = placeholder`` return the alias ('' if none)."""
    if len(tokens) < 3:
        return None
    if tokens[0].kind == "placeholder":
        value, operator, column = tokens[0], tokens[1], tokens[2:]
    else:
        column, operator, value = tokens[:-2], tokens[-2], tokens[-1]
    if value.kind != "placeholder" or not operator.is_punct("="):
        return None

    if len(column) == 1:
        qualifier = ""
    elif len(column) == 3 and column[1].is_punct(".") and column[0].kind in ("word", "quoted"):
        qualifier = column[0].name.lower()
    else:
        return None
    if column[-1].kind not in ("word", "quoted") or column[-1].name.lower() != TENANT_COLUMN.lower():
        return None
    return qualifier


def _tenant_qualifiers(tokens: list[_Token], depth: int) -> set[str]:
    """Qualifiers of every tenant filter that is a conjunct of *tokens*."""
    found: set[str] = set()
    for conjunct in _split_conjuncts(tokens, depth) or []:
        qualifier = _filter_qualifier(conjunct)
        if qualifier is not None:
            found.add(qualifier)
        elif _is_wrapped(conjunct):
            found |= _tenant_qualifiers(conjunct[1:-1], depth + 1)
    return found


def _check_tenant_filter(scope: _SelectScope) -> None:
    if not scope.tables:
        return
    if _split_conjuncts(scope.where, scope.depth) is None:
        raise _Rejected(
            f"The {TENANT_COLUMN} filter cannot be combined with OR at the same level; "
            "wrap the other conditions in parentheses"
        )
    qualifiers = _tenant_qualifiers(scope.where, scope.depth)
    for table in scope.tables:
        if "" in qualifiers and len(scope.tables) == 1:
            continue
        if not any(table.matches(q) for q in qualifiers):
            if len(scope.tables) == 1:
                raise _Rejected(_MISSING_FILTER)
            raise _Rejected(f"{_MISSING_FILTER} for {table.alias or table.name}")


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def _mask_literals(sql: str) -> str:
    """Blank out the contents of string literals, keeping offsets intact."""
    return _STRING_LITERAL.sub(lambda m: "'" + " " * (len(m.group()) - 2) + "'", sql)


def _depths(sql: str) -> list[int]:
    """Parenthesis nesting depth at every offset of *sql*."""
    depths: list[int] = []
    depth = 0
    for ch in sql:
        if ch == ")":
            depth = max(depth - 1, 0)
        depths.append(depth)
        if ch == "(":
            depth += 1
    return depths


def sanitize_tenant_id(tenant_id: str) -> str:
    """Strip *tenant_id* to letters, digits and ``-_@.``."""
    safe = _SAFE_TENANT_CHARS.sub("", tenant_id)
    if safe != tenant_id:
        logger.warning("Tenant id was sanitized: %r -> %r", tenant_id, safe)
    return safe


# ---------------------------------------------------------------------------
# Sandbox
# ---------------------------------------------------------------------------


class QuerySandbox:
    """Validates and rewrites engine-authored SELECT statements."""

    def __init__(self, max_rows: int = DEFAULT_MAX_ROWS) -> None:
        self._max_rows = max_rows

    def validate_and_rewrite(
        self, raw_query: str, tenant_id: str,
    ) -> SandboxedQuery | ValidationFailure:
        """Apply every sandbox rule to *raw_query* for *tenant_id*."""
        if not raw_query or not raw_query.strip():
            return ValidationFailure("Query is empty")

        sql = raw_query.strip()

        if _TERMINATOR_FOLLOWED.search(sql):
            return ValidationFailure("Multiple statements are not allowed")
        sql = _TRAILING_TERMINATORS.sub("", sql)

        if not _SELECT.match(sql):
            return ValidationFailure("Only SELECT queries are allowed")

        forbidden = _FORBIDDEN_KEYWORDS.search(sql)
        if forbidden:
            return ValidationFailure(
                f"Query contains forbidden SQL keyword '{forbidden.group(1).upper()}'"
            )

        if _COMMENT.search(sql):
            return ValidationFailure("SQL comments are not allowed")

        try:
            scopes = _select_scopes(_tokenize(sql))
            tables = [table for scope in scopes for table in scope.tables]
            if not tables:
                return ValidationFailure(
                    f"Query must select FROM {' or '.join(ALLOWED_TABLES)}"
                )
            disallowed = sorted({t.name for t in tables if t.name not in ALLOWED_TABLES})
            if disallowed:
                return ValidationFailure(
                    f"Query references tables outside {', '.join(ALLOWED_TABLES)}: "
                    f"{', '.join(disallowed)}"
                )
            for scope in scopes:
                _check_tenant_filter(scope)
        except _Rejected as exc:
            return ValidationFailure(str(exc))

        safe_tenant = sanitize_tenant_id(tenant_id or "")
        if not safe_tenant:
            return ValidationFailure("Tenant id is empty after sanitization")

        sql = self._enforce_limit(sql, _mask_literals(sql))
        sql = _PLACEHOLDER.sub(lambda _: f"'{safe_tenant}'", sql)
        sql = self._quote_tables(sql)

        logger.debug("Sandboxed query for %s: %s", safe_tenant, sql)
        return SandboxedQuery(raw=raw_query, rewritten=sql, target_entity=tables[0].name)

    # ------------------------------------------------------------------
    # Rewrites
    # ------------------------------------------------------------------

    def _enforce_limit(self, sql: str, masked: str) -> str:
        depths = _depths(masked)
        top_level = [m for m in _LIMIT.finditer(masked) if depths[m.start()] == 0]
        if not top_level:
            logger.info("Auto-added LIMIT %d to query", self._max_rows)
            return f"{sql} LIMIT {self._max_rows}"

        match = top_level[-1]
        if int(match.group(1)) <= self._max_rows:
            return sql
        logger.info("Clamped LIMIT %s to %d", match.group(1), self._max_rows)
        return sql[:match.start(1)] + str(self._max_rows) + sql[match.end(1):]

    @staticmethod
    def _quote_tables(sql: str) -> str:
        """Double-quote bare allow-listed table names outside string literals."""
        parts: list[str] = []
        last = 0
        for literal in _STRING_LITERAL.finditer(sql):
            parts.append(_UNQUOTED_TABLE.sub(r'"\1"', sql[last:literal.start()]))
            parts.append(literal.group())
            last = literal.end()
        parts.append(_UNQUOTED_TABLE.sub(r'"\1"', sql[last:]))
        return "".join(parts)
