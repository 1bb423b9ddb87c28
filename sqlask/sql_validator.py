from __future__ import annotations

import re
from typing import List

import sqlparse
from sqlparse import tokens as T
from sqlparse.sql import Statement, Token

from .errors import QuerySafetyViolation
from .logging_utils import get_logger

logger = get_logger(__name__)

FORBIDDEN_KEYWORDS = frozenset(
    {
        "INSERT",
        "UPDATE",
        "DELETE",
        "DROP",
        "ALTER",
        "CREATE",
        "TRUNCATE",
        "GRANT",
        "REVOKE",
        "MERGE",
        "CALL",
        "EXEC",
        "EXECUTE",
        "COPY",
        "VACUUM",
        "REINDEX",
        "INTO",
    }
)


class SQLValidator:
    """Rejects anything that is not exactly one read-only statement.

    The raw text is first lexed with PostgreSQL quoting rules, so a statement
    boundary that sqlparse misses (it reads backslash escapes in plain string
    literals) is still found. Then the sqlparse tokens are scanned (keywords
    inside string literals, quoted identifiers and comments never match) and
    a single SELECT-typed statement with no data-modifying or DDL token
    anywhere in it is required. The SQL text is never rewritten; a violation
    is raised instead.
    """

    def ensure_read_only(self, sql: str) -> str:
        statement = sql.strip()
        if not statement:
            raise QuerySafetyViolation("empty SQL statement")
        _enforce_postgres_boundaries(statement)

        statements = [s for s in sqlparse.parse(statement) if _meaningful(s)]
        if len(statements) != 1:
            logger.error("sql_multiple_statements", statements=len(statements))
            raise QuerySafetyViolation("exactly one statement is required")
        parsed = statements[0]

        tokens = list(parsed.flatten())
        self._enforce_keywords(tokens)
        self._enforce_single_terminator(tokens)
        self._enforce_select(parsed, tokens)
        return statement.rstrip(";").rstrip()

    def _enforce_keywords(self, tokens: List[Token]) -> None:
        for token in tokens:
            if _is_inert(token):
                continue
            word = token.value.upper()
            if word in FORBIDDEN_KEYWORDS:
                logger.error("sql_forbidden_keyword", keyword=word)
                raise QuerySafetyViolation(f"forbidden keyword {word}")

    def _enforce_single_terminator(self, tokens: List[Token]) -> None:
        for index, token in enumerate(tokens):
            if token.ttype is T.Punctuation and token.value == ";":
                trailing = [t for t in tokens[index + 1 :] if not _is_inert(t) and t.value != ";"]
                if trailing:
                    raise QuerySafetyViolation("multiple statements are not allowed")

    def _enforce_select(self, parsed: Statement, tokens: List[Token]) -> None:
        kind = parsed.get_type()
        if kind != "SELECT":
            raise QuerySafetyViolation(f"only SELECT statements are allowed, got {kind}")
        for token in tokens:
            if token.ttype in T.Keyword.DDL or (token.ttype in T.Keyword.DML and token.normalized != "SELECT"):
                raise QuerySafetyViolation(f"statement contains a {token.normalized} clause")


_DOLLAR_TAG = re.compile(r"\$(?:[A-Za-z_][A-Za-z0-9_]*)?\$")


def _enforce_postgres_boundaries(sql: str) -> None:
    """Walk the text as PostgreSQL lexes it and reject anything after a ``;``.

    Standard strings end at the first unpaired quote, and a backslash inside
    one is refused outright because other lexers treat it as an escape.
    ``E''`` strings, dollar quotes, quoted identifiers and nested block
    comments are skipped whole.
    """
    i, n = 0, len(sql)
    terminated = False
    while i < n:
        ch = sql[i]
        pair = sql[i : i + 2]
        if ch.isspace():
            i += 1
            continue
        if pair == "--":
            end = sql.find("\n", i)
            i = n if end == -1 else end + 1
            continue
        if pair == "/*":
            i = _skip_block_comment(sql, i)
            continue
        if ch == ";":
            terminated = True
            i += 1
            continue
        if terminated:
            logger.error("sql_multiple_statements", offset=i)
            raise QuerySafetyViolation("multiple statements are not allowed")
        if ch == "'":
            i = _skip_string(sql, i, escapes=_has_escape_prefix(sql, i))
        elif ch == '"':
            i = _skip_quoted_identifier(sql, i)
        elif ch == "$" and not _continues_word(sql, i):
            tag = _DOLLAR_TAG.match(sql, i)
            if tag is None:
                i += 1
                continue
            end = sql.find(tag.group(0), tag.end())
            if end == -1:
                raise QuerySafetyViolation("unterminated dollar-quoted string")
            i = end + len(tag.group(0))
        else:
            i += 1


def _continues_word(sql: str, i: int) -> bool:
    return i > 0 and (sql[i - 1].isalnum() or sql[i - 1] in "_$")


def _has_escape_prefix(sql: str, i: int) -> bool:
    return i > 0 and sql[i - 1] in "eE" and not _continues_word(sql, i - 1)


def _skip_string(sql: str, start: int, escapes: bool) -> int:
    i, n = start + 1, len(sql)
    while i < n:
        ch = sql[i]
        if ch == "\\":
            if not escapes:
                logger.error("sql_ambiguous_backslash", offset=i)
                raise QuerySafetyViolation("backslash in a string literal is ambiguous, use an E'' string")
            i += 2
            continue
        if ch == "'":
            if sql[i + 1 : i + 2] == "'":
                i += 2
                continue
            return i + 1
        i += 1
    raise QuerySafetyViolation("unterminated string literal")


def _skip_quoted_identifier(sql: str, start: int) -> int:
    i, n = start + 1, len(sql)
    while i < n:
        if sql[i] == '"':
            if sql[i + 1 : i + 2] == '"':
                i += 2
                continue
            return i + 1
        i += 1
    raise QuerySafetyViolation("unterminated quoted identifier")


def _skip_block_comment(sql: str, start: int) -> int:
    depth, i, n = 0, start, len(sql)
    while i < n:
        pair = sql[i : i + 2]
        if pair == "/*":
            depth += 1
            i += 2
        elif pair == "*/":
            depth -= 1
            i += 2
            if depth == 0:
                return i
        else:
            i += 1
    raise QuerySafetyViolation("unterminated block comment")


def _is_inert(token: Token) -> bool:
    return token.is_whitespace or token.ttype in T.Comment or token.ttype in T.Literal.String


def _meaningful(statement: Statement) -> bool:
    return any(not _is_inert(t) and t.value != ";" for t in statement.flatten())


__all__ = ["FORBIDDEN_KEYWORDS", "SQLValidator"]
