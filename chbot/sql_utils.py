"""
SQL utilities: query rewriting and error handling for chbot
"""

import json
import logging
import re
from collections.abc import Iterable
from typing import Any

from .clauses import AnalysisResult, analyze, ends_in_line_comment, has_code
from .config import RewritePolicy

logger = logging.getLogger(__name__)


class QueryCheckError(ValueError):
    """Raised when a query cannot be made safe to execute."""


class EmptyQueryError(QueryCheckError):
    """The query has no SQL in it."""


class MalformedQueryError(QueryCheckError):
    """The query's structure prevents appending top-level clauses."""


class MultipleStatementsError(QueryCheckError):
    """More than one statement was submitted."""


def _join(left: str, right: str) -> str:
    """Join two pieces of a query around a removed clause."""
    left = left.rstrip()
    right = right.lstrip()
    if not left or not right:
        return left + right
    separator = "\n" if ends_in_line_comment(left) else " "
    return left + separator + right


def _remove_spans(query: str, spans: Iterable[tuple[int, int]]) -> str:
    body = ""
    cursor = 0
    for start, end in sorted(spans):
        body = _join(body, query[cursor:start])
        cursor = end
    return _join(body, query[cursor:])


def _terminator_span(query: str, analysis: AnalysisResult) -> tuple[int, int] | None:
    """Locate the single trailing semicolon, rejecting anything after it."""
    if not analysis.semicolons:
        return None
    for offset in analysis.semicolons:
        if has_code(query[offset + 1:]):
            raise MultipleStatementsError("Only one statement per query is allowed")
    if len(analysis.semicolons) > 1:
        raise MultipleStatementsError("Only one statement per query is allowed")
    offset = analysis.semicolons[0]
    return offset, offset + 1


def rewrite(query: str, analysis: AnalysisResult, policy: RewritePolicy) -> str:
    """
    Enforce the row ceiling and output format on an analyzed query.

    - Every top-level LIMIT/FORMAT clause and a trailing ';' are removed
    - The governing LIMIT is kept if 0 < n <= max_rows, else replaced by max_rows
    - The result always ends with `LIMIT n FORMAT <target_format>`
    - Set operations, LIMIT ... OFFSET/WITH TIES and SETTINGS are wrapped in
      SELECT * FROM (...) so the appended LIMIT caps the whole result
    - Malformed clauses are left in place; the server reports them

    Raises:
        MalformedQueryError: Unterminated literal/comment or unbalanced parentheses
        MultipleStatementsError: SQL follows a top-level ';'
        EmptyQueryError: Nothing but comments or removed clauses
    """
    if analysis.unterminated:
        raise MalformedQueryError(f"Query ends inside an unterminated {analysis.unterminated}")
    if not analysis.balanced:
        raise MalformedQueryError("Query has unbalanced parentheses")

    spans: list[tuple[int, int]] = [(c.start, c.end) for c in analysis.trailing_clauses]
    terminator = _terminator_span(query, analysis)
    if terminator is not None:
        spans.append(terminator)

    body = _remove_spans(query, spans).strip()
    if not has_code(body):
        raise EmptyQueryError("Please provide a query")

    if analysis.needs_wrapping:
        closing = "\n)" if ends_in_line_comment(body) else ")"
        body = f"SELECT * FROM ({body}{closing}"

    rows = policy.max_rows
    governing = analysis.limit
    if governing is not None and 0 < governing.value <= policy.max_rows:
        rows = governing.value

    separator = "\n" if ends_in_line_comment(body) else " "
    return f"{body}{separator}LIMIT {rows} FORMAT {policy.target_format}"


def format_query(query: str | None, policy: RewritePolicy) -> str:
    """Analyze and rewrite raw user SQL in one step.

    Blank input is rejected before any analysis.
    """
    if query is None or not query.strip():
        raise EmptyQueryError("Please provide a query")

    analysis = analyze(query)
    for clause in analysis.malformed:
        logger.debug(
            "Malformed %s clause at offset %d left in place",
            clause.kind.value,
            clause.start,
        )

    rewritten = rewrite(query, analysis, policy)

    governing = analysis.limit
    if governing is not None and governing.value > policy.max_rows:
        logger.debug("LIMIT %d capped to %d", governing.value, policy.max_rows)
    if analysis.format is not None and analysis.format.value != policy.target_format:
        logger.debug("FORMAT %s replaced by %s", analysis.format.value, policy.target_format)
    return rewritten


def extract_clickhouse_error(error: Any) -> tuple[int | None, str]:
    """
    Extract the error code and a concise message from a ClickHouse exception.
    Accepts exception objects or strings.
    """
    error_str = str(error)

    # Quick check if it's a ClickHouse error
    markers = ['ClickHouse exception', 'DB::Exception', 'Code:']
    if not any(marker in error_str for marker in markers):
        return None, error_str

    full_error = error_str

    # HTTP errors embed the server response as JSON
    json_match = re.search(r'server response:\s*(\{.*?\})\s*(?:\(for url|$)', error_str, re.DOTALL)
    if json_match:
        try:
            full_error = json.loads(json_match.group(1)).get('error', error_str)
        except json.JSONDecodeError:
            pass

    code = None
    code_match = re.search(r"Code:\s*(\d+)\.", full_error)
    if code_match:
        code = int(code_match.group(1))

    message = full_error
    if "DB::Exception:" in full_error:
        message = full_error.split("DB::Exception:", 1)[1].strip()
    # Drop trailing "(SYNTAX_ERROR) (version 24.3.1.1)" suffixes
    message = re.sub(r"\s*\(version [^)]*\)\s*$", "", message)
    message = re.sub(r"\s*\(\w+\)\s*$", "", message)
    return code, message.strip()
