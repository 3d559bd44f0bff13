"""
Tests for query rewriting (row ceiling and output format) and ClickHouse
error extraction.
"""

import logging

import pytest

from chbot.clauses import analyze
from chbot.config import RewritePolicy
from chbot.sql_utils import (
    EmptyQueryError,
    MalformedQueryError,
    MultipleStatementsError,
    QueryCheckError,
    extract_clickhouse_error,
    format_query,
    rewrite,
)


SAMPLE_QUERIES = [
    "SELECT * FROM events",
    "SELECT * FROM events LIMIT 5",
    "SELECT * FROM events LIMIT 1000",
    "SELECT * FROM events LIMIT 5 FORMAT JSON",
    "SELECT 'LIMIT 9999' AS note FROM events",
    "SELECT * FROM events LIMIT 0",
    "SELECT * FROM events FORMAT Pretty LIMIT 3;",
    "SELECT 1 LIMIT 5 LIMIT 10 LIMIT 100000",
    "SELECT 1 -- LIMIT 5",
    "SELECT 1; -- done",
    "SELECT * FROM t LIMIT abc",
    "SELECT domain FROM hits LIMIT 2 BY domain",
    "SELECT a FROM x UNION ALL SELECT b FROM y LIMIT 500",
    "SELECT a FROM x UNION ALL SELECT b FROM y -- both",
    "SELECT * FROM (SELECT * FROM t LIMIT 1000000) FORMAT JSONEachRow",
    "SELECT *\n  FROM events\n  LIMIT 5\n  FORMAT JSON\n",
    "WITH x AS (SELECT 1 LIMIT 99) SELECT * FROM x LIMIT 7",
    "SELECT format FROM t",
    "SELECT format, count() FROM t GROUP BY format HAVING count() > 1",
    "SELECT * FROM t ORDER BY limit DESC LIMIT 50",
    "SELECT * FROM t LIMIT 5 OFFSET 2",
    "SELECT * FROM t LIMIT 2, 500",
    "SELECT * FROM t ORDER BY x LIMIT 3 WITH TIES FORMAT JSON",
    "SELECT * FROM t SETTINGS max_threads = 1",
    "SELECT * FROM t LIMIT 1000 SETTINGS max_threads = 1;",
]


class TestBasicRewrites:
    """Ceiling of 10, CSVWithNames output."""

    @pytest.mark.parametrize(
        "query, expected",
        [
            ("SELECT * FROM events", "SELECT * FROM events LIMIT 10 FORMAT CSVWithNames"),
            ("SELECT * FROM events LIMIT 5", "SELECT * FROM events LIMIT 5 FORMAT CSVWithNames"),
            ("SELECT * FROM events LIMIT 1000", "SELECT * FROM events LIMIT 10 FORMAT CSVWithNames"),
            ("SELECT * FROM events LIMIT 5 FORMAT JSON", "SELECT * FROM events LIMIT 5 FORMAT CSVWithNames"),
            (
                "SELECT 'LIMIT 9999' AS note FROM events",
                "SELECT 'LIMIT 9999' AS note FROM events LIMIT 10 FORMAT CSVWithNames",
            ),
        ],
    )
    def test_scenario(self, policy, query, expected):
        assert format_query(query, policy) == expected

    @pytest.mark.parametrize("query", ["", "  ", "\n\t", None])
    def test_blank_query_rejected(self, policy, query):
        with pytest.raises(EmptyQueryError):
            format_query(query, policy)


class TestLimit:
    """Row ceiling handling."""

    def test_limit_equal_to_ceiling_kept(self, policy):
        assert format_query("SELECT 1 LIMIT 10", policy) == "SELECT 1 LIMIT 10 FORMAT CSVWithNames"

    def test_limit_zero_replaced(self, policy):
        assert format_query("SELECT 1 LIMIT 0", policy) == "SELECT 1 LIMIT 10 FORMAT CSVWithNames"

    def test_last_limit_governs_and_all_are_removed(self, policy):
        assert format_query("SELECT 1 LIMIT 5 LIMIT 1000", policy) == "SELECT 1 LIMIT 10 FORMAT CSVWithNames"
        assert format_query("SELECT 1 LIMIT 1000 LIMIT 5", policy) == "SELECT 1 LIMIT 5 FORMAT CSVWithNames"

    def test_subquery_limit_untouched(self, policy):
        assert (
            format_query("SELECT * FROM (SELECT * FROM t LIMIT 1000)", policy)
            == "SELECT * FROM (SELECT * FROM t LIMIT 1000) LIMIT 10 FORMAT CSVWithNames"
        )

    def test_commented_limit_untouched(self, policy):
        assert (
            format_query("SELECT * FROM t /* LIMIT 5 */", policy)
            == "SELECT * FROM t /* LIMIT 5 */ LIMIT 10 FORMAT CSVWithNames"
        )

    def test_malformed_limit_fails_open(self, policy):
        """The bad clause stays; the server reports it, the ceiling is still appended."""
        assert (
            format_query("SELECT * FROM t LIMIT abc", policy)
            == "SELECT * FROM t LIMIT abc LIMIT 10 FORMAT CSVWithNames"
        )

    def test_limit_by_kept(self, policy):
        assert (
            format_query("SELECT domain FROM hits LIMIT 2 BY domain", policy)
            == "SELECT domain FROM hits LIMIT 2 BY domain LIMIT 10 FORMAT CSVWithNames"
        )

    def test_custom_ceiling(self):
        policy = RewritePolicy(max_rows=100, target_format="JSONEachRow")
        assert format_query("SELECT 1 LIMIT 50", policy) == "SELECT 1 LIMIT 50 FORMAT JSONEachRow"
        assert format_query("SELECT 1 LIMIT 500", policy) == "SELECT 1 LIMIT 100 FORMAT JSONEachRow"


class TestFormat:
    """Output format handling."""

    def test_format_before_limit_is_moved(self, policy):
        assert (
            format_query("SELECT * FROM events FORMAT JSON LIMIT 3", policy)
            == "SELECT * FROM events LIMIT 3 FORMAT CSVWithNames"
        )

    def test_target_format_moved_to_end(self, policy):
        assert (
            format_query("SELECT 1 FORMAT CSVWithNames LIMIT 2", policy)
            == "SELECT 1 LIMIT 2 FORMAT CSVWithNames"
        )

    @pytest.mark.parametrize(
        "query",
        [
            "SELECT format FROM t",
            "SELECT x FROM t ORDER BY format DESC",
            "SELECT format, count() FROM t GROUP BY format HAVING count() > 1",
            "SELECT limit, format FROM t WHERE format = 'JSON'",
            "SELECT x format FROM t",
        ],
    )
    def test_format_column_kept(self, policy, query):
        """A column or alias named format is part of the body."""
        assert format_query(query, policy) == f"{query} LIMIT 10 FORMAT CSVWithNames"

    def test_format_column_and_format_clause(self, policy):
        assert (
            format_query("SELECT format FROM t ORDER BY format FORMAT JSON", policy)
            == "SELECT format FROM t ORDER BY format LIMIT 10 FORMAT CSVWithNames"
        )


class TestLayout:
    """Whitespace, semicolons and comments around the rewritten clauses."""

    def test_trailing_semicolon_stripped(self, policy):
        assert format_query("SELECT * FROM events LIMIT 5;", policy) == "SELECT * FROM events LIMIT 5 FORMAT CSVWithNames"
        assert format_query("SELECT 1 ;  ", policy) == "SELECT 1 LIMIT 10 FORMAT CSVWithNames"

    def test_whitespace_collapsed_around_removed_clauses(self, policy):
        query = "SELECT *\n  FROM events\n  LIMIT 5\n  FORMAT JSON\n"
        assert format_query(query, policy) == "SELECT *\n  FROM events LIMIT 5 FORMAT CSVWithNames"

    def test_leading_whitespace_stripped(self, policy):
        assert format_query("   SELECT 1", policy) == "SELECT 1 LIMIT 10 FORMAT CSVWithNames"

    def test_trailing_line_comment(self, policy):
        """Appended clauses must not land inside a -- comment."""
        assert format_query("SELECT 1 -- note", policy) == "SELECT 1 -- note\nLIMIT 10 FORMAT CSVWithNames"

    def test_comment_after_semicolon(self, policy):
        assert format_query("SELECT 1; -- done", policy) == "SELECT 1 -- done\nLIMIT 10 FORMAT CSVWithNames"

    def test_removed_clause_before_line_comment(self, policy):
        query = "SELECT 1 -- first\nLIMIT 500 -- second"
        assert format_query(query, policy) == "SELECT 1 -- first\n-- second\nLIMIT 10 FORMAT CSVWithNames"


class TestSetOperations:
    """UNION and friends are wrapped so the LIMIT caps the whole result."""

    def test_union_wrapped(self, policy):
        assert (
            format_query("SELECT a FROM x UNION ALL SELECT b FROM y LIMIT 500", policy)
            == "SELECT * FROM (SELECT a FROM x UNION ALL SELECT b FROM y) LIMIT 10 FORMAT CSVWithNames"
        )

    def test_branch_limit_stays_in_branch(self, policy):
        assert (
            format_query("SELECT a FROM x LIMIT 3 UNION ALL SELECT b FROM y", policy)
            == "SELECT * FROM (SELECT a FROM x LIMIT 3 UNION ALL SELECT b FROM y) LIMIT 10 FORMAT CSVWithNames"
        )

    @pytest.mark.parametrize(
        "query, body",
        [
            ("SELECT * FROM t LIMIT 5 OFFSET 2", "SELECT * FROM t LIMIT 5 OFFSET 2"),
            ("SELECT * FROM t LIMIT 2, 500", "SELECT * FROM t LIMIT 2, 500"),
            ("SELECT * FROM t ORDER BY x LIMIT 3 WITH TIES", "SELECT * FROM t ORDER BY x LIMIT 3 WITH TIES"),
            ("SELECT * FROM t SETTINGS max_threads = 1", "SELECT * FROM t SETTINGS max_threads = 1"),
            ("SELECT * FROM t LIMIT 5 OFFSET 2 FORMAT JSON;", "SELECT * FROM t LIMIT 5 OFFSET 2"),
        ],
    )
    def test_offset_ties_and_settings_wrapped(self, policy, query, body):
        """Appending LIMIT after these forms would not parse."""
        assert format_query(query, policy) == f"SELECT * FROM ({body}) LIMIT 10 FORMAT CSVWithNames"

    def test_limit_before_settings_moves_outside(self, policy):
        assert (
            format_query("SELECT * FROM t LIMIT 3 SETTINGS max_threads = 1", policy)
            == "SELECT * FROM (SELECT * FROM t SETTINGS max_threads = 1) LIMIT 3 FORMAT CSVWithNames"
        )

    def test_union_ending_in_comment(self, policy):
        assert (
            format_query("SELECT 1 UNION ALL SELECT 2 -- both", policy)
            == "SELECT * FROM (SELECT 1 UNION ALL SELECT 2 -- both\n) LIMIT 10 FORMAT CSVWithNames"
        )


class TestRejections:
    """Queries that cannot be made safe."""

    @pytest.mark.parametrize("query", ["-- nothing here", "/* nor here */ ;", ";", "LIMIT 5 FORMAT JSON"])
    def test_no_sql_left(self, policy, query):
        with pytest.raises(EmptyQueryError):
            format_query(query, policy)

    @pytest.mark.parametrize("query", ["SELECT 1; SELECT 2", "SELECT 1;;", "SELECT 1; DROP TABLE t"])
    def test_multiple_statements(self, policy, query):
        with pytest.raises(MultipleStatementsError):
            format_query(query, policy)

    @pytest.mark.parametrize(
        "query, fragment",
        [
            ("SELECT 'abc", "string literal"),
            ("SELECT 1 /* LIMIT 5", "block comment"),
            ("SELECT (1", "parentheses"),
            ("SELECT 1) LIMIT 100000 (", "parentheses"),
        ],
    )
    def test_malformed_structure(self, policy, query, fragment):
        with pytest.raises(MalformedQueryError, match=fragment):
            format_query(query, policy)

    def test_errors_share_a_base_class(self):
        assert issubclass(EmptyQueryError, QueryCheckError)
        assert issubclass(MalformedQueryError, QueryCheckError)
        assert issubclass(MultipleStatementsError, QueryCheckError)
        assert issubclass(QueryCheckError, ValueError)


class TestInvariants:
    """Properties that hold for every accepted query."""

    @pytest.mark.parametrize("query", SAMPLE_QUERIES)
    def test_idempotent(self, policy, query):
        once = format_query(query, policy)
        assert format_query(once, policy) == once

    @pytest.mark.parametrize("query", SAMPLE_QUERIES)
    @pytest.mark.parametrize("max_rows", [1, 10, 250])
    def test_ceiling_and_format(self, query, max_rows):
        policy = RewritePolicy(max_rows=max_rows, target_format="CSVWithNames")
        out = format_query(query, policy)
        analysis = analyze(out)

        assert out.endswith(" FORMAT CSVWithNames")
        assert len(analysis.formats) == 1
        assert len(analysis.limits) == 1
        assert 0 < analysis.limit.value <= max_rows
        assert analysis.semicolons == ()

    def test_rewrite_does_not_reanalyze(self, policy):
        """rewrite() works from the supplied analysis."""
        query = "SELECT 1 LIMIT 3"
        assert rewrite(query, analyze(query), policy) == "SELECT 1 LIMIT 3 FORMAT CSVWithNames"

    def test_capping_is_logged(self, policy, caplog):
        with caplog.at_level(logging.DEBUG, logger="chbot.sql_utils"):
            format_query("SELECT 1 LIMIT 50 FORMAT JSON", policy)
        assert "LIMIT 50 capped to 10" in caplog.text
        assert "FORMAT JSON replaced by CSVWithNames" in caplog.text


class TestExtractClickHouseError:
    """Concise error messages for chat replies."""

    def test_plain_error_passes_through(self):
        assert extract_clickhouse_error("connection refused") == (None, "connection refused")

    def test_http_driver_error(self):
        error = Exception(
            "HTTPDriver for https://ch.example.com:443 received ClickHouse error code 62\n"
            " Code: 62. DB::Exception: Syntax error: failed at position 8 (end of query): "
            "Expected one of: token. (SYNTAX_ERROR) (version 24.3.1.1)"
        )
        code, message = extract_clickhouse_error(error)
        assert code == 62
        assert message == "Syntax error: failed at position 8 (end of query): Expected one of: token."

    def test_json_server_response(self):
        error = (
            'ClickHouse exception, server response: '
            '{"error": "Code: 60. DB::Exception: Unknown table expression identifier \'nope\'. (UNKNOWN_TABLE)"} '
            "(for url https://ch.example.com)"
        )
        code, message = extract_clickhouse_error(error)
        assert code == 60
        assert message == "Unknown table expression identifier 'nope'."


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
