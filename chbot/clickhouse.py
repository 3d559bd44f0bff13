"""ClickHouse query execution for chbot."""

import csv
import io
import logging
import time
from typing import Any
from urllib.parse import urlparse

import clickhouse_connect

from .config import ClickHouseSettings, RewritePolicy
from .sql_utils import extract_clickhouse_error, format_query

logger = logging.getLogger(__name__)


class ClickHouseClient:
    """ClickHouse client for chat queries.

    Provides methods for:
    - Rewriting user SQL so it is capped and returns the policy format
    - Executing it over the HTTP interface and returning the raw result text
    - Rendering CSV results as a plain-text table
    """

    def __init__(self, settings: ClickHouseSettings, policy: RewritePolicy):
        """Initialize ClickHouse client.

        Args:
            settings: Connection settings (base URL and credentials).
            policy: Row ceiling and output format applied to every query.
        """
        self.settings = settings
        self.policy = policy

        parsed = urlparse(settings.url)
        self.interface = parsed.scheme
        self.host = parsed.hostname
        self.port = parsed.port or (443 if parsed.scheme == "https" else 80)

        self._client = None

    def _get_client(self):
        """Get or create ClickHouse client connection."""
        if self._client is None:
            self._client = clickhouse_connect.get_client(
                host=self.host,
                port=self.port,
                interface=self.interface,
                username=self.settings.user,
                password=self.settings.password,
                connect_timeout=self.settings.connect_timeout,
                send_receive_timeout=self.settings.send_receive_timeout,
            )
        return self._client

    def close(self):
        """Close the ClickHouse client connection."""
        if self._client is not None and hasattr(self._client, "close"):
            self._client.close()
            self._client = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
        return False

    def prepare_sql(self, sql: str) -> str:
        """Rewrite SQL so it ends with the policy LIMIT and FORMAT.

        Raises:
            QueryCheckError: If the query cannot be made safe.
        """
        return format_query(sql, self.policy)

    def _query_settings(self) -> dict[str, Any]:
        # Backs up the LIMIT for statements the rewrite cannot cap alone
        if not self.settings.enforce_result_rows:
            return {}
        return {
            "max_result_rows": self.policy.max_rows,
            "result_overflow_mode": "break",
        }

    def execute_query(self, sql: str, prepare: bool = True) -> dict[str, Any]:
        """Execute a SQL query and return its raw result.

        Rewrite errors (QueryCheckError) propagate to the caller; anything
        that goes wrong talking to ClickHouse is returned as data.

        Args:
            sql: SQL query to execute
            prepare: If True, apply prepare_sql() first

        Returns:
            Dictionary with:
                - success: bool
                - text: result body in the policy format (if success)
                - elapsed: seconds spent in ClickHouse (if success)
                - error: full error string (if not success)
                - error_code: ClickHouse error code, if one was reported
                - error_message: concise error message (if not success)
                - sql: the SQL that was sent
        """
        executed_sql = self.prepare_sql(sql) if prepare else sql
        try:
            client = self._get_client()
            started = time.perf_counter()
            raw = client.raw_query(executed_sql, settings=self._query_settings())
            elapsed = time.perf_counter() - started
        except Exception as e:
            error_code, error_message = extract_clickhouse_error(e)
            logger.warning("`%s` failed: %s", executed_sql, error_message)
            return {
                "success": False,
                "error": str(e),
                "error_code": error_code,
                "error_message": error_message,
                "sql": executed_sql,
            }

        logger.info("`%s` took %.3fs", executed_sql, elapsed)
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw)
        return {
            "success": True,
            "text": text,
            "elapsed": elapsed,
            "sql": executed_sql,
        }


def format_csv_as_table(text: str) -> str:
    """Format CSVWithNames output as a plain-text table.

    Args:
        text: CSV with a header row

    Returns:
        Formatted table string
    """
    records = [row for row in csv.reader(io.StringIO(text)) if row]
    if len(records) < 2:
        return "No rows returned"

    headers = records[0]
    str_rows: list[list[str]] = []
    for row in records[1:]:
        # Pad or trim so ragged rows still line up under the header
        row = (row + [""] * len(headers))[:len(headers)]
        str_rows.append(["NULL" if val == "\\N" else val for val in row])

    # Compute column widths
    col_widths = [len(h) for h in headers]
    for row in str_rows:
        for idx, val in enumerate(row):
            col_widths[idx] = max(col_widths[idx], len(val))

    def _fmt_row(row: list[str]) -> str:
        return " | ".join(val.ljust(col_widths[idx]) for idx, val in enumerate(row)).rstrip()

    header_line = _fmt_row(headers)
    separator = "-+-".join("-" * width for width in col_widths)
    data_lines = [_fmt_row(row) for row in str_rows]

    return "\n".join([header_line, separator] + data_lines)
