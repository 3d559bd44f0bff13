"""Turns a chat message into a ClickHouse query and the query result into a reply."""

import logging
from typing import Any

from .clickhouse import ClickHouseClient, format_csv_as_table
from .query_log import NullQueryLog, QueryLog
from .sql_utils import QueryCheckError

logger = logging.getLogger(__name__)

NO_QUERY_REPLY = "Please provide a query"

# Formats whose output format_csv_as_table can render
_TABLE_FORMATS = {"CSVWithNames"}


class QueryBridge:
    """Runs user SQL through the rewrite policy and ClickHouse."""

    def __init__(self, client: ClickHouseClient, query_log: QueryLog | None = None):
        self.client = client
        self.query_log = query_log or NullQueryLog()

    def execute(self, text: str, source: str = "chat") -> dict[str, Any]:
        """Rewrite and execute one query.

        Returns:
            The execute_query() result dictionary.

        Raises:
            QueryCheckError: If the query was rejected before execution.
        """
        self.query_log.log_received(text, source)
        try:
            sql = self.client.prepare_sql(text)
        except QueryCheckError as e:
            logger.info("Rejected query from %s: %s", source, e)
            self.query_log.log_rejected(text, e)
            raise
        self.query_log.log_rewritten(text, sql)

        with self.query_log.timed_event() as timer:
            result = self.client.execute_query(sql, prepare=False)

        if result["success"]:
            self.query_log.log_executed(sql, timer.duration, len(result["text"].encode("utf-8")))
        else:
            self.query_log.log_failed(sql, result.get("error_code"), result["error_message"], timer.duration)
        return result

    def render(self, text: str) -> str:
        """Wrap a result body in a code block, as a table when the format allows."""
        if self.client.policy.target_format in _TABLE_FORMATS:
            text = format_csv_as_table(text)
        return f"```\n{text.rstrip()}\n```"

    def answer(self, text: str | None, source: str = "chat") -> str:
        """Produce the chat reply for a message."""
        if text is None or not text.strip():
            return NO_QUERY_REPLY

        try:
            result = self.execute(text, source)
        except QueryCheckError as e:
            return str(e)

        if not result["success"]:
            return f"Query failed: {result['error_message']}"
        return self.render(result["text"])
