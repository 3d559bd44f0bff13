#!/usr/bin/env python3
"""
chbot - Chat bridge to a ClickHouse HTTP endpoint

Usage:
    # Answer chat webhooks
    uv run -m chbot --user reader --password secret serve

    # Run a single query from the terminal
    uv run -m chbot query "SELECT count() FROM nxthdr.bgp_updates"

    # Show what would be sent, without running it
    uv run -m chbot --output-limit 100 rewrite "SELECT * FROM events LIMIT 1000"
"""

import argparse
import logging
import sys
from pathlib import Path

from .bot import create_app
from .bridge import QueryBridge
from .clickhouse import ClickHouseClient, format_csv_as_table
from .config import AppConfig, ConfigError, load_config
from .query_log import create_query_log
from .sql_utils import QueryCheckError, format_query

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
_LEVELS = [logging.ERROR, logging.WARNING, logging.INFO, logging.DEBUG]


def _parse_cli_args(argv):
    """Parse global flags and the subcommand."""
    parser = argparse.ArgumentParser(
        prog="chbot",
        description="Run SQL from chat against a ClickHouse HTTP endpoint",
    )
    parser.add_argument("--config", type=Path, metavar="FILE", help="YAML config file (default: ./config.yaml)")
    parser.add_argument("--url", help="ClickHouse base URL")
    parser.add_argument("-u", "--user", help="ClickHouse user")
    parser.add_argument("-p", "--password", help="ClickHouse password")
    parser.add_argument("-t", "--token", help="Webhook token shared with the chat platform")
    parser.add_argument("--output-limit", type=int, metavar="N", help="Max output rows")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="More log output (repeatable)")
    parser.add_argument("-q", "--quiet", action="count", default=0, help="Less log output (repeatable)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Serve the chat webhook")
    serve.add_argument("--host", help="Bind address")
    serve.add_argument("--port", type=int, help="Bind port")

    query = subparsers.add_parser("query", help="Run one query and print the result")
    query.add_argument("--csv", action="store_true", help="Print the raw result instead of a table")
    query.add_argument("sql", nargs="*", help="SQL query (read from stdin when omitted)")

    rewrite = subparsers.add_parser("rewrite", help="Print the query that would be sent")
    rewrite.add_argument("sql", nargs="*", help="SQL query (read from stdin when omitted)")

    return parser.parse_args(argv)


def _cli_overrides(args) -> dict:
    return {
        "clickhouse": {"url": args.url, "user": args.user, "password": args.password},
        "bot": {
            "token": args.token,
            "host": getattr(args, "host", None),
            "port": getattr(args, "port", None),
        },
        "query": {"output_limit": args.output_limit},
    }


def _set_logging(config: AppConfig, verbose: int, quiet: int):
    base = logging.getLevelName(config.logging.level.upper())
    index = _LEVELS.index(base) if base in _LEVELS else _LEVELS.index(logging.INFO)
    index = max(0, min(len(_LEVELS) - 1, index + verbose - quiet))
    logging.basicConfig(level=_LEVELS[index], format=LOG_FORMAT)


def _read_sql(parts: list[str]) -> str:
    if parts:
        return " ".join(parts).strip()
    try:
        return input("Enter a SQL query: ").strip()
    except EOFError:
        return ""


def _serve(config: AppConfig) -> int:
    query_log = create_query_log(config.logging)
    with ClickHouseClient(config.clickhouse, config.policy) as client:
        app = create_app(config, QueryBridge(client, query_log))
        logger.info(
            "Serving webhook on http://%s:%d/webhook (ClickHouse: %s, limit: %d)",
            config.bot.host,
            config.bot.port,
            config.clickhouse.url,
            config.policy.max_rows,
        )
        try:
            app.run(
                host=config.bot.host,
                port=config.bot.port,
                debug=False,
                reloader=False,  # Disable auto-reload (causes double process)
                quiet=True,
            )
        finally:
            query_log.close()
    return 0


def _query(config: AppConfig, sql: str, raw: bool) -> int:
    query_log = create_query_log(config.logging)
    try:
        with ClickHouseClient(config.clickhouse, config.policy) as client:
            result = QueryBridge(client, query_log).execute(sql, source="cli")
    except QueryCheckError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        query_log.close()

    if not result["success"]:
        print(f"Query failed: {result['error_message']}", file=sys.stderr)
        return 1

    if raw or config.policy.target_format != "CSVWithNames":
        print(result["text"], end="" if result["text"].endswith("\n") else "\n")
    else:
        print(format_csv_as_table(result["text"]))
    return 0


def _rewrite(config: AppConfig, sql: str) -> int:
    try:
        print(format_query(sql, config.policy))
    except QueryCheckError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    """Run chbot"""
    args = _parse_cli_args(sys.argv[1:] if argv is None else argv)

    try:
        config = load_config(args.config, overrides=_cli_overrides(args))
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    _set_logging(config, args.verbose, args.quiet)

    if args.command == "serve":
        return _serve(config)
    if args.command == "query":
        return _query(config, _read_sql(args.sql), args.csv)
    return _rewrite(config, _read_sql(args.sql))
