"""
chbot - Chat bridge to a ClickHouse HTTP endpoint

Users post SQL in a chat channel; the bot caps the row count, forces the
result format, runs the query over HTTP and replies with the result table.
"""

from .main import main

__version__ = "0.1.0"
__all__ = ["main"]
