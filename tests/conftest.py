import clickhouse_connect
import pytest

from chbot.config import ENV_OVERRIDES, RewritePolicy


class FakeClickHouseClient:
    """Stands in for a clickhouse_connect HTTP client."""

    def __init__(self):
        self.kwargs = {}
        self.queries = []
        self.response = b"n\n1\n"
        self.error = None
        self.closed = False

    def raw_query(self, query, settings=None):
        self.queries.append((query, settings))
        if self.error is not None:
            raise self.error
        return self.response

    def close(self):
        self.closed = True


@pytest.fixture
def fake_clickhouse(monkeypatch):
    """Replace clickhouse_connect.get_client with a recording fake."""
    fake = FakeClickHouseClient()

    def get_client(**kwargs):
        fake.kwargs = kwargs
        return fake

    monkeypatch.setattr(clickhouse_connect, "get_client", get_client)
    return fake


@pytest.fixture
def policy():
    """Ceiling of 10 rows, CSVWithNames output."""
    return RewritePolicy(max_rows=10, target_format="CSVWithNames")


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Run without CHBOT_* variables and without a ./config.yaml."""
    for variable in ENV_OVERRIDES:
        monkeypatch.delenv(variable, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path
