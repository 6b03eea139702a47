"""
Pytest fixtures and test configuration for pwms tests.
"""

from unittest.mock import Mock

import pytest

from pwms.api.config import Settings
from pwms.storage import (
    ChangeLog,
    EntityMirrorStore,
    LocalStore,
    MemoryBackend,
    PartitionStore,
)


def make_settings(**overrides) -> Settings:
    """Settings isolated from the environment and any .env file."""
    values = {
        "supabase_url": None,
        "supabase_secret_key": None,
        "supabase_service_role_key": None,
        "storage_path": None,
        "local_first": False,
        "sync_interval_seconds": 0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class FakeSupabaseClient:
    """In-memory stand-in for the supabase ``Client`` query builder.

    Supports the subset the storage layer uses: select/order/limit,
    upsert (with on_conflict and ignore_duplicates), delete with eq/lt
    filters. Set ``fail`` (or add table names to ``fail_tables``) to make
    ``execute()`` raise like an unreachable server; ``fail_reads`` fails that
    many selects only. ``not_null`` maps a table to columns an upserted row
    must carry, as Postgres checks them before resolving the conflict.
    """

    def __init__(self):
        self.tables = {}
        self.calls = []
        self.fail = False
        self.fail_tables = set()
        self.fail_reads = 0
        self.not_null = {}
        self._serial = 0

    def table(self, name: str) -> "FakeQuery":
        self.tables.setdefault(name, [])
        return FakeQuery(self, name)

    def rows(self, name: str) -> list:
        return self.tables.get(name, [])

    def next_serial(self) -> int:
        self._serial += 1
        return self._serial


class FakeQuery:
    def __init__(self, client: FakeSupabaseClient, table: str):
        self.client = client
        self.table = table
        self.op = None
        self.payload = None
        self.options = {}
        self.filters = []
        self._order = None
        self._limit = None

    def select(self, columns="*"):
        self.op = "select"
        return self

    def upsert(self, rows, on_conflict="id", ignore_duplicates=False):
        self.op = "upsert"
        self.payload = rows if isinstance(rows, list) else [rows]
        self.options = {"on_conflict": on_conflict, "ignore_duplicates": ignore_duplicates}
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def in_(self, column, values):
        values = list(values)
        self.filters.append(lambda row: row.get(column) in values)
        return self

    def lt(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and row.get(column) < value)
        return self

    def order(self, column, desc=False):
        self._order = (column, desc)
        return self

    def limit(self, count):
        self._limit = count
        return self

    def _matches(self, row) -> bool:
        return all(check(row) for check in self.filters)

    def execute(self):
        if self.client.fail or self.table in self.client.fail_tables:
            raise ConnectionError("connection refused")
        if self.op == "select" and self.client.fail_reads > 0:
            self.client.fail_reads -= 1
            raise ConnectionError("read timed out")

        self.client.calls.append((self.table, self.op, self.payload))
        rows = self.client.tables[self.table]
        result = Mock()

        if self.op == "select":
            data = [dict(row) for row in rows if self._matches(row)]
            if self._order:
                column, desc = self._order
                data.sort(key=lambda row: row.get(column), reverse=desc)
            if self._limit is not None:
                data = data[: self._limit]
            result.data = data
        elif self.op == "upsert":
            key = self.options["on_conflict"]
            required = self.client.not_null.get(self.table, set())
            for new_row in self.payload:
                missing = sorted(column for column in required if new_row.get(column) is None)
                if missing:
                    raise ValueError(
                        f'null value in column "{missing[0]}" violates not-null constraint'
                    )
            for new_row in self.payload:
                existing = next((row for row in rows if row.get(key) == new_row.get(key)), None)
                if existing is None:
                    row = dict(new_row)
                    row.setdefault("id", self.client.next_serial())
                    rows.append(row)
                elif not self.options["ignore_duplicates"]:
                    existing.update(new_row)
            result.data = [dict(row) for row in self.payload]
        elif self.op == "delete":
            removed = [row for row in rows if self._matches(row)]
            self.client.tables[self.table] = [row for row in rows if not self._matches(row)]
            result.data = removed
        return result


@pytest.fixture
def fake_supabase():
    """Fake Supabase client with in-memory tables."""
    return FakeSupabaseClient()


@pytest.fixture
def memory_store():
    """PartitionStore over the in-memory backend."""
    return PartitionStore(MemoryBackend())


@pytest.fixture
def changelog(memory_store):
    return ChangeLog(memory_store)


@pytest.fixture
def mirror(memory_store, changelog):
    return EntityMirrorStore(memory_store, changelog)


@pytest.fixture
def temp_db(tmp_path):
    """Create a temporary database path."""
    return tmp_path / "local.db"


@pytest.fixture
def local_store(temp_db):
    """Create a LocalStore instance for testing."""
    store = LocalStore(temp_db, max_retries=3)
    yield store
    store.close()


# =============================================================================
# API fixtures
# =============================================================================


@pytest.fixture
def app():
    """App over in-memory storage with rate limiting disabled."""
    from pwms.api.main import create_app
    from pwms.api.rate_limit import limiter

    limiter.enabled = False
    yield create_app(make_settings(), backend=MemoryBackend())
    limiter.enabled = True


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    return TestClient(app)


@pytest.fixture
def local_app(tmp_path, fake_supabase):
    """App in local-first mode replaying to the fake Supabase client."""
    from pwms.api.main import create_app
    from pwms.api.rate_limit import limiter
    from pwms.storage import RemoteStore

    limiter.enabled = False
    settings = make_settings(local_first=True, local_db_path=str(tmp_path / "local.db"))
    yield create_app(settings, backend=MemoryBackend(), remote=RemoteStore(fake_supabase))
    limiter.enabled = True


@pytest.fixture
def local_client(local_app):
    from fastapi.testclient import TestClient

    return TestClient(local_app)
