"""pytest configuration and shared fixtures for apiscope tests."""

from __future__ import annotations

import threading
import time
from types import SimpleNamespace
from typing import Any

import pytest
from bson import ObjectId
from bson.errors import InvalidDocument
from pymongo.errors import ServerSelectionTimeoutError

from apiscope.db import init_db, set_db_path


# Configure asyncio mode for pytest-asyncio
def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


# ── In-memory MongoDB stand-in ────────────────────────────────────

_INT64_MAX = 2 ** 63 - 1


def _encode_check(value: Any) -> None:
    """Raise what the BSON encoder raises for values MongoDB cannot store."""
    if isinstance(value, dict):
        for key, item in value.items():
            if "\x00" in key:
                raise InvalidDocument(f"key {key!r} must not contain null character")
            _encode_check(item)
    elif isinstance(value, list):
        for item in value:
            _encode_check(item)
    elif isinstance(value, int) and not isinstance(value, bool) and abs(value) > _INT64_MAX:
        raise OverflowError("MongoDB can only handle up to 8-byte ints")


def _matches(doc: dict, query: dict) -> bool:
    return all(doc.get(k) == v for k, v in query.items())


class FakeCursor:
    def __init__(self, docs: list[dict]) -> None:
        self._docs = docs
        self._skip = 0
        self._limit = 0

    def skip(self, n: int) -> "FakeCursor":
        self._skip = n
        return self

    def limit(self, n: int) -> "FakeCursor":
        self._limit = n
        return self

    def __iter__(self):
        docs = self._docs[self._skip:]
        if self._limit:
            docs = docs[: self._limit]
        return iter([dict(d) for d in docs])


class FakeCollection:
    def __init__(self) -> None:
        self.docs: list[dict] = []

    def find(self, query: dict) -> FakeCursor:
        _encode_check(query)
        return FakeCursor([d for d in self.docs if _matches(d, query)])

    def count_documents(self, query: dict) -> int:
        _encode_check(query)
        return sum(1 for d in self.docs if _matches(d, query))

    def insert_one(self, doc: dict) -> SimpleNamespace:
        _encode_check(doc)
        doc = dict(doc)
        doc.setdefault("_id", ObjectId())
        self.docs.append(doc)
        return SimpleNamespace(inserted_id=doc["_id"])

    def update_one(self, query: dict, update: dict) -> SimpleNamespace:
        _encode_check(query)
        _encode_check(update)
        for doc in self.docs:
            if _matches(doc, query):
                changes = update["$set"]
                modified = any(doc.get(k) != v for k, v in changes.items())
                doc.update(changes)
                return SimpleNamespace(modified_count=int(modified))
        return SimpleNamespace(modified_count=0)

    def delete_one(self, query: dict) -> SimpleNamespace:
        _encode_check(query)
        for i, doc in enumerate(self.docs):
            if _matches(doc, query):
                del self.docs[i]
                return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)


class FakeDatabase:
    def __init__(self, name: str) -> None:
        self.name = name
        self.collections: dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        return self.collections.setdefault(name, FakeCollection())

    def list_collections(self) -> list[dict]:
        return [{"name": name, "type": "collection"} for name in self.collections]


class FakeMongoClient:
    def __init__(self, url: str, fail: bool, ping_delay: float) -> None:
        self.url = url
        self.closed = False
        self.databases: dict[str, FakeDatabase] = {}
        self._fail = fail
        self._ping_delay = ping_delay
        self.admin = SimpleNamespace(command=self._command)

    def _command(self, name: str) -> dict:
        time.sleep(self._ping_delay)
        if self._fail:
            raise ServerSelectionTimeoutError(f"{self.url}: connection refused")
        return {"ok": 1}

    def __getitem__(self, name: str) -> FakeDatabase:
        return self.databases.setdefault(name, FakeDatabase(name))

    def get_default_database(self, default: str | None = None) -> FakeDatabase:
        return self[default or "test"]

    def list_databases(self) -> list[dict]:
        return [{"name": name, "sizeOnDisk": 0, "empty": False} for name in self.databases]

    def close(self) -> None:
        self.closed = True


class FakeMongoFactory:
    """Callable standing in for ``MongoClient``; counts every connect."""

    def __init__(self, fail: bool = False, ping_delay: float = 0.0) -> None:
        self.fail = fail
        self.ping_delay = ping_delay
        self.clients: list[FakeMongoClient] = []
        self.options: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    @property
    def calls(self) -> int:
        return len(self.clients)

    def __call__(self, url: str, **options: Any) -> FakeMongoClient:
        client = FakeMongoClient(url, self.fail, self.ping_delay)
        with self._lock:
            self.clients.append(client)
            self.options.append(options)
        return client


@pytest.fixture
def mongo_factory():
    return FakeMongoFactory()


@pytest.fixture
def slow_mongo_factory():
    return FakeMongoFactory(ping_delay=0.05)


@pytest.fixture
def unreachable_mongo_factory():
    return FakeMongoFactory(fail=True)


# ── SQLite ─────────────────────────────────────────────────────────

@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "test.db"
    set_db_path(path)
    init_db(path)
    return path


@pytest.fixture
def db_conn(db_path):
    import sqlite3

    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    yield conn
    conn.close()
