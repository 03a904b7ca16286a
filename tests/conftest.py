"""
Shared fixtures. The jobs only need find / find_one / bulk_write from pymongo,
so tests run against a small in-memory stand-in instead of a live database.
"""
import pytest
from unittest.mock import MagicMock


def _matches(doc, query):
    for key, cond in (query or {}).items():
        val = doc.get(key)
        if isinstance(cond, dict) and "$in" in cond:
            if val not in cond["$in"]:
                return False
        elif val != cond:
            return False
    return True


class FakeCollection:
    def __init__(self, docs=None, fail_on_call=None):
        self.docs = [dict(d) for d in (docs or [])]
        self.find_one_calls = 0
        self.bulk_calls = []
        self.fail_on_call = fail_on_call

    def find(self, query=None):
        return [dict(d) for d in self.docs if _matches(d, query)]

    def find_one(self, query=None):
        self.find_one_calls += 1
        for d in self.docs:
            if _matches(d, query):
                return dict(d)
        return None

    def bulk_write(self, ops, ordered=True, session=None):
        if self.fail_on_call is not None and len(self.bulk_calls) + 1 == self.fail_on_call:
            raise RuntimeError("simulated commit failure")
        self.bulk_calls.append(list(ops))


class FakeDatabase:
    def __init__(self, collections=None):
        self.collections = {name: FakeCollection(docs) for name, docs in (collections or {}).items()}
        self.client = MagicMock()

    def __getitem__(self, name):
        if name not in self.collections:
            self.collections[name] = FakeCollection()
        return self.collections[name]

    def all_bulk_calls(self):
        return {name: coll.bulk_calls for name, coll in self.collections.items() if coll.bulk_calls}


@pytest.fixture
def make_db():
    """Factory: make_db({'games': [...], 'users': [...]}) -> FakeDatabase."""
    return FakeDatabase


@pytest.fixture
def make_collection():
    return FakeCollection


@pytest.fixture
def mongo_env(monkeypatch):
    """Connection string for CLI tests; Key Vault and .env discovery disabled."""
    from utils import db_utils

    for key in db_utils.CONNECTION_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.delenv("KEY_VAULT_URL", raising=False)
    monkeypatch.delenv("PUTIKUNN_EXPECTED_DB", raising=False)
    monkeypatch.setattr(db_utils, "_DOTENV_LOADED", True)
    monkeypatch.setenv("MONGODB_CONNECTION_STRING", "mongodb://localhost:27017/putikunn_test")
    return "putikunn_test"
