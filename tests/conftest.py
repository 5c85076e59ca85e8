"""Shared pytest fixtures and an in-memory stand-in for MongoDB collections."""

import asyncio
import copy
from types import SimpleNamespace
from typing import Any
from uuid import uuid4

import pytest
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from docseq.core.modules.counter.service import CounterService
from docseq.core.modules.counter.store import CounterStore
from docseq.core.modules.record.service import RecordService
from docseq.core.modules.schema.models import FieldType, Schema, SchemaField

_MISSING = object()


def _get_path(doc: dict[str, Any], path: str) -> Any:
    value: Any = doc
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _same(value: Any, expected: Any) -> bool:
    # Subdocuments are equal only with the same fields in the same order, as in MongoDB
    if isinstance(value, dict) and isinstance(expected, dict):
        return list(value) == list(expected) and all(_same(value[k], expected[k]) for k in value)
    if isinstance(value, list) and isinstance(expected, list):
        return len(value) == len(expected) and all(map(_same, value, expected))
    return value == expected


def _matches(doc: dict[str, Any], query: dict[str, Any]) -> bool:
    for path, expected in query.items():
        value = _get_path(doc, path)
        if value is _MISSING:
            value = None  # {field: None} matches missing fields, as in MongoDB
        if not _same(value, expected):
            return False
    return True


class FakeCursor:
    def __init__(self, docs: list[dict[str, Any]]) -> None:
        self._docs = docs

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for doc in self._docs:
            yield doc


class FakeCollection:
    """Collection supporting the subset of operations docseq issues.

    Each operation yields to the event loop once before running, then runs
    without yielding, like a single atomic server-side command.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.docs: list[dict[str, Any]] = []
        self.indexes: list[tuple[list[tuple[str, int]], bool]] = []
        self.error: Exception | None = None  # Raised by every call while set
        self.lost_races = 0  # Upcoming upserts that lose a creation race to another writer
        self.calls: list[str] = []

    async def _enter(self, op: str) -> None:
        self.calls.append(op)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error

    def _unique_key(self, doc: dict[str, Any], keys: list[tuple[str, int]]) -> tuple[Any, ...]:
        return tuple(repr(doc.get(name)) for name, _ in keys)

    def _check_unique(self, doc: dict[str, Any]) -> None:
        for other in self.docs:
            if other.get("_id") == doc.get("_id"):
                raise DuplicateKeyError("E11000 duplicate key error collection: _id")
            for keys, unique in self.indexes:
                if unique and self._unique_key(other, keys) == self._unique_key(doc, keys):
                    raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name}")

    @staticmethod
    def _apply(doc: dict[str, Any], update: dict[str, Any], inserting: bool) -> None:
        for field, amount in update.get("$inc", {}).items():
            doc[field] = doc.get(field, 0) + amount
        for field, value in update.get("$set", {}).items():
            doc[field] = value
        if inserting:
            for field, value in update.get("$setOnInsert", {}).items():
                doc[field] = value

    def _new_from_query(self, query: dict[str, Any]) -> dict[str, Any]:
        return {k: copy.deepcopy(v) for k, v in query.items() if "." not in k and not k.startswith("$")}

    async def create_index(self, keys: list[tuple[str, int]], unique: bool = False) -> str:
        await self._enter("create_index")
        self.indexes.append((keys, unique))
        return "_".join(f"{name}_{direction}" for name, direction in keys)

    async def find_one(self, query: dict[str, Any]) -> dict[str, Any] | None:
        await self._enter("find_one")
        doc = next((d for d in self.docs if _matches(d, query)), None)
        return copy.deepcopy(doc)

    def find(self, query: dict[str, Any]) -> FakeCursor:
        self.calls.append("find")
        return FakeCursor([copy.deepcopy(d) for d in self.docs if _matches(d, query)])

    async def find_one_and_update(
        self,
        query: dict[str, Any],
        update: dict[str, Any],
        upsert: bool = False,
        return_document: ReturnDocument = ReturnDocument.BEFORE,
    ) -> dict[str, Any] | None:
        await self._enter("find_one_and_update")
        doc = next((d for d in self.docs if _matches(d, query)), None)
        if doc is None:
            if not upsert:
                return None
            if self.lost_races:
                self.lost_races -= 1
                winner = self._new_from_query(query)
                winner["_id"] = uuid4()
                self._apply(winner, update, inserting=False)
                self.docs.append(winner)
                raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name}")
            doc = self._new_from_query(query)
            self._apply(doc, update, inserting=True)
            doc.setdefault("_id", uuid4())
            self._check_unique(doc)
            self.docs.append(doc)
            before = None
        else:
            before = copy.deepcopy(doc)
            self._apply(doc, update, inserting=False)
        if return_document == ReturnDocument.AFTER:
            return copy.deepcopy(doc)
        return before

    async def update_many(self, query: dict[str, Any], update: dict[str, Any]) -> SimpleNamespace:
        await self._enter("update_many")
        matched = [d for d in self.docs if _matches(d, query)]
        for doc in matched:
            self._apply(doc, update, inserting=False)
        return SimpleNamespace(matched_count=len(matched), modified_count=len(matched))

    async def insert_one(self, doc: dict[str, Any]) -> SimpleNamespace:
        await self._enter("insert_one")
        stored = copy.deepcopy(doc)
        stored.setdefault("_id", uuid4())
        self._check_unique(stored)
        self.docs.append(stored)
        return SimpleNamespace(inserted_id=stored["_id"])


class FakeDatabase:
    def __init__(self) -> None:
        self.collections: dict[str, FakeCollection] = {}

    def get_collection(self, name: str) -> FakeCollection:
        if name not in self.collections:
            self.collections[name] = FakeCollection(name)
        return self.collections[name]


@pytest.fixture
def database():
    """Fresh in-memory database."""
    return FakeDatabase()


@pytest.fixture
def counters(database):
    """The default counters collection."""
    return database.get_collection("counters")


@pytest.fixture
def store(counters):
    """Counter store over the default counters collection."""
    return CounterStore(counters)


@pytest.fixture
def counter_service(database):
    """Counter service without a Core, using default settings."""
    return CounterService(database)


@pytest.fixture
def record_service(database):
    """Record service sharing the fake database with the counter service."""
    return RecordService(database)


@pytest.fixture
def inhabitants():
    """Schema with two string fields usable as counter references."""
    return Schema(
        "inhabitants",
        fields=[
            SchemaField(id="country", type=FieldType.STRING, required=True),
            SchemaField(id="city", type=FieldType.STRING, required=True),
            SchemaField(id="name", type=FieldType.STRING),
        ],
    )
