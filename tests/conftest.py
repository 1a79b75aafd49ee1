"""In-memory stand-ins for the async pymongo API used by the services."""
import copy
import re
from types import SimpleNamespace

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import main
from database import COLLECTIONS

MISSING = object()


def matches(doc, flt):
    for key, cond in flt.items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in cond):
                return False
            continue
        if key == "$and":
            if not all(matches(doc, sub) for sub in cond):
                return False
            continue
        value = doc.get(key, MISSING)
        if isinstance(cond, dict) and cond and all(op.startswith("$") for op in cond):
            if not _match_operators(value, cond):
                return False
        elif value is MISSING or value != cond:
            return False
    return True


def _match_operators(value, cond):
    for op, arg in cond.items():
        if op == "$options":
            continue
        if op == "$exists":
            if (value is not MISSING) != bool(arg):
                return False
            continue
        if value is MISSING or value is None:
            return False
        if op == "$regex":
            flags = re.IGNORECASE if "i" in cond.get("$options", "") else 0
            if not isinstance(value, str) or not re.search(arg, value, flags):
                return False
        elif op == "$gte" and not value >= arg:
            return False
        elif op == "$lte" and not value <= arg:
            return False
        elif op == "$gt" and not value > arg:
            return False
        elif op == "$lt" and not value < arg:
            return False
        elif op == "$in" and value not in arg:
            return False
    return True


def _resolve(doc, expr):
    if isinstance(expr, str) and expr.startswith("$"):
        return doc.get(expr[1:])
    if isinstance(expr, dict) and "$size" in expr:
        return len(_resolve(doc, expr["$size"]) or [])
    return expr


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs
        self._skip = 0
        self._limit = 0

    def sort(self, key, direction=1):
        keys = key if isinstance(key, list) else [(key, direction)]
        for name, order in reversed(keys):
            self._docs.sort(key=lambda d: d.get(name), reverse=order == -1)
        return self

    def skip(self, count):
        self._skip = count
        return self

    def limit(self, count):
        self._limit = count
        return self

    async def to_list(self, length=None):
        docs = self._docs[self._skip:]
        if self._limit:
            docs = docs[:self._limit]
        return [copy.deepcopy(d) for d in docs]


class FakeCollection:
    def __init__(self, name):
        self.name = name
        self.docs = []
        self.indexes = []

    def _matching(self, flt):
        return [d for d in self.docs if matches(d, flt or {})]

    def find(self, flt=None):
        return FakeCursor(self._matching(flt))

    async def find_one(self, flt=None):
        found = self._matching(flt)
        return copy.deepcopy(found[0]) if found else None

    async def count_documents(self, flt):
        return len(self._matching(flt))

    async def insert_one(self, doc):
        doc.setdefault("_id", ObjectId())
        self.docs.append(copy.deepcopy(doc))
        return SimpleNamespace(inserted_id=doc["_id"])

    async def update_one(self, flt, update):
        found = self._matching(flt)[:1]
        for doc in found:
            self._apply(doc, update)
        return SimpleNamespace(matched_count=len(found), modified_count=len(found))

    async def update_many(self, flt, update):
        found = self._matching(flt)
        for doc in found:
            self._apply(doc, update)
        return SimpleNamespace(matched_count=len(found), modified_count=len(found))

    @staticmethod
    def _apply(doc, update):
        for key, value in update.get("$set", {}).items():
            doc[key] = copy.deepcopy(value)
        for old, new in update.get("$rename", {}).items():
            if old in doc:
                doc[new] = doc.pop(old)
        for key in update.get("$unset", {}):
            doc.pop(key, None)

    async def delete_one(self, flt):
        found = self._matching(flt)[:1]
        for doc in found:
            self.docs.remove(doc)
        return SimpleNamespace(deleted_count=len(found))

    async def aggregate(self, pipeline):
        docs = list(self.docs)
        for stage in pipeline:
            if "$match" in stage:
                docs = [d for d in docs if matches(d, stage["$match"])]
            elif "$group" in stage:
                docs = self._group(docs, stage["$group"]) if docs else []
        return FakeCursor(docs)

    @staticmethod
    def _group(docs, stage):
        row = {"_id": None}
        for field, acc in stage.items():
            if field == "_id":
                continue
            op, expr = next(iter(acc.items()))
            values = [_resolve(d, expr) for d in docs]
            if op == "$sum":
                row[field] = sum(values)
            elif op == "$avg":
                row[field] = sum(values) / len(values)
        return [row]

    async def create_index(self, keys):
        self.indexes.append(keys)
        return "_".join(f"{k}_{d}" for k, d in keys)


class FakeMongo:
    """Stands in for an AsyncDatabase handle."""

    def __init__(self):
        self.collections = {}

    def __getitem__(self, name):
        if name not in self.collections:
            self.collections[name] = FakeCollection(name)
        return self.collections[name]

    async def command(self, name):
        return {"ok": 1}

    async def list_collection_names(self):
        return list(self.collections)


class FakeDatabase:
    """Stands in for database.Database."""

    def __init__(self):
        self.db = FakeMongo()

    async def acquire(self):
        return self.db

    async def get_collection(self, name):
        if name not in COLLECTIONS:
            raise ValueError(f"Unknown collection: {name}")
        return self.db[name]

    async def get_health_status(self):
        return {"status": "connected", "message": "Database is healthy", "collections": []}

    async def shutdown(self):
        pass


@pytest.fixture
def mongo():
    return FakeMongo()


@pytest.fixture
def database():
    return FakeDatabase()


@pytest.fixture
def client(database):
    main.app.dependency_overrides[main.get_database] = lambda: database
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def sale_payload(**overrides):
    payload = {
        "saleId": "S-1001",
        "customerId": 7,
        "customerContact": "Jane Doe",
        "saleItems": [
            {"productId": 1, "productName": "Milk 1L", "category": "Grocery", "quantity": 2, "unitPrice": 25.0},
        ],
        "taxAmount": 5.0,
        "discountAmount": 2.0,
        "paidAmount": 60.0,
        "paymentMethod": "cash",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_sale():
    return sale_payload
