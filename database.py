"""
MongoDB access for the POS Records API.

A Database owns one lazily established AsyncMongoClient connection. The first
caller of acquire() starts connecting; callers arriving while that attempt is
in flight await the same attempt. A failed attempt is forgotten so the next
caller tries again.

Configuration comes from the environment:

- DATABASE_URL: MongoDB connection string
- DATABASE_NAME: database name
- DATABASE_TIMEOUT_MS: server selection / connect timeout
"""
import asyncio
import logging
import os
from typing import Any, Dict, Optional

from pymongo import ASCENDING, DESCENDING, AsyncMongoClient
from pymongo.errors import PyMongoError

from errors import InfrastructureError

logger = logging.getLogger(__name__)

COLLECTIONS = ("customers", "sales", "suppliers", "products", "quantities")

INDEXES = {
    "customers": [("mysqlId", ASCENDING), ("saleId", ASCENDING), ("contact", ASCENDING), ("timestamp", DESCENDING)],
    "sales": [
        ("mysqlId", ASCENDING), ("saleId", ASCENDING), ("customerId", ASCENDING),
        ("saleDate", DESCENDING), ("timestamp", DESCENDING),
    ],
    "suppliers": [("mysqlId", ASCENDING), ("name", ASCENDING), ("contact", ASCENDING), ("timestamp", DESCENDING)],
    "products": [
        ("mysqlId", ASCENDING), ("name", ASCENDING), ("barcode", ASCENDING),
        ("category", ASCENDING), ("supplierId", ASCENDING),
    ],
    "quantities": [("productMysqlId", ASCENDING)],
}

# Historical key spellings found in the legacy catalog, mapped to the one key
# the services query on.
LEGACY_FIELDS = {
    "products": {
        "mysql_id": "mysqlId",
        "id": "mysqlId",
        "sale_price": "salePrice",
        "expire_date": "expireDate",
        "supplier_id": "supplierId",
        "supplier_name": "supplierName",
        "created_date": "createdDate",
    },
    "quantities": {
        "product_mysql_id": "productMysqlId",
        "productId": "productMysqlId",
        "product_id": "productMysqlId",
        "quantity_size": "quantitySize",
        "created_date": "createdDate",
        "updated_date": "updatedDate",
    },
}


async def ensure_indexes(db) -> None:
    for name, keys in INDEXES.items():
        collection = db[name]
        for key in keys:
            await collection.create_index([key])
        logger.debug("Initialized collection %s", name)


async def normalize_legacy_fields(db) -> Dict[str, int]:
    """Rename historical key spellings to their canonical key.

    Where a document already carries the canonical key, that value wins and the
    old spelling is dropped. Returns the number of documents touched per
    collection.
    """
    touched = {}
    for name, renames in LEGACY_FIELDS.items():
        collection = db[name]
        count = 0
        for old, new in renames.items():
            renamed = await collection.update_many(
                {old: {"$exists": True}, new: {"$exists": False}},
                {"$rename": {old: new}},
            )
            dropped = await collection.update_many(
                {old: {"$exists": True}},
                {"$unset": {old: ""}},
            )
            count += renamed.modified_count + dropped.modified_count
        if count:
            logger.info("Normalized %d legacy field(s) in %s", count, name)
        touched[name] = count
    return touched


class Database:
    def __init__(self, url: str, name: str, timeout_ms: int = 5000, normalize: bool = True):
        self.url = url
        self.name = name
        self.timeout_ms = timeout_ms
        self.normalize = normalize
        self._client: Optional[AsyncMongoClient] = None
        self._db = None
        self._connecting: Optional[asyncio.Future] = None

    @classmethod
    def from_env(cls) -> "Database":
        return cls(
            url=os.getenv("DATABASE_URL", "mongodb://localhost:27017"),
            name=os.getenv("DATABASE_NAME", "pos_cloud"),
            timeout_ms=int(os.getenv("DATABASE_TIMEOUT_MS", "5000")),
        )

    @property
    def is_connected(self) -> bool:
        return self._db is not None

    def init(self) -> AsyncMongoClient:
        """Create the client. No I/O happens until acquire()."""
        if self._client is None:
            self._client = AsyncMongoClient(
                self.url,
                serverSelectionTimeoutMS=self.timeout_ms,
                connectTimeoutMS=self.timeout_ms,
                socketTimeoutMS=self.timeout_ms * 3,
                tz_aware=True,
            )
        return self._client

    async def acquire(self):
        """Return the database handle, connecting on first use."""
        if self._db is not None:
            return self._db
        if self._connecting is None:
            self._connecting = asyncio.ensure_future(self._connect())
        return await asyncio.shield(self._connecting)

    async def _connect(self):
        logger.info("Connecting to MongoDB database %s", self.name)
        try:
            client = self.init()
            await client.admin.command("ping")
            db = client[self.name]
            await ensure_indexes(db)
            if self.normalize:
                await normalize_legacy_fields(db)
            self._db = db
        except PyMongoError as exc:
            logger.error("MongoDB connection error: %s", exc)
            raise InfrastructureError(f"Database connection failed: {exc}") from exc
        finally:
            # a failed attempt must not stay cached for later callers
            if self._db is None:
                self._connecting = None
        logger.info("Connected to MongoDB")
        return db

    async def get_collection(self, name: str):
        if name not in COLLECTIONS:
            raise ValueError(f"Unknown collection: {name}")
        db = await self.acquire()
        return db[name]

    async def get_health_status(self) -> Dict[str, Any]:
        try:
            db = await self.acquire()
            await db.command("ping")
            names = await db.list_collection_names()
        except (InfrastructureError, PyMongoError) as exc:
            return {"status": "error", "message": str(exc)}
        return {"status": "connected", "message": "Database is healthy", "collections": sorted(names)}

    async def shutdown(self) -> None:
        if self._client is not None:
            await self._client.close()
            logger.info("Database connection closed")
        self._client = None
        self._db = None
        self._connecting = None
