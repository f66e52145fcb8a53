"""
Persistence collaborator.

MongoDB connector (singleton pattern) plus the generic CRUD boundary the sync
engine is written against:

    select(table, filters, page) -> list[dict]
    insert(table, row)           -> dict
    update(table, record_id, fields) -> bool

Filters are equality values or ``Range`` bounds; ``Page`` gives ordered
pagination. Every row is keyed by ``_id``.

Usage:
    store = MongoRecordStore()            # backed by get_db()
    store = MemoryRecordStore()           # in-process, same semantics

    rows = store.select(
        "orders",
        {"store_id": "123", "updated_at": Range(gte=since)},
        Page(order_by="updated_at", descending=True, limit=50),
    )
"""
import copy
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

from core.config import config
from core.errors import PersistenceError
from core.logging import get_logger

# Initialize logger for database module
logger = get_logger("database")

_db_client: MongoClient | None = None
_database: Database | None = None

# Table names
STORE_CREDENTIALS = "store_credentials"
ORDERS = "orders"
FINANCIAL_RECORDS = "financial_records"


def get_db() -> Database:
    """
    Returns the MongoDB database instance (Singleton).

    Returns:
        Database: The MongoDB database object.
    """
    global _db_client, _database

    if _database is None:
        try:
            logger.info("Connecting to MongoDB", extra={"database": config.DATABASE_NAME})
            _db_client = MongoClient(config.MONGO_URI)
            _database = _db_client[config.DATABASE_NAME]
            logger.info("Successfully connected to MongoDB", extra={"database": config.DATABASE_NAME})
        except PyMongoError as e:
            logger.error("Failed to connect to MongoDB", exc_info=True)
            raise PersistenceError("Failed to connect to MongoDB", details=str(e)) from e

    return _database


def close_db():
    """Close the database connection."""
    global _db_client, _database

    if _db_client:
        try:
            _db_client.close()
        except PyMongoError:
            logger.error("Error closing database connection", exc_info=True)
        finally:
            _db_client = None
            _database = None
        logger.info("Database connection closed")


# ============================================================================
# QUERY PRIMITIVES
# ============================================================================

@dataclass(frozen=True)
class Range:
    """Range bound for a single field. Unset bounds are ignored."""
    gte: Any = None
    gt: Any = None
    lte: Any = None
    lt: Any = None

    def matches(self, value: Any) -> bool:
        if value is None:
            return False
        if self.gte is not None and not value >= self.gte:
            return False
        if self.gt is not None and not value > self.gt:
            return False
        if self.lte is not None and not value <= self.lte:
            return False
        if self.lt is not None and not value < self.lt:
            return False
        return True

    def to_mongo(self) -> Dict[str, Any]:
        ops = {}
        for name in ("gte", "gt", "lte", "lt"):
            bound = getattr(self, name)
            if bound is not None:
                ops[f"${name}"] = bound
        return ops


@dataclass(frozen=True)
class Page:
    """Ordered pagination."""
    order_by: Optional[str] = None
    descending: bool = False
    limit: Optional[int] = None
    offset: int = 0


# ============================================================================
# RECORD STORES
# ============================================================================

class RecordStore(ABC):
    """Generic CRUD boundary consumed by the credential adapter and the upserter."""

    @abstractmethod
    def select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        page: Optional[Page] = None,
    ) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    def update(self, table: str, record_id: str, fields: Dict[str, Any]) -> bool:
        """Apply ``fields`` to the row with ``_id == record_id``. Returns False if no row matched."""
        ...

    def find_one(self, table: str, filters: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        rows = self.select(table, filters, Page(limit=1))
        return rows[0] if rows else None


class MongoRecordStore(RecordStore):
    """RecordStore backed by MongoDB collections. Driver errors surface as PersistenceError."""

    def __init__(self, database: Optional[Database] = None):
        self._db = database if database is not None else get_db()

    @staticmethod
    def _to_query(filters: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        query = {}
        for field, value in (filters or {}).items():
            query[field] = value.to_mongo() if isinstance(value, Range) else value
        return query

    def select(self, table, filters=None, page=None):
        try:
            cursor = self._db[table].find(self._to_query(filters))
            if page is not None:
                if page.order_by:
                    cursor = cursor.sort(page.order_by, DESCENDING if page.descending else ASCENDING)
                if page.offset:
                    cursor = cursor.skip(page.offset)
                if page.limit:
                    cursor = cursor.limit(page.limit)
            return list(cursor)
        except PyMongoError as e:
            logger.error(f"select on {table} failed", exc_info=True, extra={"table": table})
            raise PersistenceError(f"select on {table} failed", details=str(e)) from e

    def insert(self, table, row):
        doc = dict(row)
        doc.setdefault("_id", uuid.uuid4().hex)
        try:
            self._db[table].insert_one(doc)
        except PyMongoError as e:
            logger.error(f"insert into {table} failed", exc_info=True, extra={"table": table})
            raise PersistenceError(f"insert into {table} failed", details=str(e)) from e
        return doc

    def update(self, table, record_id, fields):
        try:
            result = self._db[table].update_one({"_id": record_id}, {"$set": fields})
        except PyMongoError as e:
            logger.error(
                f"update on {table} failed",
                exc_info=True,
                extra={"table": table, "record_id": record_id},
            )
            raise PersistenceError(f"update on {table} failed", details=str(e)) from e
        return result.matched_count > 0


class MemoryRecordStore(RecordStore):
    """In-process RecordStore with the same filter/page semantics as MongoRecordStore."""

    def __init__(self):
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.Lock()
        self.writes = 0

    @staticmethod
    def _matches(row: Dict[str, Any], filters: Dict[str, Any]) -> bool:
        for field, expected in filters.items():
            value = row.get(field)
            if isinstance(expected, Range):
                if not expected.matches(value):
                    return False
            elif value != expected:
                return False
        return True

    def select(self, table, filters=None, page=None):
        with self._lock:
            rows = [
                copy.deepcopy(row)
                for row in self._tables.get(table, {}).values()
                if self._matches(row, filters or {})
            ]
        if page is not None:
            if page.order_by:
                # Rows missing the sort key go last regardless of direction
                present = [r for r in rows if r.get(page.order_by) is not None]
                missing = [r for r in rows if r.get(page.order_by) is None]
                present.sort(key=lambda r: r[page.order_by], reverse=page.descending)
                rows = present + missing
            end = page.offset + page.limit if page.limit else None
            rows = rows[page.offset:end]
        return rows

    def insert(self, table, row):
        doc = copy.deepcopy(row)
        doc.setdefault("_id", uuid.uuid4().hex)
        with self._lock:
            rows = self._tables.setdefault(table, {})
            if doc["_id"] in rows:
                raise PersistenceError(f"duplicate key {doc['_id']} in {table}")
            rows[doc["_id"]] = doc
            self.writes += 1
        return copy.deepcopy(doc)

    def update(self, table, record_id, fields):
        with self._lock:
            row = self._tables.get(table, {}).get(record_id)
            if row is None:
                return False
            row.update(copy.deepcopy(fields))
            self.writes += 1
        return True

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._tables.get(table, {}))
