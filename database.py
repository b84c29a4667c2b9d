"""
MongoDB access for the Helmet Store backend.

The Store owns the client and database handles and is constructed once by the
application bootstrap. Multi-document writes go through ``Store.transaction()``:
with server transactions enabled the block runs inside a pymongo session
transaction, otherwise compensating actions registered on the unit of work are
replayed in reverse order when the block raises.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

from errors import NotFound

log = logging.getLogger(__name__)


def utcnow() -> datetime:
    # pymongo hands datetimes back naive, so store them naive as well
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_object_id(value: Any, resource: str = "Resource") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str) or not ObjectId.is_valid(value):
        raise NotFound(resource)
    return ObjectId(value)


def serialize(doc: Optional[dict]) -> Optional[dict]:
    """Copy a document and expose ``_id`` as a string ``id``."""
    if doc is None:
        return None
    d = dict(doc)
    if d.get("_id") is not None:
        d["id"] = str(d.pop("_id"))
    return d


class UnitOfWork:
    def __init__(self, session=None):
        self.session = session
        self._compensations: List[tuple] = []

    def on_rollback(self, fn: Callable, *args, **kwargs) -> None:
        # server transactions undo everything on abort
        if self.session is None:
            self._compensations.append((fn, args, kwargs))

    def rollback(self) -> None:
        while self._compensations:
            fn, args, kwargs = self._compensations.pop()
            try:
                fn(*args, **kwargs)
            except Exception:
                log.exception("Compensating action %s failed", getattr(fn, "__name__", fn))


class Store:
    def __init__(self, client: MongoClient, db, use_transactions: bool = True):
        self.client = client
        self.db = db
        self.use_transactions = use_transactions

    @classmethod
    def connect(cls, url: str, name: str, use_transactions: bool = True) -> "Store":
        client = MongoClient(url, tz_aware=False)
        return cls(client, client[name], use_transactions=use_transactions)

    def __getitem__(self, name: str):
        return self.db[name]

    @contextmanager
    def transaction(self):
        if not self.use_transactions:
            uow = UnitOfWork()
            try:
                yield uow
            except Exception:
                uow.rollback()
                raise
            return

        with self.client.start_session() as session:
            with session.start_transaction():
                yield UnitOfWork(session)

    def ping(self) -> bool:
        self.client.admin.command("ping")
        return True

    def ensure_indexes(self) -> None:
        self.db["user"].create_index("email", unique=True)
        self.db["address"].create_index("user_id")
        self.db["product"].create_index("slug", unique=True)
        self.db["productvariant"].create_index("product_id")
        self.db["cart"].create_index("user_id", unique=True)
        self.db["order"].create_index("order_number", unique=True)
        self.db["order"].create_index([("user_id", ASCENDING), ("created_at", ASCENDING)])
        self.db["order"].create_index("gateway_order_id")
        self.db["coupon"].create_index("code", unique=True)
        self.db["review"].create_index(
            [("user_id", ASCENDING), ("product_id", ASCENDING), ("order_id", ASCENDING)],
            unique=True,
        )

    def close(self) -> None:
        self.client.close()


def create_document(store: Store, collection_name: str, data: Union[BaseModel, dict], session=None) -> str:
    """Insert a document with created_at/updated_at stamps; returns its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = store[collection_name].insert_one(data_dict, session=session)
    return str(result.inserted_id)


def get_documents(store: Store, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None) -> List[dict]:
    cursor = store[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
