"""
Document store access for the Eventwise backend.

Every entity lives in its own flat MongoDB collection. Document ids are opaque
strings stored in ``_id`` and exposed as ``id``. ``create`` and ``update`` stamp
``created_at`` / ``updated_at`` server-side.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.database import Database

# Collections
USERS = "users"
EVENTS = "events"
SESSIONS = "sessions"
ATTENDEES = "attendees"
SUBSCRIPTIONS = "subscriptions"
PAYMENTS = "payments"
TICKETS = "tickets"
SPONSORS = "sponsors"
LEADERBOARDS = "leaderboards"
WEBHOOK_EVENTS = "webhook_events"

Data = Union[Dict[str, Any], BaseModel]
SortSpec = Sequence[Tuple[str, int]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def to_storage(value: Any) -> Any:
    """Normalise datetimes to naive UTC, the form BSON stores and returns."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, dict):
        return {k: to_storage(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_storage(v) for v in value]
    return value


def _from_storage(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value
    if isinstance(value, dict):
        return {k: _from_storage(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_from_storage(v) for v in value]
    return value


def _as_dict(data: Data) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        return data.model_dump()
    return dict(data)


def to_public(doc: Optional[dict]) -> Optional[dict]:
    """Render a stored document for JSON: ``id`` instead of ``_id``, ISO-8601 datetimes."""
    if not doc:
        return doc

    def render(value: Any) -> Any:
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            return value.isoformat()
        if isinstance(value, dict):
            return {k: render(v) for k, v in value.items()}
        if isinstance(value, list):
            return [render(v) for v in value]
        return value

    d = doc.copy()
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return render(d)


class DocumentStore:
    """Generic get/query/create/update/delete over named collections.

    Returned documents carry ``id`` and timezone-aware UTC datetimes. Nothing
    here spans more than one document; callers that need more than a single
    document write get no atomicity.
    """

    def __init__(self, database: Database):
        self.db = database

    @staticmethod
    def new_id() -> str:
        return str(ObjectId())

    @staticmethod
    def _load(doc: Optional[dict]) -> Optional[dict]:
        if doc is None:
            return None
        d = _from_storage(doc)
        d["id"] = str(d.pop("_id"))
        return d

    def get_one(self, collection: str, doc_id: str) -> Optional[dict]:
        return self._load(self.db[collection].find_one({"_id": doc_id}))

    def get_many(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        sort: Optional[SortSpec] = None,
        limit: int = 0,
    ) -> List[dict]:
        cursor = self.db[collection].find(to_storage(filters or {}))
        if sort:
            cursor = cursor.sort(list(sort))
        if limit:
            cursor = cursor.limit(limit)
        return [self._load(d) for d in cursor]

    def create(self, collection: str, data: Data, doc_id: Optional[str] = None) -> str:
        now = _now()
        doc = to_storage({**_as_dict(data), "created_at": now, "updated_at": now})
        doc.pop("id", None)
        doc["_id"] = doc_id or self.new_id()
        self.db[collection].insert_one(doc)
        return doc["_id"]

    def update(self, collection: str, doc_id: str, partial: Data) -> bool:
        changes = {k: v for k, v in _as_dict(partial).items() if k not in ("id", "_id", "created_at")}
        changes["updated_at"] = _now()
        result = self.db[collection].update_one({"_id": doc_id}, {"$set": to_storage(changes)})
        return result.matched_count > 0

    def delete(self, collection: str, doc_id: str) -> bool:
        result = self.db[collection].delete_one({"_id": doc_id})
        return result.deleted_count > 0

    # Single-document atomic writes

    def add_to_set(self, collection: str, doc_id: str, field: str, value: Any) -> bool:
        result = self.db[collection].update_one(
            {"_id": doc_id},
            {"$addToSet": {field: to_storage(value)}, "$set": {"updated_at": to_storage(_now())}},
        )
        return result.matched_count > 0

    def increment(self, collection: str, doc_id: str, field: str, amount: Union[int, float]) -> Optional[dict]:
        doc = self.db[collection].find_one_and_update(
            {"_id": doc_id},
            {"$inc": {field: amount}, "$set": {"updated_at": to_storage(_now())}},
            return_document=ReturnDocument.AFTER,
        )
        return self._load(doc)

    def upsert(
        self,
        collection: str,
        doc_id: str,
        changes: Dict[str, Any],
        defaults: Optional[Dict[str, Any]] = None,
    ) -> dict:
        """Set ``changes`` on the document, creating it from ``defaults`` if absent."""
        now = _now()
        on_insert = {k: v for k, v in (defaults or {}).items() if k not in changes}
        on_insert["created_at"] = now
        doc = self.db[collection].find_one_and_update(
            {"_id": doc_id},
            {
                "$set": to_storage({**changes, "updated_at": now}),
                "$setOnInsert": to_storage(on_insert),
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return self._load(doc)

    def ping(self) -> bool:
        self.db.list_collection_names()
        return True
