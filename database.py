"""
MongoDB access for the school management API.

Each pydantic model in schemas.py maps to one collection named after the
class, lowercased (see collection_name).
"""

import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.collection import Collection
from pymongo.database import Database

from config import settings
from exceptions import DatabaseUnavailable, NotFoundError
from logging_config import logger

client: Optional[MongoClient] = None
db: Optional[Database] = None

try:
    client = MongoClient(settings.DATABASE_URL, serverSelectionTimeoutMS=5000, connect=False)
    db = client[settings.DATABASE_NAME]
except Exception as e:  # invalid URI and friends; the API still boots and reports 500s
    logger.error(f"MongoDB client could not be created: {e}")
    client = None
    db = None


def collection_name(model_cls) -> str:
    return model_cls.__name__.lower()


def get_db() -> Database:
    if db is None:
        raise DatabaseUnavailable()
    return db


def get_collection(model_cls) -> Collection:
    return get_db()[collection_name(model_cls)]


def create_document(collection: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document, stamping createdAt/updatedAt. Returns the new id as a string."""
    if isinstance(data, BaseModel):
        doc = data.model_dump(by_alias=True)
    else:
        doc = dict(data)
    now = datetime.utcnow()
    doc.setdefault("createdAt", now)
    doc["updatedAt"] = now
    result = get_db()[collection].insert_one(doc)
    return str(result.inserted_id)


def to_object_id(value: Any, resource: str = "Resource") -> ObjectId:
    """Parse an id from a path or query string; malformed ids read as not found."""
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    raise NotFoundError(resource)


def find_by_id(model_cls, value: Any, resource: Optional[str] = None,
               extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    resource = resource or model_cls.__name__
    query: Dict[str, Any] = {"_id": to_object_id(value, resource)}
    if extra:
        query.update(extra)
    doc = get_collection(model_cls).find_one(query)
    if not doc:
        raise NotFoundError(resource)
    return doc


def update_by_id(model_cls, _id: ObjectId, changes: Dict[str, Any],
                 user_id: Optional[ObjectId] = None) -> Dict[str, Any]:
    changes = {**changes, "updatedAt": datetime.utcnow()}
    if user_id is not None:
        changes["updatedBy"] = user_id
    return get_collection(model_cls).find_one_and_update(
        {"_id": _id}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )


def regex(term: str) -> re.Pattern:
    """Case-insensitive substring match for free-text search"""
    return re.compile(re.escape(term.strip()), re.IGNORECASE)


def search_clause(term: Optional[str], fields: Iterable[str]) -> Dict[str, Any]:
    if not term or not term.strip():
        return {}
    pattern = regex(term)
    return {"$or": [{field: pattern} for field in fields]}


def and_query(*clauses: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Intersect query clauses. Empty clauses are dropped."""
    parts = [c for c in clauses if c]
    if not parts:
        return {}
    if len(parts) == 1:
        return parts[0]
    return {"$and": parts}


# -------------------- Reference expansion -------------------- #

USER_SUMMARY = ("firstName", "lastName", "email", "role", "phone", "profileImage")


def populate(doc: Optional[Dict[str, Any]], field: str, model_cls,
             fields: Optional[Sequence[str]] = None) -> Optional[Dict[str, Any]]:
    """Replace the ObjectId (or list of ObjectIds) under ``field`` with the referenced documents."""
    if not doc or field not in doc or doc[field] is None:
        return doc
    projection = {f: 1 for f in fields} if fields else None
    coll = get_collection(model_cls)
    value = doc[field]
    if isinstance(value, list):
        ids = [v for v in value if isinstance(v, ObjectId)]
        found = {d["_id"]: d for d in coll.find({"_id": {"$in": ids}}, projection)} if ids else {}
        doc[field] = [found.get(v, v) if isinstance(v, ObjectId) else v for v in value]
    elif isinstance(value, ObjectId):
        doc[field] = coll.find_one({"_id": value}, projection) or value
    return doc


def populate_many(docs: List[Dict[str, Any]], field: str, model_cls,
                  fields: Optional[Sequence[str]] = None) -> List[Dict[str, Any]]:
    ids = {d.get(field) for d in docs if isinstance(d.get(field), ObjectId)}
    if not ids:
        return docs
    projection = {f: 1 for f in fields} if fields else None
    found = {d["_id"]: d for d in get_collection(model_cls).find({"_id": {"$in": list(ids)}}, projection)}
    for d in docs:
        if isinstance(d.get(field), ObjectId):
            d[field] = found.get(d[field], d[field])
    return docs


# -------------------- Sequences -------------------- #

COUNTER_COLLECTION = "counter"


def last_suffix(collection: str, field: str, prefix: str, width: int) -> int:
    """Numeric tail of the lexicographically last ``field`` value starting with ``prefix``."""
    last = get_db()[collection].find_one(
        {field: {"$regex": f"^{re.escape(prefix)}"}}, sort=[(field, -1)]
    )
    if not last or not last.get(field):
        return 0
    try:
        return int(str(last[field])[-width:])
    except ValueError:
        return 0


def next_sequence(key: str, floor: int = 0) -> int:
    """Atomically allocate the next value of a named counter, never below ``floor`` + 1."""
    counters = get_db()[COUNTER_COLLECTION]
    if floor:
        counters.update_one({"_id": key}, {"$max": {"seq": floor}}, upsert=True)
    doc = counters.find_one_and_update(
        {"_id": key}, {"$inc": {"seq": 1}}, upsert=True, return_document=ReturnDocument.AFTER
    )
    return doc["seq"]


# -------------------- Indexes -------------------- #

UNIQUE_INDEXES = {
    "user": [[("email", ASCENDING)]],
    "session": [[("name", ASCENDING)]],
    "classroom": [[("name", ASCENDING), ("grade", ASCENDING), ("session", ASCENDING)]],
    "section": [[("name", ASCENDING), ("class", ASCENDING)]],
    "subject": [[("code", ASCENDING), ("session", ASCENDING)]],
    "examtype": [[("name", ASCENDING), ("session", ASCENDING)]],
    "exammark": [[("student", ASCENDING), ("exam", ASCENDING)]],
    "feetype": [[("code", ASCENDING), ("session", ASCENDING)]],
    "feestructure": [[("class", ASCENDING), ("feeType", ASCENDING), ("session", ASCENDING)]],
    "student": [[("studentId", ASCENDING)]],
    "teacher": [[("employeeId", ASCENDING)]],
    "feepayment": [[("receiptNumber", ASCENDING)]],
    "attendance": [[("student", ASCENDING), ("date", ASCENDING), ("session", ASCENDING)]],
}

LOOKUP_INDEXES = {
    "attendance": [[("class", ASCENDING), ("date", ASCENDING)]],
    "message": [[("recipient", ASCENDING), ("createdAt", ASCENDING)], [("threadId", ASCENDING)]],
    "notice": [[("isPublished", ASCENDING), ("publishDate", ASCENDING)]],
}


def ensure_indexes(database: Optional[Database] = None) -> None:
    database = database if database is not None else get_db()
    for name, specs in UNIQUE_INDEXES.items():
        for keys in specs:
            database[name].create_index(keys, unique=True)
    for name, specs in LOOKUP_INDEXES.items():
        for keys in specs:
            database[name].create_index(keys)
