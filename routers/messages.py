"""
Direct messages between users.

A message starts its own thread (threadId is its own id); replies inherit the
parent's threadId. Deleting is per user: the user is appended to deletedBy
and the message stays visible to the other party until they delete it too.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, Query
from pymongo import ReturnDocument

from computations import thread_id_for
from database import (
    and_query, collection_name, create_document, find_by_id, get_collection, populate,
    populate_many, search_clause, to_object_id,
)
from exceptions import NotFoundError, ValidationFailed
from pagination import PageParams, page_params, paginate
from policies import Principal, enforce
from responses import ok, serialize_doc, serialize_list
from schemas import Message, MessageCreate, ReplyPayload, User
from security import get_principal

router = APIRouter(prefix="/messages", tags=["messages"])

MESSAGES = collection_name(Message)
PARTY_FIELDS = ("firstName", "lastName", "profileImage", "role")


def not_deleted_for(user_id: ObjectId) -> Dict[str, Any]:
    return {"deletedBy.user": {"$ne": user_id}}


def involving(user_id: ObjectId) -> Dict[str, Any]:
    return {"$or": [{"sender": user_id}, {"recipient": user_id}]}


def _deleted_for(doc: Dict[str, Any], user_id: ObjectId) -> bool:
    return any(entry.get("user") == user_id for entry in doc.get("deletedBy", []))


def _populate_parties(docs):
    populate_many(docs, "sender", User, PARTY_FIELDS)
    populate_many(docs, "recipient", User, PARTY_FIELDS)
    return docs


def _visible_message(message_id: str, principal: Principal, action: str) -> Dict[str, Any]:
    found = find_by_id(Message, message_id, "Message")
    enforce(principal, "message", action, found)
    if _deleted_for(found, principal.id):
        raise NotFoundError("Message")
    return found


def _listing(query: Dict[str, Any], params: PageParams):
    docs, meta = paginate(get_collection(Message), query, params, default_sort=(("createdAt", -1),),
                          allowed_sorts=("createdAt", "priority", "subject"))
    _populate_parties(docs)
    return ok({"items": serialize_list(docs), "pagination": meta})


def _store(doc: Dict[str, Any], parent: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    doc["_id"] = ObjectId()
    doc["threadId"] = thread_id_for(doc["_id"], parent)
    create_document(MESSAGES, doc)
    created = get_collection(Message).find_one({"_id": doc["_id"]})
    populate(created, "sender", User, PARTY_FIELDS)
    populate(created, "recipient", User, PARTY_FIELDS)
    return created


@router.get("/inbox")
def inbox(unread_only: bool = Query(False, alias="unreadOnly"), params: PageParams = Depends(page_params),
          principal: Principal = Depends(get_principal)):
    filt: Dict[str, Any] = {"recipient": principal.id, "isArchived": False, **not_deleted_for(principal.id)}
    if unread_only:
        filt["isRead"] = False
    return _listing(filt, params)


@router.get("/sent")
def sent(params: PageParams = Depends(page_params), principal: Principal = Depends(get_principal)):
    return _listing({"sender": principal.id, **not_deleted_for(principal.id)}, params)


@router.get("/starred")
def starred(params: PageParams = Depends(page_params), principal: Principal = Depends(get_principal)):
    query = and_query(involving(principal.id), {"isStarred": True, **not_deleted_for(principal.id)})
    return _listing(query, params)


@router.get("/search")
def search_messages(q: Optional[str] = Query(None), params: PageParams = Depends(page_params),
                    principal: Principal = Depends(get_principal)):
    if not q or not q.strip():
        raise ValidationFailed.field("q", "Search term is required")
    query = and_query(involving(principal.id), not_deleted_for(principal.id),
                      search_clause(q, ("subject", "message")))
    return _listing(query, params)


@router.get("/unread-count")
def unread_count(principal: Principal = Depends(get_principal)):
    count = get_collection(Message).count_documents({
        "recipient": principal.id, "isRead": False, "isArchived": False, **not_deleted_for(principal.id),
    })
    return ok({"unreadCount": count})


@router.get("/users")
def messaging_users(search: Optional[str] = Query(None), role: Optional[str] = Query(None),
                    principal: Principal = Depends(get_principal)):
    """Active users the principal can write to."""
    filt: Dict[str, Any] = {"_id": {"$ne": principal.id}, "isActive": True}
    if role:
        filt["role"] = role
    query = and_query(filt, search_clause(search, ("firstName", "lastName", "email")))
    users = list(get_collection(User).find(
        query, {"firstName": 1, "lastName": 1, "email": 1, "role": 1, "profileImage": 1},
    ).sort([("firstName", 1), ("lastName", 1), ("_id", 1)]).limit(50))
    return ok({"users": serialize_list(users)})


@router.get("/thread/{thread_id}")
def thread(thread_id: str, principal: Principal = Depends(get_principal)):
    query = and_query({"threadId": to_object_id(thread_id, "Thread")}, involving(principal.id),
                      not_deleted_for(principal.id))
    docs = list(get_collection(Message).find(query).sort([("createdAt", 1), ("_id", 1)]))
    if not docs:
        raise NotFoundError("Thread")
    return ok({"messages": serialize_list(_populate_parties(docs))})


@router.get("/{message_id}")
def get_message(message_id: str, principal: Principal = Depends(get_principal)):
    found = _visible_message(message_id, principal, "view")
    if found["recipient"] == principal.id and not found.get("isRead"):
        found = get_collection(Message).find_one_and_update(
            {"_id": found["_id"]},
            {"$set": {"isRead": True, "readAt": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
    populate(found, "sender", User, PARTY_FIELDS)
    populate(found, "recipient", User, PARTY_FIELDS)
    return ok({"message": serialize_doc(found)})


@router.post("", status_code=201)
def send_message(payload: MessageCreate, principal: Principal = Depends(get_principal)):
    recipient = get_collection(User).find_one({"_id": payload.recipient, "isActive": True})
    if not recipient:
        raise NotFoundError("Recipient")
    doc = Message(sender=principal.id, **payload.model_dump()).to_document()
    return ok({"message": serialize_doc(_store(doc))}, "Message sent successfully")


@router.post("/{message_id}/reply", status_code=201)
def reply_message(message_id: str, payload: ReplyPayload, principal: Principal = Depends(get_principal)):
    try:
        original = _visible_message(message_id, principal, "reply")
    except NotFoundError:
        raise NotFoundError("Original message")
    counterpart = original["recipient"] if original["sender"] == principal.id else original["sender"]
    subject = original["subject"] if original["subject"].startswith("Re: ") else f"Re: {original['subject']}"
    doc = Message(
        sender=principal.id,
        recipient=counterpart,
        subject=subject[:200],
        parent_message=original["_id"],
        **payload.model_dump(),
    ).to_document()
    return ok({"message": serialize_doc(_store(doc, original))}, "Reply sent successfully")


@router.put("/{message_id}/read")
def mark_read(message_id: str, principal: Principal = Depends(get_principal)):
    found = _visible_message(message_id, principal, "read")
    if not found.get("isRead"):
        get_collection(Message).update_one(
            {"_id": found["_id"]}, {"$set": {"isRead": True, "readAt": datetime.utcnow()}})
    return ok(message="Message marked as read")


@router.put("/{message_id}/star")
def toggle_star(message_id: str, principal: Principal = Depends(get_principal)):
    found = _visible_message(message_id, principal, "star")
    starred_now = not found.get("isStarred", False)
    get_collection(Message).update_one({"_id": found["_id"]}, {"$set": {"isStarred": starred_now}})
    return ok({"isStarred": starred_now}, "Message starred" if starred_now else "Message unstarred")


@router.put("/{message_id}/archive")
def archive_message(message_id: str, principal: Principal = Depends(get_principal)):
    found = _visible_message(message_id, principal, "archive")
    get_collection(Message).update_one({"_id": found["_id"]}, {"$set": {"isArchived": True}})
    return ok(message="Message archived")


@router.delete("/{message_id}")
def delete_message(message_id: str, principal: Principal = Depends(get_principal)):
    found = _visible_message(message_id, principal, "delete")
    messages = get_collection(Message)
    updated = messages.find_one_and_update(
        {"_id": found["_id"], **not_deleted_for(principal.id)},
        {"$push": {"deletedBy": {"user": principal.id, "deletedAt": datetime.utcnow()}}},
        return_document=ReturnDocument.AFTER,
    ) or messages.find_one({"_id": found["_id"]})
    deleted_by = {entry.get("user") for entry in updated.get("deletedBy", [])}
    if {updated["sender"], updated["recipient"]} <= deleted_by and not updated.get("isDeleted"):
        messages.update_one({"_id": updated["_id"]}, {"$set": {"isDeleted": True}})
    return ok(message="Message deleted")
