from datetime import datetime
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import APIRouter, Body, Depends, Query

from database import collection_name, create_document, find_by_id, get_collection, update_by_id
from exceptions import ConflictError, NotFoundError
from logging_config import logger
from pagination import PageParams, page_params, paginate
from responses import ok, serialize_doc, serialize_list
from schemas import Classroom, Session, apply_update
from security import authorize, get_current_user

router = APIRouter(prefix="/sessions", tags=["sessions"])


def active_session() -> Optional[Dict[str, Any]]:
    return get_collection(Session).find_one({"isActive": True})


def active_session_id() -> Optional[ObjectId]:
    current = active_session()
    return current["_id"] if current else None


def activate_session(session_id: ObjectId, user_id: Optional[ObjectId] = None) -> Dict[str, Any]:
    """Make ``session_id`` the only active session.

    The target and every active session are rewritten by one update_many whose
    pipeline sets ``isActive`` to whether the document is the target.
    """
    sessions = get_collection(Session)
    if not sessions.find_one({"_id": session_id}, {"_id": 1}):
        raise NotFoundError("Session")
    now = datetime.utcnow()
    sessions.update_many(
        {"$or": [{"_id": session_id}, {"isActive": True}]},
        [{"$set": {"isActive": {"$eq": ["$_id", session_id]}, "updatedAt": now}}],
    )
    if user_id is not None:
        sessions.update_one({"_id": session_id}, {"$set": {"updatedBy": user_id}})
    activated = sessions.find_one({"_id": session_id})
    logger.info(f"Activated session {activated.get('name')}")
    return activated


@router.get("")
def list_sessions(
    is_active: Optional[bool] = Query(None, alias="isActive"),
    params: PageParams = Depends(page_params),
    user=Depends(get_current_user),
):
    filt: Dict[str, Any] = {}
    if is_active is not None:
        filt["isActive"] = is_active
    docs, meta = paginate(get_collection(Session), filt, params, default_sort=(("startDate", -1),),
                          allowed_sorts=("startDate", "endDate", "name", "createdAt"))
    return ok({"items": serialize_list(docs), "pagination": meta})


@router.get("/active")
def get_active_session(user=Depends(get_current_user)):
    current = active_session()
    if not current:
        raise NotFoundError(message="No active session found")
    return ok({"session": serialize_doc(current)})


@router.get("/{session_id}")
def get_session(session_id: str, user=Depends(get_current_user)):
    found = find_by_id(Session, session_id, "Session")
    class_count = get_collection(Classroom).count_documents({"session": found["_id"]})
    return ok({"session": serialize_doc(found), "stats": {"classes": class_count}})


@router.post("", status_code=201)
def create_session(payload: Session, user=Depends(authorize("Admin"))):
    sessions = get_collection(Session)
    if sessions.find_one({"name": payload.name}):
        raise ConflictError("Session with this name already exists")
    doc = payload.to_document()
    make_active = doc.pop("isActive")
    doc["isActive"] = False
    doc["createdBy"] = user["_id"]
    new_id = ObjectId(create_document(collection_name(Session), doc))
    created = activate_session(new_id, user["_id"]) if make_active else sessions.find_one({"_id": new_id})
    return ok({"session": serialize_doc(created)}, "Session created successfully")


@router.put("/{session_id}")
def update_session(session_id: str, patch: Dict[str, Any] = Body(...), user=Depends(authorize("Admin"))):
    found = find_by_id(Session, session_id, "Session")
    changes = apply_update(Session, found, {k: v for k, v in patch.items() if k not in ("_id", "id")})
    if "name" in changes:
        clash = get_collection(Session).find_one({"name": changes["name"], "_id": {"$ne": found["_id"]}})
        if clash:
            raise ConflictError("Session with this name already exists")
    make_active = changes.pop("isActive", None)
    updated = update_by_id(Session, found["_id"], changes, user["_id"])
    if make_active:
        updated = activate_session(found["_id"], user["_id"])
    elif make_active is False:
        updated = update_by_id(Session, found["_id"], {"isActive": False}, user["_id"])
    return ok({"session": serialize_doc(updated)}, "Session updated successfully")


@router.put("/{session_id}/activate")
def activate(session_id: str, user=Depends(authorize("Admin"))):
    found = find_by_id(Session, session_id, "Session")
    activated = activate_session(found["_id"], user["_id"])
    return ok({"session": serialize_doc(activated)}, "Session activated successfully")


@router.delete("/{session_id}")
def delete_session(session_id: str, user=Depends(authorize("Admin"))):
    found = find_by_id(Session, session_id, "Session")
    if found.get("isActive"):
        raise ConflictError("Cannot delete the active session")
    class_count = get_collection(Classroom).count_documents({"session": found["_id"]})
    if class_count:
        raise ConflictError(
            f"Cannot delete session. It has {class_count} classes.",
            {"classes": class_count},
        )
    get_collection(Session).delete_one({"_id": found["_id"]})
    return ok(message="Session deleted successfully")
