from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Body, Depends, Query
from pymongo import ReturnDocument

from database import (
    and_query, collection_name, create_document, find_by_id, get_collection, populate,
    populate_many, search_clause, update_by_id,
)
from exceptions import ValidationFailed
from pagination import PageParams, page_params, paginate, parse_date
from policies import ADMIN, Principal, enforce, notice_visibility
from responses import ok, serialize_doc, serialize_list
from routers.sessions import active_session_id
from schemas import Classroom, Notice, User, apply_update
from security import get_principal, principal_for

router = APIRouter(prefix="/notices", tags=["notices"])

NOTICES = collection_name(Notice)
PINNED_FIRST = (("isPinned", -1), ("publishDate", -1))
AUTHOR_FIELDS = ("firstName", "lastName", "role")


def _for_reader(docs: List[Dict[str, Any]], principal: Principal) -> List[Dict[str, Any]]:
    if principal.role != ADMIN:
        for doc in docs:
            doc.pop("viewedBy", None)
    populate_many(docs, "createdBy", User, AUTHOR_FIELDS)
    for doc in docs:
        populate(doc, "targetClasses", Classroom, ("name", "grade"))
    return docs


def _check_classes(class_ids: List[ObjectId]) -> None:
    if class_ids and get_collection(Classroom).count_documents({"_id": {"$in": class_ids}}) != len(set(class_ids)):
        raise ValidationFailed.field("targetClasses", "One or more target classes not found")


def _filters(category: Optional[str], priority: Optional[str], audience: Optional[str]) -> Dict[str, Any]:
    filt: Dict[str, Any] = {}
    if category:
        filt["category"] = category
    if priority:
        filt["priority"] = priority
    if audience:
        filt["targetAudience"] = audience
    return filt


@router.get("")
def list_notices(
    category: Optional[str] = Query(None),
    priority: Optional[str] = Query(None),
    target_audience: Optional[str] = Query(None, alias="targetAudience"),
    include_expired: bool = Query(False, alias="includeExpired"),
    pinned_only: bool = Query(False, alias="pinnedOnly"),
    params: PageParams = Depends(page_params),
    principal: Principal = Depends(get_principal),
):
    scope = enforce(principal, "notice", "list")
    if include_expired and principal.role != ADMIN:
        scope = notice_visibility(principal, include_expired=True)
    filt = _filters(category, priority, target_audience)
    if pinned_only:
        filt["isPinned"] = True
    docs, meta = paginate(get_collection(Notice), and_query(scope, filt), params, default_sort=PINNED_FIRST,
                          allowed_sorts=("publishDate", "priority", "viewCount", "createdAt"))
    return ok({"items": serialize_list(_for_reader(docs, principal)), "pagination": meta})


@router.get("/search")
def search_notices(
    q: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    priority: Optional[str] = Query(None),
    target_audience: Optional[str] = Query(None, alias="targetAudience"),
    date_from: Optional[str] = Query(None, alias="dateFrom"),
    date_to: Optional[str] = Query(None, alias="dateTo"),
    principal: Principal = Depends(get_principal),
):
    if not q or not q.strip():
        raise ValidationFailed.field("q", "Search term is required")
    scope = enforce(principal, "notice", "list")
    filt = _filters(category, priority, target_audience)
    published: Dict[str, Any] = {}
    if date_from:
        published["$gte"] = parse_date(date_from, "dateFrom")
    if date_to:
        published["$lte"] = parse_date(date_to, "dateTo")
    if published:
        filt["publishDate"] = published
    query = and_query(scope, filt, search_clause(q, ("title", "content")))
    docs = list(get_collection(Notice).find(query).sort(list(PINNED_FIRST) + [("_id", -1)]).limit(50))
    return ok({"notices": serialize_list(_for_reader(docs, principal))})


@router.get("/recent")
def recent_notices(limit: int = Query(5, ge=1, le=50), principal: Principal = Depends(get_principal)):
    scope = notice_visibility(principal)
    docs = list(get_collection(Notice).find(scope).sort(list(PINNED_FIRST) + [("_id", -1)]).limit(limit))
    return ok({"notices": serialize_list(_for_reader(docs, principal))})


@router.get("/pinned")
def pinned_notices(principal: Principal = Depends(get_principal)):
    query = and_query(notice_visibility(principal), {"isPinned": True})
    docs = list(get_collection(Notice).find(query).sort([("publishDate", -1), ("_id", -1)]))
    return ok({"notices": serialize_list(_for_reader(docs, principal))})


@router.get("/stats")
def notice_stats(principal: Principal = Depends(principal_for("Admin"))):
    enforce(principal, "notice", "stats")
    now = datetime.utcnow()
    notices = list(get_collection(Notice).find({"isActive": True}))

    categories: Dict[str, Dict[str, Any]] = {}
    priorities: Dict[str, int] = {}
    for n in notices:
        entry = categories.setdefault(n.get("category"), {"category": n.get("category"), "count": 0, "published": 0})
        entry["count"] += 1
        if n.get("isPublished"):
            entry["published"] += 1
            priorities[n.get("priority")] = priorities.get(n.get("priority"), 0) + 1

    def _brief(n: Dict[str, Any]) -> Dict[str, Any]:
        return {"id": n["_id"], "title": n.get("title"), "category": n.get("category"),
                "isPublished": n.get("isPublished"), "viewCount": n.get("viewCount", 0),
                "publishDate": n.get("publishDate")}

    published = [n for n in notices if n.get("isPublished")]
    return ok({
        "summary": {
            "totalNotices": len(notices),
            "publishedNotices": len(published),
            "pinnedNotices": sum(1 for n in notices if n.get("isPinned")),
            "expiredNotices": sum(1 for n in notices if n.get("expiryDate") and n["expiryDate"] < now),
        },
        "categoryStats": sorted(categories.values(), key=lambda c: -c["count"]),
        "priorityStats": [{"priority": p, "count": c} for p, c in sorted(priorities.items(), key=lambda i: -i[1])],
        "popularNotices": [_brief(n) for n in sorted(published, key=lambda n: -n.get("viewCount", 0))[:10]],
        "recentNotices": [_brief(n) for n in sorted(
            notices, key=lambda n: n.get("createdAt") or datetime.min, reverse=True)[:10]],
    })


@router.get("/{notice_id}")
def get_notice(notice_id: str, principal: Principal = Depends(get_principal)):
    found = find_by_id(Notice, notice_id, "Notice")
    enforce(principal, "notice", "view", found)
    # One view per user.
    viewed = get_collection(Notice).find_one_and_update(
        {"_id": found["_id"], "viewedBy.user": {"$ne": principal.id}},
        {"$push": {"viewedBy": {"user": principal.id, "viewedAt": datetime.utcnow()}},
         "$inc": {"viewCount": 1}},
        return_document=ReturnDocument.AFTER,
    )
    notice = viewed or found
    populate(notice, "updatedBy", User, AUTHOR_FIELDS)
    return ok({"notice": serialize_doc(_for_reader([notice], principal)[0])})


@router.post("", status_code=201)
def create_notice(payload: Notice, principal: Principal = Depends(principal_for("Admin"))):
    enforce(principal, "notice", "create")
    doc = payload.to_document()
    _check_classes(doc["targetClasses"])
    if doc.get("session") is None:
        doc["session"] = active_session_id()
    doc.update({"viewCount": 0, "viewedBy": [], "createdBy": principal.id})
    new_id = create_document(NOTICES, doc)
    created = get_collection(Notice).find_one({"_id": ObjectId(new_id)})
    return ok({"notice": serialize_doc(_for_reader([created], principal)[0])}, "Notice created successfully")


@router.put("/{notice_id}")
def update_notice(notice_id: str, patch: Dict[str, Any] = Body(...),
                  principal: Principal = Depends(principal_for("Admin"))):
    found = find_by_id(Notice, notice_id, "Notice")
    enforce(principal, "notice", "update", found)
    blocked = ("_id", "id", "viewCount", "viewedBy")
    changes = apply_update(Notice, found, {k: v for k, v in patch.items() if k not in blocked})
    if "targetClasses" in changes:
        _check_classes(changes["targetClasses"])
    updated = update_by_id(Notice, found["_id"], changes, principal.id)
    return ok({"notice": serialize_doc(_for_reader([updated], principal)[0])}, "Notice updated successfully")


@router.delete("/{notice_id}")
def delete_notice(notice_id: str, principal: Principal = Depends(principal_for("Admin"))):
    found = find_by_id(Notice, notice_id, "Notice")
    enforce(principal, "notice", "delete", found)
    update_by_id(Notice, found["_id"], {"isActive": False}, principal.id)
    return ok(message="Notice deleted successfully")


@router.put("/{notice_id}/pin")
def toggle_pin(notice_id: str, principal: Principal = Depends(principal_for("Admin"))):
    found = find_by_id(Notice, notice_id, "Notice")
    enforce(principal, "notice", "pin", found)
    pinned = not found.get("isPinned", False)
    update_by_id(Notice, found["_id"], {"isPinned": pinned}, principal.id)
    return ok({"isPinned": pinned}, "Notice pinned" if pinned else "Notice unpinned")
