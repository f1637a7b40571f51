from datetime import datetime
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import APIRouter, Body, Depends, Query
from pymongo import ReturnDocument

from computations import availability_status, days_overdue
from database import (
    and_query, collection_name, create_document, find_by_id, get_collection, populate,
    populate_many, search_clause, to_object_id, update_by_id,
)
from exceptions import ConflictError, ValidationFailed
from logging_config import logger
from pagination import PageParams, page_params, paginate
from responses import ok, serialize_doc, serialize_list
from routers.sessions import active_session_id
from schemas import Book, BookIssue, Classroom, IssuePayload, ReturnPayload, Student, Subject, User, apply_update
from security import authorize, get_current_user

router = APIRouter(prefix="/library", tags=["library"])

BOOKS = collection_name(Book)
ISSUES = collection_name(BookIssue)
SEARCH_FIELDS = ("title", "author", "publisher", "isbn")


def _book_view(doc: Dict[str, Any]) -> Dict[str, Any]:
    available = doc.get("availableCopies", 0)
    doc["issuedCopies"] = doc.get("totalCopies", 0) - available
    doc["availabilityStatus"] = availability_status(available)
    return doc


def _book_filters(category: Optional[str], subject: Optional[str], class_id: Optional[str],
                  available_only: bool) -> Dict[str, Any]:
    filt: Dict[str, Any] = {"isActive": True}
    if category:
        filt["category"] = category
    if subject:
        filt["subject"] = to_object_id(subject, "Subject")
    if class_id:
        filt["classes"] = to_object_id(class_id, "Class")
    if available_only:
        filt["availableCopies"] = {"$gt": 0}
    return filt


def _check_isbn(isbn: Optional[str], exclude_id: Optional[ObjectId] = None) -> None:
    if not isbn:
        return
    filt: Dict[str, Any] = {"isbn": isbn, "isActive": True}
    if exclude_id is not None:
        filt["_id"] = {"$ne": exclude_id}
    if get_collection(Book).find_one(filt):
        raise ConflictError("Book with this ISBN already exists")


@router.get("")
def list_books(
    search: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    subject: Optional[str] = Query(None),
    class_id: Optional[str] = Query(None, alias="class"),
    available_only: bool = Query(False, alias="availableOnly"),
    params: PageParams = Depends(page_params),
    user=Depends(get_current_user),
):
    if params.sort_by == "newest":
        params.sort_by, params.sort_order = "createdAt", "desc"
    query = and_query(_book_filters(category, subject, class_id, available_only), search_clause(search, SEARCH_FIELDS))
    docs, meta = paginate(get_collection(Book), query, params, default_sort=(("title", 1),),
                          allowed_sorts=("title", "author", "category", "createdAt"))
    for doc in docs:
        _book_view(doc)
        populate(doc, "classes", Classroom, ("name", "grade"))
    populate_many(docs, "subject", Subject, ("name", "code"))
    return ok({"items": serialize_list(docs), "pagination": meta})


@router.get("/search")
def search_books(
    q: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    subject: Optional[str] = Query(None),
    class_id: Optional[str] = Query(None, alias="class"),
    available_only: bool = Query(False, alias="availableOnly"),
    user=Depends(get_current_user),
):
    if not q or not q.strip():
        raise ValidationFailed.field("q", "Search term is required")
    query = and_query(_book_filters(category, subject, class_id, available_only), search_clause(q, SEARCH_FIELDS))
    docs = list(get_collection(Book).find(query).sort([("title", 1), ("_id", 1)]).limit(50))
    populate_many(docs, "subject", Subject, ("name", "code"))
    return ok({"books": serialize_list([_book_view(d) for d in docs])})


@router.get("/stats")
def library_stats(user=Depends(authorize("Admin"))):
    books = list(get_collection(Book).find({"isActive": True}))
    total_copies = sum(b.get("totalCopies", 0) for b in books)
    available = sum(b.get("availableCopies", 0) for b in books)

    categories: Dict[str, Dict[str, Any]] = {}
    for b in books:
        entry = categories.setdefault(b.get("category"), {"category": b.get("category"), "count": 0,
                                                          "totalCopies": 0, "availableCopies": 0})
        entry["count"] += 1
        entry["totalCopies"] += b.get("totalCopies", 0)
        entry["availableCopies"] += b.get("availableCopies", 0)

    issue_counts: Dict[ObjectId, int] = {}
    for issue in get_collection(BookIssue).find({}, {"book": 1}):
        issue_counts[issue["book"]] = issue_counts.get(issue["book"], 0) + 1
    by_id = {b["_id"]: b for b in books}
    popular = sorted((bid for bid in issue_counts if bid in by_id), key=lambda bid: -issue_counts[bid])[:10]
    recent = sorted(books, key=lambda b: b.get("createdAt") or datetime.min, reverse=True)[:10]

    return ok({
        "summary": {
            "totalBooks": len(books),
            "totalCopies": total_copies,
            "availableCopies": available,
            "issuedCopies": total_copies - available,
            "overdueIssues": get_collection(BookIssue).count_documents(
                {"status": "Issued", "dueDate": {"$lt": datetime.utcnow()}}),
        },
        "categoryStats": sorted(categories.values(), key=lambda c: -c["count"]),
        "popularBooks": [
            {"id": bid, "title": by_id[bid].get("title"), "author": by_id[bid].get("author"),
             "category": by_id[bid].get("category"), "issueCount": issue_counts[bid]}
            for bid in popular
        ],
        "recentBooks": [
            {"id": b["_id"], "title": b.get("title"), "author": b.get("author"),
             "category": b.get("category"), "createdAt": b.get("createdAt")}
            for b in recent
        ],
    })


@router.get("/issues")
def list_issues(
    status: Optional[str] = Query(None),
    student: Optional[str] = Query(None),
    book: Optional[str] = Query(None),
    overdue: bool = Query(False),
    params: PageParams = Depends(page_params),
    user=Depends(authorize("Admin")),
):
    filt: Dict[str, Any] = {}
    if status:
        filt["status"] = status
    if student:
        filt["student"] = to_object_id(student, "Student")
    if book:
        filt["book"] = to_object_id(book, "Book")
    if overdue:
        filt.update({"status": "Issued", "dueDate": {"$lt": datetime.utcnow()}})
    docs, meta = paginate(get_collection(BookIssue), filt, params, default_sort=(("issueDate", -1),),
                          allowed_sorts=("issueDate", "dueDate", "returnDate"))
    populate_many(docs, "book", Book, ("title", "author", "isbn"))
    populate_many(docs, "student", Student, ("admissionNumber", "studentId", "user"))
    for doc in docs:
        if doc.get("status") == "Issued":
            doc["daysOverdue"] = days_overdue(doc.get("dueDate"))
    return ok({"items": serialize_list(docs), "pagination": meta})


@router.get("/{book_id}")
def get_book(book_id: str, user=Depends(get_current_user)):
    found = find_by_id(Book, book_id, "Book")
    populate(found, "subject", Subject, ("name", "code"))
    populate(found, "classes", Classroom, ("name", "grade"))
    populate(found, "createdBy", User, ("firstName", "lastName"))
    return ok({"book": serialize_doc(_book_view(found))})


@router.post("", status_code=201)
def add_book(payload: Book, user=Depends(authorize("Admin"))):
    doc = payload.to_document()
    _check_isbn(doc.get("isbn"))
    if doc.get("session") is None:
        doc["session"] = active_session_id()
    doc["availableCopies"] = doc["totalCopies"]
    doc["createdBy"] = user["_id"]
    new_id = create_document(BOOKS, doc)
    created = get_collection(Book).find_one({"_id": ObjectId(new_id)})
    return ok({"book": serialize_doc(_book_view(created))}, "Book added successfully")


@router.put("/{book_id}")
def update_book(book_id: str, patch: Dict[str, Any] = Body(...), user=Depends(authorize("Admin"))):
    found = find_by_id(Book, book_id, "Book")
    blocked = ("_id", "id", "availableCopies")
    changes = apply_update(Book, found, {k: v for k, v in patch.items() if k not in blocked})
    if "isbn" in changes and changes["isbn"] != found.get("isbn"):
        _check_isbn(changes["isbn"], found["_id"])
    if "totalCopies" in changes and changes["totalCopies"] != found.get("totalCopies"):
        issued = found.get("totalCopies", 0) - found.get("availableCopies", 0)
        changes["availableCopies"] = max(0, changes["totalCopies"] - issued)
    updated = update_by_id(Book, found["_id"], changes, user["_id"])
    populate(updated, "subject", Subject, ("name", "code"))
    return ok({"book": serialize_doc(_book_view(updated))}, "Book updated successfully")


@router.delete("/{book_id}")
def delete_book(book_id: str, user=Depends(authorize("Admin"))):
    found = find_by_id(Book, book_id, "Book")
    if found.get("availableCopies", 0) < found.get("totalCopies", 0):
        raise ConflictError("Cannot delete book with issued copies. Please return all copies first.")
    update_by_id(Book, found["_id"], {"isActive": False}, user["_id"])
    return ok(message="Book deleted successfully")


@router.post("/{book_id}/issue")
def issue_book(book_id: str, payload: IssuePayload, user=Depends(authorize("Admin"))):
    """Lend one copy. The decrement is conditional on a copy being available."""
    found = find_by_id(Book, book_id, "Book")
    student = find_by_id(Student, payload.student_id, "Student")
    if payload.due_date <= datetime.utcnow():
        raise ValidationFailed.field("dueDate", "Due date must be in the future")

    book = get_collection(Book).find_one_and_update(
        {"_id": found["_id"], "isActive": True, "availableCopies": {"$gt": 0}},
        {"$inc": {"availableCopies": -1}, "$set": {"updatedAt": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if book is None:
        raise ConflictError("No copies available for issue")

    issue_id = create_document(ISSUES, BookIssue(
        book=book["_id"],
        student=student["_id"],
        due_date=payload.due_date,
        remarks=payload.remarks,
        issued_by=user["_id"],
    ).to_document())
    logger.info(f"Issued book {book['_id']} to student {student['_id']}")
    return ok({
        "book": {"id": book["_id"], "title": book.get("title"),
                 "availableCopies": book["availableCopies"], "totalCopies": book["totalCopies"]},
        "issue": serialize_doc(get_collection(BookIssue).find_one({"_id": ObjectId(issue_id)})),
    }, "Book issued successfully")


@router.post("/{book_id}/return")
def return_book(book_id: str, payload: ReturnPayload, user=Depends(authorize("Admin"))):
    found = find_by_id(Book, book_id, "Book")
    if found.get("availableCopies", 0) >= found.get("totalCopies", 0):
        raise ConflictError("All copies are already available")

    now = datetime.utcnow()
    issue = get_collection(BookIssue).find_one_and_update(
        {"book": found["_id"], "student": payload.student_id, "status": "Issued"},
        {"$set": {
            "status": "Returned",
            "returnDate": payload.return_date or now,
            "condition": payload.condition,
            "remarks": payload.remarks,
            "updatedAt": now,
        }},
        sort=[("issueDate", 1), ("_id", 1)],
        return_document=ReturnDocument.AFTER,
    )
    if issue is None:
        raise ConflictError("This book is not issued to the given student")

    book = get_collection(Book).find_one_and_update(
        {"_id": found["_id"], "availableCopies": {"$lt": found["totalCopies"]}},
        {"$inc": {"availableCopies": 1}, "$set": {"updatedAt": now}},
        return_document=ReturnDocument.AFTER,
    )
    if book is None:
        raise ConflictError("All copies are already available")

    logger.info(f"Returned book {book['_id']} from student {payload.student_id}")
    return ok({
        "book": {"id": book["_id"], "title": book.get("title"),
                 "availableCopies": book["availableCopies"], "totalCopies": book["totalCopies"]},
        "issue": serialize_doc(issue),
    }, "Book returned successfully")
