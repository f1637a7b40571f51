from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Body, Depends, Query

from computations import js_round, percentage_of, time_to_minutes, windows_overlap
from database import (
    and_query, collection_name, create_document, find_by_id, get_collection, populate,
    populate_many, search_clause, to_object_id, update_by_id,
)
from exceptions import ConflictError
from pagination import PageParams, page_params, paginate
from policies import Principal, STUDENT, PARENT, TEACHER, enforce
from responses import ok, serialize_doc, serialize_list
from routers.sessions import active_session_id
from schemas import Classroom, Exam, ExamMark, ExamType, Section, Session, Student, Subject, User, apply_update
from security import authorize, get_current_user, get_principal, principal_for

router = APIRouter(prefix="/exams", tags=["exams"])

EXAMS = collection_name(Exam)
OVERLAP_MESSAGE = "There is already an exam scheduled for this class at the same time"


def _today() -> datetime:
    now = datetime.utcnow()
    return datetime(now.year, now.month, now.day)


def _starts_at(exam: Dict[str, Any]) -> datetime:
    minutes = time_to_minutes(exam["startTime"])
    day = exam["date"]
    return datetime(day.year, day.month, day.day, minutes // 60, minutes % 60)


def _check_slot(doc: Dict[str, Any], exclude_id: Optional[ObjectId] = None) -> None:
    """Reject an exam whose window overlaps another live exam of the same class on the same day."""
    filt: Dict[str, Any] = {"class": doc["class"], "date": doc["date"], "status": {"$ne": "Cancelled"}}
    if exclude_id is not None:
        filt["_id"] = {"$ne": exclude_id}
    for other in get_collection(Exam).find(filt, {"startTime": 1, "endTime": 1}):
        if windows_overlap(doc["startTime"], doc["endTime"], other["startTime"], other["endTime"]):
            raise ConflictError(OVERLAP_MESSAGE)


def _mark_stats(marks: List[Dict[str, Any]], passing_marks: float) -> Dict[str, Any]:
    stats: Dict[str, Any] = {"averageMarks": 0, "highestMarks": 0, "lowestMarks": 0, "passCount": 0, "failCount": 0}
    if not marks:
        return stats
    values = [m.get("marksObtained", 0) for m in marks]
    stats["averageMarks"] = js_round(sum(values) / len(values))
    stats["highestMarks"] = max(values)
    stats["lowestMarks"] = min(values)
    stats["passCount"] = sum(1 for v in values if v >= passing_marks)
    stats["failCount"] = len(values) - stats["passCount"]
    return stats


def _populate_exam(doc: Dict[str, Any]) -> Dict[str, Any]:
    populate(doc, "class", Classroom, ("name", "grade"))
    populate(doc, "section", Section, ("name",))
    populate(doc, "subject", Subject, ("name", "code"))
    populate(doc, "examType", ExamType, ("name",))
    populate(doc, "teacher", User, ("firstName", "lastName"))
    return doc


# -------------------- Exam types -------------------- #

@router.get("/types")
def list_exam_types(
    session: Optional[str] = Query(None),
    is_active: bool = Query(True, alias="isActive"),
    user=Depends(get_current_user),
):
    filt: Dict[str, Any] = {"isActive": is_active}
    if session:
        filt["session"] = to_object_id(session, "Session")
    docs = list(get_collection(ExamType).find(filt).sort([("name", 1), ("_id", 1)]))
    return ok({"items": serialize_list(docs)})


@router.post("/types", status_code=201)
def create_exam_type(payload: ExamType, user=Depends(authorize("Admin"))):
    doc = payload.to_document()
    if doc.get("session") is None:
        doc["session"] = active_session_id()
    types = get_collection(ExamType)
    if types.find_one({"name": doc["name"], "session": doc["session"]}):
        raise ConflictError("Exam type with this name already exists for this session")
    doc["createdBy"] = user["_id"]
    new_id = create_document(collection_name(ExamType), doc)
    return ok({"examType": serialize_doc(types.find_one({"_id": ObjectId(new_id)}))},
              "Exam type created successfully")


@router.put("/types/{type_id}")
def update_exam_type(type_id: str, patch: Dict[str, Any] = Body(...), user=Depends(authorize("Admin"))):
    found = find_by_id(ExamType, type_id, "Exam type")
    changes = apply_update(ExamType, found, {k: v for k, v in patch.items() if k not in ("_id", "id")})
    if "name" in changes:
        clash = get_collection(ExamType).find_one(
            {"_id": {"$ne": found["_id"]}, "name": changes["name"], "session": found.get("session")})
        if clash:
            raise ConflictError("Exam type with this name already exists for this session")
    updated = update_by_id(ExamType, found["_id"], changes, user["_id"])
    return ok({"examType": serialize_doc(updated)}, "Exam type updated successfully")


# -------------------- Exams -------------------- #

@router.get("/stats")
def exam_stats(session: Optional[str] = Query(None),
               principal: Principal = Depends(principal_for("Admin", "Teacher"))):
    filt: Dict[str, Any] = {}
    if session:
        filt["session"] = to_object_id(session, "Session")
    if principal.role == TEACHER:
        filt["teacher"] = principal.id
    exams = list(get_collection(Exam).find(filt, {"status": 1, "date": 1}))

    status_wise: Dict[str, int] = {}
    monthly: Dict[tuple, int] = {}
    for e in exams:
        status_wise[e.get("status", "Scheduled")] = status_wise.get(e.get("status", "Scheduled"), 0) + 1
        if e.get("date"):
            key = (e["date"].year, e["date"].month)
            monthly[key] = monthly.get(key, 0) + 1
    summary = {
        "total": len(exams),
        "scheduled": status_wise.get("Scheduled", 0),
        "ongoing": status_wise.get("Ongoing", 0),
        "completed": status_wise.get("Completed", 0),
        "cancelled": status_wise.get("Cancelled", 0),
    }
    return ok({
        "summary": summary,
        "statusWise": [{"status": s, "count": c} for s, c in sorted(status_wise.items())],
        "monthly": [{"year": y, "month": m, "count": c} for (y, m), c in sorted(monthly.items())],
    })


@router.get("")
def list_exams(
    search: Optional[str] = Query(None),
    class_id: Optional[str] = Query(None, alias="class"),
    subject: Optional[str] = Query(None),
    exam_type: Optional[str] = Query(None, alias="examType"),
    status: Optional[str] = Query(None),
    session: Optional[str] = Query(None),
    params: PageParams = Depends(page_params),
    principal: Principal = Depends(get_principal),
):
    scope = enforce(principal, "exam", "list")
    filt: Dict[str, Any] = {}
    if class_id:
        filt["class"] = to_object_id(class_id, "Class")
    if subject:
        filt["subject"] = to_object_id(subject, "Subject")
    if exam_type:
        filt["examType"] = to_object_id(exam_type, "Exam type")
    if status:
        filt["status"] = status
    if session:
        filt["session"] = to_object_id(session, "Session")
    query = and_query(scope, filt, search_clause(search, ("name", "instructions")))
    docs, meta = paginate(get_collection(Exam), query, params, default_sort=(("date", -1),),
                          allowed_sorts=("date", "name", "status", "createdAt"))
    populate_many(docs, "class", Classroom, ("name", "grade"))
    populate_many(docs, "subject", Subject, ("name", "code"))
    populate_many(docs, "examType", ExamType, ("name",))
    populate_many(docs, "teacher", User, ("firstName", "lastName"))
    populate_many(docs, "session", Session, ("name",))
    return ok({"items": serialize_list(docs), "pagination": meta})


@router.get("/{exam_id}")
def get_exam(exam_id: str, principal: Principal = Depends(get_principal)):
    found = find_by_id(Exam, exam_id, "Exam")
    enforce(principal, "exam", "view", found)
    marks = list(get_collection(ExamMark).find({"exam": found["_id"]}, {"marksObtained": 1}))
    stats = {
        "totalStudents": get_collection(Student).count_documents({"class": found["class"], "status": "Active"}),
        "marksEntered": len(marks),
        **_mark_stats(marks, found.get("passingMarks", 0)),
    }
    return ok({"exam": serialize_doc(_populate_exam(found)), "stats": stats})


@router.post("", status_code=201)
def create_exam(payload: Exam, principal: Principal = Depends(principal_for("Admin", "Teacher"))):
    doc = payload.to_document()
    if principal.role == TEACHER and doc.get("teacher") is None:
        doc["teacher"] = principal.id
    enforce(principal, "exam", "create", doc)

    classroom = find_by_id(Classroom, doc["class"], "Class")
    find_by_id(Subject, doc["subject"], "Subject")
    find_by_id(ExamType, doc["examType"], "Exam type")
    if doc.get("section") is not None:
        find_by_id(Section, doc["section"], "Section")
    if doc["date"] < _today():
        raise ConflictError("Exam date cannot be in the past")
    _check_slot(doc)

    if doc.get("session") is None:
        doc["session"] = classroom.get("session") or active_session_id()
    doc["createdBy"] = principal.id
    new_id = create_document(EXAMS, doc)
    created = _populate_exam(get_collection(Exam).find_one({"_id": ObjectId(new_id)}))
    return ok({"exam": serialize_doc(created)}, "Exam created successfully")


@router.put("/{exam_id}")
def update_exam(exam_id: str, patch: Dict[str, Any] = Body(...),
                principal: Principal = Depends(principal_for("Admin", "Teacher"))):
    found = find_by_id(Exam, exam_id, "Exam")
    enforce(principal, "exam", "update", found)
    if found.get("status") == "Scheduled" and _starts_at(found) <= datetime.utcnow():
        raise ConflictError("Cannot update exam that has already started")

    blocked = ("_id", "id", "isPublished", "session")
    changes = apply_update(Exam, found, {k: v for k, v in patch.items() if k not in blocked})
    if {"class", "subject"} & set(changes):
        enforce(principal, "exam", "create", {**found, **changes})
    if "date" in changes and changes["date"] < _today():
        raise ConflictError("Exam date cannot be in the past")
    if {"class", "date", "startTime", "endTime"} & set(changes):
        _check_slot({**found, **changes}, exclude_id=found["_id"])
    updated = update_by_id(Exam, found["_id"], changes, principal.id)
    return ok({"exam": serialize_doc(_populate_exam(updated))}, "Exam updated successfully")


@router.delete("/{exam_id}")
def delete_exam(exam_id: str, principal: Principal = Depends(principal_for("Admin"))):
    found = find_by_id(Exam, exam_id, "Exam")
    enforce(principal, "exam", "delete", found)
    marks = get_collection(ExamMark).count_documents({"exam": found["_id"]})
    if marks:
        raise ConflictError(
            f"Cannot delete exam. It has {marks} mark entries. Please remove marks first.", {"marks": marks})
    update_by_id(Exam, found["_id"], {"status": "Cancelled"}, principal.id)
    return ok(message="Exam deleted successfully")


@router.get("/{exam_id}/results")
def exam_results(exam_id: str, principal: Principal = Depends(get_principal)):
    found = find_by_id(Exam, exam_id, "Exam")
    enforce(principal, "exam", "view", found)

    filt: Dict[str, Any] = {"exam": found["_id"]}
    if principal.role == STUDENT:
        filt["student"] = principal.student_id
    elif principal.role == PARENT:
        filt["student"] = {"$in": principal.children_ids}
    results = list(get_collection(ExamMark).find(filt).sort([("marksObtained", -1), ("_id", 1)]))
    populate_many(results, "student", Student, ("admissionNumber", "rollNumber", "studentId", "user"))
    for r in results:
        if isinstance(r.get("student"), dict):
            populate(r["student"], "user", User, ("firstName", "lastName"))

    stats = {"totalStudents": len(results), **_mark_stats(results, found.get("passingMarks", 0))}
    stats["passPercentage"] = percentage_of(stats["passCount"], len(results))
    return ok({"exam": serialize_doc(_populate_exam(found)), "results": serialize_list(results), "stats": stats})


@router.post("/{exam_id}/publish")
def publish_results(exam_id: str, principal: Principal = Depends(principal_for("Admin", "Teacher"))):
    found = find_by_id(Exam, exam_id, "Exam")
    enforce(principal, "exam", "publish", found)
    student_filter: Dict[str, Any] = {"class": found["class"], "status": "Active"}
    if found.get("section"):
        student_filter["section"] = found["section"]
    total = get_collection(Student).count_documents(student_filter)
    entered = get_collection(ExamMark).count_documents({"exam": found["_id"]})
    if entered < total:
        raise ConflictError(f"Cannot publish results. Marks entered for {entered} out of {total} students.")
    update_by_id(Exam, found["_id"], {
        "status": "Completed",
        "isPublished": True,
        "resultsPublishedAt": datetime.utcnow(),
    }, principal.id)
    return ok(message="Exam results published successfully")
