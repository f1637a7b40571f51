from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Body, Depends, Query

from database import (
    and_query, collection_name, create_document, find_by_id, get_collection, populate,
    populate_many, search_clause, to_object_id, update_by_id,
)
from exceptions import ConflictError, ValidationFailed
from pagination import PageParams, page_params, paginate
from responses import ok, serialize_doc, serialize_list
from routers.sessions import active_session_id
from schemas import (
    AssignClassesPayload, Classroom, Exam, ExamMark, Session, Student, Subject, Teacher, User, apply_update,
)
from security import authorize, get_current_user

router = APIRouter(prefix="/subjects", tags=["subjects"])

DUPLICATE_CODE = "Subject with this code already exists for this session"
TEACHER_SUMMARY = ("firstName", "lastName", "email", "phone")


def set_subject_assignment(teacher_filter: Dict[str, Any], subject_id: ObjectId,
                           classes: List[ObjectId]) -> None:
    """Record that a teacher teaches ``subject_id`` to ``classes``, replacing any earlier entry."""
    teachers = get_collection(Teacher)
    teacher = teachers.find_one(teacher_filter)
    if not teacher:
        return
    assignments = [a for a in teacher.get("assignedSubjects", []) if a.get("subject") != subject_id]
    assignments.append({"subject": subject_id, "classes": list(classes)})
    teachers.update_one({"_id": teacher["_id"]},
                        {"$set": {"assignedSubjects": assignments, "updatedAt": datetime.utcnow()}})


def drop_subject_assignment(subject_id: ObjectId, teacher_filter: Optional[Dict[str, Any]] = None) -> None:
    filt = dict(teacher_filter or {})
    filt["assignedSubjects.subject"] = subject_id
    get_collection(Teacher).update_many(filt, {"$pull": {"assignedSubjects": {"subject": subject_id}}})


@router.get("/stats")
def subject_stats(session: Optional[str] = Query(None), user=Depends(authorize("Admin"))):
    filt: Dict[str, Any] = {}
    if session:
        filt["session"] = to_object_id(session, "Session")
    subjects = list(get_collection(Subject).find(filt, {"type": 1, "isActive": 1, "teacher": 1}))
    type_wise: Dict[str, int] = {}
    for s in subjects:
        type_wise[s.get("type", "Core")] = type_wise.get(s.get("type", "Core"), 0) + 1
    with_teacher = sum(1 for s in subjects if s.get("teacher"))
    summary = {
        "total": len(subjects),
        "active": sum(1 for s in subjects if s.get("isActive", True)),
        "inactive": sum(1 for s in subjects if not s.get("isActive", True)),
        "withTeacher": with_teacher,
        "withoutTeacher": len(subjects) - with_teacher,
    }
    return ok({
        "summary": summary,
        "typeWise": [{"type": t, "count": c} for t, c in sorted(type_wise.items())],
    })


@router.get("")
def list_subjects(
    search: Optional[str] = Query(None),
    class_id: Optional[str] = Query(None, alias="class"),
    teacher: Optional[str] = Query(None),
    type: Optional[str] = Query(None),
    is_active: bool = Query(True, alias="isActive"),
    params: PageParams = Depends(page_params),
    user=Depends(get_current_user),
):
    filt: Dict[str, Any] = {"isActive": is_active}
    if class_id:
        filt["classes"] = to_object_id(class_id, "Class")
    if teacher:
        filt["teacher"] = to_object_id(teacher, "Teacher")
    if type:
        filt["type"] = type
    query = and_query(filt, search_clause(search, ("name", "code", "description")))
    docs, meta = paginate(get_collection(Subject), query, params, default_sort=(("name", 1),),
                          allowed_sorts=("name", "code", "type", "createdAt"))
    populate_many(docs, "teacher", User, TEACHER_SUMMARY)
    for doc in docs:
        populate(doc, "classes", Classroom, ("name", "grade"))
    populate_many(docs, "session", Session, ("name",))
    return ok({"items": serialize_list(docs), "pagination": meta})


@router.get("/{subject_id}")
def get_subject(subject_id: str, user=Depends(get_current_user)):
    found = find_by_id(Subject, subject_id, "Subject")
    class_ids = list(found.get("classes", []))
    stats = {
        "totalClasses": len(class_ids),
        "totalStudents": get_collection(Student).count_documents(
            {"class": {"$in": class_ids}, "status": "Active"}) if class_ids else 0,
        "hasTeacher": bool(found.get("teacher")),
        "totalExams": get_collection(Exam).count_documents({"subject": found["_id"]}),
    }
    populate(found, "teacher", User, TEACHER_SUMMARY)
    populate(found, "classes", Classroom, ("name", "grade", "capacity"))
    populate(found, "session", Session, ("name", "startDate", "endDate"))
    return ok({"subject": serialize_doc(found), "stats": stats})


@router.post("", status_code=201)
def create_subject(payload: Subject, user=Depends(authorize("Admin"))):
    doc = payload.to_document()
    if doc.get("session") is None:
        doc["session"] = active_session_id()
    subjects = get_collection(Subject)
    if subjects.find_one({"code": doc["code"], "session": doc["session"]}):
        raise ConflictError(DUPLICATE_CODE)
    doc["createdBy"] = user["_id"]
    new_id = ObjectId(create_document(collection_name(Subject), doc))
    if doc.get("teacher"):
        set_subject_assignment({"user": doc["teacher"]}, new_id, doc["classes"])
    created = populate(subjects.find_one({"_id": new_id}), "teacher", User, TEACHER_SUMMARY)
    return ok({"subject": serialize_doc(created)}, "Subject created successfully")


@router.put("/{subject_id}")
def update_subject(subject_id: str, patch: Dict[str, Any] = Body(...), user=Depends(authorize("Admin"))):
    found = find_by_id(Subject, subject_id, "Subject")
    changes = apply_update(Subject, found, {k: v for k, v in patch.items() if k not in ("_id", "id")})
    if "code" in changes and changes["code"] != found.get("code"):
        clash = get_collection(Subject).find_one({
            "_id": {"$ne": found["_id"]}, "code": changes["code"], "session": found.get("session"),
        })
        if clash:
            raise ConflictError(DUPLICATE_CODE)

    if "teacher" in changes and changes["teacher"] != found.get("teacher"):
        if found.get("teacher"):
            drop_subject_assignment(found["_id"], {"user": found["teacher"]})
        if changes["teacher"]:
            set_subject_assignment({"user": changes["teacher"]}, found["_id"],
                                   changes.get("classes", found.get("classes", [])))

    updated = update_by_id(Subject, found["_id"], changes, user["_id"])
    populate(updated, "teacher", User, TEACHER_SUMMARY)
    return ok({"subject": serialize_doc(updated)}, "Subject updated successfully")


@router.delete("/{subject_id}")
def delete_subject(subject_id: str, user=Depends(authorize("Admin"))):
    found = find_by_id(Subject, subject_id, "Subject")
    exams = get_collection(Exam).count_documents({"subject": found["_id"]})
    marks = get_collection(ExamMark).count_documents({"subject": found["_id"]})
    if exams or marks:
        raise ConflictError(
            f"Cannot delete subject. It has {exams} exams and {marks} mark entries. Please remove them first.",
            {"exams": exams, "marks": marks},
        )
    drop_subject_assignment(found["_id"])
    update_by_id(Subject, found["_id"], {"isActive": False}, user["_id"])
    return ok(message="Subject deleted successfully")


@router.post("/{subject_id}/assign-classes")
def assign_classes(subject_id: str, payload: AssignClassesPayload, user=Depends(authorize("Admin"))):
    found = find_by_id(Subject, subject_id, "Subject")
    class_ids = list(dict.fromkeys(payload.class_ids))
    existing = get_collection(Classroom).count_documents({"_id": {"$in": class_ids}})
    if existing != len(class_ids):
        raise ValidationFailed.field("classIds", "One or more classes not found")
    update_by_id(Subject, found["_id"], {"classes": class_ids}, user["_id"])
    if found.get("teacher"):
        set_subject_assignment({"user": found["teacher"]}, found["_id"], class_ids)
    return ok(message="Classes assigned successfully")
