from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Body, Depends, Query
from pymongo.errors import PyMongoError

from computations import format_employee_id, student_id_year, total_salary
from database import (
    USER_SUMMARY, and_query, collection_name, create_document, find_by_id, get_collection,
    last_suffix, next_sequence, populate, populate_many, regex, to_object_id, update_by_id,
)
from exceptions import AuthorizationError, ConflictError, ValidationFailed
from logging_config import logger
from pagination import PageParams, page_params, paginate
from responses import ok, serialize_doc, serialize_list
from routers.sessions import active_session_id
from routers.subjects import set_subject_assignment
from routers.users import create_user_account
from schemas import (
    PROFILE_FIELDS, AssignClassPayload, AssignSubjectPayload, Classroom, Section, Session,
    Subject, Teacher, TeacherCreate, User, apply_update,
)
from security import authorize

router = APIRouter(prefix="/teachers", tags=["teachers"])

TEACHERS = collection_name(Teacher)
USER_KEYS = {"firstName", "lastName", "email", "phone", "dateOfBirth", "gender", "address"}


def generate_employee_id(session_id: Optional[ObjectId]) -> str:
    session = get_collection(Session).find_one({"_id": session_id}) if session_id else None
    year = student_id_year(session.get("name") if session else None)
    floor = last_suffix(TEACHERS, "employeeId", f"T{year}", 3)
    return format_employee_id(year, next_sequence(f"teacher:{year}", floor))


def _lookup(model_cls, ids: List[ObjectId], fields) -> Dict[ObjectId, Dict[str, Any]]:
    if not ids:
        return {}
    projection = {f: 1 for f in fields}
    return {d["_id"]: d for d in get_collection(model_cls).find({"_id": {"$in": ids}}, projection)}


def _populate_assignments(doc: Dict[str, Any]) -> Dict[str, Any]:
    classes_ids = [a.get("class") for a in doc.get("assignedClasses", [])]
    section_ids = [a.get("section") for a in doc.get("assignedClasses", []) if a.get("section")]
    subject_ids = [a.get("subject") for a in doc.get("assignedSubjects", [])]
    for a in doc.get("assignedSubjects", []):
        classes_ids.extend(a.get("classes", []))

    classes = _lookup(Classroom, [c for c in classes_ids if c], ("name", "grade"))
    sections = _lookup(Section, section_ids, ("name",))
    subjects = _lookup(Subject, subject_ids, ("name", "code"))
    for a in doc.get("assignedClasses", []):
        a["class"] = classes.get(a.get("class"), a.get("class"))
        if a.get("section"):
            a["section"] = sections.get(a["section"], a["section"])
    for a in doc.get("assignedSubjects", []):
        a["subject"] = subjects.get(a.get("subject"), a.get("subject"))
        a["classes"] = [classes.get(c, c) for c in a.get("classes", [])]
    return doc


def _teacher_view(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc["totalSalary"] = total_salary(doc.get("salary"))
    return doc


@router.get("/stats")
def teacher_stats(session: Optional[str] = Query(None), user=Depends(authorize("Admin"))):
    filt: Dict[str, Any] = {}
    if session:
        filt["session"] = to_object_id(session, "Session")
    teachers = list(get_collection(Teacher).find(filt, {"status": 1, "department": 1}))
    status_wise: Dict[str, int] = {}
    department_wise: Dict[str, int] = {}
    for t in teachers:
        status_wise[t.get("status", "Active")] = status_wise.get(t.get("status", "Active"), 0) + 1
        dept = t.get("department") or "Unassigned"
        department_wise[dept] = department_wise.get(dept, 0) + 1
    summary = {
        "total": len(teachers),
        "active": status_wise.get("Active", 0),
        "inactive": status_wise.get("Inactive", 0),
        "onLeave": status_wise.get("On Leave", 0),
        "terminated": status_wise.get("Terminated", 0),
    }
    return ok({
        "summary": summary,
        "statusWise": [{"status": s, "count": c} for s, c in sorted(status_wise.items())],
        "departmentWise": [{"department": d, "count": c}
                           for d, c in sorted(department_wise.items(), key=lambda kv: (-kv[1], kv[0]))],
    })


@router.get("")
def list_teachers(
    search: Optional[str] = Query(None),
    department: Optional[str] = Query(None),
    qualification: Optional[str] = Query(None),
    status: str = Query("Active"),
    params: PageParams = Depends(page_params),
    user=Depends(authorize("Admin", "Teacher")),
):
    filt: Dict[str, Any] = {"status": status}
    if department:
        filt["department"] = department
    if qualification:
        filt["qualification"] = qualification
    search_filter: Dict[str, Any] = {}
    if search and search.strip():
        pattern = regex(search)
        user_ids = [u["_id"] for u in get_collection(User).find(
            {"$or": [{"firstName": pattern}, {"lastName": pattern}, {"email": pattern}]}, {"_id": 1})]
        search_filter = {"$or": [
            {"employeeId": pattern},
            {"department": pattern},
            {"designation": pattern},
            {"user": {"$in": user_ids}},
        ]}
    docs, meta = paginate(get_collection(Teacher), and_query(filt, search_filter), params,
                          default_sort=(("employeeId", 1),),
                          allowed_sorts=("employeeId", "department", "joiningDate", "createdAt"))
    populate_many(docs, "user", User, USER_SUMMARY + ("dateOfBirth", "gender"))
    for doc in docs:
        _teacher_view(_populate_assignments(doc))
    return ok({"items": serialize_list(docs), "pagination": meta})


@router.get("/{teacher_id}")
def get_teacher(teacher_id: str, user=Depends(authorize("Admin", "Teacher"))):
    found = find_by_id(Teacher, teacher_id, "Teacher")
    stats = {
        "totalClasses": len(found.get("assignedClasses", [])),
        "totalSubjects": len(found.get("assignedSubjects", [])),
        "isClassTeacher": any(a.get("isClassTeacher") for a in found.get("assignedClasses", [])),
    }
    populate(found, "user", User, USER_SUMMARY + ("dateOfBirth", "gender", "address"))
    populate(found, "session", Session, ("name",))
    return ok({"teacher": serialize_doc(_teacher_view(_populate_assignments(found))), "stats": stats})


@router.post("", status_code=201)
def create_teacher(payload: TeacherCreate, user=Depends(authorize("Admin"))):
    doc = Teacher.model_validate(payload.model_dump(exclude=PROFILE_FIELDS)).to_document()
    if doc.get("session") is None:
        doc["session"] = active_session_id()
    teachers = get_collection(Teacher)
    if doc.get("employeeId") and teachers.find_one({"employeeId": doc["employeeId"]}):
        raise ConflictError("Teacher with this employee ID already exists")

    doc["employeeId"] = doc.get("employeeId") or generate_employee_id(doc["session"])
    doc["createdBy"] = user["_id"]

    fields = payload.model_dump(include=PROFILE_FIELDS - {"password"})
    account, _ = create_user_account({**fields, "role": "Teacher"}, payload.password, user["_id"])
    doc["user"] = account["_id"]
    try:
        new_id = create_document(TEACHERS, doc)
    except PyMongoError:
        get_collection(User).delete_one({"_id": account["_id"]})
        raise
    logger.info(f"Hired teacher {doc['employeeId']}")
    created = populate(teachers.find_one({"_id": ObjectId(new_id)}), "user", User, USER_SUMMARY)
    return ok({"teacher": serialize_doc(_teacher_view(created))}, "Teacher created successfully")


@router.put("/{teacher_id}")
def update_teacher(teacher_id: str, patch: Dict[str, Any] = Body(...), user=Depends(authorize("Admin"))):
    found = find_by_id(Teacher, teacher_id, "Teacher")
    user_patch = {k: v for k, v in patch.items() if k in USER_KEYS}
    teacher_patch = {k: v for k, v in patch.items()
                     if k not in USER_KEYS and k not in ("_id", "id", "user", "employeeId", "password",
                                                         "assignedClasses", "assignedSubjects")}

    if user_patch and found.get("user"):
        account = find_by_id(User, found["user"], "User")
        user_changes = apply_update(User, account, user_patch)
        if "email" in user_changes:
            user_changes["email"] = user_changes["email"].lower()
            clash = get_collection(User).find_one({"email": user_changes["email"], "_id": {"$ne": account["_id"]}})
            if clash:
                raise ConflictError("User with this email already exists")
        update_by_id(User, account["_id"], user_changes, user["_id"])

    changes = apply_update(Teacher, found, teacher_patch)
    updated = update_by_id(Teacher, found["_id"], changes, user["_id"])
    populate(updated, "user", User, USER_SUMMARY)
    return ok({"teacher": serialize_doc(_teacher_view(updated))}, "Teacher updated successfully")


@router.delete("/{teacher_id}")
def delete_teacher(teacher_id: str, user=Depends(authorize("Admin"))):
    found = find_by_id(Teacher, teacher_id, "Teacher")
    active = len(found.get("assignedClasses", [])) + len(found.get("assignedSubjects", []))
    if active:
        raise ConflictError(
            f"Cannot delete teacher. They have {active} active assignments. "
            "Please reassign classes/subjects first.",
            {"assignments": active},
        )
    if found.get("user"):
        update_by_id(User, found["user"], {"isActive": False}, user["_id"])
    update_by_id(Teacher, found["_id"], {"status": "Terminated"}, user["_id"])
    return ok(message="Teacher deleted successfully")


@router.post("/{teacher_id}/assign-class")
def assign_class(teacher_id: str, payload: AssignClassPayload, user=Depends(authorize("Admin"))):
    found = find_by_id(Teacher, teacher_id, "Teacher")
    classroom = find_by_id(Classroom, payload.class_id, "Class")
    if payload.section_id is not None:
        section = find_by_id(Section, payload.section_id, "Section")
        if section.get("class") != classroom["_id"]:
            raise ValidationFailed.field("sectionId", "Section does not belong to the selected class")

    teachers = get_collection(Teacher)
    now = datetime.utcnow()
    if payload.is_class_teacher:
        update_by_id(Classroom, classroom["_id"], {"classTeacher": found.get("user")}, user["_id"])
        for other in teachers.find({"assignedClasses.class": classroom["_id"], "_id": {"$ne": found["_id"]}}):
            cleared = [{**a, "isClassTeacher": False} if a.get("class") == classroom["_id"] else a
                       for a in other.get("assignedClasses", [])]
            teachers.update_one({"_id": other["_id"]}, {"$set": {"assignedClasses": cleared, "updatedAt": now}})

    assignment: Dict[str, Any] = {"class": classroom["_id"], "isClassTeacher": payload.is_class_teacher}
    if payload.section_id is not None:
        assignment["section"] = payload.section_id
    kept = [a for a in found.get("assignedClasses", [])
            if (a.get("class"), a.get("section")) != (classroom["_id"], payload.section_id)]
    update_by_id(Teacher, found["_id"], {"assignedClasses": kept + [assignment]}, user["_id"])
    return ok(message="Class assigned successfully")


@router.post("/{teacher_id}/assign-subject")
def assign_subject(teacher_id: str, payload: AssignSubjectPayload, user=Depends(authorize("Admin"))):
    found = find_by_id(Teacher, teacher_id, "Teacher")
    subject = find_by_id(Subject, payload.subject_id, "Subject")
    class_ids = list(dict.fromkeys(payload.class_ids))
    if class_ids and get_collection(Classroom).count_documents({"_id": {"$in": class_ids}}) != len(class_ids):
        raise ValidationFailed.field("classIds", "One or more classes not found")
    set_subject_assignment({"_id": found["_id"]}, subject["_id"], class_ids)
    return ok(message="Subject assigned successfully")


@router.get("/{teacher_id}/schedule")
def teacher_schedule(teacher_id: str, user=Depends(authorize("Admin", "Teacher"))):
    found = find_by_id(Teacher, teacher_id, "Teacher")
    if user.get("role") == "Teacher" and found.get("user") != user["_id"]:
        raise AuthorizationError("Access denied. You can only view your own schedule.")
    workload = len(found.get("assignedClasses", [])) + sum(
        len(a.get("classes", [])) for a in found.get("assignedSubjects", []))
    _populate_assignments(found)
    return ok({"schedule": {
        "workingHours": found.get("workingHours"),
        "assignedClasses": found.get("assignedClasses", []),
        "assignedSubjects": found.get("assignedSubjects", []),
        "totalWorkload": workload,
    }})
