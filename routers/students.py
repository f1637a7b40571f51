from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import APIRouter, Body, Depends, Query
from pymongo.errors import PyMongoError

from computations import format_student_id, student_id_year
from database import (
    USER_SUMMARY, and_query, collection_name, create_document, find_by_id, get_collection,
    last_suffix, next_sequence, populate, populate_many, search_clause, to_object_id, update_by_id,
)
from exceptions import ConflictError, ValidationFailed
from logging_config import logger
from pagination import PageParams, page_params, paginate
from policies import Principal, enforce
from responses import ok, serialize_doc, serialize_list
from routers.sessions import active_session_id
from routers.users import create_user_account
from schemas import (
    PROFILE_FIELDS, Classroom, Section, Session, Student, StudentCreate, User, apply_update,
)
from security import get_principal, principal_for

router = APIRouter(prefix="/students", tags=["students"])

STUDENTS = collection_name(Student)
USER_KEYS = {"firstName", "lastName", "email", "phone", "dateOfBirth", "gender", "address"}


def generate_student_id(session_id: Optional[ObjectId]) -> str:
    session = get_collection(Session).find_one({"_id": session_id}) if session_id else None
    year = student_id_year(session.get("name") if session else None)
    floor = last_suffix(STUDENTS, "studentId", year, 4)
    return format_student_id(year, next_sequence(f"student:{year}", floor))


def _check_placement(class_id: Optional[ObjectId], section_id: Optional[ObjectId]) -> None:
    if class_id is not None:
        find_by_id(Classroom, class_id, "Class")
    if section_id is not None:
        section = find_by_id(Section, section_id, "Section")
        if class_id is not None and section.get("class") != class_id:
            raise ValidationFailed.field("section", "Section does not belong to the selected class")


def _check_parent(parent_id: Optional[ObjectId]) -> None:
    if parent_id is None:
        return
    parent = get_collection(User).find_one({"_id": parent_id, "role": "Parent"})
    if not parent:
        raise ValidationFailed.field("parent", "Parent user not found")


def _populate_student(doc: Dict[str, Any]) -> Dict[str, Any]:
    populate(doc, "user", User, USER_SUMMARY)
    populate(doc, "class", Classroom, ("name", "grade"))
    populate(doc, "section", Section, ("name",))
    populate(doc, "session", Session, ("name",))
    populate(doc, "parent", User, ("firstName", "lastName", "email", "phone"))
    return doc


@router.get("/stats")
def student_stats(session: Optional[str] = Query(None),
                  principal: Principal = Depends(principal_for("Admin", "Teacher"))):
    filt: Dict[str, Any] = {}
    if session:
        filt["session"] = to_object_id(session, "Session")
    scope = enforce(principal, "student", "list")
    students = list(get_collection(Student).find(and_query(scope, filt), {"status": 1, "class": 1}))

    overview = {"total": len(students), "active": 0, "inactive": 0, "graduated": 0, "transferred": 0}
    per_class: Dict[ObjectId, int] = {}
    for s in students:
        key = str(s.get("status", "")).lower()
        if key in overview:
            overview[key] += 1
        if s.get("class"):
            per_class[s["class"]] = per_class.get(s["class"], 0) + 1

    classes = {c["_id"]: c for c in get_collection(Classroom).find({"_id": {"$in": list(per_class)}})}
    class_wise = [
        {"class": cid, "className": classes[cid].get("name"), "grade": classes[cid].get("grade"), "count": n}
        for cid, n in per_class.items() if cid in classes
    ]
    class_wise.sort(key=lambda c: (c["grade"], c["className"]))
    return ok({"overview": overview, "classWise": class_wise})


@router.get("")
def list_students(
    search: Optional[str] = Query(None),
    class_id: Optional[str] = Query(None, alias="class"),
    section: Optional[str] = Query(None),
    session: Optional[str] = Query(None),
    status: str = Query("Active"),
    params: PageParams = Depends(page_params),
    principal: Principal = Depends(get_principal),
):
    scope = enforce(principal, "student", "list")
    filt: Dict[str, Any] = {"status": status}
    if class_id:
        filt["class"] = to_object_id(class_id, "Class")
    if section:
        filt["section"] = to_object_id(section, "Section")
    if session:
        filt["session"] = to_object_id(session, "Session")
    query = and_query(scope, filt, search_clause(search, ("admissionNumber", "rollNumber", "studentId")))
    docs, meta = paginate(get_collection(Student), query, params, default_sort=(("admissionNumber", 1),),
                          allowed_sorts=("admissionNumber", "studentId", "rollNumber", "createdAt"))
    populate_many(docs, "user", User, USER_SUMMARY)
    populate_many(docs, "class", Classroom, ("name", "grade"))
    populate_many(docs, "section", Section, ("name",))
    populate_many(docs, "parent", User, ("firstName", "lastName", "email", "phone"))
    return ok({"items": serialize_list(docs), "pagination": meta})


@router.get("/{student_id}")
def get_student(student_id: str, principal: Principal = Depends(get_principal)):
    found = find_by_id(Student, student_id, "Student")
    enforce(principal, "student", "view", found)
    return ok({"student": serialize_doc(_populate_student(found))})


@router.post("", status_code=201)
def create_student(payload: StudentCreate, principal: Principal = Depends(principal_for("Admin"))):
    enforce(principal, "student", "create")
    doc = Student.model_validate(payload.model_dump(exclude=PROFILE_FIELDS)).to_document()
    if doc.get("session") is None:
        doc["session"] = active_session_id()
    _check_placement(doc["class"], doc.get("section"))
    _check_parent(doc.get("parent"))

    students = get_collection(Student)
    if doc.get("studentId") and students.find_one({"studentId": doc["studentId"]}):
        raise ConflictError("Student with this student ID already exists")
    if doc.get("admissionNumber") and students.find_one({"admissionNumber": doc["admissionNumber"]}):
        raise ConflictError("Student with this admission number already exists")

    doc["studentId"] = doc.get("studentId") or generate_student_id(doc["session"])
    doc["admissionNumber"] = doc.get("admissionNumber") or doc["studentId"]
    doc["createdBy"] = principal.id

    fields = payload.model_dump(include=PROFILE_FIELDS - {"password"})
    user, _ = create_user_account({**fields, "role": "Student"}, payload.password, principal.id)
    doc["user"] = user["_id"]
    try:
        new_id = create_document(STUDENTS, doc)
    except PyMongoError:
        get_collection(User).delete_one({"_id": user["_id"]})
        raise
    logger.info(f"Enrolled student {doc['studentId']}")
    created = _populate_student(students.find_one({"_id": ObjectId(new_id)}))
    return ok({"student": serialize_doc(created)}, "Student created successfully")


@router.put("/{student_id}")
def update_student(student_id: str, patch: Dict[str, Any] = Body(...),
                   principal: Principal = Depends(principal_for("Admin"))):
    found = find_by_id(Student, student_id, "Student")
    enforce(principal, "student", "update", found)

    user_patch = {k: v for k, v in patch.items() if k in USER_KEYS}
    student_patch = {k: v for k, v in patch.items()
                     if k not in USER_KEYS and k not in ("_id", "id", "user", "studentId", "password")}

    if user_patch and found.get("user"):
        account = find_by_id(User, found["user"], "User")
        user_changes = apply_update(User, account, user_patch)
        if "email" in user_changes:
            user_changes["email"] = user_changes["email"].lower()
            clash = get_collection(User).find_one({"email": user_changes["email"], "_id": {"$ne": account["_id"]}})
            if clash:
                raise ConflictError("User with this email already exists")
        update_by_id(User, account["_id"], user_changes, principal.id)

    changes = apply_update(Student, found, student_patch)
    if "class" in changes or "section" in changes:
        _check_placement(changes.get("class", found.get("class")), changes.get("section", found.get("section")))
    if "parent" in changes:
        _check_parent(changes["parent"])
    if "admissionNumber" in changes:
        clash = get_collection(Student).find_one(
            {"admissionNumber": changes["admissionNumber"], "_id": {"$ne": found["_id"]}})
        if clash:
            raise ConflictError("Student with this admission number already exists")
    updated = update_by_id(Student, found["_id"], changes, principal.id)
    return ok({"student": serialize_doc(_populate_student(updated))}, "Student updated successfully")


@router.delete("/{student_id}")
def delete_student(student_id: str, principal: Principal = Depends(principal_for("Admin"))):
    found = find_by_id(Student, student_id, "Student")
    enforce(principal, "student", "delete", found)
    update_by_id(Student, found["_id"], {"status": "Inactive"}, principal.id)
    if found.get("user"):
        update_by_id(User, found["user"], {"isActive": False}, principal.id)
    return ok(message="Student deleted successfully")
