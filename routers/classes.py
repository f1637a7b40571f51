from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Body, Depends, Query

from computations import round2
from database import (
    USER_SUMMARY, collection_name, create_document, find_by_id, get_collection,
    populate, populate_many, to_object_id, update_by_id,
)
from exceptions import ConflictError
from logging_config import logger
from pagination import PageParams, page_params, paginate
from responses import ok, serialize_doc, serialize_list
from routers.sessions import active_session_id
from schemas import Classroom, Section, Session, Student, Subject, User, apply_update
from security import authorize

router = APIRouter(prefix="/classes", tags=["classes"])

DUPLICATE_CLASS = "Class with this name and grade already exists for this session"


def cascade_delete_class(class_id: ObjectId) -> Dict[str, int]:
    """Remove a class and everything hanging off it.

    Order: detach from subjects, drop its sections, detach remaining
    students, then delete the class itself.
    """
    subjects = get_collection(Subject).update_many({"classes": class_id}, {"$pull": {"classes": class_id}})
    sections = get_collection(Section).delete_many({"class": class_id})
    students = get_collection(Student).update_many(
        {"class": class_id}, {"$unset": {"class": "", "section": ""}}
    )
    get_collection(Classroom).delete_one({"_id": class_id})
    result = {
        "subjectsUpdated": subjects.modified_count,
        "sectionsDeleted": sections.deleted_count,
        "studentsDetached": students.modified_count,
    }
    logger.info(f"Deleted class {class_id}: {result}")
    return result


def _sync_subjects(class_id: ObjectId, subject_ids: List[ObjectId], replace: bool = False) -> None:
    subjects = get_collection(Subject)
    if replace:
        subjects.update_many({"classes": class_id}, {"$pull": {"classes": class_id}})
    if subject_ids:
        subjects.update_many({"_id": {"$in": subject_ids}}, {"$addToSet": {"classes": class_id}})


def _populate_class(doc: Dict[str, Any]) -> Dict[str, Any]:
    populate(doc, "classTeacher", User, ("firstName", "lastName", "email", "phone"))
    populate(doc, "session", Session, ("name", "startDate", "endDate"))
    return doc


@router.get("/stats")
def class_stats(session: Optional[str] = Query(None), user=Depends(authorize("Admin", "Teacher"))):
    filt: Dict[str, Any] = {}
    if session:
        filt["session"] = to_object_id(session, "Session")
    classes = list(get_collection(Classroom).find(filt).sort([("grade", 1), ("name", 1), ("_id", 1)]))
    students = get_collection(Student)
    sections = get_collection(Section)

    class_wise = []
    summary = {"totalClasses": 0, "totalCapacity": 0, "totalStudents": 0, "totalActiveStudents": 0}
    for c in classes:
        total = students.count_documents({"class": c["_id"]})
        active = students.count_documents({"class": c["_id"], "status": "Active"})
        capacity = c.get("capacity") or 1
        class_wise.append({
            "_id": c["_id"],
            "name": c.get("name"),
            "grade": c.get("grade"),
            "capacity": c.get("capacity"),
            "totalStudents": total,
            "activeStudents": active,
            "totalSections": sections.count_documents({"class": c["_id"]}),
            "utilizationRate": round2(total / capacity * 100),
        })
        summary["totalClasses"] += 1
        summary["totalCapacity"] += c.get("capacity", 0)
        summary["totalStudents"] += total
        summary["totalActiveStudents"] += active
    return ok({"summary": summary, "classWise": class_wise})


@router.get("")
def list_classes(
    session: Optional[str] = Query(None),
    grade: Optional[int] = Query(None, ge=1, le=12),
    include_stats: bool = Query(False, alias="includeStats"),
    params: PageParams = Depends(page_params),
    user=Depends(authorize("Admin", "Teacher")),
):
    filt: Dict[str, Any] = {}
    if session:
        filt["session"] = to_object_id(session, "Session")
    if grade is not None:
        filt["grade"] = grade
    docs, meta = paginate(get_collection(Classroom), filt, params,
                          default_sort=(("grade", 1), ("name", 1)),
                          allowed_sorts=("grade", "name", "capacity", "createdAt"))
    populate_many(docs, "classTeacher", User, ("firstName", "lastName", "email"))
    populate_many(docs, "session", Session, ("name",))
    if include_stats:
        students = get_collection(Student)
        sections = get_collection(Section)
        for doc in docs:
            doc["stats"] = {
                "studentCount": students.count_documents({"class": doc["_id"], "status": "Active"}),
                "sectionCount": sections.count_documents({"class": doc["_id"]}),
            }
    return ok({"items": serialize_list(docs), "pagination": meta})


@router.get("/{class_id}")
def get_class(class_id: str, user=Depends(authorize("Admin", "Teacher"))):
    found = _populate_class(find_by_id(Classroom, class_id, "Class"))
    sections = populate_many(
        list(get_collection(Section).find({"class": found["_id"]}).sort([("name", 1), ("_id", 1)])),
        "sectionTeacher", User, ("firstName", "lastName"),
    )
    subjects = populate_many(
        list(get_collection(Subject).find({"classes": found["_id"]}).sort([("name", 1), ("_id", 1)])),
        "teacher", User, ("firstName", "lastName"),
    )
    students = get_collection(Student)
    stats = {
        "totalStudents": students.count_documents({"class": found["_id"]}),
        "activeStudents": students.count_documents({"class": found["_id"], "status": "Active"}),
        "totalSections": len(sections),
        "totalSubjects": len(subjects),
    }
    return ok({
        "class": serialize_doc(found),
        "sections": serialize_list(sections),
        "subjects": serialize_list(subjects),
        "stats": stats,
    })


@router.get("/{class_id}/students")
def class_students(
    class_id: str,
    section: Optional[str] = Query(None),
    status: str = Query("Active"),
    user=Depends(authorize("Admin", "Teacher")),
):
    found = find_by_id(Classroom, class_id, "Class")
    filt: Dict[str, Any] = {"class": found["_id"], "status": status}
    if section:
        filt["section"] = to_object_id(section, "Section")
    docs = list(get_collection(Student).find(filt).sort([("rollNumber", 1), ("_id", 1)]))
    populate_many(docs, "user", User, USER_SUMMARY)
    populate_many(docs, "section", Section, ("name",))
    populate_many(docs, "parent", User, ("firstName", "lastName", "phone"))
    return ok({"items": serialize_list(docs)})


@router.post("", status_code=201)
def create_class(payload: Classroom, user=Depends(authorize("Admin"))):
    doc = payload.to_document()
    subject_ids = doc.pop("subjects")
    if doc.get("session") is None:
        doc["session"] = active_session_id()
    classes = get_collection(Classroom)
    if classes.find_one({"name": doc["name"], "grade": doc["grade"], "session": doc["session"]}):
        raise ConflictError(DUPLICATE_CLASS)
    doc["createdBy"] = user["_id"]
    new_id = ObjectId(create_document(collection_name(Classroom), doc))
    _sync_subjects(new_id, subject_ids)
    created = _populate_class(classes.find_one({"_id": new_id}))
    return ok({"class": serialize_doc(created)}, "Class created successfully")


@router.put("/{class_id}")
def update_class(class_id: str, patch: Dict[str, Any] = Body(...), user=Depends(authorize("Admin"))):
    found = find_by_id(Classroom, class_id, "Class")
    patch = {k: v for k, v in patch.items() if k not in ("_id", "id", "session")}
    subjects_given = "subjects" in patch
    changes = apply_update(Classroom, found, patch)
    subject_ids = changes.pop("subjects", [])

    name = changes.get("name", found.get("name"))
    grade = changes.get("grade", found.get("grade"))
    if name != found.get("name") or grade != found.get("grade"):
        clash = get_collection(Classroom).find_one({
            "_id": {"$ne": found["_id"]}, "name": name, "grade": grade, "session": found.get("session"),
        })
        if clash:
            raise ConflictError(DUPLICATE_CLASS)

    updated = update_by_id(Classroom, found["_id"], changes, user["_id"])
    if subjects_given:
        _sync_subjects(found["_id"], subject_ids, replace=True)
    return ok({"class": serialize_doc(_populate_class(updated))}, "Class updated successfully")


@router.delete("/{class_id}")
def delete_class(class_id: str, user=Depends(authorize("Admin"))):
    found = find_by_id(Classroom, class_id, "Class")
    active = get_collection(Student).count_documents({"class": found["_id"], "status": "Active"})
    if active:
        raise ConflictError(f"Cannot delete class. It has {active} active students.", {"activeStudents": active})
    cascade_delete_class(found["_id"])
    return ok(message="Class deleted successfully")
