from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import APIRouter, Body, Depends, Query

from database import (
    collection_name, create_document, find_by_id, get_collection, populate,
    populate_many, to_object_id, update_by_id,
)
from exceptions import ConflictError
from pagination import PageParams, page_params, paginate
from responses import ok, serialize_doc, serialize_list
from schemas import Classroom, Section, Student, User, apply_update
from security import authorize, get_current_user

router = APIRouter(prefix="/sections", tags=["sections"])

DUPLICATE_SECTION = "Section with this name already exists in this class"


def cascade_delete_section(section_id: ObjectId) -> int:
    """Detach students from the section, then delete it. Returns the number of students detached."""
    detached = get_collection(Student).update_many({"section": section_id}, {"$unset": {"section": ""}})
    get_collection(Section).delete_one({"_id": section_id})
    return detached.modified_count


@router.get("")
def list_sections(
    class_id: Optional[str] = Query(None, alias="class"),
    params: PageParams = Depends(page_params),
    user=Depends(get_current_user),
):
    filt: Dict[str, Any] = {}
    if class_id:
        filt["class"] = to_object_id(class_id, "Class")
    docs, meta = paginate(get_collection(Section), filt, params, default_sort=(("name", 1),),
                          allowed_sorts=("name", "capacity", "createdAt"))
    populate_many(docs, "class", Classroom, ("name", "grade"))
    populate_many(docs, "sectionTeacher", User, ("firstName", "lastName", "email"))
    return ok({"items": serialize_list(docs), "pagination": meta})


@router.get("/{section_id}")
def get_section(section_id: str, user=Depends(get_current_user)):
    found = find_by_id(Section, section_id, "Section")
    populate(found, "class", Classroom, ("name", "grade"))
    populate(found, "sectionTeacher", User, ("firstName", "lastName", "email"))
    students = get_collection(Student).count_documents({"section": found["_id"], "status": "Active"})
    return ok({"section": serialize_doc(found), "stats": {"activeStudents": students}})


@router.post("", status_code=201)
def create_section(payload: Section, user=Depends(authorize("Admin"))):
    parent = find_by_id(Classroom, payload.class_id, "Class")
    doc = payload.to_document()
    if doc.get("session") is None:
        doc["session"] = parent.get("session")
    if get_collection(Section).find_one({"name": doc["name"], "class": parent["_id"]}):
        raise ConflictError(DUPLICATE_SECTION)
    doc["createdBy"] = user["_id"]
    new_id = create_document(collection_name(Section), doc)
    created = get_collection(Section).find_one({"_id": ObjectId(new_id)})
    return ok({"section": serialize_doc(created)}, "Section created successfully")


@router.put("/{section_id}")
def update_section(section_id: str, patch: Dict[str, Any] = Body(...), user=Depends(authorize("Admin"))):
    found = find_by_id(Section, section_id, "Section")
    changes = apply_update(Section, found, {k: v for k, v in patch.items() if k not in ("_id", "id")})
    if "class" in changes:
        find_by_id(Classroom, changes["class"], "Class")
    name = changes.get("name", found["name"])
    class_ref = changes.get("class", found["class"])
    if (name, class_ref) != (found["name"], found["class"]):
        clash = get_collection(Section).find_one({"_id": {"$ne": found["_id"]}, "name": name, "class": class_ref})
        if clash:
            raise ConflictError(DUPLICATE_SECTION)
    updated = update_by_id(Section, found["_id"], changes, user["_id"])
    return ok({"section": serialize_doc(updated)}, "Section updated successfully")


@router.delete("/{section_id}")
def delete_section(section_id: str, user=Depends(authorize("Admin"))):
    found = find_by_id(Section, section_id, "Section")
    detached = cascade_delete_section(found["_id"])
    return ok({"studentsDetached": detached}, "Section deleted successfully")
