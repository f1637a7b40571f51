from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, File, Form, Query, UploadFile

from database import (
    and_query, collection_name, create_document, find_by_id, get_collection, populate,
    populate_many, search_clause, to_object_id, update_by_id,
)
from exceptions import ValidationFailed
from pagination import PageParams, page_params, paginate
from policies import Principal, enforce
from responses import ok, serialize_doc, serialize_list
from schemas import Classroom, StudyMaterial, Subject, User
from security import get_principal, principal_for
from uploads import save_upload

router = APIRouter(prefix="/study-materials", tags=["study-materials"])


def _populate_material(doc: Dict[str, Any]) -> Dict[str, Any]:
    populate(doc, "subject", Subject, ("name", "code"))
    populate(doc, "class", Classroom, ("name", "grade"))
    populate(doc, "uploadedBy", User, ("firstName", "lastName", "role"))
    return doc


@router.get("")
def list_materials(
    search: Optional[str] = Query(None),
    subject: Optional[str] = Query(None),
    class_id: Optional[str] = Query(None, alias="class"),
    params: PageParams = Depends(page_params),
    principal: Principal = Depends(get_principal),
):
    scope = enforce(principal, "study_material", "list")
    filt: Dict[str, Any] = {"isActive": True}
    if subject:
        filt["subject"] = to_object_id(subject, "Subject")
    if class_id:
        filt["class"] = to_object_id(class_id, "Class")
    query = and_query(scope, filt, search_clause(search, ("title", "description")))
    docs, meta = paginate(get_collection(StudyMaterial), query, params, default_sort=(("createdAt", -1),),
                          allowed_sorts=("title", "createdAt"))
    populate_many(docs, "subject", Subject, ("name", "code"))
    populate_many(docs, "class", Classroom, ("name", "grade"))
    populate_many(docs, "uploadedBy", User, ("firstName", "lastName"))
    return ok({"items": serialize_list(docs), "pagination": meta})


@router.get("/{material_id}")
def get_material(material_id: str, principal: Principal = Depends(get_principal)):
    found = find_by_id(StudyMaterial, material_id, "Study material", {"isActive": True})
    enforce(principal, "study_material", "view", found)
    return ok({"material": serialize_doc(_populate_material(found))})


@router.post("", status_code=201)
async def upload_material(
    title: str = Form(...),
    subject: Optional[str] = Form(None),
    class_id: Optional[str] = Form(None, alias="class"),
    description: Optional[str] = Form(None),
    studyMaterial: UploadFile = File(...),
    principal: Principal = Depends(principal_for("Admin", "Teacher")),
):
    enforce(principal, "study_material", "create")
    doc = StudyMaterial.model_validate({
        "title": title,
        "description": description,
        "subject": subject,
        "class": class_id,
    }).to_document()
    if doc.get("subject") is not None:
        find_by_id(Subject, doc["subject"], "Subject")
    if doc.get("class") is not None:
        find_by_id(Classroom, doc["class"], "Class")
    if doc.get("subject") is None and doc.get("class") is None:
        raise ValidationFailed.field("class", "A class or a subject is required")

    doc["file"] = await save_upload(studyMaterial, "studyMaterial")
    doc["uploadedBy"] = principal.id
    new_id = create_document(collection_name(StudyMaterial), doc)
    created = _populate_material(get_collection(StudyMaterial).find_one({"_id": ObjectId(new_id)}))
    return ok({"material": serialize_doc(created)}, "Study material uploaded successfully")


@router.delete("/{material_id}")
def delete_material(material_id: str, principal: Principal = Depends(get_principal)):
    found = find_by_id(StudyMaterial, material_id, "Study material", {"isActive": True})
    enforce(principal, "study_material", "delete", found)
    update_by_id(StudyMaterial, found["_id"], {"isActive": False}, principal.id)
    return ok(message="Study material deleted successfully")
