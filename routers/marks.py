from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, Query

from computations import grade_mark, overall_performance
from database import (
    and_query, collection_name, create_document, find_by_id, get_collection, populate,
    populate_many, to_object_id, update_by_id,
)
from exceptions import ValidationFailed
from logging_config import logger
from pagination import PageParams, page_params, paginate
from policies import Principal, enforce
from responses import ok, serialize_doc, serialize_list
from schemas import Exam, ExamMark, ExamType, MarkUpdate, MarksPayload, Student, Subject, User
from security import get_principal, principal_for

router = APIRouter(prefix="/marks", tags=["marks"])

MARKS = collection_name(ExamMark)


def _graded(exam: Dict[str, Any], marks_obtained: float, is_absent: bool) -> Dict[str, Any]:
    return grade_mark(marks_obtained, exam["totalMarks"], exam["passingMarks"], is_absent)


def _populate_mark(doc: Dict[str, Any]) -> Dict[str, Any]:
    populate(doc, "student", Student, ("admissionNumber", "rollNumber", "studentId", "user"))
    if isinstance(doc.get("student"), dict):
        populate(doc["student"], "user", User, ("firstName", "lastName"))
    populate(doc, "exam", Exam, ("name", "date", "totalMarks", "passingMarks", "isPublished"))
    populate(doc, "subject", Subject, ("name", "code"))
    populate(doc, "examType", ExamType, ("name",))
    return doc


@router.get("")
def list_marks(
    exam: Optional[str] = Query(None),
    student: Optional[str] = Query(None),
    subject: Optional[str] = Query(None),
    class_id: Optional[str] = Query(None, alias="class"),
    params: PageParams = Depends(page_params),
    principal: Principal = Depends(get_principal),
):
    scope = enforce(principal, "mark", "list")
    filt: Dict[str, Any] = {}
    if exam:
        filt["exam"] = to_object_id(exam, "Exam")
    if student:
        filt["student"] = to_object_id(student, "Student")
    if subject:
        filt["subject"] = to_object_id(subject, "Subject")
    if class_id:
        filt["class"] = to_object_id(class_id, "Class")
    docs, meta = paginate(get_collection(ExamMark), and_query(scope, filt), params,
                          default_sort=(("createdAt", -1),),
                          allowed_sorts=("marksObtained", "percentage", "createdAt"))
    populate_many(docs, "student", Student, ("admissionNumber", "rollNumber", "studentId", "user"))
    populate_many(docs, "exam", Exam, ("name", "date", "totalMarks"))
    populate_many(docs, "subject", Subject, ("name", "code"))
    return ok({"items": serialize_list(docs), "pagination": meta})


@router.post("", status_code=201)
def enter_marks(payload: MarksPayload, principal: Principal = Depends(principal_for("Admin", "Teacher"))):
    """Create or overwrite the marks of each listed student for one exam."""
    exam = find_by_id(Exam, payload.exam, "Exam")
    enforce(principal, "mark", "create", exam)

    student_ids = list(dict.fromkeys(entry.student for entry in payload.marks))
    enrolled = {s["_id"] for s in get_collection(Student).find(
        {"_id": {"$in": student_ids}, "class": exam["class"]}, {"_id": 1})}
    errors: List[Dict[str, str]] = []
    for i, entry in enumerate(payload.marks):
        if entry.student not in enrolled:
            errors.append({"field": f"marks.{i}.student", "message": "Student does not belong to the exam's class"})
        elif not entry.is_absent and entry.marks_obtained > exam["totalMarks"]:
            errors.append({"field": f"marks.{i}.marksObtained", "message": "Marks obtained cannot exceed total marks"})
    if errors:
        raise ValidationFailed(errors=errors)

    marks = get_collection(ExamMark)
    created = updated = 0
    for entry in payload.marks:
        doc = ExamMark.model_validate({
            "student": entry.student,
            "exam": exam["_id"],
            "examType": exam.get("examType"),
            "subject": exam.get("subject"),
            "class": exam.get("class"),
            "section": exam.get("section"),
            "totalMarks": exam["totalMarks"],
            "passingMarks": exam["passingMarks"],
            "isAbsent": entry.is_absent,
            "remarks": entry.remarks,
            "enteredBy": principal.id,
            "session": exam.get("session"),
            **_graded(exam, entry.marks_obtained, entry.is_absent),
        }).to_document()
        existing = marks.find_one({"student": entry.student, "exam": exam["_id"]}, {"_id": 1})
        if existing:
            update_by_id(ExamMark, existing["_id"], doc, principal.id)
            updated += 1
        else:
            create_document(MARKS, doc)
            created += 1

    logger.info(f"Marks saved for exam {exam['_id']}: {created} created, {updated} updated")
    return ok({"exam": str(exam["_id"]), "created": created, "updated": updated},
              "Marks saved successfully")


@router.put("/{mark_id}")
def update_mark(mark_id: str, payload: MarkUpdate, principal: Principal = Depends(principal_for("Admin", "Teacher"))):
    found = find_by_id(ExamMark, mark_id, "Mark")
    exam = find_by_id(Exam, found["exam"], "Exam")
    enforce(principal, "mark", "update", exam)

    is_absent = found.get("isAbsent", False) if payload.is_absent is None else payload.is_absent
    obtained = found.get("marksObtained", 0) if payload.marks_obtained is None else payload.marks_obtained
    if not is_absent and obtained > exam["totalMarks"]:
        raise ValidationFailed.field("marksObtained", "Marks obtained cannot exceed total marks")

    changes = {**_graded(exam, obtained, is_absent), "isAbsent": is_absent}
    if payload.remarks is not None:
        changes["remarks"] = payload.remarks
    updated = update_by_id(ExamMark, found["_id"], changes, principal.id)
    return ok({"mark": serialize_doc(_populate_mark(updated))}, "Mark updated successfully")


@router.delete("/{mark_id}")
def delete_mark(mark_id: str, principal: Principal = Depends(principal_for("Admin"))):
    found = find_by_id(ExamMark, mark_id, "Mark")
    enforce(principal, "mark", "delete", found)
    get_collection(ExamMark).delete_one({"_id": found["_id"]})
    return ok(message="Mark deleted successfully")


@router.get("/student/{student_id}/performance")
def student_performance(
    student_id: str,
    session: Optional[str] = Query(None),
    exam_type: Optional[str] = Query(None, alias="examType"),
    principal: Principal = Depends(get_principal),
):
    student = find_by_id(Student, student_id, "Student")
    enforce(principal, "student", "view", student)

    filt: Dict[str, Any] = {"student": student["_id"]}
    if session:
        filt["session"] = to_object_id(session, "Session")
    if exam_type:
        filt["examType"] = to_object_id(exam_type, "Exam type")
    marks = list(get_collection(ExamMark).find(filt).sort([("createdAt", 1), ("_id", 1)]))

    performance = overall_performance(marks)
    type_ids = [e["examType"] for e in performance["examTypes"] if isinstance(e["examType"], ObjectId)]
    names = {t["_id"]: t.get("name") for t in get_collection(ExamType).find({"_id": {"$in": type_ids}})}
    for entry in performance["examTypes"]:
        entry["examTypeName"] = names.get(entry["examType"])

    for mark in marks:
        _populate_mark(mark)
    populate(student, "user", User, ("firstName", "lastName"))
    return ok({
        "student": serialize_doc(student),
        "performance": performance,
        "marks": serialize_list(marks),
        "generatedAt": datetime.utcnow(),
    })
