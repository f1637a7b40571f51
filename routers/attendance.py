from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, Query
from pymongo.errors import BulkWriteError

from computations import EFFECTIVELY_PRESENT, attendance_breakdown, js_round, round2
from database import (
    and_query, find_by_id, get_collection, populate, populate_many, to_object_id, update_by_id,
)
from exceptions import ConflictError
from logging_config import logger
from pagination import PageParams, date_filter, day_bounds, page_params, paginate
from policies import Principal, enforce
from responses import ok, serialize_doc, serialize_list
from routers.sessions import active_session_id
from schemas import (
    Attendance, AttendanceUpdate, Classroom, MarkAttendancePayload, Section, Student, Subject, User,
)
from security import get_principal, principal_for

router = APIRouter(prefix="/attendance", tags=["attendance"])

STUDENT_FIELDS = ("admissionNumber", "rollNumber", "user")


def _populate_students(docs: List[Dict[str, Any]], user_fields=("firstName", "lastName")) -> None:
    populate_many(docs, "student", Student, STUDENT_FIELDS)
    nested = [d["student"] for d in docs if isinstance(d.get("student"), dict)]
    populate_many(nested, "user", User, user_fields)


@router.get("")
def list_attendance(
    class_id: Optional[str] = Query(None, alias="class"),
    section: Optional[str] = Query(None),
    student: Optional[str] = Query(None),
    subject: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    date: Optional[str] = Query(None),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    params: PageParams = Depends(page_params),
    principal: Principal = Depends(get_principal),
):
    scope = enforce(principal, "attendance", "list")
    filt: Dict[str, Any] = {}
    if class_id:
        filt["class"] = to_object_id(class_id, "Class")
    if section:
        filt["section"] = to_object_id(section, "Section")
    if student:
        filt["student"] = to_object_id(student, "Student")
    if subject:
        filt["subject"] = to_object_id(subject, "Subject")
    if status:
        filt["status"] = status
    dates = date_filter(date, start_date, end_date)
    if dates:
        filt["date"] = dates

    docs, meta = paginate(get_collection(Attendance), and_query(scope, filt), params,
                          default_sort=(("date", -1), ("createdAt", -1)),
                          allowed_sorts=("date", "status", "createdAt"))
    _populate_students(docs, ("firstName", "lastName", "profileImage"))
    populate_many(docs, "class", Classroom, ("name", "grade"))
    populate_many(docs, "section", Section, ("name",))
    populate_many(docs, "subject", Subject, ("name", "code"))
    populate_many(docs, "markedBy", User, ("firstName", "lastName"))
    return ok({"items": serialize_list(docs), "pagination": meta})


@router.get("/stats")
def attendance_stats(
    session: Optional[str] = Query(None),
    class_id: Optional[str] = Query(None, alias="class"),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    principal: Principal = Depends(principal_for("Admin", "Teacher")),
):
    scope = enforce(principal, "attendance", "list")
    filt: Dict[str, Any] = {}
    if session:
        filt["session"] = to_object_id(session, "Session")
    if class_id:
        filt["class"] = to_object_id(class_id, "Class")
    dates = date_filter(None, start_date, end_date)
    if dates:
        filt["date"] = dates

    records = list(get_collection(Attendance).find(and_query(scope, filt), {"status": 1, "date": 1}))
    summary = attendance_breakdown((r["status"] for r in records), EFFECTIVELY_PRESENT)
    summary["attendanceRate"] = summary.pop("percentage")

    status_wise: Dict[str, int] = {}
    daily: Dict[str, Dict[str, Any]] = {}
    for r in records:
        status_wise[r["status"]] = status_wise.get(r["status"], 0) + 1
        day = r["date"].strftime("%Y-%m-%d")
        entry = daily.setdefault(day, {"date": day, "total": 0, "present": 0, "absent": 0})
        entry["total"] += 1
        if r["status"] == "Present":
            entry["present"] += 1
        elif r["status"] == "Absent":
            entry["absent"] += 1

    return ok({
        "summary": summary,
        "statusWise": [{"status": s, "count": c} for s, c in sorted(status_wise.items())],
        "daily": [daily[d] for d in sorted(daily)][:30],
    })


@router.post("/mark", status_code=201)
def mark_attendance(payload: MarkAttendancePayload,
                    principal: Principal = Depends(principal_for("Admin", "Teacher"))):
    classroom = find_by_id(Classroom, payload.class_id, "Class")
    enforce(principal, "attendance", "create", {"class": classroom["_id"]})

    now = datetime.utcnow()
    if payload.date >= datetime(now.year, now.month, now.day) + timedelta(days=1):
        raise ConflictError("Cannot mark attendance for future dates")

    records = get_collection(Attendance)
    start, end = day_bounds(payload.date)
    existing = records.find_one({
        "class": classroom["_id"],
        "section": payload.section,
        "subject": payload.subject,
        "date": {"$gte": start, "$lt": end},
    })
    if existing:
        raise ConflictError("Attendance already marked for this date. Use update endpoint to modify.")

    student_ids = list(dict.fromkeys(entry.student for entry in payload.attendance_data))
    taken = records.count_documents({"student": {"$in": student_ids}, "date": {"$gte": start, "$lt": end}})
    if taken:
        raise ConflictError(f"Attendance already marked for {taken} of these students on this date")
    roster: Dict[str, Any] = {"_id": {"$in": student_ids}, "class": classroom["_id"], "status": "Active"}
    if payload.section is not None:
        roster["section"] = payload.section
    if len(student_ids) != len(payload.attendance_data) or \
            get_collection(Student).count_documents(roster) != len(student_ids):
        raise ConflictError("Some students do not belong to the specified class/section")

    session = payload.session or classroom.get("session") or active_session_id()
    docs = []
    for entry in payload.attendance_data:
        doc = Attendance(
            student=entry.student,
            class_id=classroom["_id"],
            section=payload.section,
            subject=payload.subject,
            date=start,
            status=entry.status,
            time_in=entry.time_in,
            time_out=entry.time_out,
            remarks=entry.remarks or "",
            marked_by=principal.id,
            session=session,
        ).to_document()
        doc["createdAt"] = doc["updatedAt"] = now
        docs.append(doc)
    try:
        records.insert_many(docs)
    except BulkWriteError:
        records.delete_many({"_id": {"$in": [d["_id"] for d in docs if "_id" in d]}})
        raise ConflictError("Attendance already marked for this date. Use update endpoint to modify.")

    logger.info(f"Attendance marked for class {classroom['_id']} on {payload.date.date()}: {len(docs)} records")
    return ok({
        "recordsCreated": len(docs),
        "date": start,
        "class": classroom["_id"],
        "section": payload.section,
        "subject": payload.subject,
    }, "Attendance marked successfully")


@router.put("/{attendance_id}")
def update_attendance(attendance_id: str, payload: AttendanceUpdate,
                      principal: Principal = Depends(principal_for("Admin", "Teacher"))):
    found = find_by_id(Attendance, attendance_id, "Attendance record")
    enforce(principal, "attendance", "update", found)
    changes = payload.to_document(exclude_none=True)
    updated = update_by_id(Attendance, found["_id"], changes, principal.id)

    _populate_students([updated])
    populate(updated, "class", Classroom, ("name", "grade"))
    populate(updated, "section", Section, ("name",))
    populate(updated, "subject", Subject, ("name", "code"))
    return ok({"attendance": serialize_doc(updated)}, "Attendance updated successfully")


@router.get("/student/{student_id}/summary")
def student_summary(
    student_id: str,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    subject: Optional[str] = Query(None),
    principal: Principal = Depends(get_principal),
):
    student = find_by_id(Student, student_id, "Student")
    enforce(principal, "attendance", "view", {"student": student["_id"], "class": student.get("class")})

    filt: Dict[str, Any] = {"student": student["_id"]}
    dates = date_filter(None, start_date, end_date)
    if dates:
        filt["date"] = dates
    if subject:
        filt["subject"] = to_object_id(subject, "Subject")
    records = list(get_collection(Attendance).find(filt).sort([("date", 1), ("_id", 1)]))
    populate_many(records, "subject", Subject, ("name", "code"))

    counts = attendance_breakdown((r["status"] for r in records), EFFECTIVELY_PRESENT)
    summary = {
        "totalDays": counts["total"],
        "presentDays": counts["present"],
        "absentDays": counts["absent"],
        "lateDays": counts["late"],
        "excusedDays": counts["excused"],
        "attendancePercentage": counts["percentage"],
    }

    by_subject: Dict[str, List[str]] = {}
    for r in records:
        name = r["subject"].get("name") if isinstance(r.get("subject"), dict) else "General"
        by_subject.setdefault(name or "General", []).append(r["status"])
    subject_wise = {name: attendance_breakdown(statuses, EFFECTIVELY_PRESENT)
                    for name, statuses in by_subject.items()}

    return ok({"summary": summary, "subjectWise": subject_wise, "records": serialize_list(records)})


@router.get("/class/{class_id}/report")
def class_report(
    class_id: str,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    section: Optional[str] = Query(None),
    subject: Optional[str] = Query(None),
    principal: Principal = Depends(principal_for("Admin", "Teacher")),
):
    """Per-student attendance for a class, counting one status per student per day."""
    classroom = find_by_id(Classroom, class_id, "Class")
    enforce(principal, "class_report", "view", classroom)

    filt: Dict[str, Any] = {"class": classroom["_id"]}
    dates = date_filter(None, start_date, end_date)
    if dates:
        filt["date"] = dates
    if section:
        filt["section"] = to_object_id(section, "Section")
    if subject:
        filt["subject"] = to_object_id(subject, "Subject")

    days: Dict[ObjectId, Dict[str, str]] = {}
    for r in get_collection(Attendance).find(filt).sort([("date", 1), ("_id", 1)]):
        days.setdefault(r["student"], {}).setdefault(r["date"].strftime("%Y-%m-%d"), r["status"])

    students = {s["_id"]: s for s in get_collection(Student).find(
        {"_id": {"$in": list(days)}}, {"admissionNumber": 1, "rollNumber": 1, "user": 1})}
    users = {u["_id"]: u for u in get_collection(User).find(
        {"_id": {"$in": [s.get("user") for s in students.values()]}}, {"firstName": 1, "lastName": 1})}

    student_data = []
    for sid, statuses in days.items():
        total = len(statuses)
        present = sum(1 for s in statuses.values() if s in EFFECTIVELY_PRESENT)
        student = students.get(sid, {"_id": sid})
        student_data.append({
            "student": student,
            "user": users.get(student.get("user")),
            "totalDays": total,
            "presentDays": present,
            "absentDays": sum(1 for s in statuses.values() if s == "Absent"),
            "attendancePercentage": round2(present / total * 100) if total else 0,
        })
    student_data.sort(key=lambda d: str(d["student"].get("rollNumber") or ""))

    class_stats = {"totalStudents": len(student_data), "averageAttendance": 0,
                   "studentsAbove90": 0, "studentsBelow75": 0}
    if student_data:
        percentages = [d["attendancePercentage"] for d in student_data]
        class_stats["averageAttendance"] = js_round(sum(percentages) / len(percentages))
        class_stats["studentsAbove90"] = sum(1 for p in percentages if p >= 90)
        class_stats["studentsBelow75"] = sum(1 for p in percentages if p < 75)

    return ok({"class": serialize_doc(classroom), "classStats": class_stats, "studentData": student_data})
