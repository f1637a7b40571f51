"""
Read-only reports across attendance, marks and fees.

Attendance percentages here count Present only; Late and Excused days are
reported separately.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from computations import PRESENT_ONLY, attendance_breakdown, round2
from database import and_query, find_by_id, get_collection, populate, populate_many, to_object_id
from pagination import date_filter
from policies import Principal, enforce
from responses import ok, serialize_doc, serialize_list
from routers.fees import status_clause
from schemas import (
    Attendance, Classroom, Exam, ExamMark, FeePayment, FeeType, Student, Subject, Teacher, User,
)
from security import get_principal, principal_for

router = APIRouter(prefix="/reports", tags=["reports"])

CSV_COLUMNS = ("studentId", "admissionNumber", "studentName", "className",
               "totalDays", "presentDays", "absentDays", "lateDays", "attendancePercentage")


def _status_counts(statuses: Iterable[str]) -> List[Dict[str, Any]]:
    counts: Dict[str, int] = {}
    for s in statuses:
        counts[s] = counts.get(s, 0) + 1
    return [{"status": s, "count": c} for s, c in sorted(counts.items())]


def _student_directory(student_ids: Iterable[ObjectId]) -> Dict[ObjectId, Dict[str, Any]]:
    """Student id -> {admissionNumber, studentName, className} for report rows."""
    students = list(get_collection(Student).find(
        {"_id": {"$in": list(set(student_ids))}}, {"admissionNumber": 1, "user": 1, "class": 1}))
    users = {u["_id"]: u for u in get_collection(User).find(
        {"_id": {"$in": [s.get("user") for s in students]}}, {"firstName": 1, "lastName": 1})}
    classes = {c["_id"]: c for c in get_collection(Classroom).find(
        {"_id": {"$in": [s.get("class") for s in students]}}, {"name": 1})}
    directory = {}
    for s in students:
        user = users.get(s.get("user"), {})
        directory[s["_id"]] = {
            "admissionNumber": s.get("admissionNumber"),
            "studentName": " ".join(p for p in (user.get("firstName"), user.get("lastName")) if p),
            "className": classes.get(s.get("class"), {}).get("name"),
        }
    return directory


@router.get("/dashboard")
def dashboard_report(principal: Principal = Depends(principal_for("Admin"))):
    now = datetime.utcnow()
    today = datetime(now.year, now.month, now.day)

    todays = get_collection(Attendance).find({"date": {"$gte": today, "$lt": today + timedelta(days=1)}},
                                             {"status": 1})
    recent_paid = list(get_collection(FeePayment).find(
        {"paymentDate": {"$gte": now - timedelta(days=30)}, "status": "Paid"}, {"totalAmount": 1}))

    return ok({
        "summary": {
            "totalStudents": get_collection(Student).count_documents({"status": "Active"}),
            "totalTeachers": get_collection(Teacher).count_documents({"status": "Active"}),
            "totalClasses": get_collection(Classroom).count_documents({"isActive": True}),
            "upcomingExams": get_collection(Exam).count_documents({
                "date": {"$gte": today, "$lte": now + timedelta(days=30)},
                "status": "Scheduled",
            }),
        },
        "todayAttendance": _status_counts(r["status"] for r in todays),
        "recentFeeCollection": {
            "totalAmount": sum(p.get("totalAmount", 0) for p in recent_paid),
            "count": len(recent_paid),
        },
    })


@router.get("/student/{student_id}")
def student_report(
    student_id: str,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    principal: Principal = Depends(get_principal),
):
    student = find_by_id(Student, student_id, "Student")
    enforce(principal, "student", "view", student)

    created = date_filter(None, start_date, end_date)
    filt: Dict[str, Any] = {"student": student["_id"]}
    if created:
        filt["createdAt"] = created

    statuses = [r["status"] for r in get_collection(Attendance).find(filt, {"status": 1})]
    counts = attendance_breakdown(statuses, PRESENT_ONLY)

    marks = list(get_collection(ExamMark).find(filt).sort([("createdAt", -1), ("_id", -1)]))
    populate_many(marks, "exam", Exam, ("name", "date", "examType"))
    populate_many(marks, "subject", Subject, ("name", "code"))
    obtained = sum(m.get("marksObtained", 0) for m in marks)
    out_of = sum(m.get("totalMarks", 0) for m in marks)

    payments = list(get_collection(FeePayment).find(filt).sort([("paymentDate", -1), ("_id", -1)]))
    populate_many(payments, "feeType", FeeType, ("name",))

    populate(student, "user", User, ("firstName", "lastName", "email"))
    populate(student, "class", Classroom, ("name", "grade"))
    populate(student, "parent", User, ("firstName", "lastName", "email"))

    return ok({"report": {
        "student": serialize_doc(student),
        "summary": {
            "attendancePercentage": round2(counts["present"] / counts["total"] * 100) if counts["total"] else 0,
            "totalClasses": counts["total"],
            "presentDays": counts["present"],
            "absentDays": counts["absent"],
            "averageMarks": round2(obtained / out_of * 100) if out_of else 0,
            "totalExams": len(marks),
            "totalFeesPaid": sum(p.get("totalAmount", 0) for p in payments),
        },
        "attendanceStats": _status_counts(statuses),
        "examResults": serialize_list(marks),
        "feePayments": serialize_list(payments),
    }})


@router.get("/class/{class_id}")
def class_summary_report(
    class_id: str,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    principal: Principal = Depends(principal_for("Admin", "Teacher")),
):
    classroom = find_by_id(Classroom, class_id, "Class")
    enforce(principal, "class_report", "view", classroom)

    students = list(get_collection(Student).find(
        {"class": classroom["_id"]}, {"admissionNumber": 1, "rollNumber": 1, "user": 1},
    ).sort([("rollNumber", 1), ("_id", 1)]))
    populate_many(students, "user", User, ("firstName", "lastName"))
    filt: Dict[str, Any] = {"student": {"$in": [s["_id"] for s in students]}}
    created = date_filter(None, start_date, end_date)
    if created:
        filt["createdAt"] = created

    attendance = [r["status"] for r in get_collection(Attendance).find(filt, {"status": 1})]

    by_subject: Dict[ObjectId, Dict[str, Any]] = {}
    for m in get_collection(ExamMark).find(filt):
        entry = by_subject.setdefault(m.get("subject"), {"subject": m.get("subject"), "marks": [],
                                                         "totalMarks": m.get("totalMarks")})
        entry["marks"].append(m.get("marksObtained", 0))
    exam_performance = [{
        "subject": e["subject"],
        "averageMarks": round2(sum(e["marks"]) / len(e["marks"])),
        "totalMarks": e["totalMarks"],
        "totalStudents": len(e["marks"]),
    } for e in by_subject.values()]
    populate_many(exam_performance, "subject", Subject, ("name", "code"))

    by_fee_type: Dict[ObjectId, Dict[str, Any]] = {}
    for p in get_collection(FeePayment).find({**filt, "status": "Paid"}):
        entry = by_fee_type.setdefault(p["feeType"], {"feeType": p["feeType"], "totalAmount": 0, "count": 0})
        entry["totalAmount"] += p.get("totalAmount", 0)
        entry["count"] += 1
    fee_collection = list(by_fee_type.values())
    populate_many(fee_collection, "feeType", FeeType, ("name", "code"))

    return ok({"report": {
        "class": serialize_doc(classroom),
        "summary": {
            "totalStudents": len(students),
            "attendanceStats": _status_counts(attendance),
            "examPerformance": exam_performance,
            "feeCollection": fee_collection,
        },
        "students": serialize_list(students),
    }})


@router.get("/attendance")
def attendance_report(
    class_id: Optional[str] = Query(None, alias="classId"),
    student_id: Optional[str] = Query(None, alias="studentId"),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    format: str = Query("json", pattern="^(json|csv)$"),
    principal: Principal = Depends(principal_for("Admin", "Teacher")),
):
    scope = enforce(principal, "attendance", "list")
    filt: Dict[str, Any] = {}
    if class_id:
        filt["class"] = to_object_id(class_id, "Class")
    if student_id:
        filt["student"] = to_object_id(student_id, "Student")
    dates = date_filter(None, start_date, end_date)
    if dates:
        filt["date"] = dates

    per_student: Dict[ObjectId, List[str]] = {}
    for r in get_collection(Attendance).find(and_query(scope, filt), {"student": 1, "status": 1}):
        per_student.setdefault(r["student"], []).append(r["status"])
    directory = _student_directory(per_student)

    rows = []
    for sid, statuses in per_student.items():
        counts = attendance_breakdown(statuses, PRESENT_ONLY)
        rows.append({
            "studentId": sid,
            **directory.get(sid, {"admissionNumber": None, "studentName": "", "className": None}),
            "totalDays": counts["total"],
            "presentDays": counts["present"],
            "absentDays": counts["absent"],
            "lateDays": counts["late"],
            "attendancePercentage": round2(counts["present"] / counts["total"] * 100),
        })
    rows.sort(key=lambda r: (r["className"] or "", r["studentName"]))

    if format == "csv":
        def gen():
            yield ",".join(CSV_COLUMNS) + "\n"
            for row in rows:
                yield ",".join("" if row[c] is None else str(row[c]).replace(",", " ") for c in CSV_COLUMNS) + "\n"
        return StreamingResponse(gen(), media_type="text/csv",
                                 headers={"Content-Disposition": "attachment; filename=attendance-report.csv"})
    return ok({"attendanceReport": rows})


@router.get("/exam/{exam_id}")
def exam_report(exam_id: str, principal: Principal = Depends(principal_for("Admin", "Teacher"))):
    exam = find_by_id(Exam, exam_id, "Exam")
    enforce(principal, "exam", "view", exam)

    marks = list(get_collection(ExamMark).find({"exam": exam["_id"]}))
    subjects = {s["_id"]: s.get("name") for s in get_collection(Subject).find(
        {"_id": {"$in": [m.get("subject") for m in marks]}}, {"name": 1})}
    directory = _student_directory(m["student"] for m in marks)

    per_student: Dict[ObjectId, Dict[str, Any]] = {}
    for m in marks:
        entry = per_student.setdefault(m["student"], {
            "student": m["student"],
            **directory.get(m["student"], {}),
            "examName": exam.get("name"),
            "subjects": [],
            "totalMarks": 0,
            "totalMaxMarks": 0,
        })
        entry["subjects"].append({
            "subject": subjects.get(m.get("subject")),
            "marksObtained": m.get("marksObtained", 0),
            "maxMarks": m.get("totalMarks", 0),
            "percentage": m.get("percentage", 0),
            "grade": m.get("grade"),
        })
        entry["totalMarks"] += m.get("marksObtained", 0)
        entry["totalMaxMarks"] += m.get("totalMarks", 0)
    for entry in per_student.values():
        total = entry["totalMaxMarks"]
        entry["overallPercentage"] = round2(entry["totalMarks"] / total * 100) if total else 0
    report = sorted(per_student.values(), key=lambda e: -e["overallPercentage"])
    return ok({"exam": serialize_doc(exam), "examReport": report})


@router.get("/fees")
def fee_report(
    class_id: Optional[str] = Query(None, alias="classId"),
    status: str = Query("Paid"),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    principal: Principal = Depends(principal_for("Admin")),
):
    enforce(principal, "fee_payment", "list")
    filt: Dict[str, Any] = status_clause(status)
    dates = date_filter(None, start_date, end_date)
    if dates:
        filt["paymentDate"] = dates
    if class_id:
        class_students = get_collection(Student).find({"class": to_object_id(class_id, "Class")}, {"_id": 1})
        filt["student"] = {"$in": [s["_id"] for s in class_students]}

    payments = list(get_collection(FeePayment).find(filt).sort([("paymentDate", 1), ("_id", 1)]))
    directory = _student_directory(p["student"] for p in payments)
    fee_types = {t["_id"]: t.get("name") for t in get_collection(FeeType).find(
        {"_id": {"$in": [p["feeType"] for p in payments]}}, {"name": 1})}

    groups: Dict[tuple, Dict[str, Any]] = {}
    for p in payments:
        student = directory.get(p["student"], {})
        key = (student.get("className"), p["feeType"])
        group = groups.setdefault(key, {
            "className": student.get("className"),
            "feeType": p["feeType"],
            "feeTypeName": fee_types.get(p["feeType"]),
            "totalAmount": 0,
            "count": 0,
            "payments": [],
        })
        group["totalAmount"] += p.get("totalAmount", 0)
        group["count"] += 1
        group["payments"].append({
            "student": {"name": student.get("studentName"), "admissionNumber": student.get("admissionNumber")},
            "receiptNumber": p.get("receiptNumber"),
            "amount": p.get("totalAmount", 0),
            "paymentDate": p.get("paymentDate"),
            "paymentMethod": p.get("paymentMethod"),
        })
    report = sorted(groups.values(), key=lambda g: (g["className"] or "", g["feeTypeName"] or ""))
    return ok({"feeReport": report})
