from datetime import datetime, timedelta
from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from computations import attendance_percentage, js_round, round2
from database import get_collection
from exceptions import ValidationFailed
from policies import ADMIN, PARENT, STUDENT, TEACHER, Principal
from responses import ok
from routers.fees import pending_fees
from schemas import Attendance, AuditLog, Classroom, Exam, ExamMark, Student, Subject, User
from security import get_principal

router = APIRouter(prefix="/dashboard", tags=["dashboard"])

RECENT_ACTIVITY_LIMIT = 10


def recent_activities(limit: int = RECENT_ACTIVITY_LIMIT) -> List[Dict[str, Any]]:
    """Latest successful writes recorded by the audit middleware."""
    entries = list(get_collection(AuditLog).find().sort([("createdAt", -1), ("_id", -1)]).limit(limit))
    users = {u["_id"]: u for u in get_collection(User).find(
        {"_id": {"$in": [e.get("user") for e in entries if e.get("user")]}}, {"firstName": 1, "lastName": 1})}
    activities = []
    for e in entries:
        user = users.get(e.get("user"), {})
        activities.append({
            "type": e.get("action"),
            "message": f"{e.get('method')} {e.get('path')}",
            "user": " ".join(p for p in (user.get("firstName"), user.get("lastName")) if p) or None,
            "role": e.get("role"),
            "timestamp": e.get("createdAt"),
        })
    return activities


def student_attendance(student_id) -> int:
    statuses = [r["status"] for r in get_collection(Attendance).find({"student": student_id}, {"status": 1})]
    return attendance_percentage(statuses)


def average_marks(student_id) -> float:
    marks = list(get_collection(ExamMark).find({"student": student_id, "isAbsent": {"$ne": True}},
                                               {"marksObtained": 1, "totalMarks": 1}))
    out_of = sum(m.get("totalMarks", 0) for m in marks)
    return round2(sum(m.get("marksObtained", 0) for m in marks) / out_of * 100) if out_of else 0


def upcoming_exams(class_filter: Any) -> int:
    return get_collection(Exam).count_documents({
        "class": class_filter, "date": {"$gte": datetime.utcnow()}, "status": "Scheduled",
    })


def admin_stats() -> Dict[str, Any]:
    students = get_collection(Student)
    return {
        "totalStudents": students.count_documents({}),
        "totalTeachers": get_collection(User).count_documents({"role": TEACHER, "isActive": True}),
        "totalClasses": get_collection(Classroom).count_documents({"isActive": True}),
        "totalSubjects": get_collection(Subject).count_documents({}),
        "activeStudents": students.count_documents({"status": "Active"}),
        "recentActivities": recent_activities(),
    }


def teacher_stats(principal: Principal) -> Dict[str, Any]:
    if not principal.teacher:
        return {"myClasses": 0, "myStudents": 0, "pendingExams": 0, "todayAttendance": 0}
    led = [c["_id"] for c in get_collection(Classroom).find({"classTeacher": principal.id}, {"_id": 1})]
    class_ids = list(dict.fromkeys(led + principal.assigned_class_ids))

    now = datetime.utcnow()
    today = datetime(now.year, now.month, now.day)
    todays = [r["status"] for r in get_collection(Attendance).find(
        {"markedBy": principal.id, "date": {"$gte": today, "$lt": today + timedelta(days=1)}}, {"status": 1})]
    return {
        "myClasses": len(class_ids),
        "myStudents": get_collection(Student).count_documents({"class": {"$in": class_ids}, "status": "Active"}),
        "pendingExams": get_collection(Exam).count_documents({"teacher": principal.id, "status": "Scheduled"}),
        "todayAttendance": attendance_percentage(todays),
    }


def student_stats(principal: Principal) -> Dict[str, Any]:
    student = principal.student
    if not student:
        return {"attendance": 0, "averageMarks": 0, "upcomingExams": 0, "pendingFees": 0}
    return {
        "attendance": student_attendance(student["_id"]),
        "averageMarks": average_marks(student["_id"]),
        "upcomingExams": upcoming_exams(student.get("class")),
        "pendingFees": pending_fees(student),
    }


def parent_stats(principal: Principal) -> Dict[str, Any]:
    children = principal.children
    if not children:
        return {"totalChildren": 0, "averageAttendance": 0, "upcomingExams": 0, "pendingFees": 0}
    rates = [student_attendance(child["_id"]) for child in children]
    return {
        "totalChildren": len(children),
        "averageAttendance": js_round(sum(rates) / len(rates)),
        "upcomingExams": upcoming_exams({"$in": principal.children_class_ids}),
        "pendingFees": sum(pending_fees(child) for child in children),
    }


@router.get("")
def dashboard(principal: Principal = Depends(get_principal)):
    if principal.role == ADMIN:
        stats = admin_stats()
    elif principal.role == TEACHER:
        stats = teacher_stats(principal)
    elif principal.role == STUDENT:
        stats = student_stats(principal)
    elif principal.role == PARENT:
        stats = parent_stats(principal)
    else:
        raise ValidationFailed("Invalid user role")
    return ok(stats)
