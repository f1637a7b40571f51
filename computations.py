"""
Derived values shared by the routers: grades, attendance percentages,
fee amounts and statuses, generated identifiers and a few display helpers.

Rounding follows JavaScript's Math.round (halves go up), so results match
records produced by the earlier Node service.
"""

import math
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

GRADE_THRESHOLDS = (
    (90, "A+"),
    (80, "A"),
    (70, "B+"),
    (60, "B"),
    (50, "C+"),
    (40, "C"),
    (35, "D+"),
    (30, "D"),
)

PRESENT_ONLY = frozenset({"Present"})
EFFECTIVELY_PRESENT = frozenset({"Present", "Late", "Excused"})


def js_round(value: float) -> int:
    return math.floor(value + 0.5)


def round2(value: float) -> float:
    return math.floor(value * 100 + 0.5) / 100


def percentage_of(part: float, whole: float) -> int:
    if not whole:
        return 0
    return js_round(part / whole * 100)


# -------------------- Exams -------------------- #

def grade_for(percentage: float) -> str:
    for threshold, grade in GRADE_THRESHOLDS:
        if percentage >= threshold:
            return grade
    return "F"


def grade_mark(marks_obtained: float, total_marks: float, passing_marks: float,
               is_absent: bool = False) -> Dict[str, Any]:
    if is_absent:
        return {"marksObtained": 0, "percentage": 0, "grade": "F", "isPassed": False}
    percentage = percentage_of(marks_obtained, total_marks)
    return {
        "marksObtained": marks_obtained,
        "percentage": percentage,
        "grade": grade_for(percentage),
        "isPassed": marks_obtained >= passing_marks,
    }


def overall_performance(marks: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """Totals per exam type plus an overall figure, from stored ExamMark documents."""
    by_type: Dict[str, Dict[str, Any]] = {}
    total_obtained = 0.0
    total_max = 0.0
    for mark in marks:
        key = str(mark.get("examType"))
        entry = by_type.setdefault(key, {"examType": mark.get("examType"), "totalObtained": 0.0,
                                         "totalMarks": 0.0, "subjects": 0})
        entry["totalObtained"] += mark.get("marksObtained", 0)
        entry["totalMarks"] += mark.get("totalMarks", 0)
        entry["subjects"] += 1
        total_obtained += mark.get("marksObtained", 0)
        total_max += mark.get("totalMarks", 0)

    breakdown = []
    for entry in by_type.values():
        pct = round2(entry["totalObtained"] / entry["totalMarks"] * 100) if entry["totalMarks"] else 0
        breakdown.append({**entry, "percentage": pct, "grade": grade_for(pct)})

    overall = round2(total_obtained / total_max * 100) if total_max else 0
    return {
        "examTypes": breakdown,
        "totalObtained": total_obtained,
        "totalMarks": total_max,
        "percentage": overall,
        "grade": grade_for(overall),
    }


def time_to_minutes(value: str) -> int:
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def windows_overlap(start_a: str, end_a: str, start_b: str, end_b: str) -> bool:
    return time_to_minutes(start_a) < time_to_minutes(end_b) and time_to_minutes(start_b) < time_to_minutes(end_a)


# -------------------- Attendance -------------------- #

def attendance_percentage(statuses: Iterable[str], counted=PRESENT_ONLY) -> int:
    statuses = list(statuses)
    present = sum(1 for s in statuses if s in counted)
    return percentage_of(present, len(statuses))


def attendance_breakdown(statuses: Iterable[str], counted=PRESENT_ONLY) -> Dict[str, int]:
    counts = {"present": 0, "absent": 0, "late": 0, "excused": 0, "total": 0}
    for status in statuses:
        key = status.lower()
        if key in counts:
            counts[key] += 1
        counts["total"] += 1
    present = sum(counts[s.lower()] for s in counted)
    counts["percentage"] = percentage_of(present, counts["total"])
    return counts


# -------------------- Fees -------------------- #

def net_amount(amount: float, discount: Optional[Dict[str, Any]] = None) -> float:
    if not discount or not discount.get("value"):
        return amount
    if discount.get("type") == "Percentage":
        net = amount - amount * discount["value"] / 100
    else:
        net = amount - discount["value"]
    return max(0, net)


def payment_total(paid_amount: float, late_fee: float = 0, discount: float = 0) -> float:
    return paid_amount + late_fee - discount


def payment_status(paid_amount: float, due_amount: float, due_date: Optional[datetime] = None,
                   now: Optional[datetime] = None) -> str:
    if paid_amount >= due_amount:
        return "Paid"
    if paid_amount > 0:
        return "Partial"
    now = now or datetime.utcnow()
    if due_date and now > due_date:
        return "Overdue"
    return "Pending"


def remaining_amount(due_amount: float, paid_amount: float) -> float:
    return max(0, due_amount - paid_amount)


def days_overdue(due_date: Optional[datetime], now: Optional[datetime] = None) -> int:
    if not due_date:
        return 0
    now = now or datetime.utcnow()
    if now <= due_date:
        return 0
    return math.ceil((now - due_date).total_seconds() / 86400)


# -------------------- Generated identifiers -------------------- #

def student_id_year(session_name: Optional[str], now: Optional[datetime] = None) -> str:
    if session_name:
        return session_name.split("-")[0]
    return str((now or datetime.utcnow()).year)


def format_student_id(year: str, seq: int) -> str:
    return f"{year}{seq:04d}"


def format_employee_id(year: str, seq: int) -> str:
    return f"T{year}{seq:03d}"


def receipt_prefix(when: datetime) -> str:
    return f"RCP{when.year}{when.month:02d}"


def format_receipt_number(when: datetime, seq: int) -> str:
    return f"{receipt_prefix(when)}{seq:04d}"


# -------------------- Display helpers -------------------- #

def total_salary(salary: Optional[Dict[str, Any]]) -> float:
    if not salary:
        return 0
    return salary.get("basic", 0) + salary.get("allowances", 0) - salary.get("deductions", 0)


def availability_status(available_copies: int) -> str:
    if available_copies == 0:
        return "Not Available"
    if available_copies <= 2:
        return "Limited"
    return "Available"


def is_expired(expiry_date: Optional[datetime], now: Optional[datetime] = None) -> bool:
    return bool(expiry_date) and (now or datetime.utcnow()) > expiry_date


def days_remaining(expiry_date: Optional[datetime], now: Optional[datetime] = None) -> Optional[int]:
    if not expiry_date:
        return None
    diff = (expiry_date - (now or datetime.utcnow())).total_seconds() / 86400
    return max(0, math.ceil(diff))


def thread_id_for(own_id, parent: Optional[Dict[str, Any]] = None):
    """Root messages start their own thread; replies join the parent's."""
    if parent is None:
        return own_id
    return parent.get("threadId") or parent["_id"]
