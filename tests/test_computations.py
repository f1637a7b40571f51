from datetime import datetime, timedelta

import pytest

from computations import (
    EFFECTIVELY_PRESENT, attendance_breakdown, attendance_percentage, availability_status,
    days_overdue, days_remaining, format_employee_id, format_receipt_number, format_student_id,
    grade_for, grade_mark, js_round, net_amount, overall_performance, payment_status, payment_total,
    remaining_amount, round2, student_id_year, thread_id_for, total_salary, windows_overlap,
)


@pytest.mark.parametrize("percentage,grade", [
    (100, "A+"), (90, "A+"), (89, "A"), (80, "A"), (72, "B+"), (60, "B"),
    (55, "C+"), (40, "C"), (35, "D+"), (30, "D"), (29, "F"), (0, "F"),
])
def test_grade_thresholds(percentage, grade):
    assert grade_for(percentage) == grade


def test_js_round_rounds_halves_up():
    assert js_round(2.5) == 3
    assert js_round(-2.5) == -2
    assert js_round(66.666) == 67
    assert round2(83.3333) == 83.33


def test_grade_mark_for_present_student():
    result = grade_mark(72, 100, 40)
    assert result == {"marksObtained": 72, "percentage": 72, "grade": "B+", "isPassed": True}


def test_grade_mark_for_absent_student_ignores_marks():
    result = grade_mark(95, 100, 40, is_absent=True)
    assert result["marksObtained"] == 0
    assert result["grade"] == "F"
    assert result["isPassed"] is False


def test_failing_mark_below_passing_marks():
    assert grade_mark(39, 100, 40)["isPassed"] is False
    assert grade_mark(40, 100, 40)["isPassed"] is True


def test_overall_performance_groups_by_exam_type():
    marks = [
        {"examType": "mid", "marksObtained": 80, "totalMarks": 100},
        {"examType": "mid", "marksObtained": 60, "totalMarks": 100},
        {"examType": "final", "marksObtained": 45, "totalMarks": 50},
    ]
    result = overall_performance(marks)
    by_type = {e["examType"]: e for e in result["examTypes"]}
    assert by_type["mid"]["percentage"] == 70
    assert by_type["mid"]["subjects"] == 2
    assert by_type["final"]["grade"] == "A+"
    assert result["totalObtained"] == 185
    assert result["percentage"] == 74
    assert overall_performance([])["percentage"] == 0


def test_attendance_percentage_counts_present_only_by_default():
    statuses = ["Present", "Late", "Absent", "Present"]
    assert attendance_percentage(statuses) == 50
    assert attendance_percentage(statuses, EFFECTIVELY_PRESENT) == 75
    assert attendance_percentage([]) == 0


def test_attendance_breakdown():
    counts = attendance_breakdown(["Present", "Absent", "Excused"])
    assert counts == {"present": 1, "absent": 1, "late": 0, "excused": 1, "total": 3, "percentage": 33}


def test_net_amount_applies_discount():
    assert net_amount(1000) == 1000
    assert net_amount(1000, {"type": "Percentage", "value": 10}) == 900
    assert net_amount(1000, {"type": "Fixed", "value": 250}) == 750
    assert net_amount(100, {"type": "Fixed", "value": 500}) == 0


def test_payment_totals_and_status():
    now = datetime(2024, 6, 1)
    assert payment_total(1000, 50, 100) == 950
    assert payment_status(1000, 1000) == "Paid"
    assert payment_status(400, 1000) == "Partial"
    assert payment_status(0, 1000, now - timedelta(days=1), now) == "Overdue"
    assert payment_status(0, 1000, now + timedelta(days=1), now) == "Pending"
    assert remaining_amount(1000, 400) == 600
    assert remaining_amount(1000, 1200) == 0


def test_days_overdue():
    now = datetime(2024, 6, 10, 12)
    assert days_overdue(None, now) == 0
    assert days_overdue(datetime(2024, 6, 11), now) == 0
    assert days_overdue(datetime(2024, 6, 8), now) == 3


def test_generated_identifiers():
    assert format_student_id("2024", 7) == "20240007"
    assert format_employee_id("2024", 12) == "T2024012"
    assert format_receipt_number(datetime(2024, 3, 5), 42) == "RCP2024030042"
    assert student_id_year("2025-2026") == "2025"
    assert student_id_year(None, datetime(2023, 1, 1)) == "2023"


def test_display_helpers():
    assert total_salary({"basic": 3000, "allowances": 500, "deductions": 200}) == 3300
    assert total_salary(None) == 0
    assert availability_status(0) == "Not Available"
    assert availability_status(2) == "Limited"
    assert availability_status(5) == "Available"
    now = datetime(2024, 1, 1)
    assert days_remaining(now + timedelta(hours=30), now) == 2
    assert days_remaining(now - timedelta(days=3), now) == 0


def test_exam_windows_overlap():
    assert windows_overlap("09:00", "11:00", "10:30", "12:00")
    assert not windows_overlap("09:00", "10:00", "10:00", "11:00")


def test_thread_id_for_replies_joins_parent_thread():
    assert thread_id_for("a") == "a"
    assert thread_id_for("b", {"_id": "a", "threadId": "root"}) == "root"
    assert thread_id_for("b", {"_id": "a"}) == "a"
