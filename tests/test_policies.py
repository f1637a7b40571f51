from datetime import datetime, timedelta

import pytest
from bson import ObjectId

from exceptions import AuthorizationError, NotFoundError
from policies import NOTHING, Principal, enforce, matches, notice_visible


def principal(role, **kwargs):
    return Principal(user={"_id": ObjectId(), "role": role}, **kwargs)


@pytest.fixture
def class_a():
    return ObjectId()


@pytest.fixture
def class_b():
    return ObjectId()


def test_matches_query_subset():
    doc = {"class": 1, "tags": ["x", "y"], "teacher": 5}
    assert matches({"class": 1}, doc)
    assert matches({"class": {"$in": [1, 2]}}, doc)
    assert matches({"tags": "y"}, doc)
    assert matches({"$or": [{"class": 9}, {"teacher": 5}]}, doc)
    assert not matches({"$and": [{"class": 1}, {"teacher": 6}]}, doc)
    assert not matches(NOTHING, doc)


def test_admin_sees_all_students():
    assert enforce(principal("Admin"), "student", "list") == {}


def test_teacher_student_scope_is_assigned_classes(class_a, class_b):
    teacher = principal("Teacher", teacher={"assignedClasses": [{"class": class_a}],
                                            "assignedSubjects": [{"subject": ObjectId(), "classes": [class_b]}]})
    scope = enforce(teacher, "student", "list")
    assert scope == {"class": {"$in": [class_a, class_b]}}
    enforce(teacher, "student", "view", {"_id": ObjectId(), "class": class_a})
    with pytest.raises(AuthorizationError):
        enforce(teacher, "student", "view", {"_id": ObjectId(), "class": ObjectId()})


def test_student_only_sees_own_record(class_a):
    own = {"_id": ObjectId(), "class": class_a}
    student = principal("Student", student=own)
    enforce(student, "student", "view", own)
    with pytest.raises(AuthorizationError, match="own records"):
        enforce(student, "student", "view", {"_id": ObjectId(), "class": class_a})


def test_student_without_profile_matches_nothing():
    assert enforce(principal("Student"), "attendance", "list") == NOTHING


def test_parent_scope_follows_children(class_a):
    p = principal("Parent")
    child = {"_id": ObjectId(), "class": class_a, "parent": p.id}
    p.children = [child]
    enforce(p, "student", "view", child)
    assert enforce(p, "attendance", "list") == {"student": {"$in": [child["_id"]]}}
    with pytest.raises(AuthorizationError, match="child"):
        enforce(p, "student", "view", {"_id": ObjectId(), "class": class_a, "parent": ObjectId()})


def test_only_admin_writes_students():
    for role in ("Teacher", "Student", "Parent"):
        with pytest.raises(AuthorizationError):
            enforce(principal(role), "student", "create")


def test_teacher_marks_attendance_for_assigned_class_only(class_a):
    teacher = principal("Teacher", teacher={"assignedClasses": [{"class": class_a}]})
    enforce(teacher, "attendance", "create", {"class": class_a})
    with pytest.raises(AuthorizationError):
        enforce(teacher, "attendance", "create", {"class": ObjectId()})


def test_teacher_updates_only_own_exams():
    teacher = principal("Teacher", teacher={})
    enforce(teacher, "exam", "update", {"teacher": teacher.id})
    with pytest.raises(AuthorizationError, match="own exams"):
        enforce(teacher, "exam", "update", {"teacher": ObjectId()})
    with pytest.raises(AuthorizationError):
        enforce(teacher, "exam", "delete", {"teacher": teacher.id})


def test_teacher_schedules_exams_only_for_assignments(class_a):
    teacher = principal("Teacher", teacher={"assignedClasses": [{"class": class_a}]})
    enforce(teacher, "exam", "create", {"class": class_a, "subject": ObjectId(), "teacher": teacher.id})
    with pytest.raises(AuthorizationError, match="schedule"):
        enforce(teacher, "exam", "create", {"class": ObjectId(), "subject": ObjectId(), "teacher": teacher.id})


def test_teachers_cannot_see_fee_payments():
    with pytest.raises(AuthorizationError):
        enforce(principal("Teacher"), "fee_payment", "list")


def test_message_recipient_only_actions():
    user = principal("Student")
    sent = {"sender": user.id, "recipient": ObjectId()}
    enforce(user, "message", "view", sent)
    with pytest.raises(AuthorizationError, match="recipient"):
        enforce(user, "message", "read", sent)
    with pytest.raises(AuthorizationError):
        enforce(user, "message", "view", {"sender": ObjectId(), "recipient": ObjectId()})


def _notice(**overrides):
    notice = {"isPublished": True, "isActive": True, "publishDate": datetime.utcnow() - timedelta(days=1),
              "expiryDate": None, "targetAudience": ["All"], "targetClasses": []}
    notice.update(overrides)
    return notice


def test_notice_audience_rules(class_a):
    student = principal("Student", student={"_id": ObjectId(), "class": class_a})
    teacher = principal("Teacher")
    assert notice_visible(student, _notice())
    assert notice_visible(teacher, _notice(targetAudience=["Teachers"]))
    assert not notice_visible(student, _notice(targetAudience=["Teachers"]))
    assert notice_visible(student, _notice(targetClasses=[class_a]))
    assert not notice_visible(student, _notice(targetClasses=[ObjectId()]))
    assert not notice_visible(student, _notice(isPublished=False))
    assert not notice_visible(student, _notice(publishDate=datetime.utcnow() + timedelta(days=1)))
    expired = _notice(expiryDate=datetime.utcnow() - timedelta(hours=1))
    assert not notice_visible(student, expired)
    assert notice_visible(student, expired, include_expired=True)


def test_hidden_notice_reads_as_not_found():
    with pytest.raises(NotFoundError):
        enforce(principal("Parent"), "notice", "view", _notice(targetAudience=["Teachers"]))


def test_study_material_delete_by_uploader():
    teacher = principal("Teacher")
    enforce(teacher, "study_material", "delete", {"uploadedBy": teacher.id})
    with pytest.raises(AuthorizationError):
        enforce(teacher, "study_material", "delete", {"uploadedBy": ObjectId()})
