"""
Authorization policies.

Every resource type has one policy function ``(principal, action, resource)``
returning a Decision: allowed or not, and for list actions the query filter
the principal's role confines them to. Policies never touch the database;
the Principal carries everything they need and is rebuilt on every request,
so changed assignments and parent links take effect immediately.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from bson import ObjectId

from exceptions import AuthorizationError, NotFoundError

ADMIN, TEACHER, STUDENT, PARENT = "Admin", "Teacher", "Student", "Parent"

AUDIENCE_BY_ROLE = {
    ADMIN: "Admin",
    TEACHER: "Teachers",
    STUDENT: "Students",
    PARENT: "Parents",
}

# Matches no document.
NOTHING: Dict[str, Any] = {"_id": {"$in": []}}


@dataclass
class Principal:
    user: Dict[str, Any]
    student: Optional[Dict[str, Any]] = None
    teacher: Optional[Dict[str, Any]] = None
    children: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def id(self) -> ObjectId:
        return self.user["_id"]

    @property
    def role(self) -> str:
        return self.user.get("role")

    @property
    def audience(self) -> str:
        return AUDIENCE_BY_ROLE.get(self.role, "")

    @property
    def student_id(self) -> Optional[ObjectId]:
        return self.student["_id"] if self.student else None

    @property
    def class_id(self) -> Optional[ObjectId]:
        return self.student.get("class") if self.student else None

    @property
    def children_ids(self) -> List[ObjectId]:
        return [c["_id"] for c in self.children]

    @property
    def children_class_ids(self) -> List[ObjectId]:
        return [c["class"] for c in self.children if c.get("class")]

    @property
    def assigned_class_ids(self) -> List[ObjectId]:
        if not self.teacher:
            return []
        ids = [a["class"] for a in self.teacher.get("assignedClasses", []) if a.get("class")]
        for assignment in self.teacher.get("assignedSubjects", []):
            ids.extend(assignment.get("classes", []))
        return list(dict.fromkeys(ids))

    @property
    def assigned_subject_ids(self) -> List[ObjectId]:
        if not self.teacher:
            return []
        return [a["subject"] for a in self.teacher.get("assignedSubjects", []) if a.get("subject")]


def load_principal(db, user: Dict[str, Any]) -> Principal:
    principal = Principal(user=user)
    role = user.get("role")
    if role == STUDENT:
        principal.student = db["student"].find_one({"user": user["_id"]})
    elif role == TEACHER:
        principal.teacher = db["teacher"].find_one({"user": user["_id"]})
    elif role == PARENT:
        principal.children = list(db["student"].find({"parent": user["_id"]}))
    return principal


@dataclass
class Decision:
    allowed: bool
    scope: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None
    conceal: bool = False


def allow(scope: Optional[Dict[str, Any]] = None) -> Decision:
    return Decision(True, scope or {})


def deny(reason: str, conceal: bool = False) -> Decision:
    return Decision(False, reason=reason, conceal=conceal)


def role_denied(principal: Principal) -> Decision:
    return deny(f"Access denied. {principal.role} role is not authorized to access this resource.")


def _in(value: Any, options: List[Any]) -> bool:
    if isinstance(value, list):
        return any(v in options for v in value)
    return value in options


def matches(scope: Dict[str, Any], doc: Dict[str, Any]) -> bool:
    """Evaluate the small query subset used by policy scopes against one document."""
    for key, cond in scope.items():
        if key == "$or":
            if not any(matches(sub, doc) for sub in cond):
                return False
            continue
        if key == "$and":
            if not all(matches(sub, doc) for sub in cond):
                return False
            continue
        value = doc.get(key)
        if isinstance(cond, dict) and "$in" in cond:
            if not _in(value, cond["$in"]):
                return False
        elif isinstance(value, list):
            if cond not in value:
                return False
        elif value != cond:
            return False
    return True


# -------------------- Policies -------------------- #

def student_policy(principal: Principal, action: str, resource: Optional[Dict[str, Any]] = None) -> Decision:
    role = principal.role
    if action in ("create", "update", "delete"):
        return allow() if role == ADMIN else role_denied(principal)

    if role == ADMIN:
        scope: Dict[str, Any] = {}
    elif role == TEACHER:
        scope = {"class": {"$in": principal.assigned_class_ids}}
    elif role == STUDENT:
        scope = {"_id": principal.student_id} if principal.student else NOTHING
    elif role == PARENT:
        scope = {"parent": principal.id}
    else:
        return role_denied(principal)

    if resource is None:
        return allow(scope)
    if matches(scope, resource):
        return allow(scope)
    if role == STUDENT:
        return deny("Access denied. You can only access your own records.")
    if role == PARENT:
        return deny("Access denied. You can only access your child's records.")
    return deny("Access denied. Student is not in your assigned classes.")


def attendance_policy(principal: Principal, action: str, resource: Optional[Dict[str, Any]] = None) -> Decision:
    role = principal.role
    if action in ("create", "update"):
        if role == ADMIN:
            return allow()
        if role == TEACHER:
            if resource is None or resource.get("class") in principal.assigned_class_ids:
                return allow()
            return deny("Access denied. You can only manage attendance for your assigned classes.")
        return role_denied(principal)

    if role == ADMIN:
        scope: Dict[str, Any] = {}
    elif role == TEACHER:
        scope = {"class": {"$in": principal.assigned_class_ids}}
    elif role == STUDENT:
        scope = {"student": principal.student_id} if principal.student else NOTHING
    elif role == PARENT:
        scope = {"student": {"$in": principal.children_ids}}
    else:
        return role_denied(principal)

    if resource is not None and not matches(scope, resource):
        return deny("Access denied. You cannot access this attendance record.")
    return allow(scope)


def exam_policy(principal: Principal, action: str, resource: Optional[Dict[str, Any]] = None) -> Decision:
    role = principal.role
    if action == "delete":
        return allow() if role == ADMIN else role_denied(principal)
    if action == "create":
        if role == ADMIN:
            return allow()
        if role == TEACHER:
            if resource is None or matches(_teacher_assignment_scope(principal), resource):
                return allow()
            return deny("Access denied. You can only schedule exams for your assigned classes or subjects.")
        return role_denied(principal)
    if action in ("update", "publish"):
        if role == ADMIN:
            return allow()
        if role == TEACHER and resource is not None and resource.get("teacher") == principal.id:
            return allow()
        if role == TEACHER:
            return deny("Access denied. You can only modify your own exams.")
        return role_denied(principal)

    if role == ADMIN:
        scope: Dict[str, Any] = {}
    elif role == TEACHER:
        scope = _teacher_exam_scope(principal)
    elif role == STUDENT:
        scope = {"class": principal.class_id} if principal.class_id else NOTHING
    elif role == PARENT:
        scope = {"class": {"$in": principal.children_class_ids}}
    else:
        return role_denied(principal)

    if resource is not None and not matches(scope, resource):
        return deny("Access denied. This exam is outside your classes.")
    return allow(scope)


def _teacher_assignment_scope(principal: Principal) -> Dict[str, Any]:
    return {"$or": [
        {"class": {"$in": principal.assigned_class_ids}},
        {"subject": {"$in": principal.assigned_subject_ids}},
    ]}


def _teacher_exam_scope(principal: Principal) -> Dict[str, Any]:
    return {"$or": _teacher_assignment_scope(principal)["$or"] + [{"teacher": principal.id}]}


def mark_policy(principal: Principal, action: str, resource: Optional[Dict[str, Any]] = None) -> Decision:
    """Resource is the ExamMark for list/view, the Exam being graded for create/update."""
    role = principal.role
    if action == "delete":
        return allow() if role == ADMIN else role_denied(principal)
    if action in ("create", "update"):
        if role == ADMIN:
            return allow()
        if role == TEACHER:
            if resource is None or matches(_teacher_exam_scope(principal), resource):
                return allow()
            return deny("Access denied. You can only enter marks for your own classes or subjects.")
        return role_denied(principal)

    if role == ADMIN:
        scope: Dict[str, Any] = {}
    elif role == TEACHER:
        scope = _teacher_assignment_scope(principal)
    elif role == STUDENT:
        scope = {"student": principal.student_id} if principal.student else NOTHING
    elif role == PARENT:
        scope = {"student": {"$in": principal.children_ids}}
    else:
        return role_denied(principal)

    if resource is not None and not matches(scope, resource):
        return deny("Access denied. You cannot access these marks.")
    return allow(scope)


def fee_payment_policy(principal: Principal, action: str, resource: Optional[Dict[str, Any]] = None) -> Decision:
    role = principal.role
    if action not in ("list", "view"):
        return allow() if role == ADMIN else role_denied(principal)

    if role == ADMIN:
        scope: Dict[str, Any] = {}
    elif role == STUDENT:
        scope = {"student": principal.student_id} if principal.student else NOTHING
    elif role == PARENT:
        scope = {"student": {"$in": principal.children_ids}}
    else:
        return role_denied(principal)

    if resource is not None and not matches(scope, resource):
        return deny("Access denied. You can only view your own receipts.")
    return allow(scope)


def message_policy(principal: Principal, action: str, resource: Optional[Dict[str, Any]] = None) -> Decision:
    if resource is None:
        return allow()
    is_sender = resource.get("sender") == principal.id
    is_recipient = resource.get("recipient") == principal.id
    if not (is_sender or is_recipient):
        return deny("Access denied. You can only access your own messages.")
    if action in ("read", "archive") and not is_recipient:
        return deny("Only the recipient can perform this action.")
    return allow()


def notice_visibility(principal: Principal, now: Optional[datetime] = None,
                      include_expired: bool = False) -> Dict[str, Any]:
    now = now or datetime.utcnow()
    clauses: List[Dict[str, Any]] = [{
        "isPublished": True,
        "isActive": True,
        "publishDate": {"$lte": now},
        "targetAudience": {"$in": ["All", principal.audience]},
    }]
    if not include_expired:
        clauses.append({"$or": [{"expiryDate": None}, {"expiryDate": {"$gt": now}}]})
    if principal.role == STUDENT:
        clauses.append({"$or": [{"targetClasses": {"$size": 0}}, {"targetClasses": principal.class_id}]})
    return {"$and": clauses}


def notice_visible(principal: Principal, notice: Dict[str, Any], now: Optional[datetime] = None,
                   include_expired: bool = False) -> bool:
    now = now or datetime.utcnow()
    if not (notice.get("isPublished") and notice.get("isActive")):
        return False
    if notice.get("publishDate") and notice["publishDate"] > now:
        return False
    expiry = notice.get("expiryDate")
    if expiry and expiry <= now and not include_expired:
        return False
    audience = notice.get("targetAudience") or ["All"]
    if "All" not in audience and principal.audience not in audience:
        return False
    if principal.role == STUDENT:
        target_classes = notice.get("targetClasses") or []
        if target_classes and principal.class_id not in target_classes:
            return False
    return True


def notice_policy(principal: Principal, action: str, resource: Optional[Dict[str, Any]] = None) -> Decision:
    role = principal.role
    if action in ("create", "update", "delete", "pin", "stats"):
        return allow() if role == ADMIN else role_denied(principal)
    if role == ADMIN:
        return allow({"isActive": True} if resource is None else {})
    if resource is None:
        return allow(notice_visibility(principal))
    if notice_visible(principal, resource):
        return allow()
    return deny("Notice not found", conceal=True)


def study_material_policy(principal: Principal, action: str, resource: Optional[Dict[str, Any]] = None) -> Decision:
    role = principal.role
    if action == "create":
        return allow() if role in (ADMIN, TEACHER) else role_denied(principal)
    if action == "delete":
        if role == ADMIN or (resource is not None and resource.get("uploadedBy") == principal.id):
            return allow()
        return deny("Access denied. You can only remove materials you uploaded.")

    if role in (ADMIN, TEACHER):
        scope: Dict[str, Any] = {}
    elif role == STUDENT:
        scope = {"class": principal.class_id} if principal.class_id else NOTHING
    elif role == PARENT:
        scope = {"class": {"$in": principal.children_class_ids}}
    else:
        return role_denied(principal)

    if resource is not None and not matches(scope, resource):
        return deny("Study material not found", conceal=True)
    return allow(scope)


def class_report_policy(principal: Principal, action: str, resource: Optional[Dict[str, Any]] = None) -> Decision:
    """Resource is the Class document."""
    if principal.role == ADMIN:
        return allow()
    if principal.role == TEACHER:
        if resource is None or resource.get("_id") in principal.assigned_class_ids:
            return allow()
        return deny("Access denied. Class is not in your assigned classes.")
    return role_denied(principal)


POLICIES: Dict[str, Callable[..., Decision]] = {
    "student": student_policy,
    "attendance": attendance_policy,
    "exam": exam_policy,
    "mark": mark_policy,
    "fee_payment": fee_payment_policy,
    "message": message_policy,
    "notice": notice_policy,
    "study_material": study_material_policy,
    "class_report": class_report_policy,
}


def enforce(principal: Principal, resource_type: str, action: str,
            resource: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Apply a policy; returns the scope filter or raises."""
    decision = POLICIES[resource_type](principal, action, resource)
    if not decision.allowed:
        if decision.conceal:
            raise NotFoundError(message=decision.reason)
        raise AuthorizationError(decision.reason)
    return decision.scope
