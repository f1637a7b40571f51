"""
Database Schemas for the School Management System

Each Pydantic model below maps to a MongoDB collection (class name lowercased).
Field names are snake_case in Python and camelCase on the wire and in MongoDB.
Models double as request payloads; *Create / *Payload models cover requests
that don't map one-to-one onto a stored document.
"""

import re
from datetime import date, datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional

from bson import ObjectId
from pydantic import (
    AfterValidator, BaseModel, BeforeValidator, ConfigDict, EmailStr, Field,
    WithJsonSchema, field_validator, model_validator,
)
from pydantic.alias_generators import to_camel


def _to_object_id(value: Any) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    raise ValueError("Invalid id")


def _coerce_datetime(value: Any) -> Any:
    if isinstance(value, str) and len(value) == 10:
        return datetime.strptime(value, "%Y-%m-%d")
    if isinstance(value, date) and not isinstance(value, datetime):
        return datetime(value.year, value.month, value.day)
    return value


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


ObjectIdField = Annotated[ObjectId, BeforeValidator(_to_object_id), WithJsonSchema({"type": "string"})]
DateTimeField = Annotated[datetime, BeforeValidator(_coerce_datetime), AfterValidator(_naive_utc)]
TimeOfDay = Annotated[str, Field(pattern=r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")]

PASSWORD_RULE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)")

Role = Literal["Admin", "Teacher", "Student", "Parent"]
ROLES = ("Admin", "Teacher", "Student", "Parent")


def check_password(value: str) -> str:
    if len(value) < 6:
        raise ValueError("Password must be at least 6 characters long")
    if not PASSWORD_RULE.match(value):
        raise ValueError("Password must contain at least one uppercase letter, one lowercase letter, and one number")
    return value


class MongoModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        arbitrary_types_allowed=True,
        str_strip_whitespace=True,
    )

    def to_document(self, **kwargs) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, **kwargs)


def apply_update(model_cls, existing: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Validate ``patch`` laid over ``existing`` and return the $set document for the patched keys."""
    merged = {k: v for k, v in existing.items() if k != "_id"}
    merged.update(patch)
    data = model_cls.model_validate(merged).to_document()
    return {key: data[key] for key in patch if key in data}


# -------------------- Shared sub-documents -------------------- #

class Address(MongoModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class EmergencyContact(MongoModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    relationship: Optional[str] = None


# -------------------- Identity -------------------- #

class UserCreate(MongoModel):
    first_name: str = Field(..., min_length=2, max_length=50)
    last_name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    password: str
    role: Role
    phone: Optional[str] = None
    date_of_birth: Optional[DateTimeField] = None
    gender: Optional[Literal["Male", "Female", "Other"]] = None
    address: Optional[Address] = None

    validate_password = field_validator("password")(check_password)

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.lower()


class User(MongoModel):
    """Stored user profile; the password hash is written separately and never read back out."""
    first_name: str = Field(..., min_length=2, max_length=50)
    last_name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    role: Role
    phone: Optional[str] = None
    date_of_birth: Optional[DateTimeField] = None
    gender: Optional[Literal["Male", "Female", "Other"]] = None
    address: Optional[Address] = None
    profile_image: Optional[str] = None
    is_active: bool = True
    is_email_verified: bool = False
    last_login: Optional[DateTimeField] = None


class LoginPayload(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class ForgotPasswordPayload(BaseModel):
    email: EmailStr


class ResetPasswordPayload(BaseModel):
    password: str

    validate_password = field_validator("password")(check_password)


class ChangePasswordPayload(MongoModel):
    current_password: str = Field(..., min_length=1)
    new_password: str

    validate_new_password = field_validator("new_password")(check_password)


# -------------------- Academic structure -------------------- #

class Session(MongoModel):
    """Academic year"""
    name: str = Field(..., min_length=1, max_length=50)
    start_date: DateTimeField
    end_date: DateTimeField
    is_active: bool = False
    description: Optional[str] = Field(None, max_length=200)

    @model_validator(mode="after")
    def end_after_start(self):
        if self.end_date <= self.start_date:
            raise ValueError("End date must be after start date")
        return self


class Classroom(MongoModel):
    name: str = Field(..., min_length=1, max_length=50)
    grade: int = Field(..., ge=1, le=12)
    description: Optional[str] = Field(None, max_length=200)
    class_teacher: Optional[ObjectIdField] = None
    capacity: int = Field(50, ge=1)
    is_active: bool = True
    session: Optional[ObjectIdField] = None
    subjects: List[ObjectIdField] = Field(default_factory=list, description="Subjects taught in this class")


class Section(MongoModel):
    name: str = Field(..., min_length=1, max_length=10)
    class_id: ObjectIdField = Field(..., alias="class")
    section_teacher: Optional[ObjectIdField] = None
    capacity: int = Field(40, ge=1)
    room: Optional[str] = Field(None, max_length=20)
    is_active: bool = True
    session: Optional[ObjectIdField] = None


class Subject(MongoModel):
    name: str = Field(..., min_length=2, max_length=100)
    code: str = Field(..., min_length=1, max_length=10)
    description: Optional[str] = Field(None, max_length=500)
    classes: List[ObjectIdField] = Field(default_factory=list)
    teacher: Optional[ObjectIdField] = Field(None, description="User id of the subject teacher")
    type: Literal["Core", "Elective", "Optional"] = "Core"
    credits: float = Field(1, ge=0.5, le=10)
    total_marks: int = Field(100, ge=1)
    passing_marks: int = Field(40, ge=0)
    is_active: bool = True
    session: Optional[ObjectIdField] = None

    @field_validator("code")
    @classmethod
    def upper_code(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def passing_below_total(self):
        if self.passing_marks >= self.total_marks:
            raise ValueError("Passing marks must be less than total marks")
        return self


class AssignClassesPayload(MongoModel):
    class_ids: List[ObjectIdField] = Field(..., min_length=1)


# -------------------- People -------------------- #

class Transport(MongoModel):
    required: bool = False
    route: Optional[str] = None
    pickup_point: Optional[str] = None


class Hostel(MongoModel):
    required: bool = False
    room_number: Optional[str] = None


BloodGroup = Literal["A+", "A-", "B+", "B-", "AB+", "AB-", "O+", "O-"]
StudentStatus = Literal["Active", "Inactive", "Graduated", "Transferred", "Dropped"]

PROFILE_FIELDS = {"first_name", "last_name", "email", "password", "phone", "date_of_birth", "gender", "address"}


class Student(MongoModel):
    user: Optional[ObjectIdField] = None
    student_id: Optional[str] = None
    roll_number: Optional[str] = Field(None, max_length=10)
    class_id: ObjectIdField = Field(..., alias="class")
    section: Optional[ObjectIdField] = None
    parent: Optional[ObjectIdField] = None
    admission_date: DateTimeField = Field(default_factory=datetime.utcnow)
    admission_number: Optional[str] = None
    previous_school: Optional[str] = None
    blood_group: Optional[BloodGroup] = None
    medical_conditions: List[str] = Field(default_factory=list)
    emergency_contact: Optional[EmergencyContact] = None
    transport: Optional[Transport] = None
    hostel: Optional[Hostel] = None
    status: StudentStatus = "Active"
    session: Optional[ObjectIdField] = None


class StudentCreate(Student):
    first_name: str = Field(..., min_length=2, max_length=50)
    last_name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    password: str
    phone: Optional[str] = None
    date_of_birth: Optional[DateTimeField] = None
    gender: Optional[Literal["Male", "Female", "Other"]] = None
    address: Optional[Address] = None

    validate_password = field_validator("password")(check_password)


class Salary(MongoModel):
    basic: float = Field(0, ge=0)
    allowances: float = Field(0, ge=0)
    deductions: float = Field(0, ge=0)


class ClassAssignment(MongoModel):
    class_id: ObjectIdField = Field(..., alias="class")
    section: Optional[ObjectIdField] = None
    is_class_teacher: bool = False


class SubjectAssignment(MongoModel):
    subject: ObjectIdField
    classes: List[ObjectIdField] = Field(default_factory=list)


class WorkingHours(MongoModel):
    start_time: Optional[TimeOfDay] = None
    end_time: Optional[TimeOfDay] = None


TeacherStatus = Literal["Active", "Inactive", "On Leave", "Terminated"]


class Teacher(MongoModel):
    user: Optional[ObjectIdField] = None
    employee_id: Optional[str] = None
    department: Optional[str] = None
    designation: str = Field(..., min_length=1)
    qualification: Optional[str] = None
    experience: int = Field(0, ge=0)
    specialization: List[str] = Field(default_factory=list)
    joining_date: DateTimeField = Field(default_factory=datetime.utcnow)
    salary: Optional[Salary] = None
    assigned_classes: List[ClassAssignment] = Field(default_factory=list)
    assigned_subjects: List[SubjectAssignment] = Field(default_factory=list)
    working_hours: Optional[WorkingHours] = None
    emergency_contact: Optional[EmergencyContact] = None
    status: TeacherStatus = "Active"
    session: Optional[ObjectIdField] = None


class TeacherCreate(Teacher):
    first_name: str = Field(..., min_length=2, max_length=50)
    last_name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    password: str
    phone: Optional[str] = None
    date_of_birth: Optional[DateTimeField] = None
    gender: Optional[Literal["Male", "Female", "Other"]] = None
    address: Optional[Address] = None

    validate_password = field_validator("password")(check_password)


class AssignClassPayload(MongoModel):
    class_id: ObjectIdField
    section_id: Optional[ObjectIdField] = None
    is_class_teacher: bool = False


class AssignSubjectPayload(MongoModel):
    subject_id: ObjectIdField
    class_ids: List[ObjectIdField] = Field(default_factory=list)


# -------------------- Exams -------------------- #

class ExamType(MongoModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    total_marks: int = Field(100, ge=1)
    passing_marks: int = Field(40, ge=0)
    duration: Optional[int] = Field(None, ge=1, le=480)
    is_active: bool = True
    session: Optional[ObjectIdField] = None

    @model_validator(mode="after")
    def passing_below_total(self):
        if self.passing_marks >= self.total_marks:
            raise ValueError("Passing marks must be less than total marks")
        return self


ExamStatus = Literal["Scheduled", "Ongoing", "Completed", "Cancelled"]


class Exam(MongoModel):
    name: str = Field(..., min_length=2, max_length=200)
    exam_type: ObjectIdField
    class_id: ObjectIdField = Field(..., alias="class")
    section: Optional[ObjectIdField] = None
    subject: ObjectIdField
    teacher: Optional[ObjectIdField] = None
    date: DateTimeField
    start_time: TimeOfDay
    end_time: TimeOfDay
    duration: Optional[int] = Field(None, ge=1, le=480)
    total_marks: int = Field(..., ge=1, le=1000)
    passing_marks: int = Field(..., ge=1, le=1000)
    room: Optional[str] = None
    instructions: Optional[str] = Field(None, max_length=1000)
    status: ExamStatus = "Scheduled"
    is_published: bool = False
    session: Optional[ObjectIdField] = None

    @model_validator(mode="after")
    def check_marks_and_times(self):
        if self.passing_marks >= self.total_marks:
            raise ValueError("Passing marks must be less than total marks")
        start_h, start_m = self.start_time.split(":")
        end_h, end_m = self.end_time.split(":")
        if int(end_h) * 60 + int(end_m) <= int(start_h) * 60 + int(start_m):
            raise ValueError("End time must be after start time")
        return self


class MarkEntry(MongoModel):
    student: ObjectIdField
    marks_obtained: float = Field(0, ge=0)
    is_absent: bool = False
    remarks: Optional[str] = Field(None, max_length=200)


class MarksPayload(MongoModel):
    exam: ObjectIdField
    marks: List[MarkEntry] = Field(..., min_length=1)


class MarkUpdate(MongoModel):
    marks_obtained: Optional[float] = Field(None, ge=0)
    is_absent: Optional[bool] = None
    remarks: Optional[str] = Field(None, max_length=200)


class ExamMark(MongoModel):
    """Stored mark; percentage, grade and isPassed are derived when written."""
    student: ObjectIdField
    exam: ObjectIdField
    exam_type: Optional[ObjectIdField] = None
    subject: Optional[ObjectIdField] = None
    class_id: Optional[ObjectIdField] = Field(None, alias="class")
    section: Optional[ObjectIdField] = None
    marks_obtained: float = Field(0, ge=0)
    total_marks: int = Field(..., ge=1)
    passing_marks: int = Field(0, ge=0)
    percentage: float = 0
    grade: str = "F"
    is_passed: bool = False
    is_absent: bool = False
    remarks: Optional[str] = Field(None, max_length=200)
    entered_by: Optional[ObjectIdField] = None
    session: Optional[ObjectIdField] = None

    @model_validator(mode="after")
    def within_total(self):
        if self.marks_obtained > self.total_marks:
            raise ValueError("Marks obtained cannot exceed total marks")
        return self


# -------------------- Attendance -------------------- #

AttendanceStatus = Literal["Present", "Absent", "Late", "Excused"]


class AttendanceEntry(MongoModel):
    student: ObjectIdField
    status: AttendanceStatus
    time_in: Optional[TimeOfDay] = None
    time_out: Optional[TimeOfDay] = None
    remarks: Optional[str] = Field(None, max_length=200)


class MarkAttendancePayload(MongoModel):
    class_id: ObjectIdField = Field(..., alias="class")
    section: Optional[ObjectIdField] = None
    subject: Optional[ObjectIdField] = None
    date: DateTimeField
    attendance_data: List[AttendanceEntry] = Field(..., min_length=1)
    session: Optional[ObjectIdField] = None


class AttendanceUpdate(MongoModel):
    status: Optional[AttendanceStatus] = None
    time_in: Optional[TimeOfDay] = None
    time_out: Optional[TimeOfDay] = None
    remarks: Optional[str] = Field(None, max_length=200)


class Attendance(MongoModel):
    student: ObjectIdField
    class_id: ObjectIdField = Field(..., alias="class")
    section: Optional[ObjectIdField] = None
    subject: Optional[ObjectIdField] = None
    date: DateTimeField
    status: AttendanceStatus
    time_in: Optional[TimeOfDay] = None
    time_out: Optional[TimeOfDay] = None
    remarks: Optional[str] = Field(None, max_length=200)
    marked_by: Optional[ObjectIdField] = None
    session: Optional[ObjectIdField] = None


# -------------------- Fees -------------------- #

FeeCategory = Literal["Academic", "Administrative", "Transport", "Hostel", "Library", "Laboratory", "Sports", "Other"]


class FeeType(MongoModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    code: str = Field(..., min_length=1, max_length=20)
    category: FeeCategory = "Academic"
    is_recurring: bool = False
    frequency: Literal["Monthly", "Quarterly", "Half-Yearly", "Yearly", "One-Time"] = "Yearly"
    is_optional: bool = False
    is_active: bool = True
    session: Optional[ObjectIdField] = None

    @field_validator("code")
    @classmethod
    def upper_code(cls, v: str) -> str:
        return v.upper()


class LateFee(MongoModel):
    amount: float = Field(0, ge=0)
    after_days: int = Field(0, ge=0)


class Discount(MongoModel):
    type: Literal["Percentage", "Fixed"] = "Fixed"
    value: float = Field(0, ge=0)
    description: Optional[str] = None


class FeeStructure(MongoModel):
    name: Optional[str] = Field(None, max_length=100)
    class_id: ObjectIdField = Field(..., alias="class")
    fee_type: ObjectIdField
    amount: float = Field(..., ge=0)
    due_date: DateTimeField
    late_fee: Optional[LateFee] = None
    discount: Optional[Discount] = None
    is_active: bool = True
    session: Optional[ObjectIdField] = None

    @model_validator(mode="after")
    def discount_within_amount(self):
        if self.discount:
            if self.discount.type == "Percentage" and self.discount.value > 100:
                raise ValueError("Discount percentage cannot exceed 100%")
            if self.discount.type == "Fixed" and self.discount.value > self.amount:
                raise ValueError("Fixed discount cannot exceed the fee amount")
        return self


PaymentMethod = Literal["Cash", "Cheque", "Bank Transfer", "Online", "Card"]


class PaymentPayload(MongoModel):
    student: ObjectIdField
    fee_type: ObjectIdField
    amount: float = Field(..., ge=0, description="Amount paid")
    payment_method: PaymentMethod
    transaction_id: Optional[str] = Field(None, min_length=1)
    month: Optional[int] = Field(None, ge=1, le=12)
    year: Optional[int] = Field(None, ge=2000, le=2100)
    late_fee: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    payment_date: Optional[DateTimeField] = None
    remarks: Optional[str] = Field(None, max_length=500)


PaymentStatus = Literal["Paid", "Partial", "Pending", "Overdue", "Cancelled"]


class FeePayment(MongoModel):
    """totalAmount = paidAmount + lateFee - discount"""
    student: ObjectIdField
    fee_structure: Optional[ObjectIdField] = None
    fee_type: ObjectIdField
    receipt_number: str
    due_amount: float = Field(..., ge=0)
    paid_amount: float = Field(..., ge=0)
    late_fee: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    total_amount: float
    payment_method: PaymentMethod
    transaction_id: Optional[str] = None
    payment_date: DateTimeField = Field(default_factory=datetime.utcnow)
    due_date: Optional[DateTimeField] = None
    month: Optional[int] = Field(None, ge=1, le=12)
    year: Optional[int] = None
    status: PaymentStatus = "Pending"
    remarks: Optional[str] = Field(None, max_length=500)
    collected_by: Optional[ObjectIdField] = None
    session: Optional[ObjectIdField] = None


# -------------------- Library -------------------- #

BookCategory = Literal[
    "Textbook", "Reference", "Fiction", "Non-Fiction", "Science",
    "Mathematics", "History", "Geography", "Literature", "Other",
]


class ShelfLocation(MongoModel):
    shelf: Optional[str] = None
    section: Optional[str] = None


class Book(MongoModel):
    title: str = Field(..., min_length=1, max_length=200)
    author: str = Field(..., min_length=1, max_length=100)
    isbn: Optional[str] = Field(None, min_length=10, max_length=20)
    publisher: Optional[str] = Field(None, max_length=100)
    publication_year: Optional[int] = Field(None, ge=1800)
    edition: Optional[str] = None
    category: BookCategory
    subject: Optional[ObjectIdField] = None
    classes: List[ObjectIdField] = Field(default_factory=list)
    language: str = "English"
    total_copies: int = Field(..., ge=1)
    location: Optional[ShelfLocation] = None
    description: Optional[str] = Field(None, max_length=1000)
    cover_image: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    is_active: bool = True
    session: Optional[ObjectIdField] = None

    @field_validator("publication_year")
    @classmethod
    def not_in_future(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v > datetime.utcnow().year:
            raise ValueError("Invalid publication year")
        return v


class IssuePayload(MongoModel):
    student_id: ObjectIdField
    due_date: DateTimeField
    remarks: Optional[str] = None


class ReturnPayload(MongoModel):
    student_id: ObjectIdField
    return_date: Optional[DateTimeField] = None
    condition: Optional[Literal["Good", "Fair", "Poor", "Damaged"]] = None
    remarks: Optional[str] = None


class BookIssue(MongoModel):
    book: ObjectIdField
    student: ObjectIdField
    issue_date: DateTimeField = Field(default_factory=datetime.utcnow)
    due_date: DateTimeField
    return_date: Optional[DateTimeField] = None
    condition: Optional[str] = None
    remarks: Optional[str] = None
    status: Literal["Issued", "Returned"] = "Issued"
    issued_by: Optional[ObjectIdField] = None


class StudyMaterial(MongoModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    subject: Optional[ObjectIdField] = None
    class_id: Optional[ObjectIdField] = Field(None, alias="class")
    file: Dict[str, Any] = Field(default_factory=dict)
    uploaded_by: Optional[ObjectIdField] = None
    is_active: bool = True


# -------------------- Communication -------------------- #

Priority = Literal["Low", "Normal", "High", "Urgent"]


class MessageCreate(MongoModel):
    recipient: ObjectIdField
    subject: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1, max_length=2000)
    priority: Priority = "Normal"
    attachments: List[str] = Field(default_factory=list)


class ReplyPayload(MongoModel):
    message: str = Field(..., min_length=1, max_length=2000)
    priority: Priority = "Normal"
    attachments: List[str] = Field(default_factory=list)


class Message(MongoModel):
    sender: ObjectIdField
    recipient: ObjectIdField
    subject: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1, max_length=2000)
    priority: Priority = "Normal"
    attachments: List[str] = Field(default_factory=list)
    thread_id: Optional[ObjectIdField] = None
    parent_message: Optional[ObjectIdField] = None
    is_read: bool = False
    read_at: Optional[DateTimeField] = None
    is_starred: bool = False
    is_archived: bool = False
    deleted_by: List[Dict[str, Any]] = Field(default_factory=list)
    is_deleted: bool = False


NoticeCategory = Literal[
    "General", "Academic", "Examination", "Event", "Holiday",
    "Fee", "Admission", "Sports", "Emergency", "Other",
]
Audience = Literal["All", "Students", "Teachers", "Parents", "Admin"]


class Notice(MongoModel):
    title: str = Field(..., min_length=1, max_length=200)
    content: str = Field(..., min_length=1, max_length=5000)
    category: NoticeCategory = "General"
    priority: Priority = "Normal"
    target_audience: List[Audience] = Field(default_factory=lambda: ["All"])
    target_classes: List[ObjectIdField] = Field(default_factory=list)
    publish_date: DateTimeField = Field(default_factory=datetime.utcnow)
    expiry_date: Optional[DateTimeField] = None
    is_published: bool = True
    is_pinned: bool = False
    attachments: List[str] = Field(default_factory=list)
    is_active: bool = True
    session: Optional[ObjectIdField] = None

    @model_validator(mode="after")
    def expiry_after_publish(self):
        if self.expiry_date and self.expiry_date <= self.publish_date:
            raise ValueError("Expiry date must be after publish date")
        if not self.target_audience:
            self.target_audience = ["All"]
        return self


class AuditLog(MongoModel):
    user: Optional[ObjectIdField] = None
    role: Optional[str] = None
    action: str
    path: str
    method: str
    status: int
    ip: Optional[str] = None
