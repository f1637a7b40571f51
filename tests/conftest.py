import os
import tempfile

os.environ["ENVIRONMENT"] = "test"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="school-uploads-")

from datetime import datetime  # noqa: E402
from itertools import count  # noqa: E402
from typing import Any, Dict, Optional  # noqa: E402

import mongomock  # noqa: E402
import pytest  # noqa: E402
from bson import ObjectId  # noqa: E402
from faker import Faker  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

import database  # noqa: E402
from main import app  # noqa: E402
from security import create_access_token, hash_password  # noqa: E402

PASSWORD = "Passw0rd"

fake = Faker()
_seq = count(1)


@pytest.fixture(autouse=True)
def db(monkeypatch):
    mock_db = mongomock.MongoClient()["school_test"]
    monkeypatch.setattr(database, "db", mock_db)
    database.ensure_indexes(mock_db)
    return mock_db


@pytest.fixture
def client():
    return TestClient(app)


def auth(user: Dict[str, Any]) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user['_id'])}"}


@pytest.fixture
def make_user(db):
    def _make(role: str, **extra) -> Dict[str, Any]:
        now = datetime.utcnow()
        doc = {
            "firstName": fake.first_name(),
            "lastName": fake.last_name(),
            "email": f"{role.lower()}{next(_seq)}@{fake.domain_name()}",
            "password": hash_password(PASSWORD),
            "role": role,
            "isActive": True,
            "isEmailVerified": True,
            "createdAt": now,
            "updatedAt": now,
            **extra,
        }
        doc["_id"] = db["user"].insert_one(doc).inserted_id
        return doc
    return _make


@pytest.fixture
def session_doc(db):
    year = datetime.utcnow().year
    doc = {"name": f"{year}-{year + 1}", "startDate": datetime(year, 4, 1),
           "endDate": datetime(year + 1, 3, 31), "isActive": True, "createdAt": datetime.utcnow()}
    doc["_id"] = db["session"].insert_one(doc).inserted_id
    return doc


@pytest.fixture
def make_class(db, session_doc):
    def _make(name: str = "Grade 5", grade: int = 5) -> Dict[str, Any]:
        doc = {"name": name, "grade": grade, "capacity": 40, "isActive": True,
               "session": session_doc["_id"], "createdAt": datetime.utcnow()}
        doc["_id"] = db["classroom"].insert_one(doc).inserted_id
        return doc
    return _make


@pytest.fixture
def classroom(make_class):
    return make_class()


@pytest.fixture
def make_student(db, make_user, session_doc):
    def _make(classroom: Dict[str, Any], parent: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        user = make_user("Student")
        n = next(_seq)
        doc = {
            "user": user["_id"],
            "studentId": f"{session_doc['name'][:4]}{n:04d}",
            "admissionNumber": f"ADM{n:04d}",
            "rollNumber": str(n),
            "class": classroom["_id"],
            "status": "Active",
            "session": session_doc["_id"],
            "parent": parent["_id"] if parent else None,
            "createdAt": datetime.utcnow(),
        }
        doc["_id"] = db["student"].insert_one(doc).inserted_id
        doc["account"] = user
        return doc
    return _make


@pytest.fixture
def admin(make_user):
    return make_user("Admin")


@pytest.fixture
def teacher(db, make_user, classroom):
    """A teacher assigned to ``classroom``."""
    user = make_user("Teacher")
    db["teacher"].insert_one({
        "user": user["_id"],
        "employeeId": f"T{datetime.utcnow().year}{next(_seq):03d}",
        "designation": "Teacher",
        "assignedClasses": [{"class": classroom["_id"], "isClassTeacher": False}],
        "assignedSubjects": [],
        "status": "Active",
    })
    return user


@pytest.fixture
def parent(make_user):
    return make_user("Parent")


@pytest.fixture
def student(make_student, classroom, parent):
    return make_student(classroom, parent)


@pytest.fixture
def subject(db, classroom, session_doc):
    doc = {"name": "Mathematics", "code": "MATH", "classes": [classroom["_id"]], "type": "Core",
           "totalMarks": 100, "passingMarks": 40, "isActive": True, "session": session_doc["_id"]}
    doc["_id"] = db["subject"].insert_one(doc).inserted_id
    return doc


def oid() -> str:
    return str(ObjectId())
