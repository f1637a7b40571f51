"""
Bootstrap data for a fresh database.

    python seed.py

creates the default administrator and the current academic session. Both
steps are skipped when the data already exists.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from bson import ObjectId

from database import collection_name, create_document, ensure_indexes, get_collection
from logging_config import logger
from routers.sessions import activate_session
from routers.users import create_user_account
from schemas import Session, User

ADMIN_EMAIL = "admin@school.com"
ADMIN_PASSWORD = "Admin123"


def create_admin() -> Dict[str, Any]:
    existing = get_collection(User).find_one({"email": ADMIN_EMAIL})
    if existing:
        logger.info(f"Admin user already exists: {ADMIN_EMAIL}")
        return existing
    admin, _ = create_user_account({
        "firstName": "System",
        "lastName": "Administrator",
        "email": ADMIN_EMAIL,
        "role": "Admin",
        "phone": "+1234567890",
        "gender": "Other",
        "isActive": True,
        "isEmailVerified": True,
    }, ADMIN_PASSWORD)
    logger.info(f"Created admin user {ADMIN_EMAIL}")
    return admin


def create_default_session(created_by: Optional[Any] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Academic year <year>-<year+1>, April 1 to March 31, made active."""
    existing = get_collection(Session).find_one()
    if existing:
        logger.info(f"Session already exists: {existing.get('name')}")
        return existing
    year = (now or datetime.utcnow()).year
    session = Session(
        name=f"{year}-{year + 1}",
        start_date=datetime(year, 4, 1),
        end_date=datetime(year + 1, 3, 31),
        description=f"Academic session {year}-{year + 1}",
    ).to_document()
    session["createdBy"] = created_by
    new_id = create_document(collection_name(Session), session)
    return activate_session(ObjectId(new_id), created_by)


def run() -> None:
    ensure_indexes()
    admin = create_admin()
    created = create_default_session(admin["_id"])
    logger.info(f"Seed complete; active session {created.get('name')}")


if __name__ == "__main__":
    run()
