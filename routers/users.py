from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, Body, Depends, File, Query, UploadFile

from database import (
    collection_name, create_document, find_by_id, get_collection,
    search_clause, and_query, update_by_id, USER_SUMMARY,
)
from exceptions import AuthorizationError, ConflictError, ValidationFailed
from logging_config import logger
from pagination import PageParams, page_params, paginate
from responses import ok, serialize_doc, serialize_list
from schemas import ROLES, Session, Student, Teacher, User, UserCreate, apply_update
from security import authorize, get_current_user, hash_password, make_token
from uploads import save_upload

router = APIRouter(prefix="/users", tags=["users"])

USERS = collection_name(User)

# Only an Admin may change these on an existing account.
ADMIN_ONLY_FIELDS = {"isActive", "role", "email"}


def create_user_account(fields: Dict[str, Any], password: str, created_by=None,
                        duplicate_message: str = "User with this email already exists") -> Tuple[Dict[str, Any], str]:
    """Insert a user profile with a hashed password.

    Returns the stored document and the raw email verification token.
    """
    users = get_collection(User)
    profile = User.model_validate(fields).to_document()
    profile["email"] = profile["email"].lower()
    if users.find_one({"email": profile["email"]}):
        raise ConflictError(duplicate_message)

    verification_token, verification_digest = make_token()
    doc = {
        **profile,
        "password": hash_password(password),
        "emailVerificationToken": verification_digest,
        "createdBy": created_by,
    }
    create_document(USERS, doc)
    logger.info(f"Created {profile['role']} account {profile['email']}")
    return users.find_one({"email": profile["email"]}), verification_token


@router.get("")
def list_users(
    role: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    is_active: Optional[bool] = Query(None, alias="isActive"),
    params: PageParams = Depends(page_params),
    user=Depends(authorize("Admin")),
):
    filt: Dict[str, Any] = {}
    if role:
        filt["role"] = role
    if is_active is not None:
        filt["isActive"] = is_active
    query = and_query(filt, search_clause(search, ("firstName", "lastName", "email")))
    docs, meta = paginate(
        get_collection(User), query, params,
        allowed_sorts=("createdAt", "firstName", "lastName", "email", "role"),
    )
    return ok({"items": serialize_list(docs), "pagination": meta})


@router.get("/stats")
def user_stats(user=Depends(authorize("Admin"))):
    users = list(get_collection(User).find({}, {"role": 1, "isActive": 1}))
    by_role: Dict[str, Dict[str, int]] = {}
    for u in users:
        entry = by_role.setdefault(u.get("role"), {"total": 0, "active": 0, "inactive": 0})
        entry["total"] += 1
        entry["active" if u.get("isActive", True) else "inactive"] += 1
    stats = [{"role": role, **counts} for role, counts in sorted(by_role.items())]

    since = datetime.utcnow() - timedelta(days=30)
    recent = list(
        get_collection(User)
        .find({"createdAt": {"$gte": since}}, {"firstName": 1, "lastName": 1, "role": 1, "createdAt": 1})
        .sort([("createdAt", -1), ("_id", -1)])
        .limit(10)
    )
    active_session = get_collection(Session).find_one({"isActive": True})
    return ok({"stats": stats, "recentUsers": serialize_list(recent), "activeSession": serialize_doc(active_session)})


@router.get("/role/{role}")
def users_by_role(role: str, is_active: bool = Query(True, alias="isActive"), user=Depends(get_current_user)):
    if role not in ROLES:
        raise ValidationFailed.field("role", "Role must be Admin, Teacher, Student, or Parent")
    docs = list(
        get_collection(User)
        .find({"role": role, "isActive": is_active}, {f: 1 for f in USER_SUMMARY})
        .sort([("firstName", 1), ("_id", 1)])
    )
    return ok({"items": serialize_list(docs)})


@router.get("/{user_id}")
def get_user(user_id: str, user=Depends(get_current_user)):
    found = find_by_id(User, user_id, "User")
    data: Dict[str, Any] = {"user": serialize_doc(found)}
    if found.get("role") == "Student":
        data["studentInfo"] = serialize_doc(get_collection(Student).find_one({"user": found["_id"]}))
    elif found.get("role") == "Teacher":
        data["teacherInfo"] = serialize_doc(get_collection(Teacher).find_one({"user": found["_id"]}))
    return ok(data)


@router.post("", status_code=201)
def create_user(payload: UserCreate, user=Depends(authorize("Admin"))):
    created, _ = create_user_account(payload.model_dump(exclude={"password"}), payload.password, user["_id"])
    return ok({"user": serialize_doc(created)}, "User created successfully")


@router.put("/{user_id}")
def update_user(user_id: str, patch: Dict[str, Any] = Body(...), user=Depends(get_current_user)):
    found = find_by_id(User, user_id, "User")
    is_admin = user.get("role") == "Admin"
    if not is_admin and found["_id"] != user["_id"]:
        raise AuthorizationError("Access denied. You can only update your own profile.")

    patch = {k: v for k, v in patch.items() if k not in ("password", "_id", "id")}
    if not is_admin:
        patch = {k: v for k, v in patch.items() if k not in ADMIN_ONLY_FIELDS}
    changes = apply_update(User, found, patch)
    if "email" in changes:
        changes["email"] = changes["email"].lower()
        clash = get_collection(User).find_one({"email": changes["email"], "_id": {"$ne": found["_id"]}})
        if clash:
            raise ConflictError("User with this email already exists")
    updated = update_by_id(User, found["_id"], changes, user["_id"])
    return ok({"user": serialize_doc(updated)}, "User updated successfully")


@router.delete("/{user_id}")
def delete_user(user_id: str, user=Depends(authorize("Admin"))):
    found = find_by_id(User, user_id, "User")
    if found.get("role") == "Admin":
        raise ConflictError("Cannot delete admin users")
    update_by_id(User, found["_id"], {"isActive": False}, user["_id"])
    return ok(message="User deactivated successfully")


@router.post("/{user_id}/profile-image")
async def upload_profile_image(user_id: str, profileImage: UploadFile = File(...),
                               user=Depends(get_current_user)):
    found = find_by_id(User, user_id, "User")
    if user.get("role") != "Admin" and found["_id"] != user["_id"]:
        raise AuthorizationError("Access denied. You can only update your own profile image.")
    stored = await save_upload(profileImage, "profileImage")
    update_by_id(User, found["_id"], {"profileImage": stored["path"]}, user["_id"])
    return ok({"profileImage": stored["path"], "file": stored}, "Profile image updated successfully")
