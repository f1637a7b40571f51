from datetime import datetime, timedelta
from typing import Any, Dict

from fastapi import APIRouter, Depends

from config import settings
from database import get_collection, update_by_id
from exceptions import AuthenticationError, ConflictError, ValidationFailed
from logging_config import logger
from responses import ok, serialize_doc
from routers.users import create_user_account
from schemas import (
    ChangePasswordPayload, ForgotPasswordPayload, LoginPayload, ResetPasswordPayload,
    User, UserCreate,
)
from security import (
    authorize, create_access_token, get_current_user, hash_password, hash_token,
    make_token, verify_password,
)

router = APIRouter(prefix="/auth", tags=["auth"])

FORGOT_PASSWORD_MESSAGE = "If an account with that email exists, a password reset link has been sent"


@router.post("/register", status_code=201)
def register(payload: UserCreate, user=Depends(authorize("Admin"))):
    created, verification_token = create_user_account(
        payload.model_dump(exclude={"password"}), payload.password, user["_id"],
        duplicate_message="User already exists with this email",
    )
    logger.log_auth_event("register", True, user_email=created["email"])
    data: Dict[str, Any] = {"user": serialize_doc(created), "token": create_access_token(created["_id"])}
    if not settings.is_production:
        data["verificationToken"] = verification_token
    return ok(data, "User registered successfully")


@router.post("/login")
def login(payload: LoginPayload):
    users = get_collection(User)
    found = users.find_one({"email": payload.email.lower()})
    if not found or not verify_password(payload.password, found.get("password")):
        logger.log_auth_event("login", False, user_email=payload.email, reason="invalid credentials")
        raise AuthenticationError("Invalid credentials")
    if not found.get("isActive", True):
        logger.log_auth_event("login", False, user_email=payload.email, reason="deactivated")
        raise AuthenticationError("Account is deactivated. Please contact administrator.")

    found = update_by_id(User, found["_id"], {"lastLogin": datetime.utcnow()})
    logger.log_auth_event("login", True, user_email=found["email"])
    return ok({"user": serialize_doc(found), "token": create_access_token(found["_id"])}, "Login successful")


@router.get("/me")
def me(user=Depends(get_current_user)):
    return ok({"user": serialize_doc(user)})


@router.post("/logout")
def logout(user=Depends(get_current_user)):
    # Tokens are stateless; the client discards its copy.
    logger.log_auth_event("logout", True, user_email=user.get("email"))
    return ok(message="Logged out successfully")


@router.get("/verify-email/{token}")
def verify_email(token: str):
    users = get_collection(User)
    found = users.find_one({"emailVerificationToken": hash_token(token)})
    if not found:
        raise ConflictError("Invalid or expired verification token")
    users.update_one(
        {"_id": found["_id"]},
        {"$set": {"isEmailVerified": True, "updatedAt": datetime.utcnow()},
         "$unset": {"emailVerificationToken": ""}},
    )
    return ok(message="Email verified successfully")


@router.post("/forgot-password")
def forgot_password(payload: ForgotPasswordPayload):
    users = get_collection(User)
    found = users.find_one({"email": payload.email.lower()})
    data = None
    if found:
        raw, digest = make_token()
        expires = datetime.utcnow() + timedelta(minutes=settings.RESET_TOKEN_EXPIRE_MINUTES)
        users.update_one(
            {"_id": found["_id"]},
            {"$set": {"resetPasswordToken": digest, "resetPasswordExpire": expires}},
        )
        logger.log_auth_event("forgot_password", True, user_email=found["email"])
        if not settings.is_production:
            data = {"resetToken": raw}
    return ok(data, FORGOT_PASSWORD_MESSAGE)


@router.post("/reset-password/{token}")
def reset_password(token: str, payload: ResetPasswordPayload):
    users = get_collection(User)
    found = users.find_one({
        "resetPasswordToken": hash_token(token),
        "resetPasswordExpire": {"$gt": datetime.utcnow()},
    })
    if not found:
        raise ConflictError("Invalid or expired reset token")
    users.update_one(
        {"_id": found["_id"]},
        {"$set": {"password": hash_password(payload.password), "updatedAt": datetime.utcnow()},
         "$unset": {"resetPasswordToken": "", "resetPasswordExpire": ""}},
    )
    logger.log_auth_event("reset_password", True, user_email=found["email"])
    return ok({"token": create_access_token(found["_id"])}, "Password reset successful")


@router.put("/change-password")
def change_password(payload: ChangePasswordPayload, user=Depends(get_current_user)):
    if not verify_password(payload.current_password, user.get("password")):
        raise ValidationFailed.field("currentPassword", "Current password is incorrect")
    update_by_id(User, user["_id"], {"password": hash_password(payload.new_password)}, user["_id"])
    logger.log_auth_event("change_password", True, user_email=user.get("email"))
    return ok(message="Password changed successfully")
