import logging
import secrets
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import DuplicateKeyError

import config
from addresses import create_address_for
from database import collection, create_document, find_by_id, oid, serialize_doc, utcnow
from errors import ApiError, ErrorKind
from schemas import Address, User
from security import (
    Principal,
    clear_token_cookie,
    create_access_token,
    get_current_user,
    get_password_hash,
    set_token_cookie,
    verify_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

OTP_TTL = timedelta(minutes=10)
SECRET_FIELDS = frozenset({"password_hash", "forgot_password_otp", "forgot_password_expiry"})


class AddressInline(BaseModel):
    street: str = ""
    city: str = ""
    state: str = ""
    pincode: str = ""
    country: str = ""
    phone_number: Optional[str] = None


class RegisterIn(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: str = ""
    address: Optional[AddressInline] = None


class LoginIn(BaseModel):
    email: EmailStr
    password: str


class ForgotPasswordIn(BaseModel):
    email: EmailStr


class ResetPasswordIn(BaseModel):
    email: EmailStr
    otp: str
    newPassword: str = Field(..., min_length=6)


class CreateAdminIn(RegisterIn):
    adminSecretKey: str


def public_user(user: dict) -> dict:
    """Strip secrets from a stored user before it leaves the API."""
    return serialize_doc({k: v for k, v in user.items() if k not in SECRET_FIELDS})


def create_user(name: str, email: str, password: str, phone: str = "", **extra) -> dict:
    email = email.lower()
    if collection("user").find_one({"email": email}):
        raise ApiError(ErrorKind.VALIDATION, "User already exists with this email")
    user = User(name=name, email=email, password_hash=get_password_hash(password), phone=phone, **extra)
    try:
        user_id = create_document("user", user)
    except DuplicateKeyError:
        raise ApiError(ErrorKind.VALIDATION, "User already exists with this email")
    return find_by_id("user", user_id, "User")


@router.post("/register", status_code=201)
def register(payload: RegisterIn, response: Response):
    user = create_user(payload.name, payload.email, payload.password, payload.phone)
    if payload.address:
        address = Address(**payload.address.model_dump())
        if not address.phone_number:
            address.phone_number = payload.phone or None
        create_address_for(user["_id"], address)
        user = find_by_id("user", user["_id"], "User")

    token = create_access_token(str(user["_id"]))
    set_token_cookie(response, token)
    logger.info("Registered user %s (%s)", user["_id"], user["email"])
    return {"success": True, "message": "User registered successfully", "user": public_user(user), "token": token}


@router.post("/login")
def login(payload: LoginIn, response: Response):
    user = collection("user").find_one({"email": payload.email.lower()})
    if not user:
        raise ApiError(ErrorKind.NOT_FOUND, "User not found")
    if user.get("status", "Active") != "Active":
        raise ApiError(ErrorKind.FORBIDDEN, "Your account is not active. Please contact support.")
    if not verify_password(payload.password, user.get("password_hash", "")):
        logger.warning("Failed login for %s", user["email"])
        raise ApiError(ErrorKind.UNAUTHORIZED, "Invalid credentials")

    now = utcnow()
    collection("user").update_one({"_id": user["_id"]}, {"$set": {"last_login_date": now}})
    user["last_login_date"] = now

    token = create_access_token(str(user["_id"]))
    set_token_cookie(response, token)
    return {"success": True, "message": "Login successful", "user": public_user(user), "token": token}


@router.post("/logout")
def logout(response: Response):
    clear_token_cookie(response)
    return {"success": True, "message": "Logged out successfully"}


@router.get("/me")
def me(user: Principal = Depends(get_current_user)):
    doc = find_by_id("user", user.id, "User")
    if doc.get("franchise"):
        doc["franchise"] = collection("franchise").find_one(
            {"_id": doc["franchise"]}, {"name": 1, "address": 1, "contactNumber": 1, "email": 1}
        ) or doc["franchise"]
    return {"success": True, "user": public_user(doc)}


@router.post("/forgot-password")
def forgot_password(payload: ForgotPasswordIn):
    user = collection("user").find_one({"email": payload.email.lower()})
    if not user:
        raise ApiError(ErrorKind.NOT_FOUND, "User not found with this email")

    otp = f"{secrets.randbelow(900000) + 100000}"
    collection("user").update_one(
        {"_id": user["_id"]},
        {"$set": {"forgot_password_otp": otp, "forgot_password_expiry": utcnow() + OTP_TTL}},
    )
    logger.info("Issued password reset OTP for user %s", user["_id"])
    # No mail transport: the OTP goes back to the caller.
    return {"success": True, "message": "Password reset OTP has been generated", "otp": otp}


@router.post("/reset-password")
def reset_password(payload: ResetPasswordIn):
    updated = collection("user").find_one_and_update(
        {
            "email": payload.email.lower(),
            "forgot_password_otp": payload.otp,
            "forgot_password_expiry": {"$gt": utcnow()},
        },
        {
            "$set": {
                "password_hash": get_password_hash(payload.newPassword),
                "forgot_password_otp": None,
                "forgot_password_expiry": None,
                "updated_at": utcnow(),
            }
        },
    )
    if not updated:
        raise ApiError(ErrorKind.VALIDATION, "Invalid or expired OTP")
    return {"success": True, "message": "Password reset successful"}


@router.get("/verify-email/{user_id}")
def verify_email(user_id: str):
    res = collection("user").update_one({"_id": oid(user_id, "user id")}, {"$set": {"verify_email": True}})
    if not res.matched_count:
        raise ApiError(ErrorKind.NOT_FOUND, "User not found")
    return {"success": True, "message": "Email verified successfully"}


@router.post("/create-admin", status_code=201)
def create_admin(payload: CreateAdminIn):
    if not config.ADMIN_SECRET_KEY or not secrets.compare_digest(payload.adminSecretKey, config.ADMIN_SECRET_KEY):
        logger.warning("Admin creation refused: invalid admin secret key")
        raise ApiError(ErrorKind.UNAUTHORIZED, "Unauthorized: Invalid admin secret key")

    admin = create_user(payload.name, payload.email, payload.password, payload.phone, role="admin", verify_email=True)
    logger.info("Created admin %s (%s)", admin["_id"], admin["email"])
    return {
        "success": True,
        "message": "Admin user created successfully",
        "user": public_user(admin),
        "token": create_access_token(str(admin["_id"])),
    }
