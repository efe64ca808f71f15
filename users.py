import logging
import re
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, EmailStr, Field
from pymongo import ReturnDocument

from auth import SECRET_FIELDS, create_user, public_user
from database import collection, find_by_id, oid, paginate, pagination_meta, serialize_doc, utcnow
from errors import ApiError, ErrorKind
from schemas import Role, UserStatus
from security import (
    Principal,
    get_current_user,
    get_password_hash,
    require_admin,
    require_admin_or_manager,
    verify_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["users"])

FRANCHISE_FIELDS = {"name": 1, "address": 1, "contactNumber": 1, "email": 1}


class ManagerIn(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: str = ""
    franchiseId: Optional[str] = None


class StatusIn(BaseModel):
    status: UserStatus


class ProfileUpdateIn(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = None


class ChangePasswordIn(BaseModel):
    oldpassword: str
    newpassword: str = Field(..., min_length=6)


def _with_franchise(user: dict) -> dict:
    out = dict(user)
    if user.get("franchise"):
        out["franchise"] = collection("franchise").find_one({"_id": user["franchise"]}, FRANCHISE_FIELDS) or user["franchise"]
    return public_user(out)


def _search_users(filt: dict, search, sortBy, sortOrder, page, limit):
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        filt["$or"] = [{"name": pattern}, {"email": pattern}]
    sort_field = "created_at" if sortBy == "createdAt" else sortBy
    projection = {k: 0 for k in SECRET_FIELDS}
    cursor = collection("user").find(filt, projection).sort(sort_field, 1 if sortOrder == "asc" else -1)
    items = [_with_franchise(u) for u in paginate(cursor, page, limit)]
    return items, pagination_meta(collection("user").count_documents(filt), page, limit)


@router.get("")
def list_users(
    role: Optional[Role] = None,
    status: Optional[UserStatus] = None,
    search: Optional[str] = None,
    sortBy: Literal["name", "email", "created_at", "createdAt"] = "created_at",
    sortOrder: Literal["asc", "desc"] = "desc",
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: Principal = Depends(require_admin),
):
    filt = {}
    if role:
        filt["role"] = role
    if status:
        filt["status"] = status
    users, pagination = _search_users(filt, search, sortBy, sortOrder, page, limit)
    return {"success": True, "users": users, "pagination": pagination}


@router.post("/manager", status_code=201)
def create_manager(payload: ManagerIn, user: Principal = Depends(require_admin)):
    franchise = find_by_id("franchise", payload.franchiseId, "Franchise") if payload.franchiseId else None
    manager = create_user(
        payload.name,
        payload.email,
        payload.password,
        payload.phone,
        role="orderManager",
        franchise=franchise["_id"] if franchise else None,
    )
    if franchise:
        incumbent = franchise.get("orderManager")
        if incumbent and incumbent != manager["_id"]:
            collection("user").update_one(
                {"_id": incumbent, "franchise": franchise["_id"]}, {"$set": {"franchise": None, "updated_at": utcnow()}}
            )
        collection("franchise").update_one(
            {"_id": franchise["_id"]}, {"$set": {"orderManager": manager["_id"], "updated_at": utcnow()}}
        )
    logger.info("Admin %s created manager %s (franchise %s)", user.id, manager["_id"], payload.franchiseId)
    return {"success": True, "message": "Manager created successfully", "manager": public_user(manager)}


@router.get("/managers")
def list_managers(
    search: Optional[str] = None,
    sortBy: Literal["name", "email", "created_at", "createdAt"] = "created_at",
    sortOrder: Literal["asc", "desc"] = "desc",
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: Principal = Depends(require_admin),
):
    managers, pagination = _search_users({"role": "orderManager"}, search, sortBy, sortOrder, page, limit)
    return {"success": True, "managers": managers, "pagination": pagination}


@router.post("/change-password")
def change_password(payload: ChangePasswordIn, user: Principal = Depends(get_current_user)):
    doc = find_by_id("user", user.id, "User")
    if not verify_password(payload.oldpassword, doc.get("password_hash", "")):
        raise ApiError(ErrorKind.UNAUTHORIZED, "Current password is incorrect")
    collection("user").update_one(
        {"_id": doc["_id"]},
        {"$set": {"password_hash": get_password_hash(payload.newpassword), "updated_at": utcnow()}},
    )
    logger.info("User %s changed their password", user.id)
    return {"success": True, "message": "Password changed successfully"}


@router.patch("/{user_id}/status")
def change_user_status(user_id: str, payload: StatusIn, user: Principal = Depends(require_admin)):
    target = find_by_id("user", user_id, "User")
    if str(target["_id"]) == user.id:
        raise ApiError(ErrorKind.VALIDATION, "You cannot change your own status")
    collection("user").update_one({"_id": target["_id"]}, {"$set": {"status": payload.status, "updated_at": utcnow()}})
    logger.info("Admin %s set status of user %s to %s", user.id, target["_id"], payload.status)
    return {"success": True, "message": f"User status changed to {payload.status}"}


@router.get("/{user_id}")
def get_user(user_id: str, user: Principal = Depends(require_admin_or_manager)):
    doc = find_by_id("user", user_id, "User")
    out = _with_franchise(doc)
    out["address_info"] = [
        serialize_doc(a) for a in collection("address").find({"_id": {"$in": doc.get("address_info", [])}})
    ]
    return {"success": True, "user": out}


@router.patch("/{user_id}")
def update_profile(user_id: str, payload: ProfileUpdateIn, user: Principal = Depends(get_current_user)):
    target_id = oid(user_id, "user id")
    if not user.is_admin and str(target_id) != user.id:
        raise ApiError(ErrorKind.FORBIDDEN, "Not authorized to update this profile")
    find_by_id("user", target_id, "User")

    update = payload.model_dump(exclude_none=True)
    update["updated_at"] = utcnow()
    updated = collection("user").find_one_and_update(
        {"_id": target_id}, {"$set": update}, return_document=ReturnDocument.AFTER
    )
    return {"success": True, "message": "Profile updated successfully", "user": public_user(updated)}
