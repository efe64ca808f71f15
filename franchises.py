import logging
import re
from datetime import date
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, EmailStr, Field
from pymongo import ReturnDocument

from database import (
    collection,
    create_document,
    find_by_id,
    paginate,
    pagination_meta,
    serialize_doc,
    utcnow,
)
from errors import ApiError, ErrorKind
from orders import OPEN_STATUSES, TRANSITIONS, date_range, populate_order
from schemas import DeliveryStatus, Franchise, FranchiseAddress
from security import Principal, ensure_franchise_access, require_admin, require_admin_or_manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/franchises", tags=["franchises"])

MANAGER_FIELDS = {"name": 1, "email": 1, "phone": 1}


class FranchiseIn(BaseModel):
    name: str = Field(..., min_length=1)
    address: FranchiseAddress
    contactNumber: str = ""
    email: EmailStr


class FranchiseUpdateIn(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    address: Optional[FranchiseAddress] = None
    contactNumber: Optional[str] = None
    email: Optional[EmailStr] = None
    isActive: Optional[bool] = None


class AssignManagerIn(BaseModel):
    franchiseId: str
    managerId: str


def _with_manager(franchise: dict) -> dict:
    out = dict(franchise)
    if franchise.get("orderManager"):
        out["orderManager"] = collection("user").find_one({"_id": franchise["orderManager"]}, MANAGER_FIELDS)
    return serialize_doc(out)


@router.get("/public")
def list_public_franchises():
    items = collection("franchise").find(
        {"isActive": True}, {"name": 1, "address": 1, "contactNumber": 1, "email": 1}
    ).sort("name", 1)
    return {"success": True, "franchises": [serialize_doc(f) for f in items]}


@router.post("", status_code=201)
def create_franchise(payload: FranchiseIn, user: Principal = Depends(require_admin)):
    email = payload.email.lower()
    if collection("franchise").find_one({"email": email}):
        raise ApiError(ErrorKind.VALIDATION, "Franchise already exists with this email")
    franchise = Franchise(name=payload.name, address=payload.address, contactNumber=payload.contactNumber, email=email)
    fid = create_document("franchise", franchise)
    logger.info("Admin %s created franchise %s (%s)", user.id, fid, franchise.name)
    return {
        "success": True,
        "message": "Franchise created successfully",
        "franchise": serialize_doc(find_by_id("franchise", fid, "Franchise")),
    }


@router.get("")
def list_franchises(
    search: Optional[str] = None,
    sortBy: Literal["name", "email", "created_at", "createdAt"] = "created_at",
    sortOrder: Literal["asc", "desc"] = "desc",
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: Principal = Depends(require_admin),
):
    filt = {}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        filt["$or"] = [{"name": pattern}, {"email": pattern}, {"contactNumber": pattern}]
    sort_field = "created_at" if sortBy == "createdAt" else sortBy
    cursor = collection("franchise").find(filt).sort(sort_field, 1 if sortOrder == "asc" else -1)
    items = paginate(cursor, page, limit)
    total = collection("franchise").count_documents(filt)
    return {
        "success": True,
        "franchises": [_with_manager(f) for f in items],
        "pagination": pagination_meta(total, page, limit),
    }


@router.post("/assign-manager")
def assign_manager(payload: AssignManagerIn, user: Principal = Depends(require_admin)):
    franchise = find_by_id("franchise", payload.franchiseId, "Franchise")
    manager = find_by_id("user", payload.managerId, "Manager")
    if manager.get("role") != "orderManager":
        raise ApiError(ErrorKind.VALIDATION, "User is not a manager")

    previous = manager.get("franchise")
    if previous and previous != franchise["_id"]:
        collection("franchise").update_one(
            {"_id": previous, "orderManager": manager["_id"]},
            {"$set": {"orderManager": None, "updated_at": utcnow()}},
        )
    incumbent = franchise.get("orderManager")
    if incumbent and incumbent != manager["_id"]:
        collection("user").update_one(
            {"_id": incumbent, "franchise": franchise["_id"]},
            {"$set": {"franchise": None, "updated_at": utcnow()}},
        )

    collection("franchise").update_one(
        {"_id": franchise["_id"]}, {"$set": {"orderManager": manager["_id"], "updated_at": utcnow()}}
    )
    collection("user").update_one(
        {"_id": manager["_id"]}, {"$set": {"franchise": franchise["_id"], "updated_at": utcnow()}}
    )
    logger.info("Admin %s assigned manager %s to franchise %s", user.id, manager["_id"], franchise["_id"])
    return {
        "success": True,
        "message": "Manager assigned to franchise successfully",
        "franchise": {
            "_id": str(franchise["_id"]),
            "name": franchise["name"],
            "manager": {"_id": str(manager["_id"]), "name": manager["name"], "email": manager["email"]},
        },
    }


@router.get("/{franchise_id}")
def get_franchise(franchise_id: str, user: Principal = Depends(require_admin_or_manager)):
    ensure_franchise_access(user, franchise_id, "view this franchise")
    return {"success": True, "franchise": _with_manager(find_by_id("franchise", franchise_id, "Franchise"))}


@router.put("/{franchise_id}")
def update_franchise(franchise_id: str, payload: FranchiseUpdateIn, user: Principal = Depends(require_admin)):
    franchise = find_by_id("franchise", franchise_id, "Franchise")
    update = payload.model_dump(exclude_none=True)
    if "email" in update:
        update["email"] = update["email"].lower()
        clash = collection("franchise").find_one({"email": update["email"], "_id": {"$ne": franchise["_id"]}})
        if clash:
            raise ApiError(ErrorKind.VALIDATION, "Franchise already exists with this email")
    update["updated_at"] = utcnow()
    updated = collection("franchise").find_one_and_update(
        {"_id": franchise["_id"]}, {"$set": update}, return_document=ReturnDocument.AFTER
    )
    return {"success": True, "message": "Franchise updated successfully", "franchise": _with_manager(updated)}


@router.delete("/{franchise_id}")
def delete_franchise(franchise_id: str, user: Principal = Depends(require_admin)):
    franchise = find_by_id("franchise", franchise_id, "Franchise")
    open_orders = collection("order").count_documents(
        {"franchise": franchise["_id"], "deliverystatus": {"$in": OPEN_STATUSES}}
    )
    if open_orders:
        raise ApiError(ErrorKind.VALIDATION, f"Cannot delete franchise with {open_orders} open orders")

    collection("user").update_many({"franchise": franchise["_id"]}, {"$set": {"franchise": None}})
    collection("franchisestock").delete_many({"franchise": franchise["_id"]})
    collection("franchise").delete_one({"_id": franchise["_id"]})
    logger.info("Admin %s deleted franchise %s", user.id, franchise["_id"])
    return {"success": True, "message": "Franchise deleted successfully"}


@router.get("/{franchise_id}/orders")
def get_franchise_orders(
    franchise_id: str,
    status: Optional[DeliveryStatus] = None,
    startDate: Optional[date] = None,
    endDate: Optional[date] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: Principal = Depends(require_admin_or_manager),
):
    ensure_franchise_access(user, franchise_id, "view orders for this franchise")
    franchise = find_by_id("franchise", franchise_id, "Franchise")
    filt = {"franchise": franchise["_id"]}
    if status:
        filt["deliverystatus"] = status
    created = date_range(startDate, endDate)
    if created:
        filt["created_at"] = created

    orders = paginate(collection("order").find(filt).sort("created_at", -1), page, limit)
    total = collection("order").count_documents(filt)
    return {
        "success": True,
        "franchise": franchise["name"],
        "orders": [populate_order(o) for o in orders],
        "pagination": pagination_meta(total, page, limit),
    }


@router.get("/{franchise_id}/stats")
def get_franchise_stats(franchise_id: str, user: Principal = Depends(require_admin_or_manager)):
    ensure_franchise_access(user, franchise_id, "view stats for this franchise")
    franchise = find_by_id("franchise", franchise_id, "Franchise")

    by_status = {s: 0 for s in TRANSITIONS}
    for row in collection("order").aggregate([
        {"$match": {"franchise": franchise["_id"]}},
        {"$group": {"_id": "$deliverystatus", "count": {"$sum": 1}}},
    ]):
        by_status[row["_id"]] = row["count"]

    revenue = 0
    for row in collection("order").aggregate([
        {"$match": {"franchise": franchise["_id"], "deliverystatus": "delivered"}},
        {"$group": {"_id": None, "totalRevenue": {"$sum": "$totalAmount"}}},
    ]):
        revenue = row.get("totalRevenue", 0)

    recent = collection("order").find({"franchise": franchise["_id"]}).sort("created_at", -1).limit(5)
    return {
        "success": True,
        "franchise": franchise["name"],
        "stats": {
            "totalOrders": sum(by_status.values()),
            "ordersByStatus": by_status,
            "totalRevenue": round(revenue, 2),
            "recentOrders": [populate_order(o) for o in recent],
        },
    }
