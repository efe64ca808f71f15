import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from pymongo import ReturnDocument

from database import collection, create_document, find_by_id, oid, serialize_doc, utcnow
from errors import ApiError, ErrorKind
from schemas import Address
from security import Principal, get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/addresses", tags=["addresses"])


class AddressIn(BaseModel):
    street: str = ""
    city: str = ""
    state: str = ""
    pincode: str = ""
    country: str = ""
    phone_number: Optional[str] = None


class AddressUpdateIn(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    country: Optional[str] = None
    phone_number: Optional[str] = None
    status: Optional[bool] = None


def _owns(user: Principal, address_id) -> bool:
    return collection("user").find_one({"_id": oid(user.id), "address_info": address_id}, {"_id": 1}) is not None


def _load(address_id: str, user: Principal, action: str, allow_admin: bool = False) -> dict:
    address = find_by_id("address", address_id, "Address")
    if allow_admin and user.is_admin:
        return address
    if not _owns(user, address["_id"]):
        raise ApiError(ErrorKind.FORBIDDEN, f"Not authorized to {action} this address")
    return address


def create_address_for(user_id, data: Address) -> str:
    address_id = create_document("address", data)
    collection("user").update_one({"_id": oid(user_id)}, {"$push": {"address_info": oid(address_id)}})
    return address_id


@router.post("", status_code=201)
def create_address(payload: AddressIn, user: Principal = Depends(get_current_user)):
    address_id = create_address_for(user.id, Address(**payload.model_dump()))
    return {
        "success": True,
        "message": "Address added successfully",
        "address": serialize_doc(find_by_id("address", address_id, "Address")),
    }


@router.get("")
def list_addresses(user: Principal = Depends(get_current_user)):
    owner = collection("user").find_one({"_id": oid(user.id)}, {"address_info": 1}) or {}
    ids = owner.get("address_info", [])
    addresses = collection("address").find({"_id": {"$in": ids}})
    return {"success": True, "addresses": [serialize_doc(a) for a in addresses]}


@router.get("/{address_id}")
def get_address(address_id: str, user: Principal = Depends(get_current_user)):
    return {"success": True, "address": serialize_doc(_load(address_id, user, "view", allow_admin=True))}


@router.put("/{address_id}")
def update_address(address_id: str, payload: AddressUpdateIn, user: Principal = Depends(get_current_user)):
    address = _load(address_id, user, "update")
    update = payload.model_dump(exclude_none=True)
    update["updated_at"] = utcnow()
    updated = collection("address").find_one_and_update(
        {"_id": address["_id"]}, {"$set": update}, return_document=ReturnDocument.AFTER
    )
    return {"success": True, "message": "Address updated successfully", "address": serialize_doc(updated)}


@router.delete("/{address_id}")
def delete_address(address_id: str, user: Principal = Depends(get_current_user)):
    address = _load(address_id, user, "delete")
    collection("user").update_one({"_id": oid(user.id)}, {"$pull": {"address_info": address["_id"]}})
    collection("address").delete_one({"_id": address["_id"]})
    logger.info("User %s deleted address %s", user.id, address["_id"])
    return {"success": True, "message": "Address deleted successfully"}
