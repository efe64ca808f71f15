import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import config
from database import collection, create_document, find_by_id, oid, serialize_doc, utcnow
from errors import ApiError, ErrorKind
from orders import unit_price
from schemas import CartItem
from security import Principal, get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cart", tags=["cart"])


class CartItemIn(BaseModel):
    productId: str
    quantity: int = Field(1, ge=1, le=config.MAX_QUANTITY)
    franchiseId: Optional[str] = None


class CartQuantityIn(BaseModel):
    quantity: int = Field(..., ge=1, le=config.MAX_QUANTITY)


def _owned_item(item_id: str, user: Principal) -> dict:
    doc = collection("cartitem").find_one({"_id": oid(item_id, "cart item id"), "user_id": oid(user.id)})
    if not doc:
        raise ApiError(ErrorKind.NOT_FOUND, "Cart item not found")
    return doc


def _populate(item: dict) -> dict:
    out = dict(item)
    product = collection("product").find_one(
        {"_id": item["product_id"]}, {"name": 1, "price": 1, "image": 1, "discount": 1}
    )
    out["product_id"] = product or item["product_id"]
    if item.get("franchise"):
        out["franchise"] = collection("franchise").find_one({"_id": item["franchise"]}, {"name": 1, "address": 1}) or item["franchise"]
    return out


@router.post("/add")
def add_to_cart(payload: CartItemIn, user: Principal = Depends(get_current_user)):
    product = find_by_id("product", payload.productId, "Product")
    franchise_id = None
    if payload.franchiseId:
        franchise_id = find_by_id("franchise", payload.franchiseId, "Franchise")["_id"]

    key = {"user_id": oid(user.id), "product_id": product["_id"], "franchise": franchise_id}
    for attempt in range(2):
        existing = collection("cartitem").find_one_and_update(
            key,
            {"$inc": {"quantity": payload.quantity}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if existing:
            return {"success": True, "message": "Cart updated successfully", "cartItem": serialize_doc(_populate(existing))}
        try:
            item_id = create_document("cartitem", CartItem(quantity=payload.quantity, **key))
        except DuplicateKeyError:
            # a concurrent add created the row first; fold this quantity into it
            if attempt:
                raise
            continue
        return {
            "success": True,
            "message": "Item added to cart successfully",
            "cartItem": serialize_doc(_populate(find_by_id("cartitem", item_id, "Cart item"))),
        }


@router.get("")
def get_cart(user: Principal = Depends(get_current_user)):
    items = [_populate(i) for i in collection("cartitem").find({"user_id": oid(user.id)})]
    total = 0.0
    for it in items:
        if isinstance(it["product_id"], dict):
            total += unit_price(it["product_id"]) * it["quantity"]
    return {
        "success": True,
        "cartItems": serialize_doc(items),
        "totalItems": len(items),
        "totalPrice": round(total, 2),
    }


@router.put("/item/{item_id}")
def update_cart_item(item_id: str, payload: CartQuantityIn, user: Principal = Depends(get_current_user)):
    doc = _owned_item(item_id, user)
    updated = collection("cartitem").find_one_and_update(
        {"_id": doc["_id"]},
        {"$set": {"quantity": payload.quantity, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return {"success": True, "message": "Cart item updated successfully", "cartItem": serialize_doc(_populate(updated))}


@router.delete("/item/{item_id}")
def remove_from_cart(item_id: str, user: Principal = Depends(get_current_user)):
    doc = _owned_item(item_id, user)
    collection("cartitem").delete_one({"_id": doc["_id"]})
    return {"success": True, "message": "Item removed from cart successfully"}


@router.delete("/clear")
def clear_cart(user: Principal = Depends(get_current_user)):
    res = collection("cartitem").delete_many({"user_id": oid(user.id)})
    logger.info("Cleared %d cart item(s) for user %s", res.deleted_count, user.id)
    return {"success": True, "message": "Cart cleared successfully"}
