"""
Stock ledgers: the global warehouse pool on each product and the
per-(franchise, product) rows in `franchisestock`.

Every mutation is a single conditional update at the storage layer, so
concurrent requests can never drive a quantity below zero.
"""
import logging
from typing import Optional

from bson import ObjectId
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import config
from database import collection, find_by_id, oid, serialize_doc, utcnow
from errors import ApiError, ErrorKind
from security import Principal, ensure_franchise_access, get_current_user, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/franchise-stock", tags=["franchise-stock"])


# Warehouse pool

def reserve_warehouse(product_id: ObjectId, quantity: int) -> bool:
    res = collection("product").update_one(
        {"_id": product_id, "warehouseStock": {"$gte": quantity}},
        {"$inc": {"warehouseStock": -quantity}, "$set": {"updated_at": utcnow()}},
    )
    if res.modified_count:
        logger.info("Reserved %d warehouse unit(s) of product %s", quantity, product_id)
        return True
    return False


def release_warehouse(product_id: ObjectId, quantity: int):
    collection("product").update_one(
        {"_id": product_id},
        {"$inc": {"warehouseStock": quantity}, "$set": {"updated_at": utcnow()}},
    )
    logger.info("Released %d warehouse unit(s) of product %s", quantity, product_id)


# Franchise ledger

def _stock_key(franchise_id: ObjectId, product_id: ObjectId) -> dict:
    return {"franchise": franchise_id, "product": product_id}


def reserve_franchise_stock(franchise_id: ObjectId, product_id: ObjectId, quantity: int) -> Optional[dict]:
    """Take `quantity` units if available; returns the updated row or None."""
    doc = collection("franchisestock").find_one_and_update(
        {**_stock_key(franchise_id, product_id), "quantity": {"$gte": quantity}},
        {"$inc": {"quantity": -quantity}, "$set": {"lastUpdated": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if doc is not None:
        logger.info("Reserved %d unit(s) of product %s at franchise %s", quantity, product_id, franchise_id)
    return doc


def release_franchise_stock(franchise_id: ObjectId, product_id: ObjectId, quantity: int) -> dict:
    """Add `quantity` units, creating the row if it does not exist yet."""
    for attempt in range(2):
        try:
            doc = collection("franchisestock").find_one_and_update(
                _stock_key(franchise_id, product_id),
                {"$inc": {"quantity": quantity}, "$set": {"lastUpdated": utcnow()}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
            logger.info("Added %d unit(s) of product %s at franchise %s", quantity, product_id, franchise_id)
            return doc
        except DuplicateKeyError:
            # two upserts raced on the unique (franchise, product) index; the row exists now
            if attempt:
                raise


def adjust_franchise_stock(franchise_id: ObjectId, product_id: ObjectId, quantity: int, is_addition: bool) -> dict:
    if is_addition:
        return release_franchise_stock(franchise_id, product_id, quantity)

    doc = reserve_franchise_stock(franchise_id, product_id, quantity)
    if doc is not None:
        return doc
    existing = collection("franchisestock").find_one(_stock_key(franchise_id, product_id))
    if existing is None:
        raise ApiError(ErrorKind.VALIDATION, "Cannot subtract from non-existent stock")
    logger.warning(
        "Refused to subtract %d unit(s) of product %s at franchise %s (have %d)",
        quantity, product_id, franchise_id, existing.get("quantity", 0),
    )
    raise ApiError(ErrorKind.INSUFFICIENT_STOCK, "Insufficient stock")


def low_stock_threshold(product: Optional[dict]) -> int:
    if not product or product.get("lowStockThreshold") is None:
        return config.DEFAULT_LOW_STOCK_THRESHOLD
    return product["lowStockThreshold"]


def _populate(rows):
    """Embed product and franchise summaries into stock rows."""
    product_ids = {r["product"] for r in rows}
    franchise_ids = {r["franchise"] for r in rows}
    products = {p["_id"]: p for p in collection("product").find({"_id": {"$in": list(product_ids)}})}
    franchises = {f["_id"]: f for f in collection("franchise").find({"_id": {"$in": list(franchise_ids)}})}

    out = []
    for r in rows:
        product = products.get(r["product"])
        franchise = franchises.get(r["franchise"])
        item = dict(r)
        item["product"] = {
            "_id": r["product"],
            "name": product.get("name") if product else None,
            "price": product.get("price") if product else None,
            "image": product.get("image", []) if product else [],
            "lowStockThreshold": low_stock_threshold(product),
        }
        item["franchise"] = {
            "_id": r["franchise"],
            "name": franchise.get("name") if franchise else None,
            "address": franchise.get("address") if franchise else None,
        }
        out.append(item)
    return out


def _is_low(item: dict) -> bool:
    return item["quantity"] <= item["product"]["lowStockThreshold"]


# Routes

class StockUpdateIn(BaseModel):
    quantity: int = Field(..., ge=0, le=config.MAX_QUANTITY)
    isAddition: bool = True


@router.put("/franchise/{franchise_id}/product/{product_id}")
def update_franchise_stock(
    franchise_id: str, product_id: str, payload: StockUpdateIn, user: Principal = Depends(get_current_user)
):
    ensure_franchise_access(user, franchise_id, "manage stock for this franchise")
    franchise = find_by_id("franchise", franchise_id, "Franchise")
    product = find_by_id("product", product_id, "Product")

    doc = adjust_franchise_stock(franchise["_id"], product["_id"], payload.quantity, payload.isAddition)
    logger.info(
        "User %s %s %d unit(s) of product %s at franchise %s",
        user.id, "added" if payload.isAddition else "removed", payload.quantity, product["_id"], franchise["_id"],
    )
    return {
        "success": True,
        "message": "Franchise stock updated successfully",
        "franchiseStock": serialize_doc(_populate([doc])[0]),
    }


@router.get("/low-stock")
def get_low_stock_items(user: Principal = Depends(get_current_user)):
    filt = {}
    if user.is_manager:
        if not user.franchise:
            return {"success": True, "lowStockItems": [], "totalItems": 0}
        filt["franchise"] = oid(user.franchise)
    items = [i for i in _populate(list(collection("franchisestock").find(filt))) if _is_low(i)]
    return {"success": True, "lowStockItems": serialize_doc(items), "totalItems": len(items)}


@router.get("/franchise/{franchise_id}")
def get_franchise_stock(
    franchise_id: str,
    lowStock: bool = False,
    search: Optional[str] = None,
    user: Principal = Depends(get_current_user),
):
    franchise = find_by_id("franchise", franchise_id, "Franchise")
    items = _populate(list(collection("franchisestock").find({"franchise": franchise["_id"]})))
    if lowStock:
        items = [i for i in items if _is_low(i)]
    if search:
        needle = search.lower()
        items = [i for i in items if needle in (i["product"]["name"] or "").lower()]
    return {
        "success": True,
        "franchise": serialize_doc({"_id": franchise["_id"], "name": franchise["name"], "address": franchise.get("address")}),
        "stockItems": serialize_doc(items),
        "totalItems": len(items),
    }


@router.get("/product/{product_id}")
def get_product_stock_across_franchises(product_id: str, user: Principal = Depends(get_current_user)):
    product = find_by_id("product", product_id, "Product")
    rows = list(collection("franchisestock").find({"product": product["_id"]}).sort("quantity", -1))
    items = _populate(rows)
    return {
        "success": True,
        "product": {"_id": str(product["_id"]), "name": product["name"]},
        "stockItems": serialize_doc(items),
        "totalStock": sum(i["quantity"] for i in items),
        "franchiseCount": len(items),
    }


@router.get("/franchise/{franchise_id}/product/{product_id}")
def get_product_stock_in_franchise(franchise_id: str, product_id: str, user: Principal = Depends(get_current_user)):
    franchise = find_by_id("franchise", franchise_id, "Franchise")
    product = find_by_id("product", product_id, "Product")
    row = collection("franchisestock").find_one(_stock_key(franchise["_id"], product["_id"]))
    if not row:
        return {
            "success": True,
            "message": "No stock found for this product in this franchise",
            "stockItem": {
                "franchise": {"_id": str(franchise["_id"]), "name": franchise["name"]},
                "product": {"_id": str(product["_id"]), "name": product["name"]},
                "quantity": 0,
                "lastUpdated": None,
            },
        }
    return {"success": True, "stockItem": serialize_doc(_populate([row])[0])}


@router.delete("/{stock_id}")
def delete_stock_entry(stock_id: str, user: Principal = Depends(require_admin)):
    row = find_by_id("franchisestock", stock_id, "Stock entry")
    collection("franchisestock").delete_one({"_id": row["_id"]})
    logger.info("Admin %s deleted stock entry %s", user.id, row["_id"])
    return {"success": True, "message": "Stock entry deleted successfully"}
