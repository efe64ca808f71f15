import logging
import re
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from pymongo import ReturnDocument

import config
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
from orders import OPEN_STATUSES
from schemas import Category, Product
from security import Principal, require_admin, require_admin_or_manager

logger = logging.getLogger(__name__)

category_router = APIRouter(prefix="/api/categories", tags=["categories"])
product_router = APIRouter(prefix="/api/products", tags=["products"])

PRODUCT_SORT_FIELDS = {
    "name": "name",
    "price": "price",
    "discount": "discount",
    "warehouseStock": "warehouseStock",
    "createdAt": "created_at",
    "created_at": "created_at",
}


def _name_pattern(name: str) -> dict:
    return {"$regex": f"^{re.escape(name.strip())}$", "$options": "i"}


def _require_category(category_id):
    return find_by_id("category", category_id, "Category")


# Category endpoints
class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1)
    image: str = ""


class CategoryUpdateIn(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    image: Optional[str] = None


@category_router.post("", status_code=201)
def create_category(payload: CategoryIn, user: Principal = Depends(require_admin)):
    if collection("category").find_one({"name": _name_pattern(payload.name)}):
        raise ApiError(ErrorKind.VALIDATION, "Category with this name already exists")
    category = Category(name=payload.name.strip(), image=payload.image)
    cid = create_document("category", category)
    logger.info("Admin %s created category %s", user.id, category.name)
    return {
        "success": True,
        "message": "Category created successfully",
        "category": serialize_doc(find_by_id("category", cid, "Category")),
    }


@category_router.get("")
def list_categories(sort: Literal["name", "created_at"] = "name", order: Literal["asc", "desc"] = "asc"):
    items = collection("category").find().sort(sort, -1 if order == "desc" else 1)
    return {"success": True, "categories": [serialize_doc(c) for c in items]}


@category_router.get("/stats/products-count")
def products_count_by_category():
    result = []
    for category in collection("category").find().sort("name", 1):
        count = collection("product").count_documents({"category": category["_id"], "publish": True})
        result.append({
            "_id": str(category["_id"]),
            "name": category["name"],
            "image": category.get("image", ""),
            "productsCount": count,
        })
    return {"success": True, "categoriesWithCount": result}


@category_router.get("/{category_id}")
def get_category(category_id: str):
    return {"success": True, "category": serialize_doc(_require_category(category_id))}


@category_router.put("/{category_id}")
def update_category(category_id: str, payload: CategoryUpdateIn, user: Principal = Depends(require_admin)):
    category = _require_category(category_id)
    update = {}
    if payload.name and payload.name.strip() != category["name"]:
        clash = collection("category").find_one({"name": _name_pattern(payload.name), "_id": {"$ne": category["_id"]}})
        if clash:
            raise ApiError(ErrorKind.VALIDATION, "Category with this name already exists")
        update["name"] = payload.name.strip()
    if payload.image is not None:
        update["image"] = payload.image
    update["updated_at"] = utcnow()
    updated = collection("category").find_one_and_update(
        {"_id": category["_id"]}, {"$set": update}, return_document=ReturnDocument.AFTER
    )
    return {"success": True, "message": "Category updated successfully", "category": serialize_doc(updated)}


@category_router.delete("/{category_id}")
def delete_category(category_id: str, user: Principal = Depends(require_admin)):
    category = _require_category(category_id)
    in_use = collection("product").count_documents({"category": category["_id"]})
    if in_use:
        raise ApiError(
            ErrorKind.VALIDATION, f"Cannot delete category. It is associated with {in_use} products."
        )
    collection("category").delete_one({"_id": category["_id"]})
    logger.info("Admin %s deleted category %s", user.id, category["name"])
    return {"success": True, "message": "Category deleted successfully"}


# Product endpoints
class ProductIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    category: str
    price: float = Field(..., ge=0)
    discount: float = Field(0, ge=0, le=100)
    warehouseStock: int = Field(0, ge=0, le=config.MAX_QUANTITY)
    lowStockThreshold: int = Field(10, ge=0)
    image: List[str] = []
    manufacturer: Optional[str] = None
    publish: bool = True


class ProductUpdateIn(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    discount: Optional[float] = Field(None, ge=0, le=100)
    warehouseStock: Optional[int] = Field(None, ge=0, le=config.MAX_QUANTITY)
    lowStockThreshold: Optional[int] = Field(None, ge=0)
    image: Optional[List[str]] = None
    manufacturer: Optional[str] = None
    publish: Optional[bool] = None


class WarehouseStockIn(BaseModel):
    warehouseStock: int = Field(..., ge=0, le=config.MAX_QUANTITY)


def _with_category(product: dict) -> dict:
    category = collection("category").find_one({"_id": product.get("category")}, {"name": 1})
    out = dict(product)
    if category:
        out["category"] = category
    return serialize_doc(out)


@product_router.post("", status_code=201)
def create_product(payload: ProductIn, user: Principal = Depends(require_admin)):
    category = _require_category(payload.category)
    product = Product(**{**payload.model_dump(), "category": category["_id"]})
    pid = create_document("product", product)
    logger.info("Admin %s created product %s (%s)", user.id, pid, product.name)
    return {
        "success": True,
        "message": "Product created successfully",
        "product": _with_category(find_by_id("product", pid, "Product")),
    }


@product_router.get("")
def list_products(
    category: Optional[str] = None,
    publish: Optional[bool] = None,
    manufacturer: Optional[str] = None,
    minPrice: Optional[float] = None,
    maxPrice: Optional[float] = None,
    search: Optional[str] = None,
    sortBy: Optional[str] = None,
    sortOrder: Literal["asc", "desc"] = "asc",
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    filt = {}
    if category:
        filt["category"] = _require_category(category)["_id"]
    if publish is not None:
        filt["publish"] = publish
    if manufacturer:
        filt["manufacturer"] = manufacturer
    if minPrice is not None or maxPrice is not None:
        filt["price"] = {}
        if minPrice is not None:
            filt["price"]["$gte"] = minPrice
        if maxPrice is not None:
            filt["price"]["$lte"] = maxPrice
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        filt["$or"] = [{"name": pattern}, {"description": pattern}]

    if sortBy:
        if sortBy not in PRODUCT_SORT_FIELDS:
            raise ApiError(ErrorKind.VALIDATION, f"Cannot sort by {sortBy}")
        sort = (PRODUCT_SORT_FIELDS[sortBy], -1 if sortOrder == "desc" else 1)
    else:
        sort = ("created_at", -1)

    items = paginate(collection("product").find(filt).sort(*sort), page, limit)
    total = collection("product").count_documents(filt)
    return {
        "success": True,
        "products": [_with_category(p) for p in items],
        "pagination": pagination_meta(total, page, limit),
    }


@product_router.get("/category/{category_id}")
def list_products_by_category(category_id: str):
    category = _require_category(category_id)
    items = collection("product").find({"category": category["_id"], "publish": True}).sort("name", 1)
    return {
        "success": True,
        "category": {"_id": str(category["_id"]), "name": category["name"]},
        "products": [serialize_doc(p) for p in items],
    }


@product_router.get("/{product_id}")
def get_product(product_id: str):
    return {"success": True, "product": _with_category(find_by_id("product", product_id, "Product"))}


@product_router.put("/{product_id}")
def update_product(product_id: str, payload: ProductUpdateIn, user: Principal = Depends(require_admin)):
    product = find_by_id("product", product_id, "Product")
    update = payload.model_dump(exclude_none=True)
    if "category" in update:
        update["category"] = _require_category(update["category"])["_id"]
    update["updated_at"] = utcnow()
    updated = collection("product").find_one_and_update(
        {"_id": product["_id"]}, {"$set": update}, return_document=ReturnDocument.AFTER
    )
    return {"success": True, "message": "Product updated successfully", "product": _with_category(updated)}


@product_router.delete("/{product_id}")
def delete_product(product_id: str, user: Principal = Depends(require_admin)):
    product = find_by_id("product", product_id, "Product")
    open_orders = collection("order").count_documents(
        {"product_id": product["_id"], "deliverystatus": {"$in": OPEN_STATUSES}}
    )
    if open_orders:
        raise ApiError(ErrorKind.VALIDATION, f"Cannot delete product with {open_orders} open orders")

    collection("product").delete_one({"_id": product["_id"]})
    collection("franchisestock").delete_many({"product": product["_id"]})
    collection("cartitem").delete_many({"product_id": product["_id"]})
    logger.info("Admin %s deleted product %s", user.id, product["_id"])
    return {"success": True, "message": "Product deleted successfully"}


@product_router.patch("/{product_id}/stock")
def set_warehouse_stock(product_id: str, payload: WarehouseStockIn, user: Principal = Depends(require_admin_or_manager)):
    product = find_by_id("product", product_id, "Product")
    collection("product").update_one(
        {"_id": product["_id"]}, {"$set": {"warehouseStock": payload.warehouseStock, "updated_at": utcnow()}}
    )
    logger.info(
        "User %s set warehouse stock of product %s from %s to %d",
        user.id, product["_id"], product.get("warehouseStock"), payload.warehouseStock,
    )
    return {
        "success": True,
        "message": "Product stock updated successfully",
        "product": {"_id": str(product["_id"]), "name": product["name"], "warehouseStock": payload.warehouseStock},
    }
