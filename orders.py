"""
Order ledger: placement with atomic stock reservation, the delivery status
state machine, payment/invoice updates and the read paths.
"""
import logging
import uuid
from datetime import date, datetime, time, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import config
from database import (
    collection,
    create_document,
    find_by_id,
    oid,
    paginate,
    pagination_meta,
    serialize_doc,
    utcnow,
)
from errors import ApiError, ErrorKind
from inventory import release_franchise_stock, release_warehouse, reserve_franchise_stock, reserve_warehouse
from schemas import DeliveryStatus, Order, ProductDetails
from security import Principal, ensure_franchise_access, get_current_user, require_admin, require_admin_or_manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orders", tags=["orders"])

ORDER_ID_ATTEMPTS = 5

# pending -> accepted -> dispatched -> delivered; cancellation from any non-terminal state
TRANSITIONS = {
    "pending": {"accepted", "cancelled"},
    "accepted": {"dispatched", "cancelled"},
    "dispatched": {"delivered", "cancelled"},
    "delivered": set(),
    "cancelled": set(),
}
OPEN_STATUSES = [s for s, targets in TRANSITIONS.items() if targets]


def generate_order_id() -> str:
    return f"ORD-{int(datetime.now(timezone.utc).timestamp() * 1000)}-{uuid.uuid4().hex[:8]}"


def delivery_charge(franchise_pincode, address_pincode) -> float:
    if str(franchise_pincode or "").strip() == str(address_pincode or "").strip():
        return 0.0
    return config.DELIVERY_CHARGE


def unit_price(product: dict) -> float:
    price = float(product.get("price", 0))
    discount = float(product.get("discount", 0) or 0)
    return round(price * (1 - discount / 100), 2)


def is_transition_allowed(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, set())


def populate_order(order: dict) -> dict:
    out = dict(order)
    user = collection("user").find_one({"_id": order["user"]}, {"name": 1, "email": 1})
    product = collection("product").find_one({"_id": order["product_id"]}, {"name": 1, "price": 1, "image": 1})
    address = collection("address").find_one({"_id": order["deliveryAddress"]})
    franchise = collection("franchise").find_one({"_id": order["franchise"]}, {"name": 1})
    out["user"] = user or order["user"]
    out["product_id"] = product or order["product_id"]
    out["deliveryAddress"] = address or order["deliveryAddress"]
    out["franchise"] = franchise or order["franchise"]
    return serialize_doc(out)


def _insert_order(order: Order) -> str:
    for attempt in range(ORDER_ID_ATTEMPTS):
        try:
            return create_document("order", order)
        except DuplicateKeyError:
            logger.warning("Order id %s collided (attempt %d); regenerating", order.order_id, attempt + 1)
            order.order_id = generate_order_id()
    raise ApiError(ErrorKind.CONFLICT, "Could not allocate a unique order id")


def place_order(user: Principal, product_id, franchise_id, address_id, quantity: int = 1) -> dict:
    """Validate, price, reserve stock and persist one order line.

    Stock is taken from the warehouse pool and then the franchise ledger with
    conditional decrements; if a later step fails, earlier reservations are
    released before the error propagates.
    """
    product = find_by_id("product", product_id, "Product")
    franchise = find_by_id("franchise", franchise_id, "Franchise")
    address = find_by_id("address", address_id, "Address")

    if not user.is_admin:
        owner = collection("user").find_one({"_id": oid(user.id), "address_info": address["_id"]}, {"_id": 1})
        if not owner:
            raise ApiError(ErrorKind.FORBIDDEN, "Not authorized to use this address")
    if not franchise.get("isActive", True):
        raise ApiError(ErrorKind.VALIDATION, "This franchise is not accepting orders")
    if not product.get("publish", True):
        raise ApiError(ErrorKind.VALIDATION, "This product is not available for ordering")

    price = unit_price(product)
    charge = delivery_charge(franchise.get("address", {}).get("pincode"), address.get("pincode"))
    subtotal = round(price * quantity, 2)
    total = round(subtotal + charge, 2)

    if not reserve_warehouse(product["_id"], quantity):
        logger.warning("Order refused: product %s has insufficient warehouse stock", product["_id"])
        raise ApiError(ErrorKind.INSUFFICIENT_STOCK, "This product is out of stock")
    if reserve_franchise_stock(franchise["_id"], product["_id"], quantity) is None:
        release_warehouse(product["_id"], quantity)
        logger.warning("Order refused: product %s out of stock at franchise %s", product["_id"], franchise["_id"])
        raise ApiError(
            ErrorKind.INSUFFICIENT_STOCK,
            "This product is out of stock at the selected franchise. Please try ordering from another franchise.",
        )

    order = Order(
        order_id=generate_order_id(),
        user=oid(user.id),
        product_id=product["_id"],
        product_details=ProductDetails(name=product["name"], image=product.get("image", []), unitPrice=price),
        quantity=quantity,
        deliveryAddress=address["_id"],
        franchise=franchise["_id"],
        subtotalAmount=subtotal,
        deliveryCharge=charge,
        totalAmount=total,
        currency=config.CURRENCY,
    )
    try:
        inserted_id = _insert_order(order)
    except Exception:
        release_franchise_stock(franchise["_id"], product["_id"], quantity)
        release_warehouse(product["_id"], quantity)
        raise

    collection("user").update_one({"_id": oid(user.id)}, {"$push": {"order_history": oid(inserted_id)}})
    logger.info(
        "Order %s placed by user %s: %d x product %s at franchise %s, total %.2f %s (delivery %.2f)",
        order.order_id, user.id, quantity, product["_id"], franchise["_id"], total, config.CURRENCY, charge,
    )
    return collection("order").find_one({"_id": oid(inserted_id)})


def _load_for_staff(order_id: str, user: Principal, action: str) -> dict:
    order = find_by_id("order", order_id, "Order")
    ensure_franchise_access(user, order["franchise"], action)
    return order


def date_range(start: Optional[date], end: Optional[date]) -> Optional[dict]:
    if not start and not end:
        return None
    rng = {}
    if start:
        rng["$gte"] = datetime.combine(start, time.min, tzinfo=timezone.utc)
    if end:
        rng["$lte"] = datetime.combine(end, time.max, tzinfo=timezone.utc)
    return rng


# Routes

class OrderCreateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    product_id: str
    franchise: str
    deliveryAddress: str
    quantity: int = Field(1, ge=1, le=config.MAX_QUANTITY)


class CheckoutIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    deliveryAddress: str


class StatusUpdateIn(BaseModel):
    deliverystatus: DeliveryStatus


class PaymentUpdateIn(BaseModel):
    paymentStatus: str = Field(..., min_length=1)
    paymentid: Optional[str] = None


class InvoiceIn(BaseModel):
    invoice_reciept: str = Field(..., min_length=1)


@router.post("", status_code=201)
def create_order(payload: OrderCreateIn, user: Principal = Depends(get_current_user)):
    order = place_order(user, payload.product_id, payload.franchise, payload.deliveryAddress, payload.quantity)
    return {"success": True, "message": "Order created successfully", "order": populate_order(order)}


@router.post("/checkout", status_code=201)
def checkout(payload: CheckoutIn, user: Principal = Depends(get_current_user)):
    created, failed = [], []
    for item in list(collection("cartitem").find({"user_id": oid(user.id)})):
        if not item.get("franchise"):
            failed.append({"cartItemId": str(item["_id"]), "error": ErrorKind.VALIDATION.value,
                           "message": "Select a franchise for this item"})
            continue
        try:
            order = place_order(user, item["product_id"], item["franchise"], payload.deliveryAddress, item["quantity"])
        except ApiError as exc:
            failed.append({"cartItemId": str(item["_id"]), "error": exc.kind.value, "message": exc.message})
            continue
        collection("cartitem").delete_one({"_id": item["_id"]})
        created.append(populate_order(order))

    if not created:
        raise ApiError(ErrorKind.VALIDATION, failed[0]["message"] if len(failed) == 1 else "No orders could be placed")
    return {
        "success": True,
        "message": f"{len(created)} order(s) created",
        "orders": created,
        "failed": failed,
    }


@router.get("/my-orders")
def get_user_orders(user: Principal = Depends(get_current_user)):
    orders = collection("order").find({"user": oid(user.id)}).sort("created_at", -1)
    return {"success": True, "orders": [populate_order(o) for o in orders]}


@router.get("")
def get_all_orders(
    deliverystatus: Optional[DeliveryStatus] = None,
    paymentStatus: Optional[str] = None,
    franchiseId: Optional[str] = None,
    userId: Optional[str] = None,
    startDate: Optional[date] = None,
    endDate: Optional[date] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: Principal = Depends(require_admin_or_manager),
):
    filt = {}
    if user.is_manager:
        if not user.franchise:
            return {"success": True, "orders": [], "pagination": pagination_meta(0, page, limit)}
        filt["franchise"] = oid(user.franchise)
    elif franchiseId:
        filt["franchise"] = oid(franchiseId, "franchise id")
    if deliverystatus:
        filt["deliverystatus"] = deliverystatus
    if paymentStatus:
        filt["paymentStatus"] = paymentStatus
    if userId:
        filt["user"] = oid(userId, "user id")
    created = date_range(startDate, endDate)
    if created:
        filt["created_at"] = created

    orders = paginate(collection("order").find(filt).sort("created_at", -1), page, limit)
    total = collection("order").count_documents(filt)
    return {
        "success": True,
        "orders": [populate_order(o) for o in orders],
        "pagination": pagination_meta(total, page, limit),
    }


@router.get("/{order_id}")
def get_order_by_id(order_id: str, user: Principal = Depends(get_current_user)):
    order = find_by_id("order", order_id, "Order")
    if user.is_manager:
        ensure_franchise_access(user, order["franchise"], "view this order")
    elif not user.is_admin and str(order["user"]) != user.id:
        raise ApiError(ErrorKind.FORBIDDEN, "Not authorized to view this order")
    return {"success": True, "order": populate_order(order)}


@router.patch("/{order_id}/status")
def update_order_status(order_id: str, payload: StatusUpdateIn, user: Principal = Depends(require_admin_or_manager)):
    order = _load_for_staff(order_id, user, "update this order")
    current, target = order.get("deliverystatus", "pending"), payload.deliverystatus
    summary = {"_id": str(order["_id"]), "order_id": order["order_id"], "deliverystatus": current}

    if current == target:
        return {"success": True, "message": "Order status unchanged", "order": summary}
    if not is_transition_allowed(current, target):
        logger.warning("Refused transition %s -> %s for order %s", current, target, order["order_id"])
        raise ApiError(ErrorKind.INVALID_TRANSITION, f"Cannot change order status from {current} to {target}")

    updated = collection("order").find_one_and_update(
        {"_id": order["_id"], "deliverystatus": current},
        {"$set": {"deliverystatus": target, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise ApiError(ErrorKind.CONFLICT, "Order status was changed by another request; reload and retry")

    if target == "cancelled":
        quantity = order.get("quantity", 1)
        release_warehouse(order["product_id"], quantity)
        release_franchise_stock(order["franchise"], order["product_id"], quantity)
        logger.info("Order %s cancelled; restocked %d unit(s)", order["order_id"], quantity)

    logger.info("Order %s moved %s -> %s by %s", order["order_id"], current, target, user.id)
    summary["deliverystatus"] = updated["deliverystatus"]
    return {"success": True, "message": "Order status updated successfully", "order": summary}


@router.patch("/{order_id}/payment")
def update_payment_status(order_id: str, payload: PaymentUpdateIn, user: Principal = Depends(require_admin)):
    order = find_by_id("order", order_id, "Order")
    update = {"paymentStatus": payload.paymentStatus, "updated_at": utcnow()}
    if payload.paymentid:
        update["paymentid"] = payload.paymentid
    updated = collection("order").find_one_and_update(
        {"_id": order["_id"]}, {"$set": update}, return_document=ReturnDocument.AFTER
    )
    return {
        "success": True,
        "message": "Payment status updated successfully",
        "order": {
            "_id": str(updated["_id"]),
            "order_id": updated["order_id"],
            "paymentStatus": updated["paymentStatus"],
            "paymentid": updated.get("paymentid", ""),
        },
    }


@router.post("/{order_id}/invoice")
def generate_invoice(order_id: str, payload: InvoiceIn, user: Principal = Depends(require_admin_or_manager)):
    order = _load_for_staff(order_id, user, "update this order")
    collection("order").update_one(
        {"_id": order["_id"]}, {"$set": {"invoice_reciept": payload.invoice_reciept, "updated_at": utcnow()}}
    )
    return {
        "success": True,
        "message": "Invoice generated successfully",
        "order": {"_id": str(order["_id"]), "order_id": order["order_id"], "invoice_reciept": payload.invoice_reciept},
    }
