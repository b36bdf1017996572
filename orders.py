"""
Orders: the ledger plus checkout.

Checkout has two entry points that end in the same reconciliation:

* cash: the owner posts their cart id and the order is written right away;
* card: a Stripe Checkout session is quoted from the cart, and the order is
  written when Stripe reports ``checkout.session.completed``.

Reconciliation claims the cart with ``find_one_and_delete`` before anything
else, so a cart is consumed at most once even when two checkouts race or
Stripe delivers the same event twice. If writing the order fails, the claimed
cart is put back so the attempt can be retried.

Stock is booked after the order exists and is tracked by the order's
``inventory_applied`` flag. A redelivered card event whose order is still
unbooked finishes the booking. Card orders are already paid, so their stock
is always booked, going negative as a backorder if need be.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from pymongo.database import Database

import config
import inventory
import payments
import users
from auth import STAFF, role_of
from cart import charge_amount
from database import create_document, serialize_doc, to_object_id, utcnow
from errors import BadRequest, CartNotFound, InvalidId, OrderNotFound, UserNotFound
from schemas import Order, PaymentMethod, ShippingAddress

logger = logging.getLogger(__name__)


def _cart_oid(cart_id: str):
    try:
        return to_object_id(cart_id, "cart id")
    except InvalidId:
        raise CartNotFound(f"There's no cart with ID: {cart_id}")


def _order_oid(order_id: str):
    try:
        return to_object_id(order_id, "order id")
    except InvalidId:
        raise OrderNotFound(f"There's no order with ID: {order_id}")


def order_total(cart: Dict[str, Any]) -> float:
    return round(charge_amount(cart) + config.TAX_PRICE + config.SHIPPING_PRICE, 2)


def _owner_filter(user: Dict[str, Any]) -> Dict[str, Any]:
    if role_of(user) in STAFF:
        return {}
    return {"user_id": str(user["_id"])}


# Ledger

def create_order(db: Database, order: Order) -> Dict[str, Any]:
    order_id = create_document(db, "order", order)
    logger.info(
        "Order %s created for user %s: %s %s",
        order_id, order.user_id, order.total_order_price, order.payment_method_type,
    )
    return db["order"].find_one({"_id": to_object_id(order_id)})


def get_order(db: Database, user: Dict[str, Any], order_id: str) -> Dict[str, Any]:
    query = {"_id": _order_oid(order_id), **_owner_filter(user)}
    order = db["order"].find_one(query)
    if not order:
        raise OrderNotFound(f"There's no order with ID: {order_id}")
    return order


def list_orders(db: Database, user: Dict[str, Any], page: int = 1, limit: int = 20) -> Dict[str, Any]:
    query = _owner_filter(user)
    skip = max(page - 1, 0) * limit
    cursor = db["order"].find(query).sort("created_at", -1).skip(skip).limit(limit)
    items = [serialize_doc(o) for o in cursor]
    return {"items": items, "total": db["order"].count_documents(query), "page": page, "limit": limit}


def _set_flag(db: Database, order_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    oid = _order_oid(order_id)
    changes["updated_at"] = utcnow()
    res = db["order"].update_one({"_id": oid}, {"$set": changes})
    if res.matched_count == 0:
        raise OrderNotFound(f"There's no order with ID: {order_id}")
    return db["order"].find_one({"_id": oid})


def mark_paid(db: Database, order_id: str) -> Dict[str, Any]:
    return _set_flag(db, order_id, {"is_paid": True, "paid_at": utcnow()})


def mark_delivered(db: Database, order_id: str) -> Dict[str, Any]:
    return _set_flag(db, order_id, {"is_delivered": True, "delivered_at": utcnow()})


# Checkout

def _book_inventory(db: Database, order: Dict[str, Any], allow_negative: Optional[bool] = None) -> None:
    # claim the booking first so two deliveries never book the same order twice
    claimed = db["order"].find_one_and_update(
        {"_id": order["_id"], "inventory_applied": {"$ne": True}},
        {"$set": {"inventory_applied": True}},
    )
    if not claimed:
        return
    try:
        inventory.apply(db, claimed["items"], allow_negative=allow_negative)
    except Exception:
        db["order"].update_one({"_id": order["_id"]}, {"$set": {"inventory_applied": False}})
        raise


def _reconcile(db: Database, claimed_cart: Dict[str, Any], order: Order, allow_negative: Optional[bool] = None) -> Dict[str, Any]:
    try:
        created = create_order(db, order)
    except Exception:
        logger.exception("Order write failed for cart %s, restoring cart", claimed_cart["_id"])
        db["cart"].insert_one(claimed_cart)
        raise
    _book_inventory(db, created, allow_negative=allow_negative)
    return db["order"].find_one({"_id": created["_id"]})


def create_cash_order(db: Database, user: Dict[str, Any], cart_id: str, shipping_address: Optional[ShippingAddress] = None) -> Dict[str, Any]:
    oid = _cart_oid(cart_id)
    owner = {"_id": oid, "user_id": str(user["_id"])}
    cart = db["cart"].find_one(owner)
    if not cart:
        raise CartNotFound(f"There's no cart with ID: {cart_id}")
    if not cart.get("items"):
        raise BadRequest("Cart is empty")
    if not config.ALLOW_NEGATIVE_STOCK:
        inventory.ensure_available(db, cart["items"])

    claimed = db["cart"].find_one_and_delete(owner)
    if not claimed:
        # another checkout consumed it between the read and the claim
        raise CartNotFound(f"There's no cart with ID: {cart_id}")

    order = Order(
        user_id=str(user["_id"]),
        cart_id=cart_id,
        items=claimed["items"],
        shipping_address=shipping_address,
        tax_price=config.TAX_PRICE,
        shipping_price=config.SHIPPING_PRICE,
        total_order_price=order_total(claimed),
        payment_method_type=PaymentMethod.CASH,
    )
    return _reconcile(db, claimed, order)


def create_checkout_session(db: Database, user: Dict[str, Any], cart_id: str, shipping_address: Optional[ShippingAddress], base_url: str) -> Dict[str, Any]:
    cart = db["cart"].find_one({"_id": _cart_oid(cart_id), "user_id": str(user["_id"])})
    if not cart:
        raise CartNotFound(f"There's no cart with ID: {cart_id}")
    if not cart.get("items"):
        raise BadRequest("Cart is empty")

    total = order_total(cart)
    base_url = base_url.rstrip("/")
    metadata = {}
    if shipping_address is not None:
        metadata = {k: str(v) for k, v in shipping_address.model_dump().items() if v is not None}
    params = {
        "mode": "payment",
        "line_items": [{
            "price_data": {
                "currency": config.STRIPE_CURRENCY,
                # Stripe expects the amount in the smallest currency unit
                "unit_amount": int(round(total * 100)),
                "product_data": {"name": user.get("name") or "Order"},
            },
            "quantity": 1,
        }],
        "success_url": f"{base_url}/orders",
        "cancel_url": f"{base_url}/cart",
        "customer_email": user["email"],
        "client_reference_id": cart_id,
        "metadata": metadata,
    }
    return payments.create_checkout_session(params)


def handle_checkout_completed(db: Database, session: Dict[str, Any], event_time: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """Write the card order for a completed Stripe Checkout session.

    Returns the new order, or None when this session was already turned into
    an order (a redelivered event). Raises when the payment cannot be matched
    to a user or a cart, so the webhook answers non-2xx and Stripe retries.
    """
    email = session.get("customer_email") or (session.get("customer_details") or {}).get("email")
    user = users.find_by_email(db, email) if email else None
    if not user:
        raise UserNotFound(f"There's no user with the email {email}")

    cart_id = session.get("client_reference_id") or ""
    claimed = db["cart"].find_one_and_delete({"_id": _cart_oid(cart_id)})
    if not claimed:
        existing = db["order"].find_one({"cart_id": cart_id})
        if existing:
            if not existing.get("inventory_applied"):
                logger.warning("Order %s for cart %s has no stock booked yet, booking it now", existing["_id"], cart_id)
                _book_inventory(db, existing, allow_negative=True)
            else:
                logger.info("Checkout session for cart %s already reconciled, skipping", cart_id)
            return None
        raise CartNotFound(f"There's no cart with ID: {cart_id}")

    metadata = session.get("metadata") or {}
    order = Order(
        user_id=str(user["_id"]),
        cart_id=cart_id,
        items=claimed["items"],
        shipping_address=ShippingAddress(**metadata) if metadata else None,
        total_order_price=round(int(session.get("amount_total") or 0) / 100, 2),
        payment_method_type=PaymentMethod.CARD,
        is_paid=True,
        paid_at=event_time or utcnow(),
    )
    return _reconcile(db, claimed, order, allow_negative=True)
