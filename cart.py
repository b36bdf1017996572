"""
Shopping cart: the user's priced snapshot of items waiting for checkout.

Unit prices are captured when an item is added, so later product price
changes do not move an open cart. ``total_price_after_discount`` is present
only while a coupon is applied and, when present, is what checkout charges.
"""

from typing import Any, Dict, List, Optional

from pymongo.database import Database

import coupons
import products
from database import utcnow
from errors import BadRequest, CartNotFound, ProductNotFound


def charge_amount(cart: Dict[str, Any]) -> float:
    after_discount = cart.get("total_price_after_discount")
    if after_discount is not None:
        return float(after_discount)
    return float(cart.get("total_cart_price") or 0)


def cart_total(items: List[Dict[str, Any]]) -> float:
    return round(sum(float(it["price"]) * int(it["quantity"]) for it in items), 2)


def find_cart(db: Database, user_id: str) -> Optional[Dict[str, Any]]:
    return db["cart"].find_one({"user_id": user_id})


def get_cart(db: Database, user_id: str) -> Dict[str, Any]:
    cart = find_cart(db, user_id)
    if not cart:
        raise CartNotFound(f"There's no cart for this user id: {user_id}")
    return cart


def _save_items(db: Database, cart_id, items: List[Dict[str, Any]]) -> Dict[str, Any]:
    # any change to the items invalidates an applied coupon
    db["cart"].update_one(
        {"_id": cart_id},
        {
            "$set": {"items": items, "total_cart_price": cart_total(items), "updated_at": utcnow()},
            "$unset": {"total_price_after_discount": ""},
        },
    )
    return db["cart"].find_one({"_id": cart_id})


def add_item(db: Database, user_id: str, product_id: str, quantity: int = 1, color: Optional[str] = None) -> Dict[str, Any]:
    if quantity < 1:
        raise BadRequest("Quantity must be at least 1")
    product = products.get_product(db, product_id)
    price = float(product.get("price", 0))

    cart = find_cart(db, user_id)
    if not cart:
        now = utcnow()
        res = db["cart"].insert_one({
            "user_id": user_id,
            "items": [],
            "total_cart_price": 0,
            "created_at": now,
            "updated_at": now,
        })
        cart = db["cart"].find_one({"_id": res.inserted_id})

    # merge if same product and colour
    items = cart.get("items", [])
    merged = False
    for it in items:
        if it["product_id"] == product_id and it.get("color") == color:
            it["quantity"] = int(it.get("quantity", 1)) + int(quantity)
            merged = True
            break
    if not merged:
        items.append({"product_id": product_id, "quantity": int(quantity), "color": color, "price": price})
    return _save_items(db, cart["_id"], items)


def update_item_quantity(db: Database, user_id: str, product_id: str, quantity: int, color: Optional[str] = None) -> Dict[str, Any]:
    if quantity < 1:
        raise BadRequest("Quantity must be at least 1")
    cart = get_cart(db, user_id)
    items = cart.get("items", [])
    found = False
    for it in items:
        if it["product_id"] == product_id and (color is None or it.get("color") == color):
            it["quantity"] = int(quantity)
            found = True
    if not found:
        raise ProductNotFound(f"There's no item for product {product_id} in the cart")
    return _save_items(db, cart["_id"], items)


def remove_item(db: Database, user_id: str, product_id: str, color: Optional[str] = None) -> Dict[str, Any]:
    cart = get_cart(db, user_id)
    items = [
        it for it in cart.get("items", [])
        if not (it["product_id"] == product_id and (color is None or it.get("color") == color))
    ]
    return _save_items(db, cart["_id"], items)


def clear_cart(db: Database, user_id: str) -> None:
    db["cart"].delete_one({"user_id": user_id})


def apply_coupon(db: Database, user_id: str, coupon_name: str) -> Dict[str, Any]:
    coupon = coupons.find_valid_coupon(db, coupon_name)
    cart = get_cart(db, user_id)
    total = float(cart.get("total_cart_price") or 0)
    after_discount = round(total - (total * float(coupon["discount"])) / 100, 2)
    db["cart"].update_one(
        {"_id": cart["_id"]},
        {"$set": {"total_price_after_discount": after_discount, "updated_at": utcnow()}},
    )
    return db["cart"].find_one({"_id": cart["_id"]})
