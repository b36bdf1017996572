"""
Stock bookkeeping for checkout.

Each line item becomes one ``$inc`` of ``quantity`` (down) and ``sold`` (up)
on the product document, so the two fields always move together. All items
go to the server in a single bulk write.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from pymongo import UpdateOne
from pymongo.database import Database

import config
from database import to_object_id
from errors import InsufficientStock

logger = logging.getLogger(__name__)


def _allow_negative(allow_negative: Optional[bool]) -> bool:
    return config.ALLOW_NEGATIVE_STOCK if allow_negative is None else allow_negative


def ensure_available(db: Database, items: Iterable[Dict[str, Any]]) -> None:
    wanted: Dict[str, int] = {}
    for it in items:
        wanted[it["product_id"]] = wanted.get(it["product_id"], 0) + int(it["quantity"])
    for product_id, qty in wanted.items():
        product = db["product"].find_one({"_id": to_object_id(product_id, "product id")}, {"quantity": 1, "title": 1})
        in_stock = int(product.get("quantity", 0)) if product else 0
        if in_stock < qty:
            title = product.get("title", product_id) if product else product_id
            raise InsufficientStock(f"Only {in_stock} left of {title}")


def apply(db: Database, items: List[Dict[str, Any]], allow_negative: Optional[bool] = None) -> int:
    """Decrement stock and bump sold counts for every line item.

    Returns the number of products actually updated. With the negative-stock
    policy off, an update whose product no longer has enough stock matches
    nothing and is reported as a shortfall instead of going below zero.
    """
    if not items:
        return 0
    guarded = not _allow_negative(allow_negative)
    operations = []
    for it in items:
        qty = int(it["quantity"])
        filt: Dict[str, Any] = {"_id": to_object_id(it["product_id"], "product id")}
        if guarded:
            filt["quantity"] = {"$gte": qty}
        operations.append(UpdateOne(filt, {"$inc": {"quantity": -qty, "sold": qty}}))

    result = db["product"].bulk_write(operations, ordered=False)
    if result.matched_count < len(operations):
        logger.warning(
            "Stock shortfall: %s of %s line items were not applied",
            len(operations) - result.matched_count,
            len(operations),
        )
    return result.modified_count
