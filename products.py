from typing import Any, Dict, Optional

from pymongo.database import Database

from database import create_document, serialize_doc, to_object_id, utcnow
from errors import BadRequest, ProductNotFound
from schemas import Product

SORTS = {
    "price_asc": ("price", 1),
    "price_desc": ("price", -1),
    "rating_desc": ("ratings_average", -1),
    "best_selling": ("sold", -1),
    "new": ("created_at", -1),
}


def get_product(db: Database, product_id: str) -> Dict[str, Any]:
    product = db["product"].find_one({"_id": to_object_id(product_id, "product id")})
    if not product:
        raise ProductNotFound(f"There's no product with ID: {product_id}")
    return product


def create_product(db: Database, product: Product) -> Dict[str, Any]:
    product_id = create_document(db, "product", product)
    return get_product(db, product_id)


def list_products(db: Database, q: Optional[str] = None, category: Optional[str] = None, min_price: Optional[float] = None, max_price: Optional[float] = None, in_stock: Optional[bool] = None, sort: Optional[str] = None, limit: int = 20, page: int = 1) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if q:
        query["$or"] = [
            {"title": {"$regex": q, "$options": "i"}},
            {"description": {"$regex": q, "$options": "i"}},
            {"category": {"$regex": q, "$options": "i"}},
        ]
    if category:
        query["category"] = category
    price_filter: Dict[str, Any] = {}
    if min_price is not None:
        price_filter["$gte"] = float(min_price)
    if max_price is not None:
        price_filter["$lte"] = float(max_price)
    if price_filter:
        query["price"] = price_filter
    if in_stock is True:
        query["quantity"] = {"$gt": 0}
    elif in_stock is False:
        query["quantity"] = {"$lte": 0}

    collection = db["product"]
    total = collection.count_documents(query)
    cursor = collection.find(query)
    if sort in SORTS:
        cursor = cursor.sort(*SORTS[sort])

    skip = max(page - 1, 0) * limit
    cursor = cursor.skip(skip).limit(limit)
    items = [serialize_doc(d) for d in cursor]
    return {"items": items, "total": total, "page": page, "limit": limit}


def update_product(db: Database, product_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    obj_id = to_object_id(product_id, "product id")
    update_dict = {k: v for k, v in changes.items() if v is not None}
    if not update_dict:
        raise BadRequest("No fields to update")
    update_dict["updated_at"] = utcnow()
    res = db["product"].update_one({"_id": obj_id}, {"$set": update_dict})
    if res.matched_count == 0:
        raise ProductNotFound(f"There's no product with ID: {product_id}")
    return db["product"].find_one({"_id": obj_id})


def delete_product(db: Database, product_id: str) -> None:
    obj_id = to_object_id(product_id, "product id")
    res = db["product"].delete_one({"_id": obj_id})
    if res.deleted_count == 0:
        raise ProductNotFound(f"There's no product with ID: {product_id}")
    db["review"].delete_many({"product_id": product_id})
