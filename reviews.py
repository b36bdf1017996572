"""
Product reviews and the rating aggregate.

Review writes publish a "review changed" event once they are committed;
``recalculate_ratings`` is subscribed to it and rewrites the product's
``ratings_average`` / ``ratings_quantity``.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import products
from auth import STAFF, role_of
from database import create_document, serialize_doc, to_object_id, utcnow
from errors import DuplicateReview, Forbidden, ReviewNotFound
from schemas import Review

logger = logging.getLogger(__name__)

ReviewChangedHandler = Callable[[Database, str], None]

_review_changed_handlers: List[ReviewChangedHandler] = []


def subscribe(handler: ReviewChangedHandler) -> ReviewChangedHandler:
    if handler not in _review_changed_handlers:
        _review_changed_handlers.append(handler)
    return handler


def publish_review_changed(db: Database, product_id: str) -> None:
    for handler in list(_review_changed_handlers):
        handler(db, product_id)


@subscribe
def recalculate_ratings(db: Database, product_id: str) -> None:
    result = list(db["review"].aggregate([
        {"$match": {"product_id": product_id}},
        {"$group": {
            "_id": "$product_id",
            "avg_ratings": {"$avg": "$ratings"},
            "ratings_quantity": {"$sum": 1},
        }},
    ]))
    if result:
        average = round(float(result[0]["avg_ratings"]), 2)
        quantity = int(result[0]["ratings_quantity"])
    else:
        average, quantity = 0, 0
    db["product"].update_one(
        {"_id": to_object_id(product_id, "product id")},
        {"$set": {"ratings_average": average, "ratings_quantity": quantity}},
    )
    logger.debug("Ratings for product %s: avg=%s count=%s", product_id, average, quantity)


def get_review(db: Database, review_id: str) -> Dict[str, Any]:
    review = db["review"].find_one({"_id": to_object_id(review_id, "review id")})
    if not review:
        raise ReviewNotFound(f"There's no review with ID: {review_id}")
    return review


def list_reviews(db: Database, product_id: Optional[str] = None, page: int = 1, limit: int = 20) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if product_id:
        query["product_id"] = product_id
    skip = max(page - 1, 0) * limit
    cursor = db["review"].find(query).sort("created_at", -1).skip(skip).limit(limit)
    items = [serialize_doc(r) for r in cursor]
    return {"items": items, "total": db["review"].count_documents(query), "page": page, "limit": limit}


def create_review(db: Database, user: Dict[str, Any], product_id: str, ratings: float, title: Optional[str] = None) -> Dict[str, Any]:
    products.get_product(db, product_id)
    user_id = str(user["_id"])
    if db["review"].find_one({"product_id": product_id, "user_id": user_id}):
        raise DuplicateReview()
    review = Review(title=title, ratings=ratings, product_id=product_id, user_id=user_id)
    try:
        review_id = create_document(db, "review", review)
    except DuplicateKeyError:
        raise DuplicateReview()
    publish_review_changed(db, product_id)
    return get_review(db, review_id)


def update_review(db: Database, user: Dict[str, Any], review_id: str, ratings: Optional[float] = None, title: Optional[str] = None) -> Dict[str, Any]:
    review = get_review(db, review_id)
    if review["user_id"] != str(user["_id"]):
        raise Forbidden("You are not allowed to update this review")
    changes: Dict[str, Any] = {"updated_at": utcnow()}
    if ratings is not None:
        changes["ratings"] = ratings
    if title is not None:
        changes["title"] = title
    db["review"].update_one({"_id": review["_id"]}, {"$set": changes})
    publish_review_changed(db, review["product_id"])
    return get_review(db, review_id)


def delete_review(db: Database, user: Dict[str, Any], review_id: str) -> None:
    review = get_review(db, review_id)
    is_owner = review["user_id"] == str(user["_id"])
    if not is_owner and role_of(user) not in STAFF:
        raise Forbidden("You are not allowed to delete this review")
    db["review"].delete_one({"_id": review["_id"]})
    publish_review_changed(db, review["product_id"])
