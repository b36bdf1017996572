from typing import Any, Dict, List

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import as_utc, create_document, serialize_doc, to_object_id, utcnow
from errors import BadRequest, CouponExpired, CouponNotFound
from schemas import Coupon


def _normalize_name(name: str) -> str:
    return name.strip().upper()


def get_coupon(db: Database, coupon_id: str) -> Dict[str, Any]:
    coupon = db["coupon"].find_one({"_id": to_object_id(coupon_id, "coupon id")})
    if not coupon:
        raise CouponNotFound(f"There's no coupon with ID: {coupon_id}")
    return coupon


def list_coupons(db: Database) -> List[Dict[str, Any]]:
    return [serialize_doc(c) for c in db["coupon"].find({}).sort("expire", 1)]


def create_coupon(db: Database, coupon: Coupon) -> Dict[str, Any]:
    coupon = coupon.model_copy(update={"name": _normalize_name(coupon.name)})
    if db["coupon"].find_one({"name": coupon.name}):
        raise BadRequest(f"Coupon {coupon.name} already exists")
    try:
        coupon_id = create_document(db, "coupon", coupon)
    except DuplicateKeyError:
        raise BadRequest(f"Coupon {coupon.name} already exists")
    return get_coupon(db, coupon_id)


def update_coupon(db: Database, coupon_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    oid = to_object_id(coupon_id, "coupon id")
    update = {k: v for k, v in changes.items() if v is not None}
    if not update:
        raise BadRequest("No fields to update")
    if "name" in update:
        update["name"] = _normalize_name(update["name"])
    update["updated_at"] = utcnow()
    res = db["coupon"].update_one({"_id": oid}, {"$set": update})
    if res.matched_count == 0:
        raise CouponNotFound(f"There's no coupon with ID: {coupon_id}")
    return db["coupon"].find_one({"_id": oid})


def delete_coupon(db: Database, coupon_id: str) -> None:
    res = db["coupon"].delete_one({"_id": to_object_id(coupon_id, "coupon id")})
    if res.deleted_count == 0:
        raise CouponNotFound(f"There's no coupon with ID: {coupon_id}")


def find_valid_coupon(db: Database, name: str) -> Dict[str, Any]:
    coupon = db["coupon"].find_one({"name": _normalize_name(name)})
    if not coupon:
        raise CouponNotFound(f"There's no coupon named {name}")
    if as_utc(coupon["expire"]) <= utcnow():
        raise CouponExpired()
    return coupon
