import pytest

import inventory
from errors import InsufficientStock

pytestmark = pytest.mark.unit


def _item(product, qty):
    return {"product_id": str(product["_id"]), "quantity": qty, "price": product["price"]}


def test_apply_moves_stock_and_sold_together(db, make_product):
    mug = make_product(title="Mug", quantity=5, sold=1)
    cup = make_product(title="Cup", quantity=10, sold=0)

    updated = inventory.apply(db, [_item(mug, 2), _item(cup, 3)])

    assert updated == 2
    mug_after = db["product"].find_one({"_id": mug["_id"]})
    cup_after = db["product"].find_one({"_id": cup["_id"]})
    assert (mug_after["quantity"], mug_after["sold"]) == (3, 3)
    assert (cup_after["quantity"], cup_after["sold"]) == (7, 3)


def test_apply_allows_negative_stock_by_default(db, make_product):
    mug = make_product(quantity=1)

    inventory.apply(db, [_item(mug, 3)])

    after = db["product"].find_one({"_id": mug["_id"]})
    assert after["quantity"] == -2
    assert after["sold"] == 3


def test_guarded_apply_skips_short_items(db, make_product):
    mug = make_product(title="Mug", quantity=1)
    cup = make_product(title="Cup", quantity=4)

    updated = inventory.apply(db, [_item(mug, 3), _item(cup, 2)], allow_negative=False)

    assert updated == 1
    assert db["product"].find_one({"_id": mug["_id"]})["quantity"] == 1
    assert db["product"].find_one({"_id": cup["_id"]})["quantity"] == 2


def test_ensure_available_sums_repeated_products(db, make_product):
    mug = make_product(quantity=3)

    inventory.ensure_available(db, [_item(mug, 2), _item(mug, 1)])
    with pytest.raises(InsufficientStock):
        inventory.ensure_available(db, [_item(mug, 2), _item(mug, 2)])


def test_apply_with_no_items_is_a_no_op(db):
    assert inventory.apply(db, []) == 0
