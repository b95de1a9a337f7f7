from decimal import Decimal

import mongomock
import pytest
from bson import ObjectId

from backend.errors import ConflictError, NotFound, ValidationError
from backend.orders import (
    OrderStatus,
    PaymentStatus,
    apply_payment_failed,
    apply_payment_succeeded,
    build_order_document,
    build_order_update,
    check_intent_amount,
    check_order_transition,
    check_payment_transition,
    compute_total,
    minor_units,
)

PRODUCT_ID = str(ObjectId())


def order_payload(**overrides):
    payload = {
        "customerName": "Ayesha",
        "email": "Ayesha@Example.com",
        "items": [
            {"productId": PRODUCT_ID, "price": 10, "quantity": 2},
            {"productId": PRODUCT_ID, "price": 5, "quantity": 3},
        ],
        "shippingAddress": {"addressLine": "1 Mall Road", "city": "Lahore"},
    }
    payload.update(overrides)
    return payload


def test_compute_total_sums_price_times_quantity():
    assert compute_total([{"price": 10, "quantity": 2}, {"price": 5, "quantity": 3}]) == 35


def test_compute_total_avoids_float_drift():
    assert compute_total([{"price": "0.1", "quantity": 3}]) == Decimal("0.3")


def test_build_order_document_derives_total_and_defaults():
    document = build_order_document(order_payload(totalAmount=1))
    assert document["totalAmount"] == 35.0
    assert document["status"] == "Pending"
    assert document["paymentStatus"] == "Unpaid"
    assert document["email"] == "ayesha@example.com"
    assert document["items"][0]["productId"] == ObjectId(PRODUCT_ID)


@pytest.mark.parametrize(
    "overrides",
    [
        {"items": []},
        {"customerName": ""},
        {"shippingAddress": {"city": "Lahore"}},
        {"items": [{"productId": PRODUCT_ID, "price": 5, "quantity": 0}]},
        {"items": [{"productId": PRODUCT_ID, "price": -1, "quantity": 1}]},
        {"items": [{"productId": "nope", "price": 1, "quantity": 1}]},
        {"items": [{"productId": PRODUCT_ID, "quantity": 1}]},
    ],
)
def test_build_order_document_rejects_invalid_input(overrides):
    with pytest.raises(ValidationError):
        build_order_document(order_payload(**overrides))


def test_status_fields_only_honoured_when_allowed():
    payload = order_payload(status="Shipped", paymentStatus="Paid")
    assert build_order_document(payload)["status"] == "Pending"
    admin_document = build_order_document(payload, allow_status=True)
    assert admin_document["status"] == "Shipped"
    assert admin_document["paymentStatus"] == "Paid"


def test_replacing_items_recomputes_total():
    existing = build_order_document(order_payload())
    update = build_order_update(
        existing, {"items": [{"productId": PRODUCT_ID, "price": 7.5, "quantity": 2}]}
    )
    assert update["totalAmount"] == 15.0


def test_address_only_update_keeps_total():
    existing = build_order_document(order_payload())
    update = build_order_update(existing, {"shippingAddress": {"addressLine": "2 Canal Road"}})
    assert "totalAmount" not in update
    assert update["shippingAddress"] == {"addressLine": "2 Canal Road"}


def test_client_total_is_ignored_on_update():
    existing = build_order_document(order_payload())
    assert "totalAmount" not in build_order_update(existing, {"totalAmount": 1})


@pytest.mark.parametrize(
    "current, target",
    [
        ("Pending", "Processing"),
        ("Processing", "Shipped"),
        ("Shipped", "Delivered"),
        ("Pending", "Cancelled"),
        ("Shipped", "Cancelled"),
        ("Delivered", "Delivered"),
    ],
)
def test_allowed_order_transitions(current, target):
    assert check_order_transition(current, target) == OrderStatus(target)


@pytest.mark.parametrize(
    "current, target",
    [("Pending", "Delivered"), ("Delivered", "Cancelled"), ("Cancelled", "Pending"), ("Pending", "Lost")],
)
def test_rejected_order_transitions(current, target):
    with pytest.raises(ValidationError):
        check_order_transition(current, target)


def test_paid_is_terminal_for_payment_status():
    assert check_payment_transition("Failed", "Paid") == PaymentStatus.PAID
    with pytest.raises(ValidationError):
        check_payment_transition("Paid", "Unpaid")


@pytest.fixture
def orders():
    return mongomock.MongoClient().db.orders


def test_payment_success_applies_once(orders):
    order_id = orders.insert_one(build_order_document(order_payload())).inserted_id

    first, applied_first = apply_payment_succeeded(orders, order_id, "pi_1")
    second, applied_second = apply_payment_succeeded(orders, order_id, "pi_1")

    assert applied_first is True
    assert applied_second is False
    assert first["paymentStatus"] == "Paid"
    assert first["status"] == "Processing"
    assert second["paidAt"] == first["paidAt"]


def test_payment_success_keeps_later_fulfilment_status(orders):
    document = build_order_document(order_payload(status="Shipped"), allow_status=True)
    order_id = orders.insert_one(document).inserted_id

    order, applied = apply_payment_succeeded(orders, order_id, "pi_2")

    assert applied is True
    assert order["status"] == "Shipped"


def test_payment_failure_leaves_fulfilment_status(orders):
    order_id = orders.insert_one(build_order_document(order_payload())).inserted_id

    order, applied = apply_payment_failed(orders, order_id, "pi_3")

    assert applied is True
    assert order["paymentStatus"] == "Failed"
    assert order["status"] == "Pending"


def test_failure_after_payment_is_ignored(orders):
    order_id = orders.insert_one(build_order_document(order_payload())).inserted_id
    apply_payment_succeeded(orders, order_id, "pi_4")

    order, applied = apply_payment_failed(orders, order_id, "pi_4")

    assert applied is False
    assert order["paymentStatus"] == "Paid"


def test_payment_for_missing_order_raises(orders):
    with pytest.raises(NotFound):
        apply_payment_succeeded(orders, ObjectId(), "pi_5")


def test_intent_already_on_another_order_is_refused(orders):
    first = orders.insert_one(build_order_document(order_payload())).inserted_id
    second = orders.insert_one(build_order_document(order_payload())).inserted_id
    apply_payment_succeeded(orders, first, "pi_6")

    with pytest.raises(ConflictError):
        apply_payment_succeeded(orders, second, "pi_6")
    with pytest.raises(ConflictError):
        apply_payment_failed(orders, second, "pi_6")

    assert orders.find_one({"_id": second})["paymentStatus"] == "Unpaid"


def test_unique_intent_index_closes_the_check_then_write_race(orders, monkeypatch):
    orders.create_index("paymentIntentId", unique=True, sparse=True)
    first = orders.insert_one(build_order_document(order_payload())).inserted_id
    second = orders.insert_one(build_order_document(order_payload())).inserted_id
    apply_payment_succeeded(orders, first, "pi_7")
    # a concurrent claim that passed the lookup before the first write landed
    monkeypatch.setattr("backend.orders.ensure_intent_unclaimed", lambda *args: None)

    with pytest.raises(ConflictError):
        apply_payment_succeeded(orders, second, "pi_7")
    assert orders.find_one({"_id": second})["paymentStatus"] == "Unpaid"


@pytest.mark.parametrize("value, expected", [(35, 3500), ("0.1", 10), (19.995, 2000), (Decimal("1.005"), 101)])
def test_minor_units(value, expected):
    assert minor_units(value) == expected


def test_intent_amount_must_match_order_total():
    order = {"totalAmount": 35.0}
    check_intent_amount(order, {"amount": 3500})
    with pytest.raises(ValidationError):
        check_intent_amount(order, {"amount": 100})
    with pytest.raises(ValidationError):
        check_intent_amount(order, {})
