from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError

from .database import normalize_object_id_value, utcnow
from .errors import ConflictError, NotFound, ValidationError


class OrderStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


class PaymentStatus(str, Enum):
    UNPAID = "Unpaid"
    PAID = "Paid"
    FAILED = "Failed"


ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.CANCELLED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

PAYMENT_TRANSITIONS = {
    PaymentStatus.UNPAID: {PaymentStatus.PAID, PaymentStatus.FAILED},
    # a retried payment can still succeed
    PaymentStatus.FAILED: {PaymentStatus.PAID},
    PaymentStatus.PAID: set(),
}

ADDRESS_FIELDS = ("addressLine", "city", "postalCode", "country")
ADDRESS_FIELD_ALIASES = {
    "addressLine": ("addressLine", "address_line", "line1", "street", "address"),
    "city": ("city", "town"),
    "postalCode": ("postalCode", "postal_code", "postcode", "zip", "zipCode"),
    "country": ("country", "countryName"),
}
CONTACT_FIELDS = ("customerName", "email", "phone")


def parse_order_status(value) -> OrderStatus:
    try:
        return OrderStatus(str(value).strip())
    except ValueError:
        allowed = ", ".join(status.value for status in OrderStatus)
        raise ValidationError(f"Order status must be one of: {allowed}.")


def parse_payment_status(value) -> PaymentStatus:
    try:
        return PaymentStatus(str(value).strip())
    except ValueError:
        allowed = ", ".join(status.value for status in PaymentStatus)
        raise ValidationError(f"Payment status must be one of: {allowed}.")


def check_order_transition(current, target) -> OrderStatus:
    current_status = parse_order_status(current or OrderStatus.PENDING.value)
    target_status = parse_order_status(target)
    if target_status == current_status:
        return target_status
    if target_status not in ORDER_TRANSITIONS[current_status]:
        raise ValidationError(
            f"Cannot move an order from {current_status.value} to {target_status.value}."
        )
    return target_status


def check_payment_transition(current, target) -> PaymentStatus:
    current_status = parse_payment_status(current or PaymentStatus.UNPAID.value)
    target_status = parse_payment_status(target)
    if target_status == current_status:
        return target_status
    if target_status not in PAYMENT_TRANSITIONS[current_status]:
        raise ValidationError(
            f"Cannot change payment status from {current_status.value} to {target_status.value}."
        )
    return target_status


def to_decimal(value, label: str) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{label} must be a valid number.")
    try:
        numeric = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{label} must be a valid number.")
    if not numeric.is_finite():
        raise ValidationError(f"{label} must be a valid number.")
    return numeric


def compute_total(items: List[Dict]) -> Decimal:
    total = Decimal("0")
    for item in items:
        price = to_decimal(item.get("price"), "Price")
        quantity = to_decimal(item.get("quantity"), "Quantity")
        total += price * quantity
    return total


def money(value: Decimal) -> float:
    return float(value.quantize(Decimal("0.01")))


def minor_units(value) -> int:
    """Amount in the currency's smallest unit, as the payment provider counts it."""
    amount = to_decimal(value, "Amount") * 100
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def check_intent_amount(order: Dict, intent: Dict) -> None:
    expected = minor_units(order.get("totalAmount", 0))
    try:
        charged = int(intent.get("amount"))
    except (TypeError, ValueError):
        charged = None
    if charged != expected:
        raise ValidationError("Payment amount does not match the order total.")


def normalize_order_item(payload) -> Dict:
    if not isinstance(payload, dict):
        raise ValidationError("Each order item must be an object.")

    product_identifier = payload.get("productId") or payload.get("product_id")
    product_id = normalize_object_id_value(product_identifier) if product_identifier else None
    if not product_id:
        raise ValidationError("Product ID is required.")

    quantity_value = to_decimal(payload.get("quantity"), "Quantity")
    if quantity_value != quantity_value.to_integral_value() or quantity_value < 1:
        raise ValidationError("Quantity must be at least 1.")

    if payload.get("price") is None:
        raise ValidationError("Price is required.")
    price_value = to_decimal(payload.get("price"), "Price")
    if price_value < 0:
        raise ValidationError("Price must be a non-negative number.")

    return {
        "productId": product_id,
        "quantity": int(quantity_value),
        "price": float(price_value),
    }


def normalize_order_items(raw_items) -> List[Dict]:
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("Order items are required.")
    return [normalize_order_item(entry) for entry in raw_items]


def normalize_shipping_address(payload) -> Dict[str, str]:
    if not isinstance(payload, dict):
        raise ValidationError("Address line is required.")

    normalized: Dict[str, str] = {}
    for field in ADDRESS_FIELDS:
        for alias in ADDRESS_FIELD_ALIASES.get(field, (field,)):
            if alias in payload and payload.get(alias) is not None:
                trimmed = str(payload.get(alias)).strip()
                if trimmed:
                    normalized[field] = trimmed
                break

    if not normalized.get("addressLine"):
        raise ValidationError("Address line is required.")
    return normalized


def normalize_contact(payload: Dict, require_name: bool = True) -> Dict[str, str]:
    contact: Dict[str, str] = {}
    for field in CONTACT_FIELDS:
        value = payload.get(field)
        if value is None:
            continue
        trimmed = str(value).strip()
        if trimmed:
            contact[field] = trimmed.lower() if field == "email" else trimmed
    if require_name and not contact.get("customerName"):
        raise ValidationError("Customer name is required.")
    return contact


def build_order_document(
    payload: Dict, user_id: Optional[ObjectId] = None, allow_status: bool = False
) -> Dict:
    if not isinstance(payload, dict):
        raise ValidationError("Order payload must be an object.")

    items = normalize_order_items(payload.get("items"))
    document: Dict = normalize_contact(payload)
    document.update(
        {
            "items": items,
            "totalAmount": money(compute_total(items)),
            "shippingAddress": normalize_shipping_address(payload.get("shippingAddress")),
            "status": OrderStatus.PENDING.value,
            "paymentStatus": PaymentStatus.UNPAID.value,
        }
    )

    owner_id = user_id or (
        normalize_object_id_value(payload.get("userId")) if payload.get("userId") else None
    )
    if payload.get("userId") and not owner_id:
        raise ValidationError("Invalid user identifier.")
    if owner_id:
        document["userId"] = owner_id

    if allow_status:
        if payload.get("status"):
            document["status"] = parse_order_status(payload["status"]).value
        if payload.get("paymentStatus"):
            document["paymentStatus"] = parse_payment_status(payload["paymentStatus"]).value

    timestamp = utcnow()
    document["createdAt"] = timestamp
    document["updatedAt"] = timestamp
    return document


def build_order_update(existing: Dict, payload: Dict) -> Dict:
    """Compute the ``$set`` for an admin order update.

    ``totalAmount`` only moves when items are replaced, and both status
    fields must follow their transition tables.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Order payload must be an object.")

    update: Dict = normalize_contact(payload, require_name=False)

    if payload.get("status"):
        update["status"] = check_order_transition(
            existing.get("status"), payload["status"]
        ).value
    if payload.get("paymentStatus"):
        update["paymentStatus"] = check_payment_transition(
            existing.get("paymentStatus"), payload["paymentStatus"]
        ).value
    if payload.get("shippingAddress"):
        update["shippingAddress"] = normalize_shipping_address(payload["shippingAddress"])

    raw_items = payload.get("items")
    if isinstance(raw_items, list) and raw_items:
        items = normalize_order_items(raw_items)
        update["items"] = items
        update["totalAmount"] = money(compute_total(items))

    update["updatedAt"] = utcnow()
    return update


INTENT_CLAIMED = "Payment intent is already applied to another order."


def ensure_intent_unclaimed(
    orders: Collection, order_id: ObjectId, payment_intent_id: str
) -> None:
    other = orders.find_one(
        {"paymentIntentId": payment_intent_id, "_id": {"$ne": order_id}}, {"_id": 1}
    )
    if other is not None:
        raise ConflictError(INTENT_CLAIMED)


def apply_payment_succeeded(
    orders: Collection,
    order_id: ObjectId,
    payment_intent_id: str,
    payment_method: Optional[str] = None,
) -> Tuple[Dict, bool]:
    """Mark an order paid for ``payment_intent_id``.

    An intent settles at most one order; one already recorded on another
    order raises ``ConflictError`` (the sparse unique index on
    ``paymentIntentId`` closes the race between the check and the write).
    The transition is a conditional update on the payment status, so a
    replayed confirmation for an order that is already paid changes nothing.
    Returns the current order and whether this call applied the change.
    """
    ensure_intent_unclaimed(orders, order_id, payment_intent_id)
    timestamp = utcnow()
    try:
        updated = orders.find_one_and_update(
            {
                "_id": order_id,
                "paymentStatus": {
                    "$in": [PaymentStatus.UNPAID.value, PaymentStatus.FAILED.value]
                },
            },
            {
                "$set": {
                    "paymentStatus": PaymentStatus.PAID.value,
                    "paymentIntentId": payment_intent_id,
                    "paymentMethod": payment_method or "Stripe",
                    "paidAt": timestamp,
                    "updatedAt": timestamp,
                }
            },
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise ConflictError(INTENT_CLAIMED)
    if updated is None:
        current = orders.find_one({"_id": order_id})
        if current is None:
            raise NotFound("Order not found.")
        return current, False

    if updated.get("status") == OrderStatus.PENDING.value:
        updated = orders.find_one_and_update(
            {"_id": order_id, "status": OrderStatus.PENDING.value},
            {"$set": {"status": OrderStatus.PROCESSING.value}},
            return_document=ReturnDocument.AFTER,
        ) or orders.find_one({"_id": order_id})
    return updated, True


def apply_payment_failed(
    orders: Collection, order_id: ObjectId, payment_intent_id: str
) -> Tuple[Dict, bool]:
    ensure_intent_unclaimed(orders, order_id, payment_intent_id)
    try:
        updated = orders.find_one_and_update(
            {"_id": order_id, "paymentStatus": PaymentStatus.UNPAID.value},
            {
                "$set": {
                    "paymentStatus": PaymentStatus.FAILED.value,
                    "paymentIntentId": payment_intent_id,
                    "updatedAt": utcnow(),
                }
            },
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise ConflictError(INTENT_CLAIMED)
    if updated is None:
        current = orders.find_one({"_id": order_id})
        if current is None:
            raise NotFound("Order not found.")
        return current, False
    return updated, True
