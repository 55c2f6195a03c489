"""
Order lifecycle: statuses, the fulfillment transition table, numbering,
totals and shipping estimates.
"""
import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from database import next_sequence


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class DeliveryType(str, Enum):
    STANDARD = "standard"
    EXPRESS = "express"
    OVERNIGHT = "overnight"


class FulfillmentAction(str, Enum):
    CONFIRM = "confirm"
    START_FULFILLMENT = "start_fulfillment"
    GENERATE_SHIPPING_LABEL = "generate_shipping_label"
    MARK_DELIVERED = "mark_delivered"
    CANCEL_ORDER = "cancel_order"
    REFUND = "refund"


# action -> (legal source statuses, target status)
TRANSITIONS: Dict[FulfillmentAction, Tuple[FrozenSet[OrderStatus], OrderStatus]] = {
    FulfillmentAction.CONFIRM: (frozenset({OrderStatus.PENDING}), OrderStatus.CONFIRMED),
    FulfillmentAction.START_FULFILLMENT: (frozenset({OrderStatus.CONFIRMED}), OrderStatus.PROCESSING),
    FulfillmentAction.GENERATE_SHIPPING_LABEL: (frozenset({OrderStatus.PROCESSING}), OrderStatus.SHIPPED),
    FulfillmentAction.MARK_DELIVERED: (frozenset({OrderStatus.SHIPPED}), OrderStatus.DELIVERED),
    FulfillmentAction.CANCEL_ORDER: (
        frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING}),
        OrderStatus.CANCELLED,
    ),
    FulfillmentAction.REFUND: (frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}), OrderStatus.REFUNDED),
}

# Statuses whose stock has been taken out of inventory
INVENTORY_HELD = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING})

SHIPPING_CARRIERS: Dict[str, Dict[str, Any]] = {
    "FEDEX": {
        "name": "FedEx",
        "tracking_format": re.compile(r"^[0-9]{12,14}$"),
        "services": {"Ground": 5, "Express": 2, "Overnight": 1, "International": 7},
    },
    "UPS": {
        "name": "UPS",
        "tracking_format": re.compile(r"^1Z[0-9A-Z]{16}$"),
        "services": {"Ground": 5, "2nd Day Air": 2, "Next Day Air": 1, "Worldwide Express": 7},
    },
    "USPS": {
        "name": "USPS",
        "tracking_format": re.compile(r"^[0-9]{20,22}$"),
        "services": {"Priority Mail": 3, "First Class": 3, "Express Mail": 1, "Media Mail": 7},
    },
    "DHL": {
        "name": "DHL Express",
        "tracking_format": re.compile(r"^[0-9]{10,11}$"),
        "services": {"Express Worldwide": 5, "Express Domestic": 2, "Economy Select": 7},
    },
}
DEFAULT_DELIVERY_DAYS = 5


class InvalidTransition(ValueError):
    pass


class ShippingLabelError(ValueError):
    pass


class StockError(ValueError):
    pass


class ConcurrentUpdateError(RuntimeError):
    pass


def next_order_number() -> str:
    return f"ORD-{next_sequence('order_number'):06d}"


def target_status(current: str, action: FulfillmentAction) -> OrderStatus:
    sources, target = TRANSITIONS[action]
    if OrderStatus(current) not in sources:
        allowed = ", ".join(sorted(s.value for s in sources))
        raise InvalidTransition(f"Cannot {action.value.replace('_', ' ')} an order that is {current} (allowed from: {allowed})")
    return target


def tracking_event(status: str, location: str, description: str, when: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        "timestamp": when or datetime.now(timezone.utc),
        "status": status,
        "location": location,
        "description": description,
    }


def validate_shipping_label(data: Dict[str, Any]) -> Dict[str, Any]:
    """Check carrier and tracking number; return the carrier record."""
    if not data.get("tracking_number") or not data.get("carrier"):
        raise ShippingLabelError("Tracking number and carrier required for shipping label")
    carrier = SHIPPING_CARRIERS.get(str(data["carrier"]).upper())
    if carrier is None:
        raise ShippingLabelError(f"Invalid carrier. Supported carriers: {', '.join(SHIPPING_CARRIERS)}")
    if not carrier["tracking_format"].match(data["tracking_number"]):
        raise ShippingLabelError(f"Invalid tracking number format for {carrier['name']}")
    return carrier


def add_business_days(start: datetime, days: int) -> datetime:
    current = start
    added = 0
    while added < days:
        current += timedelta(days=1)
        if current.weekday() < 5:
            added += 1
    return current


def estimate_delivery(carrier: str, service_type: Optional[str], start: Optional[datetime] = None) -> datetime:
    services = SHIPPING_CARRIERS.get(carrier.upper(), {}).get("services", {})
    days = services.get(service_type, DEFAULT_DELIVERY_DAYS)
    return add_business_days(start or datetime.now(timezone.utc), days)


def plan_fulfillment(order: Dict[str, Any], action: FulfillmentAction, data: Optional[Dict[str, Any]] = None) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Work out the update for one fulfillment action.

    Returns ``(set_fields, event)``. The caller appends ``event`` to
    ``tracking_events`` and applies ``set_fields`` in the same write.
    Raises ``InvalidTransition`` or ``ShippingLabelError``.
    """
    data = data or {}
    now = datetime.now(timezone.utc)
    new_status = target_status(order["status"], action)
    updates: Dict[str, Any] = {"status": new_status.value, "updated_at": now}

    if action == FulfillmentAction.CONFIRM:
        updates["payment_status"] = PaymentStatus.CONFIRMED.value
        event = tracking_event("confirmed", "Store", "Order confirmed", now)
    elif action == FulfillmentAction.START_FULFILLMENT:
        event = tracking_event("processing", "Fulfillment Center", "Order processing started", now)
    elif action == FulfillmentAction.GENERATE_SHIPPING_LABEL:
        carrier = validate_shipping_label(data)
        estimated = data.get("estimated_delivery") or estimate_delivery(data["carrier"], data.get("service_type"), now)
        origin = data.get("origin") or "Fulfillment Center"
        updates.update({
            "tracking_number": data["tracking_number"],
            "shipping_carrier": carrier["name"],
            "shipping_service": data.get("service_type"),
            "estimated_delivery": estimated,
            "shipped_at": now,
        })
        service = f" {data['service_type']}" if data.get("service_type") else ""
        event = tracking_event(
            "shipped", origin,
            f"Shipped via {carrier['name']}{service} - Tracking: {data['tracking_number']}", now,
        )
    elif action == FulfillmentAction.MARK_DELIVERED:
        updates["delivered_at"] = now
        if order.get("payment_method") == "cod":
            updates["payment_status"] = PaymentStatus.PAID.value
        event = tracking_event(
            "delivered", data.get("delivery_location") or "Customer Address", "Order delivered successfully", now,
        )
    elif action == FulfillmentAction.CANCEL_ORDER:
        updates["cancelled_at"] = now
        event = tracking_event("cancelled", "Fulfillment Center", data.get("reason") or "Order cancelled", now)
    else:
        updates["refunded_at"] = now
        updates["payment_status"] = PaymentStatus.REFUNDED.value
        event = tracking_event("refunded", "Payment Processing", data.get("reason") or "Order refunded", now)

    note = f"[{now.strftime('%Y-%m-%d %H:%M')}] {action.value.replace('_', ' ').upper()}"
    if data.get("notes"):
        note += f"\nNotes: {data['notes']}"
    updates["admin_notes"] = "\n".join(filter(None, [order.get("admin_notes", ""), note]))
    return updates, event


def releases_inventory(previous_status: str, action: FulfillmentAction) -> bool:
    return action == FulfillmentAction.CANCEL_ORDER and OrderStatus(previous_status) in INVENTORY_HELD


def calculate_totals(items: List[Dict[str, Any]], settings: Dict[str, Any], delivery_type: str = "standard") -> Dict[str, float]:
    subtotal = round(sum(i["price"] * i["quantity"] for i in items), 2)

    taxes = settings.get("taxes") or {}
    tax = 0.0
    if taxes.get("enabled") and not taxes.get("included_in_price"):
        tax = round(subtotal * float(taxes.get("rate", 0)) / 100, 2)

    shipping_cfg = settings.get("shipping") or {}
    threshold = float(shipping_cfg.get("free_shipping_threshold", 0) or 0)
    if delivery_type in (DeliveryType.EXPRESS.value, DeliveryType.OVERNIGHT.value):
        shipping = float(shipping_cfg.get("express_shipping_cost", 0) or 0)
    elif threshold and subtotal >= threshold:
        shipping = 0.0
    else:
        shipping = float(shipping_cfg.get("standard_shipping_cost", 0) or 0)

    return {
        "subtotal": subtotal,
        "tax": tax,
        "shipping": round(shipping, 2),
        "discount": 0.0,
        "total": round(subtotal + tax + shipping, 2),
    }


def apply_payment_update(order: Dict[str, Any], payment_status: PaymentStatus, amount_paid: Optional[float] = None,
                         notes: Optional[str] = None, collected_by: Optional[str] = None) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Build the update for a cash-on-delivery payment change."""
    if order.get("payment_method") != "cod":
        raise InvalidTransition("Payment status tracking only available for COD orders")
    now = datetime.now(timezone.utc)
    updates: Dict[str, Any] = {"payment_status": payment_status.value, "updated_at": now}
    description = f"Payment status updated to {payment_status.value}"

    if payment_status == PaymentStatus.PAID:
        description = "Payment collected in full"
        if order["status"] == OrderStatus.SHIPPED.value:
            updates["status"] = OrderStatus.DELIVERED.value
            updates["delivered_at"] = now
        elif order["status"] in (OrderStatus.CANCELLED.value, OrderStatus.REFUNDED.value):
            raise InvalidTransition(f"Cannot collect payment for a {order['status']} order")
    elif payment_status == PaymentStatus.CONFIRMED:
        description = "Payment confirmed, ready for collection"

    note = f"[{now.strftime('%Y-%m-%d %H:%M')}] Payment Status: {payment_status.value}"
    if amount_paid:
        note += f" - Amount: ${amount_paid}"
    if notes:
        note += f"\nPayment Notes: {notes}"
    if collected_by:
        note += f"\nCollected By: {collected_by}"
    updates["admin_notes"] = "\n".join(filter(None, [order.get("admin_notes", ""), note]))
    event = tracking_event(f"payment_{payment_status.value}", "Payment Processing", description, now)
    return updates, event


NEXT_PAYMENT_ACTIONS = {
    PaymentStatus.PENDING.value: "Confirm payment is ready for collection",
    PaymentStatus.CONFIRMED.value: "Mark payment as collected",
    PaymentStatus.PAID.value: "Payment completed - order fulfilled",
    PaymentStatus.FAILED.value: "Investigate payment failure",
    PaymentStatus.REFUNDED.value: "Process refund details",
}


def payment_summary(order: Dict[str, Any]) -> Dict[str, Any]:
    history = [
        {**event, "status": event["status"].replace("payment_", "", 1)}
        for event in order.get("tracking_events", [])
        if event.get("status", "").startswith("payment_")
    ]
    return {
        "current_status": order.get("payment_status"),
        "total_amount": order.get("total"),
        "method": order.get("payment_method"),
        "order_date": order.get("created_at"),
        "estimated_delivery": order.get("estimated_delivery"),
        "delivered_at": order.get("delivered_at"),
        "tracking_events": history,
        "can_update_payment": order.get("payment_method") == "cod"
        and order.get("payment_status") in (PaymentStatus.PENDING.value, PaymentStatus.CONFIRMED.value),
        "next_action": NEXT_PAYMENT_ACTIONS.get(order.get("payment_status"), "No action required"),
    }


def invoice_data(order: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "invoice_number": f"INV-{order['order_number']}",
        "order_number": order["order_number"],
        "customer": order.get("customer"),
        "items": [
            {
                "name": item.get("name"),
                "sku": item.get("sku"),
                "quantity": item["quantity"],
                "price": item["price"],
                "total": round(item["price"] * item["quantity"], 2),
            }
            for item in order.get("items", [])
        ],
        "subtotal": order.get("subtotal", 0),
        "tax": order.get("tax", 0),
        "shipping": order.get("shipping", 0),
        "discount": order.get("discount", 0),
        "total": order.get("total", 0),
        "payment_method": order.get("payment_method"),
        "payment_status": order.get("payment_status"),
        "delivery_address": order.get("delivery_address"),
        "order_date": order.get("created_at"),
        "estimated_delivery": order.get("estimated_delivery"),
        "notes": order.get("notes"),
    }
