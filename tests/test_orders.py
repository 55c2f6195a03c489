from datetime import datetime, timezone

import pytest

import orders
from orders import FulfillmentAction as A, OrderStatus as S


def order(status, **extra):
    return {"order_number": "ORD-000001", "status": status, "payment_method": "cod", "admin_notes": "", **extra}


@pytest.mark.parametrize("status,action,expected", [
    ("pending", A.CONFIRM, S.CONFIRMED),
    ("confirmed", A.START_FULFILLMENT, S.PROCESSING),
    ("processing", A.GENERATE_SHIPPING_LABEL, S.SHIPPED),
    ("shipped", A.MARK_DELIVERED, S.DELIVERED),
    ("processing", A.CANCEL_ORDER, S.CANCELLED),
    ("cancelled", A.REFUND, S.REFUNDED),
])
def test_legal_transitions(status, action, expected):
    assert orders.target_status(status, action) == expected


@pytest.mark.parametrize("status,action", [
    ("pending", A.MARK_DELIVERED),
    ("shipped", A.CANCEL_ORDER),
    ("delivered", A.CONFIRM),
    ("refunded", A.REFUND),
    ("pending", A.REFUND),
])
def test_illegal_transitions(status, action):
    with pytest.raises(orders.InvalidTransition):
        orders.target_status(status, action)


def test_plan_shipping_label():
    data = {"carrier": "ups", "tracking_number": "1Z999AA10123456784", "service_type": "Next Day Air", "notes": "fragile"}
    updates, event = orders.plan_fulfillment(order("processing"), A.GENERATE_SHIPPING_LABEL, data)
    assert updates["status"] == "shipped"
    assert updates["shipping_carrier"] == "UPS"
    assert updates["tracking_number"] == "1Z999AA10123456784"
    assert updates["estimated_delivery"] > updates["shipped_at"]
    assert "Notes: fragile" in updates["admin_notes"]
    assert event["status"] == "shipped"


def test_shipping_label_validation():
    with pytest.raises(orders.ShippingLabelError):
        orders.plan_fulfillment(order("processing"), A.GENERATE_SHIPPING_LABEL, {"carrier": "UPS"})
    with pytest.raises(orders.ShippingLabelError):
        orders.validate_shipping_label({"carrier": "ACME", "tracking_number": "123"})
    with pytest.raises(orders.ShippingLabelError):
        orders.validate_shipping_label({"carrier": "FEDEX", "tracking_number": "12AB"})


def test_delivery_marks_cod_paid():
    updates, _ = orders.plan_fulfillment(order("shipped"), A.MARK_DELIVERED)
    assert updates["payment_status"] == "paid"
    assert "delivered_at" in updates


def test_cancel_releases_inventory_only_while_held():
    assert orders.releases_inventory("processing", A.CANCEL_ORDER)
    assert not orders.releases_inventory("delivered", A.REFUND)
    assert not orders.releases_inventory("cancelled", A.REFUND)


def test_business_days_skip_weekends():
    friday = datetime(2024, 5, 3, tzinfo=timezone.utc)
    assert orders.add_business_days(friday, 1).weekday() == 0
    assert orders.add_business_days(friday, 5) == datetime(2024, 5, 10, tzinfo=timezone.utc)


def test_totals_free_shipping_and_tax():
    items = [{"price": 40.0, "quantity": 2}, {"price": 25.0, "quantity": 1}]
    settings = {
        "taxes": {"enabled": True, "rate": 10, "included_in_price": False},
        "shipping": {"free_shipping_threshold": 100, "standard_shipping_cost": 10, "express_shipping_cost": 25},
    }
    totals = orders.calculate_totals(items, settings)
    assert totals == {"subtotal": 105.0, "tax": 10.5, "shipping": 0.0, "discount": 0.0, "total": 115.5}
    assert orders.calculate_totals(items, settings, "express")["shipping"] == 25.0


def test_totals_below_threshold_pay_standard_shipping():
    totals = orders.calculate_totals([{"price": 30.0, "quantity": 1}], {"shipping": {"free_shipping_threshold": 100, "standard_shipping_cost": 10}})
    assert totals["shipping"] == 10.0
    assert totals["total"] == 40.0


def test_payment_paid_on_shipped_order_delivers_it():
    updates, event = orders.apply_payment_update(order("shipped"), orders.PaymentStatus.PAID, 49.99, collected_by="Sam")
    assert updates["status"] == "delivered"
    assert "Collected By: Sam" in updates["admin_notes"]
    assert event["status"] == "payment_paid"


def test_payment_cannot_be_collected_for_cancelled_order():
    with pytest.raises(orders.InvalidTransition):
        orders.apply_payment_update(order("cancelled"), orders.PaymentStatus.PAID)


def test_order_numbers_are_unique_and_sequential():
    first = orders.next_order_number()
    second = orders.next_order_number()
    assert first == "ORD-000001"
    assert second == "ORD-000002"


def test_invoice_data():
    invoice = orders.invoice_data(order("delivered", items=[{"name": "Lamp", "sku": "L1", "price": 12.5, "quantity": 2}], total=25))
    assert invoice["invoice_number"] == "INV-ORD-000001"
    assert invoice["items"][0]["total"] == 25.0


def test_order_numbers_stay_unique_under_concurrent_checkouts(run_concurrently):
    def take_five():
        return [orders.next_order_number() for _ in range(5)]

    numbers = [n for batch in run_concurrently(take_five) for n in batch]
    assert len(numbers) == 40
    assert sorted(numbers) == [f"ORD-{i:06d}" for i in range(1, 41)]
