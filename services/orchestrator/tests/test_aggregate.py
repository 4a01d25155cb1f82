"""Tests for the order aggregate, its state machine and value objects."""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from app.aggregate import Money, Order, OrderItem, OrderNumber, OrderStatus, RiskLevel
from app.exceptions import InvalidStateError, ValidationError
from conftest import make_order

LONG_AGO = datetime(2000, 1, 1, tzinfo=timezone.utc)

ALLOWED = {
    (OrderStatus.PENDING, OrderStatus.PAYMENT_PENDING),
    (OrderStatus.PENDING, OrderStatus.PAID),
    (OrderStatus.PENDING, OrderStatus.PAYMENT_FAILED),
    (OrderStatus.PENDING, OrderStatus.CANCELED),
    (OrderStatus.PAYMENT_PENDING, OrderStatus.PAID),
    (OrderStatus.PAYMENT_PENDING, OrderStatus.PAYMENT_FAILED),
    (OrderStatus.PAYMENT_FAILED, OrderStatus.CANCELED),
}


def order_in(status: OrderStatus) -> Order:
    order = make_order()
    order.status = status
    return order


class TestStateMachine:
    @pytest.mark.parametrize("current", list(OrderStatus))
    @pytest.mark.parametrize("target", list(OrderStatus))
    def test_transition_table_is_closed(self, current, target):
        order = order_in(current)
        if (current, target) in ALLOWED:
            order.transition(target)
            assert order.status is target
        else:
            with pytest.raises(InvalidStateError) as exc_info:
                order.transition(target)
            assert order.status is current
            assert exc_info.value.current is current
            assert exc_info.value.requested is target
            assert exc_info.value.allowed == current.allowed_transitions

    @pytest.mark.parametrize("status", list(OrderStatus))
    def test_no_self_transition(self, status):
        assert not status.can_transition_to(status)

    def test_terminal_states(self):
        assert OrderStatus.PAID.is_terminal
        assert OrderStatus.CANCELED.is_terminal
        assert not OrderStatus.PENDING.is_terminal
        assert not OrderStatus.PAYMENT_FAILED.is_terminal

    def test_error_message_lists_allowed_transitions(self):
        order = order_in(OrderStatus.PAYMENT_FAILED)
        with pytest.raises(InvalidStateError, match="Cannot transition from PAYMENT_FAILED to PAID"):
            order.transition(OrderStatus.PAID)

    @pytest.mark.parametrize("current, target", sorted(ALLOWED))
    def test_transition_touches_updated_at(self, current, target):
        order = order_in(current)
        order.updated_at = LONG_AGO
        order.transition(target)
        assert order.updated_at != LONG_AGO
        assert order.updated_at > LONG_AGO

    def test_mark_as_paid_records_payment_id(self):
        order = make_order()
        order.mark_as_paid("pay_1")
        assert order.is_paid
        assert order.payment_id == "pay_1"

    def test_mark_as_paid_requires_payment_id(self):
        order = make_order()
        with pytest.raises(ValidationError):
            order.mark_as_paid("  ")
        assert order.is_pending

    def test_mark_as_payment_failed(self):
        order = make_order()
        order.mark_as_payment_failed()
        assert order.is_payment_failed


class TestOrder:
    def test_create_starts_pending_with_generated_number(self):
        order = make_order()
        assert order.status is OrderStatus.PENDING
        assert order.risk_level is RiskLevel.PENDING
        assert OrderNumber.PATTERN.match(order.order_number)
        assert order.payment_id is None

    def test_total_is_sum_of_subtotals(self):
        order = make_order()
        assert order.total_amount == Decimal("46.00")

    def test_set_items_recalculates_total(self):
        order = make_order()
        order.set_items([OrderItem(uuid4(), "Pen", 3, Decimal("1.99"))])
        assert order.total_amount == Decimal("5.97")

    def test_items_with_missing_values_contribute_zero(self):
        order = make_order(items=[
            OrderItem(uuid4(), "Gift", None, Decimal("9.00")),
            OrderItem(uuid4(), "Sample", 2, None),
            OrderItem(uuid4(), "Pen", 1, Decimal("2.00")),
        ])
        assert order.total_amount == Decimal("2.00")

    def test_risk_level_cannot_revert_to_pending(self):
        order = make_order()
        order.update_risk_level(RiskLevel.HIGH)
        with pytest.raises(InvalidStateError):
            order.update_risk_level(RiskLevel.PENDING)
        assert order.risk_level is RiskLevel.HIGH

    def test_invalid_order_number_rejected(self):
        with pytest.raises(ValidationError):
            Order(
                id=uuid4(),
                order_number="12345",
                customer_id=uuid4(),
                customer_name=None,
                customer_email="a@b.com",
            )


class TestOrderItem:
    def test_quantity_must_be_positive(self):
        with pytest.raises(ValidationError):
            OrderItem(uuid4(), "Pen", 0, Decimal("1.00"))

    def test_price_cannot_be_negative(self):
        with pytest.raises(ValidationError):
            OrderItem(uuid4(), "Pen", 1, Decimal("-0.01"))

    def test_price_rounded_half_up(self):
        item = OrderItem(uuid4(), "Pen", 1, Decimal("1.005"))
        assert item.unit_price == Decimal("1.01")


class TestMoney:
    def test_rounds_half_up_to_cents(self):
        assert Money.of("10.125").amount == Decimal("10.13")
        assert Money.of(10).amount == Decimal("10.00")

    def test_default_currency(self):
        assert Money.of("1").currency == "BRL"

    def test_negative_rejected(self):
        with pytest.raises(ValidationError):
            Money.of("-1")

    def test_arithmetic(self):
        a = Money.of("10.50")
        assert a.multiply(2).add(Money.of("25")).amount == Decimal("46.00")
        assert a.subtract(Money.of("0.50")).amount == Decimal("10.00")
        assert Money.zero().is_zero()
        assert a.is_greater_than(Money.of("10"))

    def test_subtract_below_zero_rejected(self):
        with pytest.raises(ValidationError):
            Money.of("1").subtract(Money.of("2"))

    def test_currency_mismatch_rejected(self):
        with pytest.raises(ValidationError):
            Money.of("1", "BRL").add(Money.of("1", "USD"))


class TestOrderNumber:
    def test_generated_numbers_are_unique_and_increasing(self):
        numbers = [OrderNumber.generate() for _ in range(50)]
        suffixes = [n.numeric_suffix for n in numbers]
        assert len(set(suffixes)) == 50
        assert suffixes == sorted(suffixes)

    def test_explicit_suffix(self):
        assert OrderNumber.generate(42).value == "ORD-42"

    @pytest.mark.parametrize("value", ["", "ORD-", "ord-1", "ORD-12a"])
    def test_invalid_format(self, value):
        with pytest.raises(ValidationError):
            OrderNumber(value)
