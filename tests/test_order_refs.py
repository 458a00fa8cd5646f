from datetime import datetime
from decimal import Decimal

import pytest

from covercart.core.exceptions import CoverCartValidationError
from covercart.models.order import to_minor_units
from covercart.services.reconciliation import (
    CARRIER_CANCELLED,
    CARRIER_DELIVERED,
    CARRIER_ON_HOLD,
    CARRIER_SHIPPED,
    classify_carrier_status,
    parse_carrier_datetime,
)
from covercart.services.refs import CustomItemRef, OrderKind, OrderRef, is_custom_tag


def test_carrier_order_id_prefixes():
    assert OrderRef.standard("abc123").carrier_order_id == "ORD-abc123"
    assert OrderRef.custom("abc123").carrier_order_id == "CUST-abc123"
    assert str(OrderRef.custom("x1")) == "CUST-x1"


def test_parse_round_trips_both_kinds():
    ref = OrderRef.parse("CUST-9f2c")
    assert ref.kind is OrderKind.CUSTOM and ref.id == "9f2c"
    ref = OrderRef.parse(" ord-77 ")
    assert ref.kind is OrderKind.STANDARD and ref.id == "77"


@pytest.mark.parametrize("value", ["", "77", "INV-1", "ORD-", "ORD-a b"])
def test_parse_rejects_unknown_shapes(value):
    with pytest.raises(CoverCartValidationError):
        OrderRef.parse(value)


def test_coerce_accepts_bare_ids_as_default_kind():
    assert OrderRef.coerce("abc") == OrderRef.standard("abc")
    assert OrderRef.coerce("abc", OrderKind.CUSTOM) == OrderRef.custom("abc")
    assert OrderRef.coerce("CUST-abc") == OrderRef.custom("abc")
    with pytest.raises(CoverCartValidationError):
        OrderRef.coerce("  ")


def test_display_number_uses_id_tail():
    assert OrderRef.standard("0123456789abcdef").display_number == "ORD-89ABCDEF"


def test_custom_item_tag_must_be_prefixed():
    assert CustomItemRef("custom_1700000000").tag == "custom_1700000000"
    with pytest.raises(CoverCartValidationError):
        CustomItemRef("design_1")
    assert is_custom_tag("custom_x")
    assert not is_custom_tag(12)


def test_minor_units_round_half_up():
    assert to_minor_units(Decimal("499.00")) == 49900
    assert to_minor_units("0.015") == 2
    assert to_minor_units(Decimal("1299.99")) == 129999


@pytest.mark.parametrize(
    "label,expected",
    [
        ("DELIVERED", CARRIER_DELIVERED),
        ("Shipped", CARRIER_SHIPPED),
        ("IN TRANSIT", CARRIER_SHIPPED),
        ("Out For Delivery", CARRIER_SHIPPED),
        ("Canceled", CARRIER_CANCELLED),
        ("RTO INITIATED", CARRIER_CANCELLED),
        ("ON HOLD", CARRIER_ON_HOLD),
        ("PICKUP SCHEDULED", None),
        ("", None),
        (None, None),
    ],
)
def test_classify_carrier_status(label, expected):
    assert classify_carrier_status(label) == expected


def test_parse_carrier_datetime_formats():
    assert parse_carrier_datetime("2026-10-20 10:00:00") == datetime(2026, 10, 20, 10, 0)
    assert parse_carrier_datetime("20-10-2026 09:30:00") == datetime(2026, 10, 20, 9, 30)
    assert parse_carrier_datetime("2026-10-20T10:00:00+05:30") == datetime(2026, 10, 20, 4, 30)
    assert parse_carrier_datetime("soon") is None
    assert parse_carrier_datetime(None) is None
