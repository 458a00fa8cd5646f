# covercart/services/refs.py
"""
Tagged references used across the order lifecycle.

OrderRef      -> which store an order lives in (standard / custom) plus its id.
CatalogRef    -> a catalog product/variant pair on a line item.
CustomItemRef -> an opaque "custom_*" tag on a line item.

OrderRef.parse() is the only place that turns a carrier order id
("ORD-<id>" / "CUST-<id>") back into a reference.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Union

from covercart.core.exceptions import CoverCartValidationError


class OrderKind(str, enum.Enum):
    STANDARD = "standard"
    CUSTOM = "custom"


_PREFIXES: dict[OrderKind, str] = {
    OrderKind.STANDARD: "ORD",
    OrderKind.CUSTOM: "CUST",
}
_BY_PREFIX = {v: k for k, v in _PREFIXES.items()}

CUSTOM_TAG_PREFIX = "custom_"

_CARRIER_ID_RE = re.compile(r"^(?P<prefix>ORD|CUST)-(?P<id>[A-Za-z0-9_\-]+)$", re.IGNORECASE)


@dataclass(frozen=True)
class OrderRef:
    kind: OrderKind
    id: str

    @classmethod
    def standard(cls, order_id: str) -> "OrderRef":
        return cls(OrderKind.STANDARD, order_id)

    @classmethod
    def custom(cls, order_id: str) -> "OrderRef":
        return cls(OrderKind.CUSTOM, order_id)

    @classmethod
    def parse(cls, value: str) -> "OrderRef":
        """Parse a carrier order id back into a reference."""
        m = _CARRIER_ID_RE.match((value or "").strip())
        if not m:
            raise CoverCartValidationError(f"Unrecognized order reference: {value!r}", "BAD_ORDER_REF")
        return cls(_BY_PREFIX[m.group("prefix").upper()], m.group("id"))

    @classmethod
    def coerce(cls, value: str, default_kind: OrderKind = OrderKind.STANDARD) -> "OrderRef":
        """Accept a prefixed reference ("ORD-x" / "CUST-x") or a bare id of default_kind."""
        value = (value or "").strip()
        if _CARRIER_ID_RE.match(value):
            return cls.parse(value)
        if not value:
            raise CoverCartValidationError("Order id is required", "BAD_ORDER_REF")
        return cls(default_kind, value)

    @property
    def carrier_order_id(self) -> str:
        return f"{_PREFIXES[self.kind]}-{self.id}"

    @property
    def display_number(self) -> str:
        return f"{_PREFIXES[self.kind]}-{self.id[-8:].upper()}"

    def __str__(self) -> str:
        return self.carrier_order_id


@dataclass(frozen=True)
class CatalogRef:
    product_id: int
    variant_id: int


@dataclass(frozen=True)
class CustomItemRef:
    tag: str

    def __post_init__(self):
        if not self.tag.startswith(CUSTOM_TAG_PREFIX):
            raise CoverCartValidationError(f"Custom item tag must start with 'custom_': {self.tag!r}", "BAD_ITEM_REF")


LineItemRef = Union[CatalogRef, CustomItemRef]


def is_custom_tag(value) -> bool:
    return isinstance(value, str) and value.startswith(CUSTOM_TAG_PREFIX)


__all__ = ["CUSTOM_TAG_PREFIX", "OrderKind", "OrderRef", "CatalogRef", "CustomItemRef", "LineItemRef", "is_custom_tag"]
