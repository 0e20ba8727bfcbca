"""
Typed inputs accepted by the order service and their validation.

Validation collects every problem into a ``field -> message`` map so a
caller can correct all of them at once. Item fields are addressed as
``items[<index>].<field>``.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from orderflow.services.orders.errors import ValidationFailedError

MAX_ITEMS_PER_ORDER = 100
MONEY_QUANTUM = Decimal("0.01")
# Largest value a Numeric(12, 2) column holds.
MAX_AMOUNT = Decimal("9999999999.99")
MAX_QUANTITY = 1_000_000


@dataclass
class CustomerInfo:
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None

    def as_order_fields(self) -> dict[str, Optional[str]]:
        return {
            "customer_name": self.name.strip(),
            "customer_email": _blank_to_none(self.email),
            "customer_phone": _blank_to_none(self.phone),
            "customer_address": _blank_to_none(self.address),
        }


@dataclass
class ItemInput:
    name: str
    price: Any
    quantity: Any
    description: Optional[str] = None
    sku: Optional[str] = None


@dataclass
class ItemAdjustment:
    """Delivered and returned quantities for one item of an order."""

    item_id: str
    quantity_shipped: Optional[int] = None
    quantity_returned: Optional[int] = None


@dataclass
class TransitionPayload:
    """
    Action-specific inputs for a transition.

    Only the fields relevant to the requested action are read.
    """

    reason: Optional[str] = None
    notes: Optional[str] = None
    tracking_number: Optional[str] = None
    customer: Optional[CustomerInfo] = None
    items: Optional[list[ItemInput]] = None
    item_adjustments: list[ItemAdjustment] = field(default_factory=list)
    actual_total: Optional[Any] = None


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def parse_money(value: Any) -> Optional[Decimal]:
    """
    Parse a monetary amount, returning None when it is not a number.

    Amounts beyond ``MAX_AMOUNT`` are returned unrounded; callers report
    them as too large.
    """
    if isinstance(value, bool) or value is None:
        return None
    try:
        amount = Decimal(str(value))
        if not amount.is_finite():
            return None
        if abs(amount) > MAX_AMOUNT:
            return amount
        return amount.quantize(MONEY_QUANTUM)
    except (InvalidOperation, ValueError):
        return None


def parse_quantity(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def validate_customer(customer: Optional[CustomerInfo]) -> dict[str, str]:
    errors: dict[str, str] = {}
    if customer is None:
        errors["customer.name"] = "Customer information is required"
        return errors
    if not customer.name or not customer.name.strip():
        errors["customer.name"] = "Customer name is required"
    email = _blank_to_none(customer.email)
    if email is not None and ("@" not in email or email.startswith("@")):
        errors["customer.email"] = "Customer email is invalid"
    return errors


def validate_items(items: Optional[list[ItemInput]]) -> dict[str, str]:
    errors: dict[str, str] = {}
    if not items:
        errors["items"] = "At least one item is required"
        return errors
    if len(items) > MAX_ITEMS_PER_ORDER:
        errors["items"] = f"At most {MAX_ITEMS_PER_ORDER} items are allowed"
        return errors

    for index, item in enumerate(items):
        prefix = f"items[{index}]"
        if not item.name or not item.name.strip():
            errors[f"{prefix}.name"] = "Item name is required"
        price = parse_money(item.price)
        if price is None:
            errors[f"{prefix}.price"] = "Price must be a number"
        elif price < 0:
            errors[f"{prefix}.price"] = "Price must not be negative"
        elif price > MAX_AMOUNT:
            errors[f"{prefix}.price"] = "Price is too large"
        quantity = parse_quantity(item.quantity)
        if quantity is None:
            errors[f"{prefix}.quantity"] = "Quantity must be a whole number"
        elif quantity <= 0:
            errors[f"{prefix}.quantity"] = "Quantity must be positive"
        elif quantity > MAX_QUANTITY:
            errors[f"{prefix}.quantity"] = f"Quantity must be at most {MAX_QUANTITY}"

    if not errors and calculate_total(items) > MAX_AMOUNT:
        errors["items"] = "Order total is too large"
    return errors


def ensure_valid(errors: dict[str, str], **context: Any) -> None:
    """
    Raise when ``errors`` is non-empty.

    Raises:
        ValidationFailedError: With the collected field problems
    """
    if errors:
        raise ValidationFailedError(
            "Validation failed: " + ", ".join(sorted(errors)),
            fields=errors,
            **context,
        )


def calculate_total(items: list[ItemInput]) -> Decimal:
    """Sum of ``price * quantity`` over validated items."""
    total = Decimal("0.00")
    for item in items:
        total += parse_money(item.price) * parse_quantity(item.quantity)
    return total.quantize(MONEY_QUANTUM)
