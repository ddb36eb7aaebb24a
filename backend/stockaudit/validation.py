from __future__ import annotations

from typing import Any


# Maximum money amount in minor currency units. Keeps totals inside a
# 64-bit column even for large quantities.
MAX_AMOUNT = 999_999_999_999

# Maximum quantity on a single recovery ticket
MAX_QUANTITY = 1_000_000


class ValidationError(ValueError):
    """400-level input problem, optionally tied to a single field."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict:
        body = {"error": str(self)}
        if self.field:
            body["field"] = self.field
        return body


def coerce_int(field: str, value: Any, *, required: bool = True) -> int | None:
    """
    Strict integer coercion for JSON input.

    Rejects booleans, floats, decimals and scientific notation so that
    quantities and amounts never silently round.
    """
    if value is None:
        if required:
            raise ValidationError(f"{field} is required", field)
        return None

    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", field)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal", field)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer", field)
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)", field)
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)", field)
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer", field)
    raise ValidationError(f"{field} must be an integer", field)


def coerce_text(field: str, value: Any, *, required: bool = False, max_length: int | None = None) -> str | None:
    if value is None:
        if required:
            raise ValidationError(f"{field} is required", field)
        return None
    text = str(value).strip()
    if required and not text:
        raise ValidationError(f"{field} cannot be blank", field)
    if max_length and len(text) > max_length:
        raise ValidationError(f"{field} exceeds max length {max_length}", field)
    return text


def enforce_rules_ticket_amounts(patch: dict) -> None:
    """
    Quantity/price rules shared by ticket creation and PENDING edits.
    Only validates keys present in the patch.
    """
    if "quantity" in patch:
        quantity = patch["quantity"]
        if quantity is None or quantity <= 0:
            raise ValidationError("quantity must be > 0", "quantity")
        if quantity > MAX_QUANTITY:
            raise ValidationError(f"quantity cannot exceed {MAX_QUANTITY}", "quantity")

    if "unit_price" in patch:
        unit_price = patch["unit_price"]
        if unit_price is None or unit_price < 0:
            raise ValidationError("unit_price must be >= 0", "unit_price")
        if unit_price > MAX_AMOUNT:
            raise ValidationError(f"unit_price cannot exceed {MAX_AMOUNT}", "unit_price")


def enforce_rules_recovered_amount(amount: int | None) -> None:
    if amount is None:
        return
    if amount < 0:
        raise ValidationError("recovered_amount must be >= 0", "recovered_amount")
    if amount > MAX_AMOUNT:
        raise ValidationError(f"recovered_amount cannot exceed {MAX_AMOUNT}", "recovered_amount")
