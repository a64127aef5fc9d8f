from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import DeclarativeMeta


# Maximum price: ₹9,999,999.99 (999,999,999 paise)
MAX_PRICE_CENTS = 999_999_999


class ValidationError(ValueError):
    """400-level input problem."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., duplicate product)."""


class NotFoundError(LookupError):
    """404-level missing record."""


@dataclass(frozen=True)
class ModelValidationPolicy:
    """Which fields a client may send on create, and which of them it must send."""
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def coerce_int(value: Any, field: str) -> int:
    """
    Strict integer coercion for JSON input.

    Accepts ints and plain digit strings; rejects bools, floats,
    decimals and scientific notation.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def coerce_positive_int(value: Any, field: str) -> int:
    n = coerce_int(value, field)
    if n <= 0:
        raise ValidationError(f"{field} must be > 0")
    return n


def coerce_non_negative_int(value: Any, field: str) -> int:
    n = coerce_int(value, field)
    if n < 0:
        raise ValidationError(f"{field} must be >= 0")
    return n


def require_text(value: Any, field: str) -> str:
    """Return the stripped string, or raise if it is missing or blank."""
    if value is None or str(value).strip() == "":
        raise ValidationError(f"{field} is required")
    return str(value).strip()


def optional_text(value: Any) -> str | None:
    if value is None:
        return None
    stripped = str(value).strip()
    return stripped or None


def _coerce_column(col, value: Any):
    """Coerce one JSON value to what the column stores; None passes through."""
    if value is None:
        return None

    if isinstance(col.type, Integer):
        return coerce_int(value, col.key)

    if isinstance(col.type, (String, Text)):
        text = str(value).strip()
        if isinstance(col.type, String) and col.type.length and len(text) > col.type.length:
            raise ValidationError(f"{col.key} exceeds max length {col.type.length}")
        return text

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
) -> dict:
    """
    Clean a create payload against the policy allowlist and the model's
    column types.

    Required fields must be present and non-blank. Optional fields sent as
    null or blank are dropped so the service applies its own default
    (a generated barcode, zero opening stock).
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    cols = _columns_by_key(model)
    unknown = sorted(k for k in payload if k not in policy.writable_fields or k not in cols)
    if unknown:
        raise ValidationError(f"Field not allowed: {', '.join(unknown)}")

    required = policy.required_on_create or set()
    cleaned: dict = {}
    for key, raw in payload.items():
        value = _coerce_column(cols[key], raw)
        if value is None or value == "":
            if key in required:
                raise ValidationError(f"{key} cannot be blank")
            continue
        cleaned[key] = value

    missing = sorted(required - cleaned.keys())
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
    return cleaned


def enforce_rules_product(patch: dict) -> None:
    """Product rules that column metadata does not capture."""
    if "price_cents" in patch and patch["price_cents"] is not None:
        price = patch["price_cents"]
        if price < 0:
            raise ValidationError("price_cents must be >= 0")
        if price > MAX_PRICE_CENTS:
            raise ValidationError(f"price_cents cannot exceed {MAX_PRICE_CENTS}")

    if "quantity" in patch and patch["quantity"] is not None:
        if patch["quantity"] < 0:
            raise ValidationError("quantity must be >= 0")
