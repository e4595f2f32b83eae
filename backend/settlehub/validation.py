from __future__ import annotations
from datetime import datetime
from settlehub.time_utils import parse_iso_datetime

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Integer, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta


# Maximum price: 9,999,999,999 KRW
# This prevents database overflow issues and nonsensical prices
MAX_PRICE = 9_999_999_999
MAX_STOCK_QUANTITY = 10_000_000


class ValidationError(ValueError):
    """400-level input problem."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., duplicate email)."""


class NotFoundError(LookupError):
    """404-level missing resource."""


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    - aliases: camelCase request keys mapped onto column keys
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore
    aliases: dict[str, str] | None = None


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def coerce_int(value: Any, field: str) -> int:
    """Strict integer coercion: rejects bools, floats, decimals and scientific notation."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        # Reject scientific notation (e.g., "1e15", "1E10")
        if 'e' in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if '.' in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def require_int(payload: dict, key: str, *, minimum: int | None = None, alias: str | None = None) -> int:
    """Read a required integer from a JSON payload (accepting an optional alias key)."""
    raw = payload.get(key)
    if raw is None and alias:
        raw = payload.get(alias)
    if raw is None:
        raise ValidationError(f"{key} is required")
    value = coerce_int(raw, key)
    if minimum is not None and value < minimum:
        raise ValidationError(f"{key} must be >= {minimum}")
    return value


def optional_int(payload: dict, key: str, *, minimum: int | None = None, alias: str | None = None) -> int | None:
    raw = payload.get(key)
    if raw is None and alias:
        raw = payload.get(alias)
    if raw is None:
        return None
    value = coerce_int(raw, key)
    if minimum is not None and value < minimum:
        raise ValidationError(f"{key} must be >= {minimum}")
    return value


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return coerce_int(value, col.key)

    # Booleans
    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
            return value.strip().lower() == "true"
        raise ValidationError(f"{col.key} must be a boolean")

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            return dt
        raise ValidationError(f"{col.key} must be a datetime")

    # Strings / Text
    if isinstance(coltype, (String, Text)):
        if isinstance(value, (dict, list)):
            raise ValidationError(f"{col.key} must be a string")
        return str(value).strip()

    # Default: leave as-is
    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict keyed by column name.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    aliases = policy.aliases or {}
    normalized = {aliases.get(k, k): v for k, v in payload.items()}

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in normalized)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    # Reject unknown / non-writable fields
    for k in normalized.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in normalized.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        # Blank string check for non-nullable text fields
        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        # Max length check for String(n)
        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def enforce_rules_product(patch: dict) -> None:
    """
    Business rules that are not captured by SQLAlchemy metadata alone.
    Keep these small and centralized.
    """
    if "price" in patch and patch["price"] is not None:
        price = patch["price"]
        if price < 0:
            raise ValidationError("price must be >= 0")
        if price > MAX_PRICE:
            raise ValidationError(f"price cannot exceed {MAX_PRICE:,}")

    if "stock_quantity" in patch and patch["stock_quantity"] is not None:
        qty = patch["stock_quantity"]
        if qty < 0:
            raise ValidationError("stock_quantity must be >= 0")
        if qty > MAX_STOCK_QUANTITY:
            raise ValidationError(f"stock_quantity cannot exceed {MAX_STOCK_QUANTITY:,}")
