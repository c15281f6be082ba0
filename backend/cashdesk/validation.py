from __future__ import annotations

from typing import Any

from .errors import ValidationError


# Maximum amount: 9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical amounts
MAX_AMOUNT_CENTS = 999_999_999


def coerce_int(value: Any, field: str) -> int:
    """
    Strict integer coercion for JSON payload values.

    Accepts ints and plain digit strings (optional leading minus). Rejects
    bools, floats, decimals and scientific notation so that "12.5" or
    "1e3" never silently become cents.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer", field=field)
        if "e" in stripped.lower():
            raise ValidationError(
                f"{field} must be a plain integer (scientific notation not allowed)", field=field
            )
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)", field=field)
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer", field=field)
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal", field=field)
    raise ValidationError(f"{field} must be an integer", field=field)


def coerce_cents(value: Any, field: str, *, required: bool = True) -> int | None:
    """Integer cents within [-MAX_AMOUNT_CENTS, MAX_AMOUNT_CENTS]."""
    if value is None:
        if required:
            raise ValidationError(f"{field} is required", field=field)
        return None
    cents = coerce_int(value, field)
    if abs(cents) > MAX_AMOUNT_CENTS:
        raise ValidationError(
            f"{field} exceeds the maximum of {MAX_AMOUNT_CENTS} cents", field=field, value=cents
        )
    return cents


def coerce_bool(value: Any, field: str, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "1", "yes"}:
        return True
    if isinstance(value, str) and value.strip().lower() in {"false", "0", "no"}:
        return False
    raise ValidationError(f"{field} must be a boolean", field=field)


def clean_text(value: Any, max_length: int | None = None) -> str | None:
    """Strip strings; blank -> None; overlong text is rejected."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if max_length is not None and len(text) > max_length:
        raise ValidationError(
            f"text exceeds {max_length} characters", max_length=max_length, length=len(text)
        )
    return text


def require_json_object(payload: Any) -> dict:
    if not isinstance(payload, dict):
        raise ValidationError("JSON object body required")
    return payload
