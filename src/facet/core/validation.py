"""Input validation for the caller-facing surface.

Validators raise :class:`ValidationException` (or its subclass
:class:`ValueOutOfRangeError`) and run before any collaborator is called.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, TypeVar

from .exceptions import ValidationException, ValueOutOfRangeError

MAX_U64 = 2**64 - 1
MAX_OWNER_LENGTH = 256

_CATEGORY_RE = re.compile(r"^[a-z0-9][a-z0-9_.-]{0,63}$")

E = TypeVar("E", bound=Enum)


def _require_int(value: Any, field: str) -> int:
    # bool is an int subclass; True/False are never meaningful amounts
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationException(f"{field} must be an integer", field=field, value=value)
    return value


def validate_owner(owner: Any) -> str:
    """Validate an opaque principal identifier."""
    if not isinstance(owner, str) or not owner.strip():
        raise ValidationException("owner must be a non-empty string", field="owner", value=owner)
    if len(owner) > MAX_OWNER_LENGTH:
        raise ValidationException(
            f"owner must be at most {MAX_OWNER_LENGTH} characters",
            field="owner",
        )
    return owner


def validate_amount(value: Any, field: str = "amount") -> int:
    """Validate an unsigned 64-bit amount."""
    value = _require_int(value, field)
    if value < 0:
        raise ValueOutOfRangeError(f"{field} cannot be negative", field=field, value=value)
    if value > MAX_U64:
        raise ValueOutOfRangeError(f"{field} exceeds the maximum of {MAX_U64}", field=field, value=value)
    return value


def validate_field_element(value: Any, modulus: int, field: str = "value") -> int:
    """Validate a non-negative integer strictly below ``modulus``."""
    value = _require_int(value, field)
    if value < 0:
        raise ValueOutOfRangeError(f"{field} cannot be negative", field=field, value=value)
    if value >= modulus:
        raise ValueOutOfRangeError(f"{field} must be below the field modulus", field=field)
    return value


def validate_context_index(index: Any) -> int:
    """Validate a context index (u64, as stored by the ledger)."""
    index = _require_int(index, "index")
    if index < 0:
        raise ValidationException("index cannot be negative", field="index", value=index)
    if index > MAX_U64:
        raise ValidationException("index exceeds u64 range", field="index", value=index)
    return index


def validate_category(category: Any) -> str:
    """Validate a context category label.

    Categories are opaque labels; any lowercase slug is accepted so callers
    can use their own vocabulary alongside :class:`ContextCategory`.
    """
    if isinstance(category, Enum):
        category = category.value
    if not isinstance(category, str) or not _CATEGORY_RE.match(category):
        raise ValidationException(
            "category must be a lowercase label of 1-64 characters [a-z0-9_.-]",
            field="category",
            value=category,
        )
    return category


def validate_enum(value: Any, enum_cls: type[E], field: str) -> E:
    """Coerce a value (member, value or case-insensitive name) to an enum member."""
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        for member in enum_cls:
            if value.lower() in (str(member.value).lower(), member.name.lower()):
                return member
    allowed = ", ".join(str(m.value) for m in enum_cls)
    raise ValidationException(f"{field} must be one of: {allowed}", field=field, value=value)
