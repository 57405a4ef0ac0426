"""
Shared validation helpers for NoteBridge services.
"""

from __future__ import annotations

from typing import Optional

from notebridge.config import (
    MAX_DISPLAY_NAME_LENGTH,
    MAX_EXTERNAL_ID_LENGTH,
    MAX_OWNER_ID_LENGTH,
)
from notebridge.errors import ValidationIssue


def validate_required_text(value: str, field: str, max_len: int) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationIssue(f"{field} must be a non-empty string", field=field, error_type="required")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_optional_text(value: Optional[str], field: str, max_len: int) -> None:
    if value is None:
        return
    if not isinstance(value, str):
        raise ValidationIssue(f"{field} must be a string", field=field, error_type="invalid_type")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_limit(value: int, field: str, max_value: int) -> None:
    if value <= 0 or value > max_value:
        raise ValidationIssue(f"{field} must be between 1 and {max_value}", field=field, error_type="out_of_range")


def normalize_owner_id(owner_id) -> str:
    """Owner ids arrive as ints from some callers and strings from others."""
    if isinstance(owner_id, bool):
        raise ValidationIssue("owner_id must be a string or integer", field="owner_id", error_type="invalid_type")
    if isinstance(owner_id, int):
        owner_id = str(owner_id)
    validate_required_text(owner_id, "owner_id", MAX_OWNER_ID_LENGTH)
    return owner_id.strip()


def validate_slot_fields(external_index_id: str, category_id: Optional[str], name: Optional[str]) -> None:
    validate_required_text(external_index_id, "external_index_id", MAX_EXTERNAL_ID_LENGTH)
    validate_optional_text(category_id, "category_id", MAX_EXTERNAL_ID_LENGTH)
    validate_optional_text(name, "name", MAX_DISPLAY_NAME_LENGTH)
