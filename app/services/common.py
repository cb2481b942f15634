"""Common helper functions for service layer.

This module provides reusable utilities for:
- UUID handling
- Query ordering and pagination
- Enum validation
- Entity retrieval with 404 handling
- Gateway timestamp conversion
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, TypeVar

from fastapi import HTTPException

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

T = TypeVar("T")


def coerce_uuid(value):
    """Convert value to UUID, returning None if value is None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def apply_ordering(query, order_by: str, order_dir: str, allowed_columns: dict):
    """Apply ordering to a query with validation.

    Raises:
        HTTPException: 400 if order_by is not in allowed_columns
    """
    if order_by not in allowed_columns:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid order_by. Allowed: {', '.join(sorted(allowed_columns))}",
        )
    column = allowed_columns[order_by]
    if order_dir == "desc":
        return query.order_by(column.desc())
    return query.order_by(column.asc())


def apply_pagination(query, limit: int, offset: int):
    return query.limit(limit).offset(offset)


def validate_enum(value, enum_cls, label: str):
    """Validate and convert a value to an enum member.

    Raises:
        HTTPException: 400 if value is not a valid enum member
    """
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {label}") from exc


def get_or_404(db: Session, model: type[T], id, detail: str | None = None) -> T:
    """Get entity by primary key or raise 404.

    UUID primary keys are coerced; malformed ids are reported as not found.
    """
    key = id
    pk_type = model.__table__.primary_key.columns.values()[0].type
    if getattr(pk_type, "as_uuid", False):
        try:
            key = coerce_uuid(id)
        except ValueError:
            key = None
    entity = db.get(model, key) if key is not None else None
    if not entity:
        raise HTTPException(
            status_code=404, detail=detail or f"{model.__name__} not found"
        )
    return entity


def from_timestamp(value) -> datetime | None:
    """Convert a gateway unix timestamp (seconds) to an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on reload)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_uuid(value, label: str):
    """Coerce a query parameter to UUID.

    Raises:
        HTTPException: 400 if value is not a valid UUID
    """
    try:
        return coerce_uuid(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {label}") from exc
