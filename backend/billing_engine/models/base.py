"""
Base model class for all SQLAlchemy models.

WHY: Centralizing common model functionality (timestamps, ID, metadata
handling) in a base module ensures consistency across all billing records.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union

from sqlalchemy import Column, Integer, DateTime
from sqlalchemy.orm import DeclarativeBase

from billing_engine.core.exceptions import ValidationError

# Values allowed inside a metadata bag
MetadataValue = Union[str, int, float, bool, None]
Metadata = Dict[str, MetadataValue]


def utcnow() -> datetime:
    """
    Current time as a naive UTC datetime.

    WHY: All billing timestamps are stored naive in UTC. datetime.utcnow()
    is deprecated, so this is the single replacement used everywhere.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_metadata(metadata: Optional[Mapping[str, Any]]) -> Metadata:
    """
    Validate a metadata bag and return a plain dict copy.

    WHY: Metadata travels to payment providers and into JSON columns.
    Only primitive values survive both trips unchanged, so nested objects
    are rejected up front instead of being silently stringified.

    Args:
        metadata: Mapping of string keys to primitive values (or None)

    Returns:
        New dict with the same entries

    Raises:
        ValidationError: If a key is not a string or a value is not primitive
    """
    if metadata is None:
        return {}

    normalized: Metadata = {}
    for key, value in metadata.items():
        if not isinstance(key, str):
            raise ValidationError(
                message="Metadata keys must be strings",
                key_type=type(key).__name__,
            )
        if value is not None and not isinstance(value, (str, int, float, bool)):
            raise ValidationError(
                message=f"Metadata value for '{key}' must be a primitive",
                field=key,
                value_type=type(value).__name__,
            )
        normalized[key] = value
    return normalized


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy models.

    WHY: DeclarativeBase provides the foundation for SQLAlchemy 2.0 models
    with improved type hints and async support.
    """

    pass


class TimestampMixin:
    """
    Mixin to add created_at and updated_at timestamps to models.

    WHY: Every billing record needs timestamps for audit trails and
    for the time-based transitions (overdue invoices, due dunning events).
    """

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class PrimaryKeyMixin:
    """
    Mixin to add an integer primary key to models.
    """

    id = Column(Integer, primary_key=True, index=True)
