"""
SQLAlchemy declarative base and common model mixins.

This module provides the SQLAlchemy DeclarativeBase, mixins for UUID keys,
timestamps and optimistic versioning, and dialect-neutral column types so the
same models run on PostgreSQL in production and SQLite in tests.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Integer, Uuid, func, update
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def enum_column_type(enum_cls: type[enum.Enum], name: str) -> SQLEnum:
    """
    Build a portable enum column type storing the members' string values.

    Args:
        enum_cls: Python enum class
        name: Constraint/type name

    Returns:
        SQLAlchemy Enum type backed by VARCHAR with a CHECK constraint
    """
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        create_constraint=True,
        length=32,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime read from the database to aware UTC.

    SQLite drops tzinfo on round trip; values are always written in UTC so a
    naive value can be safely interpreted as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Base(AsyncAttrs, DeclarativeBase):
    """
    Base class for all SQLAlchemy models with async support.
    """

    __abstract__ = True

    def to_dict(self, exclude: Optional[set[str]] = None) -> dict[str, Any]:
        """
        Convert model instance to a JSON-friendly dictionary.

        Args:
            exclude: Set of attribute names to exclude from output

        Returns:
            Dictionary representation of the model's columns
        """
        exclude = exclude or set()
        result: dict[str, Any] = {}

        for column in self.__table__.columns:
            if column.name in exclude:
                continue
            value = getattr(self, column.key)
            if isinstance(value, datetime):
                result[column.name] = as_utc(value).isoformat()
            elif isinstance(value, uuid.UUID):
                result[column.name] = str(value)
            elif hasattr(value, "value") and not isinstance(value, (dict, list)):
                result[column.name] = value.value
            else:
                result[column.name] = value

        return result

    def __repr__(self) -> str:
        pk_values = []
        for column in self.__table__.primary_key.columns:
            value = getattr(self, column.key, None)
            if value is not None:
                pk_values.append(f"{column.name}={value!r}")

        pk_str = ", ".join(pk_values) if pk_values else "no primary key"
        return f"<{self.__class__.__name__}({pk_str})>"


class TimestampMixin:
    """
    Mixin adding created_at/updated_at columns.

    Values are produced application-side in UTC so every dialect stores the
    same thing.
    """

    @declared_attr
    def created_at(cls) -> Mapped[datetime]:
        return mapped_column(
            DateTime(timezone=True),
            nullable=False,
            default=utcnow,
            server_default=func.now(),
        )

    @declared_attr
    def updated_at(cls) -> Mapped[datetime]:
        return mapped_column(
            DateTime(timezone=True),
            nullable=False,
            default=utcnow,
            onupdate=utcnow,
            server_default=func.now(),
        )


class UUIDMixin:
    """Mixin for a UUID primary key generated client-side."""

    @declared_attr
    def id(cls) -> Mapped[uuid.UUID]:
        return mapped_column(
            Uuid(as_uuid=True),
            primary_key=True,
            default=uuid.uuid4,
            nullable=False,
        )


class VersionMixin:
    """
    Mixin for optimistic concurrency control.

    Repositories issue ``UPDATE ... WHERE id = :id AND version = :version``
    and bump the counter; a zero rowcount means another writer won.
    """

    @declared_attr
    def version(cls) -> Mapped[int]:
        return mapped_column(Integer, nullable=False, default=1, server_default="1")


class BaseModel(Base, UUIDMixin, TimestampMixin):
    """
    Base model with UUID primary key and timestamps.

    Example:
        class User(BaseModel):
            __tablename__ = "users"

            email: Mapped[str] = mapped_column(String(255), unique=True)
    """

    __abstract__ = True


class VersionedModel(BaseModel, VersionMixin):
    """Base model for mutable shared records written with conditional updates."""

    __abstract__ = True


async def versioned_update(
    session: Any,
    instance: "VersionedModel",
    values: dict[str, Any],
    expected_status: Optional[Any] = None,
) -> bool:
    """
    Apply ``values`` to ``instance`` only if nobody else changed it.

    Issues ``UPDATE ... WHERE id = :id AND version = :version`` (plus the
    expected status when given), bumps the version and refreshes the
    instance on success.

    Args:
        session: Async session owning ``instance``
        instance: Loaded versioned model instance
        values: Column values to write
        expected_status: Status the row must still have

    Returns:
        True if the row was updated, False if the condition did not match
    """
    model = type(instance)
    stmt = (
        update(model)
        .where(model.id == instance.id, model.version == instance.version)
        .values(**values, version=instance.version + 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if expected_status is not None:
        stmt = stmt.where(model.status == expected_status)

    result = await session.execute(stmt)
    if result.rowcount != 1:
        await session.refresh(instance)
        return False

    await session.refresh(instance)
    return True
