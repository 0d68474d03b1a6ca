"""
User model.

Only the fields the fulfillment engine needs: identity, contact email and
the durable admin/active flags consulted during authorization.
"""

from typing import Optional

from sqlalchemy import Boolean, String, false, true
from sqlalchemy.orm import Mapped, mapped_column

from orderflow.database.base import BaseModel


class User(BaseModel):
    """Storefront account referenced by orders and returns."""

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        index=True,
        nullable=False,
    )

    full_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    is_admin: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=false(),
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=true(),
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email!r}, is_admin={self.is_admin})>"
