#!/usr/bin/env python3
"""SQLAlchemy ORM models for the machine record database.

Defines database schema using SQLAlchemy declarative models.
"""

from typing import Optional

from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class Machine(Base):
    """Physical machine model.

    Spec columns hold the desired state, status columns the observed state.
    The version column backs optimistic concurrency on every update.
    """

    __tablename__ = "machines"

    name: Mapped[str] = mapped_column(String, primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[str] = mapped_column(String, nullable=False)
    labels: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # JSON as TEXT

    # Spec
    power_state: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    control_type: Mapped[str] = mapped_column(String, nullable=False, default="wol")
    wol_address: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    wol_mac_address: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    wol_port: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    wol_broadcast_address: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    wol_user: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    ipmi_address: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    ipmi_username: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    ipmi_password: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Status
    phase: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    failing_since: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return (
            f"<Machine(name={self.name}, power_state={self.power_state}, "
            f"phase={self.phase}, version={self.version})>"
        )
