from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
    func,
)
from sqlalchemy.orm import Mapped, Session, mapped_column

from stock_ledger.db import Base
from stock_ledger.exceptions import ImmutableMovementError
from stock_ledger.utils import utcnow

GLOBAL_LOCATION_KEY = 0
# location code addressing the location-less global pool
GLOBAL_POOL_CODE = "global"


def location_key(location_id: Optional[int]) -> int:
    return GLOBAL_LOCATION_KEY if location_id is None else int(location_id)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True
    )
    actor_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(64), index=True)
    entity_type: Mapped[str] = mapped_column(String(64), index=True)
    entity_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class Product(Base):
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(primary_key=True)
    sku: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255))
    category: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    min_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    cost_price: Mapped[Decimal] = mapped_column(
        Numeric(14, 4), nullable=False, default=Decimal("0"), server_default="0"
    )
    selling_price: Mapped[Decimal] = mapped_column(
        Numeric(14, 4), nullable=False, default=Decimal("0"), server_default="0"
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="1")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True
    )


class Location(Base):
    __tablename__ = "locations"

    id: Mapped[int] = mapped_column(primary_key=True)
    code: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="1")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )


class StockMovement(Base):
    """One ledger entry. Written once, never updated or deleted."""

    __tablename__ = "stock_movements"
    __table_args__ = (
        UniqueConstraint(
            "reference_type",
            "reference_id",
            "reference_line",
            "movement_type",
            name="ux_stock_movements_reference",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), index=True)
    location_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("locations.id"), nullable=True, index=True
    )
    movement_type: Mapped[str] = mapped_column(String(32), index=True)
    direction: Mapped[str] = mapped_column(String(16))
    quantity: Mapped[int] = mapped_column(Integer)
    unit_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 4), nullable=True)
    reference_type: Mapped[str] = mapped_column(String(32), index=True)
    reference_id: Mapped[str] = mapped_column(String(128), index=True)
    reference_line: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    reason_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    batch_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    expiry_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    note: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, index=True
    )

    @property
    def signed_quantity(self) -> int:
        return self.quantity if self.direction == "increase" else -self.quantity


class StockLevel(Base):
    """Materialized fold of the ledger for one (product, location) pair."""

    __tablename__ = "stock_levels"
    __table_args__ = (
        UniqueConstraint("product_id", "location_key", name="ux_stock_levels_pair"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), index=True)
    location_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("locations.id"), nullable=True, index=True
    )
    location_key: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_on_hand: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    quantity_reserved: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    cost_per_unit: Mapped[Decimal] = mapped_column(
        Numeric(14, 4), nullable=False, default=Decimal("0"), server_default="0"
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_movement_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    @property
    def quantity_available(self) -> int:
        return int(self.quantity_on_hand or 0) - int(self.quantity_reserved or 0)


class StockTransfer(Base):
    __tablename__ = "stock_transfers"

    id: Mapped[int] = mapped_column(primary_key=True)
    reference_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), index=True)
    from_location_id: Mapped[Optional[int]] = mapped_column(ForeignKey("locations.id"), nullable=True)
    to_location_id: Mapped[Optional[int]] = mapped_column(ForeignKey("locations.id"), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(32), index=True)
    compensation_reference: Mapped[Optional[str]] = mapped_column(String(160), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    note: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


@event.listens_for(Session, "before_flush")
def _reject_movement_changes(session: Session, flush_context, instances) -> None:
    for obj in session.dirty:
        if isinstance(obj, StockMovement) and session.is_modified(obj, include_collections=False):
            raise ImmutableMovementError(obj.id, "update")
    for obj in session.deleted:
        if isinstance(obj, StockMovement):
            raise ImmutableMovementError(obj.id, "delete")


class _AllLocations:
    """Location filter meaning "every location, including the global pool"."""

    def __repr__(self) -> str:
        return "ALL_LOCATIONS"


ALL_LOCATIONS = _AllLocations()
