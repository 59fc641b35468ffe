"""
Wine cave and wine inventory models

Stock is never negative: enforced by a CHECK constraint and by the
allocator's conditional decrement.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, CheckConstraint, Index
from sqlalchemy.orm import relationship

from vinclub.core.database import Base


class WineCave(Base):
    """A cellar that owns wine stock and ships subscription boxes."""
    __tablename__ = "wine_caves"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)

    # Ship-from address (falls back to SHIPPING_ORIGIN_* when empty)
    address_line1 = Column(String(255), nullable=True)
    city = Column(String(100), nullable=True)
    postal_code = Column(String(20), nullable=True)
    country_code = Column(String(2), default="FR")
    phone = Column(String(30), nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    wines = relationship("Wine", back_populates="wine_cave")

    def __repr__(self):
        return f"<WineCave(id={self.id}, name={self.name})>"


class Wine(Base):
    __tablename__ = "wines"
    __table_args__ = (
        CheckConstraint("stock_quantity >= 0", name="ck_wines_stock_non_negative"),
        Index("ix_wines_cave_stock", "wine_cave_id", "stock_quantity"),
    )

    id = Column(Integer, primary_key=True, index=True)
    wine_cave_id = Column(Integer, ForeignKey("wine_caves.id"), nullable=False)
    name = Column(String(255), nullable=False)
    varietal = Column(String(100), nullable=True)
    vintage = Column(Integer, nullable=True)
    stock_quantity = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    wine_cave = relationship("WineCave", back_populates="wines")

    @property
    def description(self) -> str:
        """Package description sent to carriers."""
        if self.varietal:
            return f"{self.name} - {self.varietal}"
        return self.name

    def __repr__(self):
        return f"<Wine(id={self.id}, name={self.name}, stock={self.stock_quantity})>"
