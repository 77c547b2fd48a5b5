"""
Modelos SQLAlchemy para el módulo de Costos

Un costo registrado (compra a proveedor, servicio) es una de las fuentes
desde las que se genera una factura electrónica.

Arquitectura multi-tenant: Todas las tablas incluyen tenant_id
"""

from app.database.database import Base
from sqlalchemy import Column, String, Date, ForeignKey, Numeric, Text, Integer
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import UUID
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin


class Cost(Base, TenantMixin, TimestampMixin):
    """
    Costo registrado por la empresa
    """
    __tablename__ = "costs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    vendor_name = Column(String(200), nullable=True)
    vendor_tax_id = Column(String(20), nullable=True)  # RUT del proveedor
    doc_type = Column(String(50), nullable=True)       # FACTURA, BOLETA, OTRO
    doc_number = Column(String(50), nullable=True)
    date = Column(Date, nullable=False)
    total = Column(Numeric(15, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="CLP")
    description = Column(Text, nullable=True)

    # Relationships
    lines = relationship("CostLine", back_populates="cost", cascade="all, delete-orphan")


class CostLine(Base, TimestampMixin):
    """
    Detalle de un costo
    """
    __tablename__ = "cost_lines"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    cost_id = Column(UUID(as_uuid=True), ForeignKey("costs.id"), nullable=False, index=True)
    description = Column(String(300), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    unit_cost = Column(Numeric(15, 2), nullable=False, default=0)
    total_cost = Column(Numeric(15, 2), nullable=False, default=0)

    # Relationships
    cost = relationship("Cost", back_populates="lines")
