"""
Modelos SQLAlchemy para el módulo POS (Point of Sale)

Este módulo almacena las ventas sincronizadas desde el proveedor de
terminales POS:
- POSTransaction: Una venta con su identificador externo
- POSTransactionItem: Productos de la venta

El identificador externo puede venir vacío desde el proveedor; en ese caso
se sintetiza (ver app.modules.pos.identity) antes de persistir.

Arquitectura multi-tenant: Todas las tablas incluyen tenant_id
"""

from app.database.database import Base
from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Text
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import UUID
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin


class POSTransaction(Base, TenantMixin, TimestampMixin):
    """
    Venta POS sincronizada

    external_sale_id es único en todo el almacén.
    """
    __tablename__ = "pos_transactions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    external_sale_id = Column(String(100), nullable=False, unique=True, index=True)
    sequence_number = Column(String(50), nullable=True)
    serial_number = Column(String(50), nullable=True)
    location_id = Column(String(50), nullable=True)
    address = Column(Text, nullable=True)
    status = Column(String(30), nullable=True)
    transaction_type = Column(String(30), nullable=True)
    transaction_date_time = Column(DateTime(timezone=True), nullable=False, index=True)

    # Montos en pesos enteros
    sale_amount = Column(Integer, nullable=False, default=0)
    tip_amount = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False, default=0)

    # Relationships
    items = relationship("POSTransactionItem", back_populates="transaction", cascade="all, delete-orphan")


class POSTransactionItem(Base, TimestampMixin):
    """
    Producto vendido en una transacción POS
    """
    __tablename__ = "pos_transaction_items"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    transaction_id = Column(UUID(as_uuid=True), ForeignKey("pos_transactions.id"), nullable=False, index=True)
    code = Column(String(50), nullable=True)
    name = Column(String(300), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    price = Column(Integer, nullable=False, default=0)

    # Relationships
    transaction = relationship("POSTransaction", back_populates="items")
