"""
Modelos SQLAlchemy para el módulo de Documentos Tributarios (DTE)

Este módulo maneja:
- TaxDocument: Boletas, Facturas, Notas de crédito/débito emitidas o recibidas
- TaxDocumentItem: Líneas de detalle de cada documento

Reglas:
- Los documentos nunca se eliminan; las correcciones son documentos nuevos
  y el anterior queda marcado con superseded_by_id
- (tenant, emisor, folio, tipo) es la llave natural y es única
- Las líneas se crean junto con el documento y no cambian fuera de DRAFT

Arquitectura multi-tenant: Todas las tablas incluyen tenant_id
"""

from app.database.database import Base
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Enum, Text, JSON, UniqueConstraint, Index
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import UUID
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin
import enum


# ===== ENUMS =====

class DocumentKind(enum.Enum):
    """Tipos de documento tributario"""
    INVOICE = "invoice"          # Factura electrónica (33)
    RECEIPT = "receipt"          # Boleta electrónica (39)
    CREDIT_NOTE = "credit_note"  # Nota de crédito (61)
    DEBIT_NOTE = "debit_note"    # Nota de débito (56)


class DocumentStatus(enum.Enum):
    """Ciclo de vida del documento"""
    DRAFT = "draft"          # Borrador local, no enviado
    PENDING = "pending"      # Enviado, esperando confirmación
    ISSUED = "issued"        # Emitido (documentos recibidos sin acuse)
    ACCEPTED = "accepted"    # Aceptado por la autoridad / receptor
    REJECTED = "rejected"    # Rechazado


class DocumentDirection(enum.Enum):
    """Emitido por la empresa o recibido de un tercero"""
    EMITTED = "emitted"
    RECEIVED = "received"


TERMINAL_STATUSES = (DocumentStatus.ACCEPTED, DocumentStatus.REJECTED)


# ===== MODELOS =====

class TaxDocument(Base, TenantMixin, TimestampMixin):
    """
    Registro local y autoritativo de un documento tributario
    """
    __tablename__ = "tax_documents"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)

    kind = Column(Enum(DocumentKind), nullable=False, index=True)
    external_type_code = Column(Integer, nullable=False)  # TipoDTE
    folio = Column(String(50), nullable=True)  # Asignado por la autoridad
    status = Column(Enum(DocumentStatus), nullable=False, default=DocumentStatus.DRAFT, index=True)
    direction = Column(Enum(DocumentDirection), nullable=False, default=DocumentDirection.EMITTED, index=True)

    # Partes
    emitter_tax_id = Column(String(20), nullable=False)
    emitter_name = Column(String(200), nullable=True)
    receiver_tax_id = Column(String(20), nullable=True)
    receiver_name = Column(String(200), nullable=True)
    receiver_email = Column(String(100), nullable=True)

    # Montos en unidades enteras de moneda (CLP no tiene decimales)
    net_amount = Column(Integer, nullable=False, default=0)
    tax_amount = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="CLP")

    issued_at = Column(DateTime(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)

    # Datos de la autoridad
    external_document_id = Column(String(100), nullable=True)
    pdf_url = Column(Text, nullable=True)
    xml_url = Column(Text, nullable=True)
    raw_external_response = Column(JSON, nullable=True)
    last_error = Column(Text, nullable=True)  # Último error de emisión, para seguimiento manual

    # Procedencia (como máximo una)
    source_pos_transaction_id = Column(UUID(as_uuid=True), ForeignKey("pos_transactions.id"), nullable=True, index=True)
    source_cost_id = Column(UUID(as_uuid=True), ForeignKey("costs.id"), nullable=True, index=True)

    # Correcciones
    superseded_by_id = Column(UUID(as_uuid=True), ForeignKey("tax_documents.id"), nullable=True)
    superseded_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    items = relationship(
        "TaxDocumentItem",
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="TaxDocumentItem.line_number"
    )
    source_pos_transaction = relationship("POSTransaction")
    source_cost = relationship("Cost")
    superseded_by = relationship("TaxDocument", remote_side=[id])

    __table_args__ = (
        UniqueConstraint("tenant_id", "emitter_tax_id", "folio", "kind", name="uq_tax_document_natural_key"),
        Index("ix_tax_documents_emitter_folio", "emitter_tax_id", "folio"),
    )

    @property
    def is_superseded(self) -> bool:
        return self.superseded_by_id is not None or self.superseded_at is not None

    @property
    def natural_key(self):
        return (self.emitter_tax_id, self.folio, self.kind)


class TaxDocumentItem(Base, TimestampMixin):
    """
    Línea de detalle de un documento tributario
    """
    __tablename__ = "tax_document_items"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tax_document_id = Column(UUID(as_uuid=True), ForeignKey("tax_documents.id"), nullable=False, index=True)

    line_number = Column(Integer, nullable=False)  # Base 1
    description = Column(String(300), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Integer, nullable=False, default=0)
    net = Column(Integer, nullable=False, default=0)
    tax = Column(Integer, nullable=False, default=0)
    total = Column(Integer, nullable=False, default=0)
    tax_exempt = Column(Boolean, nullable=False, default=False)

    # Relationships
    document = relationship("TaxDocument", back_populates="items")
