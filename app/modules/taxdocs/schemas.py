from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from uuid import UUID
from datetime import date, datetime
from enum import Enum

from app.common.validators import validate_chile_rut, format_chile_rut
from app.modules.taxdocs.models import DocumentKind, DocumentStatus, DocumentDirection


class AcknowledgmentCode(str, Enum):
    ACD = "ACD"  # Acepta contenido del documento
    RCD = "RCD"  # Reclamo al contenido del documento
    ERM = "ERM"  # Otorga recibo de mercaderías o servicios
    RFP = "RFP"  # Reclamo por falta parcial de mercaderías
    RFT = "RFT"  # Reclamo por falta total de mercaderías


# Receiver Schemas
class ReceiverIn(BaseModel):
    tax_id: Optional[str] = Field(None, max_length=20, description="RUT del receptor (12345678-5)")
    name: Optional[str] = Field(None, max_length=200)
    email: Optional[str] = Field(None, max_length=100)

    @field_validator('tax_id')
    @classmethod
    def normalize_tax_id(cls, v):
        if v is None:
            return v
        v = v.strip()
        if not v:
            return None
        # La validación del dígito verificador la hace el builder (InvalidReceiver)
        return format_chile_rut(v) if validate_chile_rut(v) else v


class CreateDocumentRequest(BaseModel):
    receiver: Optional[ReceiverIn] = None
    emit_now: bool = False


# Item Schemas
class TaxDocumentItemOut(BaseModel):
    id: UUID
    line_number: int
    description: str
    quantity: int
    unit_price: int
    net: int
    tax: int
    total: int
    tax_exempt: bool

    class Config:
        from_attributes = True


# Document Schemas
class TaxDocumentOut(BaseModel):
    id: UUID
    kind: DocumentKind
    external_type_code: int
    folio: Optional[str] = None
    status: DocumentStatus
    direction: DocumentDirection
    emitter_tax_id: str
    emitter_name: Optional[str] = None
    receiver_tax_id: Optional[str] = None
    receiver_name: Optional[str] = None
    receiver_email: Optional[str] = None
    net_amount: int
    tax_amount: int
    total_amount: int
    currency: str
    issued_at: Optional[datetime] = None
    notes: Optional[str] = None
    external_document_id: Optional[str] = None
    pdf_url: Optional[str] = None
    xml_url: Optional[str] = None
    last_error: Optional[str] = None
    source_pos_transaction_id: Optional[UUID] = None
    source_cost_id: Optional[UUID] = None
    superseded_by_id: Optional[UUID] = None
    superseded_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class TaxDocumentDetail(TaxDocumentOut):
    items: List[TaxDocumentItemOut] = []
    raw_external_response: Optional[Any] = None


class TaxDocumentList(BaseModel):
    documents: List[TaxDocumentOut]
    total: int
    limit: int
    offset: int


class TaxDocumentFilters(BaseModel):
    kind: Optional[DocumentKind] = None
    status: Optional[DocumentStatus] = None
    direction: Optional[DocumentDirection] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    search: Optional[str] = None
    include_superseded: bool = True


class DocumentStats(BaseModel):
    total_documents: int
    by_status: Dict[str, int]
    by_kind: Dict[str, int]
    last_30_days: int
    accepted_amount: int


class SupersedeRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class AcknowledgeRequest(BaseModel):
    code: AcknowledgmentCode = AcknowledgmentCode.ACD


# Import Schemas
class ImportRequest(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    document_type: Optional[int] = Field(None, description="TipoDTE (33, 39, 56, 61)")
    counterparty_tax_id: Optional[str] = Field(None, description="RUT del emisor sin dígito verificador")
    dry_run: bool = False
    max_pages: Optional[int] = Field(None, ge=1, le=50)

    @field_validator('end_date')
    @classmethod
    def validate_range(cls, v, info):
        start = info.data.get('start_date')
        if v and start and v < start:
            raise ValueError('La fecha final no puede ser anterior a la inicial')
        return v


class ImportErrorItem(BaseModel):
    natural_key: Optional[str] = None
    reason: str


class ImportSummary(BaseModel):
    total_fetched: int = 0
    total_imported: int = 0
    total_skipped: int = 0
    errors: List[ImportErrorItem] = []
    pages_fetched: int = 0
    dry_run: bool = False
    aborted: bool = False
    abort_reason: Optional[str] = None


class ReceivedDocumentsPage(BaseModel):
    data: List[Dict[str, Any]] = []
    current_page: int = 1
    last_page: int = 1
    total: int = 0


# Links
class CostLink(BaseModel):
    cost_id: UUID
    count: int
    latest_document_id: Optional[UUID] = None
    latest_status: Optional[DocumentStatus] = None
    latest_folio: Optional[str] = None


class AuthorityHealth(BaseModel):
    ok: bool
    tax_id: str
    name: Optional[str] = None
    detail: Optional[str] = None
