from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import Response
from sqlalchemy.orm import Session
from typing import List, Optional
from uuid import UUID
from datetime import date

from app.database.database import get_db
from app.core.config import settings
from app.dependencies.companyDependencies import TenantId
from app.dependencies.authorityDependencies import get_tax_authority_client
from app.modules.taxdocs.authority import TaxAuthorityClient
from app.modules.taxdocs.models import DocumentKind, DocumentStatus, DocumentDirection
from app.modules.taxdocs.retrieval import ArtifactFormat, DisplayMode
from app.modules.taxdocs.service import TaxDocumentService
from app.modules.taxdocs.schemas import (
    CreateDocumentRequest, TaxDocumentOut, TaxDocumentDetail, TaxDocumentList,
    TaxDocumentFilters, DocumentStats, SupersedeRequest, AcknowledgeRequest,
    ImportRequest, ImportSummary, ReceivedDocumentsPage, CostLink, AuthorityHealth
)

# Router del motor de documentos tributarios
router = APIRouter(prefix="/invoicing", tags=["Invoicing"])


@router.get("/health", response_model=AuthorityHealth)
def authority_health(
    db: Session = Depends(get_db),
    authority: TaxAuthorityClient = Depends(get_tax_authority_client)
):
    """
    Verificar conectividad con la autoridad tributaria (consulta del RUT emisor)
    """
    service = TaxDocumentService(db, authority)
    return service.check_authority_health()


@router.get("/documents", response_model=TaxDocumentList)
def list_documents(
    tenant_id: TenantId,
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    kind: Optional[DocumentKind] = Query(None, description="Tipo de documento"),
    status: Optional[DocumentStatus] = Query(None, description="Estado del documento"),
    direction: Optional[DocumentDirection] = Query(None, description="Emitidos o recibidos"),
    start_date: Optional[date] = Query(None, description="Fecha inicial (YYYY-MM-DD)"),
    end_date: Optional[date] = Query(None, description="Fecha final (YYYY-MM-DD)"),
    search: Optional[str] = Query(None, description="Buscar por folio, RUT o razón social"),
    include_superseded: bool = Query(True),
    db: Session = Depends(get_db)
):
    """
    Listar documentos tributarios con filtros
    """
    service = TaxDocumentService(db)
    filters = TaxDocumentFilters(
        kind=kind,
        status=status,
        direction=direction,
        date_from=start_date,
        date_to=end_date,
        search=search,
        include_superseded=include_superseded
    )
    return service.list_documents(tenant_id, filters, limit, offset)


@router.get("/documents/stats", response_model=DocumentStats)
def document_stats(tenant_id: TenantId, db: Session = Depends(get_db)):
    """
    Totales por estado y tipo
    """
    service = TaxDocumentService(db)
    return service.get_stats(tenant_id)


@router.get("/documents/{document_id}", response_model=TaxDocumentDetail)
def get_document(document_id: UUID, tenant_id: TenantId, db: Session = Depends(get_db)):
    service = TaxDocumentService(db)
    return service.get_document_by_id(document_id, tenant_id)


@router.post("/boletas/from-pos/{pos_transaction_id}", response_model=TaxDocumentDetail, status_code=status.HTTP_201_CREATED)
def create_receipt_from_pos(
    pos_transaction_id: UUID,
    tenant_id: TenantId,
    payload: Optional[CreateDocumentRequest] = None,
    db: Session = Depends(get_db),
    authority: TaxAuthorityClient = Depends(get_tax_authority_client)
):
    """
    Crear una boleta desde una venta POS

    Sin receptor la boleta se emite a consumidor final. Con emit_now=true se
    emite de inmediato; si la emisión falla el documento se devuelve igual
    con el error en last_error.
    """
    payload = payload or CreateDocumentRequest()
    service = TaxDocumentService(db, authority)
    return service.create_draft_from_pos(pos_transaction_id, tenant_id, payload.receiver, payload.emit_now)


@router.post("/facturas/from-cost/{cost_id}", response_model=TaxDocumentDetail, status_code=status.HTTP_201_CREATED)
def create_invoice_from_cost(
    cost_id: UUID,
    payload: CreateDocumentRequest,
    tenant_id: TenantId,
    db: Session = Depends(get_db),
    authority: TaxAuthorityClient = Depends(get_tax_authority_client)
):
    """
    Crear una factura desde un costo (receptor obligatorio)
    """
    service = TaxDocumentService(db, authority)
    return service.create_draft_from_cost(cost_id, tenant_id, payload.receiver, payload.emit_now)


@router.post("/documents/{document_id}/emit", response_model=TaxDocumentDetail)
def emit_document(
    document_id: UUID,
    tenant_id: TenantId,
    db: Session = Depends(get_db),
    authority: TaxAuthorityClient = Depends(get_tax_authority_client)
):
    """
    Emitir un documento en borrador

    Idempotente: un documento ya aceptado se devuelve sin reenviarlo.
    """
    service = TaxDocumentService(db, authority)
    return service.emit_document(document_id, tenant_id)


@router.post("/documents/{document_id}/supersede", response_model=TaxDocumentOut)
def supersede_document(
    document_id: UUID,
    tenant_id: TenantId,
    payload: Optional[SupersedeRequest] = None,
    db: Session = Depends(get_db)
):
    """
    Marcar un documento como reemplazado por una corrección
    """
    service = TaxDocumentService(db)
    return service.supersede_document(document_id, tenant_id, payload.reason if payload else None)


@router.get("/documents/{document_id}/{fmt}")
def get_document_artifact(
    document_id: UUID,
    fmt: ArtifactFormat,
    tenant_id: TenantId,
    display: DisplayMode = Query(DisplayMode.INLINE, description="inline o download"),
    db: Session = Depends(get_db),
    authority: TaxAuthorityClient = Depends(get_tax_authority_client)
):
    """
    Obtener el PDF, XML o JSON de un documento

    El header X-Artifact-Tier indica qué fuente lo resolvió
    (cache, live o synthesized).
    """
    service = TaxDocumentService(db, authority)
    artifact = service.get_document_artifact(document_id, tenant_id, fmt)
    return Response(
        content=artifact.content,
        media_type=artifact.content_type,
        headers={
            "Content-Disposition": artifact.content_disposition(display),
            "X-Artifact-Tier": artifact.tier.value,
        }
    )


@router.get("/received-documents", response_model=ReceivedDocumentsPage)
def preview_received_documents(
    tenant_id: TenantId,
    page: int = Query(1, ge=1),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    document_type: Optional[int] = Query(None, description="TipoDTE"),
    counterparty_tax_id: Optional[str] = Query(None, description="RUT emisor sin DV"),
    db: Session = Depends(get_db),
    authority: TaxAuthorityClient = Depends(get_tax_authority_client)
):
    """
    Consultar una página del registro de documentos recibidos sin importarla
    """
    service = TaxDocumentService(db, authority)
    return service.preview_received_documents(page, start_date, end_date, document_type, counterparty_tax_id)


@router.post("/received-documents/import", response_model=ImportSummary)
def import_received_documents(
    request: ImportRequest,
    tenant_id: TenantId,
    db: Session = Depends(get_db),
    authority: TaxAuthorityClient = Depends(get_tax_authority_client)
):
    """
    Importar documentos recibidos

    Siempre devuelve un resumen, incluso si el feed falla a mitad de camino
    (aborted=true). Con dry_run=true no se escribe nada.
    """
    service = TaxDocumentService(db, authority)
    return service.import_received_documents(
        tenant_id,
        start_date=request.start_date,
        end_date=request.end_date,
        dry_run=request.dry_run,
        document_type=request.document_type,
        counterparty_tax_id=request.counterparty_tax_id,
        max_pages=request.max_pages
    )


@router.post("/received-documents/{document_id}/acknowledge", response_model=TaxDocumentOut)
def acknowledge_received_document(
    document_id: UUID,
    payload: AcknowledgeRequest,
    tenant_id: TenantId,
    db: Session = Depends(get_db),
    authority: TaxAuthorityClient = Depends(get_tax_authority_client)
):
    service = TaxDocumentService(db, authority)
    return service.acknowledge_received_document(document_id, tenant_id, payload.code)


@router.get("/links/cost", response_model=List[CostLink])
def cost_links(
    tenant_id: TenantId,
    ids: List[UUID] = Query(..., description="IDs de costos"),
    db: Session = Depends(get_db)
):
    """
    Documentos vinculados a cada costo
    """
    service = TaxDocumentService(db)
    return service.get_cost_links(tenant_id, ids)
