from fastapi import HTTPException, status
from sqlalchemy.orm import Session, selectinload
from sqlalchemy import or_, func
from typing import List, Optional
from uuid import UUID
from datetime import date, datetime, time, timedelta, timezone
import logging

from app.core.config import settings
from app.modules.costs.models import Cost
from app.modules.pos.models import POSTransaction
from app.modules.taxdocs.authority import TaxAuthorityClient
from app.modules.taxdocs.builder import DocumentBuilder
from app.modules.taxdocs.codes import map_acknowledgment_to_status
from app.modules.taxdocs.emission import EmissionClient
from app.modules.taxdocs.exceptions import TaxDocumentError, UpstreamTransportError
from app.modules.taxdocs.importer import ReceivedDocumentImporter, ordered_acknowledgments
from app.modules.taxdocs.models import TaxDocument, DocumentKind, DocumentStatus, DocumentDirection
from app.modules.taxdocs.retrieval import RetrievalGateway, ArtifactFormat, ResolvedArtifact
from app.modules.taxdocs.schemas import (
    ReceiverIn, TaxDocumentFilters, DocumentStats, ImportSummary,
    ReceivedDocumentsPage, CostLink, AuthorityHealth, AcknowledgmentCode
)

logger = logging.getLogger(__name__)


class TaxDocumentService:
    """
    Fachada del motor de documentos tributarios.

    Crea borradores desde POS/costos, emite, importa documentos recibidos y
    resuelve artefactos. El cliente de la autoridad se inyecta por request.
    """

    def __init__(self, db: Session, authority: Optional[TaxAuthorityClient] = None):
        self.db = db
        self.authority = authority
        self.builder = DocumentBuilder(db)

    def _require_authority(self) -> TaxAuthorityClient:
        if self.authority is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Cliente de la autoridad tributaria no configurado"
            )
        return self.authority

    # ===== Consultas =====

    def get_document_by_id(self, document_id: UUID, tenant_id: UUID) -> TaxDocument:
        document = self.db.query(TaxDocument).options(
            selectinload(TaxDocument.items)
        ).filter(
            TaxDocument.id == document_id,
            TaxDocument.tenant_id == tenant_id
        ).first()

        if not document:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Documento tributario no encontrado"
            )
        return document

    def list_documents(self, tenant_id: UUID, filters: TaxDocumentFilters, limit: int = 20, offset: int = 0) -> dict:
        """Listar documentos con filtros y paginación"""
        query = self.db.query(TaxDocument).filter(TaxDocument.tenant_id == tenant_id)

        if filters.kind:
            query = query.filter(TaxDocument.kind == filters.kind)
        if filters.status:
            query = query.filter(TaxDocument.status == filters.status)
        if filters.direction:
            query = query.filter(TaxDocument.direction == filters.direction)

        document_date = func.coalesce(TaxDocument.issued_at, TaxDocument.created_at)
        if filters.date_from:
            query = query.filter(document_date >= datetime.combine(filters.date_from, time.min))
        if filters.date_to:
            query = query.filter(document_date < datetime.combine(filters.date_to + timedelta(days=1), time.min))

        if filters.search:
            term = f"%{filters.search.strip()}%"
            query = query.filter(or_(
                TaxDocument.folio.ilike(term),
                TaxDocument.emitter_name.ilike(term),
                TaxDocument.receiver_name.ilike(term),
                TaxDocument.emitter_tax_id.ilike(term),
                TaxDocument.receiver_tax_id.ilike(term)
            ))

        if not filters.include_superseded:
            query = query.filter(TaxDocument.superseded_at.is_(None))

        total = query.count()
        documents = query.order_by(TaxDocument.created_at.desc()).offset(offset).limit(limit).all()

        return {
            "documents": documents,
            "total": total,
            "limit": limit,
            "offset": offset
        }

    def get_stats(self, tenant_id: UUID) -> DocumentStats:
        base = self.db.query(TaxDocument).filter(TaxDocument.tenant_id == tenant_id)

        by_status = {
            doc_status.value: count
            for doc_status, count in self.db.query(TaxDocument.status, func.count(TaxDocument.id))
            .filter(TaxDocument.tenant_id == tenant_id)
            .group_by(TaxDocument.status).all()
        }
        by_kind = {
            kind.value: count
            for kind, count in self.db.query(TaxDocument.kind, func.count(TaxDocument.id))
            .filter(TaxDocument.tenant_id == tenant_id)
            .group_by(TaxDocument.kind).all()
        }

        since = datetime.now(timezone.utc) - timedelta(days=30)
        last_30_days = base.filter(TaxDocument.created_at >= since).count()

        accepted_amount = self.db.query(func.coalesce(func.sum(TaxDocument.total_amount), 0)).filter(
            TaxDocument.tenant_id == tenant_id,
            TaxDocument.status.in_([DocumentStatus.ACCEPTED, DocumentStatus.ISSUED])
        ).scalar()

        return DocumentStats(
            total_documents=base.count(),
            by_status=by_status,
            by_kind=by_kind,
            last_30_days=last_30_days,
            accepted_amount=int(accepted_amount or 0)
        )

    def get_cost_links(self, tenant_id: UUID, cost_ids: List[UUID]) -> List[CostLink]:
        """Documentos vinculados a cada costo (cantidad y el más reciente)"""
        if not cost_ids:
            return []

        documents = self.db.query(TaxDocument).filter(
            TaxDocument.tenant_id == tenant_id,
            TaxDocument.source_cost_id.in_(cost_ids)
        ).order_by(TaxDocument.created_at.desc()).all()

        links = {cost_id: CostLink(cost_id=cost_id, count=0) for cost_id in cost_ids}
        for document in documents:
            link = links[document.source_cost_id]
            if link.count == 0:
                link.latest_document_id = document.id
                link.latest_status = document.status
                link.latest_folio = document.folio
            link.count += 1

        return list(links.values())

    # ===== Creación =====

    def _emit_isolated(self, document: TaxDocument) -> TaxDocument:
        """Emite sin deshacer la creación: el error queda en last_error"""
        try:
            return EmissionClient(self.db, self._require_authority()).emit(document)
        except TaxDocumentError as e:
            logger.error(f"Emisión de {document.id} falló tras crearlo: {e}")
            self.db.rollback()
            self.db.refresh(document)
            if document.last_error != str(e):
                document.last_error = str(e)
                self.db.commit()
                self.db.refresh(document)
            return document

    def _link_superseded(self, column, source_id: UUID, document: TaxDocument) -> None:
        """Apunta los documentos reemplazados de la misma fuente al nuevo"""
        previous = self.db.query(TaxDocument).filter(
            column == source_id,
            TaxDocument.tenant_id == document.tenant_id,
            TaxDocument.id != document.id,
            TaxDocument.superseded_at.isnot(None),
            TaxDocument.superseded_by_id.is_(None)
        ).all()
        for old in previous:
            old.superseded_by_id = document.id
        if previous:
            self.db.commit()
            self.db.refresh(document)

    def create_draft_from_pos(
        self,
        pos_transaction_id: UUID,
        tenant_id: UUID,
        receiver: Optional[ReceiverIn] = None,
        emit_now: bool = False
    ) -> TaxDocument:
        """Crear boleta desde una venta POS (opcionalmente emitir)"""
        transaction = self.db.query(POSTransaction).options(
            selectinload(POSTransaction.items)
        ).filter(
            POSTransaction.id == pos_transaction_id,
            POSTransaction.tenant_id == tenant_id
        ).first()

        if not transaction:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Transacción POS no encontrada"
            )

        document = self.builder.build_from_pos(transaction, tenant_id, receiver, DocumentKind.RECEIPT)
        self._link_superseded(TaxDocument.source_pos_transaction_id, transaction.id, document)

        if emit_now:
            document = self._emit_isolated(document)
        return document

    def create_draft_from_cost(
        self,
        cost_id: UUID,
        tenant_id: UUID,
        receiver: Optional[ReceiverIn] = None,
        emit_now: bool = False
    ) -> TaxDocument:
        """Crear factura desde un costo (opcionalmente emitir)"""
        cost = self.db.query(Cost).options(
            selectinload(Cost.lines)
        ).filter(
            Cost.id == cost_id,
            Cost.tenant_id == tenant_id
        ).first()

        if not cost:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Costo no encontrado"
            )

        document = self.builder.build_from_cost(cost, tenant_id, receiver, DocumentKind.INVOICE)
        self._link_superseded(TaxDocument.source_cost_id, cost.id, document)

        if emit_now:
            document = self._emit_isolated(document)
        return document

    # ===== Emisión y correcciones =====

    def emit_document(self, document_id: UUID, tenant_id: UUID) -> TaxDocument:
        """Emitir un documento; los errores de emisión se propagan"""
        document = self.get_document_by_id(document_id, tenant_id)
        return EmissionClient(self.db, self._require_authority()).emit(document)

    def supersede_document(self, document_id: UUID, tenant_id: UUID, reason: Optional[str] = None) -> TaxDocument:
        """Marca un documento como reemplazado; su fuente queda libre para un documento nuevo"""
        document = self.get_document_by_id(document_id, tenant_id)

        if document.is_superseded:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="El documento ya fue reemplazado"
            )

        document.superseded_at = datetime.now(timezone.utc)
        if reason:
            document.notes = f"{document.notes}\n" if document.notes else ""
            document.notes += f"Reemplazado: {reason}"

        self.db.commit()
        self.db.refresh(document)
        logger.info(f"Documento {document.id} marcado como reemplazado")
        return document

    # ===== Documentos recibidos =====

    def import_received_documents(
        self,
        tenant_id: UUID,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        dry_run: bool = False,
        document_type: Optional[int] = None,
        counterparty_tax_id: Optional[str] = None,
        max_pages: Optional[int] = None
    ) -> ImportSummary:
        importer = ReceivedDocumentImporter(self.db, self._require_authority(), max_pages=max_pages)
        return importer.run(
            tenant_id,
            start_date=start_date,
            end_date=end_date,
            document_type=document_type,
            counterparty_tax_id=counterparty_tax_id,
            dry_run=dry_run
        )

    def preview_received_documents(
        self,
        page: int = 1,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        document_type: Optional[int] = None,
        counterparty_tax_id: Optional[str] = None
    ) -> ReceivedDocumentsPage:
        """Una página del feed, sin importar"""
        end_date = end_date or date.today()
        start_date = start_date or end_date - timedelta(days=settings.RECEIVED_DOCUMENTS_WINDOW_DAYS)
        result = self._require_authority().fetch_received_documents(
            page=page,
            start_date=start_date,
            end_date=end_date,
            document_type=document_type,
            counterparty_tax_id=counterparty_tax_id
        )
        return ReceivedDocumentsPage(**result)

    def acknowledge_received_document(
        self,
        document_id: UUID,
        tenant_id: UUID,
        code: AcknowledgmentCode = AcknowledgmentCode.ACD
    ) -> TaxDocument:
        """Envía un acuse a la autoridad y recalcula el estado con el acuse agregado"""
        document = self.get_document_by_id(document_id, tenant_id)

        if document.direction != DocumentDirection.RECEIVED or not document.folio:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Solo se pueden acusar documentos recibidos con folio"
            )

        code_value = AcknowledgmentCode(code).value
        self._require_authority().acknowledge_document(
            document.emitter_tax_id,
            document.external_type_code,
            document.folio,
            code_value
        )

        raw = dict(document.raw_external_response or {})
        acks = list(raw.get("Acuses") or [])
        acks.append({
            "codEvento": code_value,
            "fechaEvento": datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S"),
        })
        raw["Acuses"] = acks

        # Reasignar el dict para que SQLAlchemy detecte el cambio del JSON
        document.raw_external_response = raw
        document.status = map_acknowledgment_to_status(ordered_acknowledgments(acks))

        self.db.commit()
        self.db.refresh(document)
        logger.info(f"Acuse {code_value} registrado para {document.id}: estado {document.status.value}")
        return document

    # ===== Artefactos =====

    def get_document_artifact(self, document_id: UUID, tenant_id: UUID, fmt: ArtifactFormat) -> ResolvedArtifact:
        document = self.get_document_by_id(document_id, tenant_id)
        return RetrievalGateway(self.authority).resolve(document, fmt)

    # ===== Salud =====

    def check_authority_health(self) -> AuthorityHealth:
        try:
            data = self._require_authority().get_taxpayer(settings.COMPANY_TAX_ID)
        except UpstreamTransportError as e:
            return AuthorityHealth(ok=False, tax_id=settings.COMPANY_TAX_ID, detail=str(e))

        name = data.get("razonSocial") or data.get("RznSoc") or data.get("name")
        return AuthorityHealth(ok=True, tax_id=settings.COMPANY_TAX_ID, name=name)
