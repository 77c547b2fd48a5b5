"""
Emisión de documentos ante la autoridad tributaria

Máquina de estados: DRAFT -> PENDING -> ACCEPTED | REJECTED.

Política "a lo más una vez": no hay reintentos automáticos. Un error de
transporte deja el documento en su último estado conocido con el detalle en
last_error y se propaga al llamador, que decide si reenviar.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.modules.taxdocs.authority import TaxAuthorityClient
from app.modules.taxdocs.codes import map_submission_state
from app.modules.taxdocs.exceptions import (
    TaxDocumentError, UpstreamTransportError, UpstreamRejected, DuplicateNaturalKey
)
from app.modules.taxdocs.models import TaxDocument, DocumentKind, DocumentStatus, DocumentDirection

logger = logging.getLogger(__name__)

# Campos de la respuesta con el archivo en base64; no se guardan en la auditoría
BINARY_RESPONSE_KEYS = ("PDF", "XML", "pdf", "xml")


def build_submission_payload(document: TaxDocument) -> Dict[str, Any]:
    """Arma el JSON de emisión (Encabezado + Detalle) a partir del documento y sus líneas"""
    is_receipt = document.kind == DocumentKind.RECEIPT

    id_doc: Dict[str, Any] = {
        "TipoDTE": document.external_type_code,
        "Folio": 0,  # La autoridad asigna el folio
        "FchEmis": (document.issued_at or datetime.now(timezone.utc)).date().isoformat(),
    }
    if is_receipt:
        id_doc["IndServicio"] = 3  # Boleta de ventas y servicios

    receptor: Dict[str, Any] = {
        "RUTRecep": document.receiver_tax_id,
        "RznSocRecep": document.receiver_name,
    }
    if document.receiver_email:
        receptor["CorreoRecep"] = document.receiver_email

    detalle = []
    taxed_net = exempt_total = 0
    for item in document.items:
        # Boletas con montos brutos, facturas con montos netos
        amount = item.total if (is_receipt or item.tax_exempt) else item.net
        quantity = item.quantity or 1
        line: Dict[str, Any] = {
            "NroLinDet": item.line_number,
            "NmbItem": item.description,
            "QtyItem": quantity,
            "PrcItem": round(amount / quantity, 2) if amount % quantity else amount // quantity,
            "MontoItem": amount,
        }
        if item.tax_exempt:
            line["IndExe"] = 1
            exempt_total += item.total
        else:
            taxed_net += item.net
        detalle.append(line)

    totales: Dict[str, Any] = {
        "MntNeto": taxed_net,
        "IVA": document.tax_amount,
        "MntTotal": document.total_amount,
    }
    if exempt_total:
        totales["MntExe"] = exempt_total
    if not is_receipt:
        totales["TasaIVA"] = "19"

    return {
        "response": ["PDF", "XML", "FOLIO"],
        "dte": {
            "Encabezado": {
                "IdDoc": id_doc,
                "Emisor": {
                    "RUTEmisor": document.emitter_tax_id,
                    "RznSoc": document.emitter_name,
                },
                "Receptor": receptor,
                "Totales": totales,
            },
            "Detalle": detalle,
        },
    }


def _first(data: Dict[str, Any], *keys: str) -> Optional[Any]:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _url_or_none(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.startswith(("http://", "https://")):
        return value
    return None


def _audit_copy(response: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: value for key, value in response.items()
        if key not in BINARY_RESPONSE_KEYS or _url_or_none(value)
    }


class EmissionClient:
    """Envía documentos DRAFT a la autoridad y concilia el resultado"""

    def __init__(self, db: Session, authority: TaxAuthorityClient):
        self.db = db
        self.authority = authority

    def _accepted_sibling(self, document: TaxDocument) -> Optional[TaxDocument]:
        """Otro documento ACCEPTED vigente para la misma fuente"""
        if document.source_pos_transaction_id:
            source_filter = TaxDocument.source_pos_transaction_id == document.source_pos_transaction_id
        elif document.source_cost_id:
            source_filter = TaxDocument.source_cost_id == document.source_cost_id
        else:
            return None

        return self.db.query(TaxDocument).filter(
            source_filter,
            TaxDocument.tenant_id == document.tenant_id,
            TaxDocument.id != document.id,
            TaxDocument.status == DocumentStatus.ACCEPTED,
            TaxDocument.superseded_by_id.is_(None),
            TaxDocument.superseded_at.is_(None)
        ).first()

    def _find_by_natural_key(self, document: TaxDocument, folio: str) -> Optional[TaxDocument]:
        return self.db.query(TaxDocument).filter(
            TaxDocument.tenant_id == document.tenant_id,
            TaxDocument.emitter_tax_id == document.emitter_tax_id,
            TaxDocument.folio == folio,
            TaxDocument.kind == document.kind
        ).first()

    def _mark_rejected(self, document: TaxDocument, error: UpstreamRejected, response: Any) -> None:
        document.status = DocumentStatus.REJECTED
        document.raw_external_response = response
        document.last_error = str(error)
        self.db.commit()
        self.db.refresh(document)
        logger.warning(f"Documento {document.id} rechazado por la autoridad: {error}")

    def emit(self, document: TaxDocument) -> TaxDocument:
        """
        Emite un documento. Idempotente: un documento ya aceptado (o pendiente
        con folio) se devuelve sin volver a llamar a la autoridad.

        Raises:
            UpstreamTransportError: error de red/servidor, documento sin cambios de estado
            UpstreamRejected: rechazo explícito, el documento queda REJECTED
        """
        if document.status == DocumentStatus.ACCEPTED:
            logger.info(f"Documento {document.id} ya aceptado (folio {document.folio}), no se reenvía")
            return document
        if document.status == DocumentStatus.PENDING and document.folio:
            logger.info(f"Documento {document.id} pendiente con folio {document.folio}, no se reenvía")
            return document
        if document.status == DocumentStatus.REJECTED:
            raise UpstreamRejected(
                "El documento fue rechazado; se debe crear un documento nuevo",
                response=document.raw_external_response,
                document_id=document.id
            )
        if document.direction == DocumentDirection.RECEIVED:
            raise TaxDocumentError("Los documentos recibidos no se emiten", document_id=document.id)
        if document.is_superseded:
            raise TaxDocumentError("El documento fue reemplazado y no puede emitirse", document_id=document.id)

        sibling = self._accepted_sibling(document)
        if sibling:
            logger.info(f"La fuente de {document.id} ya tiene el documento aceptado {sibling.id}")
            return sibling

        payload = build_submission_payload(document)
        logger.info(f"Emitiendo documento {document.id} (TipoDTE {document.external_type_code}, total {document.total_amount})")

        try:
            response = self.authority.submit_document(payload)
        except UpstreamTransportError as e:
            document.last_error = str(e)
            self.db.commit()
            e.detail.update({"document_id": str(document.id), "status": document.status.value})
            raise
        except UpstreamRejected as e:
            self._mark_rejected(document, e, e.response)
            e.detail.update({"document_id": str(document.id), "status": document.status.value})
            raise

        state = map_submission_state(response)
        if state == DocumentStatus.REJECTED:
            error = UpstreamRejected(
                "La autoridad rechazó el documento",
                response=_audit_copy(response),
                document_id=document.id
            )
            self._mark_rejected(document, error, _audit_copy(response))
            raise error

        folio = _first(response, "FOLIO", "folio", "Folio")
        document.status = state
        document.folio = str(folio) if folio is not None else None
        document.external_document_id = _first(response, "TOKEN", "token", "id", "externalDocumentId")
        document.pdf_url = _url_or_none(_first(response, "pdfUrl", "pdf_url", "PDF"))
        document.xml_url = _url_or_none(_first(response, "xmlUrl", "xml_url", "XML"))
        document.issued_at = datetime.now(timezone.utc)
        document.raw_external_response = _audit_copy(response)
        document.last_error = None

        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self._find_by_natural_key(document, str(folio)) if folio is not None else None
            if existing is None:
                raise DuplicateNaturalKey(
                    f"Folio {folio} duplicado para {document.emitter_tax_id}",
                    document_id=document.id
                )
            logger.warning(
                f"Folio {folio} ya registrado en el documento {existing.id}; "
                f"se devuelve el existente en lugar de {document.id}"
            )
            return existing

        self.db.refresh(document)
        logger.info(f"Documento {document.id} emitido: estado {state.value}, folio {document.folio}")
        return document
