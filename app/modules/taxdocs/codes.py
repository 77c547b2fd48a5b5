"""
Tablas de códigos del SII

Funciones puras de traducción entre los códigos de la autoridad tributaria
y los enums internos. Ninguna lanza excepciones ante códigos desconocidos.
"""
from typing import Any, Dict, List, Optional
import logging

from app.modules.taxdocs.models import DocumentKind, DocumentStatus

logger = logging.getLogger(__name__)


# TipoDTE -> tipo interno
EXTERNAL_TYPE_TO_KIND = {
    33: DocumentKind.INVOICE,
    39: DocumentKind.RECEIPT,
    56: DocumentKind.DEBIT_NOTE,
    61: DocumentKind.CREDIT_NOTE,
}

KIND_TO_EXTERNAL_TYPE = {kind: code for code, kind in EXTERNAL_TYPE_TO_KIND.items()}

# Eventos de acuse (codEvento) del registro de compras
ACCEPTED_ACK_CODES = {"ACD", "PAG", "ERM"}  # Acepta contenido, pagado, recibo de mercaderías
REJECTED_ACK_CODES = {"RCD"}                # Reclamo al contenido

# Estados de respuesta de emisión
ACCEPTED_SUBMISSION_STATES = {"ACEPTADO", "ACCEPTED", "OK", "EPR"}
REJECTED_SUBMISSION_STATES = {"RECHAZADO", "REJECTED", "RCH"}

DOCUMENT_TYPE_LABELS = {
    33: "Factura Electrónica",
    39: "Boleta Electrónica",
    56: "Nota de Débito Electrónica",
    61: "Nota de Crédito Electrónica",
}


def map_external_type_to_kind(code: Any) -> DocumentKind:
    """
    Traduce un TipoDTE al tipo interno.

    Códigos desconocidos o no numéricos se tratan como factura y se registra
    una advertencia.
    """
    try:
        numeric = int(code)
    except (TypeError, ValueError):
        logger.warning(f"TipoDTE no numérico '{code}', se asume factura")
        return DocumentKind.INVOICE

    kind = EXTERNAL_TYPE_TO_KIND.get(numeric)
    if kind is None:
        logger.warning(f"TipoDTE desconocido {numeric}, se asume factura")
        return DocumentKind.INVOICE
    return kind


def map_kind_to_external_type(kind: DocumentKind) -> int:
    """Traduce el tipo interno al TipoDTE usado al emitir"""
    return KIND_TO_EXTERNAL_TYPE[DocumentKind(kind)]


def _ack_code(ack: Any) -> Optional[str]:
    if isinstance(ack, dict):
        value = ack.get("codEvento") or ack.get("code")
    else:
        value = ack
    if value is None:
        return None
    return str(value).strip().upper()


def map_acknowledgment_to_status(acks: Optional[List[Any]]) -> DocumentStatus:
    """
    Deriva el estado de un documento recibido desde sus acuses.

    La lista debe venir en orden cronológico: solo el último acuse decide.
    Sin acuses el documento queda como emitido (ISSUED).
    """
    if not acks:
        return DocumentStatus.ISSUED

    code = _ack_code(acks[-1])
    if code in ACCEPTED_ACK_CODES:
        return DocumentStatus.ACCEPTED
    if code in REJECTED_ACK_CODES:
        return DocumentStatus.REJECTED
    return DocumentStatus.ISSUED


def map_submission_state(response: Optional[Dict[str, Any]]) -> DocumentStatus:
    """
    Interpreta la respuesta de emisión.

    Un estado explícito manda. Sin estado, un folio asignado es la señal
    afirmativa; de lo contrario el documento queda PENDING a la espera de
    confirmación asíncrona.
    """
    if not isinstance(response, dict):
        return DocumentStatus.PENDING

    state = response.get("estado") or response.get("status")
    if state is not None and str(state).strip():
        normalized = str(state).strip().upper()
        if normalized in ACCEPTED_SUBMISSION_STATES:
            return DocumentStatus.ACCEPTED
        if normalized in REJECTED_SUBMISSION_STATES:
            return DocumentStatus.REJECTED
        return DocumentStatus.PENDING

    if response.get("FOLIO") or response.get("folio"):
        return DocumentStatus.ACCEPTED
    return DocumentStatus.PENDING


def document_type_label(code: Any) -> str:
    try:
        return DOCUMENT_TYPE_LABELS.get(int(code), f"DTE {code}")
    except (TypeError, ValueError):
        return f"DTE {code}"
