"""
Recuperación de artefactos (PDF / XML / JSON) de un documento

Cadena de respaldo por formato:
- PDF y XML: URL guardada en el documento (cache) -> consulta a la autoridad
  por (emisor, tipo, folio) (live) -> ArtifactUnavailable. Nunca se
  sintetiza un PDF o XML.
- JSON: proyección del documento local, siempre disponible (synthesized).

El resultado informa qué nivel resolvió la solicitud. La misma resolución
sirve para mostrar en línea o para descargar; solo cambia la respuesta HTTP.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional
import json
import logging

from app.modules.taxdocs.authority import TaxAuthorityClient
from app.modules.taxdocs.codes import document_type_label
from app.modules.taxdocs.exceptions import ArtifactUnavailable, UpstreamTransportError
from app.modules.taxdocs.models import TaxDocument

logger = logging.getLogger(__name__)


class ArtifactFormat(str, Enum):
    PDF = "pdf"
    XML = "xml"
    JSON = "json"


class ArtifactTier(str, Enum):
    CACHE = "cache"
    LIVE = "live"
    SYNTHESIZED = "synthesized"


class DisplayMode(str, Enum):
    INLINE = "inline"
    DOWNLOAD = "download"


CONTENT_TYPES = {
    ArtifactFormat.PDF: "application/pdf",
    ArtifactFormat.XML: "application/xml",
    ArtifactFormat.JSON: "application/json",
}


@dataclass
class ResolvedArtifact:
    content: bytes
    content_type: str
    tier: ArtifactTier
    filename: str

    def content_disposition(self, mode: DisplayMode) -> str:
        disposition = "attachment" if mode == DisplayMode.DOWNLOAD else "inline"
        return f'{disposition}; filename="{self.filename}"'


def artifact_filename(document: TaxDocument, fmt: ArtifactFormat) -> str:
    """Nombre de archivo derivado de tipo + folio (o id si aún no tiene folio)"""
    return f"{document.kind.value}-{document.folio or document.id}.{fmt.value}"


def project_document(document: TaxDocument) -> Dict[str, Any]:
    """Proyección JSON del documento local y sus líneas"""
    return {
        "id": str(document.id),
        "kind": document.kind.value,
        "type_code": document.external_type_code,
        "type_label": document_type_label(document.external_type_code),
        "folio": document.folio,
        "status": document.status.value,
        "direction": document.direction.value,
        "emitter": {"tax_id": document.emitter_tax_id, "name": document.emitter_name},
        "receiver": {
            "tax_id": document.receiver_tax_id,
            "name": document.receiver_name,
            "email": document.receiver_email,
        },
        "totals": {
            "net": document.net_amount,
            "tax": document.tax_amount,
            "total": document.total_amount,
            "currency": document.currency,
        },
        "issued_at": document.issued_at.isoformat() if document.issued_at else None,
        "notes": document.notes,
        "items": [
            {
                "line_number": item.line_number,
                "description": item.description,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "net": item.net,
                "tax": item.tax,
                "total": item.total,
                "tax_exempt": item.tax_exempt,
            }
            for item in document.items
        ],
    }


class RetrievalGateway:
    def __init__(self, authority: Optional[TaxAuthorityClient]):
        self.authority = authority

    def resolve(self, document: TaxDocument, fmt: ArtifactFormat) -> ResolvedArtifact:
        fmt = ArtifactFormat(fmt)
        filename = artifact_filename(document, fmt)

        if fmt == ArtifactFormat.JSON:
            content = json.dumps(project_document(document), ensure_ascii=False, indent=2).encode("utf-8")
            return ResolvedArtifact(content, CONTENT_TYPES[fmt], ArtifactTier.SYNTHESIZED, filename)

        content = self._from_cache(document, fmt)
        if content:
            return ResolvedArtifact(content, CONTENT_TYPES[fmt], ArtifactTier.CACHE, filename)

        content = self._from_authority(document, fmt)
        if content:
            return ResolvedArtifact(content, CONTENT_TYPES[fmt], ArtifactTier.LIVE, filename)

        raise ArtifactUnavailable(
            f"{fmt.value.upper()} no disponible para el documento",
            document_id=document.id,
            format=fmt.value,
            status=document.status.value
        )

    def _from_cache(self, document: TaxDocument, fmt: ArtifactFormat) -> Optional[bytes]:
        url = document.pdf_url if fmt == ArtifactFormat.PDF else document.xml_url
        if not url or self.authority is None:
            return None
        try:
            return self.authority.download(url)
        except UpstreamTransportError as e:
            logger.warning(f"No se pudo descargar {fmt.value} en cache de {document.id}: {e}")
            return None

    def _from_authority(self, document: TaxDocument, fmt: ArtifactFormat) -> Optional[bytes]:
        if not document.folio or self.authority is None:
            return None
        try:
            return self.authority.fetch_document_artifact(
                document.emitter_tax_id,
                document.external_type_code,
                document.folio,
                fmt.value
            )
        except UpstreamTransportError as e:
            logger.warning(f"Consulta de {fmt.value} a la autoridad falló para {document.id}: {e}")
            return None
