"""
Errores del motor de documentos tributarios.

Todos heredan de HTTPException para que los servicios puedan lanzarlos
directamente y FastAPI los traduzca a respuestas HTTP tipadas.
"""
from typing import Any, Optional
from uuid import UUID

from fastapi import HTTPException, status


class TaxDocumentError(HTTPException):
    """Base de los errores de documentos tributarios"""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "tax_document_error"

    def __init__(self, message: str, **extra: Any):
        self.message = message
        self.extra = extra
        detail = {"code": self.code, "message": message}
        detail.update({k: (str(v) if isinstance(v, UUID) else v) for k, v in extra.items()})
        super().__init__(status_code=self.status_code, detail=detail)

    def __str__(self) -> str:
        return self.message


class InvalidReceiver(TaxDocumentError):
    """Falta o es inválida la identidad del receptor"""
    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_receiver"


class AlreadyConverted(TaxDocumentError):
    """El registro de origen ya tiene un documento vigente"""
    status_code = status.HTTP_409_CONFLICT
    code = "already_converted"


class UnresolvableIdentity(TaxDocumentError):
    """No es posible derivar un identificador externo para una venta POS"""
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "unresolvable_identity"


class UpstreamTransportError(TaxDocumentError):
    """Timeout, 5xx, rate limit o respuesta malformada de la autoridad"""
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "upstream_transport_error"


class UpstreamRejected(TaxDocumentError):
    """La autoridad rechazó explícitamente el documento"""
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "upstream_rejected"

    def __init__(self, message: str, response: Optional[Any] = None, **extra: Any):
        self.response = response
        super().__init__(message, **extra)


class ArtifactUnavailable(TaxDocumentError):
    """Ningún nivel de la cadena de recuperación entregó el artefacto"""
    status_code = status.HTTP_404_NOT_FOUND
    code = "artifact_unavailable"


class DuplicateNaturalKey(TaxDocumentError):
    """Ya existe un documento con (emisor, folio, tipo)"""
    status_code = status.HTTP_409_CONFLICT
    code = "duplicate_natural_key"

    def __init__(self, message: str, existing_id: Optional[UUID] = None, **extra: Any):
        self.existing_id = existing_id
        super().__init__(message, existing_id=existing_id, **extra)
