"""
Middleware de contexto de empresa (tenant) y headers de seguridad
"""
from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from uuid import UUID
import logging

logger = logging.getLogger(__name__)

TENANT_HEADER = "X-Company-ID"


class TenantMiddleware(BaseHTTPMiddleware):
    """
    Lee el UUID de empresa desde X-Company-ID y lo deja en request.state.tenant_id.

    Todas las consultas de documentos y ventas se filtran por este valor; el
    header es la única fuente del tenant (la autenticación es externa).
    """

    # Rutas sin contexto de empresa
    EXEMPT_PATHS = (
        "/docs",
        "/redoc",
        "/openapi.json",
        "/health",
        "/invoicing/health",
    )

    def _is_exempt(self, request: Request) -> bool:
        path = request.url.path
        return path == "/" or request.method == "OPTIONS" or path.startswith(self.EXEMPT_PATHS)

    async def dispatch(self, request: Request, call_next):
        if self._is_exempt(request):
            return await call_next(request)

        raw_tenant = request.headers.get(TENANT_HEADER)
        if not raw_tenant:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"detail": f"Falta el header {TENANT_HEADER}"}
            )

        try:
            tenant_id = UUID(raw_tenant)
        except ValueError:
            logger.debug(f"{TENANT_HEADER} inválido en {request.url.path}: {raw_tenant}")
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"detail": f"{TENANT_HEADER} debe ser un UUID válido"}
            )

        request.state.tenant_id = tenant_id
        response = await call_next(request)
        response.headers["X-Tenant-ID"] = str(tenant_id)
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Headers de seguridad en todas las respuestas"""

    HEADERS = {
        "X-Content-Type-Options": "nosniff",
        # Los PDFs se muestran inline en un iframe del frontend
        "X-Frame-Options": "SAMEORIGIN",
        "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
        "Referrer-Policy": "strict-origin-when-cross-origin",
    }

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        for name, value in self.HEADERS.items():
            response.headers[name] = value
        return response
