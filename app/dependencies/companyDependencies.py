from typing import Annotated
from fastapi import Depends, Request, HTTPException, status
from uuid import UUID


def get_tenant_id(request: Request) -> UUID:
    """Tenant resuelto por TenantMiddleware a partir de X-Company-ID"""
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Contexto de empresa no encontrado. Envíe el header X-Company-ID."
        )
    return tenant_id


TenantId = Annotated[UUID, Depends(get_tenant_id)]
