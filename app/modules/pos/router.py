from fastapi import APIRouter, Query, status
from typing import Optional
from datetime import date

from app.core.config import settings
from app.dependencies.dbDependecies import db_dependency
from app.dependencies.companyDependencies import TenantId
from app.modules.pos.service import POSSyncService
from app.modules.pos.schemas import POSSyncRequest, POSSyncResult, POSTransactionList, POSTransactionFilters

router = APIRouter(prefix="/pos", tags=["POS"])


@router.post("/transactions/sync", response_model=POSSyncResult, status_code=status.HTTP_200_OK)
def sync_transactions(payload: POSSyncRequest, tenant_id: TenantId, db: db_dependency):
    """
    Registrar ventas desde el reporte por sucursal del proveedor POS

    Las ventas sin id se registran con un id sintetizado determinista, por
    lo que reenviar el mismo reporte no duplica ventas.
    """
    service = POSSyncService(db)
    return service.ingest_branch_report(tenant_id, payload.branches)


@router.get("/transactions", response_model=POSTransactionList)
def list_transactions(
    tenant_id: TenantId,
    db: db_dependency,
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    start_date: Optional[date] = Query(None, description="Fecha inicial (YYYY-MM-DD)"),
    end_date: Optional[date] = Query(None, description="Fecha final (YYYY-MM-DD)"),
    has_document: Optional[bool] = Query(None, description="Con o sin boleta vigente"),
    location_id: Optional[str] = Query(None)
):
    """
    Listar ventas POS
    """
    service = POSSyncService(db)
    filters = POSTransactionFilters(
        date_from=start_date,
        date_to=end_date,
        has_document=has_document,
        location_id=location_id
    )
    return service.list_transactions(tenant_id, filters, limit, offset)
