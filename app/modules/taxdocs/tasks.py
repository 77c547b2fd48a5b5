"""
Tareas asíncronas de Celery para documentos tributarios.

La emisión no se ejecuta como tarea: un reintento automático podría generar
dos folios para una misma venta.
"""
import logging
from datetime import date
from typing import Optional
from uuid import UUID

from app.core.celery import celery_app
from app.core.config import settings
from app.database.database import SessionLocal
from app.modules.taxdocs.authority import TaxAuthorityClient
from app.modules.taxdocs.importer import ReceivedDocumentImporter

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=0)
def import_received_documents_task(
    self,
    tenant_id: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    dry_run: bool = False
):
    """
    Importa documentos recibidos para un tenant.

    Las fechas llegan como 'YYYY-MM-DD' (serialización JSON).
    """
    tenant = tenant_id or settings.DEFAULT_TENANT_ID
    if not tenant:
        logger.warning("Importación omitida: no hay tenant configurado")
        return {"status": "skipped", "reason": "no tenant"}

    db = SessionLocal()
    authority = TaxAuthorityClient()
    try:
        summary = ReceivedDocumentImporter(db, authority).run(
            UUID(str(tenant)),
            start_date=date.fromisoformat(start_date) if start_date else None,
            end_date=date.fromisoformat(end_date) if end_date else None,
            dry_run=dry_run
        )
        logger.info(
            f"Importación programada: {summary.total_imported} importados, "
            f"{summary.total_skipped} omitidos, {len(summary.errors)} errores"
        )
        return {"status": "aborted" if summary.aborted else "success", **summary.model_dump()}
    finally:
        authority.close()
        db.close()
