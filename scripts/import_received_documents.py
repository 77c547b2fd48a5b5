"""
Importa documentos recibidos desde OpenFactura para un tenant.

Misma lógica que el endpoint POST /invoicing/received-documents/import y la
tarea programada de Celery, pero ejecutable a mano:

    docker compose exec api python scripts/import_received_documents.py \
        --tenant 3f1c... --start 2025-09-01 --end 2025-09-30 --dry-run

Sin fechas se usa la ventana de RECEIVED_DOCUMENTS_WINDOW_DAYS días.
"""

# Add project root (/code) to sys.path so `app.*` imports work even if CWD changes
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import argparse
from datetime import date
from uuid import UUID

from app.core.config import settings
from app.database.database import SessionLocal
from app.modules.taxdocs.authority import TaxAuthorityClient
from app.modules.taxdocs.importer import ReceivedDocumentImporter


def main():
    parser = argparse.ArgumentParser(description="Importar documentos recibidos (registro de compras)")
    parser.add_argument("--tenant", default=settings.DEFAULT_TENANT_ID, help="UUID del tenant (X-Company-ID)")
    parser.add_argument("--start", type=date.fromisoformat, default=None, help="Fecha inicial YYYY-MM-DD")
    parser.add_argument("--end", type=date.fromisoformat, default=None, help="Fecha final YYYY-MM-DD")
    parser.add_argument("--type", type=int, default=None, dest="document_type", help="TipoDTE (33, 39, 56, 61)")
    parser.add_argument("--max-pages", type=int, default=None)
    parser.add_argument("--dry-run", action="store_true", help="Solo contar, no escribir")
    args = parser.parse_args()

    if not args.tenant:
        parser.error("--tenant es obligatorio si DEFAULT_TENANT_ID no está configurado")

    db = SessionLocal()
    authority = TaxAuthorityClient()
    try:
        importer = ReceivedDocumentImporter(db, authority, max_pages=args.max_pages)
        summary = importer.run(
            UUID(str(args.tenant)),
            start_date=args.start,
            end_date=args.end,
            document_type=args.document_type,
            dry_run=args.dry_run
        )

        print("\nImportación finalizada." + (" (dry run)" if summary.dry_run else ""))
        print(f"  Páginas:    {summary.pages_fetched}")
        print(f"  Obtenidos:  {summary.total_fetched}")
        print(f"  Importados: {summary.total_imported}")
        print(f"  Omitidos:   {summary.total_skipped}")
        print(f"  Errores:    {len(summary.errors)}")
        for error in summary.errors:
            print(f"    - {error.natural_key or '?'}: {error.reason}")
        if summary.aborted:
            print(f"Abortada: {summary.abort_reason}")
            sys.exit(1)
    finally:
        authority.close()
        db.close()


if __name__ == "__main__":
    main()
