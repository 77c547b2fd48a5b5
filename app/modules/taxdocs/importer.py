"""
Importación de documentos recibidos (registro de compras)

Recorre el feed paginado de la autoridad, descarta los documentos que ya
existen por llave natural (emisor, folio, tipo) y crea los faltantes.

- Un registro con error nunca aborta la página: se anota en el resumen.
- Un error del feed aborta la corrida pero se devuelve el resumen parcial.
- Cada documento creado se confirma por separado.
- La verificación de existencia y el insert son dos pasos; dos corridas
  concurrentes pueden duplicar un documento. Se acepta para esta vía.
"""
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from uuid import UUID
import logging
import time

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.common.validators import join_rut
from app.core.config import settings
from app.modules.taxdocs.authority import TaxAuthorityClient
from app.modules.taxdocs.builder import split_tax, round_amount
from app.modules.taxdocs.codes import (
    map_external_type_to_kind, map_acknowledgment_to_status, document_type_label
)
from app.modules.taxdocs.exceptions import UpstreamTransportError
from app.modules.taxdocs.models import (
    TaxDocument, TaxDocumentItem, DocumentKind, DocumentDirection
)
from app.modules.taxdocs.schemas import ImportSummary, ImportErrorItem

logger = logging.getLogger(__name__)

NaturalKey = Tuple[str, str, DocumentKind]

PAYMENT_FORMS = {"1": "Contado", "2": "Crédito"}


def natural_key_for(record: Dict[str, Any]) -> NaturalKey:
    """
    Llave natural de un registro del feed.

    Raises:
        ValueError: si el registro no es un objeto o faltan el emisor o el folio
    """
    if not isinstance(record, dict):
        raise ValueError(f"Registro con formato inesperado: {type(record).__name__}")
    emitter = join_rut(record.get("RUTEmisor"), record.get("DV"))
    folio = record.get("Folio")
    if not emitter:
        raise ValueError("Registro sin RUTEmisor")
    if folio is None or str(folio).strip() == "":
        raise ValueError(f"Registro de {emitter} sin Folio")
    return emitter, str(folio).strip(), map_external_type_to_kind(record.get("TipoDTE"))


def format_natural_key(key: NaturalKey) -> str:
    emitter, folio, kind = key
    return f"{emitter}/{folio}/{kind.value}"


def ordered_acknowledgments(acks: Optional[List[Any]]) -> List[Any]:
    """Ordena los acuses por fecha de evento cuando todos la informan"""
    if not acks:
        return []
    acks = list(acks)
    if all(isinstance(a, dict) and a.get("fechaEvento") for a in acks):
        return sorted(acks, key=lambda a: str(a["fechaEvento"]))
    return acks


def _parse_date(value: Any) -> Optional[datetime]:
    if not value:
        return None
    text = str(value).strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        try:
            return datetime.strptime(text[:10], "%Y-%m-%d")
        except ValueError:
            logger.warning(f"FchEmis con formato desconocido: {text}")
            return None


class ReceivedDocumentImporter:
    """Corrida acotada de importación de documentos recibidos"""

    def __init__(
        self,
        db: Session,
        authority: TaxAuthorityClient,
        sleep: Callable[[float], None] = time.sleep,
        page_delay: Optional[float] = None,
        max_pages: Optional[int] = None,
        tax_rate: Optional[Decimal] = None
    ):
        self.db = db
        self.authority = authority
        self.sleep = sleep
        self.page_delay = settings.IMPORT_PAGE_DELAY_SECONDS if page_delay is None else page_delay
        self.max_pages = settings.IMPORT_MAX_PAGES if max_pages is None else max_pages
        self.tax_rate = tax_rate if tax_rate is not None else settings.TAX_RATE

    # ===== Corrida =====

    def run(
        self,
        tenant_id: UUID,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        document_type: Optional[int] = None,
        counterparty_tax_id: Optional[str] = None,
        dry_run: bool = False
    ) -> ImportSummary:
        """
        Importa los documentos recibidos en el rango de fechas.

        Sin fechas se usa la ventana de los últimos
        RECEIVED_DOCUMENTS_WINDOW_DAYS días. En dry_run no se escribe nada,
        pero el resumen tiene la misma forma.
        """
        end_date = end_date or date.today()
        start_date = start_date or end_date - timedelta(days=settings.RECEIVED_DOCUMENTS_WINDOW_DAYS)

        summary = ImportSummary(dry_run=dry_run)
        seen: Set[NaturalKey] = set()
        page = 1

        logger.info(
            f"Importando documentos recibidos {start_date} a {end_date} "
            f"(tenant {tenant_id}, máx {self.max_pages} páginas, dry_run={dry_run})"
        )

        while summary.pages_fetched < self.max_pages:
            try:
                result = self.authority.fetch_received_documents(
                    page=page,
                    start_date=start_date,
                    end_date=end_date,
                    document_type=document_type,
                    counterparty_tax_id=counterparty_tax_id
                )
            except UpstreamTransportError as e:
                logger.error(f"Importación abortada en la página {page}: {e}", exc_info=True)
                summary.aborted = True
                summary.abort_reason = f"Página {page}: {e}"
                break

            summary.pages_fetched += 1
            records = result.get("data") or []
            summary.total_fetched += len(records)

            for record in records:
                self._process_record(record, tenant_id, summary, seen, dry_run)

            current_page = result.get("current_page", page)
            last_page = result.get("last_page", page)
            if current_page >= last_page:
                break
            if summary.pages_fetched >= self.max_pages:
                logger.warning(
                    f"Se alcanzó el máximo de {self.max_pages} páginas; "
                    f"quedan páginas sin procesar ({current_page}/{last_page})"
                )
                break

            self.sleep(self.page_delay)
            page = current_page + 1

        logger.info(
            f"Importación finalizada: {summary.total_fetched} obtenidos, "
            f"{summary.total_imported} importados, {summary.total_skipped} omitidos, "
            f"{len(summary.errors)} errores"
        )
        return summary

    # ===== Registros =====

    def _exists(self, tenant_id: UUID, key: NaturalKey) -> bool:
        emitter, folio, kind = key
        return self.db.query(TaxDocument.id).filter(
            TaxDocument.tenant_id == tenant_id,
            TaxDocument.emitter_tax_id == emitter,
            TaxDocument.folio == folio,
            TaxDocument.kind == kind
        ).first() is not None

    def _process_record(
        self,
        record: Dict[str, Any],
        tenant_id: UUID,
        summary: ImportSummary,
        seen: Set[NaturalKey],
        dry_run: bool
    ) -> None:
        try:
            key = natural_key_for(record)
        except (ValueError, TypeError) as e:
            summary.errors.append(ImportErrorItem(natural_key=None, reason=str(e)))
            return

        label = format_natural_key(key)

        try:
            exists = key in seen or self._exists(tenant_id, key)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error verificando {label}: {e}", exc_info=True)
            summary.errors.append(ImportErrorItem(natural_key=label, reason=str(e)))
            return

        if exists:
            logger.debug(f"Documento {label} ya existe, se omite")
            summary.total_skipped += 1
            seen.add(key)
            return
        seen.add(key)

        if dry_run:
            summary.total_imported += 1
            return

        try:
            document = self.build_document(record, tenant_id, key)
            self.db.add(document)
            self.db.commit()
            summary.total_imported += 1
            logger.info(f"Documento recibido {label} importado")
        except IntegrityError:
            self.db.rollback()
            logger.warning(f"Documento {label} insertado por otra corrida, se omite")
            summary.total_skipped += 1
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error importando {label}: {e}", exc_info=True)
            summary.errors.append(ImportErrorItem(natural_key=label, reason=str(e)))

    def build_document(self, record: Dict[str, Any], tenant_id: UUID, key: NaturalKey) -> TaxDocument:
        """Arma el TaxDocument de un registro del feed (sin persistir)"""
        emitter, folio, kind = key
        type_code = record.get("TipoDTE")
        payment = PAYMENT_FORMS.get(str(record.get("FmaPago") or ""), "Desconocida")

        document = TaxDocument(
            tenant_id=tenant_id,
            kind=kind,
            external_type_code=int(type_code) if str(type_code or "").isdigit() else 33,
            folio=folio,
            status=map_acknowledgment_to_status(ordered_acknowledgments(record.get("Acuses"))),
            direction=DocumentDirection.RECEIVED,
            emitter_tax_id=emitter,
            emitter_name=record.get("RznSoc"),
            receiver_tax_id=settings.COMPANY_TAX_ID,
            receiver_name=settings.COMPANY_NAME,
            currency="CLP",
            issued_at=_parse_date(record.get("FchEmis")),
            notes=f"Importado desde OpenFactura. Forma de pago: {payment}",
            raw_external_response=record,
        )

        items = self._lines_from_detail(record.get("Detalle")) or [self._summary_line(record, folio)]
        for number, item in enumerate(items, start=1):
            item.line_number = number
            document.items.append(item)

        document.net_amount = sum(item.net for item in items)
        document.tax_amount = sum(item.tax for item in items)
        document.total_amount = sum(item.total for item in items)
        return document

    def _lines_from_detail(self, detail: Any) -> List[TaxDocumentItem]:
        if isinstance(detail, dict):
            detail = [detail]
        if not isinstance(detail, list):
            return []

        items = []
        for line in detail:
            if not isinstance(line, dict):
                continue
            quantity = max(round_amount(line.get("QtyItem") or 1), 1)
            net = round_amount(line.get("MontoItem"))
            exempt = str(line.get("IndExe") or "") == "1"
            tax = 0 if exempt else round_amount(Decimal(net) * self.tax_rate)
            items.append(TaxDocumentItem(
                description=str(line.get("NmbItem") or "Ítem")[:300],
                quantity=quantity,
                unit_price=round_amount(line.get("PrcItem") or Decimal(net) / quantity),
                net=net,
                tax=tax,
                total=net + tax,
                tax_exempt=exempt
            ))
        return items

    def _summary_line(self, record: Dict[str, Any], folio: str) -> TaxDocumentItem:
        net = round_amount(record.get("MntNeto"))
        exempt_amount = round_amount(record.get("MntExe"))
        tax = round_amount(record.get("IVA"))
        total = round_amount(record.get("MntTotal")) or net + exempt_amount + tax

        # Solo exento cuando no hay IVA; así neto + impuesto == total
        exempt = exempt_amount > 0 and tax == 0
        if exempt:
            net, tax = split_tax(total, self.tax_rate, exempt=True)
        else:
            net = total - tax

        return TaxDocumentItem(
            description=f"{record.get('RznSoc') or 'Proveedor'} - {document_type_label(record.get('TipoDTE'))} {folio}"[:300],
            quantity=1,
            unit_price=total,
            net=net,
            tax=tax,
            total=total,
            tax_exempt=exempt
        )
