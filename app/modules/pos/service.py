from sqlalchemy.orm import Session, selectinload
from sqlalchemy.exc import IntegrityError
from sqlalchemy import and_, exists
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Set
from uuid import UUID
from datetime import datetime, time, timedelta
import logging

from app.modules.pos.identity import resolve_external_sale_id
from app.modules.pos.models import POSTransaction, POSTransactionItem
from app.modules.pos.schemas import BranchReport, POSSyncResult, POSSyncError, POSTransactionFilters
from app.modules.taxdocs.exceptions import UnresolvableIdentity
from app.modules.taxdocs.models import TaxDocument

logger = logging.getLogger(__name__)

REQUIRED_SALE_FIELDS = ("transactionDateTime", "saleAmount", "totalAmount")


def _amount(value: Any) -> int:
    if value is None or value == "":
        return 0
    return int(Decimal(str(value)).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))


class POSSyncService:
    def __init__(self, db: Session):
        self.db = db

    def _document_filter(self):
        """Venta con documento tributario vigente"""
        return exists().where(and_(
            TaxDocument.source_pos_transaction_id == POSTransaction.id,
            TaxDocument.superseded_at.is_(None)
        ))

    def ingest_branch_report(self, tenant_id: UUID, branches: List[BranchReport]) -> POSSyncResult:
        """
        Registra las ventas de un reporte por sucursal.

        Cada venta se procesa por separado: una venta sin id resoluble o con
        datos incompletos se anota como error y el lote continúa. Las ventas
        ya registradas se cuentan como existentes.
        """
        result = POSSyncResult()
        seen: Set[str] = set()

        for branch in branches:
            context = branch.location or {}
            for sale in branch.sales:
                result.processed += 1

                try:
                    external_id = resolve_external_sale_id(sale, context)
                except UnresolvableIdentity as e:
                    logger.warning(f"Venta POS omitida: {e}")
                    result.errors.append(POSSyncError(reason=str(e)))
                    continue

                missing = [field for field in REQUIRED_SALE_FIELDS if sale.get(field) in (None, "")]
                if missing:
                    result.errors.append(POSSyncError(
                        external_sale_id=external_id,
                        reason=f"Campos obligatorios faltantes: {', '.join(missing)}"
                    ))
                    continue

                if external_id in seen or self._exists(external_id):
                    result.existing += 1
                    seen.add(external_id)
                    continue
                seen.add(external_id)

                try:
                    self._create_transaction(tenant_id, external_id, sale, context)
                    self.db.commit()
                    result.created += 1
                except IntegrityError:
                    self.db.rollback()
                    result.existing += 1
                except Exception as e:
                    self.db.rollback()
                    logger.error(f"Error registrando venta {external_id}: {e}")
                    result.errors.append(POSSyncError(external_sale_id=external_id, reason=str(e)))

        logger.info(
            f"Sincronización POS: {result.processed} procesadas, {result.created} creadas, "
            f"{result.existing} existentes, {len(result.errors)} errores"
        )
        return result

    def _exists(self, external_id: str) -> bool:
        return self.db.query(POSTransaction.id).filter(
            POSTransaction.external_sale_id == external_id
        ).first() is not None

    def _create_transaction(
        self,
        tenant_id: UUID,
        external_id: str,
        sale: Dict[str, Any],
        context: Dict[str, Any]
    ) -> POSTransaction:
        transaction = POSTransaction(
            tenant_id=tenant_id,
            external_sale_id=external_id,
            sequence_number=sale.get("sequenceNumber"),
            serial_number=sale.get("serialNumber"),
            location_id=str(sale.get("locationId") or context.get("locationId") or context.get("id") or "") or None,
            address=sale.get("address") or context.get("address"),
            status=sale.get("status"),
            transaction_type=sale.get("transactionType"),
            transaction_date_time=_parse_datetime(sale["transactionDateTime"]),
            sale_amount=_amount(sale.get("saleAmount")),
            tip_amount=_amount(sale.get("tipAmount")),
            total_amount=_amount(sale.get("totalAmount"))
        )

        for item in sale.get("items") or []:
            if not isinstance(item, dict):
                raise ValueError(f"Producto con formato inesperado: {item!r}")
            transaction.items.append(POSTransactionItem(
                code=item.get("code"),
                name=item.get("name") or "Producto",
                quantity=int(item.get("quantity") or 1),
                price=_amount(item.get("price"))
            ))

        self.db.add(transaction)
        self.db.flush()
        return transaction

    def list_transactions(
        self,
        tenant_id: UUID,
        filters: POSTransactionFilters,
        limit: int = 20,
        offset: int = 0
    ) -> dict:
        """Listar ventas POS indicando si ya tienen documento tributario"""
        query = self.db.query(POSTransaction).filter(POSTransaction.tenant_id == tenant_id)

        if filters.date_from:
            query = query.filter(POSTransaction.transaction_date_time >= datetime.combine(filters.date_from, time.min))
        if filters.date_to:
            query = query.filter(
                POSTransaction.transaction_date_time < datetime.combine(filters.date_to + timedelta(days=1), time.min)
            )
        if filters.location_id:
            query = query.filter(POSTransaction.location_id == filters.location_id)
        if filters.has_document is True:
            query = query.filter(self._document_filter())
        elif filters.has_document is False:
            query = query.filter(~self._document_filter())

        total = query.count()
        transactions = query.options(
            selectinload(POSTransaction.items)
        ).order_by(
            POSTransaction.transaction_date_time.desc()
        ).offset(offset).limit(limit).all()

        linked = self._linked_ids([t.id for t in transactions])
        for transaction in transactions:
            transaction.has_document = transaction.id in linked

        return {
            "transactions": transactions,
            "total": total,
            "limit": limit,
            "offset": offset
        }

    def _linked_ids(self, transaction_ids: List[UUID]) -> Set[UUID]:
        if not transaction_ids:
            return set()
        rows = self.db.query(TaxDocument.source_pos_transaction_id).filter(
            TaxDocument.source_pos_transaction_id.in_(transaction_ids),
            TaxDocument.superseded_at.is_(None)
        ).all()
        return {row[0] for row in rows}
