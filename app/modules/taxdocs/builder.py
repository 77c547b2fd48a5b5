"""
Construcción de documentos tributarios en borrador

Convierte una venta POS o un costo en un TaxDocument en estado DRAFT con
sus líneas. El desglose neto/IVA se calcula por línea y los totales del
documento son siempre la suma de las líneas.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Tuple
from uuid import UUID
import logging

from sqlalchemy.orm import Session

from app.common.validators import validate_chile_rut, format_chile_rut
from app.core.config import settings
from app.modules.costs.models import Cost
from app.modules.pos.models import POSTransaction
from app.modules.taxdocs.codes import map_kind_to_external_type
from app.modules.taxdocs.exceptions import AlreadyConverted, InvalidReceiver
from app.modules.taxdocs.models import (
    TaxDocument, TaxDocumentItem, DocumentKind, DocumentStatus, DocumentDirection
)
from app.modules.taxdocs.schemas import ReceiverIn

logger = logging.getLogger(__name__)

# Receptor genérico para boletas sin identificación del cliente
FINAL_CONSUMER_TAX_ID = "66666666-6"
FINAL_CONSUMER_NAME = "CONSUMIDOR FINAL"


def round_amount(value) -> int:
    """Redondea montos (Decimal/float/str) a pesos enteros"""
    if value is None:
        return 0
    return int(Decimal(str(value)).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def split_tax(total: int, rate: Decimal, exempt: bool = False) -> Tuple[int, int]:
    """
    Separa un monto con IVA incluido en (neto, impuesto).

    neto = round(total / (1 + tasa)), impuesto = total - neto, por lo que
    neto + impuesto == total siempre. Las líneas exentas no llevan impuesto.
    """
    total = int(total)
    if exempt:
        return total, 0
    net = int((Decimal(total) / (Decimal('1') + Decimal(str(rate)))).quantize(Decimal('1'), rounding=ROUND_HALF_UP))
    return net, total - net


def allocate_difference(line_totals: List[int], target: int) -> List[int]:
    """
    Ajusta los totales de línea para que sumen exactamente `target`.

    La diferencia (propinas, recargos o descuentos) se reparte en proporción
    al total de cada línea; los pesos sobrantes del redondeo van a las
    líneas con mayor residuo.
    """
    if not line_totals:
        return []

    base_sum = sum(line_totals)
    difference = target - base_sum
    if difference == 0:
        return list(line_totals)

    if base_sum <= 0:
        # Sin base para prorratear: todo a la última línea
        adjusted = list(line_totals)
        adjusted[-1] += difference
        return adjusted

    shares = []
    remainders = []
    for index, line_total in enumerate(line_totals):
        raw = difference * line_total
        share = raw // base_sum
        shares.append(share)
        remainders.append((raw - share * base_sum, index))

    leftover = difference - sum(shares)
    # Orden estable: a igual residuo gana la primera línea
    for _, index in sorted(remainders, key=lambda r: (-r[0], r[1]))[:leftover]:
        shares[index] += 1

    return [line_total + share for line_total, share in zip(line_totals, shares)]


@dataclass
class DraftLine:
    description: str
    quantity: int
    total: int
    tax_exempt: bool = False


class DocumentBuilder:
    """Crea documentos DRAFT a partir de una fuente"""

    def __init__(self, db: Session, tax_rate: Optional[Decimal] = None):
        self.db = db
        self.tax_rate = tax_rate if tax_rate is not None else settings.TAX_RATE

    # ===== Receptor =====

    def resolve_receiver(self, kind: DocumentKind, receiver: Optional[ReceiverIn]) -> Tuple[str, str, Optional[str]]:
        """Valida el receptor; las boletas sin receptor van a consumidor final"""
        tax_id = (receiver.tax_id or "").strip() if receiver else ""
        name = (receiver.name or "").strip() if receiver else ""
        email = receiver.email if receiver else None

        if kind == DocumentKind.RECEIPT and not tax_id:
            return FINAL_CONSUMER_TAX_ID, name or FINAL_CONSUMER_NAME, email

        if not tax_id:
            raise InvalidReceiver("El RUT del receptor es obligatorio", field="tax_id")
        if not validate_chile_rut(tax_id):
            raise InvalidReceiver(f"RUT del receptor inválido: {tax_id}", field="tax_id")
        if not name:
            raise InvalidReceiver("La razón social del receptor es obligatoria", field="name")

        return format_chile_rut(tax_id), name, email

    # ===== Procedencia =====

    def _ensure_not_converted(self, column, source_id: UUID, tenant_id: UUID) -> None:
        existing = self.db.query(TaxDocument).filter(
            column == source_id,
            TaxDocument.tenant_id == tenant_id,
            TaxDocument.superseded_by_id.is_(None),
            TaxDocument.superseded_at.is_(None)
        ).first()
        if existing:
            raise AlreadyConverted(
                "El registro de origen ya tiene un documento tributario vigente",
                document_id=existing.id,
                status=existing.status.value
            )

    # ===== Construcción =====

    def _build(
        self,
        tenant_id: UUID,
        kind: DocumentKind,
        receiver: Optional[ReceiverIn],
        lines: List[DraftLine],
        notes: Optional[str] = None,
        **source
    ) -> TaxDocument:
        receiver_tax_id, receiver_name, receiver_email = self.resolve_receiver(kind, receiver)

        document = TaxDocument(
            tenant_id=tenant_id,
            kind=kind,
            external_type_code=map_kind_to_external_type(kind),
            status=DocumentStatus.DRAFT,
            direction=DocumentDirection.EMITTED,
            emitter_tax_id=settings.COMPANY_TAX_ID,
            emitter_name=settings.COMPANY_NAME,
            receiver_tax_id=receiver_tax_id,
            receiver_name=receiver_name,
            receiver_email=receiver_email,
            currency="CLP",
            notes=notes,
            **source
        )

        net_sum = tax_sum = total_sum = 0
        for number, line in enumerate(lines, start=1):
            net, tax = split_tax(line.total, self.tax_rate, line.tax_exempt)
            quantity = max(int(line.quantity or 1), 1)
            document.items.append(TaxDocumentItem(
                line_number=number,
                description=line.description[:300],
                quantity=quantity,
                unit_price=round_amount(Decimal(line.total) / quantity),
                net=net,
                tax=tax,
                total=line.total,
                tax_exempt=line.tax_exempt
            ))
            net_sum += net
            tax_sum += tax
            total_sum += line.total

        # Totales = suma de líneas, sin recálculo independiente
        document.net_amount = net_sum
        document.tax_amount = tax_sum
        document.total_amount = total_sum

        self.db.add(document)
        self.db.commit()
        self.db.refresh(document)

        logger.info(
            f"Documento {kind.value} {document.id} creado en borrador "
            f"(total={total_sum}, líneas={len(lines)})"
        )
        return document

    def build_from_pos(
        self,
        transaction: POSTransaction,
        tenant_id: UUID,
        receiver: Optional[ReceiverIn] = None,
        kind: DocumentKind = DocumentKind.RECEIPT
    ) -> TaxDocument:
        """Crea una boleta (por defecto) en borrador desde una venta POS"""
        self._ensure_not_converted(TaxDocument.source_pos_transaction_id, transaction.id, tenant_id)

        target = int(transaction.total_amount or 0)
        items = list(transaction.items or [])

        if items:
            base_totals = [int(item.price or 0) * int(item.quantity or 1) for item in items]
            totals = allocate_difference(base_totals, target)
            if sum(base_totals) != target:
                logger.info(
                    f"Venta {transaction.external_sale_id}: diferencia de {target - sum(base_totals)} "
                    f"prorrateada entre {len(items)} líneas"
                )
            lines = [
                DraftLine(description=item.name, quantity=item.quantity or 1, total=total)
                for item, total in zip(items, totals)
            ]
        else:
            lines = [DraftLine(description=f"Venta POS {transaction.external_sale_id}", quantity=1, total=target)]

        return self._build(
            tenant_id,
            kind,
            receiver,
            lines,
            notes=f"Venta POS {transaction.external_sale_id}",
            source_pos_transaction_id=transaction.id
        )

    def build_from_cost(
        self,
        cost: Cost,
        tenant_id: UUID,
        receiver: Optional[ReceiverIn] = None,
        kind: DocumentKind = DocumentKind.INVOICE
    ) -> TaxDocument:
        """Crea una factura (por defecto) en borrador desde un costo"""
        self._ensure_not_converted(TaxDocument.source_cost_id, cost.id, tenant_id)

        target = round_amount(cost.total)
        cost_lines = list(cost.lines or [])
        summary = cost.description or f"{cost.vendor_name or 'Costo'} {cost.doc_number or ''}".strip()

        if cost_lines:
            base_totals = [round_amount(line.total_cost) for line in cost_lines]
            totals = allocate_difference(base_totals, target) if target else base_totals
            lines = [
                DraftLine(description=line.description or summary, quantity=line.quantity or 1, total=total)
                for line, total in zip(cost_lines, totals)
            ]
        else:
            lines = [DraftLine(description=summary, quantity=1, total=target)]

        return self._build(
            tenant_id,
            kind,
            receiver,
            lines,
            notes=cost.description,
            source_cost_id=cost.id
        )
