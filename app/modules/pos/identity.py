"""
Resolución del identificador externo de ventas POS

El proveedor de terminales a veces entrega el id de la venta vacío o nulo.
Para no perder la venta (ni duplicarla al reprocesar la misma página del
reporte) se prueba una lista fija de campos alternativos y, si ninguno
existe, se construye una llave compuesta determinista:

    {serialNumber}-{timestamp (14 dígitos)}-{totalAmount}-{sequenceNumber}

La llave compuesta no es provablemente libre de colisiones: dos ventas con
el mismo serial, segundo, monto y secuencia producen el mismo id.
"""
from typing import Any, Dict, Optional
import re
import logging

from app.modules.taxdocs.exceptions import UnresolvableIdentity

logger = logging.getLogger(__name__)

# Orden de prioridad de los campos alternativos
ALTERNATE_ID_FIELDS = ("transactionId", "saleId", "tuuSaleId")

TIMESTAMP_DIGITS = 14  # AAAAMMDDhhmmss


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _format_amount(value: Any) -> str:
    if value is None or value == "":
        return "0"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def resolve_external_sale_id(sale: Dict[str, Any], context: Optional[Dict[str, Any]] = None) -> str:
    """
    Obtiene un identificador externo no vacío para una venta POS.

    Args:
        sale: Venta tal como viene del reporte del proveedor
        context: Datos del lote/sucursal que contiene la venta (location)

    Returns:
        El id informado, un id alternativo o la llave compuesta

    Raises:
        UnresolvableIdentity: si no hay serial ni fecha con dígitos
    """
    supplied = _clean(sale.get("id"))
    if supplied:
        return supplied

    for field in ALTERNATE_ID_FIELDS:
        candidate = _clean(sale.get(field))
        if candidate:
            return candidate

    serial = _clean(sale.get("serialNumber"))
    raw_timestamp = _clean(sale.get("transactionDateTime")) or ""
    digits = re.sub(r"\D", "", raw_timestamp)[:TIMESTAMP_DIGITS]

    if not serial and not digits:
        raise UnresolvableIdentity(
            "No es posible derivar un id para la venta: faltan serialNumber y transactionDateTime",
            sequence_number=sale.get("sequenceNumber"),
        )

    if not serial:
        location = (context or {}).get("locationId") or (context or {}).get("id")
        serial = _clean(location) or "unknown"

    amount = sale.get("totalAmount")
    if amount is None or amount == "":
        amount = sale.get("saleAmount")
    sequence = _clean(sale.get("sequenceNumber")) or "0"

    synthesized = f"{serial}-{digits}-{_format_amount(amount)}-{sequence}"
    logger.warning(f"Venta POS sin id, se usa id sintetizado {synthesized}")
    return synthesized
