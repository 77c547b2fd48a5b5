"""
Validadores específicos para Chile
"""
import re
from typing import Optional, Tuple


def clean_rut(rut: str) -> str:
    """Quita puntos, espacios y guiones; normaliza el dígito verificador a mayúscula"""
    return re.sub(r'[\.\s\-]', '', rut or '').upper()


def calculate_rut_dv(number: str) -> Optional[str]:
    """
    Calcula el dígito verificador de un RUT (módulo 11).

    Args:
        number: Cuerpo numérico del RUT, sin dígito verificador

    Returns:
        '0'-'9' o 'K', o None si la entrada no es numérica
    """
    cleaned = re.sub(r'[\.\s]', '', number or '')
    if not cleaned.isdigit():
        return None

    multiplicadores = [2, 3, 4, 5, 6, 7]
    suma = 0
    for i, digito in enumerate(reversed(cleaned)):
        suma += int(digito) * multiplicadores[i % len(multiplicadores)]

    resultado = 11 - (suma % 11)
    if resultado == 11:
        return '0'
    if resultado == 10:
        return 'K'
    return str(resultado)


def split_rut(rut: str) -> Optional[Tuple[str, str]]:
    """Separa un RUT en (cuerpo, dígito verificador)"""
    cleaned = clean_rut(rut)
    if len(cleaned) < 2:
        return None
    return cleaned[:-1], cleaned[-1]


def validate_chile_rut(rut: str) -> bool:
    """
    Valida RUT chileno.
    - Entre 7 y 8 dígitos de cuerpo + dígito verificador
    - Formatos aceptados: 12.345.678-5, 12345678-5, 123456785
    """
    parts = split_rut(rut)
    if not parts:
        return False

    cuerpo, dv = parts
    if not cuerpo.isdigit() or not 7 <= len(cuerpo) <= 8:
        return False

    return calculate_rut_dv(cuerpo) == dv


def format_chile_rut(rut: str) -> str:
    """
    Formatea RUT chileno al formato estándar XXXXXXXX-X (sin puntos)
    """
    if not validate_chile_rut(rut):
        return rut  # Retorna sin cambios si no es válido

    cuerpo, dv = split_rut(rut)
    return f"{int(cuerpo)}-{dv}"


def join_rut(number, dv) -> Optional[str]:
    """Construye 'NNNNNNNN-D' a partir de cuerpo y dígito verificador tal como vienen del SII"""
    if number is None or number == '':
        return None
    dv_str = str(dv).strip().upper() if dv is not None else ''
    number_str = str(number).strip()
    return f"{number_str}-{dv_str}" if dv_str else number_str
