from typing import Iterator
from app.modules.taxdocs.authority import TaxAuthorityClient


def get_tax_authority_client() -> Iterator[TaxAuthorityClient]:
    """Un cliente HTTP por request; la sesión se cierra al terminar"""
    client = TaxAuthorityClient()
    try:
        yield client
    finally:
        client.close()
