"""
Fixtures compartidas para los tests de módulos.

- Base de datos SQLite en memoria (se recrea por test)
- FakeAuthority: doble de prueba del cliente de OpenFactura
- TestClient con get_db y el cliente de la autoridad reemplazados
"""
import os

# Debe configurarse antes de importar la aplicación
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "false"
os.environ["OPENFACTURA_API_KEY"] = "test-key"
os.environ["COMPANY_TAX_ID"] = "78188363-8"
os.environ["COMPANY_NAME"] = "MURALLA SPA"

import pytest
from datetime import datetime, date, timezone
from decimal import Decimal
from uuid import uuid4
from fastapi.testclient import TestClient

from app.main import app
from app.database.database import Base, engine, SessionLocal, get_db
from app.dependencies.authorityDependencies import get_tax_authority_client
from app.modules.pos.models import POSTransaction, POSTransactionItem
from app.modules.costs.models import Cost, CostLine


class FakeAuthority:
    """Doble de TaxAuthorityClient que registra las llamadas"""

    def __init__(self):
        self.submissions = []
        self.submit_responses = []  # dicts o excepciones, en orden
        self.pages = {}             # página -> dict o excepción
        self.feed_calls = []
        self.artifacts = {}         # (rut, tipo, folio, formato) -> bytes
        self.artifact_calls = []
        self.downloads = {}         # url -> bytes o excepción
        self.acknowledgments = []
        self.taxpayer = {"rut": "78188363-8", "razonSocial": "MURALLA SPA"}
        self.closed = False

    def submit_document(self, payload):
        self.submissions.append(payload)
        if self.submit_responses:
            response = self.submit_responses.pop(0)
        else:
            response = {"FOLIO": 1000 + len(self.submissions), "TOKEN": f"tok-{len(self.submissions)}"}
        if isinstance(response, Exception):
            raise response
        return response

    def fetch_received_documents(self, page=1, start_date=None, end_date=None, document_type=None, counterparty_tax_id=None):
        self.feed_calls.append({
            "page": page,
            "start_date": start_date,
            "end_date": end_date,
            "document_type": document_type,
            "counterparty_tax_id": counterparty_tax_id,
        })
        result = self.pages.get(page, {"data": [], "current_page": page, "last_page": page, "total": 0})
        if isinstance(result, Exception):
            raise result
        return result

    def fetch_document_artifact(self, emitter_tax_id, type_code, folio, fmt):
        self.artifact_calls.append((emitter_tax_id, int(type_code), str(folio), fmt))
        return self.artifacts.get((emitter_tax_id, int(type_code), str(folio), fmt))

    def download(self, url):
        result = self.downloads.get(url)
        if isinstance(result, Exception):
            raise result
        return result

    def acknowledge_document(self, emitter_tax_id, type_code, folio, code):
        self.acknowledgments.append((emitter_tax_id, type_code, folio, code))
        return {"status": "ok"}

    def get_taxpayer(self, tax_id):
        if isinstance(self.taxpayer, Exception):
            raise self.taxpayer
        return self.taxpayer

    def close(self):
        self.closed = True


def feed_page(records, page=1, last_page=1):
    return {"data": records, "current_page": page, "last_page": last_page, "total": len(records)}


@pytest.fixture
def db_session():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def tenant_id():
    return uuid4()


@pytest.fixture
def authority():
    return FakeAuthority()


@pytest.fixture
def client(db_session, authority, tenant_id):
    def override_get_db():
        yield db_session

    def override_authority():
        yield authority

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_tax_authority_client] = override_authority
    with TestClient(app) as test_client:
        test_client.headers.update({"X-Company-ID": str(tenant_id)})
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def pos_transaction(db_session, tenant_id):
    """Venta con propina: 2 x 3500 + 1 x 1500 = 8500, total 9000"""
    transaction = POSTransaction(
        tenant_id=tenant_id,
        external_sale_id="POS001-20250909103000-9000-SEQ001",
        sequence_number="SEQ001",
        serial_number="POS001",
        location_id="LOC-1",
        status="completed",
        transaction_type="SALE",
        transaction_date_time=datetime(2025, 9, 9, 10, 30, tzinfo=timezone.utc),
        sale_amount=8500,
        tip_amount=500,
        total_amount=9000,
    )
    transaction.items.append(POSTransactionItem(code="CAF-01", name="Café Americano Grande", quantity=2, price=3500))
    transaction.items.append(POSTransactionItem(code="PAN-01", name="Croissant", quantity=1, price=1500))
    db_session.add(transaction)
    db_session.commit()
    db_session.refresh(transaction)
    return transaction


@pytest.fixture
def cost(db_session, tenant_id):
    cost = Cost(
        tenant_id=tenant_id,
        vendor_name="Tostaduría del Sur",
        vendor_tax_id="76795561-8",
        doc_type="FACTURA",
        doc_number="5521",
        date=date(2025, 9, 1),
        total=Decimal("119000"),
        description="Café en grano",
    )
    cost.lines.append(CostLine(description="Café en grano 5kg", quantity=2, unit_cost=Decimal("50000"), total_cost=Decimal("100000")))
    cost.lines.append(CostLine(description="Despacho", quantity=1, unit_cost=Decimal("19000"), total_cost=Decimal("19000")))
    db_session.add(cost)
    db_session.commit()
    db_session.refresh(cost)
    return cost
