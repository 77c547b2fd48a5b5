"""
Tests para el módulo POS

Cubren la resolución del id externo de ventas, la sincronización de
reportes por sucursal y el listado con indicador de documento.
"""

import pytest

from app.modules.pos.identity import resolve_external_sale_id
from app.modules.pos.models import POSTransaction
from app.modules.pos.schemas import BranchReport
from app.modules.pos.service import POSSyncService
from app.modules.taxdocs.exceptions import UnresolvableIdentity


def sale(**overrides):
    data = {
        "id": None,
        "sequenceNumber": "SEQ001",
        "serialNumber": "POS001",
        "transactionDateTime": "2025-09-09T10:30:00",
        "saleAmount": 15000,
        "tipAmount": 0,
        "totalAmount": 15000,
        "status": "completed",
        "transactionType": "SALE",
        "items": [{"code": "CAF-01", "name": "Café Americano Grande", "quantity": 3, "price": 5000}],
    }
    data.update(overrides)
    return data


# ===== TESTS DE IDENTIDAD =====

class TestSaleIdentity:
    """Tests para la resolución del id externo"""

    def test_supplied_id_wins(self):
        assert resolve_external_sale_id(sale(id="TUU-123")) == "TUU-123"

    def test_alternate_fields_in_order(self):
        assert resolve_external_sale_id(sale(transactionId="TX-1", saleId="SL-1")) == "TX-1"
        assert resolve_external_sale_id(sale(saleId="SL-1", tuuSaleId="TS-1")) == "SL-1"
        assert resolve_external_sale_id(sale(id="  ", tuuSaleId="TS-1")) == "TS-1"

    def test_composite_key(self):
        """Venta sin id: serial + timestamp + monto + secuencia"""
        assert resolve_external_sale_id(sale()) == "POS001-20250909103000-15000-SEQ001"

    def test_composite_key_is_deterministic(self):
        first = resolve_external_sale_id(sale())
        second = resolve_external_sale_id(sale())
        assert first == second

    def test_composite_key_normalizes_values(self):
        assert resolve_external_sale_id(
            sale(transactionDateTime="2025-09-09T10:30:00.123Z", totalAmount=15000.0)
        ) == "POS001-20250909103000-15000-SEQ001"

    def test_composite_key_fallbacks(self):
        result = resolve_external_sale_id(
            sale(serialNumber=None, sequenceNumber=None, totalAmount=None, saleAmount=8500),
            {"id": "LOC-7"}
        )
        assert result == "LOC-7-20250909103000-8500-0"

    def test_unresolvable_identity(self):
        with pytest.raises(UnresolvableIdentity) as exc_info:
            resolve_external_sale_id(sale(serialNumber=None, transactionDateTime=None))
        assert exc_info.value.status_code == 422


# ===== TESTS DE SINCRONIZACIÓN =====

class TestPOSSync:
    """Tests para la ingesta de reportes por sucursal"""

    def test_ingest_creates_transactions(self, db_session, tenant_id):
        report = [BranchReport(location={"id": "LOC-1", "address": "Av. Providencia 123"}, sales=[
            sale(),
            sale(id="TUU-999", sequenceNumber="SEQ002"),
        ])]

        result = POSSyncService(db_session).ingest_branch_report(tenant_id, report)

        assert result.processed == 2
        assert result.created == 2
        assert result.existing == 0
        assert result.errors == []

        transaction = db_session.query(POSTransaction).filter(
            POSTransaction.external_sale_id == "POS001-20250909103000-15000-SEQ001"
        ).one()
        assert transaction.total_amount == 15000
        assert transaction.address == "Av. Providencia 123"
        assert transaction.location_id == "LOC-1"
        assert len(transaction.items) == 1

    def test_reprocessing_does_not_duplicate(self, db_session, tenant_id):
        report = [BranchReport(location={"id": "LOC-1"}, sales=[sale()])]
        service = POSSyncService(db_session)

        service.ingest_branch_report(tenant_id, report)
        result = service.ingest_branch_report(tenant_id, report)

        assert result.created == 0
        assert result.existing == 1
        assert db_session.query(POSTransaction).count() == 1

    def test_duplicates_within_batch(self, db_session, tenant_id):
        report = [BranchReport(sales=[sale(), sale()])]
        result = POSSyncService(db_session).ingest_branch_report(tenant_id, report)

        assert result.created == 1
        assert result.existing == 1

    def test_bad_sales_are_reported(self, db_session, tenant_id):
        report = [BranchReport(sales=[
            sale(serialNumber=None, transactionDateTime=None),
            sale(id="TUU-1", saleAmount=None),
            sale(id="TUU-2"),
        ])]
        result = POSSyncService(db_session).ingest_branch_report(tenant_id, report)

        assert result.processed == 3
        assert result.created == 1
        assert len(result.errors) == 2
        assert result.errors[1].external_sale_id == "TUU-1"
        assert "saleAmount" in result.errors[1].reason

    def test_malformed_item_does_not_abort_batch(self, db_session, tenant_id):
        """Un producto mal formado solo descarta su venta"""
        report = [BranchReport(sales=[
            sale(id="TUU-1"),
            sale(id="TUU-2", items=["oops"]),
            sale(id="TUU-3"),
        ])]
        result = POSSyncService(db_session).ingest_branch_report(tenant_id, report)

        assert result.processed == 3
        assert result.created == 2
        assert len(result.errors) == 1
        assert result.errors[0].external_sale_id == "TUU-2"
        ids = {t.external_sale_id for t in db_session.query(POSTransaction).all()}
        assert ids == {"TUU-1", "TUU-3"}


# ===== TESTS DE ENDPOINTS =====

class TestPOSEndpoints:
    """Tests de los endpoints /pos"""

    def test_sync_endpoint(self, client):
        payload = {"branches": [{"location": {"id": "LOC-1"}, "sales": [sale(), sale(id="TUU-5")]}]}

        response = client.post("/pos/transactions/sync", json=payload)
        assert response.status_code == 200
        assert response.json()["created"] == 2

        again = client.post("/pos/transactions/sync", json=payload).json()
        assert again["created"] == 0
        assert again["existing"] == 2

    def test_sync_requires_branches(self, client):
        response = client.post("/pos/transactions/sync", json={"branches": []})
        assert response.status_code == 422

    def test_list_with_document_flag(self, client, pos_transaction):
        client.post("/pos/transactions/sync", json={"branches": [{"sales": [sale(id="TUU-5")]}]})
        client.post(f"/invoicing/boletas/from-pos/{pos_transaction.id}", json={})

        listing = client.get("/pos/transactions").json()
        assert listing["total"] == 2
        flags = {t["external_sale_id"]: t["has_document"] for t in listing["transactions"]}
        assert flags == {"POS001-20250909103000-9000-SEQ001": True, "TUU-5": False}

        with_document = client.get("/pos/transactions", params={"has_document": True}).json()
        assert with_document["total"] == 1
        assert with_document["transactions"][0]["id"] == str(pos_transaction.id)

        without_document = client.get("/pos/transactions", params={"has_document": False}).json()
        assert without_document["total"] == 1
        assert without_document["transactions"][0]["external_sale_id"] == "TUU-5"

    def test_superseded_document_frees_transaction(self, client, pos_transaction):
        created = client.post(f"/invoicing/boletas/from-pos/{pos_transaction.id}", json={}).json()
        client.post(f"/invoicing/documents/{created['id']}/supersede", json={"reason": "Anulada"})

        listing = client.get("/pos/transactions", params={"has_document": False}).json()
        assert listing["total"] == 1
