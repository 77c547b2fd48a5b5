"""
Tests para el módulo de Documentos Tributarios

Cubren:
- Tablas de códigos SII y desglose de IVA
- Construcción de borradores desde POS y costos
- Emisión idempotente y manejo de errores de la autoridad
- Importación de documentos recibidos (paginación, deduplicación, errores)
- Cadena de recuperación de artefactos
- Endpoints HTTP del router /invoicing
"""

import base64
import json
import pytest
import requests
from datetime import date, timedelta
from decimal import Decimal, ROUND_HALF_UP
from fastapi.testclient import TestClient
from sqlalchemy.exc import IntegrityError

from app.main import app
from app.common.validators import validate_chile_rut, format_chile_rut, calculate_rut_dv, join_rut
from app.modules.taxdocs.builder import DocumentBuilder, split_tax, allocate_difference
from app.modules.taxdocs.codes import (
    map_external_type_to_kind, map_kind_to_external_type,
    map_acknowledgment_to_status, map_submission_state
)
from app.modules.taxdocs.emission import EmissionClient
from app.modules.taxdocs.exceptions import (
    InvalidReceiver, AlreadyConverted, UpstreamTransportError,
    UpstreamRejected, ArtifactUnavailable
)
from app.modules.taxdocs.authority import TaxAuthorityClient
from app.modules.taxdocs.importer import ReceivedDocumentImporter
from app.modules.taxdocs.models import (
    TaxDocument, DocumentKind, DocumentStatus, DocumentDirection
)
from app.modules.taxdocs.retrieval import RetrievalGateway, ArtifactFormat, ArtifactTier, DisplayMode
from app.modules.taxdocs.schemas import ReceiverIn
from app.modules.taxdocs.service import TaxDocumentService

from conftest import feed_page


# ===== FIXTURES =====

def received_record(folio="B-001", tipo=39, rut=76795561, dv="8", **extra):
    record = {
        "TipoDTE": tipo,
        "Folio": folio,
        "RUTEmisor": rut,
        "DV": dv,
        "RznSoc": "Panadería Los Aromos SpA",
        "FchEmis": "2025-09-01",
        "MntNeto": 8403,
        "IVA": 1597,
        "MntTotal": 10000,
        "FmaPago": "1",
    }
    record.update(extra)
    return record


@pytest.fixture
def service(db_session, authority):
    return TaxDocumentService(db_session, authority)


@pytest.fixture
def draft_receipt(service, pos_transaction, tenant_id):
    return service.create_draft_from_pos(pos_transaction.id, tenant_id)


@pytest.fixture
def importer(db_session, authority):
    sleeps = []
    importer = ReceivedDocumentImporter(db_session, authority, sleep=sleeps.append, page_delay=2.0, max_pages=5)
    importer.sleeps = sleeps
    return importer


# ===== TESTS DE TABLAS DE CÓDIGOS =====

class TestCodeTables:
    """Tests para las tablas de códigos SII"""

    def test_known_document_types(self):
        assert map_external_type_to_kind(33) == DocumentKind.INVOICE
        assert map_external_type_to_kind(39) == DocumentKind.RECEIPT
        assert map_external_type_to_kind(56) == DocumentKind.DEBIT_NOTE
        assert map_external_type_to_kind(61) == DocumentKind.CREDIT_NOTE
        assert map_external_type_to_kind("39") == DocumentKind.RECEIPT

    def test_unknown_document_type_defaults_to_invoice(self):
        """Códigos desconocidos nunca lanzan excepción"""
        assert map_external_type_to_kind(99) == DocumentKind.INVOICE
        assert map_external_type_to_kind("abc") == DocumentKind.INVOICE
        assert map_external_type_to_kind(None) == DocumentKind.INVOICE

    def test_kind_to_external_type(self):
        assert map_kind_to_external_type(DocumentKind.RECEIPT) == 39
        assert map_kind_to_external_type(DocumentKind.INVOICE) == 33
        assert map_kind_to_external_type(DocumentKind.CREDIT_NOTE) == 61

    def test_no_acknowledgments_is_issued(self):
        assert map_acknowledgment_to_status([]) == DocumentStatus.ISSUED
        assert map_acknowledgment_to_status(None) == DocumentStatus.ISSUED

    def test_last_acknowledgment_wins(self):
        assert map_acknowledgment_to_status(
            [{"codEvento": "RCD"}, {"codEvento": "ACD"}]
        ) == DocumentStatus.ACCEPTED
        assert map_acknowledgment_to_status(
            [{"codEvento": "ACD"}, {"codEvento": "RCD"}]
        ) == DocumentStatus.REJECTED
        assert map_acknowledgment_to_status(
            [{"codEvento": "ACD"}, {"codEvento": "ENV"}]
        ) == DocumentStatus.ISSUED

    def test_acknowledgment_codes(self):
        assert map_acknowledgment_to_status([{"codEvento": "PAG"}]) == DocumentStatus.ACCEPTED
        assert map_acknowledgment_to_status([{"code": "ERM"}]) == DocumentStatus.ACCEPTED
        assert map_acknowledgment_to_status(["rcd"]) == DocumentStatus.REJECTED
        assert map_acknowledgment_to_status([{"codEvento": "XYZ"}]) == DocumentStatus.ISSUED

    def test_submission_state(self):
        assert map_submission_state({"estado": "ACEPTADO"}) == DocumentStatus.ACCEPTED
        assert map_submission_state({"status": "RCH"}) == DocumentStatus.REJECTED
        assert map_submission_state({"estado": "RECIBIDO", "FOLIO": 10}) == DocumentStatus.PENDING
        assert map_submission_state({"FOLIO": 123}) == DocumentStatus.ACCEPTED
        assert map_submission_state({}) == DocumentStatus.PENDING
        assert map_submission_state(None) == DocumentStatus.PENDING


# ===== TESTS DE RUT =====

class TestRutValidation:
    """Tests para validación de RUT chileno"""

    def test_calculate_dv(self):
        assert calculate_rut_dv("76795561") == "8"
        assert calculate_rut_dv("66666666") == "6"
        assert calculate_rut_dv("12345678") == "5"
        assert calculate_rut_dv("abc") is None

    def test_validate_rut(self):
        assert validate_chile_rut("76795561-8") is True
        assert validate_chile_rut("76.795.561-8") is True
        assert validate_chile_rut("767955618") is True
        assert validate_chile_rut("76795561-9") is False
        assert validate_chile_rut("") is False
        assert validate_chile_rut("1-9") is False

    def test_format_and_join(self):
        assert format_chile_rut("78.188.363-8") == "78188363-8"
        assert join_rut(76795561, 8) == "76795561-8"
        assert join_rut("12345678", "k") == "12345678-K"
        assert join_rut(None, "8") is None


# ===== TESTS DE DESGLOSE =====

class TestTaxSplit:
    """Tests del desglose neto / IVA"""

    def test_split_exactness(self):
        rate = Decimal("0.19")
        totals = list(range(0, 3000)) + [9000, 119000, 1_234_567, 9_999_999, 10_000_000]
        for total in totals:
            net, tax = split_tax(total, rate)
            assert net + tax == total
            expected = int((Decimal(total) / Decimal("1.19")).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
            assert net == expected

    def test_split_known_values(self):
        assert split_tax(119, Decimal("0.19")) == (100, 19)
        assert split_tax(9000, Decimal("0.19")) == (7563, 1437)
        assert split_tax(0, Decimal("0.19")) == (0, 0)

    def test_exempt_split(self):
        assert split_tax(5000, Decimal("0.19"), exempt=True) == (5000, 0)

    def test_allocate_tip_across_lines(self):
        """La propina se reparte en proporción y los totales cuadran"""
        assert allocate_difference([7000, 1500], 9000) == [7412, 1588]

    def test_allocate_preserves_target(self):
        cases = [([100, 200, 300], 1000), ([333, 333, 334], 1001), ([1000, 1000], 1500), ([1, 1, 1], 2)]
        for lines, target in cases:
            assert sum(allocate_difference(lines, target)) == target

    def test_allocate_edge_cases(self):
        assert allocate_difference([], 100) == []
        assert allocate_difference([0, 0], 100) == [0, 100]
        assert allocate_difference([500, 500], 1000) == [500, 500]


# ===== TESTS DEL BUILDER =====

class TestDocumentBuilder:
    """Tests para la construcción de borradores"""

    def test_receipt_from_pos_with_tip(self, service, pos_transaction, tenant_id, authority):
        """Venta 8500 + propina 500: boleta de 9000 en borrador sin folio"""
        document = service.create_draft_from_pos(pos_transaction.id, tenant_id, emit_now=False)

        assert document.status == DocumentStatus.DRAFT
        assert document.kind == DocumentKind.RECEIPT
        assert document.external_type_code == 39
        assert document.folio is None
        assert document.total_amount == 9000
        assert len(document.items) == 2
        assert sum(item.total for item in document.items) == 9000
        assert [item.total for item in document.items] == [7412, 1588]
        assert document.source_pos_transaction_id == pos_transaction.id
        assert authority.submissions == []

    def test_line_and_header_consistency(self, draft_receipt):
        for item in draft_receipt.items:
            assert item.net + item.tax == item.total
            assert item.tax_exempt is False
        assert draft_receipt.net_amount == sum(item.net for item in draft_receipt.items)
        assert draft_receipt.tax_amount == sum(item.tax for item in draft_receipt.items)
        assert draft_receipt.net_amount + draft_receipt.tax_amount == draft_receipt.total_amount
        assert [item.line_number for item in draft_receipt.items] == [1, 2]

    def test_receipt_defaults_to_final_consumer(self, draft_receipt):
        assert draft_receipt.receiver_tax_id == "66666666-6"
        assert draft_receipt.receiver_name == "CONSUMIDOR FINAL"
        assert draft_receipt.emitter_tax_id == "78188363-8"

    def test_receipt_with_receiver(self, service, pos_transaction, tenant_id):
        receiver = ReceiverIn(tax_id="76.795.561-8", name="Cliente SpA", email="cliente@example.com")
        document = service.create_draft_from_pos(pos_transaction.id, tenant_id, receiver)
        assert document.receiver_tax_id == "76795561-8"
        assert document.receiver_email == "cliente@example.com"

    def test_already_converted(self, service, pos_transaction, tenant_id, draft_receipt):
        with pytest.raises(AlreadyConverted) as exc_info:
            service.create_draft_from_pos(pos_transaction.id, tenant_id)
        assert exc_info.value.status_code == 409
        assert exc_info.value.detail["document_id"] == str(draft_receipt.id)

    def test_superseded_source_can_be_converted_again(self, service, pos_transaction, tenant_id, draft_receipt):
        service.supersede_document(draft_receipt.id, tenant_id, "Receptor incorrecto")
        replacement = service.create_draft_from_pos(pos_transaction.id, tenant_id)

        old = service.get_document_by_id(draft_receipt.id, tenant_id)
        assert old.superseded_by_id == replacement.id
        assert "Receptor incorrecto" in old.notes
        assert replacement.superseded_at is None

    def test_pos_without_items_yields_summary_line(self, db_session, pos_transaction, tenant_id):
        pos_transaction.items.clear()
        db_session.commit()

        document = DocumentBuilder(db_session).build_from_pos(pos_transaction, tenant_id)
        assert len(document.items) == 1
        assert document.items[0].total == 9000

    def test_invoice_requires_receiver(self, service, cost, tenant_id):
        with pytest.raises(InvalidReceiver):
            service.create_draft_from_cost(cost.id, tenant_id, None)

    def test_invoice_rejects_bad_rut(self, service, cost, tenant_id):
        with pytest.raises(InvalidReceiver) as exc_info:
            service.create_draft_from_cost(cost.id, tenant_id, ReceiverIn(tax_id="76795561-9", name="X"))
        assert exc_info.value.status_code == 400

    def test_invoice_requires_receiver_name(self, service, cost, tenant_id):
        with pytest.raises(InvalidReceiver):
            service.create_draft_from_cost(cost.id, tenant_id, ReceiverIn(tax_id="76795561-8"))

    def test_invoice_from_cost(self, service, cost, tenant_id):
        receiver = ReceiverIn(tax_id="76795561-8", name="Tostaduría del Sur")
        document = service.create_draft_from_cost(cost.id, tenant_id, receiver)

        assert document.kind == DocumentKind.INVOICE
        assert document.external_type_code == 33
        assert document.total_amount == 119000
        assert [item.total for item in document.items] == [100000, 19000]
        assert document.source_cost_id == cost.id
        assert document.net_amount + document.tax_amount == 119000


# ===== TESTS DE EMISIÓN =====

class TestEmission:
    """Tests para el cliente de emisión"""

    def test_emit_success(self, db_session, authority, draft_receipt):
        document = EmissionClient(db_session, authority).emit(draft_receipt)

        assert document.status == DocumentStatus.ACCEPTED
        assert document.folio == "1001"
        assert document.external_document_id == "tok-1"
        assert document.issued_at is not None
        assert document.last_error is None
        assert document.raw_external_response["FOLIO"] == 1001

    def test_emit_is_idempotent(self, db_session, authority, draft_receipt):
        """Emitir dos veces devuelve el mismo folio sin segundo envío"""
        client = EmissionClient(db_session, authority)
        first = client.emit(draft_receipt)
        second = client.emit(first)

        assert first.folio == second.folio
        assert len(authority.submissions) == 1

    def test_submission_payload(self, db_session, authority, draft_receipt):
        EmissionClient(db_session, authority).emit(draft_receipt)
        payload = authority.submissions[0]

        assert payload["response"] == ["PDF", "XML", "FOLIO"]
        encabezado = payload["dte"]["Encabezado"]
        assert encabezado["IdDoc"]["TipoDTE"] == 39
        assert encabezado["Emisor"]["RUTEmisor"] == "78188363-8"
        assert encabezado["Receptor"]["RUTRecep"] == "66666666-6"
        assert encabezado["Totales"]["MntTotal"] == 9000

        detalle = payload["dte"]["Detalle"]
        assert [line["NroLinDet"] for line in detalle] == [1, 2]
        assert sum(line["MontoItem"] for line in detalle) == 9000
        assert all("IndExe" not in line for line in detalle)

    def test_pending_without_affirmative_signal(self, db_session, authority, draft_receipt):
        authority.submit_responses = [{"estado": "RECIBIDO", "FOLIO": 55}]
        client = EmissionClient(db_session, authority)

        document = client.emit(draft_receipt)
        assert document.status == DocumentStatus.PENDING
        assert document.folio == "55"

        # Pendiente con folio: no se reenvía
        client.emit(document)
        assert len(authority.submissions) == 1

    def test_transport_error_keeps_status(self, db_session, authority, draft_receipt):
        authority.submit_responses = [UpstreamTransportError("Timeout llamando a la autoridad")]

        with pytest.raises(UpstreamTransportError) as exc_info:
            EmissionClient(db_session, authority).emit(draft_receipt)

        db_session.refresh(draft_receipt)
        assert draft_receipt.status == DocumentStatus.DRAFT
        assert draft_receipt.folio is None
        assert "Timeout" in draft_receipt.last_error
        assert exc_info.value.detail["document_id"] == str(draft_receipt.id)
        assert exc_info.value.status_code == 502

    def test_manual_retry_after_transport_error(self, db_session, authority, draft_receipt):
        authority.submit_responses = [UpstreamTransportError("HTTP 503")]
        client = EmissionClient(db_session, authority)
        with pytest.raises(UpstreamTransportError):
            client.emit(draft_receipt)

        document = client.emit(draft_receipt)
        assert document.status == DocumentStatus.ACCEPTED
        assert document.last_error is None
        assert len(authority.submissions) == 2

    def test_explicit_rejection(self, db_session, authority, draft_receipt):
        authority.submit_responses = [UpstreamRejected("HTTP 400", response={"error": "RUT receptor inválido"})]
        client = EmissionClient(db_session, authority)

        with pytest.raises(UpstreamRejected):
            client.emit(draft_receipt)

        db_session.refresh(draft_receipt)
        assert draft_receipt.status == DocumentStatus.REJECTED
        assert draft_receipt.raw_external_response == {"error": "RUT receptor inválido"}

        # Rechazado es terminal: nunca se reenvía
        with pytest.raises(UpstreamRejected):
            client.emit(draft_receipt)
        assert len(authority.submissions) == 1

    def test_rejected_state_in_response(self, db_session, authority, draft_receipt):
        authority.submit_responses = [{"estado": "RECHAZADO", "glosa": "Firma inválida"}]

        with pytest.raises(UpstreamRejected):
            EmissionClient(db_session, authority).emit(draft_receipt)

        db_session.refresh(draft_receipt)
        assert draft_receipt.status == DocumentStatus.REJECTED
        assert draft_receipt.raw_external_response["glosa"] == "Firma inválida"

    def test_duplicate_folio_returns_existing(self, db_session, authority, draft_receipt, tenant_id):
        """Una violación de la llave natural se trata como 'ya existe'"""
        existing = TaxDocument(
            tenant_id=tenant_id,
            kind=DocumentKind.RECEIPT,
            external_type_code=39,
            folio="777",
            status=DocumentStatus.ACCEPTED,
            emitter_tax_id="78188363-8",
            net_amount=7563,
            tax_amount=1437,
            total_amount=9000,
        )
        db_session.add(existing)
        db_session.commit()

        authority.submit_responses = [{"FOLIO": 777}]
        result = EmissionClient(db_session, authority).emit(draft_receipt)

        assert result.id == existing.id
        db_session.refresh(draft_receipt)
        assert draft_receipt.folio is None
        assert db_session.query(TaxDocument).filter(TaxDocument.folio == "777").count() == 1

    def test_natural_key_unique_constraint(self, db_session, tenant_id):
        for _ in range(2):
            db_session.add(TaxDocument(
                tenant_id=tenant_id,
                kind=DocumentKind.INVOICE,
                external_type_code=33,
                folio="100",
                status=DocumentStatus.ISSUED,
                direction=DocumentDirection.RECEIVED,
                emitter_tax_id="76795561-8",
            ))
            try:
                db_session.commit()
            except IntegrityError:
                db_session.rollback()

        assert db_session.query(TaxDocument).filter(TaxDocument.folio == "100").count() == 1

    def test_accepted_sibling_is_returned(self, db_session, authority, draft_receipt, pos_transaction, tenant_id):
        accepted = EmissionClient(db_session, authority).emit(draft_receipt)

        sibling = TaxDocument(
            tenant_id=tenant_id,
            kind=DocumentKind.RECEIPT,
            external_type_code=39,
            status=DocumentStatus.DRAFT,
            emitter_tax_id="78188363-8",
            source_pos_transaction_id=pos_transaction.id,
        )
        db_session.add(sibling)
        db_session.commit()

        result = EmissionClient(db_session, authority).emit(sibling)
        assert result.id == accepted.id
        assert len(authority.submissions) == 1

    def test_emit_now_isolates_failure(self, service, authority, pos_transaction, tenant_id):
        """La creación sobrevive a un error de emisión"""
        authority.submit_responses = [UpstreamTransportError("Error de conexión con la autoridad")]

        document = service.create_draft_from_pos(pos_transaction.id, tenant_id, emit_now=True)

        assert document.id is not None
        assert document.status == DocumentStatus.DRAFT
        assert "conexión" in document.last_error

    def test_emit_now_success(self, service, pos_transaction, tenant_id):
        document = service.create_draft_from_pos(pos_transaction.id, tenant_id, emit_now=True)
        assert document.status == DocumentStatus.ACCEPTED
        assert document.folio == "1001"

    def test_emit_document_propagates_errors(self, service, authority, draft_receipt, tenant_id):
        authority.submit_responses = [UpstreamTransportError("HTTP 500")]
        with pytest.raises(UpstreamTransportError):
            service.emit_document(draft_receipt.id, tenant_id)


# ===== TESTS DE IMPORTACIÓN =====

class TestReceivedDocumentImporter:
    """Tests para la importación de documentos recibidos"""

    def test_import_is_idempotent(self, db_session, authority, importer, tenant_id):
        authority.pages[1] = feed_page([received_record()])

        first = importer.run(tenant_id)
        second = importer.run(tenant_id)

        assert first.total_imported == 1
        assert second.total_imported == 0
        assert second.total_skipped == 1
        assert db_session.query(TaxDocument).filter(TaxDocument.folio == "B-001").count() == 1

    def test_imported_document_fields(self, db_session, authority, importer, tenant_id):
        authority.pages[1] = feed_page([received_record()])
        importer.run(tenant_id)

        document = db_session.query(TaxDocument).filter(TaxDocument.folio == "B-001").one()
        assert document.kind == DocumentKind.RECEIPT
        assert document.direction == DocumentDirection.RECEIVED
        assert document.status == DocumentStatus.ISSUED
        assert document.emitter_tax_id == "76795561-8"
        assert document.receiver_tax_id == "78188363-8"
        assert "Contado" in document.notes
        assert document.raw_external_response["Folio"] == "B-001"
        assert len(document.items) == 1
        item = document.items[0]
        assert (item.net, item.tax, item.total) == (8403, 1597, 10000)
        assert document.total_amount == 10000

    def test_acknowledgments_are_ordered(self, db_session, authority, importer, tenant_id):
        record = received_record(Acuses=[
            {"codEvento": "ACD", "fechaEvento": "2025-09-03 10:00:00"},
            {"codEvento": "RCD", "fechaEvento": "2025-09-02 10:00:00"},
        ])
        authority.pages[1] = feed_page([record])
        importer.run(tenant_id)

        document = db_session.query(TaxDocument).filter(TaxDocument.folio == "B-001").one()
        assert document.status == DocumentStatus.ACCEPTED

    def test_detail_lines(self, db_session, authority, importer, tenant_id):
        record = received_record(folio="9001", tipo=33, Detalle=[
            {"NroLinDet": 1, "NmbItem": "Harina", "QtyItem": 2, "PrcItem": 5000, "MontoItem": 10000},
            {"NroLinDet": 2, "NmbItem": "Flete", "QtyItem": 1, "PrcItem": 3000, "MontoItem": 3000, "IndExe": 1},
        ])
        authority.pages[1] = feed_page([record])
        importer.run(tenant_id)

        document = db_session.query(TaxDocument).filter(TaxDocument.folio == "9001").one()
        assert len(document.items) == 2
        assert (document.items[0].tax, document.items[0].total) == (1900, 11900)
        assert document.items[1].tax_exempt is True
        assert document.items[1].tax == 0
        assert document.total_amount == 14900

    def test_exempt_summary_line(self, db_session, authority, importer, tenant_id):
        record = received_record(folio="300", tipo=34, MntNeto=0, IVA=0, MntExe=5000, MntTotal=5000)
        authority.pages[1] = feed_page([record])
        importer.run(tenant_id)

        document = db_session.query(TaxDocument).filter(TaxDocument.folio == "300").one()
        assert document.kind == DocumentKind.INVOICE
        assert document.external_type_code == 34
        assert document.items[0].tax_exempt is True
        assert document.tax_amount == 0

    def test_pagination_with_throttle(self, db_session, authority, importer, tenant_id):
        authority.pages = {
            1: feed_page([received_record(folio="1")], page=1, last_page=3),
            2: feed_page([received_record(folio="2")], page=2, last_page=3),
            3: feed_page([received_record(folio="3")], page=3, last_page=3),
        }
        summary = importer.run(tenant_id)

        assert summary.pages_fetched == 3
        assert summary.total_fetched == 3
        assert summary.total_imported == 3
        assert importer.sleeps == [2.0, 2.0]
        assert [call["page"] for call in authority.feed_calls] == [1, 2, 3]

    def test_page_ceiling(self, db_session, authority, tenant_id):
        authority.pages = {
            page: feed_page([received_record(folio=str(page))], page=page, last_page=10)
            for page in range(1, 11)
        }
        sleeps = []
        summary = ReceivedDocumentImporter(db_session, authority, sleep=sleeps.append, max_pages=2).run(tenant_id)

        assert summary.pages_fetched == 2
        assert summary.total_imported == 2
        assert len(sleeps) == 1

    def test_bad_record_does_not_abort_page(self, db_session, authority, importer, tenant_id):
        bad = received_record()
        bad.pop("Folio")
        authority.pages[1] = feed_page([received_record(folio="10"), bad, received_record(folio="11")])

        summary = importer.run(tenant_id)

        assert summary.total_imported == 2
        assert len(summary.errors) == 1
        assert "Folio" in summary.errors[0].reason

    def test_malformed_records_do_not_abort_page(self, db_session, authority, importer, tenant_id):
        """Registros que no son objetos se anotan como error y la corrida sigue"""
        authority.pages[1] = feed_page([received_record(folio="10"), None, "basura", received_record(folio="11")])

        summary = importer.run(tenant_id)

        assert summary.aborted is False
        assert summary.total_imported == 2
        assert len(summary.errors) == 2
        assert "formato inesperado" in summary.errors[0].reason
        assert db_session.query(TaxDocument).count() == 2

    def test_zero_page_ceiling_fetches_nothing(self, authority, tenant_id, db_session):
        authority.pages[1] = feed_page([received_record()])
        summary = ReceivedDocumentImporter(db_session, authority, sleep=lambda s: None, max_pages=0).run(tenant_id)

        assert summary.pages_fetched == 0
        assert authority.feed_calls == []

    def test_duplicates_within_same_page(self, authority, importer, tenant_id):
        authority.pages[1] = feed_page([received_record(), received_record()])
        summary = importer.run(tenant_id)

        assert summary.total_imported == 1
        assert summary.total_skipped == 1

    def test_feed_failure_returns_partial_summary(self, db_session, authority, importer, tenant_id):
        authority.pages = {
            1: feed_page([received_record(folio="1")], page=1, last_page=3),
            2: UpstreamTransportError("La autoridad respondió HTTP 503"),
        }
        summary = importer.run(tenant_id)

        assert summary.aborted is True
        assert "Página 2" in summary.abort_reason
        assert summary.total_imported == 1
        assert db_session.query(TaxDocument).count() == 1

    def test_dry_run_does_not_write(self, db_session, authority, importer, tenant_id):
        authority.pages[1] = feed_page([received_record(folio="1"), received_record(folio="2")])
        summary = importer.run(tenant_id, dry_run=True)

        assert summary.dry_run is True
        assert summary.total_imported == 2
        assert db_session.query(TaxDocument).count() == 0

    def test_default_window(self, authority, importer, tenant_id):
        importer.run(tenant_id)
        call = authority.feed_calls[0]
        assert call["end_date"] == date.today()
        assert call["start_date"] == date.today() - timedelta(days=60)

    def test_filters_are_forwarded(self, authority, importer, tenant_id):
        importer.run(
            tenant_id,
            start_date=date(2025, 9, 1),
            end_date=date(2025, 9, 30),
            document_type=33,
            counterparty_tax_id="76795561"
        )
        call = authority.feed_calls[0]
        assert call["document_type"] == 33
        assert call["counterparty_tax_id"] == "76795561"
        assert call["start_date"] == date(2025, 9, 1)


# ===== TESTS DE RECUPERACIÓN =====

class TestRetrievalGateway:
    """Tests de la cadena de respaldo de artefactos"""

    def test_json_is_synthesized(self, authority, draft_receipt):
        artifact = RetrievalGateway(authority).resolve(draft_receipt, ArtifactFormat.JSON)

        assert artifact.tier == ArtifactTier.SYNTHESIZED
        assert artifact.content_type == "application/json"
        data = json.loads(artifact.content)
        assert data["totals"]["total"] == 9000
        assert len(data["items"]) == 2
        assert artifact.filename == f"receipt-{draft_receipt.id}.json"

    def test_pdf_never_synthesized(self, authority, draft_receipt):
        with pytest.raises(ArtifactUnavailable) as exc_info:
            RetrievalGateway(authority).resolve(draft_receipt, ArtifactFormat.PDF)
        assert exc_info.value.status_code == 404

    def test_pdf_from_cache(self, db_session, authority, draft_receipt):
        draft_receipt.pdf_url = "https://cdn.example.com/boleta.pdf"
        db_session.commit()
        authority.downloads["https://cdn.example.com/boleta.pdf"] = b"%PDF-cache"

        artifact = RetrievalGateway(authority).resolve(draft_receipt, ArtifactFormat.PDF)
        assert artifact.tier == ArtifactTier.CACHE
        assert artifact.content == b"%PDF-cache"

    def test_pdf_live_lookup_when_cache_fails(self, db_session, authority, draft_receipt):
        document = EmissionClient(db_session, authority).emit(draft_receipt)
        document.pdf_url = "https://cdn.example.com/caida.pdf"
        db_session.commit()
        authority.downloads["https://cdn.example.com/caida.pdf"] = UpstreamTransportError("HTTP 502")
        authority.artifacts[("78188363-8", 39, "1001", "pdf")] = b"%PDF-live"

        artifact = RetrievalGateway(authority).resolve(document, ArtifactFormat.PDF)
        assert artifact.tier == ArtifactTier.LIVE
        assert artifact.content == b"%PDF-live"
        assert artifact.filename == "receipt-1001.pdf"

    def test_xml_unavailable(self, db_session, authority, draft_receipt):
        document = EmissionClient(db_session, authority).emit(draft_receipt)
        with pytest.raises(ArtifactUnavailable):
            RetrievalGateway(authority).resolve(document, ArtifactFormat.XML)
        assert authority.artifact_calls == [("78188363-8", 39, "1001", "xml")]

    def test_content_disposition(self, authority, draft_receipt):
        artifact = RetrievalGateway(authority).resolve(draft_receipt, ArtifactFormat.JSON)
        assert artifact.content_disposition(DisplayMode.INLINE).startswith("inline;")
        assert artifact.content_disposition(DisplayMode.DOWNLOAD).startswith("attachment;")


# ===== TESTS DE ENDPOINTS =====

class TestInvoicingEndpoints:
    """Tests de los endpoints /invoicing"""

    def test_missing_tenant_header(self):
        response = TestClient(app).get("/invoicing/documents")
        assert response.status_code == 400

    def test_create_receipt_from_pos(self, client, pos_transaction):
        response = client.post(f"/invoicing/boletas/from-pos/{pos_transaction.id}", json={"emit_now": False})

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "draft"
        assert data["total_amount"] == 9000
        assert data["folio"] is None
        assert len(data["items"]) == 2

    def test_create_receipt_twice_conflicts(self, client, pos_transaction):
        client.post(f"/invoicing/boletas/from-pos/{pos_transaction.id}", json={})
        response = client.post(f"/invoicing/boletas/from-pos/{pos_transaction.id}", json={})

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "already_converted"

    def test_unknown_pos_transaction(self, client):
        response = client.post("/invoicing/boletas/from-pos/00000000-0000-0000-0000-000000000000", json={})
        assert response.status_code == 404

    def test_invoice_from_cost_requires_receiver(self, client, cost):
        response = client.post(f"/invoicing/facturas/from-cost/{cost.id}", json={"emit_now": False})

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "invalid_receiver"

    def test_invoice_from_cost_emit_now(self, client, cost, authority):
        response = client.post(f"/invoicing/facturas/from-cost/{cost.id}", json={
            "receiver": {"tax_id": "76.795.561-8", "name": "Tostaduría del Sur"},
            "emit_now": True
        })

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "accepted"
        assert data["folio"] == "1001"
        assert data["receiver_tax_id"] == "76795561-8"
        assert authority.submissions[0]["dte"]["Encabezado"]["IdDoc"]["TipoDTE"] == 33

    def test_emit_endpoint_transport_error(self, client, pos_transaction, authority):
        created = client.post(f"/invoicing/boletas/from-pos/{pos_transaction.id}", json={}).json()
        authority.submit_responses = [UpstreamTransportError("Timeout llamando a la autoridad")]

        response = client.post(f"/invoicing/documents/{created['id']}/emit")
        assert response.status_code == 502
        assert response.json()["detail"]["code"] == "upstream_transport_error"
        assert response.json()["detail"]["document_id"] == created["id"]

        detail = client.get(f"/invoicing/documents/{created['id']}").json()
        assert detail["status"] == "draft"
        assert "Timeout" in detail["last_error"]

    def test_emit_endpoint_idempotent(self, client, pos_transaction, authority):
        created = client.post(f"/invoicing/boletas/from-pos/{pos_transaction.id}", json={}).json()

        first = client.post(f"/invoicing/documents/{created['id']}/emit").json()
        second = client.post(f"/invoicing/documents/{created['id']}/emit").json()

        assert first["folio"] == second["folio"] == "1001"
        assert len(authority.submissions) == 1

    def test_json_artifact_download(self, client, pos_transaction):
        created = client.post(f"/invoicing/boletas/from-pos/{pos_transaction.id}", json={}).json()

        response = client.get(f"/invoicing/documents/{created['id']}/json", params={"display": "download"})
        assert response.status_code == 200
        assert response.headers["content-disposition"].startswith("attachment;")
        assert response.headers["x-artifact-tier"] == "synthesized"
        assert response.json()["totals"]["total"] == 9000

    def test_pdf_artifact_unavailable(self, client, pos_transaction):
        created = client.post(f"/invoicing/boletas/from-pos/{pos_transaction.id}", json={}).json()

        response = client.get(f"/invoicing/documents/{created['id']}/pdf")
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "artifact_unavailable"

    def test_pdf_artifact_inline(self, client, pos_transaction, authority):
        created = client.post(f"/invoicing/boletas/from-pos/{pos_transaction.id}", json={"emit_now": True}).json()
        authority.artifacts[("78188363-8", 39, created["folio"], "pdf")] = b"%PDF-1.4"

        response = client.get(f"/invoicing/documents/{created['id']}/pdf")
        assert response.status_code == 200
        assert response.content == b"%PDF-1.4"
        assert response.headers["content-type"] == "application/pdf"
        assert response.headers["content-disposition"] == 'inline; filename="receipt-1001.pdf"'
        assert response.headers["x-artifact-tier"] == "live"

    def test_list_and_stats(self, client, pos_transaction, cost):
        client.post(f"/invoicing/boletas/from-pos/{pos_transaction.id}", json={})
        client.post(f"/invoicing/facturas/from-cost/{cost.id}", json={
            "receiver": {"tax_id": "76795561-8", "name": "Tostaduría del Sur"},
            "emit_now": True
        })

        listing = client.get("/invoicing/documents").json()
        assert listing["total"] == 2

        drafts = client.get("/invoicing/documents", params={"status": "draft"}).json()
        assert drafts["total"] == 1
        assert drafts["documents"][0]["kind"] == "receipt"

        search = client.get("/invoicing/documents", params={"search": "Tostaduría"}).json()
        assert search["total"] == 1

        stats = client.get("/invoicing/documents/stats").json()
        assert stats["total_documents"] == 2
        assert stats["by_status"] == {"draft": 1, "accepted": 1}
        assert stats["by_kind"] == {"receipt": 1, "invoice": 1}
        assert stats["accepted_amount"] == 119000
        assert stats["last_30_days"] == 2

    def test_documents_are_tenant_scoped(self, client, pos_transaction):
        created = client.post(f"/invoicing/boletas/from-pos/{pos_transaction.id}", json={}).json()

        response = client.get(
            f"/invoicing/documents/{created['id']}",
            headers={"X-Company-ID": "11111111-1111-1111-1111-111111111111"}
        )
        assert response.status_code == 404

    def test_supersede_and_reconvert(self, client, pos_transaction):
        created = client.post(f"/invoicing/boletas/from-pos/{pos_transaction.id}", json={}).json()

        superseded = client.post(f"/invoicing/documents/{created['id']}/supersede", json={"reason": "Error de receptor"})
        assert superseded.status_code == 200
        assert superseded.json()["superseded_at"] is not None

        again = client.post(f"/invoicing/documents/{created['id']}/supersede", json={})
        assert again.status_code == 409

        replacement = client.post(f"/invoicing/boletas/from-pos/{pos_transaction.id}", json={})
        assert replacement.status_code == 201

    def test_import_endpoint(self, client, authority, tenant_id):
        authority.pages[1] = feed_page([received_record()])

        first = client.post("/invoicing/received-documents/import", json={}).json()
        second = client.post("/invoicing/received-documents/import", json={}).json()

        assert first["total_imported"] == 1
        assert second["total_imported"] == 0
        assert second["total_skipped"] == 1

        received = client.get("/invoicing/documents", params={"direction": "received"}).json()
        assert received["total"] == 1
        assert received["documents"][0]["folio"] == "B-001"

    def test_import_endpoint_dry_run(self, client, authority):
        authority.pages[1] = feed_page([received_record()])

        summary = client.post("/invoicing/received-documents/import", json={"dry_run": True}).json()
        assert summary["dry_run"] is True
        assert summary["total_imported"] == 1
        assert client.get("/invoicing/documents").json()["total"] == 0

    def test_import_rejects_inverted_range(self, client):
        response = client.post("/invoicing/received-documents/import", json={
            "start_date": "2025-09-30",
            "end_date": "2025-09-01"
        })
        assert response.status_code == 422

    def test_preview_received_documents(self, client, authority):
        authority.pages[1] = feed_page([received_record(), received_record(folio="B-002")])

        response = client.get("/invoicing/received-documents")
        assert response.status_code == 200
        assert len(response.json()["data"]) == 2
        assert client.get("/invoicing/documents").json()["total"] == 0

    def test_acknowledge_received_document(self, client, authority):
        authority.pages[1] = feed_page([received_record()])
        client.post("/invoicing/received-documents/import", json={})
        document = client.get("/invoicing/documents", params={"direction": "received"}).json()["documents"][0]

        response = client.post(f"/invoicing/received-documents/{document['id']}/acknowledge", json={"code": "ACD"})

        assert response.status_code == 200
        assert response.json()["status"] == "accepted"
        assert authority.acknowledgments == [("76795561-8", 39, "B-001", "ACD")]

    def test_acknowledge_emitted_document_fails(self, client, pos_transaction):
        created = client.post(f"/invoicing/boletas/from-pos/{pos_transaction.id}", json={}).json()
        response = client.post(f"/invoicing/received-documents/{created['id']}/acknowledge", json={"code": "ACD"})
        assert response.status_code == 400

    def test_cost_links(self, client, cost):
        client.post(f"/invoicing/facturas/from-cost/{cost.id}", json={
            "receiver": {"tax_id": "76795561-8", "name": "Tostaduría del Sur"},
            "emit_now": True
        })

        response = client.get("/invoicing/links/cost", params={"ids": [str(cost.id)]})
        assert response.status_code == 200
        link = response.json()[0]
        assert link["count"] == 1
        assert link["latest_status"] == "accepted"
        assert link["latest_folio"] == "1001"

    def test_authority_health(self, client, authority):
        response = TestClient(app).get("/invoicing/health")
        assert response.status_code == 200
        assert response.json()["ok"] is True
        assert response.json()["name"] == "MURALLA SPA"

    def test_authority_health_down(self, client, authority):
        authority.taxpayer = UpstreamTransportError("Error de conexión con la autoridad")
        response = client.get("/invoicing/health")
        assert response.json()["ok"] is False


# ===== TESTS DEL CLIENTE HTTP =====

def http_response(status_code=200, body=None, content=None, content_type="application/json"):
    response = requests.Response()
    response.status_code = status_code
    response.headers["Content-Type"] = content_type
    if content is not None:
        response._content = content
    else:
        response._content = json.dumps(body if body is not None else {}).encode("utf-8")
    return response


class StubSession:
    """Reemplaza requests.Session: devuelve respuestas o lanza excepciones en orden"""

    def __init__(self, *responses):
        self.headers = {}
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append({"method": method, "url": url, "timeout": timeout, **kwargs})
        result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def close(self):
        pass


class TestTaxAuthorityClient:
    """Tests para el cliente HTTP de OpenFactura"""

    def make_client(self, *responses):
        session = StubSession(*responses)
        client = TaxAuthorityClient(api_key="secret", base_url="https://dev-api.haulmer.com/", timeout=5, session=session)
        return client, session

    def test_api_key_header(self):
        client, session = self.make_client()
        assert session.headers["apikey"] == "secret"
        assert client.base_url == "https://dev-api.haulmer.com"

    def test_submit_document(self):
        client, session = self.make_client(http_response(200, {"FOLIO": 4321, "TOKEN": "abc"}))

        result = client.submit_document({"dte": {}})
        assert result["FOLIO"] == 4321
        assert session.calls[0]["url"] == "https://dev-api.haulmer.com/v2/dte/document"
        assert session.calls[0]["timeout"] == 5

    def test_submit_rejected_on_4xx(self):
        client, _ = self.make_client(http_response(400, {"error": {"message": "RUT inválido"}}))

        with pytest.raises(UpstreamRejected) as exc_info:
            client.submit_document({"dte": {}})
        assert exc_info.value.response == {"error": {"message": "RUT inválido"}}

    def test_server_errors_are_transport_errors(self):
        for status_code in (429, 500, 503):
            client, _ = self.make_client(http_response(status_code, {}))
            with pytest.raises(UpstreamTransportError):
                client.submit_document({})

    def test_timeout_and_connection_errors(self):
        for error in (requests.exceptions.Timeout("lento"), requests.exceptions.ConnectionError("caído")):
            client, _ = self.make_client(error)
            with pytest.raises(UpstreamTransportError):
                client.submit_document({})

    def test_malformed_json(self):
        client, _ = self.make_client(http_response(200, content=b"<html>oops</html>"))
        with pytest.raises(UpstreamTransportError):
            client.submit_document({})

    def test_received_documents_filters(self):
        client, session = self.make_client(http_response(200, {
            "current_page": 1, "last_page": 2, "total": 30, "data": [received_record()]
        }))

        result = client.fetch_received_documents(
            page=1,
            start_date=date(2025, 9, 1),
            end_date=date(2025, 9, 30),
            document_type=33,
            counterparty_tax_id="76795561"
        )

        assert result["last_page"] == 2
        assert len(result["data"]) == 1
        payload = session.calls[0]["json"]
        assert payload["Page"] == "1"
        assert payload["FchEmis"] == {"gte": "2025-09-01", "lte": "2025-09-30"}
        assert payload["TipoDTE"] == {"eq": "33"}
        assert payload["RUTEmisor"] == {"eq": "76795561"}

    def test_received_documents_http_error(self):
        client, _ = self.make_client(http_response(401, {"message": "apikey inválida"}))
        with pytest.raises(UpstreamTransportError):
            client.fetch_received_documents(page=1)

    def test_artifact_base64(self):
        encoded = base64.b64encode(b"%PDF-1.4").decode()
        client, session = self.make_client(http_response(200, {"pdf": encoded}))

        assert client.fetch_document_artifact("76795561-8", 33, "100", "pdf") == b"%PDF-1.4"
        assert session.calls[0]["url"].endswith("/v2/dte/document/76795561-8/33/100/pdf")

    def test_artifact_raw_bytes(self):
        client, _ = self.make_client(http_response(200, content=b"<DTE/>", content_type="application/xml"))
        assert client.fetch_document_artifact("76795561-8", 33, "100", "xml") == b"<DTE/>"

    def test_artifact_missing(self):
        client, _ = self.make_client(http_response(404, {"message": "no encontrado"}))
        assert client.fetch_document_artifact("76795561-8", 33, "100", "pdf") is None

    def test_download_from_foreign_host_omits_api_key(self):
        session = RecordingSession(http_response(200, content=b"%PDF-cdn", content_type="application/pdf"))
        client = TaxAuthorityClient(api_key="secret", base_url="https://api.haulmer.com", timeout=5, session=session)

        assert client.download("https://cdn.example.com/boleta.pdf") == b"%PDF-cdn"
        assert "apikey" not in session.sent[0].headers

    def test_download_from_authority_host_keeps_api_key(self):
        session = RecordingSession(http_response(200, content=b"%PDF-api", content_type="application/pdf"))
        client = TaxAuthorityClient(api_key="secret", base_url="https://api.haulmer.com", timeout=5, session=session)

        assert client.download("https://api.haulmer.com/v2/dte/document/x.pdf") == b"%PDF-api"
        assert session.sent[0].headers["apikey"] == "secret"


class RecordingSession(requests.Session):
    """requests.Session real que registra la request preparada en vez de enviarla"""

    def __init__(self, *responses):
        super().__init__()
        self.responses = list(responses)
        self.sent = []

    def send(self, request, **kwargs):
        self.sent.append(request)
        return self.responses.pop(0)


# ===== TESTS DE LA TAREA PROGRAMADA =====

class TestImportTask:
    """Tests para la tarea Celery de importación"""

    def test_task_runs_importer(self, db_session, authority, tenant_id, monkeypatch):
        from app.modules.taxdocs import tasks

        authority.pages[1] = feed_page([received_record()])
        monkeypatch.setattr(tasks, "TaxAuthorityClient", lambda: authority)

        result = tasks.import_received_documents_task.run(tenant_id=str(tenant_id))

        assert result["status"] == "success"
        assert result["total_imported"] == 1
        assert authority.closed is True
        assert db_session.query(TaxDocument).filter(TaxDocument.folio == "B-001").count() == 1

    def test_task_without_tenant_is_skipped(self, monkeypatch):
        from app.modules.taxdocs import tasks

        monkeypatch.setattr(tasks.settings, "DEFAULT_TENANT_ID", None)
        assert tasks.import_received_documents_task.run()["status"] == "skipped"
