"""Tests for the submit-one-invoice use case."""

import pytest
import sys
import os
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from lxml import etree

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

httpx = pytest.importorskip("httpx", reason="httpx not installed")

from ksef_gateway.api.client import GatewayApiClient
from ksef_gateway.api.errors import GatewayError, GatewayErrorKind
from ksef_gateway.config import GatewayConfig
from ksef_gateway.models import (
    BusinessProfile,
    Customer,
    GatewayStatus,
    Invoice,
    InvoiceForSubmission,
    InvoiceItem,
    SubmissionOutcome,
)
from ksef_gateway.services.submission import SubmissionOrchestrator
from ksef_gateway.utils.xml_builder import NAMESPACES

SESSION_REF = "20250115-SE-1234567890-ABCDEF0123-45"
FROZEN = datetime(2025, 1, 15, 10, 30, tzinfo=timezone.utc)
NS = {"fa": NAMESPACES["FA(3)"]}


class FakeReadModel:
    def __init__(self, data):
        self.data = data
        self.requested = []

    async def get_invoice_for_submission(self, invoice_id):
        self.requested.append(invoice_id)
        return self.data


class FailingReadModel:
    async def get_invoice_for_submission(self, invoice_id):
        raise LookupError(f"invoice {invoice_id} not found")


class FakeWriteModel:
    def __init__(self):
        self.outcomes = []

    async def record_submission_outcome(self, invoice_id, outcome):
        self.outcomes.append((invoice_id, outcome))


class Gateway:
    """Mock KSeF: records requests, answers the three submission steps."""

    def __init__(self, upload_status=202, close_status=201, upload_body=None):
        self.calls = []
        self.upload_status = upload_status
        self.close_status = close_status
        self.upload_body = upload_body or {}

    async def __call__(self, request: httpx.Request):
        self.calls.append(request)
        path = request.url.path
        if path.endswith("/online/session/interactive"):
            return httpx.Response(201, json={"sessionReferenceNumber": SESSION_REF})
        if path.endswith("/invoice"):
            return httpx.Response(self.upload_status, json=self.upload_body)
        if path.endswith("/close"):
            return httpx.Response(
                self.close_status,
                json={
                    "status": {"code": 200, "description": "Accepted"},
                    "upo": {"pages": [{"referenceNumber": "UPO-1"}]},
                },
            )
        return httpx.Response(404)

    @property
    def steps(self):
        return [r.url.path.rsplit("/", 1)[-1] for r in self.calls]


def _submission():
    return InvoiceForSubmission(
        invoice=Invoice(
            id="inv-42",
            number="FV/2025/01/001",
            issue_date=date(2025, 1, 15),
            items=[
                InvoiceItem(
                    name="Usługa",
                    quantity=Decimal("2"),
                    unit_price=Decimal("100.00"),
                    vat_rate="23",
                )
            ],
        ),
        issuer=BusinessProfile(name="Firma", tax_id="5265877635", city="Warszawa"),
        counterparty=Customer(name="Klient", tax_id="1111111111"),
    )


async def _orchestrator(gateway, active=True, read_model=None):
    client = GatewayApiClient(GatewayConfig(), transport=httpx.MockTransport(gateway))
    if active:
        await client.init_session("bearer-token")
    write_model = FakeWriteModel()
    orchestrator = SubmissionOrchestrator(
        client,
        read_model or FakeReadModel(_submission()),
        write_model,
        clock=lambda: FROZEN,
    )
    return orchestrator, write_model


class TestSubmitSuccess:
    @pytest.mark.asyncio
    async def test_end_to_end(self):
        gateway = Gateway()
        orchestrator, write_model = await _orchestrator(gateway)

        result = await orchestrator.submit("inv-42")

        # exactly open -> upload -> close
        assert gateway.steps == ["interactive", "invoice", "close"]

        uploaded = etree.fromstring(gateway.calls[1].content)
        assert uploaded.xpath("//fa:Fa/fa:P_2", namespaces=NS)[0].text == "FV/2025/01/001"
        assert uploaded.xpath("//fa:FaWiersz/fa:P_11", namespaces=NS)[0].text == "200.00"

        assert result.element_reference_number == SESSION_REF
        assert len(write_model.outcomes) == 1
        invoice_id, outcome = write_model.outcomes[0]
        assert invoice_id == "inv-42"
        assert outcome.gateway_status == GatewayStatus.SENT
        assert outcome.gateway_reference_number == SESSION_REF
        assert outcome.gateway_submitted_at == FROZEN
        assert outcome.gateway_upo is not None
        assert outcome.gateway_last_error is None

    @pytest.mark.asyncio
    async def test_success_clears_last_error(self):
        orchestrator, write_model = await _orchestrator(Gateway())
        await orchestrator.submit("inv-42")
        update = write_model.outcomes[0][1].model_dump(exclude_unset=True)
        assert update["gateway_last_error"] is None
        assert update["gateway_status"] == GatewayStatus.SENT

    @pytest.mark.asyncio
    async def test_encoder_uses_clock(self):
        gateway = Gateway()
        orchestrator, _ = await _orchestrator(gateway)
        await orchestrator.submit("inv-42")
        uploaded = etree.fromstring(gateway.calls[1].content)
        stamp = uploaded.xpath("//fa:DataWytworzeniaFa", namespaces=NS)[0].text
        assert stamp == "2025-01-15T10:30:00Z"


class TestSubmitFailure:
    @pytest.mark.asyncio
    async def test_inactive_session(self):
        gateway = Gateway()
        orchestrator, write_model = await _orchestrator(gateway, active=False)

        with pytest.raises(GatewayError) as exc_info:
            await orchestrator.submit("inv-42")

        assert exc_info.value.kind == GatewayErrorKind.SESSION
        assert exc_info.value.retryable is False
        assert gateway.calls == []
        assert write_model.outcomes == []

    @pytest.mark.asyncio
    async def test_gateway_error_recorded_and_reraised(self):
        gateway = Gateway(upload_status=400, upload_body={"message": "Invalid P_2"})
        orchestrator, write_model = await _orchestrator(gateway)

        with pytest.raises(GatewayError) as exc_info:
            await orchestrator.submit("inv-42")

        assert exc_info.value.kind == GatewayErrorKind.VALIDATION
        assert len(write_model.outcomes) == 1
        _, outcome = write_model.outcomes[0]
        assert outcome.model_dump(exclude_unset=True) == {
            "gateway_status": GatewayStatus.ERROR,
            "gateway_last_error": "Invalid P_2",
        }

    @pytest.mark.asyncio
    async def test_failure_never_marks_sent(self):
        gateway = Gateway(close_status=503)
        orchestrator, write_model = await _orchestrator(gateway)
        with pytest.raises(GatewayError) as exc_info:
            await orchestrator.submit("inv-42")
        assert exc_info.value.retryable is True
        statuses = [o.gateway_status for _, o in write_model.outcomes]
        assert statuses == [GatewayStatus.ERROR]

    @pytest.mark.asyncio
    async def test_duplicate_recorded(self):
        gateway = Gateway(upload_status=409, upload_body={"message": "Duplicate invoice"})
        orchestrator, write_model = await _orchestrator(gateway)
        with pytest.raises(GatewayError) as exc_info:
            await orchestrator.submit("inv-42")
        assert exc_info.value.kind == GatewayErrorKind.DUPLICATE_INVOICE
        assert write_model.outcomes[0][1].gateway_last_error == "Duplicate invoice"

    @pytest.mark.asyncio
    async def test_encoding_failure_recorded(self):
        data = _submission()
        # model_construct skips validation, so the signalling NaN reaches the encoder
        broken = InvoiceItem.model_construct(
            name="Usługa", quantity=Decimal("sNaN"), unit_price=Decimal("100"), vat_rate="23"
        )
        data = data.model_copy(
            update={"invoice": data.invoice.model_copy(update={"items": [broken]})}
        )
        gateway = Gateway()
        orchestrator, write_model = await _orchestrator(
            gateway, read_model=FakeReadModel(data)
        )

        with pytest.raises(InvalidOperation):
            await orchestrator.submit("inv-42")

        assert gateway.calls == []
        assert len(write_model.outcomes) == 1
        _, outcome = write_model.outcomes[0]
        assert outcome.gateway_status == GatewayStatus.ERROR
        assert outcome.gateway_last_error

    @pytest.mark.asyncio
    async def test_read_model_failure_writes_nothing(self):
        gateway = Gateway()
        orchestrator, write_model = await _orchestrator(
            gateway, read_model=FailingReadModel()
        )
        with pytest.raises(LookupError):
            await orchestrator.submit("inv-404")
        assert gateway.calls == []
        assert write_model.outcomes == []


class TestSubmissionOutcome:
    def test_failed_outcome_fields(self):
        outcome = SubmissionOutcome.failed("boom")
        assert outcome.model_dump(exclude_unset=True) == {
            "gateway_status": GatewayStatus.ERROR,
            "gateway_last_error": "boom",
        }

    def test_sent_outcome_fields(self):
        outcome = SubmissionOutcome.sent("REF", FROZEN)
        assert set(outcome.model_dump(exclude_unset=True)) == {
            "gateway_status",
            "gateway_reference_number",
            "gateway_submitted_at",
            "gateway_upo",
            "gateway_last_error",
        }
