"""
Submit one invoice to KSeF and record the outcome on the invoice record.

This is the only place the gateway status of an invoice changes, and it only
ever writes a terminal state: ``sent`` on success, ``error`` on failure.
An interrupted submission leaves the record untouched; resubmitting is safe
because KSeF rejects a duplicate with DUPLICATE_INVOICE.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from ksef_gateway.api.client import GatewayApiClient
from ksef_gateway.api.errors import GatewayError, session_error
from ksef_gateway.api.models import SubmissionRequest, SubmissionResult
from ksef_gateway.config import GatewayConfig
from ksef_gateway.models import InvoiceReadModel, InvoiceWriteModel, SubmissionOutcome
from ksef_gateway.utils.xml_builder import build_invoice_xml

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubmissionOrchestrator:
    """End-to-end "submit one invoice" use case."""

    def __init__(
        self,
        client: GatewayApiClient,
        read_model: InvoiceReadModel,
        write_model: InvoiceWriteModel,
        config: Optional[GatewayConfig] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.client = client
        self.read_model = read_model
        self.write_model = write_model
        self.config = config or client.config
        self.clock = clock

    async def submit(self, invoice_id: str) -> SubmissionResult:
        """
        Encode and submit an invoice, then persist the terminal outcome.

        Raises:
            GatewayError: the session is inactive (nothing is written) or
                the submission failed (``error`` is written first)
            Exception: encoding failed (``error`` is written first)
        """
        data = await self.read_model.get_invoice_for_submission(invoice_id)

        if not self.client.is_session_active():
            raise session_error()

        try:
            xml = build_invoice_xml(
                data.invoice,
                data.issuer,
                data.counterparty,
                config=self.config,
                generated_at=self.clock(),
            )
            result = await self.client.submit_invoice(SubmissionRequest(invoice_xml=xml))
        except Exception as e:
            message = e.message if isinstance(e, GatewayError) else str(e) or type(e).__name__
            logger.error(
                "KSeF submission of invoice %s (%s) failed: %s",
                invoice_id,
                data.invoice.number,
                message,
            )
            await self.write_model.record_submission_outcome(
                invoice_id, SubmissionOutcome.failed(message)
            )
            raise

        await self.write_model.record_submission_outcome(
            invoice_id,
            SubmissionOutcome.sent(
                reference_number=result.element_reference_number,
                submitted_at=self.clock(),
                upo=result.upo,
            ),
        )
        logger.info(
            "Invoice %s (%s) sent to KSeF, reference %s",
            invoice_id,
            data.invoice.number,
            result.element_reference_number,
        )
        return result
