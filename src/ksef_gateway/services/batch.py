"""
Batch submission of many invoices in one KSeF session.

The invoice XMLs are zipped, the ZIP is cut into parts and every part is
encrypted with one fresh AES-256 key wrapped for KSeF's RSA public key.
The session is opened with the sizes and hashes of the ZIP and the parts,
each part goes to its own pre-signed URL, and closing the session starts
processing. The session status is then polled until KSeF reports a result.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, Field

from ksef_gateway.api.client import GatewayApiClient, SubmissionStage
from ksef_gateway.api.errors import classify
from ksef_gateway.api.models import (
    BatchFile,
    BatchFilePart,
    BatchSessionStatus,
    ExportEncryption,
    FormCode,
    OpenBatchSessionRequest,
    UpoPage,
)
from ksef_gateway.config import GatewayConfig
from ksef_gateway.utils.crypto import (
    encrypt_aes256_cbc,
    generate_encryption_material,
    sha256_base64,
    sha256_hex,
)
from ksef_gateway.utils.package import MAX_PART_SIZE, build_package, split_package

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_MAX_POLLS = 60

# schema version -> (systemCode, schemaVersion, value)
FORM_CODES: dict[str, tuple[str, str, str]] = {
    "FA(2)": ("FA (2)", "1-0E", "FA"),
    "FA(3)": ("FA (3)", "1-0E", "FA"),
}

STATUS_PROCESSED = 200
STATUS_FAILED_FROM = 400


class BatchSubmissionResult(BaseModel):
    """Counts and UPO pages of a processed batch session."""

    reference_number: str
    part_count: int
    invoice_count: int = 0
    successful_count: int = 0
    failed_count: int = 0
    upo_pages: list[UpoPage] = Field(default_factory=list)


class BatchSubmitter:
    """Sends a set of invoice XMLs through one batch session."""

    def __init__(
        self,
        client: GatewayApiClient,
        public_key_pem: str,
        config: Optional[GatewayConfig] = None,
        max_part_size: int = MAX_PART_SIZE,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_polls: int = DEFAULT_MAX_POLLS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.public_key_pem = public_key_pem
        self.config = config or client.config
        self.max_part_size = max_part_size
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.sleep = sleep

    def form_code(self) -> FormCode:
        system_code, schema_version, value = FORM_CODES[self.config.schema_version]
        return FormCode(systemCode=system_code, schemaVersion=schema_version, value=value)

    async def submit_batch(self, invoices: dict[str, str]) -> BatchSubmissionResult:
        """
        Submit invoice XMLs and wait until KSeF has processed them.

        Args:
            invoices: Mapping of file name inside the ZIP to invoice XML

        Returns:
            BatchSubmissionResult with KSeF's per-session counts

        Raises:
            ValueError: no invoices given
            GatewayError: a step failed, processing failed or did not
                finish in time
        """
        self.client.session.get()

        package = build_package(invoices)
        material = generate_encryption_material(self.public_key_pem)
        parts = [
            encrypt_aes256_cbc(part, material.symmetric_key, material.iv)
            for part in split_package(package, self.max_part_size)
        ]
        logger.info(
            "Batch package of %d invoice(s): %d bytes in %d part(s), sha256 %s",
            len(invoices),
            len(package),
            len(parts),
            sha256_hex(package),
        )

        request = OpenBatchSessionRequest(
            formCode=self.form_code(),
            batchFile=BatchFile(
                fileSize=len(package),
                fileHash=sha256_base64(package),
                fileParts=[
                    BatchFilePart(
                        ordinalNumber=number,
                        fileSize=len(part),
                        fileHash=sha256_base64(part),
                    )
                    for number, part in enumerate(parts, start=1)
                ],
            ),
            encryption=ExportEncryption(
                encryptedSymmetricKey=material.wrapped_key,
                initializationVector=material.iv_base64,
            ),
        )

        stage = SubmissionStage.NOT_STARTED
        reference: Optional[str] = None
        try:
            opened = await self.client.open_batch_session(request)
            reference = opened.referenceNumber
            stage = SubmissionStage.OPENED
            logger.debug("Batch session %s opened", reference)

            targets = {u.ordinalNumber: u for u in opened.partUploadRequests}
            for number, part in enumerate(parts, start=1):
                if number not in targets:
                    raise classify(
                        200, None, f"No upload URL for part {number} of batch {reference}"
                    )
                await self.client.upload_part(targets[number], part)
            stage = SubmissionStage.UPLOADED

            await self.client.close_batch_session(reference)
            stage = SubmissionStage.CLOSED
        finally:
            if reference is not None and stage is not SubmissionStage.CLOSED:
                logger.warning(
                    "Batch session %s abandoned at stage '%s'",
                    reference,
                    stage.value,
                )

        status = await self.wait_for_processing(reference)
        result = BatchSubmissionResult(
            reference_number=reference,
            part_count=len(parts),
            invoice_count=status.invoiceCount or 0,
            successful_count=status.successfulInvoiceCount or 0,
            failed_count=status.failedInvoiceCount or 0,
            upo_pages=status.upo.pages if status.upo else [],
        )
        logger.info(
            "Batch session %s processed: %d of %d invoice(s) accepted",
            reference,
            result.successful_count,
            result.invoice_count,
        )
        return result

    async def wait_for_processing(self, reference_number: str) -> BatchSessionStatus:
        """
        Poll a closed batch session until KSeF reports a result.

        Raises:
            GatewayError: processing failed or did not finish in time
        """
        for attempt in range(1, self.max_polls + 1):
            await self.sleep(self.poll_interval)
            status = await self.client.get_batch_session_status(reference_number)
            code = status.status.code if status.status else None
            if code == STATUS_PROCESSED:
                return status
            if code is not None and code >= STATUS_FAILED_FROM:
                description = status.status.description
                logger.error(
                    "Batch session %s failed with code %d: %s",
                    reference_number,
                    code,
                    description,
                )
                raise classify(
                    200,
                    {"message": description} if description else None,
                    f"Batch session {reference_number} failed",
                )
            logger.debug(
                "Batch session %s still processing (%d/%d)",
                reference_number,
                attempt,
                self.max_polls,
            )

        raise classify(
            0,
            None,
            f"Batch session {reference_number} not processed after {self.max_polls} checks",
        )
