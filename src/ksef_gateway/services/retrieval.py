"""
Bulk retrieval of invoices from KSeF.

An export is requested for a time window starting at the caller's
high-water mark, encrypted with a fresh AES key wrapped for KSeF's RSA
public key. Once the export completes its parts are downloaded, merged in
part order, decrypted and unpacked into invoices.

Failures are split in two levels. A package that cannot be decrypted,
unzipped or whose manifest is malformed fails as a whole with a
PackageError. A single invoice file that cannot be parsed, or an invoice
whose KSeF number is invalid, is logged and left out of the result.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, Field

from ksef_gateway.api.client import GatewayApiClient
from ksef_gateway.api.errors import PackageError, classify
from ksef_gateway.api.models import (
    DateRange,
    ExportEncryption,
    ExportStatus,
    InvoiceExportRequest,
    SubjectType,
)
from ksef_gateway.utils.crypto import (
    EncryptionMaterial,
    decrypt_aes256_cbc,
    generate_encryption_material,
)
from ksef_gateway.utils.package import (
    PackageInvoiceEntry,
    RetrievedInvoice,
    accept_valid_numbers,
    deduplicate_invoices,
    extract_invoices_from_package,
    merge_parts,
    unzip_package,
)

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_MAX_POLLS = 60  # 5 minutes at the default interval
DEFAULT_LOOKBACK = timedelta(days=30)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RetrievalResult(BaseModel):
    """Invoices from one export, plus the sync state to persist."""

    reference_number: Optional[str] = None
    invoices: list[RetrievedInvoice] = Field(default_factory=list)
    missing: list[PackageInvoiceEntry] = Field(
        default_factory=list, description="Manifest entries with no XML in the package"
    )
    rejected: list[RetrievedInvoice] = Field(
        default_factory=list, description="Invoices dropped for an invalid KSeF number"
    )
    failed_files: list[str] = Field(default_factory=list)
    new_hwm_date: Optional[str] = None
    last_storage_date: Optional[str] = None
    is_truncated: bool = False


class RetrievalOrchestrator:
    """Drives an export from request to unpacked invoices."""

    def __init__(
        self,
        client: GatewayApiClient,
        public_key_pem: str,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_polls: int = DEFAULT_MAX_POLLS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.client = client
        self.public_key_pem = public_key_pem
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.sleep = sleep
        self.clock = clock

    async def sync(
        self,
        subject_type: SubjectType = "Subject2",
        since: Optional[datetime] = None,
        use_hwm: bool = True,
    ) -> RetrievalResult:
        """
        Retrieve every invoice stored since the high-water mark.

        Args:
            subject_type: Role of the business on the invoices (Subject2 = buyer)
            since: Lower bound of the window; defaults to 30 days ago
            use_hwm: Restrict the window to KSeF's permanent-storage HWM

        Returns:
            RetrievalResult; persist ``new_hwm_date`` as the next ``since``
        """
        now = self.clock()
        since = since or now - DEFAULT_LOOKBACK
        material = generate_encryption_material(self.public_key_pem)

        request = InvoiceExportRequest(
            subjectType=subject_type,
            dateRange=DateRange(
                from_=since,
                to=now,
                dateType="PermanentStorage",
                restrictToPermanentStorageHwmDate=use_hwm,
            ),
            encryption=ExportEncryption(
                encryptedSymmetricKey=material.wrapped_key,
                initializationVector=material.iv_base64,
            ),
        )
        started = await self.client.initiate_export(request)
        logger.info(
            "Invoice export %s started for %s since %s",
            started.referenceNumber,
            subject_type,
            since.isoformat(),
        )

        status = await self.wait_for_export(started.referenceNumber)
        result = await self.download_package(status, material)
        if result.reference_number is None:
            result.reference_number = started.referenceNumber
        return result

    async def wait_for_export(self, reference_number: str) -> ExportStatus:
        """
        Poll the export until it completes.

        Raises:
            GatewayError: the export failed or did not finish in time
        """
        for attempt in range(1, self.max_polls + 1):
            await self.sleep(self.poll_interval)
            status = await self.client.get_export_status(reference_number)
            if status.status == "Completed":
                return status
            if status.status == "Failed":
                logger.error(
                    "Invoice export %s failed: %s", reference_number, status.errorMessage
                )
                raise classify(
                    200,
                    {"message": status.errorMessage} if status.errorMessage else None,
                    f"Invoice export {reference_number} failed",
                )
            logger.debug(
                "Invoice export %s still processing (%d/%d)",
                reference_number,
                attempt,
                self.max_polls,
            )

        raise classify(
            0,
            None,
            f"Invoice export {reference_number} not completed after {self.max_polls} checks",
        )

    async def download_package(
        self, status: ExportStatus, material: EncryptionMaterial
    ) -> RetrievalResult:
        """
        Download, decrypt and unpack a completed export.

        Parts are fetched concurrently and concatenated in the order KSeF
        returned them, never re-sorted, whatever order the downloads finish in.

        Raises:
            PackageError: the package cannot be decrypted or unzipped, or
                its manifest is malformed
            GatewayError: a part download failed
        """
        if status.status != "Completed":
            raise ValueError(f"Export not completed. Status: {status.status}")

        result = RetrievalResult(
            reference_number=status.referenceNumber,
            new_hwm_date=status.permanentStorageHwmDate,
            last_storage_date=status.lastPermanentStorageDate,
            is_truncated=status.isTruncated,
        )
        if not status.packageParts:
            logger.info("Export %s has no package parts", status.referenceNumber)
            return result

        # gather keeps the listed order
        parts = await asyncio.gather(
            *(self.client.download_package_part(p.downloadUrl) for p in status.packageParts)
        )
        encrypted = merge_parts(parts)
        logger.info(
            "Downloaded %d package part(s), %d bytes", len(parts), len(encrypted)
        )

        try:
            zip_bytes = decrypt_aes256_cbc(encrypted, material.symmetric_key, material.iv)
        except ValueError as e:
            logger.error("Package decryption failed: %s", e)
            raise PackageError(f"Package decryption failed: {e}") from e

        try:
            files = unzip_package(zip_bytes)
            extracted = extract_invoices_from_package(files)
        except PackageError as e:
            logger.error("Package rejected: %s", e)
            raise

        unique = deduplicate_invoices(extracted.invoices)
        if len(unique) != len(extracted.invoices):
            logger.info(
                "Dropped %d duplicate invoice(s)", len(extracted.invoices) - len(unique)
            )
        accepted, rejected = accept_valid_numbers(unique)

        result.invoices = accepted
        result.rejected = rejected
        result.missing = extracted.missing
        result.failed_files = extracted.failed_files
        logger.info(
            "Package unpacked: %d invoice(s) accepted, %d rejected, %d missing, %d unreadable",
            len(accepted),
            len(rejected),
            len(extracted.missing),
            len(extracted.failed_files),
        )
        return result
