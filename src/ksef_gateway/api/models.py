"""
Pydantic v2 models for KSeF API requests and responses.

Field names follow the gateway's JSON. Required fields are the ones the
client cannot work without; a response missing them fails validation and
is reported as an error instead of being filled with defaults.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class _Response(BaseModel):
    model_config = ConfigDict(extra="allow")


class SessionResponse(BaseModel):
    """Local result of ``init_session``; no request is made."""

    sessionToken: str = Field(repr=False)
    timestamp: datetime
    expiresAt: Optional[datetime] = None


class SubmissionRequest(BaseModel):
    """One submission attempt."""

    invoice_xml: str = Field(description="Encoded invoice XML")


class SubmissionResult(BaseModel):
    """Outcome of an open/upload/close sequence."""

    element_reference_number: str
    processing_code: int
    processing_description: str
    timestamp: str
    upo: Optional[str] = Field(
        default=None, description="Serialized UPO, when the gateway already has one"
    )


class StatusInfo(_Response):
    code: int
    description: str = ""
    details: list[str] = Field(default_factory=list)


class OpenSessionResponse(_Response):
    """Response from POST /online/session/interactive."""

    sessionReferenceNumber: str
    timestamp: Optional[str] = None


class CloseSessionResponse(_Response):
    """Response from POST /online/session/interactive/{ref}/close."""

    status: Optional[StatusInfo] = None
    dateUpdated: Optional[str] = None
    upo: Optional[Any] = None


class UpoPage(_Response):
    referenceNumber: Optional[str] = None
    downloadUrl: Optional[str] = None
    downloadUrlExpirationDate: Optional[str] = None


class UpoInfo(_Response):
    pages: list[UpoPage] = Field(default_factory=list)


class SessionStatusResponse(_Response):
    """Response from GET /online/session/interactive/{ref}/status."""

    status: Optional[StatusInfo] = None
    dateCreated: Optional[str] = None
    dateUpdated: Optional[str] = None
    invoiceCount: Optional[int] = None
    upo: Optional[UpoInfo] = None


class InvoiceStatusResponse(_Response):
    """Response from GET /online/invoice/status/{ref}."""

    status: StatusInfo
    referenceNumber: Optional[str] = None
    ksefNumber: Optional[str] = None
    invoiceNumber: Optional[str] = None
    acquisitionDate: Optional[str] = None


SubjectType = Literal["Subject1", "Subject2", "Subject3", "SubjectAuthorized"]


class DateRange(BaseModel):
    dateType: Literal["Issue", "Invoicing", "PermanentStorage"] = "PermanentStorage"
    from_: datetime = Field(alias="from")
    to: Optional[datetime] = None
    restrictToPermanentStorageHwmDate: bool = True

    model_config = ConfigDict(populate_by_name=True)


class ExportEncryption(BaseModel):
    encryptedSymmetricKey: str
    initializationVector: str


class InvoiceExportRequest(BaseModel):
    """Body of POST /invoices/exports."""

    subjectType: SubjectType = "Subject2"
    dateRange: DateRange
    encryption: ExportEncryption


class ExportInitResponse(_Response):
    """Response from POST /invoices/exports."""

    referenceNumber: str


class PackagePart(_Response):
    partNumber: int
    downloadUrl: str
    partSize: Optional[int] = None


class ExportStatus(_Response):
    """Response from GET /invoices/exports/{ref}."""

    referenceNumber: Optional[str] = None
    status: Literal["Processing", "Completed", "Failed"]
    packageParts: list[PackagePart] = Field(default_factory=list)
    permanentStorageHwmDate: Optional[str] = None
    lastPermanentStorageDate: Optional[str] = None
    isTruncated: bool = False
    invoiceCount: Optional[int] = None
    errorMessage: Optional[str] = None


class FormCode(BaseModel):
    systemCode: str
    schemaVersion: str
    value: str


class BatchFilePart(BaseModel):
    ordinalNumber: int
    fileSize: int
    fileHash: str


class BatchFile(BaseModel):
    """Size and Base64 SHA-256 of the plain ZIP and of each encrypted part."""

    fileSize: int
    fileHash: str
    fileParts: list[BatchFilePart]


class OpenBatchSessionRequest(BaseModel):
    """Body of POST /sessions/batch."""

    formCode: FormCode
    batchFile: BatchFile
    encryption: ExportEncryption


class PartUploadRequest(_Response):
    """Pre-signed upload target for one encrypted part."""

    ordinalNumber: int
    url: str
    method: str = "PUT"
    headers: dict[str, str] = Field(default_factory=dict)


class OpenBatchSessionResponse(_Response):
    """Response from POST /sessions/batch."""

    referenceNumber: str
    validUntil: Optional[str] = None
    partUploadRequests: list[PartUploadRequest] = Field(default_factory=list)


class BatchSessionStatus(SessionStatusResponse):
    """Response from GET /sessions/{ref}."""

    successfulInvoiceCount: Optional[int] = None
    failedInvoiceCount: Optional[int] = None
