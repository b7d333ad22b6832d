"""
Pydantic v2 models for the invoice read model and the submission outcome.

These are the two narrow contracts with the host application: invoice,
issuer and counterparty data come in read-only, and a SubmissionOutcome
goes back out to be stored on the invoice record.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, field_validator


class InvoiceItem(BaseModel):
    """A single invoice line."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(default="", description="Goods or service name")
    description: Optional[str] = None
    quantity: Decimal = Field(default=Decimal("1"))
    unit: Optional[str] = Field(default=None, description="Unit of measure, e.g. szt")
    unit_price: Decimal = Field(default=Decimal("0"), description="Net unit price")
    vat_rate: Optional[str] = Field(
        default=None, description="VAT rate code: 23, 8, 5, 0, zw, np, oo"
    )
    vat_exempt: bool = False
    total_net_value: Optional[Decimal] = Field(
        default=None, description="Explicit net value; quantity x unit_price if absent"
    )

    @field_validator("vat_rate", mode="before")
    @classmethod
    def _rate_as_text(cls, value: object) -> object:
        if value is None or isinstance(value, str):
            return value
        # 23, 23.0 and Decimal("23") all mean the "23" bucket
        return format(Decimal(str(value)).normalize(), "f")


def round_amount(value: Decimal, places: int = 2) -> Decimal:
    """Round half-up to the given number of decimal places."""
    return value.quantize(Decimal(10) ** -places, rounding=ROUND_HALF_UP)


def line_net_value(item: InvoiceItem) -> Decimal:
    """Explicit net value when given, otherwise quantity x unit price."""
    if item.total_net_value is not None:
        return round_amount(item.total_net_value)
    return round_amount(item.quantity * item.unit_price)


class Invoice(BaseModel):
    """Invoice fields read by the XML encoder."""

    model_config = ConfigDict(frozen=True)

    id: str
    number: str
    issue_date: date
    sell_date: Optional[date] = None
    due_date: Optional[date] = None
    currency: str = "PLN"
    items: list[InvoiceItem] = Field(default_factory=list)
    total_net_value: Optional[Decimal] = None
    total_vat_value: Optional[Decimal] = None
    total_gross_value: Optional[Decimal] = None
    has_attachments: bool = False


class BusinessProfile(BaseModel):
    """The issuing business (Podmiot1)."""

    model_config = ConfigDict(frozen=True)

    name: str
    tax_id: str
    regon: Optional[str] = None
    address: Optional[str] = None
    postal_code: Optional[str] = None
    city: Optional[str] = None
    country: str = "PL"


class Customer(BaseModel):
    """The counterparty (Podmiot2)."""

    model_config = ConfigDict(frozen=True)

    name: str
    tax_id: Optional[str] = None
    address: Optional[str] = None
    postal_code: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None


class InvoiceForSubmission(BaseModel):
    """Everything the encoder needs for one invoice."""

    model_config = ConfigDict(frozen=True)

    invoice: Invoice
    issuer: BusinessProfile
    counterparty: Customer


class GatewayStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    SENT = "sent"
    ERROR = "error"


class SubmissionOutcome(BaseModel):
    """
    Terminal gateway state written back onto the invoice record.

    Only fields that were explicitly set belong to the update; use
    ``model_dump(exclude_unset=True)`` when persisting. A failure outcome
    therefore leaves the reference number, submission time and UPO alone.
    """

    gateway_status: GatewayStatus
    gateway_reference_number: Optional[str] = None
    gateway_submitted_at: Optional[datetime] = None
    gateway_upo: Optional[str] = None
    gateway_last_error: Optional[str] = None

    @classmethod
    def sent(
        cls,
        reference_number: str,
        submitted_at: datetime,
        upo: Optional[str] = None,
    ) -> SubmissionOutcome:
        return cls(
            gateway_status=GatewayStatus.SENT,
            gateway_reference_number=reference_number,
            gateway_submitted_at=submitted_at,
            gateway_upo=upo,
            gateway_last_error=None,
        )

    @classmethod
    def failed(cls, message: str) -> SubmissionOutcome:
        return cls(gateway_status=GatewayStatus.ERROR, gateway_last_error=message)


class InvoiceReadModel(Protocol):
    """Host-side source of invoice, issuer and counterparty data."""

    async def get_invoice_for_submission(self, invoice_id: str) -> InvoiceForSubmission:
        ...


class InvoiceWriteModel(Protocol):
    """Host-side sink for the gateway fields of an invoice."""

    async def record_submission_outcome(
        self, invoice_id: str, outcome: SubmissionOutcome
    ) -> None:
        ...
