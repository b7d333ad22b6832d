"""
Invoice verification links (KOD I) for KSeF invoices.

Every invoice handed to a buyer carries a QR code pointing at the gateway's
verification page:

  https://qr.ksef.mf.gov.pl/invoice/{NIP}/{DD-MM-YYYY}/{SHA256-Base64URL}

The hash is taken over the exact XML bytes that were submitted. The label
printed under the code is the KSeF number, or ``OFFLINE`` before one has
been assigned.
"""

from __future__ import annotations

import base64
import io
from dataclasses import dataclass
from datetime import date
from typing import Optional

import qrcode

from ksef_gateway.config import QR_BASE_URLS
from ksef_gateway.utils.crypto import sha256_base64url
from ksef_gateway.utils.validation import normalize_tax_id

OFFLINE_LABEL = "OFFLINE"


@dataclass(frozen=True)
class VerificationLink:
    """A KOD I link and its printed label."""

    url: str
    label: str

    def to_png(self, box_size: int = 6) -> bytes:
        """Render the link as a PNG QR code."""
        qr = qrcode.QRCode(
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=box_size,
            border=4,
        )
        qr.add_data(self.url)
        qr.make(fit=True)
        buf = io.BytesIO()
        qr.make_image(fill_color="black", back_color="white").save(buf, format="PNG")
        return buf.getvalue()

    def to_data_url(self, box_size: int = 6) -> str:
        """PNG QR code as a ``data:`` URL for embedding in HTML."""
        encoded = base64.b64encode(self.to_png(box_size)).decode("ascii")
        return f"data:image/png;base64,{encoded}"


def invoice_verification_link(
    seller_nip: str,
    issue_date: date,
    invoice_xml: str | bytes,
    ksef_number: Optional[str] = None,
    environment: str = "test",
) -> VerificationLink:
    """
    Build the verification link for an invoice.

    Args:
        seller_nip: Seller NIP (dashes and spaces are ignored)
        issue_date: Invoice issue date (P_1)
        invoice_xml: Submitted XML, hashed byte-for-byte
        ksef_number: Gateway-assigned number, if known
        environment: "test", "demo" or "prod"

    Returns:
        VerificationLink with url and label
    """
    if environment not in QR_BASE_URLS:
        raise ValueError(
            f"Unknown environment: {environment}. Available: {list(QR_BASE_URLS)}"
        )
    nip = normalize_tax_id(seller_nip)
    if not nip:
        raise ValueError("Seller NIP is required")

    digest = sha256_base64url(invoice_xml)
    url = (
        f"{QR_BASE_URLS[environment]}/invoice/{nip}/"
        f"{issue_date.strftime('%d-%m-%Y')}/{digest}"
    )
    return VerificationLink(url=url, label=ksef_number or OFFLINE_LABEL)
