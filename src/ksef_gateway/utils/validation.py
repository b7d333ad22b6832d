"""
KSeF validation rules.

Validates:
- KSeF numbers (format and CRC-8 checksum)
- Polish tax identifiers (NIP checksum)
- Invoice data before submission (required fields, totals, XML size)
"""

from __future__ import annotations

import re
from datetime import date
from decimal import Decimal
from typing import Optional

from ksef_gateway.models import BusinessProfile, Customer, Invoice, line_net_value
from ksef_gateway.utils.crypto import crc8_maxim

# NNNNNNNNNN-YYYYMMDD-XXXXXXXXXXXX-CC
KSEF_NUMBER_PATTERN = re.compile(r"^([0-9]{10})-([0-9]{8})-([0-9A-F]{12})-([0-9A-F]{2})$")
KSEF_NUMBER_LENGTH = 35

NIP_WEIGHTS = (6, 5, 7, 2, 3, 4, 5, 6, 7)

MAX_XML_SIZE = 1_000_000
MAX_XML_SIZE_WITH_ATTACHMENTS = 3_000_000

TOTAL_TOLERANCE = Decimal("0.01")

# Rate codes accepted in P_12; 22 and 7 are the pre-2011 rates
SUPPORTED_VAT_CODES = frozenset({"23", "22", "8", "7", "5", "0", "zw", "np", "oo"})


def normalize_tax_id(tax_id: Optional[str]) -> str:
    """Strip dashes and whitespace from a tax identifier."""
    if not tax_id:
        return ""
    return re.sub(r"[-\s]", "", tax_id)


def validate_nip(nip: str) -> list[str]:
    """Validate a Polish NIP (10 digits, weighted mod-11 checksum)."""
    errors = []
    clean = normalize_tax_id(nip)
    if not clean:
        errors.append("NIP is required")
        return errors
    if not re.fullmatch(r"[0-9]+", clean):
        errors.append("NIP must contain only digits")
        return errors
    if len(clean) != 10:
        errors.append(f"NIP must be 10 digits, got {len(clean)}")
        return errors
    checksum = sum(int(d) * w for d, w in zip(clean, NIP_WEIGHTS)) % 11
    if checksum != int(clean[9]):
        errors.append("NIP checksum is invalid")
    return errors


def ksef_number_errors(ksef_number: str) -> list[str]:
    """Return the reasons a KSeF number is invalid, empty when it is valid."""
    if not isinstance(ksef_number, str) or len(ksef_number) != KSEF_NUMBER_LENGTH:
        length = len(ksef_number) if isinstance(ksef_number, str) else 0
        return [f"KSeF number must be {KSEF_NUMBER_LENGTH} characters, got {length}"]

    match = KSEF_NUMBER_PATTERN.match(ksef_number)
    if not match:
        return ["KSeF number must match NNNNNNNNNN-YYYYMMDD-XXXXXXXXXXXX-CC"]

    errors = []
    payload, checksum = ksef_number[:-3], match.group(4)
    expected = crc8_maxim(payload.encode("ascii"))
    if int(checksum, 16) != expected:
        errors.append(f"KSeF number checksum mismatch: expected {expected:02X}, got {checksum}")

    date_part = match.group(2)
    try:
        date(int(date_part[:4]), int(date_part[4:6]), int(date_part[6:]))
    except ValueError:
        errors.append(f"KSeF number contains an invalid date: {date_part}")
    return errors


def validate_ksef_number(ksef_number: str) -> bool:
    """True when the number matches the format and its CRC-8 checksum."""
    return not ksef_number_errors(ksef_number)


def validate_xml_size(xml: str, has_attachments: bool = False) -> list[str]:
    """Check the encoded invoice against the gateway's size limit."""
    limit = MAX_XML_SIZE_WITH_ATTACHMENTS if has_attachments else MAX_XML_SIZE
    size = len(xml.encode("utf-8"))
    if size > limit:
        return [f"Invoice XML is {size} bytes, limit is {limit} bytes"]
    return []


def validate_invoice_for_submission(
    invoice: Invoice,
    issuer: BusinessProfile,
    counterparty: Customer,
    xml: Optional[str] = None,
    strict_nip: bool = True,
    today: Optional[date] = None,
) -> dict:
    """
    Check invoice data before it is encoded and sent.

    Args:
        invoice: Invoice to check
        issuer: Seller profile
        counterparty: Buyer
        xml: Encoded XML, if already available, for the size check
        strict_nip: Verify NIP checksums (the test environment accepts
            synthetic NIPs, so callers usually disable this there)
        today: Reference date for the future-date rule

    Returns:
        Dict with keys: is_valid (bool), errors (list), warnings (list)
    """
    errors: list[str] = []
    warnings: list[str] = []
    today = today or date.today()

    # Seller NIP
    if not issuer.tax_id:
        errors.append("Seller NIP is required (Podmiot1/NIP)")
    elif strict_nip:
        for e in validate_nip(issuer.tax_id):
            errors.append(f"Seller {e}")

    # Buyer NIP is optional
    if counterparty.tax_id and strict_nip:
        for e in validate_nip(counterparty.tax_id):
            errors.append(f"Buyer {e}")

    if not invoice.number or not invoice.number.strip():
        errors.append("Invoice number is required (P_2)")

    if invoice.issue_date > today:
        errors.append("Invoice issue date (P_1) cannot be in the future")

    if not invoice.items:
        errors.append("Invoice must have at least one item")

    for idx, item in enumerate(invoice.items, start=1):
        if item.vat_exempt or not item.vat_rate:
            continue
        if item.vat_rate.strip().lower() not in SUPPORTED_VAT_CODES:
            errors.append(f"Line item {idx}: unsupported VAT rate code '{item.vat_rate}'")

    if invoice.total_net_value is not None:
        calculated = sum((line_net_value(item) for item in invoice.items), Decimal("0"))
        if abs(calculated - invoice.total_net_value) > TOTAL_TOLERANCE:
            errors.append(
                f"Total net value mismatch. Calculated: {calculated}, "
                f"declared: {invoice.total_net_value}"
            )

    if not issuer.name:
        errors.append("Seller name is required")
    if not issuer.address and not issuer.city:
        warnings.append("Seller address is incomplete")

    if not counterparty.name:
        errors.append("Buyer name is required")

    if xml is not None:
        errors.extend(validate_xml_size(xml, invoice.has_attachments))
    else:
        warnings.append("XML size not checked (max 1 MB, 3 MB with attachments)")

    return {
        "is_valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
    }
