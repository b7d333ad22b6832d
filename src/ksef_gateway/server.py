"""
KSeF Gateway MCP Server - Polish e-invoicing for AI agents.

An MCP (Model Context Protocol) server that lets AI agents build KSeF
fiscal invoice XML, run pre-submission checks, validate KSeF numbers,
produce invoice verification links and query submission status.

Usage:
    # With MCP Inspector (development)
    mcp dev src/ksef_gateway/server.py

    # With Claude Desktop
    Add to ~/.claude/claude_desktop_config.json:
    {
        "mcpServers": {
            "ksef": {
                "command": "ksef-gateway",
                "env": {"KSEF_ENVIRONMENT": "test", "KSEF_ACCESS_TOKEN": "..."}
            }
        }
    }
"""

from __future__ import annotations

import base64
import json
import logging
import re
import sys
from datetime import date
from decimal import Decimal, InvalidOperation

from mcp.server.fastmcp import FastMCP
from pydantic import ValidationError

from ksef_gateway.api.client import GatewayApiClient
from ksef_gateway.api.errors import GatewayError
from ksef_gateway.config import GatewayConfig, GatewaySettings
from ksef_gateway.models import BusinessProfile, Customer, Invoice, InvoiceItem
from ksef_gateway.utils.qr import invoice_verification_link as build_verification_link
from ksef_gateway.utils.validation import (
    ksef_number_errors,
    validate_invoice_for_submission,
    validate_nip,
)
from ksef_gateway.utils.xml_builder import build_invoice_xml, line_net_value

logger = logging.getLogger(__name__)

# Create the MCP server
mcp = FastMCP(
    "ksef-gateway",
    instructions=(
        "KSeF e-invoicing MCP server for Poland. "
        "Generate, validate, and track invoices in the national e-invoice system."
    ),
)

DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class InvoiceInputError(ValueError):
    """Tool arguments that cannot be turned into an invoice."""


def _parse_date(value: str, field_name: str) -> date:
    if not DATE_PATTERN.match(value or ""):
        raise InvoiceInputError(f"{field_name} must be YYYY-MM-DD format, got: {value}")
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise InvoiceInputError(f"{field_name} is not a valid date: {value}") from e


def _parse_items(items: str) -> list[InvoiceItem]:
    try:
        raw_items = json.loads(items)
    except json.JSONDecodeError as e:
        raise InvoiceInputError(f"Invalid items JSON: {str(e)}") from e

    if not isinstance(raw_items, list) or not raw_items:
        raise InvoiceInputError("At least one line item is required")

    parsed = []
    for idx, item in enumerate(raw_items, start=1):
        if not isinstance(item, dict):
            raise InvoiceInputError(f"Line item {idx} must be an object")
        for required_field in ("name", "quantity", "unit_price"):
            if required_field not in item:
                raise InvoiceInputError(
                    f"Line item {idx} missing required field: {required_field}"
                )
        try:
            qty = Decimal(str(item["quantity"]))
            price = Decimal(str(item["unit_price"]))
        except InvalidOperation as e:
            raise InvoiceInputError(
                f"Line item {idx}: quantity and unit_price must be numeric"
            ) from e
        if qty <= 0:
            raise InvoiceInputError(f"Line item {idx}: quantity must be positive")
        if price < 0:
            raise InvoiceInputError(f"Line item {idx}: unit_price must be non-negative")
        try:
            parsed.append(InvoiceItem.model_validate(item))
        except ValidationError as e:
            raise InvoiceInputError(f"Line item {idx}: {e.errors()[0]['msg']}") from e
    return parsed


def _build_models(
    invoice_number: str,
    issue_date: str,
    seller_nip: str,
    seller_name: str,
    buyer_name: str,
    items: str,
    currency: str,
    buyer_nip: str,
    seller_address: str,
    seller_postal_code: str,
    seller_city: str,
    buyer_address: str,
    buyer_postal_code: str,
    buyer_city: str,
    sell_date: str,
    due_date: str,
) -> tuple[Invoice, BusinessProfile, Customer]:
    invoice = Invoice(
        id=invoice_number,
        number=invoice_number,
        issue_date=_parse_date(issue_date, "issue_date"),
        sell_date=_parse_date(sell_date, "sell_date") if sell_date else None,
        due_date=_parse_date(due_date, "due_date") if due_date else None,
        currency=currency or "PLN",
        items=_parse_items(items),
    )
    issuer = BusinessProfile(
        name=seller_name,
        tax_id=seller_nip,
        address=seller_address or None,
        postal_code=seller_postal_code or None,
        city=seller_city or None,
    )
    counterparty = Customer(
        name=buyer_name,
        tax_id=buyer_nip or None,
        address=buyer_address or None,
        postal_code=buyer_postal_code or None,
        city=buyer_city or None,
    )
    return invoice, issuer, counterparty


# ═══════════════════════════════════════════════════
# TOOL 1: Invoice XML Generation
# ═══════════════════════════════════════════════════

@mcp.tool()
async def generate_invoice(
    invoice_number: str,
    issue_date: str,
    seller_nip: str,
    seller_name: str,
    buyer_name: str,
    items: str,
    currency: str = "PLN",
    buyer_nip: str = "",
    seller_address: str = "",
    seller_postal_code: str = "",
    seller_city: str = "",
    buyer_address: str = "",
    buyer_postal_code: str = "",
    buyer_city: str = "",
    sell_date: str = "",
    due_date: str = "",
    schema_version: str = "FA(3)",
) -> str:
    """Generate a KSeF fiscal invoice XML document (FA(2)/FA(3) shape).

    Builds the Faktura document with seller (Podmiot1), buyer (Podmiot2),
    per-rate VAT totals and one FaWiersz per line item. Tax identifiers are
    normalized (dashes and spaces removed).

    Args:
        invoice_number: Invoice number (P_2, e.g. "FV/2025/01/001")
        issue_date: Issue date in YYYY-MM-DD format (P_1)
        seller_nip: Seller 10-digit NIP
        seller_name: Seller business name
        buyer_name: Buyer name
        items: JSON array of line items. Each item: {"name": "Usługa", "quantity": 2, "unit_price": 100.00, "vat_rate": "23"}
        currency: ISO currency code (default: "PLN")
        buyer_nip: Buyer NIP (optional, BrakID is written when empty)
        seller_address: Seller street address
        seller_postal_code: Seller postal code
        seller_city: Seller city
        buyer_address: Buyer street address
        buyer_postal_code: Buyer postal code
        buyer_city: Buyer city
        sell_date: Date of sale in YYYY-MM-DD format (P_6, optional)
        due_date: Payment due date in YYYY-MM-DD format (optional)
        schema_version: "FA(2)" or "FA(3)"

    Returns:
        JSON with invoice_xml, net_total and the pre-submission validation result
    """
    try:
        invoice, issuer, counterparty = _build_models(
            invoice_number, issue_date, seller_nip, seller_name, buyer_name, items,
            currency, buyer_nip, seller_address, seller_postal_code, seller_city,
            buyer_address, buyer_postal_code, buyer_city, sell_date, due_date,
        )
        config = GatewayConfig(schema_version=schema_version)
    except (InvoiceInputError, ValidationError) as e:
        return json.dumps({"error": str(e)})

    nip_errors = validate_nip(seller_nip)
    if nip_errors:
        return json.dumps({"error": "Invalid seller NIP", "details": nip_errors})

    xml = build_invoice_xml(invoice, issuer, counterparty, config=config)
    net_total = sum((line_net_value(item) for item in invoice.items), Decimal("0"))

    return json.dumps(
        {
            "invoice_xml": xml,
            "net_total": str(net_total),
            "validation": validate_invoice_for_submission(
                invoice, issuer, counterparty, xml=xml
            ),
        },
        indent=2,
        ensure_ascii=False,
    )


# ═══════════════════════════════════════════════════
# TOOL 2: Pre-submission Validation
# ═══════════════════════════════════════════════════

@mcp.tool()
async def validate_invoice_data(
    invoice_number: str,
    issue_date: str,
    seller_nip: str,
    seller_name: str,
    buyer_name: str,
    items: str,
    buyer_nip: str = "",
    seller_address: str = "",
    seller_city: str = "",
    strict_nip: bool = True,
) -> str:
    """Check invoice data against KSeF business rules before submission.

    Checks: seller and buyer NIP checksums, invoice number, issue date not
    in the future, at least one line item, party names, and the encoded
    XML size limit (1 MB).

    Args:
        invoice_number: Invoice number (P_2)
        issue_date: Issue date in YYYY-MM-DD format
        seller_nip: Seller NIP
        seller_name: Seller business name
        buyer_name: Buyer name
        items: JSON array of line items (see generate_invoice)
        buyer_nip: Buyer NIP (optional)
        seller_address: Seller street address
        seller_city: Seller city
        strict_nip: Verify NIP checksums (disable for synthetic test-environment NIPs)

    Returns:
        JSON with is_valid (boolean), errors (list) and warnings (list)
    """
    try:
        invoice, issuer, counterparty = _build_models(
            invoice_number, issue_date, seller_nip, seller_name, buyer_name, items,
            "PLN", buyer_nip, seller_address, "", seller_city, "", "", "", "", "",
        )
    except (InvoiceInputError, ValidationError) as e:
        return json.dumps({"is_valid": False, "errors": [str(e)], "warnings": []})

    xml = build_invoice_xml(invoice, issuer, counterparty)
    result = validate_invoice_for_submission(
        invoice, issuer, counterparty, xml=xml, strict_nip=strict_nip
    )
    return json.dumps(result, indent=2, ensure_ascii=False)


# ═══════════════════════════════════════════════════
# TOOL 3: KSeF Number Validation
# ═══════════════════════════════════════════════════

@mcp.tool()
async def validate_ksef_number(ksef_number: str) -> str:
    """Validate a KSeF number (format, embedded date and CRC-8 checksum).

    Args:
        ksef_number: 35-character number, e.g. "5265877635-20250826-0100001AF629-96"

    Returns:
        JSON with is_valid (boolean) and errors (list)
    """
    errors = ksef_number_errors(ksef_number.strip())
    return json.dumps({"is_valid": not errors, "errors": errors})


# ═══════════════════════════════════════════════════
# TOOL 4: Verification Link (KOD I)
# ═══════════════════════════════════════════════════

@mcp.tool()
async def invoice_verification_link(
    seller_nip: str,
    issue_date: str,
    invoice_xml: str,
    ksef_number: str = "",
    environment: str = "test",
    include_png: bool = False,
) -> str:
    """Build the KSeF verification link (KOD I) printed as a QR code on invoices.

    Args:
        seller_nip: Seller NIP
        issue_date: Invoice issue date in YYYY-MM-DD format
        invoice_xml: The exact XML submitted to KSeF
        ksef_number: KSeF number, if assigned (label is "OFFLINE" otherwise)
        environment: "test", "demo" or "prod"
        include_png: Also return the QR code as Base64 PNG

    Returns:
        JSON with url, label and optionally qr_png_base64
    """
    try:
        link = build_verification_link(
            seller_nip,
            _parse_date(issue_date, "issue_date"),
            invoice_xml,
            ksef_number=ksef_number or None,
            environment=environment,
        )
    except ValueError as e:
        return json.dumps({"error": str(e)})

    result = {"url": link.url, "label": link.label}
    if include_png:
        result["qr_png_base64"] = base64.b64encode(link.to_png()).decode("ascii")
    return json.dumps(result, indent=2)


# ═══════════════════════════════════════════════════
# TOOL 5: Invoice Status
# ═══════════════════════════════════════════════════

@mcp.tool()
async def check_invoice_status(reference_number: str) -> str:
    """Check the processing status of a submitted invoice.

    Uses the bearer token from KSEF_ACCESS_TOKEN and the environment from
    KSEF_ENVIRONMENT.

    Args:
        reference_number: Element reference number returned on submission

    Returns:
        JSON status from KSeF, or an error with kind and retryable flag
    """
    settings = GatewaySettings()
    if not settings.access_token:
        return json.dumps({"error": "KSEF_ACCESS_TOKEN is not configured"})

    client = GatewayApiClient(settings.to_gateway_config())
    await client.init_session(settings.access_token)
    try:
        status = await client.check_invoice_status(reference_number)
    except GatewayError as e:
        return json.dumps(
            {
                "error": e.message,
                "kind": e.kind.value,
                "http_status": e.http_status,
                "retryable": e.retryable,
            }
        )
    finally:
        # the configured token outlives this call, so no remote termination
        client.session.clear()
    return json.dumps(status.model_dump(exclude_none=True), indent=2, ensure_ascii=False)


def main():
    """Entry point for the KSeF Gateway MCP server."""
    # stdout carries the MCP stdio protocol
    logging.basicConfig(
        level=logging.INFO,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    mcp.run()


if __name__ == "__main__":
    main()
