"""
FA(2)/FA(3) XML Invoice Builder for KSeF.

Maps an invoice, its issuer and its counterparty onto the fiscal
``Faktura`` document accepted by the gateway. The builder is pure: missing
optional data is left out instead of raising, and the only field that
changes between two runs is the generation timestamp.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from lxml import etree

from ksef_gateway.config import GatewayConfig
from ksef_gateway.models import (
    BusinessProfile,
    Customer,
    Invoice,
    InvoiceItem,
    line_net_value,
    round_amount,
)
from ksef_gateway.utils.validation import normalize_tax_id

NAMESPACES = {
    "FA(2)": "http://crd.gov.pl/wzor/2023/06/29/12648/",
    "FA(3)": "http://crd.gov.pl/wzor/2025/06/25/13775/",
}
SCHEMA_VARIANTS = {"FA(2)": ("1-0E", "2"), "FA(3)": ("1-0E", "3")}
XSI = "http://www.w3.org/2001/XMLSchema-instance"

# Summary fields in schema order: (net field, tax field or None)
VAT_FIELDS = (
    ("P_13_1", "P_14_1"),
    ("P_13_2", "P_14_2"),
    ("P_13_3", "P_14_3"),
    ("P_13_6_1", None),
    ("P_13_7", None),
    ("P_13_8", None),
    ("P_13_10", None),
)

# VAT rate code -> (net field, tax field or None)
VAT_BUCKETS = {
    "23": VAT_FIELDS[0],
    "22": VAT_FIELDS[0],
    "8": VAT_FIELDS[1],
    "7": VAT_FIELDS[1],
    "5": VAT_FIELDS[2],
    "0": VAT_FIELDS[3],
    "zw": VAT_FIELDS[4],
    "np": VAT_FIELDS[5],
    "oo": VAT_FIELDS[6],
}
NON_TAXED_CODES = {"zw", "np", "oo"}
DEFAULT_VAT_CODE = "23"
# unsupported codes are reported by validate_invoice_for_submission
FALLBACK_VAT_CODE = "np"

# XML 1.0 forbids most C0 control characters
_ILLEGAL_XML_CHARS = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f\ufffe\uffff]")


def _amount(value: Decimal) -> str:
    return str(round_amount(value))


def _clean_text(text: Optional[str], max_length: int) -> str:
    """Drop characters XML cannot carry and cut to the schema length."""
    if text is None:
        return ""
    return _ILLEGAL_XML_CHARS.sub("", str(text)).strip()[:max_length]


def _add_text_element(
    parent: etree._Element, ns: str, local_name: str, text: str, **attribs
) -> etree._Element:
    """Add a child element with text content."""
    elem = etree.SubElement(parent, f"{{{ns}}}{local_name}")
    elem.text = str(text)
    for key, value in attribs.items():
        elem.set(key, str(value))
    return elem


def _vat_code(item: InvoiceItem) -> str:
    if item.vat_exempt:
        return "zw"
    if item.vat_rate is None or item.vat_rate == "":
        return DEFAULT_VAT_CODE
    code = item.vat_rate.strip().lower()
    return code if code in VAT_BUCKETS else FALLBACK_VAT_CODE


def _line_vat(net: Decimal, code: str) -> Decimal:
    if code in NON_TAXED_CODES:
        return Decimal("0")
    try:
        rate = Decimal(code)
    except ArithmeticError:
        return Decimal("0")
    return round_amount(net * rate / Decimal("100"))


def _address_line2(postal_code: Optional[str], city: Optional[str]) -> str:
    if not city:
        return ""
    parts = [postal_code, city] if postal_code else [city]
    return _clean_text(" ".join(parts), 512)


def _build_address(
    parent: etree._Element,
    ns: str,
    country: Optional[str],
    address: Optional[str],
    postal_code: Optional[str],
    city: Optional[str],
) -> etree._Element:
    adres = etree.SubElement(parent, f"{{{ns}}}Adres")
    _add_text_element(adres, ns, "KodKraju", country or "PL")
    line1 = _clean_text(address, 512)
    if line1:
        _add_text_element(adres, ns, "AdresL1", line1)
    line2 = _address_line2(postal_code, city)
    if line2:
        _add_text_element(adres, ns, "AdresL2", line2)
    return adres


def _build_header(
    root: etree._Element, ns: str, config: GatewayConfig, generated_at: datetime
) -> None:
    header = etree.SubElement(root, f"{{{ns}}}Naglowek")
    schema_version, variant = SCHEMA_VARIANTS[config.schema_version]
    _add_text_element(
        header, ns, "KodFormularza", "FA",
        kodSystemowy=config.schema_version,
        wersjaSchemy=schema_version,
    )
    _add_text_element(header, ns, "WariantFormularza", variant)
    _add_text_element(
        header, ns, "DataWytworzeniaFa",
        generated_at.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
    )
    _add_text_element(header, ns, "SystemInfo", _clean_text(config.system_info, 256))


def _build_seller(root: etree._Element, ns: str, issuer: BusinessProfile) -> None:
    seller = etree.SubElement(root, f"{{{ns}}}Podmiot1")
    ident = etree.SubElement(seller, f"{{{ns}}}DaneIdentyfikacyjne")
    _add_text_element(ident, ns, "NIP", normalize_tax_id(issuer.tax_id))
    _add_text_element(ident, ns, "Nazwa", _clean_text(issuer.name, 512))
    if issuer.regon:
        _add_text_element(ident, ns, "REGON", normalize_tax_id(issuer.regon))
    _build_address(
        seller, ns, issuer.country, issuer.address, issuer.postal_code, issuer.city
    )


def _build_buyer(root: etree._Element, ns: str, counterparty: Customer) -> None:
    buyer = etree.SubElement(root, f"{{{ns}}}Podmiot2")
    ident = etree.SubElement(buyer, f"{{{ns}}}DaneIdentyfikacyjne")
    tax_id = normalize_tax_id(counterparty.tax_id)
    if tax_id:
        _add_text_element(ident, ns, "NIP", tax_id)
    else:
        _add_text_element(ident, ns, "BrakID", "1")
    _add_text_element(ident, ns, "Nazwa", _clean_text(counterparty.name, 512))
    if counterparty.address or counterparty.city:
        _build_address(
            buyer, ns,
            counterparty.country,
            counterparty.address,
            counterparty.postal_code,
            counterparty.city,
        )


def build_invoice_xml(
    invoice: Invoice,
    issuer: BusinessProfile,
    counterparty: Customer,
    config: Optional[GatewayConfig] = None,
    generated_at: Optional[datetime] = None,
) -> str:
    """
    Build a KSeF fiscal invoice XML document.

    Args:
        invoice: Invoice header and line items
        issuer: Seller business profile (Podmiot1)
        counterparty: Buyer (Podmiot2)
        config: Schema version and system info; defaults to FA(3)
        generated_at: Value for DataWytworzeniaFa; defaults to now (UTC)

    Returns:
        Pretty-printed XML string with an XML declaration
    """
    config = config or GatewayConfig()
    generated_at = generated_at or datetime.now(timezone.utc)
    ns = NAMESPACES[config.schema_version]

    root = etree.Element(f"{{{ns}}}Faktura", nsmap={None: ns, "xsi": XSI})

    _build_header(root, ns, config, generated_at)
    _build_seller(root, ns, issuer)
    _build_buyer(root, ns, counterparty)

    fa = etree.SubElement(root, f"{{{ns}}}Fa")
    _add_text_element(fa, ns, "KodWaluty", _clean_text(invoice.currency, 3) or "PLN")
    _add_text_element(fa, ns, "P_1", invoice.issue_date.isoformat())
    _add_text_element(fa, ns, "P_2", _clean_text(invoice.number, 256))
    if invoice.sell_date:
        _add_text_element(fa, ns, "P_6", invoice.sell_date.isoformat())

    # Per-line values, summed per summary field (22 and 23 share P_13_1)
    processed = []
    codes: set[str] = set()
    sums: dict[tuple, dict[str, Decimal]] = {}
    for item in invoice.items:
        code = _vat_code(item)
        net = line_net_value(item)
        vat = _line_vat(net, code)
        processed.append((item, code, net))
        codes.add(code)
        group = sums.setdefault(VAT_BUCKETS[code], {"net": Decimal("0"), "vat": Decimal("0")})
        group["net"] += net
        group["vat"] += vat

    total_net = sum((g["net"] for g in sums.values()), Decimal("0"))
    total_vat = sum((g["vat"] for g in sums.values()), Decimal("0"))

    for fields in VAT_FIELDS:
        if fields not in sums:
            continue
        net_field, vat_field = fields
        _add_text_element(fa, ns, net_field, _amount(sums[fields]["net"]))
        if vat_field:
            _add_text_element(fa, ns, vat_field, _amount(sums[fields]["vat"]))

    gross = (
        invoice.total_gross_value
        if invoice.total_gross_value is not None
        else total_net + total_vat
    )
    _add_text_element(fa, ns, "P_15", _amount(gross))

    adnotacje = etree.SubElement(fa, f"{{{ns}}}Adnotacje")
    _add_text_element(adnotacje, ns, "P_16", "2")
    _add_text_element(adnotacje, ns, "P_17", "2")
    _add_text_element(adnotacje, ns, "P_18", "2")
    _add_text_element(adnotacje, ns, "P_18A", "2")
    zwolnienie = etree.SubElement(adnotacje, f"{{{ns}}}Zwolnienie")
    if "zw" in codes:
        _add_text_element(zwolnienie, ns, "P_19", "1")
    else:
        _add_text_element(zwolnienie, ns, "P_19N", "1")

    _add_text_element(fa, ns, "RodzajFaktury", "VAT")

    for idx, (item, code, net) in enumerate(processed, start=1):
        line = etree.SubElement(fa, f"{{{ns}}}FaWiersz")
        _add_text_element(line, ns, "NrWierszaFa", str(idx))
        _add_text_element(
            line, ns, "P_7",
            _clean_text(item.name or item.description, 512) or "Pozycja",
        )
        _add_text_element(line, ns, "P_8A", _amount(item.quantity))
        _add_text_element(line, ns, "P_8B", _clean_text(item.unit, 30) or "szt")
        _add_text_element(line, ns, "P_9A", _amount(item.unit_price))
        _add_text_element(line, ns, "P_11", _amount(net))
        _add_text_element(line, ns, "P_12", code)

    if invoice.due_date:
        platnosc = etree.SubElement(fa, f"{{{ns}}}Platnosc")
        termin = etree.SubElement(platnosc, f"{{{ns}}}TerminPlatnosci")
        _add_text_element(termin, ns, "Termin", invoice.due_date.isoformat())

    # Serialize
    return etree.tostring(
        root,
        pretty_print=True,
        xml_declaration=True,
        encoding="UTF-8",
    ).decode("utf-8")
