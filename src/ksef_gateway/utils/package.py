"""
Invoice packages for KSeF bulk exports and batch submission.

A package is a ZIP archive (after decryption and part merging) holding one
XML file per invoice plus a ``_metadata.json`` manifest. The manifest is
authoritative: when an XML file and a manifest entry share an invoice
number and seller NIP, the manifest values win.

Batch submission goes the other way: invoice XMLs are zipped and the ZIP is
cut into parts before encryption.
"""

from __future__ import annotations

import io
import json
import logging
import zipfile
import zlib
from decimal import Decimal, InvalidOperation
from pathlib import PurePosixPath
from typing import Callable, Iterable, Optional, TypeVar

from lxml import etree
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ksef_gateway.api.errors import PackageError
from ksef_gateway.utils.validation import ksef_number_errors, normalize_tax_id

logger = logging.getLogger(__name__)

MANIFEST_SUFFIX = "_metadata.json"
MAX_PART_SIZE = 100_000_000  # per batch part, before encryption

T = TypeVar("T")


class PackageInvoiceEntry(BaseModel):
    """One invoice listed in ``_metadata.json``."""

    model_config = ConfigDict(frozen=True)

    ksefNumber: str
    invoiceNumber: str
    issueDate: str
    sellerNip: str
    buyerNip: Optional[str] = None
    totalGrossAmount: Decimal
    currency: str
    permanentStorageDate: str


class PackageManifest(BaseModel):
    """Contents of ``_metadata.json``."""

    invoices: list[PackageInvoiceEntry]


class InvoiceXmlSummary(BaseModel):
    """Key fields read from an invoice XML file."""

    invoice_number: str
    issue_date: Optional[str] = None
    seller_nip: Optional[str] = None
    buyer_nip: Optional[str] = None
    total_gross_amount: Decimal = Decimal("0")
    currency: str = "PLN"
    invoice_type: Optional[str] = None


class RetrievedInvoice(BaseModel):
    """An invoice recovered from a package, ready to be stored by the caller."""

    filename: str
    xml: str = Field(repr=False)
    ksef_number: Optional[str] = None
    invoice_number: str
    issue_date: Optional[str] = None
    seller_nip: Optional[str] = None
    buyer_nip: Optional[str] = None
    total_gross_amount: Decimal = Decimal("0")
    currency: str = "PLN"
    invoice_type: Optional[str] = None
    permanent_storage_date: Optional[str] = None
    from_manifest: bool = False


class ExtractedPackage(BaseModel):
    """Result of reading every file of an unpacked package."""

    invoices: list[RetrievedInvoice] = Field(default_factory=list)
    missing: list[PackageInvoiceEntry] = Field(default_factory=list)
    failed_files: list[str] = Field(default_factory=list)


def merge_parts(parts: Iterable[bytes]) -> bytes:
    """Concatenate downloaded parts in the order given."""
    return b"".join(parts)


def build_package(files: dict[str, str]) -> bytes:
    """ZIP invoice XML files for a batch session, in the order given."""
    if not files:
        raise ValueError("A batch package needs at least one invoice")
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, content in files.items():
            zf.writestr(name, content.encode("utf-8"))
    return buf.getvalue()


def split_package(data: bytes, max_part_size: int = MAX_PART_SIZE) -> list[bytes]:
    """
    Cut a package into the fewest parts of at most ``max_part_size`` bytes.

    Parts are as even as possible; joining them gives back ``data``.
    """
    if max_part_size < 1:
        raise ValueError("max_part_size must be positive")
    if not data:
        return []
    count = -(-len(data) // max_part_size)
    size = -(-len(data) // count)
    return [data[i:i + size] for i in range(0, len(data), size)]


def unzip_package(zip_bytes: bytes) -> dict[str, str]:
    """
    Extract every file of a package ZIP.

    Returns:
        Mapping of archive member name to UTF-8 text, in archive order

    Raises:
        PackageError: the archive is corrupt, or a member cannot be read or
            is not UTF-8
    """
    files: dict[str, str] = {}
    try:
        with zipfile.ZipFile(io.BytesIO(zip_bytes), mode="r") as zf:
            for info in zf.infolist():
                if info.is_dir():
                    continue
                try:
                    data = zf.read(info)
                except (
                    zipfile.BadZipFile,
                    zlib.error,
                    EOFError,
                    RuntimeError,
                    NotImplementedError,
                ) as e:
                    raise PackageError(f"Unreadable package entry: {e}", info.filename) from e
                try:
                    files[info.filename] = data.decode("utf-8")
                except UnicodeDecodeError as e:
                    raise PackageError(f"not valid UTF-8: {e}", info.filename) from e
    except zipfile.BadZipFile as e:
        raise PackageError(f"Invalid package archive: {e}") from e
    return files


def parse_metadata_json(content: str, filename: str = MANIFEST_SUFFIX) -> PackageManifest:
    """
    Parse and validate the package manifest.

    Raises:
        PackageError: invalid JSON or a shape other than the expected schema
    """
    try:
        return PackageManifest.model_validate_json(content)
    except ValidationError as e:
        raise PackageError(f"Invalid metadata manifest: {e}", filename) from e


def _first_text(root: etree._Element, *paths: str) -> Optional[str]:
    for path in paths:
        found = root.xpath(path)
        if found:
            text = found[0].text if hasattr(found[0], "text") else str(found[0])
            if text and text.strip():
                return text.strip()
    return None


def _local(*names: str) -> str:
    return "/".join(f"*[local-name()='{name}']" for name in names)


def parse_invoice_xml(content: str, filename: str = "") -> InvoiceXmlSummary:
    """
    Read key fields from an invoice XML document.

    Understands the fiscal ``Faktura`` layout (P_2, Podmiot1/NIP, P_15, ...)
    and a generic ``Invoice`` layout, matching on local names so that any
    schema namespace is accepted.

    Raises:
        PackageError: malformed XML, unknown root element or no invoice number
    """
    try:
        root = etree.fromstring(content.encode("utf-8"))
    except etree.XMLSyntaxError as e:
        raise PackageError(f"Invalid invoice XML: {e}", filename) from e

    root_name = etree.QName(root).localname
    if root_name == "Faktura":
        fa = _local("Fa")
        number = _first_text(root, f"{fa}/{_local('P_2')}", f"{fa}/{_local('P_2A')}")
        issue_date = _first_text(root, f"{fa}/{_local('P_1')}")
        seller = _first_text(root, _local("Podmiot1", "DaneIdentyfikacyjne", "NIP"))
        buyer = _first_text(root, _local("Podmiot2", "DaneIdentyfikacyjne", "NIP"))
        gross = _first_text(root, f"{fa}/{_local('P_15')}")
        currency = _first_text(root, f"{fa}/{_local('KodWaluty')}")
        invoice_type = _first_text(root, f"{fa}/{_local('RodzajFaktury')}")
    elif root_name == "Invoice":
        number = _first_text(root, _local("InvoiceNumber"))
        issue_date = _first_text(root, _local("IssueDate"))
        seller = _first_text(root, _local("Seller", "NIP"))
        buyer = _first_text(root, _local("Buyer", "NIP"))
        gross = _first_text(root, _local("TotalGrossAmount"))
        currency = _first_text(root, _local("Currency"))
        invoice_type = _first_text(root, _local("InvoiceType"))
    else:
        raise PackageError(f"Unexpected invoice root element <{root_name}>", filename)

    if not number:
        raise PackageError("Invoice number not found", filename)

    try:
        total = Decimal(gross) if gross else Decimal("0")
    except InvalidOperation as e:
        raise PackageError(f"Invalid gross amount {gross!r}", filename) from e

    return InvoiceXmlSummary(
        invoice_number=number,
        issue_date=issue_date,
        seller_nip=seller,
        buyer_nip=buyer,
        total_gross_amount=total,
        currency=currency or "PLN",
        invoice_type=invoice_type,
    )


def _number_from_filename(filename: str) -> Optional[str]:
    stem = PurePosixPath(filename).stem
    return stem if not ksef_number_errors(stem) else None


def _match_entry(
    summary: InvoiceXmlSummary,
    candidates: list[tuple[int, PackageInvoiceEntry]],
    consumed: set[int],
) -> Optional[int]:
    """Index of the manifest entry describing an XML file, or None."""
    seller = normalize_tax_id(summary.seller_nip)
    matching = [
        idx
        for idx, entry in candidates
        if not seller or normalize_tax_id(entry.sellerNip) == seller
    ]
    for idx in matching:
        if idx not in consumed:
            return idx
    # another copy of an invoice already matched; dropped later as a duplicate
    return matching[0] if matching else None


def extract_invoices_from_package(files: dict[str, str]) -> ExtractedPackage:
    """
    Turn an unzipped package into invoices.

    The manifest is located and parsed before any XML. Every ``.xml`` member
    is parsed; a file that fails to parse is logged and skipped. Invoice
    numbers are only unique per seller, so an XML file is paired with the
    manifest entry carrying the same invoice number and seller NIP, and each
    entry is used for one invoice. Manifest entries with no matching XML are
    logged and returned in ``missing``.

    Raises:
        PackageError: the manifest is present but malformed
    """
    manifest: Optional[PackageManifest] = None
    for filename, content in files.items():
        if filename.lower().endswith(MANIFEST_SUFFIX):
            manifest = parse_metadata_json(content, filename)
            break

    entries: list[PackageInvoiceEntry] = manifest.invoices if manifest is not None else []
    by_number: dict[str, list[tuple[int, PackageInvoiceEntry]]] = {}
    for idx, entry in enumerate(entries):
        by_number.setdefault(entry.invoiceNumber, []).append((idx, entry))
    if manifest is None:
        logger.warning("Package has no %s manifest, using XML contents only", MANIFEST_SUFFIX)

    result = ExtractedPackage()
    consumed: set[int] = set()

    for filename, content in files.items():
        if not filename.lower().endswith(".xml"):
            continue
        try:
            summary = parse_invoice_xml(content, filename)
        except PackageError as e:
            logger.error("Skipping invoice file %s: %s", filename, e.message)
            result.failed_files.append(filename)
            continue

        idx = _match_entry(summary, by_number.get(summary.invoice_number, []), consumed)
        if idx is not None:
            consumed.add(idx)
            entry = entries[idx]
            result.invoices.append(
                RetrievedInvoice(
                    filename=filename,
                    xml=content,
                    ksef_number=entry.ksefNumber,
                    invoice_number=entry.invoiceNumber,
                    issue_date=entry.issueDate,
                    seller_nip=entry.sellerNip,
                    buyer_nip=entry.buyerNip,
                    total_gross_amount=entry.totalGrossAmount,
                    currency=entry.currency,
                    invoice_type=summary.invoice_type,
                    permanent_storage_date=entry.permanentStorageDate,
                    from_manifest=True,
                )
            )
        else:
            result.invoices.append(
                RetrievedInvoice(
                    filename=filename,
                    xml=content,
                    ksef_number=_number_from_filename(filename),
                    **summary.model_dump(),
                )
            )

    for idx, entry in enumerate(entries):
        if idx not in consumed:
            logger.warning(
                "Manifest lists %s (invoice %s, seller %s) but the package has no XML for it",
                entry.ksefNumber,
                entry.invoiceNumber,
                entry.sellerNip,
            )
            result.missing.append(entry)

    return result


def deduplicate(items: Iterable[T], key: Callable[[T], object]) -> list[T]:
    """Drop repeated keys, keeping the first occurrence and the input order."""
    seen: set = set()
    unique: list[T] = []
    for item in items:
        k = key(item)
        if k in seen:
            continue
        seen.add(k)
        unique.append(item)
    return unique


def deduplicate_invoices(invoices: Iterable[RetrievedInvoice]) -> list[RetrievedInvoice]:
    """Deduplicate by KSeF number (first wins, order preserved)."""
    # invoices without a number are never duplicates of each other
    return deduplicate(
        invoices,
        key=lambda inv: inv.ksef_number if inv.ksef_number else ("file", inv.filename),
    )


def accept_valid_numbers(
    invoices: Iterable[RetrievedInvoice],
) -> tuple[list[RetrievedInvoice], list[RetrievedInvoice]]:
    """
    Split invoices by KSeF number validity.

    Returns:
        (accepted, rejected); rejected invoices are logged with their file
    """
    accepted: list[RetrievedInvoice] = []
    rejected: list[RetrievedInvoice] = []
    for inv in invoices:
        errors = ksef_number_errors(inv.ksef_number or "")
        if errors:
            logger.warning(
                "Dropping invoice %s from %s: %s",
                inv.invoice_number,
                inv.filename,
                "; ".join(errors),
            )
            rejected.append(inv)
        else:
            accepted.append(inv)
    return accepted, rejected
