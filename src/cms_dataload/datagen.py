"""
Throwaway data for the dataload run.

Random strings for names/locations/placeholders and synthetic invoice files
in the contractor CSV layout.
"""
import logging
import os
import secrets
import string
from dataclasses import dataclass, field
from datetime import date
from typing import List

logger = logging.getLogger(__name__)

INVOICE_HOURS = 20
INVOICE_RATE = 20
INVOICE_PROVENANCE = "# This file was generated by the dataload utility."


def generate_random_string(length: int = 16) -> str:
    """Return an alphanumeric string of exactly ``length`` characters."""
    if length <= 0:
        raise ValueError("length must be positive")
    alphabet = string.ascii_letters + string.digits
    return ''.join(secrets.choice(alphabet) for _ in range(length))


@dataclass
class InvoiceRecord:
    type_of_work: str
    subtype_of_work: str
    description: str
    hours: int
    total_cost: float

    def __post_init__(self):
        if self.hours < 0:
            raise ValueError("hours must be non-negative")
        if self.total_cost < 0:
            raise ValueError("total_cost must be non-negative")

    def to_csv(self) -> str:
        cost = self.total_cost
        if float(cost).is_integer():
            cost = int(cost)
        return (f"{self.type_of_work},{self.subtype_of_work},"
                f"{self.description},{self.hours},{cost}")


@dataclass
class InvoiceFile:
    path: str
    month: int
    year: int
    records: List[InvoiceRecord] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.records)

    @property
    def period(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


def generate_invoice_records(count: int) -> List[InvoiceRecord]:
    """Build ``count`` line items; item i bills 20 hours at cost 20 * i."""
    if count < 1:
        raise ValueError("an invoice needs at least one record")
    return [
        InvoiceRecord(
            type_of_work="Development",
            subtype_of_work=f"Task {i}",
            description="",
            hours=INVOICE_HOURS,
            total_cost=INVOICE_RATE * i,
        )
        for i in range(1, count + 1)
    ]


def render_invoice(month: int, year: int, records: List[InvoiceRecord]) -> str:
    """Render the invoice text.

    The two comment lines end with a newline; the records themselves are
    written back to back with no separator.
    """
    period = date(year, month, 1).strftime("%Y-%m")
    header = f"# {period}\n{INVOICE_PROVENANCE}\n"
    return header + "".join(record.to_csv() for record in records)


def create_invoice_file(data_dir: str, month: int, year: int, count: int) -> InvoiceFile:
    """Write a synthetic invoice for (month, year) into ``data_dir``.

    Args:
        data_dir: Directory for generated invoices (created if missing)
        month: 1-12
        year: Four digit year
        count: Number of line items (>= 1)

    Returns:
        InvoiceFile with the path and the generated records
    """
    if not 1 <= month <= 12:
        raise ValueError(f"month must be between 1 and 12, got {month}")
    records = generate_invoice_records(count)

    os.makedirs(data_dir, exist_ok=True)
    invoice = InvoiceFile(
        path=os.path.join(data_dir, f"{year:04d}-{month:02d}.csv"),
        month=month,
        year=year,
        records=records,
    )
    with open(invoice.path, "w", encoding="utf-8") as handle:
        handle.write(render_invoice(month, year, records))
        handle.flush()
        os.fsync(handle.fileno())

    logger.info(f"Generated invoice {invoice.path} with {invoice.count} records")
    return invoice
