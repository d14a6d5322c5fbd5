"""Tests for random strings and synthetic invoice files."""
import os
import string

import pytest

from cms_dataload.datagen import (
    INVOICE_PROVENANCE,
    InvoiceRecord,
    create_invoice_file,
    generate_invoice_records,
    generate_random_string,
    render_invoice,
)


def test_random_string_is_alphanumeric_with_requested_length():
    value = generate_random_string(16)
    assert len(value) == 16
    assert set(value) <= set(string.ascii_letters + string.digits)


def test_random_strings_differ():
    assert len({generate_random_string(16) for _ in range(20)}) == 20


def test_random_string_rejects_non_positive_length():
    with pytest.raises(ValueError):
        generate_random_string(0)


@pytest.mark.parametrize("count", [1, 2, 5, 17])
def test_records_bill_twenty_hours_at_twenty_per_index(count):
    records = generate_invoice_records(count)
    assert len(records) == count
    for index, record in enumerate(records, start=1):
        assert record.type_of_work == "Development"
        assert record.subtype_of_work == f"Task {index}"
        assert record.description == ""
        assert record.hours == 20
        assert record.total_cost == 20 * index


def test_records_require_at_least_one():
    with pytest.raises(ValueError):
        generate_invoice_records(0)


def test_record_rejects_negative_values():
    with pytest.raises(ValueError):
        InvoiceRecord("Development", "Task 1", "", -1, 20)
    with pytest.raises(ValueError):
        InvoiceRecord("Development", "Task 1", "", 1, -20)


def test_record_csv_fields():
    assert InvoiceRecord("Development", "Task 3", "", 20, 60).to_csv() == "Development,Task 3,,20,60"
    assert InvoiceRecord("Design", "Logo", "v2", 2, 12.5).to_csv() == "Design,Logo,v2,2,12.5"


def test_invoice_file_layout(tmp_path):
    invoice = create_invoice_file(str(tmp_path / "invoices"), 9, 2018, 5)

    assert invoice.path == os.path.join(str(tmp_path / "invoices"), "2018-09.csv")
    assert invoice.count == 5
    assert invoice.period == "2018-09"
    assert [r.total_cost for r in invoice.records] == [20, 40, 60, 80, 100]

    with open(invoice.path, encoding="utf-8") as handle:
        lines = handle.read().split("\n")

    assert lines[0] == "# 2018-09"
    assert lines[1] == INVOICE_PROVENANCE
    # records follow the header back to back, without separators
    assert lines[2] == (
        "Development,Task 1,,20,20"
        "Development,Task 2,,20,40"
        "Development,Task 3,,20,60"
        "Development,Task 4,,20,80"
        "Development,Task 5,,20,100"
    )
    assert len(lines) == 3


def test_invoice_file_overwrites_previous_run(tmp_path):
    create_invoice_file(str(tmp_path), 10, 2018, 8)
    invoice = create_invoice_file(str(tmp_path), 10, 2018, 2)
    with open(invoice.path, encoding="utf-8") as handle:
        content = handle.read()
    assert content == render_invoice(10, 2018, invoice.records)
    assert "Task 3" not in content


@pytest.mark.parametrize("month", [0, 13])
def test_invoice_file_rejects_bad_month(tmp_path, month):
    with pytest.raises(ValueError):
        create_invoice_file(str(tmp_path), month, 2018, 1)
