import csv
from datetime import date
from io import BytesIO, StringIO

import pytest
from openpyxl import Workbook
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from csv_utils import parse_amount, parse_date, sanitize_csv_value
from database import Base
from errors import ValidationError
from models import CategoryType, TransactionType
from schemas import CategoryIn, TransactionIn
from services import CategoryService, TransactionFilters, TransactionService


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def test_parse_amount_handles_locale_formats() -> None:
    assert parse_amount("1.234,56") == 123456
    assert parse_amount("$12.50") == 1250
    assert parse_amount("-3,20", allow_negative=True) == -320
    with pytest.raises(ValueError):
        parse_amount("-3,20")
    with pytest.raises(ValueError):
        parse_amount("twelve")


def test_parse_date_accepts_common_formats() -> None:
    assert parse_date("2025-04-01") == date(2025, 4, 1)
    assert parse_date("01.04.2025") == date(2025, 4, 1)
    with pytest.raises(ValueError):
        parse_date("April first")


def test_sanitize_csv_value_neutralizes_formulas() -> None:
    assert sanitize_csv_value("=SUM(A1:A3)") == "\t=SUM(A1:A3)"
    assert sanitize_csv_value("https://evil.example") == "\thttps://evil.example"
    assert sanitize_csv_value("  Groceries ") == "Groceries"
    assert sanitize_csv_value("   ") == ""


def test_csv_import_matches_categories_and_reports_bad_rows() -> None:
    with _session() as session:
        groceries = CategoryService(session).create(
            CategoryIn(name="Groceries", type=CategoryType.expense)
        )
        content = (
            "Date,Amount,Description,Category,Tags\n"
            "2025-04-01,-45.20,Supermarket,Groceris,food;weekly\n"
            "2025-04-02,abc,Broken row,,\n"
            "2025-04-03,2500,Salary April,,\n"
        ).encode("utf-8")

        result = TransactionService(session).import_rows(content, "bank.csv")

        assert result["imported"] == 2
        assert result["failed"] == 1
        assert result["errors"][0].startswith("Row 2:")

        listed = TransactionService(session).list(sort="date", order="asc")["transactions"]
        assert listed[0].type == TransactionType.expense
        assert listed[0].amount_cents == 4520
        assert listed[0].category_id == groceries.id
        assert sorted(t.name for t in listed[0].tags) == ["food", "weekly"]
        assert listed[1].type == TransactionType.income
        assert listed[1].amount_cents == 250000


def test_xlsx_import_reads_first_sheet() -> None:
    workbook = Workbook()
    sheet = workbook.active
    sheet.append(["Date", "Type", "Amount", "Description", "Payee"])
    sheet.append([date(2025, 4, 5), "expense", 12.5, "Bus ticket", "City Transit"])
    sheet.append([None, None, None, None, None])
    buffer = BytesIO()
    workbook.save(buffer)

    with _session() as session:
        result = TransactionService(session).import_rows(buffer.getvalue(), "export.xlsx")

        assert result == {"imported": 1, "failed": 0, "errors": []}
        txn = TransactionService(session).list()["transactions"][0]
        assert txn.payee == "City Transit"
        assert txn.amount_cents == 1250


def test_import_rejects_unknown_extension() -> None:
    with _session() as session:
        with pytest.raises(ValidationError):
            TransactionService(session).import_rows(b"date,amount\n", "data.json")


def test_import_errors_use_source_row_numbers() -> None:
    content = (
        "Date,Amount,Description,Payee\n"
        "someday,-5.00,Broken date,\n"
        "2025-04-02,-7.50,Bakery,Corner Bakery\n"
        "2025-04-03,-9.00,Long payee," + "x" * 150 + "\n"
    ).encode("utf-8")
    with _session() as session:
        result = TransactionService(session).import_rows(content, "bank.csv")

        assert result["imported"] == 1
        assert result["failed"] == 2
        assert result["errors"][0].startswith("Row 1:")
        assert result["errors"][1].startswith("Row 3:")


def test_import_rejects_undecodable_csv() -> None:
    with _session() as session:
        with pytest.raises(ValidationError, match="UTF-8"):
            TransactionService(session).import_rows(b"Date,Amount\n\xff\xfe\x80,1\n", "x.csv")


def test_import_rejects_corrupt_xlsx() -> None:
    with _session() as session:
        with pytest.raises(ValidationError, match="Invalid XLSX"):
            TransactionService(session).import_rows(b"not a zip", "x.xlsx")


def test_export_escapes_formula_cells() -> None:
    with _session() as session:
        service = TransactionService(session)
        service.create(
            TransactionIn(
                date=date(2025, 4, 1),
                type=TransactionType.expense,
                amount_cents=999,
                description="=HYPERLINK(\"x\")",
                tags=["b", "a"],
            )
        )

        exported = service.export_csv(TransactionFilters(type=TransactionType.expense))
        rows = list(csv.reader(StringIO(exported)))

        assert rows[0][:3] == ["Date", "Type", "Amount"]
        assert rows[1][2] == "9.99"
        assert rows[1][3] == "\t=HYPERLINK(\"x\")"
