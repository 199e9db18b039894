from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from csv_utils import CSV_HEADER, parse_amount, parse_csv, sanitize_csv_value
from database import Base
from date_ranges import single_month_range
from models import CurrencyCode, ExpenseCategory, TransactionType
from schemas import TransactionIn
from services import CSVService, DepartmentService, TransactionFilters, TransactionService

HEADER = ",".join(CSV_HEADER)


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    session = Session(engine)
    DepartmentService(session).seed_defaults()
    return session


def test_parse_amount_variants() -> None:
    assert parse_amount("1,234.50") == 123450
    assert parse_amount("$ 12") == 1200
    assert parse_amount("SSP 7.05") == 705
    with pytest.raises(ValueError):
        parse_amount("-5")
    with pytest.raises(ValueError):
        parse_amount("abc")


def test_parse_csv_collects_row_errors() -> None:
    content = "\n".join(
        [
            HEADER,
            "2025-06-01,income,100.00,USD,Consultation,,Walk-ins",
            "01.06.2025,expense,20,SSP,,clinic_operations,Fuel",
            "2025-06-02,income,5,USD,,doctor_payments,",
            "not-a-date,income,5,USD,,,",
        ]
    )
    rows, errors = parse_csv(content)
    assert len(rows) == 2
    assert rows[1].date == date(2025, 6, 1)
    assert rows[1].currency == CurrencyCode.ssp
    assert rows[1].expense_category == ExpenseCategory.clinic_operations
    assert [e.split(":")[0] for e in errors] == ["Row 3", "Row 4"]


def test_preview_resolves_departments() -> None:
    with _session() as session:
        content = "\n".join(
            [
                HEADER,
                "2025-06-01,income,100.00,USD,Laboratry,,",
                "2025-06-01,income,50.00,USD,Dentistry,,",
            ]
        )
        rows, errors = CSVService(session).preview(content)
        lab = next(d for d in DepartmentService(session).list_all() if d.code == "LAB")
        assert rows[0]["department_id"] == lab.id
        assert len(errors) == 1
        assert errors[0].startswith("Row 2:")


def test_preview_errors_keep_source_row_numbers() -> None:
    with _session() as session:
        content = "\n".join(
            [
                HEADER,
                "2025-06-01,income,abc,USD,,,",
                "2025-06-02,income,50.00,USD,Nowhere Dept,,",
            ]
        )
        rows, errors = CSVService(session).preview(content)
        assert rows == []
        assert [e.split(":")[0] for e in errors] == ["Row 1", "Row 2"]
        assert "Nowhere Dept" in errors[1]


def test_parse_csv_records_row_numbers() -> None:
    content = "\n".join(
        [
            HEADER,
            "bad-date,income,1,USD,,,",
            "2025-06-02,income,1,USD,,,",
        ]
    )
    rows, errors = parse_csv(content)
    assert [row.row_number for row in rows] == [2]
    assert errors[0].startswith("Row 1:")


def test_commit_is_all_or_nothing() -> None:
    with _session() as session:
        bad = "\n".join(
            [
                HEADER,
                "2025-06-01,income,100.00,USD,CON,,",
                "2025-06-02,income,50.00,USD,Dentistry,,",
            ]
        )
        with pytest.raises(ValueError) as exc:
            CSVService(session).commit(bad)
        assert str(exc.value).startswith("Row 2:")
        window = single_month_range(2025, 6)
        assert TransactionService(session).list(window, TransactionFilters()) == []

        good = "\n".join(
            [
                HEADER,
                "2025-06-01,income,100.00,USD,CON,,",
                "2025-06-02,expense,40.00,USD,,general,Supplies",
            ]
        )
        assert CSVService(session).commit(good) == 2
        assert len(TransactionService(session).list(window, TransactionFilters())) == 2


def test_commit_rejects_unparseable_rows() -> None:
    with _session() as session:
        content = "\n".join([HEADER, "2025-06-01,refund,1,USD,,,"])
        with pytest.raises(ValueError) as exc:
            CSVService(session).commit(content)
        assert "Row 1" in str(exc.value)


def test_export_sanitises_formula_values() -> None:
    with _session() as session:
        service = TransactionService(session)
        service.create(
            TransactionIn(
                date=date(2025, 6, 3),
                type=TransactionType.expense,
                amount_cents=1999,
                expense_category=ExpenseCategory.general,
                description="=SUM(A1:A2)",
            )
        )
        transactions = service.all_for_range(single_month_range(2025, 6))
        csv_text = CSVService(session).export(transactions)
        lines = csv_text.strip().splitlines()
        assert lines[0] == HEADER
        assert lines[1].startswith("2025-06-03,expense,19.99,USD,,general,")
        assert "\t=SUM" in lines[1]


def test_sanitize_csv_value() -> None:
    assert sanitize_csv_value("  plain ") == "plain"
    assert sanitize_csv_value("+1") == "\t+1"
    assert sanitize_csv_value("https://example.org") == "\thttps://example.org"
    assert sanitize_csv_value("") == ""
