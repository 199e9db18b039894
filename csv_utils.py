import csv
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Sequence

from models import CurrencyCode, ExpenseCategory, Transaction, TransactionType
from schemas import CSVRow

CSV_HEADER = [
    "Date",
    "Type",
    "Amount",
    "Currency",
    "Department",
    "ExpenseCategory",
    "Description",
]


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^\.",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def parse_date(value: str):
    value = value.strip()
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        return datetime.strptime(value, "%d.%m.%Y").date()


def parse_amount(value: str, *, allow_negative: bool = False) -> int:
    clean = value.strip().upper()
    for token in ("USD", "SSP", "$", " "):
        clean = clean.replace(token, "")
    clean = clean.replace(",", "")
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    cents = int((amount * 100).quantize(Decimal("1")))
    if cents < 0 and not allow_negative:
        raise ValueError("Amount must be positive")
    return cents


def parse_csv(content: str) -> tuple[list[CSVRow], list[str]]:
    reader = csv.DictReader(StringIO(content))
    rows: list[CSVRow] = []
    errors: list[str] = []
    for idx, raw in enumerate(reader, start=1):
        try:
            date_value = parse_date((raw.get("Date") or "").strip())
            type_value = TransactionType((raw.get("Type") or "").strip().lower())
            amount_value = parse_amount(raw.get("Amount") or "0")
            currency_raw = (raw.get("Currency") or "USD").strip().upper()
            currency_value = CurrencyCode(currency_raw or "USD")
            department = (raw.get("Department") or "").strip() or None
            category_raw = (raw.get("ExpenseCategory") or "").strip().lower()
            expense_category = ExpenseCategory(category_raw) if category_raw else None
            if expense_category and type_value != TransactionType.expense:
                raise ValueError("Expense category given for an income row")
            description_raw = raw.get("Description") or ""
            description = description_raw.strip() if description_raw.strip() else None
            rows.append(
                CSVRow(
                    row_number=idx,
                    date=date_value,
                    type=type_value,
                    amount_cents=amount_value,
                    currency=currency_value,
                    department=department,
                    expense_category=expense_category,
                    description=description,
                )
            )
        except Exception as exc:
            errors.append(f"Row {idx}: {exc}")
    return rows, errors


def export_transactions(transactions: Sequence[Transaction]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_HEADER)
    for txn in transactions:
        writer.writerow(
            [
                txn.date.isoformat(),
                txn.type.value,
                f"{txn.amount_cents / 100:.2f}",
                txn.currency.value,
                sanitize_csv_value(txn.department.name if txn.department else ""),
                txn.expense_category.value if txn.expense_category else "",
                sanitize_csv_value(txn.description or ""),
            ]
        )
    return output.getvalue()
