import csv
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Sequence

from pydantic import ValidationError

from models import Transaction, TransactionType
from schemas import CSVRow

CSV_COLUMNS = ["Date", "Type", "Amount", "Account", "Category", "Description", "Notes"]


def sanitize_csv_value(value: str) -> str:
    """
    Neutralize spreadsheet formula injection by prefixing risky cells with a tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    if value.startswith(("=", "+", "-", "@", "\t", "\r")):
        return "\t" + value

    for pattern in (r"^cmd\s*", r"^powershell\s*", r"^http[s]?://"):
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def parse_date(value: str) -> date:
    value = value.strip()
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        return datetime.strptime(value, "%d.%m.%Y").date()


def parse_amount(value: str) -> int:
    clean = value.strip().replace("€", "").replace("$", "").replace("£", "")
    clean = clean.replace(" ", "").replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount '{value}'") from exc
    cents = int((amount * 100).quantize(Decimal("1")))
    if cents <= 0:
        raise ValueError("Amount must be positive")
    return cents


def parse_csv(content: str) -> tuple[list[tuple[int, CSVRow]], list[str]]:
    """Parse an import file into (row number, row) pairs plus per-row errors."""
    reader = csv.DictReader(StringIO(content))
    rows: list[tuple[int, CSVRow]] = []
    errors: list[str] = []
    for idx, raw in enumerate(reader, start=1):
        try:
            notes = (raw.get("Notes") or "").strip()
            row = CSVRow(
                date=parse_date(raw.get("Date") or ""),
                type=TransactionType((raw.get("Type") or "").strip().lower()),
                amount_cents=parse_amount(raw.get("Amount") or "0"),
                account=(raw.get("Account") or "").strip(),
                category=(raw.get("Category") or "").strip(),
                description=(raw.get("Description") or "").strip(),
                notes=notes or None,
            )
        except (ValueError, ValidationError) as exc:
            errors.append(f"Row {idx}: {exc}")
            continue
        rows.append((idx, row))
    return rows, errors


def export_transactions(transactions: Sequence[Transaction]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_COLUMNS)
    for txn in transactions:
        writer.writerow(
            [
                txn.date.isoformat(),
                txn.type.value,
                f"{txn.amount_cents / 100:.2f}",
                sanitize_csv_value(txn.account.name if txn.account else ""),
                sanitize_csv_value(txn.category.name if txn.category else ""),
                sanitize_csv_value(txn.description),
                sanitize_csv_value(txn.notes or ""),
            ]
        )
    return output.getvalue()
