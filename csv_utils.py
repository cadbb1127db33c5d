import csv
import re
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Optional

from schemas import ReportSnapshot

REPORT_CSV_HEADER = ["date", "description", "category", "amount", "type"]
FUND_LABEL = "Fund"


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


def parse_amount(value: str, *, allow_negative: bool = False) -> int:
    clean = value.strip().replace("৳", "").replace("$", "").replace(" ", "")
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    cents = int((amount * 100).quantize(Decimal("1")))
    if cents < 0 and not allow_negative:
        raise ValueError("Amount must be positive")
    return cents


def parse_quantity(value: Optional[str]) -> Optional[Decimal]:
    if value is None or not value.strip():
        return None
    try:
        quantity = Decimal(value.strip().replace(",", "."))
    except InvalidOperation as exc:
        raise ValueError("Invalid quantity") from exc
    if quantity <= 0:
        raise ValueError("Quantity must be positive")
    return quantity


def format_amount(cents: int) -> str:
    """Plain decimal amount for exports: whole amounts carry no decimals."""
    if cents % 100 == 0:
        return str(cents // 100)
    return f"{cents / 100:.2f}"


def export_report(snapshot: ReportSnapshot) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(REPORT_CSV_HEADER)
    for fund in snapshot.funds:
        writer.writerow(
            [
                fund.fund_date.isoformat(),
                sanitize_csv_value(fund.source_note or FUND_LABEL),
                FUND_LABEL,
                format_amount(fund.amount_cents),
                "fund",
            ]
        )
    for expense in snapshot.expenses:
        writer.writerow(
            [
                expense.expense_date.isoformat(),
                sanitize_csv_value(expense.item_name),
                sanitize_csv_value(expense.category or ""),
                format_amount(expense.total_cents),
                "expense",
            ]
        )
    return output.getvalue()
