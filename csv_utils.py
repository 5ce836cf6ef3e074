import csv
import re
from io import StringIO
from typing import Sequence

from models import Expense
from schemas import cents_to_amount

EXPORT_HEADER = ["Date", "Description", "Category", "Vendor", "Amount", "Notes"]
SHELL_COMMAND = re.compile(r"(cmd|powershell|bash|sh)(\s|$)", re.IGNORECASE)


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

    # whole-word shell names only
    if SHELL_COMMAND.match(value):
        return "\t" + value

    return value


def export_expenses(expenses: Sequence[Expense]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(EXPORT_HEADER)
    for expense in expenses:
        writer.writerow(
            [
                expense.date.isoformat(),
                sanitize_csv_value(expense.description),
                sanitize_csv_value(
                    expense.category.name if expense.category else "Uncategorized"
                ),
                sanitize_csv_value(expense.vendor or ""),
                str(cents_to_amount(expense.amount_cents)),
                sanitize_csv_value(expense.notes or ""),
            ]
        )
    return output.getvalue()
