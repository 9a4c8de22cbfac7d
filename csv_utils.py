from __future__ import annotations

import csv
import re
from io import StringIO
from typing import TYPE_CHECKING

from money import format_amount

if TYPE_CHECKING:  # pragma: no cover
    from models import Report


REPORT_HEADER = ["Category", "Budgeted", "Spent", "Overspent"]


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


def export_report(report: "Report") -> str:
    output = StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(REPORT_HEADER)
    for line in report.lines:
        writer.writerow(
            [
                sanitize_csv_value(line.category),
                format_amount(line.budgeted_cents),
                format_amount(line.spent_cents),
                format_amount(line.overspent_cents),
            ]
        )
    writer.writerow([])
    writer.writerow(
        [
            "TOTAL",
            format_amount(report.total_budgeted_cents),
            format_amount(report.total_spent_cents),
            format_amount(report.total_overspent_cents),
        ]
    )
    return output.getvalue()
