from __future__ import annotations

from decimal import Decimal
from io import BytesIO
from typing import Iterable, Sequence

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

__all__ = ["JOURNAL_COLUMNS", "build_loonjournaal_workbook"]

# (record attribute, column header); amounts are summed in the totals row
JOURNAL_COLUMNS: list[tuple[str, str]] = [
    ("employee_number", "Personeelsnr."),
    ("employee_name", "Naam"),
    ("pro_rata_factor", "Deeltijdfactor"),
    ("hours_worked", "Uren"),
    ("overtime_hours", "Overuren"),
    ("base_pay", "Basisloon"),
    ("overtime_pay", "Overwerk"),
    ("bonus", "Bonus"),
    ("gross_salary", "Brutoloon"),
    ("aow_contribution", "AOW"),
    ("wlz_contribution", "Wlz"),
    ("ww_contribution", "WW"),
    ("wia_contribution", "WIA"),
    ("total_employee_contributions", "Premies werknemer"),
    ("gross_after_contributions", "Bruto na premies"),
    ("holiday_allowance", "Vakantiegeld (opbouw)"),
    ("employer_aow", "AOW werkgever"),
    ("employer_wlz", "Wlz werkgever"),
    ("employer_ww", "WW werkgever"),
    ("employer_wia", "WIA werkgever"),
    ("employer_awf", "AWF"),
    ("employer_aof", "AOF"),
    ("employer_zvw", "Zvw"),
    ("total_employer_contributions", "Premies werkgever"),
]

_TEXT_COLUMNS = {"employee_number", "employee_name"}
_NO_TOTAL = {"pro_rata_factor"}


def _cell_value(value):
    if isinstance(value, Decimal):
        return float(value)
    return value


def build_loonjournaal_workbook(
    *,
    company_name: str,
    year: int,
    month: int,
    records: Sequence,
    status: str = "draft",
    columns: Iterable[tuple[str, str]] = JOURNAL_COLUMNS,
) -> BytesIO:
    """Payroll journal for one period: title rows, one row per record, totals row."""
    cols = list(columns)
    wb = Workbook()
    ws = wb.active
    ws.title = f"{year:04d}-{month:02d}"

    bold = Font(bold=True)
    header_fill = PatternFill("solid", fgColor="DDEBF7")
    thin = Side(style="thin", color="999999")
    border = Border(left=thin, right=thin, top=thin, bottom=thin)
    nfmt = "#,##0.00"

    ws.cell(row=1, column=1, value=f"Loonjournaal {company_name}").font = Font(bold=True, size=14)
    ws.cell(row=2, column=1, value=f"Periode {year:04d}-{month:02d} ({status})")

    header_row = 4
    for idx, (_, label) in enumerate(cols, start=1):
        cell = ws.cell(row=header_row, column=idx, value=label)
        cell.font = bold
        cell.fill = header_fill
        cell.border = border
        cell.alignment = Alignment(horizontal="center", vertical="center", wrap_text=True)

    totals: dict[str, Decimal] = {field: Decimal(0) for field, _ in cols if field not in _TEXT_COLUMNS | _NO_TOTAL}
    row_idx = header_row
    for record in records:
        row_idx += 1
        for idx, (field, _) in enumerate(cols, start=1):
            value = getattr(record, field, None)
            cell = ws.cell(row=row_idx, column=idx, value=_cell_value(value))
            cell.border = border
            if field not in _TEXT_COLUMNS:
                cell.number_format = "0.0000" if field in _NO_TOTAL else nfmt
            if field in totals and value is not None:
                totals[field] += Decimal(value)

    total_row = row_idx + 1
    ws.cell(row=total_row, column=1, value="Totaal").font = bold
    for idx, (field, _) in enumerate(cols, start=1):
        cell = ws.cell(row=total_row, column=idx)
        cell.border = border
        cell.font = bold
        if field in totals:
            cell.value = float(totals[field])
            cell.number_format = nfmt

    for col_idx in range(1, len(cols) + 1):
        max_len = 0
        for r in range(header_row, total_row + 1):
            val = ws.cell(row=r, column=col_idx).value
            max_len = max(max_len, len(str(val)) if val is not None else 0)
        ws.column_dimensions[get_column_letter(col_idx)].width = min(28, max(9, max_len + 2))
    ws.freeze_panes = ws.cell(row=header_row + 1, column=3)

    bio = BytesIO()
    wb.save(bio)
    bio.seek(0)
    return bio
