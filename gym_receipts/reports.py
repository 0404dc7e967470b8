import calendar
import logging
from datetime import date
from typing import Dict, Optional, Sequence, Tuple

import pandas as pd
from openpyxl.styles import Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from .models import EXPIRED, EXPIRING_SOON, Member, Receipt
from .plans import classify_membership, try_parse_date
from .reconciliation import compute_due, member_fee_total, total_paid

DUE_COLUMNS = ["Member ID", "Name", "Mobile", "Plan", "Total Fee", "Paid", "Due"]
EXPIRY_COLUMNS = ["Member ID", "Name", "Mobile", "Plan", "End Date", "Days Left", "Status"]
RECEIPT_COLUMNS = [
    "Receipt No", "Date", "Member", "Type", "Tag", "Amount", "Paid", "Due", "Payment Type",
]


def due_amounts_frame(
    members: Sequence[Member], receipts_by_member: Dict[str, Sequence[Receipt]]
) -> pd.DataFrame:
    """Members with an outstanding balance, largest due first."""
    rows = []
    for member in members:
        fee = member_fee_total(member)
        paid = total_paid(receipts_by_member.get(str(member.id), ()))
        due = compute_due(fee, paid)
        if due > 0:
            rows.append([member.id, member.name, member.mobile_no, member.plan_type, fee, paid, due])
    df = pd.DataFrame(rows, columns=DUE_COLUMNS)
    return df.sort_values("Due", ascending=False).reset_index(drop=True)


def expiry_frame(
    members: Sequence[Member], today: Optional[date] = None, days_ahead: int = 30
) -> pd.DataFrame:
    """Members already expired or whose subscription ends within days_ahead."""
    today = today or date.today()
    rows = []
    for member in members:
        status = classify_membership(member.subscription_end_date, today)
        end = try_parse_date(member.subscription_end_date)
        days_left = (end - today).days if end else None
        if status in (EXPIRED, EXPIRING_SOON) or (days_left is not None and days_left <= days_ahead):
            rows.append([
                member.id,
                member.name,
                member.mobile_no,
                member.plan_type,
                end.isoformat() if end else "Invalid Date",
                days_left,
                status,
            ])
    df = pd.DataFrame(rows, columns=EXPIRY_COLUMNS)
    return df.sort_values("Days Left", na_position="first").reset_index(drop=True)


def receipts_frame(receipts: Sequence[Receipt]) -> pd.DataFrame:
    rows = [
        [
            r.receipt_number,
            r.created_at,
            r.member_name,
            r.transaction_type,
            r.receipt_tag,
            r.amount,
            r.amount_paid,
            r.due_amount,
            r.payment_type,
        ]
        for r in receipts
    ]
    df = pd.DataFrame(rows, columns=RECEIPT_COLUMNS)
    df["Date"] = pd.to_datetime(df["Date"], errors="coerce").dt.strftime("%Y-%m-%d")
    for column in ("Amount", "Paid", "Due"):
        df[column] = pd.to_numeric(df[column], errors="coerce").fillna(0)
    return df


def monthly_summary(receipts: Sequence[Receipt]) -> pd.DataFrame:
    df = receipts_frame(receipts)
    by_type = df.groupby("Type")["Paid"].sum() if not df.empty else pd.Series(dtype=float)
    metrics = [
        ("Total Collected", float(df["Paid"].sum())),
        ("Total Outstanding", float(df["Due"].sum())),
        ("Receipts", len(df)),
    ]
    metrics.extend((f"Collected ({t})", float(v)) for t, v in by_type.items())
    return pd.DataFrame(metrics, columns=["Metric", "Value"])


def export_monthly_report(
    receipts: Sequence[Receipt], year: int, month: int, save_path: str
) -> Tuple[bool, str]:
    """Writes a Summary sheet and a Receipts sheet to an Excel file."""
    month_name = calendar.month_name[month]
    if not receipts:
        return True, f"No receipts found for {month_name} {year}. Report not generated."

    df = receipts_frame(receipts)
    summary_df = monthly_summary(receipts)
    header_font = Font(bold=True, color="FFFFFF")
    header_fill = PatternFill(start_color="4F81BD", end_color="4F81BD", fill_type="solid")
    title_font = Font(bold=True, size=16)
    side = Side(style="thin", color="000000")
    thin_border = Border(left=side, right=side, top=side, bottom=side)

    try:
        with pd.ExcelWriter(save_path, engine="openpyxl") as writer:
            summary_df.to_excel(writer, sheet_name="Summary", index=False, startrow=2)
            df.to_excel(writer, sheet_name="Receipts", index=False, startrow=1)

            summary_sheet = writer.sheets["Summary"]
            details_sheet = writer.sheets["Receipts"]
            summary_sheet.cell(row=1, column=1, value=f"Receipts Summary - {month_name} {year}").font = title_font
            details_sheet.cell(row=1, column=1, value=f"Receipts - {month_name} {year}").font = title_font

            for sheet, frame, header_row in ((summary_sheet, summary_df, 3), (details_sheet, df, 2)):
                for col_num, column_title in enumerate(frame.columns, 1):
                    cell = sheet.cell(row=header_row, column=col_num)
                    cell.font = header_font
                    cell.fill = header_fill
                    cell.border = thin_border
                    max_len = max(frame[column_title].astype(str).map(len).max(), len(column_title)) + 2
                    sheet.column_dimensions[get_column_letter(col_num)].width = min(max_len, 50)
        logging.info(f"Monthly receipts report written to {save_path}.")
        return True, f"Receipts report generated successfully: {save_path}"
    except (OSError, ValueError) as e:
        logging.error(f"Failed to write receipts report {save_path}: {e}", exc_info=True)
        return False, f"An error occurred during report generation: {e}"
