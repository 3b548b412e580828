#!/usr/bin/env python3
"""
IMDS Audit - Excel Report Generator

Generates an Excel workbook from the CSV written by imds_collect.py with:
- Summary sheet: KPIs and per-region instance/call totals
- Flagged Instances sheet: instances with token-less IMDS calls, highest first

Usage:
    python3 scripts/generate_imds_report.py --input instances.csv
    python3 scripts/generate_imds_report.py --input instances.csv --output imds_report.xlsx
"""
from __future__ import annotations

import argparse
import csv
import sys
from typing import Any

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

# Column names written by imds_collect.py
REGION_COLUMN = 'region'
INSTANCE_COLUMN = 'instance-id'
CALLS_COLUMN = 'imdsv1 calls'


# =============================================================================
# Data Loading
# =============================================================================

def load_report_rows(filepath: str) -> list[dict[str, Any]]:
    """Load the audit CSV into dicts with calls parsed as float."""
    rows = []
    with open(filepath, 'r', newline='') as f:
        reader = csv.DictReader(f)
        missing = {REGION_COLUMN, INSTANCE_COLUMN, CALLS_COLUMN} - set(reader.fieldnames or [])
        if missing:
            raise ValueError(f"{filepath} is missing columns: {', '.join(sorted(missing))}")
        for line_num, record in enumerate(reader, start=2):
            try:
                calls = float(record[CALLS_COLUMN])
            except (TypeError, ValueError):
                raise ValueError(f"{filepath}:{line_num}: invalid call count {record[CALLS_COLUMN]!r}") from None
            rows.append({
                'region': record[REGION_COLUMN],
                'instance_id': record[INSTANCE_COLUMN],
                'calls': calls,
            })
    return rows


# =============================================================================
# Analysis Functions
# =============================================================================

def analyze_report(rows: list[dict[str, Any]]) -> dict[str, Any]:
    """
    Summarize audit rows.

    Returns dict with:
    - totals: instance, flagged instance and call totals
    - by_region: per-region totals in first-seen order
    - flagged: instances with calls > 0, sorted by calls descending
    """
    by_region: dict[str, dict[str, Any]] = {}
    for row in rows:
        region = by_region.setdefault(row['region'], {
            'region': row['region'],
            'instances': 0,
            'flagged': 0,
            'calls': 0.0,
        })
        region['instances'] += 1
        region['calls'] += row['calls']
        if row['calls'] > 0:
            region['flagged'] += 1

    flagged = sorted(
        (r for r in rows if r['calls'] > 0),
        key=lambda r: (-r['calls'], r['region'], r['instance_id'])
    )

    total_instances = len(rows)
    return {
        'totals': {
            'instances': total_instances,
            'flagged': len(flagged),
            'calls': sum(r['calls'] for r in rows),
            'flagged_percent': round(len(flagged) / total_instances * 100, 1) if total_instances else 0.0,
            'regions': len(by_region),
        },
        'by_region': list(by_region.values()),
        'flagged': flagged,
    }


# =============================================================================
# Excel Sheets
# =============================================================================

HEADER_FILL = PatternFill(start_color="1F4E79", end_color="1F4E79", fill_type="solid")
FLAG_FILL = PatternFill(start_color="FCE4D6", end_color="FCE4D6", fill_type="solid")
HEADER_FONT = Font(name="Calibri", size=11, bold=True, color="FFFFFF")
THIN_BORDER = Border(
    left=Side(style='thin'), right=Side(style='thin'),
    top=Side(style='thin'), bottom=Side(style='thin')
)


def _write_header(ws: Any, row: int, headers: list[str]) -> None:
    for col, header in enumerate(headers, 1):
        cell = ws.cell(row=row, column=col, value=header)
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        cell.border = THIN_BORDER
        cell.alignment = Alignment(horizontal='center')


def _set_widths(ws: Any, widths: list[int]) -> None:
    for col, width in enumerate(widths, 1):
        ws.column_dimensions[get_column_letter(col)].width = width


def create_summary_sheet(wb: Any, analysis: dict[str, Any]) -> None:
    """Create Summary sheet with KPIs and per-region breakdown."""
    title_font = Font(name="Calibri", size=18, bold=True, color="1F4E79")
    metric_font = Font(name="Calibri", size=24, bold=True, color="1F4E79")
    label_font = Font(name="Calibri", size=10, color="666666")

    ws = wb.active
    ws.title = "Summary"

    ws['A1'] = "IMDSv1 Usage Audit"
    ws['A1'].font = title_font
    ws.merge_cells('A1:E1')

    totals = analysis['totals']
    kpis = [
        ('B', "INSTANCES AUDITED", totals['instances']),
        ('C', "USING IMDSv1", totals['flagged']),
        ('D', "% USING IMDSv1", f"{totals['flagged_percent']}%"),
        ('E', "TOKEN-LESS CALLS", f"{totals['calls']:,.0f}"),
    ]
    for col, label, value in kpis:
        ws[f'{col}3'] = label
        ws[f'{col}3'].font = label_font
        ws[f'{col}3'].alignment = Alignment(horizontal='center')
        ws[f'{col}4'] = value
        ws[f'{col}4'].font = metric_font
        ws[f'{col}4'].alignment = Alignment(horizontal='center')

    ws['A7'] = "BY REGION"
    ws['A7'].font = Font(size=12, bold=True, color="1F4E79")
    _write_header(ws, 8, ['Region', 'Instances', 'Using IMDSv1', 'Token-less Calls'])

    row = 9
    for region in analysis['by_region']:
        values = [region['region'], region['instances'], region['flagged'], round(region['calls'], 2)]
        for col, value in enumerate(values, 1):
            cell = ws.cell(row=row, column=col, value=value)
            cell.border = THIN_BORDER
            if region['flagged']:
                cell.fill = FLAG_FILL
        row += 1

    _set_widths(ws, [22, 20, 20, 20, 20])


def create_flagged_sheet(wb: Any, analysis: dict[str, Any]) -> None:
    """Create Flagged Instances sheet, highest call count first."""
    ws = wb.create_sheet("Flagged Instances")
    _write_header(ws, 1, ['Region', 'Instance Id', 'Token-less Calls'])

    for row, item in enumerate(analysis['flagged'], start=2):
        values = [item['region'], item['instance_id'], round(item['calls'], 2)]
        for col, value in enumerate(values, 1):
            cell = ws.cell(row=row, column=col, value=value)
            cell.border = THIN_BORDER

    if not analysis['flagged']:
        ws.cell(row=2, column=1, value="No instances made token-less IMDS calls")

    ws.freeze_panes = 'A2'
    _set_widths(ws, [22, 26, 20])


def generate_excel_report(input_path: str, output_path: str) -> dict[str, Any]:
    """
    Generate Excel report from an audit CSV.

    Args:
        input_path: Path to the CSV written by imds_collect.py
        output_path: Output Excel file path

    Returns:
        The analysis the workbook was built from
    """
    print(f"Loading report: {input_path}")
    rows = load_report_rows(input_path)

    analysis = analyze_report(rows)

    print("Generating Excel report...")
    wb = Workbook()
    create_summary_sheet(wb, analysis)
    create_flagged_sheet(wb, analysis)
    wb.save(output_path)

    print(f"\nReport saved: {output_path}")
    print(f"  - Instances: {analysis['totals']['instances']}")
    print(f"  - Using IMDSv1: {analysis['totals']['flagged']}")
    return analysis


def main() -> None:
    parser = argparse.ArgumentParser(
        description='Generate Excel report from IMDS audit CSV output',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python3 scripts/generate_imds_report.py --input imds-audit/instances.csv
  python3 scripts/generate_imds_report.py --input imds-audit/instances.csv --output imds_report.xlsx
"""
    )

    parser.add_argument('--input', '-i', required=True,
                        help='Path to the audit CSV (instances.csv)')
    parser.add_argument('--output', '-o', default='imds_report.xlsx',
                        help='Output Excel file path (default: imds_report.xlsx)')

    args = parser.parse_args()

    try:
        generate_excel_report(args.input, args.output)
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
