# status_export.py - CSV / XLSX export of evaluated instrument statuses

import csv
import io
import logging
from pathlib import Path
from typing import Iterable

from openpyxl import Workbook
from openpyxl.styles import Font

from domain.models import StatusReport
from file_utils import atomic_write_bytes, atomic_write_text

logger = logging.getLogger(__name__)

HEADERS = [
    "Reference",
    "Type",
    "Section",
    "Status",
    "Last Calibration",
    "Calibration Due",
    "Days Until Due",
    "Due",
]


def export_status_csv(reports: Iterable[StatusReport], path: Path) -> int:
    """Write reports to CSV (atomic replace). Returns number of data rows."""
    buf = io.StringIO(newline="")
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(HEADERS)
    count = 0
    for r in reports:
        writer.writerow(["" if v is None else str(v) for v in r.to_row()])
        count += 1
    atomic_write_text(Path(path), buf.getvalue())
    logger.info("Exported %d status row(s) to %s", count, path)
    return count


def export_status_xlsx(reports: Iterable[StatusReport], path: Path) -> int:
    """Write reports to an XLSX workbook with one "Instrument Status" sheet. Returns number of data rows."""
    path = Path(path)
    if path.suffix.lower() != ".xlsx":
        path = path.with_suffix(".xlsx")
    wb = Workbook()
    ws = wb.active
    if ws is None:
        ws = wb.create_sheet("Instrument Status", 0)
    ws.title = "Instrument Status"
    for col, h in enumerate(HEADERS, 1):
        cell = ws.cell(row=1, column=col, value=h)
        cell.font = Font(bold=True)
    count = 0
    for row_idx, r in enumerate(reports, 2):
        for col, val in enumerate(r.to_row(), 1):
            ws.cell(row=row_idx, column=col, value=val)
        count += 1
    ws.freeze_panes = "A2"
    out = io.BytesIO()
    wb.save(out)
    atomic_write_bytes(path, out.getvalue())
    logger.info("Exported %d status row(s) to %s", count, path)
    return count


def export_status(reports: Iterable[StatusReport], path: Path) -> int:
    """Pick the format from the file extension (.xlsx, otherwise CSV)."""
    if Path(path).suffix.lower() == ".xlsx":
        return export_status_xlsx(reports, path)
    return export_status_csv(reports, path)
