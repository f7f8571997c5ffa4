import csv
from io import BytesIO, StringIO
from flask import Response
from openpyxl import Workbook
from .errors import ValidationError

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def tabular_response(headers, rows, filename, fmt="csv", sheet_title="Report"):
    """Download `rows` as a csv or xlsx attachment named `<filename>.<fmt>`."""
    if fmt == "csv":
        buf = StringIO()
        w = csv.writer(buf)
        w.writerow(headers)
        for row in rows:
            w.writerow(["" if v is None else v for v in row])
        return Response(buf.getvalue(), mimetype="text/csv", headers={
            "Content-Disposition": f"attachment; filename={filename}.csv"
        })
    if fmt == "xlsx":
        wb = Workbook()
        ws = wb.active
        ws.title = sheet_title[:31]
        ws.append(list(headers))
        for row in rows:
            ws.append(list(row))
        bio = BytesIO()
        wb.save(bio)
        bio.seek(0)
        return Response(bio.read(), mimetype=XLSX_MIMETYPE, headers={
            "Content-Disposition": f"attachment; filename={filename}.xlsx"
        })
    raise ValidationError("format must be one of: json, csv, xlsx")
