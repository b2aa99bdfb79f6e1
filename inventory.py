"""
Materials inventory report.

Materials are embedded in appointments, so the report scans every
appointment that has any, flattens the materials into rows and groups
them by (name, type).
"""

import csv
import io
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

DETAIL_COLUMNS = [
    ("material_name", "Material"),
    ("material_type", "Type"),
    ("quantity", "Quantity"),
    ("appointment_description", "Appointment"),
    ("appointment_date", "Date"),
    ("appointment_time", "Time"),
    ("patient_id", "Patient"),
    ("confirmed", "Confirmed"),
]
SUMMARY_COLUMNS = [
    ("name", "Material"),
    ("type", "Type"),
    ("total_quantity", "Total quantity"),
    ("usage_count", "Times used"),
    ("last_used", "Last used"),
]


def flatten(appointments: List[dict]) -> List[dict]:
    rows = []
    for appt in appointments:
        for material in appt.get("materials") or []:
            if not material.get("name") or not material.get("type") or material.get("quantity") is None:
                logger.warning("Skipping malformed material in appointment %s: %r", appt.get("_id"), material)
                continue
            rows.append({
                "material_id": str(material.get("_id", "")),
                "material_name": material["name"],
                "material_type": material["type"],
                "quantity": material["quantity"],
                "created_at": material.get("created_at") or appt.get("date"),
                "appointment_id": str(appt["_id"]),
                "appointment_description": appt.get("description"),
                "appointment_date": appt.get("date"),
                "appointment_time": appt.get("time"),
                "patient_id": appt.get("patient_id"),
                "confirmed": bool(appt.get("confirmed")),
            })
    return rows


def _used_at(row: dict) -> str:
    value = row["created_at"]
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value or "")


def summarize(rows: List[dict]) -> List[dict]:
    groups: Dict[Tuple[str, str], dict] = {}
    for row in rows:
        key = (row["material_name"], row["material_type"])
        used = _used_at(row)
        entry = groups.get(key)
        if entry is None:
            groups[key] = {
                "name": row["material_name"],
                "type": row["material_type"],
                "total_quantity": row["quantity"] or 0,
                "usage_count": 1,
                "last_used": used,
            }
        else:
            entry["total_quantity"] += row["quantity"] or 0
            entry["usage_count"] += 1
            entry["last_used"] = max(entry["last_used"], used)
    return sorted(groups.values(), key=lambda g: g["total_quantity"], reverse=True)


def _matches(text_fields, search: Optional[str]) -> bool:
    if not search:
        return True
    needle = search.lower()
    return any(needle in (f or "").lower() for f in text_fields)


def build_report(appointments: List[dict], search: Optional[str] = None,
                 material_type: Optional[str] = None) -> dict:
    rows = flatten(appointments)
    summary = summarize(rows)
    if search or material_type:
        rows = [r for r in rows
                if _matches((r["material_name"], r["material_type"], r["appointment_description"]), search)
                and (not material_type or r["material_type"] == material_type)]
        summary = [s for s in summary
                   if _matches((s["name"], s["type"]), search)
                   and (not material_type or s["type"] == material_type)]
    return {
        "materials": rows,
        "summary": summary,
        "total_materials": len(rows),
        "total_appointments": len(appointments),
        "total_unique_types": len(summary),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def to_csv(report: dict, view: str = "detailed") -> str:
    columns = SUMMARY_COLUMNS if view == "summary" else DETAIL_COLUMNS
    items = report["summary"] if view == "summary" else report["materials"]
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow([label for _, label in columns])
    for item in items:
        writer.writerow([item.get(key, "") for key, _ in columns])
    return buf.getvalue()
